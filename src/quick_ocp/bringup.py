"""
Configures and starts the CRC virtual machine inside the runner's resource budget
"""
import contextlib
import glob
import logging
import os
import shutil
import subprocess
import tempfile
from typing import Iterator, Optional

from .config import HostLayout
from .errors import ClusterStartError, ValidationError
from .models import ResourceBudget
from .util import remove_path, run_process

LOG = logging.getLogger(__name__)

# CRC state that is too large for the runner's root volume
CRC_STATE_DIRS = ("cache", "machines")
BUNDLE_PATTERN = "*.crcbundle"


def configure(budget: ResourceBudget, crc: str = "crc"):
    """
    Writes the resource budget into CRC's persistent config. Safe to repeat

    :raises ClusterStartError: If `crc config set` fails
    """
    LOG.info('[BRINGUP] Configuring CRC for minimal resource usage: %s', budget)
    settings = [
        ("cpus", budget.cpu),
        ("memory", budget.memory_mb),
        ("disk-size", budget.disk_gb),
        ("consent-telemetry", budget.telemetry.value),
        ("network-mode", budget.network_mode),
    ]
    for key, value in settings:
        try:
            run_process([crc, "config", "set", key, str(value)])
        except (subprocess.CalledProcessError, OSError) as e:
            raise ClusterStartError(f"crc config set {key} {value} failed: {e}",
                                    hint="Check that the crc binary was installed correctly")


def _ensure_dir(path: str):
    try:
        os.makedirs(path, exist_ok=True)
    except PermissionError:
        LOG.debug('[BRINGUP] Creating %s with sudo', path)
        run_process(["sudo", "mkdir", "-p", path])
        run_process(["sudo", "chown", "-R", f"{os.getuid()}:{os.getgid()}", path])


def relocate_state_dirs(layout: HostLayout):
    """
    Moves CRC's cache and machine directories onto the large volume and symlinks them back

    Directories that are already symlinks are left alone, so this is safe to run more than once.
    """
    os.makedirs(layout.crc_home, exist_ok=True)
    for name in CRC_STATE_DIRS:
        link = os.path.join(layout.crc_home, name)
        target = os.path.join(layout.large_volume, f"crc-{name}")
        if os.path.islink(link):
            LOG.info('[BRINGUP] %s is already a symlink to %s, skipping', link, os.readlink(link))
            continue
        _ensure_dir(target)
        if os.path.isdir(link):
            for entry in os.listdir(link):
                destination = os.path.join(target, entry)
                if os.path.exists(destination):
                    LOG.debug('[BRINGUP] %s already exists, not moving', destination)
                    continue
                shutil.move(os.path.join(link, entry), destination)
            shutil.rmtree(link)
        os.symlink(target, link)
        LOG.info('[BRINGUP] %s now points at %s', link, target)


def restore_bundles(layout: HostLayout) -> int:
    """
    Copies bundles restored by actions/cache back into the CRC cache before setup

    :return int: Number of entries copied
    """
    stash = layout.bundle_stash
    if not os.path.isdir(stash) or not os.listdir(stash):
        LOG.info('[BRINGUP] No files found in %s to copy', stash)
        return 0
    cache_dir = os.path.join(layout.crc_home, "cache")
    os.makedirs(cache_dir, exist_ok=True)
    copied = 0
    for entry in os.listdir(stash):
        source = os.path.join(stash, entry)
        if os.path.isdir(source):
            shutil.copytree(source, os.path.join(cache_dir, entry), dirs_exist_ok=True)
        else:
            shutil.copy2(source, cache_dir)
        copied += 1
    LOG.info('[BRINGUP] Restored %s cached bundle entries', copied)
    return copied


def stash_bundles(layout: HostLayout) -> int:
    """
    Moves downloaded bundles out of the CRC cache into the directory actions/cache saves

    :return int: Number of bundles moved
    """
    stash = layout.bundle_stash
    os.makedirs(stash, exist_ok=True)
    bundles = glob.glob(os.path.join(layout.crc_home, "cache", BUNDLE_PATTERN))
    for bundle in bundles:
        shutil.move(bundle, os.path.join(stash, os.path.basename(bundle)))
    if bundles:
        LOG.info('[BRINGUP] Moved %s bundle files to %s', len(bundles), stash)
    else:
        LOG.info('[BRINGUP] No .crcbundle files found to move')
    return len(bundles)


def setup(crc: str = "crc"):
    """
    :raises ClusterStartError: If `crc setup` exits nonzero
    """
    LOG.info('[BRINGUP] Running CRC setup')
    try:
        run_process([crc, "setup", "--log-level", "debug", "--show-progressbars"])
    except (subprocess.CalledProcessError, OSError) as e:
        raise ClusterStartError(f"crc setup failed: {e}",
                                hint="Make sure KVM and libvirt are available and the user is in the libvirt group")


@contextlib.contextmanager
def pull_secret_file(pull_secret: str, directory: Optional[str] = None) -> Iterator[str]:
    """
    Writes the pull secret to a private temporary file that is deleted when the block exits, however it exits
    """
    if not pull_secret or not pull_secret.strip():
        raise ValidationError("A pull secret is required to start the cluster",
                              hint="Set the ocpPullSecret input from a repository secret")
    fd, path = tempfile.mkstemp(prefix="pull-secret-", suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, 'w') as f:
            f.write(pull_secret.strip())
        os.chmod(path, 0o600)
        yield path
    finally:
        remove_path(path)


def start(pull_secret: str, crc: str = "crc", secret_dir: Optional[str] = None):
    """
    Starts the cluster. The pull secret never outlives this call

    :raises ClusterStartError: If `crc start` exits nonzero
    """
    LOG.info('[BRINGUP] Starting CRC')
    with pull_secret_file(pull_secret, secret_dir) as secret_path:
        try:
            run_process([crc, "start", "--pull-secret-file", secret_path, "--log-level", "debug"])
        except (subprocess.CalledProcessError, OSError) as e:
            raise ClusterStartError(f"crc start failed: {e}",
                                    hint="Try lowering crcMemory/crcCpu or check the crc debug log")
    LOG.info('[BRINGUP] CRC started')
