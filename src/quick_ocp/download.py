"""
Fetches and installs the CRC binary

Tier 1 is the OpenShift mirror. Tier 2 is a container image in a registry that carries the same archive, used
only after the mirror has run out of attempts.
"""
import glob
import logging
import os
import shutil
import subprocess
import tarfile
import tempfile
from typing import Callable, List, Optional

import docker
import requests
from docker.errors import DockerException

from .config import DEFAULT_MIRROR_URL, HostLayout, parse_bool
from .errors import DownloadError
from .models import DownloadAttempt, DownloadResult, DownloadTier
from .retry import RetryPolicy, attempt
from .util import extract_tarball, file_size, remove_path, run_process, url_reachable, url_retrieve

LOG = logging.getLogger(__name__)

ARCHIVE_NAME = "crc-linux-amd64.tar.xz"
CACHE_ARCHIVE_PATH = f"/cache/{ARCHIVE_NAME}"
# Anything this small is an HTML error page, not a CRC archive
MIN_ARCHIVE_SIZE = 1048576
MIRROR_RETRY = RetryPolicy(max_attempts=3, interval=10)
CONNECTIVITY_URL = "https://mirror.openshift.com/pub/openshift-v4/clients/ocp/stable/release.txt"


class _AttemptFailed(Exception):
    pass


def mirror_url(crc_version: str, base_url: str = DEFAULT_MIRROR_URL) -> str:
    return f"{base_url.rstrip('/')}/{crc_version}/{ARCHIVE_NAME}"


def check_connectivity(url: str = CONNECTIVITY_URL) -> bool:
    """
    Checks the mirror can be reached. Only diagnostic, the cache tier may still work when this fails
    """
    if url_reachable(url):
        LOG.info('[DOWNLOAD] OpenShift Mirror is reachable')
        return True
    LOG.warning('[DOWNLOAD] OpenShift Mirror could not be reached at %s. Common causes: network connectivity, a '
                'firewall blocking mirror.openshift.com, a mirror outage or DNS problems', url)
    return False


def docker_client() -> Optional[docker.DockerClient]:
    """
    :return: A connected docker client, or None when no docker daemon is available
    """
    try:
        client = docker.from_env()
        client.ping()
        return client
    except DockerException as e:
        LOG.info('[DOWNLOAD] Docker not available (cache requires Docker): %s', e)
        return None


def check_cache_available(image: str, client: Optional[docker.DockerClient]) -> bool:
    """
    Looks the image tag up in the registry without pulling it
    """
    if client is None:
        return False
    try:
        client.images.get_registry_data(image)
        LOG.info('[DOWNLOAD] Cache image available: %s', image)
        return True
    except DockerException as e:
        LOG.info('[DOWNLOAD] Cache image not found: %s (%s)', image, e)
        return False


def download_from_mirror(url: str, archive_path: str, attempts: List[DownloadAttempt],
                         policy: RetryPolicy = MIRROR_RETRY) -> bool:
    """
    Tier 1. Downloads `url` to `archive_path`, retrying per `policy`

    :param attempts: Every attempt is appended here
    :return bool: True when a plausible archive was downloaded
    """
    LOG.info('[DOWNLOAD] Tier 1: Attempting download from mirror %s', url)

    def _try():
        record = DownloadAttempt(tier=DownloadTier.MIRROR, retry_count=len(attempts))
        attempts.append(record)
        LOG.info('[DOWNLOAD] Attempt %s of %s', record.retry_count + 1, policy.max_attempts)
        remove_path(archive_path)
        try:
            url_retrieve(url, archive_path)
        except (requests.RequestException, OSError) as e:
            record.error = f"Download failed: {e}"
            raise _AttemptFailed(record.error)
        record.size_bytes = file_size(archive_path)
        if record.size_bytes <= MIN_ARCHIVE_SIZE:
            record.error = f"File too small ({record.size_bytes} bytes), likely an error page"
            remove_path(archive_path)
            raise _AttemptFailed(record.error)
        record.success = True
        LOG.info('[DOWNLOAD] Download successful from mirror. File size: %s bytes', record.size_bytes)

    try:
        attempt(_try, policy, retry_on=(_AttemptFailed,))
        return True
    except _AttemptFailed as e:
        LOG.error('[DOWNLOAD] Failed to download CRC from mirror after %s attempts: %s', policy.max_attempts, e)
        return False


def download_from_cache(image: str, archive_path: str, client: docker.DockerClient,
                        attempts: List[DownloadAttempt]) -> bool:
    """
    Tier 2. Pulls the cache image and copies the CRC archive out of a throwaway container

    :return bool: True when a plausible archive was extracted from the image
    """
    LOG.info('[DOWNLOAD] Tier 2: Attempting download from cache image %s', image)
    record = DownloadAttempt(tier=DownloadTier.CACHE, retry_count=0)
    attempts.append(record)
    if not check_cache_available(image, client):
        record.error = f"Cache image not found: {image}"
        return False
    repository, tag = image.rsplit(":", 1)
    outer_tar = archive_path + ".docker.tar"
    try:
        LOG.info('[DOWNLOAD] Pulling cache image...')
        client.images.pull(repository, tag=tag)
        container = client.containers.create(image)
        try:
            stream, _ = container.get_archive(CACHE_ARCHIVE_PATH)
            with open(outer_tar, 'wb') as f:
                for chunk in stream:
                    f.write(chunk)
        finally:
            LOG.debug('[DOWNLOAD] Cleaning up temporary container %s', container.id)
            container.remove(force=True)
        with tarfile.open(outer_tar) as tar:
            member = tar.getmember(os.path.basename(CACHE_ARCHIVE_PATH))
            with tar.extractfile(member) as src, open(archive_path, 'wb') as dst:
                shutil.copyfileobj(src, dst)
    except (DockerException, tarfile.TarError, KeyError, OSError) as e:
        record.error = f"Failed to extract CRC archive from cache image: {e}"
        LOG.error('[DOWNLOAD] %s', record.error)
        return False
    finally:
        remove_path(outer_tar)

    record.size_bytes = file_size(archive_path)
    if record.size_bytes <= MIN_ARCHIVE_SIZE:
        record.error = f"Extracted file is too small ({record.size_bytes} bytes), the cache image may be corrupted"
        LOG.error('[DOWNLOAD] %s', record.error)
        remove_path(archive_path)
        return False
    record.success = True
    LOG.info('[DOWNLOAD] CRC archive extracted from cache (%s bytes)', record.size_bytes)
    return True


def install_binary(archive_path: str, extract_dir: str, install_path: str) -> str:
    """
    Unpacks the archive and moves `crc-linux-*/crc` to `install_path`

    :return str: The install path
    :raises DownloadError: If the archive is unreadable or does not hold exactly one crc binary
    """
    remove_path(extract_dir)
    os.makedirs(extract_dir)
    try:
        extract_tarball(archive_path, extract_dir)
    except (tarfile.TarError, OSError) as e:
        raise DownloadError(f"Could not extract CRC archive: {e}")
    candidates = glob.glob(os.path.join(extract_dir, "crc-linux-*", "crc"))
    if len(candidates) != 1:
        raise DownloadError(f"CRC binary not found in extracted archive (found {len(candidates)} candidates)")
    binary = candidates[0]
    os.chmod(binary, 0o755)
    try:
        shutil.move(binary, install_path)
    except PermissionError:
        LOG.debug('[DOWNLOAD] No write access to %s, moving with sudo', install_path)
        try:
            run_process(["sudo", "mv", binary, install_path])
        except (subprocess.CalledProcessError, OSError) as e:
            raise DownloadError(f"Could not install CRC binary to {install_path}: {e}")
    LOG.info('[DOWNLOAD] CRC binary installed to %s', install_path)
    return install_path


def _install(archive_path: str, work_dir: str, install_path: str) -> bool:
    try:
        install_binary(archive_path, os.path.join(work_dir, "extract"), install_path)
        return True
    except DownloadError as e:
        LOG.error('[DOWNLOAD] %s', e)
        return False


def _failure_report(cache_available: bool) -> str:
    lines = [
        "Status: FAILED",
        "Reason: All download sources failed",
        "Attempted:",
        "  1. Primary mirror - FAILED",
        f"  2. Cache fallback - {'FAILED' if cache_available else 'NOT AVAILABLE'}",
    ]
    return "\n".join(lines)


def acquire(crc_version: str, layout: HostLayout,
            client_factory: Callable[[], Optional[docker.DockerClient]] = docker_client,
            mirror_policy: RetryPolicy = MIRROR_RETRY,
            simulate_mirror_failure: Optional[bool] = None) -> DownloadResult:
    """
    Downloads and installs CRC, failing over from the mirror to the cache image

    The work directory holding the archive and its extraction is removed on every exit path.

    :param crc_version: Concrete CRC version or `latest`
    :param layout: Host layout with the install path and cache image coordinates
    :param client_factory: Returns a docker client or None
    :param mirror_policy: Retry policy for tier 1
    :param simulate_mirror_failure: Skip tier 1 entirely. Defaults to $SIMULATE_MIRROR_FAILURE
    :raises DownloadError: When both tiers failed
    """
    if simulate_mirror_failure is None:
        simulate_mirror_failure = parse_bool("SIMULATE_MIRROR_FAILURE", os.getenv("SIMULATE_MIRROR_FAILURE"))
    url = mirror_url(crc_version, layout.mirror_url)
    image = layout.cache_image(crc_version)
    attempts: List[DownloadAttempt] = []
    os.makedirs(layout.work_dir, exist_ok=True)
    work_dir = tempfile.mkdtemp(prefix="crc-download-", dir=layout.work_dir)
    archive_path = os.path.join(work_dir, "crc.tar.xz")
    LOG.info('[DOWNLOAD] CRC Download with Cache Failover. CRC Version: %s', crc_version)
    try:
        client = client_factory()
        cache_available = check_cache_available(image, client)
        if cache_available:
            LOG.info('[DOWNLOAD] Pre-flight: cache fallback is available if mirror fails')
        else:
            LOG.warning('[DOWNLOAD] Pre-flight: cache fallback is NOT available for this version, mirror download '
                        'MUST succeed')

        if simulate_mirror_failure:
            LOG.warning('[DOWNLOAD] TESTING MODE: Simulating mirror failure')
        elif download_from_mirror(url, archive_path, attempts, mirror_policy) and \
                _install(archive_path, work_dir, layout.install_path):
            result = DownloadResult(crc_version, DownloadTier.MIRROR, url, layout.install_path, attempts,
                                    cache_available)
            LOG.info('[DOWNLOAD] %s', result.summary())
            return result

        LOG.warning('[DOWNLOAD] Mirror download failed')
        if cache_available and client is not None:
            LOG.info('[DOWNLOAD] Attempting cache fallback...')
            remove_path(archive_path)
            if download_from_cache(image, archive_path, client, attempts) and \
                    _install(archive_path, work_dir, layout.install_path):
                result = DownloadResult(crc_version, DownloadTier.CACHE, image, layout.install_path, attempts,
                                        cache_available)
                LOG.info('[DOWNLOAD] %s', result.summary())
                return result
        else:
            LOG.error('[DOWNLOAD] Cache fallback not available')

        report = _failure_report(cache_available)
        LOG.error('[DOWNLOAD] Download Summary\n%s', report)
        raise DownloadError(
            f"All download sources failed for CRC {crc_version}",
            attempts=attempts,
            hint=(f"Check network connectivity, verify CRC version {crc_version} exists and check the cache "
                  f"builder status: https://{layout.cache_registry}/repository/{layout.cache_image_name}?tab=tags")
        )
    finally:
        remove_path(work_dir)
