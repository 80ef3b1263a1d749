"""
Best-effort tuning of the CI runner

Nothing in here may stop the pipeline. Every step runs through `best_effort`, which logs the failure and
records it on a `HostTuningReport`.
"""
import glob
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import Callable, List, Sequence

from .config import HostLayout
from .errors import BestEffortWarning
from .util import remove_path, run_process

LOG = logging.getLogger(__name__)

DOCKER_DAEMON_JSON = "/etc/docker/daemon.json"
DOCKER_DEFAULT_ROOT = "/var/lib/docker"
SWAP_SIZE = "8G"
SWAPPINESS = 80
OOM_SCORE_ADJ = -500
OOM_PROTECTED_PATTERNS = ("qemu-system-x86_64|qemu-kvm", "^crc .*start|crc-driver")

MEMORY_SYSCTLS = (
    ("vm.dirty_ratio", 5),
    ("vm.dirty_background_ratio", 2),
    ("vm.vfs_cache_pressure", 150),
    ("vm.min_free_kbytes", 65536),
    ("vm.overcommit_memory", 2),
    ("vm.overcommit_ratio", 80),
)

MEMORY_HEAVY_SERVICES = (
    "snapd.service",
    "unattended-upgrades.service",
    "packagekit.service",
    "accounts-daemon.service",
    "udisks2.service",
    "thermald.service",
    "ModemManager.service",
    "avahi-daemon.service",
    "mysql.service",
    "postgresql.service",
    "mongod.service",
    "redis.service",
    "apache2.service",
    "nginx.service",
    "cups.service",
)

STALE_PACKAGES = (
    "firefox",
    "chromium-browser",
    "thunderbird",
    "whoopsie",
    "popularity-contest",
    "apport",
    "snapd",
    "modemmanager",
    "packagekit",
    "unattended-upgrades",
)


@dataclass
class HostTuningReport:
    succeeded: List[str] = field(default_factory=list)
    warnings: List[BestEffortWarning] = field(default_factory=list)

    def summary(self) -> str:
        return f"{len(self.succeeded)} host steps succeeded, {len(self.warnings)} failed"


def best_effort(description: str, func: Callable[[], object], report: HostTuningReport) -> bool:
    """
    Runs `func`, turning any failure into a BestEffortWarning on `report`

    :return bool: True if `func` completed
    """
    try:
        func()
    except Exception as e:
        warning = BestEffortWarning(f"{description}: {e}")
        report.warnings.append(warning)
        LOG.debug('[HOST] %s failed (continuing): %s', description, e)
        return False
    report.succeeded.append(description)
    LOG.debug('[HOST] %s done', description)
    return True


def move_docker_storage(target: str, source: str = DOCKER_DEFAULT_ROOT, daemon_json: str = DOCKER_DAEMON_JSON):
    """
    Points docker's data-root at the large volume, moving any existing data across. Docker is started again
    whether or not the move worked
    """
    run_process(["sudo", "systemctl", "stop", "docker"], check=False)
    try:
        run_process(["sudo", "mkdir", "-p", target])
        if run_process(["sudo", "ls", "-A", source], check=False).stdout.strip():
            LOG.info('[HOST] Moving existing docker data to %s', target)
            run_process(f"sudo mv {source}/* {target}/", check=False)
        try:
            with open(daemon_json) as f:
                daemon_config = json.load(f)
        except (OSError, ValueError):
            daemon_config = {}
        daemon_config["data-root"] = target
        with tempfile.NamedTemporaryFile('w', suffix=".json", delete=False) as f:
            json.dump(daemon_config, f, indent=2)
            staged = f.name
        try:
            run_process(["sudo", "cp", staged, daemon_json])
        finally:
            remove_path(staged)
    finally:
        run_process(["sudo", "systemctl", "start", "docker"])


def ensure_swap(swapfile: str, size: str = SWAP_SIZE, swappiness: int = SWAPPINESS):
    """
    Creates a swap file when no swap is active, then leans the kernel towards using it
    """
    active = run_process(["sudo", "swapon", "--show"], check=False).stdout.strip()
    if active:
        LOG.info('[HOST] Swap already active; skipping creation')
    else:
        LOG.info('[HOST] No active swap detected; creating %s', swapfile)
        if run_process(["sudo", "fallocate", "-l", size, swapfile], check=False).returncode != 0:
            count = int(size.rstrip("G")) * 1024
            run_process(["sudo", "dd", "if=/dev/zero", f"of={swapfile}", "bs=1M", f"count={count}"])
        run_process(["sudo", "chmod", "600", swapfile])
        run_process(["sudo", "mkswap", swapfile])
        run_process(["sudo", "swapon", swapfile])
    run_process(["sudo", "sysctl", "-w", f"vm.swappiness={swappiness}"])


def tune_memory(sysctls: Sequence = MEMORY_SYSCTLS):
    for key, value in sysctls:
        run_process(["sudo", "sysctl", "-w", f"{key}={value}"])


def stop_services(services: Sequence[str] = MEMORY_HEAVY_SERVICES):
    for service in services:
        run_process(["sudo", "systemctl", "stop", service], check=False)
        run_process(["sudo", "systemctl", "disable", service], check=False)


def remove_packages(packages: Sequence[str] = STALE_PACKAGES):
    run_process(["sudo", "apt-get", "remove", "-y", "--auto-remove", *packages])
    run_process(["sudo", "apt-get", "clean"])


def protect_from_oom(patterns: Sequence[str] = OOM_PROTECTED_PATTERNS, score: int = OOM_SCORE_ADJ) -> List[str]:
    """
    Lowers the OOM killer score of the VM and CRC daemon processes

    :return: PIDs that were adjusted
    """
    adjusted = []
    for pattern in patterns:
        pids = run_process(["pgrep", "-f", pattern], check=False).stdout.split()
        for pid in pids:
            proc = run_process(f"echo {score} | sudo tee /proc/{pid}/oom_score_adj", check=False)
            if proc.returncode == 0:
                adjusted.append(pid)
                LOG.info('[HOST] Adjusted oom_score_adj for PID %s', pid)
    return adjusted


def cleanup_after_start(layout: HostLayout, keep_bundles: bool = False):
    """
    Reclaims disk once the cluster is up
    """
    if not keep_bundles:
        remove_path(layout.bundle_stash)
    for leftover in glob.glob(os.path.join(layout.work_dir, "crc-download-*")):
        remove_path(leftover)
    run_process(["docker", "system", "prune", "-f", "--volumes"], check=False)
    run_process(["sudo", "apt-get", "clean"], check=False)


def prepare_host(layout: HostLayout, report: HostTuningReport) -> HostTuningReport:
    """
    Frees disk and memory before CRC is started
    """
    LOG.info('[HOST] Preparing runner: disk, swap and memory tuning')
    best_effort("move docker storage", lambda: move_docker_storage(os.path.join(layout.large_volume, "docker-storage")),
                report)
    best_effort("create swap", lambda: ensure_swap(os.path.join(layout.large_volume, "swapfile")), report)
    best_effort("tune memory sysctls", tune_memory, report)
    best_effort("stop memory heavy services", stop_services, report)
    best_effort("remove stale packages", remove_packages, report)
    LOG.info('[HOST] %s', report.summary())
    return report
