import json
import os
import subprocess

import pytest

from conftest import completed
from quick_ocp import host
from quick_ocp.errors import BestEffortWarning


@pytest.fixture
def fake_run(runner, monkeypatch):
    monkeypatch.setattr("quick_ocp.host.run_process", runner)
    return runner


def test_best_effort_records_failure():
    report = host.HostTuningReport()

    def broken():
        raise subprocess.CalledProcessError(1, "sysctl")

    assert host.best_effort("tune", broken, report) is False
    assert host.best_effort("noop", lambda: None, report) is True
    assert report.succeeded == ["noop"]
    assert len(report.warnings) == 1
    assert isinstance(report.warnings[0], BestEffortWarning)
    assert str(report.warnings[0]).startswith("tune: ")
    assert report.summary() == "1 host steps succeeded, 1 failed"


def test_prepare_host_never_raises(fake_run, layout):
    fake_run.on("sudo", OSError(13, "Permission denied"))
    report = host.prepare_host(layout, host.HostTuningReport())
    assert len(report.warnings) == 5
    assert report.succeeded == []


def test_ensure_swap_skips_when_active(fake_run):
    fake_run.on("sudo swapon --show", completed("/swap.img file 4G 0B -2\n"))
    host.ensure_swap("/mnt/swapfile")
    assert fake_run.ran("sudo fallocate") == []
    assert fake_run.ran("sudo sysctl -w vm.swappiness=80")


def test_ensure_swap_falls_back_to_dd(fake_run):
    fake_run.on("sudo swapon --show", completed(""))
    fake_run.on("sudo fallocate", completed(returncode=1))
    host.ensure_swap("/mnt/swapfile")
    assert fake_run.ran("sudo dd if=/dev/zero of=/mnt/swapfile bs=1M count=8192")
    assert fake_run.ran("sudo mkswap /mnt/swapfile")
    assert fake_run.ran("sudo swapon /mnt/swapfile")


def test_tune_memory(fake_run):
    host.tune_memory()
    assert "sudo sysctl -w vm.vfs_cache_pressure=150" in fake_run.commands()
    assert len(fake_run.calls) == len(host.MEMORY_SYSCTLS)


def test_move_docker_storage_sets_data_root(fake_run, tmp_path):
    daemon_json = tmp_path / "daemon.json"
    daemon_json.write_text(json.dumps({"log-driver": "json-file"}))
    staged = {}

    def copy(cmd):
        with open(cmd[2]) as f:
            staged.update(json.load(f))
        return completed()

    fake_run.on("sudo cp", copy)
    host.move_docker_storage("/mnt/docker-storage", daemon_json=str(daemon_json))
    assert staged == {"log-driver": "json-file", "data-root": "/mnt/docker-storage"}
    assert fake_run.commands()[-1] == "sudo systemctl start docker"
    assert not os.path.exists(fake_run.ran("sudo cp")[0].split()[2])


def test_protect_from_oom(fake_run):
    fake_run.on("pgrep -f qemu", completed("123\n456\n"))
    fake_run.on("pgrep -f ^crc", completed(returncode=1))
    fake_run.on("echo -500 | sudo tee /proc/456", completed(returncode=1))
    assert host.protect_from_oom() == ["123"]


def test_cleanup_after_start(fake_run, layout):
    os.makedirs(layout.bundle_stash)
    os.makedirs(os.path.join(layout.work_dir, "crc-download-abc"))
    host.cleanup_after_start(layout, keep_bundles=True)
    assert os.path.isdir(layout.bundle_stash)
    assert os.listdir(layout.work_dir) == []
    assert fake_run.ran("docker system prune")
    host.cleanup_after_start(layout)
    assert not os.path.exists(layout.bundle_stash)
