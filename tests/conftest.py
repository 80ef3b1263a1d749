"""Shared fixtures for the quick-ocp test suite."""

import os
import subprocess
from unittest.mock import MagicMock

import pytest

from quick_ocp.config import HostLayout
from quick_ocp.retry import RetryPolicy


def completed(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class FakeRunner:
    """Stands in for `run_process`. Answers by the longest matching command prefix.

    A response can be a CompletedProcess, an exception to raise, a callable taking the command, or a list of
    those consumed one per call (the last one repeats).
    """

    def __init__(self):
        self.responses = {}
        self.calls = []

    def on(self, prefix, response):
        self.responses[prefix] = response
        return self

    def commands(self):
        return [c if isinstance(c, str) else " ".join(c) for c in self.calls]

    def ran(self, prefix):
        return [c for c in self.commands() if c.startswith(prefix)]

    def __call__(self, cmd, check=True, env=None):
        self.calls.append(cmd)
        line = cmd if isinstance(cmd, str) else " ".join(cmd)
        matches = [p for p in self.responses if line.startswith(p)]
        if not matches:
            return completed()
        response = self.responses[max(matches, key=len)]
        if isinstance(response, list):
            response = response.pop(0) if len(response) > 1 else response[0]
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = response(cmd)
        if check and response.returncode != 0:
            raise subprocess.CalledProcessError(response.returncode, cmd, response.stdout, response.stderr)
        return response


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the runner's own environment out of the tests."""
    for key in list(os.environ):
        if key.startswith("INPUT_"):
            monkeypatch.delenv(key)
    for key in ("GITHUB_OUTPUT", "GITHUB_TOKEN", "SIMULATE_MIRROR_FAILURE", "CACHE_REGISTRY", "CACHE_IMAGE_NAME"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def no_sleep():
    return MagicMock()


@pytest.fixture
def fast_policy(no_sleep):
    """Three attempts, no real sleeping."""
    return RetryPolicy(max_attempts=3, interval=10, sleep=no_sleep)


@pytest.fixture
def layout(tmp_path):
    volume = tmp_path / "mnt"
    volume.mkdir()
    (tmp_path / "bin").mkdir()
    return HostLayout(
        crc_home=str(tmp_path / "home" / ".crc"),
        large_volume=str(volume),
        install_path=str(tmp_path / "bin" / "crc"),
        work_dir=str(tmp_path / "work"),
    )
