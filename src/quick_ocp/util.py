"""
Set of utility functions shared by the pipeline stages
"""
import logging
import os
import shutil
import subprocess
import tarfile
from typing import Mapping, Optional, Sequence, Union

import requests

LOG = logging.getLogger(__name__)
log = LOG  # alias

DOWNLOAD_CHUNK_SIZE = 1024 * 1024


def run_process(cmd: Union[str, Sequence[str]], check: bool = True, env: Optional[Mapping[str, str]] = None):
    """
    Run a command as a sub-process

    :param cmd: Command to run. A string runs through the shell, a sequence runs directly
    :param check: Raise CalledProcessError on a nonzero exit
    :param env: Extra environment variables for the command
    :return: The completed sub-process object
    """
    log.debug("running cmd: %s", cmd)
    proc_env = None
    if env:
        proc_env = dict(os.environ)
        proc_env.update(env)
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, shell=isinstance(cmd, str), env=proc_env)
        log.debug(f'Return code: {proc.returncode}')
        log.debug(f'Stdout: {proc.stdout}')
        log.debug(f'Stderr: {proc.stderr}')
        if check:
            proc.check_returncode()
        return proc
    except subprocess.CalledProcessError as e:
        log.error("Error Detected on cmd {} with error {}".format(e.cmd, e.stderr))
        log.error(e.stdout)
        raise
    except OSError as e:
        log.error("Error Detected on cmd {}".format(cmd))
        log.error("OSError: {}".format(e.errno))
        log.error(e.strerror)
        log.error(e.filename)
        raise


def url_retrieve(url: str, download_path: str, timeout: float = 60) -> int:
    """
    Stream a URL to a local file

    :param url: The URL to fetch
    :param download_path: Path to write the response body to
    :param timeout: Connect and read timeout in seconds
    :return int: Number of bytes written
    :raises requests.RequestException: On connection problems or an HTTP error status
    """
    log.debug("Downloading from URL: {} to {}".format(url, download_path))
    written = 0
    with requests.get(url, stream=True, timeout=timeout, allow_redirects=True) as response:
        response.raise_for_status()
        with open(download_path, 'wb') as f:
            for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                if chunk:
                    f.write(chunk)
                    written += len(chunk)
    return written


def url_reachable(url: str, timeout: float = 15) -> bool:
    """
    HEAD request that follows redirects. True when the final status is not an error
    """
    try:
        response = requests.head(url, timeout=timeout, allow_redirects=True)
        return response.ok
    except requests.RequestException as e:
        log.debug("HEAD %s failed: %s", url, e)
        return False


def file_size(path: str) -> int:
    try:
        return os.path.getsize(path)
    except OSError:
        return 0


def remove_path(path: str):
    """
    Removes a file, symlink or directory tree if it exists
    """
    if os.path.islink(path) or os.path.isfile(path):
        os.remove(path)
    elif os.path.isdir(path):
        shutil.rmtree(path, ignore_errors=True)


def extract_tarball(archive_path: str, destination: str):
    log.info("Extracting %s...", archive_path)
    with tarfile.open(archive_path) as tar:
        if hasattr(tarfile, "data_filter"):
            # refuses members and links that would land outside `destination`
            tar.extractall(path=destination, filter="data")
        else:
            tar.extractall(path=destination)


def write_outputs(values: Mapping[str, str], output_path: Optional[str] = None):
    """
    Appends `key=value` lines to the GitHub step output file

    :param values: Outputs to write
    :param output_path: Defaults to $GITHUB_OUTPUT. Outputs are only logged when neither is set
    """
    output_path = output_path or os.getenv('GITHUB_OUTPUT')
    for key, value in values.items():
        log.info("%s=%s", key, value)
    if not output_path:
        log.debug("GITHUB_OUTPUT is not set, outputs were only logged")
        return
    with open(output_path, 'a') as f:
        for key, value in values.items():
            f.write(f"{key}={value}\n")
