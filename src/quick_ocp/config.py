"""
Action inputs and host layout

Inputs arrive as strings (GitHub passes every action input as `INPUT_<NAME>`). They are parsed here, once, into
real types so the rest of the pipeline never compares "true"/"false" strings.
"""
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from importlib import resources
from typing import Mapping, Optional

from .errors import ValidationError
from .models import LATEST, PinTable, ResourceBudget, Telemetry

LOG = logging.getLogger(__name__)

DEFAULT_MEMORY = "10752"
DEFAULT_CPU = "4"
DEFAULT_DISK_SIZE = "31"
DEFAULT_TELEMETRY = "yes"
DEFAULT_OCP_VERSION = LATEST
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_CACHE_REGISTRY = "quay.io"
DEFAULT_CACHE_IMAGE_NAME = "bapalm/quick-ocp-cache"
DEFAULT_MIRROR_URL = "https://mirror.openshift.com/pub/openshift-v4/clients/crc/"
DEFAULT_INSTALL_PATH = "/usr/local/bin/crc"

_TRUE = ("true", "yes", "1", "on")
_FALSE = ("false", "no", "0", "off")


def parse_bool(name: str, value: Optional[str], default: bool = False) -> bool:
    if value is None or not str(value).strip():
        return default
    lowered = str(value).strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValidationError(f"Input {name} must be true or false, got '{value}'")


def parse_int(name: str, value: Optional[str], default: str) -> int:
    raw = default if value in (None, "") else value
    try:
        parsed = int(str(raw).strip())
    except ValueError:
        raise ValidationError(f"Input {name} must be a whole number, got '{raw}'")
    if parsed <= 0:
        raise ValidationError(f"Input {name} must be greater than zero, got '{raw}'")
    return parsed


def parse_telemetry(value: Optional[str]) -> Telemetry:
    raw = (value or DEFAULT_TELEMETRY).strip().lower()
    try:
        return Telemetry(raw)
    except ValueError:
        raise ValidationError(f"Input enableTelemetry must be 'yes' or 'no', got '{value}'")


def parse_log_level(value: Optional[str]) -> str:
    level = (value or DEFAULT_LOG_LEVEL).strip().upper()
    if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ValidationError(f"Input logLevel must be one of DEBUG, INFO, WARNING, ERROR, got '{value}'")
    return level


@dataclass
class HostLayout:
    """
    Where things live on the runner

    :param crc_home: CRC state directory, normally ~/.crc
    :param large_volume: Mount point of the bigger secondary disk
    :param install_path: Final location of the `crc` binary
    :param work_dir: Parent directory for transient downloads
    """
    crc_home: str = field(default_factory=lambda: os.path.join(os.path.expanduser("~"), ".crc"))
    large_volume: str = "/mnt"
    install_path: str = DEFAULT_INSTALL_PATH
    work_dir: str = field(default_factory=tempfile.gettempdir)
    mirror_url: str = DEFAULT_MIRROR_URL
    cache_registry: str = DEFAULT_CACHE_REGISTRY
    cache_image_name: str = DEFAULT_CACHE_IMAGE_NAME

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "HostLayout":
        environ = os.environ if environ is None else environ
        layout = cls()
        layout.cache_registry = environ.get("CACHE_REGISTRY") or DEFAULT_CACHE_REGISTRY
        layout.cache_image_name = environ.get("CACHE_IMAGE_NAME") or DEFAULT_CACHE_IMAGE_NAME
        return layout

    @property
    def bundle_stash(self) -> str:
        return os.path.join(self.crc_home, "bundletmp")

    def cache_image(self, crc_version: str) -> str:
        return f"{self.cache_registry}/{self.cache_image_name}:{crc_version}"


@dataclass
class ActionInputs:
    pull_secret: Optional[str]
    budget: ResourceBudget
    desired_ocp_version: str = DEFAULT_OCP_VERSION
    crc_version: Optional[str] = None
    bundle_cache: bool = False
    wait_for_pods: bool = False
    wait_for_operators: bool = False
    fallback_to_latest: bool = False
    trim_cluster: bool = True
    grant_privileged_scc: bool = True
    tune_host: bool = True
    log_level: str = DEFAULT_LOG_LEVEL
    version_pins_file: Optional[str] = None


def _input(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = environ.get(f"INPUT_{name.upper()}")
    if value is None:
        return None
    return value.strip()


def load_inputs(environ: Optional[Mapping[str, str]] = None, overrides: Optional[Mapping[str, str]] = None) -> ActionInputs:
    """
    Builds ActionInputs from `INPUT_*` environment variables. `overrides` (keyed by input name, e.g. crcCpu) win
    over the environment, which is how CLI flags are applied

    :raises ValidationError: On values that can not be parsed
    """
    environ = dict(os.environ if environ is None else environ)
    for name, value in (overrides or {}).items():
        if value is not None:
            environ[f"INPUT_{name.upper()}"] = str(value)

    def get(name):
        return _input(environ, name)

    budget = ResourceBudget(
        cpu=parse_int("crcCpu", get("crcCpu"), DEFAULT_CPU),
        memory_mb=parse_int("crcMemory", get("crcMemory"), DEFAULT_MEMORY),
        disk_gb=parse_int("crcDiskSize", get("crcDiskSize"), DEFAULT_DISK_SIZE),
        telemetry=parse_telemetry(get("enableTelemetry")),
    )
    inputs = ActionInputs(
        pull_secret=get("ocpPullSecret") or None,
        budget=budget,
        desired_ocp_version=get("desiredOCPVersion") or DEFAULT_OCP_VERSION,
        crc_version=get("crcVersion") or None,
        bundle_cache=parse_bool("bundleCache", get("bundleCache")),
        wait_for_pods=parse_bool("waitForPodsReady", get("waitForPodsReady")),
        wait_for_operators=parse_bool("waitForOperatorsReady", get("waitForOperatorsReady")),
        fallback_to_latest=parse_bool("fallbackToLatest", get("fallbackToLatest")),
        trim_cluster=parse_bool("trimCluster", get("trimCluster"), default=True),
        grant_privileged_scc=parse_bool("grantPrivilegedScc", get("grantPrivilegedScc"), default=True),
        tune_host=parse_bool("tuneHost", get("tuneHost"), default=True),
        log_level=parse_log_level(get("logLevel")),
        version_pins_file=get("versionPinsFile") or None,
    )
    LOG.debug('Loaded inputs: ocp=%s crc=%s budget=%s pull secret is %s set', inputs.desired_ocp_version,
              inputs.crc_version, inputs.budget, "" if inputs.pull_secret else "not")
    return inputs


def load_pin_table(path: Optional[str] = None) -> PinTable:
    """
    Reads the version pin table. Without a path, the table shipped with the package is used

    :raises ValidationError: If the file is missing or is not valid JSON
    """
    try:
        if path:
            with open(path) as f:
                data = json.load(f)
        else:
            data = json.loads((resources.files("quick_ocp") / "data" / "version_pins.json").read_text())
    except (OSError, ValueError) as e:
        raise ValidationError(f"Could not read version pin table {path or '(bundled)'}: {e}")
    LOG.debug('Version pins: %s', data.get("version_pins"))
    return PinTable._deserialize(data)
