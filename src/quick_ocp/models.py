"""
Records passed between the pipeline stages
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional

AUTO = "auto"
LATEST = "latest"


class VersionSource(Enum):
    EXPLICIT = "explicit"
    PINNED = "pinned"
    API_RESOLVED = "api-resolved"
    FALLBACK_LATEST = "fallback-latest"


class DownloadTier(Enum):
    MIRROR = "mirror"
    CACHE = "cache"


class Telemetry(Enum):
    YES = "yes"
    NO = "no"


@dataclass(frozen=True)
class VersionPin:
    ocp_version: str
    crc_version: str

    @property
    def is_auto(self) -> bool:
        return self.crc_version == AUTO


@dataclass(frozen=True)
class KnownIssue:
    ocp_version: str
    broken_crc_versions: List[str] = field(default_factory=list)
    url: Optional[str] = None
    description: Optional[str] = None


@dataclass
class PinTable:
    pins: Dict[str, str] = field(default_factory=dict)
    known_issues: Dict[str, KnownIssue] = field(default_factory=dict)

    @classmethod
    def _deserialize(cls, json_data: Optional[Mapping]) -> "PinTable":
        if not json_data:
            return cls()
        issues = {}
        for ocp_version, issue in (json_data.get("known_issues") or {}).items():
            issues[ocp_version] = KnownIssue(
                ocp_version=ocp_version,
                broken_crc_versions=list(issue.get("broken_crc_versions", [])),
                url=issue.get("url"),
                description=issue.get("description"),
            )
        return cls(
            pins={str(k): str(v) for k, v in (json_data.get("version_pins") or {}).items()},
            known_issues=issues,
        )

    def get(self, ocp_version: str) -> Optional[VersionPin]:
        crc_version = self.pins.get(ocp_version)
        if crc_version is None:
            return None
        return VersionPin(ocp_version=ocp_version, crc_version=crc_version)

    def pinned(self, ocp_version: str) -> Optional[str]:
        """
        Returns the concrete CRC version pinned for `ocp_version`, or None when the entry is missing or `auto`
        """
        pin = self.get(ocp_version)
        if pin is None or pin.is_auto:
            return None
        return pin.crc_version


@dataclass(frozen=True)
class ResolvedVersion:
    ocp_version: str
    crc_version: str
    source: VersionSource


@dataclass
class DownloadAttempt:
    tier: DownloadTier
    retry_count: int
    success: bool = False
    size_bytes: int = 0
    error: Optional[str] = None


@dataclass
class DownloadResult:
    crc_version: str
    tier: DownloadTier
    source: str
    binary_path: str
    attempts: List[DownloadAttempt] = field(default_factory=list)
    cache_available: bool = False

    def summary(self) -> str:
        lines = ["Download Summary"]
        if self.tier == DownloadTier.MIRROR:
            lines.append("Status: SUCCESS")
            lines.append("Source: Primary mirror")
        else:
            lines.append("Status: SUCCESS (via cache failover)")
            lines.append(f"Source: Cache image ({self.source})")
        lines.append(f"CRC Version: {self.crc_version}")
        if self.tier == DownloadTier.CACHE:
            lines.append("Note: Primary mirror was unavailable, cache was used as fallback")
        return "\n".join(lines)


@dataclass
class ClusterReadinessState:
    nodes_ready: bool = False
    essential_pods_ready: bool = False
    operators_available: bool = False

    @property
    def ready(self) -> bool:
        return self.nodes_ready and self.essential_pods_ready and self.operators_available


@dataclass(frozen=True)
class ResourceBudget:
    cpu: int
    memory_mb: int
    disk_gb: int
    telemetry: Telemetry = Telemetry.YES
    network_mode: str = "user"


@dataclass(frozen=True)
class PodStatus:
    namespace: str
    name: str
    ready: str
    status: str

    @property
    def settled(self) -> bool:
        return self.status in ("Running", "Completed")

    def __str__(self):
        return f"{self.name} in {self.namespace} (status: {self.status})"


@dataclass(frozen=True)
class OperatorStatus:
    name: str
    version: str
    available: str
    progressing: str
    degraded: str

    @property
    def settled(self) -> bool:
        return self.available == "True" and self.progressing == "False"


@dataclass
class TrimReport:
    succeeded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def summary(self) -> str:
        return (f"{len(self.succeeded)} changed, {len(self.skipped)} skipped, "
                f"{len(self.failed)} failed")
