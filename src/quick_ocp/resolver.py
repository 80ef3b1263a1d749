"""
Decides which CRC release to install for the requested OpenShift version

Priority: explicit CRC version > pinned version > GitHub release lookup. `latest` short-circuits to the mirror's
`latest` alias unless it is pinned.
"""
import logging
import os
import re
from typing import Callable, Iterable, List, Mapping, Optional, Tuple

import requests

from .errors import SUPPORTED_VERSIONS_HINT, ResolutionError, ValidationError
from .models import LATEST, PinTable, ResolvedVersion, VersionSource
from .retry import RetryPolicy, attempt
from .util import run_process

LOG = logging.getLogger(__name__)

GITHUB_RELEASES_API = "https://api.github.com/repos/crc-org/crc/releases?per_page=100"
MINIMUM_OCP_VERSION = "4.18"
SUPPORTED_OCP_RE = re.compile(r'^4\.(1[8-9]|[2-9][0-9])$')
API_RETRY = RetryPolicy(max_attempts=10, interval=3)

# "4.2" arrives when a YAML/number parser has eaten the trailing zero of "4.20"
_ELIDED_ZERO_RE = re.compile(r'^(?P<major>[0-9]+)\.(?P<minor>[2-9])$')
_RELEASE_NAME_RE = re.compile(r'-(?P<minor>[0-9]+\.[0-9]+)\.[0-9]+$')
_RELEASE_BODY_RE = re.compile(r'OpenShift\s+(?P<minor>[0-9]+\.[0-9]+)\.[0-9]+')
_CRC_VERSION_RE = re.compile(r'^CRC version:\s*(?P<version>\S+)', re.MULTILINE)
_OCP_VERSION_RE = re.compile(r'^OpenShift version:\s*(?P<version>\S+)', re.MULTILINE)


def normalize_ocp_version(version: str) -> str:
    """
    Restores a trailing zero lost to numeric parsing: "4.2" becomes "4.20". Two-digit minors are returned as is
    """
    version = str(version).strip()
    match = _ELIDED_ZERO_RE.match(version)
    if match:
        normalized = f"{match.group('major')}.{match.group('minor')}0"
        LOG.info('[RESOLVE] Interpreting OCP version %s as %s', version, normalized)
        return normalized
    return version


def validate_ocp_version(version: str) -> str:
    if not SUPPORTED_OCP_RE.match(version):
        raise ValidationError(
            f"Only OpenShift versions {MINIMUM_OCP_VERSION} and above are supported, got '{version}'",
            hint=f"Use 'latest' or a minor version such as 4.19. {SUPPORTED_VERSIONS_HINT}"
        )
    return version


def fetch_releases(url: str = GITHUB_RELEASES_API, policy: RetryPolicy = API_RETRY,
                   token: Optional[str] = None, timeout: float = 30) -> List[Mapping]:
    """
    Lists CRC releases from the GitHub API. An empty or null response counts as a failed attempt

    :param url: Release listing endpoint
    :param policy: Retry policy for the request
    :param token: Optional GitHub token, defaults to $GITHUB_TOKEN, to avoid anonymous rate limits
    :param timeout: Request timeout in seconds
    :raises ResolutionError: When every attempt failed
    """
    headers = {"Accept": "application/vnd.github+json"}
    token = token or os.getenv("GITHUB_TOKEN")
    if token:
        headers["Authorization"] = f"Bearer {token}"

    def _get():
        response = requests.get(url, headers=headers, timeout=timeout)
        response.raise_for_status()
        releases = response.json()
        if not releases:
            raise ValueError("Empty release listing")
        return releases

    try:
        return attempt(_get, policy, retry_on=(requests.RequestException, ValueError))
    except (requests.RequestException, ValueError) as e:
        raise ResolutionError(
            f"Failed to fetch CRC releases from GitHub API after {policy.max_attempts} attempts: {e}",
            hint="Check connectivity to api.github.com or set crcVersion explicitly"
        )


def release_ocp_minor(release: Mapping) -> Optional[str]:
    """
    Works out which OCP minor version a CRC release ships.

    The release name ending in `-X.Y.Z` wins, the free text `OpenShift X.Y.Z` in the body is the fallback
    """
    name = release.get("name") or ""
    match = _RELEASE_NAME_RE.search(name)
    if match:
        return match.group("minor")
    match = _RELEASE_BODY_RE.search(release.get("body") or "")
    if match:
        return match.group("minor")
    return None


def select_release(releases: Iterable[Mapping], ocp_version: str) -> Optional[str]:
    """
    :return: CRC version (tag without the leading `v`) of the newest release for `ocp_version`, or None
    """
    matching = [r for r in releases if release_ocp_minor(r) == ocp_version]
    if not matching:
        return None
    newest = max(matching, key=lambda r: r.get("published_at") or "")
    LOG.debug('[RESOLVE] Newest release for OCP %s: %s (%s)', ocp_version, newest.get("name"),
              newest.get("html_url"))
    return re.sub(r'^v', '', newest["tag_name"])


def _warn_known_issues(pin_table: PinTable, resolved: ResolvedVersion):
    issue = pin_table.known_issues.get(resolved.ocp_version)
    if issue is None:
        return
    if resolved.crc_version in issue.broken_crc_versions:
        LOG.warning('[RESOLVE] CRC %s is known to be broken for OCP %s: %s %s', resolved.crc_version,
                    resolved.ocp_version, issue.description or "", issue.url or "")
    else:
        LOG.info('[RESOLVE] Known issues recorded for OCP %s: %s %s', resolved.ocp_version,
                 issue.description or "", issue.url or "")


def resolve(desired_ocp_version: str, explicit_crc_version: Optional[str], pin_table: PinTable,
            fetch: Callable[[], List[Mapping]] = fetch_releases,
            allow_latest_fallback: bool = False) -> ResolvedVersion:
    """
    Resolves the CRC version to install

    :param desired_ocp_version: OCP minor version (e.g. 4.19) or `latest`
    :param explicit_crc_version: Overrides everything else when set
    :param pin_table: Known-good CRC versions per OCP version
    :param fetch: Returns the GitHub release listing. Only called when nothing is pinned
    :param allow_latest_fallback: Degrade to the `latest` CRC release instead of failing when the lookup fails
    :raises ValidationError: On an unsupported OCP version
    :raises ResolutionError: When no release could be found
    """
    ocp_version = normalize_ocp_version(desired_ocp_version or LATEST)
    if explicit_crc_version:
        LOG.info('[RESOLVE] Using explicitly requested CRC version %s', explicit_crc_version)
        return ResolvedVersion(ocp_version, explicit_crc_version, VersionSource.EXPLICIT)

    if ocp_version == LATEST:
        pinned = pin_table.pinned(LATEST)
        if pinned:
            resolved = ResolvedVersion(LATEST, pinned, VersionSource.PINNED)
        else:
            resolved = ResolvedVersion(LATEST, LATEST, VersionSource.FALLBACK_LATEST)
        LOG.info('[RESOLVE] OCP latest -> CRC %s (%s)', resolved.crc_version, resolved.source.value)
        return resolved

    validate_ocp_version(ocp_version)
    pinned = pin_table.pinned(ocp_version)
    if pinned:
        resolved = ResolvedVersion(ocp_version, pinned, VersionSource.PINNED)
        LOG.info('[RESOLVE] OCP %s is pinned to CRC %s', ocp_version, pinned)
        _warn_known_issues(pin_table, resolved)
        return resolved

    LOG.info('[RESOLVE] Fetching CRC version for OCP %s...', ocp_version)
    try:
        crc_version = select_release(fetch(), ocp_version)
        if crc_version is None:
            raise ResolutionError(
                f"No CRC release found for OpenShift version {ocp_version}",
                hint=f"Please choose a supported OCP version. {SUPPORTED_VERSIONS_HINT}"
            )
    except ResolutionError as e:
        if not allow_latest_fallback:
            raise
        LOG.warning('[RESOLVE] %s. Falling back to the latest CRC release', e)
        return ResolvedVersion(ocp_version, LATEST, VersionSource.FALLBACK_LATEST)

    resolved = ResolvedVersion(ocp_version, crc_version, VersionSource.API_RESOLVED)
    LOG.info('[RESOLVE] OCP %s -> CRC %s', ocp_version, crc_version)
    _warn_known_issues(pin_table, resolved)
    return resolved


def read_installed_versions(crc: str = "crc") -> Tuple[Optional[str], Optional[str]]:
    """
    Parses `crc version` output

    :return tuple(crc_version, ocp_version): Either can be None if the line is missing
    """
    output = run_process([crc, "version"]).stdout
    crc_match = _CRC_VERSION_RE.search(output)
    ocp_match = _OCP_VERSION_RE.search(output)
    return (crc_match.group("version") if crc_match else None,
            ocp_match.group("version") if ocp_match else None)
