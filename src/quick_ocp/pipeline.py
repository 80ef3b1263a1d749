"""
The stages of a `quick-ocp run`, in order

Fatal stages raise a `QuickOcpError`. Host tuning and cleanup are best-effort and only ever add warnings.
"""
import logging
import subprocess
from dataclasses import dataclass, field
from typing import Dict, Optional

from . import bringup, download, host, readiness, resolver, trimmer
from .config import ActionInputs, HostLayout, load_pin_table
from .errors import ValidationError
from .models import DownloadResult, ResolvedVersion, TrimReport

LOG = logging.getLogger(__name__)


@dataclass
class RunResult:
    resolved: ResolvedVersion
    download: Optional[DownloadResult] = None
    trim: Optional[TrimReport] = None
    scc: Optional[TrimReport] = None
    host_report: host.HostTuningReport = field(default_factory=host.HostTuningReport)
    installed_crc_version: Optional[str] = None
    installed_ocp_version: Optional[str] = None

    def outputs(self) -> Dict[str, str]:
        values = {
            "crc_version": self.resolved.crc_version,
            "version_source": self.resolved.source.value,
        }
        if self.installed_crc_version:
            values["installed_crc_version"] = self.installed_crc_version
        if self.installed_ocp_version:
            values["ocp_version"] = self.installed_ocp_version
        return values


def resolve_stage(inputs: ActionInputs) -> ResolvedVersion:
    pin_table = load_pin_table(inputs.version_pins_file)
    return resolver.resolve(inputs.desired_ocp_version, inputs.crc_version, pin_table,
                            allow_latest_fallback=inputs.fallback_to_latest)


def install_stage(crc_version: str, layout: HostLayout) -> DownloadResult:
    download.check_connectivity()
    return download.acquire(crc_version, layout)


def bringup_stage(inputs: ActionInputs, layout: HostLayout, crc: str):
    """
    Configures, sets up and starts CRC. The bundle cache is restored before setup so setup can skip the download
    """
    bringup.configure(inputs.budget, crc)
    bringup.relocate_state_dirs(layout)
    if inputs.bundle_cache:
        bringup.restore_bundles(layout)
    bringup.setup(crc)
    bringup.start(inputs.pull_secret, crc)


def wait_stage(oc: str, pods: bool, operators: bool):
    readiness.wait_for_node_ready(oc)
    if pods:
        readiness.wait_for_pods_ready(oc)
    if operators:
        readiness.wait_for_operators(oc)


def run(inputs: ActionInputs, layout: HostLayout) -> RunResult:
    """
    Resolve, download, start, wait and trim

    :param inputs: Parsed action inputs
    :param layout: Where things live on the runner
    :return RunResult: Everything the step outputs are built from
    :raises QuickOcpError: On any fatal stage failure
    """
    if not inputs.pull_secret:
        raise ValidationError("Input ocpPullSecret is required to start the cluster",
                              hint="Pass a pull secret from https://console.redhat.com/openshift/create/local "
                                   "through a repository secret")
    result = RunResult(resolved=resolve_stage(inputs))
    LOG.info('Resolved CRC %s for OCP %s (%s)', result.resolved.crc_version, result.resolved.ocp_version,
             result.resolved.source.value)
    if inputs.tune_host:
        host.prepare_host(layout, result.host_report)

    result.download = install_stage(result.resolved.crc_version, layout)
    crc = result.download.binary_path
    bringup_stage(inputs, layout, crc)

    if inputs.tune_host:
        host.best_effort("protect CRC from the OOM killer", host.protect_from_oom, result.host_report)

    oc = readiness.oc_binary(layout)
    wait_stage(oc, inputs.wait_for_pods, inputs.wait_for_operators)

    if inputs.grant_privileged_scc:
        result.scc = trimmer.grant_privileged_scc(oc)
    if inputs.trim_cluster:
        result.trim = trimmer.trim_cluster(oc)
    if inputs.bundle_cache:
        host.best_effort("stash CRC bundles", lambda: bringup.stash_bundles(layout), result.host_report)
    host.best_effort("clean up after start", lambda: host.cleanup_after_start(layout, inputs.bundle_cache),
                     result.host_report)
    try:
        result.installed_crc_version, result.installed_ocp_version = resolver.read_installed_versions(crc)
    except (subprocess.CalledProcessError, OSError) as e:
        LOG.warning('Could not read installed versions from `crc version`: %s', e)
    LOG.info('[HOST] %s', result.host_report.summary())
    return result
