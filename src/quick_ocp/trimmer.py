"""
Scales a freshly started cluster down to what CI jobs need

The targets live in `data/trim_targets.yaml`. Every change is checked for existence first and recorded on a
`TrimReport`. A failed change never stops the rest of the trim.
"""
import io
import json
import logging
import subprocess
from importlib import resources
from typing import Any, List, Mapping, Optional

from ruamel.yaml import YAML

from .models import TrimReport
from .util import run_process

LOG = logging.getLogger(__name__)

REMOVED = "Removed"
CLUSTER_VERSION = "clusterversion/version"
PRIVILEGED_SCC = "privileged"
# (subject kind, subject) pairs allowed to run privileged pods
PRIVILEGED_SCC_GRANTS = (("user", "user"), ("group", "system:authenticated"))


def load_targets(path: Optional[str] = None) -> Mapping[str, Any]:
    """
    :param path: Target file to load instead of the one shipped with the package
    """
    yaml = YAML(typ='safe')
    if path:
        with open(path) as f:
            return yaml.load(f)
    return yaml.load((resources.files("quick_ocp") / "data" / "trim_targets.yaml").read_text())


def render_patch(patch: Any) -> str:
    """
    Renders a patch as single line flow style YAML for `oc patch -p`
    """
    yaml = YAML(typ='safe')
    yaml.default_flow_style = True
    yaml.width = 4096
    stream = io.StringIO()
    yaml.dump(patch, stream)
    return stream.getvalue().strip()


def _ns(namespace: Optional[str]) -> List[str]:
    return ["-n", namespace] if namespace else []


def resource_exists(oc: str, resource: str, namespace: Optional[str] = None) -> bool:
    return run_process([oc, "get", resource, *_ns(namespace)], check=False).returncode == 0


def _jsonpath(oc: str, resource: str, path: str, namespace: Optional[str] = None) -> str:
    return run_process([oc, "get", resource, *_ns(namespace), "-o", f"jsonpath={path}"], check=False).stdout.strip()


def _apply(report: TrimReport, item: str, cmd: List[str]) -> bool:
    try:
        run_process(cmd)
    except (subprocess.CalledProcessError, OSError) as e:
        LOG.warning('[TRIM] %s failed: %s', item, e)
        report.failed.append(item)
        return False
    report.succeeded.append(item)
    return True


def remove_managed_component(oc: str, resource: str, report: TrimReport):
    """
    Sets `managementState: Removed` so the owning operator stops reconciling the component back up
    """
    item = f"{resource} managementState={REMOVED}"
    if not resource_exists(oc, resource):
        LOG.info('[TRIM] %s not found; skipping', resource)
        report.skipped.append(item)
        return
    if _jsonpath(oc, resource, "{.spec.managementState}") == REMOVED:
        LOG.info('[TRIM] %s already set to managementState=%s', resource, REMOVED)
        report.skipped.append(item)
        return
    patch = render_patch({"spec": {"managementState": REMOVED}})
    if _apply(report, item, [oc, "patch", resource, "--type=merge", "-p", patch]):
        LOG.info('[TRIM] Patched %s to managementState=%s', resource, REMOVED)


def disable_default_sources(oc: str, hub: Mapping[str, Any], report: TrimReport):
    """
    Turns off the default OperatorHub catalogs and deletes their catalog sources
    """
    resource = hub["resource"]
    item = f"{resource} disableAllDefaultSources"
    if not resource_exists(oc, resource):
        LOG.info('[TRIM] %s not found; skipping OperatorHub patch', resource)
        report.skipped.append(item)
        return
    patch = render_patch({"spec": {"disableAllDefaultSources": True}})
    if not _apply(report, item, [oc, "patch", resource, "--type=merge", "-p", patch]):
        return
    sources = [f"catalogsource/{name}" for name in hub.get("catalog_sources") or []]
    if sources:
        _apply(report, "delete default catalog sources",
               [oc, "delete", *sources, *_ns(hub.get("namespace")), "--ignore-not-found=true"])


def _cluster_version_overrides(oc: str) -> Optional[List[Mapping[str, Any]]]:
    output = run_process([oc, "get", CLUSTER_VERSION, "-o", "json"]).stdout
    return json.loads(output).get("spec", {}).get("overrides")


def add_cvo_override(oc: str, override: Mapping[str, Any], report: TrimReport):
    """
    Marks a component unmanaged in the ClusterVersion so the CVO leaves it scaled down. Only added when missing
    """
    keys = ("kind", "group", "namespace", "name")
    item = "CVO override {kind}/{name} in {namespace}".format(**override)
    try:
        overrides = _cluster_version_overrides(oc)
    except (subprocess.CalledProcessError, OSError, ValueError) as e:
        LOG.info('[TRIM] Could not read %s (%s); skipping %s', CLUSTER_VERSION, e, item)
        report.skipped.append(item)
        return
    for existing in overrides or []:
        if all(existing.get(k) == override[k] for k in keys) and existing.get("unmanaged") is True:
            LOG.info('[TRIM] %s already present', item)
            report.skipped.append(item)
            return
    if overrides is None:
        # JSON patch `add` to `/spec/overrides/-` fails when the array does not exist
        if not _apply(report, "create CVO overrides array",
                      [oc, "patch", CLUSTER_VERSION, "--type=merge", "-p", render_patch({"spec": {"overrides": []}})]):
            return
    value = {k: override[k] for k in keys}
    value["unmanaged"] = True
    patch = render_patch([{"op": "add", "path": "/spec/overrides/-", "value": value}])
    if _apply(report, item, [oc, "patch", CLUSTER_VERSION, "--type=json", "-p", patch]):
        LOG.info('[TRIM] Added %s', item)


def scale_to_zero(oc: str, kind: str, namespace: str, name: str, report: TrimReport):
    resource = f"{kind}/{name}"
    item = f"scale {resource} in {namespace}"
    if not resource_exists(oc, resource, namespace):
        LOG.debug('[TRIM] %s not found in %s', resource, namespace)
        report.skipped.append(item)
        return
    if _apply(report, item, [oc, "scale", "--replicas=0", resource, *_ns(namespace)]):
        LOG.info('[TRIM] Scaled down %s in %s', resource, namespace)


def grant_privileged_scc(oc: str = "oc", grants=PRIVILEGED_SCC_GRANTS) -> TrimReport:
    """
    Lets CI workloads run privileged pods. Each grant is applied on its own and a failure is only recorded

    :param oc: The OpenShift Client binary
    :param grants: (subject kind, subject) pairs, kind being `user` or `group`
    :return TrimReport: Which grants were applied and which failed
    """
    report = TrimReport()
    for kind, subject in grants:
        item = f"scc {PRIVILEGED_SCC} for {kind} {subject}"
        if _apply(report, item, [oc, "adm", "policy", f"add-scc-to-{kind}", PRIVILEGED_SCC, subject]):
            LOG.info('[POLICY] Granted the %s SCC to %s %s', PRIVILEGED_SCC, kind, subject)
    return report


def trim_cluster(oc: str = "oc", targets: Optional[Mapping[str, Any]] = None) -> TrimReport:
    """
    Applies every trim target

    :param oc: The OpenShift Client binary
    :param targets: Parsed trim targets, defaults to the bundled file
    :return TrimReport: What changed, what was skipped and what failed
    """
    targets = targets if targets is not None else load_targets()
    report = TrimReport()
    LOG.info('[TRIM] Scaling down non-essential OpenShift components')
    for resource in targets.get("management_state") or []:
        remove_managed_component(oc, resource, report)
    if targets.get("operator_hub"):
        disable_default_sources(oc, targets["operator_hub"], report)
    for override in targets.get("cvo_overrides") or []:
        add_cvo_override(oc, override, report)
    for group in targets.get("scale_down") or []:
        for name in group["names"]:
            scale_to_zero(oc, group["kind"], group["namespace"], name, report)
    LOG.info('[TRIM] Resource scaling completed: %s', report.summary())
    return report


def evaluate_trim(oc: str = "oc", targets: Optional[Mapping[str, Any]] = None) -> List[str]:
    """
    Dry run. Lists what `trim_cluster` would scale down, with current replica counts, and changes nothing
    """
    targets = targets if targets is not None else load_targets()
    lines = []
    for group in targets.get("scale_down") or []:
        namespace = group["namespace"]
        for name in group["names"]:
            resource = f"{group['kind']}/{name}"
            if not resource_exists(oc, resource, namespace):
                lines.append(f"Not found: {resource} in {namespace}")
                continue
            replicas = _jsonpath(oc, resource, "{.spec.replicas}", namespace) or "?"
            ready = _jsonpath(oc, resource, "{.status.readyReplicas}", namespace) or "0"
            lines.append(f"Would scale {resource} in {namespace} to 0 (current: replicas={replicas}, ready={ready})")
    for line in lines:
        LOG.info('[TRIM] %s', line)
    return lines
