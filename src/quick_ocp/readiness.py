"""
Readiness gates run after `crc start` returns

`crc start` returning does not mean the cluster is usable. The node gate always runs, the pod and operator gates
are opt-in. Each check re-evaluates the whole cluster, nothing is carried over between polls.
"""
import json
import logging
import os
import re
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .config import HostLayout
from .models import ClusterReadinessState, OperatorStatus, PodStatus
from .retry import RetryPolicy, poll_until
from .util import run_process

LOG = logging.getLogger(__name__)

ANY_NAMESPACE = "*"
NODE_POLICY = RetryPolicy(max_attempts=None, interval=10)
PODS_TIMEOUT = 1200
OPERATORS_TIMEOUT = 600
POLL_INTERVAL = 10

_POD_RE = re.compile(r'^(?P<namespace>\S+)\s+(?P<name>\S+)\s+(?P<ready>\S+)\s+(?P<status>\S+)')
# VERSION is blank while an operator is still rolling out
_OPERATOR_RE = re.compile(
    r'^(?P<operator>\S+)\s+(?:(?P<version>[0-9]\S*)\s+)?(?P<available>True|False|Unknown)\s+'
    r'(?P<progressing>True|False|Unknown)\s+(?P<degraded>True|False|Unknown)')


class IgnoreTable:
    """
    Pods that may stay unsettled without blocking the pod gate

    :param entries: Namespace (or ANY_NAMESPACE) to a list of name patterns. A `None` pattern list ignores every
        pod in that namespace
    """

    def __init__(self, entries: Mapping[str, Optional[Sequence[str]]]):
        self._matchers: Dict[str, Optional[List[re.Pattern]]] = {}
        for namespace, patterns in entries.items():
            self._matchers[namespace] = None if patterns is None else [re.compile(p) for p in patterns]

    def ignores(self, namespace: str, name: str) -> bool:
        for key in (ANY_NAMESPACE, namespace):
            if key not in self._matchers:
                continue
            matchers = self._matchers[key]
            if matchers is None or any(m.match(name) for m in matchers):
                return True
        return False


DEFAULT_IGNORE_TABLE = IgnoreTable({
    # CronJob pods, name-<timestamp>-<suffix>
    ANY_NAMESPACE: [r'^(collect-profiles|image-pruner)-[0-9]{8,}-[a-z0-9]{5}$'],
    "openshift-network-diagnostics": None,
    "openshift-marketplace": [r'^(certified|community|redhat)-operators-[a-z0-9]+$'],
    "openshift-kube-storage-version-migrator": [r'^migrator-[a-z0-9]+-[a-z0-9]+$'],
    "openshift-console": [r'^(console|downloads)-[a-z0-9]+-[a-z0-9]+$'],
})


def oc_binary(layout: HostLayout) -> str:
    """
    The `oc` CRC ships in its home directory, or whatever `oc` is on the PATH
    """
    bundled = os.path.join(layout.crc_home, "bin", "oc", "oc")
    return bundled if os.path.isfile(bundled) else "oc"


def parse_pods(output: str) -> List[PodStatus]:
    pods = []
    for line in output.splitlines():
        match = _POD_RE.match(line.strip())
        if match is None:
            continue
        pods.append(PodStatus(**match.groupdict()))
    return pods


def parse_operators(output: str) -> List[OperatorStatus]:
    """
    Every non-empty row is an operator. A row without readable conditions gets blank ones, so it never counts as
    settled
    """
    operators = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        match = _OPERATOR_RE.match(line)
        if match is None:
            operators.append(OperatorStatus(name=line.split()[0], version="", available="", progressing="",
                                            degraded=""))
            continue
        operator = match.groupdict()
        operators.append(OperatorStatus(name=operator['operator'], version=operator['version'] or "",
                                        available=operator['available'], progressing=operator['progressing'],
                                        degraded=operator['degraded']))
    return operators


def check_node(oc: str = "oc", node_name: Optional[str] = None) -> Tuple[bool, str]:
    """
    :return tuple(ready, detail): Whether the node reports KubeletReady
    """
    p = run_process([oc, "get", "nodes", "--request-timeout=30s", "-o", "json"], check=False)
    if p.returncode != 0:
        return False, "API server not responding yet"
    try:
        nodes = json.loads(p.stdout).get("items") or []
    except ValueError:
        return False, "unreadable node listing"
    if node_name:
        nodes = [n for n in nodes if n.get("metadata", {}).get("name") == node_name]
    if not nodes:
        return False, f"node {node_name} not listed yet" if node_name else "no nodes listed yet"
    node = nodes[0]
    name = node.get("metadata", {}).get("name")
    for condition in node.get("status", {}).get("conditions") or []:
        if condition.get("reason") == "KubeletReady" and condition.get("status") == "True":
            return True, f"node {name} is ready"
    return False, f"node {name} is not ready"


def check_pods(oc: str = "oc", ignore: IgnoreTable = DEFAULT_IGNORE_TABLE) -> Tuple[bool, List[str]]:
    """
    :return tuple(ready, blockers): Pods that are neither settled nor ignored
    """
    p = run_process([oc, "get", "pods", "--all-namespaces", "--no-headers"], check=False)
    if p.returncode != 0:
        return False, ["unable to list pods"]
    blockers = [str(pod) for pod in parse_pods(p.stdout)
                if not pod.settled and not ignore.ignores(pod.namespace, pod.name)]
    return not blockers, blockers


def check_operators(oc: str = "oc") -> Tuple[bool, List[str]]:
    """
    :return tuple(ready, blockers): Operators that are unavailable or still progressing
    """
    p = run_process([oc, "get", "clusteroperators", "--no-headers"], check=False)
    if p.returncode != 0:
        return False, ["unable to list cluster operators"]
    operators = parse_operators(p.stdout)
    if not operators:
        return False, ["no cluster operators listed yet"]
    blockers = []
    for operator in operators:
        if operator.settled:
            LOG.debug('[WAIT] %s is ready', operator.name)
        elif not operator.available:
            blockers.append(f"{operator.name} (conditions not reported)")
        else:
            blockers.append(f"{operator.name} (available: {operator.available}, "
                            f"progressing: {operator.progressing})")
    return not blockers, blockers


def wait_for_node_ready(oc: str = "oc", policy: RetryPolicy = NODE_POLICY, node_name: Optional[str] = None):
    LOG.info('[WAIT] Waiting for the node to be ready...')
    poll_until(lambda: check_node(oc, node_name), policy, "node readiness")
    LOG.info('[WAIT] Node is ready')


def wait_for_pods_ready(oc: str = "oc", policy: Optional[RetryPolicy] = None,
                        ignore: IgnoreTable = DEFAULT_IGNORE_TABLE):
    """
    Waits until every pod that is not ignored is Running or Completed

    :raises ReadinessTimeoutError: Listing the pods still blocking when time ran out
    """
    policy = policy or RetryPolicy.for_duration(PODS_TIMEOUT, POLL_INTERVAL)
    LOG.info('[WAIT] Waiting for all pods to be ready (timeout: %ss)...', policy.timeout)
    poll_until(lambda: check_pods(oc, ignore), policy, "pods to be running or completed")
    LOG.info('[WAIT] All pods are ready')


def wait_for_operators(oc: str = "oc", policy: Optional[RetryPolicy] = None):
    """
    Waits until every cluster operator is Available and not Progressing

    :raises ReadinessTimeoutError: Listing the operators still blocking when time ran out
    """
    policy = policy or RetryPolicy.for_duration(OPERATORS_TIMEOUT, POLL_INTERVAL)
    LOG.info('[WAIT] Waiting for all cluster operators to be available (timeout: %ss)...', policy.timeout)
    poll_until(lambda: check_operators(oc), policy, "cluster operators")
    LOG.info('[WAIT] All cluster operators are available')


def readiness_state(oc: str = "oc", ignore: IgnoreTable = DEFAULT_IGNORE_TABLE) -> ClusterReadinessState:
    """
    One full evaluation of all three gates
    """
    return ClusterReadinessState(
        nodes_ready=check_node(oc)[0],
        essential_pods_ready=check_pods(oc, ignore)[0],
        operators_available=check_operators(oc)[0],
    )
