import json

import pytest

from conftest import completed
from quick_ocp import readiness
from quick_ocp.errors import ReadinessTimeoutError
from quick_ocp.readiness import DEFAULT_IGNORE_TABLE, ANY_NAMESPACE, IgnoreTable
from quick_ocp.retry import RetryPolicy

PODS = """\
openshift-etcd                        etcd-crc                                  4/4   Running     0             20m
openshift-etcd                        etcd-0                                    0/1   Pending     0             1m
openshift-operator-lifecycle-manager  collect-profiles-29000000-abcde           0/1   Error       0             5m
openshift-network-diagnostics         network-check-source-5d4b6c8d8f-q2x9z     0/1   Pending     0             20m
openshift-marketplace                 redhat-operators-x7k2p                    0/1   CrashLoopBackOff   4 (1m ago)   20m
openshift-console                     console-6f8d9b7c5-abcde                   0/1   ContainerCreating   0      1m
openshift-kube-apiserver              installer-9-crc                           0/1   Completed   0             18m
"""

OPERATORS = """\
authentication                             4.19.8    True        False         False      5m
console                                    4.19.8    True        False         False      5m
kube-apiserver                                       False       True          False      1m
"""

SETTLED_OPERATORS = """\
authentication                             4.19.8    True        False         False      5m
kube-apiserver                             4.19.8    True        False         False      1m
"""


def _nodes(*conditions, name="crc"):
    return json.dumps({"items": [{"metadata": {"name": name}, "status": {"conditions": list(conditions)}}]})


READY = {"type": "Ready", "reason": "KubeletReady", "status": "True"}
NOT_READY = {"type": "Ready", "reason": "KubeletNotReady", "status": "False"}


@pytest.fixture
def fake_run(runner, monkeypatch):
    monkeypatch.setattr("quick_ocp.readiness.run_process", runner)
    return runner


@pytest.fixture
def policy(no_sleep):
    return RetryPolicy(max_attempts=4, interval=10, sleep=no_sleep)


@pytest.mark.parametrize("namespace, name, ignored", [
    ("openshift-operator-lifecycle-manager", "collect-profiles-29000000-abcde", True),
    ("openshift-image-registry", "image-pruner-29012345-x1y2z", True),
    ("openshift-operator-lifecycle-manager", "collect-profiles-abc-abcde", False),
    ("openshift-etcd", "etcd-0", False),
    ("openshift-network-diagnostics", "anything-at-all", True),
    ("openshift-marketplace", "certified-operators-9kqzt", True),
    ("openshift-marketplace", "marketplace-operator-7d9f-abcde", False),
    ("openshift-kube-storage-version-migrator", "migrator-5c8d7b-x2k9p", True),
    ("openshift-console", "downloads-7c9f8d-zz9k2", True),
    ("openshift-monitoring", "console-6f8d9b7c5-abcde", False),
])
def test_default_ignore_table(namespace, name, ignored):
    assert DEFAULT_IGNORE_TABLE.ignores(namespace, name) is ignored


def test_custom_ignore_table():
    table = IgnoreTable({ANY_NAMESPACE: [r"^flaky-"], "noisy": None})
    assert table.ignores("any", "flaky-1")
    assert table.ignores("noisy", "whatever")
    assert not table.ignores("quiet", "whatever")


def test_parse_pods():
    pods = readiness.parse_pods(PODS)
    assert len(pods) == 7
    assert pods[4].status == "CrashLoopBackOff"
    assert pods[6].settled
    assert str(pods[1]) == "etcd-0 in openshift-etcd (status: Pending)"


def test_check_pods_reports_blockers(fake_run):
    fake_run.on("oc get pods", completed(PODS))
    ready, blockers = readiness.check_pods()
    assert not ready
    assert blockers == ["etcd-0 in openshift-etcd (status: Pending)"]


def test_pod_gate_times_out_with_blockers(fake_run, policy):
    fake_run.on("oc get pods", completed(PODS))
    with pytest.raises(ReadinessTimeoutError) as err:
        readiness.wait_for_pods_ready(policy=policy)
    assert err.value.blockers == ["etcd-0 in openshift-etcd (status: Pending)"]
    assert len(fake_run.ran("oc get pods")) == 4


def test_pod_gate_passes_once_settled(fake_run, policy):
    settled = "\n".join(line for line in PODS.splitlines() if "etcd-0" not in line)
    fake_run.on("oc get pods", [completed(returncode=1), completed(PODS), completed(settled)])
    readiness.wait_for_pods_ready(policy=policy)
    assert len(fake_run.ran("oc get pods")) == 3


def test_default_gate_limits():
    assert RetryPolicy.for_duration(readiness.PODS_TIMEOUT, readiness.POLL_INTERVAL).max_attempts == 120
    assert RetryPolicy.for_duration(readiness.OPERATORS_TIMEOUT, readiness.POLL_INTERVAL).max_attempts == 60
    assert readiness.NODE_POLICY.max_attempts is None


def test_parse_operators_handles_blank_version():
    operators = readiness.parse_operators(OPERATORS)
    assert [o.name for o in operators] == ["authentication", "console", "kube-apiserver"]
    assert operators[2].version == ""
    assert operators[2].available == "False"
    assert not operators[2].settled
    assert operators[0].settled


def test_operator_without_conditions_blocks(fake_run):
    fake_run.on("oc get clusteroperators", completed("authentication 4.19.8 True False False 5m\nmachine-config      \n"))
    assert readiness.check_operators() == (False, ["machine-config (conditions not reported)"])


def test_operator_gate_requires_at_least_one_operator(fake_run):
    fake_run.on("oc get clusteroperators", completed(""))
    assert readiness.check_operators() == (False, ["no cluster operators listed yet"])


def test_operator_gate(fake_run, policy):
    fake_run.on("oc get clusteroperators", [completed(OPERATORS), completed(SETTLED_OPERATORS)])
    readiness.wait_for_operators(policy=policy)
    assert len(fake_run.ran("oc get clusteroperators")) == 2


def test_operator_gate_timeout_lists_operators(fake_run, policy):
    fake_run.on("oc get clusteroperators", completed(OPERATORS))
    with pytest.raises(ReadinessTimeoutError) as err:
        readiness.wait_for_operators(policy=policy)
    assert err.value.blockers == ["kube-apiserver (available: False, progressing: True)"]


def test_check_node(fake_run):
    fake_run.on("oc get nodes", completed(_nodes({"type": "MemoryPressure", "reason": "KubeletHasSufficientMemory",
                                                   "status": "False"}, READY)))
    assert readiness.check_node() == (True, "node crc is ready")


def test_check_node_named(fake_run):
    fake_run.on("oc get nodes", completed(_nodes(READY, name="crc-abc")))
    assert not readiness.check_node(node_name="api.crc.testing")[0]
    assert readiness.check_node(node_name="crc-abc")[0]


def test_node_gate_waits_through_api_errors(fake_run, no_sleep):
    fake_run.on("oc get nodes", [
        completed(returncode=1, stderr="connection refused"),
        completed("not json"),
        completed(json.dumps({"items": []})),
        completed(_nodes(NOT_READY)),
        completed(_nodes(READY)),
    ])
    readiness.wait_for_node_ready(policy=RetryPolicy(max_attempts=None, interval=10, sleep=no_sleep))
    assert len(fake_run.ran("oc get nodes --request-timeout=30s -o json")) == 5
    assert no_sleep.call_count == 4


def test_readiness_state(fake_run):
    fake_run.on("oc get nodes", completed(_nodes(READY)))
    fake_run.on("oc get pods", completed(PODS))
    fake_run.on("oc get clusteroperators", completed(SETTLED_OPERATORS))
    state = readiness.readiness_state()
    assert state.nodes_ready
    assert not state.essential_pods_ready
    assert state.operators_available
    assert not state.ready


def test_oc_binary(layout, tmp_path):
    assert readiness.oc_binary(layout) == "oc"
    bundled = tmp_path / "home" / ".crc" / "bin" / "oc"
    bundled.mkdir(parents=True)
    (bundled / "oc").write_text("#!/bin/sh\n")
    assert readiness.oc_binary(layout) == str(bundled / "oc")
