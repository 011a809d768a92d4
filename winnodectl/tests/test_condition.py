import json

from winnodectl.controllers.condition import DEGRADED, RECONCILING, STATUS_CONFIGMAP, StatusManager
from winnodectl.errors import ReconcileError, TransientError

NAMESPACE = "openshift-windows-machine-config-operator"


def test_degraded_joins_reasons_and_messages():
    status = StatusManager()
    first = ReconcileError("BootstrapFailure", "error running bootstrapper")
    try:
        raise TransientError("connection reset")
    except TransientError as cause:
        second = ReconcileError("NetworkConfigurationFailure", "overlay networks missing")
        second.__cause__ = cause

    condition = status.set_degraded([first, second])

    assert condition.status == "True"
    assert condition.reason == "BootstrapFailure, NetworkConfigurationFailure"
    assert condition.message == "error running bootstrapper, overlay networks missing: connection reset"


def test_degraded_clears_without_errors():
    status = StatusManager()
    status.set_degraded([TransientError("boom")])

    condition = status.set_degraded([])

    assert condition.status == "False"
    assert condition.reason == ""


def test_transition_time_is_kept_while_status_is_unchanged():
    status = StatusManager()
    status.set_degraded([ReconcileError("A", "first")])
    status._conditions[DEGRADED].last_transition_time = "2024-01-01T00:00:00Z"

    status.set_degraded([ReconcileError("B", "second")])
    assert status.get(DEGRADED).last_transition_time == "2024-01-01T00:00:00Z"
    assert status.get(DEGRADED).reason == "B"

    status.set_degraded([])
    assert status.get(DEGRADED).last_transition_time != "2024-01-01T00:00:00Z"


def test_record_tracks_errors_per_key():
    status = StatusManager()
    status.record("ns/m1", ReconcileError("BootstrapFailure", "m1 failed"))
    status.record("ns/m2", None)
    assert status.get(DEGRADED).status == "True"

    status.record("ns/m1", None)
    assert status.get(DEGRADED).status == "False"


def test_reconciling_condition():
    status = StatusManager()
    status.set_reconciling(True)
    assert status.get(RECONCILING).status == "True"
    status.set_reconciling(False)
    assert status.get(RECONCILING).status == "False"


def test_publish_creates_then_updates_configmap(core_api):
    status = StatusManager(core_api, NAMESPACE)
    status.record("ns/m1", ReconcileError("BootstrapFailure", "m1 failed"))

    status.publish()
    conditions = json.loads(core_api.config_maps[(NAMESPACE, STATUS_CONFIGMAP)]["conditions"])
    assert conditions[0]["type"] == DEGRADED
    assert conditions[0]["status"] == "True"

    status.record("ns/m1", None)
    status.publish()
    conditions = json.loads(core_api.config_maps[(NAMESPACE, STATUS_CONFIGMAP)]["conditions"])
    assert conditions[0]["status"] == "False"


def test_publish_without_cluster_is_a_noop():
    StatusManager().publish()
