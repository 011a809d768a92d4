import pytest
from kubernetes.client.rest import ApiException

from winnodectl.metadata import HYBRID_OVERLAY_MAC, HYBRID_OVERLAY_SUBNET
from winnodectl.nodeconfig.sequencer import NetworkSequencer, NetworkState, SequencerError
from winnodectl.windows.windows import WindowsInstance

NODE = "winworker-1"
SUBNET = "10.132.0.0/24"
MAC = "0a:58:0a:84:00:01"


@pytest.fixture
def windows(host, retry_config, fake_sleep):
    return WindowsInstance(host, retry_config, sleep=fake_sleep)


@pytest.fixture
def sequencer(windows, core_api, retry_config, fake_sleep):
    return NetworkSequencer(windows, core_api, "172.30.0.0/16", retry_config=retry_config,
                            overlay_delay=120.0, sleep=fake_sleep)


def test_full_sequence(sequencer, host, core_api, node_factory, sleeps):
    core_api.nodes[NODE] = node_factory(NODE, annotations={HYBRID_OVERLAY_SUBNET: SUBNET})
    core_api.pending_annotations[NODE] = [(2, HYBRID_OVERLAY_MAC, MAC)]

    sequencer.run(NODE)

    assert sequencer.state == NetworkState.PROXY_RUNNING
    assert host.services["hybrid-overlay-node"]["running"]
    assert host.services["kube-proxy"]["running"]
    assert "--source-vip=10.132.0.14" in host.services["kube-proxy"]["command"]
    assert host.reconnects == 1
    assert 120.0 in sleeps
    assert "C:\\k\\cni\\config\\cni.conf" in host.staged
    assert any("configure-cni" in c for c in host.commands)


def test_steps_run_in_order(sequencer, host, core_api, node_factory):
    core_api.nodes[NODE] = node_factory(NODE, annotations={HYBRID_OVERLAY_SUBNET: SUBNET, HYBRID_OVERLAY_MAC: MAC})

    sequencer.run(NODE)

    def index(prefix):
        return next(i for i, c in enumerate(host.commands) if c.startswith(prefix) or prefix in c)

    assert index("sc.exe start hybrid-overlay-node") < index("Get-HnsNetwork | select Name")
    assert index("Get-HnsNetwork | select Name") < index("configure-cni")
    assert index("configure-cni") < index("New-HnsEndpoint")
    assert index("New-HnsEndpoint") < index("sc.exe create kube-proxy")


def test_missing_subnet_annotation_times_out(sequencer, host, core_api, node_factory):
    core_api.nodes[NODE] = node_factory(NODE)

    with pytest.raises(SequencerError) as exc_info:
        sequencer.run(NODE)

    assert exc_info.value.state == NetworkState.AWAITING_SUBNET_ANNOTATION
    assert exc_info.value.reason == "NetworkConfigurationFailure"
    assert f"timeout waiting for {HYBRID_OVERLAY_SUBNET} node annotation" in str(exc_info.value)
    # No overlay work happens without a subnet
    assert "hybrid-overlay-node" not in host.services


def test_switch_wait_timeout_then_resume(sequencer, host, core_api, node_factory, windows, retry_config,
                                         fake_sleep):
    core_api.nodes[NODE] = node_factory(NODE, annotations={HYBRID_OVERLAY_SUBNET: SUBNET, HYBRID_OVERLAY_MAC: MAC})
    host.overlay_polls = 100

    with pytest.raises(SequencerError, match="timeout waiting for overlay networks") as exc_info:
        sequencer.run(NODE)
    assert exc_info.value.state == NetworkState.AWAITING_SWITCHES_CREATED
    assert "kube-proxy" not in host.services

    # Next reconcile starts again from the overlay wait without recreating the overlay service
    creates_before = len([c for c in host.commands if c.startswith("sc.exe create hybrid-overlay-node")])
    resumed = NetworkSequencer(windows, core_api, "172.30.0.0/16", retry_config=retry_config,
                               overlay_delay=0.0, sleep=fake_sleep)
    assert resumed.resume_state(core_api.read_node(NODE)) == NetworkState.AWAITING_OVERLAY_RUNNING

    host.overlay_polls = 0
    resumed.run(NODE)

    assert resumed.state == NetworkState.PROXY_RUNNING
    creates_after = len([c for c in host.commands if c.startswith("sc.exe create hybrid-overlay-node")])
    assert creates_before == creates_after == 1


def test_completed_node_is_not_touched(sequencer, host, core_api, node_factory):
    core_api.nodes[NODE] = node_factory(NODE, annotations={HYBRID_OVERLAY_SUBNET: SUBNET, HYBRID_OVERLAY_MAC: MAC})
    sequencer.run(NODE)
    commands = len(host.commands)

    sequencer.run(NODE)

    new_commands = host.commands[commands:]
    assert not [c for c in new_commands if c.startswith(("sc.exe create", "sc.exe start"))]
    assert not [c for c in new_commands if "configure-cni" in c or "New-HnsEndpoint" in c]


def test_resume_state(sequencer, host, core_api, node_factory):
    node = node_factory(NODE)
    assert sequencer.resume_state(node) == NetworkState.AWAITING_SUBNET_ANNOTATION

    node = node_factory(NODE, annotations={HYBRID_OVERLAY_SUBNET: SUBNET})
    assert sequencer.resume_state(node) == NetworkState.OVERLAY_SERVICE_STARTING

    host.services["hybrid-overlay-node"] = {"running": True, "depend": ["kubelet"], "command": "",
                                            "description": None}
    host.overlay_polls = 0
    assert sequencer.resume_state(node) == NetworkState.AWAITING_MAC_ANNOTATION

    host.services["kube-proxy"] = {"running": False, "depend": [], "command": "", "description": None}
    assert sequencer.resume_state(node) == NetworkState.CNI_CONFIGURED


def test_invalid_template_fails_cni_step(windows, core_api, retry_config, fake_sleep, node_factory, host):
    from winnodectl.nodeconfig.network import CniConf

    template = CniConf.from_dict({"cniVersion": "0.2.0", "name": "n", "type": "win-overlay", "policies": []})
    sequencer = NetworkSequencer(windows, core_api, "172.30.0.0/16", retry_config=retry_config,
                                 overlay_delay=0.0, cni_template=template, sleep=fake_sleep)
    core_api.nodes[NODE] = node_factory(NODE, annotations={HYBRID_OVERLAY_SUBNET: SUBNET, HYBRID_OVERLAY_MAC: MAC})

    with pytest.raises(SequencerError, match="invalid policy fields") as exc_info:
        sequencer.run(NODE)
    assert exc_info.value.state == NetworkState.AWAITING_MAC_ANNOTATION
    assert not any("cni.conf" in path for path in host.staged)


def failing_reads(core_api, monkeypatch, fail_on):
    read_node = core_api.read_node
    calls = []

    def read(name):
        calls.append(name)
        if len(calls) in fail_on:
            raise ApiException(status=500, reason="Internal Server Error")
        return read_node(name)

    monkeypatch.setattr(core_api, "read_node", read)
    return calls


def test_annotation_wait_survives_failed_node_read(sequencer, core_api, node_factory, monkeypatch):
    core_api.nodes[NODE] = node_factory(NODE, annotations={HYBRID_OVERLAY_SUBNET: SUBNET})
    core_api.pending_annotations[NODE] = [(2, HYBRID_OVERLAY_MAC, MAC)]
    calls = failing_reads(core_api, monkeypatch, fail_on={2})

    sequencer.run(NODE)

    assert sequencer.state == NetworkState.PROXY_RUNNING
    assert len(calls) == 3


def test_unreadable_node_fails_with_state(sequencer, host, core_api, node_factory, monkeypatch):
    core_api.nodes[NODE] = node_factory(NODE, annotations={HYBRID_OVERLAY_SUBNET: SUBNET})
    failing_reads(core_api, monkeypatch, fail_on={1})

    with pytest.raises(SequencerError, match=f"unable to get node {NODE}") as exc_info:
        sequencer.run(NODE)

    assert exc_info.value.state == NetworkState.AWAITING_SUBNET_ANNOTATION
    assert host.commands == []


def test_resume_failure_is_reported_as_sequencer_error(sequencer, host, core_api, node_factory):
    core_api.nodes[NODE] = node_factory(NODE, annotations={HYBRID_OVERLAY_SUBNET: SUBNET})
    host.failures["sc.exe qc hybrid-overlay-node"] = "Access is denied."

    with pytest.raises(SequencerError, match="Access is denied") as exc_info:
        sequencer.run(NODE)

    assert exc_info.value.reason == "NetworkConfigurationFailure"
    assert "hybrid-overlay-node" not in host.services
