import pytest

from winnodectl.errors import ConfigurationError, RetryError
from winnodectl.windows import paths
from winnodectl.windows.service import (REQUIRED_SERVICES, ServiceDescriptor, hybrid_overlay_service,
                                        kube_proxy_service, windows_exporter_service)
from winnodectl.windows.windows import FileDescriptor, WindowsInstance


@pytest.fixture
def windows(host, retry_config, fake_sleep):
    return WindowsInstance(host, retry_config, sleep=fake_sleep)


@pytest.fixture
def local_file(tmp_path):
    path = tmp_path / "kubelet.exe"
    path.write_bytes(b"kubelet binary")
    return FileDescriptor.from_path(path)


def test_ensure_file_transfers_once(windows, host, local_file):
    assert windows.ensure_file(local_file, paths.K8S_DIR) is True
    assert windows.ensure_file(local_file, paths.K8S_DIR) is False
    assert host.staged == ["C:\\k\\kubelet.exe"]


def test_ensure_file_replaces_changed_content(windows, host, local_file, tmp_path):
    windows.ensure_file(local_file, paths.K8S_DIR)
    path = tmp_path / "kubelet.exe"
    path.write_bytes(b"new kubelet binary")

    assert windows.ensure_file(FileDescriptor.from_path(path), paths.K8S_DIR) is True
    assert len(host.staged) == 2


def test_ensure_file_content(windows, host):
    assert windows.ensure_file_content(b"{}", "cni.conf", paths.CNI_CONF_DIR)
    assert not windows.ensure_file_content(b"{}", "cni.conf", paths.CNI_CONF_DIR)


def test_create_encodes_every_dependency(windows, host):
    svc = ServiceDescriptor(name="kube-proxy", binary_path="C:\\k\\kube-proxy.exe", args="--v=4",
                            dependencies=["hybrid-overlay-node", "kubelet"])

    windows.ensure_running(svc)

    create = [c for c in host.commands if c.startswith("sc.exe create")][0]
    assert create.endswith(" depend=hybrid-overlay-node/kubelet")
    assert host.services["kube-proxy"]["depend"] == ["hybrid-overlay-node", "kubelet"]
    assert host.services["kube-proxy"]["running"]


def test_ensure_running_reapplies_tag_without_recreating(windows, host):
    svc = windows_exporter_service()
    windows.ensure_running(svc)
    host.services[svc.name]["description"] = "tampered"

    windows.ensure_running(svc)

    assert len([c for c in host.commands if c.startswith("sc.exe create")]) == 1
    assert len([c for c in host.commands if c.startswith("sc.exe start")]) == 1
    assert host.services[svc.name]["description"] == "OpenShift managed windows_exporter"


def test_ensure_running_sets_recovery_actions(windows, host):
    windows.ensure_running(windows_exporter_service())
    failure = [c for c in host.commands if c.startswith("sc.exe failure")]
    assert failure == ["sc.exe failure windows_exporter reset= 86400 "
                       "actions= restart/10000/restart/30000/restart/60000"]


def test_ensure_stopped_is_noop_for_missing_service(windows, host):
    windows.ensure_stopped("kubelet")
    assert not [c for c in host.commands if c.startswith("sc.exe stop")]


def test_ensure_removed_waits_for_deletion(windows, host):
    windows.ensure_running(windows_exporter_service())

    windows.ensure_removed("windows_exporter")

    assert "windows_exporter" not in host.services
    assert "sc.exe stop windows_exporter" in host.commands


def test_ensure_removed_times_out(windows, host):
    windows.ensure_running(windows_exporter_service())
    # Deletion is accepted but never completes
    original = host._dispatch

    def sticky(cmd):
        if cmd.startswith("sc.exe delete"):
            return ""
        return original(cmd)

    host._dispatch = sticky

    with pytest.raises(RetryError, match="windows_exporter service to be deleted"):
        windows.ensure_removed("windows_exporter")


def test_deconfigure_removes_services_in_reverse_order(windows, host):
    host.services = {name: {"running": True, "depend": [], "command": "", "description": None}
                     for name in REQUIRED_SERVICES}

    windows.deconfigure()

    deletes = [c.split()[-1] for c in host.commands if c.startswith("sc.exe delete")]
    assert deletes == list(reversed(REQUIRED_SERVICES))
    assert any(paths.CNI_DIR in c and "Remove-Item" in c for c in host.commands)


def test_source_vip(windows, host):
    assert windows.source_vip() == "10.132.0.14"


def test_empty_source_vip_is_an_error(windows, host):
    host.source_vip = ""
    with pytest.raises(ConfigurationError, match="source VIP is empty"):
        windows.source_vip()


def test_ensure_hostname_renames_and_reconnects(windows, host):
    assert windows.ensure_hostname("winworker-abc") is True
    assert "Rename-Computer -NewName winworker-abc -Force" in host.commands
    assert "shutdown.exe /r /t 10" in host.commands
    assert host.reconnects == 1

    assert windows.ensure_hostname("winworker-abc") is False
    assert host.reconnects == 1


def test_ensure_hostname_needs_an_exact_match(windows, host):
    host.hostname = "WIN-ABC"
    assert windows.ensure_hostname("win") is True
    assert "Rename-Computer -NewName win -Force" in host.commands

    host.hostname = "WINWORKER-ABC"
    assert windows.ensure_hostname("winworker-abc") is False


def test_service_arguments():
    overlay = hybrid_overlay_service("winnode", vxlan_port="9898")
    assert overlay.dependencies == ["kubelet"]
    assert "--node winnode" in overlay.command
    assert overlay.command.endswith("--hybrid-overlay-vxlan-port=9898")

    proxy = kube_proxy_service("winnode", "10.132.0.0/24", "10.132.0.14")
    assert proxy.dependencies == ["hybrid-overlay-node"]
    assert "--source-vip=10.132.0.14" in proxy.args
    assert "--cluster-cidr=10.132.0.0/24" in proxy.args
    assert "--network-name=OVNKubernetesHybridOverlayNetwork" in proxy.args
