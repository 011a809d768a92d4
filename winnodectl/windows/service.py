"""Windows services owned by the operator."""
from dataclasses import dataclass, field
from typing import List, Optional

from winnodectl.windows import paths

# MANAGED_TAG prefixes the description of every service the operator creates
MANAGED_TAG = "OpenShift managed"

WINDOWS_EXPORTER_SERVICE = "windows_exporter"
KUBELET_SERVICE = "kubelet"
HYBRID_OVERLAY_SERVICE = "hybrid-overlay-node"
KUBE_PROXY_SERVICE = "kube-proxy"

# Owned services in dependency order, each depending on an earlier entry or on nothing
REQUIRED_SERVICES = [
    WINDOWS_EXPORTER_SERVICE,
    KUBELET_SERVICE,
    HYBRID_OVERLAY_SERVICE,
    KUBE_PROXY_SERVICE,
]

WINDOWS_EXPORTER_COLLECTORS = "cpu,cs,logical_disk,net,os,service,system,textfile,container,memory,cpu_info"


@dataclass
class ServiceDescriptor:
    """A Windows service the operator installs and drives."""
    name: str
    binary_path: str
    args: str = ""
    dependencies: List[str] = field(default_factory=list)
    tag: str = MANAGED_TAG
    # Seconds after which the failure count resets; None leaves recovery actions unset
    recovery_reset_period: Optional[int] = None

    @property
    def command(self) -> str:
        """Command line registered as the service binPath."""
        return f"{self.binary_path} {self.args}".strip()

    @property
    def description(self) -> str:
        return f"{self.tag} {self.name}"


def windows_exporter_service() -> ServiceDescriptor:
    return ServiceDescriptor(
        name=WINDOWS_EXPORTER_SERVICE,
        binary_path=paths.WINDOWS_EXPORTER_PATH,
        args=f"--collectors.enabled {WINDOWS_EXPORTER_COLLECTORS}",
        recovery_reset_period=86400,
    )


def hybrid_overlay_service(node_name: str, vxlan_port: Optional[str] = None) -> ServiceDescriptor:
    """Overlay network agent for ``node_name``. Requires the kubelet to be running."""
    args = (
        f"--node {node_name} --k8s-kubeconfig {paths.KUBECONFIG_PATH} --windows-service "
        f"--logfile {paths.HYBRID_OVERLAY_LOG_DIR}hybrid-overlay.log"
    )
    if vxlan_port:
        args += f" --hybrid-overlay-vxlan-port={vxlan_port}"
    return ServiceDescriptor(
        name=HYBRID_OVERLAY_SERVICE,
        binary_path=paths.HYBRID_OVERLAY_PATH,
        args=args,
        dependencies=[KUBELET_SERVICE],
        recovery_reset_period=86400,
    )


def kube_proxy_service(node_name: str, host_subnet: str, source_vip: str) -> ServiceDescriptor:
    """Network proxy for ``node_name``.

    The source VIP only exists once the overlay networks have been created,
    so this is built late in the network sequence.
    """
    args = " ".join([
        "--windows-service",
        "--proxy-mode=kernelspace",
        "--feature-gates=WinOverlay=true",
        f"--hostname-override={node_name}",
        f"--kubeconfig={paths.KUBECONFIG_PATH}",
        f"--cluster-cidr={host_subnet}",
        f"--log-dir={paths.KUBE_PROXY_LOG_DIR}",
        "--logtostderr=false",
        f"--network-name={paths.OVN_OVERLAY_NETWORK}",
        f"--source-vip={source_vip}",
        "--enable-dsr=false",
        "--v=4",
    ])
    return ServiceDescriptor(
        name=KUBE_PROXY_SERVICE,
        binary_path=paths.KUBE_PROXY_PATH,
        args=args,
        dependencies=[HYBRID_OVERLAY_SERVICE],
        recovery_reset_period=86400,
    )
