"""
Node configuration.

NodeConfig turns one Windows instance into a worker node: it stages the payload,
bootstraps the kubelet, approves the node's CSRs, runs the network sequencer
and finally stamps the node with the operator version.
"""
import hashlib
import logging
import time
from typing import Callable, Dict, Optional

from kubernetes.client import CoreV1Api, V1Node
from kubernetes.client.rest import ApiException

from winnodectl import version
from winnodectl.config import ClusterConfig, NetworkConfig, RetryConfig
from winnodectl.controllers.csr import CSRApprover
from winnodectl.errors import ReconcileError, RetryError, TransientError, WinNodeError
from winnodectl.instance import InstanceInfo, PlatformType, instance_id_from_provider_id
from winnodectl.metadata import PUB_KEY_HASH_ANNOTATION, VERSION_ANNOTATION, WINDOWS_NODE_SELECTOR, WORKER_LABEL
from winnodectl.nodeconfig import network, payload
from winnodectl.nodeconfig.bootstrap import EndpointCache, InstanceBootstrapper
from winnodectl.nodeconfig.clusternetwork import ClusterNetwork
from winnodectl.nodeconfig.sequencer import NetworkSequencer
from winnodectl.utils import poll
from winnodectl.windows import paths
from winnodectl.windows.service import windows_exporter_service
from winnodectl.windows.windows import WindowsInstance

logger = logging.getLogger("winnodectl.nodeconfig")


def create_pub_key_hash_annotation(pub_key: str) -> str:
    """Return the value recorded on nodes to identify the key they were configured with."""
    return hashlib.sha256(pub_key.encode("utf-8")).hexdigest()


def _node_matches(node: V1Node, address: str, instance_id: Optional[str]) -> bool:
    status = node.status
    for addr in (status.addresses or []) if status else []:
        if addr.type == "InternalIP" and addr.address == address:
            return True
    if instance_id and node.spec is not None and node.spec.provider_id:
        try:
            return instance_id_from_provider_id(node.spec.provider_id) == instance_id
        except WinNodeError:
            return False
    return False


class NodeConfig:
    """Configures a single instance as a Windows worker node."""

    def __init__(
        self,
        core_api: CoreV1Api,
        instance_info: InstanceInfo,
        windows: WindowsInstance,
        endpoints: EndpointCache,
        csr_approver: CSRApprover,
        pub_key: str,
        cluster_network: ClusterNetwork,
        network_config: Optional[NetworkConfig] = None,
        cluster_config: Optional[ClusterConfig] = None,
        retry_config: Optional[RetryConfig] = None,
        sequencer: Optional[NetworkSequencer] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.core_api = core_api
        self.info = instance_info
        self.windows = windows
        self.csr_approver = csr_approver
        self.pub_key = pub_key
        self.cluster_network = cluster_network
        self.network_config = network_config or NetworkConfig()
        self.cluster_config = cluster_config or ClusterConfig()
        self.retry = retry_config or RetryConfig()
        self._sleep = sleep
        self.bootstrapper = InstanceBootstrapper(windows, endpoints)
        self.sequencer = sequencer or NetworkSequencer(
            windows,
            core_api,
            cluster_network.service_cidr,
            retry_config=self.retry,
            overlay_delay=self.network_config.overlay_configuration_delay,
            vxlan_port=cluster_network.vxlan_port,
            cni_template=self._cni_template(),
            sleep=sleep,
        )

    @property
    def platform(self) -> PlatformType:
        return self.cluster_config.platform

    def _cni_template(self) -> Optional[network.CniConf]:
        path = payload.cni_template_path(self.cluster_config.payload_dir)
        if path.is_file():
            return network.load_cni_template(path)
        return None

    def configure(self, labels: Optional[Dict[str, str]] = None,
                  annotations: Optional[Dict[str, str]] = None) -> V1Node:
        """Configure the instance and mark the resulting node as up to date.

        Steps run strictly in order. The version annotation is only written once
        all of them have succeeded.

        Args:
            labels: Extra labels applied to the node with the worker label
            annotations: Extra annotations applied with the version annotation

        Returns:
            V1Node: The patched node
        """
        if self.info.new_hostname:
            self.windows.ensure_hostname(self.info.new_hostname)

        for dir_name in paths.REQUIRED_DIRECTORIES:
            self.windows.ensure_directory(dir_name)
        self.windows.stop_owned_services()

        for descriptor, remote_dir in payload.required_files(self.cluster_config.payload_dir):
            self.windows.ensure_file(descriptor, remote_dir)

        self.windows.ensure_running(windows_exporter_service())

        node_ip = self.info.address if self.info.set_node_ip else None
        self.bootstrapper.bootstrap(node_ip=node_ip,
                                    cluster_dns=network.cluster_dns(self.cluster_network.service_cidr),
                                    platform=self.platform)

        try:
            self.csr_approver.handle_csrs(self.info.new_hostname)
        except TransientError as e:
            raise ReconcileError("CSRApprovalFailure", f"unable to approve node CSRs: {e}") from e

        node = self.set_node()
        self.sequencer.run(node.metadata.name)

        return self._stamp_node(node.metadata.name, labels or {}, annotations or {})

    def _stamp_node(self, node_name: str, labels: Dict[str, str], annotations: Dict[str, str]) -> V1Node:
        patch = {
            "metadata": {
                "labels": {WORKER_LABEL: "", **labels},
                "annotations": {
                    **annotations,
                    PUB_KEY_HASH_ANNOTATION: create_pub_key_hash_annotation(self.pub_key),
                    VERSION_ANNOTATION: version.get(),
                },
            }
        }
        try:
            node = self.core_api.patch_node(node_name, patch)
        except ApiException as e:
            raise ReconcileError("NodeUpdateFailure",
                                 f"error updating node {node_name} labels and annotations: {e.reason}") from e
        self.info.node = node
        logger.info(f"Node {node_name} configured with version {version.get()}")
        return node

    def set_node(self) -> V1Node:
        """Find the node object registered by this instance.

        Raises:
            ReconcileError: If no matching node appears within the retry budget
        """
        def check() -> Optional[V1Node]:
            try:
                nodes = self.core_api.list_node(label_selector=WINDOWS_NODE_SELECTOR).items
            except ApiException as e:
                logger.debug(f"Node listing failed for {self.info.address}: {e.reason}")
                return None
            for node in nodes:
                if _node_matches(node, self.info.address, self.info.instance_id):
                    return node
            return None

        try:
            node = poll(check, interval=self.retry.interval, attempts=self.retry.count,
                        description=f"node for instance {self.info.address}", sleep=self._sleep)
        except RetryError as e:
            raise ReconcileError("NodeNotFound", f"unable to find node for instance {self.info.address}") from e
        self.info.node = node
        return node

    def deconfigure(self) -> None:
        """Remove every operator-owned service and staged directory from the instance."""
        self.windows.deconfigure()
        logger.info(f"Deconfigured instance {self.info.address}")
