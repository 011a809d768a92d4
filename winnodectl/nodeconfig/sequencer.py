"""
Network bootstrap sequencer.

Brings up the overlay network on a Windows node in a fixed order, each step
gated on a signal observed on the node object or on the instance itself:
subnet annotation, hybrid-overlay-node running, HNS networks present, gateway
MAC annotation, CNI configured, kube-proxy running.
"""
import logging
import time
from enum import Enum
from typing import Callable, Dict, Optional

from kubernetes.client import CoreV1Api, V1Node
from kubernetes.client.rest import ApiException

from winnodectl.config import RetryConfig
from winnodectl.errors import ReconcileError, TransientError, WinNodeError
from winnodectl.metadata import HYBRID_OVERLAY_MAC, HYBRID_OVERLAY_SUBNET
from winnodectl.nodeconfig import network
from winnodectl.utils import poll
from winnodectl.windows import paths
from winnodectl.windows.service import (HYBRID_OVERLAY_SERVICE, KUBE_PROXY_SERVICE, hybrid_overlay_service,
                                        kube_proxy_service)
from winnodectl.windows.windows import WindowsInstance

logger = logging.getLogger("winnodectl.nodeconfig.sequencer")

OVERLAY_NETWORKS = (paths.BASE_OVN_OVERLAY_NETWORK, paths.OVN_OVERLAY_NETWORK)


class NetworkState(str, Enum):
    """Sequencer states in the order they are traversed."""
    AWAITING_SUBNET_ANNOTATION = 'AwaitingSubnetAnnotation'
    OVERLAY_SERVICE_STARTING = 'OverlayServiceStarting'
    AWAITING_OVERLAY_RUNNING = 'AwaitingOverlayRunning'
    AWAITING_SWITCHES_CREATED = 'AwaitingSwitchesCreated'
    AWAITING_MAC_ANNOTATION = 'AwaitingMacAnnotation'
    CNI_CONFIGURED = 'CniConfigured'
    PROXY_RUNNING = 'ProxyRunning'


ORDERED_STATES = list(NetworkState)


class SequencerError(ReconcileError):
    """A sequencer step failed. The state names the step that did not complete."""

    def __init__(self, state: NetworkState, message: str):
        self.state = state
        super().__init__("NetworkConfigurationFailure", f"{state.value}: {message}")


class NetworkSequencer:
    """Runs the network bootstrap for one node.

    Every step starts by re-reading observable state, so an interrupted run
    can be resumed by calling ``run`` again.
    """

    def __init__(
        self,
        instance: WindowsInstance,
        core_api: CoreV1Api,
        service_cidr: str,
        retry_config: Optional[RetryConfig] = None,
        overlay_delay: float = 120.0,
        vxlan_port: Optional[str] = None,
        cni_template: Optional[network.CniConf] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.instance = instance
        self.core_api = core_api
        self.service_cidr = service_cidr
        self.retry = retry_config or RetryConfig()
        self.overlay_delay = overlay_delay
        self.vxlan_port = vxlan_port
        self.cni_template = cni_template
        self._sleep = sleep
        self.state = NetworkState.AWAITING_SUBNET_ANNOTATION
        self.host_subnet: Optional[str] = None

        self._handlers: Dict[NetworkState, Callable[[str], None]] = {
            NetworkState.AWAITING_SUBNET_ANNOTATION: self._await_subnet,
            NetworkState.OVERLAY_SERVICE_STARTING: self._start_overlay,
            NetworkState.AWAITING_OVERLAY_RUNNING: self._await_overlay_running,
            NetworkState.AWAITING_SWITCHES_CREATED: self._await_switches,
            NetworkState.AWAITING_MAC_ANNOTATION: self._configure_cni,
            NetworkState.CNI_CONFIGURED: self._start_proxy,
        }

    def run(self, node_name: str) -> None:
        """Drive the node from its current state to PROXY_RUNNING.

        Raises:
            SequencerError: A step failed or ran out of its retry budget
        """
        self.state = NetworkState.AWAITING_SUBNET_ANNOTATION
        try:
            self.state = self.resume_state(self._get_node(node_name))
        except WinNodeError as e:
            raise SequencerError(self.state, str(e)) from e
        logger.info(f"Configuring network for node {node_name} starting at {self.state.value}")

        while self.state != NetworkState.PROXY_RUNNING:
            handler = self._handlers[self.state]
            try:
                handler(node_name)
            except WinNodeError as e:
                raise SequencerError(self.state, str(e)) from e
            self.state = ORDERED_STATES[ORDERED_STATES.index(self.state) + 1]
            logger.debug(f"Node {node_name} network state is now {self.state.value}")

        logger.info(f"Network configured for node {node_name}")

    def resume_state(self, node: V1Node) -> NetworkState:
        """Return the first state whose postcondition does not hold yet."""
        annotations = (node.metadata.annotations or {}) if node.metadata else {}
        self.host_subnet = annotations.get(HYBRID_OVERLAY_SUBNET)

        if not self.host_subnet:
            return NetworkState.AWAITING_SUBNET_ANNOTATION
        if not self.instance.service_exists(HYBRID_OVERLAY_SERVICE):
            return NetworkState.OVERLAY_SERVICE_STARTING
        if not self.instance.is_running(HYBRID_OVERLAY_SERVICE) or not self._overlay_networks_present():
            # The connection may have been broken by switch creation, so reconnect before polling
            return NetworkState.AWAITING_OVERLAY_RUNNING
        if self.instance.service_exists(KUBE_PROXY_SERVICE):
            if self.instance.is_running(KUBE_PROXY_SERVICE):
                return NetworkState.PROXY_RUNNING
            return NetworkState.CNI_CONFIGURED
        return NetworkState.AWAITING_MAC_ANNOTATION

    # Steps

    def _await_subnet(self, node_name: str) -> None:
        self.host_subnet = self._wait_for_annotation(node_name, HYBRID_OVERLAY_SUBNET)

    def _start_overlay(self, node_name: str) -> None:
        self.instance.ensure_running(hybrid_overlay_service(node_name, self.vxlan_port))

    def _await_overlay_running(self, node_name: str) -> None:
        poll(lambda: self.instance.is_running(HYBRID_OVERLAY_SERVICE), interval=self.retry.interval,
             attempts=self.retry.count, description=f"{HYBRID_OVERLAY_SERVICE} service to be running",
             sleep=self._sleep)
        # Switch creation resets the network stack and silently kills the connection
        logger.info(f"Waiting {self.overlay_delay}s for overlay network configuration on {self.instance.address}")
        self._sleep(self.overlay_delay)
        self.instance.reinitialize()

    def _await_switches(self, node_name: str) -> None:
        poll(self._overlay_networks_present, interval=self.retry.interval, attempts=self.retry.count,
             description="overlay networks", sleep=self._sleep)

    def _configure_cni(self, node_name: str) -> None:
        self._wait_for_annotation(node_name, HYBRID_OVERLAY_MAC)

        template = self.cni_template or network.load_cni_template()
        config_path = network.populate_cni_config(self.host_subnet, self.service_cidr, template)
        try:
            with open(config_path, 'rb') as f:
                content = f.read()
            self.instance.ensure_file_content(content, network.CNI_CONFIG_FILENAME, paths.CNI_CONF_DIR)
            remote_config = paths.CNI_CONF_DIR + network.CNI_CONFIG_FILENAME
            self.instance.run(f'{paths.BOOTSTRAPPER_PATH} configure-cni --cni-dir="{paths.CNI_DIR}" '
                              f'--cni-config="{remote_config}"')
        finally:
            network.cleanup_temp_config(config_path)
        logger.info(f"Configured CNI on {self.instance.address}")

    def _start_proxy(self, node_name: str) -> None:
        vip = self.instance.source_vip()
        self.instance.ensure_running(kube_proxy_service(node_name, self.host_subnet, vip))

    # Helpers

    def _get_node(self, node_name: str) -> V1Node:
        try:
            return self.core_api.read_node(node_name)
        except ApiException as e:
            raise TransientError(f"unable to get node {node_name}: {e.reason}") from e

    def _wait_for_annotation(self, node_name: str, key: str) -> str:
        def check() -> Optional[str]:
            try:
                node = self.core_api.read_node(node_name)
            except ApiException as e:
                logger.debug(f"Unable to read node {node_name}, retrying: {e.reason}")
                return None
            return (node.metadata.annotations or {}).get(key)

        return poll(check, interval=self.retry.interval, attempts=self.retry.count,
                    description=f"{key} node annotation", sleep=self._sleep)

    def _overlay_networks_present(self) -> bool:
        names = self.instance.hns_networks()
        return all(any(network_name == line for line in names) for network_name in OVERLAY_NETWORKS)
