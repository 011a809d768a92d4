"""Cluster network settings read from the cluster network configuration objects."""
import ipaddress
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from kubernetes.client import CustomObjectsApi
from kubernetes.client.rest import ApiException

from winnodectl.config import NetworkConfig
from winnodectl.errors import ConfigurationError, TransientError

logger = logging.getLogger("winnodectl.nodeconfig.clusternetwork")

OVN_KUBERNETES = "OVNKubernetes"


@dataclass(frozen=True)
class ClusterNetwork:
    """Service network and overlay settings every Windows node is configured with."""
    service_cidr: str
    vxlan_port: Optional[str] = None


def validate_cidr(cidr: Optional[str]) -> str:
    try:
        ipaddress.ip_network(cidr or "", strict=False)
    except ValueError as e:
        raise ConfigurationError(f"received invalid CIDR value {cidr}") from e
    return cidr


def service_cidr_from(network_config: Dict[str, Any]) -> str:
    """Return the first service network of a ``config.openshift.io`` Network.

    Raises:
        ConfigurationError: If the cluster does not run OVN-Kubernetes or has no service network
    """
    spec = network_config.get("spec") or {}
    network_type = spec.get("networkType")
    if network_type != OVN_KUBERNETES:
        raise ConfigurationError(f"{network_type} : network type not supported")
    service_networks = spec.get("serviceNetwork") or []
    if not service_networks:
        raise ConfigurationError("received empty value for service networks")
    return validate_cidr(service_networks[0])


def vxlan_port_from(operator_network: Dict[str, Any]) -> Optional[str]:
    """Return the custom hybrid overlay VXLAN port of an ``operator.openshift.io`` Network.

    Raises:
        ConfigurationError: If hybrid overlay networking is not configured
    """
    ovn = ((operator_network.get("spec") or {}).get("defaultNetwork") or {}).get("ovnKubernetesConfig")
    hybrid = (ovn or {}).get("hybridOverlayConfig")
    if hybrid is None:
        raise ConfigurationError("cluster is not configured for OVN hybrid networking")
    if not hybrid.get("hybridClusterNetwork"):
        raise ConfigurationError("invalid OVN hybrid networking configuration")
    port = hybrid.get("hybridOverlayVXLANPort")
    return str(port) if port is not None else None


class ClusterNetworkCache:
    """Process-wide cache of the cluster network settings.

    Values set in the local network configuration take precedence over the
    cluster objects. A failed lookup is not cached and is retried on the next call.
    """

    def __init__(self, custom_objects_api: CustomObjectsApi, overrides: Optional[NetworkConfig] = None):
        self.custom_objects_api = custom_objects_api
        self.overrides = overrides or NetworkConfig()
        self._lock = threading.Lock()
        self._network: Optional[ClusterNetwork] = None

    def get(self) -> ClusterNetwork:
        if self._network is not None:
            return self._network
        with self._lock:
            if self._network is None:
                self._network = self._lookup()
                logger.info(f"Using service network {self._network.service_cidr}, "
                            f"VXLAN port {self._network.vxlan_port or 'default'}")
        return self._network

    def _lookup(self) -> ClusterNetwork:
        service_cidr = self.overrides.service_cidr
        if service_cidr:
            validate_cidr(service_cidr)
        else:
            service_cidr = service_cidr_from(self._get("config.openshift.io"))

        vxlan_port = self.overrides.vxlan_port
        if vxlan_port is None:
            vxlan_port = vxlan_port_from(self._get("operator.openshift.io"))
        return ClusterNetwork(service_cidr=service_cidr, vxlan_port=vxlan_port)

    def _get(self, group: str) -> Dict[str, Any]:
        try:
            return self.custom_objects_api.get_cluster_custom_object(group, "v1", "networks", "cluster")
        except ApiException as e:
            if e.status == 404:
                raise ConfigurationError(f"cluster network object networks.{group} does not exist") from e
            raise TransientError(f"unable to get cluster network object networks.{group}: {e.reason}") from e
