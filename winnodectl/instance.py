"""Windows instance description and platform specific helpers."""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from kubernetes.client import V1Node

from winnodectl import version
from winnodectl.errors import ConfigurationError
from winnodectl.metadata import VERSION_ANNOTATION


class PlatformType(str, Enum):
    """Cloud platforms the cluster may run on."""
    AWS = 'AWS'
    AZURE = 'Azure'
    GCP = 'GCP'
    VSPHERE = 'VSphere'
    NONE = 'None'


@dataclass
class InstanceInfo:
    """A Windows instance that is being configured as a worker node."""
    address: str
    username: str
    # new_hostname is set when the instance must be renamed before it becomes a node
    new_hostname: Optional[str] = None
    # set_node_ip makes the kubelet advertise address instead of autodetecting it
    set_node_ip: bool = False
    node: Optional[V1Node] = None
    instance_id: Optional[str] = None

    def _version_annotation(self) -> Optional[str]:
        if self.node is None or self.node.metadata is None:
            return None
        return (self.node.metadata.annotations or {}).get(VERSION_ANNOTATION)

    def up_to_date(self) -> bool:
        """True when the associated node carries the current version annotation."""
        return self._version_annotation() == version.get()

    def upgrade_required(self) -> bool:
        """True when the node was configured by a different operator version."""
        current = self._version_annotation()
        return current is not None and current != version.get()


def admin_username(platform: PlatformType) -> str:
    """Return the administrative user the instance is reachable with."""
    if platform == PlatformType.AZURE:
        return "capi"
    return "Administrator"


def desired_hostname(platform: PlatformType, machine_name: str) -> Optional[str]:
    # vSphere VMs do not get their hostname from the Machine, so it is set explicitly
    if platform == PlatformType.VSPHERE:
        return machine_name
    return None


def instance_id_from_provider_id(provider_id: Optional[str]) -> str:
    """
    Return the cloud instance ID from a provider ID such as
    ``aws:///us-east-1e/i-078285fdadccb2eaa``.
    """
    if not provider_id:
        raise ConfigurationError("empty provider ID")
    instance_id = provider_id.split("/")[-1]
    if not instance_id:
        raise ConfigurationError(f"unable to get instance ID from provider ID {provider_id}")
    return instance_id
