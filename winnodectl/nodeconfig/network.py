"""CNI configuration generation for Windows nodes."""
import ipaddress
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from winnodectl.errors import ConfigurationError

logger = logging.getLogger("winnodectl.nodeconfig.network")

CNI_CONFIG_FILENAME = "cni.conf"

DEFAULT_CNI_TEMPLATE = {
    "cniVersion": "0.2.0",
    "name": "OVNKubernetesHybridOverlayNetwork",
    "type": "win-overlay",
    "apiVersion": 2,
    "capabilities": {"portMappings": True, "dns": True},
    "ipam": {"type": "host-local", "subnet": "ovn_host_subnet"},
    "policies": [
        {
            "name": "EndpointPolicy",
            "value": {"Type": "OutBoundNAT", "ExceptionList": ["service_network_cidr"]},
        },
        {
            "name": "EndpointPolicy",
            "value": {"Type": "ROUTE", "DestinationPrefix": "service_network_cidr", "NeedEncap": True},
        },
    ],
}


@dataclass
class PolicyValue:
    type: str = ""
    exception_list: List[str] = field(default_factory=list)
    destination_prefix: str = ""
    need_encap: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PolicyValue':
        return cls(
            type=data.get("Type", ""),
            exception_list=list(data.get("ExceptionList") or []),
            destination_prefix=data.get("DestinationPrefix", ""),
            need_encap=bool(data.get("NeedEncap", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"Type": self.type}
        if self.exception_list:
            out["ExceptionList"] = list(self.exception_list)
        if self.destination_prefix:
            out["DestinationPrefix"] = self.destination_prefix
        out["NeedEncap"] = self.need_encap
        return out


@dataclass
class Policy:
    name: str
    value: PolicyValue


@dataclass
class CniConf:
    """A win-overlay CNI configuration document."""
    cni_version: str
    name: str
    type: str
    capabilities: Dict[str, bool]
    ipam_type: str
    subnet: str
    policies: List[Policy]
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CniConf':
        known = {"cniVersion", "name", "type", "capabilities", "ipam", "policies"}
        ipam = data.get("ipam") or {}
        return cls(
            cni_version=data.get("cniVersion", ""),
            name=data.get("name", ""),
            type=data.get("type", ""),
            capabilities=dict(data.get("capabilities") or {}),
            ipam_type=ipam.get("type", ""),
            subnet=ipam.get("subnet", ""),
            policies=[Policy(p.get("name", ""), PolicyValue.from_dict(p.get("value") or {}))
                      for p in data.get("policies") or []],
            extra={k: v for k, v in data.items() if k not in known},
        )

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "cniVersion": self.cni_version,
            "name": self.name,
            "type": self.type,
        }
        out.update(self.extra)
        out["capabilities"] = dict(self.capabilities)
        out["ipam"] = {"type": self.ipam_type, "subnet": self.subnet}
        out["policies"] = [{"name": p.name, "value": p.value.to_dict()} for p in self.policies]
        return out


def load_cni_template(path: Optional[Union[str, Path]] = None) -> CniConf:
    """Read a CNI template, falling back to the built-in one when ``path`` is not given."""
    if path is None:
        return CniConf.from_dict(DEFAULT_CNI_TEMPLATE)
    try:
        with open(path, 'r') as f:
            return CniConf.from_dict(json.load(f))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"unable to read CNI template {path}") from e


def validate_host_subnet(host_subnet: Optional[str]) -> str:
    if not host_subnet:
        raise ConfigurationError("error receiving valid value for node hostSubnet")
    try:
        ipaddress.ip_network(host_subnet, strict=False)
    except ValueError as e:
        raise ConfigurationError("error receiving valid value for node hostSubnet") from e
    return host_subnet


def populate_cfg_policies(conf: CniConf, service_cidr: str) -> None:
    """Point the NAT exception and the service route at ``service_cidr``.

    The template must carry an OutBoundNAT policy with a non-empty exception
    list followed by a ROUTE policy with a destination prefix.
    """
    policies = conf.policies
    if (len(policies) < 2 or not policies[0].value.exception_list
            or not policies[1].value.destination_prefix):
        raise ConfigurationError("invalid policy fields in cniConf struct")
    policies[0].value.exception_list[0] = service_cidr
    policies[1].value.destination_prefix = service_cidr


def populate_cni_config(
    host_subnet: str,
    service_cidr: str,
    template: CniConf,
    out_dir: Optional[str] = None,
) -> str:
    """Render the node's CNI configuration into a temporary file.

    Nothing is written when validation fails.

    Returns:
        str: Path of the generated file, to be removed with cleanup_temp_config
    """
    template.subnet = validate_host_subnet(host_subnet)
    populate_cfg_policies(template, service_cidr)

    target_dir = tempfile.mkdtemp(prefix="cni-", dir=out_dir)
    path = os.path.join(target_dir, CNI_CONFIG_FILENAME)
    with open(path, 'w') as f:
        json.dump(template.to_dict(), f, indent=2)
    logger.debug(f"Generated CNI config {path} for subnet {host_subnet}")
    return path


def cleanup_temp_config(path: str) -> None:
    """Best effort removal of a file created by populate_cni_config."""
    try:
        os.remove(path)
        os.rmdir(os.path.dirname(path))
    except OSError as e:
        logger.warning(f"Unable to remove temporary CNI config {path}: {e}")


def cluster_dns(service_cidr: str) -> str:
    """Return the cluster DNS address, the tenth address of the service network."""
    try:
        network = ipaddress.ip_network(service_cidr, strict=False)
    except ValueError as e:
        raise ConfigurationError(f"invalid service CIDR {service_cidr}") from e
    return str(network.network_address + 10)
