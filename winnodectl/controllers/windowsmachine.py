"""
Windows Machine reconciliation.

Maps the phase of a Windows Machine and the annotations of its node onto
configuration, no-op or replacement of the instance.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import paramiko
from kubernetes.client import CertificatesV1Api, CoreV1Api, CustomObjectsApi, V1Node
from kubernetes.client.rest import ApiException

from winnodectl.config import OperatorConfig
from winnodectl.controllers import secrets
from winnodectl.controllers.condition import StatusManager
from winnodectl.controllers.csr import CSRApprover
from winnodectl.controllers.events import NORMAL, WARNING, EventRecorder, machine_reference
from winnodectl.errors import AuthenticationError, ReconcileError, TransientError, WinNodeError
from winnodectl.instance import InstanceInfo, admin_username, desired_hostname, instance_id_from_provider_id
from winnodectl.metadata import MACHINE_OS_LABEL, PUB_KEY_HASH_ANNOTATION, VERSION_ANNOTATION
from winnodectl.nodeconfig.bootstrap import EndpointCache
from winnodectl.nodeconfig.clusternetwork import ClusterNetworkCache
from winnodectl.nodeconfig.nodeconfig import NodeConfig, create_pub_key_hash_annotation
from winnodectl.windows.connectivity import Transport
from winnodectl.windows.windows import WindowsInstance

logger = logging.getLogger("winnodectl.controllers.windowsmachine")

MACHINE_GROUP = "machine.openshift.io"
MACHINE_VERSION = "v1beta1"

PROVISIONED_PHASE = "Provisioned"
RUNNING_PHASE = "Running"


@dataclass
class ReconcileResult:
    requeue: bool = False
    requeue_after: Optional[float] = None


def is_windows_machine(machine: Dict[str, Any]) -> bool:
    labels = machine.get("metadata", {}).get("labels") or {}
    return labels.get(MACHINE_OS_LABEL) == "Windows"


def machine_phase(machine: Dict[str, Any]) -> Optional[str]:
    return (machine.get("status") or {}).get("phase")


def machine_node_name(machine: Dict[str, Any]) -> Optional[str]:
    node_ref = (machine.get("status") or {}).get("nodeRef")
    return node_ref.get("name") if node_ref else None


def machine_internal_ip(machine: Dict[str, Any]) -> Optional[str]:
    """Return the last InternalIP address of the machine."""
    address = None
    for addr in (machine.get("status") or {}).get("addresses") or []:
        if addr.get("type") == "InternalIP":
            address = addr.get("address")
    return address


def _owner_name(machine: Dict[str, Any]) -> Optional[str]:
    owners = machine.get("metadata", {}).get("ownerReferences") or []
    return owners[0].get("name") if owners else None


def _being_deleted(machine: Dict[str, Any]) -> bool:
    return bool(machine.get("metadata", {}).get("deletionTimestamp"))


class WindowsMachineReconciler:
    """Reconciles Windows Machine objects in the machine API namespace."""

    def __init__(
        self,
        core_api: CoreV1Api,
        custom_api: CustomObjectsApi,
        certificates_api: CertificatesV1Api,
        config: OperatorConfig,
        status: Optional[StatusManager] = None,
        recorder: Optional[EventRecorder] = None,
        endpoints: Optional[EndpointCache] = None,
        networks: Optional[ClusterNetworkCache] = None,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
        node_config_factory: Optional[Callable[..., NodeConfig]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.core_api = core_api
        self.custom_api = custom_api
        self.certificates_api = certificates_api
        self.config = config
        self.status = status or StatusManager()
        self.recorder = recorder or EventRecorder(core_api)
        self.endpoints = endpoints or EndpointCache(custom_api)
        self.networks = networks or ClusterNetworkCache(custom_api, config.network)
        self.client_factory = client_factory
        self.node_config_factory = node_config_factory or self._new_node_config
        self._sleep = sleep

    @property
    def namespace(self) -> str:
        return self.config.cluster.machine_api_namespace

    def reconcile(self, name: str) -> ReconcileResult:
        """Reconcile the Machine ``name`` and record the outcome in the operator status.

        Raises:
            WinNodeError: The reconcile failed and should be retried with backoff
        """
        key = f"{self.namespace}/{name}"
        logger.info(f"Reconciling machine {key}")
        try:
            result = self._reconcile(name)
        except WinNodeError as e:
            self.status.record(key, e)
            raise
        self.status.record(key, None)
        return result

    def _reconcile(self, name: str) -> ReconcileResult:
        # Read the key first so a missing secret is reported even before any machine exists
        private_key = secrets.get_private_key(self.core_api, self.config.cluster.watch_namespace)

        machine = self._get_machine(name)
        if machine is None or not is_windows_machine(machine):
            return ReconcileResult()

        phase = machine_phase(machine)
        if phase is None:
            logger.debug(f"Machine {name} has no phase yet, ignoring")
            return ReconcileResult()

        signer = secrets.create_signer(private_key)
        pub_key = secrets.authorized_key(signer)

        if phase == RUNNING_PHASE:
            node_name = machine_node_name(machine)
            if not node_name:
                raise ReconcileError("MachineMissingNodeRef", f"ready Windows machine {name} missing NodeRef")
            node = self._get_node(node_name)
            running = InstanceInfo(address=machine_internal_ip(machine) or "",
                                   username=admin_username(self.config.cluster.platform), node=node)
            if running.up_to_date() or running.upgrade_required():
                return self._reconcile_configured(machine, running, pub_key)
            logger.info(f"Node {node_name} of machine {name} is not fully configured, configuring it")
        elif phase != PROVISIONED_PHASE:
            return ReconcileResult()

        return self._configure(machine, signer, pub_key)

    def _reconcile_configured(self, machine: Dict[str, Any], info: InstanceInfo, pub_key: str) -> ReconcileResult:
        name = machine["metadata"]["name"]
        annotations = info.node.metadata.annotations or {}
        if (info.up_to_date()
                and annotations.get(PUB_KEY_HASH_ANNOTATION) == create_pub_key_hash_annotation(pub_key)):
            return ReconcileResult()

        ref = machine_reference(machine)
        if not self.is_allowed_deletion(machine):
            self.recorder.event(ref, WARNING, "MachineDeletionRestricted",
                                f"Machine {name} deletion restricted due to exceeded number of unhealthy machines")
            return ReconcileResult(requeue=True, requeue_after=self.config.retry.requeue_after)
        if _being_deleted(machine):
            return ReconcileResult()

        try:
            self._delete_machine(name)
        except TransientError as e:
            self.recorder.event(ref, WARNING, "MachineDeletionFailed",
                                f"Machine {name} deletion failed: unable to delete Machine object: {e}")
            raise
        self.recorder.event(ref, NORMAL, "MachineDeleted",
                            f"Machine {name} has been remediated by requesting to delete Machine object")
        return ReconcileResult()

    def _configure(self, machine: Dict[str, Any], signer: paramiko.PKey, pub_key: str) -> ReconcileResult:
        name = machine["metadata"]["name"]
        platform = self.config.cluster.platform
        secrets.validate_user_data(self.core_api, self.namespace, platform, pub_key)

        address = machine_internal_ip(machine)
        if not address:
            raise ReconcileError("MachineMissingAddress", f"no internal ip address associated with machine {name}")
        instance_id = instance_id_from_provider_id((machine.get("spec") or {}).get("providerID"))

        info = InstanceInfo(
            address=address,
            username=admin_username(platform),
            new_hostname=desired_hostname(platform, name),
            instance_id=instance_id,
        )
        ref = machine_reference(machine)
        transport = Transport(address, info.username, signer, ssh_config=self.config.ssh,
                              retry_config=self.config.retry, client_factory=self.client_factory,
                              sleep=self._sleep)
        try:
            nc = self.node_config_factory(info, transport, pub_key)
            nc.configure()
        except AuthenticationError as e:
            # The instance was provisioned with a different key and can only be recovered by replacing it
            self.recorder.event(ref, WARNING, "MachineSetupFailure",
                                f"Machine {name} authentication failure, deleting machine: {e}")
            self._delete_machine(name)
            return ReconcileResult()
        except WinNodeError as e:
            self.recorder.event(ref, WARNING, "MachineSetupFailure", f"Machine {name} failed to be configured")
            raise ReconcileError(getattr(e, "reason", "VMConfigurationFailure"),
                                 f"failed to configure Windows VM {instance_id}: {e}") from e
        finally:
            transport.close()

        self.recorder.event(ref, NORMAL, "MachineSetup", f"Machine {name} configured successfully")
        logger.info(f"Windows VM {instance_id} has joined the cluster as a worker node")
        return ReconcileResult()

    def _new_node_config(self, info: InstanceInfo, transport: Transport, pub_key: str) -> NodeConfig:
        windows = WindowsInstance(transport, self.config.retry, sleep=self._sleep)
        return NodeConfig(
            self.core_api,
            info,
            windows,
            self.endpoints,
            CSRApprover(self.certificates_api, self.config.retry, sleep=self._sleep),
            pub_key,
            self.networks.get(),
            network_config=self.config.network,
            cluster_config=self.config.cluster,
            retry_config=self.config.retry,
            sleep=self._sleep,
        )

    def is_allowed_deletion(self, machine: Dict[str, Any]) -> bool:
        """Check that deleting ``machine`` keeps its machine set at or above the healthy floor."""
        owner = _owner_name(machine)
        if owner is None:
            return False
        min_healthy = self.config.cluster.min_healthy_count

        try:
            machine_set = self.custom_api.get_namespaced_custom_object(
                MACHINE_GROUP, MACHINE_VERSION, self.namespace, "machinesets", owner)
            machines = self._list_machines()
        except (ApiException, TransientError) as e:
            logger.warning(f"Unable to evaluate deletion of machine {machine['metadata']['name']}: {e}")
            return False

        if (machine_set.get("spec") or {}).get("replicas") == min_healthy:
            return True

        healthy = sum(1 for m in machines if _owner_name(m) == owner and self._is_healthy(m))
        return healthy - 1 >= min_healthy

    def _is_healthy(self, machine: Dict[str, Any]) -> bool:
        if machine_phase(machine) != RUNNING_PHASE or _being_deleted(machine):
            return False
        node_name = machine_node_name(machine)
        if not node_name:
            return False
        try:
            node = self._get_node(node_name)
        except TransientError:
            return False
        return VERSION_ANNOTATION in (node.metadata.annotations or {})

    # Cluster access

    def _get_machine(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self.custom_api.get_namespaced_custom_object(
                MACHINE_GROUP, MACHINE_VERSION, self.namespace, "machines", name)
        except ApiException as e:
            if e.status == 404:
                return None
            raise TransientError(f"unable to get machine {name}") from e

    def _list_machines(self) -> List[Dict[str, Any]]:
        try:
            result = self.custom_api.list_namespaced_custom_object(
                MACHINE_GROUP, MACHINE_VERSION, self.namespace, "machines",
                label_selector=f"{MACHINE_OS_LABEL}=Windows")
        except ApiException as e:
            raise TransientError("unable to list machines") from e
        return result.get("items", [])

    def _get_node(self, name: str) -> V1Node:
        try:
            return self.core_api.read_node(name)
        except ApiException as e:
            raise TransientError(f"could not get node {name}") from e

    def _delete_machine(self, name: str) -> None:
        try:
            self.custom_api.delete_namespaced_custom_object(
                MACHINE_GROUP, MACHINE_VERSION, self.namespace, "machines", name)
        except ApiException as e:
            if e.status == 404:
                return
            raise TransientError(f"unable to delete machine {name}") from e
        logger.info(f"Deleted machine {name}")
