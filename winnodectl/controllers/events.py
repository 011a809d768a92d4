"""Kubernetes events for the objects the operator acts on."""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from kubernetes.client import CoreV1Api, CoreV1Event, V1EventSource, V1ObjectMeta, V1ObjectReference
from kubernetes.client.rest import ApiException

logger = logging.getLogger("winnodectl.controllers.events")

COMPONENT = "windows-machine-config-operator"

NORMAL = "Normal"
WARNING = "Warning"


def machine_reference(machine: Dict[str, Any]) -> V1ObjectReference:
    """Build an object reference for a Machine custom object."""
    metadata = machine.get("metadata", {})
    return V1ObjectReference(
        api_version=machine.get("apiVersion", "machine.openshift.io/v1beta1"),
        kind=machine.get("kind", "Machine"),
        name=metadata.get("name"),
        namespace=metadata.get("namespace"),
        uid=metadata.get("uid"),
        resource_version=metadata.get("resourceVersion"),
    )


class EventRecorder:
    """Records core/v1 events. Recording failures never affect the caller."""

    def __init__(self, core_api: CoreV1Api, component: str = COMPONENT):
        self.core_api = core_api
        self.component = component

    def event(self, obj_ref: V1ObjectReference, event_type: str, reason: str, message: str) -> None:
        namespace = obj_ref.namespace or "default"
        now = datetime.now(timezone.utc)
        body = CoreV1Event(
            metadata=V1ObjectMeta(name=f"{obj_ref.name}.{uuid.uuid4().hex[:16]}", namespace=namespace),
            involved_object=obj_ref,
            type=event_type,
            reason=reason,
            message=message,
            source=V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self.core_api.create_namespaced_event(namespace, body)
        except ApiException as e:
            logger.warning(f"Unable to record {reason} event for {obj_ref.name}: {e.reason}")
        logger.debug(f"Event {event_type}/{reason} on {obj_ref.kind} {obj_ref.name}: {message}")
