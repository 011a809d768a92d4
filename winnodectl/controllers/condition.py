"""Operator status conditions and their publication in the cluster."""
import json
import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from kubernetes.client import CoreV1Api, V1ConfigMap, V1ObjectMeta
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from winnodectl.errors import ReconcileError, format_error_chain

logger = logging.getLogger("winnodectl.controllers.condition")

STATUS_CONFIGMAP = "windows-machine-config-operator-status"

DEGRADED = "Degraded"
RECONCILING = "Reconciling"

# Reason used for errors that do not carry one of their own
VM_CONFIGURATION_FAILURE = "VMConfigurationFailure"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class Condition:
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_transition_time: str = ""


def error_reason(err: Exception) -> str:
    if isinstance(err, ReconcileError):
        return err.reason
    return VM_CONFIGURATION_FAILURE


class StatusManager:
    """Keeps the operator conditions and publishes them to a ConfigMap.

    Errors are tracked per reconcile key so that a failure on one machine is
    not hidden by a success on another.
    """

    def __init__(self, core_api: Optional[CoreV1Api] = None, namespace: Optional[str] = None):
        self.core_api = core_api
        self.namespace = namespace
        self._lock = threading.Lock()
        self._conditions: Dict[str, Condition] = {}
        self._errors: Dict[str, Exception] = {}

    @property
    def conditions(self) -> List[Condition]:
        with self._lock:
            return [Condition(**asdict(c)) for c in self._conditions.values()]

    def get(self, cond_type: str) -> Optional[Condition]:
        with self._lock:
            return self._conditions.get(cond_type)

    def _set(self, condition: Condition) -> None:
        current = self._conditions.get(condition.type)
        if current is not None and current.status == condition.status:
            if current.reason == condition.reason and current.message == condition.message:
                return
            condition.last_transition_time = current.last_transition_time
        else:
            condition.last_transition_time = _now()
        self._conditions[condition.type] = condition

    def set_degraded(self, errors: Sequence[Exception]) -> Condition:
        """Set the Degraded condition from ``errors``, clearing it when there are none."""
        if not errors:
            condition = Condition(type=DEGRADED, status="False")
        else:
            condition = Condition(
                type=DEGRADED,
                status="True",
                reason=", ".join(error_reason(e) for e in errors),
                message=", ".join(format_error_chain(e) for e in errors),
            )
        with self._lock:
            self._set(condition)
            return self._conditions[DEGRADED]

    def set_reconciling(self, busy: bool) -> None:
        with self._lock:
            self._set(Condition(type=RECONCILING, status="True" if busy else "False"))

    def record(self, key: str, err: Optional[Exception]) -> Condition:
        """Record the outcome of the last reconcile of ``key`` and recompute Degraded."""
        with self._lock:
            if err is None:
                self._errors.pop(key, None)
            else:
                self._errors[key] = err
            errors = [self._errors[k] for k in sorted(self._errors)]
        return self.set_degraded(errors)

    def to_dict(self) -> Dict[str, List[Dict[str, str]]]:
        return {"conditions": [asdict(c) for c in self.conditions]}

    def publish(self) -> None:
        """Write the conditions into the status ConfigMap, creating it if needed.

        Failures are logged, the conditions are published again on the next call.
        """
        if self.core_api is None or self.namespace is None:
            return
        data = {"conditions": json.dumps(self.to_dict()["conditions"])}
        try:
            self.core_api.patch_namespaced_config_map(STATUS_CONFIGMAP, self.namespace, {"data": data})
            return
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Failed to update status ConfigMap: {e.reason}")
                return
        except HTTPError as e:
            logger.error(f"Failed to update status ConfigMap: {e}")
            return
        body = V1ConfigMap(metadata=V1ObjectMeta(name=STATUS_CONFIGMAP, namespace=self.namespace), data=data)
        try:
            self.core_api.create_namespaced_config_map(self.namespace, body)
        except ApiException as e:
            logger.error(f"Failed to create status ConfigMap: {e.reason}")
        except HTTPError as e:
            logger.error(f"Failed to create status ConfigMap: {e}")
