"""Approval of the certificate signing requests raised by new Windows nodes."""
import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

from kubernetes.client import (CertificatesV1Api, CoreV1Api, V1CertificateSigningRequest,
                               V1CertificateSigningRequestCondition,
                               V1CertificateSigningRequestStatus)
from kubernetes.client.rest import ApiException

from winnodectl.config import RetryConfig
from winnodectl.errors import RetryError, TransientError
from winnodectl.metadata import WINDOWS_NODE_SELECTOR
from winnodectl.utils import poll

logger = logging.getLogger("winnodectl.controllers.csr")

BOOTSTRAP_REQUESTOR = "system:serviceaccount:openshift-machine-config-operator:node-bootstrapper"
NODE_REQUESTOR_PREFIX = "system:node:"

APPROVE_REASON = "WMCOApprove"
APPROVE_MESSAGE = "This CSR was approved by the WMCO certificate Approver."

CONFLICT_RETRIES = 5


def _conditions(csr: V1CertificateSigningRequest) -> List[V1CertificateSigningRequestCondition]:
    if csr.status is None:
        return []
    return csr.status.conditions or []


def is_approved(csr: V1CertificateSigningRequest) -> bool:
    return any(c.type == "Approved" for c in _conditions(csr))


def is_pending(csr: V1CertificateSigningRequest) -> bool:
    """A CSR is pending until it has been approved or denied."""
    return not any(c.type in ("Approved", "Denied") for c in _conditions(csr))


def _created(csr: V1CertificateSigningRequest) -> datetime:
    ts = csr.metadata.creation_timestamp if csr.metadata else None
    return ts or datetime.max.replace(tzinfo=timezone.utc)


class CSRApprover:
    """Finds and approves the CSRs a node raises while joining the cluster."""

    def __init__(
        self,
        certificates_api: CertificatesV1Api,
        retry_config: Optional[RetryConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.certificates_api = certificates_api
        self.retry = retry_config or RetryConfig()
        self._sleep = sleep

    def _pending_for(self, requestor: str) -> Optional[V1CertificateSigningRequest]:
        try:
            csrs = self.certificates_api.list_certificate_signing_request().items
        except ApiException as e:
            logger.debug(f"Unable to list CSRs: {e.reason}")
            return None
        matching = [csr for csr in csrs
                    if csr.spec is not None and requestor in (csr.spec.username or "") and is_pending(csr)]
        if not matching:
            return None
        return min(matching, key=_created)

    def find_csr(self, requestor: str) -> V1CertificateSigningRequest:
        """Wait for the oldest pending CSR raised by ``requestor``.

        The bootstrapper raises CSRs asynchronously, so they may not exist yet
        when this is first called.
        """
        try:
            return poll(lambda: self._pending_for(requestor), interval=self.retry.interval,
                        attempts=self.retry.count, description=f"CSR from {requestor}", sleep=self._sleep)
        except RetryError as e:
            raise TransientError(f"unable to find CSR with requestor {requestor}") from e

    def approve(self, csr: V1CertificateSigningRequest) -> None:
        """Add an Approved condition to ``csr``, retrying on update conflicts."""
        name = csr.metadata.name
        for attempt in range(CONFLICT_RETRIES):
            if is_approved(csr):
                logger.debug(f"CSR {name} is already approved")
                return
            if not is_pending(csr):
                logger.info(f"CSR {name} was denied, not approving")
                return
            if csr.status is None:
                csr.status = V1CertificateSigningRequestStatus()
            csr.status.conditions = _conditions(csr) + [V1CertificateSigningRequestCondition(
                type="Approved",
                status="True",
                reason=APPROVE_REASON,
                message=APPROVE_MESSAGE,
                last_update_time=datetime.now(timezone.utc),
            )]
            try:
                self.certificates_api.replace_certificate_signing_request_approval(name, csr)
                logger.info(f"Approved CSR {name}")
                return
            except ApiException as e:
                if e.status != 409:
                    raise TransientError(f"unable to approve CSR {name}") from e
                logger.debug(f"Conflict approving CSR {name} (attempt {attempt + 1}), retrying")
                try:
                    csr = self.certificates_api.read_certificate_signing_request(name)
                except ApiException as read_err:
                    raise TransientError(f"unable to re-read CSR {name}") from read_err
        raise TransientError(f"unable to approve CSR {name}: too many update conflicts")

    def handle_csrs(self, node_name: Optional[str] = None) -> None:
        """Approve the bootstrap CSR followed by the node's serving CSR."""
        node_requestor = NODE_REQUESTOR_PREFIX + (node_name or "")
        for requestor in (BOOTSTRAP_REQUESTOR, node_requestor):
            self.approve(self.find_csr(requestor))

    def reconcile(self, name: str, core_api: CoreV1Api) -> bool:
        """Approve the renewal CSR ``name`` if it was raised by an existing Windows node.

        Returns:
            bool: True if the CSR was approved
        """
        try:
            csr = self.certificates_api.read_certificate_signing_request(name)
        except ApiException as e:
            if e.status == 404:
                return False
            raise TransientError(f"unable to get CSR {name}") from e
        if not is_pending(csr) or csr.spec is None:
            return False

        username = csr.spec.username or ""
        if not username.startswith(NODE_REQUESTOR_PREFIX):
            return False
        node_name = username[len(NODE_REQUESTOR_PREFIX):]
        try:
            nodes = core_api.list_node(label_selector=WINDOWS_NODE_SELECTOR,
                                       field_selector=f"metadata.name={node_name}").items
        except ApiException as e:
            raise TransientError(f"unable to list nodes for CSR {name}") from e
        if not nodes:
            logger.debug(f"CSR {name} does not belong to a Windows node, ignoring")
            return False
        self.approve(csr)
        return True
