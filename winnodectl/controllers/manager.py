"""
Controller manager.

Watches Windows Machines, certificate signing requests and the credential
secrets, and dispatches reconciles to a worker pool. A key is never reconciled by two workers at once;
events arriving while a key is in flight cause one more reconcile afterwards.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Set

from kubernetes import watch
from kubernetes.client import CertificatesV1Api, CoreV1Api, CustomObjectsApi
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from winnodectl.controllers.condition import StatusManager
from winnodectl.controllers.csr import CSRApprover, is_pending
from winnodectl.controllers.secrets import PRIVATE_KEY_SECRET, USER_DATA_SECRET
from winnodectl.controllers.userdata import UserDataReconciler
from winnodectl.controllers.windowsmachine import (MACHINE_GROUP, MACHINE_VERSION, ReconcileResult,
                                                   WindowsMachineReconciler)
from winnodectl.errors import TransientError, WinNodeError
from winnodectl.metadata import WINDOWS_MACHINE_SELECTOR

logger = logging.getLogger("winnodectl.controllers.manager")

MACHINE_KIND = "machine"
CSR_KIND = "csr"
SECRET_KIND = "secret"

BASE_BACKOFF = 5.0
MAX_BACKOFF = 300.0
WATCH_TIMEOUT = 300


class WorkQueue:
    """Deduplicating queue guaranteeing at most one in-flight item per key."""

    def __init__(self, submit: Callable[[str], None]):
        self._submit = submit
        self._lock = threading.Lock()
        self._in_flight: Set[str] = set()
        self._dirty: Set[str] = set()
        self._timers: Dict[str, threading.Timer] = {}
        self._shutdown = False

    def add(self, key: str) -> None:
        with self._lock:
            if self._shutdown:
                return
            if key in self._in_flight:
                self._dirty.add(key)
                return
            self._in_flight.add(key)
        self._submit(key)

    def add_after(self, key: str, delay: float) -> None:
        timer = threading.Timer(delay, self._fire, args=(key,))
        timer.daemon = True
        with self._lock:
            if self._shutdown:
                return
            previous = self._timers.pop(key, None)
            if previous is not None:
                previous.cancel()
            self._timers[key] = timer
        timer.start()

    def _fire(self, key: str) -> None:
        with self._lock:
            self._timers.pop(key, None)
        self.add(key)

    def done(self, key: str) -> bool:
        """Release ``key``. Returns True if it must be processed again."""
        with self._lock:
            if key in self._dirty:
                self._dirty.discard(key)
                return True
            self._in_flight.discard(key)
            return False

    def shutdown(self) -> None:
        with self._lock:
            self._shutdown = True
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()


class Manager:
    """Runs the Windows Machine and CSR controllers until stopped."""

    def __init__(
        self,
        machine_reconciler: WindowsMachineReconciler,
        csr_approver: CSRApprover,
        core_api: CoreV1Api,
        custom_api: CustomObjectsApi,
        certificates_api: CertificatesV1Api,
        status: StatusManager,
        machine_namespace: str,
        workers: int = 4,
        user_data_reconciler: Optional[UserDataReconciler] = None,
    ):
        self.machine_reconciler = machine_reconciler
        self.csr_approver = csr_approver
        self.core_api = core_api
        self.custom_api = custom_api
        self.certificates_api = certificates_api
        self.status = status
        self.machine_namespace = machine_namespace
        self.user_data_reconciler = user_data_reconciler
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reconcile")
        self._queue = WorkQueue(lambda key: self._executor.submit(self._process, key))
        self._failures: Dict[str, int] = {}
        self._stop = threading.Event()
        self._watches: List[watch.Watch] = []
        self._threads: List[threading.Thread] = []

    def enqueue(self, kind: str, name: str) -> None:
        self._queue.add(f"{kind}/{name}")

    def _process(self, key: str) -> None:
        again = True
        while again:
            try:
                self._reconcile_key(key)
            except Exception:
                logger.exception(f"Unexpected error processing {key}")
            finally:
                # done() runs on every pass or the key stays in flight for good
                again = self._queue.done(key)

    def _reconcile_key(self, key: str) -> None:
        kind, name = key.split("/", 1)
        self.status.set_reconciling(True)
        try:
            if kind == MACHINE_KIND:
                result = self.machine_reconciler.reconcile(name)
            elif kind == SECRET_KIND:
                self.user_data_reconciler.reconcile()
                # Machines waiting on the user data or configured with the old key are re-evaluated
                self._enqueue_machines()
                result = ReconcileResult()
            else:
                self.csr_approver.reconcile(name, self.core_api)
                result = ReconcileResult()
        except WinNodeError as e:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
            delay = min(BASE_BACKOFF * 2 ** (failures - 1), MAX_BACKOFF)
            logger.error(f"Reconcile of {key} failed, retrying in {delay}s: {e}")
            self._queue.add_after(key, delay)
        except Exception:
            logger.exception(f"Unexpected error reconciling {key}")
            self._queue.add_after(key, MAX_BACKOFF)
        else:
            self._failures.pop(key, None)
            if result.requeue:
                self._queue.add_after(key, result.requeue_after or BASE_BACKOFF)
        finally:
            self.status.set_reconciling(False)
            self.status.publish()

    def _enqueue_machines(self) -> None:
        try:
            machines = self.custom_api.list_namespaced_custom_object(
                MACHINE_GROUP, MACHINE_VERSION, self.machine_namespace, "machines",
                label_selector=WINDOWS_MACHINE_SELECTOR)
        except ApiException as e:
            raise TransientError(f"unable to list Windows machines: {e.reason}") from e
        for machine in machines.get("items", []):
            self.enqueue(MACHINE_KIND, machine["metadata"]["name"])

    # Watches

    def _watch_machines(self) -> None:
        self._watch_loop(
            MACHINE_KIND,
            self.custom_api.list_namespaced_custom_object,
            dict(group=MACHINE_GROUP, version=MACHINE_VERSION, namespace=self.machine_namespace,
                 plural="machines", label_selector=WINDOWS_MACHINE_SELECTOR),
            lambda obj: obj["metadata"]["name"],
        )

    def _watch_csrs(self) -> None:
        def csr_name(obj) -> Optional[str]:
            return obj.metadata.name if is_pending(obj) else None

        self._watch_loop(CSR_KIND, self.certificates_api.list_certificate_signing_request, {}, csr_name)

    def _watch_secret(self, namespace: str, secret_name: str) -> None:
        # Every change, deletion included, is folded into one reconcile of the private key
        self._watch_loop(
            SECRET_KIND,
            self.core_api.list_namespaced_secret,
            dict(namespace=namespace, field_selector=f"metadata.name={secret_name}"),
            lambda obj: PRIVATE_KEY_SECRET,
            include_deleted=True,
        )

    def _watch_loop(self, kind: str, list_func, kwargs, name_of: Callable, include_deleted: bool = False) -> None:
        while not self._stop.is_set():
            w = watch.Watch()
            self._watches.append(w)
            try:
                for event in w.stream(list_func, timeout_seconds=WATCH_TIMEOUT, **kwargs):
                    if self._stop.is_set():
                        break
                    if event["type"] == "DELETED" and not include_deleted:
                        continue
                    name = name_of(event["object"])
                    if name:
                        self.enqueue(kind, name)
            except (ApiException, HTTPError) as e:
                logger.warning(f"Watch on {kind} objects failed, restarting: {e}")
                self._stop.wait(BASE_BACKOFF)
            finally:
                w.stop()
                self._watches.remove(w)

    def start(self) -> None:
        targets = [(self._watch_machines, (), "watch-machines"), (self._watch_csrs, (), "watch-csrs")]
        if self.user_data_reconciler is not None:
            targets.append((self._watch_secret, (self.user_data_reconciler.key_namespace, PRIVATE_KEY_SECRET),
                            "watch-private-key"))
            targets.append((self._watch_secret, (self.user_data_reconciler.user_data_namespace, USER_DATA_SECRET),
                            "watch-user-data"))
        for target, args, name in targets:
            thread = threading.Thread(target=target, args=args, name=name, daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"Controller manager started, watching machines in {self.machine_namespace}")

    def run(self) -> None:
        """Start the watches and block until ``stop`` is called."""
        self.start()
        self._stop.wait()
        self.shutdown()

    def stop(self, *_args) -> None:
        self._stop.set()

    def shutdown(self) -> None:
        self._stop.set()
        for w in list(self._watches):
            w.stop()
        self._queue.shutdown()
        self._executor.shutdown(wait=True)
        logger.info("Controller manager stopped")
