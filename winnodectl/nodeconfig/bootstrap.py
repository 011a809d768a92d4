"""Kubelet bootstrap of a Windows instance."""
import logging
import threading
from typing import Optional
from urllib.parse import urlparse

from kubernetes.client import CustomObjectsApi
from kubernetes.client.rest import ApiException

from winnodectl.errors import ConfigurationError, ReconcileError, WinNodeError
from winnodectl.instance import PlatformType
from winnodectl.windows import paths
from winnodectl.windows.windows import WindowsInstance

logger = logging.getLogger("winnodectl.nodeconfig.bootstrap")

# Ignition 0.35.0 serves v2 configs
IGNITION_USER_AGENT = "Ignition/0.35.0"
MACHINE_CONFIG_SERVER_PORT = 22623


def ignition_endpoint_from_url(api_server_internal_url: str) -> str:
    """Translate ``https://api-int.<domain>:6443`` to the worker ignition URL."""
    hostname = urlparse(api_server_internal_url).hostname or ""
    if not hostname.startswith("api-int."):
        raise ConfigurationError(
            "invalid API server url format found: expected hostname to start with `api-int.`")
    return f"https://{hostname}:{MACHINE_CONFIG_SERVER_PORT}/config/worker"


class EndpointCache:
    """Process-wide cache of the worker ignition endpoint.

    The endpoint is derived from the cluster Infrastructure object and does not
    change for the lifetime of the cluster, so it is looked up at most once.
    """

    def __init__(self, custom_objects_api: CustomObjectsApi):
        self.custom_objects_api = custom_objects_api
        self._lock = threading.Lock()
        self._endpoint: Optional[str] = None

    def ignition_endpoint(self) -> str:
        if self._endpoint is not None:
            return self._endpoint
        with self._lock:
            if self._endpoint is None:
                self._endpoint = ignition_endpoint_from_url(self._api_server_internal_url())
                logger.info(f"Discovered worker ignition endpoint {self._endpoint}")
        return self._endpoint

    def _api_server_internal_url(self) -> str:
        try:
            infra = self.custom_objects_api.get_cluster_custom_object(
                "config.openshift.io", "v1", "infrastructures", "cluster")
        except ApiException as e:
            raise ConfigurationError("unable to get cluster infrastructure resource") from e
        url = (infra.get("status") or {}).get("apiServerInternalURL")
        if not url:
            raise ConfigurationError("could not get host name for the kubernetes api server")
        return url


class InstanceBootstrapper:
    """Turns a prepared instance into a running kubelet."""

    def __init__(self, instance: WindowsInstance, endpoints: EndpointCache):
        self.instance = instance
        self.endpoints = endpoints

    def download_ignition(self) -> None:
        # The machine config server certificate is not trusted yet, hence the cert-ignoring script
        cmd = (f"{paths.IGNITION_DOWNLOAD_SCRIPT} -server {self.endpoints.ignition_endpoint()} "
               f"-output {paths.WORKER_IGNITION_PATH} -useragent {IGNITION_USER_AGENT}")
        self.instance.run(cmd, True)

    def bootstrap(
        self,
        node_ip: Optional[str] = None,
        cluster_dns: Optional[str] = None,
        platform: Optional[PlatformType] = None,
    ) -> None:
        """Download the worker ignition file and initialize the kubelet from it.

        Args:
            node_ip: Address the kubelet should advertise instead of autodetecting one
            cluster_dns: Cluster DNS server address passed to the kubelet
            platform: Platform type passed to the bootstrapper

        Raises:
            ReconcileError: With reason ``BootstrapFailure``
        """
        try:
            self.download_ignition()
        except WinNodeError as e:
            raise ReconcileError("BootstrapFailure", f"unable to download worker.ign: {e}") from e

        cmd = (f"{paths.BOOTSTRAPPER_PATH} initialize-kubelet --ignition-file {paths.WORKER_IGNITION_PATH} "
               f"--kubelet-path {paths.KUBELET_PATH}")
        if node_ip:
            cmd += f" --node-ip={node_ip}"
        if cluster_dns:
            cmd += f" --cluster-dns={cluster_dns}"
        if platform is not None and platform != PlatformType.NONE:
            cmd += f" --platform-type={platform.value}"

        try:
            out = self.instance.run(cmd, True)
        except WinNodeError as e:
            raise ReconcileError("BootstrapFailure", f"error running bootstrapper: {e}") from e
        logger.debug(f"Bootstrapper output from {self.instance.address}: {out}")
        logger.info(f"Initialized kubelet on {self.instance.address}")
