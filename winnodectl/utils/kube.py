"""Kubernetes client helpers."""
import os
import logging
from pathlib import Path
from typing import Optional, Tuple

from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException

logger = logging.getLogger("winnodectl.utils.kube")


def load_kubeconfig(path: Optional[str] = None) -> str:
    """
    Load cluster credentials for the kubernetes client.

    Order: KUBECONFIG_CONTENT env var, explicit path, in-cluster service
    account, then the default kubeconfig location.
    Returns a description of the source that was used.
    """
    # CI/CD secret-based loading
    if "KUBECONFIG_CONTENT" in os.environ:
        temp_path = "/tmp/ci-kubeconfig.yaml"
        with open(temp_path, "w") as f:
            f.write(os.environ["KUBECONFIG_CONTENT"])
        config.load_kube_config(config_file=temp_path)
        return temp_path

    if path:
        resolved = Path(os.path.expanduser(path)).resolve()
        if not resolved.exists():
            raise FileNotFoundError(f"Kubeconfig not found: {resolved}")
        config.load_kube_config(config_file=str(resolved))
        return str(resolved)

    try:
        config.load_incluster_config()
        return "in-cluster"
    except ConfigException:
        logger.debug("Not running in a cluster, falling back to the default kubeconfig")

    config.load_kube_config()
    return os.environ.get("KUBECONFIG", "~/.kube/config")


def api_clients(path: Optional[str] = None) -> Tuple[client.CoreV1Api, client.CustomObjectsApi, client.CertificatesV1Api]:
    """Load credentials and return the API clients used by the controllers."""
    source = load_kubeconfig(path)
    logger.debug(f"Loaded cluster credentials from {source}")
    return client.CoreV1Api(), client.CustomObjectsApi(), client.CertificatesV1Api()
