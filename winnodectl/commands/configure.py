from pathlib import Path
from typing import Optional

import typer

from winnodectl.config import get_config
from winnodectl.controllers import secrets
from winnodectl.controllers.csr import CSRApprover
from winnodectl.errors import WinNodeError, format_error_chain
from winnodectl.instance import InstanceInfo, admin_username
from winnodectl.nodeconfig.bootstrap import EndpointCache
from winnodectl.nodeconfig.clusternetwork import ClusterNetworkCache
from winnodectl.nodeconfig.nodeconfig import NodeConfig
from winnodectl.utils.kube import api_clients
from winnodectl.windows.connectivity import Transport
from winnodectl.windows.windows import WindowsInstance


def configure_instance(
    address: str = typer.Argument(..., help="IP address or DNS name of the Windows instance"),
    username: Optional[str] = typer.Option(None, "--username", "-u", help="Administrative user"),
    key_path: Optional[str] = typer.Option(None, "--key", help="Private key file, read from the cluster if unset"),
    hostname: Optional[str] = typer.Option(None, "--hostname", help="Rename the instance before configuring it"),
    set_node_ip: bool = typer.Option(False, "--set-node-ip", help="Make the kubelet advertise ADDRESS"),
    remove: bool = typer.Option(False, "--remove", help="Remove the operator services instead"),
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", help="Path to kubeconfig"),
):
    """Configure a single Windows instance as a worker node."""
    cfg = get_config()
    core_api, custom_api, certificates_api = api_clients(kubeconfig)

    key_path = key_path or cfg.ssh.key_path
    try:
        if key_path:
            private_key = Path(key_path).expanduser().read_bytes()
        else:
            private_key = secrets.get_private_key(core_api, cfg.cluster.watch_namespace)
        signer = secrets.create_signer(private_key)
    except (OSError, WinNodeError) as e:
        typer.echo(f"❌ Unable to load private key: {e}", err=True)
        raise typer.Exit(code=1)

    try:
        cluster_network = ClusterNetworkCache(custom_api, cfg.network).get()
    except WinNodeError as e:
        typer.echo(f"❌ Unable to read cluster network configuration: {e}", err=True)
        raise typer.Exit(code=1)

    info = InstanceInfo(
        address=address,
        username=username or admin_username(cfg.cluster.platform),
        new_hostname=hostname,
        set_node_ip=set_node_ip,
    )
    transport = Transport(address, info.username, signer, ssh_config=cfg.ssh, retry_config=cfg.retry)
    windows = WindowsInstance(transport, cfg.retry)
    nc = NodeConfig(
        core_api,
        info,
        windows,
        EndpointCache(custom_api),
        CSRApprover(certificates_api, cfg.retry),
        secrets.authorized_key(signer),
        cluster_network,
        network_config=cfg.network,
        cluster_config=cfg.cluster,
        retry_config=cfg.retry,
    )

    try:
        if remove:
            typer.echo(f"🧹 Removing operator services from {address}...")
            nc.deconfigure()
            typer.echo(f"✅ {address} deconfigured")
            return
        typer.echo(f"🔧 Configuring {address}...")
        node = nc.configure()
    except WinNodeError as e:
        typer.echo(f"❌ {format_error_chain(e)}", err=True)
        raise typer.Exit(code=1)
    finally:
        transport.close()
    typer.echo(f"✅ {address} joined the cluster as node {node.metadata.name}")
