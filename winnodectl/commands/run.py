import signal
import threading
from typing import Optional

import typer
import uvicorn

from winnodectl.config import get_config
from winnodectl.controllers.condition import StatusManager
from winnodectl.controllers.csr import CSRApprover
from winnodectl.controllers.events import EventRecorder
from winnodectl.controllers.manager import Manager
from winnodectl.controllers.userdata import UserDataReconciler
from winnodectl.controllers.windowsmachine import WindowsMachineReconciler
from winnodectl.nodeconfig.bootstrap import EndpointCache
from winnodectl.nodeconfig.clusternetwork import ClusterNetworkCache
from winnodectl.utils.kube import api_clients


def _start_api(status: StatusManager, host: str, port: int) -> uvicorn.Server:
    from winnodectl.api.main import create_app

    server = uvicorn.Server(uvicorn.Config(create_app(status), host=host, port=port, log_level="warning"))
    # uvicorn installs its own signal handlers only when running in the main thread
    thread = threading.Thread(target=server.run, name="status-api", daemon=True)
    thread.start()
    return server


def run_operator(
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", help="Path to kubeconfig, in-cluster if unset"),
    api: bool = typer.Option(True, "--api/--no-api", help="Serve the status API"),
    host: str = typer.Option("0.0.0.0", "--host", help="Status API bind address"),
    port: int = typer.Option(8080, "--port", help="Status API port"),
    workers: int = typer.Option(4, "--workers", help="Concurrent reconciles"),
):
    """Run the Windows node controllers until interrupted."""
    cfg = get_config()
    core_api, custom_api, certificates_api = api_clients(kubeconfig)

    status = StatusManager(core_api, cfg.cluster.watch_namespace)
    reconciler = WindowsMachineReconciler(
        core_api,
        custom_api,
        certificates_api,
        cfg,
        status=status,
        recorder=EventRecorder(core_api),
        endpoints=EndpointCache(custom_api),
        networks=ClusterNetworkCache(custom_api, cfg.network),
    )
    manager = Manager(
        reconciler,
        CSRApprover(certificates_api, cfg.retry),
        core_api,
        custom_api,
        certificates_api,
        status,
        cfg.cluster.machine_api_namespace,
        workers=workers,
        user_data_reconciler=UserDataReconciler(core_api, cfg.cluster.watch_namespace,
                                                cfg.cluster.machine_api_namespace, cfg.cluster.platform),
    )

    server = _start_api(status, host, port) if api else None
    signal.signal(signal.SIGTERM, manager.stop)
    signal.signal(signal.SIGINT, manager.stop)

    typer.echo(f"🚀 Watching Windows machines in {cfg.cluster.machine_api_namespace}")
    manager.run()
    if server is not None:
        server.should_exit = True
    typer.echo("👋 Stopped")
