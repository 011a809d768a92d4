from typing import Optional

import typer

from winnodectl.config import get_config
from winnodectl.controllers import secrets
from winnodectl.errors import WinNodeError
from winnodectl.utils.kube import api_clients


def show_user_data(
    apply: bool = typer.Option(False, "--apply", help="Create or update the user data secret"),
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", help="Path to kubeconfig"),
):
    """Print the user data implied by the cluster's private key secret."""
    cfg = get_config()
    core_api, _, _ = api_clients(kubeconfig)
    try:
        signer = secrets.create_signer(secrets.get_private_key(core_api, cfg.cluster.watch_namespace))
        pub_key = secrets.authorized_key(signer)
        if apply:
            changed = secrets.sync_user_data_secret(core_api, cfg.cluster.machine_api_namespace,
                                                    cfg.cluster.platform, pub_key)
            typer.echo("✅ User data secret updated" if changed else "✅ User data secret is up to date")
            return
    except WinNodeError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)
    typer.echo(secrets.generate_user_data(cfg.cluster.platform, pub_key))
