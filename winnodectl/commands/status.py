from typing import Optional

import requests
import typer
from kubernetes.client.rest import ApiException
from rich.console import Console
from rich.table import Table

from winnodectl import version
from winnodectl.metadata import PUB_KEY_HASH_ANNOTATION, VERSION_ANNOTATION, WINDOWS_NODE_SELECTOR
from winnodectl.utils.kube import api_clients

app = typer.Typer()
console = Console()


@app.command("nodes")
def status_nodes(
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", help="Path to kubeconfig"),
):
    """Show Windows nodes and whether they run the current configuration."""
    core_api, _, _ = api_clients(kubeconfig)
    try:
        nodes = core_api.list_node(label_selector=WINDOWS_NODE_SELECTOR).items
    except ApiException as e:
        console.print(f"❌ Unable to list nodes: {e.reason}")
        raise typer.Exit(code=1)

    current = version.get()
    table = Table(title=f"Windows nodes (operator version {current})")
    table.add_column("Node")
    table.add_column("Version")
    table.add_column("Key hash")
    table.add_column("Up to date")
    for node in nodes:
        annotations = node.metadata.annotations or {}
        node_version = annotations.get(VERSION_ANNOTATION, "")
        table.add_row(
            node.metadata.name,
            node_version or "-",
            annotations.get(PUB_KEY_HASH_ANNOTATION, "-")[:12],
            "✅" if node_version == current else "❌",
        )
    console.print(table)


@app.command("api")
def status_api(
    url: str = typer.Option("http://localhost:8080", "--url", help="Status API base URL"),
    api_key: str = typer.Option("winnodectl-secret", "--api-key", envvar="WNC_API_KEY", help="API key"),
):
    """Query the status endpoint of a running operator."""
    try:
        response = requests.get(f"{url.rstrip('/')}/status", headers={"X-API-Key": api_key}, timeout=10)
        response.raise_for_status()
    except requests.RequestException as e:
        console.print(f"❌ Unable to query {url}: {e}")
        raise typer.Exit(code=1)

    body = response.json()
    console.print(f"📡 Operator version {body.get('version')}")
    table = Table()
    for column in ("Type", "Status", "Reason", "Message", "Since"):
        table.add_column(column)
    for cond in body.get("conditions", []):
        table.add_row(cond["type"], cond["status"], cond.get("reason", ""), cond.get("message", ""),
                      cond.get("last_transition_time", ""))
    console.print(table)
