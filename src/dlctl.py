#!/usr/bin/env python3
"""
CLI tool for the DeviceLink limb
Provides kubectl-like interface for managing DeviceLinks and device models
"""

import json
import os
import time

import click
import requests
import yaml
from tabulate import tabulate

API_BASE_URL = os.getenv("DLCTL_API_URL", "http://localhost:8000/api/v1")


class DeviceLinkCLI:
    """CLI client for the DeviceLink limb API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url.rstrip("/")

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API"""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, **kwargs)
            response.raise_for_status()
            if response.status_code == 204 or not response.content:
                return {}
            return response.json()
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            if hasattr(e, "response") and e.response is not None:
                try:
                    error_detail = e.response.json()
                    click.echo(f"Detail: {error_detail}", err=True)
                except (ValueError, json.JSONDecodeError):
                    click.echo(f"Response: {e.response.text}", err=True)
            return None


def load_manifest(filename: str):
    """Read a YAML or JSON manifest file"""
    with open(filename, "r") as f:
        if filename.endswith(".yaml") or filename.endswith(".yml"):
            return yaml.safe_load(f)
        return json.load(f)


def condition_summary(link: dict) -> str:
    """Render conditions as ``Type=Status`` pairs"""
    conditions = link.get("status", {}).get("conditions") or []
    return ",".join(f"{c['type']}={c['status']}" for c in conditions) or "-"


def echo_object(result, output: str):
    if output == "yaml":
        click.echo(yaml.safe_dump(result, default_flow_style=False))
    else:
        click.echo(json.dumps(result, indent=2))


@click.group()
@click.option("--api-url", default=API_BASE_URL, help="Base URL of the limb API")
@click.pass_context
def cli(ctx, api_url):
    """DeviceLink CLI - kubectl-like interface for DeviceLinks"""
    ctx.obj = DeviceLinkCLI(api_url)


@cli.command()
@click.option(
    "--filename", "-f", type=click.Path(exists=True), required=True,
    help="Manifest to apply",
)
@click.option("--namespace", "-n", default=None, help="Override the namespace")
@click.pass_obj
def apply(client, filename, namespace):
    """Create or update a DeviceLink from a YAML/JSON file"""
    data = load_manifest(filename)
    metadata = data.get("metadata") or {}
    name = metadata.get("name")
    namespace = namespace or metadata.get("namespace") or "default"

    if not name:
        raise click.ClickException("metadata.name is required")

    endpoint = f"/namespaces/{namespace}/devicelinks"
    existing = None
    try:
        response = requests.get(f"{client.base_url}{endpoint}/{name}")
        if response.status_code == 200:
            existing = response.json()
    except requests.exceptions.RequestException as e:
        raise click.ClickException(str(e))

    if existing is None:
        result = client._make_request("POST", endpoint, json=data)
        action = "created"
    else:
        result = client._make_request("PUT", f"{endpoint}/{name}", json=data)
        action = "configured"

    if result:
        click.echo(f"devicelink/{name} {action}")


@cli.command()
@click.option("--namespace", "-n", default="default")
@click.option("--node", default=None, help="Only links bound to or targeting a node")
@click.option("--adaptor", default=None, help="Only links served by an adaptor")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "wide"]), default="table"
)
@click.pass_obj
def get(client, namespace, node, adaptor, output):
    """List DeviceLinks"""
    params = {}
    if node:
        params["node"] = node
    if adaptor:
        params["adaptor"] = adaptor

    result = client._make_request(
        "GET", f"/namespaces/{namespace}/devicelinks", params=params
    )
    if result is None:
        return

    items = result.get("items", [])
    if output == "json":
        click.echo(json.dumps(items, indent=2))
        return

    headers = ["Name", "Node", "Adaptor", "Model", "Conditions"]
    if output == "wide":
        headers += ["Generation", "Deleting"]

    rows = []
    for link in items:
        spec = link["spec"]
        row = [
            link["metadata"]["name"],
            spec["adaptor"]["node"],
            spec["adaptor"]["name"],
            f"{spec['model']['apiVersion']}/{spec['model']['kind']}",
            condition_summary(link),
        ]
        if output == "wide":
            row += [
                link["metadata"]["generation"],
                "yes" if link["metadata"].get("deletionTimestamp") else "",
            ]
        rows.append(row)

    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
@click.pass_obj
def describe(client, name, namespace, output):
    """Describe a DeviceLink"""
    result = client._make_request("GET", f"/namespaces/{namespace}/devicelinks/{name}")
    if result:
        echo_object(result, output)


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.confirmation_option(prompt="Are you sure you want to delete this DeviceLink?")
@click.pass_obj
def delete(client, name, namespace):
    """Delete a DeviceLink (disconnects it from its adaptor first)"""
    result = client._make_request(
        "DELETE", f"/namespaces/{namespace}/devicelinks/{name}"
    )
    if result:
        click.echo(result.get("message", f"devicelink/{name} deleted"))


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option("--limit", "-l", default=20, help="Number of events to show")
@click.pass_obj
def events(client, name, namespace, limit):
    """Show recorded events of a DeviceLink"""
    result = client._make_request(
        "GET",
        f"/namespaces/{namespace}/devicelinks/{name}/events",
        params={"limit": limit},
    )
    if result is None:
        return

    headers = ["Type", "Reason", "Message", "From", "Time"]
    rows = [
        [
            event["event_type"],
            event["reason"],
            event["message"],
            event.get("component") or "",
            event["created_at"],
        ]
        for event in result.get("items", [])
    ]
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.pass_obj
def reconcile(client, name, namespace):
    """Manually trigger reconciliation of a DeviceLink"""
    result = client._make_request(
        "POST", f"/namespaces/{namespace}/devicelinks/{name}/reconcile"
    )
    if result:
        click.echo("Reconciliation triggered successfully")


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option("--follow", "-f", is_flag=True, help="Follow status updates")
@click.option("--interval", "-i", default=5, help="Polling interval in seconds")
@click.pass_obj
def status(client, name, namespace, follow, interval):
    """Show the conditions of a DeviceLink"""

    def show_status():
        result = client._make_request(
            "GET", f"/namespaces/{namespace}/devicelinks/{name}"
        )
        if not result:
            return
        link_status = result["status"]
        click.clear()
        click.echo(f"DeviceLink: {namespace}/{name}")
        click.echo(f"Node: {link_status.get('nodeName') or 'unbound'}")
        click.echo(f"Adaptor: {link_status.get('adaptorName') or '-'}")
        rows = [
            [c["type"], c["status"], c["reason"], c["message"]]
            for c in link_status.get("conditions") or []
        ]
        click.echo(
            tabulate(rows, headers=["Condition", "Status", "Reason", "Message"])
        )

    show_status()

    if follow:
        try:
            while True:
                time.sleep(interval)
                show_status()
        except KeyboardInterrupt:
            click.echo("\nStopped following")


@cli.group()
def models():
    """Manage device models"""


@models.command("register")
@click.option(
    "--filename", "-f", type=click.Path(exists=True), required=True,
    help="Model definition (apiVersion, kind, schema)",
)
@click.pass_obj
def register_model(client, filename):
    """Register a device model"""
    data = load_manifest(filename)
    result = client._make_request("POST", "/models", json=data)
    if result:
        click.echo(f"model {result['apiVersion']}/{result['kind']} registered")


@models.command("list")
@click.pass_obj
def list_models(client):
    """List registered device models"""
    result = client._make_request("GET", "/models")
    if result is None:
        return
    rows = [
        [m["apiVersion"], m["kind"], m.get("description") or "", m["created_at"]]
        for m in result
    ]
    click.echo(
        tabulate(
            rows, headers=["API Version", "Kind", "Description", "Created"],
            tablefmt="grid",
        )
    )


@models.command("delete")
@click.argument("api_version")
@click.argument("kind")
@click.pass_obj
def delete_model(client, api_version, kind):
    """Unregister a device model"""
    result = client._make_request("DELETE", f"/models/{api_version}/{kind}")
    if result is not None:
        click.echo(f"model {api_version}/{kind} deleted")


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
@click.pass_obj
def device(client, name, namespace, output):
    """Show the device rendered from a DeviceLink"""
    result = client._make_request("GET", f"/namespaces/{namespace}/devices/{name}")
    if result:
        echo_object(result, output)


if __name__ == "__main__":
    cli()
