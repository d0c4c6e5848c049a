#!/usr/bin/env python3
"""
CLI tool for the Kratix platform
Provides a kubectl-like interface for Promises, resource requests and Works
"""

import json
import sys

import click
import requests
import yaml
from tabulate import tabulate

from models import WORKER_RESOURCE_REPLICAS, Cluster, Work
from placement import (
    crds_bucket,
    crds_object_name,
    matching_clusters,
    resources_bucket,
    resources_object_name,
)

API_URL = "http://localhost:8000"


class PlatformClient:
    """CLI client for the platform API"""

    def __init__(self, base_url: str = API_URL):
        self.base_url = base_url.rstrip("/") + "/api/v1"

    def request(self, method: str, endpoint: str, **kwargs) -> requests.Response:
        """Send a request without interpreting the status"""
        return requests.request(method, f"{self.base_url}{endpoint}", **kwargs)

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API"""
        try:
            response = self.request(method, endpoint, **kwargs)
            response.raise_for_status()
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


def load_documents(filename: str):
    """Read every document from a YAML or JSON file"""
    with open(filename, "r") as f:
        if filename.endswith(".json"):
            data = json.load(f)
            return data if isinstance(data, list) else [data]
        return [doc for doc in yaml.safe_load_all(f) if doc]


def print_objects(items, output: str) -> None:
    if output == "yaml":
        if len(items) == 1:
            click.echo(yaml.safe_dump(items[0], default_flow_style=False, sort_keys=False))
        else:
            click.echo(
                yaml.safe_dump(
                    {"apiVersion": "v1", "kind": "List", "items": items},
                    default_flow_style=False,
                    sort_keys=False,
                )
            )
    elif output == "json":
        click.echo(json.dumps(items[0] if len(items) == 1 else items, indent=2))
    else:
        headers = ["NAMESPACE", "NAME", "PHASE", "CREATED"]
        rows = []
        for item in items:
            metadata = item.get("metadata", {})
            rows.append(
                [
                    metadata.get("namespace", ""),
                    metadata.get("name", ""),
                    (item.get("status") or {}).get("phase", ""),
                    metadata.get("creationTimestamp", ""),
                ]
            )
        click.echo(tabulate(rows, headers=headers, tablefmt="plain"))


@click.group()
@click.option(
    "--api-url",
    envvar="PLATFORM_API_URL",
    default=API_URL,
    show_default=True,
    help="Platform API base URL",
)
@click.pass_context
def cli(ctx, api_url):
    """Kratix platform CLI - kubectl-like interface for Promises and Works"""
    ctx.obj = PlatformClient(api_url)


@cli.command()
@click.option(
    "--filename", "-f", type=click.Path(exists=True), required=True,
    help="YAML or JSON file with one or more objects",
)
@click.pass_obj
def apply(client, filename):
    """Create or update objects from a file"""
    failed = False
    for data in load_documents(filename):
        kind = data.get("kind", "object").lower()
        name = data.get("metadata", {}).get("name", "")

        response = client.request("POST", "/objects", json=data)
        if response.status_code == 201:
            click.echo(f"{kind}/{name} created")
            continue
        if response.status_code != 409:
            click.echo(f"Error applying {kind}/{name}: {response.text}", err=True)
            failed = True
            continue

        # Already exists: replace it at its current resourceVersion
        namespace = data.get("metadata", {}).get("namespace")
        params = {"namespace": namespace} if namespace else {}
        current = client._make_request(
            "GET", f"/resources/{data.get('kind')}/{name}", params=params
        )
        if current is None:
            failed = True
            continue
        data.setdefault("metadata", {})["resourceVersion"] = current["metadata"][
            "resourceVersion"
        ]
        if client._make_request("PUT", "/objects", json=data) is None:
            failed = True
            continue
        click.echo(f"{kind}/{name} configured")

    if failed:
        sys.exit(1)


@cli.command()
@click.argument("resource")
@click.argument("name", required=False)
@click.option("--namespace", "-n", default=None, help="Namespace of the objects")
@click.option("--all-namespaces", "-A", is_flag=True, help="List across namespaces")
@click.option("--selector", "-l", default=None, help="Label selector, e.g. env=dev")
@click.option(
    "--output", "-o", type=click.Choice(["table", "yaml", "json"]), default="table"
)
@click.pass_obj
def get(client, resource, name, namespace, all_namespaces, selector, output):
    """Get one object by name, or list objects of a resource type"""
    if name:
        params = {"namespace": namespace} if namespace else {}
        result = client._make_request("GET", f"/resources/{resource}/{name}", params=params)
        if result is None:
            sys.exit(1)
        print_objects([result], output)
        return

    params = {}
    if not all_namespaces:
        params["namespace"] = namespace or "default"
    if selector:
        params["labelSelector"] = selector
    result = client._make_request("GET", f"/resources/{resource}", params=params)
    if result is None:
        sys.exit(1)
    items = result.get("items", [])
    if not items and output == "table":
        click.echo("No resources found")
        return
    print_objects(items, output)


@cli.command()
@click.argument("resource")
@click.argument("name")
@click.option("--namespace", "-n", default=None, help="Namespace of the object")
@click.pass_obj
def delete(client, resource, name, namespace):
    """Delete an object (waits on its finalizers server-side)"""
    params = {"namespace": namespace} if namespace else {}
    result = client._make_request("DELETE", f"/resources/{resource}/{name}", params=params)
    if result is None:
        sys.exit(1)
    if result.get("status") == "deleted":
        click.echo(f"{resource}/{name} deleted")
    else:
        click.echo(f"{resource}/{name} marked for deletion")


@cli.command()
@click.pass_obj
def types(client):
    """List the API types served by the platform"""
    result = client._make_request("GET", "/types")
    if result is None:
        sys.exit(1)
    rows = [[t["plural"], t["apiVersion"], t["scope"] == "Namespaced", t["kind"]] for t in result]
    click.echo(
        tabulate(rows, headers=["NAME", "APIVERSION", "NAMESPACED", "KIND"], tablefmt="plain")
    )


@cli.command()
@click.argument("work_name")
@click.option("--namespace", "-n", default="default", help="Namespace of the Work")
@click.pass_obj
def placement(client, work_name, namespace):
    """Show which clusters a Work matches and where it would be written"""
    work_obj = client._make_request(
        "GET", f"/resources/works/{work_name}", params={"namespace": namespace}
    )
    if work_obj is None:
        sys.exit(1)
    clusters_result = client._make_request("GET", "/resources/clusters")
    if clusters_result is None:
        sys.exit(1)

    work = Work.from_object(work_obj)
    clusters = [Cluster.from_object(c) for c in clusters_result.get("items", [])]
    rows = []
    for cluster in matching_clusters(work, clusters):
        if work.replicas == WORKER_RESOURCE_REPLICAS:
            bucket = crds_bucket(cluster)
            object_name = crds_object_name(work.namespace, work.name)
        else:
            bucket = resources_bucket(cluster)
            object_name = resources_object_name(work.namespace, work.name)
        rows.append([cluster.name, bucket, object_name])
    if not rows:
        click.echo(f"No clusters match Work {work_name}")
        return
    click.echo(tabulate(rows, headers=["CLUSTER", "BUCKET", "OBJECT"], tablefmt="plain"))


if __name__ == "__main__":
    cli()
