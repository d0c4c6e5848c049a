#!/usr/bin/env python3
"""
Work creator - the final step of every request pipeline.

Collects the documents the pipeline stages left in the output area,
resolves the cluster selector from the Promise's selector document and
any selectors a stage wrote to the metadata area, and submits the
resulting Work to the platform API.

Expected layout of the input directory:

    input/                       documents to place (YAML or JSON)
    metadata/cluster-selectors.yaml
    kratix-system/promise-cluster-selectors
"""

import json
from pathlib import Path
from typing import Any, Dict, List

import click
import requests
import yaml

from errors import InvalidObjectError
from models import RESOURCE_REQUEST_REPLICAS, Work
from pipeline import SELECTORS_FILE, parse_labels

API_URL = "http://localhost:8000"
MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")
METADATA_SELECTORS_FILE = "cluster-selectors.yaml"


def load_manifests(input_dir: Path) -> List[Dict[str, Any]]:
    """Every document under input_dir, in file-name order."""
    manifests: List[Dict[str, Any]] = []
    if not input_dir.is_dir():
        return manifests

    for path in sorted(input_dir.iterdir()):
        if not path.is_file() or path.suffix not in MANIFEST_SUFFIXES:
            continue
        with open(path, "r") as f:
            if path.suffix == ".json":
                data = json.load(f)
                documents = data if isinstance(data, list) else [data]
            else:
                documents = list(yaml.safe_load_all(f))

        for document in documents:
            if document is None:
                continue
            if not isinstance(document, dict):
                raise click.ClickException(f"{path.name}: expected an object document")
            manifests.append(document)
    return manifests


def load_selectors(root: Path) -> Dict[str, str]:
    """
    Resolve the Work's cluster selector.

    Selectors written by a pipeline stage are merged under the Promise's;
    the Promise wins when both set a key.
    """
    selectors: Dict[str, str] = {}

    extra = root / "metadata" / METADATA_SELECTORS_FILE
    if extra.is_file():
        with open(extra, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise click.ClickException(f"{extra.name}: expected a mapping of labels")
        selectors.update({str(k): str(v) for k, v in data.items()})

    promise_selectors = root / "kratix-system" / SELECTORS_FILE
    if promise_selectors.is_file():
        try:
            selectors.update(parse_labels(promise_selectors.read_text()))
        except ValueError as e:
            raise click.ClickException(f"{SELECTORS_FILE}: {e}")

    return selectors


def build_work(
    identifier: str, namespace: str, root: Path
) -> Dict[str, Any]:
    """Build the request's Work from a work-creator input directory."""
    work = Work(
        name=identifier,
        namespace=namespace,
        replicas=RESOURCE_REQUEST_REPLICAS,
        cluster_selector=load_selectors(root),
        manifests=load_manifests(root / "input"),
    )
    try:
        return work.to_object()
    except InvalidObjectError:
        raise click.ClickException(
            f"No documents found in {root / 'input'}; nothing to place"
        )


def submit_work(api_url: str, work: Dict[str, Any]) -> bool:
    """
    POST the Work to the platform.

    Returns:
        True if created, False if a Work of that name already existed.
    """
    url = f"{api_url.rstrip('/')}/api/v1/objects"
    try:
        response = requests.post(url, json=work, timeout=30)
    except requests.exceptions.RequestException as e:
        raise click.ClickException(f"Error submitting Work: {e}")

    if response.status_code == 409:
        return False
    if response.status_code >= 400:
        raise click.ClickException(
            f"Error submitting Work ({response.status_code}): {response.text}"
        )
    return True


@click.command()
@click.option("--identifier", required=True, help="Name of the Work to create")
@click.option(
    "--input-directory",
    required=True,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Directory holding input/, metadata/ and kratix-system/",
)
@click.option("--namespace", default="default", show_default=True)
@click.option("--api-url", envvar="PLATFORM_API_URL", default=API_URL, show_default=True)
def main(identifier, input_directory, namespace, api_url):
    """Create the Work for a resource request from pipeline output"""
    work = build_work(identifier, namespace, input_directory)
    manifests = work["spec"]["workload"]["manifests"]

    if submit_work(api_url, work):
        click.echo(f"Created Work {identifier} with {len(manifests)} manifest(s)")
    else:
        click.echo(f"Work {identifier} already exists")


if __name__ == "__main__":
    main()
