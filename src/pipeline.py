"""
Pipeline executor plan for a resource request.

Builds, but does not run, the executor record (a Pod document) that
materializes a resource request, runs it through the Promise's pipeline
images in order and finally hands the output to the work creator. An
external executor runtime picks the record up; nothing here waits on it.

Every stage shares three staging directories:

    /input      the materialized resource request (object.yaml)
    /output     documents to place on worker clusters
    /metadata   extra placement hints, e.g. cluster-selectors.yaml

Stages are chained by execution order only; no data is threaded between
them beyond what they leave in the shared directories.
"""

import uuid
from dataclasses import dataclass
from typing import Any, Dict, List

from models import (
    CONFIG_MAP_KIND,
    POD_KIND,
    GroupVersionKind,
    new_object,
)

INPUT_VOLUME = "input"
OUTPUT_VOLUME = "output"
METADATA_VOLUME = "metadata"
SELECTORS_VOLUME = "promise-cluster-selectors"

INPUT_PATH = "/input"
OUTPUT_PATH = "/output"
METADATA_PATH = "/metadata"

WORK_CREATOR_ROOT = "/work-creator-files"
WORK_CREATOR_INPUT = f"{WORK_CREATOR_ROOT}/input"
WORK_CREATOR_METADATA = f"{WORK_CREATOR_ROOT}/metadata"
WORK_CREATOR_CONFIG = f"{WORK_CREATOR_ROOT}/kratix-system"

SELECTORS_KEY = "selectors"
SELECTORS_FILE = "promise-cluster-selectors"

PROMISE_ID_LABEL = "kratix-promise-id"
REQUEST_ID_LABEL = "kratix-promise-resource-request-id"

READER_CONTAINER = "reader"
WRITER_CONTAINER = "writer"
STAGE_CONTAINER_PREFIX = "xaas-request-pipeline-stage"


@dataclass
class PipelineImages:
    """Platform-owned images that wrap every pipeline."""

    reader: str
    work_creator: str


def format_labels(labels: Dict[str, str]) -> str:
    """Serialize a selector as a flat ``k=v,k2=v2`` document (sorted keys)."""
    return ",".join(f"{key}={labels[key]}" for key in sorted(labels))


def parse_labels(document: str) -> Dict[str, str]:
    """
    Parse a flat ``k=v,k2=v2`` selector document.

    Raises:
        ValueError: If a pair has no ``=`` or an empty key.
    """
    labels: Dict[str, str] = {}
    for pair in document.strip().split(","):
        pair = pair.strip()
        if not pair:
            continue
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid selector term '{pair}': expected key=value")
        labels[key.strip()] = value.strip()
    return labels


def selector_config_name(promise_identifier: str) -> str:
    return f"cluster-selectors-{promise_identifier}"


def build_selector_config(
    promise_identifier: str, cluster_selector: Dict[str, str], namespace: str
) -> Dict[str, Any]:
    """The read-only configuration record mounted into the writer step."""
    return new_object(
        CONFIG_MAP_KIND,
        selector_config_name(promise_identifier),
        namespace,
        data={SELECTORS_KEY: format_labels(cluster_selector)},
    )


def executor_name(promise_identifier: str) -> str:
    """A fresh executor name, ``request-pipeline-<promise-id>-<5 chars>``."""
    return f"request-pipeline-{promise_identifier}-{uuid.uuid4().hex[:5]}"


def _mount(volume: str, path: str, read_only: bool = False) -> Dict[str, Any]:
    mount: Dict[str, Any] = {"name": volume, "mountPath": path}
    if read_only:
        mount["readOnly"] = True
    return mount


def reader_command(kind: GroupVersionKind, namespace: str, name: str) -> str:
    return (
        f"kratixctl get {kind.kind.lower()}.{kind.group} {name} "
        f"--namespace {namespace} -o yaml > {OUTPUT_PATH}/object.yaml"
    )


def writer_command(request_identifier: str, namespace: str) -> str:
    return (
        f"work-creator --identifier {request_identifier} "
        f"--input-directory {WORK_CREATOR_ROOT} --namespace {namespace}"
    )


def build_pipeline_executor(
    name: str,
    namespace: str,
    kind: GroupVersionKind,
    request_namespace: str,
    request_name: str,
    promise_identifier: str,
    request_identifier: str,
    pipeline_images: List[str],
    images: PipelineImages,
    platform_api_url: str,
    work_namespace: str = "default",
) -> Dict[str, Any]:
    """
    Build the executor record for one resource request.

    The reader materializes the request into the input area, each declared
    image then runs in order, and the writer turns the output and metadata
    areas into the request's Work.
    """
    env = [{"name": "PLATFORM_API_URL", "value": platform_api_url}]

    init_containers = [
        {
            "name": READER_CONTAINER,
            "image": images.reader,
            "command": [
                "sh",
                "-c",
                reader_command(kind, request_namespace, request_name),
            ],
            "env": env,
            "volumeMounts": [_mount(INPUT_VOLUME, OUTPUT_PATH)],
        }
    ]
    for index, image in enumerate(pipeline_images, start=1):
        init_containers.append(
            {
                "name": f"{STAGE_CONTAINER_PREFIX}-{index}",
                "image": image,
                "volumeMounts": [
                    _mount(INPUT_VOLUME, INPUT_PATH),
                    _mount(OUTPUT_VOLUME, OUTPUT_PATH),
                    _mount(METADATA_VOLUME, METADATA_PATH),
                ],
            }
        )

    writer = {
        "name": WRITER_CONTAINER,
        "image": images.work_creator,
        "command": ["sh", "-c", writer_command(request_identifier, work_namespace)],
        "env": env,
        "volumeMounts": [
            _mount(OUTPUT_VOLUME, WORK_CREATOR_INPUT),
            _mount(METADATA_VOLUME, WORK_CREATOR_METADATA),
            _mount(SELECTORS_VOLUME, WORK_CREATOR_CONFIG, read_only=True),
        ],
    }

    volumes = [
        {"name": INPUT_VOLUME, "emptyDir": {}},
        {"name": OUTPUT_VOLUME, "emptyDir": {}},
        {"name": METADATA_VOLUME, "emptyDir": {}},
        {
            "name": SELECTORS_VOLUME,
            "configMap": {
                "name": selector_config_name(promise_identifier),
                "items": [{"key": SELECTORS_KEY, "path": SELECTORS_FILE}],
            },
        },
    ]

    return new_object(
        POD_KIND,
        name,
        namespace,
        labels={
            PROMISE_ID_LABEL: promise_identifier,
            REQUEST_ID_LABEL: request_identifier,
        },
        spec={
            "restartPolicy": "OnFailure",
            "serviceAccountName": f"{promise_identifier}-sa",
            "initContainers": init_containers,
            "containers": [writer],
            "volumes": volumes,
        },
    )
