"""
Placement contract shared with the downstream scheduler.

The scheduler AND-matches a Work's clusterSelector against each registered
Cluster's labels and writes the Work's manifests into per-cluster buckets.
Scheduling and bucket writes live downstream; these helpers pin the
naming contract that Work identities must stay consistent with.
"""

from typing import Dict, Iterable, List

from models import WORKER_RESOURCE_REPLICAS, Cluster, Work

CRDS_BUCKET_SUFFIX = "-kratix-crds"
RESOURCES_BUCKET_SUFFIX = "-kratix-resources"


def selector_matches(selector: Dict[str, str], labels: Dict[str, str]) -> bool:
    """AND-match a flat selector against a label set. Empty matches all."""
    return all(labels.get(key) == value for key, value in selector.items())


def matching_clusters(work: Work, clusters: Iterable[Cluster]) -> List[Cluster]:
    """
    Clusters eligible to receive a Work.

    A Work with the ``-1`` replica sentinel goes to every match; a fixed
    count narrows the candidates, first by name, leaving the final choice
    to the scheduler.
    """
    matches = sorted(
        (c for c in clusters if selector_matches(work.cluster_selector, c.labels)),
        key=lambda c: c.name,
    )
    if work.replicas == WORKER_RESOURCE_REPLICAS:
        return matches
    return matches[: max(work.replicas, 0)]


def crds_object_name(namespace: str, promise_identifier: str) -> str:
    return f"00-{namespace}-{promise_identifier}-crds.yaml"


def resources_object_name(namespace: str, request_identifier: str) -> str:
    return f"01-{namespace}-{request_identifier}-resources.yaml"


def crds_bucket(cluster: Cluster) -> str:
    return f"{cluster.bucket_path}{CRDS_BUCKET_SUFFIX}"


def resources_bucket(cluster: Cluster) -> str:
    return f"{cluster.bucket_path}{RESOURCES_BUCKET_SUFFIX}"
