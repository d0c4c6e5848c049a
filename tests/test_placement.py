"""Unit tests for placement.py - the scheduler naming contract."""

from models import WORKER_RESOURCE_REPLICAS, Cluster, Work
from placement import (
    crds_bucket,
    crds_object_name,
    matching_clusters,
    resources_bucket,
    resources_object_name,
    selector_matches,
)

CLUSTERS = [
    Cluster(name="worker-3", labels={"env": "dev", "zone": "us"}, bucket_path="w3"),
    Cluster(name="worker-1", labels={"env": "dev", "zone": "eu"}, bucket_path="w1"),
    Cluster(name="worker-2", labels={"env": "prod"}, bucket_path="w2"),
]


class TestSelectorMatches:
    def test_and_semantics(self):
        assert selector_matches({"env": "dev"}, {"env": "dev", "zone": "eu"})
        assert not selector_matches({"env": "dev", "zone": "us"}, {"env": "dev"})

    def test_empty_selector_matches_everything(self):
        assert selector_matches({}, {})
        assert selector_matches({}, {"env": "prod"})


class TestMatchingClusters:
    def test_worker_resources_go_everywhere_matching(self):
        work = Work(
            name="redis-default",
            replicas=WORKER_RESOURCE_REPLICAS,
            cluster_selector={"env": "dev"},
        )

        assert [c.name for c in matching_clusters(work, CLUSTERS)] == ["worker-1", "worker-3"]

    def test_resource_request_picks_one(self):
        work = Work(name="redis-default-default-my-redis", cluster_selector={"env": "dev"})

        assert [c.name for c in matching_clusters(work, CLUSTERS)] == ["worker-1"]

    def test_no_match(self):
        work = Work(name="w", cluster_selector={"env": "staging"})
        assert matching_clusters(work, CLUSTERS) == []


class TestNames:
    def test_object_names(self):
        assert crds_object_name("default", "redis-default") == "00-default-redis-default-crds.yaml"
        assert (
            resources_object_name("default", "redis-default-default-my-redis")
            == "01-default-redis-default-default-my-redis-resources.yaml"
        )

    def test_buckets(self):
        cluster = CLUSTERS[1]
        assert crds_bucket(cluster) == "w1-kratix-crds"
        assert resources_bucket(cluster) == "w1-kratix-resources"
