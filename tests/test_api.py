"""Tests for the platform REST API."""

import asyncio
import copy

import pytest
from fastapi.testclient import TestClient

from api import PlatformAPI, validate_name_format
from events import EventBus
from fakes import InMemoryObjectStore
from models import PROMISE_KIND, APITypeDefinition, GroupVersionKind

REDIS_KIND = GroupVersionKind("redis.redis.opstreelabs.in", "v1", "Redis")


@pytest.fixture
def api_store(redis_crd):
    store = InMemoryObjectStore()
    asyncio.run(store.create_api_type(APITypeDefinition.from_crd(redis_crd)))
    return store


@pytest.fixture
def client(api_store):
    return TestClient(PlatformAPI(api_store).app)


def redis_body(name="my-redis", **metadata):
    return {
        "apiVersion": "redis.redis.opstreelabs.in/v1",
        "kind": "Redis",
        "metadata": dict(name=name, **metadata),
        "spec": {"size": "small"},
    }


class TestNameValidation:
    @pytest.mark.parametrize("name", ["my-redis", "redis.example", "a1"])
    def test_valid(self, name):
        assert validate_name_format(name, "metadata.name") == name

    @pytest.mark.parametrize("name", ["", "My-Redis", "-redis", "redis-", "a" * 254])
    def test_invalid(self, name):
        with pytest.raises(ValueError):
            validate_name_format(name, "metadata.name")


class TestTypes:
    def test_health(self, client):
        assert client.get("/").json()["status"] == "ok"

    def test_list_includes_builtins_and_declared(self, client):
        kinds = {t["kind"] for t in client.get("/api/v1/types").json()}
        assert {"Promise", "Work", "Cluster", "Pod", "Redis"} <= kinds

    def test_resolve(self, client):
        resp = client.get("/api/v1/types/redis.redis.redis.opstreelabs.in")

        assert resp.status_code == 200
        assert resp.json()["apiVersion"] == "redis.redis.opstreelabs.in/v1"
        assert resp.json()["name"] == "redis.redis.opstreelabs.in"

    def test_resolve_unknown(self, client):
        assert client.get("/api/v1/types/postgres").status_code == 404


class TestObjects:
    def test_create_defaults_namespace(self, client, api_store):
        resp = client.post("/api/v1/objects", json=redis_body())

        assert resp.status_code == 201
        assert resp.json()["metadata"]["namespace"] == "default"
        assert resp.json()["metadata"]["resourceVersion"]

    def test_create_cluster_scoped_drops_namespace(self, client):
        role = {
            "apiVersion": "rbac.authorization.k8s.io/v1",
            "kind": "ClusterRole",
            "metadata": {"name": "reader", "namespace": "ignored"},
            "rules": [],
        }

        resp = client.post("/api/v1/objects", json=role)

        assert resp.status_code == 201
        assert "namespace" not in resp.json()["metadata"]

    def test_create_duplicate(self, client):
        client.post("/api/v1/objects", json=redis_body())
        assert client.post("/api/v1/objects", json=redis_body()).status_code == 409

    def test_create_schema_violation(self, client):
        body = redis_body()
        body["spec"]["size"] = 3

        resp = client.post("/api/v1/objects", json=body)

        assert resp.status_code == 422
        assert "spec.size" in resp.json()["detail"]

    def test_create_invalid_name(self, client):
        assert client.post("/api/v1/objects", json=redis_body("My_Redis")).status_code == 422

    def test_create_unknown_kind(self, client):
        body = redis_body()
        body["kind"] = "Postgres"
        assert client.post("/api/v1/objects", json=body).status_code == 404

    def test_update_requires_current_version(self, client):
        created = client.post("/api/v1/objects", json=redis_body()).json()
        stale = copy.deepcopy(created)

        created["spec"]["size"] = "large"
        resp = client.put("/api/v1/objects", json=created)
        assert resp.status_code == 200
        assert resp.json()["metadata"]["generation"] == 2

        stale["spec"]["size"] = "large"
        assert client.put("/api/v1/objects", json=stale).status_code == 409

    def test_get_and_list(self, client):
        client.post("/api/v1/objects", json=redis_body("a", labels={"tier": "cache"}))
        client.post("/api/v1/objects", json=redis_body("b", namespace="team-a"))

        assert client.get("/api/v1/resources/redis/a").json()["metadata"]["name"] == "a"
        assert client.get("/api/v1/resources/redis/b").status_code == 404
        assert (
            client.get("/api/v1/resources/redis/b", params={"namespace": "team-a"}).status_code
            == 200
        )

        everything = client.get("/api/v1/resources/redis").json()
        assert everything["kind"] == "List"
        assert [i["metadata"]["name"] for i in everything["items"]] == ["a", "b"]

        default_only = client.get("/api/v1/resources/redis", params={"namespace": "default"})
        assert [i["metadata"]["name"] for i in default_only.json()["items"]] == ["a"]

        labelled = client.get("/api/v1/resources/redis", params={"labelSelector": "tier=cache"})
        assert [i["metadata"]["name"] for i in labelled.json()["items"]] == ["a"]

    def test_bad_label_selector(self, client):
        resp = client.get("/api/v1/resources/redis", params={"labelSelector": "tier"})
        assert resp.status_code == 400

    def test_delete_without_finalizers(self, client, api_store):
        client.post("/api/v1/objects", json=redis_body())

        resp = client.delete("/api/v1/resources/redis/my-redis")

        assert resp.json() == {"status": "deleted", "kind": "Redis", "name": "my-redis"}
        assert api_store.objects_of(REDIS_KIND) == []

    def test_delete_with_finalizers_marks(self, client):
        client.post(
            "/api/v1/objects", json=redis_body(finalizers=["redis-cleanup"])
        )

        resp = client.delete("/api/v1/resources/redis/my-redis")

        assert resp.status_code == 200
        assert resp.json()["metadata"]["deletionTimestamp"]

    def test_delete_missing(self, client):
        assert client.delete("/api/v1/resources/promises/redis").status_code == 404

    def test_store_failures_are_500(self, client, api_store):
        api_store.fail("get", PROMISE_KIND.kind, RuntimeError("connection lost"))
        assert client.get("/api/v1/resources/promises/redis").status_code == 500


class TestWatch:
    def test_requires_event_bus(self, client):
        assert client.get("/api/v1/watch").status_code == 503

    def test_unknown_resource(self, api_store):
        client = TestClient(PlatformAPI(api_store, event_bus=EventBus()).app)
        assert client.get("/api/v1/watch", params={"resource": "postgres"}).status_code == 404
