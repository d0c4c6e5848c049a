"""Pytest configuration and fixtures."""

import copy

import pytest
from unittest.mock import AsyncMock, MagicMock

from config import PlatformConfig
from events import EventBus
from fakes import InMemoryObjectStore
from manager import Manager, ManagerConfig
from registry import ReconcilerRegistry


REDIS_CRD = {
    "apiVersion": "apiextensions.k8s.io/v1",
    "kind": "CustomResourceDefinition",
    "metadata": {"name": "redis.redis.opstreelabs.in"},
    "spec": {
        "group": "redis.redis.opstreelabs.in",
        "scope": "Namespaced",
        "names": {"kind": "Redis", "plural": "redis", "singular": "redis"},
        "versions": [
            {
                "name": "v1",
                "served": True,
                "storage": True,
                "schema": {
                    "openAPIV3Schema": {
                        "type": "object",
                        "properties": {
                            "spec": {
                                "type": "object",
                                "properties": {"size": {"type": "string"}},
                            }
                        },
                    }
                },
            }
        ],
    },
}

REDIS_OPERATOR_MANIFEST = {
    "apiVersion": "apps/v1",
    "kind": "Deployment",
    "metadata": {"name": "redis-operator", "namespace": "redis-operator"},
    "spec": {"replicas": 1},
}


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def store():
    """In-memory object store without event publishing."""
    return InMemoryObjectStore()


@pytest.fixture
def platform_config():
    return PlatformConfig(
        work_creator_image="registry.local/work-creator:test",
        pipeline_reader_image="registry.local/reader:test",
        platform_api_url="http://platform.test:8000",
    )


@pytest.fixture
def manager(store, event_bus):
    """A manager that is not started; tests drive reconcilers directly."""
    return Manager(
        store=store,
        event_bus=event_bus,
        registry=ReconcilerRegistry(),
        config=ManagerConfig(max_concurrent_reconciles=2, resync_interval=3600),
    )


@pytest.fixture
def redis_crd():
    return copy.deepcopy(REDIS_CRD)


@pytest.fixture
def redis_promise(redis_crd):
    """Promise 'redis' declaring kind Redis with one pipeline image."""
    return {
        "apiVersion": "platform.kratix.io/v1alpha1",
        "kind": "Promise",
        "metadata": {"name": "redis", "namespace": "default"},
        "spec": {
            "xaasCrd": redis_crd,
            "clusterSelector": {"env": "dev"},
            "xaasRequestPipeline": ["syntasso/redis-request-pipeline:v1"],
            "workerClusterResources": [copy.deepcopy(REDIS_OPERATOR_MANIFEST)],
        },
    }


@pytest.fixture
def my_redis():
    """A Redis resource request."""
    return {
        "apiVersion": "redis.redis.opstreelabs.in/v1",
        "kind": "Redis",
        "metadata": {"name": "my-redis", "namespace": "default"},
        "spec": {"size": "small"},
    }
