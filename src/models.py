"""
Platform data model - Promises, Works, Clusters and API type definitions.

Objects travel through the store as plain Kubernetes-style dicts
(apiVersion, kind, metadata, spec, status). The dataclasses here give the
reconcilers typed views over the few shapes they need to understand.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from errors import InvalidObjectError
from validation import validate_openapi_schema

PLATFORM_GROUP = "platform.kratix.io"
PLATFORM_VERSION = "v1alpha1"

# Work.spec.replicas sentinel: one copy on every matching cluster
WORKER_RESOURCE_REPLICAS = -1
# Work.spec.replicas for resource requests: exactly one matching cluster
RESOURCE_REQUEST_REPLICAS = 1

PROMISE_FINALIZER = "kratix.io/promise-cleanup"
PIPELINE_EXECUTOR_ANNOTATION = "kratix.io/pipeline-executor"
# Set once the executor named above has been created
PIPELINE_LAUNCHED_ANNOTATION = "kratix.io/pipeline-launched"


@dataclass(frozen=True)
class GroupVersionKind:
    """Runtime type descriptor for an API kind."""

    group: str
    version: str
    kind: str

    @property
    def api_version(self) -> str:
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> "GroupVersionKind":
        if "/" in api_version:
            group, version = api_version.split("/", 1)
        else:
            group, version = "", api_version
        return cls(group=group, version=version, kind=kind)

    @classmethod
    def of(cls, obj: Dict[str, Any]) -> "GroupVersionKind":
        return cls.from_api_version(obj.get("apiVersion", ""), obj.get("kind", ""))

    def __str__(self) -> str:
        return f"{self.api_version}, Kind={self.kind}"


PROMISE_KIND = GroupVersionKind(PLATFORM_GROUP, PLATFORM_VERSION, "Promise")
WORK_KIND = GroupVersionKind(PLATFORM_GROUP, PLATFORM_VERSION, "Work")
CLUSTER_KIND = GroupVersionKind(PLATFORM_GROUP, PLATFORM_VERSION, "Cluster")
POD_KIND = GroupVersionKind("", "v1", "Pod")
CONFIG_MAP_KIND = GroupVersionKind("", "v1", "ConfigMap")
SERVICE_ACCOUNT_KIND = GroupVersionKind("", "v1", "ServiceAccount")
CLUSTER_ROLE_KIND = GroupVersionKind("rbac.authorization.k8s.io", "v1", "ClusterRole")
CLUSTER_ROLE_BINDING_KIND = GroupVersionKind(
    "rbac.authorization.k8s.io", "v1", "ClusterRoleBinding"
)


# ==================== Object helpers ====================


def new_object(
    kind: GroupVersionKind,
    name: str,
    namespace: str = "",
    labels: Optional[Dict[str, str]] = None,
    **body: Any,
) -> Dict[str, Any]:
    """Build a bare object dict of the given kind."""
    metadata: Dict[str, Any] = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    if labels:
        metadata["labels"] = dict(labels)
    obj = {"apiVersion": kind.api_version, "kind": kind.kind, "metadata": metadata}
    obj.update(body)
    return obj


def get_metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.setdefault("metadata", {})


def get_finalizers(obj: Dict[str, Any]) -> List[str]:
    return list(obj.get("metadata", {}).get("finalizers") or [])


def has_finalizer(obj: Dict[str, Any], finalizer: str) -> bool:
    return finalizer in get_finalizers(obj)


def add_finalizer(obj: Dict[str, Any], finalizer: str) -> bool:
    """Add a finalizer in place. Returns False if it was already present."""
    finalizers = get_finalizers(obj)
    if finalizer in finalizers:
        return False
    finalizers.append(finalizer)
    get_metadata(obj)["finalizers"] = finalizers
    return True


def remove_finalizer(obj: Dict[str, Any], finalizer: str) -> bool:
    """Remove a finalizer in place. Returns False if it was not present."""
    finalizers = get_finalizers(obj)
    if finalizer not in finalizers:
        return False
    get_metadata(obj)["finalizers"] = [f for f in finalizers if f != finalizer]
    return True


def is_being_deleted(obj: Dict[str, Any]) -> bool:
    return bool(obj.get("metadata", {}).get("deletionTimestamp"))


def get_annotations(obj: Dict[str, Any]) -> Dict[str, str]:
    return get_metadata(obj).setdefault("annotations", {})


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# ==================== API type definitions ====================


@dataclass
class APITypeDefinition:
    """
    A Promise-declared API type, decoded from a CustomResourceDefinition.

    Only the first declared version is served, matching how the platform
    materialises the type.
    """

    group: str
    version: str
    kind: str
    plural: str
    scope: str = "Namespaced"
    schema: Dict[str, Any] = field(default_factory=dict)
    definition: Dict[str, Any] = field(default_factory=dict)

    @property
    def gvk(self) -> GroupVersionKind:
        return GroupVersionKind(self.group, self.version, self.kind)

    @property
    def name(self) -> str:
        """CRD-style name, e.g. ``redis.redis.opstreelabs.in``."""
        if not self.group:
            return self.plural
        return f"{self.plural}.{self.group}"

    @classmethod
    def from_crd(cls, crd: Any) -> "APITypeDefinition":
        """
        Decode a CustomResourceDefinition document.

        Raises:
            InvalidObjectError: If any required field is missing or the
                embedded openAPIV3Schema is not a valid schema.
        """
        if not isinstance(crd, dict):
            raise InvalidObjectError("API type definition must be an object")

        spec = crd.get("spec")
        if not isinstance(spec, dict):
            raise InvalidObjectError("API type definition has no spec")

        group = spec.get("group")
        names = spec.get("names") or {}
        versions = spec.get("versions") or []
        if not group or not isinstance(group, str):
            raise InvalidObjectError("API type definition has no spec.group")
        if not isinstance(names, dict) or not names.get("kind"):
            raise InvalidObjectError("API type definition has no spec.names.kind")
        if not names.get("plural"):
            raise InvalidObjectError("API type definition has no spec.names.plural")
        if not isinstance(versions, list) or not versions:
            raise InvalidObjectError("API type definition declares no versions")

        first = versions[0]
        if not isinstance(first, dict) or not first.get("name"):
            raise InvalidObjectError("API type definition version has no name")

        schema = (first.get("schema") or {}).get("openAPIV3Schema") or {}
        if schema:
            is_valid, error = validate_openapi_schema(schema)
            if not is_valid:
                raise InvalidObjectError(error)

        return cls(
            group=group,
            version=first["name"],
            kind=names["kind"],
            plural=names["plural"],
            scope=spec.get("scope", "Namespaced"),
            schema=schema,
            definition=copy.deepcopy(crd),
        )


BUILTIN_TYPES: List[APITypeDefinition] = [
    APITypeDefinition(PLATFORM_GROUP, PLATFORM_VERSION, "Promise", "promises"),
    APITypeDefinition(PLATFORM_GROUP, PLATFORM_VERSION, "Work", "works"),
    APITypeDefinition(PLATFORM_GROUP, PLATFORM_VERSION, "Cluster", "clusters"),
    APITypeDefinition("", "v1", "Pod", "pods"),
    APITypeDefinition("", "v1", "ConfigMap", "configmaps"),
    APITypeDefinition("", "v1", "ServiceAccount", "serviceaccounts"),
    APITypeDefinition(
        "rbac.authorization.k8s.io", "v1", "ClusterRole", "clusterroles", "Cluster"
    ),
    APITypeDefinition(
        "rbac.authorization.k8s.io",
        "v1",
        "ClusterRoleBinding",
        "clusterrolebindings",
        "Cluster",
    ),
]


def split_resource(resource: str) -> tuple[str, str]:
    """Split ``redis.redis.opstreelabs.in`` into (``redis``, group)."""
    if "." in resource:
        name, group = resource.split(".", 1)
        return name.lower(), group
    return resource.lower(), ""


def matches_resource(definition: APITypeDefinition, resource: str) -> bool:
    """Check whether a kubectl-style resource name refers to this type."""
    name, group = split_resource(resource)
    if name not in (definition.kind.lower(), definition.plural.lower()):
        return False
    return not group or group == definition.group


# ==================== Promise ====================


@dataclass
class Promise:
    """Typed view over a Promise object."""

    name: str
    namespace: str
    xaas_crd: Dict[str, Any]
    cluster_selector: Dict[str, str] = field(default_factory=dict)
    xaas_request_pipeline: List[str] = field(default_factory=list)
    worker_cluster_resources: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def identifier(self) -> str:
        return f"{self.name}-{self.namespace}"

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "Promise":
        """
        Build a Promise from its stored object.

        Raises:
            InvalidObjectError: If the pipeline is missing or empty; image 0
                is the first stage every resource request runs through.
        """
        metadata = obj.get("metadata", {})
        spec = obj.get("spec") or {}
        pipeline = spec.get("xaasRequestPipeline") or []
        if not isinstance(pipeline, list) or not pipeline:
            raise InvalidObjectError(
                f"Promise {metadata.get('name')} declares no request pipeline"
            )

        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace") or "default",
            xaas_crd=spec.get("xaasCrd") or {},
            cluster_selector={
                str(k): str(v) for k, v in (spec.get("clusterSelector") or {}).items()
            },
            xaas_request_pipeline=[str(image) for image in pipeline],
            worker_cluster_resources=list(spec.get("workerClusterResources") or []),
        )


def resource_request_identifier(promise_identifier: str, namespace: str, name: str) -> str:
    return f"{promise_identifier}-{namespace}-{name}"


def cleanup_finalizer(kind: str) -> str:
    return f"{kind.lower()}-cleanup"


# ==================== Work ====================


@dataclass
class Work:
    """The rendered placement artifact handed to the scheduler."""

    name: str
    namespace: str = "default"
    replicas: int = RESOURCE_REQUEST_REPLICAS
    cluster_selector: Dict[str, str] = field(default_factory=dict)
    manifests: List[Dict[str, Any]] = field(default_factory=list)

    def to_object(self) -> Dict[str, Any]:
        if not self.manifests:
            raise InvalidObjectError(f"Work {self.name} has no manifests")
        return new_object(
            WORK_KIND,
            self.name,
            self.namespace,
            spec={
                "replicas": self.replicas,
                "clusterSelector": dict(self.cluster_selector),
                "workload": {"manifests": copy.deepcopy(self.manifests)},
            },
        )

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "Work":
        metadata = obj.get("metadata", {})
        spec = obj.get("spec") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace") or "default",
            replicas=spec.get("replicas", RESOURCE_REQUEST_REPLICAS),
            cluster_selector=dict(spec.get("clusterSelector") or {}),
            manifests=list((spec.get("workload") or {}).get("manifests") or []),
        )


@dataclass
class Cluster:
    """A registered worker cluster, as seen by the placement collaborator."""

    name: str
    namespace: str = "default"
    labels: Dict[str, str] = field(default_factory=dict)
    bucket_path: str = ""

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "Cluster":
        metadata = obj.get("metadata", {})
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace") or "default",
            labels=dict(metadata.get("labels") or {}),
            bucket_path=(obj.get("spec") or {}).get("bucketPath", ""),
        )
