"""
Access rules provisioned for each Promise.

Two principals get access to a Promise-declared kind: the long-running
platform controller (broad verbs on the kind and its sub-resources) and
the Promise's pipeline service account (narrower verbs plus write access
to Works).
"""

from typing import Any, Dict, List

from models import (
    CLUSTER_ROLE_BINDING_KIND,
    CLUSTER_ROLE_KIND,
    PLATFORM_GROUP,
    SERVICE_ACCOUNT_KIND,
    APITypeDefinition,
    new_object,
)

RBAC_GROUP = "rbac.authorization.k8s.io"


def controller_role_name(promise_identifier: str) -> str:
    return f"{promise_identifier}-promise-controller"


def pipeline_role_name(promise_identifier: str) -> str:
    return f"{promise_identifier}-promise-pipeline"


def service_account_name(promise_identifier: str) -> str:
    return f"{promise_identifier}-sa"


def _rule(group: str, resource: str, verbs: List[str]) -> Dict[str, Any]:
    return {"apiGroups": [group], "resources": [resource], "verbs": verbs}


def _binding(
    name: str, role: str, account: str, account_namespace: str
) -> Dict[str, Any]:
    return new_object(
        CLUSTER_ROLE_BINDING_KIND,
        name,
        roleRef={"kind": "ClusterRole", "apiGroup": RBAC_GROUP, "name": role},
        subjects=[
            {"kind": "ServiceAccount", "namespace": account_namespace, "name": account}
        ],
    )


def controller_access(
    promise_identifier: str,
    api_type: APITypeDefinition,
    platform_service_account: str,
    platform_namespace: str,
) -> List[Dict[str, Any]]:
    """ClusterRole and binding for the platform controller."""
    role = controller_role_name(promise_identifier)
    plural = api_type.plural
    return [
        new_object(
            CLUSTER_ROLE_KIND,
            role,
            rules=[
                _rule(
                    api_type.group,
                    plural,
                    ["get", "list", "update", "create", "patch", "delete", "watch"],
                ),
                _rule(api_type.group, f"{plural}/finalizers", ["update"]),
                _rule(api_type.group, f"{plural}/status", ["get", "update", "patch"]),
                _rule("", "configmaps", ["create"]),
            ],
        ),
        _binding(
            f"{role}-binding", role, platform_service_account, platform_namespace
        ),
    ]


def pipeline_access(
    promise_identifier: str,
    api_type: APITypeDefinition,
    pipeline_namespace: str,
) -> List[Dict[str, Any]]:
    """ClusterRole, binding and service account for pipeline stages."""
    role = pipeline_role_name(promise_identifier)
    account = service_account_name(promise_identifier)
    return [
        new_object(
            CLUSTER_ROLE_KIND,
            role,
            rules=[
                _rule(
                    api_type.group,
                    api_type.plural,
                    ["get", "list", "update", "create", "patch"],
                ),
                _rule(PLATFORM_GROUP, "works", ["get", "update", "create", "patch"]),
            ],
        ),
        _binding(f"{role}-binding", role, account, pipeline_namespace),
        new_object(SERVICE_ACCOUNT_KIND, account, pipeline_namespace),
    ]
