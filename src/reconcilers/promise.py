"""
Promise Reconciler - bootstraps the API a Promise declares.

For every observation of a Promise the reconciler materializes the
declared API type, waits until the store serves it, places the Promise's
cluster-wide manifests in a Work, provisions access rules and a pipeline
service account, and finally attaches a ResourceRequestReconciler for the
new kind to the running manager.

Every step is idempotent and the whole bootstrap re-runs on each event,
so a step that failed once heals on a later observation. Failures in the
side-effect steps are recorded on the Promise as a Degraded phase.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from config import PlatformConfig
from errors import AlreadyExistsError, ConflictError, InvalidObjectError, NotFoundError
from models import (
    CONFIG_MAP_KIND,
    POD_KIND,
    PROMISE_FINALIZER,
    WORK_KIND,
    WORKER_RESOURCE_REPLICAS,
    APITypeDefinition,
    GroupVersionKind,
    Promise,
    Work,
    add_finalizer,
    has_finalizer,
    is_being_deleted,
    remove_finalizer,
)
from pipeline import PROMISE_ID_LABEL, selector_config_name
from rbac import controller_access, pipeline_access
from reconcilers.base import Reconciler, ReconcileResult, Request
from reconcilers.resource_request import ResourceRequestReconciler

logger = logging.getLogger(__name__)

REQUEUE_DELAY = 5  # seconds

PHASE_BOOTSTRAPPED = "Bootstrapped"
PHASE_DEGRADED = "Degraded"


class PromiseReconciler(Reconciler):
    """Reconciles platform.kratix.io/v1alpha1 Promises."""

    def __init__(
        self,
        store,
        manager,
        platform_config: Optional[PlatformConfig] = None,
    ):
        self.store = store
        self.manager = manager
        self.platform = platform_config or PlatformConfig()

    @property
    def name(self) -> str:
        return "promise-controller"

    async def reconcile(self, request: Request) -> ReconcileResult:
        try:
            obj = await self.store.get(request.kind, request.namespace, request.name)
        except NotFoundError:
            return ReconcileResult()

        if is_being_deleted(obj):
            return await self._teardown(obj)

        if add_finalizer(obj, PROMISE_FINALIZER):
            obj = await self.store.update(obj)

        try:
            promise = Promise.from_object(obj)
            api_type = APITypeDefinition.from_crd(promise.xaas_crd)
        except InvalidObjectError as e:
            logger.error(f"Failed decoding API type of Promise {request.name}: {e}")
            return ReconcileResult()

        try:
            await self.store.create_api_type(api_type)
            logger.info(f"Created API type {api_type.name}")
        except AlreadyExistsError:
            logger.info(f"API type {api_type.name} already exists")
        except Exception as e:
            logger.error(f"Error creating API type {api_type.name}: {e}")
            return ReconcileResult()

        # Only proceed once the new kind is served by the store
        if not await self.store.is_api_type_served(api_type.gvk):
            logger.info(f"Requeue: {api_type.name} is not served yet")
            return ReconcileResult(requeue_after=REQUEUE_DELAY)

        failed: List[str] = []
        if not await self._create_promise_work(promise):
            failed.append("Work")
        if not await self._create_access(promise, api_type):
            failed.append("access rules")
        if not await self._register_reconciler(promise, api_type):
            failed.append("reconciler registration")

        await self._record_phase(obj, failed)
        return ReconcileResult()

    # ==================== Bootstrap steps ====================

    async def _create_promise_work(self, promise: Promise) -> bool:
        work = Work(
            name=promise.identifier,
            namespace=self.platform.work_namespace,
            replicas=WORKER_RESOURCE_REPLICAS,
            cluster_selector=promise.cluster_selector,
            manifests=promise.worker_cluster_resources,
        )
        try:
            work_obj = work.to_object()
        except InvalidObjectError:
            logger.info(f"Promise {promise.identifier} declares no worker cluster resources")
            return True

        logger.info(f"Creating Work resource for promise: {promise.identifier}")
        try:
            await self.store.create(work_obj)
        except AlreadyExistsError:
            logger.info(f"Work {promise.identifier} already exists")
        except Exception as e:
            logger.error(f"Error creating Work {promise.identifier}: {e}")
            return False
        return True

    def _access_objects(
        self, promise: Promise, api_type: APITypeDefinition
    ) -> List[Dict[str, Any]]:
        return controller_access(
            promise.identifier,
            api_type,
            self.platform.platform_service_account,
            self.platform.platform_namespace,
        ) + pipeline_access(
            promise.identifier, api_type, self.platform.pipeline_namespace
        )

    async def _create_access(
        self, promise: Promise, api_type: APITypeDefinition
    ) -> bool:
        ok = True
        for obj in self._access_objects(promise, api_type):
            name = obj["metadata"]["name"]
            try:
                await self.store.create(obj)
                logger.info(f"Created {obj['kind']} {name}")
            except AlreadyExistsError:
                logger.debug(f"{obj['kind']} {name} already exists")
            except Exception as e:
                logger.error(f"Error creating {obj['kind']} {name}: {e}")
                ok = False
        return ok

    async def _register_reconciler(
        self, promise: Promise, api_type: APITypeDefinition
    ) -> bool:
        reconciler = ResourceRequestReconciler(
            store=self.store,
            kind=api_type.gvk,
            promise_identifier=promise.identifier,
            cluster_selector=promise.cluster_selector,
            pipeline_images=promise.xaas_request_pipeline,
            platform_config=self.platform,
        )
        try:
            added = await self.manager.add_reconciler(api_type.gvk, reconciler)
        except ValueError as e:
            logger.error(f"Cannot watch {api_type.gvk} for {promise.identifier}: {e}")
            return False
        if added:
            logger.info(f"Watching {api_type.gvk} for Promise {promise.identifier}")
        return True

    async def _record_phase(self, obj: Dict[str, Any], failed: List[str]) -> None:
        """Write status.phase, only when it changed."""
        status = obj.get("status") or {}
        if failed:
            phase = PHASE_DEGRADED
            message = f"Bootstrap incomplete: {', '.join(failed)} failed"
        else:
            phase = PHASE_BOOTSTRAPPED
            message = "API type is served and resource requests are reconciled"

        if status.get("phase") == phase and status.get("message") == message:
            return

        obj["status"] = dict(status, phase=phase, message=message)
        name = obj["metadata"]["name"]
        try:
            await self.store.update(obj)
        except ConflictError:
            logger.info(f"Promise {name} changed before its status was written")
        except Exception as e:
            logger.error(f"Error writing status of Promise {name}: {e}")
        else:
            log = logger.warning if failed else logger.info
            log(f"Promise {name} is {phase}: {message}")

    # ==================== Teardown ====================

    def _owns_kind(self, promise: Promise, kind: GroupVersionKind) -> bool:
        owner = self.manager.registry.get(kind)
        return owner is None or owner.name == promise.identifier

    async def _teardown(self, obj: Dict[str, Any]) -> ReconcileResult:
        """
        Remove everything a Promise provisioned, then release it.

        Instances of the declared kind go first, while their reconciler is
        still attached to run their own cleanup.
        """
        if not has_finalizer(obj, PROMISE_FINALIZER):
            return ReconcileResult()

        name = obj["metadata"]["name"]
        try:
            promise = Promise.from_object(obj)
            api_type = APITypeDefinition.from_crd(promise.xaas_crd)
        except InvalidObjectError as e:
            logger.info(f"Promise {name} was never bootstrapped ({e}); releasing it")
            remove_finalizer(obj, PROMISE_FINALIZER)
            await self.store.update(obj)
            return ReconcileResult()

        kind = api_type.gvk
        owns_kind = self._owns_kind(promise, kind)

        if owns_kind:
            # After a restart nothing watches the kind yet, and instances
            # only lose their cleanup finalizer through their own reconciler
            if not self.manager.registry.has(kind):
                if not await self._register_reconciler(promise, api_type):
                    return ReconcileResult(requeue_after=REQUEUE_DELAY)
            try:
                remaining = await self._delete_instances(kind)
            except Exception as e:
                logger.error(f"Error removing {kind.kind} instances: {e}")
                return ReconcileResult(requeue_after=REQUEUE_DELAY)
            if remaining:
                logger.info(
                    f"Waiting for {remaining} {kind.kind} instance(s) of Promise "
                    f"{promise.identifier} to be removed"
                )
                return ReconcileResult(requeue_after=REQUEUE_DELAY)

        failed = False
        for owned_kind, namespace, owned_name in await self._owned_objects(
            promise, api_type
        ):
            try:
                await self.store.delete(owned_kind, namespace, owned_name)
                logger.info(f"Deleted {owned_kind.kind} {owned_name}")
            except NotFoundError:
                continue
            except Exception as e:
                logger.error(f"Error deleting {owned_kind.kind} {owned_name}: {e}")
                failed = True
        if failed:
            return ReconcileResult(requeue_after=REQUEUE_DELAY)

        if owns_kind:
            self.manager.remove_reconciler(kind)
            try:
                await self.store.delete_api_type(kind)
            except Exception as e:
                logger.error(f"Error deleting API type {api_type.name}: {e}")
                return ReconcileResult(requeue_after=REQUEUE_DELAY)

        remove_finalizer(obj, PROMISE_FINALIZER)
        await self.store.update(obj)
        logger.info(f"Promise {promise.identifier} torn down")
        return ReconcileResult()

    async def _delete_instances(self, kind: GroupVersionKind) -> int:
        """Request deletion of every instance; returns how many remain."""
        if not await self.store.is_api_type_served(kind):
            return 0
        instances = await self.store.list(kind)
        for instance in instances:
            if is_being_deleted(instance):
                continue
            metadata = instance["metadata"]
            try:
                await self.store.delete(kind, metadata.get("namespace", ""), metadata["name"])
            except NotFoundError:
                pass
        return len(instances)

    async def _owned_objects(
        self, promise: Promise, api_type: APITypeDefinition
    ) -> List[Tuple[GroupVersionKind, str, str]]:
        owned = [
            (WORK_KIND, self.platform.work_namespace, promise.identifier),
            (
                CONFIG_MAP_KIND,
                self.platform.pipeline_namespace,
                selector_config_name(promise.identifier),
            ),
        ]
        for obj in self._access_objects(promise, api_type):
            metadata = obj["metadata"]
            owned.append(
                (GroupVersionKind.of(obj), metadata.get("namespace", ""), metadata["name"])
            )

        executors = await self.store.list(
            POD_KIND,
            namespace=self.platform.pipeline_namespace,
            label_selector={PROMISE_ID_LABEL: promise.identifier},
        )
        for executor in executors:
            owned.append(
                (POD_KIND, self.platform.pipeline_namespace, executor["metadata"]["name"])
            )
        return owned
