"""
Resource Request Reconciler - lifecycle of instances of a Promise's kind.

One instance of this reconciler is attached per Promise. For each
resource request it:

- adds the ``<kind>-cleanup`` finalizer before anything else happens;
- launches the Promise's pipeline once, fire-and-forget;
- on deletion, removes the request's Work and only then its finalizer.

The pipeline is launched at most once per request. The executor name is
chosen once and recorded on the request in the
``kratix.io/pipeline-executor`` annotation with a conditional update; of
two concurrent reconciliations only one can win that write, and every
later reconciliation converges on the recorded executor. Once that executor
has been created the request is also marked ``kratix.io/pipeline-launched``,
so an executor that is later garbage-collected is not started again.
"""

import logging
from typing import Any, Dict, List, Optional

from config import PlatformConfig
from errors import AlreadyExistsError, ConflictError, NotFoundError
from models import (
    PIPELINE_EXECUTOR_ANNOTATION,
    PIPELINE_LAUNCHED_ANNOTATION,
    POD_KIND,
    WORK_KIND,
    GroupVersionKind,
    add_finalizer,
    cleanup_finalizer,
    get_annotations,
    has_finalizer,
    is_being_deleted,
    remove_finalizer,
    resource_request_identifier,
)
from pipeline import (
    REQUEST_ID_LABEL,
    PipelineImages,
    build_pipeline_executor,
    build_selector_config,
    executor_name,
)
from reconcilers.base import Reconciler, ReconcileResult, Request

logger = logging.getLogger(__name__)

REQUEUE_DELAY = 5  # seconds


class ResourceRequestReconciler(Reconciler):
    """Reconciles resource requests of one Promise-declared kind."""

    def __init__(
        self,
        store,
        kind: GroupVersionKind,
        promise_identifier: str,
        cluster_selector: Dict[str, str],
        pipeline_images: List[str],
        platform_config: Optional[PlatformConfig] = None,
    ):
        self.store = store
        self.kind = kind
        self.promise_identifier = promise_identifier
        self.cluster_selector = dict(cluster_selector)
        self.pipeline_images = list(pipeline_images)
        self.platform = platform_config or PlatformConfig()
        self.images = PipelineImages(
            reader=self.platform.pipeline_reader_image,
            work_creator=self.platform.work_creator_image,
        )
        self.finalizer = cleanup_finalizer(kind.kind)

    @property
    def name(self) -> str:
        return self.promise_identifier

    async def reconcile(self, request: Request) -> ReconcileResult:
        logger.debug(f"Dynamically reconciling {request}")
        try:
            obj = await self.store.get(self.kind, request.namespace, request.name)
        except NotFoundError:
            return ReconcileResult()

        request_id = resource_request_identifier(
            self.promise_identifier, request.namespace, request.name
        )

        if is_being_deleted(obj):
            if not has_finalizer(obj, self.finalizer):
                return ReconcileResult()
            return await self._delete_work(obj, request_id)

        if add_finalizer(obj, self.finalizer):
            # The update event brings the request back here
            await self.store.update(obj)
            return ReconcileResult()

        return await self._ensure_pipeline(obj, request, request_id)

    # ==================== Delete cascade ====================

    async def _delete_work(self, obj: Dict[str, Any], request_id: str) -> ReconcileResult:
        namespace = self.platform.work_namespace
        try:
            await self.store.get(WORK_KIND, namespace, request_id)
        except NotFoundError:
            return await self._release(obj)
        except Exception as e:
            logger.error(f"Error locating Work {request_id}, will try again in 5 seconds: {e}")
            return ReconcileResult(requeue_after=REQUEUE_DELAY)

        try:
            await self.store.delete(WORK_KIND, namespace, request_id)
        except NotFoundError:
            return await self._release(obj)
        except Exception as e:
            logger.error(f"Error deleting Work {request_id}, will try again in 5 seconds: {e}")
            return ReconcileResult(requeue_after=REQUEUE_DELAY)

        logger.info(f"Deleted Work {request_id}")
        # Requeue to confirm the Work is gone before releasing the request
        return ReconcileResult(requeue_after=REQUEUE_DELAY)

    async def _release(self, obj: Dict[str, Any]) -> ReconcileResult:
        """Drop the cleanup finalizer once no Work remains."""
        remove_finalizer(obj, self.finalizer)
        await self.store.update(obj)
        logger.info(f"Removed finalizer {self.finalizer} from {obj['metadata']['name']}")
        return ReconcileResult()

    # ==================== Pipeline launch ====================

    async def _ensure_pipeline(
        self, obj: Dict[str, Any], request: Request, request_id: str
    ) -> ReconcileResult:
        annotations = obj.get("metadata", {}).get("annotations") or {}
        executor = annotations.get(PIPELINE_EXECUTOR_ANNOTATION)

        if annotations.get(PIPELINE_LAUNCHED_ANNOTATION) == "true":
            logger.debug(f"Pipeline {executor} already launched for {request_id}")
            return ReconcileResult()

        if not executor:
            if await self._pipeline_has_executed(request_id):
                logger.info(
                    f"Cannot execute update on pre-existing pipeline for "
                    f"resource request {request_id}"
                )
                return ReconcileResult()

            executor = executor_name(self.promise_identifier)
            get_annotations(obj)[PIPELINE_EXECUTOR_ANNOTATION] = executor
            # Raises ConflictError if another reconciliation claimed it first
            obj = await self.store.update(obj)

        if await self._launch(executor, request, request_id):
            await self._mark_launched(obj, executor)
        return ReconcileResult()

    async def _mark_launched(self, obj: Dict[str, Any], executor: str) -> None:
        get_annotations(obj)[PIPELINE_LAUNCHED_ANNOTATION] = "true"
        try:
            await self.store.update(obj)
        except ConflictError:
            # The change that won brings the request back; the executor is found then
            logger.info(
                f"{obj['metadata']['name']} changed before launch of {executor} was recorded"
            )

    async def _pipeline_has_executed(self, request_id: str) -> bool:
        """Look for executors labelled with this request's identifier."""
        try:
            executors = await self.store.list(
                POD_KIND,
                namespace=self.platform.pipeline_namespace,
                label_selector={REQUEST_ID_LABEL: request_id},
            )
        except Exception as e:
            logger.error(f"Error listing pipeline executors for {request_id}: {e}")
            return False
        return len(executors) > 0

    async def _launch(self, executor: str, request: Request, request_id: str) -> bool:
        """Create the executor unless it exists; returns whether it does now."""
        namespace = self.platform.pipeline_namespace
        try:
            await self.store.get(POD_KIND, namespace, executor)
            return True
        except NotFoundError:
            pass

        config_map = build_selector_config(
            self.promise_identifier, self.cluster_selector, namespace
        )
        try:
            await self.store.create(config_map)
        except AlreadyExistsError:
            pass
        except Exception as e:
            logger.error(f"Error creating config map {config_map['metadata']['name']}: {e}")

        pod = build_pipeline_executor(
            name=executor,
            namespace=namespace,
            kind=self.kind,
            request_namespace=request.namespace,
            request_name=request.name,
            promise_identifier=self.promise_identifier,
            request_identifier=request_id,
            pipeline_images=self.pipeline_images,
            images=self.images,
            platform_api_url=self.platform.platform_api_url,
            work_namespace=self.platform.work_namespace,
        )

        logger.info(
            f"Creating Pipeline for Promise resource request: {request_id}. "
            f"The pipeline will now execute..."
        )
        try:
            await self.store.create(pod)
        except AlreadyExistsError:
            logger.info(f"Pipeline {executor} already exists")
        except Exception as e:
            logger.error(f"Error creating pipeline {executor}: {e}")
            return False
        return True
