"""
Reconciliation Manager - the shared watch substrate.

Similar to a Kubernetes controller manager: store events for registered
kinds are turned into reconcile requests on a de-duplicated work queue,
drained by a fixed pool of workers. A key is never reconciled by two
workers at once; events that arrive while it is in flight re-queue it
once the current run finishes. Reconcilers can be added while the
manager is running.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from errors import ConflictError
from events import EventBus, ObjectEvent
from models import GroupVersionKind
from reconcilers.base import Reconciler, Request
from registry import ReconcilerRegistry, get_registry

logger = logging.getLogger(__name__)


@dataclass
class ManagerConfig:
    """Configuration for the manager."""

    max_concurrent_reconciles: int = 5
    resync_interval: float = 300  # seconds

    # Exponential backoff configuration
    backoff_base_delay: float = 1  # base delay in seconds
    backoff_max_delay: float = 300  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter


class Manager:
    """Runs registered reconcilers against store events."""

    def __init__(
        self,
        store,
        event_bus: EventBus,
        registry: Optional[ReconcilerRegistry] = None,
        config: Optional[ManagerConfig] = None,
    ):
        self.store = store
        self.event_bus = event_bus
        self.registry = registry or get_registry()
        self.config = config or ManagerConfig()
        self.running = False

        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued: Set[Request] = set()
        self._active: Set[Request] = set()
        self._dirty: Set[Request] = set()
        self._failures: Dict[Request, int] = {}
        self._delayed: Dict[Request, asyncio.TimerHandle] = {}
        self._subscriber_id: Optional[str] = None
        self._tasks: List[asyncio.Task] = []

    # ==================== Registration ====================

    async def add_reconciler(
        self, kind: GroupVersionKind, reconciler: Reconciler
    ) -> bool:
        """
        Attach a reconciler to the watch set.

        When the manager is already running, every existing object of a
        newly added kind is queued straight away.

        Returns:
            True if the kind was newly added, False if an existing
            registration was replaced.

        Raises:
            ValueError: If the kind is owned by a different reconciler.
        """
        added = self.registry.register(kind, reconciler)
        if added and self.running:
            await self._enqueue_kind(kind)
        return added

    def remove_reconciler(self, kind: GroupVersionKind) -> None:
        """Stop dispatching events for a kind."""
        self.registry.unregister(kind)
        for request in [r for r in self._failures if r.kind == kind]:
            del self._failures[request]
        for request in [r for r in self._delayed if r.kind == kind]:
            self._delayed.pop(request).cancel()

    # ==================== Work queue ====================

    def enqueue(self, request: Request, delay: float = 0) -> None:
        """Queue a request, optionally after a delay."""
        if delay and delay > 0:
            existing = self._delayed.pop(request, None)
            if existing is not None:
                existing.cancel()
            loop = asyncio.get_running_loop()
            self._delayed[request] = loop.call_later(
                delay, self._enqueue_delayed, request
            )
            return
        self._enqueue_now(request)

    def _enqueue_delayed(self, request: Request) -> None:
        self._delayed.pop(request, None)
        self._enqueue_now(request)

    def _enqueue_now(self, request: Request) -> None:
        if request in self._active:
            self._dirty.add(request)
            return
        if request in self._queued:
            return
        self._queued.add(request)
        self._queue.put_nowait(request)

    async def _enqueue_kind(self, kind: GroupVersionKind) -> None:
        """Queue every stored object of a kind."""
        try:
            objects = await self.store.list(kind)
        except Exception as e:
            logger.error(f"Failed listing {kind} for resync: {e}")
            return
        for obj in objects:
            metadata = obj.get("metadata", {})
            self.enqueue(Request(kind, metadata.get("namespace", ""), metadata["name"]))

    def pending(self) -> int:
        """Number of requests queued or in flight."""
        return len(self._queued) + len(self._active)

    # ==================== Reconciliation ====================

    def backoff_delay(self, failures: int) -> float:
        """Delay before retrying a request that has failed ``failures`` times."""
        delay = min(
            self.config.backoff_base_delay * (2 ** min(failures, 10)),
            self.config.backoff_max_delay,
        )
        jitter = delay * self.config.backoff_jitter_factor * (random.random() * 2 - 1)
        return max(0.0, delay + jitter)

    async def reconcile_request(self, request: Request) -> Optional[float]:
        """
        Run the reconciler owning a request's kind.

        Returns:
            Seconds after which the request should run again, or None.
        """
        reconciler = self.registry.get(request.kind)
        if reconciler is None:
            logger.debug(f"No reconciler for {request.kind}; dropping {request}")
            return None

        try:
            result = await reconciler.reconcile(request)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            failures = self._failures.get(request, 0)
            self._failures[request] = failures + 1
            delay = self.backoff_delay(failures)
            if isinstance(e, ConflictError):
                logger.info(f"Conflict reconciling {request}, retrying in {delay:.1f}s: {e}")
            else:
                logger.error(
                    f"Error reconciling {request} with {reconciler.name}, "
                    f"retrying in {delay:.1f}s: {e}",
                    exc_info=True,
                )
            return delay

        self._failures.pop(request, None)
        if result is not None and result.requeue_after:
            logger.debug(f"Requeueing {request} after {result.requeue_after}s")
            return float(result.requeue_after)
        return None

    async def _worker(self, worker_id: int) -> None:
        while self.running:
            request = await self._queue.get()
            if request is None:
                break

            self._queued.discard(request)
            self._active.add(request)
            try:
                delay = await self.reconcile_request(request)
            finally:
                self._active.discard(request)
                self._queue.task_done()

            if delay is not None:
                self.enqueue(request, delay)
            if request in self._dirty:
                self._dirty.discard(request)
                self._enqueue_now(request)

        logger.debug(f"Worker {worker_id} stopped")

    # ==================== Event sources ====================

    def _is_watched(self, event: ObjectEvent) -> bool:
        return self.registry.has(
            GroupVersionKind.from_api_version(event.api_version, event.kind)
        )

    async def _watch_loop(self, subscription) -> None:
        """Turn store events for registered kinds into requests."""
        async for event in subscription:
            kind = GroupVersionKind.from_api_version(event.api_version, event.kind)
            self.enqueue(Request(kind, event.namespace, event.name))

    async def _resync_loop(self) -> None:
        """Periodically re-list every registered kind."""
        while self.running:
            for kind in self.registry.list_kinds():
                await self._enqueue_kind(kind)
            await asyncio.sleep(self.config.resync_interval)

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Start workers and event sources; returns when stopped."""
        logger.info(
            f"Starting reconciliation manager "
            f"({self.config.max_concurrent_reconciles} workers)"
        )
        self.running = True

        subscriber_id, subscription = await self.event_bus.subscribe(self._is_watched)
        self._subscriber_id = subscriber_id

        self._tasks = [
            asyncio.create_task(self._worker(i))
            for i in range(self.config.max_concurrent_reconciles)
        ]
        self._tasks.append(asyncio.create_task(self._watch_loop(subscription)))
        self._tasks.append(asyncio.create_task(self._resync_loop()))

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("Reconciliation manager tasks cancelled")

    async def stop(self) -> None:
        """Stop the manager gracefully."""
        if not self.running:
            return
        logger.info("Stopping reconciliation manager")
        self.running = False

        if self._subscriber_id is not None:
            await self.event_bus.unsubscribe(self._subscriber_id)
            self._subscriber_id = None

        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()

        for _ in range(self.config.max_concurrent_reconciles):
            self._queue.put_nowait(None)

        for task in self._tasks:
            if not task.done() and task is not asyncio.current_task():
                task.cancel()
        self._tasks.clear()
