"""
Reconciler Base - Abstract interface for reconcilers.

A reconciler owns the reconciliation logic for exactly one kind. The
manager calls reconcile() with the identity of an object that may have
changed; the reconciler reads current state from the store and acts on it.
Reconciliation is level-triggered, so every call must be safe to repeat.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from models import GroupVersionKind


@dataclass(frozen=True)
class Request:
    """Identity of the object to reconcile."""

    kind: GroupVersionKind
    namespace: str
    name: str

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind.kind} {self.namespace}/{self.name}"
        return f"{self.kind.kind} {self.name}"


@dataclass
class ReconcileResult:
    """Result from a reconciler's reconcile() call."""

    requeue_after: Optional[float] = None


class Reconciler(ABC):
    """
    Abstract base class for reconcilers.

    Raising from reconcile() hands the request back to the manager, which
    retries it with exponential backoff. Returning a result with
    requeue_after schedules a fixed-delay retry instead.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this reconciler."""
        pass

    @abstractmethod
    async def reconcile(self, request: Request) -> ReconcileResult:
        """
        Reconcile a single object.

        Args:
            request: Identity of the object that may have changed.

        Returns:
            ReconcileResult, optionally asking for a delayed retry.
        """
        pass
