"""
Reconciler Registry - Dispatch table from kind to reconciler.

Kinds are only known at runtime (each Promise declares one), so the table
is extended while the process is running rather than wired at startup.
"""

import logging
from typing import Dict, List, Optional

from models import GroupVersionKind
from reconcilers.base import Reconciler

logger = logging.getLogger(__name__)


class ReconcilerRegistry:
    """
    Central registry of reconcilers, one per kind.

    Registering a reconciler with the same name again for a kind replaces
    the instance in place, so a kind is never watched twice.
    """

    def __init__(self):
        self._reconcilers: Dict[GroupVersionKind, Reconciler] = {}

    def register(self, kind: GroupVersionKind, reconciler: Reconciler) -> bool:
        """
        Register a reconciler for a kind.

        Args:
            kind: The kind the reconciler owns.
            reconciler: The reconciler instance.

        Returns:
            True if the kind is newly registered, False if an existing
            registration with the same reconciler name was replaced.

        Raises:
            ValueError: If the kind is already claimed by another reconciler
        """
        existing = self._reconcilers.get(kind)
        if existing is not None:
            if existing.name != reconciler.name:
                raise ValueError(
                    f"Kind '{kind}' is already claimed by "
                    f"reconciler '{existing.name}'. Cannot register '{reconciler.name}'."
                )
            self._reconcilers[kind] = reconciler
            logger.debug(f"Replaced reconciler {reconciler.name} for {kind}")
            return False

        self._reconcilers[kind] = reconciler
        logger.info(f"Registered reconciler: {reconciler.name} (kind: {kind})")
        return True

    def unregister(self, kind: GroupVersionKind) -> Optional[Reconciler]:
        """Remove the reconciler for a kind, returning it if present."""
        reconciler = self._reconcilers.pop(kind, None)
        if reconciler is not None:
            logger.info(f"Unregistered reconciler: {reconciler.name} (kind: {kind})")
        return reconciler

    def get(self, kind: GroupVersionKind) -> Optional[Reconciler]:
        return self._reconcilers.get(kind)

    def has(self, kind: GroupVersionKind) -> bool:
        return kind in self._reconcilers

    def list_kinds(self) -> List[GroupVersionKind]:
        return list(self._reconcilers.keys())


# Global registry instance
_registry: Optional[ReconcilerRegistry] = None


def get_registry() -> ReconcilerRegistry:
    """Get the global reconciler registry."""
    global _registry
    if _registry is None:
        _registry = ReconcilerRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None
