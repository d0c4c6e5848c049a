"""Reconcilers for Promises and the resource requests they declare."""

from reconcilers.base import Reconciler, ReconcileResult, Request

__all__ = ["Reconciler", "ReconcileResult", "Request"]
