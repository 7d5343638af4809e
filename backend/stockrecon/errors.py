"""
Error taxonomy shared by every service.

Each error carries a machine-readable ``kind`` and a human-readable message
so callers can turn any failure into a structured response via ``to_dict()``.
"""
from __future__ import annotations

from typing import Any


class StockReconError(Exception):
    """Base class for all service-layer failures."""

    kind = "error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"kind": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(StockReconError, ValueError):
    """Missing or invalid input, rejected before any mutation."""

    kind = "validation_error"


class NotFoundError(StockReconError, LookupError):
    """Referenced entity does not exist."""

    kind = "not_found"


class StateConflictError(StockReconError):
    """Operation attempted from the wrong lifecycle state."""

    kind = "state_conflict"


class InsufficientStockError(StateConflictError):
    """A decrement would take available stock below zero."""

    kind = "insufficient_stock"

    def __init__(self, sku: str, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for {sku}: available {available}, requested {requested}",
            details={"sku": sku, "requested": requested, "available": available},
        )
        self.sku = sku
        self.requested = requested
        self.available = available


class IntegrityConflictError(StockReconError):
    """Uniqueness rule violated (e.g. invoice already linked to another checkout)."""

    kind = "integrity_conflict"

    def __init__(self, message: str, conflicts: list[dict] | None = None):
        super().__init__(message, details={"conflicts": conflicts or []})
        self.conflicts = conflicts or []


class ExternalDependencyError(StockReconError):
    """A collaborator (invoice fetcher, sync source, alias store) failed."""

    kind = "external_dependency"


def error_entry(key: Any, exc: Exception) -> dict:
    """Per-item error record used by best-effort bulk operations."""
    if isinstance(exc, StockReconError):
        return {"key": key, "kind": exc.kind, "message": exc.message}
    return {"key": key, "kind": "error", "message": str(exc)}
