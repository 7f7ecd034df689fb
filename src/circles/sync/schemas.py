"""Pydantic schemas for sync cycle outcomes. Transient, never persisted."""

from __future__ import annotations

from pydantic import BaseModel, Field


class SyncResult(BaseModel):
    """Outcome of one drain pass over the offline queue."""

    success: bool = True
    processed: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)


class ReconcileResult(BaseModel):
    """Outcome of one pull reconciliation pass.

    ``missing`` counts linked contacts whose remote record no longer exists;
    those are skipped, not errors.
    """

    success: bool = True
    checked: int = 0
    updated: int = 0
    skipped: int = 0
    missing: int = 0
    errors: list[str] = Field(default_factory=list)
