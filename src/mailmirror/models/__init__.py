"""Validated domain models (Pydantic)."""

from __future__ import annotations

from mailmirror.models.types import (
    LabelType,
    SecurityType,
    SpecialUse,
    SyncPhase,
    SyncProgress,
    SyncSummary,
    SystemLabelId,
)

__all__ = [
    "LabelType",
    "SecurityType",
    "SpecialUse",
    "SyncPhase",
    "SyncProgress",
    "SyncSummary",
    "SystemLabelId",
]
