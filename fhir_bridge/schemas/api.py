"""Pydantic models for API request/response serialization."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class EnqueueRequest(BaseModel):
    """A fully serialized bundle handed over by the mapper or sender."""
    bundle_id: str = Field(..., min_length=1)
    bundle_json: str = Field(..., min_length=1)
    patient_id: str = Field(..., min_length=1)
    clinic_id: str = Field(..., min_length=1)


class EnqueueResponse(BaseModel):
    row_id: int


class FailureReport(BaseModel):
    error: str = Field(..., min_length=1)


class TransitionResponse(BaseModel):
    row_id: int
    changed: bool
    status: str | None = None


class PendingBundleResponse(BaseModel):
    row_id: int
    bundle_id: str
    patient_id: str
    clinic_id: str
    created_at: datetime
    retry_count: int
    last_error: str | None
    status: str


class QueueStatsResponse(BaseModel):
    pending: int
    sent: int
    failed: int


class ExpireResponse(BaseModel):
    expired: int


# ---------------------------------------------------------------------------
# Client Registry
# ---------------------------------------------------------------------------

class CrLookupResponse(BaseModel):
    identifier: str
    live: bool
    synthetic: bool


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str = "healthy"
    environment: str
    database: str = "connected"
    cr_lookup: str = "disabled"
