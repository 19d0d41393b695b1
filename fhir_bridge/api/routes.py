"""
FastAPI routes for the queue and the Client Registry resolver.

Sender processes that run outside this interpreter use these endpoints to
enqueue bundles and report delivery outcomes; the monitoring UI reads stats.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException

from fhir_bridge.config import settings
from fhir_bridge.errors import StoreUnavailable
from fhir_bridge.models.database import open_store
from fhir_bridge.schemas.api import (
    CrLookupResponse,
    EnqueueRequest,
    EnqueueResponse,
    ExpireResponse,
    FailureReport,
    HealthResponse,
    PendingBundleResponse,
    QueueStatsResponse,
    TransitionResponse,
)
from fhir_bridge.services.cr_lookup import CrLookupConfig, IdentityResolver, is_synthetic
from fhir_bridge.services.encryption import EncryptionService
from fhir_bridge.services.offline_queue import PendingBundle, QueueConfig, QueueService

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

@lru_cache
def get_queue() -> QueueService:
    """Process-wide queue service; the store itself is the only state."""
    try:
        store = open_store(settings.QUEUE_DATABASE_URL)
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return QueueService(
        store,
        config=QueueConfig.from_settings(settings),
        encryption=EncryptionService.from_settings(settings),
    )


@lru_cache
def get_resolver() -> IdentityResolver:
    return IdentityResolver(CrLookupConfig.from_settings(settings))


def _store_unavailable(exc: StoreUnavailable) -> HTTPException:
    logger.error("Queue store unavailable: %s", exc)
    return HTTPException(status_code=503, detail="Queue store unavailable")


def _to_response(bundle: PendingBundle) -> PendingBundleResponse:
    return PendingBundleResponse(
        row_id=bundle.row_id,
        bundle_id=bundle.bundle_id,
        patient_id=bundle.patient_id,
        clinic_id=bundle.clinic_id,
        created_at=bundle.created_at,
        retry_count=bundle.retry_count,
        last_error=bundle.last_error,
        status=bundle.status.value,
    )


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse)
def health_check(
    queue: QueueService = Depends(get_queue),
    resolver: IdentityResolver = Depends(get_resolver),
):
    """Basic health endpoint – verifies queue store connectivity."""
    return HealthResponse(
        status="healthy",
        environment=settings.ENVIRONMENT,
        database="connected" if queue.store.ping() else "disconnected",
        cr_lookup="enabled" if resolver.config.enabled else "disabled",
    )


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

@router.get("/queue/stats", response_model=QueueStatsResponse)
def queue_stats(queue: QueueService = Depends(get_queue)):
    try:
        stats = queue.stats()
    except StoreUnavailable as exc:
        raise _store_unavailable(exc) from exc
    return QueueStatsResponse(**stats.to_dict())


@router.get("/queue/pending", response_model=list[PendingBundleResponse])
def list_pending(queue: QueueService = Depends(get_queue)):
    """Pending bundles still inside the transmission window, oldest first."""
    try:
        bundles = queue.pending_within_window()
    except StoreUnavailable as exc:
        raise _store_unavailable(exc) from exc
    return [_to_response(b) for b in bundles]


@router.post("/queue", response_model=EnqueueResponse, status_code=201)
def enqueue_bundle(request: EnqueueRequest, queue: QueueService = Depends(get_queue)):
    try:
        row_id = queue.enqueue(
            request.bundle_id, request.bundle_json, request.patient_id, request.clinic_id
        )
    except StoreUnavailable as exc:
        raise _store_unavailable(exc) from exc
    return EnqueueResponse(row_id=row_id)


@router.post("/queue/expire", response_model=ExpireResponse)
def expire_bundles(queue: QueueService = Depends(get_queue)):
    """Sweep pending bundles that have aged out of the transmission window."""
    try:
        expired = queue.expire_old_bundles()
    except StoreUnavailable as exc:
        raise _store_unavailable(exc) from exc
    return ExpireResponse(expired=expired)


@router.get("/queue/{row_id}", response_model=PendingBundleResponse)
def get_bundle(row_id: int, queue: QueueService = Depends(get_queue)):
    try:
        bundle = queue.get(row_id)
    except StoreUnavailable as exc:
        raise _store_unavailable(exc) from exc
    if bundle is None:
        raise HTTPException(status_code=404, detail="Queued bundle not found")
    return _to_response(bundle)


@router.post("/queue/{row_id}/sent", response_model=TransitionResponse)
def mark_bundle_sent(row_id: int, queue: QueueService = Depends(get_queue)):
    """Idempotent: repeating the call, or calling it for an unknown row, is not an error."""
    try:
        changed = queue.mark_sent(row_id)
        bundle = queue.get(row_id)
    except StoreUnavailable as exc:
        raise _store_unavailable(exc) from exc
    return TransitionResponse(
        row_id=row_id, changed=changed, status=bundle.status.value if bundle else None
    )


@router.post("/queue/{row_id}/failure", response_model=TransitionResponse)
def record_bundle_failure(
    row_id: int, report: FailureReport, queue: QueueService = Depends(get_queue)
):
    try:
        changed = queue.record_failure(row_id, report.error)
        bundle = queue.get(row_id)
    except StoreUnavailable as exc:
        raise _store_unavailable(exc) from exc
    return TransitionResponse(
        row_id=row_id, changed=changed, status=bundle.status.value if bundle else None
    )


# ---------------------------------------------------------------------------
# Client Registry
# ---------------------------------------------------------------------------

@router.get("/cr/{national_id}", response_model=CrLookupResponse)
def resolve_cr_id(national_id: str, resolver: IdentityResolver = Depends(get_resolver)):
    """Resolve a CR id; always answers, falling back to a synthetic id offline."""
    result = resolver.resolve(national_id)
    return CrLookupResponse(
        identifier=result.identifier,
        live=result.provenance,
        synthetic=is_synthetic(result.identifier),
    )
