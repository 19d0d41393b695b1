"""
Offline transmission queue for FHIR bundles.

Bundles are held in the durable store until a sender reports them delivered.
Each row follows a small state machine:

    (none) --enqueue--> pending
    pending --record_failure, new retry_count < max_retries--> pending
    pending --record_failure, new retry_count >= max_retries--> failed
    pending --expire_old_bundles, older than window--> failed
    pending --mark_sent--> sent

``sent`` and ``failed`` are terminal. Every mutation is a single SQL
statement guarded by ``status = 'pending'``, so concurrent callers cannot
lose a retry increment or move a terminal row, and whichever of a failure
report or an expiry sweep commits first wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, func, select, update

from fhir_bridge.errors import WINDOW_EXPIRED
from fhir_bridge.models.database import TransmissionStore
from fhir_bridge.models.queue import BundleStatus, QueuedBundle
from fhir_bridge.services.clock import Clock, SystemClock
from fhir_bridge.services.encryption import EncryptionService

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 10
DEFAULT_WINDOW = timedelta(days=7)


@dataclass(frozen=True)
class QueueConfig:
    max_retries: int = DEFAULT_MAX_RETRIES
    window: timedelta = DEFAULT_WINDOW

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.window <= timedelta(0):
            raise ValueError("window must be positive")

    @classmethod
    def from_settings(cls, settings: Any) -> QueueConfig:
        return cls(
            max_retries=settings.QUEUE_MAX_RETRIES,
            window=timedelta(days=settings.QUEUE_WINDOW_DAYS),
        )


@dataclass(frozen=True)
class PendingBundle:
    """Snapshot of one queue row as it was when read."""

    row_id: int
    bundle_id: str
    payload: str
    patient_id: str
    clinic_id: str
    created_at: datetime
    retry_count: int
    last_error: str | None
    status: BundleStatus


@dataclass(frozen=True)
class QueueStats:
    pending: int = 0
    sent: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"pending": self.pending, "sent": self.sent, "failed": self.failed}


class QueueService:
    """
    Operations over the transmission store.

    Usage:
        store = open_store("/var/lib/bridge/queue.db")
        queue = QueueService(store)
        row_id = queue.enqueue(bundle["id"], json.dumps(bundle), patient_id, clinic_id)
        for item in queue.pending_within_window():
            ...
            queue.mark_sent(item.row_id)
    """

    def __init__(
        self,
        store: TransmissionStore,
        config: QueueConfig | None = None,
        clock: Clock | None = None,
        encryption: EncryptionService | None = None,
    ):
        self.store = store
        self.config = config or QueueConfig()
        self.clock = clock or SystemClock()
        self._encryption = encryption

    def _cutoff(self) -> datetime:
        return self.clock.now() - self.config.window

    def _to_bundle(self, row: QueuedBundle) -> PendingBundle:
        payload = row.bundle_json
        if self._encryption is not None:
            payload = self._encryption.decrypt(payload)
        return PendingBundle(
            row_id=row.id,
            bundle_id=row.bundle_id,
            payload=payload,
            patient_id=row.patient_id,
            clinic_id=row.clinic_id,
            created_at=row.created_at,
            retry_count=row.retry_count,
            last_error=row.last_error,
            status=BundleStatus(row.status),
        )

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def enqueue(self, bundle_id: str, payload: str, patient_id: str, clinic_id: str) -> int:
        """Queue a serialized bundle; returns the row id used by all later calls."""
        stored = self._encryption.encrypt(payload) if self._encryption else payload
        row = QueuedBundle(
            bundle_id=bundle_id,
            bundle_json=stored,
            patient_id=patient_id,
            clinic_id=clinic_id,
            created_at=self.clock.now(),
            retry_count=0,
            status=BundleStatus.PENDING.value,
        )
        with self.store.transaction() as session:
            session.add(row)
            session.flush()
            row_id = row.id
        logger.info("Queued bundle %s as row %d (clinic %s)", bundle_id, row_id, clinic_id)
        return row_id

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def pending_within_window(self) -> list[PendingBundle]:
        """Pending rows still inside the transmission window, oldest first."""
        stmt = (
            select(QueuedBundle)
            .where(
                QueuedBundle.status == BundleStatus.PENDING.value,
                QueuedBundle.created_at >= self._cutoff(),
            )
            .order_by(QueuedBundle.created_at.asc(), QueuedBundle.id.asc())
        )
        with self.store.transaction() as session:
            return [self._to_bundle(row) for row in session.scalars(stmt)]

    def get(self, row_id: int) -> PendingBundle | None:
        with self.store.transaction() as session:
            row = session.get(QueuedBundle, row_id)
            return self._to_bundle(row) if row is not None else None

    def stats(self) -> QueueStats:
        """Row counts per status, read in a single query."""
        stmt = select(QueuedBundle.status, func.count()).group_by(QueuedBundle.status)
        with self.store.transaction() as session:
            counts = {status: count for status, count in session.execute(stmt)}
        return QueueStats(
            pending=counts.get(BundleStatus.PENDING.value, 0),
            sent=counts.get(BundleStatus.SENT.value, 0),
            failed=counts.get(BundleStatus.FAILED.value, 0),
        )

    # ------------------------------------------------------------------
    # Sender feedback
    # ------------------------------------------------------------------

    def mark_sent(self, row_id: int) -> bool:
        """
        Mark a pending row as delivered. Returns False (and changes nothing)
        if the row is missing or already terminal, so duplicate completion
        signals are harmless.
        """
        stmt = (
            update(QueuedBundle)
            .where(QueuedBundle.id == row_id, QueuedBundle.status == BundleStatus.PENDING.value)
            .values(status=BundleStatus.SENT.value)
            .execution_options(synchronize_session=False)
        )
        with self.store.transaction() as session:
            changed = session.execute(stmt).rowcount > 0
        if changed:
            logger.info("Row %d sent", row_id)
        else:
            logger.debug("mark_sent ignored for row %d (missing or not pending)", row_id)
        return changed

    def record_failure(self, row_id: int, error_message: str) -> bool:
        """
        Record a failed delivery attempt on a pending row.

        The increment, the error text and the threshold check happen in one
        UPDATE. The attempt that brings retry_count to max_retries is the one
        that fails the row. Returns False if the row is missing or terminal.
        """
        new_count = QueuedBundle.retry_count + 1
        stmt = (
            update(QueuedBundle)
            .where(QueuedBundle.id == row_id, QueuedBundle.status == BundleStatus.PENDING.value)
            .values(
                retry_count=new_count,
                last_error=error_message,
                status=case(
                    (new_count >= self.config.max_retries, BundleStatus.FAILED.value),
                    else_=BundleStatus.PENDING.value,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        with self.store.transaction() as session:
            changed = session.execute(stmt).rowcount > 0
        if changed:
            logger.warning("Delivery of row %d failed: %s", row_id, error_message)
        else:
            logger.debug("record_failure ignored for row %d (missing or not pending)", row_id)
        return changed

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def expire_old_bundles(self) -> int:
        """Fail every pending row older than the window; returns how many."""
        stmt = (
            update(QueuedBundle)
            .where(
                QueuedBundle.status == BundleStatus.PENDING.value,
                QueuedBundle.created_at < self._cutoff(),
            )
            .values(status=BundleStatus.FAILED.value, last_error=WINDOW_EXPIRED)
            .execution_options(synchronize_session=False)
        )
        with self.store.transaction() as session:
            expired = session.execute(stmt).rowcount
        if expired:
            logger.warning("Expired %d bundle(s) past the transmission window", expired)
        return expired
