"""
One polling pass over the offline queue.

    expire -> collect -> deliver -> report

The sender is supplied by the caller (HIE client, AfyaLink poster, a test
double). It returns normally on success and raises on failure; whatever it
raises, apart from StoreUnavailable, is recorded against the row as a failed
attempt.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from fhir_bridge.errors import StoreUnavailable
from fhir_bridge.services.offline_queue import PendingBundle, QueueService, QueueStats

logger = logging.getLogger(__name__)

Sender = Callable[[PendingBundle], None]


@dataclass
class CycleReport:
    expired: int = 0
    attempted: int = 0
    sent: int = 0
    failed_attempts: int = 0
    outcomes: dict[int, str] = field(default_factory=dict)
    stats: QueueStats = field(default_factory=QueueStats)
    duration_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "expired": self.expired,
            "attempted": self.attempted,
            "sent": self.sent,
            "failed_attempts": self.failed_attempts,
            "outcomes": dict(self.outcomes),
            "stats": self.stats.to_dict(),
            "duration_ms": round(self.duration_ms, 2),
        }


def deliver(queue: QueueService, bundle: PendingBundle, send: Sender) -> bool:
    """
    Hand one bundle to the sender and report the outcome back to the queue.
    Returns True if the sender accepted it.
    """
    try:
        send(bundle)
    except StoreUnavailable:
        raise
    except Exception as exc:
        message = str(exc) or exc.__class__.__name__
        queue.record_failure(bundle.row_id, message)
        return False
    queue.mark_sent(bundle.row_id)
    return True


def run_transmission_cycle(queue: QueueService, send: Sender) -> CycleReport:
    """
    Expire stale work, then attempt every pending bundle in the window,
    oldest first. Store errors abort the cycle and propagate.
    """
    report = CycleReport()
    start = time.perf_counter()

    report.expired = queue.expire_old_bundles()

    pending = queue.pending_within_window()
    logger.info("Transmission cycle: %d pending bundle(s)", len(pending))

    for bundle in pending:
        report.attempted += 1
        if deliver(queue, bundle, send):
            report.sent += 1
            report.outcomes[bundle.row_id] = "sent"
        else:
            report.failed_attempts += 1
            report.outcomes[bundle.row_id] = "failed_attempt"

    report.stats = queue.stats()
    report.duration_ms = (time.perf_counter() - start) * 1000

    logger.info(
        "Transmission cycle finished: %d sent, %d failed attempts, %d expired",
        report.sent,
        report.failed_attempts,
        report.expired,
    )
    if report.stats.failed > 0:
        logger.warning(
            "%d bundle(s) permanently failed and need operator attention", report.stats.failed
        )
    return report
