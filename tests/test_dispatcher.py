"""Tests for a single transmission cycle over a real (temporary) queue store."""

import json
from datetime import datetime, timezone

import pytest

from fhir_bridge.errors import WINDOW_EXPIRED, DeliveryFailure, StoreUnavailable
from fhir_bridge.models.database import open_store
from fhir_bridge.models.queue import BundleStatus
from fhir_bridge.services.clock import ManualClock
from fhir_bridge.services.dispatcher import deliver, run_transmission_cycle
from fhir_bridge.services.offline_queue import QueueConfig, QueueService

T0 = datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)


def _make_queue(tmp_path, clock=None, config=None):
    store = open_store(str(tmp_path / "queue.db"))
    return QueueService(store, config=config, clock=clock or ManualClock(T0))


def _bundle_json(bundle_id):
    return json.dumps({"resourceType": "Bundle", "id": bundle_id, "type": "transaction"})


def test_cycle_sends_everything_when_sender_succeeds(tmp_path):
    queue = _make_queue(tmp_path)
    for i in range(3):
        queue.enqueue(f"b{i}", _bundle_json(f"b{i}"), f"p{i}", "c1")
    delivered = []

    report = run_transmission_cycle(queue, lambda bundle: delivered.append(bundle.bundle_id))

    assert delivered == ["b0", "b1", "b2"]
    assert report.sent == 3
    assert report.failed_attempts == 0
    assert report.stats.to_dict() == {"pending": 0, "sent": 3, "failed": 0}


def test_cycle_records_sender_failures(tmp_path):
    queue = _make_queue(tmp_path)
    ok_id = queue.enqueue("ok", "{}", "p1", "c1")
    bad_id = queue.enqueue("bad", "{}", "p2", "c1")

    def send(bundle):
        if bundle.bundle_id == "bad":
            raise DeliveryFailure("HIE returned 503")

    report = run_transmission_cycle(queue, send)

    assert report.outcomes == {ok_id: "sent", bad_id: "failed_attempt"}
    bad = queue.get(bad_id)
    assert bad.status == BundleStatus.PENDING
    assert bad.retry_count == 1
    assert bad.last_error == "HIE returned 503"


def test_unexpected_sender_error_counts_as_failed_attempt(tmp_path):
    queue = _make_queue(tmp_path)
    row_id = queue.enqueue("b1", "{}", "p1", "c1")

    def send(bundle):
        raise ConnectionResetError()

    assert deliver(queue, queue.get(row_id), send) is False
    assert queue.get(row_id).last_error == "ConnectionResetError"


def test_store_errors_from_sender_propagate(tmp_path):
    queue = _make_queue(tmp_path)
    row_id = queue.enqueue("b1", "{}", "p1", "c1")

    def send(bundle):
        raise StoreUnavailable("disk full")

    with pytest.raises(StoreUnavailable):
        deliver(queue, queue.get(row_id), send)
    assert queue.get(row_id).retry_count == 0


def test_cycle_expires_before_collecting(tmp_path):
    clock = ManualClock(T0)
    queue = _make_queue(tmp_path, clock=clock)
    stale_id = queue.enqueue("stale", "{}", "p1", "c1")
    clock.advance(days=8)
    queue.enqueue("fresh", "{}", "p2", "c1")
    delivered = []

    report = run_transmission_cycle(queue, lambda bundle: delivered.append(bundle.bundle_id))

    assert report.expired == 1
    assert delivered == ["fresh"]
    assert queue.get(stale_id).last_error == WINDOW_EXPIRED
    assert report.stats.to_dict() == {"pending": 0, "sent": 1, "failed": 1}


def test_repeated_cycles_exhaust_retries(tmp_path):
    queue = _make_queue(tmp_path, config=QueueConfig(max_retries=3))
    row_id = queue.enqueue("b1", "{}", "p1", "c1")

    def send(bundle):
        raise DeliveryFailure("timeout")

    reports = [run_transmission_cycle(queue, send) for _ in range(4)]

    assert [r.attempted for r in reports] == [1, 1, 1, 0]
    assert queue.get(row_id).status == BundleStatus.FAILED
    assert reports[-1].to_dict()["stats"] == {"pending": 0, "sent": 0, "failed": 1}
