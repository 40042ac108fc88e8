"""
Unit tests for the review queue lifecycle: transitions, corrections, atomic approval.
"""
from __future__ import annotations

import itertools
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from core.exceptions import InvalidTransition, ItemNotFound, ReviewQueueError
from core.models import ConfidenceScore, CorrectionType, Decision, Priority, ReviewStatus, Verdict
from review.corrections import CorrectionLog
from review.queue import RESOLVED_CONFIDENCE, ReviewQueue, corrected_document_id
from review.store import InMemoryReviewStore
from fakes import CUSTOMER_GSTIN, VENDOR_GSTIN, make_invoice

T0 = datetime(2024, 7, 1, 9, 0, tzinfo=timezone.utc)

REVIEW_MEDIUM = Decision(Verdict.REVIEW, Priority.MEDIUM, "confidence below threshold")
REVIEW_HIGH = Decision(Verdict.REVIEW, Priority.HIGH, "vendor GSTIN invalid")
SCORE = ConfidenceScore(overall=0.82, raw_average=0.82)


class FailingOnApproveStore(InMemoryReviewStore):
    """Raises when asked to persist an approved item, after corrections were already written."""

    def update(self, item):
        if item.status is ReviewStatus.APPROVED:
            raise RuntimeError("disk full")
        super().update(item)


def ticking_clock():
    ticks = itertools.count()
    return lambda: T0 + timedelta(seconds=next(ticks))


@pytest.fixture
def log() -> CorrectionLog:
    return CorrectionLog()


@pytest.fixture
def queue(log: CorrectionLog) -> ReviewQueue:
    return ReviewQueue(InMemoryReviewStore(), log, clock=ticking_clock())


def enqueue(queue: ReviewQueue, document_id: str = "doc-1", decision: Decision = REVIEW_MEDIUM, **doc_overrides):
    return queue.enqueue(document_id, make_invoice(**doc_overrides), decision, SCORE, caller_id="+911234")


def test_enqueue_creates_pending_item(queue: ReviewQueue) -> None:
    item = enqueue(queue)
    assert item.status is ReviewStatus.PENDING
    assert item.priority is Priority.MEDIUM
    assert item.original_score == pytest.approx(0.82)
    assert item.caller_id == "+911234"
    assert queue.document(item.item_id).invoice_number == "INV-2024-001"


def test_auto_approved_documents_cannot_be_queued(queue: ReviewQueue) -> None:
    with pytest.raises(ReviewQueueError):
        queue.enqueue("doc-1", make_invoice(), Decision(Verdict.AUTO_APPROVE), SCORE)


def test_list_orders_by_priority_then_age(queue: ReviewQueue) -> None:
    first = enqueue(queue, "a")
    second = enqueue(queue, "b", REVIEW_HIGH)
    third = enqueue(queue, "c")
    assert [i.item_id for i in queue.list_items()] == [second.item_id, first.item_id, third.item_id]
    assert [i.item_id for i in queue.list_items(priority=Priority.HIGH)] == [second.item_id]


def test_full_lifecycle_with_corrections(queue: ReviewQueue, log: CorrectionLog) -> None:
    item = enqueue(queue, vendor={"legal_name": "Acme", "gstin": "27AAPFU 0939F1ZV", "state_code": "27"})
    queue.assign(item.item_id, "reviewer@example.com")

    c1 = queue.add_correction(item.item_id, "customer.gstin", CUSTOMER_GSTIN[:14] + "X")
    c2 = queue.add_correction(item.item_id, "invoice_number", "INV-2024-001A", notes="suffix dropped by OCR")
    assert c1.original_value == CUSTOMER_GSTIN
    assert c1.correction_type is CorrectionType.VALUE
    assert c2.corrected_by == "reviewer@example.com"

    approved = queue.approve(item.item_id)
    assert approved.status is ReviewStatus.APPROVED
    assert approved.resolved_confidence == RESOLVED_CONFIDENCE
    assert approved.original_score == pytest.approx(0.82)
    assert approved.resolved_at is not None

    corrected = queue.store.get_document(corrected_document_id("doc-1"))
    assert corrected.invoice_number == "INV-2024-001A"
    # original extraction stays as it was
    assert queue.document(item.item_id).invoice_number == "INV-2024-001"
    assert len(queue.store.corrections()) == 2
    assert len(log) == 2


def test_corrections_only_while_in_review(queue: ReviewQueue) -> None:
    item = enqueue(queue)
    with pytest.raises(InvalidTransition):
        queue.add_correction(item.item_id, "invoice_number", "X")


def test_unknown_field_path_rejected(queue: ReviewQueue) -> None:
    item = enqueue(queue)
    queue.assign(item.item_id, "r1")
    with pytest.raises(ReviewQueueError, match="Unknown field path"):
        queue.add_correction(item.item_id, "not_a_field.value", "X")


def test_assign_needs_assignee(queue: ReviewQueue) -> None:
    item = enqueue(queue)
    with pytest.raises(ReviewQueueError):
        queue.assign(item.item_id, "  ")


def test_cannot_approve_without_review(queue: ReviewQueue) -> None:
    item = enqueue(queue)
    with pytest.raises(InvalidTransition):
        queue.approve(item.item_id)


def test_reject_requires_reason_and_is_terminal(queue: ReviewQueue) -> None:
    item = enqueue(queue)
    with pytest.raises(ReviewQueueError):
        queue.reject(item.item_id, "")
    rejected = queue.reject(item.item_id, "duplicate upload", reviewer="r2")
    assert rejected.status is ReviewStatus.REJECTED
    assert rejected.rejection_reason == "duplicate upload"
    with pytest.raises(InvalidTransition):
        queue.assign(item.item_id, "r1")
    with pytest.raises(InvalidTransition):
        queue.reject(item.item_id, "again")


def test_bulk_reject_reports_failures(queue: ReviewQueue) -> None:
    a = enqueue(queue, "a")
    b = enqueue(queue, "b")
    queue.assign(b.item_id, "r1")
    queue.approve(b.item_id)
    rejected, failed = queue.bulk_reject([a.item_id, b.item_id, "missing"], "vendor blocked")
    assert rejected == [a.item_id]
    assert set(failed) == {b.item_id, "missing"}


def test_missing_item(queue: ReviewQueue) -> None:
    with pytest.raises(ItemNotFound):
        queue.get("nope")


def test_approval_is_all_or_nothing(log: CorrectionLog) -> None:
    queue = ReviewQueue(FailingOnApproveStore(), log, clock=ticking_clock())
    item = enqueue(queue)
    queue.assign(item.item_id, "r1")
    queue.add_correction(item.item_id, "vendor.gstin", VENDOR_GSTIN)

    with pytest.raises(RuntimeError):
        queue.approve(item.item_id)

    assert queue.get(item.item_id).status is ReviewStatus.IN_REVIEW
    assert queue.store.corrections() == []
    assert queue.store.get_document(corrected_document_id("doc-1")) is None
    assert len(log) == 0


def test_apply_corrections_previews_without_committing(queue: ReviewQueue) -> None:
    item = enqueue(queue)
    queue.assign(item.item_id, "r1")
    queue.add_correction(item.item_id, "tax_summary.grand_total", 1200)
    preview = queue.apply_corrections(item.item_id)
    assert preview.tax_summary.grand_total == 1200
    assert queue.document(item.item_id).tax_summary.grand_total == 1180
    assert queue.get(item.item_id).status is ReviewStatus.IN_REVIEW


class SlowReadStore(InMemoryReviewStore):
    """Widens the gap between reading an item and writing it back."""

    def get(self, item_id):
        item = super().get(item_id)
        time.sleep(0.05)
        return item


def test_concurrent_approve_and_reject_resolve_exactly_once(log: CorrectionLog) -> None:
    queue = ReviewQueue(SlowReadStore(), log, clock=ticking_clock())
    item = enqueue(queue)
    queue.assign(item.item_id, "r1")

    barrier = threading.Barrier(2)
    outcomes: dict[str, object] = {}

    def act(name, fn):
        barrier.wait()
        try:
            outcomes[name] = fn().status
        except InvalidTransition as e:
            outcomes[name] = e

    threads = [
        threading.Thread(target=act, args=("approve", lambda: queue.approve(item.item_id))),
        threading.Thread(target=act, args=("reject", lambda: queue.reject(item.item_id, "duplicate"))),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    winners = [v for v in outcomes.values() if isinstance(v, ReviewStatus)]
    losers = [v for v in outcomes.values() if isinstance(v, InvalidTransition)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert queue.get(item.item_id).status is winners[0]


def test_concurrent_assign_only_one_reviewer_wins(log: CorrectionLog) -> None:
    queue = ReviewQueue(SlowReadStore(), log, clock=ticking_clock())
    item = enqueue(queue)
    barrier = threading.Barrier(2)
    errors: list[Exception] = []

    def take(reviewer):
        barrier.wait()
        try:
            queue.assign(item.item_id, reviewer)
        except InvalidTransition as e:
            errors.append(e)

    threads = [threading.Thread(target=take, args=(r,)) for r in ("r1", "r2")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert len(errors) == 1
    assert queue.get(item.item_id).assignee in {"r1", "r2"}


@pytest.mark.parametrize(
    "field_path, value",
    [
        ("invoice_number.extra", "X"),
        ("vendor", "Acme"),
        ("vendor.nickname", "Acme"),
        ("invoice_date", "not a date"),
        ("line_items.first.description", "Stand"),
    ],
)
def test_unappliable_corrections_are_refused(queue: ReviewQueue, field_path: str, value: str) -> None:
    item = enqueue(queue)
    queue.assign(item.item_id, "r1")

    with pytest.raises(ReviewQueueError):
        queue.add_correction(item.item_id, field_path, value)

    assert queue.get(item.item_id).corrections == []
    queue.add_correction(item.item_id, "invoice_number", "INV-2024-001A")
    approved = queue.approve(item.item_id)
    assert approved.status is ReviewStatus.APPROVED
    assert queue.store.get_document(corrected_document_id("doc-1")).invoice_number == "INV-2024-001A"
