"""
Review queue lifecycle.

    pending --assign--> in_review --approve--> approved
    pending --reject--> rejected   in_review --reject--> rejected

approved/rejected are terminal. Corrections attach only while in_review and are committed
together with the approve transition, or not at all.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from core.exceptions import InvalidTransition, ItemNotFound, ReviewQueueError
from core.interfaces import IReviewStore
from core.models import (
    ConfidenceScore,
    Correction,
    CorrectionType,
    Decision,
    Priority,
    ReviewQueueItem,
    ReviewStatus,
    Verdict,
)
from core.schema import ExtractedDocument, apply_field_updates, get_field_value
from review.corrections import CorrectionLog, PatternLearner, Suggestion, classify_correction

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[ReviewStatus, frozenset[ReviewStatus]] = {
    ReviewStatus.PENDING: frozenset({ReviewStatus.IN_REVIEW, ReviewStatus.REJECTED}),
    ReviewStatus.IN_REVIEW: frozenset({ReviewStatus.APPROVED, ReviewStatus.REJECTED}),
    ReviewStatus.APPROVED: frozenset(),
    ReviewStatus.REJECTED: frozenset(),
}
RESOLVED_CONFIDENCE = 1.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def corrected_document_id(document_id: str) -> str:
    return f"{document_id}#corrected"


def _stringify(value: Any) -> str | None:
    return None if value is None else str(value)


class ReviewQueue:
    """
    Service over an IReviewStore. Accepted corrections also feed the CorrectionLog, whose
    PatternLearner suggests values for fields reviewers keep correcting.
    """

    def __init__(
        self,
        store: IReviewStore,
        correction_log: CorrectionLog | None = None,
        clock: Callable[[], datetime] = _utcnow,
        *,
        min_pattern_occurrences: int = 3,
    ) -> None:
        self.store = store
        self.correction_log = correction_log
        self.learner = PatternLearner(correction_log, min_pattern_occurrences) if correction_log is not None else None
        self._clock = clock

    # ------------------------------------------------------------------
    # Creation / lookup
    # ------------------------------------------------------------------

    def enqueue(
        self,
        document_id: str,
        document: ExtractedDocument,
        decision: Decision,
        score: ConfidenceScore,
        *,
        caller_id: str = "",
    ) -> ReviewQueueItem:
        """Create a pending item for a document that was not auto-approved."""
        if decision.verdict is Verdict.AUTO_APPROVE:
            raise ReviewQueueError(f"Document {document_id} was auto-approved; nothing to review")
        now = self._clock()
        item = ReviewQueueItem(
            item_id=uuid.uuid4().hex,
            document_id=document_id,
            document_kind=document.document_kind,
            priority=decision.priority or Priority.MEDIUM,
            reason=decision.reason,
            original_score=score.overall,
            verdict=decision.verdict,
            caller_id=caller_id,
            created_at=now,
            updated_at=now,
        )
        with self.store.transaction():
            self.store.save_document(document_id, document)
            self.store.add(item)
        logger.info(
            "Queued review item=%s document=%s verdict=%s priority=%s",
            item.item_id,
            document_id,
            item.verdict.value,
            item.priority.value,
        )
        return item

    def get(self, item_id: str) -> ReviewQueueItem:
        item = self.store.get(item_id)
        if item is None:
            raise ItemNotFound(f"Review item {item_id} not found")
        return item

    def document(self, item_id: str) -> ExtractedDocument:
        """Original extraction (never mutated by review)."""
        item = self.get(item_id)
        doc = self.store.get_document(item.document_id)
        if doc is None:
            raise ItemNotFound(f"Document {item.document_id} for item {item_id} not found")
        return doc

    def list_items(self, status: ReviewStatus | None = None, priority: Priority | None = None) -> list[ReviewQueueItem]:
        """Matching items, highest priority first, then oldest first."""
        items = [
            i
            for i in self.store.list_items()
            if (status is None or i.status is status) and (priority is None or i.priority is priority)
        ]
        oldest = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(items, key=lambda i: (i.priority.rank, i.created_at or oldest))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, item: ReviewQueueItem, target: ReviewStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[item.status]:
            raise InvalidTransition(f"Review item {item.item_id}: {item.status.value} -> {target.value} not allowed")

    def assign(self, item_id: str, assignee: str) -> ReviewQueueItem:
        if not (assignee or "").strip():
            raise ReviewQueueError("assignee is required")
        with self.store.transaction():
            item = self.get(item_id)
            self._transition(item, ReviewStatus.IN_REVIEW)
            updated = replace(item, status=ReviewStatus.IN_REVIEW, assignee=assignee.strip(), updated_at=self._clock())
            self.store.update(updated)
        logger.info("Review item=%s assigned to %s", item_id, updated.assignee)
        return updated

    def add_correction(
        self,
        item_id: str,
        field_path: str,
        corrected_value: Any,
        *,
        corrected_by: str = "",
        correction_type: CorrectionType | None = None,
        notes: str = "",
    ) -> Correction:
        """
        Attach one field edit. Only allowed while the item is in_review, and only when the
        item's corrections, this one included, still produce a valid document.
        """
        root = (field_path or "").split(".", 1)[0]
        if root not in ExtractedDocument.model_fields:
            raise ReviewQueueError(f"Unknown field path {field_path!r}")
        with self.store.transaction():
            item = self.get(item_id)
            if item.status is not ReviewStatus.IN_REVIEW:
                raise InvalidTransition(
                    f"Review item {item_id}: corrections need status in_review, not {item.status.value}"
                )
            document = self.document(item_id)
            original = get_field_value(document, field_path)
            correction = Correction(
                item_id=item_id,
                document_kind=item.document_kind,
                field_path=field_path,
                original_value=_stringify(original),
                corrected_value=_stringify(corrected_value),
                correction_type=correction_type or classify_correction(field_path, original, corrected_value),
                corrected_by=corrected_by or (item.assignee or ""),
                corrected_at=self._clock(),
                notes=notes,
            )
            corrections = [*item.corrections, correction]
            self._check_applicable(document, corrections, correction)
            self.store.update(replace(item, corrections=corrections, updated_at=self._clock()))
        return correction

    @staticmethod
    def _check_applicable(document: ExtractedDocument, corrections: list[Correction], new: Correction) -> None:
        """Dry-run the corrected view with every correction of the item applied."""
        try:
            view = apply_field_updates(document, {c.field_path: c.corrected_value for c in corrections})
        except (TypeError, ValueError, IndexError, AttributeError) as e:
            raise ReviewQueueError(f"Correction {new.field_path!r} cannot be applied: {e}") from e
        if new.corrected_value is not None and get_field_value(view, new.field_path) is None:
            raise ReviewQueueError(f"Correction {new.field_path!r} has no effect: unknown field or unusable value")

    def approve(self, item_id: str, reviewer: str = "") -> ReviewQueueItem:
        """
        in_review -> approved. Corrections, the corrected document view and the status change
        commit in one store transaction. The original score is kept; resolved confidence is 1.0.
        """
        with self.store.transaction():
            item = self.get(item_id)
            self._transition(item, ReviewStatus.APPROVED)
            now = self._clock()
            updated = replace(
                item,
                status=ReviewStatus.APPROVED,
                resolved_confidence=RESOLVED_CONFIDENCE,
                resolved_at=now,
                updated_at=now,
                assignee=item.assignee or reviewer or None,
            )
            if item.corrections:
                corrected = self._corrected_view(item)
                self.store.save_corrections(list(item.corrections))
                self.store.save_document(corrected_document_id(item.document_id), corrected)
            self.store.update(updated)
        if self.correction_log is not None and item.corrections:
            self.correction_log.append(item.corrections)
        logger.info("Review item=%s approved with %s correction(s)", item_id, len(item.corrections))
        return updated

    def reject(self, item_id: str, reason: str, reviewer: str = "") -> ReviewQueueItem:
        """pending|in_review -> rejected. A non-empty reason is mandatory."""
        if not (reason or "").strip():
            raise ReviewQueueError("rejection reason is required")
        with self.store.transaction():
            item = self.get(item_id)
            self._transition(item, ReviewStatus.REJECTED)
            now = self._clock()
            updated = replace(
                item,
                status=ReviewStatus.REJECTED,
                rejection_reason=reason.strip(),
                resolved_at=now,
                updated_at=now,
                assignee=item.assignee or reviewer or None,
            )
            self.store.update(updated)
        logger.info("Review item=%s rejected: %s", item_id, updated.rejection_reason)
        return updated

    def bulk_reject(self, item_ids: Iterable[str], reason: str) -> tuple[list[str], dict[str, str]]:
        """Reject many items; returns (rejected ids, {id: error} for items that could not be rejected)."""
        if not (reason or "").strip():
            raise ReviewQueueError("rejection reason is required")
        rejected: list[str] = []
        failed: dict[str, str] = {}
        for item_id in item_ids:
            try:
                self.reject(item_id, reason)
                rejected.append(item_id)
            except ReviewQueueError as e:
                failed[item_id] = str(e)
        return rejected, failed

    # ------------------------------------------------------------------
    # Corrected views
    # ------------------------------------------------------------------

    def _corrected_view(self, item: ReviewQueueItem) -> ExtractedDocument:
        original = self.store.get_document(item.document_id)
        if original is None:
            raise ItemNotFound(f"Document {item.document_id} for item {item.item_id} not found")
        updates = {c.field_path: c.corrected_value for c in item.corrections}
        return apply_field_updates(original, updates)

    def apply_corrections(self, item_id: str) -> ExtractedDocument:
        """New document with the item's corrections applied; the stored original is untouched."""
        return self._corrected_view(self.get(item_id))

    def suggest(self, item_id: str, field_path: str) -> Suggestion | None:
        """Learned correction for the item's current value of field_path, if any."""
        if self.learner is None:
            return None
        item = self.get(item_id)
        value = get_field_value(self.document(item_id), field_path)
        return self.learner.suggest(item.document_kind, field_path, value)
