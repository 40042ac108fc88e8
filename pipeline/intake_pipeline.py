"""
Intake pipeline: single public method process(data) -> PipelineResult.
Does not know which providers or LLM are used; all stages injected via constructor.
Flow: Orchestrator (recognition) -> Extractor -> Validator -> Scorer -> Decision -> Review queue.

A document is never dropped: total provider failure or unusable extraction still produces a
degraded document that is validated, scored and sent to forced review.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from pydantic import ValidationError

from core.exceptions import MalformedExtraction, ProviderCancelled, ProviderError
from core.interfaces import IMetricsSink
from core.models import PipelineResult
from core.schema import CONFIDENCE_FIELDS, ExtractedDocument, empty_document, missing_fields
from decision.confidence import ConfidenceScorer
from decision.decision_engine import DecisionEngine, DecisionPolicy
from decision.validator import DomainValidator
from pipeline.extractor import StructuredExtractor, normalize_payload, resolve_kind
from pipeline.orchestrator import FallbackOrchestrator
from providers.factory import create_llm_provider, create_recognition_providers
from providers.gateway import CancelToken, ProviderGateway
from review.corrections import CorrectionLog
from review.queue import ReviewQueue
from review.store import InMemoryReviewStore
from utils.config import AppConfig
from utils.logger import log_structured
from utils.telemetry import LoggingMetricsSink, emit_decision

logger = logging.getLogger(__name__)


def degraded_from_partial(kind: str, partial: dict[str, Any], prompt_version: str = "") -> ExtractedDocument:
    """
    Best-effort document from fields salvaged out of malformed model output.
    Every confidence is 0; unclear_fields lists what is still missing (all fields if nothing is).
    """
    try:
        payload = normalize_payload(dict(partial or {}), kind, prompt_version)
        payload["confidence_scores"] = {}
        payload["degraded"] = True
        doc = ExtractedDocument.model_validate(payload)
    except ValidationError as e:
        logger.warning("Salvaged fields do not fit %s schema (%s error(s)); using empty document", kind, e.error_count())
        return empty_document(kind, degraded=True)
    unclear = missing_fields(doc) or list(CONFIDENCE_FIELDS[doc.document_kind])
    return doc.model_copy(update={"unclear_fields": unclear})


def _raise_if_cancelled(cancel: CancelToken | None, stage: str, trace_id: str) -> None:
    if cancel is not None and cancel.cancelled:
        logger.info("Request cancelled after %s trace_id=%s reason=%s", stage, trace_id, cancel.reason)
        raise ProviderCancelled(f"request cancelled after {stage} ({cancel.reason})", trace_id=trace_id)


class IntakePipeline:
    """
    Production pipeline: process(bytes) -> PipelineResult.
    No global state; no knowledge of concrete providers. All deps injected.
    """

    def __init__(
        self,
        orchestrator: FallbackOrchestrator,
        extractor: StructuredExtractor,
        validator: DomainValidator,
        scorer: ConfidenceScorer,
        engine: DecisionEngine,
        review_queue: ReviewQueue | None = None,
        metrics: IMetricsSink | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.extractor = extractor
        self.validator = validator
        self.scorer = scorer
        self.engine = engine
        self.review_queue = review_queue
        self.metrics = metrics

    def _extract(self, text: str, kind: str, trace_id: str, cancel: CancelToken | None) -> ExtractedDocument:
        try:
            return self.extractor.extract(text, kind_hint=kind, trace_id=trace_id, cancel=cancel)
        except MalformedExtraction as e:
            logger.warning("Malformed extraction trace_id=%s: %s; salvaged=%s", trace_id, e, sorted(e.partial))
            return degraded_from_partial(kind, e.partial)
        except ProviderCancelled:
            raise
        except ProviderError as e:
            logger.error("Extraction provider failed trace_id=%s: %s", trace_id, e)
            return empty_document(kind, degraded=True)

    def process(
        self,
        data: bytes,
        kind_hint: str = "auto",
        *,
        document_id: str | None = None,
        caller_id: str = "",
        trace_id: str | None = None,
        cancel: CancelToken | None = None,
        transaction_value: float | None = None,
    ) -> PipelineResult:
        """
        Run every stage for one document, strictly in order. Provider failures never escape;
        review-store failures do. A cancelled request raises ProviderCancelled and leaves
        nothing in the review store.
        """
        trace_id = trace_id or str(uuid.uuid4())
        document_id = document_id or uuid.uuid4().hex
        start = time.perf_counter()

        # 1) Recognition
        orchestration = self.orchestrator.run(data, cancel=cancel, trace_id=trace_id)
        _raise_if_cancelled(cancel, "recognition", trace_id)
        text = orchestration.text
        kind = resolve_kind(kind_hint, text)

        # 2) Extraction (skipped when nothing was recognized)
        if orchestration.degraded:
            logger.warning("Recognition degraded trace_id=%s; emitting empty %s document", trace_id, kind)
            document = empty_document(kind, degraded=True)
        else:
            document = self._extract(text, kind, trace_id, cancel)
        _raise_if_cancelled(cancel, "extraction", trace_id)

        # 3) Validation, scoring, decision
        report = self.validator.validate(document)
        score = self.scorer.score(document, report)
        value = document.transaction_value if transaction_value is None else transaction_value
        degraded = orchestration.degraded or document.degraded
        decision = self.engine.decide(score, report, value, degraded=degraded)
        _raise_if_cancelled(cancel, "decision", trace_id)
        emit_decision(self.metrics, trace_id, decision, score)

        # 4) Review queue / commit
        review_item_id = None
        if self.review_queue is not None:
            if decision.needs_review:
                item = self.review_queue.enqueue(document_id, document, decision, score, caller_id=caller_id)
                review_item_id = item.item_id
            else:
                self.review_queue.store.save_document(document_id, document)
        elif decision.needs_review:
            logger.warning("No review queue configured; %s needs review trace_id=%s", document_id, trace_id)

        elapsed = time.perf_counter() - start
        log_structured(
            logger,
            logging.INFO,
            "Document processed",
            trace_id=trace_id,
            document_id=document_id,
            kind=document.document_kind,
            provider=orchestration.best.provider if orchestration.best else None,
            degraded=degraded,
            overall=round(score.overall, 4),
            violations=len(report.violations),
            verdict=decision.verdict.value,
            priority=decision.priority.value if decision.priority else None,
            elapsed_sec=round(elapsed, 3),
        )
        return PipelineResult(
            trace_id=trace_id,
            document_id=document_id,
            document=document,
            report=report,
            score=score,
            decision=decision,
            orchestration=orchestration,
            review_item_id=review_item_id,
            elapsed_sec=elapsed,
        )


def build_pipeline(
    config: AppConfig,
    *,
    gateway: ProviderGateway | None = None,
    metrics: IMetricsSink | None = None,
    review_queue: ReviewQueue | None = None,
) -> IntakePipeline:
    """Wire concrete providers and stages from configuration."""
    metrics = metrics or LoggingMetricsSink()
    if review_queue is None:
        review_queue = ReviewQueue(
            InMemoryReviewStore(),
            CorrectionLog(),
            min_pattern_occurrences=config.review.min_pattern_occurrences,
        )
    orchestrator = FallbackOrchestrator(
        gateway or ProviderGateway(max_workers=config.workers.max_workers),
        create_recognition_providers(config),
        config.orchestrator,
        metrics=metrics,
    )
    return IntakePipeline(
        orchestrator=orchestrator,
        extractor=StructuredExtractor(create_llm_provider(config.llm), config.llm),
        validator=DomainValidator(config.validator),
        scorer=ConfidenceScorer(config.scoring),
        engine=DecisionEngine(DecisionPolicy.from_config(config.decision)),
        review_queue=review_queue,
        metrics=metrics,
    )
