"""
End-to-end pipeline tests with fake recognition providers and a fake extraction LLM:
recognition -> extraction -> validation -> scoring -> decision -> review queue.
"""
from __future__ import annotations

import json
from datetime import date

import pytest

from core.exceptions import ProviderAuthError, ProviderCancelled, ProviderTimeout
from core.models import Priority, ReviewStatus, Verdict
from decision.confidence import ConfidenceScorer
from decision.decision_engine import DecisionEngine
from decision.validator import DomainValidator
from pipeline.extractor import StructuredExtractor
from pipeline.intake_pipeline import IntakePipeline, build_pipeline, degraded_from_partial
from pipeline.orchestrator import FallbackOrchestrator
from providers.gateway import CancelToken, ProviderGateway
from review.corrections import CorrectionLog
from review.queue import ReviewQueue
from review.store import InMemoryReviewStore
from fakes import FakeLLMProvider, FakeRecognitionProvider, identity_payload, invoice_payload, llm_json
from utils.config import AppConfig, LLMConfig, OrchestratorConfig, ReviewConfig
from utils.telemetry import InMemoryMetricsSink

INVOICE_TEXT = "TAX INVOICE\nAcme Supplies Pvt Ltd\nGSTIN 27AAPFU0939F1ZV\nGrand Total 1,180.00"
PAN_TEXT = "INCOME TAX DEPARTMENT\nPermanent Account Number\nABCPE1234F"


class Setup:
    def __init__(self, gateway: ProviderGateway, providers, llm_responses) -> None:
        self.metrics = InMemoryMetricsSink()
        self.llm = FakeLLMProvider(llm_responses)
        self.queue = ReviewQueue(InMemoryReviewStore(), CorrectionLog())
        self.pipeline = IntakePipeline(
            orchestrator=FallbackOrchestrator(
                gateway,
                providers,
                OrchestratorConfig(retry_backoff_sec=0.0, retry_jitter_sec=0.0),
                metrics=self.metrics,
            ),
            extractor=StructuredExtractor(self.llm, LLMConfig(retry_delay_sec=0.0)),
            validator=DomainValidator(today=lambda: date(2024, 7, 1)),
            scorer=ConfidenceScorer(),
            engine=DecisionEngine(),
            review_queue=self.queue,
            metrics=self.metrics,
        )


@pytest.fixture
def gateway():
    with ProviderGateway(max_workers=2) as gw:
        yield gw


def good_ocr(text: str = INVOICE_TEXT) -> list[FakeRecognitionProvider]:
    return [
        FakeRecognitionProvider("tesseract", text=text, confidence=0.93, cost=0.0),
        FakeRecognitionProvider("vision_llm", text=text, confidence=0.97, cost=0.01),
    ]


def test_clean_invoice_is_auto_approved(gateway: ProviderGateway) -> None:
    s = Setup(gateway, good_ocr(), [llm_json(invoice_payload())])
    result = s.pipeline.process(b"img", document_id="doc-a", caller_id="c1", trace_id="t-a")

    assert result.decision.verdict is Verdict.AUTO_APPROVE
    assert result.score.overall >= 0.95
    assert result.report.valid
    assert result.review_item_id is None
    assert result.orchestration.best.provider == "tesseract"
    assert s.queue.store.get_document("doc-a") is result.document
    assert s.queue.list_items() == []
    assert [d.verdict for _, d, _ in s.metrics.decisions] == [Verdict.AUTO_APPROVE]
    assert s.metrics.attempts_for("t-a")[0].outcome == "ok"


def test_broken_invoice_goes_to_high_priority_review(gateway: ProviderGateway) -> None:
    payload = invoice_payload()
    payload["customer"] = {"legal_name": "Globex Traders", "state": "Maharashtra", "state_code": "27"}
    payload["tax_summary"]["grand_total"] = 1230
    s = Setup(gateway, good_ocr(), [llm_json(payload)])
    result = s.pipeline.process(b"img", document_id="doc-b", caller_id="c1")

    assert result.report.has_critical
    assert result.score.capped
    assert result.score.overall <= 0.80
    assert result.decision.verdict is Verdict.REVIEW
    assert result.decision.priority is Priority.HIGH

    item = s.queue.get(result.review_item_id)
    assert item.status is ReviewStatus.PENDING
    assert item.priority is Priority.HIGH
    assert item.caller_id == "c1"
    assert s.queue.document(item.item_id) is result.document


def test_total_provider_failure_still_yields_a_review_item(gateway: ProviderGateway) -> None:
    providers = [
        FakeRecognitionProvider("tesseract", fail_with=ProviderTimeout("slow")),
        FakeRecognitionProvider("vision_llm", cost=0.01, fail_with=ProviderTimeout("slow")),
    ]
    s = Setup(gateway, providers, [llm_json(invoice_payload())])
    result = s.pipeline.process(b"img", kind_hint="invoice")

    assert result.degraded
    assert result.document.degraded
    assert result.document.unclear_fields
    assert result.decision.verdict is Verdict.FORCED_REVIEW
    assert result.decision.priority is Priority.HIGH
    assert s.llm.calls == []
    assert s.queue.get(result.review_item_id).verdict is Verdict.FORCED_REVIEW
    assert len(result.orchestration.attempts) == 4


def test_malformed_extraction_keeps_salvaged_fields(gateway: ProviderGateway) -> None:
    broken = '{"invoice_number": "INV-9", "grand_total": 500, "vendor": {"gstin": "27AAPFU0939F1ZV"'
    s = Setup(gateway, good_ocr(), [broken])
    result = s.pipeline.process(b"img")

    doc = result.document
    assert doc.degraded
    assert doc.invoice_number == "INV-9"
    assert doc.tax_summary.grand_total == 500
    assert set(doc.confidence_scores.values()) == {0.0}
    assert "vendor_gstin" in doc.unclear_fields
    assert result.decision.verdict is Verdict.FORCED_REVIEW
    assert len(s.llm.calls) == 2


def test_extraction_provider_failure_is_degraded(gateway: ProviderGateway) -> None:
    s = Setup(gateway, good_ocr(), [ProviderAuthError("401")])
    result = s.pipeline.process(b"img")
    assert result.document.degraded
    assert result.decision.verdict is Verdict.FORCED_REVIEW


def test_high_value_invoice_forces_review(gateway: ProviderGateway) -> None:
    payload = invoice_payload()
    payload["line_items"][0].update(
        {"quantity": 200, "taxable_amount": 100000, "cgst_amount": 9000, "sgst_amount": 9000, "total_amount": 118000}
    )
    payload["tax_summary"] = {"subtotal": 100000, "total_cgst": 9000, "total_sgst": 9000, "grand_total": 118000}
    s = Setup(gateway, good_ocr(), [llm_json(payload)])
    result = s.pipeline.process(b"img")

    assert result.report.valid
    assert result.score.overall == pytest.approx(0.97)
    assert result.decision.verdict is Verdict.FORCED_REVIEW
    assert result.decision.priority is Priority.MEDIUM


def test_transaction_value_override(gateway: ProviderGateway) -> None:
    s = Setup(gateway, good_ocr(), [llm_json(invoice_payload())])
    result = s.pipeline.process(b"img", transaction_value=500000)
    assert result.decision.verdict is Verdict.FORCED_REVIEW


def test_identity_document_flow(gateway: ProviderGateway) -> None:
    s = Setup(gateway, good_ocr(PAN_TEXT), [llm_json(identity_payload())])
    result = s.pipeline.process(b"img", kind_hint="auto")
    assert result.document.document_kind == "identity"
    assert result.document.identity.id_number == "ABCPE1234F"
    assert result.score.overall == pytest.approx(0.9615)
    assert result.decision.verdict is Verdict.AUTO_APPROVE


def test_result_serializes_to_json(gateway: ProviderGateway) -> None:
    s = Setup(gateway, good_ocr(), [llm_json(invoice_payload())])
    row = json.loads(json.dumps(s.pipeline.process(b"img", document_id="doc-x").to_dict(), default=str))
    assert row["document_id"] == "doc-x"
    assert row["decision"]["verdict"] == "auto_approve"
    assert row["document"]["vendor"]["gstin"] == "27AAPFU0939F1ZV"
    assert row["provider"] == "tesseract"


def test_degraded_from_partial_with_nothing_salvaged() -> None:
    doc = degraded_from_partial("identity", {})
    assert doc.degraded
    assert doc.document_kind == "identity"
    assert "id_number" in doc.unclear_fields


def test_build_pipeline_wires_configured_providers(gateway: ProviderGateway) -> None:
    pipeline = build_pipeline(AppConfig(), gateway=gateway, metrics=InMemoryMetricsSink())
    assert [p.spec.name for p in pipeline.orchestrator.providers] == ["tesseract", "vision_llm"]
    assert pipeline.review_queue is not None


class CancellingLLM(FakeLLMProvider):
    """Answers normally but cancels the owning request while doing so."""

    def __init__(self, token: CancelToken, responses) -> None:
        super().__init__(responses)
        self.token = token

    def chat(self, messages, **kwargs):
        self.token.cancel("caller left")
        return super().chat(messages, **kwargs)


def test_cancelled_request_is_not_queued(gateway: ProviderGateway) -> None:
    s = Setup(gateway, good_ocr(), [llm_json(invoice_payload())])
    token = CancelToken()
    token.cancel("caller left")

    with pytest.raises(ProviderCancelled):
        s.pipeline.process(b"img", document_id="doc-x", cancel=token)

    assert s.queue.list_items() == []
    assert s.queue.store.get_document("doc-x") is None
    assert s.llm.calls == []
    assert s.metrics.decisions == []


def test_cancel_during_extraction_stops_before_decision(gateway: ProviderGateway) -> None:
    s = Setup(gateway, good_ocr(), [llm_json(invoice_payload())])
    token = CancelToken()
    s.pipeline.extractor.llm = CancellingLLM(token, [llm_json(invoice_payload())])

    with pytest.raises(ProviderCancelled, match="caller left"):
        s.pipeline.process(b"img", document_id="doc-y", cancel=token)

    assert s.queue.list_items() == []
    assert s.queue.store.get_document("doc-y") is None
    assert s.metrics.decisions == []


def test_build_pipeline_learner_uses_configured_occurrences(gateway: ProviderGateway) -> None:
    config = AppConfig(review=ReviewConfig(min_pattern_occurrences=5))
    pipeline = build_pipeline(config, gateway=gateway, metrics=InMemoryMetricsSink())
    assert pipeline.review_queue.learner is not None
    assert pipeline.review_queue.learner.min_occurrences == 5
