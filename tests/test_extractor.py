"""
Unit tests for the structured extractor: prompt selection, one self-repair round,
MalformedExtraction with salvaged fields, alias normalization.
"""
from __future__ import annotations

from datetime import date

import pytest

from core.exceptions import MalformedExtraction, ProviderAuthError, ProviderCancelled, ProviderUnavailable
from core.interfaces import ILLMProvider
from pipeline.extractor import (
    NEUTRAL_CONFIDENCE,
    StructuredExtractor,
    classify_document,
    normalize_payload,
    resolve_kind,
)
from prompts import load_prompt, render_prompt
from providers.gateway import CancelToken
from fakes import VENDOR_GSTIN, FakeLLMProvider, invoice_payload, llm_json
from utils.config import LLMConfig

FAST = LLMConfig(max_retries=2, retry_delay_sec=0.0)
INVOICE_TEXT = "TAX INVOICE\nGSTIN: 27AAPFU0939F1ZV\nCGST 9% SGST 9%"
PAN_TEXT = "INCOME TAX DEPARTMENT\nPermanent Account Number\nABCPE1234F"


def extractor(*responses) -> tuple[StructuredExtractor, FakeLLMProvider]:
    llm = FakeLLMProvider(list(responses))
    return StructuredExtractor(llm, FAST), llm


def test_valid_output_becomes_typed_document() -> None:
    ex, llm = extractor(llm_json(invoice_payload()))
    doc = ex.extract(INVOICE_TEXT, "auto", trace_id="t-1")
    assert doc.document_kind == "invoice"
    assert doc.vendor.gstin == VENDOR_GSTIN
    assert doc.tax_summary.grand_total == 1180
    assert doc.prompt_version == "invoice_extraction_v1"
    assert len(llm.calls) == 1
    assert llm.kwargs[0]["temperature"] == 0.0
    assert INVOICE_TEXT in llm.calls[0][1]["content"]


def test_omitted_confidences_default_to_neutral() -> None:
    payload = invoice_payload()
    payload["confidence_scores"] = {"vendor_gstin": 0.9}
    ex, _ = extractor(llm_json(payload))
    doc = ex.extract(INVOICE_TEXT, "invoice")
    assert doc.confidence("vendor_gstin") == 0.9
    assert doc.confidence("grand_total") == NEUTRAL_CONFIDENCE


def test_fenced_output_parses_without_repair_call() -> None:
    ex, llm = extractor("Sure!\n```json\n" + llm_json(invoice_payload()) + "\n```")
    assert ex.extract(INVOICE_TEXT, "invoice").invoice_number == "INV-2024-001"
    assert len(llm.calls) == 1


def test_one_self_repair_round() -> None:
    ex, llm = extractor("I could not read the totals.", llm_json(invoice_payload()))
    doc = ex.extract(INVOICE_TEXT, "invoice")
    assert doc.invoice_number == "INV-2024-001"
    assert len(llm.calls) == 2
    repair = llm.calls[1]
    assert [m["role"] for m in repair] == ["system", "user", "assistant", "user"]
    assert repair[2]["content"] == "I could not read the totals."
    assert repair[3]["content"] == load_prompt("self_healing_extraction.txt")


def test_unparseable_twice_raises_with_salvaged_fields() -> None:
    broken = '{"invoice_number": "INV-9", "grand_total": 500, "vendor": {"gstin": "27AAPFU0939F1ZV"'
    ex, llm = extractor(broken)
    with pytest.raises(MalformedExtraction) as exc:
        ex.extract(INVOICE_TEXT, "invoice", trace_id="t-9")
    assert len(llm.calls) == 2
    err = exc.value
    assert err.raw_output == broken
    assert err.partial["invoice_number"] == "INV-9"
    assert err.partial["grand_total"] == 500
    assert err.trace_id == "t-9"


def test_schema_mismatch_raises_malformed() -> None:
    ex, _ = extractor(llm_json({"invoice_number": "INV-1", "line_items": "see attached"}))
    with pytest.raises(MalformedExtraction, match="does not match invoice schema") as exc:
        ex.extract(INVOICE_TEXT, "invoice")
    assert exc.value.partial["invoice_number"] == "INV-1"


def test_transient_llm_failure_is_retried() -> None:
    ex, llm = extractor(ProviderUnavailable("503"), llm_json(invoice_payload()))
    assert ex.extract(INVOICE_TEXT, "invoice").invoice_number == "INV-2024-001"
    assert len(llm.calls) == 2


def test_auth_failure_propagates() -> None:
    ex, llm = extractor(ProviderAuthError("401"))
    with pytest.raises(ProviderAuthError):
        ex.extract(INVOICE_TEXT, "invoice")
    assert len(llm.calls) == 1


def test_identity_flat_keys_are_folded() -> None:
    ex, llm = extractor(llm_json({"pan_number": "abcpe1234f", "name": "Rahul Sharma", "dob": "12/04/1990"}))
    doc = ex.extract(PAN_TEXT, "auto")
    assert doc.document_kind == "identity"
    assert doc.prompt_version == "identity_extraction_v1"
    assert doc.identity.id_type == "pan"
    assert doc.identity.id_number == "ABCPE1234F"
    assert doc.identity.holder_name == "Rahul Sharma"
    assert doc.identity.date_of_birth == date(1990, 4, 12)


def test_invoice_flat_keys_are_folded() -> None:
    payload = normalize_payload({"vendor_gstin": VENDOR_GSTIN, "grand_total": "₹1,180.00", "line_items": None}, "invoice")
    assert payload["vendor"] == {"gstin": VENDOR_GSTIN}
    assert payload["tax_summary"] == {"grand_total": "₹1,180.00"}
    assert payload["line_items"] == []
    assert set(payload["confidence_scores"].values()) == {NEUTRAL_CONFIDENCE}


@pytest.mark.parametrize(
    "text, kind, subtype",
    [
        (PAN_TEXT, "identity", "pan"),
        ("Government of India\nAadhaar\n2345 6789 0123", "identity", "aadhaar"),
        (INVOICE_TEXT, "invoice", "tax_invoice"),
        ("Payment received with thanks", "invoice", "receipt"),
        ("illegible smudge", "invoice", "unknown"),
    ],
)
def test_keyword_classification(text: str, kind: str, subtype: str) -> None:
    result = classify_document(text)
    assert (result.kind, result.subtype) == (kind, subtype)


def test_explicit_hint_wins_over_text() -> None:
    assert resolve_kind("invoice", PAN_TEXT) == "invoice"
    assert resolve_kind("kyc", INVOICE_TEXT) == "identity"
    assert resolve_kind(None, PAN_TEXT) == "identity"


def test_render_prompt_keeps_literal_braces() -> None:
    rendered = render_prompt("invoice_extraction_v1.txt", document_text="HELLO-TEXT")
    assert "HELLO-TEXT" in rendered
    assert "{document_text}" not in rendered
    assert "{" in rendered
    with pytest.raises(FileNotFoundError):
        load_prompt("no_such_prompt.txt")


def test_cancelled_request_never_calls_the_llm() -> None:
    ex, llm = extractor(llm_json(invoice_payload()))
    token = CancelToken()
    token.cancel("shutdown")
    with pytest.raises(ProviderCancelled, match="shutdown"):
        ex.extract(INVOICE_TEXT, "invoice", cancel=token)
    assert llm.calls == []


def test_cancel_between_repair_rounds_stops_extraction() -> None:
    token = CancelToken()

    class CancelAfterFirst(FakeLLMProvider):
        def chat(self, messages, **kwargs):
            out = super().chat(messages, **kwargs)
            token.cancel("caller left")
            return out

    llm = CancelAfterFirst(["not json at all"])
    ex = StructuredExtractor(llm, FAST)
    with pytest.raises(ProviderCancelled):
        ex.extract(INVOICE_TEXT, "invoice", cancel=token)
    assert len(llm.calls) == 1


def test_llm_providers_only_need_chat() -> None:
    assert ILLMProvider.__abstractmethods__ == frozenset({"chat"})
