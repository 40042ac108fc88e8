"""
Test doubles and document builders shared by the test modules.
Fakes implement the core ABCs; nothing here touches the network or Tesseract.
"""

from __future__ import annotations

import copy
import json
import threading
import time
from typing import Any

from core.interfaces import ILLMProvider, IRecognitionProvider, ITransport
from core.models import OutboundReply, ProviderSpec, RawRecognition
from core.schema import ExtractedDocument

VENDOR_GSTIN = "27AAPFU0939F1ZV"
CUSTOMER_GSTIN = "27AABCU9603R1ZN"
OTHER_STATE_GSTIN = "29AABCU9603R1ZJ"


class FakeRecognitionProvider(IRecognitionProvider):
    """Returns fixed text/confidence; can raise queued errors first or fail on every call."""

    def __init__(
        self,
        name: str,
        text: str = "TAX INVOICE",
        confidence: float = 0.9,
        *,
        cost: float = 0.0,
        timeout_sec: float = 5.0,
        errors: list[Exception] | None = None,
        fail_with: Exception | None = None,
        delay_sec: float = 0.0,
    ) -> None:
        self._spec = ProviderSpec(name=name, cost=cost, declared_accuracy=confidence, timeout_sec=timeout_sec)
        self.text = text
        self.confidence = confidence
        self.errors = list(errors or [])
        self.fail_with = fail_with
        self.delay_sec = delay_sec
        self.calls = 0
        self.timeouts: list[float] = []
        self._lock = threading.Lock()

    @property
    def spec(self) -> ProviderSpec:
        return self._spec

    def recognize(self, data: bytes, timeout: float) -> RawRecognition:
        with self._lock:
            self.calls += 1
            self.timeouts.append(timeout)
            err = self.errors.pop(0) if self.errors else self.fail_with
        if self.delay_sec:
            time.sleep(self.delay_sec)
        if err is not None:
            raise err
        return RawRecognition(provider=self._spec.name, text=self.text, native_confidence=self.confidence)


class FakeLLMProvider(ILLMProvider):
    """Replays canned chat responses in order (the last one repeats); records every call."""

    def __init__(self, responses: list[Any] | None = None) -> None:
        self.responses = list(responses or ["{}"])
        self.calls: list[list[dict[str, Any]]] = []
        self.kwargs: list[dict[str, Any]] = []

    def chat(self, messages: list[dict[str, Any]], **kwargs: Any) -> str:
        self.calls.append(copy.deepcopy(messages))
        self.kwargs.append(dict(kwargs))
        idx = min(len(self.calls) - 1, len(self.responses) - 1)
        resp = self.responses[idx]
        if isinstance(resp, Exception):
            raise resp
        return resp


class RecordingTransport(ITransport):
    def __init__(self) -> None:
        self.sent: list[OutboundReply] = []

    def send(self, reply: OutboundReply) -> None:
        self.sent.append(reply)


# ---------------------------------------------------------------------------
# Document builders
# ---------------------------------------------------------------------------


def invoice_payload(**overrides: Any) -> dict[str, Any]:
    """
    Well-formed intra-state invoice (Maharashtra -> Maharashtra): 1,000 taxable at 18%,
    CGST 90 + SGST 90, grand total 1,180. All confidences 0.97.
    """
    data: dict[str, Any] = {
        "document_kind": "invoice",
        "invoice_number": "INV-2024-001",
        "invoice_type": "tax_invoice",
        "invoice_date": "2024-06-15",
        "currency": "INR",
        "vendor": {"legal_name": "Acme Supplies Pvt Ltd", "gstin": VENDOR_GSTIN, "state": "Maharashtra", "state_code": "27"},
        "customer": {"legal_name": "Globex Traders", "gstin": CUSTOMER_GSTIN, "state": "Maharashtra", "state_code": "27"},
        "line_items": [
            {
                "description": "Laptop stand",
                "hsn_sac_code": "8473",
                "item_kind": "goods",
                "quantity": 2,
                "rate": 500,
                "taxable_amount": 1000,
                "gst_rate": 18,
                "cgst_amount": 90,
                "sgst_amount": 90,
                "igst_amount": 0,
                "total_amount": 1180,
            }
        ],
        "tax_summary": {
            "subtotal": 1000,
            "total_cgst": 90,
            "total_sgst": 90,
            "total_igst": 0,
            "grand_total": 1180,
        },
        "confidence_scores": {
            "vendor_gstin": 0.97,
            "customer_gstin": 0.97,
            "invoice_number": 0.97,
            "invoice_date": 0.97,
            "due_date": 0.97,
            "line_items": 0.97,
            "tax_calculations": 0.97,
            "grand_total": 0.97,
            "hsn_codes": 0.97,
        },
    }
    for key, value in overrides.items():
        data[key] = value
    return data


def make_invoice(**overrides: Any) -> ExtractedDocument:
    return ExtractedDocument.model_validate(invoice_payload(**overrides))


def interstate_invoice(**overrides: Any) -> ExtractedDocument:
    """Maharashtra -> Karnataka: IGST 180 only."""
    data = invoice_payload()
    data["customer"] = {"legal_name": "Initech", "gstin": OTHER_STATE_GSTIN, "state": "Karnataka", "state_code": "29"}
    data["line_items"][0].update({"cgst_amount": 0, "sgst_amount": 0, "igst_amount": 180})
    data["tax_summary"] = {"subtotal": 1000, "total_cgst": 0, "total_sgst": 0, "total_igst": 180, "grand_total": 1180}
    data.update(overrides)
    return ExtractedDocument.model_validate(data)


def identity_payload(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "document_kind": "identity",
        "identity": {
            "id_type": "pan",
            "id_number": "ABCPE1234F",
            "holder_name": "Rahul Sharma",
            "father_name": "Suresh Sharma",
            "date_of_birth": "1990-04-12",
        },
        "confidence_scores": {
            "id_number": 0.98,
            "holder_name": 0.96,
            "date_of_birth": 0.95,
            "father_name": 0.9,
            "address": 0.0,
        },
    }
    data.update(overrides)
    return data


def make_identity(**overrides: Any) -> ExtractedDocument:
    return ExtractedDocument.model_validate(identity_payload(**overrides))


def llm_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload)
