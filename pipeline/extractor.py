"""
Structured extractor: recognized text -> typed ExtractedDocument via an LLM and a versioned prompt.

Structured output guardrails:
- Fallback parser stages (strict -> fenced -> embedded object) with comma/escape repair
- One self-repair call on unparseable output (malformed reply + self-healing instruction)
- MalformedExtraction carrying salvaged fields when the repair also fails
- Confidence entries the model omitted are filled with a neutral 0.5
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from core.exceptions import MalformedExtraction, ProviderCancelled, ProviderTimeout, ProviderUnavailable
from core.interfaces import ILLMProvider
from core.schema import CONFIDENCE_FIELDS, ExtractedDocument
from prompts import EXTRACTION_PROMPTS, load_prompt, render_prompt
from providers.gateway import CancelToken
from utils.config import LLMConfig
from utils.json_repair import SafeJsonParser
from utils.retry import with_retry

logger = logging.getLogger(__name__)

# Max LLM attempts: 1 initial + 1 self-repair = 2 total
EXTRACTION_JSON_MAX_ATTEMPTS = 2
NEUTRAL_CONFIDENCE = 0.5
# Characters of recognized text sent to the model
MAX_TEXT_CHARS = 12000


# ---------------------------------------------------------------------------
# Keyword document classifier (used when the kind hint is "auto")
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DocumentClassification:
    kind: str  # invoice | identity
    subtype: str  # pan | aadhaar | tax_invoice | receipt | unknown
    confidence: float


_IDENTITY_KEYWORDS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("permanent account number", "income tax department"), "pan"),
    (("aadhaar", "unique identification authority"), "aadhaar"),
)
_INVOICE_KEYWORDS: tuple[tuple[tuple[str, ...], str, float], ...] = (
    (("tax invoice", "invoice"), "tax_invoice", 0.75),
    (("gstin", "goods and services tax", "hsn", "cgst", "igst"), "tax_invoice", 0.70),
    (("receipt", "payment received"), "receipt", 0.70),
)


def classify_document(text: str) -> DocumentClassification:
    """Keyword classification. Identity markers win; anything unrecognized is treated as an invoice."""
    lower = (text or "").lower()
    for keywords, subtype in _IDENTITY_KEYWORDS:
        if any(k in lower for k in keywords):
            return DocumentClassification(kind="identity", subtype=subtype, confidence=0.85)
    for keywords, subtype, conf in _INVOICE_KEYWORDS:
        if any(k in lower for k in keywords):
            return DocumentClassification(kind="invoice", subtype=subtype, confidence=conf)
    return DocumentClassification(kind="invoice", subtype="unknown", confidence=0.5)


def resolve_kind(kind_hint: str | None, text: str) -> str:
    hint = (kind_hint or "auto").strip().lower()
    if hint in ("invoice", "identity"):
        return hint
    if hint in ("kyc", "pan", "aadhaar"):
        return "identity"
    return classify_document(text).kind


# ---------------------------------------------------------------------------
# Payload normalization
# ---------------------------------------------------------------------------

# Flat keys some models emit instead of the nested shape
_INVOICE_FLAT_ALIASES = {
    "vendor_gstin": ("vendor", "gstin"),
    "vendor_name": ("vendor", "legal_name"),
    "customer_gstin": ("customer", "gstin"),
    "customer_name": ("customer", "legal_name"),
    "grand_total": ("tax_summary", "grand_total"),
    "subtotal": ("tax_summary", "subtotal"),
}
_IDENTITY_FLAT_ALIASES = {
    "pan_number": "id_number",
    "aadhaar_number": "id_number",
    "id_number": "id_number",
    "name": "holder_name",
    "holder_name": "holder_name",
    "father_name": "father_name",
    "date_of_birth": "date_of_birth",
    "dob": "date_of_birth",
    "address": "address",
}


def normalize_payload(data: dict[str, Any], kind: str, prompt_version: str = "") -> dict[str, Any]:
    """Fold alias shapes into the ExtractedDocument layout and fill neutral confidences."""
    out = dict(data)
    out["document_kind"] = kind

    if kind == "invoice":
        for flat, (section, key) in _INVOICE_FLAT_ALIASES.items():
            if flat in out and not isinstance(out[flat], (dict, list)):
                value = out.pop(flat)
                block = out.get(section)
                block = dict(block) if isinstance(block, dict) else {}
                block.setdefault(key, value)
                out[section] = block
        if out.get("line_items") is None:
            out["line_items"] = []
    else:
        ident = out.get("identity")
        ident = dict(ident) if isinstance(ident, dict) else {}
        for flat, key in _IDENTITY_FLAT_ALIASES.items():
            if flat in out:
                value = out.pop(flat)
                if value is not None:
                    ident.setdefault(key, value)
        if "id_type" not in ident:
            doc_type = str(out.get("document_type") or "").lower()
            if "pan" in doc_type or "pan_number" in data:
                ident["id_type"] = "pan"
            elif "aadhaar" in doc_type or "aadhaar_number" in data:
                ident["id_type"] = "aadhaar"
        out["identity"] = ident

    scores = out.get("confidence_scores")
    scores = dict(scores) if isinstance(scores, dict) else {}
    scores.pop("overall", None)
    for name in CONFIDENCE_FIELDS[kind]:
        if scores.get(name) is None:
            scores[name] = NEUTRAL_CONFIDENCE
    out["confidence_scores"] = scores
    if prompt_version:
        out["prompt_version"] = prompt_version
    return out


def _check_cancel(cancel: CancelToken | None, trace_id: str) -> None:
    if cancel is not None and cancel.cancelled:
        raise ProviderCancelled(f"extraction cancelled ({cancel.reason})", provider="llm", trace_id=trace_id)


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class StructuredExtractor:
    """
    Calls the extraction LLM with deterministic params (temperature=0), self-repairs
    malformed JSON once, and validates into ExtractedDocument.
    """

    def __init__(self, llm: ILLMProvider, config: LLMConfig | None = None) -> None:
        self.llm = llm
        self.config = config or LLMConfig()

    def _call_llm(self, messages: list[dict[str, Any]]) -> str:
        """One chat call; transient provider failures retried with backoff."""
        kwargs: dict[str, Any] = {
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "timeout": self.config.timeout_sec,
        }
        return with_retry(
            lambda: self.llm.chat(messages, **kwargs),
            max_attempts=max(1, self.config.max_retries),
            delay_sec=self.config.retry_delay_sec,
            retry_exceptions=(ProviderTimeout, ProviderUnavailable),
            jitter_sec=self.config.retry_delay_sec / 2,
        )

    def extract(
        self,
        text: str,
        kind_hint: str | None = "auto",
        *,
        trace_id: str = "",
        cancel: CancelToken | None = None,
    ) -> ExtractedDocument:
        """
        Raises MalformedExtraction when output stays unparseable after one self-repair,
        ProviderError when the LLM itself cannot be reached, and ProviderCancelled when
        the owning request is cancelled before or between LLM calls.
        """
        kind = resolve_kind(kind_hint, text)
        prompt_version = EXTRACTION_PROMPTS[kind]
        user_content = render_prompt(f"{prompt_version}.txt", document_text=(text or "")[:MAX_TEXT_CHARS])
        system = load_prompt("system_prompt_extraction.txt")
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": system},
            {"role": "user", "content": user_content},
        ]
        parser = SafeJsonParser(trace_id=trace_id)
        data: dict[str, Any] | None = None
        last_error: MalformedExtraction | None = None

        for attempt in range(EXTRACTION_JSON_MAX_ATTEMPTS):
            _check_cancel(cancel, trace_id)
            raw = self._call_llm(messages)
            _check_cancel(cancel, trace_id)
            logger.info(
                "Extraction LLM output attempt=%s kind=%s trace_id=%s len=%s",
                attempt + 1,
                kind,
                trace_id,
                len(raw or ""),
            )
            try:
                data = parser.parse(raw or "")
                if attempt > 0:
                    logger.info("Self-repair parse succeeded attempt=%s trace_id=%s", attempt + 1, trace_id)
                break
            except MalformedExtraction as e:
                last_error = e
                logger.warning(
                    "Extraction JSON parse failed attempt=%s trace_id=%s raw_preview=%s",
                    attempt + 1,
                    trace_id,
                    (parser.last_raw or "")[:300],
                )
                if attempt < EXTRACTION_JSON_MAX_ATTEMPTS - 1:
                    messages = [
                        {"role": "system", "content": system},
                        {"role": "user", "content": user_content},
                        {"role": "assistant", "content": parser.last_raw or raw},
                        {"role": "user", "content": load_prompt("self_healing_extraction.txt")},
                    ]

        if data is None:
            logger.error("Extraction JSON unparseable after %s attempts trace_id=%s", EXTRACTION_JSON_MAX_ATTEMPTS, trace_id)
            raise MalformedExtraction(
                f"Extraction output unparseable after {EXTRACTION_JSON_MAX_ATTEMPTS} attempts",
                raw_output=last_error.raw_output if last_error else "",
                partial=last_error.partial if last_error else {},
                trace_id=trace_id,
            )

        payload = normalize_payload(data, kind, prompt_version)
        try:
            return ExtractedDocument.model_validate(payload)
        except ValidationError as e:
            logger.warning("Extraction JSON does not fit schema trace_id=%s: %s", trace_id, e.errors()[:3])
            raise MalformedExtraction(
                f"Extraction output does not match {kind} schema: {e.error_count()} error(s)",
                raw_output=parser.last_raw,
                partial={k: v for k, v in payload.items() if not isinstance(v, (dict, list))},
                trace_id=trace_id,
            ) from e
