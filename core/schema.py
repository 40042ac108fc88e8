"""
Pydantic schemas for extracted documents (invoices and identity documents).
Used by the extractor, validator, scorer and review queue.
"""
from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DOCUMENT_KINDS = ("invoice", "identity")
DEFAULT_FIELD_CONFIDENCE = 0.0

# Keys of the per-field confidence map, per document kind
INVOICE_CONFIDENCE_FIELDS: tuple[str, ...] = (
    "vendor_gstin",
    "customer_gstin",
    "invoice_number",
    "invoice_date",
    "due_date",
    "line_items",
    "tax_calculations",
    "grand_total",
    "hsn_codes",
)
IDENTITY_CONFIDENCE_FIELDS: tuple[str, ...] = (
    "id_number",
    "holder_name",
    "date_of_birth",
    "father_name",
    "address",
)
CONFIDENCE_FIELDS: dict[str, tuple[str, ...]] = {
    "invoice": INVOICE_CONFIDENCE_FIELDS,
    "identity": IDENTITY_CONFIDENCE_FIELDS,
}

_KIND_ALIASES = {
    "invoice": "invoice",
    "bill": "invoice",
    "receipt": "invoice",
    "tax_invoice": "invoice",
    "identity": "identity",
    "kyc": "identity",
    "pan": "identity",
    "pan_card": "identity",
    "aadhaar": "identity",
}

_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%d.%m.%Y", "%d %b %Y", "%d %B %Y", "%Y/%m/%d")
_AMOUNT_JUNK = re.compile(r"[^0-9.\-]")


def parse_date(value: Any) -> date | None:
    """Parse the date formats commonly printed on Indian invoices. None if unparseable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value).strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    return None


def parse_amount(value: Any) -> float:
    """Coerce '₹1,180.00', '1180', None -> float. Unparseable -> 0.0."""
    if value is None or value == "":
        return 0.0
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = _AMOUNT_JUNK.sub("", str(value))
    if cleaned in ("", "-", ".", "-."):
        return 0.0
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


def _optional_amount(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return parse_amount(value)


# ---------------------------------------------------------------------------
# Invoice parts
# ---------------------------------------------------------------------------


class PartySchema(BaseModel):
    """Vendor or customer on an invoice."""

    legal_name: str = ""
    gstin: str = ""
    state: str = ""
    state_code: str = ""
    address: str = ""

    @field_validator("gstin", mode="before")
    @classmethod
    def normalize_gstin(cls, v: Any) -> str:
        if v is None:
            return ""
        return re.sub(r"\s", "", str(v)).upper()

    @field_validator("state_code", mode="before")
    @classmethod
    def normalize_state_code(cls, v: Any) -> str:
        if v is None or v == "":
            return ""
        s = str(v).strip()
        return s.zfill(2) if s.isdigit() else s

    @field_validator("legal_name", "state", "address", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> str:
        return "" if v is None else str(v).strip()

    @property
    def region(self) -> str:
        """Two-digit region: explicit state code, else the GSTIN prefix."""
        if self.state_code:
            return self.state_code
        if len(self.gstin) >= 2 and self.gstin[:2].isdigit():
            return self.gstin[:2]
        return ""


class LineItemSchema(BaseModel):
    """Single line item on the invoice."""

    description: str = ""
    hsn_sac_code: str = ""
    item_kind: Literal["goods", "services", ""] = ""
    quantity: float | None = None
    unit: str = ""
    rate: float | None = None
    taxable_amount: float = 0.0
    gst_rate: float | None = None
    cgst_amount: float = 0.0
    sgst_amount: float = 0.0
    igst_amount: float = 0.0
    cess_amount: float = 0.0
    total_amount: float | None = None

    @field_validator("description", "unit", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> str:
        return "" if v is None else str(v).strip()

    @field_validator("hsn_sac_code", mode="before")
    @classmethod
    def code_to_str(cls, v: Any) -> str:
        if v is None:
            return ""
        return str(v).strip()

    @field_validator("item_kind", mode="before")
    @classmethod
    def normalize_kind(cls, v: Any) -> str:
        s = (str(v) if v is not None else "").strip().lower()
        if s in ("goods", "hsn", "good"):
            return "goods"
        if s in ("services", "service", "sac"):
            return "services"
        return ""

    @field_validator("taxable_amount", "cgst_amount", "sgst_amount", "igst_amount", "cess_amount", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> float:
        return parse_amount(v)

    @field_validator("quantity", "rate", "gst_rate", "total_amount", mode="before")
    @classmethod
    def coerce_optional(cls, v: Any) -> float | None:
        return _optional_amount(v)

    @property
    def tax_amount(self) -> float:
        return self.cgst_amount + self.sgst_amount + self.igst_amount


class TaxSummarySchema(BaseModel):
    """Totals block at the foot of the invoice."""

    subtotal: float = 0.0
    total_cgst: float = 0.0
    total_sgst: float = 0.0
    total_igst: float = 0.0
    total_cess: float = 0.0
    tcs: float = 0.0
    round_off: float = 0.0
    grand_total: float = 0.0

    @field_validator("*", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> float:
        return parse_amount(v)

    @property
    def computed_total(self) -> float:
        return (
            self.subtotal
            + self.total_cgst
            + self.total_sgst
            + self.total_igst
            + self.total_cess
            + self.tcs
            + self.round_off
        )


# ---------------------------------------------------------------------------
# Identity (KYC) part
# ---------------------------------------------------------------------------


class IdentitySchema(BaseModel):
    """PAN / Aadhaar style identity document fields."""

    id_type: Literal["pan", "aadhaar", ""] = ""
    id_number: str = ""
    holder_name: str = ""
    father_name: str = ""
    date_of_birth: date | None = None
    address: str = ""

    @field_validator("id_type", mode="before")
    @classmethod
    def normalize_id_type(cls, v: Any) -> str:
        s = (str(v) if v is not None else "").strip().lower().replace(" ", "_")
        if s in ("pan", "pan_card"):
            return "pan"
        if s in ("aadhaar", "aadhar", "aadhaar_card"):
            return "aadhaar"
        return ""

    @field_validator("id_number", mode="before")
    @classmethod
    def normalize_number(cls, v: Any) -> str:
        if v is None:
            return ""
        return re.sub(r"[\s-]", "", str(v)).upper()

    @field_validator("holder_name", "father_name", "address", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> str:
        return "" if v is None else str(v).strip()

    @field_validator("date_of_birth", mode="before")
    @classmethod
    def coerce_date(cls, v: Any) -> date | None:
        return parse_date(v)


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------


class ExtractedDocument(BaseModel):
    """
    Typed business record produced by the structured extractor.
    Frozen: corrections produce a new view via apply_field_updates, never a mutation.
    """

    model_config = ConfigDict(frozen=True)

    document_kind: Literal["invoice", "identity"] = "invoice"
    invoice_number: str = ""
    invoice_type: str = ""
    invoice_date: date | None = None
    due_date: date | None = None
    currency: str = "INR"
    vendor: PartySchema = Field(default_factory=PartySchema)
    customer: PartySchema = Field(default_factory=PartySchema)
    line_items: list[LineItemSchema] = Field(default_factory=list)
    tax_summary: TaxSummarySchema = Field(default_factory=TaxSummarySchema)
    identity: IdentitySchema | None = None
    confidence_scores: dict[str, float] = Field(default_factory=dict)
    unclear_fields: list[str] = Field(default_factory=list)
    degraded: bool = False
    prompt_version: str = ""

    @field_validator("document_kind", mode="before")
    @classmethod
    def normalize_kind(cls, v: Any) -> str:
        s = (str(v) if v is not None else "").strip().lower()
        return _KIND_ALIASES.get(s, "invoice")

    @field_validator("invoice_date", "due_date", mode="before")
    @classmethod
    def coerce_date(cls, v: Any) -> date | None:
        return parse_date(v)

    @field_validator("invoice_number", "invoice_type", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> str:
        return "" if v is None else str(v).strip()

    @field_validator("confidence_scores", mode="before")
    @classmethod
    def clamp_confidences(cls, v: Any) -> dict[str, float]:
        if not isinstance(v, dict):
            return {}
        out: dict[str, float] = {}
        for key, raw in v.items():
            try:
                out[str(key)] = max(0.0, min(1.0, float(raw)))
            except (TypeError, ValueError):
                continue
        return out

    @field_validator("unclear_fields", mode="before")
    @classmethod
    def coerce_unclear(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v] if v.strip() else []
        return [str(x) for x in v if x is not None and str(x).strip()]

    @model_validator(mode="after")
    def fill_confidence_map(self) -> ExtractedDocument:
        for name in CONFIDENCE_FIELDS[self.document_kind]:
            self.confidence_scores.setdefault(name, DEFAULT_FIELD_CONFIDENCE)
        return self

    @property
    def confidence_fields(self) -> tuple[str, ...]:
        return CONFIDENCE_FIELDS[self.document_kind]

    @property
    def transaction_value(self) -> float:
        """Monetary value used by the high-value policy; identity documents carry none."""
        if self.document_kind != "invoice":
            return 0.0
        return self.tax_summary.grand_total

    def confidence(self, name: str) -> float:
        return self.confidence_scores.get(name, DEFAULT_FIELD_CONFIDENCE)


def field_present(doc: ExtractedDocument, name: str) -> bool:
    """Whether the document carries a value for a confidence-map field."""
    if doc.document_kind == "identity":
        ident = doc.identity
        if ident is None:
            return False
        return bool(getattr(ident, name, None))
    ts = doc.tax_summary
    if name == "vendor_gstin":
        return bool(doc.vendor.gstin)
    if name == "customer_gstin":
        return bool(doc.customer.gstin)
    if name == "line_items":
        return bool(doc.line_items)
    if name == "tax_calculations":
        return any((ts.total_cgst, ts.total_sgst, ts.total_igst)) or any(i.tax_amount for i in doc.line_items)
    if name == "grand_total":
        return bool(ts.grand_total)
    if name == "hsn_codes":
        return any(i.hsn_sac_code for i in doc.line_items)
    return bool(getattr(doc, name, None))


def missing_fields(doc: ExtractedDocument, *, include_optional: bool = False) -> list[str]:
    """Confidence-map fields with no value. due_date is optional unless include_optional."""
    out = []
    for name in doc.confidence_fields:
        if name == "due_date" and not include_optional:
            continue
        if not field_present(doc, name):
            out.append(name)
    return out


def empty_document(kind: str = "invoice", *, unclear_fields: list[str] | None = None, degraded: bool = False) -> ExtractedDocument:
    """Placeholder document for runs where nothing could be extracted."""
    kind = _KIND_ALIASES.get((kind or "").lower(), "invoice")
    fields = list(unclear_fields) if unclear_fields else list(CONFIDENCE_FIELDS[kind])
    return ExtractedDocument(
        document_kind=kind,
        identity=IdentitySchema() if kind == "identity" else None,
        unclear_fields=fields,
        degraded=degraded,
    )


# ---------------------------------------------------------------------------
# Field paths ("vendor.gstin", "line_items.0.hsn_sac_code")
# ---------------------------------------------------------------------------


def get_field_value(doc: ExtractedDocument, field_path: str) -> Any:
    """Read a dotted field path from the JSON view of the document. None if absent."""
    node: Any = doc.model_dump(mode="json")
    for part in field_path.split("."):
        if isinstance(node, dict):
            node = node.get(part)
        elif isinstance(node, list) and part.isdigit() and int(part) < len(node):
            node = node[int(part)]
        else:
            return None
    return node


def apply_field_updates(doc: ExtractedDocument, updates: dict[str, Any]) -> ExtractedDocument:
    """
    Return a new document with dotted-path updates applied and re-validated.
    The input document is left untouched (audit trail).
    """
    data = doc.model_dump(mode="json")
    for field_path, value in updates.items():
        parts = field_path.split(".")
        node: Any = data
        for i, part in enumerate(parts[:-1]):
            nxt = parts[i + 1]
            if isinstance(node, list):
                idx = int(part)
                while len(node) <= idx:
                    node.append({})
                node = node[idx]
                continue
            if node.get(part) is None:
                node[part] = [] if nxt.isdigit() else {}
            node = node[part]
        leaf = parts[-1]
        if isinstance(node, list):
            idx = int(leaf)
            while len(node) <= idx:
                node.append(None)
            node[idx] = value
        else:
            node[leaf] = value
    return ExtractedDocument.model_validate(data)
