"""
Domain validator: a fixed, ordered battery of deterministic rules over an ExtractedDocument.

Invoice rules (in order): identifier checksum, same-region tax split, cross-region tax,
arithmetic consistency, classification-code format, temporal sanity, B2B classification.
Identity rules: id-number format, holder name, birth date.

Every rule runs regardless of earlier failures; violations are data, never exceptions.
field_refs name keys of the document's confidence map so the scorer can penalize them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable

from core.models import Severity, ValidationReport, Violation
from core.schema import ExtractedDocument, LineItemSchema
from decision.gstin import gstin_problems, is_valid_aadhaar, is_valid_pan
from utils.config import ValidatorConfig

logger = logging.getLogger(__name__)

VALID_GST_RATES = frozenset({0.0, 0.25, 3.0, 5.0, 12.0, 18.0, 28.0})
GOODS_CODE_LENGTHS = frozenset({4, 6, 8})
SERVICE_CODE_LENGTH = 6
# Amounts below this are treated as zero
ZERO_EPSILON = 0.005


@dataclass
class _Ctx:
    """Mutable state threaded through one validation run."""

    doc: ExtractedDocument
    cfg: ValidatorConfig
    today: date
    violations: list[Violation] = field(default_factory=list)
    checks: dict[str, bool] = field(default_factory=dict)

    def add(self, rule_id: str, severity: Severity, message: str, *refs: str) -> None:
        self.violations.append(Violation(rule_id=rule_id, severity=severity, message=message, field_refs=tuple(refs)))

    def failed_since(self, start: int, min_severity: Severity = Severity.WARNING) -> bool:
        return any(v.severity.rank >= min_severity.rank for v in self.violations[start:])


Rule = Callable[[_Ctx], None]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _is_zero(x: float) -> bool:
    return abs(x) < ZERO_EPSILON


def _tax_totals(doc: ExtractedDocument) -> tuple[float, float, float]:
    """(cgst, sgst, igst) from the tax summary, falling back to line-item sums when the summary is blank."""
    ts = doc.tax_summary
    if not (_is_zero(ts.total_cgst) and _is_zero(ts.total_sgst) and _is_zero(ts.total_igst)):
        return ts.total_cgst, ts.total_sgst, ts.total_igst
    items = doc.line_items
    return (
        sum(i.cgst_amount for i in items),
        sum(i.sgst_amount for i in items),
        sum(i.igst_amount for i in items),
    )


def _nil_rated(doc: ExtractedDocument) -> bool:
    """Every line item explicitly at 0% GST (exempt/nil-rated supply)."""
    return bool(doc.line_items) and all(i.gst_rate is not None and _is_zero(i.gst_rate) for i in doc.line_items)


def _regions(doc: ExtractedDocument) -> tuple[str, str]:
    return doc.vendor.region, doc.customer.region


def _item_kind(item: LineItemSchema) -> str:
    if item.item_kind:
        return item.item_kind
    # SAC codes all live under chapter 99
    return "services" if item.hsn_sac_code.startswith("99") else "goods"


def _money(x: float) -> str:
    return f"{x:,.2f}"


# ---------------------------------------------------------------------------
# Invoice rules
# ---------------------------------------------------------------------------


def rule_identifier_checksum(ctx: _Ctx) -> None:
    """Vendor GSTIN missing/invalid -> critical; customer invalid -> critical, missing -> warning."""
    rid = "identifier_checksum"
    vendor, customer = ctx.doc.vendor, ctx.doc.customer

    problems = gstin_problems(vendor.gstin)
    if problems == ["missing"]:
        ctx.add(rid, Severity.CRITICAL, "Vendor GSTIN is missing", "vendor_gstin")
    elif problems:
        ctx.add(rid, Severity.CRITICAL, f"Vendor GSTIN {vendor.gstin} is invalid: {'; '.join(problems)}", "vendor_gstin")
    ctx.checks["vendor_identifier_valid"] = not problems

    problems = gstin_problems(customer.gstin)
    if problems == ["missing"]:
        ctx.add(rid, Severity.WARNING, "Customer GSTIN is missing (B2C supply or unreadable)", "customer_gstin")
    elif problems:
        ctx.add(rid, Severity.CRITICAL, f"Customer GSTIN {customer.gstin} is invalid: {'; '.join(problems)}", "customer_gstin")
    ctx.checks["customer_identifier_valid"] = not problems

    for label, party, ref in (("Vendor", vendor, "vendor_gstin"), ("Customer", customer, "customer_gstin")):
        if party.gstin and party.state_code and party.gstin[:2] != party.state_code:
            ctx.add(
                rid,
                Severity.WARNING,
                f"{label} state code {party.state_code} does not match GSTIN prefix {party.gstin[:2]}",
                ref,
            )


def rule_same_region_tax_split(ctx: _Ctx) -> None:
    """Intra-state supply: CGST and SGST present, non-zero and equal; IGST exactly zero."""
    rid = "same_region_tax_split"
    vendor_region, customer_region = _regions(ctx.doc)
    cgst, sgst, igst = _tax_totals(ctx.doc)
    tol = ctx.cfg.split_tolerance
    start = len(ctx.violations)

    if vendor_region and customer_region:
        if vendor_region != customer_region:
            return
        if not _nil_rated(ctx.doc):
            if _is_zero(cgst) or _is_zero(sgst):
                ctx.add(
                    rid,
                    Severity.CRITICAL,
                    f"Intra-state supply (region {vendor_region}) needs both CGST and SGST; got CGST {_money(cgst)}, SGST {_money(sgst)}",
                    "tax_calculations",
                )
        if abs(cgst - sgst) > tol:
            ctx.add(rid, Severity.CRITICAL, f"CGST {_money(cgst)} and SGST {_money(sgst)} must be equal", "tax_calculations")
        if not _is_zero(igst):
            ctx.add(rid, Severity.CRITICAL, f"Intra-state supply must not carry IGST ({_money(igst)})", "tax_calculations")
        ctx.checks["tax_logic_valid"] = not ctx.failed_since(start, Severity.CRITICAL)
        return

    # Place of supply unknown: only the internal consistency of the split can be checked
    ctx.add(rid, Severity.INFO, "Customer or vendor region unknown; tax split checked for consistency only", "tax_calculations")
    if (not _is_zero(cgst) or not _is_zero(sgst)) and abs(cgst - sgst) > tol:
        ctx.add(rid, Severity.CRITICAL, f"CGST {_money(cgst)} and SGST {_money(sgst)} must be equal", "tax_calculations")
    ctx.checks["tax_logic_valid"] = not ctx.failed_since(start, Severity.CRITICAL)


def rule_cross_region_tax(ctx: _Ctx) -> None:
    """Inter-state supply: only IGST may be non-zero."""
    rid = "cross_region_tax"
    vendor_region, customer_region = _regions(ctx.doc)
    cgst, sgst, igst = _tax_totals(ctx.doc)
    start = len(ctx.violations)

    if vendor_region and customer_region:
        if vendor_region == customer_region:
            return
        if not _is_zero(cgst) or not _is_zero(sgst):
            ctx.add(
                rid,
                Severity.CRITICAL,
                f"Inter-state supply ({vendor_region} -> {customer_region}) must not carry CGST/SGST; got CGST {_money(cgst)}, SGST {_money(sgst)}",
                "tax_calculations",
            )
        if _is_zero(igst) and not _nil_rated(ctx.doc):
            ctx.add(rid, Severity.CRITICAL, "Inter-state supply requires IGST", "tax_calculations")
        ctx.checks["tax_logic_valid"] = not ctx.failed_since(start, Severity.CRITICAL)
        return

    if not _is_zero(igst) and (not _is_zero(cgst) or not _is_zero(sgst)):
        ctx.add(rid, Severity.CRITICAL, "IGST must not be combined with CGST/SGST on one invoice", "tax_calculations")
        ctx.checks["tax_logic_valid"] = False


def rule_arithmetic_consistency(ctx: _Ctx) -> None:
    """Grand total vs subtotal + taxes (critical); line-level tax and total arithmetic (warning)."""
    rid = "arithmetic_consistency"
    doc, tol = ctx.doc, ctx.cfg.amount_tolerance
    ts = doc.tax_summary
    start = len(ctx.violations)

    if _is_zero(ts.grand_total):
        ctx.add(rid, Severity.CRITICAL, "Grand total is missing or zero", "grand_total")
        ctx.checks["grand_total_matches"] = False
    else:
        computed = ts.computed_total
        diff = ts.grand_total - computed
        ok = abs(diff) <= tol
        if not ok:
            ctx.add(
                rid,
                Severity.CRITICAL,
                f"Grand total {_money(ts.grand_total)} differs from subtotal + taxes {_money(computed)} by {_money(diff)}",
                "grand_total",
                "tax_calculations",
            )
        ctx.checks["grand_total_matches"] = ok

    items = doc.line_items
    if items:
        taxable = sum(i.taxable_amount for i in items)
        if not _is_zero(ts.subtotal) and abs(taxable - ts.subtotal) > tol:
            ctx.add(
                rid,
                Severity.WARNING,
                f"Line items sum to {_money(taxable)} but subtotal is {_money(ts.subtotal)}",
                "line_items",
            )
        if any(not _is_zero(i.tax_amount) for i in items):
            for label, line_sum, summary in (
                ("CGST", sum(i.cgst_amount for i in items), ts.total_cgst),
                ("SGST", sum(i.sgst_amount for i in items), ts.total_sgst),
                ("IGST", sum(i.igst_amount for i in items), ts.total_igst),
            ):
                if abs(line_sum - summary) > tol:
                    ctx.add(
                        rid,
                        Severity.WARNING,
                        f"{label} on line items {_money(line_sum)} does not match summary {_money(summary)}",
                        "tax_calculations",
                    )

    for n, item in enumerate(items, start=1):
        if item.gst_rate is not None:
            if item.gst_rate not in VALID_GST_RATES:
                ctx.add(rid, Severity.WARNING, f"Line {n}: GST rate {item.gst_rate:g}% is not a valid slab", "line_items")
            expected = item.taxable_amount * item.gst_rate / 100.0
            if abs(item.tax_amount - expected) > tol:
                ctx.add(
                    rid,
                    Severity.WARNING,
                    f"Line {n}: tax {_money(item.tax_amount)} != {_money(item.taxable_amount)} x {item.gst_rate:g}% ({_money(expected)})",
                    "line_items",
                    "tax_calculations",
                )
        if item.total_amount is not None:
            expected_total = item.taxable_amount + item.tax_amount + item.cess_amount
            if abs(item.total_amount - expected_total) > tol:
                ctx.add(
                    rid,
                    Severity.WARNING,
                    f"Line {n}: total {_money(item.total_amount)} != taxable + taxes {_money(expected_total)}",
                    "line_items",
                )

    ctx.checks["tax_calculation_accurate"] = not ctx.failed_since(start)


def rule_classification_code_format(ctx: _Ctx) -> None:
    """Goods HSN 4/6/8 digits, services SAC 6 digits; mandatory above the configured value."""
    rid = "classification_code_format"
    doc = ctx.doc
    start = len(ctx.violations)
    mandatory = doc.tax_summary.grand_total > ctx.cfg.code_mandatory_threshold

    if not doc.line_items:
        ctx.add(rid, Severity.WARNING, "Invoice has no line items", "line_items")

    missing = 0
    for n, item in enumerate(doc.line_items, start=1):
        code = item.hsn_sac_code.replace(" ", "")
        if not code:
            missing += 1
            continue
        if not code.isdigit():
            ctx.add(rid, Severity.WARNING, f"Line {n}: HSN/SAC code {code!r} is not numeric", "hsn_codes")
            continue
        kind = _item_kind(item)
        if kind == "services" and len(code) != SERVICE_CODE_LENGTH:
            ctx.add(rid, Severity.WARNING, f"Line {n}: SAC code {code} must be 6 digits", "hsn_codes")
        elif kind == "goods" and len(code) not in GOODS_CODE_LENGTHS:
            ctx.add(rid, Severity.WARNING, f"Line {n}: HSN code {code} must be 4, 6 or 8 digits", "hsn_codes")
    if missing and mandatory:
        ctx.add(
            rid,
            Severity.WARNING,
            f"{missing} line item(s) lack HSN/SAC codes, mandatory above {_money(ctx.cfg.code_mandatory_threshold)}",
            "hsn_codes",
        )

    ctx.checks["codes_valid"] = not ctx.failed_since(start)


def rule_temporal_sanity(ctx: _Ctx) -> None:
    """Issue date not in the future; due date on or after issue."""
    rid = "temporal_sanity"
    doc, today = ctx.doc, ctx.today
    start = len(ctx.violations)
    issued, due = doc.invoice_date, doc.due_date

    if issued is None:
        ctx.add(rid, Severity.WARNING, "Invoice date is missing or unreadable", "invoice_date")
    elif issued > today:
        ctx.add(rid, Severity.CRITICAL, f"Invoice date {issued.isoformat()} is in the future", "invoice_date")
    elif issued < today - timedelta(days=ctx.cfg.stale_invoice_days):
        ctx.add(rid, Severity.INFO, f"Invoice date {issued.isoformat()} is more than {ctx.cfg.stale_invoice_days} days old", "invoice_date")

    if issued is not None and due is not None:
        if due < issued:
            ctx.add(rid, Severity.WARNING, f"Due date {due.isoformat()} is before invoice date {issued.isoformat()}", "due_date", "invoice_date")
        elif (due - issued).days > ctx.cfg.max_due_days:
            ctx.add(rid, Severity.INFO, f"Due date is {(due - issued).days} days after invoice date", "due_date")

    ctx.checks["date_logic_valid"] = not ctx.failed_since(start)


def rule_b2b_classification(ctx: _Ctx) -> None:
    """Large invoices without a customer GSTIN are usually B2B invoices with a missed identifier."""
    doc = ctx.doc
    if doc.tax_summary.grand_total > ctx.cfg.b2b_threshold and not doc.customer.gstin:
        ctx.add(
            "b2b_classification",
            Severity.INFO,
            f"Invoice above {_money(ctx.cfg.b2b_threshold)} has no customer GSTIN; confirm it is a B2C supply",
            "customer_gstin",
        )


INVOICE_RULES: tuple[Rule, ...] = (
    rule_identifier_checksum,
    rule_same_region_tax_split,
    rule_cross_region_tax,
    rule_arithmetic_consistency,
    rule_classification_code_format,
    rule_temporal_sanity,
    rule_b2b_classification,
)


# ---------------------------------------------------------------------------
# Identity rules
# ---------------------------------------------------------------------------


def rule_identity_number_format(ctx: _Ctx) -> None:
    rid = "identity_number_format"
    ident = ctx.doc.identity
    number = ident.id_number if ident else ""
    if not number:
        ctx.add(rid, Severity.CRITICAL, "Identity number is missing", "id_number")
        ctx.checks["identity_number_valid"] = False
        return
    id_type = ident.id_type if ident else ""
    if not id_type:
        id_type = "aadhaar" if number.isdigit() else "pan"
    ok = is_valid_pan(number) if id_type == "pan" else is_valid_aadhaar(number)
    if not ok:
        expected = "5 letters, 4 digits, 1 letter" if id_type == "pan" else "12 digits not starting with 0 or 1"
        ctx.add(rid, Severity.CRITICAL, f"{id_type.upper()} number {number} is malformed (expected {expected})", "id_number")
    ctx.checks["identity_number_valid"] = ok


def rule_identity_holder_name(ctx: _Ctx) -> None:
    ident = ctx.doc.identity
    ok = bool(ident and ident.holder_name)
    if not ok:
        ctx.add("identity_holder_name", Severity.WARNING, "Holder name is missing", "holder_name")
    ctx.checks["identity_name_present"] = ok


def rule_identity_birth_date(ctx: _Ctx) -> None:
    rid = "identity_birth_date"
    ident = ctx.doc.identity
    dob = ident.date_of_birth if ident else None
    start = len(ctx.violations)
    if dob is None:
        ctx.add(rid, Severity.WARNING, "Date of birth is missing or unreadable", "date_of_birth")
    elif dob > ctx.today:
        ctx.add(rid, Severity.CRITICAL, f"Date of birth {dob.isoformat()} is in the future", "date_of_birth")
    ctx.checks["date_logic_valid"] = not ctx.failed_since(start)


IDENTITY_RULES: tuple[Rule, ...] = (
    rule_identity_number_format,
    rule_identity_holder_name,
    rule_identity_birth_date,
)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


class DomainValidator:
    """Runs the rule battery for the document's kind. Stateless apart from config."""

    def __init__(self, config: ValidatorConfig | None = None, today: Callable[[], date] = date.today) -> None:
        self.config = config or ValidatorConfig()
        self._today = today

    def rules_for(self, kind: str) -> tuple[Rule, ...]:
        return IDENTITY_RULES if kind == "identity" else INVOICE_RULES

    def validate(self, doc: ExtractedDocument, *, today: date | None = None) -> ValidationReport:
        ctx = _Ctx(doc=doc, cfg=self.config, today=today or self._today())
        for rule in self.rules_for(doc.document_kind):
            rule(ctx)
        report = ValidationReport(violations=ctx.violations, checks=ctx.checks)
        if report.violations:
            logger.debug(
                "Validation: %s violation(s), worst=%s rules=%s",
                len(report.violations),
                report.worst_severity.value if report.worst_severity else None,
                sorted({v.rule_id for v in report.violations}),
            )
        return report


def validate_document(doc: ExtractedDocument, config: ValidatorConfig | None = None, *, today: date | None = None) -> ValidationReport:
    """Convenience wrapper around DomainValidator."""
    return DomainValidator(config).validate(doc, today=today)
