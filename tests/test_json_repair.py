"""
Unit tests for the fallback JSON parser used on LLM output.
"""
from __future__ import annotations

import pytest

from core.exceptions import MalformedExtraction
from utils.json_repair import SafeJsonParser, extract_json_object, fix_common_json_issues, salvage_fields


def test_strict_json() -> None:
    parser = SafeJsonParser(trace_id="t")
    assert parser.parse('{"a": 1}') == {"a": 1}
    assert parser.last_stage == "strict"


def test_trailing_commas_repaired() -> None:
    parser = SafeJsonParser()
    assert parser.parse('{"a": [1, 2,], "b": "x",}') == {"a": [1, 2], "b": "x"}
    assert fix_common_json_issues('{"a": 1 ,  }') == '{"a": 1 }'


def test_markdown_fence() -> None:
    parser = SafeJsonParser()
    assert parser.parse('```json\n{"verdict": "ok",}\n```') == {"verdict": "ok"}
    assert parser.last_stage == "fenced"


def test_object_embedded_in_prose() -> None:
    parser = SafeJsonParser()
    assert parser.parse('Here is the data: {"a": {"b": "}"}} hope it helps') == {"a": {"b": "}"}}
    assert parser.last_stage == "embedded"


def test_invalid_escapes_repaired() -> None:
    parser = SafeJsonParser()
    assert parser.parse(r'{"price": "\$500"}')["price"] == "\\$500"


def test_non_object_is_malformed() -> None:
    with pytest.raises(MalformedExtraction):
        SafeJsonParser().parse("[1, 2, 3]")


def test_failure_carries_raw_and_salvage() -> None:
    raw = '{"invoice_number": "INV-1", "paid": true, "vendor": {"gstin": "27AAPFU0939F1ZV"'
    parser = SafeJsonParser(trace_id="t-5")
    with pytest.raises(MalformedExtraction) as exc:
        parser.parse(raw)
    assert exc.value.raw_output == raw
    assert exc.value.partial == {"invoice_number": "INV-1", "paid": True, "gstin": "27AAPFU0939F1ZV"}
    assert parser.last_raw == raw
    assert parser.last_stage == ""


def test_extract_json_object_handles_unbalanced() -> None:
    assert extract_json_object("no braces here") is None
    assert extract_json_object('x {"a": 1') == '{"a": 1'


def test_salvage_keeps_first_occurrence() -> None:
    assert salvage_fields('"total": 10, "total": 20, "note": null') == {"total": 10, "note": None}
