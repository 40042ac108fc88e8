"""
Fallback JSON parser for LLM output.
Stages: strict JSON -> ```json fenced block -> first brace-balanced object in prose,
each followed by trailing-comma and invalid-escape repair. Failure is typed (MalformedExtraction).
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any

from core.exceptions import MalformedExtraction

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
# "key": "value" | "key": 123.4 | "key": true/false/null, used to salvage flat fields
_PAIR_RE = re.compile(r'"([A-Za-z_][A-Za-z0-9_]*)"\s*:\s*("(?:[^"\\]|\\.)*"|-?\d+(?:\.\d+)?|true|false|null)')


def fix_common_json_issues(s: str) -> str:
    """Remove trailing commas and other common invalid JSON."""
    s = re.sub(r",\s*}", "}", s)
    s = re.sub(r",\s*]", "]", s)
    return s


def fix_invalid_json_escapes(s: str) -> str:
    """
    Fix invalid backslash escapes in JSON string.
    LLMs often produce e.g. \\p or \\$ in strings; JSON only allows \\ \" \\/ \\b \\f \\n \\r \\t \\uXXXX.
    """
    def repl(m: re.Match) -> str:
        return "\\\\" + m.group(1)

    return re.sub(r'\\(?!["\\\\/bfnrt]|u[0-9a-fA-F]{4})(.)', repl, s)


def extract_json_object(text: str) -> str | None:
    """First brace-balanced {...} in text, ignoring braces inside strings. None if no opening brace."""
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_str = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_str:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return text[start:]


def _loads_object(candidate: str) -> dict[str, Any] | None:
    for text in (candidate, fix_invalid_json_escapes(fix_common_json_issues(candidate))):
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def salvage_fields(raw: str) -> dict[str, Any]:
    """Best-effort flat key/value pairs from unparseable output (first occurrence wins)."""
    out: dict[str, Any] = {}
    for key, value in _PAIR_RE.findall(raw or ""):
        if key in out:
            continue
        try:
            out[key] = json.loads(value)
        except json.JSONDecodeError:
            continue
    return out


class SafeJsonParser:
    """
    Wraps JSON parsing with repair steps and consistent error handling.
    Keeps the last raw and repaired text for logging and the self-repair prompt.
    """

    def __init__(self, trace_id: str = "") -> None:
        self.trace_id = trace_id
        self._last_raw: str = ""
        self._last_repaired: str = ""
        self._last_stage: str = ""

    def parse(self, raw: str) -> dict[str, Any]:
        """
        Parse raw LLM output to a dict. Raises MalformedExtraction (with salvaged partial fields)
        when no stage yields a JSON object.
        """
        self._last_raw = raw or ""
        stripped = self._last_raw.strip()

        candidates: list[tuple[str, str]] = [("strict", stripped)]
        m = _FENCE_RE.search(stripped)
        if m:
            candidates.append(("fenced", m.group(1).strip()))
        obj = extract_json_object(m.group(1) if m else stripped)
        if obj is not None:
            candidates.append(("embedded", obj))

        for stage, candidate in candidates:
            self._last_repaired = candidate
            data = _loads_object(candidate)
            if data is not None:
                self._last_stage = stage
                if stage != "strict":
                    logger.debug("JSON recovered via %s stage trace_id=%s", stage, self.trace_id)
                return data

        self._last_stage = ""
        raise MalformedExtraction(
            "LLM output is not a JSON object",
            raw_output=self._last_raw,
            partial=salvage_fields(self._last_raw),
            trace_id=self.trace_id,
        )

    @property
    def last_raw(self) -> str:
        return self._last_raw

    @property
    def last_repaired(self) -> str:
        return self._last_repaired

    @property
    def last_stage(self) -> str:
        return self._last_stage
