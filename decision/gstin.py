"""
Indian tax identifier checks: GSTIN (format, state code, mod-36 check character),
PAN and Aadhaar formats.
"""
from __future__ import annotations

import re

GSTIN_PATTERN = re.compile(r"^[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z][1-9A-Z]Z[0-9A-Z]$")
PAN_PATTERN = re.compile(r"^[A-Z]{5}[0-9]{4}[A-Z]$")
AADHAAR_PATTERN = re.compile(r"^[2-9][0-9]{11}$")

GSTIN_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
# 01-38 are states/UTs, 97 is "other territory"
VALID_STATE_CODES = frozenset([f"{n:02d}" for n in range(1, 39)] + ["97"])


def gstin_check_char(first14: str) -> str:
    """
    Check character over the first 14 characters: alternate factors 1, 2 from the left,
    each product folded as quotient + remainder of 36, check = (36 - sum mod 36) mod 36.
    """
    total = 0
    for i, ch in enumerate(first14):
        value = GSTIN_ALPHABET.index(ch)
        product = value * (2 if i % 2 else 1)
        total += product // 36 + product % 36
    return GSTIN_ALPHABET[(36 - total % 36) % 36]


def gstin_problems(gstin: str) -> list[str]:
    """Human-readable reasons a GSTIN is invalid; empty list if valid."""
    g = (gstin or "").strip().upper()
    if not g:
        return ["missing"]
    if len(g) != 15:
        return [f"length {len(g)}, expected 15"]
    if not GSTIN_PATTERN.match(g):
        return ["format mismatch"]
    problems: list[str] = []
    if g[:2] not in VALID_STATE_CODES:
        problems.append(f"unknown state code {g[:2]}")
    expected = gstin_check_char(g[:14])
    if g[14] != expected:
        problems.append(f"check character {g[14]} != {expected}")
    return problems


def is_valid_gstin(gstin: str) -> bool:
    return not gstin_problems(gstin)


def gstin_state_code(gstin: str) -> str:
    g = (gstin or "").strip()
    return g[:2] if len(g) >= 2 and g[:2].isdigit() else ""


def is_valid_pan(pan: str) -> bool:
    return bool(PAN_PATTERN.match((pan or "").strip().upper()))


def is_valid_aadhaar(number: str) -> bool:
    return bool(AADHAAR_PATTERN.match(re.sub(r"[\s-]", "", number or "")))
