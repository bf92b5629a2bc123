"""
Order to discount code matching.

Completed orders report the codes they applied as free-form strings. A single
entry may hold one code or several joined by commas ("SAVE50, WELCOME10").
This module is the only place that interprets that data, so it can be swapped
for structured (code id, amount) pairs without touching the ledger.
"""

from __future__ import annotations

from collections.abc import Iterable


def _split_identifiers(applied_codes: Iterable[str]) -> set[str]:
    tokens: set[str] = set()
    for entry in applied_codes:
        if not isinstance(entry, str):
            continue
        for part in entry.split(","):
            token = part.strip().upper()
            if token:
                tokens.add(token)
    return tokens


def order_applies_code(code: str, applied_codes: Iterable[str]) -> bool:
    """
    Return True when the order's applied code identifiers name ``code``.

    Matches an exact entry or a member of a comma-delimited entry, ignoring
    surrounding whitespace and case. Partial strings never match, so "SAVE5"
    does not match an order that applied "SAVE50".
    """
    normalized = code.strip().upper()
    if not normalized:
        return False
    return normalized in _split_identifiers(applied_codes)
