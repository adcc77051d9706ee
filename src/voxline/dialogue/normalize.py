"""Text canonicalization for dialogue lines.

Two forms are derived from every incoming line:

* the *canonical text*, stored as-is: surrounding whitespace trimmed and
  internal whitespace runs collapsed to a single space, original case kept;
* the *comparison key*, used for matching only: the canonical text after
  Unicode NFKC folding, ASCII quote/dash mapping and case folding.
"""

from __future__ import annotations

import re
import unicodedata

__all__ = [
    "normalize_quotes_and_dashes",
    "canonicalize",
    "comparison_key",
    "strip_quotes",
]

_WS = re.compile(r"\s+")

_QUOTE_DASH = {
    "‘": "'",
    "’": "'",
    "‚": "'",
    "‛": "'",
    "“": '"',
    "”": '"',
    "„": '"',
    "«": '"',
    "»": '"',
    "–": "-",  # en dash
    "—": "-",  # em dash
    "−": "-",  # minus sign
    "…": "...",
}


def normalize_quotes_and_dashes(s: str) -> str:
    """Map curly quotes, guillemets, long dashes and ellipsis to ASCII."""

    for a, b in _QUOTE_DASH.items():
        s = s.replace(a, b)
    return s


def canonicalize(text: str) -> str:
    """Return ``text`` trimmed with internal whitespace collapsed."""

    return _WS.sub(" ", text).strip()


def comparison_key(text: str) -> str:
    """Return the case-insensitive key used to compare two lines.

    >>> comparison_key("  “Hello”   THERE ")
    '"hello" there'
    """

    s = unicodedata.normalize("NFKC", text)
    s = normalize_quotes_and_dashes(s)
    return canonicalize(s.casefold())


def strip_quotes(text: str) -> str:
    """Remove every single or double quote character (after ASCII mapping)."""

    return normalize_quotes_and_dashes(text).replace('"', "").replace("'", "")
