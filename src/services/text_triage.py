"""
OCR text triage.

Condenses raw OCR output into a bounded, signal-dense prompt fragment for
the extraction model. Lines that mention invoice vocabulary (totals, tax,
dates, bank and registration identifiers) are kept; when too little of the
document matches, the raw text is sent instead, truncated.
"""

import re
from typing import Iterable, Optional

from loguru import logger

DEFAULT_KEYWORDS = (
    "invoice",
    "factuur",
    "vat",
    "btw",
    "tax",
    "total",
    "subtotal",
    "amount due",
    "balance due",
    "due date",
    "invoice date",
    "iban",
    "kvk",
    "chamber",
    "reference",
)

DEFAULT_MAX_CHARS = 12000
MAX_IMPORTANT_LINES = 220
MIN_IMPORTANT_CHARS = 200


def build_keyword_pattern(keywords: Iterable[str]) -> re.Pattern:
    """Compile a case-insensitive alternation of literal keywords."""
    terms = [re.escape(k.strip()) for k in keywords if k and k.strip()]
    if not terms:
        raise ValueError("At least one triage keyword is required")
    return re.compile("(" + "|".join(terms) + ")", re.IGNORECASE)


def safe_truncate(text: str, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    if not text:
        return ""
    return text[:max_chars] if len(text) > max_chars else text


def keep_important_lines(text: str, pattern: re.Pattern) -> str:
    important = [line for line in text.split("\n") if pattern.search(line)]
    return "\n".join(important[:MAX_IMPORTANT_LINES]).strip()


def condense(
    raw_text: str,
    max_chars: int = DEFAULT_MAX_CHARS,
    keywords: Optional[Iterable[str]] = None,
) -> str:
    """
    Reduce OCR text to the lines most likely to carry invoice fields.

    Args:
        raw_text: Plain text produced by OCR
        max_chars: Upper bound on the returned text length
        keywords: Keyword set to match (case-insensitive); defaults to DEFAULT_KEYWORDS

    Returns:
        The keyword-matching lines when they total more than 200 characters,
        otherwise the raw text truncated to max_chars. Never longer than max_chars.
    """
    if max_chars <= 0:
        raise ValueError("max_chars must be positive")
    if not raw_text:
        return ""

    pattern = build_keyword_pattern(keywords or DEFAULT_KEYWORDS)
    important = keep_important_lines(raw_text, pattern)

    if len(important) > MIN_IMPORTANT_CHARS:
        logger.debug(
            "OCR text condensed to keyword lines",
            raw_chars=len(raw_text),
            condensed_chars=len(important),
        )
        return safe_truncate(important, max_chars)

    logger.debug(
        "Too few keyword lines, falling back to truncated OCR text",
        raw_chars=len(raw_text),
        keyword_chars=len(important),
    )
    return safe_truncate(raw_text, max_chars)
