"""
Identifier normalization helpers

Canonicalizes raw identifier strings coming from heterogeneous CSV exports:
IIN/BIN values, document numbers and IMEIs.
"""

import re
from typing import Optional

IMEI_LENGTH = 14

_DIGITS_ONLY = re.compile(r'^[0-9]+$')


def clean_field(value: Optional[str]) -> str:
    """Trim surrounding whitespace; None becomes an empty string."""
    if value is None:
        return ""
    return str(value).strip()


def normalize_identifier(value: Optional[str]) -> str:
    """
    Normalize an IIN/BIN for grouping.

    Only surrounding whitespace is removed. Identifiers are compared as exact
    strings, so leading zeros and any internal characters are preserved.
    """
    return clean_field(value)


def normalize_imei(
    value: Optional[str],
    length: int = IMEI_LENGTH,
    require_digits: bool = False
) -> Optional[str]:
    """
    Normalize a raw IMEI cell to its canonical fixed-length form.

    The value is trimmed, then truncated to the first `length` characters when
    longer (15-digit IMEIs carry a trailing Luhn check digit). The discarded
    tail is never inspected. Values shorter than `length` after trimming are
    rejected.

    Args:
        value: Raw cell value
        length: Canonical IMEI length (14)
        require_digits: Also reject results that are not all ASCII digits

    Returns:
        The normalized IMEI, or None when the value cannot be normalized
    """
    imei = clean_field(value)
    if len(imei) < length:
        return None
    imei = imei[:length]
    if require_digits and not _DIGITS_ONLY.match(imei):
        return None
    return imei
