"""Claim code normalization and display formatting."""

import re

from .constants import CLAIM_CODE_GROUP_SIZE, CLAIM_CODE_MIN_LENGTH

_NON_CODE_CHARS = re.compile(r"[^0-9A-Z]")


def normalize_claim_code(code: str) -> str:
    """Upper-case and strip everything outside ``[0-9A-Z]``.

    >>> normalize_claim_code("ab12-CD34")
    'AB12CD34'
    """
    return _NON_CODE_CHARS.sub("", (code or "").upper())


def format_claim_code(code: str) -> str:
    """Group a code into 4-character blocks for display.

    >>> format_claim_code("AB12CD34")
    'AB12-CD34'
    """
    clean = normalize_claim_code(code)
    return "-".join(clean[i:i + CLAIM_CODE_GROUP_SIZE] for i in range(0, len(clean), CLAIM_CODE_GROUP_SIZE))


def is_well_formed(code: str) -> bool:
    return len(normalize_claim_code(code)) >= CLAIM_CODE_MIN_LENGTH
