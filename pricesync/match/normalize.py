"""
Identity normalization for provider and catalog strings.

Pure functions only: card numbers, stamp/pattern tokens and display names are
reduced to comparable forms without touching the network or the database.
"""

import re
import unicodedata
from typing import Optional

_SLASH_NUMBER = re.compile(r'^(\d+)\s*/')
_ALL_DIGITS = re.compile(r'^\d+$')
_NON_ALNUM = re.compile(r'[^a-z0-9]+')
_TRAILING_PARENTHETICAL = re.compile(r'\(([^()]+)\)\s*$')
_STRIP_PARENTHETICAL = re.compile(r'\s*\([^()]+\)\s*$')
_TRAILING_PATTERN = re.compile(
    r'\s+(Pok[eé] Ball|Master Ball|Energy Symbol Pattern)\s*$', re.IGNORECASE
)

KNOWN_STAMPS = {
    "poke ball": "POKE_BALL_PATTERN",
    "master ball": "MASTER_BALL_PATTERN",
    "energy symbol pattern": "ENERGY_SYMBOL_PATTERN",
}


def normalize_card_number(raw: Optional[str]) -> str:
    """
    Reduce a printed card number to its canonical form.

    Examples:
        >>> normalize_card_number("004/102")
        '4'
        >>> normalize_card_number("#12")
        '12'
        >>> normalize_card_number("SWSH001")
        'SWSH001'
    """
    if raw is None:
        return ""
    trimmed = str(raw).strip().lstrip("#").strip()
    if not trimmed:
        return ""
    match = _SLASH_NUMBER.match(trimmed)
    if match:
        return str(int(match.group(1)))
    if _ALL_DIGITS.match(trimmed):
        return str(int(trimmed))
    return trimmed


def normalize_display_name(value: Optional[str]) -> str:
    """Lowercase, strip diacritics, and collapse punctuation/whitespace to single spaces."""
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", value.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM.sub(" ", stripped).strip()


def normalize_stamp_token(value: Optional[str]) -> Optional[str]:
    """Map a stamp phrase to an UPPER_SNAKE token, or None when blank."""
    normalized = normalize_display_name(value)
    if not normalized:
        return None
    if normalized in KNOWN_STAMPS:
        return KNOWN_STAMPS[normalized]
    return normalized.replace(" ", "_").upper()


def parse_stamp_from_name(name: Optional[str]) -> Optional[str]:
    """
    Extract the stamp token a provider encodes in a card name.

    A trailing parenthetical is always a stamp. Bare trailing text only counts
    when it is one of the known pattern phrases.

    Examples:
        >>> parse_stamp_from_name("Pikachu (Poke Ball)")
        'POKE_BALL_PATTERN'
        >>> parse_stamp_from_name("Pikachu (Staff)")
        'STAFF'
        >>> parse_stamp_from_name("Pikachu Master Ball")
        'MASTER_BALL_PATTERN'
        >>> parse_stamp_from_name("Pikachu ex") is None
        True
    """
    if not name:
        return None
    parenthetical = _TRAILING_PARENTHETICAL.search(name)
    if parenthetical:
        return normalize_stamp_token(parenthetical.group(1))
    suffix = _TRAILING_PATTERN.search(name)
    if suffix:
        return normalize_stamp_token(suffix.group(1))
    return None


def strip_variant_suffix(name: Optional[str]) -> str:
    """Remove a trailing parenthetical or known pattern phrase from a card name."""
    if not name:
        return ""
    base = _STRIP_PARENTHETICAL.sub("", name)
    base = _TRAILING_PATTERN.sub("", base)
    return base.strip()
