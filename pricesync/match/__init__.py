"""
Match module for identity normalization, candidate scoring and resolution.
"""

from .normalize import normalize_card_number, normalize_display_name, normalize_stamp_token
from .resolve import MANUAL_REPAIRS, ManualRepair, MatchResolver
from .score import confidence_from, score_candidate

__all__ = [
    "normalize_card_number",
    "normalize_display_name",
    "normalize_stamp_token",
    "score_candidate",
    "confidence_from",
    "MatchResolver",
    "ManualRepair",
    "MANUAL_REPAIRS",
]
