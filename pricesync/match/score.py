"""
Candidate scoring between catalog printings and provider variants.

A candidate is either rejected outright (structural attributes disagree) or
given an additive score. Weight magnitudes are tunable; their relative order
is fixed: number > finish > stamp > name > condition > language.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from rapidfuzz import fuzz

from ..core.constants import (
    MAX_MATCH_SCORE,
    PROXIMITY_FINISH,
    PROXIMITY_LANGUAGE,
    PROXIMITY_NAME_CONTAINS,
    PROXIMITY_NAME_EXACT,
    PROXIMITY_NUMBER,
    SCORE_BASE_VARIANT,
    SCORE_CONDITION,
    SCORE_FINISH_MATCH,
    SCORE_LANGUAGE_ENGLISH,
    SCORE_NAME_CONTAINS,
    SCORE_NAME_EXACT,
    SCORE_NUMBER_MATCH,
    SCORE_STAMP_MATCH,
)
from ..core.types import CandidateScore, CanonicalCard, Finish, Printing, ProviderCard, ProviderVariant
from ..provider.justtcg import map_printing_to_finish, normalize_condition
from .normalize import (
    normalize_card_number,
    normalize_display_name,
    normalize_stamp_token,
    parse_stamp_from_name,
    strip_variant_suffix,
)


def expected_number(printing: Printing, canonical: CanonicalCard) -> str:
    """Normalized number the printing should carry, preferring the printing's own."""
    return normalize_card_number(printing.card_number or canonical.card_number or "")


def variant_language(variant: ProviderVariant) -> str:
    return (variant.language or "English").strip().lower()


def score_candidate(card: ProviderCard, variant: ProviderVariant,
                    printing: Printing, canonical: CanonicalCard) -> CandidateScore:
    """
    Score one provider variant against one printing.

    Returns a rejected CandidateScore when the number, a known finish, the
    stamp or the language disagree. Otherwise returns the additive score and
    the reasons that contributed to it.
    """
    wanted_number = expected_number(printing, canonical)
    provider_number = normalize_card_number(card.number)
    if wanted_number and provider_number != wanted_number:
        return CandidateScore.reject("number_mismatch")

    provider_finish = map_printing_to_finish(variant.printing)
    if printing.finish is not Finish.UNKNOWN and provider_finish is not printing.finish:
        return CandidateScore.reject("finish_mismatch")

    wanted_stamp = normalize_stamp_token(printing.stamp)
    provider_stamp = parse_stamp_from_name(card.name)
    if wanted_stamp and provider_stamp != wanted_stamp:
        return CandidateScore.reject("stamp_mismatch")
    if not wanted_stamp and provider_stamp:
        return CandidateScore.reject("unexpected_stamp")

    if variant_language(variant) != "english":
        return CandidateScore.reject("language_mismatch")

    score = 0
    reasons: List[str] = []
    if wanted_number:
        score += SCORE_NUMBER_MATCH
        reasons.append("number_match")
    if provider_finish is printing.finish:
        score += SCORE_FINISH_MATCH
        reasons.append("finish_match")
    if wanted_stamp:
        score += SCORE_STAMP_MATCH
        reasons.append("stamp_match")
    else:
        score += SCORE_BASE_VARIANT
        reasons.append("base_variant")

    wanted_name = normalize_display_name(canonical.display_name)
    provider_name = normalize_display_name(strip_variant_suffix(card.name))
    if wanted_name and provider_name == wanted_name:
        score += SCORE_NAME_EXACT
        reasons.append("name_exact")
    elif wanted_name and wanted_name in provider_name:
        score += SCORE_NAME_CONTAINS
        reasons.append("name_contains")

    condition = normalize_condition(variant.condition)
    if condition in SCORE_CONDITION:
        score += SCORE_CONDITION[condition]
        reasons.append(f"{condition}_condition")

    score += SCORE_LANGUAGE_ENGLISH
    reasons.append("english_language")
    return CandidateScore(score=score, reasons=reasons)


def confidence_from(score: float) -> float:
    """Map a candidate score onto [0, 1]."""
    if score <= 0:
        return 0.0
    return min(1.0, score / MAX_MATCH_SCORE)


@dataclass
class RejectionReport:
    reasons: List[str] = field(default_factory=list)
    proximity: float = 0.0
    name_similarity: float = 0.0

    @property
    def rejected(self) -> bool:
        return bool(self.reasons)


def evaluate_rejection(card: ProviderCard, variant: ProviderVariant,
                       printing: Printing, canonical: CanonicalCard) -> RejectionReport:
    """
    Explain why a candidate would not survive, and how close it came.

    The proximity score ignores the hard-reject short circuit so that the
    nearest misses can be shown side by side in a no-match sample.
    """
    report = RejectionReport()
    wanted_number = expected_number(printing, canonical)
    provider_number = normalize_card_number(card.number)
    if wanted_number and provider_number != wanted_number:
        report.reasons.append("card_number_mismatch")

    provider_finish = map_printing_to_finish(variant.printing)
    if printing.finish is not Finish.UNKNOWN and provider_finish is not printing.finish:
        report.reasons.append("finish_mismatch")

    wanted_stamp = normalize_stamp_token(printing.stamp)
    provider_stamp = parse_stamp_from_name(card.name)
    if wanted_stamp and provider_stamp != wanted_stamp:
        report.reasons.append("stamp_mismatch")
    elif not wanted_stamp and provider_stamp:
        report.reasons.append("unexpected_stamp")

    english = variant_language(variant) == "english"
    if not english:
        report.reasons.append("language_mismatch")

    if not variant.has_price:
        report.reasons.append("missing_price")

    wanted_name = normalize_display_name(canonical.display_name)
    provider_name = normalize_display_name(card.name)
    if wanted_number and provider_number == wanted_number:
        report.proximity += PROXIMITY_NUMBER
    if provider_finish is printing.finish:
        report.proximity += PROXIMITY_FINISH
    if wanted_name and provider_name == wanted_name:
        report.proximity += PROXIMITY_NAME_EXACT
    elif wanted_name and wanted_name in provider_name:
        report.proximity += PROXIMITY_NAME_CONTAINS
    if english:
        report.proximity += PROXIMITY_LANGUAGE

    if wanted_name and provider_name:
        report.name_similarity = round(fuzz.token_set_ratio(wanted_name, provider_name), 1)
    return report


def rejected_sample(card: ProviderCard, variant: ProviderVariant, report: RejectionReport) -> Dict[str, Any]:
    return {
        "provider_card_id": card.id,
        "provider_variant_id": variant.id,
        "provider_name": card.name,
        "provider_number": card.number,
        "provider_printing": variant.printing,
        "provider_language": variant.language,
        "rejection_reasons": list(report.reasons),
        "proximity_score": report.proximity,
        "name_similarity": report.name_similarity,
    }
