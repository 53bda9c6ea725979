"""
Per-printing match resolution against the provider candidate pool.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..core.constants import MAX_AMBIGUOUS_SAMPLES, MAX_MATCH_SCORE, MAX_REJECTED_SAMPLES
from ..core.types import (
    CanonicalCard,
    Finish,
    MatchCandidate,
    MatchOutcome,
    OutcomeKind,
    Printing,
    ProviderCard,
    ProviderVariant,
)
from ..provider.justtcg import map_printing_to_finish, normalize_condition
from ..utils.log import LoggerMixin
from .normalize import normalize_card_number
from .score import confidence_from, evaluate_rejection, expected_number, rejected_sample, score_candidate, variant_language


@dataclass(frozen=True)
class ManualRepair:
    """Explicit provider identity for a printing the provider catalogs inconsistently."""
    card_number: str
    provider_card_id: str
    primary_finish: Finish
    extra_finishes: Tuple[Finish, ...] = ()

    @property
    def finishes(self) -> Tuple[Finish, ...]:
        return (self.primary_finish,) + self.extra_finishes


# Keyed by canonical slug
MANUAL_REPAIRS: Dict[str, ManualRepair] = {
    "black-bolt-60-antique-cover-fossil": ManualRepair(
        card_number="80",
        provider_card_id="zsv10pt5-80",
        primary_finish=Finish.NON_HOLO,
        extra_finishes=(Finish.HOLO,),
    ),
}

_CONDITION_ORDER = {"nm": 0, "lp": 1, "mp": 2, "hp": 3}


def bucket_by_number(cards: Iterable[ProviderCard]) -> Dict[str, List[ProviderCard]]:
    buckets: Dict[str, List[ProviderCard]] = {}
    for card in cards:
        buckets.setdefault(normalize_card_number(card.number), []).append(card)
    return buckets


def rank_candidates(cards: Sequence[ProviderCard], printing: Printing,
                    canonical: CanonicalCard) -> List[MatchCandidate]:
    """Surviving candidates, best first, ties ordered by variant id."""
    candidates = []
    for card in cards:
        for variant in card.variants:
            if not variant.has_price:
                continue
            scored = score_candidate(card, variant, printing, canonical)
            if scored.rejected:
                continue
            candidates.append(MatchCandidate(card=card, variant=variant, score=scored.score, reasons=scored.reasons))
    candidates.sort(key=lambda c: (-c.score, c.variant_id))
    return candidates


def build_rejected_samples(cards: Sequence[ProviderCard], printing: Printing, canonical: CanonicalCard,
                           limit: int = MAX_REJECTED_SAMPLES) -> List[Dict]:
    """Closest rejected candidates by proximity, then by name similarity."""
    samples = []
    for card in cards:
        for variant in card.variants:
            report = evaluate_rejection(card, variant, printing, canonical)
            if report.rejected:
                samples.append(rejected_sample(card, variant, report))
    samples.sort(key=lambda s: (-s["proximity_score"], -s["name_similarity"], s["provider_variant_id"]))
    return samples[:limit]


class MatchResolver(LoggerMixin):
    """Resolves each printing to at most one provider variant from a fixed card pool."""

    def __init__(self, cards: Sequence[ProviderCard],
                 repairs: Optional[Mapping[str, ManualRepair]] = None):
        self.cards = list(cards)
        self.cards_by_number = bucket_by_number(self.cards)
        self.cards_by_id = {card.id: card for card in self.cards}
        self.repairs = MANUAL_REPAIRS if repairs is None else repairs

    def resolve(self, printing: Printing, canonical: Optional[CanonicalCard]) -> MatchOutcome:
        if canonical is None:
            return MatchOutcome(kind=OutcomeKind.MISSING_CANONICAL, printing=printing,
                                detail="Missing canonical row for printing.")

        repair = self.repairs.get(printing.canonical_slug)
        if repair is not None:
            outcome = self._apply_repair(printing, canonical, repair)
            if outcome is not None:
                return outcome
            self.logger.warning("Manual repair found no provider variant, resolving automatically",
                                printing_id=printing.id, canonical_slug=printing.canonical_slug,
                                provider_card_id=repair.provider_card_id)

        number = expected_number(printing, canonical)
        pool = self.cards_by_number.get(number, []) if number else []
        if not pool:
            return MatchOutcome(
                kind=OutcomeKind.NO_MATCH,
                printing=printing,
                canonical=canonical,
                rejected_samples=build_rejected_samples(self.cards, printing, canonical),
                detail=f"No provider card matched card_number {number or '(blank)'}.",
            )

        candidates = rank_candidates(pool, printing, canonical)
        if not candidates:
            return MatchOutcome(
                kind=OutcomeKind.NO_MATCH,
                printing=printing,
                canonical=canonical,
                rejected_samples=build_rejected_samples(pool, printing, canonical),
                detail="No provider variant matched this printing after finish/language filtering.",
            )

        best = candidates[0]
        if len(candidates) > 1 and candidates[1].score == best.score and candidates[1].variant_id != best.variant_id:
            return MatchOutcome(
                kind=OutcomeKind.AMBIGUOUS,
                printing=printing,
                canonical=canonical,
                top_candidates=candidates[:MAX_AMBIGUOUS_SAMPLES],
                detail="Multiple provider variants tied for top match.",
            )

        return MatchOutcome(
            kind=OutcomeKind.MATCHED,
            printing=printing,
            canonical=canonical,
            best=best,
            confidence=confidence_from(best.score),
            top_candidates=candidates[:MAX_AMBIGUOUS_SAMPLES],
        )

    def _apply_repair(self, printing: Printing, canonical: CanonicalCard,
                      repair: ManualRepair) -> Optional[MatchOutcome]:
        if repair.provider_card_id in self.cards_by_id:
            cards = [self.cards_by_id[repair.provider_card_id]]
        else:
            cards = self.cards_by_number.get(normalize_card_number(repair.card_number), [])

        finish = printing.finish if printing.finish in repair.finishes else repair.primary_finish
        usable: List[Tuple[ProviderCard, ProviderVariant]] = [
            (card, variant)
            for card in cards
            for variant in card.variants
            if variant.has_price
            and variant_language(variant) == "english"
            and map_printing_to_finish(variant.printing) is finish
        ]
        if not usable:
            return None

        usable.sort(key=lambda pair: (
            _CONDITION_ORDER.get(normalize_condition(pair[1].condition), len(_CONDITION_ORDER)),
            pair[1].id,
        ))
        card, variant = usable[0]
        self.logger.info("Manual repair applied", printing_id=printing.id,
                         canonical_slug=printing.canonical_slug, provider_card_id=card.id,
                         provider_variant_id=variant.id, finish=finish.value)
        return MatchOutcome(
            kind=OutcomeKind.MATCHED,
            printing=printing,
            canonical=canonical,
            best=MatchCandidate(card=card, variant=variant, score=int(MAX_MATCH_SCORE), reasons=["manual_repair"]),
            confidence=1.0,
            manual_repair=True,
        )
