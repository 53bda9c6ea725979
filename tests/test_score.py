"""Unit tests for candidate scoring."""

import pytest

from conftest import build_card, build_printing, build_variant
from pricesync.core.constants import MAX_MATCH_SCORE
from pricesync.core.types import CanonicalCard, Finish
from pricesync.match.score import confidence_from, evaluate_rejection, score_candidate


@pytest.fixture
def canonical():
    return CanonicalCard(slug="paldea-evolved-4-sprigatito", canonical_name="Sprigatito", subject="Sprigatito",
                         set_name="Paldea Evolved", card_number="4")


class TestScoreCandidate:
    """Test hard rejections and additive scoring."""

    def test_full_match_scores_every_signal(self, canonical):
        printing = build_printing("p-4", canonical.slug, "4", finish=Finish.HOLO)
        card = build_card("c-4", "Sprigatito", "004/193", [])
        variant = build_variant("v-holo", printing="Holofoil", condition="Near Mint")

        scored = score_candidate(card, variant, printing, canonical)

        assert not scored.rejected
        assert scored.score == 100 + 50 + 10 + 35 + 20 + 15
        assert scored.reasons == ["number_match", "finish_match", "base_variant", "name_exact",
                                  "nm_condition", "english_language"]

    def test_number_mismatch_rejects(self, canonical):
        printing = build_printing("p-4", canonical.slug, "4")
        scored = score_candidate(build_card("c-5", "Sprigatito", "5"), build_variant("v"), printing, canonical)
        assert scored.rejected
        assert scored.reasons == ["number_mismatch"]

    def test_known_finish_mismatch_rejects(self, canonical):
        printing = build_printing("p-4", canonical.slug, "4", finish=Finish.HOLO)
        variant = build_variant("v-normal", printing="Normal")
        scored = score_candidate(build_card("c-4", "Sprigatito", "4"), variant, printing, canonical)
        assert scored.rejected
        assert scored.reasons == ["finish_mismatch"]

    def test_reverse_holo_is_not_holo(self, canonical):
        printing = build_printing("p-4", canonical.slug, "4", finish=Finish.HOLO)
        variant = build_variant("v-rev", printing="Reverse Holofoil")
        assert score_candidate(build_card("c-4", "Sprigatito", "4"), variant, printing, canonical).rejected

    def test_unknown_finish_accepts_any_finish_without_bonus(self, canonical):
        printing = build_printing("p-4", canonical.slug, "4", finish=Finish.UNKNOWN)
        variant = build_variant("v-rev", printing="Reverse Holofoil")
        scored = score_candidate(build_card("c-4", "Sprigatito", "4"), variant, printing, canonical)
        assert not scored.rejected
        assert "finish_match" not in scored.reasons

    def test_stamp_must_agree(self, canonical):
        printing = build_printing("p-4", canonical.slug, "4", stamp="Poke Ball")
        stamped = build_card("c-4pb", "Sprigatito (Poke Ball)", "4")
        other = build_card("c-4mb", "Sprigatito (Master Ball)", "4")
        plain = build_card("c-4", "Sprigatito", "4")

        matched = score_candidate(stamped, build_variant("v1"), printing, canonical)
        assert not matched.rejected
        assert "stamp_match" in matched.reasons
        assert "name_exact" in matched.reasons
        assert score_candidate(other, build_variant("v2"), printing, canonical).reasons == ["stamp_mismatch"]
        assert score_candidate(plain, build_variant("v3"), printing, canonical).reasons == ["stamp_mismatch"]

    def test_unexpected_stamp_rejects(self, canonical):
        printing = build_printing("p-4", canonical.slug, "4")
        stamped = build_card("c-4pb", "Sprigatito (Poke Ball)", "4")
        assert score_candidate(stamped, build_variant("v"), printing, canonical).reasons == ["unexpected_stamp"]

    def test_language_defaults_to_english(self, canonical):
        printing = build_printing("p-4", canonical.slug, "4")
        card = build_card("c-4", "Sprigatito", "4")
        assert not score_candidate(card, build_variant("v", language=None), printing, canonical).rejected
        japanese = score_candidate(card, build_variant("v", language="Japanese"), printing, canonical)
        assert japanese.reasons == ["language_mismatch"]

    def test_name_contains_scores_below_exact(self, canonical):
        printing = build_printing("p-4", canonical.slug, "4")
        exact = score_candidate(build_card("a", "Sprigatito", "4"), build_variant("v"), printing, canonical)
        contains = score_candidate(build_card("b", "Sprigatito Promo", "4"), build_variant("v"), printing, canonical)
        assert "name_contains" in contains.reasons
        assert exact.score - contains.score == 35 - 20

    @pytest.mark.parametrize("condition,points", [
        ("Near Mint", 20), ("Lightly Played", 15), ("Moderately Played", 10),
        ("Heavily Played", 5), ("Damaged", 0),
    ])
    def test_condition_bonus_ordering(self, canonical, condition, points):
        printing = build_printing("p-4", canonical.slug, "4")
        card = build_card("c-4", "Sprigatito", "4")
        base = score_candidate(card, build_variant("v", condition="Damaged"), printing, canonical).score
        scored = score_candidate(card, build_variant("v", condition=condition), printing, canonical)
        assert scored.score - base == points


class TestConfidence:
    """Test score to confidence mapping."""

    def test_caps_at_one(self):
        assert confidence_from(MAX_MATCH_SCORE * 2) == 1.0

    def test_scales_linearly(self):
        assert confidence_from(MAX_MATCH_SCORE / 2) == pytest.approx(0.5)

    def test_non_positive_is_zero(self):
        assert confidence_from(0) == 0.0
        assert confidence_from(-1) == 0.0


class TestEvaluateRejection:
    """Test the proximity heuristic used for no-match samples."""

    def test_lists_every_reason(self, canonical):
        printing = build_printing("p-4", canonical.slug, "4", finish=Finish.HOLO)
        card = build_card("c-9", "Sprigatito", "9")
        variant = build_variant("v", printing="Normal", language="Japanese", price=0)

        report = evaluate_rejection(card, variant, printing, canonical)

        assert report.rejected
        assert report.reasons == ["card_number_mismatch", "finish_mismatch", "language_mismatch", "missing_price"]
        assert report.proximity == 20
        assert report.name_similarity == 100.0

    def test_missing_price_alone_is_a_rejection(self, canonical):
        printing = build_printing("p-4", canonical.slug, "4", finish=Finish.HOLO)
        card = build_card("c-4", "Sprigatito", "4")
        report = evaluate_rejection(card, build_variant("v", printing="Holofoil", price=None), printing, canonical)
        assert report.reasons == ["missing_price"]
        assert report.proximity == 40 + 25 + 20 + 5

    def test_surviving_candidate_is_not_rejected(self, canonical):
        printing = build_printing("p-4", canonical.slug, "4")
        report = evaluate_rejection(build_card("c-4", "Sprigatito", "4"), build_variant("v"), printing, canonical)
        assert not report.rejected
