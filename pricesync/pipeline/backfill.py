"""
Run orchestration for a provider set backfill.

One run walks STARTED -> FETCHING -> MATCHING -> PERSISTING -> FINISHED.
Every terminal path goes through ``_finish``, which writes the run record
exactly once (never on a dry run).
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from ..core.constants import (
    JOB,
    MAX_FAILURE_SAMPLES,
    MAX_SUCCESS_SAMPLES,
    PROVIDER,
    PROVIDER_SOURCE,
    SUPPORTED_LANGUAGE,
    WINDOW_AGGRESSIVE,
    WINDOW_DEFAULT,
)
from ..core.types import (
    BackfillFailure,
    BackfillResult,
    CanonicalCard,
    FailureCode,
    MatchOutcome,
    OutcomeKind,
    Printing,
    ProviderVariant,
)
from ..match.resolve import ManualRepair, MatchResolver
from ..match.score import expected_number
from ..provider.fetcher import PageClient, SetFetch, SetFetcher
from ..provider.justtcg import JustTCGClient, set_name_to_provider_id
from ..store.batcher import PersistenceBatcher, SignalRefresher
from ..store.database import CatalogStore
from ..utils.error_handler import PreconditionError, StoreError
from ..utils.log import LoggerMixin, run_context


class RunState(str, Enum):
    STARTED = "started"
    FETCHING = "fetching"
    MATCHING = "matching"
    PERSISTING = "persisting"
    FINISHED = "finished"


def infer_set_display_name(set_key: str) -> str:
    """``paldea-evolved`` -> ``Paldea Evolved``; a trailing ``-pokemon`` is dropped."""
    base = re.sub(r"-pokemon$", "", set_key, flags=re.IGNORECASE)
    return " ".join(token[:1].upper() + token[1:] for token in base.split("-") if token)


def provider_set_candidates(set_key: str) -> List[str]:
    suffixed = set_key if set_key.endswith("-pokemon") else f"{set_key}-pokemon"
    return list(dict.fromkeys([set_key, suffixed]))


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class RunAccumulator:
    """Counters and samples for one run. Never shared between runs."""
    matched_count: int = 0
    no_match_count: int = 0
    ambiguous_count: int = 0
    hard_fail_count: int = 0
    first_error: Optional[str] = None
    failures: List[BackfillFailure] = field(default_factory=list)
    created_mappings: List[Dict] = field(default_factory=list)
    error_counts: Dict[str, int] = field(default_factory=lambda: {code.value: 0 for code in FailureCode})
    claimed_variants: Dict[str, str] = field(default_factory=dict)

    def record(self, failure: BackfillFailure) -> None:
        if len(self.failures) < MAX_FAILURE_SAMPLES:
            self.failures.append(failure)
        self.error_counts[failure.code.value] += 1
        if failure.code is FailureCode.NO_PROVIDER_MATCH:
            self.no_match_count += 1
        elif failure.code is FailureCode.AMBIGUOUS_PROVIDER_MATCH:
            self.ambiguous_count += 1
        if failure.hard:
            self.hard_fail_count += 1
        if self.first_error is None:
            self.first_error = f"{failure.code.value}: {failure.detail}"

    def record_abort(self, message: str) -> None:
        """A run-level failure with no printing to attach it to."""
        self.hard_fail_count += 1
        if self.first_error is None:
            self.first_error = message

    def record_mapping(self, sample: Dict) -> None:
        if len(self.created_mappings) < MAX_SUCCESS_SAMPLES:
            self.created_mappings.append(sample)


@dataclass
class SetResolution:
    set_key: str
    provider_set_id: str
    canonical_set_name: str
    canonical_set_code: Optional[str] = None


class BackfillRunner(LoggerMixin):
    """Backfills provider mappings, prices and history for one set."""

    def __init__(self, store: CatalogStore, client: PageClient,
                 refresher: Optional[SignalRefresher] = None,
                 repairs: Optional[Mapping[str, ManualRepair]] = None):
        self.store = store
        self.client = client
        self.refresher = refresher
        self.repairs = repairs
        self.state = RunState.STARTED

    def _transition(self, state: RunState, **kwargs) -> None:
        self.logger.info("Run state changed", from_state=self.state.value,
                         to_state=state.value, **kwargs)
        self.state = state

    def resolve_set(self, set_key: str, override: Optional[str]) -> SetResolution:
        display_name = infer_set_display_name(set_key)
        candidates = provider_set_candidates(set_key)
        mapped = self.store.find_provider_set(PROVIDER, candidates)
        fallback = next((c for c in candidates if c.endswith("-pokemon")), None) or set_name_to_provider_id(display_name)
        provider_set_id = override or (mapped["provider_set_id"] if mapped else None) or fallback
        return SetResolution(
            set_key=set_key,
            provider_set_id=provider_set_id,
            canonical_set_name=display_name,
            canonical_set_code=mapped["canonical_set_code"] if mapped else None,
        )

    def load_catalog(self, resolution: SetResolution, language: str,
                     acc: RunAccumulator) -> Tuple[List[Printing], Dict[str, CanonicalCard]]:
        """Printings and their canonical rows. Raises PreconditionError when the catalog is incomplete."""
        printings = self.store.load_printings(language, set_code=resolution.canonical_set_code,
                                              set_name=resolution.canonical_set_name)
        if not printings:
            raise PreconditionError(
                f"Missing canonical printings for {resolution.canonical_set_name} ({language}). "
                "Run the canonical import first; this backfill never creates catalog rows.",
                {"set_code": resolution.canonical_set_code},
            )
        canonicals = self.store.load_canonical_cards(p.canonical_slug for p in printings)
        missing = [p for p in printings if p.canonical_slug not in canonicals]
        if missing:
            for printing in missing:
                acc.record(BackfillFailure.missing_canonical(printing))
            missing_slugs = {p.canonical_slug for p in missing}
            raise PreconditionError(
                f"Canonical set is incomplete for {resolution.canonical_set_name}. "
                f"Missing {len(missing_slugs)} canonical_cards rows; fix canonical import before backfill.",
                {"printings": len(printings), "missing_slugs": sorted(missing_slugs)[:MAX_FAILURE_SAMPLES]},
            )
        return printings, canonicals

    async def run(self, set_key: str, language: str = SUPPORTED_LANGUAGE, aggressive: bool = True,
                  dry_run: bool = False, provider_set_id_override: Optional[str] = None) -> BackfillResult:
        set_key, language, override = validate_arguments(set_key, language, provider_set_id_override)
        run_id = str(uuid.uuid4())
        with run_context(run_id=run_id, set_key=set_key):
            return await self._run(run_id, set_key, language, aggressive, dry_run, override)

    async def _run(self, run_id: str, set_key: str, language: str, aggressive: bool, dry_run: bool,
                   override: Optional[str]) -> BackfillResult:
        started_at = _utc_now_iso()
        acc = RunAccumulator()
        self.state = RunState.STARTED
        self.logger.info("Backfill run started", aggressive=aggressive, dry_run=dry_run,
                         provider_set_id_override=override)

        resolution = self.resolve_set(set_key, override)
        window = WINDOW_AGGRESSIVE if aggressive else WINDOW_DEFAULT
        result = BackfillResult(
            ok=False,
            run_id=run_id,
            set_key=set_key,
            canonical_set_name=resolution.canonical_set_name,
            provider_set_id=resolution.provider_set_id,
            language=language,
            aggressive=aggressive,
            dry_run=dry_run,
            provider_set_id_override=override,
            provider_window_requested=window,
            provider_window_used=window,
        )

        try:
            printings, canonicals = self.load_catalog(resolution, language, acc)
        except PreconditionError as e:
            self.logger.error("Precondition failed", error=e.message, **e.details)
            if acc.hard_fail_count == 0:
                acc.record_abort(e.message)
            result.printings_selected = e.details.get("printings", 0)
            return self._finish(result, acc, started_at)

        result.printings_selected = len(printings)
        if printings[0].set_name:
            result.canonical_set_name = printings[0].set_name
        batcher = PersistenceBatcher(self.store, refresher=self.refresher, now_iso=started_at)

        self._transition(RunState.FETCHING, provider_set_id=resolution.provider_set_id)
        fetched = await SetFetcher(self.client).fetch_set(resolution.provider_set_id, aggressive=aggressive)
        result.provider_requests_used = fetched.requests_used
        result.provider_window_requested = fetched.window_requested
        result.provider_window_used = fetched.window_used
        batcher.stage_audit(fetched.audit_records)

        if not fetched.ok:
            for printing in printings[:MAX_FAILURE_SAMPLES]:
                acc.record(BackfillFailure.fetch_failed(printing, fetched.first_error))
            if not dry_run:
                self._persist(batcher, result, acc)
            return self._finish(result, acc, started_at)

        self._transition(RunState.MATCHING, cards=len(fetched.cards), printings=len(printings))
        self.match_printings(printings, canonicals, fetched, resolution, batcher, acc, aggressive, dry_run)

        if not dry_run:
            self._transition(RunState.PERSISTING, matched=acc.matched_count)
            self._persist(batcher, result, acc)
        return self._finish(result, acc, started_at)

    def match_printings(self, printings: Sequence[Printing], canonicals: Dict[str, CanonicalCard],
                        fetched: SetFetch, resolution: SetResolution, batcher: PersistenceBatcher,
                        acc: RunAccumulator, aggressive: bool, dry_run: bool) -> None:
        resolver = MatchResolver(fetched.cards, repairs=self.repairs)
        recent_variants: Dict[str, ProviderVariant] = {
            variant.id: variant for card in fetched.recent_cards for variant in card.variants
        }
        set_id = resolution.provider_set_id

        for printing in printings:
            canonical = canonicals.get(printing.canonical_slug)
            outcome = resolver.resolve(printing, canonical)

            if outcome.kind is OutcomeKind.MISSING_CANONICAL:
                acc.record(BackfillFailure.missing_canonical(printing))
                continue

            if outcome.kind is OutcomeKind.NO_MATCH:
                number = expected_number(printing, canonical)
                acc.record(BackfillFailure.no_match(printing, outcome.detail, {
                    "local": {"card_number": number or None, "finish": printing.finish.value,
                              "name": canonical.display_name},
                    "top_rejected_candidates": outcome.rejected_samples,
                }))
                batcher.stage_ingest(printing, set_id, {"status": "no_match", "code": FailureCode.NO_PROVIDER_MATCH.value,
                                                        "expectedNumber": number, "finish": printing.finish.value})
                continue

            if outcome.kind is OutcomeKind.AMBIGUOUS:
                acc.record(BackfillFailure.ambiguous(printing, outcome.detail, {
                    "topCandidates": [candidate.summary() for candidate in outcome.top_candidates],
                }))
                batcher.stage_ingest(printing, set_id, {"status": "ambiguous",
                                                        "code": FailureCode.AMBIGUOUS_PROVIDER_MATCH.value})
                continue

            variant_id = outcome.best.variant_id
            claimed_by = acc.claimed_variants.get(variant_id)
            if claimed_by is not None:
                acc.record(BackfillFailure.ambiguous(
                    printing,
                    f"Provider variant {variant_id} already matched to printing {claimed_by} in this run.",
                    {"variantId": variant_id, "conflictingPrintingId": claimed_by},
                ))
                batcher.stage_ingest(printing, set_id, {"status": "conflict",
                                                        "code": FailureCode.AMBIGUOUS_PROVIDER_MATCH.value,
                                                        "conflictingPrintingId": claimed_by},
                                     variant_id=variant_id)
                self.logger.warning("Provider variant already claimed", printing_id=printing.id,
                                    variant_id=variant_id, claimed_by=claimed_by)
                continue

            acc.claimed_variants[variant_id] = printing.id
            acc.matched_count += 1
            staged = batcher.stage_match(
                outcome,
                provider_set_id=set_id,
                window_used=fetched.window_used,
                recent_variant=recent_variants.get(variant_id),
                aggressive=aggressive,
                status="dry_run_match" if dry_run else "matched",
            )
            if not staged.metrics_valid:
                acc.record(BackfillFailure.payload_invalid(printing, variant_id))
            acc.record_mapping(self._mapping_sample(outcome, set_id))

    @staticmethod
    def _mapping_sample(outcome: MatchOutcome, provider_set_id: str) -> Dict:
        return {
            "canonical_slug": outcome.printing.canonical_slug,
            "printing_id": outcome.printing.id,
            "external_id": outcome.best.variant_id,
            "provider_set_id": provider_set_id,
            "provider_card_id": outcome.best.card.id,
            "match_confidence": outcome.confidence,
            "match_notes": list(outcome.best.reasons),
            "manual_repair": outcome.manual_repair,
        }

    def _persist(self, batcher: PersistenceBatcher, result: BackfillResult, acc: RunAccumulator) -> None:
        report = batcher.flush()
        result.mapping_upserts = report.mapping_upserts
        result.market_latest_written = report.market_latest_written
        result.history_points_written = report.history_points_written
        result.variant_metrics_written = report.variant_metrics_written
        result.signals_rows_updated = report.signals_rows_updated
        for error in report.errors:
            acc.record(BackfillFailure.db_write_failed(result.set_key, error))
        if report.signal_fallback_used:
            self.logger.warning("Signal refresh fell back to unscoped refresh")

    def _finish(self, result: BackfillResult, acc: RunAccumulator, started_at: str) -> BackfillResult:
        """Fold the accumulator into the result and write the run record."""
        self._transition(RunState.FINISHED, ok=acc.hard_fail_count == 0)
        result.ok = acc.hard_fail_count == 0
        result.matched_count = acc.matched_count
        result.no_match_count = acc.no_match_count
        result.ambiguous_count = acc.ambiguous_count
        result.hard_fail_count = acc.hard_fail_count
        result.error_counts = dict(acc.error_counts)
        result.failures = list(acc.failures)
        result.created_mappings = list(acc.created_mappings)
        result.first_error = acc.first_error

        if not result.dry_run:
            record = {
                "id": result.run_id,
                "job": JOB,
                "source": PROVIDER_SOURCE,
                "status": RunState.FINISHED.value,
                "ok": result.ok,
                "items_fetched": result.provider_requests_used,
                "items_upserted": result.rows_written,
                "items_failed": result.hard_fail_count,
                "started_at": started_at,
                "ended_at": _utc_now_iso(),
                "meta": result.to_dict(),
            }
            try:
                self.store.write_run(record)
            except StoreError as e:
                self.logger.error("Run record not written", run_id=result.run_id, error=str(e))
                result.ok = False
                result.hard_fail_count += 1
                result.first_error = result.first_error or str(e)

        self.logger.info(
            "Backfill run finished",
            run_id=result.run_id,
            ok=result.ok,
            matched=result.matched_count,
            no_match=result.no_match_count,
            ambiguous=result.ambiguous_count,
            hard_failures=result.hard_fail_count,
            rows_written=result.rows_written,
            window_used=result.provider_window_used,
        )
        return result


def validate_arguments(set_key: str, language: str, override: Optional[str]):
    """Normalize run arguments. Raises ValueError for a blank set key or an unsupported language."""
    normalized_key = str(set_key or "").strip().lower()
    if not normalized_key:
        raise ValueError("A provider set key is required, e.g. 'paldea-evolved'.")
    normalized_language = str(language or "").strip().upper()
    if normalized_language != SUPPORTED_LANGUAGE:
        raise ValueError(f"This backfill currently supports {SUPPORTED_LANGUAGE} only, got {language!r}.")
    return normalized_key, normalized_language, (override or "").strip() or None


async def run_backfill(
    set_key: str,
    *,
    language: str = SUPPORTED_LANGUAGE,
    aggressive: bool = True,
    dry_run: bool = False,
    provider_set_id_override: Optional[str] = None,
    store: Optional[CatalogStore] = None,
    client: Optional[PageClient] = None,
    refresher: Optional[SignalRefresher] = None,
) -> BackfillResult:
    """
    Backfill provider mappings and prices for one set.

    Args:
        set_key: Provider set key, e.g. ``paldea-evolved``
        language: Catalog language; only ``EN`` is supported
        aggressive: Start the window cascade at the full history window
        dry_run: Fetch and match but write nothing, not even the run record
        provider_set_id_override: Use this provider set id instead of resolving one
        store: Table store, defaults to the configured SQLite database
        client: Page client, defaults to a live JustTCG client
        refresher: Signal refresher, defaults to the SQLite refresh queue

    Returns:
        The run's BackfillResult
    """
    validate_arguments(set_key, language, provider_set_id_override)
    store = store or CatalogStore()
    options = dict(language=language, aggressive=aggressive, dry_run=dry_run,
                   provider_set_id_override=provider_set_id_override)
    if client is not None:
        return await BackfillRunner(store, client, refresher=refresher).run(set_key, **options)
    async with JustTCGClient() as live_client:
        return await BackfillRunner(store, live_client, refresher=refresher).run(set_key, **options)
