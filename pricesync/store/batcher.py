"""
Row building and batched, idempotent persistence for one run.

Rows are staged per matched printing and written table by table on flush.
Mapping, latest-price and metric rows are upserted; history points are
insert-ignore so an existing point is never overwritten.
"""

import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from ..core.constants import (
    CURRENCY,
    ENDPOINT_SET_MATCH,
    GRADE_RAW,
    HISTORY_WINDOW_LABELS,
    JOB,
    MAPPING_TYPE_PRINTING,
    PRICE_TYPE_MARKET,
    PROVIDER,
    SIGNAL_REFRESH_BATCH_SIZE,
    THIRTY_DAYS_S,
    WINDOW_RECENT,
)
from ..core.types import MatchOutcome, Printing, ProviderAuditRecord, ProviderVariant
from ..provider.fetcher import request_hash
from ..provider.justtcg import epoch_to_iso, epoch_to_seconds, map_variant_to_metrics
from ..utils.error_handler import PricesyncError
from ..utils.log import LoggerMixin
from .database import CatalogStore, SqliteSignalRefresher, utc_now_iso


class SignalRefresher(Protocol):
    """Downstream derived-signal recomputation. Both calls return rows updated."""

    def refresh_keys(self, keys: Sequence[Dict[str, str]]) -> int:
        ...

    def refresh_all(self) -> int:
        ...


def build_variant_ref(printing_id: str, grade: str = GRADE_RAW) -> str:
    """Stable history key for one printing's raw price cohort, e.g. ``p-1::RAW``."""
    if not printing_id or not printing_id.strip():
        raise ValueError("printing id is required for a variant ref")
    if "::" in printing_id:
        raise ValueError(f"printing id may not contain '::': {printing_id!r}")
    return f"{printing_id.strip()}::{grade}"


def history_window_label(window: str) -> str:
    return HISTORY_WINDOW_LABELS.get(window, window)


def observed_at(variant: ProviderVariant, fallback_iso: str) -> str:
    return epoch_to_iso(variant.last_updated) or fallback_iso


def build_history_rows(variant: ProviderVariant, canonical_slug: str, variant_ref: str,
                       source_window: str, now_s: Optional[float] = None) -> List[Dict[str, Any]]:
    """
    History rows for one variant under one window label.

    Broad windows also emit their last 30 days a second time under ``30d`` so
    the 30-day series is complete whichever window was fetched.
    """
    history = variant.price_history or variant.price_history_30d
    if not history:
        return []
    cutoff = (time.time() if now_s is None else now_s) - THIRTY_DAYS_S
    duplicate_recent = source_window not in ("30d", WINDOW_RECENT)

    rows = []
    for point in history:
        if point.p <= 0:
            continue
        ts = epoch_to_iso(point.t)
        if ts is None:
            continue
        row = {
            "canonical_slug": canonical_slug,
            "variant_ref": variant_ref,
            "provider": PROVIDER,
            "ts": ts,
            "price": point.p,
            "currency": CURRENCY,
            "source_window": source_window,
        }
        rows.append(row)
        if duplicate_recent and epoch_to_seconds(point.t) >= cutoff:
            rows.append({**row, "source_window": "30d"})
    return rows


@dataclass
class StagedMatch:
    variant_ref: str
    history_points: int
    history_points_7d: int
    history_points_30d: int
    metrics_valid: bool


@dataclass
class PersistenceReport:
    mapping_upserts: int = 0
    market_latest_written: int = 0
    history_points_written: int = 0
    variant_metrics_written: int = 0
    signals_rows_updated: int = 0
    signal_fallback_used: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def rows_written(self) -> int:
        return (self.mapping_upserts + self.market_latest_written
                + self.history_points_written + self.variant_metrics_written)


class PersistenceBatcher(LoggerMixin):
    """Stages rows for one run and writes them on flush."""

    def __init__(self, store: CatalogStore, refresher: Optional[SignalRefresher] = None,
                 now_iso: Optional[str] = None, provider: str = PROVIDER):
        self.store = store
        self.refresher = refresher or SqliteSignalRefresher(store)
        self.now_iso = now_iso or utc_now_iso()
        self.provider = provider
        self.audit_rows: List[Dict[str, Any]] = []
        self.ingest_rows: List[Dict[str, Any]] = []
        self.mapping_rows: List[Dict[str, Any]] = []
        self.market_latest_rows: List[Dict[str, Any]] = []
        self.history_rows: List[Dict[str, Any]] = []
        self.metric_rows: List[Dict[str, Any]] = []
        self.refresh_keys: List[Dict[str, str]] = []

    def stage_audit(self, records: Sequence[ProviderAuditRecord]) -> None:
        self.audit_rows.extend(record.to_row() for record in records)

    def stage_ingest(self, printing: Printing, provider_set_id: str, payload: Dict[str, Any],
                     variant_id: Optional[str] = None) -> None:
        self.ingest_rows.append({
            "provider": self.provider,
            "job": JOB,
            "set_id": provider_set_id,
            "card_id": printing.id,
            "variant_id": variant_id,
            "canonical_slug": printing.canonical_slug,
            "printing_id": printing.id,
            "raw_payload": payload,
            "created_at": self.now_iso,
        })

    def stage_match(self, outcome: MatchOutcome, provider_set_id: str, window_used: str,
                    recent_variant: Optional[ProviderVariant] = None, aggressive: bool = True,
                    status: str = "matched", now_s: Optional[float] = None) -> StagedMatch:
        """Stage every row a matched printing produces."""
        printing, best = outcome.printing, outcome.best
        card, variant = best.card, best.variant
        slug = printing.canonical_slug
        variant_ref = build_variant_ref(printing.id)
        seen_at = observed_at(variant, self.now_iso)
        window_label = history_window_label(window_used)

        history = build_history_rows(variant, slug, variant_ref, window_label, now_s=now_s)
        history_7d = (
            build_history_rows(recent_variant, slug, variant_ref, WINDOW_RECENT, now_s=now_s)
            if recent_variant is not None else []
        )
        points_30d = sum(1 for row in history if row["source_window"] == "30d")
        metrics = map_variant_to_metrics(variant)
        selected = {
            "provider_card_id": card.id,
            "provider_variant_id": variant.id,
            "provider_card_number": card.number,
            "provider_printing": variant.printing,
            "match_confidence": outcome.confidence,
            "match_notes": list(best.reasons),
        }

        self.stage_ingest(printing, provider_set_id, {
            "status": status,
            "variantRef": variant_ref,
            "score": best.score,
            "manualRepair": outcome.manual_repair,
            **selected,
        }, variant_id=variant.id)

        self.audit_rows.append(ProviderAuditRecord(
            provider=self.provider,
            endpoint=ENDPOINT_SET_MATCH,
            params={"set": provider_set_id, "printing_id": printing.id, "canonical_slug": slug,
                    "aggressive": aggressive},
            status_code=200,
            fetched_at=self.now_iso,
            request_hash=request_hash(self.provider, ENDPOINT_SET_MATCH, {
                "set": provider_set_id, "printing_id": printing.id, "variant_id": variant.id,
                "aggressive": aggressive,
            }),
            response={
                "selected": {**selected, "provider_condition": variant.condition},
                "pricing": variant.summary(),
                "cached": {"historyWindow": window_label, "historyPoints": len(history),
                           "historyPoints7d": len(history_7d)},
            },
            canonical_slug=slug,
            variant_ref=variant_ref,
        ).to_row())

        self.mapping_rows.append({
            "card_id": card.id,
            "source": self.provider,
            "mapping_type": MAPPING_TYPE_PRINTING,
            "external_id": variant.id,
            "canonical_slug": slug,
            "printing_id": printing.id,
            "meta": {"provider_set_id": provider_set_id, "manual_repair": outcome.manual_repair, **selected},
        })
        self.market_latest_rows.append({
            "card_id": variant.id,
            "source": self.provider,
            "grade": GRADE_RAW,
            "price_type": PRICE_TYPE_MARKET,
            "price_usd": variant.price,
            "currency": CURRENCY,
            "volume": None,
            "external_id": variant.id,
            "url": None,
            "observed_at": seen_at,
            "canonical_slug": slug,
            "printing_id": printing.id,
            "updated_at": self.now_iso,
        })
        self.history_rows.extend(history)
        self.history_rows.extend(history_7d)

        if metrics is not None:
            self.metric_rows.append({
                "canonical_slug": slug,
                "printing_id": printing.id,
                "variant_ref": variant_ref,
                "provider": self.provider,
                "grade": GRADE_RAW,
                **metrics,
                "provider_as_of_ts": seen_at,
                "history_points_30d": points_30d,
                "signal_trend": None,
                "signal_breakout": None,
                "signal_value": None,
                "signals_as_of_ts": None,
                "updated_at": self.now_iso,
            })
            self.refresh_keys.append({
                "canonical_slug": slug,
                "variant_ref": variant_ref,
                "provider": self.provider,
                "grade": GRADE_RAW,
            })

        return StagedMatch(
            variant_ref=variant_ref,
            history_points=len(history),
            history_points_7d=len(history_7d),
            history_points_30d=points_30d,
            metrics_valid=metrics is not None,
        )

    def flush(self) -> PersistenceReport:
        """
        Write everything staged, table by table.

        A table's failure is recorded and never stops the tables after it.
        Signal refresh runs only for keys whose metric rows were staged.
        """
        report = PersistenceReport()
        context = self.log_start("persist", mappings=len(self.mapping_rows),
                                 history_rows=len(self.history_rows), metric_rows=len(self.metric_rows))

        for table, rows in (("provider_ingests", self.ingest_rows), ("provider_raw_payloads", self.audit_rows)):
            written = self.store.insert_rows(table, rows)
            if written.first_error:
                report.errors.append(written.first_error)

        upserts = (
            ("card_external_mappings", self.mapping_rows, "mapping_upserts"),
            ("market_latest", self.market_latest_rows, "market_latest_written"),
        )
        for table, rows, attr in upserts:
            written = self.store.batch_upsert(table, rows)
            setattr(report, attr, written.written)
            if written.first_error:
                report.errors.append(written.first_error)

        history = self.store.batch_insert_ignore("price_history_points", self.history_rows)
        report.history_points_written = history.written
        if history.first_error:
            report.errors.append(history.first_error)

        metrics = self.store.batch_upsert("variant_metrics", self.metric_rows)
        report.variant_metrics_written = metrics.written
        if metrics.first_error:
            report.errors.append(metrics.first_error)

        self._refresh_signals(report)
        self.log_success(context, rows_written=report.rows_written,
                         signals_rows_updated=report.signals_rows_updated, errors=len(report.errors))
        return report

    def _refresh_signals(self, report: PersistenceReport) -> None:
        if not self.refresh_keys:
            return
        first_error = None
        for start in range(0, len(self.refresh_keys), SIGNAL_REFRESH_BATCH_SIZE):
            batch = self.refresh_keys[start:start + SIGNAL_REFRESH_BATCH_SIZE]
            try:
                report.signals_rows_updated += self.refresher.refresh_keys(batch)
            except (PricesyncError, sqlite3.Error) as e:
                first_error = first_error or str(e)
                self.logger.warning("Keyed signal refresh failed", batch_start=start, error=str(e))

        if first_error is None:
            return

        report.signal_fallback_used = True
        try:
            report.signals_rows_updated = self.refresher.refresh_all()
        except (PricesyncError, sqlite3.Error) as e:
            report.errors.append(f"signals refresh failed: {e}")
            self.logger.error("Unscoped signal refresh failed", keyed_error=first_error, error=str(e))
