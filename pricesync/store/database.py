"""SQLite table store for the catalog, provider mappings, prices and run records."""

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from ..core.constants import INSERT_IGNORE_BATCH_SIZE, UPSERT_BATCH_SIZE
from ..core.types import CanonicalCard, Printing
from ..utils.config import resolve_db_path
from ..utils.error_handler import StoreError
from ..utils.log import LoggerMixin

SCHEMA = """
CREATE TABLE IF NOT EXISTS canonical_cards (
    slug TEXT PRIMARY KEY,
    canonical_name TEXT,
    subject TEXT,
    set_name TEXT,
    card_number TEXT
);

CREATE TABLE IF NOT EXISTS card_printings (
    id TEXT PRIMARY KEY,
    canonical_slug TEXT NOT NULL,
    card_number TEXT,
    finish TEXT NOT NULL DEFAULT 'UNKNOWN',
    edition TEXT NOT NULL DEFAULT 'UNKNOWN',
    stamp TEXT,
    language TEXT NOT NULL DEFAULT 'EN',
    set_code TEXT,
    set_name TEXT
);

CREATE TABLE IF NOT EXISTS provider_set_map (
    provider TEXT NOT NULL,
    provider_set_id TEXT NOT NULL,
    canonical_set_code TEXT,
    PRIMARY KEY (provider, provider_set_id)
);

CREATE TABLE IF NOT EXISTS card_external_mappings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    card_id TEXT NOT NULL,
    source TEXT NOT NULL,
    mapping_type TEXT NOT NULL,
    external_id TEXT NOT NULL,
    canonical_slug TEXT,
    printing_id TEXT NOT NULL,
    meta TEXT,
    UNIQUE (source, mapping_type, printing_id)
);

CREATE TABLE IF NOT EXISTS market_latest (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    card_id TEXT NOT NULL,
    source TEXT NOT NULL,
    grade TEXT NOT NULL,
    price_type TEXT NOT NULL,
    price_usd REAL,
    currency TEXT,
    volume INTEGER,
    external_id TEXT,
    url TEXT,
    observed_at TEXT,
    canonical_slug TEXT,
    printing_id TEXT,
    updated_at TEXT,
    UNIQUE (card_id, source, grade, price_type)
);

CREATE TABLE IF NOT EXISTS price_history_points (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    canonical_slug TEXT,
    variant_ref TEXT NOT NULL,
    provider TEXT NOT NULL,
    ts TEXT NOT NULL,
    price REAL NOT NULL,
    currency TEXT,
    source_window TEXT NOT NULL,
    UNIQUE (provider, variant_ref, ts, source_window)
);

CREATE TABLE IF NOT EXISTS variant_metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    canonical_slug TEXT NOT NULL,
    printing_id TEXT NOT NULL,
    variant_ref TEXT NOT NULL,
    provider TEXT NOT NULL,
    grade TEXT NOT NULL,
    provider_trend_slope_7d REAL,
    provider_cov_price_30d REAL,
    provider_price_relative_to_30d_range REAL,
    provider_price_changes_count_30d INTEGER,
    provider_as_of_ts TEXT,
    history_points_30d INTEGER,
    signal_trend REAL,
    signal_breakout REAL,
    signal_value REAL,
    signals_as_of_ts TEXT,
    updated_at TEXT,
    UNIQUE (canonical_slug, printing_id, provider, grade)
);

CREATE TABLE IF NOT EXISTS ingest_runs (
    id TEXT PRIMARY KEY,
    job TEXT NOT NULL,
    source TEXT NOT NULL,
    status TEXT NOT NULL,
    ok INTEGER NOT NULL,
    items_fetched INTEGER NOT NULL DEFAULT 0,
    items_upserted INTEGER NOT NULL DEFAULT 0,
    items_failed INTEGER NOT NULL DEFAULT 0,
    started_at TEXT,
    ended_at TEXT,
    meta TEXT
);

CREATE TABLE IF NOT EXISTS provider_raw_payloads (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    provider TEXT NOT NULL,
    endpoint TEXT NOT NULL,
    params TEXT,
    response TEXT,
    status_code INTEGER,
    fetched_at TEXT,
    request_hash TEXT,
    canonical_slug TEXT,
    variant_ref TEXT
);

CREATE TABLE IF NOT EXISTS provider_ingests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    provider TEXT NOT NULL,
    job TEXT NOT NULL,
    set_id TEXT,
    card_id TEXT,
    variant_id TEXT,
    canonical_slug TEXT,
    printing_id TEXT,
    raw_payload TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS signal_refresh_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scope TEXT NOT NULL,
    canonical_slug TEXT,
    variant_ref TEXT,
    provider TEXT,
    grade TEXT,
    requested_at TEXT NOT NULL,
    processed_at TEXT
);
"""

# Writable columns per table, in insert order
TABLE_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "canonical_cards": ("slug", "canonical_name", "subject", "set_name", "card_number"),
    "card_printings": ("id", "canonical_slug", "card_number", "finish", "edition", "stamp",
                       "language", "set_code", "set_name"),
    "provider_set_map": ("provider", "provider_set_id", "canonical_set_code"),
    "card_external_mappings": ("card_id", "source", "mapping_type", "external_id", "canonical_slug",
                               "printing_id", "meta"),
    "market_latest": ("card_id", "source", "grade", "price_type", "price_usd", "currency", "volume",
                      "external_id", "url", "observed_at", "canonical_slug", "printing_id", "updated_at"),
    "price_history_points": ("canonical_slug", "variant_ref", "provider", "ts", "price", "currency",
                             "source_window"),
    "variant_metrics": ("canonical_slug", "printing_id", "variant_ref", "provider", "grade",
                        "provider_trend_slope_7d", "provider_cov_price_30d",
                        "provider_price_relative_to_30d_range", "provider_price_changes_count_30d",
                        "provider_as_of_ts", "history_points_30d", "signal_trend", "signal_breakout",
                        "signal_value", "signals_as_of_ts", "updated_at"),
    "ingest_runs": ("id", "job", "source", "status", "ok", "items_fetched", "items_upserted",
                    "items_failed", "started_at", "ended_at", "meta"),
    "provider_raw_payloads": ("provider", "endpoint", "params", "response", "status_code", "fetched_at",
                              "request_hash", "canonical_slug", "variant_ref"),
    "provider_ingests": ("provider", "job", "set_id", "card_id", "variant_id", "canonical_slug",
                         "printing_id", "raw_payload", "created_at"),
    "signal_refresh_queue": ("scope", "canonical_slug", "variant_ref", "provider", "grade",
                             "requested_at", "processed_at"),
}

# Columns stored as JSON text
JSON_COLUMNS = frozenset({"meta", "params", "response", "raw_payload"})

CONFLICT_KEYS: Dict[str, Tuple[str, ...]] = {
    "canonical_cards": ("slug",),
    "card_printings": ("id",),
    "provider_set_map": ("provider", "provider_set_id"),
    "card_external_mappings": ("source", "mapping_type", "printing_id"),
    "market_latest": ("card_id", "source", "grade", "price_type"),
    "price_history_points": ("provider", "variant_ref", "ts", "source_window"),
    "variant_metrics": ("canonical_slug", "printing_id", "provider", "grade"),
    "ingest_runs": ("id",),
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class BatchWriteResult:
    """Rows written across all batches, and the first batch error if any."""
    written: int = 0
    first_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.first_error is None


def _encode(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS and value is not None and not isinstance(value, str):
        return json.dumps(value, default=str)
    if isinstance(value, bool):
        return int(value)
    return value


def _decode_row(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    for column in JSON_COLUMNS.intersection(data):
        if isinstance(data[column], str):
            try:
                data[column] = json.loads(data[column])
            except ValueError:
                pass
    return data


class CatalogStore(LoggerMixin):
    """SQLite-backed store exposing batch reads, upserts and insert-ignore writes."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path: Path = resolve_db_path(db_path)
        self._init_database()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _init_database(self) -> None:
        """Create every table the pipeline reads or writes."""
        try:
            with self._connect() as conn:
                conn.executescript(SCHEMA)
            self.logger.info("Database initialized", db_path=str(self.db_path))
        except sqlite3.Error as e:
            self.logger.error("Error initializing database", db_path=str(self.db_path), error=str(e))
            raise StoreError(f"Could not initialize database at {self.db_path}", {"error": str(e)}) from e

    def _columns_for(self, table: str, rows: Sequence[Dict[str, Any]]) -> List[str]:
        if table not in TABLE_COLUMNS:
            raise StoreError(f"Unknown table: {table}")
        known = TABLE_COLUMNS[table]
        present = set()
        for row in rows:
            present.update(row.keys())
        unknown = present - set(known)
        if unknown:
            raise StoreError(f"Unknown columns for {table}: {sorted(unknown)}")
        return [column for column in known if column in present]

    @staticmethod
    def _params(columns: Sequence[str], rows: Iterable[Dict[str, Any]]) -> List[Tuple[Any, ...]]:
        return [tuple(_encode(column, row.get(column)) for column in columns) for row in rows]

    # Reads

    def load_printings(self, language: str, set_code: Optional[str] = None,
                       set_name: Optional[str] = None) -> List[Printing]:
        """Printings for one set, by set code when known, else by case-insensitive set name."""
        if set_code:
            where, value = "set_code = ?", set_code
        else:
            where, value = "lower(set_name) = lower(?)", set_name or ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM card_printings WHERE language = ? AND {where} ORDER BY card_number, id",
                (language, value),
            ).fetchall()
        return [Printing.from_row(dict(row)) for row in rows]

    def load_canonical_cards(self, slugs: Iterable[str]) -> Dict[str, CanonicalCard]:
        wanted = sorted(set(slugs))
        cards: Dict[str, CanonicalCard] = {}
        with self._connect() as conn:
            # Stay under SQLite's bound-parameter limit
            for start in range(0, len(wanted), 500):
                chunk = wanted[start:start + 500]
                placeholders = ",".join("?" for _ in chunk)
                for row in conn.execute(f"SELECT * FROM canonical_cards WHERE slug IN ({placeholders})", chunk):
                    card = CanonicalCard.from_row(dict(row))
                    cards[card.slug] = card
        return cards

    def find_provider_set(self, provider: str, candidates: Sequence[str]) -> Optional[Dict[str, Any]]:
        """First provider_set_map row for the provider whose set id is one of the candidates."""
        if not candidates:
            return None
        placeholders = ",".join("?" for _ in candidates)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT provider_set_id, canonical_set_code FROM provider_set_map "
                f"WHERE provider = ? AND provider_set_id IN ({placeholders}) ORDER BY provider_set_id LIMIT 1",
                (provider, *candidates),
            ).fetchone()
        return dict(row) if row else None

    def fetch_all(self, table: str, order_by: str = "rowid") -> List[Dict[str, Any]]:
        if table not in TABLE_COLUMNS:
            raise StoreError(f"Unknown table: {table}")
        with self._connect() as conn:
            rows = conn.execute(f"SELECT * FROM {table} ORDER BY {order_by}").fetchall()
        return [_decode_row(row) for row in rows]

    def count_rows(self, table: str) -> int:
        if table not in TABLE_COLUMNS:
            raise StoreError(f"Unknown table: {table}")
        with self._connect() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM ingest_runs WHERE id = ?", (run_id,)).fetchone()
        if row is None:
            return None
        data = _decode_row(row)
        data["ok"] = bool(data["ok"])
        return data

    # Writes

    def batch_upsert(self, table: str, rows: Sequence[Dict[str, Any]],
                     batch_size: int = UPSERT_BATCH_SIZE) -> BatchWriteResult:
        """
        Upsert rows on the table's unique key, one transaction per batch.

        A failed batch is rolled back and skipped; later batches still run.
        Only the first error message is kept.
        """
        result = BatchWriteResult()
        if not rows:
            return result
        if table not in CONFLICT_KEYS:
            raise StoreError(f"Table has no upsert key: {table}")
        columns = self._columns_for(table, rows)
        conflict = CONFLICT_KEYS[table]
        updates = [column for column in columns if column not in conflict]
        action = (
            "DO UPDATE SET " + ", ".join(f"{column} = excluded.{column}" for column in updates)
            if updates else "DO NOTHING"
        )
        sql = (
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)}) "
            f"ON CONFLICT ({', '.join(conflict)}) {action}"
        )
        with self._connect() as conn:
            for start in range(0, len(rows), batch_size):
                batch = rows[start:start + batch_size]
                try:
                    with conn:
                        conn.executemany(sql, self._params(columns, batch))
                    result.written += len(batch)
                except sqlite3.Error as e:
                    if result.first_error is None:
                        result.first_error = f"{table}: {e}"
                    self.logger.error("Batch upsert failed", table=table, batch_start=start,
                                      batch_size=len(batch), error=str(e))
        return result

    def batch_insert_ignore(self, table: str, rows: Sequence[Dict[str, Any]],
                            batch_size: int = INSERT_IGNORE_BATCH_SIZE) -> BatchWriteResult:
        """Insert rows, silently skipping duplicates of the unique key. Counts only new rows."""
        result = BatchWriteResult()
        if not rows:
            return result
        columns = self._columns_for(table, rows)
        sql = (
            f"INSERT OR IGNORE INTO {table} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )
        with self._connect() as conn:
            for start in range(0, len(rows), batch_size):
                batch = rows[start:start + batch_size]
                before = conn.total_changes
                try:
                    with conn:
                        conn.executemany(sql, self._params(columns, batch))
                    result.written += conn.total_changes - before
                except sqlite3.Error as e:
                    if result.first_error is None:
                        result.first_error = f"{table}: {e}"
                    self.logger.error("Batch insert failed", table=table, batch_start=start,
                                      batch_size=len(batch), error=str(e))
        return result

    def insert_rows(self, table: str, rows: Sequence[Dict[str, Any]]) -> BatchWriteResult:
        """Plain append in a single transaction, for log-style tables."""
        result = BatchWriteResult()
        if not rows:
            return result
        columns = self._columns_for(table, rows)
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})"
        try:
            with self._connect() as conn, conn:
                conn.executemany(sql, self._params(columns, rows))
            result.written = len(rows)
        except sqlite3.Error as e:
            result.first_error = f"{table}: {e}"
            self.logger.error("Insert failed", table=table, rows=len(rows), error=str(e))
        return result

    def write_run(self, record: Dict[str, Any]) -> None:
        """Write the terminal run record. Raises StoreError when it cannot be stored."""
        written = self.batch_upsert("ingest_runs", [record])
        if written.first_error:
            raise StoreError("Could not write run record", {"run_id": record.get("id"), "error": written.first_error})
        self.logger.debug("Run record written", run_id=record.get("id"), ok=record.get("ok"))


class SqliteSignalRefresher(LoggerMixin):
    """
    Queues derived-signal recomputation requests for the downstream job.

    Keyed requests name one (canonical slug, variant ref, provider, grade)
    cohort each; the unscoped fallback queues a single wildcard request.
    """

    def __init__(self, store: CatalogStore):
        self.store = store

    def refresh_keys(self, keys: Sequence[Dict[str, str]]) -> int:
        now = utc_now_iso()
        rows = [
            {
                "scope": "keyed",
                "canonical_slug": key["canonical_slug"],
                "variant_ref": key["variant_ref"],
                "provider": key["provider"],
                "grade": key["grade"],
                "requested_at": now,
            }
            for key in keys
        ]
        written = self.store.insert_rows("signal_refresh_queue", rows)
        if written.first_error:
            raise StoreError("Keyed signal refresh failed", {"error": written.first_error})
        return written.written

    def refresh_all(self) -> int:
        written = self.store.insert_rows("signal_refresh_queue", [{"scope": "all", "requested_at": utc_now_iso()}])
        if written.first_error:
            raise StoreError("Signal refresh failed", {"error": written.first_error})
        self.logger.info("Unscoped signal refresh queued")
        return written.written
