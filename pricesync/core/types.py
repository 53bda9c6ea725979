from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Finish(str, Enum):
    NON_HOLO = "NON_HOLO"
    HOLO = "HOLO"
    REVERSE_HOLO = "REVERSE_HOLO"
    ALT_HOLO = "ALT_HOLO"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Finish":
        try:
            return cls(str(value or "").strip().upper())
        except ValueError:
            return cls.UNKNOWN


class Edition(str, Enum):
    UNLIMITED = "UNLIMITED"
    FIRST_EDITION = "FIRST_EDITION"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Edition":
        try:
            return cls(str(value or "").strip().upper())
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class Printing:
    """One physical variant of a canonical card. Read-only to the pipeline."""
    id: str
    canonical_slug: str
    card_number: Optional[str]
    finish: Finish = Finish.UNKNOWN
    edition: Edition = Edition.UNKNOWN
    stamp: Optional[str] = None
    language: str = "EN"
    set_code: Optional[str] = None
    set_name: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Printing":
        return cls(
            id=str(row["id"]),
            canonical_slug=str(row["canonical_slug"]),
            card_number=row.get("card_number"),
            finish=Finish.parse(row.get("finish")),
            edition=Edition.parse(row.get("edition")),
            stamp=row.get("stamp"),
            language=row.get("language") or "EN",
            set_code=row.get("set_code"),
            set_name=row.get("set_name"),
        )


@dataclass(frozen=True)
class CanonicalCard:
    slug: str
    canonical_name: Optional[str] = None
    subject: Optional[str] = None
    set_name: Optional[str] = None
    card_number: Optional[str] = None

    @property
    def display_name(self) -> str:
        """Name used for comparison: subject first, then full name, then slug."""
        return self.subject or self.canonical_name or self.slug

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CanonicalCard":
        return cls(
            slug=str(row["slug"]),
            canonical_name=row.get("canonical_name"),
            subject=row.get("subject"),
            set_name=row.get("set_name"),
            card_number=row.get("card_number"),
        )


@dataclass(frozen=True)
class PricePoint:
    p: float  # price
    t: float  # epoch, seconds or milliseconds


@dataclass
class ProviderVariant:
    id: str
    printing: Optional[str] = None
    condition: Optional[str] = None
    language: Optional[str] = None
    price: Optional[float] = None
    last_updated: Optional[float] = None
    trend_slope_7d: Optional[float] = None
    trend_slope_30d: Optional[float] = None
    cov_price_7d: Optional[float] = None
    cov_price_30d: Optional[float] = None
    stddev_pop_price_7d: Optional[float] = None
    stddev_pop_price_30d: Optional[float] = None
    price_relative_to_30d_range: Optional[float] = None
    price_changes_count_7d: Optional[int] = None
    price_changes_count_30d: Optional[int] = None
    min_price_all_time: Optional[float] = None
    min_price_all_time_date: Optional[str] = None
    max_price_all_time: Optional[float] = None
    max_price_all_time_date: Optional[str] = None
    price_history: List[PricePoint] = field(default_factory=list)
    price_history_30d: List[PricePoint] = field(default_factory=list)

    @property
    def has_price(self) -> bool:
        return self.price is not None and self.price > 0

    def summary(self) -> Dict[str, Any]:
        """Bounded description used in audit payloads."""
        return {
            "id": self.id,
            "printing": self.printing,
            "condition": self.condition,
            "language": self.language,
            "price": self.price,
            "lastUpdated": self.last_updated,
            "trendSlope7d": self.trend_slope_7d,
            "covPrice30d": self.cov_price_30d,
            "priceRelativeTo30dRange": self.price_relative_to_30d_range,
            "priceChangesCount30d": self.price_changes_count_30d,
            "historyPoints": {
                "total": len(self.price_history),
                "fallback30d": len(self.price_history_30d),
            },
        }


@dataclass
class ProviderCard:
    id: str
    name: str
    number: str
    set_id: Optional[str] = None
    variants: List[ProviderVariant] = field(default_factory=list)


@dataclass
class ProviderPage:
    """Result of one page request. Failed requests carry no cards."""
    cards: List[ProviderCard]
    has_more: bool
    http_status: int
    total: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.http_status < 300


@dataclass
class CandidateScore:
    score: int
    reasons: List[str]
    rejected: bool = False

    @classmethod
    def reject(cls, reason: str) -> "CandidateScore":
        return cls(score=-1, reasons=[reason], rejected=True)


@dataclass
class MatchCandidate:
    card: ProviderCard
    variant: ProviderVariant
    score: int
    reasons: List[str]

    @property
    def variant_id(self) -> str:
        return self.variant.id

    def summary(self) -> Dict[str, Any]:
        return {
            "cardId": self.card.id,
            "variantId": self.variant.id,
            "score": self.score,
            "notes": list(self.reasons),
        }


class OutcomeKind(str, Enum):
    MATCHED = "MATCHED"
    AMBIGUOUS = "AMBIGUOUS"
    NO_MATCH = "NO_MATCH"
    MISSING_CANONICAL = "MISSING_CANONICAL"


@dataclass
class MatchOutcome:
    """Resolution for one printing in one run."""
    kind: OutcomeKind
    printing: Printing
    canonical: Optional[CanonicalCard] = None
    best: Optional[MatchCandidate] = None
    confidence: float = 0.0
    top_candidates: List[MatchCandidate] = field(default_factory=list)
    rejected_samples: List[Dict[str, Any]] = field(default_factory=list)
    detail: str = ""
    manual_repair: bool = False

    @property
    def matched(self) -> bool:
        return self.kind is OutcomeKind.MATCHED


class FailureCode(str, Enum):
    MISSING_CANONICAL_PRINTING = "MISSING_CANONICAL_PRINTING"
    NO_PROVIDER_MATCH = "NO_PROVIDER_MATCH"
    AMBIGUOUS_PROVIDER_MATCH = "AMBIGUOUS_PROVIDER_MATCH"
    PROVIDER_FETCH_FAILED = "PROVIDER_FETCH_FAILED"
    PROVIDER_PAYLOAD_INVALID = "PROVIDER_PAYLOAD_INVALID"
    DB_UPSERT_FAILED = "DB_UPSERT_FAILED"


HARD_FAILURE_CODES = frozenset({
    FailureCode.MISSING_CANONICAL_PRINTING,
    FailureCode.PROVIDER_FETCH_FAILED,
    FailureCode.DB_UPSERT_FAILED,
})


@dataclass
class BackfillFailure:
    canonical_slug: str
    printing_id: str
    code: FailureCode
    detail: str
    sample: Optional[Dict[str, Any]] = None

    @property
    def hard(self) -> bool:
        return self.code in HARD_FAILURE_CODES

    @classmethod
    def missing_canonical(cls, printing: Printing) -> "BackfillFailure":
        return cls(printing.canonical_slug, printing.id, FailureCode.MISSING_CANONICAL_PRINTING,
                   "Missing canonical row for printing.")

    @classmethod
    def no_match(cls, printing: Printing, detail: str,
                 sample: Optional[Dict[str, Any]] = None) -> "BackfillFailure":
        return cls(printing.canonical_slug, printing.id, FailureCode.NO_PROVIDER_MATCH, detail, sample)

    @classmethod
    def ambiguous(cls, printing: Printing, detail: str,
                  sample: Optional[Dict[str, Any]] = None) -> "BackfillFailure":
        return cls(printing.canonical_slug, printing.id, FailureCode.AMBIGUOUS_PROVIDER_MATCH, detail, sample)

    @classmethod
    def fetch_failed(cls, printing: Printing, detail: str) -> "BackfillFailure":
        return cls(printing.canonical_slug, printing.id, FailureCode.PROVIDER_FETCH_FAILED, detail)

    @classmethod
    def payload_invalid(cls, printing: Printing, variant_id: str) -> "BackfillFailure":
        return cls(printing.canonical_slug, printing.id, FailureCode.PROVIDER_PAYLOAD_INVALID,
                   "Provider variant payload missing required analytics fields.",
                   {"variantId": variant_id})

    @classmethod
    def db_write_failed(cls, set_key: str, detail: str) -> "BackfillFailure":
        """A table-level write failure; it belongs to the run, not to one printing."""
        return cls("", "", FailureCode.DB_UPSERT_FAILED, detail, {"setKey": set_key})

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["code"] = self.code.value
        return data


@dataclass
class ProviderAuditRecord:
    """One archived provider exchange, stored in provider_raw_payloads."""
    provider: str
    endpoint: str
    params: Dict[str, Any]
    status_code: int
    fetched_at: str
    request_hash: str
    response: Dict[str, Any] = field(default_factory=dict)
    canonical_slug: Optional[str] = None
    variant_ref: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BackfillResult:
    ok: bool
    run_id: str
    set_key: str
    canonical_set_name: str
    provider_set_id: str
    language: str
    aggressive: bool
    dry_run: bool
    provider_set_id_override: Optional[str]
    provider_window_requested: str
    provider_window_used: str
    provider_requests_used: int = 0
    printings_selected: int = 0
    matched_count: int = 0
    mapping_upserts: int = 0
    market_latest_written: int = 0
    history_points_written: int = 0
    variant_metrics_written: int = 0
    signals_rows_updated: int = 0
    ambiguous_count: int = 0
    no_match_count: int = 0
    hard_fail_count: int = 0
    error_counts: Dict[str, int] = field(default_factory=dict)
    failures: List[BackfillFailure] = field(default_factory=list)
    created_mappings: List[Dict[str, Any]] = field(default_factory=list)
    first_error: Optional[str] = None

    @property
    def rows_written(self) -> int:
        return (self.mapping_upserts + self.market_latest_written
                + self.history_points_written + self.variant_metrics_written)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["failures"] = [failure.to_dict() for failure in self.failures]
        return data
