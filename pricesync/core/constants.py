from typing import Final, Tuple

PROVIDER: Final[str] = "JUSTTCG"
PROVIDER_SOURCE: Final[str] = "justtcg"
JOB: Final[str] = "backfill_justtcg_set"
SUPPORTED_LANGUAGE: Final[str] = "EN"
GRADE_RAW: Final[str] = "RAW"
PRICE_TYPE_MARKET: Final[str] = "MARKET"
CURRENCY: Final[str] = "USD"
MAPPING_TYPE_PRINTING: Final[str] = "printing"

# Provider windows, broadest first. A failed window falls through to the next.
WINDOW_CASCADE: Final[Tuple[str, ...]] = ("all", "365d", "90d", "30d")
WINDOW_AGGRESSIVE: Final[str] = "all"
WINDOW_DEFAULT: Final[str] = "30d"
WINDOW_RECENT: Final[str] = "7d"

# Label stored on history rows for each requested window
HISTORY_WINDOW_LABELS: Final[dict] = {
    "all": "full",
    "365d": "365d",
    "90d": "90d",
    "30d": "30d",
    "7d": "7d",
}
THIRTY_DAYS_S: Final[int] = 30 * 24 * 60 * 60

ENDPOINT_SET_PAGE: Final[str] = "/cards/backfill-set-page"
ENDPOINT_SET_PAGE_RECENT: Final[str] = "/cards/backfill-set-page-7d"
ENDPOINT_SET_MATCH: Final[str] = "/cards/backfill-set-match"

# Sample bounds
MAX_FAILURE_SAMPLES: Final[int] = 25
MAX_SUCCESS_SAMPLES: Final[int] = 10
MAX_REJECTED_SAMPLES: Final[int] = 5
MAX_AMBIGUOUS_SAMPLES: Final[int] = 3
AUDIT_SAMPLE_CARDS: Final[int] = 3
AUDIT_SAMPLE_VARIANTS: Final[int] = 2

# Batch sizes
UPSERT_BATCH_SIZE: Final[int] = 250
INSERT_IGNORE_BATCH_SIZE: Final[int] = 500
SIGNAL_REFRESH_BATCH_SIZE: Final[int] = 100

# Match score weights. Relative order is the contract:
# number > finish > stamp > name exact > name contains > condition > language
SCORE_NUMBER_MATCH: Final[int] = 100
SCORE_FINISH_MATCH: Final[int] = 50
SCORE_STAMP_MATCH: Final[int] = 40
SCORE_BASE_VARIANT: Final[int] = 10
SCORE_NAME_EXACT: Final[int] = 35
SCORE_NAME_CONTAINS: Final[int] = 20
SCORE_CONDITION: Final[dict] = {"nm": 20, "lp": 15, "mp": 10, "hp": 5}
SCORE_LANGUAGE_ENGLISH: Final[int] = 15

# Divisor for the 0-1 confidence, capped at 1.0
MAX_MATCH_SCORE: Final[float] = 215.0

# Proximity weights for ranking rejected candidates in no-match samples
PROXIMITY_NUMBER: Final[int] = 40
PROXIMITY_FINISH: Final[int] = 25
PROXIMITY_NAME_EXACT: Final[int] = 20
PROXIMITY_NAME_CONTAINS: Final[int] = 10
PROXIMITY_LANGUAGE: Final[int] = 5
