"""JustTCG API client and payload mapping."""

import asyncio
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from ..core.types import Finish, PricePoint, ProviderCard, ProviderPage, ProviderVariant
from ..utils.config import settings
from ..utils.error_handler import ConfigurationError, RetryableStatusError
from ..utils.log import LoggerMixin
from ..utils.retry import is_retryable_status, retry

CONDITION_ABBREV = {
    "near mint": "nm",
    "lightly played": "lp",
    "moderately played": "mp",
    "heavily played": "hp",
    "damaged": "dmg",
    "sealed": "sealed",
}

# Epochs at or above this are milliseconds
_EPOCH_MS_THRESHOLD = 1_000_000_000_000


def map_printing_to_finish(printing: Optional[str]) -> Finish:
    """Map a provider printing label ("Holofoil", "Reverse Holofoil", ...) to a finish."""
    label = (printing or "").lower()
    if "reverse" in label:
        return Finish.REVERSE_HOLO
    if "holo" in label:
        return Finish.HOLO
    return Finish.NON_HOLO


def normalize_condition(condition: Optional[str]) -> str:
    """Map a condition label to a short token, e.g. Near Mint -> nm."""
    key = re.sub(r"\s+", " ", (condition or "").lower().strip())
    return CONDITION_ABBREV.get(key, key.replace(" ", ""))


def set_name_to_provider_id(set_name: str) -> str:
    """Derive the provider set id, e.g. Base Set -> base-set-pokemon."""
    slug = re.sub(r"[^a-z0-9]+", "-", set_name.lower()).strip("-")
    return f"{slug}-pokemon"


def epoch_to_seconds(raw: Any) -> Optional[float]:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw <= 0:
        return None
    return raw / 1000.0 if raw >= _EPOCH_MS_THRESHOLD else float(raw)


def epoch_to_iso(raw: Any) -> Optional[str]:
    seconds = epoch_to_seconds(raw)
    if seconds is None:
        return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat().replace("+00:00", "Z")
    except (OverflowError, OSError, ValueError):
        return None


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _integer(value: Any) -> Optional[int]:
    number = _number(value)
    return int(number) if number is not None else None


def _history(raw: Any) -> List[PricePoint]:
    points = []
    for item in raw or []:
        if not isinstance(item, dict):
            continue
        price, ts = _number(item.get("p")), _number(item.get("t"))
        if price is None or ts is None:
            continue
        points.append(PricePoint(p=price, t=ts))
    return points


def parse_variant(data: Dict[str, Any]) -> Optional[ProviderVariant]:
    if not isinstance(data, dict) or not data.get("id"):
        return None
    return ProviderVariant(
        id=str(data["id"]),
        printing=data.get("printing"),
        condition=data.get("condition"),
        language=data.get("language"),
        price=_number(data.get("price")),
        last_updated=_number(data.get("lastUpdated")),
        trend_slope_7d=_number(data.get("trendSlope7d")),
        trend_slope_30d=_number(data.get("trendSlope30d")),
        cov_price_7d=_number(data.get("covPrice7d")),
        cov_price_30d=_number(data.get("covPrice30d")),
        stddev_pop_price_7d=_number(data.get("stddevPopPrice7d")),
        stddev_pop_price_30d=_number(data.get("stddevPopPrice30d")),
        price_relative_to_30d_range=_number(data.get("priceRelativeTo30dRange")),
        price_changes_count_7d=_integer(data.get("priceChangesCount7d")),
        price_changes_count_30d=_integer(data.get("priceChangesCount30d")),
        min_price_all_time=_number(data.get("minPriceAllTime")),
        min_price_all_time_date=data.get("minPriceAllTimeDate"),
        max_price_all_time=_number(data.get("maxPriceAllTime")),
        max_price_all_time_date=data.get("maxPriceAllTimeDate"),
        price_history=_history(data.get("priceHistory")),
        price_history_30d=_history(data.get("priceHistory30d")),
    )


def parse_card(data: Dict[str, Any]) -> Optional[ProviderCard]:
    """Parse raw card data into a ProviderCard, or None when id/name are missing."""
    if not isinstance(data, dict) or not data.get("id") or not data.get("name"):
        return None
    variants = [v for v in (parse_variant(item) for item in data.get("variants") or []) if v]
    return ProviderCard(
        id=str(data["id"]),
        name=str(data["name"]),
        number=str(data.get("number") or ""),
        set_id=data.get("set"),
        variants=variants,
    )


def map_variant_to_metrics(variant: ProviderVariant) -> Optional[Dict[str, Any]]:
    """
    Provider analytics for one variant, or None when the payload is unusable.

    Coefficient of variation is a ratio; when the provider omits it, it is
    derived from the 30-day population stddev. The 30-day change count falls
    back to the 7-day count.
    """
    if not variant.has_price:
        return None

    cov_30d = variant.cov_price_30d
    if cov_30d is None and variant.stddev_pop_price_30d is not None:
        cov_30d = round(variant.stddev_pop_price_30d / variant.price, 4)

    changes_30d = variant.price_changes_count_30d
    if changes_30d is None:
        changes_30d = variant.price_changes_count_7d

    metrics = {
        "provider_trend_slope_7d": variant.trend_slope_7d,
        "provider_cov_price_30d": cov_30d,
        "provider_price_relative_to_30d_range": variant.price_relative_to_30d_range,
        "provider_price_changes_count_30d": changes_30d,
    }
    if all(value is None for value in metrics.values()):
        return None
    return metrics


class JustTCGClient(LoggerMixin):
    """Paginated card fetches for one provider set, with transport-level retry."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        page_size: Optional[int] = None,
        timeout_s: Optional[float] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        min_request_interval: float = 0.12,
    ):
        self.api_key = api_key or settings.JUSTTCG_API_KEY
        if not self.api_key:
            raise ConfigurationError("JUSTTCG_API_KEY is not set")
        self.base_url = (base_url or settings.JUSTTCG_BASE_URL).rstrip("/")
        self.page_size = page_size or settings.PAGE_SIZE
        self.timeout_s = timeout_s or settings.REQUEST_TIMEOUT_S
        self.max_attempts = max_attempts or settings.RETRY_MAX_ATTEMPTS
        self.base_delay = settings.RETRY_BASE_DELAY_S if base_delay is None else base_delay
        self.max_delay = settings.RETRY_MAX_DELAY_S if max_delay is None else max_delay
        self.min_request_interval = min_request_interval
        self.session: Optional[aiohttp.ClientSession] = None
        self.last_request_time = 0.0

    async def __aenter__(self) -> "JustTCGClient":
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure aiohttp session exists."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                headers={"x-api-key": self.api_key},
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            )

    async def _rate_limit(self) -> None:
        """Apply rate limiting between requests."""
        loop = asyncio.get_running_loop()
        time_since_last = loop.time() - self.last_request_time
        if time_since_last < self.min_request_interval:
            await asyncio.sleep(self.min_request_interval - time_since_last)
        self.last_request_time = loop.time()

    async def _get_once(self, url: str, params: Dict[str, Any]) -> Tuple[int, Any]:
        await self._ensure_session()
        await self._rate_limit()
        async with self.session.get(url, params=params) as response:
            if is_retryable_status(response.status):
                raise RetryableStatusError(response.status)
            try:
                body = await response.json(content_type=None)
            except (aiohttp.ContentTypeError, ValueError):
                body = None
            return response.status, body

    async def _request_with_backoff(self, url: str, params: Dict[str, Any]) -> Tuple[int, Any]:
        """GET with jittered exponential backoff on 429, 5xx, timeouts and connection errors."""
        fetch = retry(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            exceptions=(RetryableStatusError, aiohttp.ClientError, asyncio.TimeoutError),
            logger=self.logger,
        )(self._get_once)
        return await fetch(url, params)

    async def fetch_page(self, set_id: str, page: int, window: str) -> ProviderPage:
        """Fetch one page of cards for a provider set with the given history window."""
        params = {
            "set": set_id,
            "page": page,
            "limit": self.page_size,
            "priceHistoryDuration": window,
        }
        try:
            status, body = await self._request_with_backoff(f"{self.base_url}/cards", params)
        except RetryableStatusError as e:
            return ProviderPage(cards=[], has_more=False, http_status=e.status,
                                error=f"HTTP {e.status} after {self.max_attempts} attempts")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return ProviderPage(cards=[], has_more=False, http_status=0,
                                error=f"{type(e).__name__}: {e}")

        if not 200 <= status < 300:
            message = body.get("error") if isinstance(body, dict) else None
            return ProviderPage(cards=[], has_more=False, http_status=status,
                                error=f"HTTP {status}: {message or 'request rejected'}")

        envelope = body if isinstance(body, dict) else {}
        cards = [card for card in (parse_card(item) for item in envelope.get("data") or []) if card]
        meta = envelope.get("meta") if isinstance(envelope.get("meta"), dict) else {}
        total = _integer(meta.get("total"))
        return ProviderPage(
            cards=cards,
            has_more=bool(meta.get("hasMore", False)),
            http_status=status,
            total=total if total and total > 0 else None,
        )

    async def close(self) -> None:
        """Close the aiohttp session."""
        if self.session and not self.session.closed:
            await self.session.close()
        self.session = None
