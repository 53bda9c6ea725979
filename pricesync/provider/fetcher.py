"""
Set-level provider fetching: pagination per window and the window cascade.

The cascade is an ordered tuple of window specs consumed by a small loop, so
the fallback policy can be tested with any object that implements
``fetch_page``.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

from ..core.constants import (
    AUDIT_SAMPLE_CARDS,
    AUDIT_SAMPLE_VARIANTS,
    ENDPOINT_SET_PAGE,
    ENDPOINT_SET_PAGE_RECENT,
    PROVIDER,
    WINDOW_AGGRESSIVE,
    WINDOW_CASCADE,
    WINDOW_DEFAULT,
    WINDOW_RECENT,
)
from ..core.types import ProviderAuditRecord, ProviderCard, ProviderPage
from ..utils.config import settings
from ..utils.log import LoggerMixin


class PageClient(Protocol):
    page_size: int

    async def fetch_page(self, set_id: str, page: int, window: str) -> ProviderPage:
        ...


@dataclass
class WindowFetch:
    window: str
    cards: List[ProviderCard] = field(default_factory=list)
    audit_records: List[ProviderAuditRecord] = field(default_factory=list)
    requests_used: int = 0
    first_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.first_error is None


@dataclass
class SetFetch:
    window_requested: str
    window_used: str
    cards: List[ProviderCard] = field(default_factory=list)
    audit_records: List[ProviderAuditRecord] = field(default_factory=list)
    requests_used: int = 0
    windows_attempted: List[str] = field(default_factory=list)
    recent_cards: List[ProviderCard] = field(default_factory=list)
    recent_error: Optional[str] = None
    first_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.first_error is None


def window_cascade(aggressive: bool) -> Tuple[str, ...]:
    """Windows to try in order; non-aggressive runs start at the narrower default."""
    start = WINDOW_AGGRESSIVE if aggressive else WINDOW_DEFAULT
    return WINDOW_CASCADE[WINDOW_CASCADE.index(start):]


def request_hash(provider: str, endpoint: str, params: Dict[str, Any]) -> str:
    payload = json.dumps({"provider": provider, "endpoint": endpoint, "params": params},
                         separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _card_sample(cards: List[ProviderCard]) -> List[Dict[str, Any]]:
    return [
        {
            "id": card.id,
            "name": card.name,
            "number": card.number,
            "variants": [v.summary() for v in card.variants[:AUDIT_SAMPLE_VARIANTS]],
        }
        for card in cards[:AUDIT_SAMPLE_CARDS]
    ]


class SetFetcher(LoggerMixin):
    """Drives page-by-page fetches for one provider set."""

    def __init__(self, client: PageClient, max_pages: Optional[int] = None, provider: str = PROVIDER):
        self.client = client
        self.page_size = client.page_size
        self.max_pages = max_pages or settings.MAX_PAGES
        self.provider = provider

    async def fetch_window(self, set_id: str, window: str,
                           endpoint: str = ENDPOINT_SET_PAGE) -> WindowFetch:
        """
        Fetch every page of a set for one window.

        Pagination stops when the provider reports no more pages, a page is
        short, the declared total is reached, or a page adds no unseen card
        ids. Any non-2xx page is a hard failure for the window.
        """
        result = WindowFetch(window=window)
        seen: Set[str] = set()
        expected_total: Optional[int] = None
        fetched_at = utc_now_iso()
        completed = False
        page = 1

        while page <= self.max_pages:
            result.requests_used += 1
            response = await self.client.fetch_page(set_id, page, window)
            if response.total:
                expected_total = response.total

            new_cards = []
            for card in response.cards:
                if card.id not in seen:
                    seen.add(card.id)
                    new_cards.append(card)

            params = {"set": set_id, "page": page, "limit": self.page_size, "priceHistoryDuration": window}
            result.audit_records.append(ProviderAuditRecord(
                provider=self.provider,
                endpoint=endpoint,
                params=params,
                status_code=response.http_status,
                fetched_at=fetched_at,
                request_hash=request_hash(self.provider, endpoint, params),
                response={
                    "providerSetId": set_id,
                    "page": page,
                    "httpStatus": response.http_status,
                    "cardsInPage": len(response.cards),
                    "hasMore": response.has_more,
                    "expectedTotal": expected_total,
                    "pageNewCardCount": len(new_cards),
                    "error": response.error,
                    "sample": _card_sample(response.cards),
                },
            ))

            if not response.ok:
                result.first_error = (
                    f"Provider set fetch failed ({set_id} page {page}): HTTP {response.http_status}"
                )
                if response.error:
                    result.first_error += f" ({response.error})"
                break

            result.cards.extend(new_cards)
            hit_expected_total = expected_total is not None and len(seen) >= expected_total
            short_page = len(response.cards) < self.page_size
            repeated_page = len(response.cards) > 0 and not new_cards
            if not response.has_more or hit_expected_total or short_page or repeated_page:
                completed = True
                break
            page += 1

        if result.first_error is None and not completed:
            result.first_error = f"Provider set fetch exceeded {self.max_pages} pages for {set_id}"
        elif result.first_error is None and not result.cards:
            result.first_error = f"Provider returned 0 cards for set {set_id}"

        self.logger.info(
            "Window fetch finished",
            set_id=set_id,
            window=window,
            pages=result.requests_used,
            cards=len(result.cards),
            error=result.first_error,
        )
        return result

    async def fetch_set(self, set_id: str, aggressive: bool = True) -> SetFetch:
        """Walk the window cascade until one window succeeds, then backfill the recent window."""
        cascade = window_cascade(aggressive)
        outcome = SetFetch(window_requested=cascade[0], window_used=cascade[0])
        context = self.log_start("set_fetch", set_id=set_id, window_requested=cascade[0])

        primary: Optional[WindowFetch] = None
        for window in cascade:
            primary = await self.fetch_window(set_id, window)
            outcome.windows_attempted.append(window)
            outcome.window_used = window
            outcome.audit_records.extend(primary.audit_records)
            outcome.requests_used += primary.requests_used
            if primary.ok:
                break
            self.logger.warning("Window failed, narrowing", set_id=set_id, window=window,
                                error=primary.first_error)

        outcome.cards = primary.cards
        outcome.first_error = primary.first_error

        if primary.ok and outcome.window_used != WINDOW_RECENT:
            recent = await self.fetch_window(set_id, WINDOW_RECENT, ENDPOINT_SET_PAGE_RECENT)
            outcome.audit_records.extend(recent.audit_records)
            outcome.requests_used += recent.requests_used
            outcome.recent_cards = recent.cards
            outcome.recent_error = recent.first_error

        self.log_success(context, window_used=outcome.window_used, cards=len(outcome.cards),
                         requests_used=outcome.requests_used, error=outcome.first_error)
        return outcome
