"""Pytest configuration and shared fixtures for pricesync tests."""

import time
from typing import Dict, List, Optional, Sequence

import pytest

from pricesync.core.types import (
    CanonicalCard,
    Edition,
    Finish,
    PricePoint,
    Printing,
    ProviderCard,
    ProviderPage,
    ProviderVariant,
)
from pricesync.store.database import CatalogStore


def build_variant(variant_id: str, printing: str = "Normal", condition: str = "Near Mint",
                  language: Optional[str] = "English", price: Optional[float] = 2.5,
                  history: Sequence[PricePoint] = (), **analytics) -> ProviderVariant:
    fields = {
        "trend_slope_7d": 0.01,
        "cov_price_30d": 0.05,
        "price_relative_to_30d_range": 0.4,
        "price_changes_count_30d": 6,
    }
    fields.update(analytics)
    return ProviderVariant(
        id=variant_id,
        printing=printing,
        condition=condition,
        language=language,
        price=price,
        price_history=list(history),
        **fields,
    )


def build_card(card_id: str, name: str, number: str, variants: Sequence[ProviderVariant] = (),
               set_id: str = "paldea-evolved-pokemon") -> ProviderCard:
    return ProviderCard(id=card_id, name=name, number=number, set_id=set_id, variants=list(variants))


def build_printing(printing_id: str, slug: str, number: str, finish: Finish = Finish.NON_HOLO,
                   stamp: Optional[str] = None, set_name: str = "Paldea Evolved",
                   set_code: Optional[str] = None) -> Printing:
    return Printing(id=printing_id, canonical_slug=slug, card_number=number, finish=finish,
                    edition=Edition.UNLIMITED, stamp=stamp, language="EN",
                    set_code=set_code, set_name=set_name)


class FakePageClient:
    """
    Scripted stand-in for the provider client.

    ``pages`` maps a window to the list of pages served for it, in order.
    Windows listed in ``failing_windows`` answer every page with that status.
    """

    def __init__(self, pages: Dict[str, List[ProviderPage]], page_size: int = 200,
                 failing_windows: Optional[Dict[str, int]] = None):
        self.pages = pages
        self.page_size = page_size
        self.failing_windows = failing_windows or {}
        self.calls: List[tuple] = []

    async def fetch_page(self, set_id: str, page: int, window: str) -> ProviderPage:
        self.calls.append((set_id, page, window))
        if window in self.failing_windows:
            status = self.failing_windows[window]
            return ProviderPage(cards=[], has_more=False, http_status=status, error=f"HTTP {status}")
        served = self.pages.get(window, [])
        if page > len(served):
            return ProviderPage(cards=[], has_more=False, http_status=200)
        return served[page - 1]

    def windows_requested(self) -> List[str]:
        return list(dict.fromkeys(window for _, _, window in self.calls))


def single_page(cards: Sequence[ProviderCard]) -> List[ProviderPage]:
    return [ProviderPage(cards=list(cards), has_more=False, http_status=200, total=len(cards))]


@pytest.fixture
def store(tmp_path):
    """Fresh SQLite store in a temporary directory."""
    return CatalogStore(str(tmp_path / "pricesync.db"))


@pytest.fixture
def seed_catalog(store):
    """Insert canonical cards and printings into the store."""

    def _seed(printings: Sequence[Printing], canonicals: Sequence[CanonicalCard] = (),
              provider_sets: Sequence[Dict] = ()):
        store.batch_upsert("canonical_cards", [
            {"slug": c.slug, "canonical_name": c.canonical_name, "subject": c.subject,
             "set_name": c.set_name, "card_number": c.card_number}
            for c in canonicals
        ])
        store.batch_upsert("card_printings", [
            {"id": p.id, "canonical_slug": p.canonical_slug, "card_number": p.card_number,
             "finish": p.finish.value, "edition": p.edition.value, "stamp": p.stamp,
             "language": p.language, "set_code": p.set_code, "set_name": p.set_name}
            for p in printings
        ])
        store.batch_upsert("provider_set_map", list(provider_sets))
        return store

    return _seed


@pytest.fixture
def recent_history():
    """Three daily price points ending now, in milliseconds."""
    now_ms = int(time.time() * 1000)
    day_ms = 24 * 60 * 60 * 1000
    return [PricePoint(p=2.0 + i * 0.1, t=now_ms - (3 - i) * day_ms) for i in range(3)]


# Configure pytest options
def pytest_configure(config):
    """Configure pytest with custom options."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow running"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers automatically."""
    for item in items:
        # Mark integration tests
        if "integration" in item.name.lower() or "TestBackfillIntegration" in str(item.cls):
            item.add_marker(pytest.mark.integration)

        # Mark unit tests (default)
        if not item.get_closest_marker('integration') and not item.get_closest_marker('slow'):
            item.add_marker(pytest.mark.unit)
