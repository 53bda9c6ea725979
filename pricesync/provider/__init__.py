"""Provider package: JustTCG client and set-level fetching."""

from .fetcher import SetFetch, SetFetcher, WindowFetch, window_cascade
from .justtcg import JustTCGClient, map_printing_to_finish, normalize_condition

__all__ = [
    "JustTCGClient",
    "SetFetcher",
    "SetFetch",
    "WindowFetch",
    "window_cascade",
    "map_printing_to_finish",
    "normalize_condition",
]
