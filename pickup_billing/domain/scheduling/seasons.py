"""
Seasonal window sources

Both the signup path (live selections + resolved rules) and the reconciliation
path (decoded compact rules) reduce their inputs to SeasonalWindow lists here
and then share the same timeline code.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from pydantic import BaseModel, ConfigDict

from ...services.service_area_resolver import ResolvedRule, SeasonWindowRule
from .codec import CompactRule

logger = logging.getLogger(__name__)


class SeasonalWindow(BaseModel):
    """One address's billable seasonal interval, half-open [start, end)"""

    model_config = ConfigDict(frozen=True)

    start: int
    end: int

    @property
    def is_valid(self) -> bool:
        return self.end > self.start > 0

    def overlaps(self, start: int, end: int) -> bool:
        return self.start < end and self.end > start


def _shift_years(epoch: int, years: int) -> int:
    d = datetime.fromtimestamp(epoch, tz=timezone.utc)
    try:
        shifted = d.replace(year=d.year + years)
    except ValueError:  # Feb 29 in a non-leap target year
        shifted = d.replace(year=d.year + years, day=28)
    return int(shifted.timestamp())


def season_window_for_rule(season: Optional[SeasonWindowRule], ref_epoch: int) -> Optional[SeasonalWindow]:
    """
    The current or next occurrence of a rule's season relative to ``ref_epoch``.

    A window that has not ended yet is returned as configured (including one
    already in progress). An ended annual window rolls forward whole years;
    an ended one-off window yields None.
    """
    if season is None:
        return None
    window = SeasonalWindow(start=season.start_utc, end=season.end_utc)
    if not window.is_valid:
        return None
    if ref_epoch < window.end:
        return window
    if not season.annual:
        return None

    years = 1
    while _shift_years(window.end, years) <= ref_epoch:
        years += 1
    return SeasonalWindow(
        start=_shift_years(window.start, years),
        end=_shift_years(window.end, years),
    )


def valid_windows(windows: Iterable[SeasonalWindow]) -> list[SeasonalWindow]:
    """Drop missing or inverted windows silently."""
    return [w for w in windows if w is not None and w.is_valid]


def windows_from_selections(
    rules: Sequence[ResolvedRule], selections: Sequence[bool], ref_epoch: int
) -> list[Optional[SeasonalWindow]]:
    """
    Per-address billed windows for the signup path.

    The result is aligned with ``rules``: None where the seasonal add-on was not
    selected or the address has no season.
    """
    if len(rules) != len(selections):
        raise ValueError("selections must align with resolved rules")
    windows: list[Optional[SeasonalWindow]] = []
    for rule, selected in zip(rules, selections):
        windows.append(season_window_for_rule(rule.season, ref_epoch) if selected else None)
    return windows


def windows_from_compact_rules(rules: Sequence[CompactRule]) -> list[SeasonalWindow]:
    """Windows straight from persisted rules, without re-resolving addresses."""
    windows = [SeasonalWindow(start=r.ss, end=r.se) for r in rules if r.opted_in]
    logger.debug(f"Derived {len(windows)} seasonal windows from {len(rules)} compact rules")
    return windows
