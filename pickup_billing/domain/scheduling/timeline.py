"""
Seasonal timeline builder

Cuts the span covered by a set of seasonal windows into slices over which
the number of concurrently active windows is constant. Slices are bounded
by every window edge and every calendar-month start inside the span, so
most slices measure a whole number of months.
"""

from typing import Iterable, Sequence

from pydantic import BaseModel, ConfigDict

from .months import month_starts_between
from .seasons import SeasonalWindow, valid_windows


class TimelineSlice(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: int
    end: int
    active_count: int


def build_timeline(windows: Iterable[SeasonalWindow]) -> list[TimelineSlice]:
    """
    Slice ``[min(start), max(end))`` on window edges and month starts.

    Returns an empty list when there is no valid window.
    """
    windows = valid_windows(windows)
    if not windows:
        return []

    min_start = min(w.start for w in windows)
    max_end = max(w.end for w in windows)
    edges = {edge for w in windows for edge in (w.start, w.end)}
    edges.update(month_starts_between(min_start, max_end))
    boundaries = sorted(edges)

    slices = []
    for start, end in zip(boundaries, boundaries[1:]):
        if start >= end:
            continue
        active = sum(1 for w in windows if w.start <= start and w.end >= end)
        slices.append(TimelineSlice(start=start, end=end, active_count=active))
    return slices


def consolidate_slices(slices: Sequence[TimelineSlice]) -> list[TimelineSlice]:
    """Merge touching neighbours that carry the same active count."""
    merged: list[TimelineSlice] = []
    for s in slices:
        prev = merged[-1] if merged else None
        if prev and prev.end == s.start and prev.active_count == s.active_count:
            merged[-1] = TimelineSlice(start=prev.start, end=s.end, active_count=s.active_count)
        else:
            merged.append(s)
    return merged


def clip_slices(slices: Sequence[TimelineSlice], start: int) -> list[TimelineSlice]:
    """Drop slices ending at or before ``start``; trim one that straddles it."""
    clipped = []
    for s in slices:
        if s.end <= start:
            continue
        if s.start < start:
            s = TimelineSlice(start=start, end=s.end, active_count=s.active_count)
        clipped.append(s)
    return clipped
