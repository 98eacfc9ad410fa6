"""
Billing phase emission

Turns a seasonal timeline into an ordered, gapless list of subscription
phases. Shared by the signup request (``emit_phases``) and the asynchronous
schedule reconciliation (``plan_reconciled_phases``) so both paths slice,
consolidate and price the timeline the same way.

Invariants of every list produced here:
- phases are contiguous from their start to infinity
- each phase has one base item (quantity = address count) and at most one
  seasonal item (quantity = concurrently active seasons, only when > 0)
- the last phase is open-ended: no month duration and no end date
"""

import hashlib
import json
import logging
from typing import Iterable, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .codec import CompactRule
from .errors import NoBillableItemsError
from .months import add_months, month_start_at_or_after, to_iso, whole_months
from .seasons import SeasonalWindow, valid_windows, windows_from_compact_rules
from .timeline import TimelineSlice, build_timeline, clip_slices, consolidate_slices

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60
DEFAULT_PRORATION = "create_prorations"


class SchedulingSettings(BaseModel):
    """Scheduler thresholds; see config.SCHEDULING for the environment-driven instance"""

    horizon_days: int = Field(default=90, ge=0)
    max_schedule_phases: int = Field(default=10, ge=2)
    proration_behavior: str = DEFAULT_PRORATION


class PriceRefs(BaseModel):
    model_config = ConfigDict(frozen=True)

    base: str
    seasonal: str


class LineItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    price: str
    quantity: int = Field(ge=0)


class Phase(BaseModel):
    """
    One billable interval.

    Bounded phases carry either ``months`` (a whole-month duration) or an
    explicit ``end_date``; a phase with neither is open-ended. ``start_date``
    is only set when a phase must be pinned, e.g. the preserved current phase.
    """

    model_config = ConfigDict(frozen=True)

    items: tuple[LineItem, ...]
    proration_behavior: str = DEFAULT_PRORATION
    months: Optional[int] = Field(default=None, ge=1)
    end_date: Optional[int] = None
    start_date: Optional[int] = None

    @model_validator(mode="after")
    def check_shape(self) -> "Phase":
        if self.months is not None and self.end_date is not None:
            raise ValueError("a phase has either a month duration or an end date, not both")
        prices = [item.price for item in self.items]
        if len(prices) != len(set(prices)):
            raise ValueError("a phase lists each price at most once")
        return self

    @property
    def open_ended(self) -> bool:
        return self.months is None and self.end_date is None

    def quantity_for(self, price: str) -> int:
        return next((item.quantity for item in self.items if item.price == price), 0)

    def to_provider_params(self) -> dict:
        """Phase in the provider's schedule-update shape"""
        params: dict = {
            "items": [{"price": item.price, "quantity": item.quantity} for item in self.items],
            "proration_behavior": self.proration_behavior,
        }
        if self.start_date is not None:
            params["start_date"] = self.start_date
        if self.months is not None:
            params["duration"] = {"interval": "month", "interval_count": self.months}
        if self.end_date is not None:
            params["end_date"] = self.end_date
        return params


class SignupPlan(BaseModel):
    phases: list[Phase]
    anchor: int
    base_quantity: int
    phases_hash: str


class ReconciledPlan(BaseModel):
    phases: list[Phase]
    base_quantity: int
    truncated: bool = False
    dropped_phases: int = 0


def line_items(prices: PriceRefs, base_quantity: int, seasonal_quantity: int = 0) -> tuple[LineItem, ...]:
    items = [LineItem(price=prices.base, quantity=base_quantity)]
    if seasonal_quantity > 0:
        items.append(LineItem(price=prices.seasonal, quantity=seasonal_quantity))
    return tuple(items)


def bounded_phase(
    start: int,
    end: int,
    items: tuple[LineItem, ...],
    proration_behavior: str = DEFAULT_PRORATION,
) -> Phase:
    """Whole-month span -> month duration; anything else -> explicit end date."""
    months = whole_months(start, end)
    if months:
        return Phase(items=items, months=months, proration_behavior=proration_behavior)
    return Phase(items=items, end_date=end, proration_behavior=proration_behavior)


def open_phase(prices: PriceRefs, base_quantity: int, proration_behavior: str = DEFAULT_PRORATION) -> Phase:
    return Phase(items=line_items(prices, base_quantity), proration_behavior=proration_behavior)


def ensure_open_ended(
    phases: list[Phase], prices: PriceRefs, base_quantity: int, proration_behavior: str = DEFAULT_PRORATION
) -> list[Phase]:
    """Safety net: a list that does not end open-ended gets a base-only tail."""
    if not phases or not phases[-1].open_ended:
        logger.error("❌ Phase list did not end open-ended; appending a base-only tail")
        phases.append(open_phase(prices, base_quantity, proration_behavior))
    return phases


def phase_intervals(phases: Sequence[Phase], start: int) -> list[tuple[int, Optional[int]]]:
    """Concrete ``(start, end)`` of each phase when the list begins at ``start``; end is None when open."""
    intervals: list[tuple[int, Optional[int]]] = []
    cursor: Optional[int] = start
    for phase in phases:
        phase_start = phase.start_date if phase.start_date is not None else cursor
        if phase.end_date is not None:
            phase_end: Optional[int] = phase.end_date
        elif phase.months is not None and phase_start is not None:
            phase_end = add_months(phase_start, phase.months)
        else:
            phase_end = None
        intervals.append((phase_start, phase_end))
        cursor = phase_end
    return intervals


def phases_hash(phases: Iterable[Phase]) -> str:
    """Short stable fingerprint of a phase list"""
    payload = json.dumps([p.to_provider_params() for p in phases], sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def _drop_trailing_idle(slices: list[TimelineSlice]) -> list[TimelineSlice]:
    # a bounded base-only phase right before the base-only tail adds nothing
    while slices and slices[-1].active_count == 0:
        slices.pop()
    return slices


def _slice_phases(
    slices: Sequence[TimelineSlice],
    cursor: int,
    prices: PriceRefs,
    base_quantity: int,
    proration_behavior: str,
) -> tuple[list[Phase], int]:
    """Phases for consolidated slices starting at ``cursor``, base-only gap first if needed."""
    phases = []
    for s in slices:
        if s.start > cursor:
            phases.append(bounded_phase(cursor, s.start, line_items(prices, base_quantity), proration_behavior))
        phases.append(
            bounded_phase(s.start, s.end, line_items(prices, base_quantity, s.active_count), proration_behavior)
        )
        cursor = s.end
    return phases, cursor


def emit_phases(
    timeline: Sequence[TimelineSlice],
    base_quantity: int,
    ref_epoch: int,
    prices: PriceRefs,
    proration_behavior: str = DEFAULT_PRORATION,
    *,
    windows: Iterable[Optional[SeasonalWindow]] = (),
    horizon_days: int = 90,
) -> SignupPlan:
    """
    Build the signup phase list.

    Args:
        timeline: Slices from build_timeline over the billed windows
        base_quantity: Number of service addresses (every address bills the base price)
        ref_epoch: "Now"; phases start here
        prices: Base and seasonal price references for the account
        proration_behavior: Provider proration policy stamped on every phase
        windows: The billed windows, used for the pre-anchor stub quantity
        horizon_days: Only seasons starting this soon after the anchor get phases now;
            later ones are left to schedule reconciliation

    Returns:
        SignupPlan with the phases, the month anchor and a fingerprint

    Raises:
        NoBillableItemsError: When there is nothing to bill
    """
    if base_quantity < 1:
        raise NoBillableItemsError("At least one service address is required")

    windows = valid_windows(windows)
    anchor = month_start_at_or_after(ref_epoch)
    horizon_end = anchor + horizon_days * DAY_SECONDS
    phases: list[Phase] = []

    if anchor > ref_epoch:
        # the stub predates the timeline's own slicing, so count overlaps directly
        stub_seasonal = sum(1 for w in windows if w.overlaps(ref_epoch, anchor))
        phases.append(
            Phase(
                items=line_items(prices, base_quantity, stub_seasonal),
                end_date=anchor,
                proration_behavior=proration_behavior,
            )
        )

    upcoming = consolidate_slices([s for s in timeline if s.start >= anchor])
    upcoming = _drop_trailing_idle([s for s in upcoming if s.start <= horizon_end])
    seasonal_phases, tail_start = _slice_phases(upcoming, anchor, prices, base_quantity, proration_behavior)
    phases.extend(seasonal_phases)

    later_starts = [w.start for w in windows if w.start >= tail_start]
    if later_starts and min(later_starts) - tail_start <= horizon_days * DAY_SECONDS:
        logger.info(
            f"Next season starts {to_iso(min(later_starts))}, within {horizon_days}d of the tail at "
            f"{to_iso(tail_start)}; schedule reconciliation will add it"
        )

    phases.append(open_phase(prices, base_quantity, proration_behavior))
    phases = ensure_open_ended(phases, prices, base_quantity, proration_behavior)

    if not phases[0].items:
        raise NoBillableItemsError("First phase has no billable items")

    return SignupPlan(
        phases=phases,
        anchor=anchor,
        base_quantity=base_quantity,
        phases_hash=phases_hash(phases),
    )


def plan_reconciled_phases(
    rules: Sequence[CompactRule],
    current_start: int,
    current_end: Optional[int],
    current_items: Sequence[LineItem],
    prices: PriceRefs,
    settings: Optional[SchedulingSettings] = None,
) -> ReconciledPlan:
    """
    Full schedule for a subscription whose current phase is already running.

    The current phase is kept verbatim as phase zero. Everything after it is
    re-derived from the persisted compact rules: slices ending at or before
    the current phase start are discarded, the rest are clipped to the end of
    the current phase and consolidated, then an open-ended base-only tail is
    appended. Lists longer than ``settings.max_schedule_phases`` lose their
    furthest bounded phases (the tail is always kept).
    """
    settings = settings or SchedulingSettings()
    proration = settings.proration_behavior

    current_items = tuple(current_items)
    base_quantity = next(
        (item.quantity for item in current_items if item.price == prices.base and item.quantity > 0),
        len(rules),
    )
    if base_quantity < 1:
        raise NoBillableItemsError("No base quantity on the current phase and no persisted rules")

    if current_end is None or current_end <= current_start:
        current_end = month_start_at_or_after(current_start + 1)
    phase_zero = Phase(
        items=current_items or line_items(prices, base_quantity),
        start_date=current_start,
        end_date=current_end,
        proration_behavior=proration,
    )

    windows = windows_from_compact_rules(rules)
    slices = [s for s in build_timeline(windows) if s.end > current_start]
    slices = _drop_trailing_idle(consolidate_slices(clip_slices(slices, current_end)))
    future, _ = _slice_phases(slices, current_end, prices, base_quantity, proration)

    truncated = False
    dropped = 0
    room = settings.max_schedule_phases - 2
    if len(future) > room:
        planned = len(future)
        truncated = True
        future = future[:room]
        while future and future[-1].quantity_for(prices.seasonal) == 0:
            future.pop()
        dropped = planned - len(future)
        logger.warning(
            f"⚠️ PhaseCountExceeded: {planned + 2} phases exceed the cap of "
            f"{settings.max_schedule_phases}; dropped the last {dropped} bounded phases"
        )

    phases = [phase_zero, *future, open_phase(prices, base_quantity, proration)]
    phases = ensure_open_ended(phases, prices, base_quantity, proration)
    return ReconciledPlan(phases=phases, base_quantity=base_quantity, truncated=truncated, dropped_phases=dropped)
