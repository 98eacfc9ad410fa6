"""Tests for signup phase emission and reconciled phase planning."""

from __future__ import annotations

import pytest
from conftest import utc

from pickup_billing.domain.scheduling.codec import CompactRule
from pickup_billing.domain.scheduling.errors import NoBillableItemsError
from pickup_billing.domain.scheduling.phases import (
    LineItem,
    Phase,
    PriceRefs,
    SchedulingSettings,
    emit_phases,
    ensure_open_ended,
    phase_intervals,
    phases_hash,
    plan_reconciled_phases,
)
from pickup_billing.domain.scheduling.seasons import SeasonalWindow
from pickup_billing.domain.scheduling.timeline import build_timeline


def _emit(windows, base_quantity, ref, prices, horizon_days=400):
    return emit_phases(
        build_timeline(windows), base_quantity, ref, prices, windows=windows, horizon_days=horizon_days
    )


def _assert_contiguous(phases: list[Phase], start: int) -> None:
    intervals = phase_intervals(phases, start)
    assert intervals[0][0] == start
    for (_, prev_end), (cur_start, _) in zip(intervals, intervals[1:]):
        assert prev_end == cur_start
    assert intervals[-1][1] is None


def test_mid_month_signup_before_season(prices: PriceRefs) -> None:
    """Apr 15 signup, one window May 1 - Oct 1: stub, five seasonal months, open tail."""
    ref = utc(2025, 4, 15)
    window = SeasonalWindow(start=utc(2025, 5, 1), end=utc(2025, 10, 1))
    plan = _emit([window], 1, ref, prices)

    assert plan.anchor == utc(2025, 5, 1)
    stub, season, tail = plan.phases
    assert stub.end_date == utc(2025, 5, 1)
    assert stub.items == (LineItem(price="price_base", quantity=1),)
    assert season.months == 5
    assert season.quantity_for("price_base") == 1
    assert season.quantity_for("price_seasonal") == 1
    assert tail.open_ended
    assert tail.items == (LineItem(price="price_base", quantity=1),)
    _assert_contiguous(plan.phases, ref)


def test_two_overlapping_windows_on_a_month_start(prices: PriceRefs) -> None:
    """May 1 signup with windows May-Jul and Jun-Sep: no stub, quantities 1, 2, 1."""
    ref = utc(2025, 5, 1)
    windows = [
        SeasonalWindow(start=utc(2025, 5, 1), end=utc(2025, 7, 1)),
        SeasonalWindow(start=utc(2025, 6, 1), end=utc(2025, 9, 1)),
    ]
    plan = _emit(windows, 2, ref, prices)

    summary = [(p.months, p.quantity_for("price_base"), p.quantity_for("price_seasonal")) for p in plan.phases]
    assert summary == [(1, 2, 1), (1, 2, 2), (2, 2, 1), (None, 2, 0)]
    assert plan.phases[-1].open_ended
    _assert_contiguous(plan.phases, ref)


def test_no_seasonal_windows_gives_single_base_phase(prices: PriceRefs) -> None:
    ref = utc(2025, 3, 1)
    plan = _emit([], 3, ref, prices)
    assert len(plan.phases) == 1
    assert plan.phases[0].open_ended
    assert plan.phases[0].items == (LineItem(price="price_base", quantity=3),)


def test_mid_month_signup_without_windows_has_stub_and_tail(prices: PriceRefs) -> None:
    ref = utc(2025, 3, 10)
    plan = _emit([], 1, ref, prices)
    assert [p.open_ended for p in plan.phases] == [False, True]
    _assert_contiguous(plan.phases, ref)


def test_stub_counts_windows_already_running(prices: PriceRefs) -> None:
    """Signing up mid-season bills the seasonal item in the stub too."""
    ref = utc(2025, 6, 20)
    window = SeasonalWindow(start=utc(2025, 5, 1), end=utc(2025, 9, 1))
    plan = _emit([window], 1, ref, prices)
    assert plan.phases[0].quantity_for("price_seasonal") == 1
    assert plan.phases[1].months == 2
    _assert_contiguous(plan.phases, ref)


def test_gap_before_first_season_is_base_only(prices: PriceRefs) -> None:
    ref = utc(2025, 2, 1)
    window = SeasonalWindow(start=utc(2025, 5, 1), end=utc(2025, 9, 1))
    plan = _emit([window], 1, ref, prices)
    gap, season, tail = plan.phases
    assert gap.months == 3 and gap.quantity_for("price_seasonal") == 0
    assert season.months == 4 and season.quantity_for("price_seasonal") == 1
    assert tail.open_ended
    _assert_contiguous(plan.phases, ref)


def test_mid_month_window_end_uses_end_date(prices: PriceRefs) -> None:
    ref = utc(2025, 5, 1)
    window = SeasonalWindow(start=utc(2025, 5, 1), end=utc(2025, 9, 30))
    plan = _emit([window], 1, ref, prices)
    assert [p.months for p in plan.phases[:-1]] == [None]
    assert plan.phases[0].end_date == utc(2025, 9, 30)
    assert plan.phases[0].quantity_for("price_seasonal") == 1
    _assert_contiguous(plan.phases, ref)


def test_seasons_beyond_horizon_are_left_out(prices: PriceRefs) -> None:
    ref = utc(2025, 1, 1)
    window = SeasonalWindow(start=utc(2025, 6, 1), end=utc(2025, 9, 1))
    plan = _emit([window], 1, ref, prices, horizon_days=90)
    assert len(plan.phases) == 1
    assert plan.phases[0].open_ended


def test_every_phase_has_one_base_item(prices: PriceRefs) -> None:
    windows = [
        SeasonalWindow(start=utc(2025, 5, 10), end=utc(2025, 8, 20)),
        SeasonalWindow(start=utc(2025, 6, 5), end=utc(2025, 7, 15)),
    ]
    plan = _emit(windows, 4, utc(2025, 4, 2), prices)
    for phase in plan.phases:
        assert phase.quantity_for("price_base") == 4
        assert len(phase.items) <= 2
    _assert_contiguous(plan.phases, utc(2025, 4, 2))


def test_zero_addresses_raise(prices: PriceRefs) -> None:
    with pytest.raises(NoBillableItemsError):
        _emit([], 0, utc(2025, 4, 15), prices)


def test_phases_hash_is_stable(prices: PriceRefs) -> None:
    window = SeasonalWindow(start=utc(2025, 5, 1), end=utc(2025, 10, 1))
    first = _emit([window], 1, utc(2025, 4, 15), prices)
    second = _emit([window], 1, utc(2025, 4, 15), prices)
    other = _emit([window], 2, utc(2025, 4, 15), prices)
    assert first.phases_hash == second.phases_hash == phases_hash(first.phases)
    assert first.phases_hash != other.phases_hash


def test_ensure_open_ended_appends_tail(prices: PriceRefs) -> None:
    bounded = [Phase(items=(LineItem(price="price_base", quantity=1),), months=2)]
    fixed = ensure_open_ended(bounded, prices, 1)
    assert len(fixed) == 2
    assert fixed[-1].open_ended


def test_phase_rejects_duration_and_end_date() -> None:
    with pytest.raises(ValueError):
        Phase(items=(LineItem(price="p", quantity=1),), months=1, end_date=123)


def test_to_provider_params() -> None:
    phase = Phase(items=(LineItem(price="p", quantity=2),), months=3)
    assert phase.to_provider_params() == {
        "items": [{"price": "p", "quantity": 2}],
        "proration_behavior": "create_prorations",
        "duration": {"interval": "month", "interval_count": 3},
    }


# ----------------------------------------------------------------------------
# Reconciled planning
# ----------------------------------------------------------------------------


def _rule(ss: int, se: int) -> CompactRule:
    return CompactRule(c="Surf City", z="28445", b=2, s=5, ss=ss, se=se)


def test_reconciled_plan_preserves_current_phase(prices: PriceRefs) -> None:
    current_start, current_end = utc(2025, 4, 15), utc(2025, 5, 1)
    items = [LineItem(price="price_base", quantity=1)]
    plan = plan_reconciled_phases(
        [_rule(utc(2025, 5, 1), utc(2025, 10, 1))], current_start, current_end, items, prices
    )

    zero, season, tail = plan.phases
    assert zero.start_date == current_start
    assert zero.end_date == current_end
    assert list(zero.items) == items
    assert season.months == 5 and season.quantity_for("price_seasonal") == 1
    assert tail.open_ended
    assert not plan.truncated
    _assert_contiguous(plan.phases, current_start)


def test_reconciled_plan_clips_season_in_progress(prices: PriceRefs) -> None:
    """A season already running at the current phase end continues from that end."""
    current_start, current_end = utc(2025, 6, 1), utc(2025, 7, 1)
    items = [LineItem(price="price_base", quantity=1), LineItem(price="price_seasonal", quantity=1)]
    plan = plan_reconciled_phases(
        [_rule(utc(2025, 5, 1), utc(2025, 9, 1))], current_start, current_end, items, prices
    )
    assert plan.phases[1].months == 2
    assert plan.phases[1].quantity_for("price_seasonal") == 1
    _assert_contiguous(plan.phases, current_start)


def test_reconciled_plan_without_opt_in_is_base_only(prices: PriceRefs) -> None:
    rules = [CompactRule(c="Surf City", z="28445", b=2, s=5), CompactRule(c="Wilmington", z="28401", b=2)]
    plan = plan_reconciled_phases(
        rules, utc(2025, 4, 15), utc(2025, 5, 1), [LineItem(price="price_base", quantity=2)], prices
    )
    assert len(plan.phases) == 2
    assert plan.phases[-1].items == (LineItem(price="price_base", quantity=2),)


def test_reconciled_plan_base_quantity_falls_back_to_rule_count(prices: PriceRefs) -> None:
    rules = [_rule(utc(2025, 5, 1), utc(2025, 10, 1)), CompactRule(c="Wilmington", z="28401", b=2)]
    plan = plan_reconciled_phases(rules, utc(2025, 4, 15), utc(2025, 5, 1), [], prices)
    assert plan.base_quantity == 2
    assert plan.phases[0].quantity_for("price_base") == 2


def test_reconciled_plan_open_current_phase_gets_month_end(prices: PriceRefs) -> None:
    plan = plan_reconciled_phases(
        [_rule(utc(2025, 6, 1), utc(2025, 8, 1))],
        utc(2025, 4, 15),
        None,
        [LineItem(price="price_base", quantity=1)],
        prices,
    )
    assert plan.phases[0].end_date == utc(2025, 5, 1)
    _assert_contiguous(plan.phases, utc(2025, 4, 15))


def test_reconciled_plan_caps_phase_count(prices: PriceRefs) -> None:
    """Many short seasons exceed the cap; the furthest bounded phases are dropped, the tail stays."""
    rules = [_rule(utc(2025 + n, 6, 1), utc(2025 + n, 7, 1)) for n in range(8)]
    settings = SchedulingSettings(max_schedule_phases=6)
    plan = plan_reconciled_phases(
        rules, utc(2025, 4, 15), utc(2025, 5, 1), [LineItem(price="price_base", quantity=8)], prices, settings
    )

    assert plan.truncated
    assert plan.dropped_phases > 0
    assert len(plan.phases) <= 6
    assert plan.phases[-1].open_ended
    assert plan.phases[-2].quantity_for("price_seasonal") == 1
    _assert_contiguous(plan.phases, utc(2025, 4, 15))


def test_reconciled_plan_without_base_raises(prices: PriceRefs) -> None:
    with pytest.raises(NoBillableItemsError):
        plan_reconciled_phases([], utc(2025, 4, 15), utc(2025, 5, 1), [], prices)
