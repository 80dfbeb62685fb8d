"""Unit tests for daily balance reconstruction."""

from datetime import date, datetime, timedelta

import pytest

from blendfolio.core.models import Event, RateIndex
from blendfolio.domain.balances import (
    BalanceSnapshot,
    LivePosition,
    calculate_earnings_stats,
    daily_totals,
    detect_position_changes,
    reconstruct_balance_history,
)

USER = "GUSER1"
POOL = "CPOOL1"
POOL_2 = "CPOOL2"
USDC = "CUSDC"


def _event(action: str, when: datetime, *, units: float | None = None, amount: float | None = None,
           pool: str = POOL, asset: str = USDC, seq: int = 0) -> Event:
    return Event(action, USER, pool, when, asset_address=asset, amount_tokens=amount, index_units=units,
                 ledger_sequence=seq, event_id=seq)


def _rates(pool: str = POOL, b: tuple[float, ...] = (1.00, 1.01, 1.02), start: date = date(2024, 1, 1)):
    return [RateIndex(pool, USDC, start + timedelta(days=i), rate, 1.0) for i, rate in enumerate(b)]


def _history(events, rates=None, **kwargs):
    params = dict(user_address=USER, asset_address=USDC, start=date(2024, 1, 1), end=date(2024, 1, 3))
    params.update(kwargs)
    return reconstruct_balance_history(events, _rates() if rates is None else rates, **params)


class TestReconstruct:
    """Replay into gap-free daily snapshots."""

    def test_no_events_is_empty(self):
        history = _history([])
        assert history.snapshots == []
        assert history.first_event_date is None
        assert not history

    def test_accrual_and_baseline(self):
        history = _history([_event("supply", datetime(2024, 1, 1, 10), units=100.0)])

        assert [s.date for s in history.snapshots] == [
            date(2023, 12, 31), date(2024, 1, 1), date(2024, 1, 2), date(2024, 1, 3)
        ]
        baseline = history.snapshots[0]
        assert baseline.is_baseline
        assert baseline.net_balance == 0.0
        assert [s.supply_balance for s in history.snapshots[1:]] == pytest.approx([100.0, 101.0, 102.0])
        assert history.first_event_date == date(2024, 1, 1)

    def test_no_gaps_between_events(self):
        events = [
            _event("supply", datetime(2024, 1, 1, 10), units=100.0, seq=1),
            _event("supply", datetime(2024, 1, 5, 10), units=50.0, seq=2),
        ]
        history = _history(events, start=date(2024, 1, 1), end=date(2024, 1, 7), include_baseline=False)
        days = [s.date for s in history.snapshots]
        assert days == [date(2024, 1, 1) + timedelta(days=i) for i in range(7)]
        assert [s.supply_btokens for s in history.snapshots] == [100.0] * 4 + [150.0] * 3

    def test_amount_divided_by_rate_when_units_missing(self):
        events = [_event("supply", datetime(2024, 1, 2, 10), amount=101.0)]
        history = _history(events, include_baseline=False)
        first = history.snapshots[0]
        assert first.date == date(2024, 1, 2)
        assert first.supply_btokens == pytest.approx(100.0)

    def test_collateral_and_debt(self):
        events = [
            _event("supply_collateral", datetime(2024, 1, 1, 9), units=200.0, seq=1),
            _event("borrow", datetime(2024, 1, 1, 10), units=50.0, seq=2),
            _event("repay", datetime(2024, 1, 2, 10), units=20.0, seq=3),
        ]
        history = _history(events, include_baseline=False)
        last = history.snapshots[-1]
        assert last.collateral_btokens == 200.0
        assert last.liabilities_dtokens == 30.0
        assert last.net_balance == pytest.approx(200.0 * 1.02 - 30.0)

    def test_window_after_first_event_has_no_baseline(self):
        history = _history([_event("supply", datetime(2024, 1, 1, 10), units=100.0)], start=date(2024, 1, 2))
        assert not any(s.is_baseline for s in history.snapshots)
        assert history.snapshots[0].supply_btokens == 100.0

    def test_explicit_first_event_date_suppresses_baseline(self):
        history = _history(
            [_event("supply", datetime(2024, 1, 2, 10), units=100.0)],
            first_event_date=date(2023, 6, 1),
        )
        assert not any(s.is_baseline for s in history.snapshots)
        assert history.first_event_date == date(2023, 6, 1)

    def test_each_pool_starts_at_its_first_event(self):
        events = [
            _event("supply", datetime(2024, 1, 1, 10), units=100.0, seq=1),
            _event("supply", datetime(2024, 1, 2, 10), units=10.0, pool=POOL_2, seq=2),
        ]
        history = _history(events, rates=_rates() + _rates(POOL_2))
        assert [s.date for s in history.for_pool(POOL_2)] == [date(2024, 1, 2), date(2024, 1, 3)]
        baselines = [s for s in history.snapshots if s.is_baseline]
        assert [s.pool_id for s in baselines] == [POOL]
        assert history.pools() == [POOL, POOL_2]

    def test_other_assets_and_actions_ignored(self):
        events = [
            _event("supply", datetime(2024, 1, 1, 10), units=100.0, seq=1),
            _event("supply", datetime(2024, 1, 1, 11), units=999.0, asset="CXLM", seq=2),
            _event("claim", datetime(2024, 1, 2, 11), amount=5.0, seq=3),
        ]
        history = _history(events, include_baseline=False)
        assert {s.supply_btokens for s in history.snapshots} == {100.0}

    def test_local_day_bucketing(self):
        # 03:00 UTC on the 2nd is still the 1st in Los Angeles.
        history = _history(
            [_event("supply", datetime(2024, 1, 2, 3), units=100.0)],
            tz="America/Los_Angeles",
            include_baseline=False,
        )
        assert history.snapshots[0].date == date(2024, 1, 1)
        assert history.timezone == "America/Los_Angeles"

    def test_rate_gaps_reported(self):
        rates = [RateIndex(POOL, USDC, date(2024, 1, 1), 1.0, 1.0), RateIndex(POOL, USDC, date(2024, 1, 3), 1.02, 1.0)]
        history = _history([_event("supply", datetime(2024, 1, 1, 10), units=100.0)], rates=rates)
        assert [(g.on, g.resolved_by) for g in history.gaps] == [(date(2024, 1, 2), "forward_fill")]
        assert history.snapshots[2].b_rate == 1.0

    def test_live_position_overrides_today(self):
        live = {POOL: LivePosition(200.0, 0.0, 0.0, 1.05, 1.0)}
        history = _history(
            [_event("supply", datetime(2024, 1, 1, 10), units=100.0)],
            live_positions=live,
            today=date(2024, 1, 3),
        )
        today = history.snapshots[-1]
        assert today.is_live
        assert today.supply_balance == pytest.approx(210.0)
        assert not history.snapshots[-2].is_live

    def test_live_outside_window_ignored(self):
        live = {POOL: LivePosition(200.0, 0.0, 0.0, 1.05, 1.0)}
        history = _history(
            [_event("supply", datetime(2024, 1, 1, 10), units=100.0)],
            live_positions=live,
            today=date(2024, 2, 1),
        )
        assert not any(s.is_live for s in history.snapshots)

    def test_start_after_end_is_empty(self):
        history = _history([_event("supply", datetime(2024, 1, 1, 10), units=100.0)],
                           start=date(2024, 1, 5), end=date(2024, 1, 1))
        assert history.snapshots == []

    def test_to_dict_is_serializable(self):
        d = _history([_event("supply", datetime(2024, 1, 1, 10), units=100.0)]).to_dict()
        assert d["start"] == "2024-01-01"
        assert d["snapshots"][1]["supply_balance"] == pytest.approx(100.0)
        assert d["snapshots"][0]["date"] == "2023-12-31"


def _snap(day: int, supply: float, b_rate: float = 1.0, pool: str = POOL) -> BalanceSnapshot:
    return BalanceSnapshot(pool, USDC, date(2024, 1, day), supply, 0.0, 0.0, b_rate=b_rate, rate_source="exact")


class TestPositionChanges:
    def test_accrual_only_is_not_a_change(self):
        snaps = [_snap(1, 100.0, 1.0), _snap(2, 100.0, 1.01)]
        assert detect_position_changes(snaps) == []

    def test_deposit_detected(self):
        snaps = [_snap(1, 100.0), _snap(2, 100.0), _snap(3, 150.0)]
        changes = detect_position_changes(snaps)
        assert len(changes) == 1
        assert changes[0].date == date(2024, 1, 3)
        assert changes[0].index == 2
        assert changes[0].supply_change == 50.0

    def test_below_threshold_ignored(self):
        assert detect_position_changes([_snap(1, 100.0), _snap(2, 100.005)]) == []

    def test_baseline_not_counted_in_history(self):
        history = _history([_event("supply", datetime(2024, 1, 1, 10), units=100.0)])
        assert history.position_changes == []


class TestEarnings:
    def test_single_day_has_no_stats(self):
        stats = calculate_earnings_stats([_snap(1, 100.0)])
        assert stats.day_count == 0
        assert stats.total_interest == 0.0

    def test_interest_and_apy(self):
        history = _history([_event("supply", datetime(2024, 1, 1, 10), units=100.0)])
        stats = history.earnings
        assert stats.day_count == 2
        assert stats.total_interest == pytest.approx(2.0)
        assert stats.avg_daily_interest == pytest.approx(1.0)
        assert stats.avg_position == pytest.approx(101.5)
        expected_apy = 2.0 / 101.5 * (365 / 2) * 100
        assert stats.current_apy == pytest.approx(expected_apy)
        assert stats.per_pool[POOL].projected_annual == pytest.approx(102.0 * expected_apy / 100)

    def test_per_pool_split(self):
        snaps = [_snap(1, 100.0), _snap(2, 100.0, 1.01), _snap(1, 10.0, pool=POOL_2), _snap(2, 10.0, 1.1, POOL_2)]
        stats = calculate_earnings_stats(snaps)
        assert stats.per_pool[POOL].total_interest == pytest.approx(1.0)
        assert stats.per_pool[POOL_2].total_interest == pytest.approx(1.0)
        assert stats.total_interest == pytest.approx(2.0)


class TestDailyTotals:
    def test_principal_and_yield(self):
        totals = daily_totals([_snap(1, 100.0, 1.0), _snap(2, 100.0, 1.01), _snap(3, 150.0, 1.02)])
        assert [t.deposit for t in totals] == pytest.approx([100.0, 100.0, 153.0])
        assert totals[1].yield_amount == pytest.approx(1.0)
        assert totals[2].yield_amount == pytest.approx(0.0)
        assert totals[2].by_pool == pytest.approx({POOL: 153.0})
