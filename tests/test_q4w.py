"""Unit tests for backstop Q4W aggregation, filtering and paging."""

from datetime import datetime, timezone

import pytest

from blendfolio.core.errors import ValidationError
from blendfolio.core.models import Event, Pool
from blendfolio.domain.q4w import (
    aggregate_positions,
    build_q4w_report,
    filter_positions,
    net_q4w_shares,
    share_rates,
    sort_positions,
)

POOL = "CPOOL1"
POOL_2 = "CPOOL2"
NOW = 1_700_000_000
TS = datetime(2023, 11, 1)


def _ev(action: str, user: str, shares: float | None = None, *, exp: int | None = None, lp: float | None = None,
        pool: str = POOL) -> Event:
    return Event(action, user, pool, TS, shares=shares, lp_tokens=lp, q4w_exp=exp)


def _events() -> list[Event]:
    return [
        _ev("deposit", "U1", 100.0, lp=200.0),
        _ev("deposit", "U2", 50.0, lp=100.0),
        _ev("queue_withdrawal", "U1", 40.0, exp=NOW + 1_000),
        _ev("queue_withdrawal", "U1", 10.0, exp=NOW - 5),
        _ev("queue_withdrawal", "U2", 30.0, exp=NOW - 10),
        # U3: queued then cancelled in full
        _ev("deposit", "U3", 20.0, lp=40.0),
        _ev("queue_withdrawal", "U3", 20.0, exp=NOW + 50),
        _ev("dequeue_withdrawal", "U3", 20.0, exp=NOW + 50),
        # U4: queued then fulfilled by withdraw
        _ev("deposit", "U4", 10.0, lp=20.0),
        _ev("queue_withdrawal", "U4", 10.0, exp=NOW - 100),
        _ev("withdraw", "U4", 10.0, exp=NOW - 100, lp=20.0),
    ]


class TestAggregation:
    def test_cancelled_and_fulfilled_keys_dropped(self):
        net = net_q4w_shares(_events())
        users = {user for user, _, _ in net}
        assert users == {"U1", "U2"}
        assert all(v > 0 for v in net.values())

    def test_locked_unlocked_partition(self):
        positions = {p.user_address: p for p in aggregate_positions(_events(), NOW)}
        u1 = positions["U1"]
        assert (u1.locked_shares, u1.unlocked_shares) == (40.0, 10.0)
        assert u1.earliest_unlock == NOW + 1_000
        assert u1.has_unlocked
        u2 = positions["U2"]
        assert (u2.locked_shares, u2.unlocked_shares) == (0.0, 30.0)
        assert u2.earliest_unlock is None
        net = net_q4w_shares(_events())
        for p in positions.values():
            assert p.locked_shares >= 0 and p.unlocked_shares >= 0
            assert p.total_shares == pytest.approx(sum(v for (u, _, _), v in net.items() if u == p.user_address))

    def test_share_rate_converts_to_lp(self):
        positions = {p.user_address: p for p in aggregate_positions(_events(), NOW)}
        assert positions["U1"].share_rate == pytest.approx(2.0)
        assert positions["U1"].locked_lp_tokens == pytest.approx(80.0)

    def test_zero_share_pool_uses_fallback_rate(self):
        events = [_ev("queue_withdrawal", "U9", 5.0, exp=NOW + 1, pool=POOL_2), _ev("donate", "U9", lp=30.0, pool=POOL_2)]
        assert share_rates(events) == {POOL_2: 1.0}
        (position,) = aggregate_positions(events, NOW, default_share_rate=1.0)
        assert position.share_rate == 1.0
        assert position.locked_lp_tokens == 5.0

    def test_dust_below_epsilon_dropped(self):
        events = [_ev("queue_withdrawal", "U1", 1e-7, exp=NOW + 1)]
        assert net_q4w_shares(events) == {}

    def test_pool_metadata_attached(self):
        pools = {POOL: Pool(POOL, "Fixed XLM-USDC", "Fixed")}
        (p, *_) = aggregate_positions(_events(), NOW, pools=pools)
        assert p.pool_short_name == "Fixed"


class TestFilterAndSort:
    def test_status_filters(self):
        positions = aggregate_positions(_events(), NOW)
        assert {p.user_address for p in filter_positions(positions, "locked")} == {"U1"}
        assert {p.user_address for p in filter_positions(positions, "unlocked")} == {"U1", "U2"}
        assert len(filter_positions(positions, "all")) == 2

    def test_invalid_status(self):
        with pytest.raises(ValidationError) as exc:
            filter_positions([], "pending")
        assert exc.value.field == "status"

    def test_unlocked_first_then_earliest_unlock(self):
        events = _events() + [_ev("queue_withdrawal", "U5", 5.0, exp=NOW + 10)]
        ordered = [p.user_address for p in sort_positions(aggregate_positions(events, NOW))]
        # U1 and U2 hold unlocked shares; U1 has a pending unlock, U2 has none.
        assert ordered == ["U1", "U2", "U5"]

    def test_order_by_lp_tokens(self):
        ordered = sort_positions(aggregate_positions(_events(), NOW), "lp_tokens", "desc")
        assert [p.user_address for p in ordered] == ["U1", "U2"]

    def test_lp_tokens_order_keeps_unlocked_first(self):
        events = [
            _ev("deposit", "A", 1.0, lp=2.0),
            _ev("queue_withdrawal", "A", 1.0, exp=NOW - 1),
            _ev("deposit", "B", 100.0, lp=200.0),
            _ev("queue_withdrawal", "B", 100.0, exp=NOW + 1_000),
        ]
        ordered = sort_positions(aggregate_positions(events, NOW), "lp_tokens", "desc")
        assert [p.user_address for p in ordered] == ["A", "B"]


class TestReport:
    def test_page_and_total_agree(self):
        first = build_q4w_report(_events(), NOW, limit=1, offset=0)
        second = build_q4w_report(_events(), NOW, limit=1, offset=1)
        assert first.total_count == second.total_count == 2
        assert len(first.positions) == len(second.positions) == 1
        assert first.positions[0].user_address != second.positions[0].user_address

    def test_summary_ignores_status_filter(self):
        report = build_q4w_report(_events(), NOW, status="locked", lp_price=0.5)
        assert report.total_count == 1
        assert report.summary.total_users == 2
        assert report.summary.total_locked_lp == pytest.approx(80.0)
        assert report.summary.total_unlocked_lp == pytest.approx(80.0)
        assert report.to_dict()["summary"]["total_usd"] == pytest.approx(80.0)

    def test_pool_filter_applies_to_summary(self):
        events = _events() + [_ev("queue_withdrawal", "U7", 5.0, exp=NOW + 1, pool=POOL_2)]
        report = build_q4w_report(events, NOW, pool_id=POOL_2)
        assert report.summary.total_users == 1
        assert [p.pool_id for p in report.positions] == [POOL_2]

    def test_accepts_datetime(self):
        now = datetime.fromtimestamp(NOW, timezone.utc)
        assert build_q4w_report(_events(), now).as_of == NOW

    def test_negative_paging_rejected(self):
        with pytest.raises(ValidationError):
            build_q4w_report(_events(), NOW, offset=-1)
