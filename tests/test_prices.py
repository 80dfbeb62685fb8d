"""Unit tests for batch price resolution."""

from datetime import date

from blendfolio.core.models import PriceObservation
from blendfolio.domain.prices import PriceTable, max_requested_date, resolve_prices

USDC = "CUSDC"
XLM = "CXLM"


def _px(token: str, day: int, price: float, price_id: int) -> PriceObservation:
    return PriceObservation(token, date(2024, 1, day), price, price_id)


class TestResolvePrices:
    def test_exact_match(self):
        table = resolve_prices([_px(USDC, 1, 1.0, 1)], [(USDC, date(2024, 1, 1))])
        hit = table.get(USDC, date(2024, 1, 1))
        assert hit.price == 1.0
        assert hit.source == "exact"
        assert table.gaps == []

    def test_duplicate_rows_lowest_id_wins(self):
        rows = [_px(USDC, 1, 2.0, 5), _px(USDC, 1, 1.5, 3), _px(USDC, 1, 9.0, 7)]
        table = resolve_prices(rows, [(USDC, date(2024, 1, 1))])
        assert table.price(USDC, date(2024, 1, 1)) == 1.5

    def test_forward_fill_from_latest_prior_row(self):
        rows = [_px(USDC, 1, 1.0, 1), _px(USDC, 3, 1.1, 2), _px(USDC, 9, 1.3, 3)]
        table = resolve_prices(rows, [(USDC, date(2024, 1, 5))])
        hit = table.get(USDC, date(2024, 1, 5))
        assert (hit.price, hit.source) == (1.1, "forward_fill")
        assert table.gaps == []

    def test_live_fallback_records_gap(self):
        table = resolve_prices([_px(USDC, 3, 1.0, 1)], [(USDC, date(2024, 1, 1)), (XLM, date(2024, 1, 2))],
                               {USDC: 0.99})
        assert table.get(USDC, date(2024, 1, 1)).source == "live_fallback"
        assert table.price(USDC, date(2024, 1, 1)) == 0.99
        assert table.price(XLM, date(2024, 1, 2)) == 0.0
        assert {(g.subject, g.on) for g in table.gaps} == {(USDC, date(2024, 1, 1)), (XLM, date(2024, 1, 2))}
        assert all(g.kind == "price" and g.resolved_by == "live_fallback" for g in table.gaps)

    def test_duplicate_pairs_resolved_once(self):
        pairs = [(USDC, date(2024, 1, 2)), (USDC, date(2024, 1, 2))]
        table = resolve_prices([], pairs)
        assert len(table.prices) == 1
        assert len(table.gaps) == 1

    def test_by_token_view(self):
        rows = [_px(USDC, 1, 1.0, 1), _px(XLM, 1, 0.1, 2)]
        table = resolve_prices(rows, [(USDC, date(2024, 1, 1)), (XLM, date(2024, 1, 1)), (XLM, date(2024, 1, 2))])
        view = table.by_token()
        assert set(view) == {USDC, XLM}
        assert list(view[XLM]) == ["2024-01-01", "2024-01-02"]


class TestPriceTable:
    def test_unrequested_pair_reads_zero(self):
        assert PriceTable().price(USDC, date(2024, 1, 1)) == 0.0
        assert PriceTable().get(USDC, date(2024, 1, 1)) is None

    def test_max_requested_date(self):
        assert max_requested_date([(USDC, date(2024, 1, 1)), (XLM, date(2024, 2, 1))]) == date(2024, 2, 1)
        assert max_requested_date([]) is None
