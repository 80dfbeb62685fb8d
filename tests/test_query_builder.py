"""Unit tests for the named-bind SELECT builder."""

import pytest

from blendfolio.storage.query_builder import Query, expand_in


class TestQuery:
    def test_none_filters_skipped(self):
        sql, params = Query("parsed_events").where_eq("user_address", "user", "G1").where_eq("pool_id", "pool", None).select()
        assert "user_address = $user" in sql
        assert "pool_id" not in sql
        assert params == {"user": "G1"}

    def test_in_list_expansion(self):
        sql, params = Query("t").where_in("action_type", "action", ["supply", "withdraw"]).select()
        assert "action_type IN ($action_0, $action_1)" in sql
        assert params == {"action_0": "supply", "action_1": "withdraw"}

    def test_empty_in_list_matches_nothing(self):
        sql, params = Query("t").where_in("action_type", "action", []).select()
        assert "IN (NULL)" in sql
        assert params == {}
        assert expand_in("x", []) == ("(NULL)", {})

    def test_range_bounds(self):
        sql, params = Query("t").where_range("rate_date", "d", 1, 5, end_inclusive=False).select()
        assert "rate_date >= $d_start" in sql
        assert "rate_date < $d_end" in sql
        assert params == {"d_start": 1, "d_end": 5}

    def test_open_range(self):
        sql, params = Query("t").where_range("rate_date", "d", None, None).select()
        assert "WHERE" not in sql
        assert params == {}

    def test_duplicate_bind_rejected(self):
        q = Query("t").where_eq("a", "x", 1)
        with pytest.raises(ValueError):
            q.where_eq("b", "x", 2)

    def test_identifiers_validated(self):
        with pytest.raises(ValueError):
            Query("t; DROP TABLE t")
        with pytest.raises(ValueError):
            Query("t").where_eq("a = 1 OR 1", "x", 1)

    def test_immutable(self):
        base = Query("t")
        base.where_eq("a", "x", 1)
        assert base.predicates == ()

    def test_page_and_count_share_filters(self):
        q = Query("parsed_events").where_eq("user_address", "user", "G1").order_by("ledger_closed_at DESC")
        page_sql, page_params = q.page(10, 20, "event_id")
        count_sql, count_params = q.count()
        where = page_sql.split("WHERE", 1)[1].split("ORDER BY", 1)[0].strip()
        assert count_sql.endswith(where)
        assert page_params == {"user": "G1", "page_limit": 10, "page_offset": 20}
        assert count_params == {"user": "G1"}
        assert "ORDER BY" not in count_sql

    def test_negative_page_rejected(self):
        with pytest.raises(ValueError):
            Query("t").page(-1, 0)
