"""Unit tests for the query builder and the in-memory backend."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from tenantguard.storage.backends.memory import InMemoryBackend, matches
from tenantguard.storage.query import (
    AnyOf,
    Eq,
    ILike,
    IsNull,
    Query,
    camel_to_snake,
    comparable,
    contains_pattern,
    escape_like,
    like_to_regex,
)


@pytest.mark.unit
class TestQueryBuilder:
    def test_builder_is_immutable(self) -> None:
        base = Query("customers")
        scoped = base.eq("tenant_id", "t1")
        assert base.filters == ()
        assert scoped.filters == (Eq("tenant_id", "t1"),)

    def test_or_with_no_filters_is_noop(self) -> None:
        query = Query("customers")
        assert query.or_() is query

    def test_range_is_inclusive(self) -> None:
        query = Query("customers").range(20, 39)
        assert query.offset == 20
        assert query.limit == 20

    def test_select_without_columns_means_all(self) -> None:
        assert Query("customers").select().columns is None

    def test_unpaged_drops_paging_and_order(self) -> None:
        query = Query("customers").eq("a", 1).order("b").range(0, 9).unpaged()
        assert query.filters == (Eq("a", 1),)
        assert query.ordering == ()
        assert query.limit is None


@pytest.mark.unit
class TestLikeHelpers:
    def test_camel_to_snake(self) -> None:
        assert camel_to_snake("createdAt") == "created_at"
        assert camel_to_snake("company_name") == "company_name"

    def test_escape_like(self) -> None:
        assert escape_like("50%_off\\") == "50\\%\\_off\\\\"

    def test_contains_pattern_matches_literally(self) -> None:
        regex = like_to_regex(contains_pattern("a_b"))
        assert regex.match("xxA_Byy")
        assert not regex.match("xxaXbyy")

    def test_like_wildcards(self) -> None:
        assert like_to_regex("ac%e").match("ACME")
        assert like_to_regex("a_c").match("abc")
        assert not like_to_regex("a_c").match("abbc")

    def test_comparable_makes_datetimes_aware_utc(self) -> None:
        naive = comparable(datetime(2024, 1, 1, 12))
        assert naive == datetime(2024, 1, 1, 12, tzinfo=UTC)
        assert naive.tzinfo is UTC

        shifted = comparable(datetime(2024, 1, 1, 14, tzinfo=timezone(timedelta(hours=2))))
        assert shifted == naive
        assert shifted.tzinfo is UTC


@pytest.mark.unit
class TestMatches:
    def test_missing_column_is_null(self) -> None:
        assert matches({}, IsNull("deleted_at"))
        assert not matches({}, Eq("tenant_id", "t1"))

    def test_or_group(self) -> None:
        group = AnyOf((ILike("name", "%acme%"), ILike("email", "%acme%")))
        assert matches({"name": "x", "email": "sales@acme.io"}, group)
        assert not matches({"name": "x", "email": None}, group)


@pytest.mark.unit
class TestInMemoryBackend:
    @pytest.fixture()
    def seeded(self) -> InMemoryBackend:
        backend = InMemoryBackend()
        backend.seed(
            "customers",
            [
                {"id": "c1", "tenant_id": "t1", "company_name": "Beta", "rank": 2},
                {"id": "c2", "tenant_id": "t1", "company_name": "Alpha", "rank": None},
                {"id": "c3", "tenant_id": "t2", "company_name": "Gamma", "rank": 1},
            ],
        )
        return backend

    async def test_select_with_count(self, seeded) -> None:
        result = await seeded.select(Query("customers").eq("tenant_id", "t1"), count=True)
        assert result.count == 2
        assert {r["id"] for r in result.data} == {"c1", "c2"}

    async def test_head_returns_count_only(self, seeded) -> None:
        result = await seeded.select(Query("customers"), count=True, head=True)
        assert result.data == []
        assert result.count == 3

    async def test_order_puts_nulls_last(self, seeded) -> None:
        result = await seeded.select(Query("customers").order("rank"))
        assert [r["id"] for r in result.data] == ["c3", "c1", "c2"]

    async def test_order_descending_and_range(self, seeded) -> None:
        query = Query("customers").order("company_name", ascending=False).range(1, 1)
        result = await seeded.select(query, count=True)
        assert [r["company_name"] for r in result.data] == ["Beta"]
        assert result.count == 3

    async def test_projection(self, seeded) -> None:
        result = await seeded.select(Query("customers").eq("id", "c1").select("id"))
        assert result.data == [{"id": "c1"}]

    async def test_returned_rows_are_copies(self, seeded) -> None:
        result = await seeded.select(Query("customers").eq("id", "c1"))
        result.data[0]["tenant_id"] = "hacked"
        again = await seeded.select(Query("customers").eq("id", "c1"))
        assert again.data[0]["tenant_id"] == "t1"

    async def test_insert_fills_defaults(self) -> None:
        backend = InMemoryBackend()
        row = await backend.insert("customers", {"company_name": "Acme"})
        assert row["id"]
        assert row["created_at"] is not None
        assert row["updated_at"] is not None

    async def test_update_only_touches_matching_rows(self, seeded) -> None:
        rows = await seeded.update(
            Query("customers").eq("id", "c3").eq("tenant_id", "t1"), {"company_name": "X"}
        )
        assert rows == []
        untouched = await seeded.select(Query("customers").eq("id", "c3"))
        assert untouched.data[0]["company_name"] == "Gamma"

    async def test_update_returns_updated_rows(self, seeded) -> None:
        rows = await seeded.update(Query("customers").eq("tenant_id", "t1"), {"rank": 9})
        assert sorted(r["id"] for r in rows) == ["c1", "c2"]
        assert all(r["rank"] == 9 for r in rows)

    async def test_delete(self, seeded) -> None:
        assert await seeded.delete(Query("customers").eq("tenant_id", "t1")) == 2
        assert [r["id"] for r in seeded.rows("customers")] == ["c3"]
