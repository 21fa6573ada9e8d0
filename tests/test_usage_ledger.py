"""
Tests for the usage ledger repository.

Statements are compiled with the PostgreSQL dialect to check the upsert
shape; the session itself is mocked.
"""

from datetime import UTC, date, datetime
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, OperationalError

from farmbook.db.models import UsageLedgerEntry
from farmbook.exceptions import PersistenceError
from farmbook.models.api import Feature
from farmbook.services.usage_ledger import COUNTER_COLUMNS, UsageLedger, period_start_for

TOKYO = ZoneInfo("Asia/Tokyo")


def _sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


class TestPeriodStart:
    """Calendar month bucketing."""

    @pytest.mark.parametrize(
        ("now", "expected"),
        [
            (datetime(2024, 1, 31, 14, 59, tzinfo=UTC), date(2024, 1, 1)),
            (datetime(2024, 1, 31, 15, 0, tzinfo=UTC), date(2024, 2, 1)),
            (datetime(2024, 12, 31, 15, 0, tzinfo=UTC), date(2025, 1, 1)),
            (datetime(2024, 2, 29, 0, 0, tzinfo=UTC), date(2024, 2, 1)),
        ],
    )
    def test_first_of_month_in_zone(self, now: datetime, expected: date):
        assert period_start_for(now, TOKYO) == expected

    def test_utc_zone(self):
        now = datetime(2024, 1, 31, 15, 0, tzinfo=UTC)
        assert period_start_for(now, ZoneInfo("UTC")) == date(2024, 1, 1)


class TestIncrement:
    """Atomic counter increments."""

    async def test_single_upsert_statement(self, db_session: AsyncMock):
        result = MagicMock()
        result.scalar_one = MagicMock(return_value=4)
        db_session.execute = AsyncMock(return_value=result)
        ledger = UsageLedger(db_session)

        value = await ledger.increment(uuid4(), Feature.EXPORT, date(2024, 5, 1))

        assert value == 4
        assert db_session.execute.await_count == 1
        sql = _sql(db_session.execute.await_args.args[0])
        assert "INSERT INTO usage_ledger" in sql
        assert "ON CONFLICT (user_id, period_start) DO UPDATE" in sql
        assert "usage_ledger.export_count +" in sql
        assert "RETURNING usage_ledger.export_count" in sql
        db_session.commit.assert_awaited_once()

    @pytest.mark.parametrize("feature", list(Feature))
    async def test_touches_only_the_feature_column(self, db_session: AsyncMock, feature: Feature):
        result = MagicMock()
        result.scalar_one = MagicMock(return_value=1)
        db_session.execute = AsyncMock(return_value=result)

        await UsageLedger(db_session).increment(uuid4(), feature, date(2024, 5, 1))

        sql = _sql(db_session.execute.await_args.args[0])
        update_clause = sql.split("DO UPDATE SET", 1)[1]
        for other, column in COUNTER_COLUMNS.items():
            assert (column in update_clause) == (other == feature)

    async def test_operational_error_is_transient(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(
            side_effect=OperationalError("INSERT", {}, Exception("connection reset"))
        )

        with pytest.raises(PersistenceError) as exc_info:
            await UsageLedger(db_session).increment(uuid4(), Feature.EXPORT, date(2024, 5, 1))

        assert exc_info.value.transient is True
        db_session.rollback.assert_awaited_once()

    async def test_integrity_error_is_not_transient(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(
            side_effect=IntegrityError("INSERT", {}, Exception("check violated"))
        )

        with pytest.raises(PersistenceError) as exc_info:
            await UsageLedger(db_session).increment(uuid4(), Feature.EXPORT, date(2024, 5, 1))

        assert exc_info.value.transient is False


class TestGetOrCreate:
    """Lazy row creation."""

    async def test_insert_ignore_then_select(self, db_session: AsyncMock):
        user_id = uuid4()
        entry = MagicMock(spec=UsageLedgerEntry)
        entry.user_id = user_id
        entry.period_start = date(2024, 5, 1)
        entry.receipt_scan_count = 7
        entry.export_count = 1
        entry.assistant_count = 0
        select_result = MagicMock()
        select_result.scalar_one = MagicMock(return_value=entry)
        db_session.execute = AsyncMock(side_effect=[MagicMock(), select_result])

        counts = await UsageLedger(db_session).get_or_create(user_id, date(2024, 5, 1))

        assert counts.receipt_scan_count == 7
        assert counts.count_for(Feature.EXPORT) == 1
        insert_sql = _sql(db_session.execute.await_args_list[0].args[0])
        assert "ON CONFLICT (user_id, period_start) DO NOTHING" in insert_sql
        select_sql = _sql(db_session.execute.await_args_list[1].args[0])
        assert select_sql.startswith("SELECT")
        db_session.commit.assert_awaited_once()

    async def test_failure_wrapped(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(
            side_effect=OperationalError("SELECT", {}, Exception("timeout"))
        )

        with pytest.raises(PersistenceError, match="usage_ledger.get_or_create"):
            await UsageLedger(db_session).get_or_create(uuid4(), date(2024, 5, 1))

        db_session.rollback.assert_awaited_once()
