"""
Tests for the subscription repository.
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from farmbook.db.models import Subscription
from farmbook.exceptions import PersistenceError
from farmbook.models.api import BillingStatus, PlanTier
from farmbook.models.domain import SubscriptionState
from farmbook.services.retry import retry_transient
from farmbook.services.subscriptions import SubscriptionRepository


def _sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


def _row(user_id, **overrides) -> MagicMock:
    row = MagicMock(spec=Subscription)
    row.user_id = user_id
    row.plan_tier = overrides.get("plan_tier", "premium")
    row.billing_status = overrides.get("billing_status", "active")
    row.external_customer_ref = overrides.get("external_customer_ref", "cus_1")
    row.external_subscription_ref = overrides.get("external_subscription_ref", "sub_1")
    row.period_start = overrides.get("period_start")
    row.period_end = overrides.get("period_end")
    row.last_event_at = overrides.get("last_event_at")
    return row


def _result(row) -> MagicMock:
    result = MagicMock()
    result.scalar_one_or_none = MagicMock(return_value=row)
    return result


class TestFind:
    async def test_maps_row_to_state(self, db_session: AsyncMock):
        user_id = uuid4()
        db_session.execute = AsyncMock(return_value=_result(_row(user_id)))

        state = await SubscriptionRepository(db_session).find(user_id)

        assert state == SubscriptionState(
            user_id=user_id,
            plan_tier=PlanTier.PREMIUM,
            billing_status=BillingStatus.ACTIVE,
            external_customer_ref="cus_1",
            external_subscription_ref="sub_1",
        )

    async def test_missing_row(self, db_session: AsyncMock):
        assert await SubscriptionRepository(db_session).find(uuid4()) is None

    async def test_lookup_by_subscription_ref(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(return_value=_result(_row(uuid4())))

        state = await SubscriptionRepository(db_session).find_by_subscription_ref("sub_1")

        assert state is not None
        sql = _sql(db_session.execute.await_args.args[0])
        assert "subscriptions.external_subscription_ref = " in sql

    async def test_read_failure_wrapped(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("x")))

        with pytest.raises(PersistenceError) as exc_info:
            await SubscriptionRepository(db_session).find(uuid4())

        assert exc_info.value.transient
        db_session.rollback.assert_awaited_once()

    async def test_retry_recovers_after_dropped_connection(self, db_session: AsyncMock):
        user_id = uuid4()
        db_session.execute = AsyncMock(
            side_effect=[
                OperationalError("SELECT", {}, Exception("server closed the connection")),
                _result(_row(user_id)),
            ]
        )
        repository = SubscriptionRepository(db_session)

        with patch("farmbook.services.retry.asyncio.sleep", new=AsyncMock()):
            state = await retry_transient(
                lambda: repository.find(user_id), operation_name="subscriptions.find"
            )

        assert state is not None
        assert state.plan_tier == PlanTier.PREMIUM
        db_session.rollback.assert_awaited_once()


class TestGetOrCreate:
    async def test_inserts_free_active_then_reads(self, db_session: AsyncMock):
        user_id = uuid4()
        db_session.execute = AsyncMock(
            side_effect=[MagicMock(), _result(_row(user_id, plan_tier="free", **_no_refs()))]
        )

        state = await SubscriptionRepository(db_session).get_or_create(user_id)

        assert state.plan_tier == PlanTier.FREE
        insert_sql = _sql(db_session.execute.await_args_list[0].args[0])
        assert "ON CONFLICT (user_id) DO NOTHING" in insert_sql

    async def test_missing_after_upsert_raises(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(side_effect=[MagicMock(), _result(None)])

        with pytest.raises(PersistenceError, match="missing"):
            await SubscriptionRepository(db_session).get_or_create(uuid4())


def _no_refs() -> dict:
    return {"external_customer_ref": None, "external_subscription_ref": None}


class TestSave:
    async def test_whole_snapshot_upsert(self, db_session: AsyncMock):
        state = SubscriptionState(
            user_id=uuid4(),
            plan_tier=PlanTier.STANDARD,
            billing_status=BillingStatus.PAST_DUE,
            external_customer_ref="cus_9",
            external_subscription_ref="sub_9",
            period_start=datetime(2024, 5, 1, tzinfo=UTC),
            period_end=datetime(2024, 6, 1, tzinfo=UTC),
            last_event_at=datetime(2024, 5, 3, tzinfo=UTC),
        )

        saved = await SubscriptionRepository(db_session).save(state)

        assert saved == state
        stmt = db_session.execute.await_args.args[0]
        sql = _sql(stmt)
        assert "ON CONFLICT (user_id) DO UPDATE SET" in sql
        for column in (
            "plan_tier",
            "billing_status",
            "external_customer_ref",
            "external_subscription_ref",
            "period_start",
            "period_end",
            "last_event_at",
            "updated_at",
        ):
            assert f"{column} = " in sql.split("DO UPDATE SET", 1)[1]
        params = stmt.compile(dialect=postgresql.dialect()).params
        assert params["plan_tier"] == "standard"
        assert params["billing_status"] == "past_due"
        db_session.commit.assert_awaited_once()

    async def test_write_failure_rolls_back(self, db_session: AsyncMock):
        db_session.execute = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("x")))

        with pytest.raises(PersistenceError):
            await SubscriptionRepository(db_session).save(SubscriptionState(user_id=uuid4()))

        db_session.rollback.assert_awaited_once()
