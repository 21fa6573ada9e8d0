"""
Usage Ledger - Per-user, per-calendar-month counters for metered features.

Rows are created on demand with INSERT ... ON CONFLICT DO NOTHING and
incremented with a single atomic upsert, so concurrent callers never lose
an update and never create duplicate rows for a month.
"""

from datetime import date, datetime
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from farmbook.db.models import UsageLedgerEntry, utc_now
from farmbook.models.api import Feature
from farmbook.models.domain import UsageCounts
from farmbook.observability.logging import get_logger
from farmbook.services.retry import to_persistence_error

logger = get_logger(__name__)

COUNTER_COLUMNS: dict[Feature, str] = {
    Feature.RECEIPT_SCAN: "receipt_scan_count",
    Feature.EXPORT: "export_count",
    Feature.ASSISTANT: "assistant_count",
}


def period_start_for(now: datetime, zone: ZoneInfo) -> date:
    """First day of the calendar month containing `now`, in the metering zone."""
    local = now.astimezone(zone)
    return local.date().replace(day=1)


def _to_counts(entry: UsageLedgerEntry) -> UsageCounts:
    return UsageCounts(
        user_id=entry.user_id,
        period_start=entry.period_start,
        receipt_scan_count=entry.receipt_scan_count,
        export_count=entry.export_count,
        assistant_count=entry.assistant_count,
    )


class UsageLedger:
    """Repository over the usage_ledger table."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_or_create(self, user_id: UUID, period_start: date) -> UsageCounts:
        """
        Fetch this period's counters, creating a zeroed row if none exists.

        Raises:
            PersistenceError: database failure
        """
        table = UsageLedgerEntry.__table__
        stmt = (
            pg_insert(table)
            .values(user_id=user_id, period_start=period_start)
            .on_conflict_do_nothing(index_elements=[table.c.user_id, table.c.period_start])
        )
        try:
            await self.session.execute(stmt)
            result = await self.session.execute(
                select(UsageLedgerEntry)
                .where(
                    UsageLedgerEntry.user_id == user_id,
                    UsageLedgerEntry.period_start == period_start,
                )
                .execution_options(populate_existing=True)
            )
            entry = result.scalar_one()
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise to_persistence_error(exc, "usage_ledger.get_or_create") from exc

        return _to_counts(entry)

    async def increment(self, user_id: UUID, feature: Feature, period_start: date) -> int:
        """
        Add exactly one to a feature's counter for the period; return the new value.

        Creates the period's row if needed, in the same statement.

        Raises:
            PersistenceError: database failure
        """
        table = UsageLedgerEntry.__table__
        column = table.c[COUNTER_COLUMNS[feature]]
        stmt = (
            pg_insert(table)
            .values(user_id=user_id, period_start=period_start, **{column.name: 1})
            .on_conflict_do_update(
                index_elements=[table.c.user_id, table.c.period_start],
                set_={column.name: column + 1, "updated_at": utc_now()},
            )
            .returning(column)
        )
        try:
            result = await self.session.execute(stmt)
            new_value = int(result.scalar_one())
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise to_persistence_error(exc, "usage_ledger.increment") from exc

        logger.debug(
            "usage_ledger_incremented",
            user_id=str(user_id),
            feature=feature.value,
            period_start=period_start.isoformat(),
            count=new_value,
        )
        return new_value
