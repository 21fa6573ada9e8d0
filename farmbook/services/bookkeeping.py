"""
Bookkeeping Reader - Read-only access to a user's sales, expenses and
expense categories.
"""

from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from farmbook.db.models import Expense, ExpenseCategory, Sale
from farmbook.models.domain import ExpenseCategoryRef, ExpenseRecord, SaleRecord
from farmbook.services.retry import to_persistence_error


class BookkeepingReader:
    """Queries scoped to one user."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def active_categories(self, user_id: UUID) -> list[ExpenseCategoryRef]:
        """Active expense categories in display order."""
        stmt = (
            select(ExpenseCategory.id, ExpenseCategory.name)
            .where(ExpenseCategory.user_id == user_id, ExpenseCategory.is_active.is_(True))
            .order_by(ExpenseCategory.display_order, ExpenseCategory.name)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise to_persistence_error(exc, "bookkeeping.active_categories") from exc
        return [ExpenseCategoryRef(id=row.id, name=row.name) for row in result.all()]

    async def sales_between(self, user_id: UUID, start: date, end: date) -> list[SaleRecord]:
        """Sales dated within [start, end], oldest first."""
        stmt = (
            select(Sale)
            .where(Sale.user_id == user_id, Sale.sale_date >= start, Sale.sale_date <= end)
            .order_by(Sale.sale_date, Sale.created_at)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise to_persistence_error(exc, "bookkeeping.sales_between") from exc
        return [
            SaleRecord(
                sale_date=row.sale_date,
                crop_name=row.crop_name,
                customer=row.customer,
                unit_price=row.unit_price,
                quantity=float(row.quantity),
                amount=row.amount,
                description=row.description,
            )
            for row in result.scalars().all()
        ]

    async def expenses_between(
        self, user_id: UUID, start: date, end: date
    ) -> list[ExpenseRecord]:
        """Expenses dated within [start, end], oldest first."""
        stmt = (
            select(Expense)
            .where(
                Expense.user_id == user_id,
                Expense.expense_date >= start,
                Expense.expense_date <= end,
            )
            .order_by(Expense.expense_date, Expense.created_at)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            await self.session.rollback()
            raise to_persistence_error(exc, "bookkeeping.expenses_between") from exc
        return [
            ExpenseRecord(
                expense_date=row.expense_date,
                category=row.category,
                amount=row.amount,
                description=row.description,
            )
            for row in result.scalars().all()
        ]
