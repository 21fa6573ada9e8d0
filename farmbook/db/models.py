"""
Database Models - SQLAlchemy ORM models with strict typing.

All columns use Mapped[] type annotations.
"""

from datetime import UTC, date, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Subscription(Base):
    """
    ORM model for subscriptions table.

    One row per user. Written only by the billing event reconciler, apart
    from the lazily created free/active default and the customer ref.
    """

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)

    plan_tier: Mapped[str] = mapped_column(String(20), nullable=False, default="free")
    billing_status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    # Payment processor identifiers
    external_customer_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_subscription_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Billing cycle, set while a paid plan is active
    period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Processor timestamp of the newest event applied; older events are ignored
    last_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "plan_tier IN ('free', 'standard', 'premium', 'pro_yearly')",
            name="ck_subscription_plan_tier",
        ),
        CheckConstraint(
            "billing_status IN ('active', 'canceled', 'past_due', 'trialing')",
            name="ck_subscription_billing_status",
        ),
        UniqueConstraint("user_id", name="uq_subscription_user"),
        Index(
            "idx_subscriptions_external_subscription_ref",
            "external_subscription_ref",
            postgresql_where=(external_subscription_ref.isnot(None)),
        ),
        Index(
            "idx_subscriptions_external_customer_ref",
            "external_customer_ref",
            postgresql_where=(external_customer_ref.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Subscription(user_id={self.user_id}, plan_tier={self.plan_tier}, "
            f"billing_status={self.billing_status})>"
        )


class UsageLedgerEntry(Base):
    """
    ORM model for usage_ledger table.

    One row per user per calendar month. Counters only ever grow.
    """

    __tablename__ = "usage_ledger"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)

    receipt_scan_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    export_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    assistant_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("receipt_scan_count >= 0", name="ck_usage_receipt_scan_non_negative"),
        CheckConstraint("export_count >= 0", name="ck_usage_export_non_negative"),
        CheckConstraint("assistant_count >= 0", name="ck_usage_assistant_non_negative"),
        UniqueConstraint("user_id", "period_start", name="uq_usage_user_period"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<UsageLedgerEntry(user_id={self.user_id}, period_start={self.period_start}, "
            f"scan={self.receipt_scan_count}, export={self.export_count}, "
            f"assistant={self.assistant_count})>"
        )


# ============================================================================
# Bookkeeping tables (read-only here; written by the app's data API)
# ============================================================================


class Sale(Base):
    """ORM model for sales table."""

    __tablename__ = "sales"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    sale_date: Mapped[date] = mapped_column("date", Date, nullable=False)
    crop_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer: Mapped[str | None] = mapped_column(String(255), nullable=True)
    unit_price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    quantity: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_sales_user_date", "user_id", "date"),)


class Expense(Base):
    """ORM model for expenses table."""

    __tablename__ = "expenses"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    expense_date: Mapped[date] = mapped_column("date", Date, nullable=False)
    category_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    category: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (Index("idx_expenses_user_date", "user_id", "date"),)


class ExpenseCategory(Base):
    """ORM model for expense_categories table."""

    __tablename__ = "expense_categories"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category_type: Mapped[str] = mapped_column(String(20), nullable=False, default="variable")
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "category_type IN ('fixed', 'variable')", name="ck_expense_category_type"
        ),
        UniqueConstraint("user_id", "name", name="uq_expense_category_user_name"),
    )
