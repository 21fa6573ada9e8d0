"""
Farm Business Assistant - Chat grounded in the user's own bookkeeping.

The system prompt carries a summary of the last six calendar months of sales
and expenses so answers can reference real numbers.
"""

from collections import defaultdict
from collections.abc import Sequence
from datetime import date
from typing import Any
from uuid import UUID

from structlog import get_logger

from farmbook.exceptions import PersistenceError
from farmbook.models.api import ChatTurn
from farmbook.models.domain import BusinessSummary, ExpenseRecord, MonthlyTotals, SaleRecord
from farmbook.services.bookkeeping import BookkeepingReader
from farmbook.services.openai_service import OpenAIService

logger = get_logger(__name__)

SUMMARY_MONTHS = 6
TOP_CROPS = 5
MAX_TOKENS = 800
TEMPERATURE = 0.7

SYSTEM_PROMPT = """You are an advisor on farm business management for a small Japanese farm.

Your role:
- Answer questions about the farm's sales, expenses and profitability using the data below.
- Point out cost-saving opportunities and ways to raise income.
- Explain bookkeeping and tax-filing basics for farmers in plain language.

Rules:
- Reply in Japanese, concisely, with concrete numbers from the data where they help.
- If the data does not answer the question, say so instead of guessing.
- For specialist tax or legal questions, recommend consulting a tax accountant."""

NO_DATA_NOTICE = (
    "Business data could not be loaded for this conversation. "
    "Give general advice and mention that figures are unavailable."
)


def month_key(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def months_back(today: date, count: int) -> list[str]:
    """The `count` calendar months ending with today's, oldest first."""
    year, month = today.year, today.month
    keys = []
    for _ in range(count):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(keys))


def window_start(today: date, count: int = SUMMARY_MONTHS) -> date:
    """First day of the oldest month in the summary window."""
    year, month = (int(part) for part in months_back(today, count)[0].split("-"))
    return date(year, month, 1)


def build_business_summary(
    sales: Sequence[SaleRecord], expenses: Sequence[ExpenseRecord], today: date
) -> BusinessSummary:
    """Aggregate records that fall in the summary window ending today."""
    keys = months_back(today, SUMMARY_MONTHS)
    in_window = set(keys)
    sales_by_month: dict[str, int] = defaultdict(int)
    expenses_by_month: dict[str, int] = defaultdict(int)
    by_category: dict[str, int] = defaultdict(int)
    by_crop: dict[str, int] = defaultdict(int)
    sales_count = expense_count = 0

    for sale in sales:
        key = month_key(sale.sale_date)
        if key not in in_window:
            continue
        sales_by_month[key] += sale.amount
        by_crop[sale.crop_name] += sale.amount
        sales_count += 1

    for expense in expenses:
        key = month_key(expense.expense_date)
        if key not in in_window:
            continue
        expenses_by_month[key] += expense.amount
        by_category[expense.category or "未分類"] += expense.amount
        expense_count += 1

    monthly = [
        MonthlyTotals(month=key, sales=sales_by_month[key], expenses=expenses_by_month[key])
        for key in keys
    ]
    return BusinessSummary(
        current_month=monthly[-1],
        total_sales=sum(sales_by_month.values()),
        total_expenses=sum(expenses_by_month.values()),
        sales_count=sales_count,
        expense_count=expense_count,
        expenses_by_category=sorted(by_category.items(), key=lambda item: -item[1]),
        monthly=monthly,
        top_crops=sorted(by_crop.items(), key=lambda item: -item[1])[:TOP_CROPS],
    )


def _yen(amount: int) -> str:
    return f"¥{amount:,}"


def render_business_context(summary: BusinessSummary) -> str:
    """Plain-text block appended to the system prompt."""
    current = summary.current_month
    lines = [
        "## Business data (last 6 months)",
        f"This month ({current.month}): sales {_yen(current.sales)}, "
        f"expenses {_yen(current.expenses)}, profit {_yen(current.profit)}",
        f"6-month totals: sales {_yen(summary.total_sales)} ({summary.sales_count} records), "
        f"expenses {_yen(summary.total_expenses)} ({summary.expense_count} records), "
        f"profit {_yen(summary.total_profit)}",
        "",
        "### Expenses by category",
    ]
    lines.extend(f"- {name}: {_yen(amount)}" for name, amount in summary.expenses_by_category)
    if not summary.expenses_by_category:
        lines.append("- (none)")

    lines += ["", "### Monthly trend"]
    lines.extend(
        f"- {m.month}: sales {_yen(m.sales)}, expenses {_yen(m.expenses)}, profit {_yen(m.profit)}"
        for m in summary.monthly
    )

    lines += ["", "### Top crops by sales"]
    lines.extend(
        f"{rank}. {crop}: {_yen(amount)}"
        for rank, (crop, amount) in enumerate(summary.top_crops, start=1)
    )
    if not summary.top_crops:
        lines.append("- (none)")
    return "\n".join(lines)


def build_messages(
    context: str, history: Sequence[ChatTurn], message: str, max_turns: int
) -> list[dict[str, Any]]:
    """System prompt with context, the most recent history, then the new message."""
    recent = list(history)[-max_turns:] if max_turns > 0 else []
    return [
        {"role": "system", "content": f"{SYSTEM_PROMPT}\n\n{context}"},
        *({"role": turn.role, "content": turn.content} for turn in recent),
        {"role": "user", "content": message},
    ]


class FarmAssistant:
    """Answers a chat message with the user's business data in context."""

    def __init__(self, openai_service: OpenAIService, reader: BookkeepingReader) -> None:
        self.openai_service = openai_service
        self.reader = reader

    async def business_context(self, user_id: UUID, today: date) -> str:
        """Summary text, or a notice if the data cannot be read."""
        start = window_start(today)
        try:
            sales = await self.reader.sales_between(user_id, start, today)
            expenses = await self.reader.expenses_between(user_id, start, today)
        except PersistenceError as exc:
            logger.warning(
                "assistant_business_data_unavailable", user_id=str(user_id), error=exc.message
            )
            return NO_DATA_NOTICE
        return render_business_context(build_business_summary(sales, expenses, today))

    async def reply(
        self,
        user_id: UUID,
        message: str,
        history: Sequence[ChatTurn],
        today: date,
        max_turns: int,
    ) -> str:
        context = await self.business_context(user_id, today)
        return await self.openai_service.complete(
            build_messages(context, history, message, max_turns),
            max_tokens=MAX_TOKENS,
            temperature=TEMPERATURE,
            operation="assistant_chat",
        )
