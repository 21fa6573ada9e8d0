"""
Bookkeeping Export - Builds the .xlsx report handed to tax accountants.

Sheets:
    サマリー  period, totals, profit and record counts
    売上一覧  every sale in the range, oldest first
    経費一覧  every expense in the range, oldest first
    月次集計  per-month sales, expenses and profit
"""

import io
from collections import defaultdict
from collections.abc import Sequence
from datetime import date

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.worksheet.worksheet import Worksheet

from farmbook.models.domain import ExpenseRecord, MonthlyTotals, SaleRecord

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

SUMMARY_SHEET = "サマリー"
SALES_SHEET = "売上一覧"
EXPENSES_SHEET = "経費一覧"
MONTHLY_SHEET = "月次集計"

SALES_HEADER = ("日付", "作物名", "出荷先", "単価", "数量", "金額", "備考")
EXPENSES_HEADER = ("日付", "勘定科目", "金額", "摘要")
MONTHLY_HEADER = ("月", "売上合計", "経費合計", "利益")


def _year_month(day: date) -> str:
    return f"{day.year}年{day.month}月"


def export_filename(start: date, end: date) -> str:
    """e.g. 農業経営レポート_2024年1月_2024年6月.xlsx"""
    return f"農業経営レポート_{_year_month(start)}_{_year_month(end)}.xlsx"


def monthly_totals(
    sales: Sequence[SaleRecord], expenses: Sequence[ExpenseRecord]
) -> list[MonthlyTotals]:
    """Months that have at least one record, in calendar order."""
    sales_by_month: dict[str, int] = defaultdict(int)
    expenses_by_month: dict[str, int] = defaultdict(int)
    for sale in sales:
        sales_by_month[sale.sale_date.strftime("%Y-%m")] += sale.amount
    for expense in expenses:
        expenses_by_month[expense.expense_date.strftime("%Y-%m")] += expense.amount
    months = sorted(set(sales_by_month) | set(expenses_by_month))
    return [
        MonthlyTotals(month=m, sales=sales_by_month[m], expenses=expenses_by_month[m])
        for m in months
    ]


def _header(sheet: Worksheet, columns: Sequence[str], widths: Sequence[int]) -> None:
    sheet.append(list(columns))
    for cell in sheet[sheet.max_row]:
        cell.font = Font(bold=True)
    for index, width in enumerate(widths):
        sheet.column_dimensions[chr(ord("A") + index)].width = width


def _write_summary(
    sheet: Worksheet,
    sales: Sequence[SaleRecord],
    expenses: Sequence[ExpenseRecord],
    start: date,
    end: date,
    generated_on: date,
) -> None:
    total_sales = sum(s.amount for s in sales)
    total_expenses = sum(e.amount for e in expenses)
    rows: list[list[object]] = [
        ["農業経営レポート"],
        [],
        ["対象期間", f"{start.isoformat()} 〜 {end.isoformat()}"],
        ["出力日", generated_on.isoformat()],
        [],
        ["項目", "金額（円）"],
        ["売上合計", total_sales],
        ["経費合計", total_expenses],
        ["利益（売上 - 経費）", total_sales - total_expenses],
        [],
        ["売上件数", len(sales)],
        ["経費件数", len(expenses)],
    ]
    for row in rows:
        sheet.append(row)
    sheet["A1"].font = Font(bold=True, size=14)
    sheet.column_dimensions["A"].width = 25
    sheet.column_dimensions["B"].width = 24


def build_workbook(
    sales: Sequence[SaleRecord],
    expenses: Sequence[ExpenseRecord],
    start: date,
    end: date,
    generated_on: date,
) -> bytes:
    """Serialize the four-sheet report to .xlsx bytes."""
    workbook = Workbook()
    summary = workbook.active
    summary.title = SUMMARY_SHEET
    _write_summary(summary, sales, expenses, start, end, generated_on)

    sales_sheet = workbook.create_sheet(SALES_SHEET)
    _header(sales_sheet, SALES_HEADER, (12, 15, 20, 10, 8, 12, 30))
    for sale in sorted(sales, key=lambda s: s.sale_date):
        sales_sheet.append(
            [
                sale.sale_date,
                sale.crop_name,
                sale.customer,
                sale.unit_price,
                sale.quantity,
                sale.amount,
                sale.description or "",
            ]
        )

    expenses_sheet = workbook.create_sheet(EXPENSES_SHEET)
    _header(expenses_sheet, EXPENSES_HEADER, (12, 18, 12, 30))
    for expense in sorted(expenses, key=lambda e: e.expense_date):
        expenses_sheet.append(
            [
                expense.expense_date,
                expense.category or "",
                expense.amount,
                expense.description or "",
            ]
        )

    monthly_sheet = workbook.create_sheet(MONTHLY_SHEET)
    _header(monthly_sheet, MONTHLY_HEADER, (12, 14, 14, 14))
    for totals in monthly_totals(sales, expenses):
        monthly_sheet.append([totals.month, totals.sales, totals.expenses, totals.profit])

    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()
