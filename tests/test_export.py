"""
Tests for the Excel export.
"""

import io
from datetime import date, datetime

import pytest
from openpyxl import load_workbook

from farmbook.models.domain import ExpenseRecord, SaleRecord
from farmbook.services.export import (
    EXPENSES_HEADER,
    EXPENSES_SHEET,
    MONTHLY_SHEET,
    SALES_HEADER,
    SALES_SHEET,
    SUMMARY_SHEET,
    build_workbook,
    export_filename,
    monthly_totals,
)

SALES = [
    SaleRecord(date(2024, 2, 3), "ネギ", "道の駅", 150, 40, 6_000, "朝どり"),
    SaleRecord(date(2024, 1, 20), "白菜", None, 200, 10, 2_000),
]
EXPENSES = [
    ExpenseRecord(date(2024, 1, 5), "種苗費", 1_200, "白菜の種"),
    ExpenseRecord(date(2024, 3, 1), "", 300),
]


@pytest.fixture
def workbook():
    data = build_workbook(SALES, EXPENSES, date(2024, 1, 1), date(2024, 3, 31), date(2024, 4, 2))
    return load_workbook(io.BytesIO(data))


def _rows(sheet) -> list[tuple]:
    return list(sheet.iter_rows(values_only=True))


class TestWorkbook:
    def test_sheet_order(self, workbook):
        assert workbook.sheetnames == [SUMMARY_SHEET, SALES_SHEET, EXPENSES_SHEET, MONTHLY_SHEET]

    def test_summary_totals(self, workbook):
        values = {row[0]: row[1] for row in _rows(workbook[SUMMARY_SHEET]) if row and row[0]}

        assert values["対象期間"] == "2024-01-01 〜 2024-03-31"
        assert values["出力日"] == "2024-04-02"
        assert values["売上合計"] == 8_000
        assert values["経費合計"] == 1_500
        assert values["利益（売上 - 経費）"] == 6_500
        assert values["売上件数"] == 2
        assert values["経費件数"] == 2

    def test_sales_sorted_by_date(self, workbook):
        rows = _rows(workbook[SALES_SHEET])

        assert rows[0] == SALES_HEADER
        assert rows[1][0] == datetime(2024, 1, 20)
        assert rows[1][1] == "白菜"
        assert rows[2][1:] == ("ネギ", "道の駅", 150, 40, 6_000, "朝どり")

    def test_expenses(self, workbook):
        rows = _rows(workbook[EXPENSES_SHEET])

        assert rows[0] == EXPENSES_HEADER
        assert rows[1][1:] == ("種苗費", 1_200, "白菜の種")
        assert len(rows) == 3

    def test_monthly(self, workbook):
        rows = _rows(workbook[MONTHLY_SHEET])[1:]

        assert rows == [
            ("2024-01", 2_000, 1_200, 800),
            ("2024-02", 6_000, 0, 6_000),
            ("2024-03", 0, 300, -300),
        ]

    def test_header_bold(self, workbook):
        assert workbook[SALES_SHEET]["A1"].font.bold


class TestHelpers:
    def test_filename(self):
        assert (
            export_filename(date(2024, 1, 1), date(2024, 6, 30))
            == "農業経営レポート_2024年1月_2024年6月.xlsx"
        )

    def test_monthly_totals_skips_empty_months(self):
        totals = monthly_totals(
            [SaleRecord(date(2024, 1, 1), "米", None, 1, 1, 100)],
            [ExpenseRecord(date(2024, 4, 1), "雑費", 50)],
        )
        assert [t.month for t in totals] == ["2024-01", "2024-04"]
