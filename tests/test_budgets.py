from datetime import datetime, timezone

import pytest

from household_budget.budgets import (
    build_monthly_report,
    build_trend,
    budget_indicator,
    calculate_budget_status,
    current_month,
    month_date_range,
    plan_budget_copy,
    previous_month,
    recent_months,
    should_auto_rollover,
)
from household_budget.validators import NotFoundError, ValidationError


def test_month_arithmetic_crosses_year_boundaries():
    assert previous_month("2026-01") == "2025-12"
    assert recent_months("2026-02", 4) == ["2025-11", "2025-12", "2026-01", "2026-02"]
    assert month_date_range("2024-02") == ("2024-02-01", "2024-02-29")
    with pytest.raises(ValidationError):
        previous_month("2026-13")


def test_current_month_uses_household_timezone():
    moment = datetime(2026, 3, 1, 3, 0, tzinfo=timezone.utc)

    assert current_month("UTC", now=moment) == "2026-03"
    assert current_month("America/Los_Angeles", now=moment) == "2026-02"


def test_budget_indicator_thresholds():
    assert budget_indicator(49) == "green"
    assert budget_indicator(50) == "yellow"
    assert budget_indicator(80) == "yellow"
    assert budget_indicator(81) == "red"


def test_calculate_budget_status():
    status = calculate_budget_status(20000, 15000)

    assert status == {
        "budgeted": 200.0,
        "spent": 150.0,
        "remaining": 50.0,
        "percentUsed": 75.0,
        "indicator": "yellow",
    }
    assert calculate_budget_status(0, 500)["percentUsed"] == 0


def test_plan_budget_copy_requires_previous_budgets():
    with pytest.raises(NotFoundError):
        plan_budget_copy([])

    assert plan_budget_copy([{"category_id": "c1", "budgeted_cents": 5000}]) == [("c1", 5000)]


def test_should_auto_rollover_only_for_empty_months():
    assert should_auto_rollover(True, 0) is True
    assert should_auto_rollover(True, 2) is False
    assert should_auto_rollover(0, 0) is False


def test_monthly_report_separates_income_and_refunds():
    categories = [
        {"id": "food", "name": "Groceries", "color": "#22c55e"},
        {"id": "fun", "name": "Entertainment", "color": "#a855f7"},
    ]
    budgets = [{"category_id": "food", "budgeted_cents": 40000}]
    transactions = [
        {"id": "t1", "date": "2026-01-03", "amount_cents": 12000, "type": "expense", "description": "Safeway", "category_id": "food", "category_name": "Groceries"},
        {"id": "t2", "date": "2026-01-03", "amount_cents": -2000, "type": "expense", "description": "Refund", "category_id": "food", "category_name": "Groceries"},
        {"id": "t3", "date": "2026-01-10", "amount_cents": 300000, "type": "income", "description": "Payroll", "category_id": None, "category_name": None},
        {"id": "t4", "date": "2026-01-12", "amount_cents": 1500, "type": "expense", "description": None, "category_id": None, "category_name": None},
    ]

    report = build_monthly_report("2026-01", categories, budgets, transactions)

    assert report["totalBudgeted"] == 400.0
    assert report["totalIncome"] == 3000.0
    assert report["totalSpent"] == 115.0
    assert report["netCashFlow"] == 2885.0
    food = report["categories"][0]
    assert food["spent"] == 100.0
    assert food["transactionCount"] == 2
    assert food["indicator"] == "green"
    assert report["transactionsByDay"] == [{"date": "2026-01-03", "amount": 100.0}, {"date": "2026-01-12", "amount": 15.0}]
    assert report["topTransactions"][0]["id"] == "t1"
    assert report["topTransactions"][1]["categoryName"] == "Uncategorized"
    assert report["topTransactions"][1]["description"] == "No description"


def test_trend_fills_missing_months_with_zero():
    budgets = [{"month": "2026-01", "budgeted_cents": 10000}, {"month": "2026-01", "budgeted_cents": 5000}]
    transactions = [
        {"date": "2026-01-05", "amount_cents": 2500, "type": "expense"},
        {"date": "2026-02-05", "amount_cents": 90000, "type": "income"},
    ]

    trend = build_trend(["2026-02", "2026-01"], budgets, transactions)

    assert trend == [
        {"month": "2026-01", "spent": 25.0, "budgeted": 150.0},
        {"month": "2026-02", "spent": 0.0, "budgeted": 0.0},
    ]
