from datetime import date, datetime, timezone

from household_budget.insights import (
    detect_frequency,
    insight_date_range,
    local_today,
    merchant_insights,
    recurring_charges,
)


TODAY = date(2026, 6, 15)


def txn(description, amount_cents, day, category=None, kind="expense"):
    row = {
        "description": description,
        "amount_cents": amount_cents,
        "date": day,
        "type": kind,
        "category_id": None,
        "category_name": None,
        "category_color": None,
    }
    if category:
        row["category_id"], row["category_name"], row["category_color"] = category
    return row


GROCERIES = ("cat-groceries", "Groceries", "#22c55e")
DINING = ("cat-dining", "Dining", "#f97316")
ENTERTAINMENT = ("cat-fun", "Entertainment", "#a855f7")


def test_local_today_uses_household_timezone():
    now = datetime(2026, 6, 15, 2, 0, tzinfo=timezone.utc)

    assert local_today("UTC", now) == date(2026, 6, 15)
    assert local_today("America/Los_Angeles", now) == date(2026, 6, 14)


def test_insight_date_range_covers_six_calendar_months():
    assert insight_date_range(TODAY) == ("2026-01-01", "2026-06-15")
    assert insight_date_range(date(2026, 3, 2)) == ("2025-10-01", "2026-03-02")


def test_merchant_insights_groups_case_insensitively_and_sorts_by_total():
    transactions = [
        txn("Safeway", 2000, "2026-05-01", GROCERIES),
        txn("SAFEWAY", 3000, "2026-05-20", GROCERIES),
        txn("safeway ", 1000, "2026-06-02", DINING),
        txn("Blue Bottle", 9000, "2026-06-10", DINING),
        txn("Payroll", 500000, "2026-06-01", kind="income"),
        txn("Refund desk", 4000, "2026-06-03", ("cat-income", "Income", "#10b981")),
    ]

    insights = merchant_insights(transactions)

    assert [row["merchant"] for row in insights] == ["blue bottle", "safeway"]
    safeway = insights[1]
    assert safeway["totalSpent"] == 60.0
    assert safeway["transactionCount"] == 3
    assert safeway["averageAmount"] == 20.0
    assert safeway["lastTransactionDate"] == "2026-06-02"
    assert safeway["primaryCategory"] == {"id": "cat-groceries", "name": "Groceries", "color": "#22c55e"}


def test_merchant_insights_handles_blank_descriptions_and_no_category():
    insights = merchant_insights([txn("", 1500, "2026-06-01"), txn(None, 500, "2026-06-02")])

    assert insights == [
        {
            "merchant": "unknown",
            "displayName": "unknown",
            "totalSpent": 20.0,
            "transactionCount": 2,
            "averageAmount": 10.0,
            "primaryCategory": None,
            "lastTransactionDate": "2026-06-02",
        }
    ]


def test_detect_frequency_by_average_interval():
    assert detect_frequency([date(2026, 1, 1), date(2026, 1, 8), date(2026, 1, 15)])[0] == "weekly"
    assert detect_frequency([date(2026, 1, 1), date(2026, 2, 1)]) == ("monthly", 1)
    assert detect_frequency([date(2026, 1, 1), date(2026, 4, 1)])[0] == "quarterly"
    assert detect_frequency([date(2026, 1, 1), date(2026, 1, 20)]) is None
    assert detect_frequency([date(2026, 1, 1)]) is None


def test_recurring_charges_detects_monthly_subscription():
    transactions = [
        txn("NETFLIX.COM", 1599, "2026-03-10", ENTERTAINMENT),
        txn("NETFLIX.COM", 1599, "2026-04-10", ENTERTAINMENT),
        txn("NETFLIX.COM", 1699, "2026-05-10", ENTERTAINMENT),
    ]

    charges = recurring_charges(transactions, TODAY)

    assert len(charges) == 1
    charge = charges[0]
    assert charge["frequency"] == "monthly"
    assert charge["amount"] == 16.32
    assert charge["estimatedMonthlyCost"] == 16.32
    assert charge["lastChargeDate"] == "2026-05-10"
    assert charge["transactionCount"] == 3
    assert charge["category"]["name"] == "Entertainment"
    assert charge["isActive"] is True


def test_recurring_charges_splits_amounts_outside_ten_percent():
    transactions = [
        txn("Gym", 5000, "2026-01-05"),
        txn("Gym", 5000, "2026-04-05"),
        txn("Gym", 900, "2026-02-01"),
        txn("Gym", 12000, "2026-03-01"),
    ]

    charges = recurring_charges(transactions, TODAY)

    assert [(charge["frequency"], charge["amount"]) for charge in charges] == [("quarterly", 50.0)]
    assert charges[0]["estimatedMonthlyCost"] == 16.67


def test_recurring_charges_put_active_first_then_highest_monthly_cost():
    transactions = [
        # stopped: last charge more than 60 days before today
        txn("Old Storage", 20000, "2026-02-01"),
        txn("Old Storage", 20000, "2026-03-01"),
        txn("Spotify", 1099, "2026-04-20"),
        txn("Spotify", 1099, "2026-05-20"),
        txn("Coffee Club", 1500, "2026-05-25"),
        txn("Coffee Club", 1500, "2026-06-01"),
        txn("Coffee Club", 1500, "2026-06-08"),
        txn("Lunch", 1200, "2026-06-01"),
    ]

    charges = recurring_charges(transactions, TODAY)

    assert [charge["merchant"] for charge in charges] == ["coffee club", "spotify", "old storage"]
    assert charges[0]["frequency"] == "weekly"
    assert charges[0]["estimatedMonthlyCost"] == 64.95
    assert charges[2]["isActive"] is False
