import calendar
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from .validators import NotFoundError, cents_to_amount, validate_month


DEFAULT_TREND_MONTHS = 6
MAX_TREND_MONTHS = 24
TOP_TRANSACTION_LIMIT = 10

# Indicator thresholds are on the share of the budget still available.
GREEN_ABOVE_PERCENT_REMAINING = 50
YELLOW_FROM_PERCENT_REMAINING = 20


def current_month(tz_name="UTC", now=None):
    now = now or datetime.now(timezone.utc)
    return now.astimezone(ZoneInfo(tz_name or "UTC")).strftime("%Y-%m")


def shift_month(month, delta):
    validate_month(month)
    year, month_number = int(month[:4]), int(month[5:7])
    index = year * 12 + (month_number - 1) + delta
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def previous_month(month):
    return shift_month(month, -1)


def recent_months(end_month, count):
    return [shift_month(end_month, offset) for offset in range(-(count - 1), 1)]


def month_date_range(month):
    validate_month(month)
    year, month_number = int(month[:4]), int(month[5:7])
    last_day = calendar.monthrange(year, month_number)[1]
    return f"{month}-01", f"{month}-{last_day:02d}"


def budget_indicator(percent_used):
    percent_remaining = 100 - percent_used
    if percent_remaining > GREEN_ABOVE_PERCENT_REMAINING:
        return "green"
    if percent_remaining >= YELLOW_FROM_PERCENT_REMAINING:
        return "yellow"
    return "red"


def calculate_budget_status(budgeted_cents, spent_cents):
    percent_used = (spent_cents / budgeted_cents) * 100 if budgeted_cents > 0 else 0
    return {
        "budgeted": cents_to_amount(budgeted_cents),
        "spent": cents_to_amount(spent_cents),
        "remaining": cents_to_amount(budgeted_cents - spent_cents),
        "percentUsed": round(percent_used, 1),
        "indicator": budget_indicator(percent_used),
    }


def plan_budget_copy(previous_budgets):
    """Rows to write when copying last month's budgets forward."""
    plan = [(row["category_id"], int(row["budgeted_cents"])) for row in previous_budgets]
    if not plan:
        raise NotFoundError("No budget found for previous month")
    return plan


def should_auto_rollover(enabled, existing_budget_count):
    return bool(enabled) and not existing_budget_count


def is_income(transaction):
    return (transaction.get("type") or "expense") == "income"


def _sum_by(rows, key):
    totals = {}
    for row in rows:
        totals[row[key]] = totals.get(row[key], 0) + int(row["amount_cents"])
    return totals


def build_monthly_report(month, categories, budgets, transactions):
    """Summarize one month.

    ``transactions`` rows carry ``id``, ``date``, ``amount_cents``, ``type``,
    ``description``, ``category_id`` and ``category_name``.  Refunds are stored
    as negative expenses and reduce spending.
    """
    transactions = [dict(row) for row in transactions]
    income = [row for row in transactions if is_income(row)]
    expenses = [row for row in transactions if not is_income(row)]

    budget_map = {row["category_id"]: int(row["budgeted_cents"]) for row in budgets}
    spent_map = _sum_by([row for row in expenses if row.get("category_id")], "category_id")
    count_map = {}
    for row in expenses:
        if row.get("category_id"):
            count_map[row["category_id"]] = count_map.get(row["category_id"], 0) + 1

    category_reports = []
    for category in categories:
        status = calculate_budget_status(budget_map.get(category["id"], 0), spent_map.get(category["id"], 0))
        category_reports.append(
            {
                "categoryId": category["id"],
                "categoryName": category["name"],
                "categoryColor": category["color"],
                **status,
                "transactionCount": count_map.get(category["id"], 0),
            }
        )

    daily = _sum_by(expenses, "date")
    top = sorted(expenses, key=lambda row: int(row["amount_cents"]), reverse=True)[:TOP_TRANSACTION_LIMIT]

    total_budgeted = sum(budget_map.values())
    total_income = sum(int(row["amount_cents"]) for row in income)
    total_spent = sum(int(row["amount_cents"]) for row in expenses)
    net_cash_flow = total_income - total_spent
    savings_rate = (net_cash_flow / total_income) * 100 if total_income > 0 else 0

    return {
        "month": month,
        "totalBudgeted": cents_to_amount(total_budgeted),
        "totalIncome": cents_to_amount(total_income),
        "totalSpent": cents_to_amount(total_spent),
        "totalRemaining": cents_to_amount(total_budgeted - total_spent),
        "netCashFlow": cents_to_amount(net_cash_flow),
        "savingsRate": round(savings_rate, 1),
        "categories": category_reports,
        "transactionsByDay": [
            {"date": date, "amount": cents_to_amount(amount)} for date, amount in sorted(daily.items())
        ],
        "topTransactions": [
            {
                "id": row["id"],
                "amount": cents_to_amount(row["amount_cents"]),
                "description": row.get("description") or "No description",
                "date": row["date"],
                "categoryName": row.get("category_name") or "Uncategorized",
            }
            for row in top
        ],
    }


def build_trend(months, budgets, transactions):
    budgeted = {}
    for row in budgets:
        budgeted[row["month"]] = budgeted.get(row["month"], 0) + int(row["budgeted_cents"])

    spent = {}
    for row in transactions:
        row = dict(row)
        if is_income(row):
            continue
        month = row["date"][:7]
        spent[month] = spent.get(month, 0) + int(row["amount_cents"])

    return [
        {
            "month": month,
            "spent": cents_to_amount(spent.get(month, 0)),
            "budgeted": cents_to_amount(budgeted.get(month, 0)),
        }
        for month in sorted(months)
    ]
