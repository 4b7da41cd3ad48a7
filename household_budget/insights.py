from collections import Counter
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from .budgets import shift_month
from .validators import cents_to_amount


INSIGHT_MONTHS = 6
ACTIVE_WITHIN = timedelta(days=60)
AMOUNT_TOLERANCE = 0.1
UNKNOWN_MERCHANT = "unknown"

# (frequency, shortest average interval in days, longest, monthly cost factor)
FREQUENCIES = [
    ("weekly", 5, 9, 4.33),
    ("monthly", 25, 35, 1),
    ("quarterly", 80, 100, 1 / 3),
]


def local_today(tz_name="UTC", now=None):
    now = now or datetime.now(timezone.utc)
    return now.astimezone(ZoneInfo(tz_name or "UTC")).date()


def insight_date_range(today, months=INSIGHT_MONTHS):
    first_month = shift_month(today.strftime("%Y-%m"), -(months - 1))
    return f"{first_month}-01", today.isoformat()


def normalize_merchant(description):
    cleaned = (description or "").strip().lower()
    return cleaned or UNKNOWN_MERCHANT


def is_spending(row):
    if (row.get("type") or "expense") == "income":
        return False
    return (row.get("category_name") or "").lower() != "income"


def group_by_merchant(transactions):
    groups = {}
    for row in (dict(row) for row in transactions):
        if is_spending(row):
            groups.setdefault(normalize_merchant(row.get("description")), []).append(row)
    return groups


def display_name(rows, merchant):
    variants = [row["description"] for row in rows if row.get("description")]
    if not variants:
        return merchant
    return Counter(variants).most_common(1)[0][0]


def primary_category(rows):
    counts = Counter(row["category_id"] for row in rows if row.get("category_id"))
    if not counts:
        return None
    category_id = counts.most_common(1)[0][0]
    row = next(row for row in rows if row.get("category_id") == category_id)
    return {"id": category_id, "name": row.get("category_name"), "color": row.get("category_color")}


def _round_amount(value):
    return round(value, 2)


def merchant_insights(transactions):
    """Spending per merchant, largest total first.

    Rows are grouped on the lowercased description; income is left out.
    """
    insights = []
    for merchant, rows in group_by_merchant(transactions).items():
        total_cents = sum(int(row["amount_cents"]) for row in rows)
        insights.append({
            "merchant": merchant,
            "displayName": display_name(rows, merchant),
            "totalSpent": cents_to_amount(total_cents),
            "transactionCount": len(rows),
            "averageAmount": _round_amount(total_cents / len(rows) / 100),
            "primaryCategory": primary_category(rows),
            "lastTransactionDate": max(row["date"] for row in rows),
        })
    insights.sort(key=lambda insight: insight["totalSpent"], reverse=True)
    return insights


def group_similar_amounts(rows, tolerance=AMOUNT_TOLERANCE):
    groups = []
    for row in rows:
        amount = int(row["amount_cents"])
        for group in groups:
            anchor = int(group[0]["amount_cents"])
            if abs(amount - anchor) <= abs(anchor) * tolerance:
                group.append(row)
                break
        else:
            groups.append([row])
    return groups


def detect_frequency(dates):
    intervals = [(later - earlier).days for earlier, later in zip(dates, dates[1:])]
    if not intervals:
        return None
    average = sum(intervals) / len(intervals)
    for name, shortest, longest, monthly_factor in FREQUENCIES:
        if shortest <= average <= longest:
            return name, monthly_factor
    return None


def recurring_charges(transactions, today):
    """Charges repeating weekly, monthly or quarterly at a similar amount.

    Active charges come first, then the highest estimated monthly cost.
    """
    charges = []
    for merchant, rows in group_by_merchant(transactions).items():
        if len(rows) < 2:
            continue
        name = display_name(rows, merchant)
        for group in group_similar_amounts(rows):
            if len(group) < 2:
                continue
            group = sorted(group, key=lambda row: row["date"])
            frequency = detect_frequency([date.fromisoformat(row["date"]) for row in group])
            if frequency is None:
                continue

            frequency_name, monthly_factor = frequency
            average = sum(int(row["amount_cents"]) for row in group) / len(group) / 100
            last_date = group[-1]["date"]
            charges.append({
                "merchant": merchant,
                "displayName": name,
                "amount": _round_amount(average),
                "frequency": frequency_name,
                "estimatedMonthlyCost": _round_amount(average * monthly_factor),
                "lastChargeDate": last_date,
                "transactionCount": len(group),
                "category": primary_category(group),
                "isActive": date.fromisoformat(last_date) >= today - ACTIVE_WITHIN,
            })
    charges.sort(key=lambda charge: (not charge["isActive"], -charge["estimatedMonthlyCost"]))
    return charges
