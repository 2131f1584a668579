"""Report, chart and export computations over a user's transaction list.

Every function here is pure: it reads the records it is given, never mutates
them, and does no I/O. Records may be dicts, ``sqlite3.Row`` objects or any
other mapping exposing ``date``, ``amount``, ``type``, ``category``,
``description`` and ``is_reconciled``.
"""

import csv
import io
from collections import OrderedDict
from datetime import date, timedelta

from dateutil.relativedelta import relativedelta

from .models import EXPENSE, INCOME, format_amount, parse_transaction_date


CALENDAR_PERIODS = ("daily", "weekly", "monthly", "yearly")
REPORT_WINDOWS = ("7days", "1month", "1year")
WINDOW_LABELS = {
    "7days": "Last 7 Days",
    "1month": "Last Month",
    "1year": "Last Year",
}
AVERAGE_DAILY_DIVISOR = 30
CSV_HEADER = ["Date", "Type", "Category", "Description", "Amount", "Reconciled"]


def _amount(record):
    return float(record["amount"] or 0)


def _totals(records):
    income = 0.0
    expenses = 0.0
    for record in records:
        if record["type"] == INCOME:
            income += _amount(record)
        elif record["type"] == EXPENSE:
            expenses += _amount(record)
    return income, expenses


def _bucket_row(label, income, expenses):
    return {
        "period": label,
        "income": round(income, 2),
        "expenses": round(expenses, 2),
        "net": round(income - expenses, 2),
    }


def period_key(value, period):
    day = parse_transaction_date(value)
    if day is None:
        raise ValueError(f"Invalid transaction date: {value!r}")
    if period == "daily":
        return day.isoformat()
    if period == "weekly":
        # Weeks start on Sunday.
        return (day - timedelta(days=(day.weekday() + 1) % 7)).isoformat()
    if period == "monthly":
        return f"{day.year:04d}-{day.month:02d}"
    if period == "yearly":
        return f"{day.year:04d}"
    raise ValueError(f"Unknown report period: {period!r}")


def bucket_by_period(transactions, period):
    """Group transactions into calendar buckets.

    Returns ``[{"period", "income", "expenses", "net"}]`` ordered by period
    key. Periods with no transactions are not returned.
    """
    if period not in CALENDAR_PERIODS:
        raise ValueError(f"Unknown report period: {period!r}")

    grouped = {}
    for record in transactions:
        key = period_key(record["date"], period)
        grouped.setdefault(key, []).append(record)

    return [_bucket_row(key, *_totals(grouped[key])) for key in sorted(grouped)]


def _window_ranges(window, today):
    if window == "7days":
        for offset in range(6, -1, -1):
            day = today - timedelta(days=offset)
            yield f"{day:%a}, {day:%b} {day.day}", day, day
    elif window == "1month":
        for index in range(4):
            start = today - timedelta(days=(4 - index) * 7 - 1)
            yield f"Week {index + 1}", start, start + timedelta(days=6)
    elif window == "1year":
        first_of_month = today.replace(day=1)
        for offset in range(11, -1, -1):
            start = first_of_month - relativedelta(months=offset)
            end = start + relativedelta(months=1) - timedelta(days=1)
            yield f"{start:%b %y}", start, end
    else:
        raise ValueError(f"Unknown report window: {window!r}")


def bucket_by_window(transactions, window, today=None):
    """Sliding-window series used by the dashboard overview.

    The whole window is always returned, oldest bucket first, with zeros for
    buckets that have no matching transactions.
    """
    today = today or date.today()
    ranges = list(_window_ranges(window, today))
    members = [[] for _ in ranges]

    for record in transactions:
        day = parse_transaction_date(record["date"])
        if day is None:
            continue
        for index, (_label, start, end) in enumerate(ranges):
            if start <= day <= end:
                members[index].append(record)
                break

    series = []
    for (label, start, end), records in zip(ranges, members):
        row = _bucket_row(label, *_totals(records))
        row["start"] = start.isoformat()
        row["end"] = end.isoformat()
        series.append(row)
    return series


def window_start(window, today=None):
    today = today or date.today()
    if window == "7days":
        return today - timedelta(days=7)
    if window == "1month":
        return today - relativedelta(months=1)
    if window == "1year":
        return today - relativedelta(years=1)
    raise ValueError(f"Unknown report window: {window!r}")


def transactions_since(transactions, start):
    selected = []
    for record in transactions:
        day = parse_transaction_date(record["date"])
        if day is not None and day >= start:
            selected.append(record)
    return selected


def category_breakdown(transactions):
    """Expense totals per category with their share of all expenses.

    Sorted by amount, largest first. Percentages are 0.0 when there are no
    expenses.
    """
    totals = OrderedDict()
    for record in transactions:
        if record["type"] != EXPENSE:
            continue
        category = record["category"] or "Uncategorized"
        totals[category] = totals.get(category, 0.0) + _amount(record)

    total_expenses = sum(totals.values())
    breakdown = []
    for category, amount in totals.items():
        percentage = round(amount * 100.0 / total_expenses, 1) if total_expenses > 0 else 0.0
        breakdown.append({
            "category": category,
            "amount": round(amount, 2),
            "percentage": percentage,
        })
    breakdown.sort(key=lambda row: (-row["amount"], row["category"]))
    return breakdown


def summary_totals(transactions):
    income, expenses = _totals(transactions)
    net = income - expenses
    return {
        "total_income": round(income, 2),
        "total_expenses": round(expenses, 2),
        "net": round(net, 2),
        # Fixed 30-day month, not the span of the data.
        "avg_daily_expense": round(expenses / AVERAGE_DAILY_DIVISOR, 2),
        "savings_rate": round(net * 100.0 / income, 1) if income > 0 else 0.0,
    }


def filter_transactions(transactions, type="all", category="all", search=""):
    type = (type or "all").strip()
    category = (category or "all").strip()
    needle = (search or "").strip().lower()

    def matches(record):
        if type != "all" and record["type"] != type:
            return False
        if category != "all" and record["category"] != category:
            return False
        if needle:
            haystacks = ((record["description"] or "").lower(), (record["category"] or "").lower())
            return any(needle in text for text in haystacks)
        return True

    return [record for record in transactions if matches(record)]


def distinct_categories(transactions):
    return list(dict.fromkeys(record["category"] for record in transactions if record["category"]))


def reconciliation_counts(transactions):
    reconciled = sum(1 for record in transactions if record["is_reconciled"])
    return {"reconciled": reconciled, "unreconciled": len(transactions) - reconciled}


def export_csv(transactions):
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for record in transactions:
        writer.writerow([
            record["date"],
            record["type"],
            record["category"],
            record["description"],
            format_amount(record["amount"]),
            "Yes" if record["is_reconciled"] else "No",
        ])
    return output.getvalue()[:-1]
