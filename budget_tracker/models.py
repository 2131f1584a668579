from datetime import date, datetime


INCOME = "income"
EXPENSE = "expense"
TRANSACTION_TYPES = (INCOME, EXPENSE)

INCOME_CATEGORIES = [
    "Salary",
    "Business",
    "Investments",
    "Freelance",
    "Other Income",
]
EXPENSE_CATEGORIES = [
    "Rent",
    "Groceries",
    "Utilities",
    "Transport",
    "Healthcare",
    "Entertainment",
    "Shopping",
    "Education",
    "Other Expenses",
]
SUGGESTED_CATEGORIES = {
    INCOME: INCOME_CATEGORIES,
    EXPENSE: EXPENSE_CATEGORIES,
}

UPDATABLE_FIELDS = ("date", "amount", "type", "category", "description", "is_reconciled")


def parse_money(value):
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = (value or "").strip()
    if not text:
        return None
    cleaned = text.replace(",", "").replace("$", "").replace("₹", "")
    try:
        return float(cleaned)
    except ValueError:
        return None


def parse_transaction_date(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    cleaned = (value or "").strip()
    if not cleaned:
        return None
    try:
        return datetime.strptime(cleaned[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


def parse_bool(value):
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def format_amount(value):
    """Render an amount without a trailing ``.0``: 400 -> "400", 12.5 -> "12.5"."""
    text = f"{float(value or 0):.2f}"
    return text.rstrip("0").rstrip(".") if "." in text else text


def transaction_from_row(row):
    """Plain dict view of a stored transaction row with python-typed values."""
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "date": row["date"],
        "amount": float(row["amount"] or 0),
        "type": row["type"],
        "category": row["category"] or "",
        "description": row["description"] or "",
        "is_reconciled": bool(row["is_reconciled"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }
