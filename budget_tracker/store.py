import logging
import math
import uuid
from collections import namedtuple
from datetime import datetime

from .db import DATABASE_ERRORS
from .models import (
    TRANSACTION_TYPES,
    UPDATABLE_FIELDS,
    parse_bool,
    parse_money,
    parse_transaction_date,
    transaction_from_row,
)


logger = logging.getLogger(__name__)

UserContext = namedtuple("UserContext", ["user_id", "email", "store"])


class StoreError(RuntimeError):
    """Raised when the transaction store cannot complete an operation."""


class ValidationError(StoreError):
    """Raised when submitted transaction fields are missing or malformed."""


class TransactionNotFound(StoreError):
    """Raised when a transaction does not exist for the requesting user."""


def _now():
    return datetime.utcnow().isoformat(timespec="seconds")


def clean_transaction_fields(fields, partial=False):
    """Validate and normalize submitted transaction fields.

    With ``partial`` only the keys present are checked, which is how updates
    are applied.
    """
    unknown = sorted(set(fields) - set(UPDATABLE_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown transaction fields: {', '.join(unknown)}")

    cleaned = {}
    if not partial or "date" in fields:
        parsed_date = parse_transaction_date(fields.get("date"))
        if parsed_date is None:
            raise ValidationError("Date must be a valid YYYY-MM-DD value.")
        cleaned["date"] = parsed_date.isoformat()

    if not partial or "amount" in fields:
        if fields.get("amount") in (None, ""):
            raise ValidationError("Amount is required.")
        amount = parse_money(fields.get("amount"))
        if amount is None or not math.isfinite(amount):
            raise ValidationError("Amount must be a valid number.")
        if amount < 0:
            raise ValidationError("Amount must not be negative.")
        cleaned["amount"] = amount

    if not partial or "type" in fields:
        txn_type = (fields.get("type") or "").strip().lower()
        if txn_type not in TRANSACTION_TYPES:
            raise ValidationError("Type must be income or expense.")
        cleaned["type"] = txn_type

    for name in ("category", "description"):
        if not partial or name in fields:
            value = (fields.get(name) or "").strip()
            if not value:
                raise ValidationError(f"{name.capitalize()} is required.")
            cleaned[name] = value

    if "is_reconciled" in fields:
        cleaned["is_reconciled"] = 1 if parse_bool(fields["is_reconciled"]) else 0

    return cleaned


class TransactionStore:
    """User-scoped access to the ``transactions`` table.

    Every statement filters on ``user_id``; a row owned by another user is
    indistinguishable from a missing one.
    """

    def __init__(self, db):
        self._db = db

    def list(self, user_id):
        try:
            rows = self._db.execute(
                """
                SELECT * FROM transactions
                WHERE user_id = ?
                ORDER BY date DESC, created_at DESC
                """,
                (user_id,),
            ).fetchall()
        except DATABASE_ERRORS as exc:
            logger.exception("Listing transactions failed for user_id=%s", user_id)
            raise StoreError("Failed to fetch transactions") from exc
        return [transaction_from_row(row) for row in rows]

    def get(self, transaction_id, user_id):
        try:
            row = self._db.execute(
                "SELECT * FROM transactions WHERE id = ? AND user_id = ?",
                (transaction_id, user_id),
            ).fetchone()
        except DATABASE_ERRORS as exc:
            logger.exception("Loading transaction %s failed for user_id=%s", transaction_id, user_id)
            raise StoreError("Failed to fetch transactions") from exc
        if row is None:
            raise TransactionNotFound("Transaction not found.")
        return transaction_from_row(row)

    def create(self, user_id, fields):
        values = clean_transaction_fields(fields)
        values.setdefault("is_reconciled", 0)
        transaction_id = uuid.uuid4().hex
        timestamp = _now()
        try:
            self._db.execute(
                """
                INSERT INTO transactions (
                    id, user_id, date, amount, type, category, description,
                    is_reconciled, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    transaction_id,
                    user_id,
                    values["date"],
                    values["amount"],
                    values["type"],
                    values["category"],
                    values["description"],
                    values["is_reconciled"],
                    timestamp,
                    timestamp,
                ),
            )
            self._db.commit()
        except DATABASE_ERRORS as exc:
            self._db.rollback()
            logger.exception("Creating transaction failed for user_id=%s", user_id)
            raise StoreError("Failed to add transaction") from exc
        logger.info("Created transaction %s for user_id=%s", transaction_id, user_id)
        return self.get(transaction_id, user_id)

    def update(self, transaction_id, user_id, fields):
        values = clean_transaction_fields(fields, partial=True)
        if not values:
            return self.get(transaction_id, user_id)

        assignments = ", ".join(f"{name} = ?" for name in values)
        params = [*values.values(), _now(), transaction_id, user_id]
        try:
            result = self._db.execute(
                f"UPDATE transactions SET {assignments}, updated_at = ? WHERE id = ? AND user_id = ?",
                params,
            )
            if result.rowcount == 0:
                self._db.rollback()
                raise TransactionNotFound("Transaction not found.")
            self._db.commit()
        except DATABASE_ERRORS as exc:
            self._db.rollback()
            logger.exception("Updating transaction %s failed for user_id=%s", transaction_id, user_id)
            raise StoreError("Failed to update transaction") from exc
        logger.info("Updated transaction %s fields=%s", transaction_id, sorted(values))
        return self.get(transaction_id, user_id)

    def delete(self, transaction_id, user_id):
        try:
            result = self._db.execute(
                "DELETE FROM transactions WHERE id = ? AND user_id = ?",
                (transaction_id, user_id),
            )
            if result.rowcount == 0:
                self._db.rollback()
                raise TransactionNotFound("Transaction not found.")
            self._db.commit()
        except DATABASE_ERRORS as exc:
            self._db.rollback()
            logger.exception("Deleting transaction %s failed for user_id=%s", transaction_id, user_id)
            raise StoreError("Failed to delete transaction") from exc
        logger.info("Deleted transaction %s for user_id=%s", transaction_id, user_id)
