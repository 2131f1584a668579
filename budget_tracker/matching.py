"""Bank statement matching.

Statement parsing and matching are not implemented; ``StubBankMatcher``
stands in for a real matcher and always reports the same two rows.
"""

import logging
import os
import time


logger = logging.getLogger(__name__)

MATCHED = "matched"
UNMATCHED = "unmatched"
DEFAULT_STATEMENT_EXTENSIONS = (".csv", ".pdf", ".xlsx", ".xls")


class BankMatchError(RuntimeError):
    """Raised when a bank statement upload cannot be processed."""


def check_statement_filename(filename, allowed_extensions=DEFAULT_STATEMENT_EXTENSIONS):
    name = (filename or "").strip()
    if not name:
        raise BankMatchError("Please choose a bank statement file.")
    extension = os.path.splitext(name)[1].lower()
    if extension not in allowed_extensions:
        raise BankMatchError(
            f"Unsupported file type {extension or '(none)'}. Upload one of: {', '.join(allowed_extensions)}."
        )
    return name


class BankMatcher:
    def match(self, statement_name, statement_bytes, transactions):
        """Return match results for an uploaded statement.

        Each result is a dict with ``id``, ``bank_amount``, ``user_amount``,
        ``description``, ``date`` and ``status``.
        """
        raise NotImplementedError


class StubBankMatcher(BankMatcher):
    """Waits ``delay_seconds`` then returns a fixed matched/unmatched pair."""

    RESULTS = (
        {
            "id": "1",
            "bank_amount": 1500.0,
            "user_amount": 1500.0,
            "description": "Salary Payment",
            "date": "2024-01-15",
            "status": MATCHED,
        },
        {
            "id": "2",
            "bank_amount": 250.0,
            "user_amount": None,
            "description": "ATM Withdrawal",
            "date": "2024-01-14",
            "status": UNMATCHED,
        },
    )

    def __init__(self, delay_seconds=2.0):
        self.delay_seconds = delay_seconds

    def match(self, statement_name, statement_bytes, transactions):
        logger.info(
            "Stub matching %s (%d bytes) against %d transactions",
            statement_name,
            len(statement_bytes or b""),
            len(transactions),
        )
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        return [dict(result) for result in self.RESULTS]


def summarize_results(results):
    matched = sum(1 for result in results if result["status"] == MATCHED)
    unmatched = sum(1 for result in results if result["status"] == UNMATCHED)
    return f"Found {len(results)} transactions. {matched} matched, {unmatched} unmatched."


def mark_result_matched(results, result_id):
    """Return a copy of ``results`` with ``result_id`` flagged as matched.

    Only unmatched rows can be matched.
    """
    found = False
    updated = []
    for result in results:
        result = dict(result)
        if result["id"] == result_id:
            if result["status"] != UNMATCHED:
                raise BankMatchError("This bank record is already matched.")
            result["status"] = MATCHED
            found = True
        updated.append(result)
    if not found:
        raise BankMatchError("Bank record not found. Please upload the statement again.")
    return updated
