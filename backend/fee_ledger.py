from __future__ import annotations

import logging
import sqlite3
import time as _time
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Optional

from errors import FeeNotFound, InvalidFeeAmount, InvalidFeeStatus, InvalidFeeType
from models import FEE_STATUSES, FEE_TYPE_CANONICAL, FEE_TYPES, Fee, FeeSummary
from store import (
    Store,
    find_idempotent_result,
    new_record_id,
    record_idempotent_result,
    require_customer,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_PAYMENT_METHOD = "Bank Transfer"
DEFAULT_CURRENCY = "GBP"
UPCOMING_WINDOW_DAYS = 30
ADD_FEE_OPERATION = "add_fee"

PAYMENT_METHODS = [
    "Bank Transfer",
    "Credit Card",
    "Debit Card",
    "Cash",
    "Cheque",
    "Direct Debit",
    "Standing Order",
    "PayPal",
    "Other",
]


def parse_fee_amount(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        raise InvalidFeeAmount(value)
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise InvalidFeeAmount(value)
    if not amount.is_finite() or amount < 0:
        raise InvalidFeeAmount(value)
    return amount


def normalize_fee_type(value: Any) -> str:
    if isinstance(value, str):
        if value in FEE_TYPES:
            return value
        canonical = FEE_TYPE_CANONICAL.get(value.strip().lower())
        if canonical:
            return canonical
    raise InvalidFeeType(value)


def normalize_fee_status(value: Any) -> str:
    if isinstance(value, str):
        status = value.strip().upper()
        if status in FEE_STATUSES:
            return status
    raise InvalidFeeStatus(value)


def parse_due_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return datetime.strptime(text, "%Y-%m-%d").date()
    except ValueError:
        pass
    # Full ISO timestamps from date pickers keep their calendar date.
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        raise ValueError("Invalid due_date. Use YYYY-MM-DD.")


def due_at(fee: Fee) -> Optional[datetime]:
    # A bare due date counts from midnight UTC.
    if fee.due_date is None:
        return None
    return datetime.combine(fee.due_date, time.min, tzinfo=timezone.utc)


def is_overdue(fee: Fee, now: datetime) -> bool:
    deadline = due_at(fee)
    return fee.status == "UNPAID" and deadline is not None and deadline < now


def is_upcoming(fee: Fee, now: datetime, window_days: int = UPCOMING_WINDOW_DAYS) -> bool:
    deadline = due_at(fee)
    if fee.status != "UNPAID" or deadline is None:
        return False
    return now <= deadline <= now + timedelta(days=window_days)


def summarize_fees(
    fees: Iterable[Fee],
    now: Optional[datetime] = None,
    window_days: int = UPCOMING_WINDOW_DAYS,
) -> FeeSummary:
    """Aggregate a list of fees.

    ``total_amount`` is total fee exposure: it sums every fee whatever its
    status, so it is not ``paid_amount + unpaid_amount`` when NA fees exist.
    """
    now = now or utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    summary = FeeSummary()
    overdue: List[Fee] = []
    upcoming: List[Fee] = []
    for fee in fees:
        summary.total_amount += fee.amount
        summary.total_count += 1
        if fee.status == "PAID":
            summary.paid_amount += fee.amount
            summary.paid_count += 1
        elif fee.status == "UNPAID":
            summary.unpaid_amount += fee.amount
            summary.unpaid_count += 1
        elif fee.status == "NA":
            summary.na_amount += fee.amount
            summary.na_count += 1
        if is_overdue(fee, now):
            overdue.append(fee)
        elif is_upcoming(fee, now, window_days):
            upcoming.append(fee)

    summary.overdue_fees = overdue
    summary.upcoming_fees = upcoming
    summary.overdue_count = len(overdue)
    summary.upcoming_count = len(upcoming)
    return summary


def row_to_fee(row: sqlite3.Row) -> Fee:
    return Fee(
        fee_id=row["id"],
        customer_id=row["customer_id"],
        type=row["type"],
        amount=Decimal(row["amount"]),
        currency=row["currency"] or DEFAULT_CURRENCY,
        status=row["status"],
        due_date=row["due_date"],
        paid_date=row["paid_date"],
        payment_method=row["payment_method"],
        reference=row["reference"],
        description=row["description"],
        added_date=row["added_date"],
        added_by=row["added_by"] or "System",
        last_modified=row["last_modified"],
    )


def fetch_fee(conn: sqlite3.Connection, fee_id: str) -> Optional[sqlite3.Row]:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Fee WHERE id = ?", (fee_id,))
    return cur.fetchone()


class FeeLedger:
    def __init__(
        self,
        store: Store,
        default_payment_method: str = DEFAULT_PAYMENT_METHOD,
        default_currency: str = DEFAULT_CURRENCY,
        upcoming_window_days: int = UPCOMING_WINDOW_DAYS,
        idempotency_window_seconds: int = 600,
    ) -> None:
        self.store = store
        self.default_payment_method = default_payment_method
        self.default_currency = default_currency
        self.upcoming_window_days = upcoming_window_days
        self.idempotency_window_seconds = idempotency_window_seconds

    def add(
        self,
        customer_id: str,
        fee_type: Any,
        amount: Any,
        due_date: Any = None,
        description: Optional[str] = None,
        reference: Optional[str] = None,
        currency: Optional[str] = None,
        actor: str = "System",
        idempotency_key: Optional[str] = None,
    ) -> Fee:
        canonical_type = normalize_fee_type(fee_type)
        parsed_amount = parse_fee_amount(amount)
        parsed_due_date = parse_due_date(due_date)

        with self.store.connect() as conn:
            require_customer(conn, customer_id)
            if idempotency_key:
                existing_id = find_idempotent_result(
                    conn, customer_id, idempotency_key, ADD_FEE_OPERATION, self.idempotency_window_seconds
                )
                existing = fetch_fee(conn, existing_id) if existing_id else None
                if existing:
                    logger.info("Duplicate fee submission %s for customer %s", idempotency_key, customer_id)
                    return row_to_fee(existing)

            added_at = utc_now()
            fee = Fee(
                fee_id=new_record_id("FEE"),
                customer_id=customer_id,
                type=canonical_type,
                amount=parsed_amount,
                currency=(currency or "").strip() or self.default_currency,
                status="UNPAID",
                due_date=parsed_due_date,
                description=description or "",
                reference=(reference or "").strip()
                or f"{canonical_type[:3].upper()}-{int(_time.time() * 1000)}",
                added_date=added_at,
                added_by=actor or "System",
                last_modified=added_at,
            )
            conn.execute(
                """
                INSERT INTO Fee (
                    id, customer_id, type, amount, currency, status, due_date, paid_date,
                    payment_method, reference, description, added_date, added_by, last_modified
                ) VALUES (?, ?, ?, ?, ?, ?, ?, NULL, NULL, ?, ?, ?, ?, ?)
                """,
                (
                    fee.fee_id,
                    fee.customer_id,
                    fee.type,
                    str(fee.amount),
                    fee.currency,
                    fee.status,
                    fee.due_date.isoformat() if fee.due_date else None,
                    fee.reference,
                    fee.description,
                    to_iso(fee.added_date),
                    fee.added_by,
                    to_iso(fee.added_date),
                ),
            )
            if idempotency_key:
                try:
                    record_idempotent_result(
                        conn,
                        customer_id,
                        idempotency_key,
                        ADD_FEE_OPERATION,
                        fee.fee_id,
                        self.idempotency_window_seconds,
                    )
                except sqlite3.IntegrityError:
                    # A concurrent submission with the same key won the claim.
                    conn.rollback()
                    winner_id = find_idempotent_result(
                        conn, customer_id, idempotency_key, ADD_FEE_OPERATION, self.idempotency_window_seconds
                    )
                    winner = fetch_fee(conn, winner_id) if winner_id else None
                    if not winner:
                        raise
                    return row_to_fee(winner)
            conn.commit()
        return fee

    def get(self, fee_id: str) -> Fee:
        with self.store.connect() as conn:
            row = fetch_fee(conn, fee_id)
        if not row:
            raise FeeNotFound(fee_id)
        return row_to_fee(row)

    def list_for_customer(self, customer_id: str, status: Optional[str] = None) -> List[Fee]:
        query = "SELECT * FROM Fee WHERE customer_id = ?"
        params: List[Any] = [customer_id]
        if status:
            query += " AND status = ?"
            params.append(normalize_fee_status(status))
        query += " ORDER BY added_date DESC, id DESC"
        with self.store.connect() as conn:
            cur = conn.cursor()
            cur.execute(query, params)
            return [row_to_fee(row) for row in cur.fetchall()]

    def update_status(self, fee_id: str, new_status: Any, payment_method: Optional[str] = None) -> Fee:
        """Move a fee to ``new_status``.

        Entering PAID stamps a server-side ``paid_date`` and keeps a payment
        method (supplied, else the prior one, else the default). Leaving PAID
        keeps the previous payment metadata as it was.
        """
        status = normalize_fee_status(new_status)
        with self.store.connect() as conn:
            row = fetch_fee(conn, fee_id)
            if not row:
                raise FeeNotFound(fee_id)
            fee = row_to_fee(row)
            now = utc_now()
            updates = {"status": status, "last_modified": now}
            if status == "PAID":
                updates["paid_date"] = now
                updates["payment_method"] = (
                    (payment_method or "").strip() or fee.payment_method or self.default_payment_method
                )
            updated = fee.model_copy(update=updates)
            conn.execute(
                """
                UPDATE Fee SET status = ?, paid_date = ?, payment_method = ?, last_modified = ?
                WHERE id = ?
                """,
                (
                    updated.status,
                    to_iso(updated.paid_date) if updated.paid_date else None,
                    updated.payment_method,
                    to_iso(now),
                    fee_id,
                ),
            )
            conn.commit()
        return updated

    def remove(self, fee_id: str, customer_id: str) -> None:
        with self.store.connect() as conn:
            cur = conn.cursor()
            cur.execute("DELETE FROM Fee WHERE id = ? AND customer_id = ?", (fee_id, customer_id))
            if cur.rowcount == 0:
                raise FeeNotFound(fee_id)
            conn.commit()

    def summarize(self, fees: Iterable[Fee], now: Optional[datetime] = None) -> FeeSummary:
        return summarize_fees(fees, now=now, window_days=self.upcoming_window_days)
