from __future__ import annotations

import json
import logging
import secrets
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from errors import NotFound, VersionConflict
from models import Customer, StageHistoryEntry

logger = logging.getLogger(__name__)

CUSTOMER_ID_PREFIX = "GKF"
CUSTOMER_ID_DIGITS = 5


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    # Fixed width so ISO strings sort chronologically in SQL.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_iso() -> str:
    return to_iso(utc_now())


def new_record_id(prefix: str) -> str:
    return f"{prefix}{int(time.time() * 1000)}{secrets.token_hex(3).upper()}"


class Store:
    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS Customer(
                    id TEXT PRIMARY KEY,
                    first_name TEXT,
                    last_name TEXT,
                    email TEXT,
                    phone TEXT,
                    category TEXT,
                    customer_account_type TEXT,
                    current_stage TEXT,
                    joint_holders_json TEXT,
                    documents_json TEXT,
                    enquiry_id TEXT,
                    converted_from_enquiry INTEGER,
                    created_at TEXT,
                    updated_at TEXT,
                    version INTEGER
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS StageHistory(
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT UNIQUE,
                    customer_id TEXT,
                    stage TEXT,
                    previous_stage TEXT,
                    direction TEXT,
                    notes TEXT,
                    timestamp TEXT,
                    user TEXT
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS Fee(
                    id TEXT PRIMARY KEY,
                    customer_id TEXT,
                    type TEXT,
                    amount TEXT,
                    currency TEXT,
                    status TEXT,
                    due_date TEXT,
                    paid_date TEXT,
                    payment_method TEXT,
                    reference TEXT,
                    description TEXT,
                    added_date TEXT,
                    added_by TEXT,
                    last_modified TEXT
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS IdempotencyKey(
                    customer_id TEXT,
                    idempotency_key TEXT,
                    operation TEXT,
                    result_id TEXT,
                    created_at TEXT,
                    PRIMARY KEY (customer_id, idempotency_key, operation)
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS StageReconciliationJob(
                    id TEXT PRIMARY KEY,
                    customer_id TEXT,
                    stage TEXT,
                    previous_stage TEXT,
                    direction TEXT,
                    notes TEXT,
                    timestamp TEXT,
                    user TEXT,
                    error TEXT,
                    status TEXT,
                    history_id TEXT,
                    created_at TEXT,
                    resolved_at TEXT
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_stage_history_customer ON StageHistory(customer_id, timestamp, seq)"
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_fee_customer ON Fee(customer_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_customer_stage ON Customer(current_stage)")
            conn.commit()


# ----------------------
# Customers
# ----------------------

def fetch_customer(conn: sqlite3.Connection, customer_id: str) -> Optional[sqlite3.Row]:
    cur = conn.cursor()
    cur.execute("SELECT * FROM Customer WHERE id = ?", (customer_id,))
    return cur.fetchone()


def row_to_customer(row: sqlite3.Row) -> Customer:
    data = dict(row)
    return Customer(
        id=data["id"],
        first_name=data.get("first_name") or "",
        last_name=data.get("last_name") or "",
        email=data.get("email"),
        phone=data.get("phone"),
        category=data.get("category"),
        customer_account_type=data.get("customer_account_type") or "Sole",
        current_stage=data["current_stage"],
        joint_holders=json.loads(data.get("joint_holders_json") or "[]"),
        documents=json.loads(data.get("documents_json") or "{}"),
        enquiry_id=data.get("enquiry_id"),
        converted_from_enquiry=bool(data.get("converted_from_enquiry")),
        created_at=data["created_at"],
        updated_at=data["updated_at"],
        version=data.get("version") or 0,
    )


def require_customer(conn: sqlite3.Connection, customer_id: str) -> Customer:
    row = fetch_customer(conn, customer_id)
    if not row:
        raise NotFound("Customer", customer_id)
    return row_to_customer(row)


def next_customer_id(conn: sqlite3.Connection) -> str:
    cur = conn.cursor()
    # Numeric order, so GKF100000 sorts after GKF99999.
    cur.execute(
        """
        SELECT id FROM Customer WHERE id LIKE ?
        ORDER BY CAST(substr(id, ?) AS INTEGER) DESC LIMIT 1
        """,
        (f"{CUSTOMER_ID_PREFIX}%", len(CUSTOMER_ID_PREFIX) + 1),
    )
    row = cur.fetchone()
    last_number = 0
    if row:
        try:
            last_number = int(row["id"][len(CUSTOMER_ID_PREFIX):])
        except ValueError:
            last_number = 0
    return f"{CUSTOMER_ID_PREFIX}{last_number + 1:0{CUSTOMER_ID_DIGITS}d}"


def insert_customer(conn: sqlite3.Connection, customer: Customer) -> None:
    conn.execute(
        """
        INSERT INTO Customer (
            id, first_name, last_name, email, phone, category, customer_account_type,
            current_stage, joint_holders_json, documents_json, enquiry_id,
            converted_from_enquiry, created_at, updated_at, version
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            customer.id,
            customer.first_name,
            customer.last_name,
            customer.email,
            customer.phone,
            customer.category,
            customer.customer_account_type,
            customer.current_stage,
            json.dumps(customer.joint_holders),
            json.dumps(customer.documents),
            customer.enquiry_id,
            1 if customer.converted_from_enquiry else 0,
            to_iso(customer.created_at),
            to_iso(customer.updated_at),
            customer.version,
        ),
    )


def update_customer(
    conn: sqlite3.Connection,
    customer_id: str,
    expected_version: Optional[int],
    mutator: Callable[[Customer], Customer],
) -> Customer:
    """Compare-and-swap a customer document.

    The row is only rewritten when its stored version still equals the one the
    caller observed. ``expected_version=None`` uses the version read here, which
    still guards against a writer landing between this read and the update.
    The caller owns the commit.
    """
    current = require_customer(conn, customer_id)
    if expected_version is not None and expected_version != current.version:
        raise VersionConflict(customer_id, expected_version, current.version)
    observed_version = current.version

    updated = mutator(current.model_copy(deep=True))
    updated = updated.model_copy(
        update={
            "id": customer_id,
            "version": observed_version + 1,
            "updated_at": utc_now(),
            "created_at": current.created_at,
        }
    )
    # model_copy skips validation; never write a document that cannot be read back.
    updated = Customer.model_validate(updated.model_dump())
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE Customer SET
            first_name = ?, last_name = ?, email = ?, phone = ?, category = ?,
            customer_account_type = ?, current_stage = ?, joint_holders_json = ?,
            documents_json = ?, enquiry_id = ?, converted_from_enquiry = ?,
            updated_at = ?, version = ?
        WHERE id = ? AND version = ?
        """,
        (
            updated.first_name,
            updated.last_name,
            updated.email,
            updated.phone,
            updated.category,
            updated.customer_account_type,
            updated.current_stage,
            json.dumps(updated.joint_holders),
            json.dumps(updated.documents),
            updated.enquiry_id,
            1 if updated.converted_from_enquiry else 0,
            to_iso(updated.updated_at),
            updated.version,
            customer_id,
            observed_version,
        ),
    )
    if cur.rowcount == 0:
        latest = fetch_customer(conn, customer_id)
        actual_version = latest["version"] if latest else None
        raise VersionConflict(customer_id, observed_version, actual_version)
    return updated


# ----------------------
# Idempotency keys
# ----------------------

def find_idempotent_result(
    conn: sqlite3.Connection,
    customer_id: str,
    idempotency_key: str,
    operation: str,
    window_seconds: int,
) -> Optional[str]:
    cutoff = to_iso(utc_now() - timedelta(seconds=window_seconds))
    cur = conn.cursor()
    cur.execute(
        """
        SELECT result_id FROM IdempotencyKey
        WHERE customer_id = ? AND idempotency_key = ? AND operation = ? AND created_at >= ?
        """,
        (customer_id, idempotency_key, operation, cutoff),
    )
    row = cur.fetchone()
    return row["result_id"] if row else None


def record_idempotent_result(
    conn: sqlite3.Connection,
    customer_id: str,
    idempotency_key: str,
    operation: str,
    result_id: str,
    window_seconds: int,
) -> None:
    """Claim a key for ``result_id``; raises sqlite3.IntegrityError if a live claim exists.

    ``result_id`` is whatever the operation needs to answer a repeat: a fee id,
    or a JSON snapshot of a stage move's response.
    """
    cutoff = to_iso(utc_now() - timedelta(seconds=window_seconds))
    conn.execute(
        """
        DELETE FROM IdempotencyKey
        WHERE customer_id = ? AND idempotency_key = ? AND operation = ? AND created_at < ?
        """,
        (customer_id, idempotency_key, operation, cutoff),
    )
    conn.execute(
        """
        INSERT INTO IdempotencyKey (customer_id, idempotency_key, operation, result_id, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (customer_id, idempotency_key, operation, result_id, now_iso()),
    )


# ----------------------
# Stage reconciliation jobs
# ----------------------

def insert_reconciliation_job(conn: sqlite3.Connection, entry: StageHistoryEntry, error: str) -> str:
    job_id = new_record_id("RJ")
    conn.execute(
        """
        INSERT INTO StageReconciliationJob (
            id, customer_id, stage, previous_stage, direction, notes, timestamp,
            user, error, status, history_id, created_at, resolved_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', NULL, ?, NULL)
        """,
        (
            job_id,
            entry.customer_id,
            entry.stage,
            entry.previous_stage,
            entry.direction,
            entry.notes,
            to_iso(entry.timestamp) if entry.timestamp else None,
            entry.user,
            error,
            now_iso(),
        ),
    )
    logger.warning(
        "Recorded stage reconciliation job %s for customer %s (%s -> %s)",
        job_id,
        entry.customer_id,
        entry.previous_stage,
        entry.stage,
    )
    return job_id


def pending_reconciliation_jobs(conn: sqlite3.Connection) -> List[sqlite3.Row]:
    cur = conn.cursor()
    cur.execute(
        "SELECT * FROM StageReconciliationJob WHERE status = 'pending' ORDER BY created_at ASC, id ASC"
    )
    return cur.fetchall()


def resolve_reconciliation_job(conn: sqlite3.Connection, job_id: str, history_id: str) -> None:
    conn.execute(
        """
        UPDATE StageReconciliationJob SET status = 'resolved', history_id = ?, resolved_at = ?
        WHERE id = ?
        """,
        (history_id, now_iso(), job_id),
    )
