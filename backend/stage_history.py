from __future__ import annotations

import math
import sqlite3
from typing import List, Optional

from models import HistoryPage, StageHistoryEntry
from store import Store, new_record_id, to_iso, utc_now

DEFAULT_PAGE_SIZE = 15
SORT_ORDERS = {"asc", "desc"}


def row_to_entry(row: sqlite3.Row) -> StageHistoryEntry:
    return StageHistoryEntry(
        id=row["id"],
        customer_id=row["customer_id"],
        stage=row["stage"],
        previous_stage=row["previous_stage"],
        direction=row["direction"],
        notes=row["notes"] or "",
        timestamp=row["timestamp"],
        user=row["user"] or "System",
    )


def insert_entry(conn: sqlite3.Connection, entry: StageHistoryEntry) -> StageHistoryEntry:
    stored = entry.model_copy(
        update={
            "id": entry.id or new_record_id("SH"),
            "timestamp": entry.timestamp or utc_now(),
        }
    )
    conn.execute(
        """
        INSERT INTO StageHistory (id, customer_id, stage, previous_stage, direction, notes, timestamp, user)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            stored.id,
            stored.customer_id,
            stored.stage,
            stored.previous_stage,
            stored.direction,
            stored.notes,
            to_iso(stored.timestamp),
            stored.user,
        ),
    )
    return stored


class StageHistoryLog:
    """Append-only stage audit trail, one stream per customer."""

    def __init__(self, store: Store, default_page_size: int = DEFAULT_PAGE_SIZE) -> None:
        self.store = store
        self.default_page_size = default_page_size

    def append(self, entry: StageHistoryEntry) -> StageHistoryEntry:
        with self.store.connect() as conn:
            stored = insert_entry(conn, entry)
            conn.commit()
        return stored

    def get(self, entry_id: str) -> Optional[StageHistoryEntry]:
        with self.store.connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM StageHistory WHERE id = ?", (entry_id,))
            row = cur.fetchone()
        return row_to_entry(row) if row else None

    def list_for_customer(
        self,
        customer_id: str,
        page: int = 1,
        page_size: Optional[int] = None,
        order: str = "desc",
    ) -> HistoryPage:
        page_size = self.default_page_size if page_size is None else page_size
        if page < 1:
            raise ValueError("page must be 1 or greater")
        if page_size < 1:
            raise ValueError("page_size must be 1 or greater")
        order = (order or "desc").strip().lower()
        if order not in SORT_ORDERS:
            raise ValueError("order must be asc or desc")

        direction_sql = "ASC" if order == "asc" else "DESC"
        with self.store.connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT COUNT(*) AS cnt FROM StageHistory WHERE customer_id = ?", (customer_id,))
            total_count = cur.fetchone()["cnt"]
            cur.execute(
                f"""
                SELECT * FROM StageHistory
                WHERE customer_id = ?
                ORDER BY timestamp {direction_sql}, seq {direction_sql}
                LIMIT ? OFFSET ?
                """,
                (customer_id, page_size, (page - 1) * page_size),
            )
            items = [row_to_entry(row) for row in cur.fetchall()]
            cur.execute(
                """
                SELECT stage FROM StageHistory
                WHERE customer_id = ?
                ORDER BY timestamp DESC, seq DESC
                LIMIT 1
                """,
                (customer_id,),
            )
            newest = cur.fetchone()

        total_pages = math.ceil(total_count / page_size)
        return HistoryPage(
            items=items,
            total_count=total_count,
            total_pages=total_pages,
            page=page,
            page_size=page_size,
            order=order,
            current_stage=newest["stage"] if newest else None,
            has_next_page=page < total_pages,
            has_prev_page=page > 1,
        )

    def recent_for_customer(self, customer_id: str, limit: int = 5) -> List[StageHistoryEntry]:
        return self.list_for_customer(customer_id, page=1, page_size=limit, order="desc").items

    def current_stage_occupants(self, stage: str) -> List[str]:
        with self.store.connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT id FROM Customer WHERE current_stage = ? ORDER BY id", (stage,))
            return [row["id"] for row in cur.fetchall()]
