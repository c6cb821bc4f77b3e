from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Optional

import stage_catalog
from errors import InvalidTransition, PartialTransitionFailure
from models import Customer, StageHistoryEntry, StageTransition
from stage_history import StageHistoryLog, insert_entry
from store import (
    Store,
    find_idempotent_result,
    insert_customer,
    insert_reconciliation_job,
    next_customer_id,
    pending_reconciliation_jobs,
    record_idempotent_result,
    require_customer,
    resolve_reconciliation_job,
    update_customer,
    utc_now,
)

logger = logging.getLogger(__name__)

MOVE_STAGE_OPERATION = "move_stage"
DOCUMENT_RECEIVED = "received"
CREATE_CUSTOMER_ATTEMPTS = 3
EDITABLE_CUSTOMER_FIELDS = {
    "first_name",
    "last_name",
    "email",
    "phone",
    "category",
    "customer_account_type",
    "joint_holders",
}
# Editable fields that may be cleared with an explicit null.
NULLABLE_CUSTOMER_FIELDS = {"email", "phone", "category"}


class CustomerLifecycle:
    """Stage transitions and versioned customer writes.

    A stage move is two writes: the customer's ``current_stage`` (a versioned
    compare-and-swap) and the matching stage history entry. When the second
    write fails the first is kept, a reconciliation job is recorded and
    ``PartialTransitionFailure`` is raised; ``reconcile_pending`` replays the
    missing entries later.
    """

    def __init__(
        self,
        store: Store,
        history: Optional[StageHistoryLog] = None,
        idempotency_window_seconds: int = 600,
    ) -> None:
        self.store = store
        self.history = history or StageHistoryLog(store)
        self.idempotency_window_seconds = idempotency_window_seconds

    # ----------------------
    # Customers
    # ----------------------

    def get_customer(self, customer_id: str) -> Customer:
        with self.store.connect() as conn:
            return require_customer(conn, customer_id)

    def create_customer(
        self,
        first_name: str,
        last_name: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        category: Optional[str] = None,
        customer_account_type: Optional[str] = None,
        joint_holders: Optional[List[Dict[str, Any]]] = None,
        current_stage: Optional[str] = None,
        enquiry_id: Optional[str] = None,
        enquiry_notes: Optional[str] = None,
        actor: str = "System",
    ) -> Customer:
        stage = current_stage or stage_catalog.FIRST_STAGE
        if not stage_catalog.is_stage(stage):
            raise ValueError(f"Unknown stage: {stage}")

        created_at = utc_now()
        if enquiry_id:
            notes = f"Converted from enquiry {enquiry_id}: {enquiry_notes or 'Initial enquiry conversion'}"
        else:
            notes = f"Customer created at {stage_catalog.display_name(stage)}"

        # Two creates can read the same last id; the loser retries with a fresh one.
        for attempt in range(1, CREATE_CUSTOMER_ATTEMPTS + 1):
            with self.store.connect() as conn:
                customer = Customer(
                    id=next_customer_id(conn),
                    first_name=first_name,
                    last_name=last_name,
                    email=email,
                    phone=phone,
                    category=category,
                    customer_account_type=customer_account_type or "Sole",
                    current_stage=stage,
                    joint_holders=joint_holders or [],
                    documents={},
                    enquiry_id=enquiry_id,
                    converted_from_enquiry=bool(enquiry_id),
                    created_at=created_at,
                    updated_at=created_at,
                    version=1,
                )
                try:
                    insert_customer(conn, customer)
                except sqlite3.IntegrityError:
                    conn.rollback()
                    if attempt == CREATE_CUSTOMER_ATTEMPTS:
                        raise
                    logger.warning("Customer id %s was taken, retrying", customer.id)
                    continue
                insert_entry(
                    conn,
                    StageHistoryEntry(
                        customer_id=customer.id,
                        stage=stage,
                        previous_stage=None,
                        direction="initial",
                        notes=notes,
                        timestamp=created_at,
                        user=actor or "System",
                    ),
                )
                conn.commit()
            return customer

    def update_customer(self, customer_id: str, expected_version: Optional[int], updates: Dict[str, Any]) -> Customer:
        if "current_stage" in updates:
            raise ValueError("current_stage can only change through a stage move")
        unknown = sorted(set(updates) - EDITABLE_CUSTOMER_FIELDS)
        if unknown:
            raise ValueError(f"Fields cannot be updated: {', '.join(unknown)}")
        if not updates:
            raise ValueError("No customer updates provided")
        cleared = sorted(
            field for field, value in updates.items() if value is None and field not in NULLABLE_CUSTOMER_FIELDS
        )
        if cleared:
            raise ValueError(f"Fields cannot be null: {', '.join(cleared)}")

        with self.store.connect() as conn:
            updated = update_customer(
                conn, customer_id, expected_version, lambda customer: customer.model_copy(update=updates)
            )
            conn.commit()
        return updated

    def mark_document_received(
        self, customer_id: str, document_type: str, expected_version: Optional[int] = None
    ) -> Customer:
        document_type = (document_type or "").strip()
        if not document_type:
            raise ValueError("Document type is required")

        def mark(customer: Customer) -> Customer:
            documents = dict(customer.documents)
            documents[document_type] = DOCUMENT_RECEIVED
            return customer.model_copy(update={"documents": documents})

        with self.store.connect() as conn:
            updated = update_customer(conn, customer_id, expected_version, mark)
            conn.commit()
        return updated

    # ----------------------
    # Stage transitions
    # ----------------------

    @staticmethod
    def current_progress(customer: Customer) -> int:
        return stage_catalog.progress(customer.current_stage)

    @staticmethod
    def can_move_forward(customer: Customer) -> bool:
        return stage_catalog.can_move(customer.current_stage, stage_catalog.FORWARD)

    @staticmethod
    def can_move_backward(customer: Customer) -> bool:
        return stage_catalog.can_move(customer.current_stage, stage_catalog.BACKWARD)

    def move_stage(
        self,
        customer_id: str,
        direction: str,
        actor: str,
        note: Optional[str] = None,
        expected_version: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> StageTransition:
        if idempotency_key:
            replayed = self._replay_move(customer_id, idempotency_key)
            if replayed:
                return replayed

        with self.store.connect() as conn:
            customer = require_customer(conn, customer_id)
            previous = customer.current_stage
            target = stage_catalog.neighbour(previous, direction)
            if target is None:
                raise InvalidTransition(previous, direction)
            updated = update_customer(
                conn,
                customer_id,
                expected_version,
                lambda current: current.model_copy(update={"current_stage": target}),
            )
            conn.commit()

        entry = StageHistoryEntry(
            customer_id=customer_id,
            stage=target,
            previous_stage=previous,
            direction=direction,
            notes=note or f"Stage moved {direction}",
            timestamp=utc_now(),
            user=actor or "System",
        )
        try:
            stored = self.history.append(entry)
        except Exception as exc:
            job_id = self._record_reconciliation(entry, exc)
            raise PartialTransitionFailure(customer_id, previous, target, job_id) from exc

        transition = StageTransition(customer=updated, history_entry=stored)
        if idempotency_key:
            self._remember_move(customer_id, idempotency_key, transition)
        return transition

    def reconcile_pending(self) -> List[StageHistoryEntry]:
        """Write the history entries of torn stage moves, oldest job first."""
        replayed: List[StageHistoryEntry] = []
        with self.store.connect() as conn:
            for job in pending_reconciliation_jobs(conn):
                stored = insert_entry(
                    conn,
                    StageHistoryEntry(
                        customer_id=job["customer_id"],
                        stage=job["stage"],
                        previous_stage=job["previous_stage"],
                        direction=job["direction"],
                        notes=job["notes"] or "",
                        timestamp=job["timestamp"],
                        user=job["user"] or "System",
                    ),
                )
                resolve_reconciliation_job(conn, job["id"], stored.id)
                conn.commit()
                logger.info("Reconciled stage job %s as history entry %s", job["id"], stored.id)
                replayed.append(stored)
        return replayed

    def _replay_move(self, customer_id: str, idempotency_key: str) -> Optional[StageTransition]:
        with self.store.connect() as conn:
            snapshot = find_idempotent_result(
                conn, customer_id, idempotency_key, MOVE_STAGE_OPERATION, self.idempotency_window_seconds
            )
        if not snapshot:
            return None
        logger.info("Duplicate stage move %s for customer %s", idempotency_key, customer_id)
        # The first response as it was sent, even if the customer has moved on since.
        return StageTransition.model_validate_json(snapshot)

    def _remember_move(self, customer_id: str, idempotency_key: str, transition: StageTransition) -> None:
        with self.store.connect() as conn:
            try:
                record_idempotent_result(
                    conn,
                    customer_id,
                    idempotency_key,
                    MOVE_STAGE_OPERATION,
                    transition.model_dump_json(),
                    self.idempotency_window_seconds,
                )
                conn.commit()
            except sqlite3.IntegrityError:
                conn.rollback()
                logger.warning(
                    "Idempotency key %s for customer %s was already claimed", idempotency_key, customer_id
                )

    def _record_reconciliation(self, entry: StageHistoryEntry, exc: Exception) -> Optional[str]:
        try:
            with self.store.connect() as conn:
                job_id = insert_reconciliation_job(conn, entry, repr(exc))
                conn.commit()
            return job_id
        except sqlite3.Error:
            logger.exception("Could not record reconciliation job for customer %s", entry.customer_id)
            return None
