from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Literal, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

import stage_catalog
from errors import (
    LifecycleError,
    NotFound,
    PartialTransitionFailure,
    VersionConflict,
)
from fee_ledger import PAYMENT_METHODS, FeeLedger
from lifecycle import CustomerLifecycle
from logging_config import setup_logging
from models import FEE_TYPE_LABELS, FEE_TYPES, Customer, Fee, FeeSummary, HistoryPage, StageHistoryEntry
from stage_history import StageHistoryLog
from store import Store

BASE_DIR = Path(__file__).resolve().parent
db_path_raw = os.getenv("DB_PATH", str(BASE_DIR / "app.db"))
DB_PATH = Path(db_path_raw).expanduser()
if not DB_PATH.is_absolute():
    DB_PATH = (BASE_DIR / DB_PATH).resolve()
else:
    DB_PATH = DB_PATH.resolve()

DEFAULT_PAYMENT_METHOD = os.getenv("DEFAULT_PAYMENT_METHOD", "Bank Transfer").strip() or "Bank Transfer"
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "GBP").strip().upper() or "GBP"
STAGE_HISTORY_PAGE_SIZE = int(os.getenv("STAGE_HISTORY_PAGE_SIZE", "15"))
UPCOMING_FEE_WINDOW_DAYS = int(os.getenv("UPCOMING_FEE_WINDOW_DAYS", "30"))
IDEMPOTENCY_WINDOW_SECONDS = int(os.getenv("IDEMPOTENCY_WINDOW_SECONDS", "600"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
LOG_FORMAT = os.getenv("LOG_FORMAT", "json").strip().lower()
if LOG_FORMAT not in {"json", "standard"}:
    LOG_FORMAT = "json"

ACTOR_HEADER = "x-user-name"
IDEMPOTENCY_HEADER = "idempotency-key"
DEFAULT_ACTOR = "System"

logger = logging.getLogger(__name__)

app = FastAPI(title="GK Finance Back Office API")

FRONTEND_BASE_URL = os.getenv("FRONTEND_BASE_URL", "http://localhost:3000").rstrip("/")
_extra_origins_raw = os.getenv("ALLOWED_ORIGINS", "")
EXTRA_ALLOWED_ORIGINS = [
    origin.strip().rstrip("/")
    for origin in _extra_origins_raw.split(",")
    if origin.strip()
]
ALLOWED_ORIGINS = sorted(set([
    FRONTEND_BASE_URL,
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    *EXTRA_ALLOWED_ORIGINS,
]))

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------
# Services
# ----------------------

def get_store() -> Store:
    return Store(DB_PATH)


def get_history_log() -> StageHistoryLog:
    return StageHistoryLog(get_store(), default_page_size=STAGE_HISTORY_PAGE_SIZE)


def get_lifecycle() -> CustomerLifecycle:
    store = get_store()
    return CustomerLifecycle(
        store,
        StageHistoryLog(store, default_page_size=STAGE_HISTORY_PAGE_SIZE),
        idempotency_window_seconds=IDEMPOTENCY_WINDOW_SECONDS,
    )


def get_fee_ledger() -> FeeLedger:
    return FeeLedger(
        get_store(),
        default_payment_method=DEFAULT_PAYMENT_METHOD,
        default_currency=DEFAULT_CURRENCY,
        upcoming_window_days=UPCOMING_FEE_WINDOW_DAYS,
        idempotency_window_seconds=IDEMPOTENCY_WINDOW_SECONDS,
    )


def init_db() -> None:
    get_store().init_db()


def _header(request: Any, name: str) -> Optional[str]:
    headers = getattr(request, "headers", None) or {}
    value = headers.get(name)
    return value.strip() if isinstance(value, str) and value.strip() else None


def resolve_actor(request: Request) -> str:
    return _header(request, ACTOR_HEADER) or DEFAULT_ACTOR


def resolve_idempotency_key(request: Request) -> Optional[str]:
    return _header(request, IDEMPOTENCY_HEADER)


@contextmanager
def translate_errors() -> Iterator[None]:
    try:
        yield
    except PartialTransitionFailure as exc:
        logger.critical(
            "Torn stage move for customer %s (%s -> %s), reconciliation job %s",
            exc.customer_id,
            exc.previous_stage,
            exc.stage,
            exc.job_id,
            extra={"customer_id": exc.customer_id, "job_id": exc.job_id},
        )
        raise HTTPException(
            status_code=500,
            detail={
                "code": "PARTIAL_TRANSITION",
                "message": "Stage was updated but its history entry could not be saved",
                "customer_id": exc.customer_id,
                "stage": exc.stage,
                "job_id": exc.job_id,
            },
        )
    except VersionConflict as exc:
        logger.warning("Version conflict on %s: %s", exc.entity_id, exc)
        raise HTTPException(status_code=409, detail=exc.details())
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except (LifecycleError, ValueError) as exc:
        logger.warning("Rejected request: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc))


# ----------------------
# Request / response models
# ----------------------

class CustomerCreate(BaseModel):
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    category: Optional[str] = None
    customer_account_type: Optional[str] = None
    joint_holders: List[Dict[str, Any]] = []
    current_stage: Optional[str] = None
    enquiry_id: Optional[str] = None
    enquiry_notes: Optional[str] = None


class CustomerUpdate(BaseModel):
    version: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    category: Optional[str] = None
    customer_account_type: Optional[str] = None
    joint_holders: Optional[List[Dict[str, Any]]] = None


class CustomerOut(Customer):
    stage_display_name: str
    progress: int
    can_move_forward: bool
    can_move_backward: bool
    next_stage: Optional[str] = None
    previous_stage: Optional[str] = None


class DocumentReceivedIn(BaseModel):
    version: int


class StageMoveIn(BaseModel):
    direction: Literal["forward", "backward"]
    version: int
    note: Optional[str] = None


class StageMoveOut(BaseModel):
    customer: CustomerOut
    history_entry: StageHistoryEntry


class StageHistoryOut(HistoryPage):
    stage_customers: List[str] = []


class StageOut(BaseModel):
    index: int
    id: str
    display_name: str
    progress: int


class FeeCreate(BaseModel):
    type: str
    amount: Any = None
    due_date: Optional[str] = None
    description: Optional[str] = None
    reference: Optional[str] = None
    currency: Optional[str] = None


class FeeStatusUpdate(BaseModel):
    status: str
    payment_method: Optional[str] = None


class FeeSummaryIn(BaseModel):
    fees: List[Fee]
    as_of: Optional[datetime] = None


def to_customer_out(customer: Customer) -> CustomerOut:
    return CustomerOut(
        **customer.model_dump(),
        stage_display_name=stage_catalog.display_name(customer.current_stage),
        progress=CustomerLifecycle.current_progress(customer),
        can_move_forward=CustomerLifecycle.can_move_forward(customer),
        can_move_backward=CustomerLifecycle.can_move_backward(customer),
        next_stage=stage_catalog.next_stage(customer.current_stage),
        previous_stage=stage_catalog.previous_stage(customer.current_stage),
    )


# ----------------------
# API routes
# ----------------------

@app.on_event("startup")
async def startup_event() -> None:
    setup_logging(LOG_LEVEL, LOG_FORMAT)
    init_db()


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/stages", response_model=List[StageOut])
def list_stages() -> List[StageOut]:
    return [StageOut(**stage) for stage in stage_catalog.catalog()]


@app.get("/api/fee-types", response_model=List[Dict[str, str]])
def list_fee_types() -> List[Dict[str, str]]:
    return [{"type": fee_type, "label": FEE_TYPE_LABELS[fee_type]} for fee_type in FEE_TYPES]


@app.get("/api/payment-methods", response_model=List[str])
def list_payment_methods() -> List[str]:
    return list(PAYMENT_METHODS)


@app.post("/api/customers", response_model=CustomerOut, status_code=201)
def create_customer(payload: CustomerCreate, request: Request) -> CustomerOut:
    actor = resolve_actor(request)
    with translate_errors():
        customer = get_lifecycle().create_customer(
            first_name=payload.first_name,
            last_name=payload.last_name,
            email=payload.email,
            phone=payload.phone,
            category=payload.category,
            customer_account_type=payload.customer_account_type,
            joint_holders=payload.joint_holders,
            current_stage=payload.current_stage,
            enquiry_id=payload.enquiry_id,
            enquiry_notes=payload.enquiry_notes,
            actor=actor,
        )
    logger.info("Created customer %s", customer.id, extra={"customer_id": customer.id, "actor": actor})
    return to_customer_out(customer)


@app.get("/api/customers/{customer_id}", response_model=CustomerOut)
def get_customer(customer_id: str) -> CustomerOut:
    with translate_errors():
        customer = get_lifecycle().get_customer(customer_id)
    return to_customer_out(customer)


@app.patch("/api/customers/{customer_id}", response_model=CustomerOut)
def update_customer(customer_id: str, payload: CustomerUpdate) -> CustomerOut:
    updates = payload.model_dump(exclude_unset=True)
    version = updates.pop("version")
    if not updates:
        raise HTTPException(status_code=400, detail="No customer updates provided")
    with translate_errors():
        customer = get_lifecycle().update_customer(customer_id, version, updates)
    logger.info("Updated customer %s to version %s", customer_id, customer.version)
    return to_customer_out(customer)


@app.post("/api/customers/{customer_id}/documents/{document_type}/received", response_model=CustomerOut)
def mark_document_received(customer_id: str, document_type: str, payload: DocumentReceivedIn) -> CustomerOut:
    with translate_errors():
        customer = get_lifecycle().mark_document_received(customer_id, document_type, payload.version)
    return to_customer_out(customer)


@app.post("/api/customers/{customer_id}/stage-moves", response_model=StageMoveOut)
def move_stage(customer_id: str, payload: StageMoveIn, request: Request) -> StageMoveOut:
    actor = resolve_actor(request)
    with translate_errors():
        transition = get_lifecycle().move_stage(
            customer_id,
            payload.direction,
            actor,
            note=payload.note,
            expected_version=payload.version,
            idempotency_key=resolve_idempotency_key(request),
        )
    logger.info(
        "Customer %s moved %s to %s",
        customer_id,
        payload.direction,
        transition.history_entry.stage,
        extra={"customer_id": customer_id, "actor": actor},
    )
    return StageMoveOut(customer=to_customer_out(transition.customer), history_entry=transition.history_entry)


@app.get("/api/stage-history/{customer_id}", response_model=StageHistoryOut)
def get_stage_history(
    customer_id: str,
    page: int = 1,
    page_size: Optional[int] = None,
    order: str = "desc",
) -> StageHistoryOut:
    history = get_history_log()
    with translate_errors():
        customer = get_lifecycle().get_customer(customer_id)
        result = history.list_for_customer(customer_id, page=page, page_size=page_size, order=order)
        occupants = history.current_stage_occupants(customer.current_stage)
    return StageHistoryOut(**result.model_dump(), stage_customers=occupants)


@app.get("/api/stages/{stage}/customers", response_model=List[str])
def list_stage_customers(stage: str) -> List[str]:
    if not stage_catalog.is_stage(stage):
        raise HTTPException(status_code=404, detail=f"Unknown stage: {stage}")
    return get_history_log().current_stage_occupants(stage)


@app.get("/api/customers/{customer_id}/fees", response_model=List[Fee])
def list_customer_fees(customer_id: str, status: Optional[str] = None) -> List[Fee]:
    with translate_errors():
        return get_fee_ledger().list_for_customer(customer_id, status=status)


@app.post("/api/customers/{customer_id}/fees", response_model=Fee)
def add_fee(customer_id: str, payload: FeeCreate, request: Request) -> Fee:
    actor = resolve_actor(request)
    with translate_errors():
        fee = get_fee_ledger().add(
            customer_id,
            payload.type,
            payload.amount,
            due_date=payload.due_date,
            description=payload.description,
            reference=payload.reference,
            currency=payload.currency,
            actor=actor,
            idempotency_key=resolve_idempotency_key(request),
        )
    logger.info(
        "Added fee %s for customer %s",
        fee.fee_id,
        customer_id,
        extra={"customer_id": customer_id, "fee_id": fee.fee_id, "actor": actor},
    )
    return fee


@app.put("/api/fees/{fee_id}/status", response_model=Fee)
def update_fee_status(fee_id: str, payload: FeeStatusUpdate) -> Fee:
    with translate_errors():
        fee = get_fee_ledger().update_status(fee_id, payload.status, payload.payment_method)
    logger.info("Fee %s is now %s", fee_id, fee.status, extra={"fee_id": fee_id})
    return fee


@app.delete("/api/customers/{customer_id}/fees/{fee_id}")
def delete_fee(customer_id: str, fee_id: str) -> Dict[str, str]:
    with translate_errors():
        get_fee_ledger().remove(fee_id, customer_id)
    logger.info("Deleted fee %s for customer %s", fee_id, customer_id)
    return {"status": "deleted"}


@app.post("/api/fees/summary", response_model=FeeSummary)
def summarize_fees(payload: FeeSummaryIn) -> FeeSummary:
    return get_fee_ledger().summarize(payload.fees, now=payload.as_of)


@app.get("/api/customers/{customer_id}/fees/summary", response_model=FeeSummary)
def get_customer_fee_summary(customer_id: str) -> FeeSummary:
    ledger = get_fee_ledger()
    with translate_errors():
        fees = ledger.list_for_customer(customer_id)
    return ledger.summarize(fees)


@app.post("/api/admin/reconcile-stage-history", response_model=List[StageHistoryEntry])
def reconcile_stage_history() -> List[StageHistoryEntry]:
    replayed = get_lifecycle().reconcile_pending()
    if replayed:
        logger.info("Reconciled %s stage history entries", len(replayed))
    return replayed
