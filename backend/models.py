from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

FeeType = Literal["Application", "SolicitorReferral", "MortgageProcuration"]
FeeStatus = Literal["UNPAID", "PAID", "NA"]
HistoryDirection = Literal["forward", "backward", "initial"]
SortOrder = Literal["asc", "desc"]

FEE_TYPES = ("Application", "SolicitorReferral", "MortgageProcuration")
FEE_STATUSES = ("UNPAID", "PAID", "NA")

# Accepted spellings, keyed by lower-cased input.
FEE_TYPE_CANONICAL = {
    "application": "Application",
    "application fee": "Application",
    "solicitorreferral": "SolicitorReferral",
    "solicitor referral": "SolicitorReferral",
    "solicitor referral fee": "SolicitorReferral",
    "mortgageprocuration": "MortgageProcuration",
    "mortgage procuration": "MortgageProcuration",
    "mortgage procuration fee": "MortgageProcuration",
}

FEE_TYPE_LABELS = {
    "Application": "Application Fee",
    "SolicitorReferral": "Solicitor Referral Fee",
    "MortgageProcuration": "Mortgage Procuration Fee",
}


class Customer(BaseModel):
    id: str
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    category: Optional[str] = None
    customer_account_type: str = "Sole"
    current_stage: str
    joint_holders: List[Dict[str, Any]] = Field(default_factory=list)
    documents: Dict[str, str] = Field(default_factory=dict)
    enquiry_id: Optional[str] = None
    converted_from_enquiry: bool = False
    created_at: datetime
    updated_at: datetime
    version: int = 1


class StageHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    customer_id: str
    stage: str
    previous_stage: Optional[str] = None
    direction: HistoryDirection
    notes: str = ""
    timestamp: Optional[datetime] = None
    user: str = "System"


class HistoryPage(BaseModel):
    items: List[StageHistoryEntry]
    total_count: int
    total_pages: int
    page: int
    page_size: int
    order: SortOrder
    current_stage: Optional[str] = None
    has_next_page: bool = False
    has_prev_page: bool = False


class StageTransition(BaseModel):
    customer: Customer
    history_entry: StageHistoryEntry


class Fee(BaseModel):
    fee_id: str
    customer_id: str
    type: FeeType
    amount: Decimal = Field(ge=0)
    currency: str = "GBP"
    status: FeeStatus = "UNPAID"
    due_date: Optional[date] = None
    paid_date: Optional[datetime] = None
    payment_method: Optional[str] = None
    reference: Optional[str] = None
    description: Optional[str] = None
    added_date: datetime
    added_by: str = "System"
    last_modified: Optional[datetime] = None


class FeeSummary(BaseModel):
    total_amount: Decimal = Decimal("0")
    paid_amount: Decimal = Decimal("0")
    unpaid_amount: Decimal = Decimal("0")
    na_amount: Decimal = Decimal("0")
    total_count: int = 0
    paid_count: int = 0
    unpaid_count: int = 0
    na_count: int = 0
    overdue_count: int = 0
    upcoming_count: int = 0
    overdue_fees: List[Fee] = Field(default_factory=list)
    upcoming_fees: List[Fee] = Field(default_factory=list)
