"""
Fixed, ordered pipeline of application stages.

Stage ids are persisted in stage history rows, so the list below must not be
reordered or renamed once data exists.
"""
from __future__ import annotations

from typing import Dict, List, Optional

FORWARD = "forward"
BACKWARD = "backward"

STAGES: List[str] = [
    "initial-enquiry-assessment",
    "document-verification",
    "decision-in-principle",
    "application-submitted-lender",
    "case-submitted-network",
    "offer-generated",
    "solicitor-initial-quote-issued",
    "solicitor-quote-accepted-fee-paid",
    "solicitor-initial-search-legal-enquiries",
    "solicitor-contracts-prepared",
    "exchange-completion",
]

FIRST_STAGE = STAGES[0]
LAST_STAGE = STAGES[-1]

STAGE_DISPLAY_NAMES: Dict[str, str] = {
    "initial-enquiry-assessment": "Initial Enquiry Assessment",
    "document-verification": "Document Verification",
    "decision-in-principle": "Decision In Principle",
    "application-submitted-lender": "Application Submitted Lender",
    "case-submitted-network": "Case Submitted Network",
    "offer-generated": "Offer Generated",
    "solicitor-initial-quote-issued": "Solicitor - Initial Quote Issued",
    "solicitor-quote-accepted-fee-paid": "Solicitor - Quote Accepted & Fee Paid",
    "solicitor-initial-search-legal-enquiries": "Solicitor - Initial Search and Legal Enquiries",
    "solicitor-contracts-prepared": "Solicitor - Contracts Prepared",
    "exchange-completion": "Exchange & Completion",
}

STAGE_PROGRESS: Dict[str, int] = {
    "initial-enquiry-assessment": 9,
    "document-verification": 18,
    "decision-in-principle": 27,
    "application-submitted-lender": 36,
    "case-submitted-network": 45,
    "offer-generated": 54,
    "solicitor-initial-quote-issued": 63,
    "solicitor-quote-accepted-fee-paid": 72,
    "solicitor-initial-search-legal-enquiries": 81,
    "solicitor-contracts-prepared": 90,
    "exchange-completion": 100,
}

_STAGE_INDEX: Dict[str, int] = {stage: i for i, stage in enumerate(STAGES)}


def is_stage(stage: Optional[str]) -> bool:
    return stage in _STAGE_INDEX


def index(stage: Optional[str]) -> Optional[int]:
    if stage is None:
        return None
    return _STAGE_INDEX.get(stage)


def next_stage(stage: Optional[str]) -> Optional[str]:
    position = index(stage)
    if position is None or position >= len(STAGES) - 1:
        return None
    return STAGES[position + 1]


def previous_stage(stage: Optional[str]) -> Optional[str]:
    position = index(stage)
    if position is None or position == 0:
        return None
    return STAGES[position - 1]


def neighbour(stage: Optional[str], direction: str) -> Optional[str]:
    if direction == FORWARD:
        return next_stage(stage)
    if direction == BACKWARD:
        return previous_stage(stage)
    return None


def can_move(stage: Optional[str], direction: str) -> bool:
    return neighbour(stage, direction) is not None


def progress(stage: Optional[str]) -> int:
    if stage is None:
        return 0
    return STAGE_PROGRESS.get(stage, 0)


def display_name(stage: str) -> str:
    return STAGE_DISPLAY_NAMES.get(stage, stage)


def catalog() -> List[Dict[str, object]]:
    return [
        {
            "index": i,
            "id": stage,
            "display_name": STAGE_DISPLAY_NAMES[stage],
            "progress": STAGE_PROGRESS[stage],
        }
        for i, stage in enumerate(STAGES)
    ]
