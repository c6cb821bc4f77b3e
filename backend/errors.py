from __future__ import annotations

from typing import Any, Dict, Optional


class LifecycleError(Exception):
    """Base class for failures raised by the customer lifecycle core."""


class NotFound(LifecycleError):
    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class FeeNotFound(NotFound):
    def __init__(self, fee_id: str) -> None:
        super().__init__("Fee", fee_id)
        self.fee_id = fee_id


class InvalidTransition(LifecycleError):
    def __init__(self, stage: Optional[str], direction: str) -> None:
        super().__init__(f"Cannot move {direction} from stage {stage!r}")
        self.stage = stage
        self.direction = direction


class VersionConflict(LifecycleError):
    def __init__(self, entity_id: str, expected_version: Optional[int], actual_version: Optional[int]) -> None:
        super().__init__(
            f"{entity_id} has been modified by another user "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version

    def details(self) -> Dict[str, Any]:
        return {
            "code": "VERSION_CONFLICT",
            "message": "The document was modified by another user. Please refresh and try again.",
            "expected_version": self.expected_version,
            "actual_version": self.actual_version,
        }


class PartialTransitionFailure(LifecycleError):
    """The customer stage was written but its history entry was not.

    The customer update is not rolled back; ``job_id`` names the reconciliation
    job recorded for the missing entry, or is None when that could not be saved.
    """

    def __init__(self, customer_id: str, previous_stage: str, stage: str, job_id: Optional[str]) -> None:
        super().__init__(
            f"Customer {customer_id} moved {previous_stage} -> {stage} but the stage history append failed"
        )
        self.customer_id = customer_id
        self.previous_stage = previous_stage
        self.stage = stage
        self.job_id = job_id


class InvalidFeeAmount(LifecycleError, ValueError):
    def __init__(self, amount: Any) -> None:
        super().__init__(f"Invalid fee amount: {amount!r}")
        self.amount = amount


class InvalidFeeType(LifecycleError, ValueError):
    def __init__(self, fee_type: Any) -> None:
        super().__init__(f"Invalid fee type: {fee_type!r}")
        self.fee_type = fee_type


class InvalidFeeStatus(LifecycleError, ValueError):
    def __init__(self, status: Any) -> None:
        super().__init__("Status must be PAID, UNPAID, or NA")
        self.status = status
