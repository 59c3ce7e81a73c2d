"""
Action Request Schema

Off-ledger governance records. A staff member asks for a certificate to be
revoked or reactivated; an admin claims the request, performs the ledger
transaction, and closes it.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .certificate import StateChange


class ActionType(str, Enum):
    REVOKE = "revoke"
    REACTIVATE = "reactivate"


class RequestStatus(str, Enum):
    """
    Closed set of request states.

    PENDING and PROCESSING are "open"; at most one open request may exist
    per certificate. COMPLETED and REJECTED are terminal.
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"

    @property
    def is_open(self) -> bool:
        return self in (RequestStatus.PENDING, RequestStatus.PROCESSING)

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.COMPLETED, RequestStatus.REJECTED)


class ActionRequest(BaseModel):
    """A revoke/reactivate request as stored in the relational store."""

    model_config = ConfigDict(frozen=True)

    id: int
    cert_hash: str
    student_id: str
    action_type: ActionType
    reason: str = Field(..., min_length=1)
    status: RequestStatus = RequestStatus.PENDING

    requested_by: str = Field(..., description="Requester address")
    requested_by_name: str = ""
    taken_by: Optional[str] = Field(
        default=None,
        description="Admin holding the claim; set only while processing or after",
    )
    rejection_reason: Optional[str] = None

    requested_at: datetime
    updated_at: datetime


class NewActionRequest(BaseModel):
    """Fields supplied when inserting a request (id and timestamps come from the store)."""

    cert_hash: str
    student_id: str
    action_type: ActionType
    reason: str = Field(..., min_length=1)
    requested_by: str
    requested_by_name: str = ""


class ExecutionResult(BaseModel):
    """A request completed together with the ledger change it performed."""

    request: ActionRequest
    state_change: StateChange
