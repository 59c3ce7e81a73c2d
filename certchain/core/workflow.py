"""
Action Request Workflow

Revocation and reactivation are governed off-ledger: staff file a request,
an admin claims it, performs the ledger transaction, then closes it.

State machine (validated before any write):

    pending    --take-->      processing   (admin; records taken_by)
    pending    --cancel-->    (deleted)    (original requester)
    processing --release-->   pending      (claimant)
    processing --complete-->  completed    (claimant)
    processing --reject-->    rejected     (claimant, with reason)

completed and rejected are terminal.

Every write is a single compare-and-set in the GovernanceStore. When the
store reports the row moved underneath us, the request is re-read and the
accurate error (InvalidTransition / Forbidden) is raised.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional, Union

from ..observability import get_logger
from ..schemas import (
    ActionRequest,
    ActionType,
    Actor,
    ExecutionResult,
    NewActionRequest,
    Page,
    RequestStatus,
)
from .audit import paginate
from .errors import Conflict, Forbidden, InvalidTransition, NotFound, ValidationError
from .hasher import is_valid_hash, normalize_hash
from .ledger_client import LedgerClient

if TYPE_CHECKING:
    from ..db.store import GovernanceStore
    from .certificates import CertificateVersionChain

logger = get_logger(__name__)

LATEST_LIMIT = 5


class RequestEvent(str, Enum):
    TAKE = "take"
    RELEASE = "release"
    COMPLETE = "complete"
    REJECT = "reject"
    CANCEL = "cancel"


# None as a target means the row is deleted
TRANSITIONS: dict[tuple[RequestStatus, RequestEvent], Optional[RequestStatus]] = {
    (RequestStatus.PENDING, RequestEvent.TAKE): RequestStatus.PROCESSING,
    (RequestStatus.PENDING, RequestEvent.CANCEL): None,
    (RequestStatus.PROCESSING, RequestEvent.RELEASE): RequestStatus.PENDING,
    (RequestStatus.PROCESSING, RequestEvent.COMPLETE): RequestStatus.COMPLETED,
    (RequestStatus.PROCESSING, RequestEvent.REJECT): RequestStatus.REJECTED,
}

CLAIMANT_EVENTS = (RequestEvent.RELEASE, RequestEvent.COMPLETE, RequestEvent.REJECT)


def next_status(current: RequestStatus, event: RequestEvent) -> Optional[RequestStatus]:
    """
    Look up a transition.

    Raises:
        InvalidTransition: No edge for (current, event)
    """
    key = (current, event)
    if key not in TRANSITIONS:
        raise InvalidTransition(
            f"Cannot {event.value} a request that is {current.value}"
        )
    return TRANSITIONS[key]


def check_actor(request: ActionRequest, event: RequestEvent, actor: Actor) -> None:
    """Raises Forbidden if actor may not fire event on request."""
    if event == RequestEvent.TAKE and not actor.is_admin:
        raise Forbidden("Only admins can take requests")
    if event in CLAIMANT_EVENTS and request.taken_by != actor.address:
        raise Forbidden(f"Only the admin who took this request can {event.value} it")
    if event == RequestEvent.CANCEL and request.requested_by != actor.address:
        raise Forbidden("Only the requester can cancel this request")


def guard(request: ActionRequest, event: RequestEvent, actor: Actor) -> Optional[RequestStatus]:
    """State check first, then actor check. Returns the target status."""
    target = next_status(request.status, event)
    check_actor(request, event, actor)
    return target


class ActionRequestWorkflow:
    """
    Governance state machine over the GovernanceStore.

    Usage:
        workflow = ActionRequestWorkflow(store, ledger)
        req = await workflow.create(cert_hash, "revoke", "Fraud", staff)
        await workflow.take(req.id, admin)
        await workflow.execute(req.id, admin, chain)
    """

    def __init__(
        self,
        store: "GovernanceStore",
        ledger: LedgerClient,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._ledger = ledger
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ============================================================
    # CREATE
    # ============================================================

    async def create(
        self,
        cert_hash: str,
        action_type: Union[ActionType, str],
        reason: str,
        actor: Actor,
    ) -> ActionRequest:
        """
        File a revoke/reactivate request.

        Raises:
            ValidationError: Bad hash, action type or empty reason
            NotFound: Certificate does not exist
            Conflict: An open request already exists for the certificate
            InvalidTransition: Action does not match the certificate's state
        """
        try:
            action = ActionType(action_type)
        except ValueError:
            raise ValidationError(f"Unknown action type: {action_type}") from None
        if not reason or not reason.strip():
            raise ValidationError("A reason is required")
        if not is_valid_hash(cert_hash):
            raise ValidationError("Certificate hash must be 64 hex characters")

        cert_hash = normalize_hash(cert_hash)
        record = await self._ledger.get_record(cert_hash)

        open_requests = await self._store.list_requests(
            statuses=(RequestStatus.PENDING, RequestStatus.PROCESSING),
            cert_hash=cert_hash,
            limit=1,
        )
        if open_requests:
            raise Conflict("An open request already exists for this certificate")

        if action == ActionType.REVOKE and record.is_revoked:
            raise InvalidTransition("Certificate is already revoked")
        if action == ActionType.REACTIVATE and not record.is_revoked:
            raise InvalidTransition("Certificate is not revoked")

        request = await self._store.insert_request(
            NewActionRequest(
                cert_hash=cert_hash,
                student_id=record.student_id,
                action_type=action,
                reason=reason.strip(),
                requested_by=actor.address,
                requested_by_name=actor.name,
            ),
            now=self._clock(),
        )
        logger.info(
            "Action request created",
            request_id=request.id,
            cert_hash=cert_hash,
            action_type=action.value,
        )
        return request

    # ============================================================
    # TRANSITIONS
    # ============================================================

    async def take(self, request_id: int, actor: Actor) -> ActionRequest:
        return await self._apply(request_id, RequestEvent.TAKE, actor, taken_by=actor.address)

    async def release(self, request_id: int, actor: Actor) -> ActionRequest:
        return await self._apply(request_id, RequestEvent.RELEASE, actor, taken_by=None)

    async def complete(self, request_id: int, actor: Actor) -> ActionRequest:
        return await self._apply(request_id, RequestEvent.COMPLETE, actor)

    async def reject(self, request_id: int, actor: Actor, reason: str) -> ActionRequest:
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")
        return await self._apply(
            request_id, RequestEvent.REJECT, actor, rejection_reason=reason.strip()
        )

    async def cancel(self, request_id: int, actor: Actor) -> None:
        """Delete a still-pending request. Requester only."""
        request = await self.get(request_id)
        guard(request, RequestEvent.CANCEL, actor)

        deleted = await self._store.delete_request(
            request_id, RequestStatus.PENDING, actor.address
        )
        if not deleted:
            await self._report_lost_race(request_id, RequestEvent.CANCEL, actor)
        logger.info("Action request cancelled", request_id=request_id)

    async def _apply(
        self,
        request_id: int,
        event: RequestEvent,
        actor: Actor,
        **changes,
    ) -> ActionRequest:
        request = await self.get(request_id)
        target = guard(request, event, actor)

        updated = await self._store.transition_request(
            request_id,
            from_status=request.status,
            to_status=target,
            now=self._clock(),
            claimant=actor.address if event in CLAIMANT_EVENTS else None,
            **changes,
        )
        if updated is None:
            await self._report_lost_race(request_id, event, actor)

        logger.info(
            "Action request transitioned",
            request_id=request_id,
            event=event.value,
            status=updated.status.value,
        )
        return updated

    async def _report_lost_race(self, request_id: int, event: RequestEvent, actor: Actor) -> None:
        # Re-read so the caller sees why, not just that, the write failed
        current = await self.get(request_id)
        guard(current, event, actor)
        raise Conflict("Request was modified concurrently; retry")

    async def execute(
        self,
        request_id: int,
        actor: Actor,
        chain: "CertificateVersionChain",
    ) -> ExecutionResult:
        """
        Perform the ledger change for a claimed request, then complete it.

        Ledger failures propagate and leave the request in processing.
        """
        request = await self.get(request_id)
        guard(request, RequestEvent.COMPLETE, actor)

        if request.action_type == ActionType.REVOKE:
            change = await chain.revoke(request.cert_hash, actor)
        else:
            change = await chain.reactivate(request.cert_hash, actor)

        completed = await self.complete(request_id, actor)
        return ExecutionResult(request=completed, state_change=change)

    # ============================================================
    # READS
    # ============================================================

    async def get(self, request_id: int) -> ActionRequest:
        request = await self._store.get_request(request_id)
        if request is None:
            raise NotFound(f"Action request {request_id} not found")
        return request

    async def list_mine(
        self,
        actor: Actor,
        status: Optional[RequestStatus] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Union[list[ActionRequest], Page]:
        """Requests an admin has claimed, or a staff member has filed."""
        statuses = (status,) if status else None
        if actor.is_admin:
            requests = await self._store.list_requests(statuses=statuses, taken_by=actor.address)
        else:
            requests = await self._store.list_requests(statuses=statuses, requested_by=actor.address)
        return paginate(requests, page, limit)

    async def for_certificate(self, cert_hash: str) -> list[ActionRequest]:
        return await self._store.list_requests(cert_hash=normalize_hash(cert_hash))

    async def latest(self, limit: int = LATEST_LIMIT) -> list[ActionRequest]:
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        return await self._store.list_requests(limit=limit)

    async def pending_count(self) -> int:
        return await self._store.count_requests(statuses=(RequestStatus.PENDING,))

    async def open_count_for(self, actor: Actor) -> int:
        """Requests filed by actor that are still open: pending or processing only."""
        return await self._store.count_requests(
            statuses=(RequestStatus.PENDING, RequestStatus.PROCESSING),
            requested_by=actor.address,
        )

    async def not_completed_count_for(self, actor: Actor) -> int:
        """
        Requests filed by actor that did not complete, rejected ones included.

        Cancelled requests are deleted, so they never count.
        """
        return await self._store.count_requests(
            statuses=tuple(s for s in RequestStatus if s != RequestStatus.COMPLETED),
            requested_by=actor.address,
        )

    # Defined last: the name shadows the builtin for the rest of the class body
    async def list(
        self,
        status: Optional[RequestStatus] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Union[list[ActionRequest], Page]:
        requests = await self._store.list_requests(
            statuses=(status,) if status else None
        )
        return paginate(requests, page, limit)
