"""
API Routes for CertChain

Certificates:
- POST   /certificates                          - Issue the next version (staff/admin)
- GET    /certificates                          - List every issued certificate
- GET    /certificates/search?q=                - Search by student id or hash
- GET    /certificates/{hash}                   - Verify a certificate (public)
- POST   /certificates/{hash}/revoke            - Revoke (admin)
- POST   /certificates/{hash}/reactivate        - Reactivate (admin)
- GET    /students/{id}/certificates            - All versions
- GET    /students/{id}/certificates/active     - Active version

Action requests:
- POST   /requests                              - File a revoke/reactivate request
- GET    /requests                              - List (status, page, limit)
- GET    /requests/mine | latest | pending-count | my-open-count
- GET    /requests/by-certificate/{hash}
- GET    /requests/{id}
- POST   /requests/{id}/take | release | complete | execute | reject
- DELETE /requests/{id}                         - Cancel (requester, pending only)

Verification:
- POST   /verify                                - Public, rate limited
- GET    /verification/logs                     - Admin
- GET    /verification/blocked                  - Admin
- POST   /verification/blocked                  - Admin, manual block
- DELETE /verification/blocked/{ip}             - Admin

Audit:
- GET    /audit                                 - Global trail
- GET    /audit/certificates/{hash}
- GET    /audit/actors/{address}

Routes hold no business rules; every decision is made in certchain.core.
Core errors are rendered by certchain_error_handler as {"error", "message"}.
"""

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..core import (
    ActionRequestWorkflow,
    AuditTrailAggregator,
    CertChainError,
    CertificateVersionChain,
    VerificationService,
)
from ..schemas import ActionType, Actor, RequestStatus, VerifierInfo
from .auth import get_client_ip, require_actor, require_admin

router = APIRouter()


# ============================================================
# Error mapping
# ============================================================

STATUS_BY_KIND = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "invalid_transition": status.HTTP_400_BAD_REQUEST,
    "forbidden": status.HTTP_403_FORBIDDEN,
    "rate_limited": status.HTTP_429_TOO_MANY_REQUESTS,
    "validation": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "ledger_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
    "rejected_by_ledger": status.HTTP_400_BAD_REQUEST,
    "ledger_error": status.HTTP_502_BAD_GATEWAY,
}


async def certchain_error_handler(request: Request, exc: CertChainError) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR),
        content=exc.to_dict(),
    )


# ============================================================
# Dependency Injection
# Services are built once in the application lifespan
# ============================================================

def get_chain(request: Request) -> CertificateVersionChain:
    return request.app.state.services.chain


def get_audit(request: Request) -> AuditTrailAggregator:
    return request.app.state.services.audit


def get_workflow(request: Request) -> ActionRequestWorkflow:
    return request.app.state.services.workflow


def get_verification(request: Request) -> VerificationService:
    return request.app.state.services.verification


# ============================================================
# Request Models
# ============================================================

class IssueCertificateRequest(BaseModel):
    student_id: str = Field(..., min_length=1)
    student_name: str = Field(..., min_length=1)
    degree: str = Field(..., min_length=1)
    program: str = Field(..., min_length=1)
    cgpa: Decimal
    issuing_authority: str = Field(..., min_length=1)


class CreateActionRequest(BaseModel):
    cert_hash: str
    action_type: ActionType
    reason: str = Field(..., min_length=1)


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class VerifySubmission(BaseModel):
    cert_hash: str
    verifier_name: str = Field(..., min_length=1)
    verifier_email: str = Field(..., min_length=3)
    verifier_institution: str = ""
    verifier_website: str = ""


class BlockClientRequest(BaseModel):
    ip: str = Field(..., min_length=1)
    minutes: int = Field(60, ge=1)
    reason: str = "Blocked by administrator"


# ============================================================
# Certificates
# ============================================================

@router.post("/certificates", status_code=status.HTTP_201_CREATED, tags=["Certificates"])
async def issue_certificate(
    body: IssueCertificateRequest,
    actor: Actor = Depends(require_actor),
    chain: CertificateVersionChain = Depends(get_chain),
):
    """
    Issue the next version of a student's certificate.

    Lost version races are retried after re-reading the version head.
    """
    return await chain.issue_with_retry(
        student_id=body.student_id,
        student_name=body.student_name,
        degree=body.degree,
        program=body.program,
        cgpa=body.cgpa,
        issuing_authority=body.issuing_authority,
        actor=actor,
    )


@router.get("/certificates", tags=["Certificates"])
async def list_certificates(
    actor: Actor = Depends(require_actor),
    chain: CertificateVersionChain = Depends(get_chain),
):
    return await chain.list_certificates()


@router.get("/certificates/search", tags=["Certificates"])
async def search_certificates(
    q: str = "",
    actor: Actor = Depends(require_actor),
    chain: CertificateVersionChain = Depends(get_chain),
):
    return await chain.search(q)


@router.get("/certificates/{cert_hash}", tags=["Certificates"])
async def verify_certificate(
    cert_hash: str,
    chain: CertificateVersionChain = Depends(get_chain),
):
    """Public lookup. Includes whether the content still matches its hash."""
    record = await chain.verify(cert_hash)
    return {
        "certificate": record,
        "integrity_valid": chain.recompute_hash(record) == record.cert_hash,
    }


@router.post("/certificates/{cert_hash}/revoke", tags=["Certificates"])
async def revoke_certificate(
    cert_hash: str,
    actor: Actor = Depends(require_admin),
    chain: CertificateVersionChain = Depends(get_chain),
):
    return await chain.revoke(cert_hash, actor)


@router.post("/certificates/{cert_hash}/reactivate", tags=["Certificates"])
async def reactivate_certificate(
    cert_hash: str,
    actor: Actor = Depends(require_admin),
    chain: CertificateVersionChain = Depends(get_chain),
):
    return await chain.reactivate(cert_hash, actor)


@router.get("/students/{student_id}/certificates", tags=["Certificates"])
async def student_versions(
    student_id: str,
    chain: CertificateVersionChain = Depends(get_chain),
):
    return await chain.all_versions(student_id)


@router.get("/students/{student_id}/certificates/active", tags=["Certificates"])
async def student_active_version(
    student_id: str,
    chain: CertificateVersionChain = Depends(get_chain),
):
    return await chain.active_version(student_id)


# ============================================================
# Action requests
# ============================================================

@router.post("/requests", status_code=status.HTTP_201_CREATED, tags=["Action Requests"])
async def create_request(
    body: CreateActionRequest,
    actor: Actor = Depends(require_actor),
    workflow: ActionRequestWorkflow = Depends(get_workflow),
):
    return await workflow.create(body.cert_hash, body.action_type, body.reason, actor)


@router.get("/requests", tags=["Action Requests"])
async def list_requests(
    status_filter: Optional[RequestStatus] = Query(None, alias="status"),
    page: Optional[int] = None,
    limit: Optional[int] = None,
    actor: Actor = Depends(require_actor),
    workflow: ActionRequestWorkflow = Depends(get_workflow),
):
    return await workflow.list(status=status_filter, page=page, limit=limit)


@router.get("/requests/mine", tags=["Action Requests"])
async def my_requests(
    status_filter: Optional[RequestStatus] = Query(None, alias="status"),
    page: Optional[int] = None,
    limit: Optional[int] = None,
    actor: Actor = Depends(require_actor),
    workflow: ActionRequestWorkflow = Depends(get_workflow),
):
    return await workflow.list_mine(actor, status=status_filter, page=page, limit=limit)


@router.get("/requests/latest", tags=["Action Requests"])
async def latest_requests(
    limit: int = 5,
    actor: Actor = Depends(require_actor),
    workflow: ActionRequestWorkflow = Depends(get_workflow),
):
    return await workflow.latest(limit)


@router.get("/requests/pending-count", tags=["Action Requests"])
async def pending_count(
    actor: Actor = Depends(require_actor),
    workflow: ActionRequestWorkflow = Depends(get_workflow),
):
    return {"count": await workflow.pending_count()}


@router.get("/requests/my-open-count", tags=["Action Requests"])
async def my_open_count(
    actor: Actor = Depends(require_actor),
    workflow: ActionRequestWorkflow = Depends(get_workflow),
):
    """Pending or processing requests filed by the caller."""
    return {"count": await workflow.open_count_for(actor)}


@router.get("/requests/my-not-completed-count", tags=["Action Requests"])
async def my_not_completed_count(
    actor: Actor = Depends(require_actor),
    workflow: ActionRequestWorkflow = Depends(get_workflow),
):
    """Requests filed by the caller in any state but completed."""
    return {"count": await workflow.not_completed_count_for(actor)}


@router.get("/requests/by-certificate/{cert_hash}", tags=["Action Requests"])
async def requests_for_certificate(
    cert_hash: str,
    actor: Actor = Depends(require_actor),
    workflow: ActionRequestWorkflow = Depends(get_workflow),
):
    return await workflow.for_certificate(cert_hash)


@router.get("/requests/{request_id}", tags=["Action Requests"])
async def get_request(
    request_id: int,
    actor: Actor = Depends(require_actor),
    workflow: ActionRequestWorkflow = Depends(get_workflow),
):
    return await workflow.get(request_id)


@router.post("/requests/{request_id}/take", tags=["Action Requests"])
async def take_request(
    request_id: int,
    actor: Actor = Depends(require_actor),
    workflow: ActionRequestWorkflow = Depends(get_workflow),
):
    return await workflow.take(request_id, actor)


@router.post("/requests/{request_id}/release", tags=["Action Requests"])
async def release_request(
    request_id: int,
    actor: Actor = Depends(require_actor),
    workflow: ActionRequestWorkflow = Depends(get_workflow),
):
    return await workflow.release(request_id, actor)


@router.post("/requests/{request_id}/complete", tags=["Action Requests"])
async def complete_request(
    request_id: int,
    actor: Actor = Depends(require_actor),
    workflow: ActionRequestWorkflow = Depends(get_workflow),
):
    return await workflow.complete(request_id, actor)


@router.post("/requests/{request_id}/execute", tags=["Action Requests"])
async def execute_request(
    request_id: int,
    actor: Actor = Depends(require_actor),
    workflow: ActionRequestWorkflow = Depends(get_workflow),
    chain: CertificateVersionChain = Depends(get_chain),
):
    """Perform the ledger change for a claimed request and complete it."""
    return await workflow.execute(request_id, actor, chain)


@router.post("/requests/{request_id}/reject", tags=["Action Requests"])
async def reject_request(
    request_id: int,
    body: RejectRequest,
    actor: Actor = Depends(require_actor),
    workflow: ActionRequestWorkflow = Depends(get_workflow),
):
    return await workflow.reject(request_id, actor, body.reason)


@router.delete(
    "/requests/{request_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Action Requests"],
)
async def cancel_request(
    request_id: int,
    actor: Actor = Depends(require_actor),
    workflow: ActionRequestWorkflow = Depends(get_workflow),
):
    await workflow.cancel(request_id, actor)


# ============================================================
# Verification
# ============================================================

@router.post("/verify", tags=["Verification"])
async def submit_verification(
    body: VerifySubmission,
    request: Request,
    verification: VerificationService = Depends(get_verification),
    chain: CertificateVersionChain = Depends(get_chain),
):
    """
    Public certificate verification.

    Every submission counts against the client's attempt budget, whether or
    not the certificate exists. Unknown hashes are not logged.
    """
    decision = await verification.submit(
        ip=get_client_ip(request),
        cert_hash=body.cert_hash,
        verifier=VerifierInfo(
            name=body.verifier_name,
            email=body.verifier_email,
            institution=body.verifier_institution,
            website=body.verifier_website,
        ),
        user_agent=request.headers.get("User-Agent"),
        lookup=chain.verify,
    )
    return {
        "accepted": decision.accepted,
        "remaining_attempts": decision.remaining_attempts,
        "certificate": decision.certificate,
    }


@router.get("/verification/logs", tags=["Verification"])
async def verification_logs(
    page: int = 1,
    limit: int = 10,
    sort_by: str = "verified_at",
    order: str = "desc",
    actor: Actor = Depends(require_admin),
    verification: VerificationService = Depends(get_verification),
):
    return await verification.list_logs(page=page, limit=limit, sort_by=sort_by, order=order)


@router.get("/verification/blocked", tags=["Verification"])
async def blocked_clients(
    actor: Actor = Depends(require_admin),
    verification: VerificationService = Depends(get_verification),
):
    return await verification.list_blocked()


@router.post(
    "/verification/blocked",
    status_code=status.HTTP_201_CREATED,
    tags=["Verification"],
)
async def block_client(
    body: BlockClientRequest,
    actor: Actor = Depends(require_admin),
    verification: VerificationService = Depends(get_verification),
):
    return await verification.block(body.ip, body.minutes, body.reason, actor)


@router.delete("/verification/blocked/{ip}", tags=["Verification"])
async def unblock_client(
    ip: str,
    actor: Actor = Depends(require_admin),
    verification: VerificationService = Depends(get_verification),
):
    return {"ip": ip, "unblocked": await verification.unblock(ip)}


# ============================================================
# Audit
# ============================================================

@router.get("/audit", tags=["Audit"])
async def global_audit_trail(
    page: Optional[int] = None,
    limit: Optional[int] = None,
    actor: Actor = Depends(require_actor),
    audit: AuditTrailAggregator = Depends(get_audit),
):
    return await audit.global_trail(page=page, limit=limit)


@router.get("/audit/certificates/{cert_hash}", tags=["Audit"])
async def certificate_audit_trail(
    cert_hash: str,
    page: Optional[int] = None,
    limit: Optional[int] = None,
    actor: Actor = Depends(require_actor),
    audit: AuditTrailAggregator = Depends(get_audit),
):
    return await audit.for_certificate(cert_hash, page=page, limit=limit)


@router.get("/audit/actors/{address}", tags=["Audit"])
async def actor_audit_trail(
    address: str,
    page: Optional[int] = None,
    limit: Optional[int] = None,
    actor: Actor = Depends(require_actor),
    audit: AuditTrailAggregator = Depends(get_audit),
):
    return await audit.for_actor(address, page=page, limit=limit)
