from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, File, Query, Request, Response, UploadFile

from schoolgate.api.schemas import (
    AttachmentInfo,
    AttachmentUploadResponse,
    ContextItem,
    ContextsResponse,
    FacultyLoginRequest,
    LoginResponse,
    LoginUser,
    OtpSentResponse,
    PhoneRequest,
    ProfileResponse,
    ScopeResponse,
    VerifyOtpRequest,
)
from schoolgate.logging import get_logger
from schoolgate.service.auth import OtpDispatch, Principal
from schoolgate.service.errors import InvalidTokenError
from schoolgate.service.rate_limit import RequestContext, UploadBatch
from schoolgate.service.runtime import get_runtime

logger = get_logger(__name__)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def get_request_context(request: Request) -> RequestContext:
    """Collect what the limiters and the auth gate need from the request.

    FastAPI resolves this once per request, so the bearer token verified by
    the rate limiter is reused by ``get_principal``.
    """
    body = None
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            parsed = await request.json()
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            body = parsed
    return RequestContext(
        client_ip=_client_ip(request),
        authorization=request.headers.get("authorization"),
        user_agent=request.headers.get("user-agent", ""),
        accept_language=request.headers.get("accept-language", ""),
        accept_encoding=request.headers.get("accept-encoding", ""),
        body=body,
    )


async def enforce_rate_limit(
    response: Response, ctx: RequestContext = Depends(get_request_context)
) -> None:
    decision = await get_runtime().rate_limiter.limit(ctx)
    response.headers.update(decision.headers())


async def get_principal(
    ctx: RequestContext = Depends(get_request_context),
) -> Principal:
    runtime = get_runtime()
    # Reuses the outcome of the rate limiter's verification for this request
    claims = ctx.resolve_claims(runtime.codec)
    if ctx.token_rejected:
        raise InvalidTokenError()
    return await runtime.auth.authenticate(ctx.authorization, verified_claims=claims)


def _file_size(upload: UploadFile) -> int:
    if upload.size is not None:
        return upload.size
    current = upload.file.tell()
    upload.file.seek(0, 2)
    size = upload.file.tell()
    upload.file.seek(current)
    return size


async def enforce_upload_limit(
    response: Response,
    files: List[UploadFile] = File(...),
    ctx: RequestContext = Depends(get_request_context),
) -> List[UploadFile]:
    batch = UploadBatch.from_sizes([_file_size(f) for f in files])
    decision = await get_runtime().upload_limiter.limit(ctx, batch)
    response.headers.update(decision.headers())
    return files


router = APIRouter(prefix="/api", dependencies=[Depends(enforce_rate_limit)])


def _otp_sent(message: str, dispatch: OtpDispatch) -> OtpSentResponse:
    return OtpSentResponse(
        message=message,
        expires_in=str(dispatch.expires_in),
        attempts_remaining=dispatch.attempts_remaining,
    )


@router.post("/auth/send-otp", response_model=OtpSentResponse, tags=["auth"])
async def send_otp(body: PhoneRequest, request: Request):
    runtime = get_runtime()
    dispatch = await runtime.auth.send_otp(body.phone_number, _client_ip(request))
    return _otp_sent("OTP sent successfully", dispatch)


@router.post("/auth/resend-otp", response_model=OtpSentResponse, tags=["auth"])
async def resend_otp(body: PhoneRequest):
    runtime = get_runtime()
    dispatch = await runtime.auth.resend_otp(body.phone_number)
    return _otp_sent("OTP resent successfully", dispatch)


@router.post("/auth/verify-otp", response_model=LoginResponse, tags=["auth"])
async def verify_otp(body: VerifyOtpRequest):
    runtime = get_runtime()
    result = await runtime.auth.verify_otp(body.phone_number, body.otp)
    return LoginResponse(token=result.token, user=LoginUser(role=result.role))


@router.post("/auth/faculty-login", response_model=LoginResponse, tags=["auth"])
async def faculty_login(body: FacultyLoginRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.faculty_login(
        body.username, body.password, _client_ip(request)
    )
    return LoginResponse(token=result.token, user=LoginUser(role=result.role))


@router.get("/user/profile", response_model=ProfileResponse, tags=["user"])
async def get_profile(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    return ProfileResponse(profile=runtime.auth.get_profile(principal))


@router.get("/user/contexts", response_model=ContextsResponse, tags=["user"])
async def list_contexts(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    contexts = [ContextItem(**item) for item in runtime.auth.list_contexts(principal)]
    return ContextsResponse(contexts=contexts)


@router.get("/user/scope", response_model=ScopeResponse, tags=["user"])
async def get_scope(
    child_id: Optional[str] = Query(None, alias="childId"),
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    scope = await runtime.parent_child.resolve_scope(principal, child_id)
    return ScopeResponse(
        subject_id=scope.subject_id,
        org_id=scope.organization_id,
        via_parent=scope.via_parent,
    )


@router.post(
    "/messages/attachments",
    response_model=AttachmentUploadResponse,
    tags=["messages"],
)
async def upload_attachments(
    files: List[UploadFile] = Depends(enforce_upload_limit),
    principal: Principal = Depends(get_principal),
):
    accepted = [
        AttachmentInfo(
            filename=f.filename, content_type=f.content_type, size=_file_size(f)
        )
        for f in files
    ]
    logger.info(
        "attachments_accepted",
        user_id=principal.id,
        count=len(accepted),
        total_bytes=sum(a.size for a in accepted),
    )
    return AttachmentUploadResponse(
        files=accepted,
        count=len(accepted),
        total_bytes=sum(a.size for a in accepted),
    )
