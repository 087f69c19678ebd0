"""API endpoints for identity server configuration, ThreePid binding and lookup"""

from fastapi import APIRouter, Depends, HTTPException, status, Request

from api.dependencies import get_identity_service, limiter
from services.identity import (
    AlreadyBound,
    BindingStateError,
    BulkLookupUnsupported,
    Cancelled,
    IdentityService,
    IdentityServiceError,
    InvalidOrExpiredCode,
    MalformedResponse,
    MatrixApiError,
    NoActiveSession,
    NoIdentityServerConfigured,
    SessionExpired,
    Unreachable,
    UnsupportedServerVersion,
)
from services.identity.models import (
    BindingStatusResponse,
    FoundThreePidResponse,
    IdentityServerRequest,
    IdentityServerResponse,
    LookupRequest,
    ShareStatusResponse,
    SubmitCodeRequest,
    ThreePidRequest,
    ValidateServerRequest,
)

router = APIRouter(prefix="/identity", tags=["identity"])

_ERROR_STATUS = [
    (NoActiveSession, status.HTTP_404_NOT_FOUND),
    (BindingStateError, status.HTTP_409_CONFLICT),
    (AlreadyBound, status.HTTP_409_CONFLICT),
    (InvalidOrExpiredCode, status.HTTP_400_BAD_REQUEST),
    (SessionExpired, status.HTTP_410_GONE),
    (NoIdentityServerConfigured, status.HTTP_412_PRECONDITION_FAILED),
    (UnsupportedServerVersion, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (BulkLookupUnsupported, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (Unreachable, status.HTTP_502_BAD_GATEWAY),
    (MalformedResponse, status.HTTP_502_BAD_GATEWAY),
    (MatrixApiError, status.HTTP_502_BAD_GATEWAY),
    (Cancelled, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def _http_error(e: Exception) -> HTTPException:
    """Translate a service failure into an HTTP error"""
    if isinstance(e, ValueError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    for error_type, code in _ERROR_STATUS:
        if isinstance(e, error_type):
            return HTTPException(status_code=code, detail=str(e))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Identity operation failed: {str(e)}"
    )


def _binding_status(service: IdentityService, threepid) -> BindingStatusResponse:
    session = service.tracker.session_of(threepid)
    return BindingStatusResponse(
        medium=threepid.medium,
        address=threepid.value,
        state=service.tracker.state_of(threepid),
        retry_count=session.retry_count if session else 0,
        created_at=session.created_at if session else None,
    )


@router.get("/server", response_model=IdentityServerResponse)
async def get_identity_server(service: IdentityService = Depends(get_identity_service)):
    """Current identity server configuration (no network call)"""
    config = service.locator.config
    return IdentityServerResponse(url=config.url, default_url=config.default_url, status=config.status)


@router.put("/server", response_model=IdentityServerResponse)
@limiter.limit("10/minute")
async def set_identity_server(
    request: Request,
    body: IdentityServerRequest,
    service: IdentityService = Depends(get_identity_service)
):
    """
    Switch identity server.

    The url is normalized (https:// is added when missing) and validated
    before it is used. Send null to disconnect.
    """
    try:
        await service.set_new_identity_server(body.url)
    except (IdentityServiceError, ValueError) as e:
        raise _http_error(e)

    config = service.locator.config
    return IdentityServerResponse(url=config.url, default_url=config.default_url, status=config.status)


@router.get("/server/default")
@limiter.limit("30/minute")
async def get_default_identity_server(
    request: Request,
    service: IdentityService = Depends(get_identity_service)
):
    """Identity server advertised by the homeserver's well-known"""
    try:
        url = await service.get_default_identity_server()
    except (IdentityServiceError, ValueError) as e:
        raise _http_error(e)
    return {"url": url}


@router.post("/server/validate")
@limiter.limit("30/minute")
async def validate_identity_server(
    request: Request,
    body: ValidateServerRequest,
    service: IdentityService = Depends(get_identity_service)
):
    try:
        await service.is_valid_identity_server(body.url)
    except (IdentityServiceError, ValueError) as e:
        raise _http_error(e)
    return {"valid": True}


@router.post("/bind/start", response_model=BindingStatusResponse)
@limiter.limit("10/minute")
async def start_bind(
    request: Request,
    body: ThreePidRequest,
    service: IdentityService = Depends(get_identity_service)
):
    """
    Start binding a ThreePid.

    The identity server sends a code by email or SMS. Any binding already in
    progress for the same ThreePid is cancelled.
    """
    try:
        threepid = body.to_threepid()
        await service.start_bind_threepid(threepid)
    except (IdentityServiceError, ValueError) as e:
        raise _http_error(e)
    return _binding_status(service, threepid)


@router.post("/bind/resend", response_model=BindingStatusResponse)
@limiter.limit("5/minute")
async def resend_code(
    request: Request,
    body: ThreePidRequest,
    service: IdentityService = Depends(get_identity_service)
):
    try:
        threepid = body.to_threepid()
        await service.send_again_validation_code(threepid)
    except (IdentityServiceError, ValueError) as e:
        raise _http_error(e)
    return _binding_status(service, threepid)


@router.post("/bind/submit", response_model=BindingStatusResponse)
@limiter.limit("10/minute")
async def submit_code(
    request: Request,
    body: SubmitCodeRequest,
    service: IdentityService = Depends(get_identity_service)
):
    """Submit the code received by email or SMS. Call /bind/finalize afterwards."""
    try:
        threepid = body.to_threepid()
        await service.submit_validation_token(threepid, body.code)
    except (IdentityServiceError, ValueError) as e:
        raise _http_error(e)
    return _binding_status(service, threepid)


@router.post("/bind/finalize")
@limiter.limit("10/minute")
async def finalize_bind(
    request: Request,
    body: ThreePidRequest,
    service: IdentityService = Depends(get_identity_service)
):
    try:
        threepid = body.to_threepid()
        await service.finalize_bind_threepid(threepid)
    except (IdentityServiceError, ValueError) as e:
        raise _http_error(e)
    return {"message": f"{threepid.value} bound to your account"}


@router.post("/bind/cancel")
@limiter.limit("10/minute")
async def cancel_bind(
    request: Request,
    body: ThreePidRequest,
    service: IdentityService = Depends(get_identity_service)
):
    try:
        threepid = body.to_threepid()
        await service.cancel_bind_threepid(threepid)
    except (IdentityServiceError, ValueError) as e:
        raise _http_error(e)
    return {"message": "Binding cancelled"}


@router.post("/bind/status", response_model=BindingStatusResponse)
@limiter.limit("30/minute")
async def binding_status(
    request: Request,
    body: ThreePidRequest,
    service: IdentityService = Depends(get_identity_service)
):
    """Local binding state of a ThreePid (none when nothing is pending)"""
    try:
        threepid = body.to_threepid()
    except ValueError as e:
        raise _http_error(e)
    return _binding_status(service, threepid)


@router.post("/unbind")
@limiter.limit("10/minute")
async def unbind(
    request: Request,
    body: ThreePidRequest,
    service: IdentityService = Depends(get_identity_service)
):
    try:
        threepid = body.to_threepid()
        result = await service.unbind_threepid(threepid)
    except (IdentityServiceError, ValueError) as e:
        raise _http_error(e)
    return {"id_server_unbind_result": result}


@router.post("/lookup", response_model=list[FoundThreePidResponse])
@limiter.limit("30/minute")
async def lookup(
    request: Request,
    body: LookupRequest,
    service: IdentityService = Depends(get_identity_service)
):
    """Matrix ids of the ThreePids known to the identity server. Unknown ones are omitted."""
    try:
        threepids = [item.to_threepid() for item in body.threepids]
        found = await service.look_up(threepids)
    except (IdentityServiceError, ValueError) as e:
        raise _http_error(e)
    return [
        FoundThreePidResponse(medium=f.threepid.medium, address=f.threepid.value, matrix_id=f.matrix_id)
        for f in found
    ]


@router.post("/share-status", response_model=list[ShareStatusResponse])
@limiter.limit("30/minute")
async def share_status(
    request: Request,
    body: LookupRequest,
    service: IdentityService = Depends(get_identity_service)
):
    """shared / binding_in_progress / not_shared for each of the user's ThreePids"""
    try:
        threepids = [item.to_threepid() for item in body.threepids]
        statuses = await service.get_share_status(threepids)
    except (IdentityServiceError, ValueError) as e:
        raise _http_error(e)
    return [
        ShareStatusResponse(medium=threepid.medium, address=threepid.value, state=state)
        for threepid, state in statuses.items()
    ]
