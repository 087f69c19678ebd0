from fastapi import HTTPException, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address

from services.identity import IdentityService

# Rate limiter - uses client IP address for identification
limiter = Limiter(key_func=get_remote_address)


def get_identity_service(request: Request) -> IdentityService:
    """IdentityService created in the app lifespan"""
    service = getattr(request.app.state, "identity_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Identity service not started"
        )
    return service
