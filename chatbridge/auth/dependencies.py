"""
FastAPI Authentication Dependencies

Staff endpoints resolve the acting User from a bearer token. Streaming
endpoints also take it from `?token=` because EventSource cannot set headers.
"""
import logging
from typing import Optional

from fastapi import Depends, HTTPException, Query, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chatbridge.auth.jwt_handler import JWTValidationError, extract_user_from_token
from chatbridge.models.user import User

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(
    scheme_name="StaffBearer",
    description="Staff JWT (HS256)",
    auto_error=False,
)

UNAUTHORIZED_HEADERS = {"WWW-Authenticate": "Bearer"}


def _user_for_token(request: Request, token: Optional[str]) -> User:
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization token required",
            headers=UNAUTHORIZED_HEADERS,
        )

    app_settings = request.app.state.settings
    try:
        return extract_user_from_token(token, secret=app_settings.JWT_SECRET_KEY, audience=app_settings.JWT_AUDIENCE)
    except JWTValidationError as e:
        logger.warning(f"🚫 {request.method} {request.url.path}: {e}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e), headers=UNAUTHORIZED_HEADERS)


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> User:
    """The staff member behind the Authorization header (401 otherwise)"""
    return _user_for_token(request, credentials.credentials if credentials else None)


async def get_stream_user(
    request: Request,
    token: Optional[str] = Query(None, description="JWT token (EventSource cannot send headers)"),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> User:
    """Header token, or `?token=` for SSE clients"""
    return _user_for_token(request, token or (credentials.credentials if credentials else None))


def require_role(required_role: str):
    """
    Dependency factory restricting an endpoint to one role.

    Usage:
        @router.get("/events")
        async def audit(user: User = Depends(require_role("admin"))):
            ...
    """
    async def check_role(user: User = Depends(get_current_user)) -> User:
        if user.role != required_role:
            logger.warning(f"🚫 User {user.user_id} (role={user.role!r}) needs role '{required_role}'")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Requires {required_role} role")
        return user

    return check_role
