"""
API Dependencies
Access to the service container and translation of domain errors to HTTP
"""
import logging

from fastapi import HTTPException, Request, status

from chatbridge.exceptions import (
    AccountConfigurationError,
    AccountConflictError,
    InvalidStatusTransitionError,
    InvalidTokenError,
    LockTimeoutError,
    MessagingApiError,
    QueueFullError,
    RateLimitExceededError,
    ResourceNotFoundError,
    WebhookVerificationError,
)
from chatbridge.services.container import MessagingServices

logger = logging.getLogger(__name__)


def get_services(request: Request) -> MessagingServices:
    return request.app.state.services


def to_http_exception(error: Exception) -> HTTPException:
    """Map a domain exception to the HTTP status the API reports for it"""
    if isinstance(error, ResourceNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, AccountConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, InvalidStatusTransitionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, WebhookVerificationError):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(error))
    if isinstance(error, AccountConfigurationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    if isinstance(error, QueueFullError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(error))
    if isinstance(error, LockTimeoutError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(error))
    if isinstance(error, RateLimitExceededError):
        return HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(error))
    if isinstance(error, InvalidTokenError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Platform rejected access token: {error}")
    if isinstance(error, MessagingApiError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(error))
    if isinstance(error, ValueError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    logger.error(f"Unexpected error: {error}", exc_info=error)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error")
