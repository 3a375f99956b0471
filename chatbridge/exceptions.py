"""
Domain Exceptions
Errors raised by the messaging pipeline and translated to HTTP by the API layer
"""
from typing import Optional


class MessagingError(Exception):
    """Base class for messaging pipeline errors"""
    pass


class WebhookVerificationError(MessagingError):
    """Webhook signature or verify token did not match"""
    pass


class AccountConfigurationError(MessagingError):
    """Account missing, inactive, or lacking a required secret"""
    pass


class UnsupportedEventError(MessagingError):
    """Webhook event subtype the pipeline does not handle"""
    pass


class QueueFullError(MessagingError):
    """Processing queue stayed full for the whole enqueue timeout"""
    pass


class ResourceNotFoundError(MessagingError):
    pass


class AccountConflictError(MessagingError):
    """Another account already uses the same platform identifiers"""
    pass


class InvalidStatusTransitionError(MessagingError):
    pass


class MessagingApiError(MessagingError):
    """
    Failure talking to a platform API.

    transient=True means the call may succeed if retried (network errors,
    timeouts, 5xx, throttling); everything else is a permanent rejection.
    """

    def __init__(self, message: str, status_code: Optional[int] = None,
                 transient: bool = False, error_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient
        self.error_code = error_code


class TransientApiError(MessagingApiError):
    def __init__(self, message: str, status_code: Optional[int] = None, error_code: Optional[int] = None):
        super().__init__(message, status_code=status_code, transient=True, error_code=error_code)


class InvalidTokenError(MessagingApiError):
    """Platform rejected the account access token (HTTP 401)"""

    def __init__(self, message: str = "Invalid or expired access token"):
        super().__init__(message, status_code=401, transient=False)


class RateLimitExceededError(MessagingApiError):
    """Local token bucket could not grant a permit within the allowed wait"""

    def __init__(self, message: str = "Rate limit exceeded"):
        super().__init__(message, status_code=429, transient=False)


class LockTimeoutError(MessagingError):
    """A shared lock stayed held by another worker for the whole wait"""
    pass
