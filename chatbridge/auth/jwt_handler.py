"""
JWT Token Handler

Turns a staff bearer token (HS256, audience-checked, python-jose) into a User.
The same decoder serves the REST dependencies, the SSE query token and the
WebSocket handshake.
"""
import logging
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from chatbridge.config import settings
from chatbridge.models.user import User

logger = logging.getLogger(__name__)

ALGORITHMS = ["HS256"]


class JWTValidationError(Exception):
    """Bearer token missing, malformed, expired or signed for someone else"""
    pass


def decode_jwt_token(token: str, secret: Optional[str] = None, audience: Optional[str] = None) -> Dict[str, Any]:
    """
    Verify signature, expiry and audience, returning the claims.

    secret and audience fall back to JWT_SECRET_KEY / JWT_AUDIENCE from settings.

    Raises:
        JWTValidationError: With a message safe to return to the client
    """
    signing_key = secret if secret is not None else settings.JWT_SECRET_KEY
    expected_audience = audience if audience is not None else settings.JWT_AUDIENCE

    if not signing_key:
        logger.error("🔑 JWT_SECRET_KEY is not set; rejecting every staff token")
        raise JWTValidationError("Authentication service is not configured")
    if not token:
        raise JWTValidationError("Token is required")

    try:
        claims = jwt.decode(token, signing_key, algorithms=ALGORITHMS, audience=expected_audience)
    except jwt.ExpiredSignatureError:
        logger.info("Staff token expired")
        raise JWTValidationError("Token has expired")
    except jwt.JWTClaimsError as e:
        logger.warning(f"Staff token claims rejected: {e}")
        raise JWTValidationError("Invalid token claims")
    except JWTError as e:
        logger.warning(f"Staff token rejected: {e}")
        raise JWTValidationError("Invalid token")

    logger.debug(f"Staff token accepted for {claims.get('sub')}")
    return claims


def extract_user_from_token(token: str, secret: Optional[str] = None, audience: Optional[str] = None) -> User:
    """Decode the token and build the acting User. A token without `sub` is rejected."""
    claims = decode_jwt_token(token, secret=secret, audience=audience)

    subject = claims.get("sub")
    if not subject:
        raise JWTValidationError("Token has no subject")

    return User(
        user_id=str(subject),
        email=claims.get("email"),
        role=claims.get("role"),
        exp=claims.get("exp"),
        app_metadata=claims.get("app_metadata") or {},
    )
