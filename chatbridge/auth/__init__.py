"""Staff authentication"""
from .dependencies import get_current_user, get_stream_user, require_role
from .jwt_handler import JWTValidationError, decode_jwt_token, extract_user_from_token

__all__ = [
    "get_current_user",
    "get_stream_user",
    "require_role",
    "JWTValidationError",
    "decode_jwt_token",
    "extract_user_from_token",
]
