"""
Graph API Client
Shared HTTP plumbing for Messenger and WhatsApp Cloud calls, including the
classification of failures into transient (retryable) and permanent.
"""
import logging
from typing import Any, Dict, Optional

import httpx

from chatbridge.exceptions import InvalidTokenError, MessagingApiError, TransientApiError

logger = logging.getLogger(__name__)

# Graph error codes meaning "slow down": app/user/page throttling and
# WhatsApp per-account rate limits.
RATE_LIMIT_ERROR_CODES = {4, 17, 32, 613, 80007, 130429, 131048, 131056}
# OAuthException: token expired or revoked
INVALID_TOKEN_ERROR_CODE = 190


class GraphApiClient:
    """Base class for Graph API platform clients"""

    name = "Graph"

    def __init__(self, base_url: str, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        # Remove trailing slash from base_url
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        logger.info(f"{self.name} client initialized with base URL: {self.base_url}")

    def _get_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(
                    method, url, headers=self._get_headers(access_token), json=json_body, params=params
                )
        except httpx.TimeoutException as e:
            logger.warning(f"⏱️ {self.name} API timeout: {method} {path}: {e}")
            raise TransientApiError(f"Timeout calling {self.name} API: {e}")
        except httpx.TransportError as e:
            logger.warning(f"🌐 {self.name} API network error: {method} {path}: {e}")
            raise TransientApiError(f"Network error calling {self.name} API: {e}")

        return self._handle_response(response, method, path)

    @staticmethod
    def _json_object(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _handle_response(self, response: httpx.Response, method: str, path: str) -> Dict[str, Any]:
        body = self._json_object(response)
        if response.is_success:
            return body

        # Graph errors are {"error": {"message", "code", ...}}; proxies and
        # older endpoints sometimes send a bare string instead
        error = body.get("error")
        if isinstance(error, dict):
            code = error.get("code")
            message = error.get("message")
        else:
            code = None
            message = error if isinstance(error, str) else None
        if not isinstance(code, int):
            code = None
        message = message or response.text[:200] or response.reason_phrase
        status_code = response.status_code
        detail = f"{self.name} API error {status_code}" + (f" (code {code})" if code is not None else "") + f": {message}"

        if status_code == 401 or code == INVALID_TOKEN_ERROR_CODE:
            logger.error(f"🔑 {detail} [{method} {path}]")
            raise InvalidTokenError(detail)
        if status_code == 429 or status_code >= 500 or code in RATE_LIMIT_ERROR_CODES:
            logger.warning(f"⚠️ Transient {detail} [{method} {path}]")
            raise TransientApiError(detail, status_code=status_code, error_code=code)

        logger.error(f"❌ {detail} [{method} {path}]")
        raise MessagingApiError(detail, status_code=status_code, error_code=code)
