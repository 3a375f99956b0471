"""
Webhook Authentication Middleware
Validates Meta webhook deliveries (X-Hub-Signature-256) and subscription handshakes
"""
import hashlib
import hmac
import json
import logging
from typing import List, Optional

from chatbridge.config.settings import Settings
from chatbridge.exceptions import AccountConfigurationError, WebhookVerificationError
from chatbridge.models.messaging import MessagingPlatform
from chatbridge.services.webhook_parsers import get_parser

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature-256"
SIGNATURE_PREFIX = "sha256="


def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body"""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature_header: Optional[str], secret: str) -> None:
    """
    Check a X-Hub-Signature-256 header against the raw body.

    Raises:
        WebhookVerificationError: If the header is absent, malformed or does not match
    """
    if not signature_header:
        raise WebhookVerificationError(f"Missing {SIGNATURE_HEADER} header")

    provided = signature_header.strip()
    if not provided.startswith(SIGNATURE_PREFIX):
        raise WebhookVerificationError("Malformed signature header")
    provided = provided[len(SIGNATURE_PREFIX):]

    expected = compute_signature(body, secret)
    if not hmac.compare_digest(expected.encode("utf-8"), provided.lower().encode("utf-8")):
        raise WebhookVerificationError("Invalid webhook signature")


class SignatureVerifier:
    """Resolves the signing secret for a delivery and checks it"""

    def __init__(self, settings: Settings, db):
        self.settings = settings
        self.db = db
        if not settings.WEBHOOK_VERIFY_SIGNATURES:
            logger.warning("⚠️ Webhook signature verification is DISABLED (WEBHOOK_VERIFY_SIGNATURES=false)")

    async def _candidate_secrets(self, platform: MessagingPlatform, body: bytes) -> List[str]:
        secrets: List[str] = []
        try:
            payload = json.loads(body)
        except ValueError:
            payload = None

        if isinstance(payload, dict):
            for ref in get_parser(platform).account_refs(payload):
                account = await self.db.find_account(
                    platform,
                    page_id=ref.page_id,
                    phone_number_id=ref.phone_number_id,
                    business_account_id=ref.business_account_id,
                )
                if account and account.webhook_secret and account.webhook_secret not in secrets:
                    secrets.append(account.webhook_secret)

        app_secret = self.settings.app_secret_for(platform.value)
        if app_secret and app_secret not in secrets:
            secrets.append(app_secret)
        return secrets

    async def verify(self, platform: MessagingPlatform, body: bytes, signature_header: Optional[str]) -> None:
        """
        Verify a webhook delivery.

        The account-specific secret of any account named in the payload is
        tried first, then the platform app secret.

        Raises:
            WebhookVerificationError: Signature absent or wrong
            AccountConfigurationError: Verification enabled but no secret configured
        """
        if not self.settings.WEBHOOK_VERIFY_SIGNATURES:
            logger.warning(f"⚠️ Skipping {platform.value} webhook signature check (verification disabled)")
            return

        secrets = await self._candidate_secrets(platform, body)
        if not secrets:
            logger.error(f"No webhook secret configured for {platform.value}")
            raise AccountConfigurationError(f"No webhook secret configured for {platform.value}")

        last_error: Optional[WebhookVerificationError] = None
        for secret in secrets:
            try:
                verify_signature(body, signature_header, secret)
                logger.debug(f"✅ {platform.value} webhook signature verified")
                return
            except WebhookVerificationError as e:
                last_error = e

        logger.warning(f"🚫 {platform.value} webhook signature rejected: {last_error}")
        raise last_error

    async def verify_subscription(
        self,
        platform: MessagingPlatform,
        mode: Optional[str],
        token: Optional[str],
        challenge: Optional[str],
    ) -> str:
        """
        Handle the hub.mode / hub.verify_token / hub.challenge handshake.

        Returns:
            The challenge, to be echoed verbatim

        Raises:
            ValueError: mode is not "subscribe"
            WebhookVerificationError: token matches no account and not the platform token
        """
        if mode != "subscribe":
            raise ValueError(f"Unsupported hub.mode: {mode!r}")

        if not token:
            raise WebhookVerificationError("Missing verify token")

        valid_tokens = [
            account.webhook_verify_token
            for account in await self.db.list_accounts(platform=platform)
            if account.webhook_verify_token
        ]
        global_token = self.settings.verify_token_for(platform.value)
        if global_token:
            valid_tokens.append(global_token)

        if not any(hmac.compare_digest(token.encode("utf-8"), candidate.encode("utf-8")) for candidate in valid_tokens):
            logger.warning(f"🚫 {platform.value} webhook verification failed: token mismatch")
            raise WebhookVerificationError("Verify token mismatch")

        logger.info(f"✅ {platform.value} webhook subscription verified")
        return challenge or ""
