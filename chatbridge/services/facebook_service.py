"""
Facebook Service
Messenger Platform Send API, user profile lookup and page token checks
"""
import logging
from typing import Any, Dict, Optional

from chatbridge.exceptions import MessagingApiError
from chatbridge.models.messaging import MessagingAccount
from chatbridge.services.graph_api_client import GraphApiClient

logger = logging.getLogger(__name__)

PROFILE_FIELDS = "first_name,last_name,profile_pic"


class FacebookService(GraphApiClient):
    """Service for Facebook Page messaging"""

    name = "Facebook"

    async def send_text(self, account: MessagingAccount, recipient_id: str, text: str) -> str:
        """
        Send a text message to a Messenger user.

        Returns:
            The platform message id (mid)
        """
        result = await self._request(
            "POST",
            f"{account.page_id}/messages",
            account.access_token,
            json_body={
                "recipient": {"id": recipient_id},
                "message": {"text": text},
                "messaging_type": "RESPONSE",
            },
        )
        message_id = result.get("message_id")
        if not message_id:
            raise MessagingApiError("Facebook API response missing message_id")
        logger.info(f"📤 Facebook message sent: page={account.page_id}, recipient={recipient_id}, mid={message_id}")
        return message_id

    async def fetch_profile(self, account: MessagingAccount, user_id: str) -> Dict[str, Any]:
        """Look up a Messenger user's name and picture (page-scoped id)"""
        result = await self._request(
            "GET", user_id, account.access_token, params={"fields": PROFILE_FIELDS}
        )
        return {
            "first_name": result.get("first_name"),
            "last_name": result.get("last_name"),
            "profile_picture_url": result.get("profile_pic"),
        }

    async def mark_seen(self, account: MessagingAccount, recipient_id: str,
                        last_message_id: Optional[str] = None) -> None:
        await self._request(
            "POST",
            f"{account.page_id}/messages",
            account.access_token,
            json_body={"recipient": {"id": recipient_id}, "sender_action": "mark_seen"},
        )

    async def validate_access(self, details: Any, access_token: str) -> Dict[str, Any]:
        """Check the token can read the page. Raises MessagingApiError if not."""
        result = await self._request("GET", details.page_id, access_token, params={"fields": "id,name"})
        logger.info(f"✅ Facebook page access validated: {result.get('name')} ({details.page_id})")
        return result
