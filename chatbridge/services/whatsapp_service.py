"""
WhatsApp Service
Handles integration with the WhatsApp Cloud API
"""
import logging
from typing import Any, Dict, List, Optional

from chatbridge.exceptions import MessagingApiError
from chatbridge.models.messaging import MessagingAccount
from chatbridge.services.graph_api_client import GraphApiClient

logger = logging.getLogger(__name__)


class WhatsAppService(GraphApiClient):
    """Service for WhatsApp Business messaging"""

    name = "WhatsApp"

    @staticmethod
    def _message_id(result: Dict[str, Any]) -> str:
        messages = result.get("messages")
        if not isinstance(messages, list) or not messages or not isinstance(messages[0], dict) \
                or not messages[0].get("id"):
            raise MessagingApiError("WhatsApp API response missing message id")
        return messages[0]["id"]

    async def send_text(self, account: MessagingAccount, recipient_id: str, text: str) -> str:
        """
        Send a text message to a WhatsApp user.

        Returns:
            The platform message id (wamid)
        """
        result = await self._request(
            "POST",
            f"{account.phone_number_id}/messages",
            account.access_token,
            json_body={
                "messaging_product": "whatsapp",
                "recipient_type": "individual",
                "to": recipient_id,
                "type": "text",
                "text": {"preview_url": False, "body": text},
            },
        )
        message_id = self._message_id(result)
        logger.info(f"📤 WhatsApp message sent: phone={account.phone_number_id}, to={recipient_id}, id={message_id}")
        return message_id

    async def send_template(self, account: MessagingAccount, recipient_id: str, template_name: str,
                            language_code: str = "en_US",
                            components: Optional[List[Dict[str, Any]]] = None) -> str:
        """Send an approved template (needed outside the 24h customer service window)"""
        template: Dict[str, Any] = {"name": template_name, "language": {"code": language_code}}
        if components:
            template["components"] = components
        result = await self._request(
            "POST",
            f"{account.phone_number_id}/messages",
            account.access_token,
            json_body={
                "messaging_product": "whatsapp",
                "to": recipient_id,
                "type": "template",
                "template": template,
            },
        )
        return self._message_id(result)

    async def fetch_profile(self, account: MessagingAccount, user_id: str) -> Dict[str, Any]:
        # Cloud API exposes no profile lookup; names only arrive inline with webhooks
        raise MessagingApiError("WhatsApp Cloud API does not support profile lookup")

    async def mark_seen(self, account: MessagingAccount, recipient_id: str,
                        last_message_id: Optional[str] = None) -> None:
        if not last_message_id:
            return
        await self._request(
            "POST",
            f"{account.phone_number_id}/messages",
            account.access_token,
            json_body={"messaging_product": "whatsapp", "status": "read", "message_id": last_message_id},
        )

    async def validate_access(self, details: Any, access_token: str) -> Dict[str, Any]:
        """Check the token can read the phone number. Raises MessagingApiError if not."""
        result = await self._request(
            "GET", details.phone_number_id, access_token, params={"fields": "id,display_phone_number"}
        )
        logger.info(f"✅ WhatsApp number access validated: {result.get('display_phone_number')}")
        return result
