"""
Account Service
Connects, lists, toggles and removes Facebook Pages and WhatsApp numbers
"""
import logging
from typing import Dict, List, Optional

from chatbridge.exceptions import AccountConflictError, MessagingApiError, ResourceNotFoundError
from chatbridge.models.messaging import AccountCreateRequest, AccountUpdateRequest, MessagingAccount, MessagingPlatform
from chatbridge.services.account_audience import AccountAudience
from chatbridge.services.messaging_event_service import MessagingEventService

logger = logging.getLogger(__name__)


class AccountService:
    def __init__(self, db, audience: AccountAudience, events: MessagingEventService,
                 clients: Optional[Dict[MessagingPlatform, object]] = None):
        self.db = db
        self.audience = audience
        self.events = events
        self.clients = clients or {}

    async def create_account(self, owner_user_id: str, request: AccountCreateRequest) -> MessagingAccount:
        """
        Connect a new account.

        Raises:
            AccountConflictError: Platform identifiers already connected
            MessagingApiError: validate_access requested and the platform refused the token
        """
        details = request.details
        if request.validate_access:
            client = self.clients.get(details.platform)
            if client is None:
                raise MessagingApiError(f"No client configured for {details.platform.value}")
            await client.validate_access(details, request.access_token)

        account_id = await self.db.insert_account(
            owner_user_id,
            details,
            request.access_token,
            account_name=request.account_name,
            webhook_verify_token=request.webhook_verify_token,
            webhook_secret=request.webhook_secret,
        )
        if account_id is None:
            raise AccountConflictError(f"{details.platform.value} account already connected")

        account = await self.db.get_account(account_id)
        logger.info(f"🔗 {account.platform.value} account {account.id} connected by {owner_user_id}")
        return account

    async def update_account(self, user_id: str, account_id: int, request: AccountUpdateRequest) -> MessagingAccount:
        """
        Edit name, credentials or webhook tokens. Only the owner may edit.

        Raises:
            ResourceNotFoundError: Unknown account or not owned by the user
            MessagingApiError: validate_access requested and the platform refused the new token
        """
        account = await self.get_account_for_user(user_id, account_id)
        if account.owner_user_id != user_id:
            raise ResourceNotFoundError(f"Account {account_id} not found")

        fields = request.model_dump(exclude_none=True, exclude={"validate_access"})
        if request.validate_access and "access_token" in fields:
            client = self.clients.get(account.platform)
            if client is None:
                raise MessagingApiError(f"No client configured for {account.platform.value}")
            await client.validate_access(account.details, fields["access_token"])

        if await self.db.update_account(account.id, fields):
            logger.info(f"✏️ Account {account.id} updated by {user_id}: {sorted(fields)}")
        return await self.db.get_account(account.id)

    async def get_account_for_user(self, user_id: str, account_id: int) -> MessagingAccount:
        """
        Raises:
            ResourceNotFoundError: Unknown account or not visible to the user
        """
        account = await self.db.get_account(account_id)
        if account is None or not await self.audience.can_access(user_id, account):
            raise ResourceNotFoundError(f"Account {account_id} not found")
        return account

    async def list_accounts_for_user(self, user_id: str) -> List[MessagingAccount]:
        accounts = []
        for account in await self.db.list_accounts():
            if account.owner_user_id == user_id or await self.audience.can_access(user_id, account):
                accounts.append(account)
        return accounts

    async def set_active(self, user_id: str, account_id: int, is_active: bool) -> MessagingAccount:
        account = await self.get_account_for_user(user_id, account_id)
        if account.is_active != is_active:
            await self.db.set_account_active(account.id, is_active)
            account = await self.db.get_account(account.id)
            logger.info(f"🔁 Account {account.id} {'activated' if is_active else 'deactivated'} by {user_id}")
            await self.events.publish_account_status(account)
        return account

    async def toggle_status(self, user_id: str, account_id: int) -> MessagingAccount:
        account = await self.get_account_for_user(user_id, account_id)
        return await self.set_active(user_id, account_id, not account.is_active)

    async def purge_account(self, user_id: str, account_id: int) -> Dict[str, int]:
        """Hard delete with explicit cascade. Only the owner may purge."""
        account = await self.get_account_for_user(user_id, account_id)
        if account.owner_user_id != user_id:
            raise ResourceNotFoundError(f"Account {account_id} not found")
        counts = await self.db.delete_account_cascade(account.id)
        logger.warning(f"🗑️ Account {account.id} purged by {user_id}: {counts}")
        return counts
