"""
Account Audience
Answers "which staff users may see this account". The owner always may;
an optional directory lookup supplies teammates (role management lives elsewhere).
"""
import logging
from typing import Awaitable, Callable, Iterable, List, Optional

from chatbridge.models.messaging import MessagingAccount

logger = logging.getLogger(__name__)

UserDirectory = Callable[[MessagingAccount], Awaitable[Iterable[str]]]


class AccountAudience:
    def __init__(self, directory: Optional[UserDirectory] = None):
        self.directory = directory

    async def users_for(self, account: MessagingAccount) -> List[str]:
        users = [account.owner_user_id]
        if self.directory is not None:
            for user_id in await self.directory(account):
                if user_id and user_id not in users:
                    users.append(user_id)
        return users

    async def can_access(self, user_id: str, account: MessagingAccount) -> bool:
        return user_id in await self.users_for(account)
