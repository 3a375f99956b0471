"""
Database Operations.
Accounts, customers, conversations, messages, webhook audit log and read markers.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from chatbridge.models.messaging import (
    AttachmentType,
    Conversation,
    FacebookAccountDetails,
    Message,
    MessageAttachment,
    MessageStatus,
    MessageType,
    MessagingAccount,
    MessagingCustomer,
    MessagingPlatform,
    WebhookEvent,
    WhatsAppAccountDetails,
)
from chatbridge.utils.time import from_db_time, to_db_time, utc_now

logger = logging.getLogger(__name__)

ACCOUNT_EDITABLE_COLUMNS = ("account_name", "access_token", "webhook_verify_token", "webhook_secret")
CUSTOMER_EDITABLE_COLUMNS = ("display_name", "first_name", "last_name", "phone_number", "email", "address")

# A profile is complete once fetched with both names known
COMPLETE_PROFILE_SQL = "profile_fetched = 1 AND first_name IS NOT NULL AND last_name IS NOT NULL"


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


def _account_from_row(row) -> MessagingAccount:
    platform = MessagingPlatform(row["platform"])
    if platform == MessagingPlatform.FACEBOOK:
        details = FacebookAccountDetails(page_id=row["page_id"])
    else:
        details = WhatsAppAccountDetails(
            phone_number_id=row["phone_number_id"],
            business_account_id=row["business_account_id"],
        )
    return MessagingAccount(
        id=row["id"],
        owner_user_id=row["owner_user_id"],
        account_name=row["account_name"],
        details=details,
        access_token=row["access_token"],
        webhook_verify_token=row["webhook_verify_token"],
        webhook_secret=row["webhook_secret"],
        is_active=bool(row["is_active"]),
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


def _customer_from_row(row) -> MessagingCustomer:
    return MessagingCustomer(
        id=row["id"],
        platform=MessagingPlatform(row["platform"]),
        platform_customer_id=row["platform_customer_id"],
        display_name=row["display_name"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        profile_picture_url=row["profile_picture_url"],
        phone_number=row["phone_number"],
        email=row["email"],
        address=row["address"],
        profile_fetched=bool(row["profile_fetched"]),
        profile_fetch_attempted_at=from_db_time(row["profile_fetch_attempted_at"]),
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


def _conversation_from_row(row) -> Conversation:
    return Conversation(
        id=row["id"],
        account_id=row["account_id"],
        customer_id=row["customer_id"],
        conversation_name=row["conversation_name"],
        last_message_at=from_db_time(row["last_message_at"]),
        unread_count=row["unread_count"],
        is_active=bool(row["is_active"]),
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
    )


def _attachment_from_row(row) -> MessageAttachment:
    return MessageAttachment(
        id=row["id"],
        message_id=row["message_id"],
        attachment_type=AttachmentType(row["attachment_type"]),
        file_url=row["file_url"],
        file_path=row["file_path"],
        file_size=row["file_size"],
        mime_type=row["mime_type"],
        original_filename=row["original_filename"],
        created_at=from_db_time(row["created_at"]),
    )


def _message_from_row(row, attachments: Optional[List[MessageAttachment]] = None) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        account_id=row["account_id"],
        customer_id=row["customer_id"],
        platform_message_id=row["platform_message_id"],
        sender_id=row["sender_id"],
        recipient_id=row["recipient_id"],
        message_type=MessageType(row["message_type"]),
        content=row["content"],
        is_inbound=bool(row["is_inbound"]),
        status=MessageStatus(row["status"]),
        sent_by_user_id=row["sent_by_user_id"],
        timestamp=from_db_time(row["timestamp"]),
        created_at=from_db_time(row["created_at"]),
        attachments=attachments or [],
    )


def _webhook_event_from_row(row) -> WebhookEvent:
    return WebhookEvent(
        id=row["id"],
        platform=MessagingPlatform(row["platform"]),
        event_type=row["event_type"],
        raw_payload=row["raw_payload"],
        processed=bool(row["processed"]),
        error_message=row["error_message"],
        account_id=row["account_id"],
        created_at=from_db_time(row["created_at"]),
        processed_at=from_db_time(row["processed_at"]),
    )


class DatabaseOperationsMixin:
    """Mixin containing messaging-specific database operations."""

    # --- Account Operations ---

    async def insert_account(
        self,
        owner_user_id: str,
        details: Any,
        access_token: str,
        account_name: Optional[str] = None,
        webhook_verify_token: Optional[str] = None,
        webhook_secret: Optional[str] = None,
    ) -> Optional[int]:
        """Insert an account. Returns None when the platform identifiers are already taken."""
        now = to_db_time(utc_now())
        page_id = getattr(details, "page_id", "") or ""
        phone_number_id = getattr(details, "phone_number_id", "") or ""
        result = await self._execute_write(
            """
            INSERT INTO messaging_accounts (
                owner_user_id, account_name, platform, page_id, phone_number_id,
                business_account_id, access_token, webhook_verify_token, webhook_secret,
                is_active, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
            ON CONFLICT(platform, page_id, phone_number_id) DO NOTHING
            """,
            (
                owner_user_id, account_name, details.platform.value, page_id, phone_number_id,
                getattr(details, "business_account_id", None), access_token,
                webhook_verify_token, webhook_secret, now, now,
            )
        )
        return result.lastrowid if result.rowcount else None

    async def get_account(self, account_id: int) -> Optional[MessagingAccount]:
        row = await self._fetch_one("SELECT * FROM messaging_accounts WHERE id = ?", (account_id,))
        return _account_from_row(row) if row else None

    async def find_account(
        self,
        platform: MessagingPlatform,
        page_id: Optional[str] = None,
        phone_number_id: Optional[str] = None,
        business_account_id: Optional[str] = None,
    ) -> Optional[MessagingAccount]:
        """Look up an account by the identifier a webhook carries, falling back to the business account id."""
        row = None
        if page_id:
            row = await self._fetch_one(
                "SELECT * FROM messaging_accounts WHERE platform = ? AND page_id = ?",
                (platform.value, page_id)
            )
        if row is None and phone_number_id:
            row = await self._fetch_one(
                "SELECT * FROM messaging_accounts WHERE platform = ? AND phone_number_id = ?",
                (platform.value, phone_number_id)
            )
        if row is None and business_account_id:
            row = await self._fetch_one(
                """
                SELECT * FROM messaging_accounts
                WHERE platform = ? AND business_account_id = ?
                ORDER BY is_active DESC, id ASC LIMIT 1
                """,
                (platform.value, business_account_id)
            )
        return _account_from_row(row) if row else None

    async def list_accounts(
        self,
        owner_user_id: Optional[str] = None,
        platform: Optional[MessagingPlatform] = None,
        active_only: bool = False,
    ) -> List[MessagingAccount]:
        clauses, args = [], []
        if owner_user_id is not None:
            clauses.append("owner_user_id = ?")
            args.append(owner_user_id)
        if platform is not None:
            clauses.append("platform = ?")
            args.append(platform.value)
        if active_only:
            clauses.append("is_active = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetch_all(f"SELECT * FROM messaging_accounts {where} ORDER BY id", tuple(args))
        return [_account_from_row(row) for row in rows]

    async def set_account_active(self, account_id: int, is_active: bool) -> bool:
        result = await self._execute_write(
            "UPDATE messaging_accounts SET is_active = ?, updated_at = ? WHERE id = ?",
            (1 if is_active else 0, to_db_time(utc_now()), account_id)
        )
        return result.rowcount > 0

    async def delete_account_cascade(self, account_id: int) -> Dict[str, int]:
        """Delete an account and everything it owns, children first. Customers are shared and kept."""
        steps = [
            ("attachments",
             "DELETE FROM message_attachments WHERE message_id IN (SELECT id FROM messages WHERE account_id = ?)"),
            ("notifications",
             "DELETE FROM message_notifications WHERE conversation_id IN "
             "(SELECT id FROM conversations WHERE account_id = ?)"),
            ("messages", "DELETE FROM messages WHERE account_id = ?"),
            ("conversations", "DELETE FROM conversations WHERE account_id = ?"),
            ("accounts", "DELETE FROM messaging_accounts WHERE id = ?"),
        ]
        results = await self._execute_write_batch([(query, (account_id,)) for _, query in steps])
        return {name: result.rowcount for (name, _), result in zip(steps, results)}

    async def update_account(self, account_id: int, fields: Dict[str, Any]) -> bool:
        """Update the editable account columns present in fields. Identifiers are fixed once connected."""
        columns = [column for column in ACCOUNT_EDITABLE_COLUMNS if column in fields]
        if not columns:
            return False
        assignments = ", ".join(f"{column} = ?" for column in columns)
        result = await self._execute_write(
            f"UPDATE messaging_accounts SET {assignments}, updated_at = ? WHERE id = ?",
            tuple(fields[column] for column in columns) + (to_db_time(utc_now()), account_id)
        )
        return result.rowcount > 0

    # --- Customer Operations ---

    async def get_or_create_customer(
        self,
        platform: MessagingPlatform,
        platform_customer_id: str,
        display_name: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> Tuple[MessagingCustomer, bool]:
        """Race-free upsert on (platform, platform_customer_id). Returns (customer, created)."""
        now = to_db_time(utc_now())
        result = await self._execute_write(
            """
            INSERT INTO messaging_customers (
                platform, platform_customer_id, display_name, phone_number,
                profile_fetched, created_at, updated_at
            ) VALUES (?, ?, ?, ?, 0, ?, ?)
            ON CONFLICT(platform, platform_customer_id) DO NOTHING
            """,
            (platform.value, platform_customer_id, display_name, phone_number, now, now)
        )
        row = await self._fetch_one(
            "SELECT * FROM messaging_customers WHERE platform = ? AND platform_customer_id = ?",
            (platform.value, platform_customer_id)
        )
        return _customer_from_row(row), result.rowcount > 0

    async def find_customer(self, platform: MessagingPlatform, platform_customer_id: str) -> Optional[MessagingCustomer]:
        row = await self._fetch_one(
            "SELECT * FROM messaging_customers WHERE platform = ? AND platform_customer_id = ?",
            (platform.value, platform_customer_id)
        )
        return _customer_from_row(row) if row else None

    async def get_customer(self, customer_id: int) -> Optional[MessagingCustomer]:
        row = await self._fetch_one("SELECT * FROM messaging_customers WHERE id = ?", (customer_id,))
        return _customer_from_row(row) if row else None

    async def fill_customer_contact(
        self, customer_id: int, display_name: Optional[str] = None, phone_number: Optional[str] = None
    ) -> bool:
        """Fill contact fields that are still empty; never overwrites existing values."""
        result = await self._execute_write(
            """
            UPDATE messaging_customers SET
                display_name = COALESCE(display_name, ?),
                phone_number = COALESCE(phone_number, ?),
                updated_at = ?
            WHERE id = ? AND ((display_name IS NULL AND ? IS NOT NULL) OR (phone_number IS NULL AND ? IS NOT NULL))
            """,
            (display_name, phone_number, to_db_time(utc_now()), customer_id, display_name, phone_number)
        )
        return result.rowcount > 0

    async def update_customer_profile(
        self,
        customer_id: int,
        first_name: Optional[str],
        last_name: Optional[str],
        profile_picture_url: Optional[str],
        display_name: str,
        attempted_at: datetime,
    ) -> bool:
        result = await self._execute_write(
            """
            UPDATE messaging_customers SET
                first_name = ?, last_name = ?, profile_picture_url = ?, display_name = ?,
                profile_fetched = 1, profile_fetch_attempted_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                first_name, last_name, profile_picture_url, display_name,
                to_db_time(attempted_at), to_db_time(utc_now()), customer_id,
            )
        )
        return result.rowcount > 0

    async def mark_profile_fetch_attempted(self, customer_id: int, attempted_at: datetime) -> bool:
        result = await self._execute_write(
            "UPDATE messaging_customers SET profile_fetch_attempted_at = ?, updated_at = ? WHERE id = ?",
            (to_db_time(attempted_at), to_db_time(utc_now()), customer_id)
        )
        return result.rowcount > 0

    @staticmethod
    def _customer_filters(
        account_ids: Optional[Sequence[int]],
        platform: Optional[MessagingPlatform],
        search: Optional[str] = None,
        profile_fetched: Optional[bool] = None,
        complete: Optional[bool] = None,
    ) -> Tuple[str, List[Any]]:
        """WHERE clause over messaging_customers. account_ids None means every customer."""
        clauses, args = [], []
        if account_ids is not None:
            if not account_ids:
                return "WHERE 0", []
            clauses.append(
                f"id IN (SELECT customer_id FROM conversations WHERE account_id IN ({_placeholders(account_ids)}))"
            )
            args.extend(account_ids)
        if platform is not None:
            clauses.append("platform = ?")
            args.append(platform.value)
        if search:
            pattern = f"%{search.lower()}%"
            clauses.append(
                "(LOWER(COALESCE(display_name, '')) LIKE ? OR LOWER(COALESCE(first_name, '')) LIKE ? "
                "OR LOWER(COALESCE(last_name, '')) LIKE ? OR LOWER(COALESCE(phone_number, '')) LIKE ? "
                "OR LOWER(COALESCE(email, '')) LIKE ?)"
            )
            args.extend([pattern] * 5)
        if profile_fetched is not None:
            clauses.append("profile_fetched = ?")
            args.append(1 if profile_fetched else 0)
        if complete is True:
            clauses.append(f"({COMPLETE_PROFILE_SQL})")
        elif complete is False:
            clauses.append(f"NOT ({COMPLETE_PROFILE_SQL})")
        return (f"WHERE {' AND '.join(clauses)}" if clauses else ""), args

    async def list_customers(
        self,
        account_ids: Optional[Sequence[int]] = None,
        platform: Optional[MessagingPlatform] = None,
        search: Optional[str] = None,
        profile_fetched: Optional[bool] = None,
        complete: Optional[bool] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[MessagingCustomer], int]:
        """Customers matching the filters, most recently updated first. Returns (customers, total)."""
        where, args = self._customer_filters(account_ids, platform, search, profile_fetched, complete)
        total = await self._fetch_value(f"SELECT COUNT(*) FROM messaging_customers {where}", tuple(args))
        rows = await self._fetch_all(
            f"SELECT * FROM messaging_customers {where} ORDER BY updated_at DESC, id DESC LIMIT ? OFFSET ?",
            tuple(args) + (limit, offset)
        )
        return [_customer_from_row(row) for row in rows], int(total or 0)

    async def list_customer_account_ids(self, customer_id: int) -> List[int]:
        """Accounts the customer has a conversation with, most recent activity first"""
        rows = await self._fetch_all(
            """
            SELECT account_id FROM conversations WHERE customer_id = ?
            ORDER BY last_message_at IS NULL, last_message_at DESC, id DESC
            """,
            (customer_id,)
        )
        return [row["account_id"] for row in rows]

    async def update_customer(self, customer_id: int, fields: Dict[str, Any]) -> bool:
        """Overwrite the staff-editable contact columns present in fields"""
        columns = [column for column in CUSTOMER_EDITABLE_COLUMNS if column in fields]
        if not columns:
            return False
        assignments = ", ".join(f"{column} = ?" for column in columns)
        result = await self._execute_write(
            f"UPDATE messaging_customers SET {assignments}, updated_at = ? WHERE id = ?",
            tuple(fields[column] for column in columns) + (to_db_time(utc_now()), customer_id)
        )
        return result.rowcount > 0

    async def get_customer_stats(
        self, account_ids: Optional[Sequence[int]] = None, platform: Optional[MessagingPlatform] = None
    ) -> Dict[str, Any]:
        where, args = self._customer_filters(account_ids, platform)
        rows = await self._fetch_all(
            f"""
            SELECT platform,
                   COUNT(*) AS total,
                   COALESCE(SUM(profile_fetched), 0) AS fetched,
                   COALESCE(SUM(CASE WHEN {COMPLETE_PROFILE_SQL} THEN 1 ELSE 0 END), 0) AS complete
            FROM messaging_customers {where}
            GROUP BY platform
            """,
            tuple(args)
        )
        breakdown = {row["platform"]: int(row["total"]) for row in rows}
        return {
            "total": sum(breakdown.values()),
            "fetched": sum(int(row["fetched"]) for row in rows),
            "complete": sum(int(row["complete"]) for row in rows),
            "by_platform": breakdown,
        }

    # --- Conversation Operations ---

    async def get_or_create_conversation(
        self, account_id: int, customer_id: int, conversation_name: Optional[str] = None
    ) -> Tuple[Conversation, bool]:
        """Race-free upsert on (account_id, customer_id). Returns (conversation, created)."""
        now = to_db_time(utc_now())
        result = await self._execute_write(
            """
            INSERT INTO conversations (
                account_id, customer_id, conversation_name, unread_count, is_active, created_at, updated_at
            ) VALUES (?, ?, ?, 0, 1, ?, ?)
            ON CONFLICT(account_id, customer_id) DO NOTHING
            """,
            (account_id, customer_id, conversation_name, now, now)
        )
        row = await self._fetch_one(
            "SELECT * FROM conversations WHERE account_id = ? AND customer_id = ?",
            (account_id, customer_id)
        )
        return _conversation_from_row(row), result.rowcount > 0

    async def get_conversation(self, conversation_id: int) -> Optional[Conversation]:
        row = await self._fetch_one("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
        return _conversation_from_row(row) if row else None

    async def find_conversation(self, account_id: int, customer_id: int) -> Optional[Conversation]:
        row = await self._fetch_one(
            "SELECT * FROM conversations WHERE account_id = ? AND customer_id = ?",
            (account_id, customer_id)
        )
        return _conversation_from_row(row) if row else None

    async def touch_conversation(self, conversation_id: int, message_time: datetime) -> None:
        """Advance last_message_at; never moves it backwards."""
        at = to_db_time(message_time)
        await self._execute_write(
            """
            UPDATE conversations SET
                last_message_at = CASE
                    WHEN last_message_at IS NULL OR last_message_at < ? THEN ?
                    ELSE last_message_at
                END,
                is_active = 1,
                updated_at = ?
            WHERE id = ?
            """,
            (at, at, to_db_time(utc_now()), conversation_id)
        )

    async def increment_unread(self, conversation_id: int) -> int:
        await self._execute_write(
            "UPDATE conversations SET unread_count = unread_count + 1, updated_at = ? WHERE id = ?",
            (to_db_time(utc_now()), conversation_id)
        )
        return await self.get_unread_count(conversation_id)

    async def decrement_unread(self, conversation_id: int) -> int:
        await self._execute_write(
            "UPDATE conversations SET unread_count = MAX(unread_count - 1, 0), updated_at = ? WHERE id = ?",
            (to_db_time(utc_now()), conversation_id)
        )
        return await self.get_unread_count(conversation_id)

    async def reset_unread(self, conversation_id: int) -> int:
        await self._execute_write(
            "UPDATE conversations SET unread_count = 0, updated_at = ? WHERE id = ?",
            (to_db_time(utc_now()), conversation_id)
        )
        return 0

    async def get_unread_count(self, conversation_id: int) -> int:
        value = await self._fetch_value("SELECT unread_count FROM conversations WHERE id = ?", (conversation_id,))
        return int(value or 0)

    async def set_conversation_active(self, conversation_id: int, is_active: bool) -> bool:
        result = await self._execute_write(
            "UPDATE conversations SET is_active = ?, updated_at = ? WHERE id = ?",
            (1 if is_active else 0, to_db_time(utc_now()), conversation_id)
        )
        return result.rowcount > 0

    async def list_conversations(
        self,
        account_ids: Sequence[int],
        has_unread: Optional[bool] = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Conversations joined with their customer, newest activity first. Returns (rows, total)."""
        if not account_ids:
            return [], 0
        clauses = [f"c.account_id IN ({_placeholders(account_ids)})"]
        args: List[Any] = list(account_ids)
        if has_unread is True:
            clauses.append("c.unread_count > 0")
        elif has_unread is False:
            clauses.append("c.unread_count = 0")
        if is_active is not None:
            clauses.append("c.is_active = ?")
            args.append(1 if is_active else 0)
        if search:
            pattern = f"%{search.lower()}%"
            clauses.append(
                "(LOWER(COALESCE(cu.display_name, '')) LIKE ? OR LOWER(COALESCE(cu.first_name, '')) LIKE ? "
                "OR LOWER(COALESCE(cu.last_name, '')) LIKE ? OR LOWER(COALESCE(c.conversation_name, '')) LIKE ?)"
            )
            args.extend([pattern] * 4)
        where = " AND ".join(clauses)

        total = await self._fetch_value(
            f"SELECT COUNT(*) FROM conversations c JOIN messaging_customers cu ON cu.id = c.customer_id WHERE {where}",
            tuple(args)
        )
        rows = await self._fetch_all(
            f"""
            SELECT c.*, cu.platform AS customer_platform, cu.platform_customer_id,
                   cu.display_name AS customer_display_name, cu.first_name AS customer_first_name,
                   cu.last_name AS customer_last_name, cu.profile_picture_url AS customer_profile_picture_url
            FROM conversations c JOIN messaging_customers cu ON cu.id = c.customer_id
            WHERE {where}
            ORDER BY c.last_message_at IS NULL, c.last_message_at DESC, c.id DESC
            LIMIT ? OFFSET ?
            """,
            tuple(args) + (limit, offset)
        )
        return [dict(row) for row in rows], int(total or 0)

    # --- Message Operations ---

    async def insert_message(
        self,
        conversation_id: int,
        account_id: int,
        customer_id: int,
        is_inbound: bool,
        timestamp: datetime,
        content: Optional[str] = None,
        message_type: MessageType = MessageType.TEXT,
        platform_message_id: Optional[str] = None,
        sender_id: Optional[str] = None,
        recipient_id: Optional[str] = None,
        status: MessageStatus = MessageStatus.SENT,
        sent_by_user_id: Optional[str] = None,
    ) -> Optional[int]:
        """Insert a message. Returns None when platform_message_id was already stored."""
        result = await self._execute_write(
            """
            INSERT INTO messages (
                conversation_id, account_id, customer_id, platform_message_id, sender_id, recipient_id,
                message_type, content, is_inbound, status, sent_by_user_id, timestamp, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(platform_message_id) DO NOTHING
            """,
            (
                conversation_id, account_id, customer_id, platform_message_id, sender_id, recipient_id,
                message_type.value, content, 1 if is_inbound else 0, status.value, sent_by_user_id,
                to_db_time(timestamp), to_db_time(utc_now()),
            )
        )
        return result.lastrowid if result.rowcount else None

    async def insert_attachment(self, message_id: int, attachment: MessageAttachment) -> int:
        result = await self._execute_write(
            """
            INSERT INTO message_attachments (
                message_id, attachment_type, file_url, file_path, file_size, mime_type, original_filename, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message_id, attachment.attachment_type.value, attachment.file_url, attachment.file_path,
                attachment.file_size, attachment.mime_type, attachment.original_filename, to_db_time(utc_now()),
            )
        )
        return result.lastrowid

    async def get_attachments(self, message_ids: Sequence[int]) -> Dict[int, List[MessageAttachment]]:
        if not message_ids:
            return {}
        rows = await self._fetch_all(
            f"SELECT * FROM message_attachments WHERE message_id IN ({_placeholders(message_ids)}) ORDER BY id",
            tuple(message_ids)
        )
        grouped: Dict[int, List[MessageAttachment]] = {}
        for row in rows:
            grouped.setdefault(row["message_id"], []).append(_attachment_from_row(row))
        return grouped

    async def _messages_with_attachments(self, rows) -> List[Message]:
        attachments = await self.get_attachments([row["id"] for row in rows])
        return [_message_from_row(row, attachments.get(row["id"])) for row in rows]

    async def get_message(self, message_id: int) -> Optional[Message]:
        row = await self._fetch_one("SELECT * FROM messages WHERE id = ?", (message_id,))
        if not row:
            return None
        return (await self._messages_with_attachments([row]))[0]

    async def find_message_by_platform_id(self, platform_message_id: str) -> Optional[Message]:
        row = await self._fetch_one(
            "SELECT * FROM messages WHERE platform_message_id = ?", (platform_message_id,)
        )
        if not row:
            return None
        return (await self._messages_with_attachments([row]))[0]

    async def list_messages(
        self, conversation_id: int, limit: int = 50, offset: int = 0
    ) -> Tuple[List[Message], int]:
        """Messages newest first. Returns (messages, total)."""
        total = await self._fetch_value(
            "SELECT COUNT(*) FROM messages WHERE conversation_id = ?", (conversation_id,)
        )
        rows = await self._fetch_all(
            """
            SELECT * FROM messages WHERE conversation_id = ?
            ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?
            """,
            (conversation_id, limit, offset)
        )
        return await self._messages_with_attachments(rows), int(total or 0)

    async def set_platform_message_id(self, message_id: int, platform_message_id: str) -> bool:
        result = await self._execute_write(
            "UPDATE messages SET platform_message_id = ? WHERE id = ? AND platform_message_id IS NULL",
            (platform_message_id, message_id)
        )
        return result.rowcount > 0

    @staticmethod
    def _message_delete_statements(message_id: int) -> List[Tuple[str, Tuple]]:
        return [
            ("DELETE FROM message_attachments WHERE message_id = ?", (message_id,)),
            ("DELETE FROM message_notifications WHERE message_id = ?", (message_id,)),
            ("DELETE FROM messages WHERE id = ?", (message_id,)),
        ]

    async def fold_echo_into(
        self,
        message_id: int,
        echo_id: int,
        platform_message_id: str,
        status: Optional[MessageStatus] = None,
        allowed_from: Sequence[MessageStatus] = (),
    ) -> bool:
        """
        Replace a separately ingested echo with the outbound row it mirrors:
        drop the echo, move its platform id onto message_id and carry over
        a later status. One transaction.
        """
        statements = self._message_delete_statements(echo_id)
        if status is not None and allowed_from:
            statements.append((
                f"UPDATE messages SET status = ? WHERE id = ? AND status IN ({_placeholders(allowed_from)})",
                (status.value, message_id) + tuple(s.value for s in allowed_from),
            ))
        statements.append((
            "UPDATE messages SET platform_message_id = ? WHERE id = ? AND platform_message_id IS NULL",
            (platform_message_id, message_id),
        ))
        results = await self._execute_write_batch(statements)
        return results[2].rowcount > 0

    async def compare_and_set_status(
        self, message_id: int, target: MessageStatus, allowed_from: Sequence[MessageStatus]
    ) -> bool:
        """Move a message to target only if its current status is in allowed_from."""
        if not allowed_from:
            return False
        result = await self._execute_write(
            f"UPDATE messages SET status = ? WHERE id = ? AND status IN ({_placeholders(allowed_from)})",
            (target.value, message_id) + tuple(status.value for status in allowed_from)
        )
        return result.rowcount > 0

    async def find_messages_by_platform_ids(self, platform_message_ids: Sequence[str]) -> List[Message]:
        if not platform_message_ids:
            return []
        rows = await self._fetch_all(
            f"SELECT * FROM messages WHERE platform_message_id IN ({_placeholders(platform_message_ids)})",
            tuple(platform_message_ids)
        )
        return [_message_from_row(row) for row in rows]

    async def find_outbound_messages_until(
        self, conversation_id: int, watermark: datetime, statuses: Sequence[MessageStatus]
    ) -> List[Message]:
        """Outbound messages sent at or before watermark whose status is one of statuses."""
        if not statuses:
            return []
        rows = await self._fetch_all(
            f"""
            SELECT * FROM messages
            WHERE conversation_id = ? AND is_inbound = 0 AND timestamp <= ?
              AND status IN ({_placeholders(statuses)})
            ORDER BY timestamp, id
            """,
            (conversation_id, to_db_time(watermark)) + tuple(status.value for status in statuses)
        )
        return [_message_from_row(row) for row in rows]

    async def mark_inbound_messages_read(self, conversation_id: int) -> int:
        result = await self._execute_write(
            """
            UPDATE messages SET status = 'READ'
            WHERE conversation_id = ? AND is_inbound = 1 AND status IN ('SENT', 'DELIVERED')
            """,
            (conversation_id,)
        )
        return result.rowcount

    async def get_conversation_message_stats(self, conversation_id: int, since: datetime) -> Dict[str, int]:
        row = await self._fetch_one(
            """
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(CASE WHEN is_inbound = 1 THEN 1 ELSE 0 END), 0) AS inbound,
                COALESCE(SUM(CASE WHEN is_inbound = 0 THEN 1 ELSE 0 END), 0) AS outbound,
                COALESCE(SUM(CASE WHEN status = 'FAILED' THEN 1 ELSE 0 END), 0) AS failed,
                COALESCE(SUM(CASE WHEN created_at >= ? THEN 1 ELSE 0 END), 0) AS recent
            FROM messages WHERE conversation_id = ?
            """,
            (to_db_time(since), conversation_id)
        )
        return {key: int(row[key]) for key in ("total", "inbound", "outbound", "failed", "recent")}

    # --- Stats Operations ---

    async def get_account_activity_stats(self, account_ids: Sequence[int], since: datetime) -> Dict[str, int]:
        """Conversation and message counters summed over the given accounts"""
        keys = ("conversations", "unread_conversations", "messages", "inbound", "outbound",
                "unread_messages", "failed", "recent")
        if not account_ids:
            return {key: 0 for key in keys}
        marks = _placeholders(account_ids)
        conversations = await self._fetch_one(
            f"""
            SELECT COUNT(*) AS conversations,
                   COALESCE(SUM(CASE WHEN unread_count > 0 THEN 1 ELSE 0 END), 0) AS unread_conversations
            FROM conversations WHERE account_id IN ({marks})
            """,
            tuple(account_ids)
        )
        messages = await self._fetch_one(
            f"""
            SELECT
                COUNT(*) AS messages,
                COALESCE(SUM(CASE WHEN is_inbound = 1 THEN 1 ELSE 0 END), 0) AS inbound,
                COALESCE(SUM(CASE WHEN is_inbound = 0 THEN 1 ELSE 0 END), 0) AS outbound,
                COALESCE(SUM(CASE WHEN is_inbound = 1 AND status IN ('SENT', 'DELIVERED') THEN 1 ELSE 0 END), 0)
                    AS unread_messages,
                COALESCE(SUM(CASE WHEN status = 'FAILED' THEN 1 ELSE 0 END), 0) AS failed,
                COALESCE(SUM(CASE WHEN created_at >= ? THEN 1 ELSE 0 END), 0) AS recent
            FROM messages WHERE account_id IN ({marks})
            """,
            (to_db_time(since),) + tuple(account_ids)
        )
        stats = {key: int(conversations[key]) for key in ("conversations", "unread_conversations")}
        stats.update({key: int(messages[key]) for key in keys[2:]})
        return stats

    # --- Webhook Event Operations ---

    async def insert_webhook_event(self, platform: MessagingPlatform, event_type: str, raw_payload: str) -> int:
        result = await self._execute_write(
            """
            INSERT INTO webhook_events (platform, event_type, raw_payload, processed, created_at)
            VALUES (?, ?, ?, 0, ?)
            """,
            (platform.value, event_type, raw_payload, to_db_time(utc_now()))
        )
        return result.lastrowid

    async def get_webhook_event(self, event_id: int) -> Optional[WebhookEvent]:
        row = await self._fetch_one("SELECT * FROM webhook_events WHERE id = ?", (event_id,))
        return _webhook_event_from_row(row) if row else None

    async def mark_webhook_event_processed(self, event_id: int) -> bool:
        result = await self._execute_write(
            """
            UPDATE webhook_events SET processed = 1, error_message = NULL, processed_at = ?
            WHERE id = ? AND processed = 0
            """,
            (to_db_time(utc_now()), event_id)
        )
        return result.rowcount > 0

    async def mark_webhook_event_failed(self, event_id: int, error_message: str) -> bool:
        result = await self._execute_write(
            "UPDATE webhook_events SET error_message = ? WHERE id = ? AND processed = 0",
            (error_message, event_id)
        )
        return result.rowcount > 0

    async def link_webhook_event_account(self, event_id: int, account_id: int) -> bool:
        result = await self._execute_write(
            "UPDATE webhook_events SET account_id = ? WHERE id = ? AND account_id IS NULL",
            (account_id, event_id)
        )
        return result.rowcount > 0

    async def list_webhook_events(
        self,
        processed: Optional[bool] = None,
        failed: Optional[bool] = None,
        platform: Optional[MessagingPlatform] = None,
        limit: int = 50,
        offset: int = 0,
        oldest_first: bool = False,
    ) -> List[WebhookEvent]:
        clauses, args = [], []
        if processed is not None:
            clauses.append("processed = ?")
            args.append(1 if processed else 0)
        if failed is True:
            clauses.append("error_message IS NOT NULL")
        elif failed is False:
            clauses.append("error_message IS NULL")
        if platform is not None:
            clauses.append("platform = ?")
            args.append(platform.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        order = "ASC" if oldest_first else "DESC"
        rows = await self._fetch_all(
            f"SELECT * FROM webhook_events {where} ORDER BY id {order} LIMIT ? OFFSET ?",
            tuple(args) + (limit, offset)
        )
        return [_webhook_event_from_row(row) for row in rows]

    # --- Notification Operations ---

    async def insert_notification(self, user_id: str, message_id: int, conversation_id: int) -> bool:
        result = await self._execute_write(
            """
            INSERT INTO message_notifications (user_id, message_id, conversation_id, is_read, created_at)
            VALUES (?, ?, ?, 0, ?)
            ON CONFLICT(user_id, message_id) DO NOTHING
            """,
            (user_id, message_id, conversation_id, to_db_time(utc_now()))
        )
        return result.rowcount > 0

    async def mark_conversation_notifications_read(self, user_id: str, conversation_id: int) -> int:
        result = await self._execute_write(
            """
            UPDATE message_notifications SET is_read = 1, read_at = ?
            WHERE user_id = ? AND conversation_id = ? AND is_read = 0
            """,
            (to_db_time(utc_now()), user_id, conversation_id)
        )
        return result.rowcount

    async def set_notification_read(self, user_id: str, message_id: int, is_read: bool) -> bool:
        """Toggle a read marker. Returns False when it was already in that state or does not exist."""
        result = await self._execute_write(
            """
            UPDATE message_notifications SET is_read = ?, read_at = ?
            WHERE user_id = ? AND message_id = ? AND is_read = ?
            """,
            (
                1 if is_read else 0, to_db_time(utc_now()) if is_read else None,
                user_id, message_id, 0 if is_read else 1,
            )
        )
        return result.rowcount > 0

    async def count_unread_notifications(self, user_id: str, conversation_id: Optional[int] = None) -> int:
        if conversation_id is None:
            value = await self._fetch_value(
                "SELECT COUNT(*) FROM message_notifications WHERE user_id = ? AND is_read = 0", (user_id,)
            )
        else:
            value = await self._fetch_value(
                """
                SELECT COUNT(*) FROM message_notifications
                WHERE user_id = ? AND conversation_id = ? AND is_read = 0
                """,
                (user_id, conversation_id)
            )
        return int(value or 0)
