"""
Real-time Event Models
Payload pushed to staff clients over SSE and WebSocket
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from chatbridge.utils.time import utc_now


class MessagingEventType(str, Enum):
    NEW_MESSAGE = "NEW_MESSAGE"
    CONVERSATION_UPDATE = "CONVERSATION_UPDATE"
    UNREAD_COUNT_UPDATE = "UNREAD_COUNT_UPDATE"
    MESSAGE_STATUS_UPDATE = "MESSAGE_STATUS_UPDATE"
    ACCOUNT_STATUS_UPDATE = "ACCOUNT_STATUS_UPDATE"
    CONNECTION_STATUS = "CONNECTION_STATUS"


class MessagingEvent(BaseModel):
    type: MessagingEventType
    user_id: Optional[str] = None
    account_id: Optional[int] = None
    conversation_id: Optional[int] = None
    message_id: Optional[int] = None
    data: Optional[Dict[str, Any]] = None
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)

    def for_user(self, user_id: str) -> "MessagingEvent":
        return self.model_copy(update={"user_id": user_id})

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    def to_sse(self) -> str:
        """Server-sent event frame"""
        event_id = int(self.timestamp.timestamp() * 1000)
        return f"id: {event_id}\nevent: {self.type.value}\ndata: {self.model_dump_json()}\n\n"

    @classmethod
    def connection_status(cls, user_id: str, message: str) -> "MessagingEvent":
        return cls(type=MessagingEventType.CONNECTION_STATUS, user_id=user_id, message=message)
