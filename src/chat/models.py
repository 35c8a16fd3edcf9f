from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from src.remote.schemas import Message, MessageRole, SavedWordMatch


class SessionPhase(str, Enum):
    NO_SESSION = "no_session"
    OPTIMISTIC = "optimistic"
    CONFIRMED = "confirmed"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(slots=True)
class ChatMessage:
    id: int
    session_id: int
    role: MessageRole
    content: str
    status: DeliveryStatus = DeliveryStatus.CONFIRMED
    local_id: Optional[str] = None
    error: Optional[str] = None
    raw_request: Optional[Any] = None
    raw_response: Optional[Any] = None

    @classmethod
    def from_remote(cls, message: Message) -> ChatMessage:
        return cls(
            id=message.id,
            session_id=message.session_id,
            role=message.role,
            content=message.content,
            raw_request=message.raw_request,
            raw_response=message.raw_response,
        )

    @property
    def is_local(self) -> bool:
        return self.status is not DeliveryStatus.CONFIRMED


@dataclass(slots=True)
class MessageHistory:
    messages: list[ChatMessage] = field(default_factory=list)
    pages_loaded: int = 0
    has_next_page: bool = False
    saved_word_matches: list[SavedWordMatch] = field(default_factory=list)
