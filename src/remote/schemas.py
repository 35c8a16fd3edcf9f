from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

MAX_SESSION_NAME_LENGTH = 40


def normalize_session_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if len(value) > MAX_SESSION_NAME_LENGTH:
        raise ValueError(f"Session name must be {MAX_SESSION_NAME_LENGTH} characters or fewer")
    return value


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class AgentConfig(BaseModel):
    temperature: Optional[float] = None
    system_prompt: Optional[str] = None
    behavior_rules: list[str] = Field(default_factory=list)


class Agent(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    avatar_url: Optional[str] = None
    language: Optional[str] = None
    configs: AgentConfig = Field(default_factory=AgentConfig)
    created_at: datetime


class AgentCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None
    avatar_url: Optional[str] = None
    language: Optional[str] = None
    configs: AgentConfig = Field(default_factory=AgentConfig)


class AgentUpdateRequest(AgentCreateRequest):
    pass


class Session(BaseModel):
    id: int
    agent_id: int
    session_name: Optional[str] = None
    created_at: datetime


class SessionCreateRequest(BaseModel):
    session_name: Optional[str] = None

    @field_validator("session_name")
    @classmethod
    def validate_name_length(cls, value: Optional[str]) -> Optional[str]:
        return normalize_session_name(value)


class SessionRenameRequest(BaseModel):
    session_name: Optional[str] = Field(default=None, description="Display name; empty clears it.")

    @field_validator("session_name")
    @classmethod
    def validate_name_length(cls, value: Optional[str]) -> Optional[str]:
        return normalize_session_name(value)


class WordTranslation(BaseModel):
    original_word: str
    translation: str
    sentence_context: Optional[str] = None


class Message(BaseModel):
    id: int
    session_id: int
    role: MessageRole
    content: str
    raw_request: Optional[Any] = None
    raw_response: Optional[Any] = None
    translation: Optional[str] = None
    word_translations: Optional[list[WordTranslation]] = None


class SavedWordMatch(BaseModel):
    original_word: str
    saved_word_id: int
    translation: str
    pinyin: Optional[str] = None


class SavedWordSentence(BaseModel):
    id: int
    sentence: str
    message_id: Optional[int] = None
    session_id: Optional[int] = None


class SavedWord(BaseModel):
    id: int
    original_word: str
    translation: str
    pinyin: Optional[str] = None
    language: Optional[str] = None
    sentences: list[SavedWordSentence] = Field(default_factory=list)
    created_at: Optional[datetime] = None


class SentenceCreateRequest(BaseModel):
    sentence: str
    message_id: Optional[int] = None
    session_id: Optional[int] = None


class SavedWordCreateRequest(BaseModel):
    original_word: str
    translation: str
    pinyin: Optional[str] = None
    language: Optional[str] = None
    sentence: Optional[SentenceCreateRequest] = None


class SavedWordUpdateRequest(BaseModel):
    translation: Optional[str] = None
    pinyin: Optional[str] = None


class ChatHistoryPage(BaseModel):
    agent_id: int
    session: Optional[Session] = None
    messages: list[Message] = Field(default_factory=list)
    page: int = 1
    has_more: bool = False
    saved_word_matches: list[SavedWordMatch] = Field(default_factory=list)


class SendMessageRequest(BaseModel):
    message: str
    session_id: Optional[int] = None


class SendMessageResponse(BaseModel):
    session: Session
    user_message: Message
    assistant_message: Optional[Message] = None
    saved_word_matches: list[SavedWordMatch] = Field(default_factory=list)


class TranslationResponse(BaseModel):
    translation: str


class WordTranslationResponse(BaseModel):
    translation: Optional[str] = None
    word_translations: list[WordTranslation] = Field(default_factory=list)
