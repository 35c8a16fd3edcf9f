"""Hierarchical query keys.

Every cacheable query is addressed by a tuple of scalars. Keys of dependent
queries extend the key of their parent, e.g. the message history of session 3
of agent 7 is ``("agents", "detail", 7, "sessions", 3, "messages")``, so
invalidating ``("agents", "detail", 7)`` reaches it.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional, Union

Scalar = Union[str, int]
QueryKey = tuple[Scalar, ...]


class EntityKind(str, Enum):
    AGENTS = "agents"
    MESSAGES = "messages"
    SAVED_WORDS = "saved-words"


def key_for(kind: EntityKind, *segments: Scalar) -> QueryKey:
    for segment in segments:
        # bool is an int subclass but never a meaningful key segment
        if isinstance(segment, bool) or not isinstance(segment, (str, int)):
            raise TypeError(f"Query key segments must be str or int, got {segment!r}")
    return (EntityKind(kind).value, *segments)


def is_prefix(prefix: QueryKey, key: QueryKey) -> bool:
    return len(prefix) <= len(key) and key[: len(prefix)] == prefix


def rebase(key: QueryKey, old_prefix: QueryKey, new_prefix: QueryKey) -> QueryKey:
    if not is_prefix(old_prefix, key):
        raise ValueError(f"{key!r} is not under {old_prefix!r}")
    return new_prefix + key[len(old_prefix) :]


def normalize_words(words: Iterable[str]) -> list[str]:
    """Lower-case, trim, de-duplicate and sort a candidate word list."""
    return sorted({word.strip().lower() for word in words if word and word.strip()})


class AgentKeys:
    @staticmethod
    def all() -> QueryKey:
        return key_for(EntityKind.AGENTS)

    @staticmethod
    def list() -> QueryKey:
        return key_for(EntityKind.AGENTS, "list")

    @staticmethod
    def detail(agent_id: int) -> QueryKey:
        return key_for(EntityKind.AGENTS, "detail", agent_id)

    @staticmethod
    def sessions(agent_id: int) -> QueryKey:
        return AgentKeys.detail(agent_id) + ("sessions",)

    @staticmethod
    def session(agent_id: int, session_id: int) -> QueryKey:
        return AgentKeys.sessions(agent_id) + (session_id,)

    @staticmethod
    def history(agent_id: int, session_id: int) -> QueryKey:
        return AgentKeys.session(agent_id, session_id) + ("messages",)


class MessageKeys:
    @staticmethod
    def detail(message_id: int) -> QueryKey:
        return key_for(EntityKind.MESSAGES, "detail", message_id)

    @staticmethod
    def translation(message_id: int) -> QueryKey:
        return MessageKeys.detail(message_id) + ("translation",)

    @staticmethod
    def word_translations(message_id: int) -> QueryKey:
        return MessageKeys.detail(message_id) + ("word-translations",)


class SavedWordKeys:
    @staticmethod
    def all() -> QueryKey:
        return key_for(EntityKind.SAVED_WORDS)

    @staticmethod
    def lists() -> QueryKey:
        return key_for(EntityKind.SAVED_WORDS, "list")

    @staticmethod
    def list(language: Optional[str] = None) -> QueryKey:
        return SavedWordKeys.lists() + (language or "*",)

    @staticmethod
    def detail(saved_word_id: int) -> QueryKey:
        return key_for(EntityKind.SAVED_WORDS, "detail", saved_word_id)

    @staticmethod
    def matching_prefix() -> QueryKey:
        return key_for(EntityKind.SAVED_WORDS, "matching")

    @staticmethod
    def matching(words: Iterable[str]) -> QueryKey:
        return SavedWordKeys.matching_prefix() + (",".join(normalize_words(words)),)
