from __future__ import annotations

from typing import Iterable, Optional

from src.remote.schemas import MessageRole, Session, normalize_session_name

from .models import ChatMessage

_MAX_LABEL_LENGTH = 20
_DATE_FORMAT = "%Y-%m-%d %H:%M"

__all__ = ["derive_draft_name", "normalize_session_name", "session_display_name", "truncate_name"]


def session_display_name(session: Session) -> str:
    """Name shown for a session, falling back to its creation date."""
    if session.session_name:
        return session.session_name
    return f"Session {session.created_at.strftime(_DATE_FORMAT)}"


def derive_draft_name(messages: Iterable[ChatMessage]) -> Optional[str]:
    for message in messages:
        if message.role is MessageRole.USER and message.content.strip():
            return truncate_name(message.content)
    return None


def truncate_name(text: str, limit: int = _MAX_LABEL_LENGTH) -> str:
    cleaned = " ".join(text.split())
    if len(cleaned) <= limit:
        return cleaned
    trimmed = cleaned[: limit - 1].rstrip()
    return f"{trimmed}…"
