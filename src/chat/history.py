"""Merging of message pages into a session's cached history."""

from __future__ import annotations

from typing import Iterable, Sequence

from src.remote.schemas import SavedWordMatch

from .models import ChatMessage, DeliveryStatus


def merge_messages(existing: Sequence[ChatMessage], incoming: Iterable[ChatMessage]) -> list[ChatMessage]:
    """Union of two message lists, de-duplicated by server id.

    Confirmed messages are ordered by id (server ids are sequential); the
    incoming copy of a message wins. Pending and failed local messages keep
    their relative order after the confirmed ones.
    """
    confirmed: dict[int, ChatMessage] = {
        message.id: message for message in existing if message.status is DeliveryStatus.CONFIRMED
    }
    for message in incoming:
        confirmed[message.id] = message
    local = [message for message in existing if message.is_local]
    return sorted(confirmed.values(), key=lambda message: message.id) + local


def replace_local(
    messages: Sequence[ChatMessage],
    local_id: str,
    replacements: Sequence[ChatMessage],
) -> list[ChatMessage]:
    """Swap the local message ``local_id`` for ``replacements`` in place.

    Confirmed copies of the replacements already present elsewhere (for
    example from a refresh that raced the send) are dropped.
    """
    replacement_ids = {message.id for message in replacements}
    result: list[ChatMessage] = []
    replaced = False
    for message in messages:
        if message.local_id == local_id and message.is_local:
            result.extend(replacements)
            replaced = True
        elif message.status is DeliveryStatus.CONFIRMED and message.id in replacement_ids:
            continue
        else:
            result.append(message)
    if not replaced:
        result.extend(replacements)
    return result


def merge_saved_matches(
    existing: Iterable[SavedWordMatch],
    incoming: Iterable[SavedWordMatch],
) -> list[SavedWordMatch]:
    merged: dict[str, SavedWordMatch] = {}
    for match in [*existing, *incoming]:
        merged[match.original_word.lower()] = match
    return list(merged.values())
