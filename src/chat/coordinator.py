from __future__ import annotations

import asyncio
import itertools
import logging
import math
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Coroutine, Optional

from src.cache.inflight import InflightRequests
from src.cache.keys import AgentKeys
from src.cache.store import CacheStore
from src.config.settings import EngineSettings
from src.remote.errors import ChatSyncError, ConflictError, NotFoundError, ValidationError
from src.remote.schemas import (
    ChatHistoryPage,
    Message,
    MessageRole,
    SavedWordMatch,
    SendMessageRequest,
    SendMessageResponse,
    Session,
    SessionCreateRequest,
    SessionRenameRequest,
)
from src.remote.service import RemoteDataService
from src.translation.cache import TranslationCache
from src.translation.saved_words import SavedWordRepository
from src.translation.tokenizer import index_saved_matches

from .cancellation import GenerationCounter, RequestToken
from .history import merge_messages, merge_saved_matches, replace_local
from .models import ChatMessage, DeliveryStatus, MessageHistory, SessionPhase
from .naming import derive_draft_name, normalize_session_name, session_display_name

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[Session], Awaitable[bool]]


class SessionMessageCoordinator:
    """Active session, optimistic creation, paginated history and sending.

    State lives in the shared :class:`CacheStore`; this class only keeps the
    active agent/session ids and bookkeeping for in-flight work. Session ids
    below zero are local placeholders that have not been created on the
    server yet.
    """

    def __init__(
        self,
        store: CacheStore,
        service: RemoteDataService,
        settings: Optional[EngineSettings] = None,
        *,
        translations: Optional[TranslationCache] = None,
        saved_words: Optional[SavedWordRepository] = None,
    ) -> None:
        self._store = store
        self._service = service
        self._settings = settings or EngineSettings()
        self._translations = translations
        self._saved_words = saved_words
        self._generation = GenerationCounter()
        self._inflight = InflightRequests()
        self._background: set[asyncio.Task] = set()
        self._placeholder_ids = itertools.count(-1, -1)
        self._local_message_ids = itertools.count(-1, -1)
        self._local_seq = itertools.count(1)
        self._creation_locks: dict[int, asyncio.Lock] = {}
        self._confirmed_ids: dict[int, int] = {}
        self._pending_creations: Counter[int] = Counter()
        self._deleted_sessions: set[int] = set()
        self._agent_id: Optional[int] = None
        self._active_session_id: Optional[int] = None

    # Read-only views

    @property
    def agent_id(self) -> Optional[int]:
        return self._agent_id

    @property
    def active_session_id(self) -> Optional[int]:
        return self._active_session_id

    @property
    def phase(self) -> SessionPhase:
        if self._active_session_id is None:
            return SessionPhase.NO_SESSION
        if self._active_session_id < 0:
            return SessionPhase.OPTIMISTIC
        return SessionPhase.CONFIRMED

    @property
    def sessions(self) -> list[Session]:
        if self._agent_id is None:
            return []
        return self._sessions_for(self._agent_id)

    @property
    def history(self) -> Optional[MessageHistory]:
        if self._agent_id is None or self._active_session_id is None:
            return None
        return self._store.peek(AgentKeys.history(self._agent_id, self._active_session_id))

    @property
    def messages(self) -> list[ChatMessage]:
        history = self.history
        if history is None:
            return []
        return [message for message in history.messages if message.role is not MessageRole.SYSTEM]

    @property
    def has_next_page(self) -> bool:
        history = self.history
        return bool(history and history.has_next_page)

    @property
    def saved_word_matches(self) -> dict[str, SavedWordMatch]:
        history = self.history
        return index_saved_matches(history.saved_word_matches) if history else {}

    def session_label(self, session_id: int) -> Optional[str]:
        if self._agent_id is None:
            return None
        session = self._find_session(self._agent_id, session_id)
        if session is None:
            return None
        if session.id < 0 and not session.session_name:
            history = self._store.peek(AgentKeys.history(self._agent_id, session.id))
            draft = derive_draft_name(history.messages) if history else None
            if draft:
                return draft
        return session_display_name(session)

    # Agent context and session list

    def set_agent(self, agent_id: Optional[int]) -> None:
        self._generation.advance()
        self._agent_id = agent_id
        self._active_session_id = None
        logger.debug("Switched agent context to %s", agent_id)

    async def load_sessions(self, *, force: bool = False) -> list[Session]:
        agent_id = self._require_agent()
        if agent_id < 0:
            # Unsaved agents have nothing on the server yet.
            return self._sessions_for(agent_id)
        entry = self._store.get(AgentKeys.sessions(agent_id))
        if entry is None or force:
            return await self._fetch_sessions(agent_id)
        if entry.is_stale(self._store.now()):
            self._spawn(self._refresh_sessions(agent_id), name=f"refresh-sessions-{agent_id}")
        return list(entry.value)

    # Selection and history

    async def select_session(self, session_id: Optional[int]) -> list[ChatMessage]:
        agent_id = self._require_agent()
        token = self._generation.advance()
        if session_id is None:
            self._active_session_id = None
            return []

        await self._resolve_session(agent_id, session_id)
        if not token.is_current:
            logger.debug("Selection of session %s superseded", session_id)
            return self.messages

        self._active_session_id = session_id
        if session_id < 0:
            return self.messages

        if self._store.has(AgentKeys.history(agent_id, session_id)):
            self._spawn(
                self._refresh_history(agent_id, session_id, token),
                name=f"refresh-history-{session_id}",
            )
        else:
            page = await self._load_history_page(agent_id, session_id, 1, token)
            if page is not None:
                self._apply_page(agent_id, session_id, page)
        return self.messages

    async def refresh(self) -> list[ChatMessage]:
        """Re-fetch the newest page of the active session."""
        agent_id = self._require_agent()
        session_id = self._active_session_id
        if session_id is None or session_id < 0:
            return self.messages
        page = await self._load_history_page(agent_id, session_id, 1, self._generation.token())
        if page is not None:
            self._apply_page(agent_id, session_id, page)
        return self.messages

    async def fetch_next_page(self) -> list[ChatMessage]:
        """Load the next older page; returns only the messages it added."""
        agent_id = self._require_agent()
        session_id = self._active_session_id
        history = self.history
        if session_id is None or session_id < 0 or history is None or not history.has_next_page:
            return []

        known = {message.id for message in history.messages}
        page = await self._load_history_page(
            agent_id, session_id, history.pages_loaded + 1, self._generation.token()
        )
        if page is None:
            return []
        self._apply_page(agent_id, session_id, page)
        return [ChatMessage.from_remote(message) for message in page.messages if message.id not in known]

    # Session lifecycle

    async def new_session(self) -> Session:
        """Open a placeholder session and make it active.

        With ``eager_session_creation`` the server session is created right
        away; if that fails the placeholder stays active and the error is
        re-raised, so the first message can still create it.
        """
        agent_id = self._require_agent()
        placeholder = self._open_placeholder(agent_id)
        if self._settings.eager_session_creation and agent_id > 0:
            return await self._create_remote_session(agent_id, placeholder.id)
        return placeholder

    async def rename_session(
        self,
        session_id: int,
        name: Optional[str],
        *,
        confirm: Optional[ConfirmCallback] = None,
    ) -> Optional[Session]:
        """Rename optimistically; on failure the old name is restored and the error re-raised.

        Returns ``None`` when ``confirm`` declines.
        """
        agent_id = self._require_agent()
        session = await self._resolve_session(agent_id, session_id)
        if session.id < 0:
            raise ValidationError("Session has not been saved yet")
        try:
            new_name = normalize_session_name(name)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if confirm is not None and not await confirm(session):
            return None

        previous_name = session.session_name
        self._replace_session(agent_id, session.model_copy(update={"session_name": new_name}))
        try:
            saved = await self._service.rename_session(
                agent_id, session_id, SessionRenameRequest(session_name=new_name)
            )
        except ChatSyncError as exc:
            current = self._find_session(agent_id, session_id)
            if current is not None and current.session_name == new_name:
                self._replace_session(agent_id, current.model_copy(update={"session_name": previous_name}))
            logger.warning("Renaming session %s failed, restored previous name: %s", session_id, exc)
            if isinstance(exc, NotFoundError):
                self._drop_session(agent_id, session_id)
            raise
        self._replace_session(agent_id, saved)
        return saved

    async def delete_session(self, session_id: int, *, confirm: Optional[ConfirmCallback] = None) -> bool:
        agent_id = self._require_agent()
        session = await self._resolve_session(agent_id, session_id)
        if confirm is not None and not await confirm(session):
            return False
        if session_id > 0:
            try:
                await self._service.delete_session(agent_id, session_id)
            except NotFoundError:
                logger.info("Session %s was already deleted on the server", session_id)
        self._drop_session(agent_id, session_id)
        return True

    # Messages

    async def send_message(self, content: str) -> SendMessageResponse:
        if not content or not content.strip():
            raise ValidationError("Message must not be empty")
        agent_id = self._require_agent()
        if agent_id < 0:
            raise ValidationError("Agent must be saved before chatting")
        if self._active_session_id is None:
            # The send itself creates the server session, so the typed text is
            # echoed before any request and survives a failed create.
            self._open_placeholder(agent_id)

        session_id = self._active_session_id
        echo = ChatMessage(
            id=next(self._local_message_ids),
            session_id=session_id,
            role=MessageRole.USER,
            content=content,
            status=DeliveryStatus.PENDING,
            local_id=f"local-{next(self._local_seq)}",
        )
        self._update_history(agent_id, session_id, lambda history: replace(
            history, messages=[*history.messages, echo]
        ))
        return await self._deliver(agent_id, echo)

    async def retry_message(self, local_id: str) -> SendMessageResponse:
        agent_id = self._require_agent()
        failed = self._find_local(agent_id, local_id)
        if failed is None or failed.status is not DeliveryStatus.FAILED:
            raise ValidationError(f"No failed message {local_id} to retry")
        pending = replace(failed, status=DeliveryStatus.PENDING, error=None)
        self._set_local(agent_id, pending)
        return await self._deliver(agent_id, pending)

    def discard_message(self, local_id: str) -> bool:
        agent_id = self._require_agent()
        message = self._find_local(agent_id, local_id)
        if message is None:
            return False
        session_id = self._current_id(message.session_id)
        self._update_history(agent_id, session_id, lambda history: replace(
            history, messages=[m for m in history.messages if m.local_id != local_id]
        ))
        return True

    async def wait_for_background(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # Internals: sending

    async def _deliver(self, agent_id: int, echo: ChatMessage) -> SendMessageResponse:
        session_id = self._current_id(echo.session_id)
        if session_id > 0:
            return await self._send(agent_id, echo, session_id)

        # Only one send may create the server session for a placeholder;
        # later sends wait and then use the confirmed id.
        async with self._creating(session_id):
            return await self._send(agent_id, echo, self._current_id(session_id))

    async def _send(self, agent_id: int, echo: ChatMessage, session_id: int) -> SendMessageResponse:
        request = SendMessageRequest(message=echo.content, session_id=session_id if session_id > 0 else None)
        try:
            response = await self._service.send_message(agent_id, request)
        except ChatSyncError as exc:
            logger.warning("Sending message %s failed: %s", echo.local_id, exc)
            self._set_local(agent_id, replace(echo, status=DeliveryStatus.FAILED, error=str(exc)))
            raise

        if session_id in self._deleted_sessions:
            logger.info("Session %s was deleted while sending; dropping response", session_id)
            self._store.invalidate(AgentKeys.sessions(agent_id), exact=True)
            return response

        target_id = session_id
        if session_id < 0:
            await self._reconcile_session(agent_id, session_id, response.session)
            target_id = response.session.id

        replacements = [ChatMessage.from_remote(response.user_message)]
        if response.assistant_message is not None:
            replacements.append(ChatMessage.from_remote(response.assistant_message))

        with self._store.batch():
            self._update_history(agent_id, target_id, lambda history: replace(
                history,
                messages=replace_local(history.messages, echo.local_id, replacements),
                saved_word_matches=merge_saved_matches(history.saved_word_matches, response.saved_word_matches),
            ))
            self._prime_translations([response.user_message, response.assistant_message])

            sessions = self._sessions_for(agent_id)
            self._write_sessions(agent_id, [response.session, *[s for s in sessions if s.id != target_id]])
            self._store.invalidate(AgentKeys.sessions(agent_id), exact=True)
        return response

    # Internals: session id reconciliation

    def _open_placeholder(self, agent_id: int) -> Session:
        self._generation.advance()
        placeholder = Session(
            id=next(self._placeholder_ids),
            agent_id=agent_id,
            session_name=None,
            created_at=datetime.now(timezone.utc),
        )
        with self._store.batch():
            self._write_sessions(agent_id, [placeholder, *self._sessions_for(agent_id)])
            self._store.set(AgentKeys.history(agent_id, placeholder.id), MessageHistory(), math.inf)
            self._active_session_id = placeholder.id
        logger.debug("Created placeholder session %s for agent %s", placeholder.id, agent_id)
        return placeholder

    @asynccontextmanager
    async def _creating(self, placeholder_id: int) -> AsyncIterator[None]:
        """Serialize work that may create the server session for a placeholder.

        The lock and the confirmed-id mapping are dropped once the last
        waiter leaves, since every cached reference has been rewritten by then.
        """
        self._pending_creations[placeholder_id] += 1
        lock = self._creation_locks.setdefault(placeholder_id, asyncio.Lock())
        try:
            async with lock:
                yield
        finally:
            self._pending_creations[placeholder_id] -= 1
            if self._pending_creations[placeholder_id] <= 0:
                del self._pending_creations[placeholder_id]
                self._creation_locks.pop(placeholder_id, None)
                self._confirmed_ids.pop(placeholder_id, None)

    async def _create_remote_session(self, agent_id: int, placeholder_id: int) -> Session:
        async with self._creating(placeholder_id):
            try:
                created = await self._service.create_session(agent_id, SessionCreateRequest())
            except ChatSyncError as exc:
                logger.warning("Creating session for agent %s failed, keeping placeholder: %s", agent_id, exc)
                raise
            if placeholder_id in self._deleted_sessions:
                return created
            await self._reconcile_session(agent_id, placeholder_id, created)
        return created

    async def _reconcile_session(self, agent_id: int, placeholder_id: int, session: Session) -> None:
        try:
            self._rewrite_session_id(agent_id, placeholder_id, session)
            return
        except ConflictError as exc:
            logger.warning("%s; re-fetching sessions of agent %s", exc, agent_id)

        placeholder_history: Optional[MessageHistory] = self._store.peek(
            AgentKeys.history(agent_id, placeholder_id)
        )
        unsent = [
            replace(message, session_id=session.id)
            for message in (placeholder_history.messages if placeholder_history else [])
            if message.is_local
        ]
        with self._store.batch():
            self._store.remove_prefix(AgentKeys.session(agent_id, placeholder_id))
            self._write_sessions(agent_id, [s for s in self._sessions_for(agent_id) if s.id != placeholder_id])
            self._confirmed_ids[placeholder_id] = session.id
            if self._agent_id == agent_id and self._active_session_id == placeholder_id:
                self._active_session_id = session.id
            if unsent:
                self._update_history(agent_id, session.id, lambda history: replace(
                    history, messages=merge_messages(history.messages, []) + unsent
                ))
            self._store.invalidate(AgentKeys.sessions(agent_id))

        token = self._generation.token()
        try:
            await self._fetch_sessions(agent_id)
            page = await self._load_history_page(agent_id, session.id, 1, token)
            if page is not None:
                self._apply_page(agent_id, session.id, page)
        except ChatSyncError as refetch_error:
            logger.warning("Re-fetch after id conflict failed for session %s: %s", session.id, refetch_error)

    def _rewrite_session_id(self, agent_id: int, placeholder_id: int, session: Session) -> None:
        """Move everything cached under the placeholder to the server id.

        Runs without awaiting and inside one store batch, so neither readers
        nor subscribers can observe a half-moved state.
        """
        old_prefix = AgentKeys.session(agent_id, placeholder_id)
        new_prefix = AgentKeys.session(agent_id, session.id)
        if self._store.has_prefix(new_prefix):
            raise ConflictError(f"Session {session.id} is already cached for agent {agent_id}")

        with self._store.batch():
            self._store.move_prefix(old_prefix, new_prefix)
            history_key = AgentKeys.history(agent_id, session.id)
            history: Optional[MessageHistory] = self._store.peek(history_key)
            if history is not None:
                messages = [replace(message, session_id=session.id) for message in history.messages]
                self._store.set(
                    history_key,
                    replace(history, messages=messages),
                    self._settings.cache.history_stale_time,
                )

            updated: list[Session] = []
            found = False
            for existing in self._sessions_for(agent_id):
                if existing.id == placeholder_id:
                    updated.append(session)
                    found = True
                elif existing.id != session.id:
                    updated.append(existing)
            if not found:
                updated.insert(0, session)
            self._write_sessions(agent_id, updated)

            self._confirmed_ids[placeholder_id] = session.id
            if self._agent_id == agent_id and self._active_session_id == placeholder_id:
                self._active_session_id = session.id
        logger.info("Session %s of agent %s confirmed as %s", placeholder_id, agent_id, session.id)

    # Internals: fetching

    async def _fetch_sessions(self, agent_id: int) -> list[Session]:
        key = AgentKeys.sessions(agent_id)

        async def fetch() -> list[Session]:
            remote = await self._service.list_sessions(agent_id)
            placeholders = [
                s for s in self._sessions_for(agent_id) if s.id < 0 and s.id not in self._confirmed_ids
            ]
            sessions = [*placeholders, *remote]
            self._store.set(key, sessions, self._settings.cache.sessions_stale_time)
            return sessions

        return list(await self._inflight.run(key, fetch))

    async def _refresh_sessions(self, agent_id: int) -> None:
        try:
            await self._fetch_sessions(agent_id)
        except ChatSyncError as exc:
            logger.warning("Background refresh of sessions for agent %s failed: %s", agent_id, exc)

    async def _load_history_page(
        self,
        agent_id: int,
        session_id: int,
        page: int,
        token: RequestToken,
    ) -> Optional[ChatHistoryPage]:
        key = AgentKeys.history(agent_id, session_id) + ("page", page)
        try:
            result = await self._inflight.run(
                key, lambda: self._service.get_chat_history(agent_id, session_id, page)
            )
        except NotFoundError:
            self._drop_session(agent_id, session_id)
            raise

        if not token.is_current or session_id in self._deleted_sessions:
            logger.debug("Discarding late history page %s of session %s", page, session_id)
            return None
        if result.agent_id != agent_id or (result.session is not None and result.session.agent_id != agent_id):
            raise ValidationError(f"Session {session_id} does not belong to agent {agent_id}")
        return result

    async def _refresh_history(self, agent_id: int, session_id: int, token: RequestToken) -> None:
        try:
            page = await self._load_history_page(agent_id, session_id, 1, token)
        except ChatSyncError as exc:
            logger.warning("Background refresh of session %s failed, keeping cached messages: %s", session_id, exc)
            return
        if page is not None:
            self._apply_page(agent_id, session_id, page)

    def _apply_page(self, agent_id: int, session_id: int, page: ChatHistoryPage) -> None:
        key = AgentKeys.history(agent_id, session_id)
        stale_time = self._settings.cache.history_stale_time
        incoming = [ChatMessage.from_remote(message) for message in page.messages]
        self._prime_translations(page.messages)

        current: Optional[MessageHistory] = self._store.peek(key)
        if current is None:
            self._store.set(
                key,
                MessageHistory(
                    messages=merge_messages([], incoming),
                    pages_loaded=page.page,
                    has_next_page=page.has_more,
                    saved_word_matches=list(page.saved_word_matches),
                ),
                stale_time,
            )
            return

        merged = MessageHistory(
            messages=merge_messages(current.messages, incoming),
            pages_loaded=max(current.pages_loaded, page.page),
            has_next_page=page.has_more if page.page >= current.pages_loaded else current.has_next_page,
            saved_word_matches=merge_saved_matches(current.saved_word_matches, page.saved_word_matches),
        )
        if merged == current:
            # Same ids and content: keep the old list so views do not re-render.
            self._store.touch(key)
            return
        self._store.set(key, merged, stale_time)

    # Internals: cache helpers

    def _require_agent(self) -> int:
        if self._agent_id is None:
            raise ValidationError("No agent selected")
        return self._agent_id

    def _current_id(self, session_id: int) -> int:
        return self._confirmed_ids.get(session_id, session_id)

    def _sessions_for(self, agent_id: int) -> list[Session]:
        return list(self._store.peek(AgentKeys.sessions(agent_id)) or [])

    def _find_session(self, agent_id: int, session_id: int) -> Optional[Session]:
        for session in self._sessions_for(agent_id):
            if session.id == session_id:
                return session
        return None

    async def _resolve_session(self, agent_id: int, session_id: int) -> Session:
        session = self._find_session(agent_id, session_id)
        if session is None and session_id > 0 and agent_id > 0:
            await self._fetch_sessions(agent_id)
            session = self._find_session(agent_id, session_id)
        if session is not None and session.agent_id == agent_id:
            return session
        if session is None and not self._cached_elsewhere(session_id):
            raise NotFoundError(f"Session {session_id} not found")
        raise ValidationError(f"Session {session_id} does not belong to agent {agent_id}")

    def _cached_elsewhere(self, session_id: int) -> bool:
        for key in self._store.keys(AgentKeys.all()):
            if key[-1] != "sessions":
                continue
            if any(session.id == session_id for session in self._store.peek(key) or ()):
                return True
        return False

    def _write_sessions(self, agent_id: int, sessions: list[Session]) -> None:
        key = AgentKeys.sessions(agent_id)
        known = self._store.has(key)
        self._store.set(key, sessions, self._settings.cache.sessions_stale_time)
        if not known:
            # A locally built list must not pass for a fetched one.
            self._store.invalidate(key, exact=True)

    def _replace_session(self, agent_id: int, session: Session) -> None:
        self._write_sessions(
            agent_id,
            [session if existing.id == session.id else existing for existing in self._sessions_for(agent_id)],
        )

    def _drop_session(self, agent_id: int, session_id: int) -> None:
        history: Optional[MessageHistory] = self._store.peek(AgentKeys.history(agent_id, session_id))
        if history is not None and self._translations is not None:
            for message in history.messages:
                if message.status is DeliveryStatus.CONFIRMED:
                    self._translations.forget(message.id)

        self._store.remove_prefix(AgentKeys.session(agent_id, session_id))
        self._write_sessions(agent_id, [s for s in self._sessions_for(agent_id) if s.id != session_id])
        self._deleted_sessions.add(session_id)
        if self._saved_words is not None and session_id > 0:
            self._saved_words.forget_session(session_id)

        if self._agent_id == agent_id and self._active_session_id == session_id:
            self._generation.advance()
            self._active_session_id = None
        logger.info("Removed session %s of agent %s from cache", session_id, agent_id)

    def _update_history(
        self,
        agent_id: int,
        session_id: int,
        update: Callable[[MessageHistory], MessageHistory],
    ) -> None:
        key = AgentKeys.history(agent_id, session_id)
        entry = self._store.get(key)
        current = entry.value if entry is not None else MessageHistory()
        stale_time = entry.stale_time if entry is not None else self._settings.cache.history_stale_time
        self._store.set(key, update(current), stale_time)

    def _find_local(self, agent_id: int, local_id: str) -> Optional[ChatMessage]:
        for key in self._store.keys(AgentKeys.sessions(agent_id)):
            if key[-1] != "messages":
                continue
            history: MessageHistory = self._store.peek(key)
            for message in history.messages:
                if message.local_id == local_id and message.is_local:
                    return message
        return None

    def _set_local(self, agent_id: int, updated: ChatMessage) -> None:
        session_id = self._current_id(updated.session_id)
        if not self._store.has(AgentKeys.history(agent_id, session_id)):
            return
        updated = replace(updated, session_id=session_id)
        self._update_history(agent_id, session_id, lambda history: replace(
            history,
            messages=[updated if m.local_id == updated.local_id else m for m in history.messages],
        ))

    def _prime_translations(self, messages: list[Optional[Message]]) -> None:
        if self._translations is None:
            return
        for message in messages:
            if message is None or (message.translation is None and message.word_translations is None):
                continue
            self._translations.prime(message.id, message.translation, message.word_translations)

    def _spawn(self, coro: Coroutine, *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
