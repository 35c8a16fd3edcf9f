from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from src.cache.inflight import InflightRequests
from src.cache.keys import QueryKey, SavedWordKeys, normalize_words
from src.cache.store import CacheStore
from src.remote.errors import ChatSyncError, NotFoundError
from src.remote.schemas import (
    SavedWord,
    SavedWordCreateRequest,
    SavedWordMatch,
    SavedWordSentence,
    SavedWordUpdateRequest,
    SentenceCreateRequest,
)
from src.remote.service import RemoteDataService

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SavedWordRepository:
    """Cached access to the user's saved vocabulary."""

    def __init__(self, store: CacheStore, service: RemoteDataService, *, stale_time: float = 60.0) -> None:
        self._store = store
        self._service = service
        self._stale_time = stale_time
        self._inflight = InflightRequests()
        self._background: set[asyncio.Task] = set()

    async def list_saved_words(self, language: Optional[str] = None) -> list[SavedWord]:
        return await self._query(
            SavedWordKeys.list(language),
            lambda: self._service.list_saved_words(language),
        )

    async def get_saved_word(self, saved_word_id: int) -> SavedWord:
        key = SavedWordKeys.detail(saved_word_id)
        try:
            return await self._query(key, lambda: self._service.get_saved_word(saved_word_id))
        except NotFoundError:
            self._store.remove(key)
            self._store.invalidate(SavedWordKeys.lists())
            raise

    async def find_matching(self, words: Iterable[str]) -> list[SavedWordMatch]:
        normalized = normalize_words(words)
        if not normalized:
            return []
        return await self._query(
            SavedWordKeys.matching(normalized),
            lambda: self._service.find_matching_words(normalized),
        )

    def is_saved(self, word: str) -> bool:
        """Whether ``word`` appears in any cached matching lookup."""
        target = word.strip().lower()
        if not target:
            return False
        for key in self._store.keys(SavedWordKeys.matching_prefix()):
            for match in self._store.peek(key) or ():
                if match.original_word.strip().lower() == target:
                    return True
        return False

    async def create(self, payload: SavedWordCreateRequest) -> SavedWord:
        saved = await self._service.create_saved_word(payload)
        self._store.set(SavedWordKeys.detail(saved.id), saved, self._stale_time)
        self._store.invalidate(SavedWordKeys.lists())
        self._store.invalidate(SavedWordKeys.matching_prefix())
        logger.info("Saved word %s (%s)", saved.id, saved.original_word)
        return saved

    async def update(self, saved_word_id: int, payload: SavedWordUpdateRequest) -> SavedWord:
        saved = await self._service.update_saved_word(saved_word_id, payload)
        self._store.set(SavedWordKeys.detail(saved_word_id), saved, self._stale_time)
        self._store.invalidate(SavedWordKeys.lists())
        self._store.invalidate(SavedWordKeys.matching_prefix())
        return saved

    async def delete(self, saved_word_id: int) -> None:
        try:
            await self._service.delete_saved_word(saved_word_id)
        except NotFoundError:
            logger.info("Saved word %s was already deleted", saved_word_id)
        self._store.remove(SavedWordKeys.detail(saved_word_id))
        self._store.invalidate(SavedWordKeys.all())

    async def add_sentence(self, saved_word_id: int, payload: SentenceCreateRequest) -> SavedWordSentence:
        sentence = await self._service.add_sentence(saved_word_id, payload)
        self._store.invalidate(SavedWordKeys.detail(saved_word_id))
        return sentence

    async def remove_sentence(self, saved_word_id: int, sentence_id: int) -> None:
        await self._service.remove_sentence(saved_word_id, sentence_id)
        self._store.invalidate(SavedWordKeys.detail(saved_word_id))

    def forget_session(self, session_id: int) -> int:
        """Invalidate saved-word data after a session it may link to is gone."""
        logger.debug("Invalidating saved words after deletion of session %s", session_id)
        return self._store.invalidate(SavedWordKeys.all())

    async def wait_for_background(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _query(self, key: QueryKey, fetcher: Callable[[], Awaitable[T]]) -> T:
        entry = self._store.get(key)

        async def fetch() -> T:
            value = await fetcher()
            self._store.set(key, value, self._stale_time)
            return value

        if entry is None:
            return await self._inflight.run(key, fetch)
        if entry.is_stale(self._store.now()) and not self._inflight.pending(key):
            task = asyncio.ensure_future(self._refresh(key, fetch))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return entry.value

    async def _refresh(self, key: QueryKey, fetch: Callable[[], Awaitable[T]]) -> None:
        try:
            await self._inflight.run(key, fetch)
        except ChatSyncError as exc:
            logger.warning("Background refresh of %r failed, keeping cached value: %s", key, exc)
