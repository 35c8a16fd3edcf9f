from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Iterable, Optional

from src.cache.inflight import InflightRequests
from src.cache.keys import MessageKeys, QueryKey
from src.cache.store import CacheStore
from src.remote.errors import ChatSyncError
from src.remote.schemas import MessageRole, WordTranslation
from src.remote.service import RemoteDataService

logger = logging.getLogger(__name__)


class Granularity(str, Enum):
    FULL = "full"
    WORDS = "words"


class TranslationStatus(str, Enum):
    ABSENT = "absent"
    LOADING = "loading"
    PRESENT = "present"


class TranslationCache:
    """Fetch-once translations per message, at full-text and word granularity.

    The two slots are independent: user messages only ever get a full
    translation, assistant messages get both. Failed fetches are not cached.
    Whether a present translation is shown is UI state and not tracked here.
    """

    def __init__(
        self,
        store: CacheStore,
        service: RemoteDataService,
        *,
        stale_time: float = math.inf,
    ) -> None:
        self._store = store
        self._service = service
        self._stale_time = stale_time
        self._inflight = InflightRequests()

    def peek_full_translation(self, message_id: int) -> Optional[str]:
        return self._store.peek(MessageKeys.translation(message_id))

    def peek_word_translations(self, message_id: int) -> Optional[list[WordTranslation]]:
        return self._store.peek(MessageKeys.word_translations(message_id))

    def status(self, message_id: int, granularity: Granularity = Granularity.FULL) -> TranslationStatus:
        key = self._key(message_id, granularity)
        if self._store.has(key):
            return TranslationStatus.PRESENT
        if self._inflight.pending(key) or (
            granularity is Granularity.FULL and self._inflight.pending(self._key(message_id, Granularity.WORDS))
        ):
            return TranslationStatus.LOADING
        return TranslationStatus.ABSENT

    async def get_full_translation(self, message_id: int) -> str:
        key = MessageKeys.translation(message_id)
        if not self._store.is_stale(key):
            return self._store.peek(key)

        async def fetch() -> str:
            translation = await self._service.translate_message(message_id)
            self._store.set(key, translation, self._stale_time)
            return translation

        return await self._inflight.run(key, fetch)

    async def get_word_translations(self, message_id: int) -> list[WordTranslation]:
        key = MessageKeys.word_translations(message_id)
        if not self._store.is_stale(key):
            return self._store.peek(key)

        async def fetch() -> list[WordTranslation]:
            result = await self._service.translate_message_with_words(message_id)
            self.prime(message_id, result.translation, result.word_translations)
            return list(result.word_translations)

        return await self._inflight.run(key, fetch)

    async def translate(self, message_id: int, role: MessageRole) -> str:
        """Request the translation a message of ``role`` gets on demand."""
        if role is MessageRole.ASSISTANT:
            await self.get_word_translations(message_id)
            translation = self.peek_full_translation(message_id)
            if translation is not None:
                return translation
        return await self.get_full_translation(message_id)

    async def load_stored(self, message_id: int) -> bool:
        """Best-effort load of translations the server already persisted."""
        key = MessageKeys.word_translations(message_id)
        if self._store.has(key):
            return True

        async def fetch() -> bool:
            result = await self._service.get_message_translations(message_id)
            if not result.word_translations and result.translation is None:
                return False
            self.prime(
                message_id,
                result.translation,
                result.word_translations or None,
            )
            return True

        try:
            return await self._inflight.run(key + ("stored",), fetch)
        except ChatSyncError as exc:
            logger.warning("Could not load stored translations for message %s: %s", message_id, exc)
            return False

    def prime(
        self,
        message_id: int,
        translation: Optional[str] = None,
        word_translations: Optional[Iterable[WordTranslation]] = None,
    ) -> None:
        if translation is not None:
            self._store.set(MessageKeys.translation(message_id), translation, self._stale_time)
        if word_translations is not None:
            self._store.set(
                MessageKeys.word_translations(message_id),
                list(word_translations),
                self._stale_time,
            )

    def invalidate(self, message_id: int) -> int:
        return self._store.invalidate(MessageKeys.detail(message_id))

    def forget(self, message_id: int) -> int:
        return self._store.remove_prefix(MessageKeys.detail(message_id))

    @staticmethod
    def _key(message_id: int, granularity: Granularity) -> QueryKey:
        if granularity is Granularity.WORDS:
            return MessageKeys.word_translations(message_id)
        return MessageKeys.translation(message_id)
