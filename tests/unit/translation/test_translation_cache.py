import asyncio

import pytest

from fakes.service import FakeRemoteService
from src.cache.keys import MessageKeys
from src.cache.store import CacheStore
from src.remote.errors import NetworkError
from src.remote.schemas import MessageRole, WordTranslation, WordTranslationResponse
from src.translation.cache import Granularity, TranslationCache, TranslationStatus


@pytest.fixture
def service():
    return FakeRemoteService()


@pytest.fixture
def cache(service):
    return TranslationCache(CacheStore(), service)


@pytest.mark.asyncio
async def test_full_translation_is_fetched_once(cache, service):
    first = await cache.get_full_translation(11)
    second = await cache.get_full_translation(11)

    assert first == second == "translation of 11"
    assert service.calls["translate_message"] == 1


@pytest.mark.asyncio
async def test_concurrent_requests_share_one_fetch(cache, service):
    gate = service.gate("translate_message")

    tasks = [asyncio.create_task(cache.get_full_translation(11)) for _ in range(3)]
    await asyncio.sleep(0)
    assert cache.status(11) is TranslationStatus.LOADING

    gate.set()
    results = await asyncio.gather(*tasks)

    assert set(results) == {"translation of 11"}
    assert service.calls["translate_message"] == 1
    assert cache.status(11) is TranslationStatus.PRESENT


@pytest.mark.asyncio
async def test_assistant_translation_fills_both_slots(cache, service):
    translation = await cache.translate(21, MessageRole.ASSISTANT)

    assert translation == "translation of 21"
    assert cache.peek_word_translations(21)[0].original_word == "你好"
    assert cache.status(21, Granularity.WORDS) is TranslationStatus.PRESENT
    assert service.calls["translate_message_with_words"] == 1
    assert service.calls["translate_message"] == 0


@pytest.mark.asyncio
async def test_user_translation_only_fills_full_slot(cache, service):
    await cache.translate(22, MessageRole.USER)

    assert cache.peek_full_translation(22) == "translation of 22"
    assert cache.peek_word_translations(22) is None
    assert service.calls["translate_message_with_words"] == 0


@pytest.mark.asyncio
async def test_failed_fetch_is_not_cached(cache, service):
    service.fail_next("translate_message", NetworkError("offline"))

    with pytest.raises(NetworkError):
        await cache.get_full_translation(5)
    assert cache.status(5) is TranslationStatus.ABSENT

    assert await cache.get_full_translation(5) == "translation of 5"
    assert service.calls["translate_message"] == 2


@pytest.mark.asyncio
async def test_invalidate_forces_refetch_but_keeps_value(cache, service):
    await cache.get_full_translation(5)

    cache.invalidate(5)
    assert cache.peek_full_translation(5) == "translation of 5"

    await cache.get_full_translation(5)
    assert service.calls["translate_message"] == 2


@pytest.mark.asyncio
async def test_primed_translations_skip_the_network(cache, service):
    cache.prime(9, "primed", [WordTranslation(original_word="猫", translation="cat")])

    assert await cache.translate(9, MessageRole.ASSISTANT) == "primed"
    assert service.calls["translate_message_with_words"] == 0


@pytest.mark.asyncio
async def test_load_stored_translations(cache, service):
    service.translations[30] = WordTranslationResponse(
        translation="stored",
        word_translations=[WordTranslation(original_word="狗", translation="dog")],
    )

    assert await cache.load_stored(30) is True
    assert cache.peek_full_translation(30) == "stored"
    assert await cache.load_stored(31) is False
    assert cache.status(31, Granularity.WORDS) is TranslationStatus.ABSENT


@pytest.mark.asyncio
async def test_load_stored_failure_is_best_effort(cache, service):
    service.fail_next("get_message_translations", NetworkError("offline"))

    assert await cache.load_stored(30) is False


@pytest.mark.asyncio
async def test_forget_removes_both_slots(cache):
    cache.prime(9, "x", [])

    assert cache.forget(9) == 2
    assert cache.status(9) is TranslationStatus.ABSENT
    assert cache.status(9, Granularity.WORDS) is TranslationStatus.ABSENT


def test_translation_keys_are_independent():
    assert MessageKeys.translation(1) != MessageKeys.word_translations(1)
