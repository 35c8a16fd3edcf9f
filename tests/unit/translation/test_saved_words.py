import pytest

from fakes.service import FakeRemoteService
from src.cache.keys import SavedWordKeys
from src.cache.store import CacheStore
from src.remote.errors import NetworkError, NotFoundError
from src.remote.schemas import SavedWordCreateRequest, SavedWordUpdateRequest, SentenceCreateRequest
from src.translation.saved_words import SavedWordRepository


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def service():
    return FakeRemoteService()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return CacheStore(clock=clock)


@pytest.fixture
def repository(store, service):
    return SavedWordRepository(store, service, stale_time=60)


async def save(repository, word="你好", translation="hello", language="zh"):
    return await repository.create(
        SavedWordCreateRequest(original_word=word, translation=translation, language=language)
    )


@pytest.mark.asyncio
async def test_list_is_cached_until_stale(repository, service, clock):
    await save(repository)

    first = await repository.list_saved_words("zh")
    await repository.list_saved_words("zh")
    assert [w.original_word for w in first] == ["你好"]
    assert service.calls["list_saved_words"] == 1

    clock.now += 61
    stale = await repository.list_saved_words("zh")
    await repository.wait_for_background()
    assert stale == first
    assert service.calls["list_saved_words"] == 2


@pytest.mark.asyncio
async def test_create_invalidates_language_lists(repository, store, service):
    await repository.list_saved_words("zh")
    await repository.list_saved_words()

    await save(repository)

    assert store.is_stale(SavedWordKeys.list("zh"))
    assert store.is_stale(SavedWordKeys.list())


@pytest.mark.asyncio
async def test_matching_lookup_is_normalized_and_marks_saved(repository, service):
    await save(repository)

    matches = await repository.find_matching(["谢谢", "你好", "你好"])
    await repository.find_matching([" 你好", "谢谢"])

    assert [m.original_word for m in matches] == ["你好"]
    assert service.calls["find_matching_words"] == 1
    assert repository.is_saved("你好")
    assert not repository.is_saved("谢谢")
    assert await repository.find_matching(["", " "]) == []


@pytest.mark.asyncio
async def test_update_invalidates_matching_lookups(repository, store):
    saved = await save(repository)
    await repository.find_matching(["你好"])

    await repository.update(saved.id, SavedWordUpdateRequest(translation="hi"))

    assert store.is_stale(SavedWordKeys.matching(["你好"]))
    assert (await repository.get_saved_word(saved.id)).translation == "hi"


@pytest.mark.asyncio
async def test_delete_tolerates_missing_word(repository, store, service):
    saved = await save(repository)
    await repository.get_saved_word(saved.id)

    await repository.delete(saved.id)
    await repository.delete(saved.id)

    assert not store.has(SavedWordKeys.detail(saved.id))
    with pytest.raises(NotFoundError):
        await repository.get_saved_word(saved.id)


@pytest.mark.asyncio
async def test_sentences_invalidate_detail(repository, store):
    saved = await save(repository)
    await repository.get_saved_word(saved.id)

    sentence = await repository.add_sentence(saved.id, SentenceCreateRequest(sentence="你好吗", session_id=3))
    assert store.is_stale(SavedWordKeys.detail(saved.id))

    # A stale read answers from cache and refreshes in the background.
    assert (await repository.get_saved_word(saved.id)).sentences == []
    await repository.wait_for_background()
    assert [s.id for s in (await repository.get_saved_word(saved.id)).sentences] == [sentence.id]

    await repository.remove_sentence(saved.id, sentence.id)
    await repository.get_saved_word(saved.id)
    await repository.wait_for_background()
    assert (await repository.get_saved_word(saved.id)).sentences == []


@pytest.mark.asyncio
async def test_background_refresh_failure_keeps_cached_value(repository, service, clock):
    await save(repository)
    cached = await repository.list_saved_words()

    clock.now += 61
    service.fail_next("list_saved_words", NetworkError("offline"))
    assert await repository.list_saved_words() == cached
    await repository.wait_for_background()

    assert await repository.list_saved_words() == cached
    await repository.wait_for_background()


@pytest.mark.asyncio
async def test_forget_session_invalidates_everything(repository, store):
    await save(repository)
    await repository.list_saved_words()

    assert repository.forget_session(3) >= 1
    assert store.is_stale(SavedWordKeys.list())
