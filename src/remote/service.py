from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

import httpx

from .errors import ChatSyncError, ConflictError, NetworkError, NotFoundError, ValidationError
from .schemas import (
    Agent,
    AgentCreateRequest,
    AgentUpdateRequest,
    ChatHistoryPage,
    SavedWord,
    SavedWordCreateRequest,
    SavedWordMatch,
    SavedWordSentence,
    SavedWordUpdateRequest,
    SendMessageRequest,
    SendMessageResponse,
    SentenceCreateRequest,
    Session,
    SessionCreateRequest,
    SessionRenameRequest,
    TranslationResponse,
    WordTranslationResponse,
)

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[Optional[str]]]

_DEFAULT_ERROR_MESSAGE = "An unexpected error occurred"


class RemoteDataService(Protocol):
    """Operations the engine needs from the chat backend."""

    async def list_agents(self) -> list[Agent]: ...

    async def get_agent(self, agent_id: int) -> Agent: ...

    async def create_agent(self, payload: AgentCreateRequest) -> Agent: ...

    async def update_agent(self, agent_id: int, payload: AgentUpdateRequest) -> Agent: ...

    async def list_sessions(self, agent_id: int) -> list[Session]: ...

    async def create_session(self, agent_id: int, payload: SessionCreateRequest) -> Session: ...

    async def rename_session(self, agent_id: int, session_id: int, payload: SessionRenameRequest) -> Session: ...

    async def delete_session(self, agent_id: int, session_id: int) -> None: ...

    async def get_chat_history(self, agent_id: int, session_id: Optional[int], page: int = 1) -> ChatHistoryPage: ...

    async def send_message(self, agent_id: int, payload: SendMessageRequest) -> SendMessageResponse: ...

    async def translate_message(self, message_id: int) -> str: ...

    async def translate_message_with_words(self, message_id: int) -> WordTranslationResponse: ...

    async def get_message_translations(self, message_id: int) -> WordTranslationResponse: ...

    async def list_saved_words(self, language: Optional[str] = None) -> list[SavedWord]: ...

    async def get_saved_word(self, saved_word_id: int) -> SavedWord: ...

    async def find_matching_words(self, words: Sequence[str]) -> list[SavedWordMatch]: ...

    async def create_saved_word(self, payload: SavedWordCreateRequest) -> SavedWord: ...

    async def update_saved_word(self, saved_word_id: int, payload: SavedWordUpdateRequest) -> SavedWord: ...

    async def delete_saved_word(self, saved_word_id: int) -> None: ...

    async def add_sentence(self, saved_word_id: int, payload: SentenceCreateRequest) -> SavedWordSentence: ...

    async def remove_sentence(self, saved_word_id: int, sentence_id: int) -> None: ...


class HttpRemoteDataService:
    """:class:`RemoteDataService` over HTTP/JSON using ``httpx``.

    Token acquisition is delegated to ``token_provider``; timeouts are whatever
    the supplied client is configured with.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token_provider: Optional[TokenProvider] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._owns_client = client is None
        # A supplied client is used as configured, including its base_url.
        self._client = client or httpx.AsyncClient(base_url=base_url)
        self._token_provider = token_provider

    @property
    def base_url(self) -> str:
        return str(self._client.base_url)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # Agents

    async def list_agents(self) -> list[Agent]:
        data = await self._request("GET", "/agents")
        return [Agent.model_validate(item) for item in data]

    async def get_agent(self, agent_id: int) -> Agent:
        return Agent.model_validate(await self._request("GET", f"/agents/{agent_id}"))

    async def create_agent(self, payload: AgentCreateRequest) -> Agent:
        return Agent.model_validate(await self._request("POST", "/agents", json=_dump(payload)))

    async def update_agent(self, agent_id: int, payload: AgentUpdateRequest) -> Agent:
        data = await self._request("PUT", f"/agents/{agent_id}", json=_dump(payload))
        return Agent.model_validate(data)

    # Sessions

    async def list_sessions(self, agent_id: int) -> list[Session]:
        data = await self._request("GET", f"/agents/{agent_id}/sessions")
        return [Session.model_validate(item) for item in data]

    async def create_session(self, agent_id: int, payload: SessionCreateRequest) -> Session:
        data = await self._request("POST", f"/agents/{agent_id}/sessions", json=_dump(payload))
        return Session.model_validate(data)

    async def rename_session(self, agent_id: int, session_id: int, payload: SessionRenameRequest) -> Session:
        data = await self._request(
            "PUT",
            f"/agents/{agent_id}/sessions/{session_id}",
            json=payload.model_dump(mode="json"),
        )
        return Session.model_validate(data)

    async def delete_session(self, agent_id: int, session_id: int) -> None:
        await self._request("DELETE", f"/agents/{agent_id}/sessions/{session_id}")

    # Chat

    async def get_chat_history(self, agent_id: int, session_id: Optional[int], page: int = 1) -> ChatHistoryPage:
        params: dict[str, Any] = {"page": page}
        if session_id is not None:
            params["session"] = session_id
        data = await self._request("GET", f"/agents/{agent_id}/chat", params=params)
        return ChatHistoryPage.model_validate(data)

    async def send_message(self, agent_id: int, payload: SendMessageRequest) -> SendMessageResponse:
        data = await self._request("POST", f"/agents/{agent_id}/chat", json=_dump(payload))
        return SendMessageResponse.model_validate(data)

    # Translations

    async def translate_message(self, message_id: int) -> str:
        data = await self._request("POST", f"/messages/{message_id}/translate")
        return TranslationResponse.model_validate(data).translation

    async def translate_message_with_words(self, message_id: int) -> WordTranslationResponse:
        data = await self._request("POST", f"/messages/{message_id}/translate-with-words")
        return WordTranslationResponse.model_validate(data)

    async def get_message_translations(self, message_id: int) -> WordTranslationResponse:
        data = await self._request("GET", f"/messages/{message_id}/word-translations")
        return WordTranslationResponse.model_validate(data)

    # Saved words

    async def list_saved_words(self, language: Optional[str] = None) -> list[SavedWord]:
        params = {"language": language} if language else None
        data = await self._request("GET", "/saved-words", params=params)
        return [SavedWord.model_validate(item) for item in data]

    async def get_saved_word(self, saved_word_id: int) -> SavedWord:
        return SavedWord.model_validate(await self._request("GET", f"/saved-words/{saved_word_id}"))

    async def find_matching_words(self, words: Sequence[str]) -> list[SavedWordMatch]:
        if not words:
            return []
        data = await self._request("GET", "/saved-words/matching", params={"words": ",".join(words)})
        return [SavedWordMatch.model_validate(item) for item in data]

    async def create_saved_word(self, payload: SavedWordCreateRequest) -> SavedWord:
        return SavedWord.model_validate(await self._request("POST", "/saved-words", json=_dump(payload)))

    async def update_saved_word(self, saved_word_id: int, payload: SavedWordUpdateRequest) -> SavedWord:
        data = await self._request("PUT", f"/saved-words/{saved_word_id}", json=_dump(payload))
        return SavedWord.model_validate(data)

    async def delete_saved_word(self, saved_word_id: int) -> None:
        await self._request("DELETE", f"/saved-words/{saved_word_id}")

    async def add_sentence(self, saved_word_id: int, payload: SentenceCreateRequest) -> SavedWordSentence:
        data = await self._request("POST", f"/saved-words/{saved_word_id}/sentences", json=_dump(payload))
        return SavedWordSentence.model_validate(data)

    async def remove_sentence(self, saved_word_id: int, sentence_id: int) -> None:
        await self._request("DELETE", f"/saved-words/{saved_word_id}/sentences/{sentence_id}")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
    ) -> Any:
        headers: dict[str, str] = {}
        if self._token_provider is not None:
            token = await self._token_provider()
            if token:
                headers["Authorization"] = f"Bearer {token}"

        try:
            response = await self._client.request(method, path, params=params, json=json, headers=headers)
        except httpx.TransportError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise NetworkError(f"Could not reach chat service: {exc}") from exc

        if response.is_success:
            if response.status_code == 204 or not response.content:
                return None
            return response.json()

        raise _error_from_response(response)


def _dump(payload: Any) -> dict[str, Any]:
    return payload.model_dump(mode="json", exclude_none=True)


def _error_from_response(response: httpx.Response) -> ChatSyncError:
    message = _DEFAULT_ERROR_MESSAGE
    detail: Any = None
    try:
        detail = response.json()
    except ValueError:
        detail = response.text or None

    if isinstance(detail, dict):
        for field_name in ("message", "detail"):
            value = detail.get(field_name)
            if isinstance(value, str) and value:
                message = value
                break
    elif isinstance(detail, str) and detail:
        message = detail

    status_code = response.status_code
    if status_code == 404:
        error_cls: type[ChatSyncError] = NotFoundError
    elif status_code in (400, 422):
        error_cls = ValidationError
    elif status_code == 409:
        error_cls = ConflictError
    else:
        error_cls = NetworkError
    return error_cls(message, status_code=status_code, detail=detail)
