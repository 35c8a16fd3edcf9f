"""FastAPI app mimicking the chat backend's REST routes, backed by a FakeRemoteService."""

from typing import Optional

from fastapi import APIRouter, FastAPI, Header, HTTPException, Query, Response, status
from fastapi.responses import JSONResponse

from src.remote.errors import NotFoundError
from src.remote.schemas import (
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
    Session,
    SessionCreateRequest,
    SessionRenameRequest,
    SentenceCreateRequest,
    TranslationResponse,
    WordTranslationResponse,
)

from .service import FakeRemoteService


def create_app(backend: FakeRemoteService, *, required_token: Optional[str] = None) -> FastAPI:
    router = APIRouter(prefix="/api")

    def check_auth(authorization: Optional[str]) -> None:
        if required_token is not None and authorization != f"Bearer {required_token}":
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    async def call(coro):
        try:
            return await coro
        except NotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message) from exc

    @router.get("/agents", response_model=list[Agent])
    async def list_agents(authorization: Optional[str] = Header(default=None)):
        check_auth(authorization)
        return await backend.list_agents()

    @router.post("/agents", status_code=status.HTTP_201_CREATED, response_model=Agent)
    async def create_agent(payload: AgentCreateRequest):
        return await backend.create_agent(payload)

    @router.get("/agents/{agent_id}", response_model=Agent)
    async def get_agent(agent_id: int):
        return await call(backend.get_agent(agent_id))

    @router.put("/agents/{agent_id}", response_model=Agent)
    async def update_agent(agent_id: int, payload: AgentUpdateRequest):
        return await backend.update_agent(agent_id, payload)

    @router.get("/agents/{agent_id}/sessions", response_model=list[Session])
    async def list_sessions(agent_id: int):
        return await backend.list_sessions(agent_id)

    @router.post("/agents/{agent_id}/sessions", status_code=status.HTTP_201_CREATED, response_model=Session)
    async def create_session(agent_id: int, payload: SessionCreateRequest):
        return await backend.create_session(agent_id, payload)

    @router.put("/agents/{agent_id}/sessions/{session_id}", response_model=Session)
    async def rename_session(agent_id: int, session_id: int, payload: SessionRenameRequest):
        return await call(backend.rename_session(agent_id, session_id, payload))

    @router.delete("/agents/{agent_id}/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_session(agent_id: int, session_id: int):
        await call(backend.delete_session(agent_id, session_id))
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @router.get("/agents/{agent_id}/chat", response_model=ChatHistoryPage)
    async def get_chat_history(agent_id: int, page: int = Query(default=1, ge=1), session: Optional[int] = None):
        return await call(backend.get_chat_history(agent_id, session, page))

    @router.post("/agents/{agent_id}/chat", response_model=SendMessageResponse)
    async def send_message(agent_id: int, payload: SendMessageRequest):
        if not payload.message.strip():
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"message": "Message is empty"})
        return await call(backend.send_message(agent_id, payload))

    @router.post("/messages/{message_id}/translate", response_model=TranslationResponse)
    async def translate(message_id: int):
        return TranslationResponse(translation=await backend.translate_message(message_id))

    @router.post("/messages/{message_id}/translate-with-words", response_model=WordTranslationResponse)
    async def translate_with_words(message_id: int):
        return await backend.translate_message_with_words(message_id)

    @router.get("/messages/{message_id}/word-translations", response_model=WordTranslationResponse)
    async def word_translations(message_id: int):
        return await backend.get_message_translations(message_id)

    @router.get("/saved-words", response_model=list[SavedWord])
    async def list_saved_words(language: Optional[str] = None):
        return await backend.list_saved_words(language)

    @router.post("/saved-words", status_code=status.HTTP_201_CREATED, response_model=SavedWord)
    async def create_saved_word(payload: SavedWordCreateRequest):
        return await backend.create_saved_word(payload)

    # Declared before /saved-words/{saved_word_id} so "matching" is not parsed as an id.
    @router.get("/saved-words/matching", response_model=list[SavedWordMatch])
    async def matching(words: str = Query(default="")):
        return await backend.find_matching_words([w for w in words.split(",") if w])

    @router.get("/saved-words/{saved_word_id}", response_model=SavedWord)
    async def get_saved_word(saved_word_id: int):
        return await call(backend.get_saved_word(saved_word_id))

    @router.put("/saved-words/{saved_word_id}", response_model=SavedWord)
    async def update_saved_word(saved_word_id: int, payload: SavedWordUpdateRequest):
        return await backend.update_saved_word(saved_word_id, payload)

    @router.delete("/saved-words/{saved_word_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_saved_word(saved_word_id: int):
        await call(backend.delete_saved_word(saved_word_id))
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @router.post("/saved-words/{saved_word_id}/sentences", response_model=SavedWordSentence)
    async def add_sentence(saved_word_id: int, payload: SentenceCreateRequest):
        return await backend.add_sentence(saved_word_id, payload)

    @router.delete("/saved-words/{saved_word_id}/sentences/{sentence_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def remove_sentence(saved_word_id: int, sentence_id: int):
        await backend.remove_sentence(saved_word_id, sentence_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    app = FastAPI(title="Fake chat backend")
    app.include_router(router)
    return app
