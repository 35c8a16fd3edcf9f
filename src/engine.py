# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Wiring of the cache, the remote service and the chat components."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from src.cache.store import CacheStore
from src.chat.agents import AgentDirectory
from src.chat.coordinator import SessionMessageCoordinator
from src.config.settings import EngineSettings
from src.remote.schemas import Agent, AgentCreateRequest
from src.remote.service import HttpRemoteDataService, RemoteDataService, TokenProvider
from src.translation.cache import TranslationCache
from src.translation.saved_words import SavedWordRepository

logger = logging.getLogger(__name__)


@dataclass
class ChatEngine:
    store: CacheStore
    service: RemoteDataService
    translations: TranslationCache
    saved_words: SavedWordRepository
    agents: AgentDirectory
    coordinator: SessionMessageCoordinator

    async def save_draft_agent(self, draft_id: int, payload: AgentCreateRequest) -> Agent:
        """Save a draft agent and keep the chat context on it if it was active."""
        def follow(saved_draft_id: int, agent: Agent) -> None:
            if self.coordinator.agent_id == saved_draft_id:
                self.coordinator.set_agent(agent.id)

        return await self.agents.create_agent(draft_id, payload, on_saved=follow)

    async def aclose(self) -> None:
        await self.coordinator.wait_for_background()
        await self.saved_words.wait_for_background()
        await self.agents.wait_for_background()
        aclose = getattr(self.service, "aclose", None)
        if aclose is not None:
            await aclose()
        logger.info("Chat engine closed")


def build_engine(service: RemoteDataService, settings: Optional[EngineSettings] = None) -> ChatEngine:
    settings = settings or EngineSettings()
    store = CacheStore()
    translations = TranslationCache(store, service, stale_time=settings.cache.translations_stale_time)
    saved_words = SavedWordRepository(store, service, stale_time=settings.cache.saved_words_stale_time)
    agents = AgentDirectory(store, service, stale_time=settings.cache.agents_stale_time)
    coordinator = SessionMessageCoordinator(
        store,
        service,
        settings,
        translations=translations,
        saved_words=saved_words,
    )
    logger.info("Chat engine built (eager sessions: %s)", settings.eager_session_creation)
    return ChatEngine(
        store=store,
        service=service,
        translations=translations,
        saved_words=saved_words,
        agents=agents,
        coordinator=coordinator,
    )


def create_http_engine(
    settings: Optional[EngineSettings] = None,
    token_provider: Optional[TokenProvider] = None,
) -> ChatEngine:
    settings = settings or EngineSettings()
    service = HttpRemoteDataService(settings.api_base_url, token_provider=token_provider)
    return build_engine(service, settings)
