from __future__ import annotations

import asyncio
import itertools
import logging
import math
from datetime import datetime, timezone
from typing import Callable, Optional

from src.cache.inflight import InflightRequests
from src.cache.keys import AgentKeys
from src.cache.store import CacheStore
from src.remote.errors import ChatSyncError, ConflictError, NotFoundError
from src.remote.schemas import Agent, AgentConfig, AgentCreateRequest, AgentUpdateRequest
from src.remote.service import RemoteDataService

logger = logging.getLogger(__name__)


class AgentDirectory:
    """Cached agent list and details, including unsaved local drafts.

    Drafts carry negative ids and live only in the cache until
    :meth:`create_agent` saves them.
    """

    def __init__(self, store: CacheStore, service: RemoteDataService, *, stale_time: float = 300.0) -> None:
        self._store = store
        self._service = service
        self._stale_time = stale_time
        self._inflight = InflightRequests()
        self._background: set[asyncio.Task] = set()
        self._draft_ids = itertools.count(-1, -1)

    @property
    def agents(self) -> list[Agent]:
        return list(self._store.peek(AgentKeys.list()) or [])

    async def list_agents(self, *, force: bool = False) -> list[Agent]:
        entry = self._store.get(AgentKeys.list())
        if entry is None or force:
            return await self._fetch_list()
        if entry.is_stale(self._store.now()) and not self._inflight.pending(AgentKeys.list()):
            task = asyncio.ensure_future(self._refresh_list())
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return list(entry.value)

    async def get_agent(self, agent_id: int) -> Agent:
        key = AgentKeys.detail(agent_id)
        if agent_id < 0:
            draft = self._store.peek(key)
            if draft is None:
                raise NotFoundError(f"Draft agent {agent_id} not found")
            return draft
        if not self._store.is_stale(key):
            return self._store.peek(key)

        async def fetch() -> Agent:
            agent = await self._service.get_agent(agent_id)
            self._store.set(key, agent, self._stale_time)
            return agent

        try:
            return await self._inflight.run(key, fetch)
        except NotFoundError:
            self._store.remove_prefix(key)
            self._write_list([a for a in self.agents if a.id != agent_id])
            raise

    def start_draft(
        self,
        name: str,
        *,
        description: Optional[str] = None,
        language: Optional[str] = None,
        configs: Optional[AgentConfig] = None,
    ) -> Agent:
        draft = Agent(
            id=next(self._draft_ids),
            name=name,
            description=description,
            language=language,
            configs=configs or AgentConfig(),
            created_at=datetime.now(timezone.utc),
        )
        self._store.set(AgentKeys.detail(draft.id), draft, math.inf)
        self._write_list([draft, *self.agents])
        logger.debug("Started draft agent %s", draft.id)
        return draft

    async def create_agent(
        self,
        draft_id: int,
        payload: AgentCreateRequest,
        *,
        on_saved: Optional[Callable[[int, Agent], None]] = None,
    ) -> Agent:
        """Save a draft; everything cached under the draft moves to the new id.

        ``on_saved(draft_id, agent)`` runs inside the same store batch as the
        move, so subscribers only see the finished switch.
        """
        agent = await self._service.create_agent(payload)
        with self._store.batch():
            try:
                self._rekey_draft(draft_id, agent)
            except ConflictError as exc:
                logger.warning("%s; re-fetching agents", exc)
                self.discard_draft(draft_id)
                self._store.invalidate(AgentKeys.all())
            if on_saved is not None:
                on_saved(draft_id, agent)
        logger.info("Agent %s saved as %s", draft_id, agent.id)
        return agent

    async def update_agent(self, agent_id: int, payload: AgentUpdateRequest) -> Agent:
        agent = await self._service.update_agent(agent_id, payload)
        self._store.set(AgentKeys.detail(agent_id), agent, self._stale_time)
        self._write_list([agent if a.id == agent_id else a for a in self.agents])
        self._store.invalidate(AgentKeys.list(), exact=True)
        return agent

    def discard_draft(self, draft_id: int) -> bool:
        removed = self._store.remove_prefix(AgentKeys.detail(draft_id))
        self._write_list([a for a in self.agents if a.id != draft_id])
        return removed > 0

    async def wait_for_background(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _rekey_draft(self, draft_id: int, agent: Agent) -> None:
        old_prefix = AgentKeys.detail(draft_id)
        new_prefix = AgentKeys.detail(agent.id)
        if self._store.has_prefix(new_prefix):
            raise ConflictError(f"Agent {agent.id} is already cached")
        self._store.move_prefix(old_prefix, new_prefix)
        self._store.set(new_prefix, agent, self._stale_time)

        # Sessions started under the draft now belong to the saved agent.
        sessions_key = AgentKeys.sessions(agent.id)
        sessions = self._store.peek(sessions_key)
        if sessions:
            self._store.set(
                sessions_key,
                [s.model_copy(update={"agent_id": agent.id}) for s in sessions],
                self._store.get(sessions_key).stale_time,
            )

        agents = self.agents
        if any(a.id == draft_id for a in agents):
            self._write_list([agent if a.id == draft_id else a for a in agents if a.id != agent.id])
        else:
            self._write_list([agent, *agents])

    async def _fetch_list(self) -> list[Agent]:
        key = AgentKeys.list()

        async def fetch() -> list[Agent]:
            remote = await self._service.list_agents()
            drafts = [a for a in self.agents if a.id < 0]
            agents = [*drafts, *remote]
            self._store.set(key, agents, self._stale_time)
            return agents

        return list(await self._inflight.run(key, fetch))

    async def _refresh_list(self) -> None:
        try:
            await self._fetch_list()
        except ChatSyncError as exc:
            logger.warning("Background refresh of agents failed, keeping cached list: %s", exc)

    def _write_list(self, agents: list[Agent]) -> None:
        key = AgentKeys.list()
        known = self._store.has(key)
        self._store.set(key, agents, self._stale_time)
        if not known:
            self._store.invalidate(key, exact=True)
