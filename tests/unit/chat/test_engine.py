import pytest

from fakes.service import FakeRemoteService
from src.cache.keys import AgentKeys
from src.config.settings import EngineSettings
from src.engine import build_engine, create_http_engine
from src.remote.schemas import AgentCreateRequest
from src.remote.service import HttpRemoteDataService


@pytest.mark.asyncio
async def test_components_share_one_store():
    service = FakeRemoteService()
    engine = build_engine(service)

    assert engine.coordinator._store is engine.store
    assert engine.agents._store is engine.store
    assert engine.translations._store is engine.store

    await engine.aclose()
    assert service.closed


@pytest.mark.asyncio
async def test_saving_draft_agent_moves_chat_context():
    service = FakeRemoteService()
    engine = build_engine(service)
    draft = engine.agents.start_draft("Tutor")
    engine.coordinator.set_agent(draft.id)
    placeholder = await engine.coordinator.new_session()

    agent = await engine.save_draft_agent(draft.id, AgentCreateRequest(name="Tutor"))

    assert engine.coordinator.agent_id == agent.id
    sessions = engine.coordinator.sessions
    assert [s.id for s in sessions] == [placeholder.id]
    assert sessions[0].agent_id == agent.id
    assert not engine.store.has_prefix(AgentKeys.detail(draft.id))

    await engine.coordinator.select_session(placeholder.id)
    response = await engine.coordinator.send_message("你好")
    assert response.session.agent_id == agent.id
    assert engine.coordinator.active_session_id == response.session.id


@pytest.mark.asyncio
async def test_saved_agent_is_announced_only_once_fully_switched():
    engine = build_engine(FakeRemoteService())
    draft = engine.agents.start_draft("Tutor")
    engine.coordinator.set_agent(draft.id)
    await engine.coordinator.new_session()
    seen = []

    def on_change(event, key):
        seen.append((engine.coordinator.agent_id, [a.id for a in engine.agents.agents]))

    engine.store.subscribe(AgentKeys.all(), on_change)
    agent = await engine.save_draft_agent(draft.id, AgentCreateRequest(name="Tutor"))

    assert seen
    assert all(seen_agent == agent.id and ids == [agent.id] for seen_agent, ids in seen)


@pytest.mark.asyncio
async def test_http_engine_uses_configured_base_url():
    engine = create_http_engine(EngineSettings(api_base_url="http://chat.test/api"))

    assert isinstance(engine.service, HttpRemoteDataService)
    assert engine.service.base_url == "http://chat.test/api/"
    await engine.aclose()
