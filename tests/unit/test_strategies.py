"""Unit tests for routing strategies."""

import pytest
from structlog.testing import capture_logs

from livechat_core.routing import (
    Agent,
    AgentState,
    AssignmentRecord,
    AssignmentType,
    DepartmentStrategy,
    InMemoryPersistenceStore,
    LanguageStrategy,
    LeastBusyStrategy,
    PersistenceError,
    RoundRobinStrategy,
    RoutingContext,
    SkillBasedStrategy,
    VipStrategy,
    VisitorProfile,
)


def make_agent(agent_id, **kwargs):
    kwargs.setdefault("tenant_id", "site-1")
    kwargs.setdefault("is_online", True)
    kwargs.setdefault("state", AgentState.AVAILABLE)
    kwargs.setdefault("max_concurrent_chats", 3)
    return Agent(id=agent_id, **kwargs)


def make_context(**kwargs):
    visitor = kwargs.pop("visitor", None) or VisitorProfile(visitor_id="visitor-1")
    return RoutingContext(
        conversation_id=kwargs.pop("conversation_id", "conv-1"),
        tenant_id=kwargs.pop("tenant_id", "site-1"),
        visitor=visitor,
        **kwargs,
    )


def degraded_events(logs):
    return [log for log in logs if log["event"] == "routing_degraded"]


class TestLeastBusyStrategy:
    """Tests for least-busy selection."""

    @pytest.mark.asyncio
    async def test_picks_fewest_chats(self):
        """Test the agent with the fewest chats wins."""
        agents = [
            make_agent("agent-a", current_chats=2),
            make_agent("agent-b", current_chats=0),
            make_agent("agent-c", current_chats=1),
        ]

        result = await LeastBusyStrategy().select_agent(make_context(), agents)

        assert result.agent.id == "agent-b"
        assert result.strategy == "least_busy"
        assert result.degraded is False

    @pytest.mark.asyncio
    async def test_ties_broken_by_id(self):
        """Test equal load falls back to id order."""
        agents = [make_agent("agent-c"), make_agent("agent-a"), make_agent("agent-b")]

        result = await LeastBusyStrategy().select_agent(make_context(), agents)

        assert result.agent.id == "agent-a"

    @pytest.mark.asyncio
    async def test_no_agents(self):
        """Test an empty pool yields nothing."""
        assert await LeastBusyStrategy().select_agent(make_context(), []) is None


class TestRoundRobinStrategy:
    """Tests for round-robin selection."""

    @pytest.fixture
    def agents(self):
        return [make_agent("agent-a"), make_agent("agent-b"), make_agent("agent-c")]

    async def _record(self, store, agent_id, tenant_id="site-1"):
        await store.append_assignment(
            AssignmentRecord(
                id="",
                conversation_id=f"conv-{agent_id}",
                agent_id=agent_id,
                tenant_id=tenant_id,
                assignment_type=AssignmentType.ROUND_ROBIN,
            )
        )

    @pytest.mark.asyncio
    async def test_first_agent_without_history(self, agents):
        """Test the first eligible agent is picked when nothing was assigned yet."""
        strategy = RoundRobinStrategy(InMemoryPersistenceStore())

        result = await strategy.select_agent(make_context(), agents)

        assert result.agent.id == "agent-a"

    @pytest.mark.asyncio
    async def test_rotates_and_wraps(self, agents):
        """Test the agent after the last assigned one is picked, wrapping around."""
        store = InMemoryPersistenceStore()
        strategy = RoundRobinStrategy(store)
        await self._record(store, "agent-b")

        result = await strategy.select_agent(make_context(), agents)
        assert result.agent.id == "agent-c"

        await self._record(store, "agent-c")
        result = await strategy.select_agent(make_context(), agents)
        assert result.agent.id == "agent-a"

    @pytest.mark.asyncio
    async def test_history_is_per_tenant(self, agents):
        """Test assignments of other tenants do not move the rotation."""
        store = InMemoryPersistenceStore()
        strategy = RoundRobinStrategy(store)
        await self._record(store, "agent-a", tenant_id="site-1")
        await self._record(store, "agent-c", tenant_id="site-2")

        result = await strategy.select_agent(make_context(), agents)

        assert result.agent.id == "agent-b"

    @pytest.mark.asyncio
    async def test_last_agent_no_longer_eligible(self, agents):
        """Test rotation restarts when the last agent is not in the pool."""
        store = InMemoryPersistenceStore()
        await self._record(store, "agent-z")

        result = await RoundRobinStrategy(store).select_agent(make_context(), agents)

        assert result.agent.id == "agent-a"

    @pytest.mark.asyncio
    async def test_history_failure_degrades(self, agents, monkeypatch):
        """Test a failing history lookup degrades to least-busy."""
        store = InMemoryPersistenceStore()

        async def failing(tenant_id):
            raise PersistenceError("database unavailable")

        monkeypatch.setattr(store, "get_last_assignment", failing)
        agents[0].current_chats = 2

        with capture_logs() as logs:
            result = await RoundRobinStrategy(store).select_agent(make_context(), agents)

        assert result.agent.id == "agent-b"
        assert result.degraded is True
        assert degraded_events(logs)[0]["log_level"] == "warning"


class TestSkillBasedStrategy:
    """Tests for skill-based selection."""

    @pytest.mark.asyncio
    async def test_matching_skill(self):
        """Test an agent with a requested skill is preferred."""
        agents = [
            make_agent("agent-a", skills={"sales"}),
            make_agent("agent-b", skills={"billing", "sales"}, current_chats=2),
        ]

        result = await SkillBasedStrategy().select_agent(
            make_context(required_skills={"billing"}), agents
        )

        assert result.agent.id == "agent-b"
        assert result.strategy == "skill_based"
        assert result.degraded is False

    @pytest.mark.asyncio
    async def test_no_skill_match_degrades(self):
        """Test a missing skill falls back to least-busy and is logged."""
        agents = [
            make_agent("agent-a", skills={"sales"}, current_chats=1),
            make_agent("agent-b", current_chats=0),
        ]

        with capture_logs() as logs:
            result = await SkillBasedStrategy().select_agent(
                make_context(required_skills={"billing"}), agents
            )

        assert result.agent.id == "agent-b"
        assert result.degraded is True
        events = degraded_events(logs)
        assert len(events) == 1
        assert events[0]["strategy"] == "skill_based"
        assert events[0]["fallback"] == "least_busy"

    @pytest.mark.asyncio
    async def test_no_skills_requested(self):
        """Test no requested skills means plain least-busy without degradation."""
        agents = [make_agent("agent-a", current_chats=1), make_agent("agent-b")]

        with capture_logs() as logs:
            result = await SkillBasedStrategy().select_agent(make_context(), agents)

        assert result.agent.id == "agent-b"
        assert result.degraded is False
        assert degraded_events(logs) == []


class TestVipStrategy:
    """Tests for VIP selection."""

    def vip_context(self, level):
        return make_context(
            visitor=VisitorProfile(visitor_id="visitor-1", is_vip=True, vip_level=level)
        )

    @pytest.mark.asyncio
    async def test_highest_priority_first(self):
        """Test ordering by priority level, then load, then id."""
        agents = [
            make_agent("agent-a", priority_level=2),
            make_agent("agent-b", priority_level=5, current_chats=2),
            make_agent("agent-c", priority_level=5, current_chats=1),
        ]

        result = await VipStrategy().select_agent(self.vip_context(2), agents)

        assert result.agent.id == "agent-c"

    @pytest.mark.asyncio
    async def test_level_too_high_degrades(self):
        """Test no agent with a high enough tier falls back to least-busy."""
        agents = [
            make_agent("agent-a", priority_level=1, current_chats=1),
            make_agent("agent-b", priority_level=0),
        ]

        with capture_logs() as logs:
            result = await VipStrategy().select_agent(self.vip_context(3), agents)

        assert result.agent.id == "agent-b"
        assert result.degraded is True
        assert len(degraded_events(logs)) == 1


class TestLanguageStrategy:
    """Tests for language selection."""

    @pytest.mark.asyncio
    async def test_speaker_or_unrestricted(self):
        """Test agents speaking the language or without restriction qualify."""
        agents = [
            make_agent("agent-a", languages={"fr"}),
            make_agent("agent-b", languages={"de", "en"}, current_chats=1),
            make_agent("agent-c", current_chats=2),
        ]
        context = make_context(visitor=VisitorProfile(visitor_id="v", language="de"))

        result = await LanguageStrategy().select_agent(context, agents)

        assert result.agent.id == "agent-b"
        assert result.strategy == "language"

    @pytest.mark.asyncio
    async def test_no_speaker_degrades(self):
        """Test no speaker falls back to least-busy."""
        agents = [make_agent("agent-a", languages={"fr"})]
        context = make_context(visitor=VisitorProfile(visitor_id="v", language="de"))

        result = await LanguageStrategy().select_agent(context, agents)

        assert result.agent.id == "agent-a"
        assert result.degraded is True


class TestDepartmentStrategy:
    """Tests for department selection."""

    @pytest.mark.asyncio
    async def test_member_or_generalist(self):
        """Test department members and agents without a department qualify."""
        agents = [
            make_agent("agent-a", department_id="sales"),
            make_agent("agent-b", department_id="support", current_chats=1),
            make_agent("agent-c", current_chats=2),
        ]

        result = await DepartmentStrategy().select_agent(
            make_context(department_id="support"), agents
        )

        assert result.agent.id == "agent-b"

    @pytest.mark.asyncio
    async def test_no_member_degrades(self):
        """Test a department without eligible members falls back to least-busy."""
        agents = [make_agent("agent-a", department_id="sales")]

        with capture_logs() as logs:
            result = await DepartmentStrategy().select_agent(
                make_context(department_id="support"), agents
            )

        assert result.agent.id == "agent-a"
        assert result.degraded is True
        assert degraded_events(logs)[0]["strategy"] == "department"
