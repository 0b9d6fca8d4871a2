"""Unit tests for the routing engine and service facade."""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from structlog.testing import capture_logs

from livechat_core.config import RoutingSettings
from livechat_core.routing import (
    Agent,
    AgentState,
    AssignmentType,
    CapacityExceededError,
    ConversationNotFoundError,
    ConversationStatus,
    InvalidRoutingConfigError,
    Notifier,
    QueueEntryStatus,
    RoutingConfigUpdate,
    RoutingEvent,
    RoutingService,
    RoutingStrategyType,
    conversation_channel,
    tenant_agents_channel,
)

TENANT = "site-1"


class BrokenNotifier(Notifier):
    """Notifier whose every delivery fails."""

    async def publish(self, channel, event, payload):
        raise ConnectionError("pubsub unavailable")


class TestOpenConversation:
    """Tests for conversation intake."""

    @pytest.mark.asyncio
    async def test_announced_to_agents(self, service, notifier, visitor):
        """Test new conversations are announced on the tenant channel."""
        conversation, outcome = await service.open_conversation(
            TENANT, visitor(), conversation_id="conv-1", auto_route=False
        )

        assert outcome is None
        assert conversation.status == ConversationStatus.OPEN
        events = notifier.events(RoutingEvent.CONVERSATION_NEW, tenant_agents_channel(TENANT))
        assert events[0]["conversation"]["id"] == "conv-1"

    @pytest.mark.asyncio
    async def test_least_busy_then_queue(self, service, notifier, add_agent, visitor):
        """Test the free agent takes the first chat and the second waits."""
        await add_agent("agent-a", max_concurrent_chats=1, current_chats=0)
        await add_agent("agent-b", max_concurrent_chats=1, current_chats=1)

        _, first = await service.open_conversation(TENANT, visitor("v-1"), conversation_id="conv-1")
        _, second = await service.open_conversation(TENANT, visitor("v-2"), conversation_id="conv-2")

        assert first.is_assigned
        assert first.agent.id == "agent-a"
        assert first.assignment_type == AssignmentType.LEAST_BUSY
        assert second.is_queued
        assert second.reason == "no-eligible-agent"
        assert second.queue_entry.queue_position == 1
        assert second.queue_entry.estimated_wait_minutes >= 1

        added = notifier.events(RoutingEvent.QUEUE_ADDED, conversation_channel("conv-2"))
        assert added[0]["position"] == 1

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_block(self, store, settings, visitor):
        """Test a failing notifier never prevents an assignment."""
        service = RoutingService(store=store, notifier=BrokenNotifier(), settings=settings)
        await service.agents.register_agent(
            Agent(id="agent-a", tenant_id=TENANT, is_online=True, state=AgentState.AVAILABLE)
        )

        with capture_logs() as logs:
            _, outcome = await service.open_conversation(TENANT, visitor(), conversation_id="conv-1")

        assert outcome.is_assigned
        assert any(log["event"] == "notification_failed" for log in logs)


class TestPreRoutingRules:
    """Tests for VIP, department and language routing."""

    @pytest.mark.asyncio
    async def test_vip_goes_to_senior_agent(self, service, add_agent, visitor):
        await add_agent("agent-a", max_concurrent_chats=3)
        await add_agent("agent-b", max_concurrent_chats=3, current_chats=2, priority_level=3)

        _, outcome = await service.open_conversation(
            TENANT, visitor(is_vip=True, vip_level=2), conversation_id="conv-1"
        )

        assert outcome.agent.id == "agent-b"
        assert outcome.assignment_type == AssignmentType.VIP

    @pytest.mark.asyncio
    async def test_vip_flag_without_level_is_regular(self, service, add_agent, visitor):
        """Test a VIP flag with level zero is routed like anyone else."""
        await add_agent("agent-a")
        await add_agent("agent-b", priority_level=3)

        _, outcome = await service.open_conversation(
            TENANT, visitor(is_vip=True, vip_level=0), conversation_id="conv-1"
        )

        assert outcome.assignment_type == AssignmentType.LEAST_BUSY

    @pytest.mark.asyncio
    async def test_department(self, service, add_agent, visitor):
        await add_agent("agent-a", department_id="support")
        await add_agent("agent-b", department_id="sales")

        _, outcome = await service.open_conversation(
            TENANT, visitor(), conversation_id="conv-1", department_id="sales"
        )

        assert outcome.agent.id == "agent-b"
        assert outcome.assignment_type == AssignmentType.DEPARTMENT

    @pytest.mark.asyncio
    async def test_language(self, service, add_agent, visitor):
        await add_agent("agent-a", languages={"en"})
        await add_agent("agent-b", languages={"de"})

        _, outcome = await service.open_conversation(
            TENANT, visitor(language="de"), conversation_id="conv-1"
        )

        assert outcome.agent.id == "agent-b"
        assert outcome.assignment_type == AssignmentType.LANGUAGE

    @pytest.mark.asyncio
    async def test_default_language_skips_rule(self, service, add_agent, visitor):
        await add_agent("agent-a", languages={"en"})

        _, outcome = await service.open_conversation(
            TENANT, visitor(language="en"), conversation_id="conv-1"
        )

        assert outcome.assignment_type == AssignmentType.LEAST_BUSY

    @pytest.mark.asyncio
    async def test_precedence_order(self, service, add_agent, visitor):
        """Test the configured order decides between matching rules."""
        await add_agent("agent-a", priority_level=3, languages={"en"}, max_concurrent_chats=3)
        await add_agent("agent-b", languages={"de"}, max_concurrent_chats=3)
        vip_german = visitor(is_vip=True, vip_level=2, language="de")

        _, outcome = await service.open_conversation(TENANT, vip_german, conversation_id="conv-1")
        assert outcome.agent.id == "agent-a"
        assert outcome.assignment_type == AssignmentType.VIP

        await service.update_routing_config(TENANT, {"precedence": ["language", "vip"]})
        _, outcome = await service.open_conversation(TENANT, vip_german, conversation_id="conv-2")
        assert outcome.agent.id == "agent-b"
        assert outcome.assignment_type == AssignmentType.LANGUAGE

    @pytest.mark.asyncio
    async def test_rules_apply_under_manual_strategy(self, service, add_agent, visitor):
        """Test a matching rule still assigns when the tenant routes manually."""
        await add_agent("agent-a", priority_level=2)
        await service.update_routing_config(TENANT, {"strategy": "manual"})

        _, vip = await service.open_conversation(
            TENANT, visitor("v-1", is_vip=True, vip_level=1), conversation_id="conv-1"
        )
        _, regular = await service.open_conversation(TENANT, visitor("v-2"), conversation_id="conv-2")

        assert vip.assignment_type == AssignmentType.VIP
        assert not regular.is_assigned
        assert regular.reason == "manual"
        assert await service.get_queue_position("conv-2") is None


class TestStrategies:
    """Tests for tenant strategy selection."""

    @pytest.mark.asyncio
    async def test_round_robin(self, service, add_agent, visitor):
        for agent_id in ("agent-a", "agent-b", "agent-c"):
            await add_agent(agent_id, max_concurrent_chats=3)
        await service.update_routing_config(TENANT, {"strategy": "round_robin"})

        picked = []
        for i in range(4):
            _, outcome = await service.open_conversation(
                TENANT, visitor(f"v-{i}"), conversation_id=f"conv-{i}"
            )
            assert outcome.assignment_type == AssignmentType.ROUND_ROBIN
            picked.append(outcome.agent.id)

        assert picked == ["agent-a", "agent-b", "agent-c", "agent-a"]

    @pytest.mark.asyncio
    async def test_skill_based(self, service, add_agent, visitor):
        await add_agent("agent-a", skills={"sales"})
        await add_agent("agent-b", skills={"billing"})
        await service.update_routing_config(TENANT, {"strategy": "skill_based"})

        _, outcome = await service.open_conversation(
            TENANT, visitor(), conversation_id="conv-1", required_skills=["billing"]
        )

        assert outcome.agent.id == "agent-b"
        assert outcome.assignment_type == AssignmentType.SKILL_BASED


class TestAssignRejections:
    """Tests for conversations that cannot be routed."""

    @pytest.mark.asyncio
    async def test_already_assigned(self, service, store, add_agent, visitor):
        await add_agent("agent-a", max_concurrent_chats=2)
        await service.open_conversation(TENANT, visitor(), conversation_id="conv-1")

        outcome = await service.assign("conv-1")

        assert outcome.reason == "already-assigned"
        assert (await store.get_agent("agent-a")).current_chats == 1

    @pytest.mark.asyncio
    async def test_closed(self, service, visitor):
        await service.open_conversation(TENANT, visitor(), conversation_id="conv-1", auto_route=False)
        await service.cancel_conversation("conv-1")

        outcome = await service.assign("conv-1")

        assert outcome.reason == "conversation-closed"

    @pytest.mark.asyncio
    async def test_auto_assign_disabled(self, service, add_agent, visitor):
        await add_agent("agent-a")
        await service.update_routing_config(TENANT, {"auto_assign": False})

        _, outcome = await service.open_conversation(TENANT, visitor(), conversation_id="conv-1")

        assert outcome.reason == "manual-routing"
        assert await service.get_queue_position("conv-1") is None

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, service):
        with pytest.raises(ConversationNotFoundError):
            await service.assign("missing")

    @pytest.mark.asyncio
    async def test_capacity_race_retries_then_queues(self, service, visitor):
        """Test repeated lost races end with the conversation queued."""
        await service.open_conversation(TENANT, visitor(), conversation_id="conv-1", auto_route=False)
        mock_assign = AsyncMock(side_effect=CapacityExceededError("agent-a"))

        with patch.object(service.routing, "assign", mock_assign):
            with capture_logs() as logs:
                outcome = await service.assign("conv-1")

        assert outcome.is_queued
        assert mock_assign.await_count == service.settings.assign_attempts == 2
        races = [log for log in logs if log["event"] == "assign_capacity_race"]
        assert [log["attempt"] for log in races] == [1, 2]


class TestCancel:
    """Tests for visitors leaving."""

    @pytest.mark.asyncio
    async def test_cancel_queued(self, service, store, visitor):
        _, outcome = await service.open_conversation(TENANT, visitor(), conversation_id="conv-1")

        entry = await service.cancel_conversation("conv-1")

        assert entry.id == outcome.queue_entry.id
        assert entry.status == QueueEntryStatus.CANCELLED
        assert (await store.get_conversation("conv-1")).status == ConversationStatus.CLOSED

    @pytest.mark.asyncio
    async def test_cancel_assigned(self, service, store, add_agent, visitor):
        await add_agent("agent-a")
        await service.open_conversation(TENANT, visitor(), conversation_id="conv-1")

        assert await service.cancel_conversation("conv-1") is None
        assert (await store.get_agent("agent-a")).current_chats == 0
        assert (await store.get_conversation("conv-1")).status == ConversationStatus.CLOSED

    @pytest.mark.asyncio
    async def test_remove_from_queue(self, service, visitor):
        _, outcome = await service.open_conversation(TENANT, visitor(), conversation_id="conv-1")

        removed = await service.remove_from_queue(outcome.queue_entry.id)

        assert removed.status == QueueEntryStatus.CANCELLED
        assert await service.remove_from_queue(outcome.queue_entry.id) is None


class TestRoutingConfig:
    """Tests for per-tenant routing configuration."""

    @pytest.mark.asyncio
    async def test_defaults_from_settings(self, service):
        config = await service.get_routing_config(TENANT)

        assert config.strategy == RoutingStrategyType.LEAST_BUSY
        assert config.auto_assign is True
        assert config.max_wait_minutes == 30
        assert config.default_language == "en"
        assert config.precedence == ["vip", "department", "language"]

    @pytest.mark.asyncio
    async def test_partial_update(self, service):
        await service.update_routing_config(TENANT, {"max_wait_minutes": 10})
        config = await service.update_routing_config(
            TENANT, RoutingConfigUpdate(strategy="round_robin", default_language="DE")
        )

        assert config.strategy == RoutingStrategyType.ROUND_ROBIN
        assert config.max_wait_minutes == 10
        assert config.default_language == "de"
        assert (await service.get_routing_config("site-2")).max_wait_minutes == 30

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "update",
        [
            {"precedence": ["vip", "geo"]},
            {"precedence": ["vip", "vip"]},
            {"max_wait_minutes": 0},
            {"strategy": "random"},
            {"colour": "blue"},
        ],
    )
    async def test_invalid_update(self, service, update):
        with pytest.raises(InvalidRoutingConfigError):
            await service.update_routing_config(TENANT, update)

        assert (await service.get_routing_config(TENANT)).max_wait_minutes == 30

    @pytest.mark.asyncio
    async def test_queue_timeout_follows_config(self, service, visitor):
        await service.update_routing_config(TENANT, {"max_wait_minutes": 5})

        _, outcome = await service.open_conversation(TENANT, visitor(), conversation_id="conv-1")

        entry = outcome.queue_entry
        assert entry.timeout_at - entry.entered_at == timedelta(minutes=5)


class TestProcessQueue:
    """Tests for draining the queue."""

    @pytest.mark.asyncio
    async def test_assigns_waiting_in_order(self, service, store, add_agent, visitor):
        _, first = await service.open_conversation(TENANT, visitor("v-1"), conversation_id="conv-1")
        _, second = await service.open_conversation(TENANT, visitor("v-2"), conversation_id="conv-2")
        _, third = await service.open_conversation(TENANT, visitor("v-3"), conversation_id="conv-3")
        await add_agent("agent-a", max_concurrent_chats=2)

        outcomes = await service.process_queue(TENANT)

        assert [o.conversation_id for o in outcomes] == ["conv-1", "conv-2"]
        assert (await store.get_queue_entry(first.queue_entry.id)).status == QueueEntryStatus.ASSIGNED
        assert (await store.get_queue_entry(second.queue_entry.id)).status == QueueEntryStatus.ASSIGNED
        remaining = await service.get_queue_position("conv-3")
        assert remaining.id == third.queue_entry.id
        assert remaining.queue_position == 1

    @pytest.mark.asyncio
    async def test_nothing_when_auto_assign_off(self, service, add_agent, visitor):
        await service.open_conversation(TENANT, visitor(), conversation_id="conv-1")
        await service.update_routing_config(TENANT, {"auto_assign": False})
        await add_agent("agent-a")

        assert await service.process_queue(TENANT) == []


class TestSweeps:
    """Tests for the background sweeps."""

    @pytest.mark.asyncio
    async def test_queue_timeout(self, service, store, notifier, visitor):
        await service.update_routing_config(TENANT, {"max_wait_minutes": 1})
        _, outcome = await service.open_conversation(TENANT, visitor(), conversation_id="conv-1")

        swept = await service.sweep_timeouts(datetime.utcnow() + timedelta(minutes=2))

        assert swept == 1
        assert (await store.get_queue_entry(outcome.queue_entry.id)).status == QueueEntryStatus.TIMEOUT
        assert (await store.get_conversation("conv-1")).status == ConversationStatus.CLOSED
        assert notifier.events(RoutingEvent.QUEUE_TIMEOUT, conversation_channel("conv-1"))

    @pytest.mark.asyncio
    async def test_sweep_during_commit_leaves_claimed_entry(
        self, service, store, notifier, add_agent, visitor, monkeypatch
    ):
        """Test a sweep running mid-assignment skips the claimed entry."""
        await service.update_routing_config(TENANT, {"max_wait_minutes": 1})
        _, queued = await service.open_conversation(TENANT, visitor(), conversation_id="conv-1")
        await add_agent("agent-a")
        commit = service.finalizer.commit
        swept = []

        async def commit_after_sweep(*args, **kwargs):
            swept.append(await service.sweep_timeouts(datetime.utcnow() + timedelta(hours=2)))
            return await commit(*args, **kwargs)

        monkeypatch.setattr(service.finalizer, "commit", commit_after_sweep)

        outcome = await service.assign("conv-1")

        assert outcome.is_assigned
        assert swept == [0]
        entry = await store.get_queue_entry(queued.queue_entry.id)
        assert entry.status == QueueEntryStatus.ASSIGNED
        assert entry.assigned_agent_id == "agent-a"
        assert (await store.get_conversation("conv-1")).is_open
        assert notifier.events(RoutingEvent.QUEUE_TIMEOUT, conversation_channel("conv-1")) == []

    @pytest.mark.asyncio
    async def test_failed_commit_returns_entry_to_queue(
        self, service, store, add_agent, visitor, monkeypatch
    ):
        """Test losing every capacity race leaves the conversation waiting."""
        _, queued = await service.open_conversation(TENANT, visitor(), conversation_id="conv-1")
        await add_agent("agent-a")
        monkeypatch.setattr(
            service.finalizer, "commit", AsyncMock(side_effect=CapacityExceededError("agent-a"))
        )

        outcome = await service.assign("conv-1")

        assert outcome.is_queued
        assert outcome.queue_entry.id == queued.queue_entry.id
        entry = await store.get_queue_entry(queued.queue_entry.id)
        assert entry.status == QueueEntryStatus.WAITING
        assert entry.assigned_agent_id is None

    @pytest.mark.asyncio
    async def test_background_tasks(self, store, notifier, add_agent):
        """Test the running service resets expired breaks on its own."""
        settings = RoutingSettings(_env_file=None, sweep_interval_seconds=0.01)
        service = RoutingService(store=store, notifier=notifier, settings=settings)
        await add_agent("agent-a")
        await store.update_agent_state(
            "agent-a",
            AgentState.BREAK,
            state_until=datetime.utcnow() - timedelta(seconds=1),
        )

        await service.start()
        try:
            await asyncio.sleep(0.1)
        finally:
            await service.stop()

        assert (await store.get_agent("agent-a")).state == AgentState.AVAILABLE
        status = service.tasks.get_status()
        assert status["running"] is False
        assert {t["name"] for t in status["tasks"]} == {"queue_timeouts", "agent_state_expiry"}
        assert service.tasks.get("agent_state_expiry").metrics.runs >= 1
