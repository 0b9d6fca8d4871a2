"""
Agent Directory

Read model of agents plus the operator-facing state operations (presence,
availability state, breaks). Chat slot accounting is exposed here as
``acquire_slot``/``release_slot`` but always delegated to the store's
conditional primitives so concurrent assignments cannot overbook an agent.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog

from livechat_core.config import RoutingSettings, get_settings

from .base import (
    EXPIRING_STATES,
    Agent,
    AgentNotFoundError,
    AgentState,
)
from .notifier import (
    LoggingNotifier,
    Notifier,
    RoutingEvent,
    publish_safely,
    tenant_agents_channel,
)
from .store import PersistenceStore

logger = structlog.get_logger(__name__)


class AgentDirectory:
    """
    Manages agents and their availability.

    Features:
    - Agent registration and lookup scoped by tenant
    - Online presence and availability state
    - Timed breaks with automatic expiry
    - Chat slot accounting through the store
    """

    def __init__(
        self,
        store: PersistenceStore,
        notifier: Optional[Notifier] = None,
        settings: Optional[RoutingSettings] = None,
    ):
        self._store = store
        self._notifier = notifier or LoggingNotifier()
        self._settings = settings or get_settings()

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    async def register_agent(self, agent: Agent) -> Agent:
        """
        Create an agent or update its profile.

        Re-registering never resets the agent's current chats, presence or
        state; use :meth:`set_presence` and :meth:`set_state` for those.
        """
        saved = await self._store.save_agent(agent)
        logger.info(
            "agent_registered",
            agent_id=saved.id,
            tenant_id=saved.tenant_id,
            max_concurrent_chats=saved.max_concurrent_chats,
        )
        return saved

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        return await self._store.get_agent(agent_id)

    async def require_agent(self, agent_id: str) -> Agent:
        agent = await self._store.get_agent(agent_id)
        if not agent:
            raise AgentNotFoundError(f"Agent {agent_id} not found")
        return agent

    async def list_agents(self, tenant_id: Optional[str]) -> List[Agent]:
        return await self._store.list_agents(tenant_id)

    async def list_eligible_agents(self, tenant_id: Optional[str]) -> List[Agent]:
        """Online, available agents below capacity, ordered by id."""
        agents = await self._store.list_agents(tenant_id)
        return sorted((a for a in agents if a.is_eligible), key=lambda a: a.id)

    async def count_available_agents(self, tenant_id: Optional[str]) -> int:
        return len(await self.list_eligible_agents(tenant_id))

    # -------------------------------------------------------------------------
    # Presence and state
    # -------------------------------------------------------------------------

    async def set_presence(self, agent_id: str, is_online: bool) -> Agent:
        """Record the agent connecting or disconnecting."""
        agent = await self._store.set_agent_presence(agent_id, is_online)
        if not agent:
            raise AgentNotFoundError(f"Agent {agent_id} not found")

        logger.info("agent_presence_changed", agent_id=agent_id, is_online=is_online)
        return agent

    async def set_state(
        self,
        agent_id: str,
        state: AgentState,
        message: Optional[str] = None,
        duration_minutes: Optional[int] = None,
    ) -> Agent:
        """
        Set an agent's availability state.

        Args:
            agent_id: Agent to update
            state: New state
            message: Optional status message shown to colleagues
            duration_minutes: Expiry for ``break``/``away``; ignored otherwise
        """
        state = AgentState(state)
        previous = await self.require_agent(agent_id)

        until = None
        if duration_minutes and state in EXPIRING_STATES:
            until = datetime.utcnow() + timedelta(minutes=duration_minutes)

        agent = await self._store.update_agent_state(agent_id, state, message, until)
        if not agent:
            raise AgentNotFoundError(f"Agent {agent_id} not found")

        logger.info(
            "agent_state_changed",
            agent_id=agent_id,
            old_state=previous.state.value,
            new_state=state.value,
            until=until.isoformat() if until else None,
        )
        await self._broadcast_state(agent)
        return agent

    async def start_break(
        self,
        agent_id: str,
        duration_minutes: Optional[int] = None,
        message: Optional[str] = None,
    ) -> Agent:
        duration = duration_minutes or self._settings.default_break_minutes
        return await self.set_state(
            agent_id,
            AgentState.BREAK,
            message=message or f"On break for {duration} minutes",
            duration_minutes=duration,
        )

    async def end_break(self, agent_id: str) -> Agent:
        return await self.set_state(agent_id, AgentState.AVAILABLE)

    async def check_expired_states(self, now: Optional[datetime] = None) -> int:
        """
        Return expired ``break``/``away`` agents to ``available``.

        Each reset is conditional on the agent still being in an expiring
        state with ``state_until`` in the past, so an operator change made
        in the meantime wins.

        Returns:
            Number of agents reset
        """
        now = now or datetime.utcnow()
        reset = 0

        try:
            agents = await self._store.list_all_agents()
        except Exception as e:
            logger.error("agent_state_sweep_failed", error=str(e))
            return 0

        for agent in agents:
            if agent.state not in EXPIRING_STATES:
                continue
            if not agent.state_until or agent.state_until >= now:
                continue

            try:
                updated = await self._store.update_agent_state(
                    agent.id,
                    AgentState.AVAILABLE,
                    expected_states=EXPIRING_STATES,
                    expires_before=now,
                )
            except Exception as e:
                logger.error("agent_state_reset_failed", agent_id=agent.id, error=str(e))
                continue
            if not updated:
                continue

            reset += 1
            logger.info(
                "agent_state_expired",
                agent_id=agent.id,
                old_state=agent.state.value,
            )
            await self._broadcast_state(updated)

        if reset:
            logger.info("agent_states_reset", count=reset)
        return reset

    async def get_all_states(self, tenant_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """State summary of every agent serving a tenant (or every agent)."""
        if tenant_id is None:
            agents = await self._store.list_all_agents()
        else:
            agents = await self._store.list_agents(tenant_id)

        return [
            {
                "agent_id": a.id,
                "name": a.name,
                "is_online": a.is_online,
                "state": a.state.value,
                "state_message": a.state_message,
                "state_until": a.state_until.isoformat() if a.state_until else None,
                "state_changed_at": a.state_changed_at.isoformat(),
                "current_chats": a.current_chats,
                "max_concurrent_chats": a.max_concurrent_chats,
                "rules": a.state_rule.to_dict(),
            }
            for a in agents
        ]

    # -------------------------------------------------------------------------
    # Capacity
    # -------------------------------------------------------------------------

    async def acquire_slot(self, agent_id: str, require_eligible: bool = True) -> Optional[Agent]:
        """Take a chat slot; None if the agent is full or not eligible."""
        return await self._store.increment_agent_load(agent_id, require_eligible=require_eligible)

    async def release_slot(self, agent_id: str) -> Optional[Agent]:
        return await self._store.decrement_agent_load(agent_id)

    async def _broadcast_state(self, agent: Agent) -> None:
        await publish_safely(
            self._notifier,
            tenant_agents_channel(agent.tenant_id),
            RoutingEvent.AGENT_STATE_CHANGED,
            {
                "agent_id": agent.id,
                "state": agent.state.value,
                "message": agent.state_message,
                "until": agent.state_until.isoformat() if agent.state_until else None,
                "rules": agent.state_rule.to_dict(),
            },
            timeout=self._settings.notify_timeout_seconds,
        )


__all__ = ["AgentDirectory"]
