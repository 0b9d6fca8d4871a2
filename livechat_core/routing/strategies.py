"""
Routing Strategies

Selection strategies over the eligible agents of a tenant. A strategy never
mutates anything: it receives the agents that are online, available and below
capacity (ordered by id) and returns at most one of them. Specialized
strategies that find no match fall back to least-busy exactly once and flag
the result as degraded.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence

import structlog

from .base import (
    Agent,
    PersistenceError,
    RoutingContext,
)
from .store import PersistenceStore

logger = structlog.get_logger(__name__)


@dataclass
class StrategyResult:
    """Agent picked by a strategy."""

    agent: Agent
    strategy: str
    reason: str = ""
    degraded: bool = False


def _by_id(agents: Sequence[Agent]) -> List[Agent]:
    return sorted(agents, key=lambda a: a.id)


class RoutingStrategy(ABC):
    """Abstract base class for routing strategies."""

    name = "base"

    @abstractmethod
    async def select_agent(
        self,
        context: RoutingContext,
        eligible: Sequence[Agent],
    ) -> Optional[StrategyResult]:
        """
        Select an agent for the conversation.

        Returns:
            StrategyResult or None if no agent is eligible
        """
        pass

    async def _degrade(
        self,
        context: RoutingContext,
        eligible: Sequence[Agent],
        reason: str,
    ) -> Optional[StrategyResult]:
        """Fall back to least-busy over all eligible agents."""
        if not eligible:
            return None

        logger.warning(
            "routing_degraded",
            strategy=self.name,
            fallback=LeastBusyStrategy.name,
            reason=reason,
            conversation_id=context.conversation_id,
            tenant_id=context.tenant_id,
        )
        result = await LeastBusyStrategy().select_agent(context, eligible)
        if result:
            result.degraded = True
            result.reason = f"{reason}; {result.reason}"
        return result


class LeastBusyStrategy(RoutingStrategy):
    """Route to agent with the fewest current chats."""

    name = "least_busy"

    async def select_agent(
        self,
        context: RoutingContext,
        eligible: Sequence[Agent],
    ) -> Optional[StrategyResult]:
        if not eligible:
            return None

        agent = min(eligible, key=lambda a: (a.current_chats, a.id))
        return StrategyResult(
            agent=agent,
            strategy=self.name,
            reason=f"Least busy agent ({agent.current_chats} chats)",
        )


class RoundRobinStrategy(RoutingStrategy):
    """
    Rotate through eligible agents.

    The rotation point is the most recent assignment recorded for the tenant,
    so it survives restarts and is shared by every engine using the store.
    """

    name = "round_robin"

    def __init__(self, store: PersistenceStore):
        self._store = store

    async def select_agent(
        self,
        context: RoutingContext,
        eligible: Sequence[Agent],
    ) -> Optional[StrategyResult]:
        if not eligible:
            return None

        agents = _by_id(eligible)
        try:
            last = await self._store.get_last_assignment(context.tenant_id)
        except PersistenceError as e:
            return await self._degrade(context, agents, f"assignment history unavailable: {e}")

        index = 0
        if last:
            ids = [a.id for a in agents]
            if last.agent_id in ids:
                index = (ids.index(last.agent_id) + 1) % len(agents)

        agent = agents[index]
        return StrategyResult(
            agent=agent,
            strategy=self.name,
            reason=f"Round robin selection (last: {last.agent_id if last else None})",
        )


class SkillBasedStrategy(RoutingStrategy):
    """Route to an agent sharing at least one requested skill."""

    name = "skill_based"

    async def select_agent(
        self,
        context: RoutingContext,
        eligible: Sequence[Agent],
    ) -> Optional[StrategyResult]:
        if not eligible:
            return None

        required = set(context.required_skills)
        if not required:
            return await LeastBusyStrategy().select_agent(context, eligible)

        matching = [a for a in eligible if a.skills & required]
        if not matching:
            return await self._degrade(
                context,
                eligible,
                f"no agent with skills {sorted(required)}",
            )

        result = await LeastBusyStrategy().select_agent(context, matching)
        result.strategy = self.name
        result.reason = f"Skill match {sorted(result.agent.skills & required)}"
        return result


class VipStrategy(RoutingStrategy):
    """Route VIP visitors to agents whose priority tier covers their level."""

    name = "vip"

    async def select_agent(
        self,
        context: RoutingContext,
        eligible: Sequence[Agent],
    ) -> Optional[StrategyResult]:
        if not eligible:
            return None

        level = context.visitor.vip_level
        candidates = sorted(
            (a for a in eligible if a.priority_level >= level),
            key=lambda a: (-a.priority_level, a.current_chats, a.id),
        )
        if not candidates:
            return await self._degrade(
                context,
                eligible,
                f"no agent with priority level >= {level}",
            )

        agent = candidates[0]
        return StrategyResult(
            agent=agent,
            strategy=self.name,
            reason=f"VIP level {level} to priority level {agent.priority_level}",
        )


class LanguageStrategy(RoutingStrategy):
    """Route to an agent speaking the visitor's language."""

    name = "language"

    async def select_agent(
        self,
        context: RoutingContext,
        eligible: Sequence[Agent],
    ) -> Optional[StrategyResult]:
        if not eligible:
            return None

        language = context.visitor.language
        if not language:
            return await LeastBusyStrategy().select_agent(context, eligible)

        speakers = [a for a in eligible if a.speaks(language)]
        if not speakers:
            return await self._degrade(context, eligible, f"no agent speaking {language}")

        result = await LeastBusyStrategy().select_agent(context, speakers)
        result.strategy = self.name
        result.reason = f"Language match ({language})"
        return result


class DepartmentStrategy(RoutingStrategy):
    """Route to an agent of the requested department (or a generalist)."""

    name = "department"

    async def select_agent(
        self,
        context: RoutingContext,
        eligible: Sequence[Agent],
    ) -> Optional[StrategyResult]:
        if not eligible:
            return None

        department_id = context.department_id
        if not department_id:
            return await LeastBusyStrategy().select_agent(context, eligible)

        members = [
            a for a in eligible
            if a.department_id == department_id or a.department_id is None
        ]
        if not members:
            return await self._degrade(
                context,
                eligible,
                f"no agent in department {department_id}",
            )

        result = await LeastBusyStrategy().select_agent(context, members)
        result.strategy = self.name
        result.reason = f"Department match ({department_id})"
        return result


__all__ = [
    "StrategyResult",
    "RoutingStrategy",
    "LeastBusyStrategy",
    "RoundRobinStrategy",
    "SkillBasedStrategy",
    "VipStrategy",
    "LanguageStrategy",
    "DepartmentStrategy",
]
