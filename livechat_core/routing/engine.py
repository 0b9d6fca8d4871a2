"""
Routing Engine

Decides which agent takes a new conversation. Pre-routing rules (VIP,
department, language) are evaluated in the tenant's configured order; the
first rule that applies and finds an agent wins, otherwise the tenant's
strategy picks. When nobody is eligible the conversation is queued.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from livechat_core.config import RoutingSettings, get_settings

from .assignment import AssignmentFinalizer
from .base import (
    Agent,
    AssignmentOutcome,
    AssignmentType,
    CapacityExceededError,
    ConversationAlreadyAssignedError,
    PersistenceError,
    QueueEntryStatus,
    RoutingConfig,
    RoutingContext,
    RoutingStrategyType,
)
from .directory import AgentDirectory
from .queue import ChatQueue
from .store import PersistenceStore
from .strategies import (
    DepartmentStrategy,
    LanguageStrategy,
    LeastBusyStrategy,
    RoundRobinStrategy,
    RoutingStrategy,
    SkillBasedStrategy,
    StrategyResult,
    VipStrategy,
)

logger = structlog.get_logger(__name__)


RulePredicate = Callable[[RoutingContext, RoutingConfig], bool]


@dataclass
class RoutingRule:
    """A pre-routing step: when ``predicate`` holds, try ``strategy``."""

    name: str
    predicate: RulePredicate
    strategy: RoutingStrategy
    assignment_type: AssignmentType


def _is_vip(context: RoutingContext, config: RoutingConfig) -> bool:
    return context.visitor.is_vip and context.visitor.vip_level > 0


def _wants_department(context: RoutingContext, config: RoutingConfig) -> bool:
    return bool(context.department_id)


def _needs_language(context: RoutingContext, config: RoutingConfig) -> bool:
    language = context.visitor.language
    return bool(language) and language != config.default_language


class RoutingEngine:
    """
    Core routing engine for matching conversations to agents.

    Features:
    - Declarative pre-routing rules with per-tenant order
    - Round robin, least busy and skill based strategies
    - Queue fallback when no agent is eligible
    """

    def __init__(
        self,
        store: PersistenceStore,
        directory: AgentDirectory,
        queue: ChatQueue,
        finalizer: AssignmentFinalizer,
        settings: Optional[RoutingSettings] = None,
    ):
        self._store = store
        self._directory = directory
        self._queue = queue
        self._finalizer = finalizer
        self._settings = settings or get_settings()

        self._strategies: Dict[RoutingStrategyType, RoutingStrategy] = {
            RoutingStrategyType.ROUND_ROBIN: RoundRobinStrategy(store),
            RoutingStrategyType.LEAST_BUSY: LeastBusyStrategy(),
            RoutingStrategyType.SKILL_BASED: SkillBasedStrategy(),
        }
        self._rules: Dict[str, RoutingRule] = {
            "vip": RoutingRule("vip", _is_vip, VipStrategy(), AssignmentType.VIP),
            "department": RoutingRule(
                "department", _wants_department, DepartmentStrategy(), AssignmentType.DEPARTMENT,
            ),
            "language": RoutingRule(
                "language", _needs_language, LanguageStrategy(), AssignmentType.LANGUAGE,
            ),
        }

    @property
    def rule_names(self) -> List[str]:
        return list(self._rules)

    def default_config(self, tenant_id: Optional[str]) -> RoutingConfig:
        return RoutingConfig(
            tenant_id=tenant_id,
            strategy=RoutingStrategyType(self._settings.default_strategy),
            auto_assign=self._settings.default_auto_assign,
            max_wait_minutes=self._settings.default_max_wait_minutes,
            default_language=self._settings.default_language,
        )

    async def get_config(self, tenant_id: Optional[str]) -> RoutingConfig:
        """Stored config for the tenant, or the defaults."""
        config = await self._store.get_routing_config(tenant_id)
        return config or self.default_config(tenant_id)

    def rules_for(self, config: RoutingConfig) -> List[RoutingRule]:
        return [self._rules[name] for name in config.precedence if name in self._rules]

    async def select(
        self,
        context: RoutingContext,
        config: RoutingConfig,
        eligible: Sequence[Agent],
    ) -> Optional[Tuple[StrategyResult, AssignmentType]]:
        """
        Pick an agent without changing anything.

        Returns:
            (result, assignment type), or None when nobody is eligible or
            the tenant routes manually
        """
        for rule in self.rules_for(config):
            if not rule.predicate(context, config):
                continue
            result = await rule.strategy.select_agent(context, eligible)
            if result:
                return result, rule.assignment_type

        if config.strategy == RoutingStrategyType.MANUAL:
            return None

        strategy = self._strategies.get(config.strategy, self._strategies[RoutingStrategyType.LEAST_BUSY])
        result = await strategy.select_agent(context, eligible)
        if result:
            return result, AssignmentType(config.strategy.value)
        return None

    async def assign(
        self,
        context: RoutingContext,
        config: Optional[RoutingConfig] = None,
    ) -> AssignmentOutcome:
        """
        Route a conversation.

        A conversation that is already waiting has its entry claimed before
        the commit; the claim is released when the commit fails.

        Raises:
            CapacityExceededError: The selected agent filled up before the
                commit; callers may retry
            PersistenceError: The store failed
        """
        config = config or await self.get_config(context.tenant_id)

        if not config.auto_assign:
            logger.info(
                "auto_assign_disabled",
                conversation_id=context.conversation_id,
                tenant_id=context.tenant_id,
            )
            return AssignmentOutcome.rejected(context.conversation_id, "manual-routing")

        eligible = await self._directory.list_eligible_agents(context.tenant_id)
        selection = await self.select(context, config, eligible)

        if selection is None:
            if config.strategy == RoutingStrategyType.MANUAL:
                logger.info(
                    "manual_routing",
                    conversation_id=context.conversation_id,
                    tenant_id=context.tenant_id,
                )
                return AssignmentOutcome.rejected(context.conversation_id, "manual")
            return await self.enqueue(context, config)

        result, assignment_type = selection

        # A waiting conversation is claimed first so the timeout sweep and
        # queue pulls see it as taken
        claimed = None
        waiting = await self._queue.get_entry_for_conversation(context.conversation_id)
        if waiting:
            claimed = await self._queue.claim(waiting.id, result.agent.id)
            if not claimed:
                logger.info(
                    "queue_entry_resolved_elsewhere",
                    conversation_id=context.conversation_id,
                    entry_id=waiting.id,
                )
                return AssignmentOutcome.rejected(context.conversation_id, "queue-entry-resolved")

        try:
            agent = await self._finalizer.commit(
                context.conversation_id,
                result.agent.id,
                assignment_type,
                tenant_id=context.tenant_id,
            )
        except ConversationAlreadyAssignedError as e:
            logger.info(
                "conversation_already_assigned",
                conversation_id=context.conversation_id,
                agent_id=e.agent_id,
            )
            # No holder means the conversation was closed meanwhile
            if claimed:
                if e.agent_id:
                    await self._queue.resolve_claim(claimed.id, QueueEntryStatus.ASSIGNED, e.agent_id)
                else:
                    await self._queue.resolve_claim(claimed.id, QueueEntryStatus.CANCELLED)
            reason = "already-assigned" if e.agent_id else "conversation-closed"
            return AssignmentOutcome.rejected(context.conversation_id, reason)
        except (CapacityExceededError, PersistenceError):
            if claimed:
                await self._queue.release_claim(claimed.id)
            raise

        if claimed:
            await self._queue.reindex(context.tenant_id)
        else:
            await self._queue.remove_for_conversation(
                context.conversation_id,
                QueueEntryStatus.ASSIGNED,
                agent_id=agent.id,
            )

        logger.info(
            "routing_decision",
            conversation_id=context.conversation_id,
            agent_id=agent.id,
            strategy=result.strategy,
            assignment_type=assignment_type.value,
            degraded=result.degraded,
            reason=result.reason,
        )
        return AssignmentOutcome.assigned(
            context.conversation_id,
            agent,
            assignment_type,
            reason=result.reason,
            degraded=result.degraded,
        )

    async def enqueue(self, context: RoutingContext, config: RoutingConfig) -> AssignmentOutcome:
        """Queue a conversation nobody could take."""
        logger.warning(
            "no_eligible_agent",
            conversation_id=context.conversation_id,
            tenant_id=context.tenant_id,
        )
        entry = await self._queue.enqueue(
            conversation_id=context.conversation_id,
            visitor_id=context.visitor_id,
            tenant_id=context.tenant_id,
            priority=context.queue_priority,
            required_skills=context.required_skills,
            preferred_department_id=context.department_id,
            timeout_minutes=config.max_wait_minutes,
        )
        return AssignmentOutcome.queued(context.conversation_id, entry)


__all__ = [
    "RoutingRule",
    "RoutingEngine",
]
