"""
Routing Service Module

Facade over the routing engine, queue, agent directory and assignment
coordinators. It owns the background sweeps (queue timeouts and expired
agent states) and is the entry point for every routing operation.
"""

from datetime import datetime
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Optional,
    Tuple,
    Union,
)

import structlog

from livechat_core.config import RoutingSettings, get_settings
from livechat_core.core.logging import tenant_context
from livechat_core.core.scheduler import PeriodicTaskRunner

from .assignment import (
    AssignmentFinalizer,
    TransferCoordinator,
    UnassignCoordinator,
)
from .base import (
    Agent,
    AssignmentOutcome,
    CapacityExceededError,
    Conversation,
    ConversationNotFoundError,
    QueueEntry,
    QueueEntryStatus,
    RoutingConfig,
    RoutingContext,
    VisitorProfile,
)
from .directory import AgentDirectory
from .engine import RoutingEngine
from .notifier import (
    LoggingNotifier,
    Notifier,
    RoutingEvent,
    publish_safely,
    tenant_agents_channel,
)
from .queue import ChatQueue
from .schemas import RoutingConfigUpdate, parse_config_update
from .store import InMemoryPersistenceStore, PersistenceStore

logger = structlog.get_logger(__name__)


class RoutingService:
    """
    Unified service for live chat routing.

    Provides:
    - Conversation intake and automatic assignment
    - Queue management and reporting
    - Transfers and unassignment with queue pull
    - Agent presence and state (via ``agents``)
    - Background timeout and state expiry sweeps

    Usage:
        service = RoutingService()
        await service.start()
        conversation, outcome = await service.open_conversation(
            "site-1", VisitorProfile(visitor_id="v-1"),
        )
        ...
        await service.stop()
    """

    def __init__(
        self,
        store: Optional[PersistenceStore] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[RoutingSettings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or InMemoryPersistenceStore()
        self.notifier = notifier or LoggingNotifier()

        self.agents = AgentDirectory(self.store, self.notifier, self.settings)
        self.queue = ChatQueue(self.store, self.agents, self.notifier, self.settings)
        self.finalizer = AssignmentFinalizer(self.store, self.agents, self.notifier, self.settings)
        self.transfers = TransferCoordinator(self.store, self.agents, self.notifier, self.settings)
        self.unassigner = UnassignCoordinator(
            self.store,
            self.agents,
            self.queue,
            self.finalizer,
            self.notifier,
            self.settings,
        )
        self.routing = RoutingEngine(
            self.store,
            self.agents,
            self.queue,
            self.finalizer,
            self.settings,
        )

        self.tasks = PeriodicTaskRunner()
        self.tasks.add(
            "queue_timeouts",
            self.sweep_timeouts,
            interval_seconds=self.settings.sweep_interval_seconds,
        )
        self.tasks.add(
            "agent_state_expiry",
            self.check_expired_agent_states,
            interval_seconds=self.settings.sweep_interval_seconds,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background sweeps."""
        await self.tasks.start()
        logger.info("routing_service_started", sweep_interval=self.settings.sweep_interval_seconds)

    async def stop(self) -> None:
        await self.tasks.stop()
        logger.info("routing_service_stopped")

    # -------------------------------------------------------------------------
    # Conversations
    # -------------------------------------------------------------------------

    async def open_conversation(
        self,
        tenant_id: Optional[str],
        visitor: VisitorProfile,
        conversation_id: Optional[str] = None,
        required_skills: Optional[Iterable[str]] = None,
        department_id: Optional[str] = None,
        auto_route: bool = True,
    ) -> Tuple[Conversation, Optional[AssignmentOutcome]]:
        """
        Register a new visitor conversation and optionally route it.

        Returns:
            Tuple of (conversation, routing outcome)
        """
        conversation = await self.store.save_conversation(
            Conversation(
                id=conversation_id or "",
                tenant_id=tenant_id,
                visitor_id=visitor.visitor_id,
                visitor=visitor,
            )
        )

        with tenant_context(tenant_id, conversation_id=conversation.id):
            logger.info("conversation_opened", visitor_id=visitor.visitor_id, is_vip=visitor.is_vip)
            await publish_safely(
                self.notifier,
                tenant_agents_channel(tenant_id),
                RoutingEvent.CONVERSATION_NEW,
                {"conversation": conversation.to_dict()},
                timeout=self.settings.notify_timeout_seconds,
            )

        outcome = None
        if auto_route:
            outcome = await self.assign(
                conversation.id,
                required_skills=required_skills,
                department_id=department_id,
            )
        return conversation, outcome

    async def assign(
        self,
        conversation_id: str,
        required_skills: Optional[Iterable[str]] = None,
        department_id: Optional[str] = None,
    ) -> AssignmentOutcome:
        """
        Route a conversation to an agent, or queue it.

        A conversation that is closed or already has an agent is rejected.
        Losing the race for an agent's last slot retries the routing; after
        ``assign_attempts`` losses the conversation is queued.
        """
        conversation = await self._require_conversation(conversation_id)

        with tenant_context(conversation.tenant_id, conversation_id=conversation_id):
            if not conversation.is_open:
                logger.info("assign_rejected_closed")
                return AssignmentOutcome.rejected(conversation_id, "conversation-closed")
            if conversation.assigned_agent_id:
                logger.info("conversation_already_assigned", agent_id=conversation.assigned_agent_id)
                return AssignmentOutcome.rejected(conversation_id, "already-assigned")

            context = RoutingContext(
                conversation_id=conversation_id,
                tenant_id=conversation.tenant_id,
                visitor=conversation.visitor,
                required_skills=set(required_skills or ()),
                department_id=department_id,
            )
            return await self._assign_with_retry(context)

    async def _assign_with_retry(
        self,
        context: RoutingContext,
        config: Optional[RoutingConfig] = None,
    ) -> AssignmentOutcome:
        config = config or await self.routing.get_config(context.tenant_id)
        attempts = self.settings.assign_attempts

        for attempt in range(1, attempts + 1):
            try:
                return await self.routing.assign(context, config)
            except CapacityExceededError as e:
                logger.info(
                    "assign_capacity_race",
                    conversation_id=context.conversation_id,
                    agent_id=e.agent_id,
                    attempt=attempt,
                )

        return await self.routing.enqueue(context, config)

    async def transfer(
        self,
        conversation_id: str,
        to_agent_id: str,
        reason: Optional[str] = None,
    ) -> Agent:
        """Move an assigned conversation to another agent."""
        return await self.transfers.transfer(conversation_id, to_agent_id, reason=reason)

    async def unassign(
        self,
        conversation_id: str,
        agent_id: str,
        close_conversation: bool = True,
    ) -> Optional[AssignmentOutcome]:
        """
        Release an agent from a conversation.

        Returns:
            Outcome of the conversation pulled from the queue for the freed
            agent, if any
        """
        return await self.unassigner.release(
            conversation_id,
            agent_id,
            close_conversation=close_conversation,
        )

    async def cancel_conversation(self, conversation_id: str) -> Optional[QueueEntry]:
        """
        Handle a visitor leaving.

        The waiting entry (if any) is cancelled, the agent (if any) released
        and the conversation closed.

        Returns:
            The cancelled queue entry, or None if the conversation was not
            waiting
        """
        conversation = await self._require_conversation(conversation_id)
        entry = await self.queue.remove_for_conversation(conversation_id, QueueEntryStatus.CANCELLED)

        if conversation.assigned_agent_id:
            await self.unassigner.release(
                conversation_id,
                conversation.assigned_agent_id,
                close_conversation=True,
            )
        else:
            await self.store.close_conversation(conversation_id, datetime.utcnow())

        logger.info(
            "conversation_cancelled",
            conversation_id=conversation_id,
            was_queued=entry is not None,
        )
        return entry

    # -------------------------------------------------------------------------
    # Queue
    # -------------------------------------------------------------------------

    async def remove_from_queue(self, entry_id: str) -> Optional[QueueEntry]:
        """Operator removal of a waiting entry."""
        entry = await self.queue.remove(entry_id, QueueEntryStatus.CANCELLED)
        if entry:
            logger.info("queue_entry_removed_manually", entry_id=entry_id)
        return entry

    async def process_queue(self, tenant_id: Optional[str]) -> List[AssignmentOutcome]:
        """
        Route every waiting conversation of a tenant while agents are free.

        Returns:
            Outcomes of the conversations that were assigned
        """
        config = await self.routing.get_config(tenant_id)
        if not config.auto_assign:
            return []

        outcomes = []
        now = datetime.utcnow()
        for entry in await self.queue.get_waiting_entries(tenant_id):
            if entry.is_expired(now):
                continue
            if not await self.agents.count_available_agents(tenant_id):
                break

            conversation = await self.store.get_conversation(entry.conversation_id)
            if not conversation or not conversation.is_open or conversation.assigned_agent_id:
                continue

            context = RoutingContext(
                conversation_id=conversation.id,
                tenant_id=tenant_id,
                visitor=conversation.visitor,
                required_skills=set(entry.required_skills),
                department_id=entry.preferred_department_id,
            )
            outcome = await self._assign_with_retry(context, config)
            if outcome.is_assigned:
                outcomes.append(outcome)

        if outcomes:
            logger.info("queue_processed", tenant_id=tenant_id, assigned=len(outcomes))
        return outcomes

    async def get_queue_position(self, conversation_id: str) -> Optional[QueueEntry]:
        """Waiting entry of a conversation, with its position and estimate."""
        return await self.queue.get_entry_for_conversation(conversation_id)

    async def get_queue_status(self, tenant_id: Optional[str]) -> Dict[str, Any]:
        return await self.queue.get_status(tenant_id)

    async def get_queue_stats(self, tenant_id: Optional[str], period: str = "7d") -> Dict[str, Any]:
        return await self.queue.get_stats(tenant_id, period)

    # -------------------------------------------------------------------------
    # Routing config
    # -------------------------------------------------------------------------

    async def get_routing_config(self, tenant_id: Optional[str]) -> RoutingConfig:
        return await self.routing.get_config(tenant_id)

    async def update_routing_config(
        self,
        tenant_id: Optional[str],
        update: Union[RoutingConfigUpdate, Dict[str, Any]],
    ) -> RoutingConfig:
        """
        Create or update a tenant's routing configuration.

        Raises:
            InvalidRoutingConfigError: The update failed validation
        """
        if not isinstance(update, RoutingConfigUpdate):
            update = parse_config_update(update)

        config = update.apply_to(await self.routing.get_config(tenant_id))
        config.updated_at = datetime.utcnow()
        saved = await self.store.save_routing_config(config)

        logger.info(
            "routing_config_updated",
            tenant_id=tenant_id,
            strategy=saved.strategy.value,
            auto_assign=saved.auto_assign,
            max_wait_minutes=saved.max_wait_minutes,
        )
        return saved

    # -------------------------------------------------------------------------
    # Sweeps
    # -------------------------------------------------------------------------

    async def sweep_timeouts(self, now: Optional[datetime] = None) -> int:
        return await self.queue.sweep_timeouts(now)

    async def check_expired_agent_states(self, now: Optional[datetime] = None) -> int:
        return await self.agents.check_expired_states(now)

    async def _require_conversation(self, conversation_id: str) -> Conversation:
        conversation = await self.store.get_conversation(conversation_id)
        if not conversation:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return conversation


__all__ = ["RoutingService"]
