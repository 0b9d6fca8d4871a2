"""
Assignment Coordination

The only code paths that change which agent holds a conversation:

- AssignmentFinalizer commits a chosen (conversation, agent) pair
- TransferCoordinator moves an assigned conversation to another agent
- UnassignCoordinator releases an agent and pulls the next queued
  conversation that agent can take

Each step is a conditional store update; when a later step fails, earlier
steps are undone before the error is raised.
"""

from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from livechat_core.config import RoutingSettings, get_settings

from .base import (
    Agent,
    AssignmentOutcome,
    AssignmentRecord,
    AssignmentType,
    CapacityExceededError,
    Conversation,
    ConversationAlreadyAssignedError,
    ConversationNotFoundError,
    InvalidTargetAgentError,
    PersistenceError,
    QueueEntryStatus,
)
from .directory import AgentDirectory
from .notifier import (
    LoggingNotifier,
    Notifier,
    RoutingEvent,
    agent_channel,
    conversation_channel,
    publish_safely,
)
from .queue import ChatQueue
from .store import PersistenceStore

logger = structlog.get_logger(__name__)


class _Coordinator:
    """Shared collaborators and notification helper."""

    def __init__(
        self,
        store: PersistenceStore,
        directory: AgentDirectory,
        notifier: Optional[Notifier] = None,
        settings: Optional[RoutingSettings] = None,
    ):
        self._store = store
        self._directory = directory
        self._notifier = notifier or LoggingNotifier()
        self._settings = settings or get_settings()

    async def _require_conversation(self, conversation_id: str) -> Conversation:
        conversation = await self._store.get_conversation(conversation_id)
        if not conversation:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    async def _publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        await publish_safely(
            self._notifier,
            channel,
            event,
            payload,
            timeout=self._settings.notify_timeout_seconds,
        )


# =============================================================================
# Assignment Finalizer
# =============================================================================


class AssignmentFinalizer(_Coordinator):
    """Commits an agent selection."""

    async def commit(
        self,
        conversation_id: str,
        agent_id: str,
        assignment_type: AssignmentType,
        tenant_id: Optional[str] = None,
    ) -> Agent:
        """
        Assign a conversation to an agent.

        Raises:
            CapacityExceededError: The agent has no free slot or is no longer
                online and available
            ConversationAlreadyAssignedError: Another agent got the
                conversation first
            PersistenceError: The store failed; nothing was changed
        """
        agent = await self._directory.acquire_slot(agent_id)
        if not agent:
            raise CapacityExceededError(agent_id)

        try:
            claimed = await self._store.set_conversation_agent(
                conversation_id,
                agent_id,
                expected_agent_id=None,
            )
        except PersistenceError:
            await self._directory.release_slot(agent_id)
            raise

        if not claimed:
            await self._directory.release_slot(agent_id)
            conversation = await self._require_conversation(conversation_id)
            raise ConversationAlreadyAssignedError(conversation_id, conversation.assigned_agent_id)

        record = AssignmentRecord(
            id="",
            conversation_id=conversation_id,
            agent_id=agent_id,
            tenant_id=tenant_id,
            assignment_type=assignment_type,
        )
        try:
            await self._store.append_assignment(record)
        except PersistenceError as e:
            logger.error(
                "assignment_record_failed",
                conversation_id=conversation_id,
                agent_id=agent_id,
                error=str(e),
            )
            await self._store.set_conversation_agent(
                conversation_id,
                None,
                expected_agent_id=agent_id,
            )
            await self._directory.release_slot(agent_id)
            raise

        logger.info(
            "conversation_assigned",
            conversation_id=conversation_id,
            agent_id=agent_id,
            assignment_type=assignment_type.value,
            current_chats=agent.current_chats,
        )

        conversation = await self._store.get_conversation(conversation_id)
        await self._publish(
            agent_channel(agent_id),
            RoutingEvent.CONVERSATION_ASSIGNED,
            {
                "conversation_id": conversation_id,
                "agent_id": agent_id,
                "visitor_id": conversation.visitor_id if conversation else None,
                "assignment_type": assignment_type.value,
            },
        )
        await self._publish(
            conversation_channel(conversation_id),
            RoutingEvent.AGENT_ASSIGNED,
            {
                "agent_id": agent_id,
                "agent_name": agent.name,
                "message": "An agent has joined the conversation.",
            },
        )
        return agent


# =============================================================================
# Transfer Coordinator
# =============================================================================


class TransferCoordinator(_Coordinator):
    """Moves an in-progress conversation between agents."""

    async def transfer(
        self,
        conversation_id: str,
        to_agent_id: str,
        reason: Optional[str] = None,
    ) -> Agent:
        """
        Transfer a conversation to another agent.

        Returns:
            The target agent after the transfer

        Raises:
            ConversationNotFoundError: Unknown conversation
            InvalidTargetAgentError: Conversation closed or unassigned, or the
                target missing, not eligible or the current holder
            PersistenceError: The store failed; the move was reverted
        """
        conversation = await self._require_conversation(conversation_id)
        from_agent_id = conversation.assigned_agent_id

        target = await self._directory.get_agent(to_agent_id)
        self._validate_target(conversation, target, to_agent_id)

        moved = await self._store.transfer_conversation(conversation_id, from_agent_id, to_agent_id)
        if not moved:
            raise InvalidTargetAgentError(
                f"Transfer of {conversation_id} to {to_agent_id} lost a concurrent update"
            )

        now = datetime.utcnow()
        try:
            await self._store.append_assignment(
                AssignmentRecord(
                    id="",
                    conversation_id=conversation_id,
                    agent_id=to_agent_id,
                    tenant_id=conversation.tenant_id,
                    assignment_type=AssignmentType.TRANSFER,
                    assigned_at=now,
                )
            )
        except PersistenceError:
            await self._revert(conversation_id, from_agent_id, to_agent_id)
            raise

        try:
            await self._store.close_assignment(conversation_id, from_agent_id, now)
        except PersistenceError as e:
            logger.error(
                "assignment_close_failed",
                conversation_id=conversation_id,
                agent_id=from_agent_id,
                error=str(e),
            )

        logger.info(
            "conversation_transferred",
            conversation_id=conversation_id,
            from_agent_id=from_agent_id,
            to_agent_id=to_agent_id,
            reason=reason,
        )

        payload = {
            "conversation_id": conversation_id,
            "from_agent_id": from_agent_id,
            "to_agent_id": to_agent_id,
            "reason": reason,
        }
        await self._publish(agent_channel(to_agent_id), RoutingEvent.CONVERSATION_TRANSFERRED, payload)
        await self._publish(agent_channel(from_agent_id), RoutingEvent.CONVERSATION_TRANSFERRED, payload)
        await self._publish(conversation_channel(conversation_id), RoutingEvent.CONVERSATION_TRANSFERRED, payload)

        return await self._directory.require_agent(to_agent_id)

    @staticmethod
    def _validate_target(
        conversation: Conversation,
        target: Optional[Agent],
        to_agent_id: str,
    ) -> None:
        if not conversation.is_open or not conversation.assigned_agent_id:
            raise InvalidTargetAgentError(
                f"Conversation {conversation.id} has no agent to transfer from"
            )
        if not target:
            raise InvalidTargetAgentError(f"Target agent {to_agent_id} not found")
        if target.id == conversation.assigned_agent_id:
            raise InvalidTargetAgentError(f"Conversation already held by {to_agent_id}")
        if not target.serves_tenant(conversation.tenant_id):
            raise InvalidTargetAgentError(f"Target agent {to_agent_id} does not serve this tenant")
        if not target.is_online:
            raise InvalidTargetAgentError(f"Target agent {to_agent_id} is not online")
        if not target.is_available:
            raise InvalidTargetAgentError(
                f"Target agent {to_agent_id} is {target.state.value}"
            )
        if not target.has_capacity:
            raise InvalidTargetAgentError(f"Target agent {to_agent_id} is at max capacity")

    async def _revert(
        self,
        conversation_id: str,
        from_agent_id: str,
        to_agent_id: str,
    ) -> None:
        reverted = await self._store.transfer_conversation(
            conversation_id,
            to_agent_id,
            from_agent_id,
            require_eligible=False,
        )
        if not reverted:
            logger.error(
                "transfer_revert_failed",
                conversation_id=conversation_id,
                from_agent_id=from_agent_id,
                to_agent_id=to_agent_id,
            )


# =============================================================================
# Unassign Coordinator
# =============================================================================


class UnassignCoordinator(_Coordinator):
    """Releases an agent from a conversation and refills the slot from the queue."""

    def __init__(
        self,
        store: PersistenceStore,
        directory: AgentDirectory,
        queue: ChatQueue,
        finalizer: AssignmentFinalizer,
        notifier: Optional[Notifier] = None,
        settings: Optional[RoutingSettings] = None,
    ):
        super().__init__(store, directory, notifier, settings)
        self._queue = queue
        self._finalizer = finalizer

    async def release(
        self,
        conversation_id: str,
        agent_id: str,
        close_conversation: bool = True,
    ) -> Optional[AssignmentOutcome]:
        """
        Release an agent from a conversation.

        The slot is freed once per (conversation, agent) pair; repeated calls
        are no-ops. If the agent is then eligible, the next matching queued
        conversation is assigned to it.

        Returns:
            Outcome of the queue pull, or None if nothing was pulled
        """
        conversation = await self._require_conversation(conversation_id)
        now = datetime.utcnow()

        released = await self._store.release_conversation(
            conversation_id,
            agent_id,
            close=close_conversation,
            at=now,
        )
        if not released:
            logger.info("unassign_noop", conversation_id=conversation_id, agent_id=agent_id)
            return None

        try:
            await self._store.close_assignment(conversation_id, agent_id, now)
        except PersistenceError as e:
            logger.error(
                "assignment_close_failed",
                conversation_id=conversation_id,
                agent_id=agent_id,
                error=str(e),
            )

        agent = await self._directory.get_agent(agent_id)
        logger.info(
            "agent_unassigned",
            conversation_id=conversation_id,
            agent_id=agent_id,
            current_chats=agent.current_chats if agent else None,
        )

        if not agent or not agent.is_eligible:
            return None

        return await self.pull_next(agent, conversation.tenant_id)

    async def pull_next(
        self,
        agent: Agent,
        tenant_id: Optional[str],
    ) -> Optional[AssignmentOutcome]:
        """
        Assign the first queued conversation the agent can take.

        A claimed conversation that turns out to be closed or held by another
        agent is settled, and the next matching entry is tried instead.
        """
        while True:
            entry = await self._queue.dequeue_next(
                tenant_id,
                agent_skills=agent.skills,
                agent_department_id=agent.department_id,
            )
            if not entry:
                return None

            claimed = await self._queue.claim(entry.id, agent.id)
            if not claimed:
                logger.info("queue_entry_claimed_elsewhere", entry_id=entry.id, agent_id=agent.id)
                return None

            try:
                assigned = await self._finalizer.commit(
                    claimed.conversation_id,
                    agent.id,
                    AssignmentType.QUEUE,
                    tenant_id=claimed.tenant_id,
                )
            except CapacityExceededError:
                await self._queue.release_claim(claimed.id)
                logger.info("queue_pull_lost_capacity", entry_id=claimed.id, agent_id=agent.id)
                return None
            except ConversationAlreadyAssignedError as e:
                logger.info(
                    "queue_entry_already_assigned",
                    entry_id=claimed.id,
                    conversation_id=claimed.conversation_id,
                    agent_id=e.agent_id,
                )
                # No holder means the visitor left after the claim
                if e.agent_id:
                    await self._queue.resolve_claim(claimed.id, QueueEntryStatus.ASSIGNED, e.agent_id)
                else:
                    await self._queue.resolve_claim(claimed.id, QueueEntryStatus.CANCELLED)
                await self._queue.reindex(claimed.tenant_id)
                continue
            except PersistenceError:
                await self._queue.release_claim(claimed.id)
                raise

            break

        await self._queue.reindex(claimed.tenant_id)

        logger.info(
            "queue_entry_assigned",
            entry_id=claimed.id,
            conversation_id=claimed.conversation_id,
            agent_id=agent.id,
            waited_minutes=round(claimed.wait_minutes(), 1),
        )

        outcome = AssignmentOutcome.assigned(
            claimed.conversation_id,
            assigned,
            AssignmentType.QUEUE,
            reason="pulled from queue",
        )
        outcome.queue_entry = claimed
        return outcome


__all__ = [
    "AssignmentFinalizer",
    "TransferCoordinator",
    "UnassignCoordinator",
]
