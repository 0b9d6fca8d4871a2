"""
Routing Persistence Module

Abstract persistence interface used by the routing engine, plus an in-memory
implementation. Every read-modify-write the engine performs goes through a
conditional primitive here ("increment only if below capacity", "update only
if still waiting"), so concurrent callers never double-book an agent or
resolve a queue entry twice.
"""

import asyncio
import copy
import itertools
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import (
    Dict,
    Iterable,
    List,
    Optional,
    Tuple,
)

from .base import (
    Agent,
    AgentNotFoundError,
    AgentState,
    AssignmentRecord,
    Conversation,
    ConversationStatus,
    QueueEntry,
    QueueEntryStatus,
    RoutingConfig,
)


class PersistenceStore(ABC):
    """
    Storage interface for agents, conversations, queue entries, assignment
    records and routing configuration.

    Implementations raise ``PersistenceError`` when the backend fails.
    Returned objects are snapshots; mutate state only through the methods.
    """

    # -------------------------------------------------------------------------
    # Agents
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        pass

    @abstractmethod
    async def list_agents(self, tenant_id: Optional[str]) -> List[Agent]:
        """Agents serving a tenant (tenant agents plus global agents)."""
        pass

    @abstractmethod
    async def list_all_agents(self) -> List[Agent]:
        pass

    @abstractmethod
    async def save_agent(self, agent: Agent) -> Agent:
        """
        Create an agent, or update an existing agent's profile.

        For an existing agent the stored ``current_chats``, presence and
        state are kept; only profile fields (name, capacity, skills,
        department, languages, tier) are replaced.
        """
        pass

    @abstractmethod
    async def set_agent_presence(self, agent_id: str, is_online: bool) -> Optional[Agent]:
        pass

    @abstractmethod
    async def update_agent_state(
        self,
        agent_id: str,
        state: AgentState,
        state_message: Optional[str] = None,
        state_until: Optional[datetime] = None,
        expected_states: Optional[Iterable[AgentState]] = None,
        expires_before: Optional[datetime] = None,
    ) -> Optional[Agent]:
        """
        Set an agent's state.

        When ``expected_states`` is given the update only applies if the
        current state is one of them; when ``expires_before`` is given it only
        applies if ``state_until`` is set and earlier. Returns the updated
        agent, or None when a condition did not hold.
        """
        pass

    @abstractmethod
    async def increment_agent_load(
        self,
        agent_id: str,
        require_eligible: bool = True,
    ) -> Optional[Agent]:
        """
        Take one chat slot.

        Applies only if ``current_chats < max_concurrent_chats`` (and, with
        ``require_eligible``, the agent is online and available). Returns None
        when the slot could not be taken.
        """
        pass

    @abstractmethod
    async def decrement_agent_load(self, agent_id: str) -> Optional[Agent]:
        """Release one chat slot, never going below zero."""
        pass

    # -------------------------------------------------------------------------
    # Conversations
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        pass

    @abstractmethod
    async def save_conversation(self, conversation: Conversation) -> Conversation:
        pass

    @abstractmethod
    async def set_conversation_agent(
        self,
        conversation_id: str,
        agent_id: Optional[str],
        expected_agent_id: Optional[str] = None,
    ) -> bool:
        """Set ``assigned_agent_id`` only if it currently equals ``expected_agent_id``."""
        pass

    @abstractmethod
    async def close_conversation(self, conversation_id: str, closed_at: datetime) -> bool:
        """Close a conversation only if it is still open and has no agent."""
        pass

    @abstractmethod
    async def list_closed_conversations(
        self,
        tenant_id: Optional[str],
        since: datetime,
        limit: int,
    ) -> List[Conversation]:
        """Most recently closed conversations created after ``since``."""
        pass

    @abstractmethod
    async def release_conversation(
        self,
        conversation_id: str,
        agent_id: str,
        close: bool,
        at: datetime,
    ) -> bool:
        """
        Take a conversation away from its agent and free the agent's slot.

        Applies only if the conversation is open and held by ``agent_id``.
        With ``close`` the conversation is closed (keeping the agent for
        history); otherwise it becomes unassigned.
        """
        pass

    @abstractmethod
    async def transfer_conversation(
        self,
        conversation_id: str,
        from_agent_id: Optional[str],
        to_agent_id: str,
        require_eligible: bool = True,
    ) -> bool:
        """
        Move a conversation and its chat slot between agents as one operation.

        Applies only if the conversation is still assigned to
        ``from_agent_id`` and the target is below capacity (and, with
        ``require_eligible``, online and available). Either every field
        changes or none does.
        """
        pass

    # -------------------------------------------------------------------------
    # Queue entries
    # -------------------------------------------------------------------------

    @abstractmethod
    async def insert_queue_entry(self, entry: QueueEntry) -> Tuple[QueueEntry, bool]:
        """
        Insert a waiting entry unless the conversation already has one.

        Returns ``(entry, created)``; when not created the existing waiting
        entry is returned.
        """
        pass

    @abstractmethod
    async def get_queue_entry(self, entry_id: str) -> Optional[QueueEntry]:
        pass

    @abstractmethod
    async def get_waiting_entry(self, conversation_id: str) -> Optional[QueueEntry]:
        pass

    @abstractmethod
    async def list_queue_entries(
        self,
        tenant_id: Optional[str],
        status: Optional[QueueEntryStatus] = None,
        since: Optional[datetime] = None,
    ) -> List[QueueEntry]:
        pass

    @abstractmethod
    async def list_expired_entries(self, now: datetime) -> List[QueueEntry]:
        """Waiting entries whose ``timeout_at`` is before ``now``."""
        pass

    @abstractmethod
    async def update_queue_entry_status(
        self,
        entry_id: str,
        status: QueueEntryStatus,
        expected: QueueEntryStatus = QueueEntryStatus.WAITING,
        assigned_agent_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> Optional[QueueEntry]:
        """
        Change status only if the current status equals ``expected``.

        Restoring an entry to ``waiting`` is refused when its conversation
        already has another waiting entry or has been closed.
        """
        pass

    @abstractmethod
    async def update_queue_positions(
        self,
        positions: Dict[str, Tuple[int, int]],
    ) -> None:
        """Write ``{entry_id: (position, eta_minutes)}`` for still-waiting entries."""
        pass

    # -------------------------------------------------------------------------
    # Assignment records
    # -------------------------------------------------------------------------

    @abstractmethod
    async def append_assignment(self, record: AssignmentRecord) -> AssignmentRecord:
        pass

    @abstractmethod
    async def get_last_assignment(self, tenant_id: Optional[str]) -> Optional[AssignmentRecord]:
        """Most recent record for a tenant, or across all tenants for None."""
        pass

    @abstractmethod
    async def close_assignment(
        self,
        conversation_id: str,
        agent_id: str,
        unassigned_at: datetime,
    ) -> Optional[AssignmentRecord]:
        """Set ``unassigned_at`` on the open record for the pair, once."""
        pass

    @abstractmethod
    async def list_assignments(
        self,
        conversation_id: Optional[str] = None,
    ) -> List[AssignmentRecord]:
        pass

    # -------------------------------------------------------------------------
    # Routing config
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_routing_config(self, tenant_id: Optional[str]) -> Optional[RoutingConfig]:
        pass

    @abstractmethod
    async def save_routing_config(self, config: RoutingConfig) -> RoutingConfig:
        pass


class InMemoryPersistenceStore(PersistenceStore):
    """
    Process-local store.

    Agent rows are guarded by per-agent locks (both locks, in id order, for
    transfers). Every other conditional update runs without yielding to the
    event loop, so it is atomic with respect to other coroutines.
    """

    def __init__(self):
        self._agents: Dict[str, Agent] = {}
        self._conversations: Dict[str, Conversation] = {}
        self._entries: Dict[str, QueueEntry] = {}
        self._waiting_by_conversation: Dict[str, str] = {}
        self._assignments: List[AssignmentRecord] = []
        self._configs: Dict[Optional[str], RoutingConfig] = {}
        self._agent_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._sequence = itertools.count(1)

    @staticmethod
    def _snapshot(obj):
        return copy.deepcopy(obj)

    def _require_agent(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if not agent:
            raise AgentNotFoundError(f"Agent {agent_id} not found")
        return agent

    # -------------------------------------------------------------------------
    # Agents
    # -------------------------------------------------------------------------

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        agent = self._agents.get(agent_id)
        return self._snapshot(agent) if agent else None

    async def list_agents(self, tenant_id: Optional[str]) -> List[Agent]:
        return [
            self._snapshot(a)
            for a in sorted(self._agents.values(), key=lambda a: a.id)
            if a.serves_tenant(tenant_id)
        ]

    async def list_all_agents(self) -> List[Agent]:
        return [self._snapshot(a) for a in sorted(self._agents.values(), key=lambda a: a.id)]

    async def save_agent(self, agent: Agent) -> Agent:
        async with self._agent_locks[agent.id]:
            existing = self._agents.get(agent.id)
            stored = self._snapshot(agent)
            if existing:
                # Load and presence only change through their own primitives
                stored.current_chats = existing.current_chats
                stored.is_online = existing.is_online
                stored.state = existing.state
                stored.state_message = existing.state_message
                stored.state_until = existing.state_until
                stored.state_changed_at = existing.state_changed_at
                stored.created_at = existing.created_at
                stored.updated_at = datetime.utcnow()
            self._agents[agent.id] = stored
            return self._snapshot(stored)

    async def set_agent_presence(self, agent_id: str, is_online: bool) -> Optional[Agent]:
        async with self._agent_locks[agent_id]:
            agent = self._agents.get(agent_id)
            if not agent:
                return None
            agent.is_online = is_online
            agent.updated_at = datetime.utcnow()
            return self._snapshot(agent)

    async def update_agent_state(
        self,
        agent_id: str,
        state: AgentState,
        state_message: Optional[str] = None,
        state_until: Optional[datetime] = None,
        expected_states: Optional[Iterable[AgentState]] = None,
        expires_before: Optional[datetime] = None,
    ) -> Optional[Agent]:
        async with self._agent_locks[agent_id]:
            agent = self._agents.get(agent_id)
            if not agent:
                return None
            if expected_states is not None and agent.state not in set(expected_states):
                return None
            if expires_before is not None:
                if not agent.state_until or agent.state_until >= expires_before:
                    return None

            now = datetime.utcnow()
            agent.state = state
            agent.state_message = state_message
            agent.state_until = state_until
            agent.state_changed_at = now
            agent.updated_at = now
            return self._snapshot(agent)

    async def increment_agent_load(
        self,
        agent_id: str,
        require_eligible: bool = True,
    ) -> Optional[Agent]:
        async with self._agent_locks[agent_id]:
            agent = self._require_agent(agent_id)
            if require_eligible and not agent.is_eligible:
                return None
            if not agent.has_capacity:
                return None
            agent.current_chats += 1
            agent.updated_at = datetime.utcnow()
            return self._snapshot(agent)

    async def decrement_agent_load(self, agent_id: str) -> Optional[Agent]:
        async with self._agent_locks[agent_id]:
            agent = self._agents.get(agent_id)
            if not agent:
                return None
            agent.current_chats = max(0, agent.current_chats - 1)
            agent.updated_at = datetime.utcnow()
            return self._snapshot(agent)

    # -------------------------------------------------------------------------
    # Conversations
    # -------------------------------------------------------------------------

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conversation = self._conversations.get(conversation_id)
        return self._snapshot(conversation) if conversation else None

    async def save_conversation(self, conversation: Conversation) -> Conversation:
        self._conversations[conversation.id] = self._snapshot(conversation)
        return self._snapshot(conversation)

    async def set_conversation_agent(
        self,
        conversation_id: str,
        agent_id: Optional[str],
        expected_agent_id: Optional[str] = None,
    ) -> bool:
        conversation = self._conversations.get(conversation_id)
        if not conversation:
            return False
        if conversation.assigned_agent_id != expected_agent_id:
            return False
        if agent_id is not None and not conversation.is_open:
            return False
        conversation.assigned_agent_id = agent_id
        return True

    async def close_conversation(self, conversation_id: str, closed_at: datetime) -> bool:
        conversation = self._conversations.get(conversation_id)
        if not conversation or not conversation.is_open or conversation.assigned_agent_id:
            return False
        conversation.status = ConversationStatus.CLOSED
        conversation.closed_at = closed_at
        return True

    async def list_closed_conversations(
        self,
        tenant_id: Optional[str],
        since: datetime,
        limit: int,
    ) -> List[Conversation]:
        closed = [
            c for c in self._conversations.values()
            if c.tenant_id == tenant_id
            and c.closed_at is not None
            and c.created_at >= since
        ]
        closed.sort(key=lambda c: c.closed_at, reverse=True)
        return [self._snapshot(c) for c in closed[:limit]]

    async def release_conversation(
        self,
        conversation_id: str,
        agent_id: str,
        close: bool,
        at: datetime,
    ) -> bool:
        async with self._agent_locks[agent_id]:
            conversation = self._conversations.get(conversation_id)
            if not conversation or not conversation.is_open:
                return False
            if conversation.assigned_agent_id != agent_id:
                return False

            if close:
                conversation.status = ConversationStatus.CLOSED
                conversation.closed_at = at
            else:
                conversation.assigned_agent_id = None

            agent = self._agents.get(agent_id)
            if agent:
                agent.current_chats = max(0, agent.current_chats - 1)
                agent.updated_at = at
            return True

    async def transfer_conversation(
        self,
        conversation_id: str,
        from_agent_id: Optional[str],
        to_agent_id: str,
        require_eligible: bool = True,
    ) -> bool:
        lock_ids = sorted({a for a in (from_agent_id, to_agent_id) if a})
        locks = [self._agent_locks[a] for a in lock_ids]

        for lock in locks:
            await lock.acquire()
        try:
            conversation = self._conversations.get(conversation_id)
            target = self._agents.get(to_agent_id)
            source = self._agents.get(from_agent_id) if from_agent_id else None

            if not conversation or not target or not conversation.is_open:
                return False
            if conversation.assigned_agent_id != from_agent_id:
                return False
            if from_agent_id and not source:
                return False
            if not target.has_capacity:
                return False
            if require_eligible and not target.is_eligible:
                return False

            now = datetime.utcnow()
            conversation.assigned_agent_id = to_agent_id
            target.current_chats += 1
            target.updated_at = now
            if source:
                source.current_chats = max(0, source.current_chats - 1)
                source.updated_at = now
            return True
        finally:
            for lock in reversed(locks):
                lock.release()

    # -------------------------------------------------------------------------
    # Queue entries
    # -------------------------------------------------------------------------

    async def insert_queue_entry(self, entry: QueueEntry) -> Tuple[QueueEntry, bool]:
        existing_id = self._waiting_by_conversation.get(entry.conversation_id)
        if existing_id:
            return self._snapshot(self._entries[existing_id]), False

        stored = self._snapshot(entry)
        stored.sequence = next(self._sequence)
        self._entries[stored.id] = stored
        self._waiting_by_conversation[stored.conversation_id] = stored.id
        return self._snapshot(stored), True

    async def get_queue_entry(self, entry_id: str) -> Optional[QueueEntry]:
        entry = self._entries.get(entry_id)
        return self._snapshot(entry) if entry else None

    async def get_waiting_entry(self, conversation_id: str) -> Optional[QueueEntry]:
        entry_id = self._waiting_by_conversation.get(conversation_id)
        if not entry_id:
            return None
        return self._snapshot(self._entries[entry_id])

    async def list_queue_entries(
        self,
        tenant_id: Optional[str],
        status: Optional[QueueEntryStatus] = None,
        since: Optional[datetime] = None,
    ) -> List[QueueEntry]:
        entries = []
        for entry in self._entries.values():
            if entry.tenant_id != tenant_id:
                continue
            if status and entry.status != status:
                continue
            if since and entry.entered_at < since:
                continue
            entries.append(self._snapshot(entry))
        return sorted(entries, key=lambda e: e.sequence)

    async def list_expired_entries(self, now: datetime) -> List[QueueEntry]:
        return [
            self._snapshot(e)
            for e in sorted(self._entries.values(), key=lambda e: e.sequence)
            if e.is_waiting and e.is_expired(now)
        ]

    async def update_queue_entry_status(
        self,
        entry_id: str,
        status: QueueEntryStatus,
        expected: QueueEntryStatus = QueueEntryStatus.WAITING,
        assigned_agent_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> Optional[QueueEntry]:
        entry = self._entries.get(entry_id)
        if not entry or entry.status != expected:
            return None

        if status == QueueEntryStatus.WAITING:
            # Restoring a claimed entry; refuse if the conversation re-queued or closed meanwhile
            if entry.conversation_id in self._waiting_by_conversation:
                return None
            conversation = self._conversations.get(entry.conversation_id)
            if conversation and not conversation.is_open:
                return None
            self._waiting_by_conversation[entry.conversation_id] = entry.id
            entry.removed_at = None
            entry.assigned_agent_id = None
        else:
            if self._waiting_by_conversation.get(entry.conversation_id) == entry.id:
                del self._waiting_by_conversation[entry.conversation_id]
            entry.removed_at = at or datetime.utcnow()
            entry.assigned_agent_id = assigned_agent_id

        entry.status = status
        return self._snapshot(entry)

    async def update_queue_positions(
        self,
        positions: Dict[str, Tuple[int, int]],
    ) -> None:
        for entry_id, (position, eta) in positions.items():
            entry = self._entries.get(entry_id)
            if entry and entry.is_waiting:
                entry.queue_position = position
                entry.estimated_wait_minutes = eta

    # -------------------------------------------------------------------------
    # Assignment records
    # -------------------------------------------------------------------------

    async def append_assignment(self, record: AssignmentRecord) -> AssignmentRecord:
        self._assignments.append(self._snapshot(record))
        return self._snapshot(record)

    async def get_last_assignment(self, tenant_id: Optional[str]) -> Optional[AssignmentRecord]:
        for record in reversed(self._assignments):
            if tenant_id is None or record.tenant_id == tenant_id:
                return self._snapshot(record)
        return None

    async def close_assignment(
        self,
        conversation_id: str,
        agent_id: str,
        unassigned_at: datetime,
    ) -> Optional[AssignmentRecord]:
        for record in reversed(self._assignments):
            if (
                record.conversation_id == conversation_id
                and record.agent_id == agent_id
                and record.is_open
            ):
                record.unassigned_at = unassigned_at
                return self._snapshot(record)
        return None

    async def list_assignments(
        self,
        conversation_id: Optional[str] = None,
    ) -> List[AssignmentRecord]:
        return [
            self._snapshot(r)
            for r in self._assignments
            if conversation_id is None or r.conversation_id == conversation_id
        ]

    # -------------------------------------------------------------------------
    # Routing config
    # -------------------------------------------------------------------------

    async def get_routing_config(self, tenant_id: Optional[str]) -> Optional[RoutingConfig]:
        config = self._configs.get(tenant_id)
        return self._snapshot(config) if config else None

    async def save_routing_config(self, config: RoutingConfig) -> RoutingConfig:
        self._configs[config.tenant_id] = self._snapshot(config)
        return self._snapshot(config)


__all__ = [
    "PersistenceStore",
    "InMemoryPersistenceStore",
]
