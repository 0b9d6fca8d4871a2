"""
Routing Base Types Module

This module defines core types for live-chat conversation routing: agents and
their availability states, conversations, queue entries, per-tenant routing
configuration, the assignment log and routing outcomes.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Set,
)


# =============================================================================
# Enums
# =============================================================================


class AgentState(str, Enum):
    """Operator-controlled agent availability state."""

    AVAILABLE = "available"
    BUSY = "busy"
    BREAK = "break"
    DND = "dnd"  # Do not disturb
    AWAY = "away"
    OFFLINE = "offline"


# States that may carry an expiry and are reset by the expiry sweep
EXPIRING_STATES = frozenset({AgentState.BREAK, AgentState.AWAY})


class RoutingStrategyType(str, Enum):
    """Tenant-level routing strategies."""

    ROUND_ROBIN = "round_robin"  # Rotate through eligible agents
    LEAST_BUSY = "least_busy"  # Fewest current chats
    SKILL_BASED = "skill_based"  # Match required skills
    MANUAL = "manual"  # Agents pick conversations themselves


class AssignmentType(str, Enum):
    """How a conversation ended up with an agent."""

    ROUND_ROBIN = "round_robin"
    LEAST_BUSY = "least_busy"
    SKILL_BASED = "skill_based"
    VIP = "vip"
    DEPARTMENT = "department"
    LANGUAGE = "language"
    TRANSFER = "transfer"
    MANUAL = "manual"
    QUEUE = "queue"  # Pulled from the queue when an agent freed up


class ConversationStatus(str, Enum):
    """Conversation lifecycle status."""

    OPEN = "open"
    CLOSED = "closed"


class QueueEntryStatus(str, Enum):
    """Queue entry lifecycle status."""

    WAITING = "waiting"
    ASSIGNED = "assigned"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class OutcomeStatus(str, Enum):
    """Result kind of a routing attempt."""

    ASSIGNED = "assigned"
    QUEUED = "queued"
    REJECTED = "rejected"


# =============================================================================
# Agent Types
# =============================================================================


@dataclass(frozen=True)
class StateRule:
    """What an agent in a given state may receive."""

    can_receive_chats: bool
    auto_response: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "can_receive_chats": self.can_receive_chats,
            "auto_response": self.auto_response,
        }


STATE_RULES: Dict[AgentState, StateRule] = {
    AgentState.AVAILABLE: StateRule(can_receive_chats=True),
    AgentState.BUSY: StateRule(
        can_receive_chats=False,
        auto_response="I'm busy at the moment, please hold on.",
    ),
    AgentState.AWAY: StateRule(
        can_receive_chats=False,
        auto_response="I'm away right now and will be back shortly.",
    ),
    AgentState.BREAK: StateRule(
        can_receive_chats=False,
        auto_response="I'm on a break and will be back in {duration} minutes.",
    ),
    AgentState.DND: StateRule(
        can_receive_chats=False,
        auto_response="Please do not disturb. For urgent matters you can reach another agent.",
    ),
    AgentState.OFFLINE: StateRule(can_receive_chats=False),
}


@dataclass
class Agent:
    """A human agent that can handle visitor conversations."""

    id: str
    tenant_id: Optional[str] = None  # None = serves every tenant
    name: str = ""

    # Presence and state
    is_online: bool = False
    state: AgentState = AgentState.OFFLINE
    state_message: Optional[str] = None
    state_until: Optional[datetime] = None
    state_changed_at: datetime = field(default_factory=datetime.utcnow)

    # Capacity
    max_concurrent_chats: int = 1
    current_chats: int = 0

    # Routing attributes
    skills: Set[str] = field(default_factory=set)
    department_id: Optional[str] = None
    languages: Set[str] = field(default_factory=set)  # Empty = no restriction
    priority_level: int = 0

    # Metadata
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if not self.id:
            self.id = f"agent_{uuid.uuid4().hex[:20]}"
        self.skills = set(self.skills)
        self.languages = set(self.languages)

    @property
    def is_available(self) -> bool:
        """Check if agent state accepts new routing assignments."""
        return self.state == AgentState.AVAILABLE

    @property
    def has_capacity(self) -> bool:
        return self.current_chats < self.max_concurrent_chats

    @property
    def is_eligible(self) -> bool:
        """Online, available and with a free chat slot."""
        return self.is_online and self.is_available and self.has_capacity

    @property
    def available_capacity(self) -> int:
        """Get remaining chat capacity."""
        return max(0, self.max_concurrent_chats - self.current_chats)

    @property
    def state_rule(self) -> StateRule:
        return STATE_RULES[self.state]

    def serves_tenant(self, tenant_id: Optional[str]) -> bool:
        return self.tenant_id is None or self.tenant_id == tenant_id

    def speaks(self, language: str) -> bool:
        return not self.languages or language in self.languages

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "is_online": self.is_online,
            "state": self.state.value,
            "state_message": self.state_message,
            "state_until": self.state_until.isoformat() if self.state_until else None,
            "state_changed_at": self.state_changed_at.isoformat(),
            "rules": self.state_rule.to_dict(),
            "max_concurrent_chats": self.max_concurrent_chats,
            "current_chats": self.current_chats,
            "available_capacity": self.available_capacity,
            "is_eligible": self.is_eligible,
            "skills": sorted(self.skills),
            "department_id": self.department_id,
            "languages": sorted(self.languages),
            "priority_level": self.priority_level,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


# =============================================================================
# Conversation Types
# =============================================================================


@dataclass
class VisitorProfile:
    """Visitor attributes supplied by the visitor tracking subsystem."""

    visitor_id: str
    name: Optional[str] = None
    is_vip: bool = False
    vip_level: int = 0
    language: Optional[str] = None

    @property
    def effective_vip_level(self) -> int:
        return self.vip_level if self.is_vip else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "visitor_id": self.visitor_id,
            "name": self.name,
            "is_vip": self.is_vip,
            "vip_level": self.vip_level,
            "language": self.language,
        }


@dataclass
class Conversation:
    """A visitor chat that needs (or has) an agent."""

    id: str
    tenant_id: Optional[str]
    visitor_id: str
    visitor: Optional[VisitorProfile] = None
    assigned_agent_id: Optional[str] = None
    status: ConversationStatus = ConversationStatus.OPEN
    created_at: datetime = field(default_factory=datetime.utcnow)
    closed_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id:
            self.id = f"conv_{uuid.uuid4().hex[:20]}"
        if self.visitor is None:
            self.visitor = VisitorProfile(visitor_id=self.visitor_id)

    @property
    def is_open(self) -> bool:
        return self.status == ConversationStatus.OPEN

    @property
    def duration(self) -> Optional[timedelta]:
        if not self.closed_at:
            return None
        return self.closed_at - self.created_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "visitor_id": self.visitor_id,
            "visitor": self.visitor.to_dict() if self.visitor else None,
            "assigned_agent_id": self.assigned_agent_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
        }


# =============================================================================
# Queue Entry Types
# =============================================================================


@dataclass
class QueueEntry:
    """A conversation waiting for an agent."""

    id: str
    conversation_id: str
    visitor_id: str
    tenant_id: Optional[str]

    # Priority and matching
    priority: int = 0  # Higher = served first
    required_skills: Set[str] = field(default_factory=set)
    preferred_department_id: Optional[str] = None

    # Timing
    entered_at: datetime = field(default_factory=datetime.utcnow)
    timeout_at: Optional[datetime] = None

    # Status
    status: QueueEntryStatus = QueueEntryStatus.WAITING
    removed_at: Optional[datetime] = None
    assigned_agent_id: Optional[str] = None

    # Position (recomputed on every reindex)
    queue_position: int = 0
    estimated_wait_minutes: int = 0

    # Insertion order assigned by the store; breaks entered_at ties
    sequence: int = 0

    def __post_init__(self):
        if not self.id:
            self.id = f"qentry_{uuid.uuid4().hex[:18]}"
        self.required_skills = set(self.required_skills)

    @property
    def is_waiting(self) -> bool:
        """Check if entry is still waiting."""
        return self.status == QueueEntryStatus.WAITING

    @property
    def sort_key(self):
        """Ordering key: priority desc, then FIFO."""
        return (-self.priority, self.entered_at, self.sequence)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if not self.timeout_at:
            return False
        return self.timeout_at < (now or datetime.utcnow())

    def wait_minutes(self, now: Optional[datetime] = None) -> float:
        end = self.removed_at or now or datetime.utcnow()
        return (end - self.entered_at).total_seconds() / 60

    def matches_agent(
        self,
        agent_skills: Set[str],
        agent_department_id: Optional[str],
    ) -> bool:
        """Check whether an agent with these attributes may take this entry."""
        if self.required_skills and not (self.required_skills & set(agent_skills)):
            return False
        if (
            self.preferred_department_id
            and agent_department_id
            and self.preferred_department_id != agent_department_id
        ):
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "visitor_id": self.visitor_id,
            "tenant_id": self.tenant_id,
            "priority": self.priority,
            "required_skills": sorted(self.required_skills),
            "preferred_department_id": self.preferred_department_id,
            "entered_at": self.entered_at.isoformat(),
            "timeout_at": self.timeout_at.isoformat() if self.timeout_at else None,
            "status": self.status.value,
            "removed_at": self.removed_at.isoformat() if self.removed_at else None,
            "assigned_agent_id": self.assigned_agent_id,
            "queue_position": self.queue_position,
            "estimated_wait_minutes": self.estimated_wait_minutes,
        }


# =============================================================================
# Routing Types
# =============================================================================


# Pre-routing steps evaluated before the tenant's configured strategy
DEFAULT_PRECEDENCE = ("vip", "department", "language")


@dataclass
class RoutingConfig:
    """Per-tenant routing configuration."""

    tenant_id: Optional[str]
    strategy: RoutingStrategyType = RoutingStrategyType.ROUND_ROBIN
    auto_assign: bool = True
    max_wait_minutes: int = 30
    default_language: str = "en"
    precedence: List[str] = field(default_factory=lambda: list(DEFAULT_PRECEDENCE))
    settings: Dict[str, Any] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "tenant_id": self.tenant_id,
            "strategy": self.strategy.value,
            "auto_assign": self.auto_assign,
            "max_wait_minutes": self.max_wait_minutes,
            "default_language": self.default_language,
            "precedence": list(self.precedence),
            "settings": self.settings,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RoutingConfig":
        """Create from dictionary."""
        return cls(
            tenant_id=data.get("tenant_id"),
            strategy=RoutingStrategyType(data.get("strategy", "round_robin")),
            auto_assign=data.get("auto_assign", True),
            max_wait_minutes=data.get("max_wait_minutes", 30),
            default_language=data.get("default_language", "en"),
            precedence=list(data.get("precedence", DEFAULT_PRECEDENCE)),
            settings=data.get("settings", {}),
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else datetime.utcnow(),
        )


@dataclass
class AssignmentRecord:
    """Append-only log entry of an agent taking a conversation."""

    id: str
    conversation_id: str
    agent_id: str
    tenant_id: Optional[str]
    assignment_type: AssignmentType
    assigned_at: datetime = field(default_factory=datetime.utcnow)
    unassigned_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.id:
            self.id = f"assign_{uuid.uuid4().hex[:18]}"

    @property
    def is_open(self) -> bool:
        return self.unassigned_at is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "agent_id": self.agent_id,
            "tenant_id": self.tenant_id,
            "assignment_type": self.assignment_type.value,
            "assigned_at": self.assigned_at.isoformat(),
            "unassigned_at": self.unassigned_at.isoformat() if self.unassigned_at else None,
        }


@dataclass
class RoutingContext:
    """Everything the engine knows about one routing attempt."""

    conversation_id: str
    tenant_id: Optional[str]
    visitor: VisitorProfile
    required_skills: Set[str] = field(default_factory=set)
    department_id: Optional[str] = None

    @property
    def visitor_id(self) -> str:
        return self.visitor.visitor_id

    @property
    def queue_priority(self) -> int:
        return self.visitor.effective_vip_level


@dataclass
class AssignmentOutcome:
    """Result of a routing attempt."""

    status: OutcomeStatus
    conversation_id: str
    agent: Optional[Agent] = None
    assignment_type: Optional[AssignmentType] = None
    queue_entry: Optional[QueueEntry] = None
    reason: str = ""
    degraded: bool = False
    decided_at: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def assigned(
        cls,
        conversation_id: str,
        agent: Agent,
        assignment_type: AssignmentType,
        reason: str = "",
        degraded: bool = False,
    ) -> "AssignmentOutcome":
        return cls(
            status=OutcomeStatus.ASSIGNED,
            conversation_id=conversation_id,
            agent=agent,
            assignment_type=assignment_type,
            reason=reason,
            degraded=degraded,
        )

    @classmethod
    def queued(cls, conversation_id: str, entry: QueueEntry) -> "AssignmentOutcome":
        return cls(
            status=OutcomeStatus.QUEUED,
            conversation_id=conversation_id,
            queue_entry=entry,
            reason="no-eligible-agent",
        )

    @classmethod
    def rejected(cls, conversation_id: str, reason: str) -> "AssignmentOutcome":
        return cls(
            status=OutcomeStatus.REJECTED,
            conversation_id=conversation_id,
            reason=reason,
        )

    @property
    def is_assigned(self) -> bool:
        return self.status == OutcomeStatus.ASSIGNED

    @property
    def is_queued(self) -> bool:
        return self.status == OutcomeStatus.QUEUED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "conversation_id": self.conversation_id,
            "agent_id": self.agent.id if self.agent else None,
            "assignment_type": self.assignment_type.value if self.assignment_type else None,
            "queue_entry": self.queue_entry.to_dict() if self.queue_entry else None,
            "reason": self.reason,
            "degraded": self.degraded,
            "decided_at": self.decided_at.isoformat(),
        }


# =============================================================================
# Exceptions
# =============================================================================


class RoutingError(Exception):
    """Base exception for routing errors."""
    pass


class CapacityExceededError(RoutingError):
    """Agent lost its last free slot to a concurrent assignment."""

    def __init__(self, agent_id: str):
        super().__init__(f"Agent {agent_id} has no free chat slot")
        self.agent_id = agent_id


class InvalidTargetAgentError(RoutingError):
    """Transfer target is missing, offline, not available or full."""
    pass


class ConversationAlreadyAssignedError(RoutingError):
    """Conversation already has an agent."""

    def __init__(self, conversation_id: str, agent_id: Optional[str] = None):
        super().__init__(f"Conversation {conversation_id} is already assigned")
        self.conversation_id = conversation_id
        self.agent_id = agent_id


class ConversationNotFoundError(RoutingError):
    """Conversation not found."""
    pass


class AgentNotFoundError(RoutingError):
    """Agent not found."""
    pass


class PersistenceError(RoutingError):
    """The persistence store failed to complete an operation."""
    pass


class InvalidRoutingConfigError(RoutingError):
    """Routing configuration update was rejected."""
    pass


# =============================================================================
# Exports
# =============================================================================


__all__ = [
    # Enums
    "AgentState",
    "EXPIRING_STATES",
    "RoutingStrategyType",
    "AssignmentType",
    "ConversationStatus",
    "QueueEntryStatus",
    "OutcomeStatus",
    # Agent types
    "StateRule",
    "STATE_RULES",
    "Agent",
    # Conversation types
    "VisitorProfile",
    "Conversation",
    # Queue types
    "QueueEntry",
    # Routing types
    "DEFAULT_PRECEDENCE",
    "RoutingConfig",
    "AssignmentRecord",
    "RoutingContext",
    "AssignmentOutcome",
    # Exceptions
    "RoutingError",
    "CapacityExceededError",
    "InvalidTargetAgentError",
    "ConversationAlreadyAssignedError",
    "ConversationNotFoundError",
    "AgentNotFoundError",
    "PersistenceError",
    "InvalidRoutingConfigError",
]
