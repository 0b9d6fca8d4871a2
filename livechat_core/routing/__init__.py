"""
Conversation Routing
====================

Assignment of visitor conversations to agents: routing strategies and
precedence rules, per-tenant waiting queues, transfers and release of
agents, with background sweeps for queue timeouts and expired agent states.
"""

from livechat_core.routing.base import (
    # Enums
    AgentState,
    EXPIRING_STATES,
    RoutingStrategyType,
    AssignmentType,
    ConversationStatus,
    QueueEntryStatus,
    OutcomeStatus,
    # Types
    StateRule,
    STATE_RULES,
    Agent,
    VisitorProfile,
    Conversation,
    QueueEntry,
    DEFAULT_PRECEDENCE,
    RoutingConfig,
    AssignmentRecord,
    RoutingContext,
    AssignmentOutcome,
    # Exceptions
    RoutingError,
    CapacityExceededError,
    InvalidTargetAgentError,
    ConversationAlreadyAssignedError,
    ConversationNotFoundError,
    AgentNotFoundError,
    PersistenceError,
    InvalidRoutingConfigError,
)
from livechat_core.routing.store import (
    PersistenceStore,
    InMemoryPersistenceStore,
)
from livechat_core.routing.notifier import (
    RoutingEvent,
    Notifier,
    LoggingNotifier,
    agent_channel,
    conversation_channel,
    tenant_agents_channel,
)
from livechat_core.routing.directory import AgentDirectory
from livechat_core.routing.strategies import (
    StrategyResult,
    RoutingStrategy,
    LeastBusyStrategy,
    RoundRobinStrategy,
    SkillBasedStrategy,
    VipStrategy,
    LanguageStrategy,
    DepartmentStrategy,
)
from livechat_core.routing.queue import ChatQueue
from livechat_core.routing.assignment import (
    AssignmentFinalizer,
    TransferCoordinator,
    UnassignCoordinator,
)
from livechat_core.routing.engine import (
    RoutingRule,
    RoutingEngine,
)
from livechat_core.routing.schemas import RoutingConfigUpdate
from livechat_core.routing.service import RoutingService

__all__ = [
    # Enums
    "AgentState",
    "EXPIRING_STATES",
    "RoutingStrategyType",
    "AssignmentType",
    "ConversationStatus",
    "QueueEntryStatus",
    "OutcomeStatus",
    # Types
    "StateRule",
    "STATE_RULES",
    "Agent",
    "VisitorProfile",
    "Conversation",
    "QueueEntry",
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
    # Persistence
    "PersistenceStore",
    "InMemoryPersistenceStore",
    # Notifications
    "RoutingEvent",
    "Notifier",
    "LoggingNotifier",
    "agent_channel",
    "conversation_channel",
    "tenant_agents_channel",
    # Agents
    "AgentDirectory",
    # Strategies
    "StrategyResult",
    "RoutingStrategy",
    "LeastBusyStrategy",
    "RoundRobinStrategy",
    "SkillBasedStrategy",
    "VipStrategy",
    "LanguageStrategy",
    "DepartmentStrategy",
    # Queue
    "ChatQueue",
    # Assignment
    "AssignmentFinalizer",
    "TransferCoordinator",
    "UnassignCoordinator",
    # Engine
    "RoutingRule",
    "RoutingEngine",
    # Service
    "RoutingConfigUpdate",
    "RoutingService",
]
