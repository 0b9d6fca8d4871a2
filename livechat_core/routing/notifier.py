"""
Routing Notifications

Realtime notification sink for routing events. The engine publishes to three
kinds of channel: the tenant's agent room, an individual agent, and a single
conversation (the visitor side). Delivery is best effort; a failed or slow
publish is logged and never retried, and never fails the routing operation
that triggered it.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


# =============================================================================
# Events
# =============================================================================


class RoutingEvent:
    """Event names published by the routing engine."""

    CONVERSATION_NEW = "conversation:new"
    CONVERSATION_ASSIGNED = "conversation:assigned"
    CONVERSATION_TRANSFERRED = "conversation:transferred"
    AGENT_ASSIGNED = "agent:assigned"
    AGENT_STATE_CHANGED = "agent:state:changed"
    QUEUE_ADDED = "queue:added"
    QUEUE_UPDATED = "queue:updated"
    QUEUE_POSITION_UPDATED = "queue:position_updated"
    QUEUE_TIMEOUT = "queue:timeout"


def tenant_agents_channel(tenant_id: Optional[str]) -> str:
    """Room joined by every agent of a tenant."""
    return f"site:{tenant_id}:agents"


def agent_channel(agent_id: str) -> str:
    return f"user:{agent_id}"


def conversation_channel(conversation_id: str) -> str:
    return f"conv:{conversation_id}"


# =============================================================================
# Notifiers
# =============================================================================


class Notifier(ABC):
    """Abstract realtime publisher."""

    @abstractmethod
    async def publish(
        self,
        channel: str,
        event: str,
        payload: Dict[str, Any],
    ) -> None:
        """Deliver one event to one channel."""
        pass


class LoggingNotifier(Notifier):
    """Notifier that only records events in the log."""

    async def publish(
        self,
        channel: str,
        event: str,
        payload: Dict[str, Any],
    ) -> None:
        logger.debug("notification_published", channel=channel, notification=event, payload=payload)


async def publish_safely(
    notifier: Notifier,
    channel: str,
    event: str,
    payload: Dict[str, Any],
    timeout: float = 5.0,
) -> bool:
    """
    Publish without letting delivery problems reach the caller.

    Returns:
        True if the notifier accepted the event within ``timeout`` seconds
    """
    try:
        await asyncio.wait_for(notifier.publish(channel, event, payload), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        logger.warning("notification_timeout", channel=channel, notification=event, timeout=timeout)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning("notification_failed", channel=channel, notification=event, error=str(e))
    return False


__all__ = [
    "RoutingEvent",
    "tenant_agents_channel",
    "agent_channel",
    "conversation_channel",
    "Notifier",
    "LoggingNotifier",
    "publish_safely",
]
