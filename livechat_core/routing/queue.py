"""
Chat Queue

Per-tenant waiting list for conversations no agent could take. Entries are
ordered by priority (descending), then arrival time, then insertion sequence.
Every change to the waiting set recomputes positions and estimated waits for
the whole tenant under a per-tenant lock; visitors are told about their new
position after the lock is released.
"""

import asyncio
import math
import re
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import structlog

from livechat_core.config import RoutingSettings, get_settings

from .base import (
    QueueEntry,
    QueueEntryStatus,
)
from .directory import AgentDirectory
from .notifier import (
    LoggingNotifier,
    Notifier,
    RoutingEvent,
    conversation_channel,
    publish_safely,
    tenant_agents_channel,
)
from .store import PersistenceStore

logger = structlog.get_logger(__name__)


TIMEOUT_MESSAGE = "Sorry, all of our agents are busy. Please try again later."

_PERIOD_PATTERN = re.compile(r"^(\d+)([dh])$")


def parse_period(period: str) -> timedelta:
    """Parse a stats period such as ``7d`` or ``24h``."""
    match = _PERIOD_PATTERN.match(period.strip().lower())
    if not match:
        raise ValueError(f"Invalid period {period!r}; expected e.g. '7d' or '24h'")

    amount, unit = int(match.group(1)), match.group(2)
    if unit == "d":
        return timedelta(days=amount)
    return timedelta(hours=amount)


class ChatQueue:
    """
    Manages waiting conversations.

    Features:
    - Idempotent enqueue per conversation
    - Priority and FIFO ordering with live positions
    - Wait time estimation from recent chat durations
    - Skill and department aware dequeue
    - Timeout sweep
    """

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
        self._tenant_locks: Dict[Optional[str], asyncio.Lock] = defaultdict(asyncio.Lock)

    # -------------------------------------------------------------------------
    # Enqueue
    # -------------------------------------------------------------------------

    async def enqueue(
        self,
        conversation_id: str,
        visitor_id: str,
        tenant_id: Optional[str],
        priority: int = 0,
        required_skills: Optional[Iterable[str]] = None,
        preferred_department_id: Optional[str] = None,
        timeout_minutes: Optional[int] = None,
    ) -> QueueEntry:
        """
        Add a conversation to its tenant's queue.

        A conversation that is already waiting keeps its existing entry.
        """
        now = datetime.utcnow()
        timeout_minutes = timeout_minutes or self._settings.default_max_wait_minutes

        entry, created = await self._store.insert_queue_entry(
            QueueEntry(
                id="",
                conversation_id=conversation_id,
                visitor_id=visitor_id,
                tenant_id=tenant_id,
                priority=priority,
                required_skills=set(required_skills or ()),
                preferred_department_id=preferred_department_id,
                entered_at=now,
                timeout_at=now + timedelta(minutes=timeout_minutes),
            )
        )
        if not created:
            logger.warning(
                "conversation_already_queued",
                conversation_id=conversation_id,
                entry_id=entry.id,
            )
            return entry

        # The visitor may have left, or another router assigned the
        # conversation, while this one was still deciding
        conversation = await self._store.get_conversation(conversation_id)
        if conversation and not conversation.is_open:
            cancelled = await self._store.update_queue_entry_status(
                entry.id,
                QueueEntryStatus.CANCELLED,
                at=now,
            )
            logger.info("queued_conversation_closed", conversation_id=conversation_id, entry_id=entry.id)
            return cancelled or entry
        if conversation and conversation.assigned_agent_id:
            resolved = await self._store.update_queue_entry_status(
                entry.id,
                QueueEntryStatus.ASSIGNED,
                assigned_agent_id=conversation.assigned_agent_id,
                at=now,
            )
            logger.info(
                "queued_conversation_assigned",
                conversation_id=conversation_id,
                entry_id=entry.id,
                agent_id=conversation.assigned_agent_id,
            )
            return resolved or entry

        waiting = await self.reindex(tenant_id)
        entry = next((e for e in waiting if e.id == entry.id), entry)

        logger.info(
            "conversation_queued",
            conversation_id=conversation_id,
            entry_id=entry.id,
            tenant_id=tenant_id,
            priority=priority,
            position=entry.queue_position,
            estimated_wait_minutes=entry.estimated_wait_minutes,
        )

        await self._publish(
            conversation_channel(conversation_id),
            RoutingEvent.QUEUE_ADDED,
            {
                "entry_id": entry.id,
                "position": entry.queue_position,
                "estimated_wait_minutes": entry.estimated_wait_minutes,
            },
        )
        return entry

    # -------------------------------------------------------------------------
    # Positions and wait estimates
    # -------------------------------------------------------------------------

    async def reindex(self, tenant_id: Optional[str]) -> List[QueueEntry]:
        """
        Recompute position and estimated wait of every waiting entry.

        Returns:
            Waiting entries in queue order with refreshed positions
        """
        async with self._tenant_locks[tenant_id]:
            waiting = await self._store.list_queue_entries(tenant_id, QueueEntryStatus.WAITING)
            waiting.sort(key=lambda e: e.sort_key)

            available, avg_minutes = await self._estimation_inputs(tenant_id)

            positions: Dict[str, Tuple[int, int]] = {}
            moved: List[QueueEntry] = []
            for index, entry in enumerate(waiting):
                position = index + 1
                eta = self._eta(position, available, avg_minutes)
                # Entries without a position yet are announced by enqueue
                if entry.queue_position and (
                    entry.queue_position != position or entry.estimated_wait_minutes != eta
                ):
                    moved.append(entry)
                entry.queue_position = position
                entry.estimated_wait_minutes = eta
                positions[entry.id] = (position, eta)

            await self._store.update_queue_positions(positions)

        logger.debug("queue_reindexed", tenant_id=tenant_id, waiting=len(waiting), moved=len(moved))

        await self._publish(
            tenant_agents_channel(tenant_id),
            RoutingEvent.QUEUE_UPDATED,
            {"tenant_id": tenant_id, "queue_length": len(waiting)},
        )
        for entry in moved:
            await self._publish(
                conversation_channel(entry.conversation_id),
                RoutingEvent.QUEUE_POSITION_UPDATED,
                {
                    "position": entry.queue_position,
                    "estimated_wait_minutes": entry.estimated_wait_minutes,
                },
            )

        return waiting

    async def estimate_wait_minutes(self, tenant_id: Optional[str], position: int) -> int:
        available, avg_minutes = await self._estimation_inputs(tenant_id)
        return self._eta(position, available, avg_minutes)

    async def average_chat_duration_minutes(self, tenant_id: Optional[str]) -> float:
        """Mean duration of the tenant's recently closed conversations."""
        since = datetime.utcnow() - timedelta(days=self._settings.eta_window_days)
        closed = await self._store.list_closed_conversations(
            tenant_id,
            since=since,
            limit=self._settings.eta_sample_size,
        )

        durations = [c.duration.total_seconds() / 60 for c in closed if c.duration is not None]
        if not durations:
            return self._settings.eta_default_chat_minutes

        average = sum(durations) / len(durations)
        return average if average > 0 else self._settings.eta_default_chat_minutes

    async def _estimation_inputs(self, tenant_id: Optional[str]) -> Tuple[int, float]:
        try:
            available = await self._directory.count_available_agents(tenant_id)
            avg_minutes = await self.average_chat_duration_minutes(tenant_id)
        except Exception as e:
            logger.warning("wait_estimate_failed", tenant_id=tenant_id, error=str(e))
            return 0, self._settings.eta_default_chat_minutes
        return available, avg_minutes

    @staticmethod
    def _eta(position: int, available_agents: int, avg_minutes: float) -> int:
        rounds = math.ceil(position / max(1, available_agents))
        return max(1, math.ceil(rounds * avg_minutes))

    # -------------------------------------------------------------------------
    # Dequeue and removal
    # -------------------------------------------------------------------------

    async def dequeue_next(
        self,
        tenant_id: Optional[str],
        agent_skills: Optional[Iterable[str]] = None,
        agent_department_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[QueueEntry]:
        """
        Find the first waiting entry an agent may take.

        Does not change the entry; callers claim it with :meth:`claim`.
        """
        now = now or datetime.utcnow()
        skills = set(agent_skills or ())

        candidates = [
            e for e in await self._store.list_queue_entries(tenant_id, QueueEntryStatus.WAITING)
            if not e.is_expired(now) and e.matches_agent(skills, agent_department_id)
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda e: e.sort_key)

    async def claim(self, entry_id: str, agent_id: str) -> Optional[QueueEntry]:
        """Mark a waiting entry as assigned; None if it was resolved meanwhile."""
        return await self._store.update_queue_entry_status(
            entry_id,
            QueueEntryStatus.ASSIGNED,
            expected=QueueEntryStatus.WAITING,
            assigned_agent_id=agent_id,
        )

    async def release_claim(self, entry_id: str) -> Optional[QueueEntry]:
        """
        Put a claimed entry back to waiting after a failed commit.

        When the entry cannot wait again (its conversation closed or was
        queued anew meanwhile) the claim is cancelled instead.

        Returns:
            The entry back in the queue, or None if it was not restored
        """
        entry = await self._store.update_queue_entry_status(
            entry_id,
            QueueEntryStatus.WAITING,
            expected=QueueEntryStatus.ASSIGNED,
        )
        if not entry:
            logger.warning("queue_claim_release_failed", entry_id=entry_id)
            await self.resolve_claim(entry_id, QueueEntryStatus.CANCELLED)
            return None

        logger.info("queue_claim_released", entry_id=entry_id, conversation_id=entry.conversation_id)
        await self.reindex(entry.tenant_id)
        return entry

    async def resolve_claim(
        self,
        entry_id: str,
        status: QueueEntryStatus,
        agent_id: Optional[str] = None,
    ) -> Optional[QueueEntry]:
        """
        Settle a claimed entry whose commit did not go to the claiming agent.

        ``cancelled`` when the conversation closed, or ``assigned`` to the
        agent that actually holds the conversation.
        """
        entry = await self._store.update_queue_entry_status(
            entry_id,
            QueueEntryStatus(status),
            expected=QueueEntryStatus.ASSIGNED,
            assigned_agent_id=agent_id,
        )
        if entry:
            logger.info(
                "queue_claim_resolved",
                entry_id=entry_id,
                conversation_id=entry.conversation_id,
                status=entry.status.value,
                agent_id=agent_id,
            )
        return entry

    async def remove(
        self,
        entry_id: str,
        reason: QueueEntryStatus = QueueEntryStatus.CANCELLED,
        agent_id: Optional[str] = None,
    ) -> Optional[QueueEntry]:
        """
        Resolve a waiting entry.

        Unknown or already resolved entries are logged and ignored.

        Returns:
            The resolved entry, or None if nothing changed
        """
        reason = QueueEntryStatus(reason)
        if reason == QueueEntryStatus.WAITING:
            raise ValueError("Cannot remove an entry with status 'waiting'")

        entry = await self._store.update_queue_entry_status(
            entry_id,
            reason,
            expected=QueueEntryStatus.WAITING,
            assigned_agent_id=agent_id,
        )
        if not entry:
            logger.info("queue_entry_not_waiting", entry_id=entry_id, reason=reason.value)
            return None

        logger.info(
            "queue_entry_removed",
            entry_id=entry_id,
            conversation_id=entry.conversation_id,
            reason=reason.value,
        )
        await self.reindex(entry.tenant_id)
        return entry

    async def remove_for_conversation(
        self,
        conversation_id: str,
        reason: QueueEntryStatus = QueueEntryStatus.CANCELLED,
        agent_id: Optional[str] = None,
    ) -> Optional[QueueEntry]:
        entry = await self._store.get_waiting_entry(conversation_id)
        if not entry:
            return None
        return await self.remove(entry.id, reason, agent_id=agent_id)

    # -------------------------------------------------------------------------
    # Timeouts
    # -------------------------------------------------------------------------

    async def sweep_timeouts(self, now: Optional[datetime] = None) -> int:
        """
        Time out every waiting entry past its deadline.

        The conversation is closed and the visitor told; a conversation that
        is already closed or has an agent gets no notice. Failures are
        logged and left for the next sweep.

        Returns:
            Number of entries timed out
        """
        now = now or datetime.utcnow()
        try:
            expired = await self._store.list_expired_entries(now)
        except Exception as e:
            logger.error("queue_timeout_sweep_failed", error=str(e))
            return 0

        timed_out = 0
        tenants: Set[Optional[str]] = set()

        for entry in expired:
            try:
                updated = await self._store.update_queue_entry_status(
                    entry.id,
                    QueueEntryStatus.TIMEOUT,
                    expected=QueueEntryStatus.WAITING,
                    at=now,
                )
                if not updated:
                    continue

                timed_out += 1
                tenants.add(entry.tenant_id)
                closed = await self._store.close_conversation(entry.conversation_id, now)
            except Exception as e:
                logger.error(
                    "queue_timeout_failed",
                    entry_id=entry.id,
                    conversation_id=entry.conversation_id,
                    error=str(e),
                )
                continue

            if not closed:
                # Already closed by the visitor, or picked up by an agent
                logger.info(
                    "queue_timeout_conversation_not_closed",
                    entry_id=entry.id,
                    conversation_id=entry.conversation_id,
                )
                continue

            logger.info(
                "queue_entry_timed_out",
                entry_id=entry.id,
                conversation_id=entry.conversation_id,
                waited_minutes=round(updated.wait_minutes(now), 1),
            )
            await self._publish(
                conversation_channel(entry.conversation_id),
                RoutingEvent.QUEUE_TIMEOUT,
                {"message": TIMEOUT_MESSAGE},
            )

        for tenant_id in tenants:
            try:
                await self.reindex(tenant_id)
            except Exception as e:
                logger.error("queue_reindex_failed", tenant_id=tenant_id, error=str(e))

        if timed_out:
            logger.info("queue_timeouts_handled", count=timed_out)
        return timed_out

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    async def get_waiting_entries(self, tenant_id: Optional[str]) -> List[QueueEntry]:
        entries = await self._store.list_queue_entries(tenant_id, QueueEntryStatus.WAITING)
        return sorted(entries, key=lambda e: e.sort_key)

    async def get_entry_for_conversation(self, conversation_id: str) -> Optional[QueueEntry]:
        return await self._store.get_waiting_entry(conversation_id)

    async def get_status(
        self,
        tenant_id: Optional[str],
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Summary of the live queue plus its entries in order."""
        now = now or datetime.utcnow()
        entries = await self.get_waiting_entries(tenant_id)
        waits = [e.wait_minutes(now) for e in entries]

        summary = {
            "waiting": len(entries),
            "average_wait_minutes": math.floor(sum(waits) / len(waits)) if waits else 0,
            "longest_wait_minutes": math.floor(max(waits)) if waits else 0,
            "vip_in_queue": sum(1 for e in entries if e.priority > 0),
        }

        items = []
        for entry, wait in zip(entries, waits):
            item = entry.to_dict()
            item["wait_minutes"] = round(wait, 1)
            items.append(item)

        return {"summary": summary, "items": items}

    async def get_stats(
        self,
        tenant_id: Optional[str],
        period: str = "7d",
    ) -> Dict[str, Any]:
        """Queue totals for entries that entered within ``period``."""
        since = datetime.utcnow() - parse_period(period)
        entries = await self._store.list_queue_entries(tenant_id, since=since)

        waits = [e.wait_minutes() for e in entries if e.removed_at is not None]
        counts: Dict[str, int] = defaultdict(int)
        for entry in entries:
            counts[entry.status.value] += 1

        return {
            "period": period,
            "tenant_id": tenant_id,
            "total_queued": len(entries),
            "waiting": counts[QueueEntryStatus.WAITING.value],
            "assigned": counts[QueueEntryStatus.ASSIGNED.value],
            "timeout": counts[QueueEntryStatus.TIMEOUT.value],
            "cancelled": counts[QueueEntryStatus.CANCELLED.value],
            "avg_wait_minutes": round(sum(waits) / len(waits), 1) if waits else 0.0,
            "max_wait_minutes": round(max(waits), 1) if waits else 0.0,
        }

    async def _publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        await publish_safely(
            self._notifier,
            channel,
            event,
            payload,
            timeout=self._settings.notify_timeout_seconds,
        )


__all__ = [
    "TIMEOUT_MESSAGE",
    "parse_period",
    "ChatQueue",
]
