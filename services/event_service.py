# ============================================================================
# EVENT SERVICE
# ============================================================================
# STATUS: Core - Event emission, timeline retrieval, notifications
# PURPOSE: Record run lifecycle events and hand notifications to a sink
# CREATED: 19 OCT 2026
# ============================================================================
"""
Event Service

Provides methods to emit events at key lifecycle points of a run.
Events are fire-and-forget - failures are logged but don't propagate.

Notifications go through a NotificationSink. Delivery channels (chat,
mail, paging) are external; the default sink writes to the log.
"""

import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional

from core.models.events import EventStatus, EventType, Notification, RunEvent

logger = logging.getLogger(__name__)


# ============================================================================
# NOTIFICATION SINKS
# ============================================================================

class NotificationSink:
    """Interface for notification delivery."""

    async def notify(self, notification: Notification) -> None:
        raise NotImplementedError


class LoggingNotificationSink(NotificationSink):
    """Default sink: writes notifications to the log at matching severity."""

    _LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "critical": logging.CRITICAL}

    async def notify(self, notification: Notification) -> None:
        logger.log(
            self._LEVELS.get(notification.severity, logging.INFO),
            f"NOTIFY [{notification.severity}] {notification.title}: {notification.message}"
            + (f" (run={notification.run_id})" if notification.run_id else ""),
        )


class MemoryNotificationSink(NotificationSink):
    """Collects notifications in memory (tests and the status endpoint)."""

    def __init__(self):
        self.notifications: List[Notification] = []

    async def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)


# ============================================================================
# EVENT SERVICE
# ============================================================================

class EventService:
    """Service for emitting and retrieving run events."""

    def __init__(
        self,
        sink: Optional[NotificationSink] = None,
        max_events_per_run: int = 5000,
    ):
        """
        Initialize event service.

        Args:
            sink: Notification sink (default logs)
            max_events_per_run: Oldest events are dropped beyond this
        """
        self.sink = sink or LoggingNotificationSink()
        self.max_events_per_run = max_events_per_run
        self._events: Dict[str, List[RunEvent]] = defaultdict(list)
        self._next_id = 1

    # =========================================================================
    # CORE EMIT METHOD
    # =========================================================================

    async def emit(
        self,
        event_type: EventType,
        run_id: str,
        job: Optional[str] = None,
        step: Optional[str] = None,
        status: EventStatus = EventStatus.INFO,
        data: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> Optional[RunEvent]:
        """
        Emit an event. Fire-and-forget - logs errors but doesn't raise.

        Returns:
            Created RunEvent or None if emission failed
        """
        try:
            event = RunEvent.job_event(
                run_id=run_id,
                job=job,
                event_type=event_type,
                status=status,
                step=step,
                event_data=data,
                error_message=error_message,
            ) if job else RunEvent.run_event(
                run_id=run_id,
                event_type=event_type,
                status=status,
                event_data=data,
                error_message=error_message,
            )
            event.event_id = self._next_id
            self._next_id += 1
            timeline = self._events[run_id]
            timeline.append(event)
            if len(timeline) > self.max_events_per_run:
                del timeline[: len(timeline) - self.max_events_per_run]

            logger.debug(
                f"Event emitted: {event_type.value} for run={run_id}"
                + (f", job={job}" if job else "")
            )
            return event

        except Exception as e:
            logger.warning(f"Failed to emit event {event_type.value} for run {run_id}: {e}")
            return None

    async def notify(self, notification: Notification) -> None:
        """Send a notification. Fire-and-forget."""
        try:
            await self.sink.notify(notification)
        except Exception as e:
            logger.warning(f"Notification sink failed for '{notification.title}': {e}")

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_timeline(
        self,
        run_id: str,
        job: Optional[str] = None,
        event_types: Optional[List[EventType]] = None,
        limit: int = 500,
    ) -> List[RunEvent]:
        """Events of one run in emission order."""
        events = self._events.get(run_id, [])
        if job is not None:
            events = [e for e in events if e.job == job]
        if event_types:
            events = [e for e in events if e.event_type in event_types]
        return events[-limit:]

    def get_last_event(self, run_id: str) -> Optional[RunEvent]:
        events = self._events.get(run_id)
        return events[-1] if events else None

    def purge(self, run_id: str) -> int:
        """Drop a run's timeline (used with artifact garbage collection)."""
        return len(self._events.pop(run_id, []))


__all__ = [
    "NotificationSink",
    "LoggingNotificationSink",
    "MemoryNotificationSink",
    "EventService",
]
