"""Outbound notifications for notable orchestrator events."""

from abc import ABC, abstractmethod

import structlog

from devflow.engine.events import Event, EventType

log = structlog.get_logger(__name__)

# Events worth telling someone about; everything else stays in the logs.
NOTABLE_EVENTS = frozenset(
    {
        EventType.PROJECT_CREATED,
        EventType.PROJECT_CREATION_FAILED,
        EventType.PR_CREATED,
        EventType.CONFLICTS_DETECTED,
        EventType.WORKFLOW_COMPLETED,
        EventType.MILESTONE_CLOSED,
        EventType.ERROR,
    }
)


class NotificationSink(ABC):
    """Destination for orchestrator notifications."""

    @abstractmethod
    async def send(self, event: Event) -> None:
        """Deliver a notification for ``event``.

        Failures may raise; the orchestrator records them as warnings.
        """
        pass


class LoggingNotificationSink(NotificationSink):
    """Write notifications to the structured log."""

    def __init__(self) -> None:
        self.sent = 0

    async def send(self, event: Event) -> None:
        self.sent += 1
        log.info(
            "notification",
            event_type=event.type.value,
            source=event.source,
            timestamp=event.timestamp.isoformat(),
            payload=event.payload,
        )
