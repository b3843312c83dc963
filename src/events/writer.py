"""Write-and-forget event writer for detached processes."""

import asyncio

from ..log_config import StructuredLogger, get_logger
from .models import Event, EventPayload
from .store import EventStore


class EventWriter:
    """
    Appends events with a bounded number of retries.

    Detached programs have no caller to report a failed write to, so after
    the last attempt the event is dropped with a log line and None is
    returned instead of raising.
    """

    MAX_ATTEMPTS = 3
    RETRY_BACKOFF_BASE = 0.5

    def __init__(
        self,
        store: EventStore,
        project_id: str,
        log: StructuredLogger | None = None,
    ):
        self.store = store
        self.project_id = project_id
        self.log = log or get_logger("event_writer", project_id=project_id)
        self.written = 0
        self.dropped = 0

    async def write(self, payload: EventPayload, session_id: str | None = None) -> Event | None:
        event_type = payload.event_type.value
        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            try:
                event = await self.store.append(self.project_id, payload, session_id)
                self.written += 1
                return event
            except Exception as e:
                if attempt == self.MAX_ATTEMPTS:
                    self.dropped += 1
                    self.log.error(
                        "event_store.write_dropped",
                        exc=e,
                        event_type=event_type,
                        attempts=attempt,
                    )
                    return None
                delay = self.RETRY_BACKOFF_BASE * (2 ** (attempt - 1))
                self.log.warn(
                    "event_store.write_retry",
                    exc=e,
                    event_type=event_type,
                    attempt=attempt,
                    delay_s=delay,
                )
                await asyncio.sleep(delay)
        return None
