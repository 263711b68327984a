from __future__ import annotations

import json
from typing import Any, Callable, Dict, Optional, Protocol

from coursegate.logging import get_logger, get_trace_id, sanitize_response_data
from coursegate.storage.models import AuditEvent, utcnow

logger = get_logger(__name__)

AUDIT_LIST_KEY = "audit:events"


class AuditSink(Protocol):
    async def write(self, event: AuditEvent) -> None:
        ...


class StructlogAuditSink:
    """Emit audit events as structured log lines."""

    def __init__(self) -> None:
        self.logger = get_logger("coursegate.audit")

    async def write(self, event: AuditEvent) -> None:
        data = event.to_dict()
        # "event" is the structlog message key
        self.logger.info("audit_event", audit_event=data.pop("event"), **data)


class RedisAuditSink:
    """Append audit events to a capped Redis list, newest first."""

    def __init__(self, client: Any, *, max_events: int = 10_000, key: str = AUDIT_LIST_KEY) -> None:
        self.client = client
        self.max_events = max_events
        self.key = key

    async def write(self, event: AuditEvent) -> None:
        pipe = self.client.pipeline(transaction=True)
        pipe.lpush(self.key, json.dumps(event.to_dict()))
        pipe.ltrim(self.key, 0, self.max_events - 1)
        await pipe.execute()


class MemoryAuditSink:
    """Keeps events in a list; used by tests and local development."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def write(self, event: AuditEvent) -> None:
        self.events.append(event)


class AuditService:
    """Records security-relevant events without ever failing the caller."""

    def __init__(self, sink: AuditSink, *, clock: Callable = utcnow) -> None:
        self.sink = sink
        self._clock = clock

    async def record(
        self,
        event: str,
        *,
        user_id: Optional[str] = None,
        trace_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry = AuditEvent(
            event=event,
            occurred_at=self._clock(),
            user_id=user_id,
            trace_id=trace_id or get_trace_id(),
            metadata=sanitize_response_data(metadata or {}),
        )
        try:
            await self.sink.write(entry)
        except Exception as exc:
            logger.error(
                "audit_record_failed",
                audit_event=event,
                user_id=user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
