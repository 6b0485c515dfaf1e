"""Audit trail of capability invocations.

Every CapabilityInvoker.invoke call emits exactly one InvocationRecord,
whatever gate or response terminated it. Sinks:

- InMemoryAuditLog: thread-safe, append-only list (tests, short-lived agents)
- LoggingAuditLog: emits each record as a structured log event
- CompositeAuditLog: fans a record out to several sinks
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, runtime_checkable

from atp.models.enums import InvocationOutcome
from atp.observability import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class InvocationRecord:
    """One audit entry.

    Attributes:
        agent_identity: Identity (or name) of the invoking agent
        capability_id: Capability invoked
        host: Target host
        timestamp: When the call started (UTC)
        outcome: Classification of how the call ended
        status_code: Final HTTP status, if a response arrived
        attempts: Network attempts made (0 when a gate stopped the call)
        duration_seconds: Wall time of the call
        error_code: ``atp:`` error code when the call failed
    """

    agent_identity: Optional[str]
    capability_id: str
    host: str
    timestamp: datetime
    outcome: InvocationOutcome
    status_code: Optional[int] = None
    attempts: int = 0
    duration_seconds: float = 0.0
    error_code: Optional[str] = None
    workflow_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_identity": self.agent_identity,
            "capability_id": self.capability_id,
            "host": self.host,
            "timestamp": self.timestamp.isoformat(),
            "outcome": self.outcome.value,
            "status_code": self.status_code,
            "attempts": self.attempts,
            "duration_seconds": round(self.duration_seconds, 6),
            "error_code": self.error_code,
            "workflow_id": self.workflow_id,
        }


@runtime_checkable
class AuditLog(Protocol):
    """Sink for invocation records."""

    def record(self, entry: InvocationRecord) -> None: ...

    def records(self) -> list[InvocationRecord]: ...


class InMemoryAuditLog:
    """Append-only in-memory audit log.

    Example:
        >>> log = InMemoryAuditLog()
        >>> log.record(entry)
        >>> log.records()[-1].outcome
        <InvocationOutcome.SUCCESS: 'success'>
    """

    def __init__(self) -> None:
        self._entries: list[InvocationRecord] = []
        self._lock = threading.Lock()

    def record(self, entry: InvocationRecord) -> None:
        with self._lock:
            self._entries.append(entry)

    def records(self) -> list[InvocationRecord]:
        with self._lock:
            return list(self._entries)

    def for_capability(self, capability_id: str) -> list[InvocationRecord]:
        return [entry for entry in self.records() if entry.capability_id == capability_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class LoggingAuditLog:
    """Emits every record through structlog; keeps nothing in memory."""

    def __init__(self, event: str = "atp.audit.invocation") -> None:
        self._event = event

    def record(self, entry: InvocationRecord) -> None:
        fields = entry.to_dict()
        # the log processor chain owns the "timestamp" key
        fields["invoked_at"] = fields.pop("timestamp")
        if entry.outcome is InvocationOutcome.SUCCESS:
            logger.info(self._event, **fields)
        else:
            logger.warning(self._event, **fields)

    def records(self) -> list[InvocationRecord]:
        return []


@dataclass
class CompositeAuditLog:
    """Fans each record out to several sinks; ``records`` reads the first."""

    sinks: list[AuditLog] = field(default_factory=list)

    def record(self, entry: InvocationRecord) -> None:
        for sink in self.sinks:
            sink.record(entry)

    def records(self) -> list[InvocationRecord]:
        return self.sinks[0].records() if self.sinks else []


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
