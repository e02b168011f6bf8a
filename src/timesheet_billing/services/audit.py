"""Audit records and sinks.

Every state transition, approval, adjustment, rate change and snapshot emits
an AuditRecord. Persisting the trail belongs to the host application; the
engine only hands records to one or more sinks. Sinks are isolated: if one
fails, the failure is logged and the remaining sinks still receive the
record. A failing sink never breaks the operation that produced the record.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from timesheet_billing.models import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditRecord:
    """One audited change."""

    actor_id: UUID | None
    action: str
    entity_type: str
    entity_id: UUID | str
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "actor_id": str(self.actor_id) if self.actor_id else None,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id),
            "before": self.before,
            "after": self.after,
            "occurred_at": self.occurred_at.isoformat(),
        }


@runtime_checkable
class AuditSink(Protocol):
    """Protocol for audit record consumers."""

    def record(self, record: AuditRecord) -> None:
        """Consume one audit record."""
        ...


class LoggingAuditSink:
    """Writes audit records to the application log."""

    def __init__(self, logger_name: str = "timesheet_billing.audit"):
        self._logger = logging.getLogger(logger_name)

    def record(self, record: AuditRecord) -> None:
        self._logger.info(
            "audit %s %s %s actor=%s before=%s after=%s",
            record.action,
            record.entity_type,
            record.entity_id,
            record.actor_id,
            record.before,
            record.after,
        )


class MemoryAuditSink:
    """Keeps records in a list; used by tests and previews."""

    def __init__(self) -> None:
        self.records: list[AuditRecord] = []

    def record(self, record: AuditRecord) -> None:
        self.records.append(record)

    def actions(self) -> list[str]:
        return [r.action for r in self.records]

    def clear(self) -> None:
        self.records.clear()


class AuditTrail:
    """Fans records out to sinks with failure isolation."""

    def __init__(self, sinks: list[AuditSink] | None = None) -> None:
        self._sinks: list[AuditSink] = list(sinks) if sinks is not None else [LoggingAuditSink()]

    def add_sink(self, sink: AuditSink) -> None:
        self._sinks.append(sink)

    def emit(
        self,
        actor_id: UUID | None,
        action: str,
        entity_type: str,
        entity_id: UUID | str,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
    ) -> AuditRecord:
        """Build a record and hand it to every sink.

        Returns the record so callers can surface it.
        """
        record = AuditRecord(
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            before=before,
            after=after,
        )
        for sink in self._sinks:
            try:
                sink.record(record)
            except Exception:
                logger.exception(
                    "Audit sink %s failed for %s on %s %s",
                    sink,
                    action,
                    entity_type,
                    entity_id,
                )
        return record
