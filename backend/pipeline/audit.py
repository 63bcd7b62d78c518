"""Best-effort writer for the audit log. A failing sink never fails the caller."""

from typing import Any, Dict, Optional

import structlog

from schemas import AuditEventType, AuditLogEntry
from storage import IAuditLog


class AuditEmitter:

    def __init__(self, audit: IAuditLog, component: str):
        self.audit = audit
        self._logger = structlog.get_logger().bind(component=component)

    async def emit(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        correlation_id: str,
        severity: str = "INFO",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry = AuditLogEntry(
            correlation_id=correlation_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            severity=severity,
            metadata=metadata or {},
        )
        try:
            await self.audit.append(entry)
        except Exception as e:
            self._logger.error("audit_append_failed",
                               correlation_id=correlation_id,
                               event_type=event_type.value,
                               entity_id=entity_id,
                               error=str(e))
            return

        self._logger.debug("audit_event",
                           correlation_id=correlation_id,
                           event_type=event_type.value,
                           entity_type=entity_type,
                           entity_id=entity_id)
