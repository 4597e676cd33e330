"""Audit logging service: append-only record of checks, transitions and receipts."""

from typing import List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from procurement.errors import PersistenceError
from procurement.models.audit_log import AuditLog
from procurement.schemas.audit_log import AuditEvent
from procurement.schemas.context import CallerContext

logger = structlog.get_logger()


def _compute_changed_fields(
    before: Optional[dict], after: Optional[dict]
) -> Optional[list[str]]:
    """Diff two state dicts and return list of changed field names."""
    if not before or not after:
        return None
    changed = []
    all_keys = set(before.keys()) | set(after.keys())
    for key in sorted(all_keys):
        if before.get(key) != after.get(key):
            changed.append(key)
    return changed or None


def build_event(
    action: str,
    context: Optional[CallerContext] = None,
    entity_id: Optional[str] = None,
    decision: str = "recorded",
    reason: Optional[str] = None,
    before_state: Optional[dict] = None,
    after_state: Optional[dict] = None,
    metadata: Optional[dict] = None,
    entity_type: str = "PO",
) -> AuditEvent:
    return AuditEvent(
        actor_id=context.user_id if context else None,
        actor_email=context.email if context else None,
        actor_role=context.role.value if context else None,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        decision=decision,
        reason=reason,
        before_state=before_state,
        after_state=after_state,
        changed_fields=_compute_changed_fields(before_state, after_state),
        metadata=metadata or {},
    )


class AuditRecorder(Protocol):
    async def record(self, event: AuditEvent) -> AuditEvent: ...

    async def list_events(self, entity_id: Optional[str] = None) -> List[AuditEvent]: ...


class InMemoryAuditRecorder:
    def __init__(self):
        self._events: List[AuditEvent] = []

    async def record(self, event: AuditEvent) -> AuditEvent:
        self._events.append(event)
        logger.info(
            "audit_log_created",
            action=event.action,
            entity_id=event.entity_id,
            actor_id=event.actor_id,
            decision=event.decision,
        )
        return event

    async def list_events(self, entity_id: Optional[str] = None) -> List[AuditEvent]:
        if entity_id is None:
            return list(self._events)
        return [e for e in self._events if e.entity_id == str(entity_id)]


class SqlAuditRecorder:
    """
    Writes audit events to the audit_logs table.

    Uses session.flush(); the caller owns the transaction.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(self, event: AuditEvent) -> AuditEvent:
        row = AuditLog(
            id=event.id,
            actor_id=event.actor_id,
            actor_email=event.actor_email,
            actor_role=event.actor_role,
            action=event.action,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            decision=event.decision,
            reason=event.reason,
            before_state=event.before_state,
            after_state=event.after_state,
            changed_fields=event.changed_fields,
            request_id=structlog.contextvars.get_contextvars().get("request_id"),
            extra_metadata=event.metadata,
            created_at=event.timestamp,
        )
        self.session.add(row)
        try:
            await self.session.flush()
        except SQLAlchemyError as exc:
            # Leave the session usable for the rest of the request.
            await self.session.rollback()
            logger.error("audit_log_failed", action=event.action, error=str(exc))
            raise PersistenceError(
                "Failed to write audit event", metadata={"action": event.action}
            ) from exc

        logger.info(
            "audit_log_created",
            action=event.action,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            actor_id=event.actor_id,
            decision=event.decision,
        )
        return event

    async def list_events(self, entity_id: Optional[str] = None) -> List[AuditEvent]:
        query = select(AuditLog).order_by(AuditLog.created_at)
        if entity_id is not None:
            query = query.where(AuditLog.entity_id == str(entity_id))
        result = await self.session.execute(query)
        return [
            AuditEvent(
                id=row.id,
                timestamp=row.created_at,
                actor_id=row.actor_id,
                actor_email=row.actor_email,
                actor_role=row.actor_role,
                action=row.action,
                entity_type=row.entity_type,
                entity_id=row.entity_id,
                decision=row.decision,
                reason=row.reason,
                before_state=row.before_state,
                after_state=row.after_state,
                changed_fields=row.changed_fields,
                metadata=row.extra_metadata or {},
            )
            for row in result.scalars().all()
        ]
