from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Protocol

from pydantic_core import to_jsonable_python

from staff_auth.core.clock import Clock, SystemClock
from staff_auth.core.context import get_tenant_id
from staff_auth.core.errors import InfrastructureError
from staff_auth.core.logging import get_audit_logger
from staff_auth.schemas.common import AuditAction
from staff_auth.storage.base import AuthStore
from staff_auth.storage.records import AuditEventRecord

logger = logging.getLogger(__name__)


def _fallback(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def serialize_for_audit(value: Any) -> Any:
    return to_jsonable_python(value, fallback=_fallback)


class AuditSink(Protocol):
    async def record_event(
        self, identity_id: uuid.UUID | None, action: AuditAction, metadata: dict[str, Any] | None = None
    ) -> None: ...


class StoreAuditSink:
    """Persists audit events through the store and mirrors them to the audit log stream.

    Recording is fire-and-forget for the caller: any failure is logged here and
    never propagates into the security decision that triggered it.
    """

    def __init__(self, store: AuthStore, clock: Clock | None = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self._audit_logger = get_audit_logger()

    async def record_event(self, identity_id, action, metadata=None) -> None:
        tenant_id = get_tenant_id()
        event = AuditEventRecord(
            identity_id=identity_id,
            action=AuditAction(action),
            created_at=self.clock.now(),
            tenant_id=None if tenant_id == "-" else tenant_id,
            details=serialize_for_audit(metadata or {}),
        )
        self._audit_logger.info(
            event.action.value,
            extra={
                "audit": {
                    "identity_id": str(identity_id) if identity_id else None,
                    "action": event.action.value,
                    "details": event.details,
                }
            },
        )
        try:
            async with self.store.transaction() as repo:
                await repo.add_audit_event(event)
        except InfrastructureError:
            logger.exception("Failed to persist audit event action=%s", event.action.value)


async def record_safely(
    sink: AuditSink, identity_id: uuid.UUID | None, action: AuditAction, metadata: dict[str, Any] | None = None
) -> None:
    """Call any sink without letting its failure reach the caller."""
    try:
        await sink.record_event(identity_id, action, metadata)
    except Exception:
        logger.exception("Audit sink failed action=%s", getattr(action, "value", action))
