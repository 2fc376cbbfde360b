"""
auth/audit.py -- Append-only security audit trail.

record() is fire-and-forget from the caller's point of view: a failed audit
write is logged at ERROR with its traceback and counted in write_failures
(surfaced by /health), but never raised into the security operation it
accompanies. Entries are never updated or deleted here.

Each event is also mirrored to the "tokenwarden.audit" logger so operators
without database access still see critical events.

Layer rule: no imports from api/ or tokenstore/.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.engine import Engine

from auth.models import AuditEvent
from auth.store import audit_logs, from_iso, to_iso

logger = logging.getLogger("tokenwarden.audit")

_SEVERITY_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "critical": logging.CRITICAL,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditLogger:
    """Writes AuditEvents to the audit_logs table.

    Usage:
        audit = AuditLogger(credential_store.engine)
        audit.record(AuditEvent(action="login", success=False, details={"reason": "bad_password"}))
        audit.list_entries(action="login", limit=20)
    """

    def __init__(self, engine: Engine, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self.engine = engine
        self._clock = clock
        self._failures_lock = threading.Lock()
        self._write_failures = 0

    @property
    def write_failures(self) -> int:
        return self._write_failures

    def record(self, event: AuditEvent) -> None:
        created_at = event.created_at or self._clock()
        logger.log(
            _SEVERITY_LEVELS.get(event.severity, logging.INFO),
            "audit action=%s success=%s user=%s resource=%s/%s origin=%s",
            event.action,
            event.success,
            event.user_id,
            event.resource,
            event.resource_id,
            event.origin,
        )
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    audit_logs.insert().values(
                        user_id=event.user_id,
                        action=event.action,
                        resource=event.resource,
                        resource_id=event.resource_id,
                        details=json.dumps(event.details, default=str, sort_keys=True),
                        origin=event.origin,
                        user_agent=event.user_agent,
                        severity=event.severity,
                        success=1 if event.success else 0,
                        created_at=to_iso(created_at),
                    )
                )
        except Exception:
            # Never propagate: the audited operation has already reached its decision.
            with self._failures_lock:
                self._write_failures += 1
            logger.exception("Audit write failed for action=%s user=%s", event.action, event.user_id)

    def list_entries(
        self,
        *,
        user_id: str | None = None,
        action: str | None = None,
        success: bool | None = None,
        severity: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditEvent]:
        """Newest first, optionally filtered."""
        query = select(audit_logs)
        if user_id is not None:
            query = query.where(audit_logs.c.user_id == user_id)
        if action is not None:
            query = query.where(audit_logs.c.action == action)
        if success is not None:
            query = query.where(audit_logs.c.success == (1 if success else 0))
        if severity is not None:
            query = query.where(audit_logs.c.severity == severity)
        query = query.order_by(audit_logs.c.created_at.desc(), audit_logs.c.id.desc()).limit(limit).offset(offset)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_event(r) for r in rows]


def _row_to_event(row) -> AuditEvent:
    try:
        details = json.loads(row.details or "{}")
    except ValueError:
        details = {"raw": row.details}
    return AuditEvent(
        id=row.id,
        action=row.action,
        success=bool(row.success),
        user_id=row.user_id,
        resource=row.resource,
        resource_id=row.resource_id,
        details=details,
        origin=row.origin,
        user_agent=row.user_agent,
        severity=row.severity,
        created_at=from_iso(row.created_at),
    )
