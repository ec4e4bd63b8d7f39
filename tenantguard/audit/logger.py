"""Persistent sink for validation audit entries.

Insert-only; uses its own connection so entries survive rollbacks of the
calling transaction.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from sqlalchemy import insert

from tenantguard.models.database import ValidationAuditLog, _new_uuid, as_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from tenantguard.models.domain import ValidationAuditEntry

logger = structlog.get_logger(__name__)

_MAX_REASON_CHARS = 1024


class AuditLogger:
    """Writes each gateway decision to ``validation_audit_logs``."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def write(self, entry: ValidationAuditEntry) -> None:
        """Persist one entry. Failures are logged, never raised."""
        try:
            async with self._engine.begin() as conn:
                await conn.execute(
                    insert(ValidationAuditLog).values(
                        id=_new_uuid(),
                        timestamp=as_utc(entry.timestamp),
                        operation=str(entry.operation),
                        resource=entry.resource,
                        resource_id=entry.resource_id,
                        requested_tenant_id=entry.requested_tenant_id,
                        acting_tenant_id=entry.acting_tenant_id,
                        acting_user_id=entry.acting_user_id,
                        acting_role=entry.acting_role,
                        is_super_admin=entry.is_super_admin,
                        result=str(entry.result),
                        reason=entry.reason[:_MAX_REASON_CHARS],
                    )
                )
        except Exception:
            # The in-memory entry already exists; persistence is best effort
            logger.exception(
                "validation_audit_persist_failed",
                operation=str(entry.operation),
                resource=entry.resource,
            )
