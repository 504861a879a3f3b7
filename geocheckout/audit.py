from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from geocheckout.models import AuditActorType, AuditLog
from geocheckout.services.clock import normalize_ts

logger = logging.getLogger("geocheckout.audit")


def log_audit(
    db: Session,
    *,
    actor_type: AuditActorType,
    actor_id: str,
    action: str,
    success: bool,
    entity_type: str | None = None,
    entity_id: str | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
    ts_utc: datetime | None = None,
) -> bool:
    """Write one audit row in its own commit.

    Audit rows are observability only; a failed write is logged and reported
    through the return value, never raised.
    """
    event = {
        "action": action,
        "actor_type": actor_type.value,
        "actor_id": actor_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "success": success,
    }
    db.add(
        AuditLog(
            ts_utc=normalize_ts(ts_utc),
            actor_type=actor_type,
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            ip=ip,
            user_agent=user_agent,
            success=success,
            details=details or {},
        )
    )
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("audit_write_failed", extra={"request_id": request_id, **event})
        return False

    logger.info("audit_event", extra={"request_id": request_id, "details": details or {}, **event})
    return True
