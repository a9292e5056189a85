from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from gadget_lending.models.lending_models import AuditLog


def log_audit(
    db: Session,
    entity_type: str,
    entity_id: int,
    action: str,
    details: str | None = None,
    admin_id: int | None = None,
) -> None:
    db.add(
        AuditLog(
            entity_type=entity_type,
            entity_id=int(entity_id or 0),
            action=action,
            details=details,
            admin_id=admin_id,
            created_at=datetime.now(),
        )
    )
