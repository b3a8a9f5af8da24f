from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from models.lending_models import AuditLog


def log_audit(
    db: Session,
    entity_type: str,
    entity_id: str,
    action: str,
    details: str | None = None,
    user_id: str | None = None,
) -> None:
    # Added to the caller's unit of work so the trail commits or rolls back with the change.
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=str(entity_id),
            Action=action,
            Details=(details or "")[:2000] or None,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )
