"""Audit service for account-sensitive events."""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from authbackend.core.database import store_errors
from authbackend.models.audit import AuditEvent


class AuditService:
    """Persist immutable audit trail entries."""

    @staticmethod
    def log_event(
        db: Session,
        *,
        user_id: Optional[str],
        action: str,
        ip_address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            user_id=user_id,
            action=action,
            ip_address=ip_address,
            metadata_json=json.dumps(metadata or {}, ensure_ascii=False),
        )
        with store_errors(db):
            db.add(event)
            db.commit()
            db.refresh(event)
        return event


audit_service = AuditService()
