"""
User activity log.
Append-only entries with an integrity hash, written inside the caller's
transaction so they land together with the change they describe.
"""
import hashlib
import json
from datetime import datetime
from typing import Optional, Dict, Any

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.models import UserActivity


def _integrity_hash(data: Dict[str, Any], secret: str) -> str:
    canonical = {k: v for k, v in data.items() if v is not None}
    canonical_json = json.dumps(canonical, sort_keys=True, default=str)
    return hashlib.sha256(f"{canonical_json}:{secret}".encode()).hexdigest()


def log_user_activity(
    db: Session,
    user_id,
    action_type: str,
    entity_type: str,
    entity_id,
    metadata: Optional[Dict] = None,
    integrity_secret: Optional[str] = None,
) -> Optional[UserActivity]:
    """
    Record one activity entry.

    Args:
        db: Database session (not committed here)
        user_id: Profile id of the actor, None for system actions
        action_type: create_todolist|complete_task|delete_todolist|update_device|...
        entity_type: device|kpi|todolist|task
        entity_id: Id of the touched entity
        metadata: Extra context (batch_delete, group_key, ...)
        integrity_secret: Secret mixed into the integrity hash

    Returns:
        The entry, or None when it could not be stored
    """
    created_at = datetime.utcnow()
    integrity_hash = None
    if integrity_secret:
        integrity_hash = _integrity_hash(
            {
                "user_id": str(user_id) if user_id else None,
                "action_type": action_type,
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "metadata": metadata,
                "created_at": created_at.isoformat(),
            },
            integrity_secret,
        )
    activity = UserActivity(
        user_id=user_id,
        action_type=action_type,
        entity_type=entity_type,
        entity_id=str(entity_id),
        details=metadata,
        created_at=created_at,
        integrity_hash=integrity_hash,
    )
    try:
        with db.begin_nested():
            db.add(activity)
    except SQLAlchemyError as e:
        structlog.get_logger().warning(
            "user_activity_log_failed",
            action_type=action_type,
            entity_type=entity_type,
            entity_id=str(entity_id),
            error=str(e),
        )
        return None
    return activity


def get_user_activities(
    db: Session,
    user_id=None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> list:
    query = db.query(UserActivity)
    if user_id:
        query = query.filter(UserActivity.user_id == user_id)
    if entity_type:
        query = query.filter(UserActivity.entity_type == entity_type)
    if entity_id:
        query = query.filter(UserActivity.entity_id == str(entity_id))
    return query.order_by(UserActivity.created_at.desc()).limit(limit).offset(offset).all()


def serialize_activity(a: UserActivity) -> Dict[str, Any]:
    return {
        "id": str(a.id),
        "user_id": str(a.user_id) if a.user_id else None,
        "action_type": a.action_type,
        "entity_type": a.entity_type,
        "entity_id": a.entity_id,
        "metadata": a.details,
        "created_at": a.created_at.isoformat() if a.created_at else None,
    }
