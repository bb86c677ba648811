from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import require_roles
from ..db import get_db
from ..models.models import Profile
from ..services.audit import get_user_activities, serialize_activity
from ..services.lifecycle import parse_uuid


router = APIRouter(prefix="/api/user-activities", tags=["activities"])


@router.get("")
def list_user_activities(
    user_id: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    _: Profile = Depends(require_roles("admin")),
):
    entries = get_user_activities(
        db,
        user_id=parse_uuid(user_id, "Id utente") if user_id else None,
        entity_type=entity_type,
        entity_id=entity_id,
        limit=limit,
        offset=offset,
    )
    return [serialize_activity(a) for a in entries]
