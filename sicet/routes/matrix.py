from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_settings, require_capability, require_roles
from ..config import Settings
from ..db import get_db
from ..models.models import Profile
from ..schemas.todolists import MatrixGroupDelete
from ..services.exports import parse_id_list
from ..services.expiry import local_now
from ..services.matrix import build_matrix, delete_group


router = APIRouter(prefix="/api/matrix", tags=["matrix"])


@router.get("")
def get_matrix(
    dateFrom: date,
    dateTo: date,
    deviceIds: Optional[str] = None,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    _: Profile = Depends(require_capability("todolists", "read")),
):
    return build_matrix(
        db,
        dateFrom,
        dateTo,
        device_ids=parse_id_list(deviceIds) or None,
        now=local_now(settings.tz_default),
        tz_name=settings.tz_default,
    )


@router.post("/delete-group")
def delete_matrix_group(
    body: MatrixGroupDelete,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    admin: Profile = Depends(require_roles("admin")),
):
    return delete_group(db, settings, admin, body.date_from, body.date_to, body.group_type, body.group_key)
