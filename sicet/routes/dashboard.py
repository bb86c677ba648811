from datetime import date
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_settings, require_capability, require_roles
from ..config import Settings
from ..db import get_db
from ..errors import ValidationFailed
from ..models.models import Profile
from ..services.expiry import local_now
from ..services.metrics import device_metrics, operators_summary, todolist_metrics


router = APIRouter(prefix="/api", tags=["dashboard"])


def _check_range(date_from: Optional[date], date_to: Optional[date]) -> None:
    if date_from and date_to and date_from > date_to:
        raise ValidationFailed("La data di inizio deve precedere la data di fine")


@router.get("/dashboard/todolist-metrics")
def get_todolist_metrics(
    dateFrom: date,
    dateTo: date,
    deviceId: Optional[str] = None,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    _: Profile = Depends(require_capability("dashboard", "read")),
):
    _check_range(dateFrom, dateTo)
    return todolist_metrics(db, dateFrom, dateTo, local_now(settings.tz_default), device_id=deviceId)


@router.get("/dashboard/device-metrics")
def get_device_metrics(db: Session = Depends(get_db), _: Profile = Depends(require_capability("dashboard", "read"))):
    return device_metrics(db)


@router.get("/summary/operators")
def get_operators_summary(
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    role: Optional[Literal["operator", "admin", "referrer"]] = None,
    db: Session = Depends(get_db),
    _: Profile = Depends(require_roles("admin")),
):
    _check_range(date_from, date_to)
    return operators_summary(db, date_from, date_to, role)
