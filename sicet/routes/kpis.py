import secrets
import string
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from slugify import slugify
from sqlalchemy.orm import Session

from ..auth.security import get_settings, require_capability
from ..config import Settings
from ..db import get_db
from ..errors import Conflict, NotFound, ValidationFailed
from ..models.models import Kpi, Profile, Task, Todolist
from ..schemas.kpis import KpiCreate, KpiField, KpiUpdate
from ..services.audit import log_user_activity
from ..services.exports import day_bounds


router = APIRouter(prefix="/api/kpis", tags=["kpis"])

_ID_ALPHABET = string.ascii_uppercase + string.digits


def generate_kpi_id(db: Session) -> str:
    while True:
        candidate = "K" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(7))
        if db.get(Kpi, candidate) is None:
            return candidate


def normalize_fields(kpi_id: str, fields: List[KpiField]) -> List[Dict[str, Any]]:
    out, seen = [], set()
    for field in fields:
        data = field.model_dump()
        if data["min"] is not None and data["max"] is not None and data["min"] > data["max"]:
            raise ValidationFailed(f"Il minimo supera il massimo per il campo {field.name}")
        if not data["id"]:
            data["id"] = f"{kpi_id}-{slugify(field.name, separator='_')}"
        if data["id"] in seen:
            raise ValidationFailed(f"Campo duplicato: {data['id']}")
        seen.add(data["id"])
        out.append(data)
    return out


def serialize_kpi(k: Kpi) -> Dict[str, Any]:
    return {
        "id": k.id,
        "name": k.name,
        "description": k.description,
        "value": k.value or [],
        "deleted": k.deleted,
        "created_at": k.created_at.isoformat() if k.created_at else None,
        "updated_at": k.updated_at.isoformat() if k.updated_at else None,
    }


def _get_kpi(db: Session, kpi_id: str) -> Kpi:
    kpi = db.get(Kpi, kpi_id)
    if not kpi or kpi.deleted:
        raise NotFound("Controllo non trovato")
    return kpi


@router.get("")
def list_kpis(
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    q: Optional[str] = None,
    db: Session = Depends(get_db),
    _: Profile = Depends(require_capability("kpis", "read")),
):
    query = db.query(Kpi).filter(Kpi.deleted.is_(False))
    if q:
        query = query.filter(Kpi.name.ilike(f"%{q.strip()}%"))
    total = query.count()
    items = query.order_by(Kpi.created_at.desc(), Kpi.id).offset(offset).limit(limit).all()
    return {"total": total, "items": [serialize_kpi(k) for k in items], "offset": offset, "limit": limit}


@router.get("/by-device/{device_id}")
def kpis_by_device(
    device_id: str,
    dateFrom: Optional[date] = None,
    dateTo: Optional[date] = None,
    db: Session = Depends(get_db),
    _: Profile = Depends(require_capability("kpis", "read")),
):
    query = db.query(Task.kpi_id).join(Todolist, Task.todolist_id == Todolist.id).filter(Todolist.device_id == device_id)
    if dateFrom and dateTo:
        if dateFrom > dateTo:
            raise ValidationFailed("La data di inizio deve precedere la data di fine")
        low, high = day_bounds(dateFrom, dateTo)
        query = query.filter(Todolist.scheduled_execution >= low, Todolist.scheduled_execution <= high)
    ids = {kpi_id for (kpi_id,) in query.distinct().all()}
    if not ids:
        return []
    return [serialize_kpi(k) for k in db.query(Kpi).filter(Kpi.id.in_(ids)).order_by(Kpi.name).all()]


@router.get("/{kpi_id}")
def get_kpi(kpi_id: str, db: Session = Depends(get_db), _: Profile = Depends(require_capability("kpis", "read"))):
    return serialize_kpi(_get_kpi(db, kpi_id))


@router.post("", status_code=201)
def create_kpi(
    body: KpiCreate,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    me: Profile = Depends(require_capability("kpis", "write")),
):
    if body.id and db.get(Kpi, body.id) is not None:
        raise Conflict("Esiste già un controllo con questo ID")
    kpi_id = body.id or generate_kpi_id(db)
    kpi = Kpi(
        id=kpi_id,
        name=body.name.strip(),
        description=body.description,
        value=normalize_fields(kpi_id, body.value),
        deleted=False,
    )
    db.add(kpi)
    log_user_activity(db, me.id, "create_kpi", "kpi", kpi.id, {"name": kpi.name}, integrity_secret=settings.jwt_secret)
    db.commit()
    db.refresh(kpi)
    return serialize_kpi(kpi)


@router.put("/{kpi_id}")
def update_kpi(
    kpi_id: str,
    body: KpiUpdate,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    me: Profile = Depends(require_capability("kpis", "write")),
):
    kpi = _get_kpi(db, kpi_id)
    changes = body.model_dump(exclude_unset=True)
    if body.name is not None:
        kpi.name = body.name.strip()
    if "description" in changes:
        kpi.description = body.description
    if body.value is not None:
        # recorded task values keep the shape they were entered with
        kpi.value = normalize_fields(kpi.id, body.value)
    kpi.updated_at = datetime.utcnow()
    log_user_activity(db, me.id, "update_kpi", "kpi", kpi.id, {"fields": sorted(changes)}, integrity_secret=settings.jwt_secret)
    db.commit()
    db.refresh(kpi)
    return serialize_kpi(kpi)


@router.delete("/{kpi_id}")
def delete_kpi(
    kpi_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    me: Profile = Depends(require_capability("kpis", "delete")),
):
    kpi = _get_kpi(db, kpi_id)
    kpi.deleted = True
    kpi.updated_at = datetime.utcnow()
    log_user_activity(db, me.id, "delete_kpi", "kpi", kpi.id, None, integrity_secret=settings.jwt_secret)
    db.commit()
    return {"success": True}
