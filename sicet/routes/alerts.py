from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import require_capability
from ..db import get_db
from ..errors import NotFound
from ..models.models import Device, Kpi, KpiAlert, KpiAlertLog, Profile
from ..schemas.alerts import KpiAlertCreate, KpiAlertUpdate
from ..services.kpi_alerts import serialize_kpi_alert, serialize_kpi_alert_log
from ..services.lifecycle import parse_uuid


router = APIRouter(prefix="/api/alerts", tags=["alerts"])


def _get_alert(db: Session, alert_id: str) -> KpiAlert:
    alert = db.get(KpiAlert, parse_uuid(alert_id, "Id alert"))
    if not alert:
        raise NotFound("Alert non trovato")
    return alert


@router.get("")
def list_alerts(
    kpi_id: Optional[str] = None,
    device_id: Optional[str] = None,
    db: Session = Depends(get_db),
    _: Profile = Depends(require_capability("alerts", "read")),
):
    query = db.query(KpiAlert)
    if kpi_id:
        query = query.filter(KpiAlert.kpi_id == kpi_id)
    if device_id:
        query = query.filter(KpiAlert.device_id == device_id)
    return [serialize_kpi_alert(a) for a in query.order_by(KpiAlert.created_at.desc()).all()]


@router.get("/logs")
def list_alert_logs(
    alert_id: Optional[str] = None,
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    _: Profile = Depends(require_capability("alerts", "read")),
):
    query = db.query(KpiAlertLog)
    if alert_id:
        query = query.filter(KpiAlertLog.alert_id == parse_uuid(alert_id, "Id alert"))
    entries = query.order_by(KpiAlertLog.triggered_at.desc()).offset(offset).limit(limit).all()
    return [serialize_kpi_alert_log(e) for e in entries]


@router.post("", status_code=201)
def create_alert(
    body: KpiAlertCreate,
    db: Session = Depends(get_db),
    me: Profile = Depends(require_capability("alerts", "write")),
):
    kpi = db.get(Kpi, body.kpi_id)
    if not kpi or kpi.deleted:
        raise NotFound("Controllo non trovato")
    device = db.get(Device, body.device_id)
    if not device or device.deleted:
        raise NotFound("Punto di controllo non trovato")
    alert = KpiAlert(
        kpi_id=body.kpi_id,
        device_id=body.device_id,
        email=body.email,
        conditions=[c.model_dump() for c in body.conditions],
        is_active=body.is_active,
        created_by=me.id,
    )
    db.add(alert)
    db.commit()
    db.refresh(alert)
    return serialize_kpi_alert(alert)


@router.put("/{alert_id}")
def update_alert(
    alert_id: str,
    body: KpiAlertUpdate,
    db: Session = Depends(get_db),
    _: Profile = Depends(require_capability("alerts", "write")),
):
    alert = _get_alert(db, alert_id)
    if body.email is not None:
        alert.email = body.email
    if body.conditions is not None:
        alert.conditions = [c.model_dump() for c in body.conditions]
    if body.is_active is not None:
        alert.is_active = body.is_active
    db.commit()
    db.refresh(alert)
    return serialize_kpi_alert(alert)


@router.delete("/{alert_id}")
def delete_alert(
    alert_id: str,
    db: Session = Depends(get_db),
    _: Profile = Depends(require_capability("alerts", "delete")),
):
    db.delete(_get_alert(db, alert_id))
    db.commit()
    return {"success": True}
