from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Response
from slugify import slugify
from sqlalchemy.orm import Session

from ..auth.security import get_settings, require_capability, require_roles
from ..config import Settings
from ..db import get_db
from ..errors import NotFound
from ..models.models import Device, Profile, ReportTemplate
from ..schemas.reports import ReportTemplateCreate, ReportTemplateUpdate
from ..services.exports import parse_date_range
from ..services.expiry import local_now
from ..services.lifecycle import parse_uuid
from ..services.reports import build_report_workbook, serialize_template, validate_control_points


router = APIRouter(prefix="/api/reports", tags=["reports"])

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _get_template(db: Session, template_id: str) -> ReportTemplate:
    template = db.get(ReportTemplate, parse_uuid(template_id, "Id report"))
    if not template:
        raise NotFound("Report non trovato")
    return template


def _control_points(db: Session, points) -> list:
    cleaned = validate_control_points([p.model_dump() for p in points])
    ids = {p["device_id"] for p in cleaned}
    found = {d.id for d in db.query(Device).filter(Device.id.in_(ids)).all()}
    missing = sorted(ids - found)
    if missing:
        raise NotFound(f"Punti di controllo non trovati: {', '.join(missing)}")
    return cleaned


@router.get("")
def list_templates(db: Session = Depends(get_db), _: Profile = Depends(require_capability("reports", "read"))):
    return [serialize_template(t) for t in db.query(ReportTemplate).order_by(ReportTemplate.name).all()]


@router.get("/{template_id}")
def get_template(template_id: str, db: Session = Depends(get_db), _: Profile = Depends(require_capability("reports", "read"))):
    return serialize_template(_get_template(db, template_id))


@router.post("", status_code=201)
def create_template(body: ReportTemplateCreate, db: Session = Depends(get_db), me: Profile = Depends(require_roles("admin"))):
    template = ReportTemplate(
        name=body.name.strip(),
        description=body.description,
        control_points=_control_points(db, body.control_points),
        created_by=me.id,
    )
    db.add(template)
    db.commit()
    db.refresh(template)
    return serialize_template(template)


@router.put("/{template_id}")
def update_template(
    template_id: str,
    body: ReportTemplateUpdate,
    db: Session = Depends(get_db),
    _: Profile = Depends(require_roles("admin")),
):
    template = _get_template(db, template_id)
    fields = body.model_dump(exclude_unset=True)
    if body.name is not None:
        template.name = body.name.strip()
    if "description" in fields:
        template.description = body.description
    if body.control_points is not None:
        template.control_points = _control_points(db, body.control_points)
    template.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(template)
    return serialize_template(template)


@router.delete("/{template_id}")
def delete_template(template_id: str, db: Session = Depends(get_db), _: Profile = Depends(require_roles("admin"))):
    db.delete(_get_template(db, template_id))
    db.commit()
    return {"success": True}


@router.get("/{template_id}/export")
def export_template(
    template_id: str,
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    _: Profile = Depends(require_capability("reports", "read")),
):
    start, end = parse_date_range(startDate, endDate)
    template = _get_template(db, template_id)
    content = build_report_workbook(db, template, start, end, local_now(settings.tz_default))
    filename = f"{slugify(template.name) or 'report'}_{start.isoformat()}_{end.isoformat()}.xlsx"
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
