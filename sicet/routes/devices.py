import secrets
import string
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..auth.security import get_settings, require_capability
from ..config import Settings
from ..db import get_db
from ..errors import Conflict, NotFound
from ..models.models import Device, Profile
from ..schemas.devices import DeviceCreate, DeviceUpdate
from ..services.audit import log_user_activity
from ..services.exports import parse_id_list
from ..services.qrcodes_pdf import build_device_qr_pdf, device_scan_url, qr_pdf_filename


router = APIRouter(prefix="/api/devices", tags=["devices"])
qr_router = APIRouter(prefix="/api/device", tags=["devices"])

_ID_ALPHABET = string.ascii_uppercase + string.digits


def generate_device_id(db: Session) -> str:
    while True:
        candidate = "D" + "".join(secrets.choice(_ID_ALPHABET) for _ in range(7))
        if db.get(Device, candidate) is None:
            return candidate


def serialize_device(d: Device, base_url: Optional[str] = None) -> Dict[str, Any]:
    data = {
        "id": d.id,
        "name": d.name,
        "location": d.location,
        "description": d.description,
        "tags": d.tags or [],
        "deleted": d.deleted,
        "created_at": d.created_at.isoformat() if d.created_at else None,
        "updated_at": d.updated_at.isoformat() if d.updated_at else None,
    }
    if base_url:
        data["qr_url"] = device_scan_url(base_url, d.id)
    return data


def _get_device(db: Session, device_id: str) -> Device:
    device = db.get(Device, device_id)
    if not device or device.deleted:
        raise NotFound("Punto di controllo non trovato")
    return device


@router.get("")
def list_devices(
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    q: Optional[str] = None,
    tag: Optional[str] = None,
    db: Session = Depends(get_db),
    _: Profile = Depends(require_capability("devices", "read")),
):
    query = db.query(Device).filter(Device.deleted.is_(False))
    if q:
        like = f"%{q.strip()}%"
        query = query.filter(or_(Device.id.ilike(like), Device.name.ilike(like), Device.location.ilike(like)))
    devices = query.order_by(Device.created_at.desc(), Device.id).all()
    if tag:
        # tags live in a JSON column, filtered here to stay portable across backends
        devices = [d for d in devices if tag in (d.tags or [])]
    return {
        "total": len(devices),
        "items": [serialize_device(d) for d in devices[offset:offset + limit]],
        "offset": offset,
        "limit": limit,
    }


@router.get("/{device_id}")
def get_device(
    device_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    _: Profile = Depends(require_capability("devices", "read")),
):
    return serialize_device(_get_device(db, device_id), settings.public_base_url)


@router.post("", status_code=201)
def create_device(
    body: DeviceCreate,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    me: Profile = Depends(require_capability("devices", "write")),
):
    if body.id and db.get(Device, body.id) is not None:
        raise Conflict("Esiste già un punto di controllo con questo ID")
    device = Device(
        id=body.id or generate_device_id(db),
        name=body.name.strip(),
        location=body.location.strip(),
        description=body.description,
        tags=body.tags,
        deleted=False,
    )
    db.add(device)
    log_user_activity(db, me.id, "create_device", "device", device.id, {"name": device.name}, integrity_secret=settings.jwt_secret)
    db.commit()
    db.refresh(device)
    return serialize_device(device, settings.public_base_url)


@router.put("/{device_id}")
def update_device(
    device_id: str,
    body: DeviceUpdate,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    me: Profile = Depends(require_capability("devices", "write")),
):
    device = _get_device(db, device_id)
    changes = body.model_dump(exclude_unset=True)
    for key, value in changes.items():
        setattr(device, key, value.strip() if isinstance(value, str) and key in ("name", "location") else value)
    device.updated_at = datetime.utcnow()
    log_user_activity(db, me.id, "update_device", "device", device.id, {"fields": sorted(changes)}, integrity_secret=settings.jwt_secret)
    db.commit()
    db.refresh(device)
    return serialize_device(device, settings.public_base_url)


@router.delete("/{device_id}")
def delete_device(
    device_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    me: Profile = Depends(require_capability("devices", "delete")),
):
    device = _get_device(db, device_id)
    device.deleted = True
    device.updated_at = datetime.utcnow()
    log_user_activity(db, me.id, "delete_device", "device", device.id, None, integrity_secret=settings.jwt_secret)
    db.commit()
    return {"success": True}


@qr_router.get("/qrcodes-pdf")
def device_qrcodes_pdf(
    deviceIds: Optional[str] = None,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    _: Profile = Depends(require_capability("devices", "read")),
):
    query = db.query(Device).filter(Device.deleted.is_(False))
    ids = parse_id_list(deviceIds)
    if ids:
        query = query.filter(Device.id.in_(ids))
    devices = query.order_by(Device.id).all()
    pdf = build_device_qr_pdf(devices, settings.public_base_url)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{qr_pdf_filename()}"'},
    )
