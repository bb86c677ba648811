from collections import Counter
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.models import Device, Profile, Todolist
from .expiry import is_todolist_expired
from .exports import day_bounds


def _rate(part: int, total: int) -> float:
    return round(part * 100.0 / total, 1) if total else 0.0


def todolist_metrics(
    db: Session,
    date_from: date,
    date_to: date,
    now: datetime,
    device_id: Optional[str] = None,
) -> Dict[str, Any]:
    low, high = day_bounds(date_from, date_to)
    query = db.query(Todolist).filter(Todolist.scheduled_execution >= low, Todolist.scheduled_execution <= high)
    if device_id:
        query = query.filter(Todolist.device_id == device_id)

    total = completed = pending = overdue = in_progress = 0
    for todolist in query.yield_per(500):
        total += 1
        if todolist.completion_date is not None or todolist.status == "completed":
            completed += 1
            continue
        expired = is_todolist_expired(
            todolist.scheduled_execution, todolist.time_slot_type, todolist.time_slot_end, todolist.time_slot_start, now=now
        )
        if expired:
            overdue += 1
        else:
            pending += 1
            if todolist.status == "in_progress":
                in_progress += 1

    return {
        "total": total,
        "completed": completed,
        "pending": pending,
        "in_progress": in_progress,
        "overdue": overdue,
        "completion_rate": _rate(completed, total),
        "overdue_rate": _rate(overdue, total),
        "chart": [
            {"name": "Completate", "value": completed},
            {"name": "Pendenti", "value": pending},
            {"name": "Scadute", "value": overdue},
        ],
    }


def device_metrics(db: Session) -> Dict[str, Any]:
    devices = db.query(Device).filter(Device.deleted.is_(False)).all()
    tags = Counter(tag for d in devices for tag in (d.tags or []))
    return {
        "active_devices": len(devices),
        "deleted_devices": db.query(func.count(Device.id)).filter(Device.deleted.is_(True)).scalar() or 0,
        "by_tag": [{"tag": tag, "count": count} for tag, count in tags.most_common()],
    }


def operators_summary(
    db: Session,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    role: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Completed todolists per profile."""
    counts = db.query(Todolist.completed_by, func.count(Todolist.id)).filter(
        Todolist.status == "completed", Todolist.completed_by.isnot(None)
    )
    if date_from and date_to:
        low, high = day_bounds(date_from, date_to)
        counts = counts.filter(Todolist.completion_date >= low, Todolist.completion_date <= high)
    counts = dict(counts.group_by(Todolist.completed_by).all())

    profiles = db.query(Profile).filter(Profile.status != "deleted")
    if role:
        profiles = profiles.filter(Profile.role == role)
    rows = [
        {
            "profile_id": str(p.id),
            "email": p.email,
            "role": p.role,
            "completed_todolists": counts.get(p.id, 0),
        }
        for p in profiles.all()
    ]
    rows.sort(key=lambda r: (-r["completed_todolists"], r["email"]))
    return rows
