from datetime import date, datetime, time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from ..auth.security import get_mailer, get_settings, require_capability
from ..config import Settings
from ..db import get_db
from ..errors import Conflict, NotFound, ValidationFailed
from ..models.models import Profile, Task, Todolist, TodolistAlert, TodolistAlertLog
from ..schemas.todolists import (
    TaskStatusUpdate,
    TaskValueUpdate,
    TodolistAlertConfig,
    TodolistCreate,
)
from ..services import lifecycle
from ..services.expiry import format_slot, is_todolist_expired, local_now
from ..services.overdue_alerts import serialize_alert_log


router = APIRouter(prefix="/api/todolists", tags=["todolists"])
tasks_router = APIRouter(prefix="/api/tasks", tags=["tasks"])

VIEWS = ("all", "today", "overdue", "future", "completed")


def serialize_task(task: Task) -> Dict[str, Any]:
    return {
        "id": str(task.id),
        "todolist_id": str(task.todolist_id),
        "kpi_id": task.kpi_id,
        "kpi_name": task.kpi.name if task.kpi else None,
        "status": task.status,
        "value": task.value,
        "alert_checked": task.alert_checked,
        "completed_by": str(task.completed_by) if task.completed_by else None,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
        "created_at": task.created_at.isoformat() if task.created_at else None,
    }


def serialize_todolist(todolist: Todolist, now: datetime, task_count: Optional[int] = None) -> Dict[str, Any]:
    expired = is_todolist_expired(
        todolist.scheduled_execution, todolist.time_slot_type, todolist.time_slot_end, todolist.time_slot_start, now=now
    )
    return {
        "id": str(todolist.id),
        "device_id": todolist.device_id,
        "device_name": todolist.device.name if todolist.device else None,
        "scheduled_execution": todolist.scheduled_execution.isoformat(),
        "status": todolist.status,
        "time_slot_type": todolist.time_slot_type,
        "time_slot_start": format_slot(todolist.time_slot_start),
        "time_slot_end": format_slot(todolist.time_slot_end),
        "end_day_time": todolist.end_day_time.isoformat() if todolist.end_day_time else None,
        "category": todolist.todolist_category,
        "completion_date": todolist.completion_date.isoformat() if todolist.completion_date else None,
        "completed_by": str(todolist.completed_by) if todolist.completed_by else None,
        "task_count": task_count if task_count is not None else len(todolist.tasks),
        "is_expired": expired,
        "is_overdue": expired and todolist.status != "completed",
        "created_at": todolist.created_at.isoformat() if todolist.created_at else None,
    }


def _filtered_query(db: Session, device_id, status, date_from, date_to):
    query = db.query(Todolist).options(selectinload(Todolist.device))
    if device_id:
        query = query.filter(Todolist.device_id == device_id)
    if status:
        query = query.filter(Todolist.status == status)
    if date_from:
        query = query.filter(Todolist.scheduled_execution >= datetime.combine(date_from, time.min))
    if date_to:
        query = query.filter(Todolist.scheduled_execution <= datetime.combine(date_to, time.max))
    return query


def _apply_view(query, view: str, now: datetime):
    today_start = datetime.combine(now.date(), time.min)
    today_end = datetime.combine(now.date(), time.max)
    if view == "today":
        return query.filter(Todolist.scheduled_execution >= today_start, Todolist.scheduled_execution <= today_end)
    if view == "future":
        return query.filter(Todolist.scheduled_execution > today_end)
    if view == "completed":
        return query.filter(Todolist.status == "completed")
    if view == "overdue":
        # custom slots spanning midnight may expire the day after, so the final cut is in Python
        return query.filter(Todolist.status != "completed", Todolist.scheduled_execution <= today_end)
    return query


def _is_overdue(todolist: Todolist, now: datetime) -> bool:
    return todolist.status != "completed" and is_todolist_expired(
        todolist.scheduled_execution, todolist.time_slot_type, todolist.time_slot_end, todolist.time_slot_start, now=now
    )


def _task_counts(db: Session, ids):
    if not ids:
        return {}
    rows = db.query(Task.todolist_id, func.count(Task.id)).filter(Task.todolist_id.in_(ids)).group_by(Task.todolist_id).all()
    return dict(rows)


@router.get("")
def list_todolists(
    view: str = "all",
    device_id: Optional[str] = None,
    status: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    _: Profile = Depends(require_capability("todolists", "read")),
):
    if view not in VIEWS:
        raise ValidationFailed("Vista non valida")
    if date_from and date_to and date_from > date_to:
        raise ValidationFailed("La data di inizio deve precedere la data di fine")
    now = local_now(settings.tz_default)
    query = _apply_view(_filtered_query(db, device_id, status, date_from, date_to), view, now)
    query = query.order_by(Todolist.scheduled_execution.desc(), Todolist.id)
    if view == "overdue":
        rows = [t for t in query.all() if _is_overdue(t, now)]
        total, page = len(rows), rows[offset:offset + limit]
    else:
        total = query.count()
        page = query.offset(offset).limit(limit).all()
    counts = _task_counts(db, [t.id for t in page])
    return {
        "total": total,
        "items": [serialize_todolist(t, now, counts.get(t.id, 0)) for t in page],
        "offset": offset,
        "limit": limit,
    }


@router.get("/counts")
def todolist_counts(
    device_id: Optional[str] = None,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    _: Profile = Depends(require_capability("todolists", "read")),
):
    now = local_now(settings.tz_default)
    result = {}
    for view in VIEWS:
        query = _apply_view(_filtered_query(db, device_id, None, None, None), view, now)
        if view == "overdue":
            result[view] = sum(1 for t in query.all() if _is_overdue(t, now))
        else:
            result[view] = query.count()
    return result


@router.post("", status_code=201)
def create_todolists(
    body: TodolistCreate,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    me: Profile = Depends(require_capability("todolists", "write")),
):
    result = lifecycle.create_todolists(
        db,
        settings,
        me,
        device_ids=body.device_ids,
        kpi_ids=body.kpi_ids,
        dates=body.dates,
        time_slot_type=body.time_slot_type,
        time_slot_start=body.time_slot_start,
        time_slot_end=body.time_slot_end,
        scheduled_time=body.scheduled_time,
        category=body.category,
        alert_email=body.alert_email,
    )
    now = local_now(settings.tz_default)
    return {
        "created": [serialize_todolist(t, now) for t in result["created"]],
        "skipped": result["skipped"],
    }


def _get_todolist(db: Session, todolist_id: str) -> Todolist:
    todolist = db.get(Todolist, lifecycle.parse_uuid(todolist_id, "Id todolist"))
    if not todolist:
        raise NotFound("Todolist non trovata")
    return todolist


@router.get("/{todolist_id}")
def get_todolist(
    todolist_id: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    _: Profile = Depends(require_capability("todolists", "read")),
):
    todolist = _get_todolist(db, todolist_id)
    now = local_now(settings.tz_default)
    tasks = (
        db.query(Task)
        .options(selectinload(Task.kpi))
        .filter(Task.todolist_id == todolist.id)
        .order_by(Task.created_at, Task.id)
        .offset(offset)
        .limit(limit)
        .all()
    )
    data = serialize_todolist(todolist, now)
    data["tasks"] = [serialize_task(t) for t in tasks]
    data["alerts"] = [{"id": str(a.id), "email": a.email, "is_active": a.is_active} for a in todolist.alerts]
    return data


@router.post("/{todolist_id}/complete")
def complete_todolist(
    todolist_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    mailer=Depends(get_mailer),
    me: Profile = Depends(require_capability("tasks", "write")),
):
    todolist = lifecycle.complete_todolist(db, settings, mailer, me, todolist_id)
    return serialize_todolist(todolist, local_now(settings.tz_default))


@router.delete("/{todolist_id}")
def delete_todolist(
    todolist_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    me: Profile = Depends(require_capability("todolists", "delete")),
):
    lifecycle.delete_todolist(db, settings, me, todolist_id)
    return {"success": True}


@router.put("/{todolist_id}/alert")
def set_todolist_alert(
    todolist_id: str,
    body: TodolistAlertConfig,
    db: Session = Depends(get_db),
    me: Profile = Depends(require_capability("todolists", "write")),
):
    todolist = _get_todolist(db, todolist_id)
    if todolist.status == "completed":
        raise ValidationFailed("La todolist è già completata")
    alert = db.query(TodolistAlert).filter(TodolistAlert.todolist_id == todolist.id, TodolistAlert.email == body.email).first()
    if alert is None:
        alert = TodolistAlert(todolist_id=todolist.id, email=body.email, is_active=True, created_by=me.id)
        db.add(alert)
    else:
        alert.is_active = True
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise Conflict("Alert già configurato") from exc
    return {"id": str(alert.id), "todolist_id": str(todolist.id), "email": alert.email, "is_active": alert.is_active}


@router.delete("/{todolist_id}/alert")
def remove_todolist_alert(
    todolist_id: str,
    db: Session = Depends(get_db),
    _: Profile = Depends(require_capability("todolists", "write")),
):
    todolist = _get_todolist(db, todolist_id)
    removed = db.query(TodolistAlert).filter(TodolistAlert.todolist_id == todolist.id).delete(synchronize_session=False)
    db.commit()
    return {"success": True, "removed": removed}


@router.get("/{todolist_id}/alert-logs")
def todolist_alert_logs(
    todolist_id: str,
    db: Session = Depends(get_db),
    _: Profile = Depends(require_capability("todolists", "read")),
):
    todolist_uuid = lifecycle.parse_uuid(todolist_id, "Id todolist")
    logs = (
        db.query(TodolistAlertLog)
        .filter(TodolistAlertLog.todolist_id == todolist_uuid)
        .order_by(TodolistAlertLog.created_at.desc())
        .all()
    )
    return [serialize_alert_log(entry) for entry in logs]


@tasks_router.patch("/{task_id}/status")
def update_task_status(
    task_id: str,
    body: TaskStatusUpdate,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    mailer=Depends(get_mailer),
    me: Profile = Depends(require_capability("tasks", "write")),
):
    fields = body.model_dump(exclude_unset=True)
    task = lifecycle.update_task(
        db, settings, mailer, me, task_id,
        status=body.status,
        value=body.value,
        set_value="value" in fields,
    )
    todolist = db.get(Todolist, task.todolist_id)
    return {"task": serialize_task(task), "todolist_status": todolist.status}


@tasks_router.patch("/{task_id}/value")
def update_task_value(
    task_id: str,
    body: TaskValueUpdate,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    mailer=Depends(get_mailer),
    me: Profile = Depends(require_capability("tasks", "write")),
):
    task = lifecycle.update_task(db, settings, mailer, me, task_id, value=body.value, set_value=True)
    return {"task": serialize_task(task)}


@tasks_router.get("/{task_id}")
def get_task(
    task_id: str,
    db: Session = Depends(get_db),
    _: Profile = Depends(require_capability("tasks", "read")),
):
    task = db.get(Task, lifecycle.parse_uuid(task_id, "Id task"))
    if not task:
        raise NotFound("Task non trovato")
    return serialize_task(task)
