"""
Todolist lifecycle.

``pending`` -> ``in_progress`` -> ``completed``. The todolist status is always
derived from its tasks by :func:`derive_todolist_status`; every path that
mutates a task goes through :func:`sync_todolist_status` inside the same
transaction, after taking a row lock on the todolist.
"""
import uuid
from datetime import datetime, date, time, timedelta
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..config import Settings
from ..errors import NotFound, ValidationFailed
from ..models.models import Device, Kpi, Profile, Task, Todolist, TodolistAlert
from .audit import log_user_activity
from .expiry import local_now, slot_minutes, todolist_deadline
from .kpi_alerts import check_task_alerts, send_kpi_alert_emails

TASK_STATUSES = ("pending", "completed", "discarded")
TERMINAL_TASK_STATUSES = frozenset({"completed", "discarded"})
TIME_SLOT_TYPES = ("standard", "custom")


def derive_todolist_status(task_statuses: Iterable[str]) -> str:
    statuses = list(task_statuses)
    if not statuses:
        return "pending"
    terminal = sum(1 for s in statuses if s in TERMINAL_TASK_STATUSES)
    if terminal == len(statuses):
        return "completed"
    if terminal:
        return "in_progress"
    return "pending"


def parse_uuid(raw, label: str = "id") -> uuid.UUID:
    try:
        return uuid.UUID(str(raw))
    except ValueError as exc:
        raise ValidationFailed(f"{label} non valido") from exc


def lock_todolist(db: Session, todolist_id) -> Todolist:
    todolist = (
        db.query(Todolist)
        .filter(Todolist.id == parse_uuid(todolist_id, "Id todolist"))
        .with_for_update()
        .first()
    )
    if not todolist:
        raise NotFound("Todolist non trovata")
    return todolist


def sync_todolist_status(db: Session, todolist: Todolist, actor_id, now: datetime) -> str:
    """Re-aggregate the task states from the database and persist the result.

    The caller must hold the todolist row lock. ``completion_date`` and
    ``completed_by`` are stamped only on the first move into ``completed``, with
    ``now`` as a naive local wall-clock time.
    """
    db.flush()
    statuses = [s for (s,) in db.query(Task.status).filter(Task.todolist_id == todolist.id).all()]
    status = derive_todolist_status(statuses)
    if todolist.status == "completed":
        return todolist.status
    todolist.status = status
    if status == "completed" and todolist.completion_date is None:
        todolist.completion_date = now
        todolist.completed_by = actor_id
    return status


def _get_task_for_update(db: Session, task_id) -> Task:
    task = db.query(Task).filter(Task.id == parse_uuid(task_id, "Id task")).first()
    if not task:
        raise NotFound("Task non trovato")
    return task


def update_task(
    db: Session,
    settings: Settings,
    mailer,
    actor: Profile,
    task_id,
    status: Optional[str] = None,
    value: Any = None,
    set_value: bool = False,
) -> Task:
    """Change the status and/or value of one task and re-derive its todolist."""
    if status is not None and status not in TASK_STATUSES:
        raise ValidationFailed("Stato del task non valido")
    task = _get_task_for_update(db, task_id)
    todolist = lock_todolist(db, task.todolist_id)
    db.refresh(task)
    if todolist.status == "completed":
        raise ValidationFailed("La todolist è già completata")

    if set_value:
        task.value = value
    now = local_now(settings.tz_default)
    previous = task.status
    if status is not None and status != previous:
        task.status = status
        if status == "completed":
            task.completed_at = now
            task.completed_by = actor.id
        elif status == "pending":
            task.completed_at = None
            task.completed_by = None

    triggered = []
    if task.status == "completed" and not task.alert_checked:
        triggered = check_task_alerts(db, task, todolist.device_id)

    new_status = sync_todolist_status(db, todolist, actor.id, now)

    if status == "completed" and previous != "completed":
        action = "complete_task"
    else:
        action = "update_task"
    log_user_activity(
        db,
        actor.id,
        action,
        "task",
        task.id,
        {"todolist_id": str(todolist.id), "kpi_id": task.kpi_id, "status": task.status},
        integrity_secret=settings.jwt_secret,
    )
    db.commit()
    if triggered:
        send_kpi_alert_emails(db, mailer, [e.id for e in triggered], settings.public_base_url)
    db.refresh(task)
    structlog.get_logger().info(
        "task_updated", task_id=str(task.id), todolist_id=str(todolist.id), task_status=task.status, todolist_status=new_status
    )
    return task


def complete_todolist(db: Session, settings: Settings, mailer, actor: Profile, todolist_id) -> Todolist:
    """Complete every open task of the todolist in one transaction."""
    todolist = lock_todolist(db, todolist_id)
    if todolist.status == "completed":
        raise ValidationFailed("La todolist è già completata")
    now = local_now(settings.tz_default)
    triggered = []
    for task in todolist.tasks:
        if task.status in TERMINAL_TASK_STATUSES:
            continue
        task.status = "completed"
        task.completed_at = now
        task.completed_by = actor.id
        if not task.alert_checked:
            triggered.extend(check_task_alerts(db, task, todolist.device_id))
        log_user_activity(
            db, actor.id, "complete_task", "task", task.id,
            {"todolist_id": str(todolist.id), "kpi_id": task.kpi_id},
            integrity_secret=settings.jwt_secret,
        )
    sync_todolist_status(db, todolist, actor.id, now)
    db.commit()
    if triggered:
        send_kpi_alert_emails(db, mailer, [e.id for e in triggered], settings.public_base_url)
    db.refresh(todolist)
    structlog.get_logger().info("todolist_completed", todolist_id=str(todolist.id), status=todolist.status)
    return todolist


def _parse_dates(raw_dates: List) -> List[date]:
    dates = []
    for raw in raw_dates:
        if isinstance(raw, date):
            d = raw.date() if isinstance(raw, datetime) else raw
        else:
            try:
                d = date.fromisoformat(str(raw)[:10])
            except ValueError as exc:
                raise ValidationFailed(f"Data non valida: {raw}") from exc
        if d not in dates:
            dates.append(d)
    return dates


def create_todolists(
    db: Session,
    settings: Settings,
    actor: Profile,
    *,
    device_ids: List[str],
    kpi_ids: List[str],
    dates: List,
    time_slot_type: str = "standard",
    time_slot_start=None,
    time_slot_end=None,
    scheduled_time=None,
    category: Optional[str] = None,
    alert_email: Optional[str] = None,
) -> Dict[str, Any]:
    """Schedule one todolist per device and date, with one task per KPI.

    An instance that already exists for the same device and scheduled time is
    left untouched and reported under ``skipped``.
    """
    if not device_ids:
        raise ValidationFailed("Seleziona almeno un punto di controllo")
    if not kpi_ids:
        raise ValidationFailed("Seleziona almeno un controllo")
    if not dates:
        raise ValidationFailed("Seleziona almeno una data")
    if time_slot_type not in TIME_SLOT_TYPES:
        raise ValidationFailed("Tipo di fascia oraria non valido")

    start = end = None
    if time_slot_type == "custom":
        start, end = slot_minutes(time_slot_start), slot_minutes(time_slot_end)
        if start is None or end is None:
            raise ValidationFailed("Orario di inizio e fine obbligatori per la fascia personalizzata")
        if start >= 24 * 60:
            raise ValidationFailed("Orario di inizio non valido")
        if start == end:
            raise ValidationFailed("Orario di inizio e fine coincidono")
        offset = start
    else:
        offset = slot_minutes(scheduled_time) if scheduled_time is not None else 0
        if offset is None or offset >= 24 * 60:
            raise ValidationFailed("Orario non valido")

    device_ids = list(dict.fromkeys(device_ids))
    kpi_ids = list(dict.fromkeys(kpi_ids))
    devices = {d.id: d for d in db.query(Device).filter(Device.id.in_(device_ids), Device.deleted.is_(False)).all()}
    missing = [d for d in device_ids if d not in devices]
    if missing:
        raise NotFound(f"Punti di controllo non trovati: {', '.join(missing)}")
    kpis = {k for (k,) in db.query(Kpi.id).filter(Kpi.id.in_(kpi_ids), Kpi.deleted.is_(False)).all()}
    missing = [k for k in kpi_ids if k not in kpis]
    if missing:
        raise NotFound(f"Controlli non trovati: {', '.join(missing)}")

    created: List[Todolist] = []
    skipped: List[Dict[str, str]] = []
    for device_id in device_ids:
        for day in _parse_dates(dates):
            scheduled = datetime.combine(day, time.min) + timedelta(minutes=offset)
            exists = (
                db.query(Todolist.id)
                .filter(Todolist.device_id == device_id, Todolist.scheduled_execution == scheduled)
                .first()
            )
            if exists:
                skipped.append({"device_id": device_id, "scheduled_execution": scheduled.isoformat()})
                continue
            todolist = Todolist(
                device_id=device_id,
                scheduled_execution=scheduled,
                status="pending",
                time_slot_type=time_slot_type,
                time_slot_start=start,
                time_slot_end=end,
                end_day_time=todolist_deadline(scheduled, time_slot_type, end, start),
                todolist_category=category,
                created_by=actor.id,
            )
            todolist.tasks = [Task(kpi_id=kpi_id, status="pending", created_by=actor.id) for kpi_id in kpi_ids]
            if alert_email:
                todolist.alerts = [TodolistAlert(email=alert_email, is_active=True, created_by=actor.id)]
            db.add(todolist)
            created.append(todolist)

    db.flush()
    for todolist in created:
        log_user_activity(
            db, actor.id, "create_todolist", "todolist", todolist.id,
            {"device_id": todolist.device_id, "kpi_ids": kpi_ids, "scheduled_execution": todolist.scheduled_execution.isoformat()},
            integrity_secret=settings.jwt_secret,
        )
    db.commit()
    structlog.get_logger().info("todolists_created", created=len(created), skipped=len(skipped))
    return {"created": created, "skipped": skipped}


def delete_todolists(
    db: Session,
    settings: Settings,
    actor: Profile,
    todolists: List[Todolist],
    metadata: Optional[Dict[str, Any]] = None,
) -> int:
    """Delete todolists with their tasks, one activity entry per deleted task.

    Does not commit.
    """
    for todolist in todolists:
        for task in todolist.tasks:
            details = {"todolist_id": str(todolist.id), "device_id": todolist.device_id, "kpi_id": task.kpi_id}
            if metadata:
                details.update(metadata)
            log_user_activity(db, actor.id, "delete_todolist", "task", task.id, details, integrity_secret=settings.jwt_secret)
        db.delete(todolist)
    db.flush()
    return len(todolists)


def delete_todolist(db: Session, settings: Settings, actor: Profile, todolist_id) -> None:
    todolist = lock_todolist(db, todolist_id)
    delete_todolists(db, settings, actor, [todolist])
    db.commit()
    structlog.get_logger().info("todolist_deleted", todolist_id=str(todolist_id))
