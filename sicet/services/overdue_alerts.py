"""
Overdue todolist notifications.

Run periodically from the cron endpoint. Each expired, open todolist with an
active overdue alert gets at most one email per alert:

1. a ``TodolistAlertLog`` row is committed in ``pending`` state,
2. the email is sent,
3. the row moves to ``sent`` and the alert is deactivated in one commit.

Any ``pending`` or ``sent`` row blocks further sends for that alert, so a
crash between 2 and 3 never produces a duplicate. A failed send moves the row
to ``error`` and leaves the alert active, so the next run retries it.
"""
from datetime import datetime
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import Settings
from ..models.models import Device, Todolist, TodolistAlert, TodolistAlertLog
from .expiry import is_todolist_overdue, local_now, todolist_deadline
from .mailer import overdue_todolist_message

BLOCKING_LOG_STATUSES = ("pending", "sent")


def _already_notified(db: Session, alert: TodolistAlert) -> bool:
    return (
        db.query(TodolistAlertLog.id)
        .filter(
            TodolistAlertLog.todolist_id == alert.todolist_id,
            TodolistAlertLog.alert_id == alert.id,
            TodolistAlertLog.status.in_(BLOCKING_LOG_STATUSES),
        )
        .first()
        is not None
    )


def _fmt(dt: datetime) -> str:
    return dt.strftime("%d/%m/%Y %H:%M")


def process_overdue_todolists(db: Session, settings: Settings, mailer, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Scan open todolists and notify the expired ones.

    Returns ``{processed, errors, skipped, details}``; one failing item never
    aborts the batch.
    """
    log = structlog.get_logger()
    if now is None:
        now = local_now(settings.tz_default)
    log.info("overdue_run_started", now=now.isoformat())

    alerted_todolists = select(TodolistAlert.todolist_id).where(TodolistAlert.is_active.is_(True))
    candidates = (
        db.query(Todolist)
        .filter(Todolist.status != "completed", Todolist.id.in_(alerted_todolists))
        .order_by(Todolist.scheduled_execution)
        .all()
    )

    processed = errors = skipped = 0
    details = []
    for todolist in candidates:
        try:
            overdue = is_todolist_overdue(todolist, now=now, tz_name=settings.tz_default)
        except Exception as e:
            errors += 1
            details.append({"todolistId": str(todolist.id), "deviceId": todolist.device_id, "status": "error", "errorMessage": str(e)})
            log.warning("overdue_check_failed", todolist_id=str(todolist.id), error=str(e))
            continue
        if not overdue:
            skipped += 1
            continue
        device = db.get(Device, todolist.device_id)
        device_name = device.name if device else todolist.device_id
        alerts = (
            db.query(TodolistAlert)
            .filter(TodolistAlert.todolist_id == todolist.id, TodolistAlert.is_active.is_(True))
            .all()
        )
        for alert in alerts:
            if _already_notified(db, alert):
                skipped += 1
                continue
            item = {
                "todolistId": str(todolist.id),
                "deviceId": todolist.device_id,
                "deviceName": device_name,
                "email": alert.email,
            }
            entry = None
            try:
                entry = TodolistAlertLog(todolist_id=todolist.id, alert_id=alert.id, email=alert.email, status="pending")
                db.add(entry)
                db.commit()

                deadline = todolist_deadline(
                    todolist.scheduled_execution, todolist.time_slot_type, todolist.time_slot_end, todolist.time_slot_start
                )
                subject, body = overdue_todolist_message(
                    device_name,
                    todolist.device_id,
                    _fmt(todolist.scheduled_execution),
                    _fmt(deadline),
                    f"{settings.public_base_url}/todolist/view/{todolist.id}",
                )
                mailer.send(alert.email, subject, body)

                entry.status = "sent"
                entry.sent_at = datetime.utcnow()
                alert.is_active = False
                db.commit()
                processed += 1
                details.append({**item, "status": "sent"})
                log.info("overdue_notification_sent", todolist_id=str(todolist.id), email=alert.email)
            except Exception as e:
                db.rollback()
                message = str(e) or e.__class__.__name__
                errors += 1
                details.append({**item, "status": "error", "errorMessage": message})
                log.warning("overdue_notification_failed", todolist_id=str(todolist.id), email=alert.email, error=message)
                if entry is not None and entry.id is not None:
                    _mark_failed(db, entry.id, message)

    log.info("overdue_run_finished", processed=processed, errors=errors, skipped=skipped)
    return {"processed": processed, "errors": errors, "skipped": skipped, "details": details}


def _mark_failed(db: Session, log_id, message: str) -> None:
    try:
        entry = db.get(TodolistAlertLog, log_id)
        if entry is not None and entry.status == "pending":
            entry.status = "error"
            entry.error_message = message[:2000]
            db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        # the row stays pending and keeps blocking this alert
        structlog.get_logger().error("overdue_log_update_failed", log_id=str(log_id), error=str(e))


def serialize_alert_log(entry: TodolistAlertLog) -> Dict[str, Any]:
    return {
        "id": str(entry.id),
        "todolist_id": str(entry.todolist_id),
        "alert_id": str(entry.alert_id) if entry.alert_id else None,
        "email": entry.email,
        "status": entry.status,
        "sent_at": entry.sent_at.isoformat() if entry.sent_at else None,
        "error_message": entry.error_message,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
