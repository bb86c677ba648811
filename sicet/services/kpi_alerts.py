"""
Threshold alerts on KPI values.

An alert watches one (kpi, device) pair and holds a list of conditions on the
fields of the task value. Conditions are checked once per task, when it is
completed; ``Task.alert_checked`` records that the check ran. Triggers are
logged in the task transaction and emailed only after it commits.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.models import Device, Kpi, KpiAlert, KpiAlertLog, Task
from .mailer import kpi_alert_message

TRUE_STRINGS = {"true", "si", "sì", "yes", "1"}
FALSE_STRINGS = {"false", "no", "0"}

MISSING = object()


def find_field_value(value: Any, field_id: str) -> Any:
    """Pick the value of ``field_id`` out of a task value.

    Task values come as a list of ``{id, value}`` items, a single such object,
    or a bare primitive for single-field KPIs. Ids are matched exactly, then by
    the part after the last ``-`` (``K0000001-temperatura`` -> ``temperatura``).
    """
    if value is None:
        return MISSING
    suffix = field_id.rsplit("-", 1)[-1].lower()
    if isinstance(value, list):
        for item in value:
            if isinstance(item, dict) and item.get("id") == field_id:
                return item.get("value")
        for item in value:
            if not isinstance(item, dict):
                continue
            item_id = str(item.get("id") or item.get("name") or "")
            if item_id.rsplit("-", 1)[-1].lower() == suffix:
                return item.get("value")
        return MISSING
    if isinstance(value, dict):
        if "value" in value and (value.get("id") in (None, field_id) or str(value.get("id")).rsplit("-", 1)[-1].lower() == suffix):
            return value.get("value")
        if field_id in value:
            return value[field_id]
        return MISSING
    return value


def _to_bool(raw: Any) -> Optional[bool]:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return raw != 0
    if isinstance(raw, str):
        text = raw.strip().lower()
        if text in TRUE_STRINGS:
            return True
        if text in FALSE_STRINGS:
            return False
    return None


def _to_number(raw: Any) -> Optional[float]:
    if isinstance(raw, bool) or raw is None:
        return None
    try:
        return float(str(raw).replace(",", "."))
    except ValueError:
        return None


def evaluate_condition(condition: Dict[str, Any], raw: Any) -> Optional[str]:
    """Returns the trigger reason, or None when the value is acceptable."""
    kind = condition.get("type")
    if kind == "numeric":
        number = _to_number(raw)
        if number is None:
            return None
        low, high = condition.get("min"), condition.get("max")
        if low is not None and number < float(low):
            return f"inferiore al minimo {low}"
        if high is not None and number > float(high):
            return f"superiore al massimo {high}"
        return None
    if kind == "text":
        needle = condition.get("match_text")
        if needle and raw is not None and str(needle).lower() in str(raw).lower():
            return f"contiene \"{needle}\""
        return None
    if kind == "boolean":
        expected = condition.get("boolean_value")
        actual = _to_bool(raw)
        if expected is not None and actual is not None and actual == bool(expected):
            return f"uguale a {'Sì' if actual else 'No'}"
        return None
    return None


def evaluate_alert(alert: KpiAlert, value: Any) -> List[Dict[str, Any]]:
    triggered = []
    for condition in alert.conditions or []:
        field_id = condition.get("field_id")
        if not field_id:
            continue
        raw = find_field_value(value, field_id)
        if raw is MISSING:
            continue
        reason = evaluate_condition(condition, raw)
        if reason:
            triggered.append({"field": field_id, "value": raw, "reason": reason})
    return triggered


def check_task_alerts(db: Session, task: Task, device_id: str) -> List[KpiAlertLog]:
    """Evaluate the active alerts for a completed task and record the triggers.

    Marks the task as checked. The returned log entries are unsent; the caller
    commits them together with the task and then passes them to
    :func:`send_kpi_alert_emails`.
    """
    if task.alert_checked:
        return []
    log = structlog.get_logger()
    alerts = (
        db.query(KpiAlert)
        .filter(KpiAlert.kpi_id == task.kpi_id, KpiAlert.device_id == device_id, KpiAlert.is_active.is_(True))
        .all()
    )
    entries = []
    for alert in alerts:
        triggered = evaluate_alert(alert, task.value)
        if not triggered:
            continue
        entry = KpiAlertLog(
            alert_id=alert.id,
            kpi_id=task.kpi_id,
            device_id=device_id,
            task_id=task.id,
            triggered_value={"value": task.value, "triggered": triggered},
            triggered_at=datetime.utcnow(),
            email_sent=False,
        )
        db.add(entry)
        entries.append(entry)
        log.info("kpi_alert_triggered", alert_id=str(alert.id), task_id=str(task.id), fields=[t["field"] for t in triggered])
    task.alert_checked = True
    return entries


def send_kpi_alert_emails(db: Session, mailer, log_ids: List, public_base_url: str) -> List[KpiAlertLog]:
    """Send the emails for committed alert log entries, one commit per entry.

    Failures are stored on the entry and never propagate to the caller.
    """
    log = structlog.get_logger()
    sent = []
    for log_id in log_ids:
        entry = db.get(KpiAlertLog, log_id)
        if entry is None or entry.email_sent:
            continue
        alert = db.get(KpiAlert, entry.alert_id)
        if alert is None:
            continue
        try:
            kpi = db.get(Kpi, entry.kpi_id)
            device = db.get(Device, entry.device_id)
            task = db.get(Task, entry.task_id) if entry.task_id else None
            subject, body = kpi_alert_message(
                kpi.name if kpi else entry.kpi_id,
                device.name if device else entry.device_id,
                (entry.triggered_value or {}).get("triggered", []),
                f"{public_base_url}/todolist/view/{task.todolist_id if task else ''}",
            )
            mailer.send(alert.email, subject, body)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            entry.error_message = message[:2000]
            log.warning("kpi_alert_email_failed", alert_id=str(alert.id), log_id=str(log_id), error=message)
        else:
            entry.email_sent = True
            entry.email_sent_at = datetime.utcnow()
            sent.append(entry)
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            log.error("kpi_alert_log_update_failed", log_id=str(log_id), error=str(e))
    return sent


def serialize_kpi_alert(a: KpiAlert) -> Dict[str, Any]:
    return {
        "id": str(a.id),
        "kpi_id": a.kpi_id,
        "device_id": a.device_id,
        "email": a.email,
        "conditions": a.conditions or [],
        "is_active": a.is_active,
        "created_at": a.created_at.isoformat() if a.created_at else None,
    }


def serialize_kpi_alert_log(entry: KpiAlertLog) -> Dict[str, Any]:
    return {
        "id": str(entry.id),
        "alert_id": str(entry.alert_id),
        "kpi_id": entry.kpi_id,
        "device_id": entry.device_id,
        "task_id": str(entry.task_id) if entry.task_id else None,
        "triggered_value": entry.triggered_value,
        "triggered_at": entry.triggered_at.isoformat() if entry.triggered_at else None,
        "email_sent": entry.email_sent,
        "email_sent_at": entry.email_sent_at.isoformat() if entry.email_sent_at else None,
        "error_message": entry.error_message,
    }
