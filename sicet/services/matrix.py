"""
Matrix view: todolist instances grouped by device and by the set of KPIs
they contain.

The KPI-set signature is the sorted, de-duplicated list of KPI ids joined by
``+``. One id gives a ``single`` group, more give a ``composite`` group. The
group key is ``<device_id>|<type>|<signature>``.
"""
import re
from collections import OrderedDict
from datetime import date, datetime, time
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy.orm import Session, selectinload

from ..config import Settings
from ..errors import Forbidden, ValidationFailed
from ..models.models import Device, Kpi, Profile, Todolist
from .expiry import format_slot, is_todolist_expired, local_now
from .lifecycle import delete_todolists

SIGNATURE_SEPARATOR = "+"
KEY_SEPARATOR = "|"
GROUP_TYPES = ("single", "composite")

_CONTROL_PREFIX = re.compile(r"^[A-Z0-9]+-")


def kpi_signature(kpi_ids: Iterable[str]) -> Tuple[Optional[str], str]:
    """Returns ``(group_type, signature)``; group_type is None for an empty set."""
    ids = sorted({k for k in kpi_ids if k})
    if not ids:
        return None, ""
    return ("single" if len(ids) == 1 else "composite"), SIGNATURE_SEPARATOR.join(ids)


def group_key(device_id: str, group_type: str, signature: str) -> str:
    return KEY_SEPARATOR.join((device_id, group_type, signature))


def parse_group_key(key: str) -> Tuple[str, str, str]:
    parts = (key or "").split(KEY_SEPARATOR)
    if len(parts) != 3 or not all(parts):
        raise ValidationFailed("Chiave del gruppo non valida")
    device_id, group_type, signature = parts
    if group_type not in GROUP_TYPES:
        raise ValidationFailed("Tipo di gruppo non valido")
    return device_id, group_type, signature


def format_control_name(field_id: str) -> str:
    """``K0000001-temperatura_acqua`` -> ``Temperatura Acqua``."""
    name = _CONTROL_PREFIX.sub("", field_id or "").replace("_", " ").strip()
    return name.title()


def _controls(value: Any) -> List[Dict[str, Any]]:
    if isinstance(value, list):
        items = [v for v in value if isinstance(v, dict) and v.get("id")]
    elif isinstance(value, dict) and value.get("id"):
        items = [value]
    else:
        return []
    return [{"id": v["id"], "name": format_control_name(str(v["id"])), "value": v.get("value")} for v in items]


def _range_bounds(date_from: date, date_to: date) -> Tuple[datetime, datetime]:
    return datetime.combine(date_from, time.min), datetime.combine(date_to, time.max)


def _todolists_in_range(db: Session, date_from: date, date_to: date, device_ids: Optional[List[str]] = None, lock: bool = False):
    start, end = _range_bounds(date_from, date_to)
    query = (
        db.query(Todolist)
        .options(selectinload(Todolist.tasks))
        .filter(Todolist.scheduled_execution >= start, Todolist.scheduled_execution <= end)
    )
    if device_ids:
        query = query.filter(Todolist.device_id.in_(device_ids))
    if lock:
        query = query.with_for_update()
    return query.order_by(Todolist.scheduled_execution).all()


def serialize_matrix_todolist(todolist: Todolist, now: datetime) -> Dict[str, Any]:
    expired = is_todolist_expired(
        todolist.scheduled_execution, todolist.time_slot_type, todolist.time_slot_end, todolist.time_slot_start, now=now
    )
    tasks = []
    for task in todolist.tasks:
        tasks.append({
            "id": str(task.id),
            "kpi_id": task.kpi_id,
            "status": task.status,
            "value": task.value,
            "controls": _controls(task.value),
            "completed_at": task.completed_at.isoformat() if task.completed_at else None,
        })
    group_type, signature = kpi_signature(t.kpi_id for t in todolist.tasks)
    return {
        "id": str(todolist.id),
        "device_id": todolist.device_id,
        "scheduled_execution": todolist.scheduled_execution.isoformat(),
        "status": todolist.status,
        "time_slot_type": todolist.time_slot_type,
        "time_slot_start": todolist.time_slot_start,
        "time_slot_end": todolist.time_slot_end,
        "completion_date": todolist.completion_date.isoformat() if todolist.completion_date else None,
        "is_expired": expired and todolist.status != "completed",
        "is_completed": todolist.status == "completed",
        "group_type": group_type,
        "signature": signature,
        "tasks": tasks,
    }


def _frequency_days(executions: List[datetime]) -> Optional[float]:
    if len(executions) < 2:
        return None
    gaps = [(b - a).total_seconds() / 86400 for a, b in zip(executions, executions[1:])]
    return round(sum(gaps) / len(gaps), 2)


def build_matrix(
    db: Session,
    date_from: date,
    date_to: date,
    device_ids: Optional[List[str]] = None,
    now: Optional[datetime] = None,
    tz_name: str = "Europe/Rome",
) -> Dict[str, Any]:
    """Group the instances in ``[date_from, date_to]`` by device and KPI set."""
    if date_from > date_to:
        raise ValidationFailed("La data di inizio deve precedere la data di fine")
    if now is None:
        now = local_now(tz_name)

    todolists = _todolists_in_range(db, date_from, date_to, device_ids)
    kpi_ids = {t.kpi_id for tl in todolists for t in tl.tasks}
    kpi_names = {k.id: k.name for k in db.query(Kpi).filter(Kpi.id.in_(kpi_ids)).all()} if kpi_ids else {}
    device_ids_found = {tl.device_id for tl in todolists}
    devices = {d.id: d for d in db.query(Device).filter(Device.id.in_(device_ids_found)).all()} if device_ids_found else {}

    groups: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    for todolist in todolists:
        group_type, signature = kpi_signature(t.kpi_id for t in todolist.tasks)
        if group_type is None:
            continue
        key = group_key(todolist.device_id, group_type, signature)
        group = groups.get(key)
        if group is None:
            device = devices.get(todolist.device_id)
            group = groups[key] = {
                "key": key,
                "device_id": todolist.device_id,
                "device_name": device.name if device else todolist.device_id,
                "group_type": group_type,
                "signature": signature,
                "kpi_ids": signature.split(SIGNATURE_SEPARATOR),
                "label": " + ".join(kpi_names.get(k, k) for k in signature.split(SIGNATURE_SEPARATOR)),
                "status_counts": {"pending": 0, "in_progress": 0, "completed": 0, "expired": 0},
                "time_slot_types": [],
                "categories": [],
                "_executions": [],
                "_starts": [],
                "_ends": [],
                "_end_of_day": [],
                "todolists": [],
            }
        item = serialize_matrix_todolist(todolist, now)
        group["todolists"].append(item)
        group["status_counts"][todolist.status] = group["status_counts"].get(todolist.status, 0) + 1
        if item["is_expired"]:
            group["status_counts"]["expired"] += 1
        if todolist.time_slot_type not in group["time_slot_types"]:
            group["time_slot_types"].append(todolist.time_slot_type)
        if todolist.todolist_category and todolist.todolist_category not in group["categories"]:
            group["categories"].append(todolist.todolist_category)
        group["_executions"].append(todolist.scheduled_execution)
        if todolist.time_slot_type == "custom":
            if todolist.time_slot_start is not None:
                group["_starts"].append(todolist.time_slot_start)
            if todolist.time_slot_end is not None:
                group["_ends"].append(todolist.time_slot_end)
        if todolist.end_day_time is not None:
            group["_end_of_day"].append(todolist.end_day_time)

    result = []
    for group in groups.values():
        executions = sorted(group.pop("_executions"))
        starts, ends, end_of_day = group.pop("_starts"), group.pop("_ends"), group.pop("_end_of_day")
        future = [e for e in executions if e > now]
        group.update({
            "total_scheduled_count": len(executions),
            "future_remaining_count": len(future),
            "first_scheduled_execution": executions[0].isoformat(),
            "last_scheduled_execution": executions[-1].isoformat(),
            "next_scheduled_execution": future[0].isoformat() if future else None,
            "custom_time_slot": {"min_start": format_slot(min(starts)), "max_end": format_slot(max(ends))} if starts and ends else None,
            "last_end_of_day_time": max(end_of_day).isoformat() if end_of_day else None,
            "frequency_days": _frequency_days(executions),
        })
        result.append(group)

    return {
        "date_from": date_from.isoformat(),
        "date_to": date_to.isoformat(),
        "groups": result,
        "total_todolists": len(todolists),
    }


def delete_group(
    db: Session,
    settings: Settings,
    actor: Profile,
    date_from: date,
    date_to: date,
    group_type: str,
    key: str,
) -> Dict[str, Any]:
    """Delete the instances of one matrix group within the date range.

    The matching set is recomputed here from the current tasks of each
    instance; only exact signature matches are removed.
    """
    if actor.role != "admin":
        raise Forbidden("Solo gli amministratori possono eliminare gruppi")
    if date_from > date_to:
        raise ValidationFailed("La data di inizio deve precedere la data di fine")
    device_id, key_type, signature = parse_group_key(key)
    if key_type != group_type:
        raise ValidationFailed("Il tipo di gruppo non corrisponde alla chiave")

    candidates = _todolists_in_range(db, date_from, date_to, [device_id], lock=True)
    matching = [tl for tl in candidates if kpi_signature(t.kpi_id for t in tl.tasks) == (group_type, signature)]
    deleted = delete_todolists(
        db, settings, actor, matching,
        metadata={"batch_delete": True, "group_type": group_type, "group_key": key},
    )
    db.commit()
    structlog.get_logger().info(
        "matrix_group_deleted", group_key=key, group_type=group_type, deleted=deleted, actor_id=str(actor.id)
    )
    return {"deletedCount": deleted, "message": f"Eliminate {deleted} todolist"}
