"""
CSV / JSON export serializers.

Large tables are read page by page (``export_page_size`` rows, advancing
offset over a stable ordering) and streamed out row by row.
"""
import csv
import io
import json
import re
from datetime import date, datetime, time
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from slugify import slugify
from sqlalchemy.orm import Query, Session

from ..errors import ValidationFailed
from ..models.models import (
    Device,
    Kpi,
    KpiAlertLog,
    Profile,
    Task,
    Todolist,
    TodolistAlertLog,
    UserActivity,
)
from .expiry import format_slot

DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

TASK_VALUES_HEADER = ["Data", "Punto di controllo", "Nome Controllo", "Value Name", "Value"]
NO_DATA_ROW = ["Nessun dato trovato"]

STATUS_LABELS = {"pending": "In Attesa", "in_progress": "In Corso", "completed": "Completato"}
TASK_STATUS_LABELS = {"pending": "In Attesa", "completed": "Completato", "discarded": "Scartato"}
SLOT_TYPE_LABELS = {"standard": "Standard", "custom": "Personalizzato"}


def _parse_day(raw: str, label: str) -> date:
    if not DATE_PATTERN.match(raw or ""):
        raise ValidationFailed(f"Formato {label} non valido, usare YYYY-MM-DD")
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise ValidationFailed(f"{label} non valida") from exc


def parse_date_range(start: Optional[str], end: Optional[str], required: bool = True) -> Tuple[Optional[date], Optional[date]]:
    """Validate a ``startDate``/``endDate`` pair before anything touches the database."""
    if not start and not end and not required:
        return None, None
    if not start or not end:
        raise ValidationFailed("startDate e endDate sono obbligatori")
    start_day = _parse_day(start, "startDate")
    end_day = _parse_day(end, "endDate")
    if start_day > end_day:
        raise ValidationFailed("startDate deve essere precedente o uguale a endDate")
    return start_day, end_day


def parse_id_list(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def day_bounds(start: date, end: date) -> Tuple[datetime, datetime]:
    return datetime.combine(start, time.min), datetime.combine(end, time.max)


def iter_paginated(query: Query, page_size: int) -> Iterator[Any]:
    """Yield the rows of an ordered query one page at a time."""
    offset = 0
    while True:
        page = query.offset(offset).limit(page_size).all()
        yield from page
        if len(page) < page_size:
            return
        offset += page_size


def csv_lines(header: List[str], rows: Iterable[List[Any]], empty_row: Optional[List[str]] = None) -> Iterator[str]:
    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=",", quoting=csv.QUOTE_MINIMAL)

    def flush() -> str:
        text = buffer.getvalue()
        buffer.seek(0)
        buffer.truncate(0)
        return text

    writer.writerow(header)
    yield flush()
    empty = True
    for row in rows:
        empty = False
        writer.writerow([_cell(v) for v in row])
        yield flush()
    if empty and empty_row:
        writer.writerow(empty_row)
        yield flush()


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    if isinstance(value, datetime):
        return fmt_datetime(value)
    return value


def fmt_datetime(value: Optional[datetime]) -> str:
    return value.strftime("%d/%m/%Y %H:%M:%S") if value else ""


def export_filename(kind: str, ext: str, start: Optional[date] = None, end: Optional[date] = None, custom: Optional[str] = None) -> str:
    base = slugify(custom) if custom else ""
    if start and end:
        if base:
            return f"{base}-{start.isoformat()}-to-{end.isoformat()}.{ext}"
        return f"{kind}_{start.isoformat()}_{end.isoformat()}.{ext}"
    stamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    return f"{base or kind}_{stamp}.{ext}"


# --- task values (csv / json) ---

def _value_items(task: Task) -> List[Tuple[str, Any]]:
    value = task.value
    if value is None or value == [] or value == {}:
        return []
    if isinstance(value, list):
        items = []
        for item in value:
            if isinstance(item, dict):
                items.append((str(item.get("name") or item.get("id") or "valore"), item.get("value")))
            else:
                items.append(("valore", item))
        return items
    if isinstance(value, dict):
        if "value" in value:
            return [(str(value.get("name") or value.get("id") or "valore"), value.get("value"))]
        return [(str(k), v) for k, v in value.items()]
    return [("valore", value)]


def _task_values_query(db: Session, start: date, end: date, device_ids: List[str], kpi_ids: List[str]):
    low, high = day_bounds(start, end)
    query = (
        db.query(Task, Todolist, Device, Kpi)
        .join(Todolist, Task.todolist_id == Todolist.id)
        .join(Device, Todolist.device_id == Device.id)
        .join(Kpi, Task.kpi_id == Kpi.id)
        .filter(Todolist.scheduled_execution >= low, Todolist.scheduled_execution <= high)
    )
    if device_ids:
        query = query.filter(Todolist.device_id.in_(device_ids))
    if kpi_ids:
        query = query.filter(Task.kpi_id.in_(kpi_ids))
    return query.order_by(Todolist.scheduled_execution, Todolist.device_id, Task.kpi_id, Task.id)


def task_value_rows(db: Session, start: date, end: date, device_ids: List[str], kpi_ids: List[str], page_size: int) -> Iterator[List[Any]]:
    for task, todolist, device, kpi in iter_paginated(_task_values_query(db, start, end, device_ids, kpi_ids), page_size):
        day = todolist.scheduled_execution.strftime("%d/%m/%Y %H:%M")
        items = _value_items(task)
        if not items:
            yield [day, device.name, kpi.name, "valore", "N/A"]
            continue
        for name, value in items:
            yield [day, device.name, kpi.name, name, "N/A" if value is None else value]


def task_value_records(db: Session, start: date, end: date, device_ids: List[str], kpi_ids: List[str], page_size: int) -> List[Dict[str, Any]]:
    records = []
    for task, todolist, device, kpi in iter_paginated(_task_values_query(db, start, end, device_ids, kpi_ids), page_size):
        records.append({
            "todolist_id": str(todolist.id),
            "scheduled_execution": todolist.scheduled_execution.isoformat(),
            "device_id": device.id,
            "device_name": device.name,
            "kpi_id": kpi.id,
            "kpi_name": kpi.name,
            "task_id": str(task.id),
            "status": task.status,
            "values": [{"name": n, "value": v} for n, v in _value_items(task)],
            "completed_at": task.completed_at.isoformat() if task.completed_at else None,
        })
    return records


# --- whole-table exports ---

Column = Tuple[str, Callable[[Any], Any]]

TODOLIST_COLUMNS: List[Column] = [
    ("ID", lambda t: str(t.id)),
    ("ID Punto di controllo", lambda t: t.device_id),
    ("Data programmata", lambda t: fmt_datetime(t.scheduled_execution)),
    ("Stato", lambda t: STATUS_LABELS.get(t.status, t.status)),
    ("Tipo fascia oraria", lambda t: SLOT_TYPE_LABELS.get(t.time_slot_type, t.time_slot_type)),
    ("Inizio fascia", lambda t: format_slot(t.time_slot_start)),
    ("Fine fascia", lambda t: format_slot(t.time_slot_end)),
    ("Scadenza", lambda t: fmt_datetime(t.end_day_time)),
    ("Categoria", lambda t: t.todolist_category),
    ("Data completamento", lambda t: fmt_datetime(t.completion_date)),
    ("Completata da", lambda t: str(t.completed_by) if t.completed_by else None),
    ("Creata il", lambda t: fmt_datetime(t.created_at)),
]

TASK_COLUMNS: List[Column] = [
    ("ID", lambda t: str(t.id)),
    ("ID Todolist", lambda t: str(t.todolist_id)),
    ("ID Controllo", lambda t: t.kpi_id),
    ("Stato", lambda t: TASK_STATUS_LABELS.get(t.status, t.status)),
    ("Valore", lambda t: t.value),
    ("Completato da", lambda t: str(t.completed_by) if t.completed_by else None),
    ("Completato il", lambda t: fmt_datetime(t.completed_at)),
    ("Creato il", lambda t: fmt_datetime(t.created_at)),
]

DEVICE_COLUMNS: List[Column] = [
    ("ID", lambda d: d.id),
    ("Nome", lambda d: d.name),
    ("Posizione", lambda d: d.location),
    ("Descrizione", lambda d: d.description),
    ("Tag", lambda d: ", ".join(d.tags or [])),
    ("Eliminato", lambda d: d.deleted),
    ("Creato il", lambda d: fmt_datetime(d.created_at)),
]

KPI_COLUMNS: List[Column] = [
    ("ID", lambda k: k.id),
    ("Nome", lambda k: k.name),
    ("Descrizione", lambda k: k.description),
    ("Campi", lambda k: k.value),
    ("Eliminato", lambda k: k.deleted),
    ("Creato il", lambda k: fmt_datetime(k.created_at)),
]

PROFILE_COLUMNS: List[Column] = [
    ("ID", lambda p: str(p.id)),
    ("Email", lambda p: p.email),
    ("Ruolo", lambda p: p.role),
    ("Stato", lambda p: p.status),
    ("Creato il", lambda p: fmt_datetime(p.created_at)),
]

ACTIVITY_COLUMNS: List[Column] = [
    ("ID", lambda a: str(a.id)),
    ("Utente", lambda a: str(a.user_id) if a.user_id else None),
    ("Azione", lambda a: a.action_type),
    ("Entità", lambda a: a.entity_type),
    ("ID Entità", lambda a: a.entity_id),
    ("Dettagli", lambda a: a.details),
    ("Data", lambda a: fmt_datetime(a.created_at)),
]

KPI_ALERT_LOG_COLUMNS: List[Column] = [
    ("ID", lambda e: str(e.id)),
    ("ID Alert", lambda e: str(e.alert_id)),
    ("ID Controllo", lambda e: e.kpi_id),
    ("ID Punto di controllo", lambda e: e.device_id),
    ("Valore", lambda e: e.triggered_value),
    ("Data", lambda e: fmt_datetime(e.triggered_at)),
    ("Email inviata", lambda e: e.email_sent),
    ("Errore", lambda e: e.error_message),
]

TODOLIST_ALERT_LOG_COLUMNS: List[Column] = [
    ("ID", lambda e: str(e.id)),
    ("ID Todolist", lambda e: str(e.todolist_id)),
    ("Email", lambda e: e.email),
    ("Stato", lambda e: e.status),
    ("Inviata il", lambda e: fmt_datetime(e.sent_at)),
    ("Errore", lambda e: e.error_message),
    ("Creato il", lambda e: fmt_datetime(e.created_at)),
]

# kind -> (model, date column used by startDate/endDate, columns)
TABLE_EXPORTS: Dict[str, Tuple[Any, Any, List[Column]]] = {
    "todolists": (Todolist, Todolist.scheduled_execution, TODOLIST_COLUMNS),
    "tasks": (Task, Task.created_at, TASK_COLUMNS),
    "devices": (Device, Device.created_at, DEVICE_COLUMNS),
    "kpis": (Kpi, Kpi.created_at, KPI_COLUMNS),
    "profiles": (Profile, Profile.created_at, PROFILE_COLUMNS),
    "user-activities": (UserActivity, UserActivity.created_at, ACTIVITY_COLUMNS),
    "kpi-alert-logs": (KpiAlertLog, KpiAlertLog.triggered_at, KPI_ALERT_LOG_COLUMNS),
    "todolist-alert-logs": (TodolistAlertLog, TodolistAlertLog.created_at, TODOLIST_ALERT_LOG_COLUMNS),
}


def table_export(db: Session, kind: str, page_size: int, start: Optional[date] = None, end: Optional[date] = None) -> Iterator[str]:
    model, date_column, columns = TABLE_EXPORTS[kind]
    query = db.query(model)
    if start and end:
        low, high = day_bounds(start, end)
        query = query.filter(date_column >= low, date_column <= high)
    query = query.order_by(date_column, model.id)
    rows = ([getter(obj) for _, getter in columns] for obj in iter_paginated(query, page_size))
    return csv_lines([header for header, _ in columns], rows)
