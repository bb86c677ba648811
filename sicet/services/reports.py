"""
Report templates rendered to Excel.

A template lists control points (a device plus the KPI fields to show). The
export writes one sheet per control point, one row per todolist in range and
one column per control.
"""
import re
from datetime import date, datetime
from io import BytesIO
from typing import Any, Dict, List

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter
from sqlalchemy.orm import Session, selectinload

from ..errors import ValidationFailed
from ..models.models import Device, ReportTemplate, Todolist
from .exports import STATUS_LABELS, day_bounds
from .expiry import is_todolist_expired
from .kpi_alerts import find_field_value, MISSING

INVALID_SHEET_CHARS = re.compile(r"[\\/*?:\[\]]")

HEADER_FILL = PatternFill(start_color='4472C4', end_color='4472C4', fill_type='solid')
HEADER_FONT = Font(bold=True, color='FFFFFF', size=11)
EXPIRED_FILL = PatternFill(start_color='F8CBAD', end_color='F8CBAD', fill_type='solid')


def validate_control_points(control_points: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not control_points:
        raise ValidationFailed("Il report deve contenere almeno un punto di controllo")
    cleaned = []
    for point in control_points:
        device_id = point.get("device_id")
        controls = point.get("controls") or []
        if not device_id:
            raise ValidationFailed("Punto di controllo senza dispositivo")
        if not controls:
            raise ValidationFailed(f"Nessun controllo selezionato per {device_id}")
        for control in controls:
            if not control.get("kpi_id") or not control.get("field_id"):
                raise ValidationFailed("Ogni controllo richiede kpi_id e field_id")
        cleaned.append({
            "device_id": device_id,
            "name": point.get("name") or device_id,
            "controls": [
                {"kpi_id": c["kpi_id"], "field_id": c["field_id"], "name": c.get("name") or c["field_id"]}
                for c in controls
            ],
        })
    return cleaned


def serialize_template(t: ReportTemplate) -> Dict[str, Any]:
    return {
        "id": str(t.id),
        "name": t.name,
        "description": t.description,
        "control_points": t.control_points or [],
        "created_by": str(t.created_by) if t.created_by else None,
        "created_at": t.created_at.isoformat() if t.created_at else None,
        "updated_at": t.updated_at.isoformat() if t.updated_at else None,
    }


def _sheet_title(name: str, used: set) -> str:
    base = INVALID_SHEET_CHARS.sub(" ", name).strip()[:28] or "Foglio"
    title, i = base, 1
    while title in used:
        i += 1
        title = f"{base[:25]} ({i})"
    used.add(title)
    return title


def _cell_value(raw: Any) -> Any:
    if raw is MISSING or raw is None:
        return ""
    if isinstance(raw, bool):
        return "Sì" if raw else "No"
    if isinstance(raw, (dict, list)):
        return str(raw)
    return raw


def build_report_workbook(db: Session, template: ReportTemplate, date_from: date, date_to: date, now: datetime) -> bytes:
    low, high = day_bounds(date_from, date_to)
    wb = Workbook()
    wb.remove(wb.active)
    used_titles: set = set()

    for point in template.control_points or []:
        device = db.get(Device, point["device_id"])
        ws = wb.create_sheet(_sheet_title(point.get("name") or point["device_id"], used_titles))
        controls = point.get("controls") or []

        ws['A1'] = f"{template.name} - {device.name if device else point['device_id']}"
        ws['A1'].font = Font(bold=True, size=14)
        ws['A2'] = f"Periodo: {date_from.strftime('%d/%m/%Y')} - {date_to.strftime('%d/%m/%Y')}"
        ws['A2'].font = Font(size=10, italic=True)

        headers = ["Data", "Stato"] + [c.get("name") or c["field_id"] for c in controls]
        for col, header in enumerate(headers, start=1):
            cell = ws.cell(row=4, column=col, value=header)
            cell.fill = HEADER_FILL
            cell.font = HEADER_FONT
            cell.alignment = Alignment(horizontal='center', vertical='center')

        todolists = (
            db.query(Todolist)
            .options(selectinload(Todolist.tasks))
            .filter(
                Todolist.device_id == point["device_id"],
                Todolist.scheduled_execution >= low,
                Todolist.scheduled_execution <= high,
            )
            .order_by(Todolist.scheduled_execution)
            .all()
        )
        row = 5
        for todolist in todolists:
            expired = todolist.status != "completed" and is_todolist_expired(
                todolist.scheduled_execution, todolist.time_slot_type, todolist.time_slot_end, todolist.time_slot_start, now=now
            )
            tasks_by_kpi = {t.kpi_id: t for t in todolist.tasks}
            ws.cell(row=row, column=1, value=todolist.scheduled_execution.strftime("%d/%m/%Y %H:%M"))
            ws.cell(row=row, column=2, value="SCADUTA" if expired else STATUS_LABELS.get(todolist.status, todolist.status))
            for col, control in enumerate(controls, start=3):
                task = tasks_by_kpi.get(control["kpi_id"])
                raw = find_field_value(task.value, control["field_id"]) if task else MISSING
                ws.cell(row=row, column=col, value=_cell_value(raw))
            if expired:
                for col in range(1, len(headers) + 1):
                    ws.cell(row=row, column=col).fill = EXPIRED_FILL
            row += 1

        ws.column_dimensions['A'].width = 18
        ws.column_dimensions['B'].width = 14
        for col in range(3, len(headers) + 1):
            ws.column_dimensions[get_column_letter(col)].width = 20

    if not wb.sheetnames:
        wb.create_sheet("Report")

    output = BytesIO()
    wb.save(output)
    return output.getvalue()
