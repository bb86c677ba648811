from typing import Callable, Iterator, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from ..auth.security import get_settings, require_capability
from ..config import Settings
from ..db import get_db
from ..errors import NotFound
from ..models.models import Profile
from ..services import exports


router = APIRouter(prefix="/api/export", tags=["exports"])


def _stream_csv(request: Request, filename: str, produce: Callable[[Session], Iterator[str]]) -> StreamingResponse:
    """Stream CSV lines from a session owned by the response body."""
    database = request.app.state.db

    def body():
        db = database.session()
        try:
            yield "\ufeff"  # UTF-8 BOM
            yield from produce(db)
        finally:
            db.close()

    return StreamingResponse(
        body(),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/csv")
def export_task_values_csv(
    request: Request,
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    deviceIds: Optional[str] = None,
    kpiIds: Optional[str] = None,
    filename: Optional[str] = None,
    settings: Settings = Depends(get_settings),
    _: Profile = Depends(require_capability("exports", "read")),
):
    start, end = exports.parse_date_range(startDate, endDate)
    device_ids, kpi_ids = exports.parse_id_list(deviceIds), exports.parse_id_list(kpiIds)
    name = exports.export_filename("export", "csv", start, end, filename)

    def produce(db: Session):
        rows = exports.task_value_rows(db, start, end, device_ids, kpi_ids, settings.export_page_size)
        return exports.csv_lines(exports.TASK_VALUES_HEADER, rows, empty_row=exports.NO_DATA_ROW)

    return _stream_csv(request, name, produce)


@router.get("/json")
def export_task_values_json(
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    deviceIds: Optional[str] = None,
    kpiIds: Optional[str] = None,
    filename: Optional[str] = None,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    _: Profile = Depends(require_capability("exports", "read")),
):
    start, end = exports.parse_date_range(startDate, endDate)
    records = exports.task_value_records(
        db, start, end, exports.parse_id_list(deviceIds), exports.parse_id_list(kpiIds), settings.export_page_size
    )
    name = exports.export_filename("export", "json", start, end, filename)
    return JSONResponse(
        content={"startDate": start.isoformat(), "endDate": end.isoformat(), "count": len(records), "data": records},
        headers={"Content-Disposition": f'attachment; filename="{name}"'},
    )


@router.get("/{kind}")
def export_table(
    kind: str,
    request: Request,
    startDate: Optional[str] = None,
    endDate: Optional[str] = None,
    settings: Settings = Depends(get_settings),
    _: Profile = Depends(require_capability("exports", "read")),
):
    if kind not in exports.TABLE_EXPORTS:
        raise NotFound("Tipo di esportazione non supportato")
    start, end = exports.parse_date_range(startDate, endDate, required=False)
    name = exports.export_filename(kind.replace("-", "_"), "csv", start, end)
    return _stream_csv(
        request,
        name,
        lambda db: exports.table_export(db, kind, settings.export_page_size, start, end),
    )
