"""
CSV and JSON exports.
"""

import csv
import io
from datetime import date, datetime

import pytest

from sicet.errors import ValidationFailed
from sicet.models.models import Device
from sicet.services.exports import export_filename, fmt_datetime, iter_paginated, parse_date_range, parse_id_list


def read_csv(response):
    text = response.text
    assert text.startswith("\ufeff")
    return list(csv.reader(io.StringIO(text.lstrip("\ufeff"))))


@pytest.fixture
def exporter(make_profile, auth_headers):
    return auth_headers(make_profile("referrer"))


class TestDateRange:
    """Dates are validated before any query runs."""

    def test_valid(self):
        assert parse_date_range("2024-01-01", "2024-01-31") == (date(2024, 1, 1), date(2024, 1, 31))

    @pytest.mark.parametrize(
        "start, end",
        [("2024-02-01", "2024-01-01"), ("2024/01/01", "2024-01-31"), ("2024-01-01", None), ("2024-13-01", "2024-12-31")],
    )
    def test_invalid(self, start, end):
        with pytest.raises(ValidationFailed):
            parse_date_range(start, end)

    def test_optional_range(self):
        assert parse_date_range(None, None, required=False) == (None, None)

    def test_id_list(self):
        assert parse_id_list(" DTEST001, ,DTEST002 ") == ["DTEST001", "DTEST002"]
        assert parse_id_list(None) == []


class TestTaskValuesCsv:
    """One row per reported value."""

    def test_reversed_range_is_rejected(self, client, exporter):
        response = client.get("/api/export/csv", params={"startDate": "2024-02-01", "endDate": "2024-01-01"}, headers=exporter)
        assert response.status_code == 400
        assert "error" in response.json()

    def test_bad_format_is_rejected(self, client, exporter):
        response = client.get("/api/export/csv", params={"startDate": "01/01/2024", "endDate": "2024-01-31"}, headers=exporter)
        assert response.status_code == 400

    def test_operator_cannot_export(self, client, make_profile, auth_headers):
        response = client.get(
            "/api/export/csv",
            params={"startDate": "2024-01-01", "endDate": "2024-01-31"},
            headers=auth_headers(make_profile("operator")),
        )
        assert response.status_code == 403

    def test_rows(self, client, db, exporter, make_device, make_kpi, make_todolist):
        make_device()
        make_kpi("KTEST001", name="Temperatura")
        make_kpi("KTEST002", name="Pulizia")
        todolist = make_todolist("DTEST001", ["KTEST001", "KTEST002"])
        measured = next(t for t in todolist.tasks if t.kpi_id == "KTEST001")
        measured.value = [{"id": "KTEST001-valore", "name": "Valore", "value": 4.5}]
        measured.status = "completed"
        db.commit()

        response = client.get("/api/export/csv", params={"startDate": "2024-01-01", "endDate": "2024-01-31"}, headers=exporter)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert 'filename="export_2024-01-01_2024-01-31.csv"' in response.headers["content-disposition"]
        rows = read_csv(response)
        assert rows[0] == ["Data", "Punto di controllo", "Nome Controllo", "Value Name", "Value"]
        body = sorted(rows[1:])
        assert body == [
            ["10/01/2024 09:00", "Cella frigorifera", "Pulizia", "valore", "N/A"],
            ["10/01/2024 09:00", "Cella frigorifera", "Temperatura", "Valore", "4.5"],
        ]

    def test_empty_range(self, client, exporter):
        response = client.get("/api/export/csv", params={"startDate": "2030-01-01", "endDate": "2030-01-31"}, headers=exporter)

        rows = read_csv(response)
        assert rows[1] == ["Nessun dato trovato"]

    def test_kpi_filter_and_custom_filename(self, client, exporter, make_device, make_kpi, make_todolist):
        make_device()
        make_kpi("KTEST001")
        make_kpi("KTEST002", name="Pulizia")
        make_todolist("DTEST001", ["KTEST001", "KTEST002"])

        response = client.get(
            "/api/export/csv",
            params={"startDate": "2024-01-01", "endDate": "2024-01-31", "kpiIds": "KTEST002", "filename": "Controlli Gennaio"},
            headers=exporter,
        )

        rows = read_csv(response)
        assert [r[2] for r in rows[1:]] == ["Pulizia"]
        assert "controlli-gennaio-2024-01-01-to-2024-01-31.csv" in response.headers["content-disposition"]

    def test_json(self, client, exporter, make_device, make_kpi, make_todolist):
        make_device()
        make_kpi()
        make_todolist("DTEST001", ["KTEST001"])

        response = client.get("/api/export/json", params={"startDate": "2024-01-01", "endDate": "2024-01-31"}, headers=exporter)

        payload = response.json()
        assert payload["count"] == 1
        assert payload["data"][0]["device_name"] == "Cella frigorifera"
        assert payload["data"][0]["values"] == []


class TestTableExports:
    """Whole-table CSVs, read in pages."""

    def test_todolist_status_is_translated(self, client, exporter, make_device, make_kpi, make_todolist):
        make_device()
        make_kpi()
        make_todolist("DTEST001", ["KTEST001"])

        rows = read_csv(client.get("/api/export/todolists", headers=exporter))

        header, first = rows[0], rows[1]
        assert first[header.index("Stato")] == "In Attesa"
        assert first[header.index("Data programmata")] == "10/01/2024 09:00:00"

    def test_all_pages_are_streamed(self, client, exporter, make_device):
        for i in range(5):
            make_device(f"DPAGE00{i}", name=f"Punto {i}")

        rows = read_csv(client.get("/api/export/devices", headers=exporter))

        assert sorted(r[0] for r in rows[1:]) == [f"DPAGE00{i}" for i in range(5)]

    def test_unknown_kind(self, client, exporter):
        response = client.get("/api/export/spaceships", headers=exporter)
        assert response.status_code == 404

    def test_range_must_be_valid(self, client, exporter):
        response = client.get("/api/export/tasks", params={"startDate": "2024-01-31", "endDate": "2024-01-01"}, headers=exporter)
        assert response.status_code == 400


class TestPagination:
    def test_exact_multiple_of_page_size(self, db, make_device):
        for i in range(4):
            make_device(f"DPAGE00{i}")

        ids = [d.id for d in iter_paginated(db.query(Device).order_by(Device.id), 2)]

        assert ids == ["DPAGE000", "DPAGE001", "DPAGE002", "DPAGE003"]

    def test_filename_without_range(self):
        name = export_filename("devices", "csv")
        assert name.startswith("devices_") and name.endswith(".csv")

    def test_filename_with_range(self):
        assert export_filename("export", "json", date(2024, 1, 1), date(2024, 1, 31)) == "export_2024-01-01_2024-01-31.json"


def test_timestamps_are_day_first():
    assert fmt_datetime(datetime(2024, 3, 5, 7, 8, 9)) == "05/03/2024 07:08:09"
