"""
Report templates and their Excel export.
"""

from datetime import date, datetime
from io import BytesIO

import pytest
from openpyxl import load_workbook

from sicet.models.models import ReportTemplate
from sicet.services.reports import build_report_workbook


@pytest.fixture
def headers(admin, auth_headers):
    return auth_headers(admin)


@pytest.fixture
def template_payload(make_device, make_kpi):
    make_device("DTEST001", name="Cella frigorifera")
    make_kpi("KTEST001", name="Temperatura")
    return {
        "name": "Registro HACCP",
        "control_points": [
            {
                "device_id": "DTEST001",
                "name": "Cella 1",
                "controls": [{"kpi_id": "KTEST001", "field_id": "KTEST001-valore", "name": "Temperatura (°C)"}],
            }
        ],
    }


class TestTemplates:
    def test_crud(self, client, headers, template_payload):
        created = client.post("/api/reports", json=template_payload, headers=headers)
        assert created.status_code == 201
        template_id = created.json()["id"]

        renamed = client.put(f"/api/reports/{template_id}", json={"name": "Registro mensile"}, headers=headers)
        assert renamed.json()["name"] == "Registro mensile"
        assert [t["id"] for t in client.get("/api/reports", headers=headers).json()] == [template_id]

        assert client.delete(f"/api/reports/{template_id}", headers=headers).status_code == 200
        assert client.get(f"/api/reports/{template_id}", headers=headers).status_code == 404

    def test_unknown_device(self, client, headers, template_payload):
        template_payload["control_points"][0]["device_id"] = "DNOPE001"
        response = client.post("/api/reports", json=template_payload, headers=headers)
        assert response.status_code == 404

    def test_needs_controls(self, client, headers, template_payload):
        template_payload["control_points"][0]["controls"] = []
        assert client.post("/api/reports", json=template_payload, headers=headers).status_code == 400

    def test_referrer_reads_but_cannot_write(self, client, make_profile, auth_headers, template_payload):
        referrer = auth_headers(make_profile("referrer"))
        assert client.get("/api/reports", headers=referrer).status_code == 200
        assert client.post("/api/reports", json=template_payload, headers=referrer).status_code == 403

    def test_malformed_id(self, client, headers):
        assert client.get("/api/reports/not-a-uuid", headers=headers).status_code == 400


class TestWorkbook:
    """One sheet per control point, one row per todolist."""

    @pytest.fixture
    def template(self, db, admin, template_payload, make_todolist):
        done = make_todolist("DTEST001", ["KTEST001"], scheduled=datetime(2024, 1, 10, 9, 0), status="completed", task_statuses=["completed"])
        done.tasks[0].value = [{"id": "KTEST001-valore", "value": 3.5}]
        make_todolist("DTEST001", ["KTEST001"], scheduled=datetime(2024, 1, 11, 9, 0))
        template = ReportTemplate(name="Registro HACCP", control_points=template_payload["control_points"], created_by=admin.id)
        db.add(template)
        db.commit()
        return template

    def test_rows_and_expired_marker(self, db, template):
        content = build_report_workbook(db, template, date(2024, 1, 1), date(2024, 1, 31), now=datetime(2024, 2, 1))

        ws = load_workbook(BytesIO(content))["Cella 1"]
        assert ws["A1"].value == "Registro HACCP - Cella frigorifera"
        assert [c.value for c in ws[4]] == ["Data", "Stato", "Temperatura (°C)"]
        assert [c.value for c in ws[5]] == ["10/01/2024 09:00", "Completato", 3.5]
        assert ws["B6"].value == "SCADUTA"
        assert ws["C6"].value in ("", None)

    def test_export_endpoint(self, client, headers, template):
        response = client.get(
            f"/api/reports/{template.id}/export",
            params={"startDate": "2024-01-01", "endDate": "2024-01-31"},
            headers=headers,
        )

        assert response.status_code == 200
        assert "registro-haccp_2024-01-01_2024-01-31.xlsx" in response.headers["content-disposition"]
        assert load_workbook(BytesIO(response.content)).sheetnames == ["Cella 1"]

    def test_export_requires_range(self, client, headers, template):
        response = client.get(f"/api/reports/{template.id}/export", headers=headers)
        assert response.status_code == 400
