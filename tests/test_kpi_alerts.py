"""
KPI threshold alerts.
"""

import pytest

from sicet.models.models import KpiAlert, KpiAlertLog
from sicet.services.kpi_alerts import (
    MISSING,
    check_task_alerts,
    evaluate_condition,
    find_field_value,
    send_kpi_alert_emails,
)


class TestFindFieldValue:
    def test_exact_id(self):
        value = [{"id": "K0000001-temperatura", "value": 4}, {"id": "K0000001-umidita", "value": 60}]
        assert find_field_value(value, "K0000001-umidita") == 60

    def test_suffix_match(self):
        assert find_field_value([{"id": "temperatura", "value": 4}], "K0000001-temperatura") == 4

    def test_single_object_and_primitive(self):
        assert find_field_value({"id": "K0000001-temperatura", "value": 7}, "K0000001-temperatura") == 7
        assert find_field_value(12, "K0000001-temperatura") == 12

    def test_missing(self):
        assert find_field_value([{"id": "K0000001-altro", "value": 1}], "K0000001-temperatura") is MISSING
        assert find_field_value(None, "K0000001-temperatura") is MISSING


class TestEvaluateCondition:
    @pytest.mark.parametrize("raw, triggered", [(3, True), ("9,5", True), (5, False), (8, False), ("n/d", False)])
    def test_numeric_bounds(self, raw, triggered):
        condition = {"type": "numeric", "min": 4, "max": 8}
        assert (evaluate_condition(condition, raw) is not None) is triggered

    def test_text_is_case_insensitive(self):
        assert evaluate_condition({"type": "text", "match_text": "guasto"}, "Compressore GUASTO")
        assert evaluate_condition({"type": "text", "match_text": "guasto"}, "ok") is None

    @pytest.mark.parametrize("raw", [True, "sì", "Si", "yes", 1])
    def test_boolean_truthy_spellings(self, raw):
        assert evaluate_condition({"type": "boolean", "boolean_value": True}, raw)

    def test_boolean_mismatch(self):
        assert evaluate_condition({"type": "boolean", "boolean_value": True}, "no") is None


class TestCheckTaskAlerts:
    """Triggers are logged in the task transaction and mailed after commit."""

    @pytest.fixture
    def task(self, db, make_device, make_kpi, make_todolist):
        make_device()
        make_kpi()
        todolist = make_todolist("DTEST001", ["KTEST001"])
        task = todolist.tasks[0]
        task.value = [{"id": "KTEST001-valore", "value": 15}]
        db.commit()
        return task

    def _alert(self, db, email="qa@example.com", is_active=True):
        alert = KpiAlert(
            kpi_id="KTEST001", device_id="DTEST001", email=email, is_active=is_active,
            conditions=[{"field_id": "KTEST001-valore", "type": "numeric", "max": 8}],
        )
        db.add(alert)
        db.commit()
        return alert

    def test_check_logs_without_sending(self, db, mailer, task):
        self._alert(db)

        entries = check_task_alerts(db, task, "DTEST001")
        db.commit()

        assert len(entries) == 1
        assert entries[0].email_sent is False
        assert task.alert_checked is True
        assert mailer.sent == []

    def test_send_after_commit(self, db, mailer, task):
        self._alert(db)
        entries = check_task_alerts(db, task, "DTEST001")
        db.commit()

        sent = send_kpi_alert_emails(db, mailer, [e.id for e in entries], "https://sicet.example")

        assert len(sent) == 1
        entry = db.query(KpiAlertLog).one()
        assert entry.email_sent is True
        assert entry.email_sent_at is not None
        assert f"https://sicet.example/todolist/view/{task.todolist_id}" in mailer.sent[0]["body"]

    def test_sent_entry_is_not_resent(self, db, mailer, task):
        self._alert(db)
        entries = check_task_alerts(db, task, "DTEST001")
        db.commit()
        ids = [e.id for e in entries]

        send_kpi_alert_emails(db, mailer, ids, "https://sicet.example")
        assert send_kpi_alert_emails(db, mailer, ids, "https://sicet.example") == []
        assert len(mailer.sent) == 1

    @pytest.mark.parametrize("failure", ["fail_for", "crash_for"])
    def test_email_failure_is_recorded(self, db, mailer, task, failure):
        self._alert(db, email="broken@example.com")
        getattr(mailer, failure).add("broken@example.com")
        entries = check_task_alerts(db, task, "DTEST001")
        db.commit()
        ids = [e.id for e in entries]

        assert send_kpi_alert_emails(db, mailer, ids, "https://sicet.example") == []

        entry = db.query(KpiAlertLog).one()
        assert entry.email_sent is False
        assert "broken@example.com" in entry.error_message

    def test_inactive_alert_is_ignored(self, db, mailer, task):
        self._alert(db, is_active=False)

        assert check_task_alerts(db, task, "DTEST001") == []
        assert mailer.sent == []

    def test_other_device_is_ignored(self, db, mailer, task, make_device):
        make_device("DOTHER01", name="Forno")
        self._alert(db)

        assert check_task_alerts(db, task, "DOTHER01") == []


class TestAlertRoutes:
    def test_create_and_list(self, client, admin, auth_headers, make_device, make_kpi):
        make_device()
        make_kpi()
        payload = {
            "kpi_id": "KTEST001",
            "device_id": "DTEST001",
            "email": "qa@example.com",
            "conditions": [{"field_id": "KTEST001-valore", "type": "numeric", "min": 2}],
        }

        created = client.post("/api/alerts", json=payload, headers=auth_headers(admin))
        listed = client.get("/api/alerts", params={"kpi_id": "KTEST001"}, headers=auth_headers(admin))

        assert created.status_code == 201
        assert created.json()["conditions"][0]["min"] == 2
        assert [a["id"] for a in listed.json()] == [created.json()["id"]]

    def test_numeric_condition_needs_a_bound(self, client, admin, auth_headers):
        payload = {
            "kpi_id": "KTEST001",
            "device_id": "DTEST001",
            "email": "qa@example.com",
            "conditions": [{"field_id": "KTEST001-valore", "type": "numeric"}],
        }
        response = client.post("/api/alerts", json=payload, headers=auth_headers(admin))
        assert response.status_code == 400

    def test_unknown_kpi(self, client, admin, auth_headers, make_device):
        make_device()
        payload = {
            "kpi_id": "KNOPE001",
            "device_id": "DTEST001",
            "email": "qa@example.com",
            "conditions": [{"field_id": "KNOPE001-valore", "type": "text", "match_text": "guasto"}],
        }
        assert client.post("/api/alerts", json=payload, headers=auth_headers(admin)).status_code == 404

    def test_logs_via_task_completion(self, client, admin, auth_headers, db, make_device, make_kpi, make_todolist, mailer):
        make_device()
        make_kpi()
        todolist = make_todolist("DTEST001", ["KTEST001"])
        alert = KpiAlert(
            kpi_id="KTEST001", device_id="DTEST001", email="qa@example.com",
            conditions=[{"field_id": "KTEST001-valore", "type": "numeric", "max": 8}],
        )
        db.add(alert)
        db.commit()

        response = client.patch(
            f"/api/tasks/{todolist.tasks[0].id}/status",
            json={"status": "completed", "value": [{"id": "KTEST001-valore", "value": 11}]},
            headers=auth_headers(admin),
        )
        logs = client.get("/api/alerts/logs", headers=auth_headers(admin)).json()

        assert response.status_code == 200
        assert len(logs) == 1
        assert logs[0]["email_sent"] is True
        assert len(mailer.sent) == 1
