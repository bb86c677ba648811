"""
Dashboard counters.
"""

from datetime import date, datetime

import pytest

from sicet.services.lifecycle import complete_todolist
from sicet.services.metrics import device_metrics, operators_summary, todolist_metrics


@pytest.fixture
def seeded(make_device, make_kpi, make_todolist):
    make_device("DTEST001", tags=["freddo"])
    make_device("DTEST002", name="Forno", tags=["caldo", "freddo"])
    make_kpi()
    make_todolist("DTEST001", ["KTEST001"], scheduled=datetime(2024, 1, 10, 9, 0), status="completed", task_statuses=["completed"])
    make_todolist("DTEST001", ["KTEST001"], scheduled=datetime(2024, 1, 11, 9, 0))
    make_todolist("DTEST002", ["KTEST001"], scheduled=datetime(2024, 1, 20, 9, 0))
    make_todolist("DTEST002", ["KTEST001"], scheduled=datetime(2024, 1, 21, 9, 0))


class TestTodolistMetrics:
    def test_counts_and_rates(self, db, seeded):
        metrics = todolist_metrics(db, date(2024, 1, 1), date(2024, 1, 31), now=datetime(2024, 1, 15, 12, 0))

        assert metrics["total"] == 4
        assert metrics["completed"] == 1
        assert metrics["overdue"] == 1
        assert metrics["pending"] == 2
        assert metrics["completion_rate"] == 25.0
        assert metrics["chart"] == [
            {"name": "Completate", "value": 1},
            {"name": "Pendenti", "value": 2},
            {"name": "Scadute", "value": 1},
        ]

    def test_device_filter(self, db, seeded):
        metrics = todolist_metrics(db, date(2024, 1, 1), date(2024, 1, 31), now=datetime(2024, 1, 15), device_id="DTEST002")
        assert metrics["total"] == 2

    def test_empty_range(self, db):
        metrics = todolist_metrics(db, date(2030, 1, 1), date(2030, 1, 31), now=datetime(2030, 1, 15))
        assert metrics["total"] == 0
        assert metrics["completion_rate"] == 0.0

    def test_endpoint_rejects_reversed_range(self, client, admin, auth_headers):
        response = client.get(
            "/api/dashboard/todolist-metrics",
            params={"dateFrom": "2024-02-01", "dateTo": "2024-01-01"},
            headers=auth_headers(admin),
        )
        assert response.status_code == 400

    def test_operator_has_no_dashboard(self, client, make_profile, auth_headers):
        response = client.get(
            "/api/dashboard/todolist-metrics",
            params={"dateFrom": "2024-01-01", "dateTo": "2024-01-31"},
            headers=auth_headers(make_profile("operator")),
        )
        assert response.status_code == 403


class TestDeviceMetrics:
    def test_tags(self, db, seeded):
        metrics = device_metrics(db)
        assert metrics["active_devices"] == 2
        assert metrics["by_tag"][0] == {"tag": "freddo", "count": 2}


class TestOperatorsSummary:
    def test_completions_per_profile(self, db, settings, mailer, admin, make_profile, make_device, make_kpi, make_todolist):
        make_device()
        make_kpi()
        operator = make_profile("operator", email="op@example.com")
        todolist = make_todolist("DTEST001", ["KTEST001"])
        complete_todolist(db, settings, mailer, operator, todolist.id)

        rows = operators_summary(db, role="operator")

        assert rows == [{"profile_id": str(operator.id), "email": "op@example.com", "role": "operator", "completed_todolists": 1}]

    def test_admin_only(self, client, make_profile, auth_headers):
        response = client.get("/api/summary/operators", headers=auth_headers(make_profile("referrer")))
        assert response.status_code == 403
