"""
Overdue notification batch.
"""

from datetime import datetime

import pytest

from sicet.models.models import TodolistAlert, TodolistAlertLog
from sicet.services.overdue_alerts import process_overdue_todolists

NOW = datetime(2024, 1, 12, 8, 0)


@pytest.fixture
def setup_catalog(make_device, make_kpi):
    make_device("DTEST001", name="Cella frigorifera")
    make_device("DTEST002", name="Forno")
    make_kpi("KTEST001")


class TestProcessOverdue:
    """At-most-once notification per expired instance."""

    def test_expired_instance_is_notified(self, db, settings, mailer, setup_catalog, make_todolist):
        todolist = make_todolist("DTEST001", ["KTEST001"], scheduled=datetime(2024, 1, 10, 9, 0), alert_email="boss@example.com")

        result = process_overdue_todolists(db, settings, mailer, now=NOW)

        assert result["processed"] == 1
        assert result["errors"] == 0
        assert result["details"][0]["status"] == "sent"
        assert result["details"][0]["deviceName"] == "Cella frigorifera"
        assert mailer.sent[0]["to"] == "boss@example.com"
        log = db.query(TodolistAlertLog).filter(TodolistAlertLog.todolist_id == todolist.id).one()
        assert log.status == "sent"
        assert log.sent_at is not None
        assert db.query(TodolistAlert).one().is_active is False

    def test_second_run_sends_nothing(self, db, settings, mailer, setup_catalog, make_todolist):
        make_todolist("DTEST001", ["KTEST001"], scheduled=datetime(2024, 1, 10, 9, 0), alert_email="boss@example.com")

        process_overdue_todolists(db, settings, mailer, now=NOW)
        second = process_overdue_todolists(db, settings, mailer, now=NOW)

        assert second["processed"] == 0
        assert len(mailer.sent) == 1

    def test_reactivated_alert_with_sent_log_is_not_resent(self, db, settings, mailer, setup_catalog, make_todolist):
        make_todolist("DTEST001", ["KTEST001"], scheduled=datetime(2024, 1, 10, 9, 0), alert_email="boss@example.com")
        process_overdue_todolists(db, settings, mailer, now=NOW)
        alert = db.query(TodolistAlert).one()
        alert.is_active = True
        db.commit()

        result = process_overdue_todolists(db, settings, mailer, now=NOW)

        assert result["processed"] == 0
        assert result["skipped"] == 1
        assert len(mailer.sent) == 1

    def test_pending_log_blocks_resend(self, db, settings, mailer, setup_catalog, make_todolist):
        todolist = make_todolist("DTEST001", ["KTEST001"], scheduled=datetime(2024, 1, 10, 9, 0), alert_email="boss@example.com")
        alert = todolist.alerts[0]
        # a previous run sent the mail but died before recording the outcome
        db.add(TodolistAlertLog(todolist_id=todolist.id, alert_id=alert.id, email=alert.email, status="pending"))
        db.commit()

        result = process_overdue_todolists(db, settings, mailer, now=NOW)

        assert result["processed"] == 0
        assert mailer.sent == []

    def test_failure_does_not_abort_batch(self, db, settings, mailer, setup_catalog, make_todolist):
        make_todolist("DTEST001", ["KTEST001"], scheduled=datetime(2024, 1, 10, 9, 0), alert_email="broken@example.com")
        make_todolist("DTEST002", ["KTEST001"], scheduled=datetime(2024, 1, 10, 10, 0), alert_email="boss@example.com")
        mailer.fail_for.add("broken@example.com")

        result = process_overdue_todolists(db, settings, mailer, now=NOW)

        assert result["processed"] == 1
        assert result["errors"] == 1
        failed = [d for d in result["details"] if d["status"] == "error"]
        assert failed[0]["email"] == "broken@example.com"
        assert "SMTP relay refused" in failed[0]["errorMessage"]
        log = db.query(TodolistAlertLog).filter(TodolistAlertLog.email == "broken@example.com").one()
        assert log.status == "error"
        assert log.error_message

    def test_unexpected_error_does_not_strand_the_log(self, db, settings, mailer, setup_catalog, make_todolist):
        make_todolist("DTEST001", ["KTEST001"], scheduled=datetime(2024, 1, 10, 9, 0), alert_email="broken@example.com")
        make_todolist("DTEST002", ["KTEST001"], scheduled=datetime(2024, 1, 10, 10, 0), alert_email="boss@example.com")
        mailer.crash_for.add("broken@example.com")

        result = process_overdue_todolists(db, settings, mailer, now=NOW)

        assert result["processed"] == 1
        assert result["errors"] == 1
        assert [m["to"] for m in mailer.sent] == ["boss@example.com"]
        log = db.query(TodolistAlertLog).filter(TodolistAlertLog.email == "broken@example.com").one()
        assert log.status == "error"
        assert "unexpected provider failure" in log.error_message

    def test_unexpected_error_is_retried_next_run(self, db, settings, mailer, setup_catalog, make_todolist):
        make_todolist("DTEST001", ["KTEST001"], scheduled=datetime(2024, 1, 10, 9, 0), alert_email="flaky@example.com")
        mailer.crash_for.add("flaky@example.com")
        process_overdue_todolists(db, settings, mailer, now=NOW)
        mailer.crash_for.clear()

        result = process_overdue_todolists(db, settings, mailer, now=NOW)

        assert result["processed"] == 1
        assert [m["to"] for m in mailer.sent] == ["flaky@example.com"]

    def test_failed_send_is_retried_next_run(self, db, settings, mailer, setup_catalog, make_todolist):
        make_todolist("DTEST001", ["KTEST001"], scheduled=datetime(2024, 1, 10, 9, 0), alert_email="flaky@example.com")
        mailer.fail_for.add("flaky@example.com")
        process_overdue_todolists(db, settings, mailer, now=NOW)
        mailer.fail_for.clear()

        result = process_overdue_todolists(db, settings, mailer, now=NOW)

        assert result["processed"] == 1
        assert [m["to"] for m in mailer.sent] == ["flaky@example.com"]

    def test_not_expired_is_skipped(self, db, settings, mailer, setup_catalog, make_todolist):
        make_todolist("DTEST001", ["KTEST001"], scheduled=datetime(2024, 1, 12, 9, 0), alert_email="boss@example.com")

        result = process_overdue_todolists(db, settings, mailer, now=NOW)

        assert result["processed"] == 0
        assert result["skipped"] == 1
        assert mailer.sent == []

    def test_completed_is_never_notified(self, db, settings, mailer, setup_catalog, make_todolist):
        make_todolist(
            "DTEST001", ["KTEST001"], scheduled=datetime(2024, 1, 10, 9, 0),
            status="completed", task_statuses=["completed"], alert_email="boss@example.com",
        )

        result = process_overdue_todolists(db, settings, mailer, now=NOW)

        assert result["processed"] == 0
        assert mailer.sent == []

    def test_overnight_slot_waits_for_next_day(self, db, settings, mailer, setup_catalog, make_todolist):
        make_todolist(
            "DTEST001", ["KTEST001"], scheduled=datetime(2024, 1, 11, 22, 0),
            time_slot_type="custom", time_slot_start=22 * 60, time_slot_end=9 * 60, alert_email="boss@example.com",
        )

        assert process_overdue_todolists(db, settings, mailer, now=NOW)["processed"] == 0
        assert process_overdue_todolists(db, settings, mailer, now=datetime(2024, 1, 12, 9, 1))["processed"] == 1
