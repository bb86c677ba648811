"""
Shared fixtures: an in-memory application, a database session bound to the
same engine, profile/token factories and a recording mailer.
"""

import uuid
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from sicet.auth.security import create_access_token, get_password_hash
from sicet.config import Settings
from sicet.main import create_app
from sicet.models.models import Device, Kpi, Profile, Task, Todolist, TodolistAlert
from sicet.services.expiry import todolist_deadline
from sicet.services.mailer import MailerError


class FakeMailer:
    """Records outgoing mail.

    Addresses in ``fail_for`` raise like a broken SMTP relay; addresses in
    ``crash_for`` raise an error the mailer does not wrap.
    """

    def __init__(self):
        self.sent = []
        self.fail_for = set()
        self.crash_for = set()

    def send(self, to, subject, body, html=None):
        if to in self.fail_for:
            raise MailerError(f"SMTP relay refused {to}")
        if to in self.crash_for:
            raise ValueError(f"unexpected provider failure for {to}")
        self.sent.append({"to": to, "subject": subject, "body": body})


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        jwt_secret="test-secret",
        cron_secret_token="cron-secret",
        public_base_url="https://sicet.example",
        rate_limit="10000/minute",
        export_page_size=2,
        tz_default="Europe/Rome",
        enable_email=False,
    )


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def app(settings, mailer):
    application = create_app(settings=settings, mailer=mailer)
    application.state.db.create_all()
    yield application
    application.state.db.dispose()


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def db(app):
    session = app.state.db.session()
    yield session
    session.close()


@pytest.fixture
def make_profile(db):
    def _make(role="operator", email=None, status="activated", password="password123"):
        profile = Profile(
            email=email or f"{role}-{uuid.uuid4().hex[:8]}@example.com",
            role=role,
            status=status,
            auth_id=uuid.uuid4() if status == "activated" else None,
            password_hash=get_password_hash(password) if status == "activated" else None,
        )
        db.add(profile)
        db.commit()
        db.refresh(profile)
        return profile

    return _make


@pytest.fixture
def auth_headers(settings):
    def _headers(profile):
        return {"Authorization": f"Bearer {create_access_token(settings, profile)}"}

    return _headers


@pytest.fixture
def admin(make_profile):
    return make_profile("admin", email="admin@example.com")


@pytest.fixture
def make_device(db):
    def _make(device_id="DTEST001", name="Cella frigorifera", location="Magazzino A", tags=None):
        device = Device(id=device_id, name=name, location=location, tags=tags or [], deleted=False)
        db.add(device)
        db.commit()
        return device

    return _make


@pytest.fixture
def make_kpi(db):
    def _make(kpi_id="KTEST001", name="Temperatura", fields=None):
        kpi = Kpi(
            id=kpi_id,
            name=name,
            value=fields or [{"id": f"{kpi_id}-valore", "name": "Valore", "type": "number", "required": True}],
            deleted=False,
        )
        db.add(kpi)
        db.commit()
        return kpi

    return _make


@pytest.fixture
def make_todolist(db):
    def _make(
        device_id,
        kpi_ids,
        scheduled=datetime(2024, 1, 10, 9, 0),
        status="pending",
        time_slot_type="standard",
        time_slot_start=None,
        time_slot_end=None,
        task_statuses=None,
        alert_email=None,
    ):
        todolist = Todolist(
            device_id=device_id,
            scheduled_execution=scheduled,
            status=status,
            time_slot_type=time_slot_type,
            time_slot_start=time_slot_start,
            time_slot_end=time_slot_end,
            end_day_time=todolist_deadline(scheduled, time_slot_type, time_slot_end, time_slot_start),
        )
        if status == "completed":
            todolist.completion_date = datetime.now()
        statuses = task_statuses or ["pending"] * len(kpi_ids)
        todolist.tasks = [Task(kpi_id=k, status=s) for k, s in zip(kpi_ids, statuses)]
        if alert_email:
            todolist.alerts = [TodolistAlert(email=alert_email, is_active=True)]
        db.add(todolist)
        db.commit()
        db.refresh(todolist)
        return todolist

    return _make


@pytest.fixture
def days_ago():
    def _at(days, hour=9):
        base = datetime.now().replace(hour=hour, minute=0, second=0, microsecond=0)
        return base - timedelta(days=days)

    return _at
