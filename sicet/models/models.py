import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Integer,
    JSON,
    Text,
    Uuid,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = uuid_pk()
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="operator")  # operator|admin|referrer
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="registered")  # registered|activated|reset-password|deleted
    # Local credential id, null until the invited user activates the account
    auth_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), unique=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=datetime.utcnow)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class Device(Base):
    __tablename__ = "devices"

    id: Mapped[str] = mapped_column(String(8), primary_key=True)  # D + 7 alphanumeric
    name: Mapped[str] = mapped_column(String(60), nullable=False)
    location: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(250))
    tags: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=datetime.utcnow)

    todolists = relationship("Todolist", back_populates="device")


class Kpi(Base):
    __tablename__ = "kpis"

    id: Mapped[str] = mapped_column(String(8), primary_key=True)  # K + 7 alphanumeric
    name: Mapped[str] = mapped_column(String(80), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(250))
    # list of field definitions {id, name, type, description, required, min, max, options}
    value: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=datetime.utcnow)


class Todolist(Base):
    __tablename__ = "todolists"

    id: Mapped[uuid.UUID] = uuid_pk()
    device_id: Mapped[str] = mapped_column(String(8), ForeignKey("devices.id"), nullable=False, index=True)
    # Local wall-clock time in the configured timezone
    scheduled_execution: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")  # pending|in_progress|completed
    time_slot_type: Mapped[str] = mapped_column(String(20), nullable=False, default="standard")  # standard|custom
    # Minutes from midnight (0..1440)
    time_slot_start: Mapped[Optional[int]] = mapped_column(Integer)
    time_slot_end: Mapped[Optional[int]] = mapped_column(Integer)
    end_day_time: Mapped[Optional[datetime]] = mapped_column(DateTime)
    todolist_category: Mapped[Optional[str]] = mapped_column(String(100))
    completion_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("profiles.id"))
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("profiles.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=datetime.utcnow)

    device = relationship("Device", back_populates="todolists")
    tasks = relationship(
        "Task",
        back_populates="todolist",
        cascade="all, delete-orphan",
        order_by="Task.created_at",
    )
    alerts = relationship("TodolistAlert", back_populates="todolist", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_todolists_device_scheduled", "device_id", "scheduled_execution"),
        Index("idx_todolists_status", "status"),
    )


class Task(Base):
    __tablename__ = "tasks"

    id: Mapped[uuid.UUID] = uuid_pk()
    todolist_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("todolists.id", ondelete="CASCADE"), nullable=False, index=True)
    kpi_id: Mapped[str] = mapped_column(String(8), ForeignKey("kpis.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")  # pending|completed|discarded
    value: Mapped[Optional[dict]] = mapped_column(JSON)
    alert_checked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("profiles.id"))
    completed_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("profiles.id"))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=datetime.utcnow)

    todolist = relationship("Todolist", back_populates="tasks")
    kpi = relationship("Kpi")


class TodolistAlert(Base):
    """Overdue notification configured on a todolist."""

    __tablename__ = "todolist_alerts"

    id: Mapped[uuid.UUID] = uuid_pk()
    todolist_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("todolists.id", ondelete="CASCADE"), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("profiles.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    todolist = relationship("Todolist", back_populates="alerts")

    __table_args__ = (UniqueConstraint("todolist_id", "email", name="uq_todolist_alert_email"),)


class TodolistAlertLog(Base):
    __tablename__ = "todolist_alert_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    # No FK: logs outlive the todolist they describe
    todolist_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    alert_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True))
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")  # pending|sent|error
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class KpiAlert(Base):
    __tablename__ = "kpi_alerts"

    id: Mapped[uuid.UUID] = uuid_pk()
    kpi_id: Mapped[str] = mapped_column(String(8), ForeignKey("kpis.id"), nullable=False, index=True)
    device_id: Mapped[str] = mapped_column(String(8), ForeignKey("devices.id"), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    # list of {field_id, type, min, max, match_text, boolean_value}
    conditions: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("profiles.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=datetime.utcnow)


class KpiAlertLog(Base):
    __tablename__ = "kpi_alert_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    alert_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    kpi_id: Mapped[str] = mapped_column(String(8), nullable=False)
    device_id: Mapped[str] = mapped_column(String(8), nullable=False)
    task_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True))
    triggered_value: Mapped[Optional[dict]] = mapped_column(JSON)
    triggered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    email_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    email_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[Optional[str]] = mapped_column(Text)


class UserActivity(Base):
    __tablename__ = "user_activities"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), index=True)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)  # create_todolist|complete_task|delete_todolist|...
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)  # device|kpi|todolist|task
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[Optional[dict]] = mapped_column("metadata", JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))

    __table_args__ = (
        Index("idx_user_activities_entity", "entity_type", "entity_id"),
        Index("idx_user_activities_created", "created_at"),
    )


class ReportTemplate(Base):
    __tablename__ = "report_templates"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500))
    # list of {device_id, name, controls: [{kpi_id, field_id, name}]}
    control_points: Mapped[Optional[list]] = mapped_column(JSON, default=list)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), ForeignKey("profiles.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=datetime.utcnow)
