from datetime import date
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field

SlotBound = Union[int, str, None]


class TodolistCreate(BaseModel):
    device_ids: List[str] = Field(min_length=1)
    kpi_ids: List[str] = Field(min_length=1)
    dates: List[date] = Field(min_length=1)
    time_slot_type: Literal["standard", "custom"] = "standard"
    time_slot_start: SlotBound = None
    time_slot_end: SlotBound = None
    scheduled_time: SlotBound = None
    category: Optional[str] = Field(default=None, max_length=100)
    alert_email: Optional[EmailStr] = None


class TaskStatusUpdate(BaseModel):
    status: Literal["pending", "completed", "discarded"]
    value: Any = None


class TaskValueUpdate(BaseModel):
    value: Any = None


class TodolistAlertConfig(BaseModel):
    email: EmailStr


class MatrixGroupDelete(BaseModel):
    date_from: date = Field(alias="dateFrom")
    date_to: date = Field(alias="dateTo")
    group_type: Literal["single", "composite"] = Field(alias="groupType")
    group_key: str = Field(alias="groupKey")

    model_config = {"populate_by_name": True}
