from typing import List, Optional

from pydantic import BaseModel, Field


class ReportControl(BaseModel):
    kpi_id: str
    field_id: str
    name: Optional[str] = None


class ControlPoint(BaseModel):
    device_id: str
    name: Optional[str] = None
    controls: List[ReportControl] = Field(min_length=1)


class ReportTemplateCreate(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    description: Optional[str] = Field(default=None, max_length=500)
    control_points: List[ControlPoint] = Field(min_length=1)


class ReportTemplateUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=120)
    description: Optional[str] = Field(default=None, max_length=500)
    control_points: Optional[List[ControlPoint]] = Field(default=None, min_length=1)
