import re
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

KPI_ID_PATTERN = re.compile(r"^K[A-Z0-9]{7}$")

FieldType = Literal["number", "decimal", "text", "boolean", "select", "date"]


class KpiField(BaseModel):
    id: Optional[str] = None
    name: str = Field(min_length=1, max_length=80)
    type: FieldType = "text"
    description: Optional[str] = Field(default=None, max_length=250)
    required: bool = False
    min: Optional[float] = None
    max: Optional[float] = None
    options: Optional[List[Any]] = None


class KpiCreate(BaseModel):
    id: Optional[str] = None
    name: str = Field(min_length=2, max_length=80)
    description: Optional[str] = Field(default=None, max_length=250)
    value: List[KpiField] = Field(min_length=1)

    @field_validator("id")
    @classmethod
    def _check_id(cls, v):
        if v is not None and not KPI_ID_PATTERN.match(v):
            raise ValueError("L'ID deve essere nel formato K seguito da 7 caratteri alfanumerici maiuscoli")
        return v


class KpiUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=80)
    description: Optional[str] = Field(default=None, max_length=250)
    value: Optional[List[KpiField]] = Field(default=None, min_length=1)
