from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, model_validator


class AlertCondition(BaseModel):
    field_id: str = Field(min_length=1)
    type: Literal["numeric", "text", "boolean"]
    min: Optional[float] = None
    max: Optional[float] = None
    match_text: Optional[str] = None
    boolean_value: Optional[bool] = None

    @model_validator(mode="after")
    def _check_thresholds(self):
        if self.type == "numeric" and self.min is None and self.max is None:
            raise ValueError("Indicare almeno un valore minimo o massimo")
        if self.type == "text" and not self.match_text:
            raise ValueError("Indicare il testo da cercare")
        if self.type == "boolean" and self.boolean_value is None:
            raise ValueError("Indicare il valore booleano")
        return self


class KpiAlertCreate(BaseModel):
    kpi_id: str
    device_id: str
    email: EmailStr
    conditions: List[AlertCondition] = Field(min_length=1)
    is_active: bool = True


class KpiAlertUpdate(BaseModel):
    email: Optional[EmailStr] = None
    conditions: Optional[List[AlertCondition]] = Field(default=None, min_length=1)
    is_active: Optional[bool] = None
