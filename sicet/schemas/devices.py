import re
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

DEVICE_ID_PATTERN = re.compile(r"^D[A-Z0-9]{7}$")


def _clean_tags(tags: Optional[List[str]]) -> Optional[List[str]]:
    if tags is None:
        return None
    cleaned = []
    for tag in tags:
        tag = tag.strip()
        if not 1 <= len(tag) <= 30:
            raise ValueError("Ogni tag deve avere tra 1 e 30 caratteri")
        if tag not in cleaned:
            cleaned.append(tag)
    if len(cleaned) > 10:
        raise ValueError("Massimo 10 tag")
    return cleaned


class DeviceCreate(BaseModel):
    id: Optional[str] = None
    name: str = Field(min_length=2, max_length=60)
    location: str = Field(min_length=2, max_length=120)
    description: Optional[str] = Field(default=None, max_length=250)
    tags: List[str] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def _check_id(cls, v):
        if v is not None and not DEVICE_ID_PATTERN.match(v):
            raise ValueError("L'ID deve essere nel formato D seguito da 7 caratteri alfanumerici maiuscoli")
        return v

    @field_validator("tags")
    @classmethod
    def _check_tags(cls, v):
        return _clean_tags(v)


class DeviceUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=60)
    location: Optional[str] = Field(default=None, min_length=2, max_length=120)
    description: Optional[str] = Field(default=None, max_length=250)
    tags: Optional[List[str]] = None

    @field_validator("tags")
    @classmethod
    def _check_tags(cls, v):
        return _clean_tags(v)
