from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Any

from pydantic import Field, field_validator

from app.remonta.modules.accounts.schemas import FundingType, Relationship
from app.remonta.schemas import ApiModel


class ServiceRequestStatus(str, Enum):
    pending = "PENDING"
    matched = "MATCHED"
    active = "ACTIVE"
    completed = "COMPLETED"
    cancelled = "CANCELLED"


class ParticipantCreate(ApiModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    date_of_birth: date | None = None
    funding_type: FundingType | None = None
    relationship_to_client: Relationship | None = None
    location: str | None = Field(default=None, max_length=255)
    services_requested: list[str] = Field(default_factory=list)
    additional_info: str | None = Field(default=None, max_length=2000)

    @field_validator("date_of_birth")
    @classmethod
    def _not_future(cls, v: date | None) -> date | None:
        if v is not None and v > date.today():
            raise ValueError("Date of birth cannot be in the future.")
        return v


class ParticipantUpdate(ParticipantCreate):
    first_name: str | None = Field(default=None, min_length=1, max_length=100)
    last_name: str | None = Field(default=None, min_length=1, max_length=100)


class ServiceRequestCreate(ApiModel):
    participant_id: int
    services: list[str] = Field(..., min_length=1)
    details: dict[str, Any] = Field(default_factory=dict)
    location: dict[str, Any] = Field(default_factory=dict)

    @field_validator("services")
    @classmethod
    def _non_blank(cls, v: list[str]) -> list[str]:
        cleaned = [x.strip() for x in v if x and x.strip()]
        if not cleaned:
            raise ValueError("Select at least one service.")
        return cleaned


class ServiceRequestUpdate(ApiModel):
    services: list[str] | None = None
    details: dict[str, Any] | None = None
    location: dict[str, Any] | None = None
    status: ServiceRequestStatus | None = None
