from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Any

from pydantic import EmailStr, Field, field_validator, model_validator

from app.remonta.schemas import ApiModel, check_au_mobile, check_password


class FundingType(str, Enum):
    ndis = "NDIS"
    aged_care = "AGED_CARE"
    insurance = "INSURANCE"
    private = "PRIVATE"
    other = "OTHER"


class Relationship(str, Enum):
    parent = "PARENT"
    legal_guardian = "LEGAL_GUARDIAN"
    spouse_partner = "SPOUSE_PARTNER"
    children = "CHILDREN"
    other = "OTHER"


class ServiceSelection(ApiModel):
    category_id: str = Field(..., min_length=1)
    subcategory_id: str | None = None


class _Identity(ApiModel):
    email: EmailStr
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    mobile: str

    @field_validator("email")
    @classmethod
    def _lower_email(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("mobile")
    @classmethod
    def _au_mobile(cls, v: str) -> str:
        return check_au_mobile(v)


class _WithPassword(ApiModel):
    password: str

    @field_validator("password")
    @classmethod
    def _password_rules(cls, v: str) -> str:
        return check_password(v)


class WorkerDetails(_Identity):
    """Everything needed to create a worker account except the password (queued jobs carry only its hash)."""

    location: str = Field(..., min_length=2, max_length=255)
    age: str | None = None
    gender: str | None = None
    gender_identity: str | None = None
    languages: list[str] = Field(default_factory=list)
    services: list[str] = Field(default_factory=list)
    service_selections: list[ServiceSelection] = Field(default_factory=list)
    experience: str | None = None
    introduction: str | None = None
    qualifications: str | None = None
    has_vehicle: str | None = None
    hobbies: str | None = None
    unique_service: str | None = None
    why_enjoy_work: str | None = None
    additional_info: str | None = None
    photos: list[str] = Field(default_factory=list)
    consent_profile_share: bool = False
    consent_marketing: bool = False


class WorkerRegistration(WorkerDetails, _WithPassword):
    pass


class ClientRegistration(_Identity, _WithPassword):
    is_self_managed: bool = True
    funding_type: FundingType
    relationship_to_client: Relationship | None = None
    date_of_birth: date | None = None
    client_first_name: str | None = Field(default=None, max_length=100)
    client_last_name: str | None = Field(default=None, max_length=100)
    services_requested: list[str] = Field(default_factory=list)
    additional_info: str | None = Field(default=None, max_length=2000)
    location: str = Field(..., min_length=2, max_length=255)
    consent: bool

    @field_validator("services_requested", mode="before")
    @classmethod
    def _flatten_services(cls, v: Any) -> Any:
        # Accept the wizard's {categoryId: {categoryName, subCategories: [{name}]}} shape too.
        if isinstance(v, dict):
            names: list[str] = []
            for entry in v.values():
                if not isinstance(entry, dict):
                    continue
                subs = entry.get("subCategories") or []
                if subs:
                    names.extend(str(sc.get("name")) for sc in subs if isinstance(sc, dict) and sc.get("name"))
                elif entry.get("categoryName"):
                    names.append(str(entry["categoryName"]))
            return names
        return v

    @field_validator("consent")
    @classmethod
    def _must_consent(cls, v: bool) -> bool:
        if not v:
            raise ValueError("You must agree to the terms to register.")
        return v

    @model_validator(mode="after")
    def _representative_fields(self) -> "ClientRegistration":
        if not self.is_self_managed:
            if not self.client_first_name or not self.client_last_name:
                raise ValueError("Client first and last name are required when registering on behalf of someone.")
            if self.relationship_to_client is None:
                raise ValueError("Relationship to the client is required when registering on behalf of someone.")
        return self


class CoordinatorRegistration(_Identity, _WithPassword):
    organization: str | None = Field(default=None, max_length=255)
    client_types: list[str] = Field(default_factory=list)
    consent: bool

    @field_validator("consent")
    @classmethod
    def _must_consent(cls, v: bool) -> bool:
        if not v:
            raise ValueError("You must agree to the terms to register.")
        return v
