from __future__ import annotations

from pydantic import EmailStr, Field

from app.remonta.schemas import ApiModel


class ContactMessage(ApiModel):
    support_type: str = Field(default="Community Support", max_length=100)
    email: EmailStr
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    pronouns: str | None = Field(default=None, max_length=50)
    enquiry_about: str | None = Field(default=None, max_length=200)
    subject: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=1000)


class FeedbackMessage(ApiModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(default="", max_length=100)
    email: EmailStr
    phone: str | None = Field(default=None, max_length=32)
    feedback_type: str = Field(default="General", max_length=100)
    message: str = Field(..., min_length=1, max_length=2000)
