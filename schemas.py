import datetime as dt
import re
from datetime import date
from typing import Annotated, Literal, Optional

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from models import AlertSource, AlertType, TransactionType


EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PASSWORD_RULE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")

REPORT_TYPES = ("monthly-summary", "category-breakdown", "budget-vs-actual")
ReportType = Literal["monthly-summary", "category-breakdown", "budget-vs-actual"]


def _check_email(value: str) -> str:
    value = value.strip().lower()
    if not EMAIL_RE.match(value):
        raise ValueError("Invalid email address")
    return value


def _check_password(value: str) -> str:
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters long")
    if not PASSWORD_RULE.match(value):
        raise ValueError(
            "Password must contain at least one uppercase letter, "
            "one lowercase letter and one digit"
        )
    return value


Email = Annotated[str, AfterValidator(_check_email)]
Password = Annotated[str, AfterValidator(_check_password)]


class RegisterIn(BaseModel):
    first_name: str = Field(..., min_length=2, max_length=100)
    last_name: str = Field(..., min_length=2, max_length=100)
    email: Email
    password: Password


class LoginIn(BaseModel):
    email: Email
    password: str = Field(..., min_length=1)


class ForgotPasswordIn(BaseModel):
    email: Email


class ResetPasswordIn(BaseModel):
    token: str = Field(..., min_length=1)
    new_password: Password


class ProfileUpdateIn(BaseModel):
    first_name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=2, max_length=100)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=32)
    budget_limit_cents: Optional[int] = Field(default=None, ge=0)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name is required")
        return value


class CategoryUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[TransactionType] = None
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=32)
    budget_limit_cents: Optional[int] = Field(default=None, ge=0)


class TransactionIn(BaseModel):
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    category_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=500)
    date: Optional[dt.date] = None


class TransactionUpdateIn(BaseModel):
    type: Optional[TransactionType] = None
    amount_cents: Optional[int] = Field(default=None, gt=0)
    category_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=500)
    date: Optional[dt.date] = None


class AlertIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: AlertType
    source_type: AlertSource = AlertSource.global_
    category_id: Optional[int] = None
    message: str = Field(..., min_length=1, max_length=1000)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    threshold_cents: Optional[int] = Field(default=None, ge=0)


class ReportRequest(BaseModel):
    report_type: ReportType
    start_date: date
    end_date: date
    category_id: Optional[int] = None
    title: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)

    @model_validator(mode="after")
    def _check_range(self) -> "ReportRequest":
        if self.start_date > self.end_date:
            raise ValueError("Start date must be before end date")
        return self


class ChatMessageIn(BaseModel):
    content: str = Field(..., min_length=1, max_length=2000)

    @field_validator("content")
    @classmethod
    def _strip_content(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Message content is required")
        return value
