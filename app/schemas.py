from __future__ import annotations
import re
from datetime import datetime
from uuid import UUID
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .models import EntryEvent, EntryKind, EntryStatus

VISITOR_CODE_RE = re.compile(r"^VIS-[0-9A-F]{16}$")
PASSCODE_RE = re.compile(r"^[0-9]{6}$")


def _strip(v):
    if isinstance(v, str):
        v = v.strip()
        return v or None
    return v


# --- requests ---

class VisitorRegister(BaseModel):
    visitor_name: str = Field(min_length=2, max_length=255)
    visitor_phone: str | None = Field(default=None, max_length=32)
    visitor_ic_passport: str | None = Field(default=None, max_length=64)
    vehicle_plate: str | None = Field(default=None, max_length=20)
    purpose: str | None = Field(default=None, max_length=255)
    expected_arrival: datetime
    expected_departure: datetime | None = None
    property_id: UUID

    @field_validator("visitor_phone", "visitor_ic_passport", "vehicle_plate", "purpose", mode="before")
    @classmethod
    def strip_optional(cls, v):
        return _strip(v)

    @field_validator("visitor_name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v

    @model_validator(mode="after")
    def check_window(self):
        if self.expected_departure is not None and self.expected_departure < self.expected_arrival:
            raise ValueError("expected_departure must not be before expected_arrival")
        return self


class DeliveryRegister(BaseModel):
    delivery_service: str = Field(min_length=2, max_length=100)
    vehicle_plate: str = Field(min_length=1, max_length=20)
    estimated_arrival: datetime
    property_id: UUID | None = None
    notes: str | None = None

    @field_validator("notes", mode="before")
    @classmethod
    def strip_notes(cls, v):
        return _strip(v)

    @field_validator("delivery_service", "vehicle_plate", mode="before")
    @classmethod
    def strip_required(cls, v):
        return v.strip() if isinstance(v, str) else v


class ValidateCredential(BaseModel):
    code: str
    event: EntryEvent

    @field_validator("code", mode="before")
    @classmethod
    def normalize_code(cls, v):
        if not isinstance(v, str):
            raise ValueError("code must be a string")
        v = v.strip().upper()
        if not (VISITOR_CODE_RE.match(v) or PASSCODE_RE.match(v)):
            raise ValueError("code must be a visitor QR code or a 6-digit passcode")
        return v

    @field_validator("event")
    @classmethod
    def check_admitting(cls, v: EntryEvent):
        if v not in (EntryEvent.CHECK_IN, EntryEvent.ARRIVE, EntryEvent.COLLECT):
            raise ValueError("only check_in, arrive and collect are validated by credential")
        return v


class ConsumeEntry(BaseModel):
    event: EntryEvent

    @field_validator("event")
    @classmethod
    def check_not_cancel(cls, v: EntryEvent):
        if v == EntryEvent.CANCEL:
            raise ValueError("use the cancel endpoint")
        return v


class CancelEntry(BaseModel):
    reason: str | None = Field(default=None, max_length=255)


# --- responses ---

class EntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    kind: EntryKind
    community_id: UUID
    registered_by: UUID
    property_id: UUID | None = None
    display_name: str
    phone: str | None = None
    id_document: str | None = None
    vehicle_plate: str | None = None
    purpose: str | None = None
    notes: str | None = None
    expected_arrival: datetime
    expected_departure: datetime | None = None
    status: EntryStatus
    credential_expires_at: datetime | None = None
    actual_arrival: datetime | None = None
    actual_departure: datetime | None = None
    acted_by: UUID | None = None
    acted_at: datetime | None = None
    checked_out_by: UUID | None = None
    cancelled_by: UUID | None = None
    created_at: datetime


class VisitorRegistered(BaseModel):
    entry: EntryRead
    qr_code: str


class DeliveryRegistered(BaseModel):
    entry: EntryRead
    passcode: str


class AdmissionDecisionRead(BaseModel):
    admissible: bool
    code: str
    event: EntryEvent
    credential_expires_at: datetime
    entry: EntryRead


class EntryPage(BaseModel):
    items: list[EntryRead]
    total: int
    page: int
    limit: int
    pages: int


class ErrorRead(BaseModel):
    detail: str
    code: str
    retryable: bool = False
