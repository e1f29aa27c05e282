from __future__ import annotations
import uuid
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy import Enum as SqlEnum, Index, String, Text
from sqlalchemy.types import DateTime

Base = declarative_base()

def utcnow():
    return datetime.now(timezone.utc)

class EntryKind(str, Enum):
    VISITOR = "visitor"
    DELIVERY = "delivery"

class EntryStatus(str, Enum):
    PENDING = "pending"
    CHECKED_IN = "checked_in"
    CHECKED_OUT = "checked_out"
    ARRIVED = "arrived"
    COLLECTED = "collected"
    CANCELLED = "cancelled"

class EntryEvent(str, Enum):
    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"
    ARRIVE = "arrive"
    COLLECT = "collect"
    CANCEL = "cancel"

class EntryRecord(Base):
    """A visitor or delivery expected at the gate. Never deleted; status only moves forward."""
    __tablename__ = "entry_records"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    kind: Mapped[EntryKind] = mapped_column(SqlEnum(EntryKind), nullable=False)
    community_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)
    registered_by: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)
    property_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)

    # visitor name, or courier/service name for deliveries
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    id_document: Mapped[str | None] = mapped_column(String(64), nullable=True)
    vehicle_plate: Mapped[str | None] = mapped_column(String(20), nullable=True)
    purpose: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    expected_arrival: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expected_departure: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    status: Mapped[EntryStatus] = mapped_column(SqlEnum(EntryStatus), default=EntryStatus.PENDING, nullable=False)
    credential_ref: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    credential_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    actual_arrival: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_departure: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # guard of the latest admitting transition (check-in, arrival, collection); check-out and cancel have their own columns
    acted_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    acted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    checked_out_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    cancelled_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_entry_records_community_kind_status", "community_id", "kind", "status"),
        Index("ix_entry_records_community_credential", "community_id", "credential_ref"),
    )
