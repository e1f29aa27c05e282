from __future__ import annotations
import math
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from ..core.clock import as_utc
from ..core.errors import AccessDenied, EntryNotFound, StoreUnavailable
from ..models import EntryEvent, EntryKind, EntryRecord, EntryStatus
from ..schemas import DeliveryRegister, VisitorRegister
from .credentials import CredentialIssuer
from .state_machine import get_entry, transition

logger = structlog.get_logger()

ACTIVE_DELIVERY = (EntryStatus.PENDING, EntryStatus.ARRIVED)


async def _commit_with_credential(
    db: AsyncSession, issuer: CredentialIssuer, entry: EntryRecord, code: str, valid_until: datetime
) -> EntryRecord:
    entry.credential_ref = code
    entry.credential_expires_at = valid_until
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        # the code was never durably attached; free it
        await issuer.release(code)
        raise StoreUnavailable("Entry store unavailable") from e
    await db.refresh(entry)
    return entry


async def register_visitor(
    db: AsyncSession,
    issuer: CredentialIssuer,
    *,
    payload: VisitorRegister,
    community_id: uuid.UUID,
    registered_by: uuid.UUID,
    default_validity_hours: int = 24,
) -> Tuple[EntryRecord, str]:
    # QR stays valid until the expected departure, or a day past the expected arrival
    valid_until = as_utc(payload.expected_departure or payload.expected_arrival + timedelta(hours=default_validity_hours))

    entry = EntryRecord(
        kind=EntryKind.VISITOR,
        community_id=community_id,
        registered_by=registered_by,
        property_id=payload.property_id,
        display_name=payload.visitor_name,
        phone=payload.visitor_phone,
        id_document=payload.visitor_ic_passport,
        vehicle_plate=payload.vehicle_plate,
        purpose=payload.purpose,
        expected_arrival=as_utc(payload.expected_arrival),
        expected_departure=as_utc(payload.expected_departure) if payload.expected_departure else None,
        status=EntryStatus.PENDING,
    )
    db.add(entry)
    try:
        await db.flush()
        code = await issuer.issue_visitor_credential(entry.id, community_id, valid_until)
    except SQLAlchemyError as e:
        await db.rollback()
        raise StoreUnavailable("Entry store unavailable") from e
    except Exception:
        await db.rollback()
        raise
    entry = await _commit_with_credential(db, issuer, entry, code, valid_until)
    logger.info("visitor_registered", entry_id=str(entry.id), community_id=str(community_id))
    return entry, code


async def passcode_in_use(db: AsyncSession, community_id: uuid.UUID, code: str) -> bool:
    q = select(EntryRecord.id).where(
        EntryRecord.community_id == community_id,
        EntryRecord.kind == EntryKind.DELIVERY,
        EntryRecord.credential_ref == code,
        EntryRecord.status.in_(ACTIVE_DELIVERY),
    ).limit(1)
    return (await db.execute(q)).first() is not None


async def register_delivery(
    db: AsyncSession,
    issuer: CredentialIssuer,
    *,
    payload: DeliveryRegister,
    community_id: uuid.UUID,
    registered_by: uuid.UUID,
    validity_hours: int = 24,
) -> Tuple[EntryRecord, str]:
    now = issuer.clock.now()
    valid_until = max(now, as_utc(payload.estimated_arrival)) + timedelta(hours=validity_hours)

    entry = EntryRecord(
        kind=EntryKind.DELIVERY,
        community_id=community_id,
        registered_by=registered_by,
        property_id=payload.property_id,
        display_name=payload.delivery_service,
        vehicle_plate=payload.vehicle_plate,
        notes=payload.notes,
        expected_arrival=as_utc(payload.estimated_arrival),
        status=EntryStatus.PENDING,
    )
    db.add(entry)

    async def taken(code: str) -> bool:
        return await passcode_in_use(db, community_id, code)

    try:
        await db.flush()
        code = await issuer.issue_delivery_credential(entry.id, community_id, valid_until, code_taken=taken)
    except SQLAlchemyError as e:
        await db.rollback()
        raise StoreUnavailable("Entry store unavailable") from e
    except Exception:
        await db.rollback()
        raise
    entry = await _commit_with_credential(db, issuer, entry, code, valid_until)
    logger.info("delivery_registered", entry_id=str(entry.id), community_id=str(community_id))
    return entry, code


async def get_entry_for(
    db: AsyncSession, entry_id: uuid.UUID, *, community_id: uuid.UUID, kind: EntryKind | None = None
) -> EntryRecord:
    entry = await get_entry(db, entry_id, community_id)
    if entry is None or (kind is not None and entry.kind != kind):
        raise EntryNotFound()
    return entry


async def list_entries(
    db: AsyncSession,
    *,
    community_id: uuid.UUID,
    kind: EntryKind,
    registered_by: uuid.UUID | None = None,
    status: EntryStatus | None = None,
    on_date: date | None = None,
    property_id: uuid.UUID | None = None,
    page: int = 1,
    limit: int = 20,
    newest_first: bool = True,
) -> Tuple[List[EntryRecord], int, int]:
    conds = [EntryRecord.community_id == community_id, EntryRecord.kind == kind]
    if registered_by is not None:
        conds.append(EntryRecord.registered_by == registered_by)
    if status is not None:
        conds.append(EntryRecord.status == status)
    if property_id is not None:
        conds.append(EntryRecord.property_id == property_id)
    if on_date is not None:
        start = datetime.combine(on_date, time.min, tzinfo=timezone.utc)
        conds.append(EntryRecord.expected_arrival >= start)
        conds.append(EntryRecord.expected_arrival < start + timedelta(days=1))

    order = EntryRecord.expected_arrival.desc() if newest_first else EntryRecord.expected_arrival.asc()
    q = select(EntryRecord).where(*conds).order_by(order).limit(limit).offset((page - 1) * limit)
    total = (await db.execute(select(func.count()).select_from(EntryRecord).where(*conds))).scalar_one()
    rows = (await db.execute(q)).scalars().all()
    return list(rows), total, math.ceil(total / limit) if limit else 0


async def consume(
    db: AsyncSession,
    issuer: CredentialIssuer,
    *,
    entry_id: uuid.UUID,
    event: EntryEvent,
    acting_guard_id: uuid.UUID,
    community_id: uuid.UUID | None = None,
    require_arrival: bool = False,
) -> EntryRecord:
    """Apply a guard-side event (check in/out, arrive, collect).

    The durable transition commits first; only then is the credential dropped
    from the cache.
    """
    if event == EntryEvent.CANCEL:
        raise ValueError("use cancel() for cancellations")
    entry, t, previous_code = await transition(
        db,
        entry_id=entry_id,
        event=event,
        actor_id=acting_guard_id,
        clock=issuer.clock,
        community_id=community_id,
        require_arrival=require_arrival,
    )
    if t.releases_cache:
        await issuer.release(previous_code)
    return entry


async def cancel(
    db: AsyncSession,
    issuer: CredentialIssuer,
    *,
    entry_id: uuid.UUID,
    acting_user_id: uuid.UUID,
    community_id: uuid.UUID | None = None,
    owner_id: uuid.UUID | None = None,
) -> EntryRecord:
    """Cancel a pending entry. With ``owner_id`` set, only that resident's entries qualify."""
    if owner_id is not None:
        entry = await get_entry(db, entry_id, community_id)
        if entry is None:
            raise EntryNotFound()
        if entry.registered_by != owner_id:
            raise AccessDenied("You can only cancel your own entries")
    entry, _, previous_code = await transition(
        db,
        entry_id=entry_id,
        event=EntryEvent.CANCEL,
        actor_id=acting_user_id,
        clock=issuer.clock,
        community_id=community_id,
    )
    await issuer.release(previous_code)
    return entry


def entry_event(entry: EntryRecord) -> dict:
    # actor and time of the transition that produced the current status
    if entry.status == EntryStatus.CHECKED_OUT:
        actor = entry.checked_out_by
    elif entry.status == EntryStatus.CANCELLED:
        actor = entry.cancelled_by
    else:
        actor = entry.acted_by
    return {
        "entry_id": str(entry.id),
        "kind": entry.kind.value,
        "community_id": str(entry.community_id),
        "status": entry.status.value,
        "acted_by": str(actor) if actor else None,
        "acted_at": as_utc(entry.updated_at).isoformat().replace("+00:00", "Z") if entry.updated_at else None,
        "idempotency_key": f"{entry.id}:{entry.status.value}",
    }
