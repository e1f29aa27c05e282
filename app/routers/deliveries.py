from __future__ import annotations
import uuid
from datetime import date
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_db, get_claims, get_issuer, require_role, subject_of, community_of, scan_rate_limit
from ..core.config import get_settings
from ..core.nats import publish_entry_event
from ..models import EntryEvent, EntryKind, EntryStatus
from ..schemas import AdmissionDecisionRead, DeliveryRegister, DeliveryRegistered, EntryPage, EntryRead
from ..services import entries
from ..services.credentials import CredentialIssuer
from ..services.validation import validate

settings = get_settings()
router = APIRouter(prefix="/api/v1/deliveries", tags=["deliveries"])

DELIVERY_STATUSES = (EntryStatus.PENDING, EntryStatus.ARRIVED, EntryStatus.COLLECTED, EntryStatus.CANCELLED)

def _check_status(status: EntryStatus | None) -> None:
    if status is not None and status not in DELIVERY_STATUSES:
        raise HTTPException(status_code=422, detail="Not a delivery status")

@router.post("", response_model=DeliveryRegistered, status_code=201)
async def register_delivery(
    payload: DeliveryRegister,
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
    issuer: CredentialIssuer = Depends(get_issuer),
):
    require_role(claims, "resident", "admin")
    entry, passcode = await entries.register_delivery(
        db, issuer,
        payload=payload,
        community_id=community_of(claims),
        registered_by=subject_of(claims),
        validity_hours=settings.delivery_passcode_validity_hours,
    )
    return DeliveryRegistered(entry=EntryRead.model_validate(entry), passcode=passcode)

@router.get("/my", response_model=EntryPage)
async def my_deliveries(
    status: EntryStatus | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
):
    require_role(claims, "resident", "admin")
    _check_status(status)
    rows, total, pages = await entries.list_entries(
        db,
        community_id=community_of(claims),
        kind=EntryKind.DELIVERY,
        registered_by=subject_of(claims),
        status=status,
        page=page,
        limit=limit,
    )
    return EntryPage(items=[EntryRead.model_validate(r) for r in rows], total=total, page=page, limit=limit, pages=pages)

@router.get("", response_model=EntryPage)
async def all_deliveries(
    status: EntryStatus | None = None,
    on_date: date | None = Query(default=None, alias="date"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=100, ge=1, le=500),
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
):
    require_role(claims, "guard", "admin")
    _check_status(status)
    # gate view: soonest first
    rows, total, pages = await entries.list_entries(
        db,
        community_id=community_of(claims),
        kind=EntryKind.DELIVERY,
        status=status,
        on_date=on_date,
        page=page,
        limit=limit,
        newest_first=False,
    )
    return EntryPage(items=[EntryRead.model_validate(r) for r in rows], total=total, page=page, limit=limit, pages=pages)

@router.get("/passcode/{passcode}", response_model=AdmissionDecisionRead, dependencies=[Depends(scan_rate_limit)])
async def validate_passcode(
    passcode: str,
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
    issuer: CredentialIssuer = Depends(get_issuer),
):
    require_role(claims, "guard", "admin")
    decision = await validate(
        db, issuer,
        public_code=passcode.strip(),
        community_id=community_of(claims),
        event=EntryEvent.COLLECT,
        require_arrival=settings.delivery_require_arrival,
    )
    return AdmissionDecisionRead(
        admissible=decision.admissible,
        code=decision.public_code,
        event=decision.event,
        credential_expires_at=decision.credential_expires_at,
        entry=decision.entry,
    )

@router.get("/{delivery_id}", response_model=EntryRead)
async def get_delivery(delivery_id: uuid.UUID, claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    entry = await entries.get_entry_for(db, delivery_id, community_id=community_of(claims), kind=EntryKind.DELIVERY)
    if claims.get("role") == "resident" and entry.registered_by != subject_of(claims):
        raise HTTPException(status_code=403, detail="Access denied")
    return EntryRead.model_validate(entry)

async def _guard_event(db: AsyncSession, issuer: CredentialIssuer, claims: dict, delivery_id: uuid.UUID, event: EntryEvent):
    require_role(claims, "guard", "admin")
    await entries.get_entry_for(db, delivery_id, community_id=community_of(claims), kind=EntryKind.DELIVERY)
    entry = await entries.consume(
        db, issuer,
        entry_id=delivery_id,
        event=event,
        acting_guard_id=subject_of(claims),
        community_id=community_of(claims),
        require_arrival=settings.delivery_require_arrival,
    )
    await publish_entry_event(entries.entry_event(entry))
    return EntryRead.model_validate(entry)

@router.post("/{delivery_id}/arrived", response_model=EntryRead)
async def mark_arrived(
    delivery_id: uuid.UUID,
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
    issuer: CredentialIssuer = Depends(get_issuer),
):
    return await _guard_event(db, issuer, claims, delivery_id, EntryEvent.ARRIVE)

# --- collecting expires the passcode for good
@router.post("/{delivery_id}/collected", response_model=EntryRead)
async def mark_collected(
    delivery_id: uuid.UUID,
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
    issuer: CredentialIssuer = Depends(get_issuer),
):
    return await _guard_event(db, issuer, claims, delivery_id, EntryEvent.COLLECT)

@router.delete("/{delivery_id}", response_model=EntryRead)
async def cancel_delivery(
    delivery_id: uuid.UUID,
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
    issuer: CredentialIssuer = Depends(get_issuer),
):
    require_role(claims, "resident", "admin")
    await entries.get_entry_for(db, delivery_id, community_id=community_of(claims), kind=EntryKind.DELIVERY)
    entry = await entries.cancel(
        db, issuer,
        entry_id=delivery_id,
        acting_user_id=subject_of(claims),
        community_id=community_of(claims),
        owner_id=subject_of(claims) if claims.get("role") == "resident" else None,
    )
    await publish_entry_event(entries.entry_event(entry))
    return EntryRead.model_validate(entry)
