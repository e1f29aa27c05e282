from __future__ import annotations
import uuid
from datetime import date
from io import BytesIO
from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_db, get_claims, get_issuer, require_role, subject_of, community_of, scan_rate_limit
from ..core.config import get_settings
from ..core.nats import publish_entry_event
from ..models import EntryEvent, EntryKind, EntryStatus
from ..schemas import AdmissionDecisionRead, EntryPage, EntryRead, VisitorRegister, VisitorRegistered
from ..services import entries
from ..services.credentials import CredentialIssuer
from ..services.validation import validate

settings = get_settings()
router = APIRouter(prefix="/api/v1/visitors", tags=["visitors"])

VISITOR_STATUSES = (EntryStatus.PENDING, EntryStatus.CHECKED_IN, EntryStatus.CHECKED_OUT, EntryStatus.CANCELLED)

def _ensure_visible(claims: dict, entry) -> None:
    if claims.get("role") == "resident" and entry.registered_by != subject_of(claims):
        raise HTTPException(status_code=403, detail="Access denied")

# --- resident registers an expected visitor; the QR code comes back once
@router.post("", response_model=VisitorRegistered, status_code=201)
async def register_visitor(
    payload: VisitorRegister,
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
    issuer: CredentialIssuer = Depends(get_issuer),
):
    require_role(claims, "resident", "admin")
    entry, code = await entries.register_visitor(
        db, issuer,
        payload=payload,
        community_id=community_of(claims),
        registered_by=subject_of(claims),
        default_validity_hours=settings.visitor_default_validity_hours,
    )
    return VisitorRegistered(entry=EntryRead.model_validate(entry), qr_code=code)

@router.get("", response_model=EntryPage)
async def list_visitors(
    status: EntryStatus | None = None,
    on_date: date | None = Query(default=None, alias="date"),
    property_id: uuid.UUID | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
):
    if status is not None and status not in VISITOR_STATUSES:
        raise HTTPException(status_code=422, detail="Not a visitor status")
    # residents only see the visitors they registered
    owner = subject_of(claims) if claims.get("role") == "resident" else None
    rows, total, pages = await entries.list_entries(
        db,
        community_id=community_of(claims),
        kind=EntryKind.VISITOR,
        registered_by=owner,
        status=status,
        on_date=on_date,
        property_id=property_id,
        page=page,
        limit=limit,
    )
    return EntryPage(items=[EntryRead.model_validate(r) for r in rows], total=total, page=page, limit=limit, pages=pages)

# --- guard scans a QR code; read-only
@router.get("/qr/{qr_code}", response_model=AdmissionDecisionRead, dependencies=[Depends(scan_rate_limit)])
async def validate_visitor_qr(
    qr_code: str,
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
    issuer: CredentialIssuer = Depends(get_issuer),
):
    require_role(claims, "guard", "admin")
    decision = await validate(
        db, issuer, public_code=qr_code.strip().upper(), community_id=community_of(claims), event=EntryEvent.CHECK_IN
    )
    return AdmissionDecisionRead(
        admissible=decision.admissible,
        code=decision.public_code,
        event=decision.event,
        credential_expires_at=decision.credential_expires_at,
        entry=decision.entry,
    )

@router.get("/{visitor_id}", response_model=EntryRead)
async def get_visitor(visitor_id: uuid.UUID, claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    entry = await entries.get_entry_for(db, visitor_id, community_id=community_of(claims), kind=EntryKind.VISITOR)
    _ensure_visible(claims, entry)
    return EntryRead.model_validate(entry)

# (Optional) PNG for residents to forward to their visitor
@router.get("/{visitor_id}/qr.png")
async def visitor_qr_png(visitor_id: uuid.UUID, claims: dict = Depends(get_claims), db: AsyncSession = Depends(get_db)):
    import qrcode
    require_role(claims, "resident", "admin")
    entry = await entries.get_entry_for(db, visitor_id, community_id=community_of(claims), kind=EntryKind.VISITOR)
    _ensure_visible(claims, entry)
    if entry.status != EntryStatus.PENDING or not entry.credential_ref:
        raise HTTPException(status_code=409, detail="Visitor has no active QR code")
    img = qrcode.make(entry.credential_ref)
    b = BytesIO(); img.save(b, format="PNG")
    return Response(content=b.getvalue(), media_type="image/png")

@router.post("/{visitor_id}/check-in", response_model=EntryRead)
async def check_in_visitor(
    visitor_id: uuid.UUID,
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
    issuer: CredentialIssuer = Depends(get_issuer),
):
    require_role(claims, "guard", "admin")
    await entries.get_entry_for(db, visitor_id, community_id=community_of(claims), kind=EntryKind.VISITOR)
    entry = await entries.consume(
        db, issuer,
        entry_id=visitor_id,
        event=EntryEvent.CHECK_IN,
        acting_guard_id=subject_of(claims),
        community_id=community_of(claims),
    )
    await publish_entry_event(entries.entry_event(entry))
    return EntryRead.model_validate(entry)

@router.post("/{visitor_id}/check-out", response_model=EntryRead)
async def check_out_visitor(
    visitor_id: uuid.UUID,
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
    issuer: CredentialIssuer = Depends(get_issuer),
):
    require_role(claims, "guard", "admin")
    await entries.get_entry_for(db, visitor_id, community_id=community_of(claims), kind=EntryKind.VISITOR)
    entry = await entries.consume(
        db, issuer,
        entry_id=visitor_id,
        event=EntryEvent.CHECK_OUT,
        acting_guard_id=subject_of(claims),
        community_id=community_of(claims),
    )
    await publish_entry_event(entries.entry_event(entry))
    return EntryRead.model_validate(entry)

@router.delete("/{visitor_id}", response_model=EntryRead)
async def cancel_visitor(
    visitor_id: uuid.UUID,
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
    issuer: CredentialIssuer = Depends(get_issuer),
):
    require_role(claims, "resident", "admin")
    await entries.get_entry_for(db, visitor_id, community_id=community_of(claims), kind=EntryKind.VISITOR)
    entry = await entries.cancel(
        db, issuer,
        entry_id=visitor_id,
        acting_user_id=subject_of(claims),
        community_id=community_of(claims),
        owner_id=subject_of(claims) if claims.get("role") == "resident" else None,
    )
    await publish_entry_event(entries.entry_event(entry))
    return EntryRead.model_validate(entry)
