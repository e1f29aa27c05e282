from __future__ import annotations
import uuid
from fastapi import APIRouter, Depends
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_db, get_claims, get_issuer, require_role, subject_of, community_of, scan_rate_limit
from ..core.config import get_settings
from ..core.nats import publish_entry_event
from ..schemas import AdmissionDecisionRead, CancelEntry, ConsumeEntry, EntryRead, ValidateCredential
from ..services import entries
from ..services.credentials import CredentialIssuer
from ..services.validation import validate

settings = get_settings()
router = APIRouter(prefix="/api/v1/entries", tags=["entries"])
logger = structlog.get_logger()

# Kind-agnostic surface for gate terminals: one scan endpoint, one consume endpoint.

@router.post("/validate", response_model=AdmissionDecisionRead, dependencies=[Depends(scan_rate_limit)])
async def validate_credential(
    payload: ValidateCredential,
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
    issuer: CredentialIssuer = Depends(get_issuer),
):
    require_role(claims, "guard", "admin")
    decision = await validate(
        db, issuer,
        public_code=payload.code,
        community_id=community_of(claims),
        event=payload.event,
        require_arrival=settings.delivery_require_arrival,
    )
    return AdmissionDecisionRead(
        admissible=decision.admissible,
        code=decision.public_code,
        event=decision.event,
        credential_expires_at=decision.credential_expires_at,
        entry=decision.entry,
    )

@router.post("/{entry_id}/consume", response_model=EntryRead)
async def consume_entry(
    entry_id: uuid.UUID,
    payload: ConsumeEntry,
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
    issuer: CredentialIssuer = Depends(get_issuer),
):
    require_role(claims, "guard", "admin")
    entry = await entries.consume(
        db, issuer,
        entry_id=entry_id,
        event=payload.event,
        acting_guard_id=subject_of(claims),
        community_id=community_of(claims),
        require_arrival=settings.delivery_require_arrival,
    )
    await publish_entry_event(entries.entry_event(entry))
    return EntryRead.model_validate(entry)

@router.post("/{entry_id}/cancel", response_model=EntryRead)
async def cancel_entry(
    entry_id: uuid.UUID,
    payload: CancelEntry,
    claims: dict = Depends(get_claims),
    db: AsyncSession = Depends(get_db),
    issuer: CredentialIssuer = Depends(get_issuer),
):
    require_role(claims, "resident", "admin")
    entry = await entries.cancel(
        db, issuer,
        entry_id=entry_id,
        acting_user_id=subject_of(claims),
        community_id=community_of(claims),
        owner_id=subject_of(claims) if claims.get("role") == "resident" else None,
    )
    if payload.reason:
        logger.info("entry_cancel_reason", entry_id=str(entry.id), reason=payload.reason)
    await publish_entry_event(entries.entry_event(entry))
    return EntryRead.model_validate(entry)
