from __future__ import annotations
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from ..core.clock import as_utc
from ..core.errors import CredentialExpired, CredentialNotFound
from ..models import EntryEvent
from ..schemas import EntryRead
from .credentials import CredentialIssuer
from .state_machine import EVENT_KIND, apply, get_entry

logger = structlog.get_logger()


@dataclass(frozen=True)
class AdmissionDecision:
    public_code: str
    event: EntryEvent
    entry: EntryRead
    credential_expires_at: datetime
    admissible: bool = True


async def validate(
    db: AsyncSession,
    issuer: CredentialIssuer,
    *,
    public_code: str,
    community_id: uuid.UUID,
    event: EntryEvent,
    require_arrival: bool = False,
) -> AdmissionDecision:
    """Answer whether ``public_code`` may be used for ``event`` right now.

    Read-only: the cache, the signature, the durable record and the clock are
    each consulted in turn and the first failure is raised. Consuming the
    credential is a separate step (``entries.consume``).
    """
    cached = await issuer.cache.get(public_code)
    if cached is None or "token" not in cached:
        raise CredentialNotFound()

    # a cache hit is never enough on its own
    claims = issuer.codec.verify(cached["token"])

    expected_kind = EVENT_KIND.get(event)
    if claims.community_id != community_id:
        logger.info("credential_cross_community", community_id=str(community_id))
        raise CredentialNotFound()
    entry = await get_entry(db, claims.subject_id, community_id, fresh=True)
    if entry is None or expected_kind is None or entry.kind != expected_kind or claims.kind != entry.kind.value:
        raise CredentialNotFound()

    apply(entry.status, entry.kind, event, require_arrival=require_arrival)

    if entry.credential_ref != public_code:
        # replaced or cleared on the durable side; the cache entry is stale
        raise CredentialNotFound()

    expires_at = as_utc(entry.credential_expires_at) if entry.credential_expires_at else claims.expires_at
    if issuer.clock.now() >= min(expires_at, claims.expires_at):
        raise CredentialExpired()

    return AdmissionDecision(
        public_code=public_code,
        event=event,
        entry=EntryRead.model_validate(entry),
        credential_expires_at=min(expires_at, claims.expires_at),
    )
