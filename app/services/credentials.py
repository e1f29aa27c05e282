from __future__ import annotations
import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable

import structlog

from ..core.clock import Clock, as_utc
from ..core.codec import CredentialCodec, KIND_DELIVERY, KIND_VISITOR
from ..core.errors import CredentialExpired, StoreUnavailable
from ..core.redis import CredentialCache

logger = structlog.get_logger()

CodeTaken = Callable[[str], Awaitable[bool]]


@dataclass
class CredentialIssuer:
    codec: CredentialCodec
    cache: CredentialCache
    clock: Clock
    passcode_max_attempts: int = 10

    def ttl_seconds(self, expires_at: datetime) -> int:
        remaining = (as_utc(expires_at) - self.clock.now()).total_seconds()
        if remaining <= 0:
            raise CredentialExpired("Cannot issue a credential that is already expired")
        return max(1, math.ceil(remaining))

    async def _issue(
        self,
        *,
        kind: str,
        subject_id: uuid.UUID,
        community_id: uuid.UUID,
        valid_until: datetime,
        attempts: int,
        code_taken: CodeTaken | None = None,
    ) -> str:
        ttl = self.ttl_seconds(valid_until)
        for _ in range(attempts):
            public_code, token = self.codec.issue(
                subject_id=subject_id, community_id=community_id, expires_at=valid_until, kind=kind
            )
            if code_taken is not None and await code_taken(public_code):
                continue
            payload = {
                "token": token,
                "kind": kind,
                "subject_id": str(subject_id),
                "community_id": str(community_id),
            }
            if await self.cache.put_if_absent(public_code, payload, ttl):
                logger.info(
                    "credential_issued",
                    kind=kind,
                    subject_id=str(subject_id),
                    community_id=str(community_id),
                    ttl_seconds=ttl,
                )
                return public_code
            logger.info("credential_code_collision", kind=kind, community_id=str(community_id))
        raise StoreUnavailable("Could not allocate a unique credential code")

    async def issue_visitor_credential(
        self, subject_id: uuid.UUID, community_id: uuid.UUID, valid_until: datetime
    ) -> str:
        # 64 random bits; a retry is only a formality
        return await self._issue(
            kind=KIND_VISITOR, subject_id=subject_id, community_id=community_id,
            valid_until=valid_until, attempts=3,
        )

    async def issue_delivery_credential(
        self,
        subject_id: uuid.UUID,
        community_id: uuid.UUID,
        valid_until: datetime,
        *,
        code_taken: CodeTaken | None = None,
    ) -> str:
        """Draw a 6-digit passcode not held by a live credential or, through
        ``code_taken``, by another active delivery of the community."""
        return await self._issue(
            kind=KIND_DELIVERY, subject_id=subject_id, community_id=community_id,
            valid_until=valid_until, attempts=self.passcode_max_attempts, code_taken=code_taken,
        )

    async def release(self, public_code: str | None) -> bool:
        """Drop a consumed or cancelled credential from the cache.

        Called after the durable change is committed. A failure here is left
        to TTL: validation re-reads the durable status on every hit.
        """
        if not public_code:
            return False
        try:
            await self.cache.delete(public_code)
        except StoreUnavailable as e:
            logger.warning("cache_delete_failed", error=str(e.__cause__ or e))
            return False
        logger.info("credential_released")
        return True
