from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Tuple
import math
import secrets
import uuid
import jwt

from .clock import Clock, as_utc, system_clock
from .errors import CredentialExpired, CredentialInvalid

CREDENTIAL_AUD = "gate-entry"
CREDENTIAL_SCOPE = "admit"

VISITOR_CODE_PREFIX = "VIS-"
KIND_VISITOR = "visitor"
KIND_DELIVERY = "delivery"


@dataclass(frozen=True)
class CredentialClaims:
    subject_id: uuid.UUID
    community_id: uuid.UUID
    kind: str
    expires_at: datetime


def new_visitor_code() -> str:
    return VISITOR_CODE_PREFIX + secrets.token_hex(8).upper()


def new_passcode() -> str:
    # 100000..999999
    return str(100000 + secrets.randbelow(900000))


class CredentialCodec:
    """Signs and verifies the server-side half of a gate credential.

    The public code (QR payload or passcode) is random and carries nothing;
    the signed token binds subject, community, kind and expiry and never
    leaves the cache. Expiry is checked against the injected clock rather
    than PyJWT's own wall clock so tests can move time.
    """

    def __init__(self, secret: str, *, issuer: str = "gate-access-svc", clock: Clock = system_clock):
        if not secret:
            raise ValueError("credential secret must not be empty")
        self._secret = secret
        self.issuer = issuer
        self.clock = clock

    def issue(
        self, *, subject_id: uuid.UUID, community_id: uuid.UUID, expires_at: datetime, kind: str = KIND_VISITOR
    ) -> Tuple[str, str]:
        if kind == KIND_VISITOR:
            public_code = new_visitor_code()
        elif kind == KIND_DELIVERY:
            public_code = new_passcode()
        else:
            raise ValueError("unknown credential kind: " + kind)
        return public_code, self.sign(subject_id=subject_id, community_id=community_id, expires_at=expires_at, kind=kind)

    def sign(self, *, subject_id: uuid.UUID, community_id: uuid.UUID, expires_at: datetime, kind: str) -> str:
        now = self.clock.now()
        exp = as_utc(expires_at)
        if exp < now:
            raise ValueError("expires_at is before issued_at")
        payload: Dict[str, Any] = {
            "aud": CREDENTIAL_AUD,
            "iss": self.issuer,
            "jti": secrets.token_urlsafe(16),
            "iat": int(now.timestamp()),
            "exp": math.ceil(exp.timestamp()),
            "scope": CREDENTIAL_SCOPE,
            "kind": kind,
            "subject_id": str(subject_id),
            "community_id": str(community_id),
        }
        return jwt.encode(payload, self._secret, algorithm="HS256")

    def verify(self, token: str) -> CredentialClaims:
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=["HS256"],
                audience=CREDENTIAL_AUD,
                issuer=self.issuer,
                options={"require": ["exp", "aud", "iss"], "verify_exp": False, "verify_iat": False},
            )
            if payload.get("scope") != CREDENTIAL_SCOPE:
                raise jwt.InvalidTokenError("invalid scope")
            for k in ("subject_id", "community_id", "kind"):
                if k not in payload:
                    raise jwt.InvalidTokenError("missing claim: " + k)
            claims = CredentialClaims(
                subject_id=uuid.UUID(payload["subject_id"]),
                community_id=uuid.UUID(payload["community_id"]),
                kind=payload["kind"],
                expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            )
        except (jwt.InvalidTokenError, ValueError, TypeError) as e:
            raise CredentialInvalid("Invalid or tampered credential") from e

        if self.clock.now().timestamp() >= claims.expires_at.timestamp():
            raise CredentialExpired("Credential has expired")
        return claims
