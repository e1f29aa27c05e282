from __future__ import annotations
from typing import Any, Dict, AsyncGenerator
from fastapi import Header, HTTPException, Request, status
import time
import uuid
import httpx
import jwt
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .core.clock import Clock, system_clock
from .core.codec import CredentialCodec
from .core.config import get_settings
from .core.redis import CredentialCache, allow_request, get_redis
from .services.credentials import CredentialIssuer

settings = get_settings()
logger = structlog.get_logger()

ROLES = ("resident", "guard", "admin")

_JWKS: Dict[str, Any] | None = None
_JWKS_TS: float = 0.0

async def fetch_jwks() -> Dict[str, Any]:
    global _JWKS, _JWKS_TS
    now = time.time()
    if _JWKS is None or (now - _JWKS_TS) > settings.auth_jwks_ttl_seconds:
        async with httpx.AsyncClient() as client:
            r = await client.get(settings.auth_jwks_url, timeout=5.0)
            r.raise_for_status()
            _JWKS = r.json()
            _JWKS_TS = now
    return _JWKS

async def get_signing_key():
    from jwt.algorithms import RSAAlgorithm
    try:
        jwks = await fetch_jwks()
    except httpx.HTTPError as e:
        logger.error("jwks_fetch_failed", url=settings.auth_jwks_url, error=str(e))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Auth keys unavailable")
    key = jwks["keys"][0]
    return RSAAlgorithm.from_jwk(key)

async def get_claims(authorization: str | None = Header(default=None)) -> Dict[str, Any]:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    token = authorization.split(" ", 1)[1].strip()
    key = await get_signing_key()
    try:
        payload = jwt.decode(token, key=key, algorithms=["RS256"], options={"verify_aud": False})
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    for k in ("sub", "role", "community_id"):
        if k not in payload:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    if payload["role"] not in ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unknown role")
    try:
        uuid.UUID(str(payload["sub"]))
        uuid.UUID(str(payload["community_id"]))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return payload

def require_role(claims: Dict[str, Any], *roles: str) -> None:
    if claims.get("role") not in roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"{' or '.join(roles)} role required")

def subject_of(claims: Dict[str, Any]) -> uuid.UUID:
    return uuid.UUID(str(claims["sub"]))

def community_of(claims: Dict[str, Any]) -> uuid.UUID:
    return uuid.UUID(str(claims["community_id"]))

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for s in get_session():
        yield s

# --- credential core, built once from settings ---

_issuer: CredentialIssuer | None = None

def build_issuer(*, redis_client=None, clock: Clock = system_clock) -> CredentialIssuer:
    codec = CredentialCodec(settings.credential_secret_effective, issuer=settings.credential_issuer, clock=clock)
    cache = CredentialCache(redis_client or get_redis(), prefix=settings.credential_key_prefix)
    return CredentialIssuer(codec=codec, cache=cache, clock=clock, passcode_max_attempts=settings.passcode_max_attempts)

def get_issuer() -> CredentialIssuer:
    global _issuer
    if _issuer is None:
        _issuer = build_issuer()
    return _issuer

async def scan_rate_limit(request: Request) -> None:
    ip = request.client.host if request.client else "unknown"
    if not await allow_request(ip, "credential.validate"):
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Too many requests")
