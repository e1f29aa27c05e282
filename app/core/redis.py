from __future__ import annotations
import json
from typing import Any, Dict
import redis.asyncio as redis
from redis.exceptions import RedisError
import structlog

from .config import get_settings
from .errors import StoreUnavailable

_settings = get_settings()
_r: redis.Redis | None = None
logger = structlog.get_logger()

def get_redis() -> redis.Redis:
    global _r
    if _r is None:
        _r = redis.from_url(_settings.redis_url, decode_responses=True)
    return _r

async def ping_redis() -> bool:
    try:
        r = get_redis()
        pong = await r.ping()
        return bool(pong)
    except (RedisError, OSError):
        return False


class CredentialCache:
    """Existence index for live credentials, keyed by public code.

    Entries expire with the credential; a missing key means the credential is
    gone. Values are JSON: the signed token plus the ids it was issued for.
    """

    def __init__(self, client: redis.Redis, *, prefix: str = "cred:"):
        self._r = client
        self._prefix = prefix

    def _key(self, public_code: str) -> str:
        return f"{self._prefix}{public_code}"

    async def put(self, public_code: str, payload: Dict[str, Any], ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        try:
            await self._r.set(self._key(public_code), json.dumps(payload), ex=ttl_seconds)
        except RedisError as e:
            raise StoreUnavailable("Credential cache unavailable") from e

    async def put_if_absent(self, public_code: str, payload: Dict[str, Any], ttl_seconds: int) -> bool:
        """SET NX EX: False when another live credential already holds this code."""
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        try:
            ok = await self._r.set(self._key(public_code), json.dumps(payload), ex=ttl_seconds, nx=True)
        except RedisError as e:
            raise StoreUnavailable("Credential cache unavailable") from e
        return bool(ok)

    async def get(self, public_code: str) -> Dict[str, Any] | None:
        try:
            raw = await self._r.get(self._key(public_code))
        except RedisError as e:
            raise StoreUnavailable("Credential cache unavailable") from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            # unreadable entry counts as absent
            logger.warning("cache_entry_corrupt", public_code=public_code)
            return None

    async def delete(self, public_code: str) -> None:
        try:
            await self._r.delete(self._key(public_code))
        except RedisError as e:
            raise StoreUnavailable("Credential cache unavailable") from e


# ---- Simple fixed-window rate limit per IP/route ----
async def allow_request(ip: str, route_key: str, client: redis.Redis | None = None) -> bool:
    """
    Fixed window: increment a counter key; allow if <= max.
    The window's expiry is set once, when the key has none, so later hits
    (allowed or refused) never push it back.
    """
    if not _settings.rl_enabled:
        return True
    r = client or get_redis()
    key = f"rl:{route_key}:{ip}"
    try:
        pipe = r.pipeline()
        pipe.incr(key)
        pipe.ttl(key)
        count, ttl = await pipe.execute()
        if int(ttl) < 0:
            await r.expire(key, _settings.rl_window_seconds)
    except RedisError as e:
        raise StoreUnavailable("Rate limiter unavailable") from e
    return int(count) <= _settings.rl_max_reqs
