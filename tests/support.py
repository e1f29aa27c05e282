import tempfile
import unittest
import uuid
from datetime import datetime, timedelta, timezone

import fakeredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.clock import Clock
from app.core.codec import CredentialCodec
from app.core.redis import CredentialCache
from app.models import Base
from app.schemas import DeliveryRegister, VisitorRegister
from app.services import entries
from app.services.credentials import CredentialIssuer


def flip_signature_char(token: str) -> str:
    head, body, sig = token.split(".")
    i = len(sig) // 2
    swapped = "A" if sig[i] != "A" else "B"
    return ".".join([head, body, sig[:i] + swapped + sig[i + 1:]])


class FrozenClock(Clock):
    def __init__(self, start: datetime | None = None):
        self._now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> None:
        self._now += timedelta(**kwargs)


class GateTestCase(unittest.IsolatedAsyncioTestCase):
    """Fresh SQLite file, fake Redis and a frozen clock per test."""

    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.engine = create_async_engine(f"sqlite+aiosqlite:///{self._tmp.name}/gate.db")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.sessions = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

        self.redis = fakeredis.FakeAsyncRedis(decode_responses=True)
        await self.redis.flushall()
        self.clock = FrozenClock()
        self.codec = CredentialCodec("unit-test-secret", clock=self.clock)
        self.cache = CredentialCache(self.redis)
        self.issuer = CredentialIssuer(codec=self.codec, cache=self.cache, clock=self.clock)

        self.community_id = uuid.uuid4()
        self.resident_id = uuid.uuid4()
        self.guard_id = uuid.uuid4()

    async def asyncTearDown(self):
        await self.redis.aclose()
        await self.engine.dispose()
        self._tmp.cleanup()

    async def register_visitor(self, community_id=None, **overrides):
        data = {
            "visitor_name": "Nurul Aisyah",
            "visitor_phone": "+60123456789",
            "vehicle_plate": "WXY 1234",
            "expected_arrival": self.clock.now(),
            "property_id": uuid.uuid4(),
        }
        data.update(overrides)
        async with self.sessions() as db:
            return await entries.register_visitor(
                db, self.issuer,
                payload=VisitorRegister(**data),
                community_id=community_id or self.community_id,
                registered_by=self.resident_id,
            )

    async def register_delivery(self, community_id=None, **overrides):
        data = {
            "delivery_service": "Pos Laju",
            "vehicle_plate": "BKL 88",
            "estimated_arrival": self.clock.now() + timedelta(hours=2),
        }
        data.update(overrides)
        async with self.sessions() as db:
            return await entries.register_delivery(
                db, self.issuer,
                payload=DeliveryRegister(**data),
                community_id=community_id or self.community_id,
                registered_by=self.resident_id,
            )

    async def consume(self, entry_id, event, guard_id=None, **kwargs):
        async with self.sessions() as db:
            return await entries.consume(
                db, self.issuer,
                entry_id=entry_id,
                event=event,
                acting_guard_id=guard_id or self.guard_id,
                **kwargs,
            )

    async def cancel(self, entry_id, user_id=None, **kwargs):
        async with self.sessions() as db:
            return await entries.cancel(
                db, self.issuer, entry_id=entry_id, acting_user_id=user_id or self.resident_id, **kwargs
            )
