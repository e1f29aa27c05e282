import unittest

import fakeredis
from redis.exceptions import ConnectionError as RedisConnectionError

from app.core.errors import StoreUnavailable
from app.core.redis import CredentialCache, allow_request


class BrokenRedis:
    async def set(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")

    async def get(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")

    async def delete(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")


class TestCredentialCache(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.redis = fakeredis.FakeAsyncRedis(decode_responses=True)
        await self.redis.flushall()
        self.cache = CredentialCache(self.redis)

    async def asyncTearDown(self):
        await self.redis.aclose()

    async def test_put_get_delete(self):
        await self.cache.put("VIS-00000000000000AA", {"token": "t", "kind": "visitor"}, 60)
        self.assertEqual(await self.cache.get("VIS-00000000000000AA"), {"token": "t", "kind": "visitor"})
        self.assertAlmostEqual(await self.redis.ttl("cred:VIS-00000000000000AA"), 60, delta=2)

        await self.cache.delete("VIS-00000000000000AA")
        self.assertIsNone(await self.cache.get("VIS-00000000000000AA"))

    async def test_delete_of_missing_key_is_quiet(self):
        await self.cache.delete("123456")

    async def test_put_if_absent_refuses_live_code(self):
        self.assertTrue(await self.cache.put_if_absent("123456", {"token": "first"}, 60))
        self.assertFalse(await self.cache.put_if_absent("123456", {"token": "second"}, 60))
        self.assertEqual((await self.cache.get("123456"))["token"], "first")

    async def test_non_positive_ttl_rejected(self):
        with self.assertRaises(ValueError):
            await self.cache.put("123456", {"token": "t"}, 0)
        with self.assertRaises(ValueError):
            await self.cache.put_if_absent("123456", {"token": "t"}, -5)
        self.assertIsNone(await self.cache.get("123456"))

    async def test_custom_prefix(self):
        cache = CredentialCache(self.redis, prefix="gate:")
        await cache.put("654321", {"token": "t"}, 30)
        self.assertEqual(await self.redis.exists("gate:654321"), 1)
        self.assertIsNone(await self.cache.get("654321"))

    async def test_corrupt_entry_reads_as_missing(self):
        await self.redis.set("cred:654321", "{not json", ex=60)
        self.assertIsNone(await self.cache.get("654321"))

    async def test_redis_errors_become_store_unavailable(self):
        cache = CredentialCache(BrokenRedis())
        with self.assertRaises(StoreUnavailable) as ctx:
            await cache.get("654321")
        self.assertTrue(ctx.exception.retryable)
        with self.assertRaises(StoreUnavailable):
            await cache.put("654321", {"token": "t"}, 30)
        with self.assertRaises(StoreUnavailable):
            await cache.put_if_absent("654321", {"token": "t"}, 30)
        with self.assertRaises(StoreUnavailable):
            await cache.delete("654321")


class TestRateLimit(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.redis = fakeredis.FakeAsyncRedis(decode_responses=True)
        await self.redis.flushall()

    async def asyncTearDown(self):
        await self.redis.aclose()

    async def test_window_allows_up_to_limit(self):
        results = [await allow_request("10.0.0.1", "scan", client=self.redis) for _ in range(61)]
        self.assertTrue(all(results[:60]))
        self.assertFalse(results[60])

    async def test_counters_are_per_ip_and_route(self):
        for _ in range(61):
            await allow_request("10.0.0.1", "scan", client=self.redis)
        self.assertTrue(await allow_request("10.0.0.2", "scan", client=self.redis))
        self.assertTrue(await allow_request("10.0.0.1", "passcode", client=self.redis))

    async def test_window_key_expires(self):
        await allow_request("10.0.0.3", "scan", client=self.redis)
        self.assertAlmostEqual(await self.redis.ttl("rl:scan:10.0.0.3"), 60, delta=2)

    async def test_later_hits_do_not_push_window_back(self):
        key = "rl:scan:10.0.0.4"
        await allow_request("10.0.0.4", "scan", client=self.redis)
        # pretend most of the window has already elapsed
        await self.redis.expire(key, 5)
        for _ in range(70):
            await allow_request("10.0.0.4", "scan", client=self.redis)
        self.assertLessEqual(await self.redis.ttl(key), 5)
        self.assertFalse(await allow_request("10.0.0.4", "scan", client=self.redis))

    async def test_counter_without_expiry_gets_one(self):
        key = "rl:scan:10.0.0.5"
        await self.redis.set(key, 3)
        self.assertTrue(await allow_request("10.0.0.5", "scan", client=self.redis))
        self.assertAlmostEqual(await self.redis.ttl(key), 60, delta=2)
