import asyncio

from app.core.errors import AlreadyAdmitted, IllegalTransitionError
from app.models import EntryEvent, EntryRecord, EntryStatus
from app.services.state_machine import get_entry
from support import GateTestCase


class TestRacingGuards(GateTestCase):
    """Two sessions act on the same record at once; exactly one may win."""

    def split(self, results):
        wins = [r for r in results if isinstance(r, EntryRecord)]
        losses = [r for r in results if isinstance(r, BaseException)]
        return wins, losses

    async def stored_status(self, entry_id):
        async with self.sessions() as db:
            return (await get_entry(db, entry_id)).status

    async def test_double_check_in(self):
        entry, code = await self.register_visitor()
        results = await asyncio.gather(
            self.consume(entry.id, EntryEvent.CHECK_IN),
            self.consume(entry.id, EntryEvent.CHECK_IN),
            return_exceptions=True,
        )
        wins, losses = self.split(results)
        self.assertEqual(len(wins), 1, results)
        self.assertEqual(len(losses), 1, results)
        self.assertIsInstance(losses[0], AlreadyAdmitted)
        self.assertEqual(await self.stored_status(entry.id), EntryStatus.CHECKED_IN)
        self.assertIsNone(await self.cache.get(code))

    async def test_double_collect(self):
        entry, _ = await self.register_delivery()
        results = await asyncio.gather(
            self.consume(entry.id, EntryEvent.COLLECT),
            self.consume(entry.id, EntryEvent.COLLECT),
            return_exceptions=True,
        )
        wins, losses = self.split(results)
        self.assertEqual(len(wins), 1, results)
        self.assertIsInstance(losses[0], AlreadyAdmitted)
        self.assertEqual(await self.stored_status(entry.id), EntryStatus.COLLECTED)

    async def test_check_in_against_cancel(self):
        entry, code = await self.register_visitor()
        results = await asyncio.gather(
            self.consume(entry.id, EntryEvent.CHECK_IN),
            self.cancel(entry.id),
            return_exceptions=True,
        )
        wins, losses = self.split(results)
        self.assertEqual(len(wins), 1, results)
        self.assertEqual(len(losses), 1, results)
        self.assertIsInstance(losses[0], IllegalTransitionError)
        self.assertIn(await self.stored_status(entry.id), (EntryStatus.CHECKED_IN, EntryStatus.CANCELLED))
        self.assertIsNone(await self.cache.get(code))

    async def test_many_guards_one_admission(self):
        entry, _ = await self.register_visitor()
        results = await asyncio.gather(
            *(self.consume(entry.id, EntryEvent.CHECK_IN) for _ in range(4)),
            return_exceptions=True,
        )
        wins, losses = self.split(results)
        self.assertEqual(len(wins), 1, results)
        self.assertTrue(all(isinstance(e, AlreadyAdmitted) for e in losses), results)
