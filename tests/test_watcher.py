import unittest

from shared.errors import TransientPlatformError

from discord_bot.cogs.role_chooser.watcher import ReactionWatcherRegistry
from discord_bot.gateway import ReactionEvent, ReactionKey
from fakes import BOT_USER_ID, FakeGateway

GUILD = 1
CHANNEL = 10
MESSAGE = 500
ROLE = 100
KEY = ReactionKey.parse("\N{THUMBS UP SIGN}")
OTHER_KEY = ReactionKey.parse("\N{THUMBS DOWN SIGN}")


def event(user_id, key=KEY, added=True):
    return ReactionEvent(GUILD, CHANNEL, MESSAGE, user_id, key, added)


class ReactionWatcherTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.gateway = FakeGateway()
        self.gateway.add_member(GUILD, 5)
        self.registry = ReactionWatcherRegistry(self.gateway)

    async def asyncTearDown(self):
        self.registry.cancel_all()

    async def deliver(self, subscription, *events):
        for e in events:
            self.gateway.hub.dispatch(e)
        await subscription.drain()

    async def test_add_grants_and_remove_revokes(self):
        sub = self.registry.start_watcher(1, MESSAGE, GUILD, {KEY: ROLE})

        await self.deliver(sub, event(5))
        self.assertEqual(self.gateway.members[(GUILD, 5)], {ROLE})

        await self.deliver(sub, event(5, added=False))
        self.assertEqual(self.gateway.members[(GUILD, 5)], set())

    async def test_ignores_own_and_unmapped_reactions(self):
        sub = self.registry.start_watcher(1, MESSAGE, GUILD, {KEY: ROLE})

        await self.deliver(sub, event(BOT_USER_ID), event(5, key=OTHER_KEY))

        self.assertEqual(self.gateway.count("grant_role"), 0)
        self.assertEqual(self.gateway.members[(GUILD, 5)], set())

    async def test_replacing_leaves_exactly_one_watcher(self):
        first = self.registry.start_watcher(1, MESSAGE, GUILD, {KEY: ROLE})
        second = self.registry.start_watcher(1, MESSAGE, GUILD, {OTHER_KEY: ROLE})

        self.assertFalse(first.active)
        self.assertTrue(second.active)
        self.assertEqual(len(self.registry), 1)
        self.assertEqual(self.gateway.hub.active_count(MESSAGE), 1)

        await self.deliver(second, event(5, key=KEY))
        self.assertEqual(self.gateway.members[(GUILD, 5)], set())
        await self.deliver(second, event(5, key=OTHER_KEY))
        self.assertEqual(self.gateway.members[(GUILD, 5)], {ROLE})

    async def test_failed_grant_keeps_watcher_running(self):
        self.gateway.add_member(GUILD, 6)
        self.gateway.fail("grant_role", 5, TransientPlatformError("rate limited"))
        sub = self.registry.start_watcher(1, MESSAGE, GUILD, {KEY: ROLE})

        await self.deliver(sub, event(5), event(6))

        self.assertTrue(sub.active)
        self.assertEqual(self.gateway.members[(GUILD, 6)], {ROLE})

    async def test_cancel(self):
        self.registry.start_watcher(1, MESSAGE, GUILD, {KEY: ROLE})

        self.assertTrue(self.registry.cancel(1))
        self.assertFalse(self.registry.cancel(1))
        self.assertEqual(self.gateway.hub.dispatch(event(5)), 0)
