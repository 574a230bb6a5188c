import unittest

from shared.errors import TransientPlatformError, ValidationError

from discord_bot.cogs.role_chooser.reconciler import PanelReconciler
from discord_bot.gateway import ReactionKey
from fakes import BOT_USER_ID, FakeGateway, FakeRoleChooserRepository

GUILD = 1
CHANNEL = 10
OTHER_CHANNEL = 20
RED, BLUE = 100, 101
RED_KEY = ReactionKey.parse("\N{LARGE RED CIRCLE}")
BLUE_KEY = ReactionKey.parse("<:blue:123456789012345678>")


class PanelReconcilerTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.gateway = FakeGateway()
        self.gateway.add_channel(GUILD, CHANNEL)
        self.gateway.add_role(GUILD, RED, "Red")
        self.gateway.add_role(GUILD, BLUE, "Blue")
        self.repo = FakeRoleChooserRepository()
        self.reconciler = PanelReconciler(self.repo, self.gateway)

    async def asyncTearDown(self):
        self.reconciler.watchers.cancel_all()

    def message_of(self, panel_id):
        return self.gateway.messages[self.repo.panels[panel_id].message_id]

    async def test_add_mapping_creates_silent_panel_message(self):
        panel = await self.reconciler.add_mapping(GUILD, CHANNEL, "colors", RED_KEY, RED)

        message = self.message_of(panel.panel_id)
        self.assertTrue(message.suppress_notifications)
        self.assertEqual(message.content, "**colors** : \n\N{LARGE RED CIRCLE} `Red`")
        self.assertEqual(list(message.reactions), [RED_KEY])
        self.assertEqual(message.reactions[RED_KEY], [BOT_USER_ID])
        self.assertIsNotNone(self.reconciler.watchers.get(panel.panel_id))

    async def test_reconcile_twice_changes_nothing(self):
        panel = await self.reconciler.add_mapping(GUILD, CHANNEL, "colors", RED_KEY, RED)
        await self.reconciler.add_mapping(GUILD, CHANNEL, "colors", BLUE_KEY, BLUE)
        stored = await self.repo.get_panel(panel.panel_id)
        await self.reconciler.reconcile(stored)
        before = dict(self.message_of(panel.panel_id).reactions)
        edits = self.gateway.count("edit_message")

        await self.reconciler.reconcile(await self.repo.get_panel(panel.panel_id))

        message = self.message_of(panel.panel_id)
        self.assertEqual(self.gateway.count("edit_message"), edits)
        self.assertEqual(message.reactions, before)
        self.assertEqual(
            message.content,
            "**colors** : \n\N{LARGE RED CIRCLE} `Red`\n<:blue:123456789012345678> `Blue`",
        )
        self.assertEqual(len(self.gateway.messages), 1)

    async def test_duplicate_reaction_rejected_without_mutation(self):
        panel = await self.reconciler.add_mapping(GUILD, CHANNEL, "colors", RED_KEY, RED)

        with self.assertRaises(ValidationError):
            await self.reconciler.add_mapping(GUILD, CHANNEL, "colors", RED_KEY, BLUE)

        mappings = await self.repo.list_mapping(panel.panel_id)
        self.assertEqual([(m.reaction, m.role_id) for m in mappings], [(str(RED_KEY), RED)])

    async def test_unknown_role_rejected(self):
        with self.assertRaises(ValidationError):
            await self.reconciler.add_mapping(GUILD, CHANNEL, "colors", RED_KEY, 999)
        self.assertEqual(self.repo.panels, {})

    async def test_reconcile_grants_roles_for_reactions_made_while_offline(self):
        panel = await self.reconciler.add_mapping(GUILD, CHANNEL, "colors", RED_KEY, RED)
        self.gateway.add_member(GUILD, 5)
        self.gateway.react(self.repo.panels[panel.panel_id].message_id, RED_KEY, 5)

        await self.reconciler.reconcile(await self.repo.get_panel(panel.panel_id))

        self.assertIn(RED, self.gateway.members[(GUILD, 5)])

    async def test_failed_grant_does_not_stop_other_reactors(self):
        panel = await self.reconciler.add_mapping(GUILD, CHANNEL, "colors", RED_KEY, RED)
        message_id = self.repo.panels[panel.panel_id].message_id
        for user_id in (5, 6):
            self.gateway.add_member(GUILD, user_id)
            self.gateway.react(message_id, RED_KEY, user_id)
        self.gateway.fail("grant_role", 5, TransientPlatformError("rate limited"))

        await self.reconciler.reconcile(await self.repo.get_panel(panel.panel_id))

        self.assertNotIn(RED, self.gateway.members[(GUILD, 5)])
        self.assertIn(RED, self.gateway.members[(GUILD, 6)])

    async def test_unreachable_channel_does_not_block_other_panels(self):
        await self.reconciler.add_mapping(GUILD, CHANNEL, "colors", RED_KEY, RED)
        self.gateway.add_channel(GUILD, OTHER_CHANNEL, kind="voice")
        broken = await self.repo.upsert_panel(GUILD, OTHER_CHANNEL, "games")
        await self.repo.upsert_mapping(broken.panel_id, str(BLUE_KEY), BLUE)

        report = await self.reconciler.reconcile_guild(GUILD)

        self.assertEqual(report.reconciled, 1)
        self.assertEqual(report.failed, ["games"])

    async def test_missing_permissions_are_reported(self):
        self.gateway.add_channel(GUILD, CHANNEL, missing_permissions=("manage_roles",))
        await self.reconciler.add_mapping(GUILD, CHANNEL, "colors", RED_KEY, RED)

        report = await self.reconciler.reconcile_guild(GUILD)

        self.assertEqual(report.missing_permissions, {CHANNEL: ("manage_roles",)})

    async def test_removing_last_mapping_deletes_panel_and_message(self):
        panel = await self.reconciler.add_mapping(GUILD, CHANNEL, "colors", RED_KEY, RED)
        message_id = self.repo.panels[panel.panel_id].message_id

        deleted = await self.reconciler.remove_mapping(GUILD, CHANNEL, "colors", RED_KEY)

        self.assertTrue(deleted)
        self.assertEqual(self.repo.panels, {})
        self.assertEqual(self.repo.mappings, {})
        self.assertNotIn(message_id, self.gateway.messages)
        self.assertIsNone(self.reconciler.watchers.get(panel.panel_id))

    async def test_removing_last_mapping_revokes_role_from_reactors(self):
        panel = await self.reconciler.add_mapping(GUILD, CHANNEL, "colors", RED_KEY, RED)
        message_id = self.repo.panels[panel.panel_id].message_id
        self.gateway.add_member(GUILD, 5, RED)
        self.gateway.react(message_id, RED_KEY, 5)

        deleted = await self.reconciler.remove_mapping(GUILD, CHANNEL, "colors", RED_KEY)

        self.assertTrue(deleted)
        self.assertNotIn(RED, self.gateway.members[(GUILD, 5)])
        self.assertNotIn(message_id, self.gateway.messages)

    async def test_removing_one_mapping_revokes_and_keeps_the_rest(self):
        panel = await self.reconciler.add_mapping(GUILD, CHANNEL, "colors", RED_KEY, RED)
        await self.reconciler.add_mapping(GUILD, CHANNEL, "colors", BLUE_KEY, BLUE)
        message_id = self.repo.panels[panel.panel_id].message_id
        self.gateway.add_member(GUILD, 5, RED)
        self.gateway.react(message_id, RED_KEY, 5)

        deleted = await self.reconciler.remove_mapping(GUILD, CHANNEL, "colors", RED_KEY)

        self.assertFalse(deleted)
        message = self.gateway.messages[message_id]
        self.assertEqual(message.content, "**colors** : \n<:blue:123456789012345678> `Blue`")
        self.assertEqual(list(message.reactions), [BLUE_KEY])
        self.assertNotIn(RED, self.gateway.members[(GUILD, 5)])

    async def test_remove_unknown_reaction_rejected(self):
        await self.reconciler.add_mapping(GUILD, CHANNEL, "colors", RED_KEY, RED)
        with self.assertRaises(ValidationError):
            await self.reconciler.remove_mapping(GUILD, CHANNEL, "colors", BLUE_KEY)
        with self.assertRaises(ValidationError):
            await self.reconciler.remove_mapping(GUILD, CHANNEL, "nope", RED_KEY)

    async def test_rename_to_existing_section_rejected(self):
        await self.reconciler.add_mapping(GUILD, CHANNEL, "colors", RED_KEY, RED)
        await self.reconciler.add_mapping(GUILD, CHANNEL, "games", BLUE_KEY, BLUE)

        with self.assertRaises(ValidationError):
            await self.reconciler.rename_section(GUILD, CHANNEL, "colors", "games")

        sections = sorted(p.section for p in self.repo.panels.values())
        self.assertEqual(sections, ["colors", "games"])

    async def test_rename_rewrites_header(self):
        panel = await self.reconciler.add_mapping(GUILD, CHANNEL, "colors", RED_KEY, RED)

        await self.reconciler.rename_section(GUILD, CHANNEL, "colors", "colours")

        self.assertEqual(
            self.message_of(panel.panel_id).content,
            "**colours** : \n\N{LARGE RED CIRCLE} `Red`",
        )

    async def test_vanished_message_is_recreated(self):
        panel = await self.reconciler.add_mapping(GUILD, CHANNEL, "colors", RED_KEY, RED)
        old_id = self.repo.panels[panel.panel_id].message_id
        del self.gateway.messages[old_id]

        await self.reconciler.reconcile(await self.repo.get_panel(panel.panel_id))

        new_id = self.repo.panels[panel.panel_id].message_id
        self.assertNotEqual(new_id, old_id)
        self.assertIn(new_id, self.gateway.messages)
        self.assertEqual(list(self.gateway.messages[new_id].reactions), [RED_KEY])

    async def test_deleted_role_is_left_out(self):
        panel = await self.reconciler.add_mapping(GUILD, CHANNEL, "colors", RED_KEY, RED)
        await self.reconciler.add_mapping(GUILD, CHANNEL, "colors", BLUE_KEY, BLUE)
        del self.gateway.roles[(GUILD, BLUE)]

        await self.reconciler.reconcile(await self.repo.get_panel(panel.panel_id))

        message = self.message_of(panel.panel_id)
        self.assertEqual(message.content, "**colors** : \n\N{LARGE RED CIRCLE} `Red`")
        self.assertEqual(list(message.reactions), [RED_KEY])

    async def test_list_panels(self):
        await self.reconciler.add_mapping(GUILD, CHANNEL, "colors", RED_KEY, RED)

        summaries = await self.reconciler.list_panels(GUILD)

        self.assertEqual(len(summaries), 1)
        self.assertEqual(summaries[0].section, "colors")
        self.assertEqual(summaries[0].lines, [f"{RED_KEY} <@&{RED}>"])
        self.assertTrue(summaries[0].jump_url.startswith("https://discord.com/channels/1/10/"))
