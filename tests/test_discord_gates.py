from __future__ import annotations

import unittest
from types import SimpleNamespace
from unittest import mock

try:
    from misc.discord_gates import bot_mention_prompt
    from misc.discord_gates import message_in_allowed_channels
except ModuleNotFoundError:
    bot_mention_prompt = None
    message_in_allowed_channels = None


@unittest.skipIf(message_in_allowed_channels is None, "discord.py not installed")
class DiscordGatesTests(unittest.TestCase):
    def test_dm_is_allowed_without_channel_allowlist(self):
        message = SimpleNamespace(
            guild=None,
            channel=SimpleNamespace(id=999),
        )
        self.assertTrue(message_in_allowed_channels(message, allowed_channel_ids={123}))

    def test_empty_allowlist_allows_every_guild_channel(self):
        message = SimpleNamespace(
            guild=SimpleNamespace(id=1),
            channel=SimpleNamespace(id=999),
        )
        self.assertTrue(message_in_allowed_channels(message, allowed_channel_ids=set()))

    def test_allowed_channel_is_allowed(self):
        message = SimpleNamespace(
            guild=SimpleNamespace(id=1),
            channel=SimpleNamespace(id=123),
        )
        self.assertTrue(message_in_allowed_channels(message, allowed_channel_ids={123}))

    def test_disallowed_channel_is_blocked(self):
        message = SimpleNamespace(
            guild=SimpleNamespace(id=1),
            channel=SimpleNamespace(id=999),
        )
        self.assertFalse(message_in_allowed_channels(message, allowed_channel_ids={123}))

    def test_thread_parent_allowlist_is_honored(self):
        class FakeThread:
            def __init__(self, channel_id: int, parent_id: int):
                self.id = int(channel_id)
                self.parent = SimpleNamespace(id=int(parent_id))

        message = SimpleNamespace(
            guild=SimpleNamespace(id=1),
            channel=FakeThread(channel_id=777, parent_id=123),
        )
        with mock.patch("misc.discord_gates.discord.Thread", FakeThread):
            self.assertTrue(message_in_allowed_channels(message, allowed_channel_ids={123}))


@unittest.skipIf(bot_mention_prompt is None, "discord.py not installed")
class BotMentionPromptTests(unittest.TestCase):
    def setUp(self):
        self.bot_user = SimpleNamespace(id=42)

    def test_mention_is_stripped(self):
        message = SimpleNamespace(guild=SimpleNamespace(id=1), content="<@42> what's up?", mentions=[self.bot_user])
        self.assertEqual(bot_mention_prompt(message, self.bot_user), "what's up?")

    def test_nickname_mention_is_stripped(self):
        message = SimpleNamespace(guild=SimpleNamespace(id=1), content="hey <@!42> hi", mentions=[self.bot_user])
        self.assertEqual(bot_mention_prompt(message, self.bot_user), "hey  hi")

    def test_unmentioned_guild_message_is_ignored(self):
        message = SimpleNamespace(guild=SimpleNamespace(id=1), content="just chatting", mentions=[])
        self.assertIsNone(bot_mention_prompt(message, self.bot_user))

    def test_dm_needs_no_mention(self):
        message = SimpleNamespace(guild=None, content="  hello  ", mentions=[])
        self.assertEqual(bot_mention_prompt(message, self.bot_user), "hello")

    def test_bare_mention_is_empty(self):
        message = SimpleNamespace(guild=SimpleNamespace(id=1), content="<@42>", mentions=[self.bot_user])
        self.assertEqual(bot_mention_prompt(message, self.bot_user), "")


if __name__ == "__main__":
    unittest.main()
