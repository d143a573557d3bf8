from __future__ import annotations

import unittest

from controller.prompt_assembly import HISTORY_HEADER
from controller.prompt_assembly import QUESTION_HEADER
from controller.prompt_assembly import RETRIEVED_HEADER
from controller.prompt_assembly import SCOPE_HEADER
from controller.prompt_assembly import compose_prompt
from controller.prompt_assembly import format_server_context


def _row(i: int, content: str) -> dict:
    return {
        "message_id": i,
        "author_id": 10,
        "author_name": "alice",
        "created_at_utc": f"2026-01-{i:02d}T10:00:00+00:00",
        "content": content,
    }


class ComposePromptTests(unittest.TestCase):
    def test_blocks_appear_in_order(self):
        text = compose_prompt(
            "You are Glue.",
            "Server: Guild",
            [_row(1, "first"), _row(2, "second")],
            [{"role": "user", "text": "earlier q"}, {"role": "model", "text": "earlier a"}],
            "what now?",
            max_chars=5000,
        )
        positions = [
            text.index("You are Glue."),
            text.index(SCOPE_HEADER),
            text.index(RETRIEVED_HEADER),
            text.index(HISTORY_HEADER),
            text.index(QUESTION_HEADER),
        ]
        self.assertEqual(positions, sorted(positions))
        self.assertLess(text.index("first"), text.index("second"))
        self.assertIn("User: earlier q", text)
        self.assertIn("Assistant: earlier a", text)
        self.assertTrue(text.endswith("what now?"))

    def test_empty_blocks_are_omitted(self):
        text = compose_prompt("Preamble", "", [], [], "hi", max_chars=5000)
        self.assertNotIn(SCOPE_HEADER, text)
        self.assertNotIn(RETRIEVED_HEADER, text)
        self.assertNotIn(HISTORY_HEADER, text)
        self.assertEqual(text, f"Preamble\n\n{QUESTION_HEADER}\nhi")

    def test_over_budget_drops_oldest_lines_of_largest_block(self):
        retrieved = [_row(i, f"message number {i} " + "x" * 80) for i in range(1, 11)]
        turns = [{"role": "user", "text": "short"}]
        full = compose_prompt("P", "", retrieved, turns, "question", max_chars=100_000)
        budget = len(full) - 250

        text = compose_prompt("P", "", retrieved, turns, "question", max_chars=budget)

        self.assertLessEqual(len(text), budget)
        self.assertNotIn("message number 1 ", text)
        self.assertNotIn("message number 2 ", text)
        self.assertIn("message number 10 ", text)
        self.assertIn("User: short", text)
        self.assertTrue(text.startswith("P\n\n"))
        self.assertTrue(text.endswith("question"))

    def test_preamble_and_question_survive_tiny_budget(self):
        preamble = "Always keep me."
        question = "and me too"
        text = compose_prompt(
            preamble,
            "Server: Guild\nChannels: #general",
            [_row(1, "a" * 300)],
            [{"role": "user", "text": "b" * 300}],
            question,
            max_chars=10,
        )
        self.assertEqual(text, f"{preamble}\n\n{QUESTION_HEADER}\n{question}")

    def test_single_long_line_is_trimmed_from_the_front(self):
        line = "start-" + "y" * 400 + "-end"
        full = compose_prompt("P", "", [], [{"role": "user", "text": line}], "q", max_chars=100_000)
        budget = len(full) - 100

        text = compose_prompt("P", "", [], [{"role": "user", "text": line}], "q", max_chars=budget)

        self.assertEqual(len(text), budget)
        self.assertNotIn("start-", text)
        self.assertIn("-end", text)
        self.assertIn("...", text)


class ServerContextFormatTests(unittest.TestCase):
    def test_formats_server_channels_and_users(self):
        ctx = {
            "server": {"id": 1, "name": "Guild", "member_count": 42},
            "channels": [{"name": "general"}, {"name": "random"}],
            "recent_users": [{"username": "alice", "display_name": "Alice"}, {"username": "bob"}],
        }
        text = format_server_context(ctx)
        self.assertEqual(
            text.splitlines(),
            ["Server: Guild (42 members)", "Channels: #general, #random", "Recently active: Alice, bob"],
        )

    def test_empty_context(self):
        self.assertEqual(format_server_context(None), "")
        self.assertEqual(format_server_context({"server": None, "channels": [], "recent_users": []}), "")


if __name__ == "__main__":
    unittest.main()
