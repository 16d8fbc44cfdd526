import unittest

from chatsync.directory import ConversationDirectory
from chatsync.models import Message
from chatsync.read_state import unread_count
from chatsync.store import InMemoryStore

from tests.store_util import FlakyStore, message_row


class ConversationDirectoryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = InMemoryStore()
        await self.store.insert(
            "profiles",
            [{"id": "b", "username": "bob", "avatar_url": "https://img/b.png"}, {"id": "c", "username": "cy"}],
        )
        await self.store.insert(
            "messages",
            [
                message_row("m1", "a", "b", "hi bob", 1),
                message_row("m2", "b", "a", "hi back", 2),
                message_row("m3", "a", "c", "hey cy", 3),
            ],
        )
        self.directory = ConversationDirectory(self.store, "a")

    async def test_groups_by_peer_with_latest_preview(self):
        conversations = await self.directory.list()

        self.assertEqual([conv.peer_id for conv in conversations], ["c", "b"])
        self.assertEqual(self.directory.get("b").last_message, "hi back")
        self.assertEqual(self.directory.get("c").last_message, "hey cy")
        self.assertEqual(self.directory.get("b").username, "bob")
        self.assertEqual(self.directory.get("b").avatar_url, "https://img/b.png")

    async def test_unread_counts_only_received_unread(self):
        await self.store.insert(
            "messages",
            [
                message_row("u1", "b", "a", "1", 10, read=False),
                message_row("u2", "b", "a", "2", 11),
                message_row("u3", "b", "a", "3", 12, read=True),
                message_row("u4", "a", "b", "mine", 13, read=False),
            ],
        )

        await self.directory.list()

        # m2 plus u1 and u2
        self.assertEqual(self.directory.get("b").unread_count, 3)
        self.assertEqual(self.directory.get("c").unread_count, 0)
        self.assertEqual(self.directory.total_unread, 3)

    async def test_presence_is_attached(self):
        await self.store.upsert("presence", [{"user_id": "b", "is_online": True}], on="user_id")

        await self.directory.list()

        self.assertTrue(self.directory.get("b").is_online)
        self.assertFalse(self.directory.get("c").is_online)

    async def test_missing_profiles_fall_back_to_unknown(self):
        store = FlakyStore(fail_on={("select", "profiles"), ("select", "presence")})
        await store.insert("messages", [message_row("m1", "z", "a", "who?", 1)])
        directory = ConversationDirectory(store, "a")

        with self.assertLogs("chatsync.directory", level="WARNING"):
            conversations = await directory.list()

        self.assertEqual(conversations[0].username, "Unknown")
        self.assertFalse(conversations[0].is_online)

    async def test_delete_removes_both_directions(self):
        await self.directory.list()

        await self.directory.delete("b")

        self.assertIsNone(self.directory.get("b"))
        remaining = [row["id"] for row in self.store.snapshot("messages")]
        self.assertEqual(remaining, ["m3"])

    async def test_apply_message_patches_preview_and_creates_placeholders(self):
        await self.directory.list()

        self.directory.apply_message(Message.from_row(message_row("n1", "b", "a", "newer", 30)), count_unread=True)
        self.directory.apply_message(Message.from_row(message_row("n2", "d", "a", "stranger", 31)), count_unread=True)
        self.directory.apply_message(Message.from_row(message_row("n0", "b", "a", "older", 0)), count_unread=False)

        self.assertEqual(self.directory.get("b").last_message, "newer")
        self.assertEqual(self.directory.get("b").unread_count, 2)
        self.assertEqual(self.directory.get("d").username, "Unknown")
        self.assertEqual(self.directory.conversations[0].peer_id, "d")

    async def test_count_unread_queries_store(self):
        self.assertEqual(await self.directory.count_unread("b"), 1)


class UnreadCountTests(unittest.TestCase):
    def test_counts_false_and_unset_only(self):
        rows = [
            message_row("1", "p", "me", "x", 1, read=False),
            message_row("2", "p", "me", "x", 2),
            message_row("3", "p", "me", "x", 3, read=False),
            message_row("4", "p", "me", "x", 4, read=True),
            message_row("5", "p", "me", "x", 5, read=True),
            message_row("6", "me", "p", "x", 6, read=False),
        ]

        self.assertEqual(unread_count([Message.from_row(row) for row in rows], "me", "p"), 3)


if __name__ == "__main__":
    unittest.main()
