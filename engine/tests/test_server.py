import io
import json
import os
import tempfile
import unittest
from unittest import mock

from chatsync.server import _load_frames, main, simulate


class ChatsyncCliTests(unittest.TestCase):
    def _run(self, frames):
        buffer = io.StringIO()
        simulate(frames, buffer)
        return [json.loads(line) for line in buffer.getvalue().splitlines()]

    def test_load_frames_accepts_array_or_lines(self):
        array_buffer = io.StringIO(json.dumps([{"t": "list", "user": "a"}]))
        ndjson_buffer = io.StringIO("\n".join(['{"t": "one"}', "", '{"t": "two"}']))

        self.assertEqual(list(_load_frames(array_buffer)), [{"t": "list", "user": "a"}])
        self.assertEqual(list(_load_frames(ndjson_buffer)), [{"t": "one"}, {"t": "two"}])
        self.assertEqual(list(_load_frames(io.StringIO("  "))), [])

    def test_send_list_and_read(self):
        lines = self._run(
            [
                {"t": "profile", "user_id": "b", "username": "bob"},
                {"t": "send", "from": "b", "to": "a", "text": "hi"},
                {"t": "send", "from": "b", "to": "a", "text": "are you there?"},
                {"t": "send", "from": "c", "to": "a", "text": "ping"},
                {"t": "list", "user": "a"},
                {"t": "read", "user": "a", "peer": "b"},
                {"t": "read", "user": "a", "peer": "b"},
                {"t": "list", "user": "a"},
            ]
        )

        self.assertEqual([line["t"] for line in lines], ["sent", "sent", "sent", "conversations", "read", "read", "conversations"])
        self.assertFalse(lines[0]["id"].startswith("tmp_"))
        before = {c["peer_id"]: c for c in lines[3]["conversations"]}
        self.assertEqual(before["b"]["username"], "bob")
        self.assertEqual(before["b"]["unread_count"], 2)
        self.assertEqual(before["c"]["username"], "Unknown")
        self.assertEqual([lines[4]["marked"], lines[5]["marked"]], [2, 0])
        after = {c["peer_id"]: c for c in lines[6]["conversations"]}
        self.assertEqual(after["b"]["unread_count"], 0)
        self.assertEqual(after["c"]["unread_count"], 1)

    def test_history_is_ordered(self):
        lines = self._run(
            [
                {"t": "send", "from": "a", "to": "b", "text": "one"},
                {"t": "send", "from": "b", "to": "a", "text": "two"},
                {"t": "history", "user": "a", "peer": "b"},
            ]
        )

        self.assertEqual([m["text"] for m in lines[-1]["messages"]], ["one", "two"])

    def test_presence_and_status(self):
        lines = self._run(
            [
                {"t": "status", "user": "a"},
                {"t": "presence", "user": "a", "online": True},
                {"t": "status", "user": "a"},
                {"t": "presence", "user": "a", "online": False},
                {"t": "status", "user": "a"},
            ]
        )

        self.assertEqual([line["is_online"] for line in lines], [False, True, False])
        self.assertIsNone(lines[0]["last_seen"])
        self.assertIsNotNone(lines[1]["last_seen"])

    def test_unknown_frame_is_rejected(self):
        with self.assertRaises(ValueError):
            simulate([{"t": "conv.send"}], io.StringIO())

    def test_main_simulates_from_file(self):
        frames = [{"t": "presence", "user": "a"}, {"t": "status", "user": "a"}]
        with tempfile.NamedTemporaryFile("w", suffix=".json", delete=False) as handle:
            json.dump(frames, handle)
        self.addCleanup(os.unlink, handle.name)
        buffer = io.StringIO()

        with mock.patch.dict(os.environ, {}, clear=True):
            exit_code = main(["simulate", "-f", handle.name], output=buffer)

        self.assertEqual(exit_code, 0)
        self.assertTrue(json.loads(buffer.getvalue())["is_online"])


if __name__ == "__main__":
    unittest.main()
