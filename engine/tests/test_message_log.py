import asyncio
import unittest
from unittest import mock

from chatsync.errors import StoreUnavailable
from chatsync.message_log import MessageLog
from chatsync.models import FILE_PLACEHOLDER, VOICE_PLACEHOLDER, ChangeEvent, EventKind, Message, parse_message_event
from chatsync.store import Eq, InMemoryStore, pair_filter

from tests.store_util import FlakyStore, GatedStore, SlowAckStore, insert_event, message_row


def _push(log: MessageLog, change: ChangeEvent) -> bool:
    return log.ingest_push(parse_message_event(change))


class MessageLogPushTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = InMemoryStore()
        await self.store.insert(
            "messages",
            [message_row("m1", "a", "b", "one", 1), message_row("m2", "b", "a", "two", 2)],
        )
        self.log = MessageLog(self.store, "a", "b")
        await self.log.load_initial()

    async def test_initial_load_is_ascending(self):
        self.assertEqual([m.id for m in self.log.messages], ["m1", "m2"])

    async def test_reingesting_known_insert_is_a_no_op(self):
        before = self.log.messages
        row = message_row("m2", "b", "a", "two", 2)

        self.assertFalse(_push(self.log, insert_event(row)))
        self.assertFalse(_push(self.log, insert_event(row)))
        self.assertEqual(self.log.messages, before)

    async def test_late_insert_lands_in_timestamp_order(self):
        _push(self.log, insert_event(message_row("m5", "b", "a", "late", 5)))
        _push(self.log, insert_event(message_row("m3", "a", "b", "early", 3)))

        self.assertEqual([m.id for m in self.log.messages], ["m1", "m2", "m3", "m5"])

    async def test_same_content_and_time_under_new_id_is_ignored(self):
        self.assertTrue(_push(self.log, insert_event(message_row("d1", "a", "b", "hi", 3))))
        self.assertFalse(_push(self.log, insert_event(message_row("d2", "a", "b", "hi", 3))))

        self.assertEqual([m.id for m in self.log.messages], ["m1", "m2", "d1"])

    async def test_same_content_at_another_time_is_kept(self):
        _push(self.log, insert_event(message_row("d1", "a", "b", "hi", 3)))
        _push(self.log, insert_event(message_row("d2", "a", "b", "hi", 4)))

        self.assertEqual([m.id for m in self.log.messages], ["m1", "m2", "d1", "d2"])

    async def test_events_for_other_pairs_are_ignored(self):
        self.assertFalse(_push(self.log, insert_event(message_row("x1", "c", "a", "other", 3))))
        self.assertEqual(len(self.log), 2)

    async def test_update_replaces_row_by_id(self):
        row = message_row("m2", "b", "a", "two", 2, read=True)

        self.assertTrue(_push(self.log, ChangeEvent(kind=EventKind.UPDATE, collection="messages", row=row)))
        self.assertTrue(self.log.messages[1].read)
        self.assertFalse(_push(self.log, ChangeEvent(kind=EventKind.UPDATE, collection="messages", row=row)))

    async def test_update_for_unknown_id_is_ignored(self):
        row = message_row("m9", "b", "a", "nine", 9)

        self.assertFalse(_push(self.log, ChangeEvent(kind=EventKind.UPDATE, collection="messages", row=row)))

    async def test_delete_with_only_id_removes_message(self):
        change = ChangeEvent(kind=EventKind.DELETE, collection="messages", row={}, old={"id": "m1"})

        self.assertTrue(_push(self.log, change))
        self.assertEqual([m.id for m in self.log.messages], ["m2"])

    async def test_listeners_see_each_change(self):
        seen = []
        self.log.add_listener(seen.append)

        _push(self.log, insert_event(message_row("m3", "a", "b", "three", 3)))

        self.assertEqual(len(seen), 1)
        self.assertEqual(len(seen[0]), 3)


class MessageLogPollTests(unittest.IsolatedAsyncioTestCase):
    def _messages(self, count):
        return [Message.from_row(message_row(f"m{i}", "a", "b", f"text {i}", i)) for i in range(count)]

    async def test_shorter_or_equal_snapshot_is_ignored(self):
        log = MessageLog(InMemoryStore(), "a", "b")
        log.ingest_poll(self._messages(5))
        before = log.messages

        self.assertFalse(log.ingest_poll(self._messages(4)))
        self.assertFalse(log.ingest_poll(self._messages(5)))
        self.assertEqual(log.messages, before)

    async def test_longer_snapshot_replaces(self):
        log = MessageLog(InMemoryStore(), "a", "b")
        log.ingest_poll(self._messages(5))

        self.assertTrue(log.ingest_poll(self._messages(6)))
        self.assertEqual([m.id for m in log.messages], [f"m{i}" for i in range(6)])

    async def test_duplicate_rows_in_snapshot_collapse(self):
        log = MessageLog(InMemoryStore(), "a", "b")
        twice = [
            Message.from_row(message_row("d1", "a", "b", "hi", 1)),
            Message.from_row(message_row("d2", "a", "b", "hi", 1)),
        ]

        self.assertTrue(log.ingest_poll(twice))
        self.assertEqual([m.id for m in log.messages], ["d1"])
        self.assertFalse(log.ingest_poll(twice))
        self.assertEqual(len(log), 1)

    async def test_initial_load_collapses_duplicate_rows(self):
        store = InMemoryStore()
        await store.insert(
            "messages",
            [message_row("d1", "a", "b", "hi", 1), message_row("d2", "a", "b", "hi", 1)],
        )
        log = MessageLog(store, "a", "b")

        await log.load_initial()

        self.assertEqual([m.id for m in log.messages], ["d1"])

    async def test_poll_reads_from_store(self):
        store = InMemoryStore()
        log = MessageLog(store, "a", "b")
        await log.load_initial()
        await store.insert("messages", [message_row("m1", "b", "a", "missed push", 1)])

        self.assertTrue(await log.poll())
        self.assertEqual([m.id for m in log.messages], ["m1"])

    async def test_poll_keeps_pending_temporary_entries(self):
        store = GatedStore()
        log = MessageLog(store, "a", "b")
        await log.load_initial()
        task = asyncio.create_task(log.send_text("still sending"))
        await store.insert_started.wait()

        log.ingest_poll(self._messages(3))

        self.assertEqual(len(log), 4)
        self.assertTrue(log.messages[-1].is_temporary)
        store.gate.set()
        await task


class MessageLogSendTests(unittest.IsolatedAsyncioTestCase):
    async def test_send_shows_temporary_entry_before_write_completes(self):
        store = GatedStore()
        log = MessageLog(store, "a", "b")
        task = asyncio.create_task(log.send_text("hello"))
        await store.insert_started.wait()

        self.assertEqual(len(log), 1)
        self.assertTrue(log.messages[0].is_temporary)
        self.assertFalse(log.messages[0].read)

        store.gate.set()
        durable = await task
        self.assertEqual([m.id for m in log.messages], [durable.id])

    async def test_push_before_write_result_leaves_one_entry(self):
        store = GatedStore()
        store.assign_ids.append("durable-1")
        log = MessageLog(store, "a", "b")
        await log.load_initial()
        _push(log, insert_event(message_row("m0", "b", "a", "earlier", 0)))
        task = asyncio.create_task(log.send_text("hello"))
        await store.insert_started.wait()
        temp_index = log.index_of(log.messages[-1].id)

        pushed = dict(log.messages[-1].to_row(), id="durable-1")
        _push(log, insert_event(pushed))

        self.assertEqual(log.messages[temp_index].id, "durable-1")
        store.gate.set()
        await task
        self.assertEqual([m.id for m in log.messages], ["m0", "durable-1"])

    async def test_push_during_write_from_live_feed(self):
        store = GatedStore()
        log = MessageLog(store, "a", "b")
        await store.subscribe("messages", pair_filter("a", "b"), lambda change: _push(log, change))
        task = asyncio.create_task(log.send_text("hello"))
        await store.insert_started.wait()

        store.gate.set()
        durable = await task

        self.assertEqual([m.id for m in log.messages], [durable.id])
        self.assertFalse(any(m.is_temporary for m in log.messages))

    async def test_out_of_order_pushes_for_identical_sends_keep_time_order(self):
        store = GatedStore()
        store.assign_ids.extend(["d1", "d2"])
        log = MessageLog(store, "a", "b")
        stamps = ["2024-05-01T12:00:10.000Z", "2024-05-01T12:00:11.000Z"]
        with mock.patch("chatsync.message_log.now_iso", side_effect=stamps):
            first = asyncio.create_task(log.send_text("ok"))
            second = asyncio.create_task(log.send_text("ok"))
            while len(log) < 2:
                await asyncio.sleep(0)

        _push(log, insert_event(message_row("d2", "a", "b", "ok", 11)))
        _push(log, insert_event(message_row("d1", "a", "b", "ok", 10)))

        self.assertEqual([m.id for m in log.messages], ["d1", "d2"])
        store.gate.set()
        await asyncio.gather(first, second)
        self.assertEqual([m.id for m in log.messages], ["d1", "d2"])

    async def test_push_after_write_result_is_idempotent(self):
        store = InMemoryStore()
        log = MessageLog(store, "a", "b")
        durable = await log.send_text("hello")

        self.assertFalse(_push(log, insert_event(durable.to_row())))
        self.assertEqual(len(log), 1)

    async def test_failed_send_removes_temporary_entry(self):
        store = FlakyStore(fail_on={"insert"})
        log = MessageLog(store, "a", "b")

        with self.assertRaises(StoreUnavailable):
            await log.send_text("lost")
        self.assertEqual(len(log), 0)

    async def test_blank_message_is_rejected(self):
        log = MessageLog(InMemoryStore(), "a", "b")

        with self.assertRaises(ValueError):
            await log.send_text("   ")

    async def test_send_file_uploads_then_sends_placeholder(self):
        store = InMemoryStore()
        log = MessageLog(store, "a", "b")

        message = await log.send_file(b"data", "report.pdf")

        self.assertEqual(message.text, FILE_PLACEHOLDER)
        self.assertTrue(message.file_url.startswith("memory://storage/message-files/a/b/"))
        self.assertTrue(message.file_url.endswith("_report.pdf"))

    async def test_send_voice_uses_webm_path(self):
        log = MessageLog(InMemoryStore(), "a", "b")

        message = await log.send_file(b"ogg", "clip", voice=True)

        self.assertEqual(message.text, VOICE_PLACEHOLDER)
        self.assertIn("/a/b/voice_", message.voice_url)
        self.assertTrue(message.voice_url.endswith(".webm"))


class MessageLogDeleteTests(unittest.IsolatedAsyncioTestCase):
    async def test_delete_removes_locally_even_if_durable_delete_fails(self):
        store = FlakyStore(fail_on={"delete"})
        await store.insert("messages", [message_row("m1", "a", "b", "one", 1)])
        log = MessageLog(store, "a", "b")
        await log.load_initial()

        with self.assertRaises(StoreUnavailable):
            await log.delete_message("m1")
        self.assertEqual(len(log), 0)
        self.assertEqual(len(store.snapshot("messages")), 1)

    async def test_delete_removes_durable_row(self):
        store = InMemoryStore()
        log = MessageLog(store, "a", "b")
        durable = await log.send_text("bye")

        await log.delete_message(durable.id)

        self.assertEqual(await store.select("messages", Eq("id", durable.id)), [])

    async def test_deleting_in_flight_message_deletes_it_once_written(self):
        store = GatedStore()
        log = MessageLog(store, "a", "b")
        task = asyncio.create_task(log.send_text("oops"))
        await store.insert_started.wait()

        await log.delete_message(log.messages[0].id)
        store.gate.set()
        await task

        self.assertEqual(len(log), 0)
        self.assertEqual(store.snapshot("messages"), [])

    async def test_deleted_message_stays_gone_when_write_result_arrives_late(self):
        store = SlowAckStore()
        log = MessageLog(store, "a", "b")
        await store.subscribe("messages", pair_filter("a", "b"), lambda change: _push(log, change))
        task = asyncio.create_task(log.send_text("regret"))
        await store.committed.wait()
        durable_id = log.messages[0].id
        self.assertFalse(log.messages[0].is_temporary)

        await log.delete_message(durable_id)
        store.ack.set()
        durable = await task

        self.assertEqual(durable.id, durable_id)
        self.assertEqual(len(log), 0)
        self.assertEqual(store.snapshot("messages"), [])


if __name__ == "__main__":
    unittest.main()
