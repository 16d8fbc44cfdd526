"""Per-conversation message timeline fed by optimistic sends, the change feed and polling."""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Sequence, Set, Tuple

from .errors import InvalidPayload, StoreError
from .models import (
    FILE_PLACEHOLDER,
    VOICE_PLACEHOLDER,
    EventKind,
    Message,
    MessageEvent,
    is_temp_id,
    new_temp_id,
    now_iso,
)
from .store import DataStore, Eq, Order, pair_filter

logger = logging.getLogger(__name__)

Listener = Callable[[Tuple[Message, ...]], None]


def collapse_duplicates(messages: Sequence[Message]) -> List[Message]:
    """Keep the first of any rows sharing an id or an identity key."""
    seen_ids: Set[str] = set()
    seen_keys: Set[tuple] = set()
    unique: List[Message] = []
    for message in messages:
        if message.id in seen_ids or message.identity in seen_keys:
            continue
        seen_ids.add(message.id)
        seen_keys.add(message.identity)
        unique.append(message)
    return unique


class MessageLog:
    """Ordered, duplicate-free messages exchanged between ``self_id`` and ``peer_id``.

    Every mutation path is idempotent by durable id, so the order in which the
    three producers deliver a message only changes latency, never the final
    sequence. Temporary entries (``tmp_`` ids) are owned here until their
    durable row replaces them or the send fails.
    """

    def __init__(
        self,
        store: DataStore,
        self_id: str,
        peer_id: str,
        *,
        media_bucket: str = "message-files",
    ) -> None:
        self.store = store
        self.self_id = self_id
        self.peer_id = peer_id
        self.media_bucket = media_bucket
        self.loaded = False
        self._messages: List[Message] = []
        self._abandoned: Set[str] = set()
        self._listeners: List[Listener] = []

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return

    def _notify(self) -> None:
        snapshot = self.messages
        for listener in list(self._listeners):
            listener(snapshot)

    def index_of(self, message_id: str) -> int:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        return -1

    def _insert_ordered(self, message: Message) -> None:
        ts = message.timestamp
        index = len(self._messages)
        while index > 0 and self._messages[index - 1].timestamp > ts:
            index -= 1
        self._messages.insert(index, message)

    def _in_order_at(self, index: int) -> bool:
        ts = self._messages[index].timestamp
        if index > 0 and self._messages[index - 1].timestamp > ts:
            return False
        return index + 1 >= len(self._messages) or ts <= self._messages[index + 1].timestamp

    def _has_durable(self, message: Message) -> bool:
        identity = message.identity
        return any(
            not existing.is_temporary and (existing.id == message.id or existing.identity == identity)
            for existing in self._messages
        )

    def _parse_rows(self, rows: Sequence[dict]) -> List[Message]:
        messages: List[Message] = []
        for row in rows:
            try:
                messages.append(Message.from_row(row))
            except InvalidPayload as exc:
                logger.warning("skipping malformed message row %r: %s", row.get("id"), exc)
        return messages

    async def fetch_snapshot(self) -> List[Message]:
        rows = await self.store.select(
            "messages",
            pair_filter(self.self_id, self.peer_id),
            order=Order("created_at", ascending=True),
        )
        return self._parse_rows(rows)

    async def load_initial(self) -> Tuple[Message, ...]:
        self._messages = collapse_duplicates(await self.fetch_snapshot())
        self.loaded = True
        self._notify()
        return self.messages

    async def send_text(
        self,
        text: str,
        reply_to_id: str | None = None,
        *,
        file_url: str | None = None,
        voice_url: str | None = None,
    ) -> Message:
        """Show the message immediately, then persist it.

        On a failed write the temporary entry is removed and the store error
        is re-raised for the caller to surface.
        """

        if not text.strip() and not file_url and not voice_url:
            raise ValueError("message text or attachment required")
        if text.strip():
            body = text
        else:
            body = FILE_PLACEHOLDER if file_url else VOICE_PLACEHOLDER

        temp = Message(
            id=new_temp_id(),
            sender_id=self.self_id,
            receiver_id=self.peer_id,
            text=body,
            created_at=now_iso(),
            file_url=file_url,
            voice_url=voice_url,
            reply_to_id=reply_to_id,
            read=False,
        )
        self._messages.append(temp)
        self._notify()

        row = temp.to_row()
        row.pop("id")
        try:
            inserted = await self.store.insert("messages", [row])
        except StoreError:
            self._drop(temp.id)
            raise
        durable = Message.from_row(inserted[0])
        await self._settle(temp, durable)
        return durable

    async def send_file(
        self,
        data: bytes,
        filename: str,
        *,
        voice: bool = False,
        text: str = "",
        reply_to_id: str | None = None,
    ) -> Message:
        ts_ms = int(time.time() * 1000)
        prefix = f"{self.self_id}/{self.peer_id}"
        if voice:
            path = f"{prefix}/voice_{ts_ms}.webm"
        else:
            path = f"{prefix}/{ts_ms}_{filename.replace('/', '_')}"
        url = await self.store.upload(self.media_bucket, path, data)
        if voice:
            return await self.send_text(text, reply_to_id, voice_url=url)
        return await self.send_text(text, reply_to_id, file_url=url)

    def _drop(self, message_id: str) -> None:
        index = self.index_of(message_id)
        if index >= 0:
            del self._messages[index]
            self._notify()

    async def _settle(self, temp: Message, durable: Message) -> None:
        if temp.id in self._abandoned:
            # Deleted locally while the write was in flight.
            self._abandoned.discard(temp.id)
            try:
                await self.store.delete("messages", Eq("id", durable.id))
            except StoreError as exc:
                logger.warning("could not delete abandoned message %s: %s", durable.id, exc)
            return

        temp_index = self.index_of(temp.id)
        if temp_index < 0:
            # Either a push already replaced it or the row was deleted since.
            return
        if self._has_durable(durable):
            del self._messages[temp_index]
        else:
            self._messages[temp_index] = durable
        self._notify()

    def ingest_push(self, event: MessageEvent) -> bool:
        message = event.message
        if message is not None and not message.involves(self.self_id, self.peer_id):
            return False

        if event.kind is EventKind.INSERT:
            changed = self._apply_insert(message)
        elif event.kind is EventKind.UPDATE:
            changed = self._apply_update(message)
        else:
            changed = self._apply_delete(event.message_id)
        if changed:
            self._notify()
        return changed

    def _apply_insert(self, message: Message | None) -> bool:
        if message is None or message.is_temporary or self._has_durable(message):
            return False
        matches = [
            index
            for index, existing in enumerate(self._messages)
            if existing.is_temporary and existing.matches_content(message)
        ]
        if not matches:
            self._insert_ordered(message)
            return True
        # The durable row keeps the created_at of the temporary entry it came from.
        index = next((i for i in matches if self._messages[i].timestamp == message.timestamp), matches[0])
        self._messages[index] = message
        if not self._in_order_at(index):
            del self._messages[index]
            self._insert_ordered(message)
        return True

    def _apply_update(self, message: Message | None) -> bool:
        if message is None:
            return False
        index = self.index_of(message.id)
        if index < 0 or self._messages[index] == message:
            return False
        self._messages[index] = message
        return True

    def _apply_delete(self, message_id: str) -> bool:
        index = self.index_of(message_id)
        if index < 0:
            return False
        del self._messages[index]
        return True

    def ingest_poll(self, snapshot: Sequence[Message]) -> bool:
        """Adopt ``snapshot`` only when it is longer than the current sequence.

        Same-length divergence is not detected here and is left to the push
        feed. Pending temporary entries without a durable counterpart in the
        snapshot are kept at the end. Rows repeating an earlier row's id or
        content and timestamp are collapsed first.
        """

        snapshot = collapse_duplicates(snapshot)
        if len(snapshot) <= len(self._messages):
            return False

        known_ids = {message.id for message in self._messages if not message.is_temporary}
        candidates = [message for message in snapshot if message.id not in known_ids]
        pending: List[Message] = []
        for temp in (message for message in self._messages if message.is_temporary):
            match = next((fresh for fresh in candidates if fresh.matches_content(temp)), None)
            if match is None:
                pending.append(temp)
            else:
                candidates.remove(match)

        self._messages = list(snapshot) + pending
        self._notify()
        return True

    async def poll(self) -> bool:
        return self.ingest_poll(await self.fetch_snapshot())

    async def delete_message(self, message_id: str) -> None:
        """Remove locally, then delete durably.

        A failed durable delete is re-raised but the local removal stands.
        """

        index = self.index_of(message_id)
        if index >= 0:
            del self._messages[index]
            self._notify()
        if is_temp_id(message_id):
            if index >= 0:
                self._abandoned.add(message_id)
            return
        await self.store.delete("messages", Eq("id", message_id))
