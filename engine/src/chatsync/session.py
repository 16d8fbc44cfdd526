"""View lifecycles: one open conversation, and the conversation list."""

from __future__ import annotations

import contextlib
import logging
from typing import List

from .config import SyncConfig
from .directory import ConversationDirectory
from .errors import InvalidPayload, MediaUploadFailed, StoreError
from .message_log import MessageLog
from .models import ChangeEvent, Message, MessageEvent, parse_message_event
from .poller import Poller
from .presence import PresenceHeartbeat, PresenceState, PresenceTracker
from .read_state import ReadStateReconciler
from .store import DataStore, pair_filter

logger = logging.getLogger(__name__)


class ChatSession:
    """Everything that runs while a conversation with ``peer_id`` is on screen.

    ``open`` acquires the heartbeat, the change-feed subscription, the
    presence tracker and the poll timer; ``close`` releases every one of
    them, including after a failed ``open``.
    """

    def __init__(
        self,
        store: DataStore,
        self_id: str,
        peer_id: str,
        *,
        config: SyncConfig | None = None,
        reconciler: ReadStateReconciler | None = None,
    ) -> None:
        self.store = store
        self.config = config or SyncConfig()
        self.log = MessageLog(store, self_id, peer_id, media_bucket=self.config.media_bucket)
        self.tracker = PresenceTracker(store, peer_id, poll_interval_s=self.config.presence_poll_interval_s)
        self.heartbeat = PresenceHeartbeat(store, self_id, interval_s=self.config.heartbeat_interval_s)
        self.reconciler = reconciler or ReadStateReconciler(store, self_id)
        self.tracker.add_listener(self._on_presence)
        self._poller = Poller(f"messages:{self_id}:{peer_id}", self.log.poll, self.config.message_poll_interval_s)
        self._stack = contextlib.AsyncExitStack()
        self._buffer: List[MessageEvent] | None = None
        self._opened = False
        self._closed = False
        self.draft = ""
        self.banner: str | None = None
        self.load_failed = False

    @property
    def self_id(self) -> str:
        return self.log.self_id

    @property
    def peer_id(self) -> str:
        return self.log.peer_id

    @property
    def messages(self):
        return self.log.messages

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def polling(self) -> bool:
        return self._poller.running

    async def __aenter__(self) -> "ChatSession":
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def open(self) -> "ChatSession":
        if self._opened:
            return self
        self._opened = True
        try:
            await self.heartbeat.start()
            self._stack.push_async_callback(self.heartbeat.stop)

            # Subscribe before loading so nothing lands between the two;
            # events are held back until the snapshot is in place.
            self._buffer = []
            subscription = await self.store.subscribe(
                "messages", pair_filter(self.self_id, self.peer_id), self._on_change
            )
            self._stack.push_async_callback(self.store.unsubscribe, subscription)

            try:
                await self.log.load_initial()
            except StoreError:
                self.load_failed = True
                raise
            buffered, self._buffer = self._buffer, None
            for event in buffered:
                self.log.ingest_push(event)

            self._stack.push_async_callback(self._leave_conversation)
            try:
                await self.reconciler.open_conversation(self.peer_id)
            except StoreError as exc:
                logger.warning("mark-read for %s failed: %s", self.peer_id, exc)

            await self.tracker.start()
            self._stack.push_async_callback(self.tracker.stop)

            self._poller.start()
            self._stack.push_async_callback(self._poller.stop)
        except BaseException:
            await self.close()
            raise
        return self

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._buffer = None
        await self._stack.aclose()

    async def _leave_conversation(self) -> None:
        if self.reconciler.active_peer == self.peer_id:
            await self.reconciler.close_conversation()

    def _on_change(self, change: ChangeEvent) -> None:
        if self._closed:
            return
        try:
            event = parse_message_event(change)
        except InvalidPayload as exc:
            logger.warning("dropping malformed message event: %s", exc)
            return
        if self._buffer is not None:
            self._buffer.append(event)
            return
        self.log.ingest_push(event)

    def _on_presence(self, state: PresenceState) -> None:
        directory = self.reconciler.directory
        if directory is not None and not self._closed:
            directory.set_online(self.peer_id, state is PresenceState.ONLINE)

    async def send(self, text: str | None = None, reply_to_id: str | None = None) -> Message | None:
        """Send ``text`` (or the current draft). Failures go to ``banner``."""

        body = self.draft if text is None else text
        if not body.strip():
            return None
        self.draft = ""
        try:
            return await self.log.send_text(body, reply_to_id)
        except StoreError as exc:
            self.banner = f"Failed to send message: {exc}"
            return None

    async def send_file(self, data: bytes, filename: str, *, voice: bool = False) -> Message | None:
        try:
            return await self.log.send_file(data, filename, voice=voice)
        except MediaUploadFailed as exc:
            self.banner = f"Upload failed: {exc}"
        except StoreError as exc:
            self.banner = f"Failed to send message: {exc}"
        return None

    async def delete(self, message_id: str) -> bool:
        try:
            await self.log.delete_message(message_id)
        except StoreError as exc:
            self.banner = f"Failed to delete message: {exc}"
            return False
        return True

    async def delete_conversation(self) -> bool:
        try:
            if self.reconciler.directory is not None:
                await self.reconciler.directory.delete(self.peer_id)
            else:
                await self.store.delete("messages", pair_filter(self.self_id, self.peer_id))
        except StoreError as exc:
            self.banner = f"Failed to delete conversation: {exc}"
            return False
        return True

    def dismiss_banner(self) -> None:
        self.banner = None


class InboxSession:
    """The conversation list view: directory plus live unread counters."""

    def __init__(self, store: DataStore, self_id: str, *, config: SyncConfig | None = None) -> None:
        self.store = store
        self.self_id = self_id
        self.config = config or SyncConfig()
        self.directory = ConversationDirectory(store, self_id)
        self.reconciler = ReadStateReconciler(store, self_id, self.directory)
        self.load_failed = False

    async def __aenter__(self) -> "InboxSession":
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def open(self) -> "InboxSession":
        try:
            await self.directory.list()
        except StoreError:
            self.load_failed = True
            raise
        await self.reconciler.watch_inbox()
        return self

    async def close(self) -> None:
        await self.reconciler.stop()

    async def refresh(self):
        return await self.directory.list()

    def open_chat(self, peer_id: str) -> ChatSession:
        return ChatSession(self.store, self.self_id, peer_id, config=self.config, reconciler=self.reconciler)
