from __future__ import annotations

import logging
from typing import Iterable

from .directory import ConversationDirectory
from .errors import InvalidPayload, StoreError
from .hub import FeedSubscription
from .models import ChangeEvent, EventKind, Message, parse_message_event
from .store import And, DataStore, Eq, NotTrue, Or

logger = logging.getLogger(__name__)


def unread_count(messages: Iterable[Message], self_id: str, peer_id: str) -> int:
    """Peer-sent messages to ``self_id`` whose read flag is false or unset."""

    return sum(
        1
        for message in messages
        if message.sender_id == peer_id and message.receiver_id == self_id and message.is_unread
    )


class ReadStateReconciler:
    """Marks messages read while their conversation is open and keeps directory counters right."""

    def __init__(
        self,
        store: DataStore,
        self_id: str,
        directory: ConversationDirectory | None = None,
    ) -> None:
        self.store = store
        self.self_id = self_id
        self.directory = directory
        self.active_peer: str | None = None
        self._subscription: FeedSubscription | None = None

    async def mark_conversation_read(self, peer_id: str) -> int:
        """Bulk-mark every unread message from ``peer_id`` as read.

        Returns the number of rows the update touched, so a repeat call
        returns 0.
        """

        rows = await self.store.update(
            "messages",
            {"read": True},
            And(Eq("sender_id", peer_id), Eq("receiver_id", self.self_id), NotTrue("read")),
        )
        if self.directory is not None:
            self.directory.reset_unread(peer_id)
        return len(rows)

    async def open_conversation(self, peer_id: str) -> int:
        self.active_peer = peer_id
        return await self.mark_conversation_read(peer_id)

    async def close_conversation(self) -> None:
        peer_id, self.active_peer = self.active_peer, None
        if peer_id is None:
            return
        # Messages that arrived while the view was open were seen there.
        try:
            await self.mark_conversation_read(peer_id)
        except StoreError as exc:
            logger.warning("mark-read on leaving %s failed: %s", peer_id, exc)
            await self._recount(peer_id)

    async def _recount(self, peer_id: str) -> None:
        if self.directory is None:
            return
        try:
            count = await self.directory.count_unread(peer_id)
        except StoreError as exc:
            logger.warning("unread recount for %s failed: %s", peer_id, exc)
            return
        self.directory.set_unread(peer_id, count)

    def handle_incoming(self, message: Message) -> None:
        if self.directory is None:
            return
        counts = message.sender_id != self.self_id and message.sender_id != self.active_peer
        self.directory.apply_message(message, count_unread=counts)

    async def watch_inbox(self) -> None:
        if self._subscription is not None:
            return
        where = Or(Eq("receiver_id", self.self_id), Eq("sender_id", self.self_id))
        self._subscription = await self.store.subscribe("messages", where, self._on_change)

    def _on_change(self, change: ChangeEvent) -> None:
        if change.kind is not EventKind.INSERT:
            return
        try:
            event = parse_message_event(change)
        except InvalidPayload as exc:
            logger.warning("dropping malformed message event: %s", exc)
            return
        self.handle_incoming(event.message)

    async def stop(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await self.store.unsubscribe(subscription)
