from __future__ import annotations

import logging
from typing import Dict, List, Set, Tuple

from .errors import InvalidPayload, StoreError
from .models import UNKNOWN_USERNAME, Conversation, Message, PresenceRecord, Profile, parse_timestamp
from .store import And, DataStore, Eq, In, NotTrue, Order, pair_filter

logger = logging.getLogger(__name__)


class ConversationDirectory:
    """Every peer ``self_id`` has exchanged at least one message with.

    Entries are a materialized view rebuilt by :meth:`list`; between reloads
    they are patched in memory by :meth:`apply_message` and the unread
    setters.
    """

    def __init__(self, store: DataStore, self_id: str) -> None:
        self.store = store
        self.self_id = self_id
        self._conversations: Dict[str, Conversation] = {}
        # Messages applied while a list() is awaiting, one journal per reload.
        self._reloads: List[List[Tuple[Message, bool]]] = []

    @property
    def conversations(self) -> List[Conversation]:
        return sorted(
            self._conversations.values(),
            key=lambda conv: parse_timestamp(conv.last_message_at),
            reverse=True,
        )

    @property
    def total_unread(self) -> int:
        return sum(conv.unread_count for conv in self._conversations.values())

    def get(self, peer_id: str) -> Conversation | None:
        return self._conversations.get(peer_id)

    async def list(self) -> List[Conversation]:
        """Rebuild every entry from the store.

        Messages applied live while the rebuild is awaiting are replayed onto
        the new entries unless the queries already returned them.
        """

        journal: List[Tuple[Message, bool]] = []
        self._reloads.append(journal)
        try:
            conversations, fetched = await self._rebuild()
        finally:
            self._reloads = [other for other in self._reloads if other is not journal]
        self._conversations = conversations
        for message, count_unread in journal:
            if message.id not in fetched:
                self.apply_message(message, count_unread=count_unread)
        return self.conversations

    async def _rebuild(self) -> Tuple[Dict[str, Conversation], Set[str]]:
        # Two single-column queries instead of one OR filter: each one can use
        # its own index on the gateway side.
        newest_first = Order("created_at", ascending=False)
        sent = await self.store.select("messages", Eq("sender_id", self.self_id), order=newest_first)
        received = await self.store.select("messages", Eq("receiver_id", self.self_id), order=newest_first)

        latest: Dict[str, Message] = {}
        unread: Dict[str, int] = {}
        seen: Set[str] = set()
        for row in sent + received:
            try:
                message = Message.from_row(row)
            except InvalidPayload as exc:
                logger.warning("skipping malformed message row %r: %s", row.get("id"), exc)
                continue
            if message.id in seen:
                continue
            seen.add(message.id)
            peer = message.peer_of(self.self_id)
            current = latest.get(peer)
            if current is None or message.timestamp > current.timestamp:
                latest[peer] = message
            if message.receiver_id == self.self_id and message.is_unread:
                unread[peer] = unread.get(peer, 0) + 1

        peers = tuple(latest)
        profiles = await self._profiles(peers)
        online = await self._online(peers)
        conversations: Dict[str, Conversation] = {}
        for peer, message in latest.items():
            profile = profiles.get(peer)
            conversations[peer] = Conversation(
                peer_id=peer,
                username=profile.username if profile else UNKNOWN_USERNAME,
                avatar_url=profile.avatar_url if profile else None,
                last_message=message.text,
                last_message_at=message.created_at,
                is_online=online.get(peer, False),
                unread_count=unread.get(peer, 0),
            )
        return conversations, seen

    async def _profiles(self, peers: tuple) -> Dict[str, Profile]:
        if not peers:
            return {}
        try:
            rows = await self.store.select("profiles", In("id", peers))
        except StoreError as exc:
            logger.warning("profile lookup failed, showing placeholders: %s", exc)
            return {}
        profiles: Dict[str, Profile] = {}
        for row in rows:
            try:
                profile = Profile.from_row(row)
            except InvalidPayload:
                continue
            profiles[profile.id] = profile
        return profiles

    async def _online(self, peers: tuple) -> Dict[str, bool]:
        if not peers:
            return {}
        try:
            rows = await self.store.select("presence", In("user_id", peers))
        except StoreError as exc:
            logger.warning("presence lookup failed, assuming offline: %s", exc)
            return {}
        online: Dict[str, bool] = {}
        for row in rows:
            try:
                record = PresenceRecord.from_row(row)
            except InvalidPayload:
                continue
            online[record.user_id] = record.is_online
        return online

    async def delete(self, peer_id: str) -> None:
        await self.store.delete("messages", pair_filter(self.self_id, peer_id))
        self._conversations.pop(peer_id, None)

    async def count_unread(self, peer_id: str) -> int:
        rows = await self.store.select(
            "messages",
            And(Eq("sender_id", peer_id), Eq("receiver_id", self.self_id), NotTrue("read")),
        )
        return len(rows)

    def apply_message(self, message: Message, *, count_unread: bool) -> Conversation | None:
        """Patch the preview for ``message`` without a reload.

        Unknown peers get a placeholder entry until the next :meth:`list`.
        """

        if self.self_id not in (message.sender_id, message.receiver_id):
            return None
        for journal in self._reloads:
            journal.append((message, count_unread))
        peer = message.peer_of(self.self_id)
        conv = self._conversations.get(peer)
        if conv is None:
            conv = Conversation(
                peer_id=peer,
                username=UNKNOWN_USERNAME,
                last_message=message.text,
                last_message_at=message.created_at,
            )
            self._conversations[peer] = conv
        elif parse_timestamp(conv.last_message_at) <= message.timestamp:
            conv.last_message = message.text
            conv.last_message_at = message.created_at
        if count_unread and message.receiver_id == self.self_id and message.is_unread:
            conv.unread_count += 1
        return conv

    def reset_unread(self, peer_id: str) -> None:
        self.set_unread(peer_id, 0)

    def set_unread(self, peer_id: str, count: int) -> None:
        conv = self._conversations.get(peer_id)
        if conv is not None:
            conv.unread_count = max(count, 0)

    def set_online(self, peer_id: str, is_online: bool) -> None:
        conv = self._conversations.get(peer_id)
        if conv is not None:
            conv.is_online = is_online
