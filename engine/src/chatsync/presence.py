"""Online/offline presence: best-effort writes, peer tracking and self heartbeat."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, List

from .errors import InvalidPayload, NotFound, StoreError
from .hub import FeedSubscription
from .models import ChangeEvent, EventKind, PresenceRecord, now_iso
from .poller import Poller
from .store import DataStore, Eq

logger = logging.getLogger(__name__)


class PresenceState(str, Enum):
    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"


async def _write_presence(store: DataStore, user_id: str, is_online: bool) -> bool:
    record = PresenceRecord(user_id=user_id, is_online=is_online, last_seen=now_iso())
    try:
        await store.upsert("presence", [record.to_row()], on="user_id")
    except StoreError as exc:
        logger.warning("failed to set %s %s: %s", user_id, "online" if is_online else "offline", exc)
        return False
    return True


async def set_user_online(store: DataStore, user_id: str) -> bool:
    return await _write_presence(store, user_id, True)


async def set_user_offline(store: DataStore, user_id: str) -> bool:
    return await _write_presence(store, user_id, False)


async def get_user_online_status(store: DataStore, user_id: str) -> PresenceRecord:
    """Return the stored record, or an offline default. Never raises."""

    try:
        row = await store.select_one("presence", Eq("user_id", user_id))
    except NotFound:
        # No row: the user never announced presence.
        return PresenceRecord.offline(user_id)
    except StoreError as exc:
        logger.warning("failed to get presence for %s: %s", user_id, exc)
        return PresenceRecord.offline(user_id)
    try:
        return PresenceRecord.from_row(row)
    except InvalidPayload as exc:
        logger.warning("malformed presence row for %s: %s", user_id, exc)
        return PresenceRecord.offline(user_id)


async def subscribe_to_user_status(
    store: DataStore, user_id: str, callback: Callable[[bool], None]
) -> FeedSubscription:
    def _on_change(event: ChangeEvent) -> None:
        if event.kind is EventKind.DELETE:
            callback(False)
            return
        callback(event.row.get("is_online") is True)

    return await store.subscribe("presence", Eq("user_id", user_id), _on_change)


class PresenceTracker:
    """Follows one peer's presence via the change feed, backstopped by polling.

    There is no last-seen timeout: a peer that vanishes without writing
    offline stays online until some later write or read says otherwise.
    """

    def __init__(self, store: DataStore, peer_id: str, *, poll_interval_s: float = 2.5) -> None:
        self.store = store
        self.peer_id = peer_id
        self.state = PresenceState.UNKNOWN
        self.last_seen: str | None = None
        self._active = False
        self._subscription: FeedSubscription | None = None
        self._poller = Poller(f"presence:{peer_id}", self.refresh, poll_interval_s)
        self._listeners: List[Callable[[PresenceState], None]] = []

    @property
    def is_online(self) -> bool:
        return self.state is PresenceState.ONLINE

    @property
    def active(self) -> bool:
        return self._active

    def add_listener(self, listener: Callable[[PresenceState], None]) -> None:
        self._listeners.append(listener)

    async def start(self) -> None:
        if self._active:
            return
        self._active = True
        await self.refresh()
        try:
            self._subscription = await subscribe_to_user_status(self.store, self.peer_id, self._on_push)
        except StoreError as exc:
            logger.warning("presence feed for %s unavailable, polling only: %s", self.peer_id, exc)
        self._poller.start()

    async def stop(self) -> None:
        self._active = False
        subscription, self._subscription = self._subscription, None
        try:
            if subscription is not None:
                await self.store.unsubscribe(subscription)
        finally:
            await self._poller.stop()

    async def refresh(self) -> PresenceState:
        record = await get_user_online_status(self.store, self.peer_id)
        if self._active:
            self._adopt(record.is_online, record.last_seen)
        return self.state

    def _on_push(self, is_online: bool) -> None:
        if self._active:
            self._adopt(is_online, None)

    def _adopt(self, is_online: bool, last_seen: str | None) -> None:
        if last_seen is not None:
            self.last_seen = last_seen
        new_state = PresenceState.ONLINE if is_online else PresenceState.OFFLINE
        if new_state is self.state:
            return
        self.state = new_state
        for listener in list(self._listeners):
            listener(new_state)


class PresenceHeartbeat:
    """Keeps the local user's own presence row asserted while a view is open."""

    def __init__(self, store: DataStore, user_id: str, *, interval_s: float = 30.0) -> None:
        self.store = store
        self.user_id = user_id
        self.online = False
        self._poller = Poller(f"heartbeat:{user_id}", self._beat, interval_s)

    async def start(self) -> bool:
        self.online = await set_user_online(self.store, self.user_id)
        self._poller.start()
        return self.online

    async def _beat(self) -> None:
        self.online = await set_user_online(self.store, self.user_id)

    async def stop(self) -> bool:
        await self._poller.stop()
        self.online = False
        return await set_user_offline(self.store, self.user_id)
