"""HTTP/WebSocket client for a gateway created by :func:`chatsync.gateway_app.create_app`."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Sequence
from urllib.parse import quote

import aiohttp

from .errors import InvalidPayload, MediaUploadFailed, StoreError, StoreUnavailable, error_from_wire
from .hub import ChangeCallback, FeedSubscription
from .models import ChangeEvent
from .store import Filter, Order

logger = logging.getLogger(__name__)


class RemoteStore:
    """Data store gateway backed by a remote HTTP endpoint.

    Row operations are one POST each. Change-feed subscriptions share a single
    WebSocket, opened on first use; if it drops, pending subscribe calls fail
    with :class:`StoreUnavailable` and live subscriptions stop receiving
    events, which the callers' polling loops cover.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        headers: Mapping[str, str] | None = None,
        timeout_s: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._headers = dict(headers or {})
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task | None = None
        self._feed_lock = asyncio.Lock()
        self._subscriptions: Dict[str, FeedSubscription] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._closing = False

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(headers=self._headers, timeout=self._timeout)
        return self._session

    async def _call(self, collection: str, action: str, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        url = f"{self.base_url}/v1/rows/{quote(collection, safe='')}/{action}"
        try:
            async with self._client().post(url, json=payload) as resp:
                body = await resp.json(content_type=None)
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise StoreUnavailable(f"{action} {collection} failed: {exc}") from exc
        if status >= 400:
            body = body if isinstance(body, dict) else {}
            raise error_from_wire(body.get("code"), body.get("message") or f"HTTP {status}")
        rows = body.get("rows") if isinstance(body, dict) else None
        if not isinstance(rows, list):
            raise StoreUnavailable(f"{action} {collection}: malformed response")
        return rows

    async def select(
        self,
        collection: str,
        where: Filter | None = None,
        order: Order | None = None,
        limit: int | None = None,
    ) -> List[Dict[str, Any]]:
        payload: Dict[str, Any] = {}
        if where is not None:
            payload["where"] = where.to_dict()
        if order is not None:
            payload["order"] = order.to_dict()
        if limit is not None:
            payload["limit"] = limit
        return await self._call(collection, "select", payload)

    async def select_one(self, collection: str, where: Filter) -> Dict[str, Any]:
        rows = await self._call(collection, "select", {"where": where.to_dict(), "single": True})
        return rows[0]

    async def insert(self, collection: str, rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        return await self._call(collection, "insert", {"rows": [dict(row) for row in rows]})

    async def update(self, collection: str, values: Mapping[str, Any], where: Filter) -> List[Dict[str, Any]]:
        return await self._call(collection, "update", {"values": dict(values), "where": where.to_dict()})

    async def delete(self, collection: str, where: Filter) -> List[Dict[str, Any]]:
        return await self._call(collection, "delete", {"where": where.to_dict()})

    async def upsert(
        self, collection: str, rows: Sequence[Mapping[str, Any]], on: str | None = None
    ) -> List[Dict[str, Any]]:
        payload: Dict[str, Any] = {"rows": [dict(row) for row in rows]}
        if on is not None:
            payload["on"] = on
        return await self._call(collection, "upsert", payload)

    async def upload(self, bucket: str, path: str, data: bytes) -> str:
        url = f"{self.base_url}/v1/storage/{quote(bucket, safe='')}/{quote(path, safe='/')}"
        try:
            async with self._client().post(url, data=bytes(data)) as resp:
                body = await resp.json(content_type=None)
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise MediaUploadFailed(str(exc)) from exc
        if status >= 400 or not isinstance(body, dict) or not isinstance(body.get("url"), str):
            message = body.get("message") if isinstance(body, dict) else None
            raise MediaUploadFailed(message or f"HTTP {status}")
        return body["url"]

    async def _ensure_feed(self) -> aiohttp.ClientWebSocketResponse:
        async with self._feed_lock:
            if self._ws is not None and not self._ws.closed:
                return self._ws
            try:
                self._ws = await self._client().ws_connect(f"{self.base_url}/v1/changes")
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                raise StoreUnavailable(f"change feed unavailable: {exc}") from exc
            self._reader = asyncio.create_task(self._read_feed(self._ws))
            return self._ws

    async def subscribe(self, collection: str, where: Filter | None, callback: ChangeCallback) -> FeedSubscription:
        ws = await self._ensure_feed()
        subscription = FeedSubscription(collection=collection, where=where, callback=callback)
        ack = asyncio.get_running_loop().create_future()
        self._pending[subscription.sub_id] = ack
        self._subscriptions[subscription.sub_id] = subscription
        body: Dict[str, Any] = {"collection": collection}
        if where is not None:
            body["where"] = where.to_dict()
        try:
            await ws.send_json({"v": 1, "t": "feed.subscribe", "id": subscription.sub_id, "body": body})
            await asyncio.wait_for(ack, self._timeout.total)
        except (aiohttp.ClientError, ConnectionResetError, asyncio.TimeoutError) as exc:
            self._subscriptions.pop(subscription.sub_id, None)
            raise StoreUnavailable(f"subscribe to {collection} failed: {exc}") from exc
        except StoreError:
            self._subscriptions.pop(subscription.sub_id, None)
            raise
        finally:
            self._pending.pop(subscription.sub_id, None)
        return subscription

    async def unsubscribe(self, subscription: FeedSubscription) -> None:
        if self._subscriptions.pop(subscription.sub_id, None) is None:
            return
        ws = self._ws
        if ws is None or ws.closed:
            return
        try:
            await ws.send_json({"v": 1, "t": "feed.unsubscribe", "body": {"sub": subscription.sub_id}})
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            logger.debug("unsubscribe %s not sent: %s", subscription.sub_id, exc)

    async def _read_feed(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = msg.json()
                    except ValueError:
                        logger.warning("dropping malformed change-feed frame")
                        continue
                    if isinstance(frame, dict):
                        await self._handle_frame(ws, frame)
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(StoreUnavailable("change feed closed"))
            if not self._closing:
                logger.warning("change feed closed; %d subscription(s) now rely on polling", len(self._subscriptions))

    async def _handle_frame(self, ws: aiohttp.ClientWebSocketResponse, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("t")
        body = frame.get("body") or {}
        if frame_type == "feed.change":
            subscription = self._subscriptions.get(body.get("sub"))
            if subscription is None:
                return
            try:
                event = ChangeEvent.from_dict(body)
            except InvalidPayload as exc:
                logger.warning("dropping malformed change event: %s", exc)
                return
            try:
                subscription.deliver(event)
            except Exception:
                logger.exception("change feed callback failed for %s", subscription.sub_id)
        elif frame_type == "feed.subscribed":
            future = self._pending.get(frame.get("id"))
            if future is not None and not future.done():
                future.set_result(body)
        elif frame_type == "error":
            future = self._pending.get(frame.get("id"))
            error = error_from_wire(body.get("code"), body.get("message") or "change feed error")
            if future is not None and not future.done():
                future.set_exception(error)
            else:
                logger.warning("change feed error: %s", error)
        elif frame_type == "ping":
            await ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})

    async def close(self) -> None:
        self._closing = True
        self._subscriptions.clear()
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._reader is not None:
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
