"""aiohttp application exposing a store over HTTP with a WebSocket change feed."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from aiohttp import WSMsgType, web

from .errors import InvalidPayload, StoreError, wire_code
from .hub import FeedSubscription
from .models import ChangeEvent
from .store import InMemoryStore, Order, filter_from_dict

logger = logging.getLogger(__name__)

STORE_KEY = web.AppKey("store", InMemoryStore)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)
ROW_ACTIONS = ("select", "insert", "update", "delete", "upsert")


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _invalid_request(message: str) -> web.Response:
    return web.json_response({"code": "invalid_request", "message": message}, status=400)


def _store_error(exc: StoreError) -> web.Response:
    code, status = wire_code(exc)
    return web.json_response({"code": code, "message": str(exc)}, status=status)


def _error_frame(code: str, message: str, *, request_id: Any = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


async def _read_body(request: web.Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise InvalidPayload("malformed json") from None
    if not isinstance(body, dict):
        raise InvalidPayload("body must be an object")
    return body


def _where(body: Dict[str, Any], *, required: bool):
    raw = body.get("where")
    if raw is None:
        if required:
            raise InvalidPayload("where required")
        return None
    return filter_from_dict(raw)


def _rows(body: Dict[str, Any]) -> list:
    rows = body.get("rows")
    if not isinstance(rows, list) or any(not isinstance(row, dict) for row in rows):
        raise InvalidPayload("rows must be a list of objects")
    return rows


async def handle_rows(request: web.Request) -> web.Response:
    store = request.app[STORE_KEY]
    collection = request.match_info["collection"]
    action = request.match_info["action"]
    try:
        body = await _read_body(request)
        if action == "select":
            if body.get("single"):
                row = await store.select_one(collection, _where(body, required=True))
                return web.json_response({"rows": [row]})
            order = Order.from_dict(body["order"]) if body.get("order") is not None else None
            limit = body.get("limit")
            if limit is not None and not isinstance(limit, int):
                raise InvalidPayload("limit must be an integer")
            rows = await store.select(collection, _where(body, required=False), order, limit)
        elif action == "insert":
            rows = await store.insert(collection, _rows(body))
        elif action == "update":
            values = body.get("values")
            if not isinstance(values, dict) or not values:
                raise InvalidPayload("values required")
            rows = await store.update(collection, values, _where(body, required=True))
        elif action == "delete":
            rows = await store.delete(collection, _where(body, required=True))
        else:
            on = body.get("on")
            if on is not None and not isinstance(on, str):
                raise InvalidPayload("on must be a column name")
            rows = await store.upsert(collection, _rows(body), on)
    except InvalidPayload as exc:
        return _invalid_request(str(exc))
    except StoreError as exc:
        return _store_error(exc)
    return web.json_response({"rows": rows})


async def handle_upload(request: web.Request) -> web.Response:
    store = request.app[STORE_KEY]
    data = await request.read()
    try:
        url = await store.upload(request.match_info["bucket"], request.match_info["path"], data)
    except StoreError as exc:
        return _store_error(exc)
    return web.json_response({"url": url})


async def handle_download(request: web.Request) -> web.Response:
    store = request.app[STORE_KEY]
    try:
        data = await store.download(request.match_info["bucket"], request.match_info["path"])
    except StoreError as exc:
        return _store_error(exc)
    return web.Response(body=data, content_type="application/octet-stream")


async def changes_handler(request: web.Request) -> web.WebSocketResponse:
    store = request.app[STORE_KEY]
    ws_config: dict[str, Any] = request.app[WS_CONFIG_KEY]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    loop = asyncio.get_running_loop()
    last_activity = loop.time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=1000)
    subscriptions: Dict[str, FeedSubscription] = {}
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        logger.warning("closing change feed: %s", message)
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = loop.time()
        missed_heartbeats = 0

    def enqueue(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    def forward(request_id: str):
        def _deliver(event: ChangeEvent) -> None:
            enqueue({"v": 1, "t": "feed.change", "body": {"sub": request_id, **event.to_dict()}})

        return _deliver

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except (asyncio.CancelledError, ConnectionResetError):
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                if loop.time() - last_activity >= ws_config["ping_interval_s"]:
                    enqueue({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        async for msg in ws:
            if msg.type == WSMsgType.ERROR:
                break
            if msg.type != WSMsgType.TEXT:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
            try:
                frame = msg.json()
            except ValueError:
                enqueue(_error_frame("invalid_request", "malformed json"))
                continue

            mark_activity()
            if not isinstance(frame, dict) or frame.get("v") != 1:
                enqueue(_error_frame("invalid_request", "unsupported version"))
                continue

            frame_type = frame.get("t")
            request_id = frame.get("id")
            body = frame.get("body") or {}

            if frame_type == "ping":
                enqueue({"v": 1, "t": "pong", "id": request_id})
            elif frame_type == "pong":
                continue
            elif frame_type == "feed.subscribe":
                if not isinstance(request_id, str) or not request_id or request_id in subscriptions:
                    enqueue(_error_frame("invalid_request", "unique id required", request_id=request_id))
                    continue
                try:
                    collection = body.get("collection")
                    if not isinstance(collection, str) or not collection:
                        raise InvalidPayload("collection required")
                    where = filter_from_dict(body["where"]) if body.get("where") is not None else None
                    subscription = await store.subscribe(collection, where, forward(request_id))
                except InvalidPayload as exc:
                    enqueue(_error_frame("invalid_request", str(exc), request_id=request_id))
                    continue
                except StoreError as exc:
                    enqueue(_error_frame(wire_code(exc)[0], str(exc), request_id=request_id))
                    continue
                subscriptions[request_id] = subscription
                enqueue({"v": 1, "t": "feed.subscribed", "id": request_id, "body": {"collection": collection}})
            elif frame_type == "feed.unsubscribe":
                subscription = subscriptions.pop(body.get("sub") or request_id, None)
                if subscription is not None:
                    await store.unsubscribe(subscription)
            else:
                enqueue(_error_frame("invalid_request", "unknown frame type", request_id=request_id))
    finally:
        heartbeat_task.cancel()
        for subscription in subscriptions.values():
            await store.unsubscribe(subscription)
        subscriptions.clear()
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws


def create_app(
    store: InMemoryStore | None = None,
    *,
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
) -> web.Application:
    app = web.Application(client_max_size=max_msg_size * 16)
    app[STORE_KEY] = store if store is not None else InMemoryStore()
    app[WS_CONFIG_KEY] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    actions = "|".join(ROW_ACTIONS)
    app.router.add_get("/healthz", handle_health)
    app.router.add_post(f"/v1/rows/{{collection}}/{{action:{actions}}}", handle_rows)
    app.router.add_post("/v1/storage/{bucket}/{path:.+}", handle_upload)
    app.router.add_get("/v1/storage/{bucket}/{path:.+}", handle_download)
    app.router.add_get("/v1/changes", changes_handler)
    return app
