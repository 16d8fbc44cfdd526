"""Command-line entry point: run the gateway server or replay scripted frames."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Dict, Iterable, TextIO, Tuple

from aiohttp import web

from .config import SyncConfig, load_sync_config_from_env
from .directory import ConversationDirectory
from .gateway_app import create_app
from .message_log import MessageLog
from .presence import get_user_online_status, set_user_offline, set_user_online
from .read_state import ReadStateReconciler
from .remote_store import RemoteStore
from .store import DataStore, InMemoryStore

logger = logging.getLogger(__name__)


def _open_store(config: SyncConfig) -> DataStore:
    if config.store_url:
        return RemoteStore(config.store_url)
    return InMemoryStore()


async def _simulate(frames: Iterable[dict], output: TextIO, store: DataStore, config: SyncConfig) -> None:
    logs: Dict[Tuple[str, str], MessageLog] = {}

    def log_for(user: str, peer: str) -> MessageLog:
        key = (user, peer)
        if key not in logs:
            logs[key] = MessageLog(store, user, peer, media_bucket=config.media_bucket)
        return logs[key]

    def emit(message: dict) -> None:
        output.write(json.dumps(message) + "\n")

    for frame in frames:
        frame_type = frame.get("t")
        if frame_type == "profile":
            row = {"id": frame["user_id"], "username": frame["username"]}
            if frame.get("avatar_url"):
                row["avatar_url"] = frame["avatar_url"]
            await store.upsert("profiles", [row], on="id")
        elif frame_type == "send":
            message = await log_for(frame["from"], frame["to"]).send_text(frame["text"], frame.get("reply_to_id"))
            emit({"t": "sent", **message.to_row()})
        elif frame_type == "read":
            marked = await ReadStateReconciler(store, frame["user"]).mark_conversation_read(frame["peer"])
            emit({"t": "read", "user": frame["user"], "peer": frame["peer"], "marked": marked})
        elif frame_type == "list":
            conversations = await ConversationDirectory(store, frame["user"]).list()
            emit({"t": "conversations", "user": frame["user"], "conversations": [c.to_dict() for c in conversations]})
        elif frame_type == "history":
            messages = await log_for(frame["user"], frame["peer"]).load_initial()
            emit(
                {
                    "t": "history",
                    "user": frame["user"],
                    "peer": frame["peer"],
                    "messages": [message.to_row() for message in messages],
                }
            )
        elif frame_type == "presence":
            if frame.get("online", True):
                await set_user_online(store, frame["user"])
            else:
                await set_user_offline(store, frame["user"])
        elif frame_type == "status":
            record = await get_user_online_status(store, frame["user"])
            emit({"t": "status", "user": record.user_id, "is_online": record.is_online, "last_seen": record.last_seen})
        else:
            raise ValueError(f"unsupported frame type: {frame_type}")


def simulate(frames: Iterable[dict], output: TextIO, config: SyncConfig | None = None) -> None:
    """Drive the sync engine with JSON frames and write results as JSON lines."""

    config = config or SyncConfig()

    async def _run() -> None:
        store = _open_store(config)
        try:
            await _simulate(frames, output, store, config)
        finally:
            await store.close()

    asyncio.run(_run())


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        return [json.loads(line) for line in content.splitlines() if line.strip()]

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO, config: SyncConfig) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output, config)
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    public_url = f"http://{args.host}:{args.port}/v1/storage"
    app = create_app(InMemoryStore(public_url=public_url), ping_interval_s=args.ping_interval)
    logger.info("serving chatsync gateway on %s:%s", args.host, args.port)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="chatsync message sync engine")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay JSON frames against a store")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp data store gateway")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=30,
        help="Seconds between change-feed heartbeat pings",
    )

    args = parser.parse_args(argv)
    config = load_sync_config_from_env()
    logging.basicConfig(level=config.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout, config)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
