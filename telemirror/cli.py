"""telemirror command line.

Inspection commands print JSON for a session log; `sync` and `watch` mirror
it into the configured Telegram chat.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from telegram import Bot

from telemirror.adapters.telegram_sink import TelegramSink, TelegramUploader
from telemirror.config import TelemirrorConfig, get_config
from telemirror.core.activity_log import build_activity_log, read_activity_log
from telemirror.core.db import MappingDb
from telemirror.core.event_stream import read_all_session_events, watch_session_events
from telemirror.core.log_tailer import get_session_file_path, read_all
from telemirror.core.message_sync import MessageSyncState, SyncOptions, sync_messages_from_offset
from telemirror.core.session_watcher import SessionWatcher
from telemirror.core.turns import group_messages_by_turn
from telemirror.logging_config import setup_logging

logger = logging.getLogger("telemirror.cli")

TOKEN_ENV = "TELEGRAM_BOT_TOKEN"


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _cmd_events(args: argparse.Namespace) -> int:
    _print_json([event.to_dict() for event in read_all_session_events(args.path)])
    return 0


async def _follow_events(path: Path, poll_interval: float) -> int:
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, cancel.set)
    async for event in watch_session_events(path, poll_interval=poll_interval, cancel=cancel):
        print(json.dumps(event.to_dict(), ensure_ascii=False), flush=True)
    return 0


def _resolve_path(args: argparse.Namespace, config: TelemirrorConfig) -> Path:
    """Session log path: given directly, or from a session id plus --cwd."""
    if getattr(args, "cwd", None):
        return get_session_file_path(args.path, args.cwd, root=config.watch.sessions_root)
    return Path(args.path).expanduser()


def _cmd_activity(args: argparse.Namespace) -> int:
    if args.in_progress:
        entries = build_activity_log(read_all_session_events(args.path), in_progress=True)
    else:
        entries = read_activity_log(args.path, preserve_tail=args.preserve_tail)
    _print_json([entry.to_dict() for entry in entries])
    return 0


def _cmd_turns(args: argparse.Namespace) -> int:
    records, skipped = read_all(args.path)
    turns = group_messages_by_turn(records)
    _print_json(
        {
            "skipped_lines": skipped,
            "turns": [
                {
                    "key": turn.key,
                    "user_input": turn.user_input.uuid if turn.user_input else None,
                    "segments": [
                        {
                            "activity": [record.uuid for record in segment.activity_messages],
                            "text": segment.text_output.uuid,
                        }
                        for segment in turn.segments
                    ],
                    "trailing_activity": [record.uuid for record in turn.trailing_activity],
                    "complete": turn.is_complete,
                }
                for turn in turns
            ],
        }
    )
    return 0


def _build_state(
    config: TelemirrorConfig, bot: Bot, store: MappingDb, conversation_key: str, path: Path
) -> MessageSyncState:
    telegram = config.telegram
    if telegram.chat_id is None:
        raise ValueError("telegram.chat_id is not configured")
    retry = config.retry
    sink = TelegramSink(
        bot,
        telegram.chat_id,
        telegram.message_thread_id,
        telegram.parse_mode,
        max_retries=retry.max_retries,
        max_timeout=retry.max_timeout_s,
    )
    uploader = TelegramUploader(
        bot,
        telegram.chat_id,
        telegram.message_thread_id,
        max_retries=retry.max_retries,
        max_timeout=retry.max_timeout_s,
    )
    return MessageSyncState(
        conversation_key=conversation_key,
        session_id=path.stem,
        store=store,
        sink=sink,
        uploader=uploader,
    )


def _sync_options(config: TelemirrorConfig, *, infinite_retry: Optional[bool] = None) -> SyncOptions:
    return SyncOptions(
        char_limit=config.sync.char_limit,
        pacing_delay_ms=config.sync.pacing_delay_ms,
        infinite_retry=config.sync.infinite_retry if infinite_retry is None else infinite_retry,
        retry_base_delay_s=config.retry.infinite_base_delay_s,
        retry_max_delay_s=config.retry.infinite_max_delay_s,
    )


def _bot_token(config: TelemirrorConfig) -> Optional[str]:
    return config.telegram.bot_token or os.getenv(TOKEN_ENV)


async def _run_sync(args: argparse.Namespace, config: TelemirrorConfig, token: str) -> int:
    path = args.path
    store = MappingDb(config.database.path)
    await store.initialize()
    try:
        async with Bot(token) as bot:
            state = _build_state(config, bot, store, args.conversation, path)
            offset = args.from_offset if args.from_offset is not None else await store.get_offset(args.conversation)

            def on_progress(done: int, total: int, uuid: str) -> None:
                logger.info("Synced %d/%d (%s)", done, total, uuid[:8])

            options = _sync_options(config, infinite_retry=args.infinite_retry or None)
            options.on_progress = on_progress
            result = await sync_messages_from_offset(state, path, offset, options)
            if result.all_succeeded and not result.was_aborted:
                await store.set_offset(args.conversation, result.new_offset)
            _print_json(asdict(result))
            return 0 if result.all_succeeded else 1
    finally:
        await store.close()


async def _run_watch(args: argparse.Namespace, config: TelemirrorConfig, token: str) -> int:
    path = args.path
    store = MappingDb(config.database.path)
    await store.initialize()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    watchers = SessionWatcher(store)
    try:
        async with Bot(token) as bot:
            state = _build_state(config, bot, store, args.conversation, path)
            await watchers.start_watching(
                state,
                path,
                from_offset=args.from_offset,
                update_rate=config.watch.update_rate_s,
                options=_sync_options(config),
            )
            await stop.wait()
            await watchers.stop_all()
    finally:
        await store.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="telemirror", description="Mirror agent session logs into Telegram.")
    parser.add_argument("--config", type=Path, default=None, help="Path to telemirror.yml.")
    parser.add_argument("--log-level", default=None, help="Override log level (DEBUG, INFO, ...).")
    sub = parser.add_subparsers(dest="command", required=True)

    events = sub.add_parser("events", help="Print reconstructed events as JSON.")
    events.add_argument("path")
    events.add_argument("--follow", action="store_true", help="Keep printing events as the log grows.")
    events.set_defaults(func=_cmd_events)

    activity = sub.add_parser("activity", help="Print the activity log as JSON.")
    activity.add_argument("path")
    activity.add_argument("--in-progress", action="store_true", help="Render previews as live (rolling tail).")
    activity.add_argument("--preserve-tail", action="store_true", help="Show conclusions of long content.")
    activity.set_defaults(func=_cmd_activity)

    turns = sub.add_parser("turns", help="Print turn grouping as JSON.")
    turns.add_argument("path")
    turns.set_defaults(func=_cmd_turns)

    for cmd in (events, activity, turns):
        cmd.add_argument("--cwd", default=None, help="Treat PATH as a session id of this working directory.")

    for name, help_text in (("sync", "Mirror undelivered records once."), ("watch", "Mirror continuously.")):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("path")
        cmd.add_argument("--cwd", default=None, help="Treat PATH as a session id of this working directory.")
        cmd.add_argument("--conversation", required=True, help="Conversation key for stored state.")
        cmd.add_argument("--from-offset", type=int, default=None, help="Start offset (default: stored offset).")
        if name == "sync":
            cmd.add_argument("--infinite-retry", action="store_true", help="Retry deliveries until they succeed.")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = get_config(args.config)
    setup_logging(args.log_level or config.logging.level)
    args.path = _resolve_path(args, config)

    if args.command == "events" and args.follow:
        return asyncio.run(_follow_events(args.path, config.watch.poll_interval_s))
    if args.command in ("events", "activity", "turns"):
        return int(args.func(args))

    token = _bot_token(config)
    if not token:
        logger.error("Missing Telegram bot token (telegram.bot_token or $%s)", TOKEN_ENV)
        return 2

    runner = _run_sync if args.command == "sync" else _run_watch
    try:
        return asyncio.run(runner(args, config, token))
    except ValueError as e:
        logger.error("%s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
