"""
Command line interface for a Redis Stream queue.

Usage:
    stream-queue send "hello" --delay 30 --meta source=cli
    stream-queue consume --max 10
    stream-queue scheduler --runtime 60
    stream-queue status
    stream-queue cleanup --max-age 3600
"""

import argparse
import asyncio
import json
import sys
from typing import Dict, List, Optional

from stream_queue.core.config import Settings, get_settings
from stream_queue.core.exceptions import StreamQueueError
from stream_queue.core.logging import setup_logging
from stream_queue.schemas.message import Message
from stream_queue.services.producer import Producer
from stream_queue.services.stream_queue import StreamQueue, create_queue
from stream_queue.workers.consumer import Consumer
from stream_queue.workers.scheduler import DelayedScheduler


def parse_metadata(pairs: List[str]) -> Dict[str, str]:
    metadata = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"Metadata must be key=value, got '{pair}'")
        metadata[key] = value
    return metadata


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stream-queue", description="Redis Stream queue tools")
    parser.add_argument("--redis-url", help="Redis URL (default: REDIS_URL)")
    parser.add_argument("--stream", help="Stream name (default: STREAM_NAME)")
    parser.add_argument("--group", help="Consumer group (default: CONSUMER_GROUP)")
    parser.add_argument("--consumer", help="Consumer name (default: CONSUMER_NAME or consumer_<pid>)")
    parser.add_argument("--log-level", help="Log level (default: LOG_LEVEL)")

    sub = parser.add_subparsers(dest="command", required=True)

    send = sub.add_parser("send", help="Send a message")
    send.add_argument("message")
    send.add_argument("--json", action="store_true", help="Parse the message as JSON")
    send.add_argument("--delay", type=float, default=0, help="Delay in seconds")
    send.add_argument("--meta", action="append", default=[], metavar="KEY=VALUE")

    consume = sub.add_parser("consume", help="Consume and acknowledge messages")
    consume.add_argument("--max", type=int, default=0, help="Stop after N messages (0 runs until stopped)")
    consume.add_argument("--position", help="Read from a position instead of claiming: 0, $ or a message id")

    scheduler = sub.add_parser("scheduler", help="Run the delayed message scheduler")
    scheduler.add_argument("--runtime", type=float, default=0, help="Stop after N seconds (0 runs until stopped)")
    scheduler.add_argument("--interval", type=float, help="Seconds between ticks")
    scheduler.add_argument("--once", action="store_true", help="Run a single tick and exit")

    sub.add_parser("status", help="Print queue status as JSON")

    cleanup = sub.add_parser("cleanup", help="Drop delayed tasks overdue for longer than max age")
    cleanup.add_argument("--max-age", type=float, help="Seconds (default: CLEANUP_MAX_AGE_SECONDS)")

    return parser


def _print_message(message: Message):
    print(json.dumps({
        "id": message.id,
        "message": message.message,
        "metadata": message.metadata,
        "attempts": message.attempts,
    }, ensure_ascii=False))
    return True


async def _send(queue: StreamQueue, args) -> int:
    payload = json.loads(args.message) if args.json else args.message
    message_id = await Producer(queue).send(payload, parse_metadata(args.meta), args.delay)
    print(message_id)
    return 0


async def _consume(queue: StreamQueue, args) -> int:
    if args.position is not None:
        message = await queue.consume(_print_message, args.position)
        return 0 if message is not None else 1

    consumer = Consumer(queue, _print_message)
    if args.max <= 0:
        await consumer.run()
        return 0
    while consumer.processed + consumer.failed < args.max:
        if await consumer.consume() is None:
            break
    return 0


async def _scheduler(queue: StreamQueue, args) -> int:
    scheduler = DelayedScheduler(queue, interval=args.interval)
    if args.once:
        print(await scheduler.tick())
        return 0
    await scheduler.run(runtime=args.runtime)
    return 0


async def _status(queue: StreamQueue, args) -> int:
    print(json.dumps(await queue.status(), indent=2, default=str))
    return 0


async def _cleanup(queue: StreamQueue, args, settings: Settings) -> int:
    max_age = args.max_age if args.max_age is not None else settings.CLEANUP_MAX_AGE_SECONDS
    print(await queue.delayed.cleanup_expired(max_age))
    return 0


async def run_command(args, settings: Settings) -> int:
    overrides = {}
    if args.stream:
        overrides["stream_name"] = args.stream
    if args.group:
        overrides["consumer_group"] = args.group
    if args.consumer:
        overrides["consumer_name"] = args.consumer

    queue = create_queue(settings, **overrides)
    try:
        if args.command == "send":
            return await _send(queue, args)
        if args.command == "consume":
            return await _consume(queue, args)
        if args.command == "scheduler":
            return await _scheduler(queue, args)
        if args.command == "status":
            return await _status(queue, args)
        return await _cleanup(queue, args, settings)
    finally:
        await queue.redis.disconnect()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    values = {}
    if args.redis_url:
        values["REDIS_URL"] = args.redis_url
    if args.log_level:
        values["LOG_LEVEL"] = args.log_level

    try:
        settings = get_settings(**values)
        setup_logging(settings.LOG_LEVEL, settings.LOG_FILE, settings.LOG_JSON)
        return asyncio.run(run_command(args, settings))
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
    except StreamQueueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
