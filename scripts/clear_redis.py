"""
Inspect or clear the Redis state.

Lists the active-call records and event replay logs; with ``--delete``
removes them. Useful after local testing leaves stale calls on the
dashboard.

Usage:
    python scripts/clear_redis.py            # list only
    python scripts/clear_redis.py --delete   # remove calls and event logs
    python scripts/clear_redis.py --delete --calls-only
"""

import argparse
import asyncio
import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from dotenv import load_dotenv
load_dotenv(".env.local")

from sentinel.logging_config import setup_logging, get_logger
from sentinel.services.event_bus import EVENT_LOG_KEY
from sentinel.services.registry import ACTIVE_CALL_PATTERN
from sentinel.store import close_redis, get_redis

setup_logging()
logger = get_logger(__name__)


async def clear_redis(delete: bool = False, calls_only: bool = False) -> None:
    redis = get_redis()
    patterns = [ACTIVE_CALL_PATTERN]
    if not calls_only:
        patterns.append(EVENT_LOG_KEY.format("*"))

    try:
        keys: list[str] = []
        for pattern in patterns:
            keys.extend([key async for key in redis.scan_iter(match=pattern, count=100)])

        if not keys:
            print("Nothing to clear")
            return

        for key in sorted(keys):
            ttl = await redis.ttl(key)
            print(f"{key}  (ttl {ttl}s)")

        if delete:
            removed = await redis.delete(*keys)
            logger.info("redis_keys_cleared", count=removed)
            print(f"Deleted {removed} key(s)")
        else:
            print(f"{len(keys)} key(s); re-run with --delete to remove them")
    finally:
        await close_redis()


def main() -> None:
    parser = argparse.ArgumentParser(description="List or clear SIP Sentinel Redis state")
    parser.add_argument("--delete", action="store_true", help="Delete the listed keys")
    parser.add_argument("--calls-only", action="store_true", help="Leave the event replay logs alone")

    args = parser.parse_args()
    asyncio.run(clear_redis(delete=args.delete, calls_only=args.calls_only))


if __name__ == "__main__":
    main()
