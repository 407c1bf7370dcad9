"""
CLI tool to re-send an agent call recording whose delivery failed.

Failed deliveries are not retried automatically; the call stays in the
registry marked ``delivery_failed``. This queues a fresh delivery chain
for it.

Usage:
    python scripts/retry_delivery.py <call_id> [--delay 0]
    python scripts/retry_delivery.py --failed

Examples:
    # Retry one call
    python scripts/retry_delivery.py 1f0c7a1e-5d2b-4b8e-9a43-2f6f0d1c9e77

    # Retry every call currently marked as failed
    python scripts/retry_delivery.py --failed
"""

import argparse
import asyncio
import os
import sys

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from dotenv import load_dotenv
load_dotenv(".env.local")

import httpx

from sentinel.config import get_settings
from sentinel.errors import TaskEnqueueError
from sentinel.logging_config import setup_logging, get_logger
from sentinel.schemas.task import RecordingDeliveryTask, ScamDetails, TaskType
from sentinel.services.registry import CallRegistry
from sentinel.services.task_dispatcher import TaskDispatcher
from sentinel.store import close_redis, get_redis

setup_logging()
logger = get_logger(__name__)


async def retry_delivery(call_ids: list[str], all_failed: bool = False, delay: int = 0) -> int:
    """Queue a delivery task per call; returns how many were queued."""
    settings = get_settings()
    registry = CallRegistry(get_redis(), settings.active_call_ttl_seconds)
    queued = 0

    async with httpx.AsyncClient(timeout=settings.collaborator_timeout_seconds) as http:
        dispatcher = TaskDispatcher(http, settings)
        try:
            if all_failed:
                call_ids = [c.call_id for c in await registry.list_all() if c.delivery_failed]
                print(f"Found {len(call_ids)} call(s) with failed delivery")

            for call_id in call_ids:
                record = await registry.get(call_id)
                if record is None:
                    print(f"{call_id}: not in the registry (expired or already delivered), skipping")
                    continue

                task = RecordingDeliveryTask(
                    call_id=call_id,
                    assistant_name=record.agent_name,
                    scam_details=ScamDetails(
                        impersonated_company=record.company if record.company != "Unknown" else None,
                        scam_type=record.scam_type,
                    ),
                )
                try:
                    result = await dispatcher.enqueue(TaskType.DELIVER_RECORDING, task, delay_seconds=delay)
                except TaskEnqueueError as e:
                    print(f"{call_id}: enqueue failed: {e}")
                    continue

                await registry.update(call_id, delivery_failed=False, delivery_queued=True)
                print(f"{call_id}: delivery queued (message {result.message_id})")
                queued += 1
        finally:
            await close_redis()

    return queued


def main() -> None:
    parser = argparse.ArgumentParser(description="Re-queue recording delivery for agent calls")
    parser.add_argument("call_ids", nargs="*", help="Agent call IDs to retry")
    parser.add_argument("--failed", action="store_true", help="Retry every call marked delivery_failed")
    parser.add_argument("--delay", type=int, default=0, help="Seconds before the first attempt")

    args = parser.parse_args()

    if not args.call_ids and not args.failed:
        parser.error("Provide call IDs or --failed")

    queued = asyncio.run(retry_delivery(args.call_ids, all_failed=args.failed, delay=args.delay))
    print(f"Queued {queued} delivery task(s)")


if __name__ == "__main__":
    main()
