"""Durable billing job queue helpers (Redis/RQ)."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings
from database import async_session_maker
from services.ledger_store import LedgerStore, UsageEventRecord


BILLING_QUEUE_NAME = "billing_jobs"

logger = logging.getLogger(__name__)


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL, socket_connect_timeout=2, socket_timeout=2)


def get_billing_queue() -> Queue:
    """Return the configured billing queue."""
    return Queue(
        name=BILLING_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=120,
    )


def usage_event_payload(event: UsageEventRecord) -> Dict[str, Any]:
    created_at = event.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return {
        "id": event.id,
        "user_id": event.user_id,
        "model_id": event.model_id,
        "credits_used": event.credits_used,
        "tokens_used": event.tokens_used,
        "request_type": event.request_type,
        "created_at": created_at.isoformat(),
    }


def enqueue_usage_event_replay(event: UsageEventRecord) -> Job:
    """Queue a usage-log append that failed after its deduction committed."""
    queue = get_billing_queue()
    return queue.enqueue(
        "services.billing_queue.replay_usage_event_job",
        usage_event_payload(event),
        job_id=f"usage-event:{event.id}",
        retry=Retry(max=5, interval=[10, 30, 120, 600, 1800]),
        job_timeout=120,
        result_ttl=86400,
        failure_ttl=7 * 86400,
    )


async def replay_usage_event_async(payload: Dict[str, Any]) -> UsageEventRecord:
    event = UsageEventRecord(
        id=str(payload["id"]),
        user_id=str(payload["user_id"]),
        model_id=str(payload["model_id"]),
        credits_used=int(payload["credits_used"]),
        tokens_used=int(payload.get("tokens_used") or 0),
        request_type=str(payload.get("request_type") or "chat"),
        created_at=datetime.fromisoformat(str(payload["created_at"])),
    )
    store = LedgerStore(async_session_maker, timeout_seconds=settings.LEDGER_OPERATION_TIMEOUT_SECONDS)
    stored = await store.append_usage_event(event)
    logger.info("Replayed usage event %s for user %s", stored.id, stored.user_id)
    return stored


def replay_usage_event_job(payload: Dict[str, Any]) -> None:
    """RQ worker entrypoint for usage-log replays. Safe to run more than once."""
    asyncio.run(replay_usage_event_async(payload))
