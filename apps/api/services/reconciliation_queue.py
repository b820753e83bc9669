"""Durable reconciliation retry queue helpers (Redis/RQ)."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from redis import Redis
from rq import Queue, Retry
from rq.job import Job
from sqlalchemy import select

from config import settings
from database import async_session_maker
from models.payment_intent import PaymentIntent


logger = logging.getLogger(__name__)

RECONCILIATION_QUEUE_NAME = "reconciliation_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_reconciliation_queue() -> Queue:
    """Return the configured reconciliation queue."""
    return Queue(
        name=RECONCILIATION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=300,
    )


def enqueue_reconciliation_retry(intent_id: str) -> Job:
    """Enqueue a ledger re-application for a settled payment with retries."""
    queue = get_reconciliation_queue()
    return queue.enqueue(
        "services.payments.process_reconciliation_retry_job",
        intent_id,
        job_id=f"reconcile:{intent_id}",
        retry=Retry(max=3, interval=[30, 120, 600]),
        job_timeout=300,
        result_ttl=86400,
        failure_ttl=7 * 86400,
    )


async def recover_unapplied_settlements(max_age_minutes: int = 5) -> int:
    """Flag completed payments whose ledger credit never landed and queue them again."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(max_age_minutes, 1))
    async with async_session_maker() as db:
        result = await db.execute(
            select(PaymentIntent).where(
                PaymentIntent.status == "completed",
                PaymentIntent.settled_transaction_id.is_(None),
                PaymentIntent.completed_at < cutoff,
            )
        )
        intents = result.scalars().all()
        for intent in intents:
            intent.needs_reconciliation = True
            intent.reconciliation_error = intent.reconciliation_error or "Settlement was interrupted before the ledger credit."
        if intents:
            await db.commit()

    if settings.RECONCILIATION_RETRY_ENABLED:
        for intent in intents:
            try:
                enqueue_reconciliation_retry(intent.id)
            except Exception as exc:
                logger.warning("reconciliation_enqueue_failed intent=%s: %s", intent.id, exc)
    return len(intents)
