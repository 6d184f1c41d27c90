"""Durable ledger sweep queue helpers (Redis/RQ)."""

from __future__ import annotations

import re

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


SWEEP_QUEUE_NAME = "ledger_sweeps"


def _job_id(*parts: str) -> str:
    return "-".join(re.sub(r"[^A-Za-z0-9_]", "_", str(part)) for part in parts)


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_sweep_queue() -> Queue:
    return Queue(
        name=SWEEP_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=900,
    )


def enqueue_expiration_sweep() -> Job:
    """Enqueue one expiration sweep across all users."""
    queue = get_sweep_queue()
    return queue.enqueue(
        "services.token_sweepers.run_expiration_sweep_job",
        retry=Retry(max=3, interval=[15, 60, 180]),
        job_timeout=900,
        result_ttl=86400,
        failure_ttl=86400,
    )


def enqueue_rollover(user_id: str, from_period: str, to_period: str) -> Job:
    """Enqueue a user's period rollover; the job id dedupes repeated requests."""
    queue = get_sweep_queue()
    return queue.enqueue(
        "services.token_sweepers.run_rollover_job",
        user_id,
        from_period,
        to_period,
        job_id=_job_id("rollover", user_id, from_period, to_period),
        retry=Retry(max=3, interval=[10, 30, 120]),
        job_timeout=900,
        result_ttl=86400,
        failure_ttl=86400,
    )
