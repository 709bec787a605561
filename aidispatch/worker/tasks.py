"""ARQ job definitions."""

import uuid
from typing import Any
from urllib.parse import urlparse

from arq import create_pool
from arq.connections import RedisSettings

from aidispatch.core.config import get_settings
from aidispatch.core.logging import get_logger

log = get_logger(__name__)


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    generation_job_id: str,
    coro,
) -> None:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        await coro
    except Exception as e:
        from aidispatch.models.failed_job import FailedJob

        fid = job_id or str(uuid.uuid4())
        await FailedJob(
            job_name=job_name,
            job_id=fid,
            generation_job_id=generation_job_id,
            error_type=type(e).__name__,
            reason=str(e)[:2000],
        ).insert()
        log.exception("job_failed", job=job_name, job_id=fid, generation_job_id=generation_job_id, reason=str(e))
        raise


async def dispatch_generation(ctx: dict[str, Any], generation_job_id: str) -> None:
    """Run a queued GenerationJob through the dispatcher."""
    from aidispatch.services.generation_jobs import run_job

    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None

    async def _run() -> None:
        log.info("job_start", job="dispatch_generation", generation_job_id=generation_job_id)
        job = await run_job(generation_job_id)
        log.info("job_done", job="dispatch_generation", generation_job_id=generation_job_id, status=job.status)

    await _run_with_dlq("dispatch_generation", job_id, generation_job_id, _run())


async def startup(ctx: dict) -> None:
    from aidispatch.core.logging import configure_logging
    from aidispatch.db.init import init_db

    configure_logging(debug=get_settings().debug)
    ctx["mongo"] = await init_db()


async def shutdown(ctx: dict) -> None:
    from aidispatch.services.dispatcher import get_dispatcher

    # let abandoned dispatches finish their refunds before the loop closes
    await get_dispatcher().drain()
    client = ctx.get("mongo")
    if client is not None:
        client.close()


def get_redis_settings() -> RedisSettings:
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )


async def enqueue_generation_job(generation_job_id: str) -> None:
    """Enqueue dispatch_generation (call from API)."""
    redis = await create_pool(get_redis_settings())
    try:
        await redis.enqueue_job("dispatch_generation", generation_job_id, _job_id=f"generation:{generation_job_id}")
    finally:
        await redis.close()
