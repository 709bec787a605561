"""Queued generation: persist the request, run it on the worker, store the response."""

from datetime import datetime, timezone

from beanie import PydanticObjectId
from bson import ObjectId

from aidispatch.core.exceptions import NotFoundError
from aidispatch.core.logging import get_logger
from aidispatch.models.generation_job import GenerationJob
from aidispatch.services.dispatcher import DispatchRequest, ProviderDispatcher, get_dispatcher

log = get_logger(__name__)


async def create_job(request: DispatchRequest) -> GenerationJob:
    job = GenerationJob(
        user_id=request.user_id,
        provider=request.provider,
        payload=request.payload.model_dump(),
        options=request.options.model_dump(),
    )
    await job.insert()
    log.info("generation_job_created", job_id=str(job.id), user_id=request.user_id, provider=request.provider)
    return job


async def get_job(user_id: str, job_id: str) -> GenerationJob:
    if not ObjectId.is_valid(job_id):
        raise NotFoundError("Job not found")
    job = await GenerationJob.get(PydanticObjectId(job_id))
    if not job or job.user_id != user_id:
        raise NotFoundError("Job not found")
    return job


def job_to_public(job: GenerationJob) -> dict:
    return {
        "id": str(job.id),
        "status": job.status,
        "provider": job.provider,
        "response": job.response,
        "error": job.error,
        "created_at": job.created_at.isoformat(),
        "finished_at": job.finished_at.isoformat() if job.finished_at else None,
    }


async def run_job(job_id: str, dispatcher: ProviderDispatcher | None = None) -> GenerationJob:
    """Dispatch a queued job once. A job that already finished is left untouched."""
    job = await GenerationJob.get(PydanticObjectId(job_id))
    if not job:
        raise NotFoundError(f"Generation job {job_id} not found")
    if job.status in ("succeeded", "failed"):
        log.info("generation_job_already_finished", job_id=job_id, status=job.status)
        return job

    job.status = "running"
    job.attempts += 1
    job.started_at = datetime.now(timezone.utc)
    await job.save()

    request = DispatchRequest(
        user_id=job.user_id,
        provider=job.provider,
        payload=job.payload,
        options=job.options,
    )
    response = await (dispatcher or get_dispatcher()).dispatch(request)
    job.response = response.model_dump(mode="json")
    job.status = "succeeded" if response.success else "failed"
    job.error = response.error_message
    job.finished_at = datetime.now(timezone.utc)
    await job.save()
    log.info("generation_job_finished", job_id=job_id, status=job.status, provider_used=response.provider_used)
    return job
