from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from aidispatch.deps import get_current_user, get_provider_dispatcher
from aidispatch.models.user import User
from aidispatch.providers.base import GenerationPayload
from aidispatch.services import generation_jobs as jobs_service
from aidispatch.services.dispatcher import DispatchOptions, DispatchRequest, ProviderDispatcher, raise_for_failure

router = APIRouter()


class GenerateRequest(BaseModel):
    provider: str | None = Field(default=None, description="Provider id or legacy alias; default provider when omitted")
    prompt: str = Field(min_length=1)
    system_prompt: str | None = None
    max_tokens: int | None = Field(default=None, ge=1)
    temperature: float | None = Field(default=None, ge=0, le=2)
    allow_fallback: bool = True

    def to_dispatch(self, user_id: str, default_provider: str) -> DispatchRequest:
        return DispatchRequest(
            user_id=user_id,
            provider=self.provider or default_provider,
            payload=GenerationPayload(
                prompt=self.prompt,
                system_prompt=self.system_prompt,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            ),
            options=DispatchOptions(allow_fallback=self.allow_fallback),
        )


@router.post("")
async def generate(
    body: GenerateRequest,
    user: User = Depends(get_current_user),
    dispatcher: ProviderDispatcher = Depends(get_provider_dispatcher),
):
    """Synchronous dispatch; failures come back as the matching error response."""
    request = body.to_dispatch(str(user.id), dispatcher.settings.default_provider)
    response = raise_for_failure(await dispatcher.dispatch(request))
    return response.model_dump(mode="json")


@router.post("/jobs", status_code=202)
async def create_generation_job(
    body: GenerateRequest,
    user: User = Depends(get_current_user),
    dispatcher: ProviderDispatcher = Depends(get_provider_dispatcher),
):
    """Queue a dispatch on the worker; poll GET /jobs/{id} for the outcome."""
    from aidispatch.worker.tasks import enqueue_generation_job

    request = body.to_dispatch(str(user.id), dispatcher.settings.default_provider)
    # reject unknown providers before anything is queued
    dispatcher.registry.resolve(request.provider)
    job = await jobs_service.create_job(request)
    await enqueue_generation_job(str(job.id))
    return jobs_service.job_to_public(job)


@router.get("/jobs/{job_id}")
async def get_generation_job(job_id: str, user: User = Depends(get_current_user)):
    job = await jobs_service.get_job(str(user.id), job_id)
    return jobs_service.job_to_public(job)
