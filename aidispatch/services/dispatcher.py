"""Provider dispatch: pick who pays, call the provider, settle the ledger.

Per request the dispatcher walks

    resolve_provider -> resolve_funding -> invoke -> settle
                              ^               |
                              +-- fallback <--+

(wired as a LangGraph in ``aidispatch.workflows.dispatch_agent``). Funding is
decided by two separate functions, ``resolve_self_funding`` and
``resolve_credit_funding``. By default credits are charged only once the
provider has answered; with ``dispatch_preauthorize`` the charge is taken
before invoking and refunded before any fallback or on failure. Either way a
request leaves at most one net debit behind, and none at all when it fails.
"""

import asyncio
from decimal import Decimal
from functools import lru_cache
from typing import Any, Callable, Literal
from uuid import uuid4

from pydantic import BaseModel, Field
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from aidispatch.core.config import Settings, get_settings
from aidispatch.core.exceptions import (
    AllProvidersExhaustedError,
    AppError,
    DispatchTimeoutError,
    InsufficientCreditsError,
    LedgerWriteConflict,
    UnknownProviderError,
)
from aidispatch.core.logging import bind_dispatch_context, get_logger
from aidispatch.ledger.entries import ZERO, LedgerEntry
from aidispatch.providers.base import (
    Completion,
    Credential,
    GenerationPayload,
    ProviderClient,
    ProviderError,
    RateLimitedError,
    get_provider_client,
)
from aidispatch.providers.registry import ProviderDescriptor, ProviderRegistry, get_registry
from aidispatch.services.credentials import CredentialResolver
from aidispatch.services.ledger import CreditLedger, get_credit_ledger

log = get_logger(__name__)

FundingSource = Literal["self_funded", "credit_funded"]
ErrorKind = Literal[
    "unknown_provider",
    "insufficient_credits",
    "all_providers_exhausted",
    "dispatch_timeout",
]


class DispatchOptions(BaseModel):
    allow_fallback: bool = True
    timeout_seconds: float | None = Field(default=None, gt=0)


class DispatchRequest(BaseModel):
    user_id: str
    provider: str
    payload: GenerationPayload
    options: DispatchOptions = Field(default_factory=DispatchOptions)


class AttemptRecord(BaseModel):
    provider: str
    funding_source: FundingSource | None = None
    outcome: str  # success, rate_limited, unavailable, rejected, unaffordable, requires_credit
    message: str | None = None


class DispatchResponse(BaseModel):
    dispatch_id: str
    success: bool
    provider_requested: str
    provider_used: str | None = None
    model: str | None = None
    tokens_used: int | None = None
    cost: Decimal | None = None
    funding_source: FundingSource | None = None
    transaction_id: str | None = None
    result: str | None = None
    usage: dict[str, Any] | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    error_details: dict[str, Any] = Field(default_factory=dict)
    attempts: list[AttemptRecord] = Field(default_factory=list)


class FundingDecision(BaseModel):
    source: FundingSource
    credential: Credential | None = None
    cost: Decimal = ZERO


async def resolve_self_funding(
    credentials: CredentialResolver,
    user_id: str,
    descriptor: ProviderDescriptor,
) -> FundingDecision | None:
    """Self-funded when the user holds a usable key for the descriptor's vendor."""
    credential = await credentials.get_credential(user_id, descriptor.vendor)
    if credential is None:
        return None
    return FundingDecision(source="self_funded", credential=credential)


async def resolve_credit_funding(
    ledger: CreditLedger,
    user_id: str,
    descriptor: ProviderDescriptor,
) -> FundingDecision:
    """Credit-funded when the balance covers the descriptor's cost; raises InsufficientCreditsError otherwise."""
    if descriptor.cost > 0:
        balance = await ledger.get_balance(user_id)
        if balance < descriptor.cost:
            raise InsufficientCreditsError(descriptor.cost, balance, details={"provider": descriptor.id})
    return FundingDecision(source="credit_funded", cost=descriptor.cost)


class DispatchRun:
    """Side effects of one dispatch, shared between graph nodes and the timeout path."""

    def __init__(self, request: DispatchRequest, timeout: float):
        self.id = uuid4().hex
        self.request = request
        self.timeout = timeout
        self.attempts: list[AttemptRecord] = []
        self.funding_source: FundingSource | None = None
        self.started_self_funded: bool | None = None
        self.charge: LedgerEntry | None = None
        self.abandoned = False

    def record(self, descriptor: ProviderDescriptor, outcome: str, message: str | None = None) -> None:
        self.attempts.append(
            AttemptRecord(
                provider=descriptor.id,
                funding_source=self.funding_source,
                outcome=outcome,
                message=message,
            )
        )


class ProviderDispatcher:
    def __init__(
        self,
        registry: ProviderRegistry | None = None,
        ledger: CreditLedger | None = None,
        credentials: CredentialResolver | None = None,
        client_factory: Callable[[str], ProviderClient] | None = None,
        settings: Settings | None = None,
        fallback_chain: list[str] | None = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry or get_registry()
        self.ledger = ledger or get_credit_ledger()
        self.credentials = credentials or CredentialResolver(settings=self.settings)
        self.client_factory = client_factory or get_provider_client
        self.fallback_ids = self.settings.fallback_chain if fallback_chain is None else fallback_chain
        self._background: set[asyncio.Task] = set()

    @property
    def preauthorize(self) -> bool:
        return self.settings.dispatch_preauthorize

    async def dispatch(self, request: DispatchRequest) -> DispatchResponse:
        """Run one request end to end. Domain failures come back as an unsuccessful response."""
        timeout = request.options.timeout_seconds or self.settings.dispatch_timeout_seconds
        run = DispatchRun(request, timeout)
        # The run lives in its own task so a caller timeout or cancellation never
        # interrupts a provider call or a ledger write halfway.
        task = asyncio.create_task(self._execute(run))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            if task.done() and not task.cancelled() and task.exception() is None:
                return task.result()
            run.abandoned = True
            log.warning("dispatch_timeout", dispatch_id=run.id, user_id=request.user_id, timeout=timeout)
            return self._failure(
                run,
                "dispatch_timeout",
                f"AI request timed out after {timeout:g}s",
                {"timeout_seconds": timeout},
            )
        except asyncio.CancelledError:
            run.abandoned = True
            log.warning("dispatch_abandoned", dispatch_id=run.id, user_id=request.user_id)
            raise

    async def drain(self) -> None:
        """Wait for abandoned runs to finish settling (shutdown, tests)."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def _execute(self, run: DispatchRun) -> DispatchResponse:
        from aidispatch.workflows.dispatch_agent import run_dispatch_graph

        bind_dispatch_context(dispatch_id=run.id, user_id=run.request.user_id)
        try:
            state = await run_dispatch_graph(self, run)
        except LedgerWriteConflict as e:
            log.error("dispatch_ledger_conflict", seq=e.seq)
            await self._release_charge(run, "dispatch_error")
            return self._failure(
                run,
                "dispatch_timeout",
                "Credit ledger busy, request not completed",
                {"timeout_seconds": run.timeout},
            )
        except BaseException:
            await self._release_charge(run, "dispatch_error")
            raise
        response = self._response(run, state)
        if run.abandoned or not response.success:
            await self._release_charge(run, "dispatch_abandoned" if run.abandoned else "dispatch_failed")
        if run.abandoned:
            log.info("dispatch_abandoned_settled", success=response.success, refunded=run.charge is None)
        return response

    # Graph nodes. Each returns the state update plus the next ``route``.

    async def resolve_provider(self, run: DispatchRun, state: dict) -> dict:
        try:
            first = self.registry.resolve(run.request.provider)
        except UnknownProviderError as e:
            log.info("dispatch_unknown_provider", provider=run.request.provider)
            return {"route": "end", "error_kind": "unknown_provider", "error_message": e.message}
        if run.request.options.allow_fallback:
            chain = self.registry.fallback_chain(first, self.fallback_ids)
        else:
            chain = [first]
        return {"route": "resolve_funding", "chain": chain, "index": 0}

    async def resolve_funding(self, run: DispatchRun, state: dict) -> dict:
        descriptor: ProviderDescriptor = state["chain"][state["index"]]
        user_id = run.request.user_id
        is_first = state["index"] == 0

        funding = await resolve_self_funding(self.credentials, user_id, descriptor)
        if run.abandoned:
            return self._abandoned(run)
        if funding is None:
            if run.started_self_funded and descriptor.cost > 0:
                # a self-funded request never falls back onto the user's credits
                run.record(descriptor, "requires_credit")
                return {"route": "fallback"}
            try:
                funding = await resolve_credit_funding(self.ledger, user_id, descriptor)
                if run.abandoned:
                    return self._abandoned(run)
                if self.preauthorize and funding.cost > 0:
                    run.charge = await self._charge(run, descriptor)
            except InsufficientCreditsError as e:
                run.funding_source = "credit_funded"
                if is_first:
                    return {
                        "route": "end",
                        "error_kind": "insufficient_credits",
                        "error_message": e.message,
                        "error_details": e.details,
                    }
                run.record(descriptor, "unaffordable", e.message)
                return {"route": "fallback"}

        if run.started_self_funded is None:
            run.started_self_funded = funding.source == "self_funded"
        run.funding_source = funding.source
        return {"route": "invoke", "funding": funding}

    async def invoke(self, run: DispatchRun, state: dict) -> dict:
        descriptor: ProviderDescriptor = state["chain"][state["index"]]
        funding: FundingDecision = state["funding"]
        credential = funding.credential or self.credentials.system_credential(descriptor.vendor)
        if run.abandoned:
            return self._abandoned(run)

        try:
            client = self.client_factory(descriptor.vendor)
            completion = await self._invoke_with_retry(client, descriptor, credential, run.request.payload)
        except ProviderError as e:
            log.warning(
                "provider_failed",
                provider=descriptor.id,
                kind=e.kind,
                status_code=e.status_code,
                error=e.message,
            )
            run.record(descriptor, e.kind, e.message)
            # never carry a charge into the next provider
            await self._release_charge(run, "provider_failed")
            return {"route": "fallback"}

        run.record(descriptor, "success")
        if credential.source == "user":
            try:
                await self.credentials.mark_used(credential)
            except Exception as e:
                log.warning("api_token_mark_used_failed", token_id=credential.token_id, error=str(e))
        return {"route": "settle", "completion": completion}

    async def fallback(self, run: DispatchRun, state: dict) -> dict:
        chain: list[ProviderDescriptor] = state["chain"]
        failed = chain[state["index"]]
        index = state["index"] + 1
        if run.abandoned:
            # only the in-flight call may finish once the caller has gone
            log.info("dispatch_fallback_skipped", from_provider=failed.id)
            return self._abandoned(run)
        if index >= len(chain):
            log.warning("dispatch_exhausted", attempts=len(run.attempts))
            return {
                "route": "end",
                "index": index,
                "error_kind": "all_providers_exhausted",
                "error_message": "All AI providers failed",
                "error_details": {"tried": [a.provider for a in run.attempts]},
            }
        log.info("dispatch_fallback", from_provider=failed.id, to_provider=chain[index].id)
        return {"route": "resolve_funding", "index": index, "funding": None}

    async def settle(self, run: DispatchRun, state: dict) -> dict:
        descriptor: ProviderDescriptor = state["chain"][state["index"]]
        funding: FundingDecision = state["funding"]
        completion: Completion = state["completion"]
        if funding.source == "self_funded" or funding.cost == 0:
            return {"route": "end", "settled": True}
        if run.charge is not None:
            return {"route": "end", "settled": True}
        if run.abandoned:
            # caller is gone; do not bill for an answer nobody receives
            return self._abandoned(run)
        try:
            run.charge = await self._charge(run, descriptor, completion)
        except InsufficientCreditsError as e:
            log.warning("settle_insufficient_credits", provider=descriptor.id, required=str(e.required), available=str(e.available))
            return {
                "route": "end",
                "settled": False,
                "error_kind": "insufficient_credits",
                "error_message": e.message,
                "error_details": e.details,
            }
        return {"route": "end", "settled": True}

    async def _invoke_with_retry(
        self,
        client: ProviderClient,
        descriptor: ProviderDescriptor,
        credential: Credential,
        payload: GenerationPayload,
    ) -> Completion:
        backoff = wait_exponential(
            multiplier=self.settings.rate_limit_base_delay,
            max=self.settings.rate_limit_max_delay,
        )

        def _wait(state: RetryCallState) -> float:
            # honour the vendor's Retry-After when it asks for longer than the backoff
            error = state.outcome.exception() if state.outcome else None
            retry_after = getattr(error, "retry_after", None) or 0
            return max(backoff(state), min(retry_after, self.settings.rate_limit_max_retry_after))

        def _log_retry(state: RetryCallState) -> None:
            log.info("provider_rate_limited_retry", provider=descriptor.id, attempt=state.attempt_number)

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(RateLimitedError),
            stop=stop_after_attempt(max(1, self.settings.rate_limit_max_attempts)),
            wait=_wait,
            before_sleep=_log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await client.invoke(descriptor.model, credential, payload)
        raise AssertionError("unreachable")

    def _abandoned(self, run: DispatchRun) -> dict:
        return {
            "route": "end",
            "settled": False,
            "error_kind": "dispatch_timeout",
            "error_message": "Request abandoned before completion",
            "error_details": {"timeout_seconds": run.timeout},
        }

    async def _charge(
        self,
        run: DispatchRun,
        descriptor: ProviderDescriptor,
        completion: Completion | None = None,
    ) -> LedgerEntry:
        return await self.ledger.reserve_and_charge(
            run.request.user_id,
            descriptor.cost,
            provider=descriptor.id,
            model=completion.model if completion else descriptor.model,
            tokens_used=completion.tokens_used if completion else None,
            description=f"AI generation via {descriptor.display_name}",
            metadata={"dispatch_id": run.id, "provider_requested": run.request.provider},
            retry_window=run.timeout,
        )

    async def _release_charge(self, run: DispatchRun, reason: str) -> None:
        if run.charge is None:
            return
        await self.ledger.refund(
            run.charge.id,
            reason=reason,
            retry_window=max(run.timeout, self.settings.ledger_refund_window),
        )
        run.charge = None

    def _response(self, run: DispatchRun, state: dict) -> DispatchResponse:
        if state.get("settled"):
            descriptor: ProviderDescriptor = state["chain"][state["index"]]
            funding: FundingDecision = state["funding"]
            completion: Completion = state["completion"]
            response = DispatchResponse(
                dispatch_id=run.id,
                success=True,
                provider_requested=run.request.provider,
                provider_used=descriptor.id,
                model=completion.model,
                tokens_used=completion.tokens_used,
                cost=funding.cost,
                funding_source=funding.source,
                transaction_id=run.charge.id if run.charge else None,
                result=completion.text,
                usage=completion.usage,
                attempts=list(run.attempts),
            )
            log.info(
                "dispatch_settled",
                provider=descriptor.id,
                funding_source=funding.source,
                cost=str(funding.cost),
                attempts=len(run.attempts),
            )
            return response
        return self._failure(
            run,
            state.get("error_kind") or "all_providers_exhausted",
            state.get("error_message") or "AI request failed",
            state.get("error_details") or {},
        )

    def _failure(self, run: DispatchRun, kind: ErrorKind, message: str, details: dict[str, Any]) -> DispatchResponse:
        return DispatchResponse(
            dispatch_id=run.id,
            success=False,
            provider_requested=run.request.provider,
            funding_source=run.funding_source,
            error_kind=kind,
            error_message=message,
            error_details={**details, "funding_source": run.funding_source},
            attempts=list(run.attempts),
        )


def raise_for_failure(response: DispatchResponse) -> DispatchResponse:
    """Turn an unsuccessful response into the matching AppError; pass successes through."""
    if response.success:
        return response
    details = {
        **response.error_details,
        "dispatch_id": response.dispatch_id,
        "funding_source": response.funding_source,
        "attempts": [a.model_dump() for a in response.attempts],
    }
    message = response.error_message or "AI request failed"
    if response.error_kind == "unknown_provider":
        raise UnknownProviderError(response.provider_requested, details=details)
    if response.error_kind == "insufficient_credits":
        raise InsufficientCreditsError(
            Decimal(str(response.error_details.get("required", "0"))),
            Decimal(str(response.error_details.get("available", "0"))),
            details=details,
        )
    if response.error_kind == "dispatch_timeout":
        raise DispatchTimeoutError(message, details=details)
    if response.error_kind == "all_providers_exhausted":
        raise AllProvidersExhaustedError(message, details=details)
    raise AppError(message, code="DISPATCH_FAILED", details=details)


@lru_cache
def get_dispatcher() -> ProviderDispatcher:
    return ProviderDispatcher()
