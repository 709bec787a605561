"""Dispatch flow: resolve provider, fund, invoke with fallback, settle."""

from typing import TYPE_CHECKING, Any, TypedDict

from langgraph.graph import END, START, StateGraph

if TYPE_CHECKING:
    from aidispatch.services.dispatcher import DispatchRun, ProviderDispatcher


class DispatchState(TypedDict, total=False):
    route: str
    chain: list[Any]  # ProviderDescriptor
    index: int
    funding: Any  # FundingDecision | None
    completion: Any  # Completion | None
    settled: bool
    error_kind: str | None
    error_message: str | None
    error_details: dict[str, Any]


def _route(state: DispatchState) -> str:
    return state.get("route") or "end"


def build_dispatch_graph(dispatcher: "ProviderDispatcher", run: "DispatchRun"):
    async def resolve_provider(state: DispatchState) -> dict:
        return await dispatcher.resolve_provider(run, state)

    async def resolve_funding(state: DispatchState) -> dict:
        return await dispatcher.resolve_funding(run, state)

    async def invoke(state: DispatchState) -> dict:
        return await dispatcher.invoke(run, state)

    async def fallback(state: DispatchState) -> dict:
        return await dispatcher.fallback(run, state)

    async def settle(state: DispatchState) -> dict:
        return await dispatcher.settle(run, state)

    builder = StateGraph(DispatchState)
    builder.add_node("resolve_provider", resolve_provider)
    builder.add_node("resolve_funding", resolve_funding)
    builder.add_node("invoke", invoke)
    builder.add_node("fallback", fallback)
    builder.add_node("settle", settle)

    builder.add_edge(START, "resolve_provider")
    builder.add_conditional_edges(
        "resolve_provider",
        _route,
        {"resolve_funding": "resolve_funding", "end": END},
    )
    builder.add_conditional_edges(
        "resolve_funding",
        _route,
        {"invoke": "invoke", "fallback": "fallback", "end": END},
    )
    builder.add_conditional_edges(
        "invoke",
        _route,
        {"settle": "settle", "fallback": "fallback", "end": END},
    )
    builder.add_conditional_edges(
        "fallback",
        _route,
        {"resolve_funding": "resolve_funding", "end": END},
    )
    builder.add_edge("settle", END)
    return builder.compile()


async def run_dispatch_graph(dispatcher: "ProviderDispatcher", run: "DispatchRun") -> dict:
    """Run the dispatch graph for one request; returns the final state."""
    graph = build_dispatch_graph(dispatcher, run)
    # resolve_funding -> invoke -> fallback per provider, plus the fixed steps
    limit = 3 * len(dispatcher.registry.all()) + 10
    result = await graph.ainvoke({"route": "", "index": 0}, config={"recursion_limit": limit})
    return dict(result)
