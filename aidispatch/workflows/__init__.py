# LangGraph workflows
from aidispatch.workflows.dispatch_agent import build_dispatch_graph, run_dispatch_graph

__all__ = ["build_dispatch_graph", "run_dispatch_graph"]
