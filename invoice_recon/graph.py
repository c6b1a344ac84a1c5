"""
LangGraph orchestration for the reconciliation pipeline.
Defines the graph structure for one reconciliation run.
"""

from langgraph.graph import StateGraph, END

from invoice_recon.config import Config, get_config
from invoice_recon.state import ReconciliationState
from invoice_recon.stages.confidence import aggregation_stage
from invoice_recon.stages.lifecycle import lifecycle_stage
from invoice_recon.stages.matching import matching_stage
from invoice_recon.stages.normalizer import normalizer_stage
from invoice_recon.stages.resolution import resolution_stage


config = get_config()


def build_reconciliation_graph(cfg: Config = None):
    """
    Build the LangGraph workflow for one reconciliation run.

    Flow:
    1. Normalizer - canonical invoice and PO lines
    2. Candidate Matcher - ranked candidates per invoice line
    3. Match Resolver - assignment, outcomes, planned ledger rows
    4. Confidence Aggregator - match and final confidence
    5. Lifecycle - planned status (applied by the engine on commit)

    Nodes are pure; persistence happens after the graph returns.
    """
    cfg = cfg or config

    async def normalize(state: ReconciliationState) -> ReconciliationState:
        return await normalizer_stage(state, cfg)

    async def match(state: ReconciliationState) -> ReconciliationState:
        return await matching_stage(state, cfg)

    async def resolve(state: ReconciliationState) -> ReconciliationState:
        return await resolution_stage(state, cfg)

    async def aggregate(state: ReconciliationState) -> ReconciliationState:
        return await aggregation_stage(state, cfg)

    async def plan_lifecycle(state: ReconciliationState) -> ReconciliationState:
        return await lifecycle_stage(state, cfg)

    graph = StateGraph(ReconciliationState)

    graph.add_node("normalizer", normalize)
    graph.add_node("candidate_matcher", match)
    graph.add_node("match_resolver", resolve)
    graph.add_node("confidence_aggregator", aggregate)
    graph.add_node("lifecycle", plan_lifecycle)

    graph.set_entry_point("normalizer")

    graph.add_edge("normalizer", "candidate_matcher")
    graph.add_edge("candidate_matcher", "match_resolver")
    graph.add_edge("match_resolver", "confidence_aggregator")
    graph.add_edge("confidence_aggregator", "lifecycle")
    graph.add_edge("lifecycle", END)

    return graph.compile()


# Global compiled graph for the module config (singleton)
_reconciliation_graph = None


def get_reconciliation_graph(cfg: Config = None):
    """Get or create the compiled reconciliation graph."""
    global _reconciliation_graph
    if cfg is not None and cfg is not config:
        return build_reconciliation_graph(cfg)
    if _reconciliation_graph is None:
        _reconciliation_graph = build_reconciliation_graph(config)
    return _reconciliation_graph
