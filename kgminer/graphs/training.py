"""Training pipeline graph (LangGraph).

One mining pass as a linear graph so each stage's output lands in state
independently and a failing stage is easy to pinpoint from the logs.

Nodes:
    build_index          — GraphIndex over the snapshot (dangling edges dropped)
    detect_structure     — chains, hubs, clusters, bridges
    score_usage          — concept/model win rates and concept usage
    mine_outcomes        — success/failure patterns and quality factors
    synthesize_insights  — LLM insights, deterministic fallback on any failure

Flow:
    build_index → detect_structure → score_usage → mine_outcomes
        ├── synthesize → synthesize_insights → END
        └── skip       → END   (nothing was scored, so there is nothing to explain)

Compiled without a checkpointer: the state carries live GraphIndex and
report objects that are not serializable.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from langgraph.graph import END, StateGraph

from kgminer.core.graph_index import GraphIndex
from kgminer.core.insights import InsightInputs
from kgminer.core.patterns import analyze_structure
from kgminer.core.state import TrainingState

if TYPE_CHECKING:
    from kgminer.core.engine import KnowledgeGraphMiner

log = structlog.get_logger()


def insight_inputs(state: TrainingState) -> InsightInputs:
    outcomes = state["outcomes"]
    usage = state["usage"]
    part = outcomes.partition
    return InsightInputs(
        trades_analyzed=len(part.winning) + len(part.losing) + len(part.unlabeled),
        winning_count=len(part.winning),
        losing_count=len(part.losing),
        concept_scores=usage.concept_scores,
        model_scores=usage.model_scores,
        training_patterns=outcomes.patterns,
        quality_factors=outcomes.quality_factors,
    )


def _route_after_outcomes(state: TrainingState) -> str:
    usage = state["usage"]
    outcomes = state["outcomes"]
    if usage.concept_scores or usage.model_scores or outcomes.patterns or outcomes.quality_factors:
        return "synthesize"
    log.info("training.nothing_to_synthesize")
    return "skip"


def build_training_graph(miner: "KnowledgeGraphMiner"):
    """Build and compile the training pipeline bound to `miner`'s rules."""

    async def build_index(state: TrainingState) -> dict[str, Any]:
        index = GraphIndex(state["entities"], state["relationships"])
        return {"index": index}

    async def detect_structure(state: TrainingState) -> dict[str, Any]:
        return {"structural_patterns": analyze_structure(state["index"])}

    async def score_usage(state: TrainingState) -> dict[str, Any]:
        return {"usage": miner.usage.analyze(state["index"])}

    async def mine_outcomes(state: TrainingState) -> dict[str, Any]:
        return {"outcomes": miner.outcomes.mine(state["index"])}

    async def synthesize_insights(state: TrainingState) -> dict[str, Any]:
        synthesis = await miner.synthesizer.synthesize(insight_inputs(state))
        return {"synthesis": synthesis, "error": synthesis.error}

    graph = StateGraph(TrainingState)

    graph.add_node("build_index", build_index)
    graph.add_node("detect_structure", detect_structure)
    graph.add_node("score_usage", score_usage)
    graph.add_node("mine_outcomes", mine_outcomes)
    graph.add_node("synthesize_insights", synthesize_insights)

    graph.set_entry_point("build_index")
    graph.add_edge("build_index", "detect_structure")
    graph.add_edge("detect_structure", "score_usage")
    graph.add_edge("score_usage", "mine_outcomes")

    graph.add_conditional_edges(
        "mine_outcomes",
        _route_after_outcomes,
        {
            "synthesize": "synthesize_insights",
            "skip": END,
        },
    )
    graph.add_edge("synthesize_insights", END)

    return graph.compile()
