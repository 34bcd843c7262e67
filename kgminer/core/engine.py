"""KnowledgeGraphMiner — entry point for mining and training passes.

    miner = KnowledgeGraphMiner()
    result = miner.mine(entities, relationships)          # deterministic, sync
    model = await miner.train(entities, relationships)    # + insights (LLM or fallback)

Each call builds its own GraphIndex from the snapshot it is given; the miner
holds only configuration (outcome rule, accessors, synthesizer), so passes
never share state.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

import structlog

from kgminer.core.accessors import (
    DEFAULT_ACCESSORS,
    METADATA_OUTCOME,
    OutcomePredicate,
    OutcomeRule,
    TradeAccessors,
)
from kgminer.core.graph_index import GraphIndex
from kgminer.core.insights import InsightSynthesizer
from kgminer.core.outcomes import OutcomeMiner, OutcomeReport
from kgminer.core.patterns import analyze_structure
from kgminer.core.scoring import SetupScore, score_trade_setup
from kgminer.core.types import (
    Entity,
    MiningInputError,
    MiningResult,
    Pattern,
    Relationship,
    TrainingModel,
)
from kgminer.core.usage import UsageAnalyzer, UsageReport

log = structlog.get_logger()

MODEL_VERSION_PREFIX = "v1"


# ─────────────────────────── Boundary validation ─────────────────────────────


def _coerce(items: Any, record_type: type, label: str) -> list:
    if not isinstance(items, (list, tuple)):
        raise MiningInputError(f"{label} must be a list, got {type(items).__name__}")
    coerced = []
    for position, item in enumerate(items):
        if isinstance(item, record_type):
            coerced.append(item)
        elif isinstance(item, Mapping):
            coerced.append(record_type.from_dict(item))
        else:
            raise MiningInputError(
                f"{label}[{position}] must be {record_type.__name__} or a mapping, "
                f"got {type(item).__name__}"
            )
    return coerced


def coerce_snapshot(
    entities: Sequence[Any], relationships: Sequence[Any]
) -> tuple[list[Entity], list[Relationship]]:
    """Validate a snapshot, converting mapping records to Entity/Relationship."""
    return (
        _coerce(entities, Entity, "entities"),
        _coerce(relationships, Relationship, "relationships"),
    )


def assemble_result(
    index: GraphIndex,
    structural: list[Pattern],
    usage: UsageReport,
    outcomes: OutcomeReport,
) -> MiningResult:
    part = outcomes.partition
    return MiningResult(
        structural_patterns=structural,
        concept_scores=usage.concept_scores,
        model_scores=usage.model_scores,
        concept_usage=usage.concept_usage,
        training_patterns=outcomes.patterns,
        quality_factors=outcomes.quality_factors,
        trades_analyzed=len(part.winning) + len(part.losing) + len(part.unlabeled),
        winning_count=len(part.winning),
        losing_count=len(part.losing),
        dangling_relationship_ids=[r.id for r in index.dangling],
    )


# ─────────────────────────── Engine ──────────────────────────────────────────


class KnowledgeGraphMiner:
    """Mines structural, usage and outcome patterns from a graph snapshot.

    Outcome labeling:
      - no predicates       → journal conventions (positive/negative example,
                              "win"/"loss", execution WIN/LOSS); others unlabeled
      - is_winning_trade    → every non-winning trade counts as a loss
      - both predicates     → trades matching neither are unlabeled
    """

    def __init__(
        self,
        is_winning_trade: Optional[OutcomePredicate] = None,
        is_losing_trade: Optional[OutcomePredicate] = None,
        accessors: Optional[TradeAccessors] = None,
        synthesizer: Optional[InsightSynthesizer] = None,
    ):
        if is_winning_trade is None:
            if is_losing_trade is not None:
                raise ValueError("is_losing_trade requires is_winning_trade")
            self.outcome = METADATA_OUTCOME
        else:
            self.outcome = OutcomeRule(is_win=is_winning_trade, is_loss=is_losing_trade)
        self.accessors = accessors or DEFAULT_ACCESSORS
        self.usage = UsageAnalyzer(self.outcome, self.accessors)
        self.outcomes = OutcomeMiner(self.outcome, self.accessors)
        self._synthesizer = synthesizer
        self._graph = None

    @property
    def synthesizer(self) -> InsightSynthesizer:
        if self._synthesizer is None:
            self._synthesizer = InsightSynthesizer()
        return self._synthesizer

    @property
    def graph(self):
        if self._graph is None:
            from kgminer.graphs.training import build_training_graph
            self._graph = build_training_graph(self)
        return self._graph

    def index(self, entities: Sequence[Any], relationships: Sequence[Any]) -> GraphIndex:
        ents, rels = coerce_snapshot(entities, relationships)
        return GraphIndex(ents, rels)

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def mine(self, entities: Sequence[Any], relationships: Sequence[Any]) -> MiningResult:
        """Deterministic pass: structural, usage and outcome patterns."""
        index = self.index(entities, relationships)
        result = assemble_result(
            index,
            analyze_structure(index),
            self.usage.analyze(index),
            self.outcomes.mine(index),
        )
        log.info(
            "miner.mined",
            entities=len(index),
            relationships=len(index.valid_relationships),
            dangling=len(result.dangling_relationship_ids),
            structural_patterns=len(result.structural_patterns),
            training_patterns=len(result.training_patterns),
        )
        return result

    async def train(
        self, entities: Sequence[Any], relationships: Sequence[Any]
    ) -> TrainingModel:
        """Full pass through the training graph, including insight synthesis."""
        ents, rels = coerce_snapshot(entities, relationships)
        state = await self.graph.ainvoke({"entities": ents, "relationships": rels})

        result = assemble_result(
            state["index"], state["structural_patterns"], state["usage"], state["outcomes"]
        )
        synthesis = state.get("synthesis")
        trained_at = datetime.now(timezone.utc)
        model = TrainingModel(
            result=result,
            insights=synthesis.insights if synthesis else [],
            insight_source=synthesis.source if synthesis else "fallback",
            version=f"{MODEL_VERSION_PREFIX}-{int(trained_at.timestamp() * 1000)}",
            trained_at=trained_at,
        )
        log.info(
            "miner.trained",
            version=model.version,
            trades=result.trades_analyzed,
            patterns=len(result.training_patterns),
            insights=len(model.insights),
            insight_source=model.insight_source,
        )
        return model

    async def narrate(self, entities: Sequence[Any], relationships: Sequence[Any]) -> str:
        """Markdown analysis of structural patterns and concept usage."""
        index = self.index(entities, relationships)
        usage = self.usage.analyze(index)
        return await self.synthesizer.narrate(analyze_structure(index), usage.concept_usage)

    def score_setup(
        self,
        trade: Entity,
        model: TrainingModel,
        entities: Sequence[Any],
        relationships: Sequence[Any],
    ) -> SetupScore:
        """Score a prospective trade; `trade` must appear in the snapshot."""
        index = self.index(entities, relationships)
        if trade.id not in index:
            raise MiningInputError(f"trade {trade.id!r} is not part of the snapshot")
        return score_trade_setup(index.resolve(trade.id), model, index, self.accessors)
