"""Concept and model usage statistics.

A concept's trades are the union of
  concept -[CONCEPT_USED_IN_MODEL]-> model -[MODEL_PRODUCES_TRADE]-> trade
  trade -[TRADE_USES_CONCEPT]-> concept
de-duplicated by trade id. A model's trades come from MODEL_PRODUCES_TRADE.
Unlabeled trades (neither win nor loss under the outcome rule) do not count.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from kgminer.core.accessors import DEFAULT_ACCESSORS, OutcomeRule, TradeAccessors
from kgminer.core.graph_index import GraphIndex
from kgminer.core.types import (
    ConceptPairing,
    ConceptUsage,
    Entity,
    EntityKind,
    RelationshipKind,
    UsageScore,
)

log = structlog.get_logger()


@dataclass
class UsageReport:
    concept_scores: dict[str, UsageScore]
    model_scores: dict[str, UsageScore]
    concept_usage: list[ConceptUsage]


class UsageAnalyzer:
    """Aggregates win rates and co-occurrence for concepts and models."""

    def __init__(self, outcome: OutcomeRule, accessors: TradeAccessors = DEFAULT_ACCESSORS):
        self.outcome = outcome
        self.accessors = accessors

    def analyze(self, index: GraphIndex) -> UsageReport:
        concept_scores: dict[str, UsageScore] = {}
        usage: list[ConceptUsage] = []

        for concept in index.of_kind(EntityKind.CONCEPT):
            models = index.targets(
                concept.id, RelationshipKind.CONCEPT_USED_IN_MODEL, EntityKind.MODEL
            )
            trades = self.concept_trades(index, concept, models)
            score = self.score(concept.name, trades)
            if score is not None:
                concept_scores[concept.name] = score
            usage.append(ConceptUsage(
                concept=concept,
                related_models=models,
                related_trades=trades,
                usage_frequency=len(trades),
                success_rate=score.win_rate if score else None,
                common_pairings=self.pairings(index, concept),
            ))

        model_scores: dict[str, UsageScore] = {}
        for model in index.of_kind(EntityKind.MODEL):
            trades = index.targets(
                model.id, RelationshipKind.MODEL_PRODUCES_TRADE, EntityKind.TRADE
            )
            score = self.score(model.name, trades)
            if score is not None:
                model_scores[model.name] = score

        usage.sort(key=lambda u: u.usage_frequency, reverse=True)
        log.info(
            "usage.analyzed",
            concepts_scored=len(concept_scores),
            models_scored=len(model_scores),
        )
        return UsageReport(concept_scores, model_scores, usage)

    def concept_trades(
        self, index: GraphIndex, concept: Entity, models: list[Entity]
    ) -> list[Entity]:
        found: dict[str, Entity] = {}
        for model in models:
            for trade in index.targets(
                model.id, RelationshipKind.MODEL_PRODUCES_TRADE, EntityKind.TRADE
            ):
                found.setdefault(trade.id, trade)
        for trade in index.sources(
            concept.id, RelationshipKind.TRADE_USES_CONCEPT, EntityKind.TRADE
        ):
            found.setdefault(trade.id, trade)
        return list(found.values())

    def score(self, subject_name: str, trades: list[Entity]) -> Optional[UsageScore]:
        """Win rate over labeled trades; None when no trade is labeled."""
        labels = [(t, self.outcome.label(t)) for t in trades]
        labeled = [(t, won) for t, won in labels if won is not None]
        if not labeled:
            return None

        wins = sum(1 for _, won in labeled if won)
        grades = [g for g in (self.accessors.grade(t) for t, _ in labeled) if g is not None]
        return UsageScore(
            subject_name=subject_name,
            win_rate=wins / len(labeled),
            sample_size=len(labeled),
            avg_quality=sum(grades) / len(grades) if grades else None,
        )

    @staticmethod
    def pairings(index: GraphIndex, concept: Entity) -> list[ConceptPairing]:
        """Concepts joined by CONCEPT_RELATED_TO in either direction.

        Each directed edge counts once, so a pair stored as A->B and B->A
        reports a count of 2.
        """
        counts: dict[str, int] = {}
        for rel in index.relationships_of(concept.id):
            if rel.kind != RelationshipKind.CONCEPT_RELATED_TO:
                continue
            other_id = rel.target_id if rel.source_id == concept.id else rel.source_id
            other = index.resolve(other_id)
            if other_id == concept.id or other.kind != EntityKind.CONCEPT:
                continue
            counts[other_id] = counts.get(other_id, 0) + 1
        return [ConceptPairing(index.resolve(i), n) for i, n in counts.items()]
