"""Pre-trade setup scoring against a trained model.

Starts every setup at 5/10 and nudges the score with concept confluence,
matches against mined success/failure patterns, and the historical win rate
of the setup's model. The result is clamped to [0, 10].
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from kgminer.core.accessors import DEFAULT_ACCESSORS, TradeAccessors
from kgminer.core.graph_index import GraphIndex
from kgminer.core.types import (
    Entity,
    EntityKind,
    RelationshipKind,
    TrainingModel,
    TrainingPatternKind,
)

BASE_SCORE = 5.0
MAX_SCORE = 10.0

STRONG_CONFLUENCE = 3
WEAK_CONFLUENCE = 2
CONFLUENCE_BONUS = 1.5
CONFLUENCE_PENALTY = 1.0

SUCCESS_MATCH_BONUS = 2.0
FAILURE_MATCH_PENALTY = 1.5
FAILURE_OVERLAP = 0.5

STRONG_MODEL_WIN_RATE = 0.6
WEAK_MODEL_WIN_RATE = 0.4
MODEL_ADJUSTMENT = 1.0


@dataclass
class SetupScore:
    score: float
    feedback: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _setup_model_name(
    trade: Entity, index: GraphIndex, accessors: TradeAccessors
) -> Optional[str]:
    name = accessors.model_name(trade)
    if name:
        return name
    producers = index.sources(trade.id, RelationshipKind.MODEL_PRODUCES_TRADE, EntityKind.MODEL)
    return producers[0].name if producers else None


def score_trade_setup(
    trade: Entity,
    model: TrainingModel,
    index: GraphIndex,
    accessors: TradeAccessors = DEFAULT_ACCESSORS,
) -> SetupScore:
    """Score a prospective trade on a 0-10 scale with feedback and warnings.

    `trade` only needs to be present in `index`; its concepts are read from
    its TRADE_USES_CONCEPT edges.
    """
    result = SetupScore(score=BASE_SCORE)
    concepts = {
        c.name for c in index.targets(
            trade.id, RelationshipKind.TRADE_USES_CONCEPT, EntityKind.CONCEPT
        )
    }

    if len(concepts) >= STRONG_CONFLUENCE:
        result.score += CONFLUENCE_BONUS
        result.feedback.append(f"Strong concept confluence ({STRONG_CONFLUENCE}+ concepts)")
    elif len(concepts) < WEAK_CONFLUENCE:
        result.score -= CONFLUENCE_PENALTY
        result.warnings.append("Low concept confluence - consider additional confirmation")

    for pattern in model.training_patterns:
        if not pattern.concepts:
            continue
        matched = sum(1 for c in pattern.concepts if c in concepts)
        if pattern.kind == TrainingPatternKind.SUCCESS and matched == len(pattern.concepts):
            result.score += SUCCESS_MATCH_BONUS
            result.feedback.append(f"Matches proven success pattern: {pattern.name}")
        elif (
            pattern.kind == TrainingPatternKind.FAILURE
            and matched >= len(pattern.concepts) * FAILURE_OVERLAP
        ):
            result.score -= FAILURE_MATCH_PENALTY
            result.warnings.append(f"Similar to failure pattern: {pattern.name}")

    model_name = _setup_model_name(trade, index, accessors)
    model_score = model.model_scores.get(model_name) if model_name else None
    if model_score is not None:
        if model_score.win_rate >= STRONG_MODEL_WIN_RATE:
            result.score += MODEL_ADJUSTMENT
            result.feedback.append(
                f"Using high-performance model ({model_score.win_rate:.0%} win rate)"
            )
        elif model_score.win_rate < WEAK_MODEL_WIN_RATE:
            result.score -= MODEL_ADJUSTMENT
            result.warnings.append(
                f"Model has low historical win rate ({model_score.win_rate:.0%})"
            )

    result.score = max(0.0, min(MAX_SCORE, result.score))
    return result
