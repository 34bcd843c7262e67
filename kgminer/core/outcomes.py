"""Outcome pattern mining over labeled trade history.

Trades are split into winning / losing / unlabeled by the caller's outcome
rule, then mined four independent ways:

  success combinations  — concept sets that keep winning (>= 0.6 win rate)
  specialization        — sessions (success only) and instruments (both ways)
  failure root causes   — losing trades sharing an explicit root cause
  quality factors       — confluence, setup grade, and timing effects

Pattern ids are derived from their content, so two passes over the same
snapshot produce identical output. Labels that slug alike get -2, -3 suffixes
in emission order.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Optional

import structlog

from kgminer.core.accessors import DEFAULT_ACCESSORS, OutcomeRule, TradeAccessors
from kgminer.core.graph_index import GraphIndex
from kgminer.core.types import (
    Entity,
    EntityKind,
    QualityFactor,
    RelationshipKind,
    TrainingPattern,
    TrainingPatternKind,
)

log = structlog.get_logger()

# Success-combination mining
MIN_COMBO_CONCEPTS = 2
MIN_COMBO_WINS = 2
COMBO_WIN_RATE = 0.6

# Session / instrument specialization
MIN_GROUP_TRADES = 3
SPECIALIZATION_WIN_RATE = 0.7
WEAKNESS_WIN_RATE = 0.4

# Root-cause grouping
MIN_ROOT_CAUSE_TRADES = 2

# Quality factors
CONFLUENCE_MIN_CONCEPTS = 3
GRADE_MARGIN = 1.0
TIMING_SHARE = 0.7
TIMING_IMPACT = 15.0

# Common-condition extraction
DOMINANT_SESSION_SHARE = 0.6
DOMINANT_INSTRUMENT_SHARE = 0.5

COMBO_SEPARATOR = " + "


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-") or "unknown"


def _dedupe_ids(patterns: list[TrainingPattern]) -> list[TrainingPattern]:
    """Suffix repeated ids with -2, -3, ... in emission order.

    Distinct labels can slug to the same id ('Late entry' and 'late-entry').
    """
    used: set[str] = set()
    for pattern in patterns:
        base, n = pattern.id, 1
        while pattern.id in used:
            n += 1
            pattern.id = f"{base}-{n}"
        used.add(pattern.id)
    return patterns


@dataclass
class TradePartition:
    winning: list[Entity] = field(default_factory=list)
    losing: list[Entity] = field(default_factory=list)
    unlabeled: list[Entity] = field(default_factory=list)

    @property
    def labeled_count(self) -> int:
        return len(self.winning) + len(self.losing)


@dataclass
class OutcomeReport:
    patterns: list[TrainingPattern]
    quality_factors: list[QualityFactor]
    partition: TradePartition


class OutcomeMiner:
    """Mines success/failure patterns and quality factors from trade outcomes."""

    def __init__(self, outcome: OutcomeRule, accessors: TradeAccessors = DEFAULT_ACCESSORS):
        self.outcome = outcome
        self.accessors = accessors

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def partition(self, index: GraphIndex) -> TradePartition:
        part = TradePartition()
        for trade in index.of_kind(EntityKind.TRADE):
            label = self.outcome.label(trade)
            if label is True:
                part.winning.append(trade)
            elif label is False:
                part.losing.append(trade)
            else:
                part.unlabeled.append(trade)
        return part

    def mine(self, index: GraphIndex) -> OutcomeReport:
        part = self.partition(index)
        patterns = [
            *self.success_combinations(index, part),
            *self.session_patterns(part),
            *self.instrument_patterns(part),
            *self.root_cause_patterns(index, part),
        ]
        factors = self.quality_factors(index, part)
        log.info(
            "outcomes.mined",
            winning=len(part.winning),
            losing=len(part.losing),
            unlabeled=len(part.unlabeled),
            patterns=len(patterns),
            quality_factors=len(factors),
        )
        return OutcomeReport(patterns, factors, part)

    # ------------------------------------------------------------------
    # Success combinations
    # ------------------------------------------------------------------

    @staticmethod
    def concept_names(index: GraphIndex, trade: Entity) -> list[str]:
        concepts = index.targets(
            trade.id, RelationshipKind.TRADE_USES_CONCEPT, EntityKind.CONCEPT
        )
        return sorted({c.name for c in concepts})

    def success_combinations(
        self, index: GraphIndex, part: TradePartition
    ) -> list[TrainingPattern]:
        combos: dict[tuple[str, ...], list[Entity]] = {}
        for trade in part.winning:
            names = self.concept_names(index, trade)
            if len(names) >= MIN_COMBO_CONCEPTS:
                combos.setdefault(tuple(names), []).append(trade)

        losing_sets = [set(self.concept_names(index, t)) for t in part.losing]

        patterns: list[TrainingPattern] = []
        for concepts, trades in combos.items():
            if len(trades) < MIN_COMBO_WINS:
                continue
            combo = COMBO_SEPARATOR.join(concepts)
            losses = sum(1 for names in losing_sets if names.issuperset(concepts))
            win_rate = len(trades) / (len(trades) + losses)
            if win_rate < COMBO_WIN_RATE:
                continue

            patterns.append(TrainingPattern(
                id=f"success-combo-{_slug(combo)}",
                kind=TrainingPatternKind.SUCCESS,
                name=f"High Win Rate: {combo}",
                description=(
                    f"The combination of {combo} has produced {len(trades)} winning "
                    f"trades with a {win_rate:.0%} win rate"
                ),
                confidence=win_rate,
                supporting_trade_ids=[t.id for t in trades],
                concepts=list(concepts),
                conditions=self.common_conditions(trades),
                recommendations=[
                    f"Prioritize setups that combine {' and '.join(concepts[:2])}",
                    f"This pattern has proven reliable across {len(trades)} trades",
                    "Look for these concepts forming together during optimal market conditions",
                ],
            ))
        return _dedupe_ids(patterns)

    # ------------------------------------------------------------------
    # Session / instrument specialization
    # ------------------------------------------------------------------

    @staticmethod
    def _group_by(
        part: TradePartition, label_of: Callable[[Entity], Optional[str]]
    ) -> dict[str, tuple[list[Entity], list[Entity]]]:
        groups: dict[str, tuple[list[Entity], list[Entity]]] = {}
        for trade in part.winning:
            label = label_of(trade)
            if label:
                groups.setdefault(label, ([], []))[0].append(trade)
        for trade in part.losing:
            label = label_of(trade)
            if label:
                groups.setdefault(label, ([], []))[1].append(trade)
        return groups

    def session_patterns(self, part: TradePartition) -> list[TrainingPattern]:
        """Strong sessions only; weak sessions deliberately get no failure pattern."""
        patterns: list[TrainingPattern] = []
        for session, (wins, losses) in self._group_by(part, self.accessors.session).items():
            total = len(wins) + len(losses)
            if total < MIN_GROUP_TRADES:
                continue
            win_rate = len(wins) / total
            if win_rate < SPECIALIZATION_WIN_RATE:
                continue
            patterns.append(TrainingPattern(
                id=f"session-success-{_slug(session)}",
                kind=TrainingPatternKind.SUCCESS,
                name=f"Strong {session} Session Performance",
                description=(
                    f"You have a {win_rate:.0%} win rate during {session} sessions "
                    f"across {total} trades"
                ),
                confidence=win_rate,
                supporting_trade_ids=[t.id for t in wins],
                conditions=[f"Trades during {session} session"],
                recommendations=[
                    f"Focus your trading activity on {session} sessions where you perform best",
                    f"Your edge is strongest during {session} market conditions",
                    f"Consider increasing position size during confirmed {session} setups",
                ],
            ))
        return _dedupe_ids(patterns)

    def instrument_patterns(self, part: TradePartition) -> list[TrainingPattern]:
        patterns: list[TrainingPattern] = []
        for pair, (wins, losses) in self._group_by(part, self.accessors.instrument).items():
            total = len(wins) + len(losses)
            if total < MIN_GROUP_TRADES:
                continue
            win_rate = len(wins) / total
            if win_rate >= SPECIALIZATION_WIN_RATE:
                patterns.append(TrainingPattern(
                    id=f"pair-success-{_slug(pair)}",
                    kind=TrainingPatternKind.SUCCESS,
                    name=f"{pair} Excellence",
                    description=(
                        f"You excel at trading {pair} with {win_rate:.0%} win rate "
                        f"over {total} trades"
                    ),
                    confidence=win_rate,
                    supporting_trade_ids=[t.id for t in wins],
                    conditions=[f"Trading {pair}"],
                    recommendations=[
                        f"Prioritize {pair} setups in your watchlist",
                        f"You've demonstrated strong understanding of {pair} price action",
                        f"Consider specializing in {pair} to deepen your edge",
                    ],
                ))
            elif win_rate < WEAKNESS_WIN_RATE:
                patterns.append(TrainingPattern(
                    id=f"pair-failure-{_slug(pair)}",
                    kind=TrainingPatternKind.FAILURE,
                    name=f"{pair} Weakness",
                    description=(
                        f"{pair} shows only {win_rate:.0%} win rate across {total} trades"
                    ),
                    confidence=1 - win_rate,
                    supporting_trade_ids=[t.id for t in losses],
                    conditions=[f"Trading {pair}"],
                    recommendations=[
                        f"Avoid or reduce exposure to {pair} until you improve your analysis",
                        f"Study {pair} price action more deeply before taking trades",
                        f"Consider paper trading {pair} to build confidence",
                    ],
                ))
        return _dedupe_ids(patterns)

    # ------------------------------------------------------------------
    # Failure root causes
    # ------------------------------------------------------------------

    def root_cause_patterns(
        self, index: GraphIndex, part: TradePartition
    ) -> list[TrainingPattern]:
        groups: dict[str, list[Entity]] = {}
        for trade in part.losing:
            cause = self.accessors.root_cause(trade)
            if cause:
                groups.setdefault(cause, []).append(trade)

        patterns: list[TrainingPattern] = []
        for cause, trades in groups.items():
            if len(trades) < MIN_ROOT_CAUSE_TRADES:
                continue

            concepts: dict[str, None] = {}
            models: dict[str, None] = {}
            for trade in trades:
                for name in self.concept_names(index, trade):
                    concepts.setdefault(name, None)
                model = self.accessors.model_name(trade)
                if model:
                    models.setdefault(model, None)

            patterns.append(TrainingPattern(
                id=f"failure-{_slug(cause)}",
                kind=TrainingPatternKind.FAILURE,
                name=f"Common Failure: {cause}",
                description=f"{len(trades)} trades failed due to: {cause}",
                confidence=len(trades) / len(part.losing),
                supporting_trade_ids=[t.id for t in trades],
                concepts=list(concepts),
                models=list(models),
                conditions=self.common_conditions(trades),
                recommendations=[
                    f"Avoid setups when {cause.lower()}",
                    f"This failure mode has occurred in {len(trades)} trades",
                    "Implement pre-trade checklist to screen for this condition",
                ],
            ))
        return _dedupe_ids(patterns)

    # ------------------------------------------------------------------
    # Quality factors
    # ------------------------------------------------------------------

    def quality_factors(self, index: GraphIndex, part: TradePartition) -> list[QualityFactor]:
        factors: list[QualityFactor] = []
        for check in (self._confluence_factor, self._grade_factor, self._timing_factor):
            factor = check(index, part)
            if factor is not None:
                factors.append(factor)
        return factors

    def _confluence_factor(
        self, index: GraphIndex, part: TradePartition
    ) -> Optional[QualityFactor]:
        def has_confluence(trade: Entity) -> bool:
            concepts = index.targets(
                trade.id, RelationshipKind.TRADE_USES_CONCEPT, EntityKind.CONCEPT
            )
            return len(concepts) >= CONFLUENCE_MIN_CONCEPTS

        wins = sum(1 for t in part.winning if has_confluence(t))
        losses = sum(1 for t in part.losing if has_confluence(t))
        confluence_rate = wins / ((wins + losses) or 1)
        baseline_rate = len(part.winning) / (part.labeled_count or 1)
        if confluence_rate <= baseline_rate:
            return None
        return QualityFactor(
            factor="High Concept Confluence",
            impact=(confluence_rate - baseline_rate) * 100,
            description=(
                f"Trades with {CONFLUENCE_MIN_CONCEPTS}+ concepts have {confluence_rate:.0%} "
                f"win rate vs {baseline_rate:.0%} baseline"
            ),
        )

    def _grade_factor(self, index: GraphIndex, part: TradePartition) -> Optional[QualityFactor]:
        win_grades = [g for g in map(self.accessors.grade, part.winning) if g is not None]
        if not win_grades:
            return None
        loss_grades = [g for g in map(self.accessors.grade, part.losing) if g is not None]

        avg_win = sum(win_grades) / len(win_grades)
        avg_loss = sum(loss_grades) / len(loss_grades) if loss_grades else 0.0
        if avg_win <= avg_loss + GRADE_MARGIN:
            return None
        return QualityFactor(
            factor="Setup Quality Score",
            impact=avg_win - avg_loss,
            description=(
                f"Winning trades average {avg_win:.1f}/10 vs losing trades at {avg_loss:.1f}/10"
            ),
        )

    def _timing_factor(self, index: GraphIndex, part: TradePartition) -> Optional[QualityFactor]:
        if not part.winning:
            return None
        timed = sum(1 for t in part.winning if self.accessors.timing_tag(t))
        share = timed / len(part.winning)
        if share < TIMING_SHARE:
            return None
        return QualityFactor(
            factor="Optimal Time Entry",
            impact=TIMING_IMPACT,
            description=f"{share:.0%} of winning trades occurred during identified killzones",
        )

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------

    def common_conditions(self, trades: list[Entity]) -> list[str]:
        """Dominant session (>= 60% of trades) and instrument (>= 50%)."""
        if not trades:
            return []
        conditions: list[str] = []

        sessions = Counter(s for s in map(self.accessors.session, trades) if s)
        if sessions:
            session, count = sessions.most_common(1)[0]
            if count >= len(trades) * DOMINANT_SESSION_SHARE:
                conditions.append(f"Occurs primarily during {session} session")

        pairs = Counter(p for p in map(self.accessors.instrument, trades) if p)
        if pairs:
            pair, count = pairs.most_common(1)[0]
            if count >= len(trades) * DOMINANT_INSTRUMENT_SHARE:
                conditions.append(f"Most common on {pair}")

        return conditions
