"""InsightSynthesizer — turns mined statistics into TrainingInsight records.

Primary path: send aggregate statistics (never raw trade metadata) to the
LLMRouter in JSON mode and validate the returned `{"insights": [...]}` with
pydantic. The external call is wrapped in `request_insights()`, which always
returns an `InsightCall` variant instead of raising.

Fallback path: `fallback_insights()` derives up to five insights from the
already-computed scores, patterns and quality factors. It is a pure
function and is used whenever the external call times out, is cancelled,
errors, returns malformed output or returns nothing usable.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Optional

import structlog
from pydantic import BaseModel, ValidationError

from kgminer.core.router import LLMRequest
from kgminer.core.types import (
    ConceptUsage,
    Pattern,
    QualityFactor,
    TrainingInsight,
    TrainingPattern,
    TrainingPatternKind,
    UsageScore,
)

log = structlog.get_logger()

FALLBACK_LIMIT = 5
MIN_FALLBACK_SAMPLE = 2
WEAK_WIN_RATE = 0.4
NARRATIVE_PATTERN_LIMIT = 5

INSIGHT_SYSTEM_PROMPT = (
    "You are an expert ICT (Inner Circle Trader) trading coach. You analyze a "
    "trader's aggregate performance statistics and return personalized, "
    "actionable insights as strict JSON."
)

NARRATIVE_SYSTEM_PROMPT = (
    "You are an ICT trading methodology expert analyzing knowledge graph patterns."
)


@dataclass
class InsightInputs:
    """Aggregate statistics handed to the synthesizer."""
    trades_analyzed: int
    winning_count: int
    losing_count: int
    concept_scores: dict[str, UsageScore] = field(default_factory=dict)
    model_scores: dict[str, UsageScore] = field(default_factory=dict)
    training_patterns: list[TrainingPattern] = field(default_factory=list)
    quality_factors: list[QualityFactor] = field(default_factory=list)


@dataclass
class InsightCall:
    """Outcome of the external call: insights on success, error otherwise."""
    insights: Optional[list[TrainingInsight]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.insights)


@dataclass
class InsightSynthesis:
    insights: list[TrainingInsight]
    source: str  # "llm" | "fallback"
    error: Optional[str] = None


class InsightPayload(BaseModel):
    insights: list[TrainingInsight]


# ─────────────────────────── Prompt & parsing ────────────────────────────────


def _score_lines(scores: dict[str, UsageScore]) -> str:
    lines = []
    for name, score in scores.items():
        line = f"- {name}: {score.win_rate:.0%} win rate ({score.sample_size} trades)"
        if score.avg_quality is not None:
            line += f" - avg quality {score.avg_quality:.1f}/10"
        lines.append(line)
    return "\n".join(lines) or "- none"


def build_insight_prompt(inputs: InsightInputs) -> str:
    labeled = inputs.winning_count + inputs.losing_count
    overall = inputs.winning_count / labeled if labeled else 0.0
    patterns = "\n".join(
        f"- {p.kind.value.upper()}: {p.name} ({p.confidence:.0%} confidence, "
        f"{len(p.supporting_trade_ids)} trades)"
        for p in inputs.training_patterns
    ) or "- none"
    factors = "\n".join(
        f"- {f.factor}: +{f.impact:.1f}% impact" for f in inputs.quality_factors
    ) or "- none"

    return f"""TRADER'S DATA:
- Total trades: {inputs.trades_analyzed}
- Winning trades: {inputs.winning_count}
- Losing trades: {inputs.losing_count}
- Overall win rate: {overall:.1%}

CONCEPT PERFORMANCE:
{_score_lines(inputs.concept_scores)}

MODEL PERFORMANCE:
{_score_lines(inputs.model_scores)}

DISCOVERED PATTERNS:
{patterns}

QUALITY FACTORS:
{factors}

Based on this trader's data, generate 6-8 personalized, actionable insights
covering strongest concepts, winning concept combinations, weak areas, session
timing, setup quality factors, common failure modes and model recommendations.

Return a JSON object with a single "insights" property: an array of objects with
- category: one of "concept_effectiveness", "model_performance", "setup_quality", "execution", "market_conditions"
- statement: a clear, specific insight (50-80 chars)
- evidence: array of 2-4 data points supporting it
- action: the specific action the trader should take
- priority: "high", "medium", or "low"

Reference actual numbers, concepts and patterns from the data above."""


_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_insight_response(content: str) -> InsightCall:
    """Validate a generator response; never raises."""
    text = content.strip()
    fenced = _FENCE.match(text)
    if fenced:
        text = fenced.group(1)
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        return InsightCall(error=f"invalid json: {exc.msg}")

    # Some models return the bare array despite the instructions
    if isinstance(raw, list):
        raw = {"insights": raw}
    try:
        payload = InsightPayload.model_validate(raw)
    except ValidationError as exc:
        return InsightCall(error=f"schema mismatch: {exc.error_count()} error(s)")

    if not payload.insights:
        return InsightCall(error="empty insight list")
    return InsightCall(insights=payload.insights)


# ─────────────────────────── Fallback rules ──────────────────────────────────


def _eligible(scores: dict[str, UsageScore]) -> list[tuple[str, UsageScore]]:
    """Subjects with enough samples, or every subject if none qualifies."""
    items = list(scores.items())
    qualified = [(n, s) for n, s in items if s.sample_size >= MIN_FALLBACK_SAMPLE]
    return qualified or items


def _quality_note(score: UsageScore, label: str) -> str:
    if score.avg_quality is None:
        return ""
    return f"{label}: {score.avg_quality:.1f}/10"


def fallback_insights(inputs: InsightInputs, limit: int = FALLBACK_LIMIT) -> list[TrainingInsight]:
    """Deterministic insights from scores, patterns and quality factors."""
    insights: list[TrainingInsight] = []

    concepts = sorted(_eligible(inputs.concept_scores), key=lambda kv: kv[1].win_rate, reverse=True)
    best_concept = concepts[0][0] if concepts else None
    if concepts:
        name, score = concepts[0]
        insights.append(TrainingInsight(
            category="concept_effectiveness",
            statement=f'"{name}" shows highest effectiveness with {score.win_rate:.0%} win rate',
            evidence=[e for e in (
                f"Sample size: {score.sample_size} trades",
                _quality_note(score, "Average setup quality"),
                f"{(score.win_rate - 0.5) * 100:+.0f} points against a 50% baseline",
            ) if e],
            action=(
                f'Prioritize identifying "{name}" in your pre-trade analysis. Look for '
                "high-probability setups featuring this concept."
            ),
            priority="high",
        ))

    weak = sorted(
        ((n, s) for n, s in _eligible(inputs.concept_scores)
         if s.win_rate < WEAK_WIN_RATE and n != best_concept),
        key=lambda kv: kv[1].win_rate,
    )
    if weak:
        name, score = weak[0]
        insights.append(TrainingInsight(
            category="concept_effectiveness",
            statement=f'"{name}" shows low effectiveness with only {score.win_rate:.0%} win rate',
            evidence=[e for e in (
                f"Sample size: {score.sample_size} trades",
                "Below 50% win rate threshold",
                _quality_note(score, "Lower setup quality"),
            ) if e],
            action=(
                f'Review your identification and application of "{name}". Consider '
                "additional confluence factors when using this concept."
            ),
            priority="medium",
        ))

    models = sorted(_eligible(inputs.model_scores), key=lambda kv: kv[1].win_rate, reverse=True)
    if models:
        name, score = models[0]
        insights.append(TrainingInsight(
            category="model_performance",
            statement=f'"{name}" model demonstrates strong performance with {score.win_rate:.0%} win rate',
            evidence=[e for e in (
                f"{score.sample_size} trades executed",
                _quality_note(score, "Average quality"),
            ) if e],
            action=(
                f'Focus on mastering "{name}" setup identification. This model aligns '
                "well with your trading style."
            ),
            priority="high",
        ))

    if inputs.quality_factors:
        top = max(inputs.quality_factors, key=lambda f: f.impact)
        insights.append(TrainingInsight(
            category="setup_quality",
            statement=f"{top.factor} significantly improves outcomes",
            evidence=[top.description, f"Impact: +{top.impact:.1f}% improvement"],
            action=(
                f"Always verify {top.factor.lower()} before entering trades. Make this "
                "a mandatory checkpoint in your trading plan."
            ),
            priority="high",
        ))

    failures = [p for p in inputs.training_patterns if p.kind == TrainingPatternKind.FAILURE]
    if failures:
        worst = max(failures, key=lambda p: len(p.supporting_trade_ids))
        insights.append(TrainingInsight(
            category="execution",
            statement=worst.name,
            evidence=[
                worst.description,
                f"Occurred in {len(worst.supporting_trade_ids)} trades",
                f"Confidence: {worst.confidence:.0%}",
            ],
            action=worst.recommendations[0] if worst.recommendations else f"Screen for: {worst.name}",
            priority="high",
        ))

    successes = [p for p in inputs.training_patterns if p.kind == TrainingPatternKind.SUCCESS]
    if successes:
        best = max(successes, key=lambda p: p.confidence)
        insights.append(TrainingInsight(
            category="concept_effectiveness" if best.concepts else "market_conditions",
            statement=best.name,
            evidence=[
                best.description,
                f"Supported by {len(best.supporting_trade_ids)} winning trades",
            ],
            action=best.recommendations[0] if best.recommendations else f"Repeat: {best.name}",
            priority="medium",
        ))

    return insights[:limit]


def fallback_narrative(patterns: list[Pattern], usage: list[ConceptUsage]) -> str:
    """Markdown summary of structural patterns and concept usage."""
    lines = ["## Most Significant Patterns", ""]
    top = sorted(patterns, key=lambda p: p.strength, reverse=True)[:NARRATIVE_PATTERN_LIMIT]
    if top:
        for p in top:
            lines.append(
                f"- **{p.name}** ({p.kind.value}, strength {p.strength:.2f}): {p.description}"
            )
    else:
        lines.append("- No structural patterns detected yet.")

    scored = sorted(
        (u for u in usage if u.success_rate is not None),
        key=lambda u: u.success_rate,
        reverse=True,
    )
    lines += ["", "## Concept Effectiveness", ""]
    if scored:
        for u in scored[:NARRATIVE_PATTERN_LIMIT]:
            lines.append(
                f"- **{u.concept.name}**: {u.success_rate:.0%} success across "
                f"{u.usage_frequency} trade(s), used in {len(u.related_models)} model(s)"
            )
    else:
        lines.append("- No labeled trades are linked to concepts yet.")

    unused = [u.concept.name for u in usage if u.usage_frequency == 0]
    lines += ["", "## Knowledge Gaps", ""]
    if unused:
        lines.append(f"- {len(unused)} concept(s) have no linked trades: {', '.join(unused[:10])}")
    else:
        lines.append("- Every concept is linked to at least one trade.")

    lines += ["", "## Recommendations", ""]
    if scored:
        lines.append(f"- Build setups around **{scored[0].concept.name}**, your most effective concept.")
    if unused:
        lines.append("- Journal trades that exercise the unused concepts to measure their edge.")
    if not scored and not unused:
        lines.append("- Keep linking trades to concepts and models to grow the sample.")
    return "\n".join(lines)


# ─────────────────────────── Synthesizer ─────────────────────────────────────


class InsightSynthesizer:
    """Composes usage and outcome statistics into TrainingInsight records.

    Usage::

        synth = InsightSynthesizer()
        out = await synth.synthesize(inputs)
        out.source   # "llm" or "fallback"
    """

    def __init__(self, router=None, settings=None, use_llm: bool = True):
        from config.settings import get_settings
        self.settings = settings or get_settings()
        self._router = router
        self.use_llm = use_llm and self.settings.insight_backend != "none"

    @property
    def router(self):
        if self._router is None:
            from kgminer.core.router import LLMRouter
            self._router = LLMRouter(settings=self.settings)
        return self._router

    async def synthesize(self, inputs: InsightInputs) -> InsightSynthesis:
        if self.use_llm:
            call = await self.request_insights(inputs)
            if call.ok:
                log.info("insights.llm", count=len(call.insights))
                return InsightSynthesis(insights=call.insights, source="llm")
            error = call.error
            log.warning("insights.fallback", reason=error)
        else:
            error = "llm disabled"

        insights = fallback_insights(inputs)
        log.info("insights.fallback_generated", count=len(insights))
        return InsightSynthesis(insights=insights, source="fallback", error=error)

    async def request_insights(self, inputs: InsightInputs) -> InsightCall:
        content, error = await self._generate(LLMRequest(
            prompt=build_insight_prompt(inputs),
            system=INSIGHT_SYSTEM_PROMPT,
            json_mode=True,
            max_tokens=self.settings.insight_max_tokens,
            temperature=self.settings.insight_temperature,
            task_type="training_insights",
        ))
        if error is not None:
            return InsightCall(error=error)
        return parse_insight_response(content)

    async def narrate(self, patterns: list[Pattern], usage: list[ConceptUsage]) -> str:
        """Markdown analysis of structural patterns; local summary when the LLM is unavailable."""
        if self.use_llm:
            content, error = await self._generate(LLMRequest(
                prompt=_narrative_prompt(patterns, usage),
                system=NARRATIVE_SYSTEM_PROMPT,
                max_tokens=self.settings.insight_max_tokens,
                temperature=self.settings.insight_temperature,
                task_type="pattern_narrative",
            ))
            if error is None and content.strip():
                return content.strip()
            log.warning("insights.narrative_fallback", reason=error or "empty response")
        return fallback_narrative(patterns, usage)

    async def _generate(self, request: LLMRequest) -> tuple[str, Optional[str]]:
        """Run one router call under the configured timeout. Returns (content, error)."""
        try:
            resp = await asyncio.wait_for(
                self.router.complete(request),
                timeout=self.settings.insight_timeout_sec,
            )
        except asyncio.TimeoutError:
            return "", f"timed out after {self.settings.insight_timeout_sec}s"
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            return "", "cancelled"
        except Exception as exc:
            log.warning("insights.llm_call_failed", task_type=request.task_type, error=str(exc))
            return "", f"{type(exc).__name__}: {exc}"
        return resp.content, None


def _narrative_prompt(patterns: list[Pattern], usage: list[ConceptUsage]) -> str:
    pattern_rows = [
        {
            "type": p.kind.value,
            "name": p.name,
            "description": p.description,
            "entityCount": len(p.member_entities),
            "relationshipCount": len(p.member_relationships),
            "strength": round(p.strength, 3),
        }
        for p in patterns
    ]
    usage_rows = [
        {
            "concept": u.concept.name,
            "usedInModels": len(u.related_models),
            "usedInTrades": len(u.related_trades),
            "successRate": u.success_rate,
            "commonPairings": [p.concept.name for p in u.common_pairings[:3]],
        }
        for u in usage[:10]
    ]
    return (
        "I've detected the following relationship patterns in the trading knowledge base:\n\n"
        f"{json.dumps(pattern_rows, indent=2)}\n\n"
        "And the following concept usage patterns:\n\n"
        f"{json.dumps(usage_rows, indent=2)}\n\n"
        "Provide a detailed analysis covering:\n"
        "1. **Most Significant Patterns**: which patterns matter most and why\n"
        "2. **Concept Effectiveness**: which concepts show high success rates\n"
        "3. **Knowledge Gaps**: missing relationships or patterns\n"
        "4. **Recommendations**: specific actionable improvements\n\n"
        "Format your response as markdown with clear sections."
    )
