"""Kind-specific accessors over the open-ended entity metadata map.

Mining algorithms never reach into `Entity.metadata` directly; they go through
a `TradeAccessors` bundle so hosts with a different trade schema can swap in
their own readers. The defaults understand the journal layout used by the
ICT knowledge base (nested `market`, `setup`, `time`, `context`, `execution`,
`grading`, `failure_analysis`, `meta` sections).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from kgminer.core.types import Entity

OutcomePredicate = Callable[[Entity], bool]
LabelReader = Callable[[Entity], Optional[str]]
GradeReader = Callable[[Entity], Optional[float]]


def dig(metadata: dict[str, Any], *path: str) -> Any:
    """Follow `path` through nested dicts, returning None on any miss."""
    node: Any = metadata
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
        if node is None:
            return None
    return node


def _first_label(entity: Entity, *paths: tuple[str, ...]) -> Optional[str]:
    for path in paths:
        value = dig(entity.metadata, *path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


# ─────────────────────────── Outcome predicates ──────────────────────────────


def metadata_is_win(trade: Entity) -> bool:
    """Win under the journal conventions: positive example, 'win' or 'WIN'."""
    md = trade.metadata
    return (
        dig(md, "meta", "example_type") == "positive"
        or md.get("result") == "win"
        or dig(md, "execution", "result") == "WIN"
    )


def metadata_is_loss(trade: Entity) -> bool:
    md = trade.metadata
    return (
        dig(md, "meta", "example_type") == "negative"
        or md.get("result") == "loss"
        or dig(md, "execution", "result") == "LOSS"
    )


@dataclass(frozen=True)
class OutcomeRule:
    """Labels a trade as a win (True), a loss (False) or unlabeled (None).

    With no loss predicate every trade that is not a win counts as a loss.
    """
    is_win: OutcomePredicate
    is_loss: Optional[OutcomePredicate] = None

    def label(self, trade: Entity) -> Optional[bool]:
        if self.is_win(trade):
            return True
        if self.is_loss is None or self.is_loss(trade):
            return False
        return None


METADATA_OUTCOME = OutcomeRule(is_win=metadata_is_win, is_loss=metadata_is_loss)


# ─────────────────────────── Trade facets ────────────────────────────────────


def trade_session(trade: Entity) -> Optional[str]:
    return _first_label(
        trade, ("time", "session"), ("setup", "session"), ("context", "session")
    )


def trade_instrument(trade: Entity) -> Optional[str]:
    return _first_label(trade, ("market", "pair"), ("market", "symbol"), ("pair",))


def trade_killzone(trade: Entity) -> Optional[str]:
    return _first_label(trade, ("time", "killzone"), ("context", "killzone"))


def trade_timing_tag(trade: Entity) -> Optional[str]:
    """Killzone if recorded, else the session the setup was taken in."""
    return trade_killzone(trade) or _first_label(trade, ("setup", "session"))


def trade_grade(trade: Entity) -> Optional[float]:
    value = dig(trade.metadata, "grading", "total_score")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def trade_root_cause(trade: Entity) -> Optional[str]:
    return _first_label(trade, ("failure_analysis", "root_cause"))


def trade_model_name(trade: Entity) -> Optional[str]:
    return _first_label(trade, ("setup", "model"))


@dataclass(frozen=True)
class TradeAccessors:
    """Readers the miners use for per-trade facets. Each returns None when absent."""
    session: LabelReader = trade_session
    instrument: LabelReader = trade_instrument
    timing_tag: LabelReader = trade_timing_tag
    grade: GradeReader = trade_grade
    root_cause: LabelReader = trade_root_cause
    model_name: LabelReader = trade_model_name


DEFAULT_ACCESSORS = TradeAccessors()
