"""Unit tests for UsageAnalyzer — concept/model win rates and pairings."""
import pytest

from kgminer.core.accessors import METADATA_OUTCOME, OutcomeRule
from kgminer.core.graph_index import GraphIndex
from kgminer.core.types import Entity, EntityKind, Relationship, RelationshipKind
from kgminer.core.usage import UsageAnalyzer


def _concept(id: str, name: str) -> Entity:
    return Entity(id=id, kind=EntityKind.CONCEPT, name=name)


def _trade(id: str, result: str | None, grade: float | None = None) -> Entity:
    metadata = {}
    if result is not None:
        metadata["result"] = result
    if grade is not None:
        metadata["grading"] = {"total_score": grade}
    return Entity(id=id, kind=EntityKind.TRADE, name=id, metadata=metadata)


def _r(id: str, src: str, dst: str, kind: str) -> Relationship:
    return Relationship(id=id, kind=kind, source_id=src, target_id=dst)


@pytest.fixture
def analyzer() -> UsageAnalyzer:
    return UsageAnalyzer(METADATA_OUTCOME)


def test_fvg_silver_bullet_scenario(analyzer):
    index = GraphIndex(
        [
            _concept("fvg", "FVG"),
            Entity(id="sb", kind=EntityKind.MODEL, name="Silver Bullet"),
            _trade("t1", "win", grade=8),
            _trade("t2", "win", grade=6),
        ],
        [
            _r("r1", "fvg", "sb", RelationshipKind.CONCEPT_USED_IN_MODEL),
            _r("r2", "sb", "t1", RelationshipKind.MODEL_PRODUCES_TRADE),
            _r("r3", "sb", "t2", RelationshipKind.MODEL_PRODUCES_TRADE),
        ],
    )
    report = analyzer.analyze(index)

    fvg = report.concept_scores["FVG"]
    assert fvg.win_rate == 1.0
    assert fvg.sample_size == 2
    assert fvg.avg_quality == pytest.approx(7.0)

    sb = report.model_scores["Silver Bullet"]
    assert sb.win_rate == 1.0 and sb.sample_size == 2

    usage = report.concept_usage[0]
    assert usage.concept.name == "FVG"
    assert [m.name for m in usage.related_models] == ["Silver Bullet"]
    assert usage.usage_frequency == 2
    assert usage.success_rate == 1.0


def test_concept_trades_union_is_deduplicated(analyzer):
    # t1 reaches the concept both through the model and directly
    index = GraphIndex(
        [
            _concept("ob", "Order Block"),
            Entity(id="m", kind=EntityKind.MODEL, name="Model"),
            _trade("t1", "win"),
            _trade("t2", "loss"),
        ],
        [
            _r("r1", "ob", "m", RelationshipKind.CONCEPT_USED_IN_MODEL),
            _r("r2", "m", "t1", RelationshipKind.MODEL_PRODUCES_TRADE),
            _r("r3", "t1", "ob", RelationshipKind.TRADE_USES_CONCEPT),
            _r("r4", "t2", "ob", RelationshipKind.TRADE_USES_CONCEPT),
        ],
    )
    score = analyzer.analyze(index).concept_scores["Order Block"]
    assert score.sample_size == 2
    assert score.win_rate == pytest.approx(0.5)
    assert score.avg_quality is None


def test_unlabeled_trades_are_excluded(analyzer):
    index = GraphIndex(
        [_concept("c", "Breaker"), _trade("t1", "win"), _trade("t2", None)],
        [
            _r("r1", "t1", "c", RelationshipKind.TRADE_USES_CONCEPT),
            _r("r2", "t2", "c", RelationshipKind.TRADE_USES_CONCEPT),
        ],
    )
    report = analyzer.analyze(index)
    assert report.concept_scores["Breaker"].sample_size == 1
    # usage frequency still counts every linked trade
    assert report.concept_usage[0].usage_frequency == 2


def test_win_only_rule_labels_everything():
    analyzer = UsageAnalyzer(OutcomeRule(is_win=lambda t: t.metadata.get("result") == "win"))
    index = GraphIndex(
        [_concept("c", "Breaker"), _trade("t1", "win"), _trade("t2", None)],
        [
            _r("r1", "t1", "c", RelationshipKind.TRADE_USES_CONCEPT),
            _r("r2", "t2", "c", RelationshipKind.TRADE_USES_CONCEPT),
        ],
    )
    score = analyzer.analyze(index).concept_scores["Breaker"]
    assert score.sample_size == 2
    assert score.win_rate == pytest.approx(0.5)


def test_concept_without_trades_has_no_score(analyzer):
    report = analyzer.analyze(GraphIndex([_concept("c", "Liquidity")], []))
    assert report.concept_scores == {}
    assert report.concept_usage[0].success_rate is None
    assert report.concept_usage[0].usage_frequency == 0


def test_pairings_count_each_direction():
    index = GraphIndex(
        [_concept("a", "FVG"), _concept("b", "Order Block"), Entity(id="d", kind="document", name="Doc")],
        [
            _r("r1", "a", "b", RelationshipKind.CONCEPT_RELATED_TO),
            _r("r2", "b", "a", RelationshipKind.CONCEPT_RELATED_TO),
            _r("r3", "a", "d", RelationshipKind.CONCEPT_RELATED_TO),
        ],
    )
    pairings = UsageAnalyzer.pairings(index, index.resolve("a"))
    assert [(p.concept.name, p.count) for p in pairings] == [("Order Block", 2)]


def test_usage_sorted_by_frequency(analyzer):
    index = GraphIndex(
        [_concept("a", "Rare"), _concept("b", "Common"), _trade("t1", "win"), _trade("t2", "win")],
        [
            _r("r1", "t1", "b", RelationshipKind.TRADE_USES_CONCEPT),
            _r("r2", "t2", "b", RelationshipKind.TRADE_USES_CONCEPT),
            _r("r3", "t1", "a", RelationshipKind.TRADE_USES_CONCEPT),
        ],
    )
    usage = analyzer.analyze(index).concept_usage
    assert [u.concept.name for u in usage] == ["Common", "Rare"]
