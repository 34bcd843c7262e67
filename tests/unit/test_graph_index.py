"""Unit tests for GraphIndex and the domain records it indexes."""
import pytest

from kgminer.core.graph_index import GraphIndex
from kgminer.core.types import Entity, EntityKind, MiningInputError, Relationship, RelationshipKind


def _e(id: str, kind: str = EntityKind.CONCEPT, **metadata) -> Entity:
    return Entity(id=id, kind=kind, name=id.upper(), metadata=metadata)


def _r(id: str, src: str, dst: str, kind: str = RelationshipKind.CONCEPT_RELATED_TO) -> Relationship:
    return Relationship(id=id, kind=kind, source_id=src, target_id=dst)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

def test_entity_kind_enum_normalized_to_plain_string():
    e = Entity(id="c1", kind=EntityKind.CONCEPT, name="FVG")
    assert e.kind == "concept"
    assert f"{e.kind}" == "concept"


def test_entity_from_dict_accepts_camel_case():
    e = Entity.from_dict({
        "id": "t1",
        "type": "trade",
        "name": "Trade 1",
        "metadata": {"result": "win"},
        "tags": ["london"],
        "createdAt": "2024-01-02T10:00:00Z",
    })
    assert e.kind == EntityKind.TRADE
    assert e.metadata == {"result": "win"}
    assert e.tags == frozenset({"london"})
    assert e.created_at is not None and e.created_at.year == 2024


def test_entity_from_dict_rejects_missing_kind():
    with pytest.raises(MiningInputError):
        Entity.from_dict({"id": "x", "name": "no kind"})


def test_relationship_from_dict_accepts_source_aliases():
    r = Relationship.from_dict({
        "id": "r1", "type": "TRADE_USES_CONCEPT", "sourceId": "t1", "targetId": "c1",
    })
    assert (r.source_id, r.target_id) == ("t1", "c1")
    assert r.kind == RelationshipKind.TRADE_USES_CONCEPT


def test_entity_replace_bumps_updated_at():
    e = _e("c1")
    changed = e.replace(name="Fair Value Gap")
    assert changed.name == "Fair Value Gap"
    assert changed.updated_at is not None
    assert e.name == "C1"


# ---------------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------------

def test_dangling_relationship_is_skipped():
    index = GraphIndex(
        [_e("a"), _e("b")],
        [_r("r1", "a", "b"), _r("r2", "a", "ghost")],
    )
    assert [r.id for r in index.valid_relationships] == ["r1"]
    assert [r.id for r in index.dangling] == ["r2"]
    assert index.degree("a") == 1
    assert index.neighbor_ids("a") == ["b"]


def test_degree_counts_in_and_out():
    index = GraphIndex(
        [_e("a"), _e("b"), _e("c")],
        [_r("r1", "a", "b"), _r("r2", "c", "a"), _r("r3", "a", "c")],
    )
    assert index.degree("a") == 3
    assert index.neighbor_ids("a") == ["b", "c"]
    assert len(index.relationships_of("a")) == 3


def test_self_loop_counts_twice_but_is_not_a_neighbor():
    index = GraphIndex([_e("a")], [_r("r1", "a", "a")])
    assert index.degree("a") == 2
    assert index.neighbor_ids("a") == []
    assert len(index.relationships_of("a")) == 1


def test_duplicate_entity_id_last_record_wins():
    index = GraphIndex([_e("a"), Entity(id="a", kind="model", name="Second")], [])
    assert len(index) == 1
    assert index.resolve("a").name == "Second"


def test_targets_and_sources_filter_by_kind_and_dedupe():
    entities = [
        _e("m1", EntityKind.MODEL),
        _e("t1", EntityKind.TRADE),
        _e("d1", EntityKind.DOCUMENT),
    ]
    rels = [
        _r("r1", "m1", "t1", RelationshipKind.MODEL_PRODUCES_TRADE),
        _r("r2", "m1", "t1", RelationshipKind.MODEL_PRODUCES_TRADE),
        _r("r3", "m1", "d1", RelationshipKind.MODEL_PRODUCES_TRADE),
    ]
    index = GraphIndex(entities, rels)
    targets = index.targets("m1", RelationshipKind.MODEL_PRODUCES_TRADE, EntityKind.TRADE)
    assert [t.id for t in targets] == ["t1"]
    sources = index.sources("t1", RelationshipKind.MODEL_PRODUCES_TRADE)
    assert [s.id for s in sources] == ["m1"]


def test_relationships_within_members_only():
    index = GraphIndex(
        [_e("a"), _e("b"), _e("c")],
        [_r("r1", "a", "b"), _r("r2", "b", "c")],
    )
    assert [r.id for r in index.relationships_within({"a", "b"})] == ["r1"]


def test_empty_index():
    index = GraphIndex([], [])
    assert len(index) == 0
    assert index.entities == []
    assert index.resolve("missing") is None
    assert index.degree("missing") == 0
