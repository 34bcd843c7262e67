"""Structural pattern detection — chains, hubs, clusters, bridges.

Four independent detectors share one GraphIndex. Each returns a list of
Pattern value objects; none of them raise on sparse or empty graphs.

  chains   — concept → model → trade pipelines
  hubs     — entities whose degree clears max(5, R/E)
  clusters — BFS components capped at 8 members, first 5 kept
  bridges  — entities whose neighbors span 2+ kinds, top 5 by strength
"""

from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass, field

import structlog

from kgminer.core.graph_index import GraphIndex
from kgminer.core.types import (
    Entity,
    EntityKind,
    Pattern,
    PatternKind,
    RelationshipKind,
)

log = structlog.get_logger()

CHAIN_STRENGTH_DIVISOR = 10
HIGH_FREQUENCY_CHAIN = 3

HUB_MIN_DEGREE = 5
HUB_STRENGTH_FACTOR = 0.5

CLUSTER_MAX_MEMBERS = 8
CLUSTER_MIN_MEMBERS = 3
CLUSTER_LIMIT = 5

BRIDGE_MIN_RELATIONSHIPS = 2
BRIDGE_MIN_KINDS = 2
BRIDGE_STRENGTH_DIVISOR = 5
BRIDGE_LIMIT = 5


def analyze_structure(index: GraphIndex) -> list[Pattern]:
    """Run all four detectors: chains, hubs, clusters, bridges (in that order)."""
    chains = detect_chains(index)
    hubs = detect_hubs(index)
    clusters = detect_clusters(index)
    bridges = detect_bridges(index)
    log.info(
        "patterns.structure_analyzed",
        chains=len(chains),
        hubs=len(hubs),
        clusters=len(clusters),
        bridges=len(bridges),
    )
    return [*chains, *hubs, *clusters, *bridges]


# ─────────────────────────── Chains ──────────────────────────────────────────


def detect_chains(index: GraphIndex) -> list[Pattern]:
    patterns: list[Pattern] = []
    for concept in index.of_kind(EntityKind.CONCEPT):
        models = index.targets(
            concept.id, RelationshipKind.CONCEPT_USED_IN_MODEL, EntityKind.MODEL
        )
        for model in models:
            trades = index.targets(
                model.id, RelationshipKind.MODEL_PRODUCES_TRADE, EntityKind.TRADE
            )
            if not trades:
                continue

            members = [concept, model, *trades]
            member_ids = {e.id for e in members}
            count = len(trades)
            patterns.append(Pattern(
                id=f"chain-{concept.id}-{model.id}",
                kind=PatternKind.CHAIN,
                name=f"{concept.name} → {model.name} Chain",
                description=(
                    f'Concept "{concept.name}" flows through model "{model.name}" '
                    f"to produce {count} trade(s)"
                ),
                member_entities=members,
                member_relationships=index.relationships_within(member_ids),
                strength=count / CHAIN_STRENGTH_DIVISOR,
                insights=[
                    "This concept is actively used in trading",
                    f'Model "{model.name}" applies this concept {count} time(s)',
                    "High-frequency pattern" if count > HIGH_FREQUENCY_CHAIN else "Emerging pattern",
                ],
            ))
    return patterns


# ─────────────────────────── Hubs ────────────────────────────────────────────


def hub_threshold(index: GraphIndex) -> float:
    if len(index) == 0:
        return float(HUB_MIN_DEGREE)
    return max(HUB_MIN_DEGREE, len(index.valid_relationships) / len(index))


def detect_hubs(index: GraphIndex) -> list[Pattern]:
    if len(index) == 0:
        return []

    threshold = hub_threshold(index)
    patterns: list[Pattern] = []
    for entity in index.entities:
        degree = index.degree(entity.id)
        if degree == 0 or degree < threshold:
            continue

        neighbor_ids = index.neighbors_of(entity.id)
        neighbors = [e for e in index.entities if e.id in neighbor_ids]
        members = [entity, *neighbors]
        patterns.append(Pattern(
            id=f"hub-{entity.id}",
            kind=PatternKind.HUB,
            name=f"{entity.name} Hub",
            description=(
                f'"{entity.name}" is a central {entity.kind} connected to '
                f"{degree} other entities"
            ),
            member_entities=members,
            member_relationships=index.relationships_of(entity.id),
            strength=degree / (len(index) * HUB_STRENGTH_FACTOR),
            insights=[
                f"This {entity.kind} is highly interconnected",
                f"Connected to {len(neighbors)} entities",
                "Consider this a foundational element in your trading system",
            ],
        ))
    return patterns


# ─────────────────────────── Clusters ────────────────────────────────────────


@dataclass
class ClusterTraversal:
    """Visited set shared by every BFS of one detect_clusters() call."""
    visited: set[str] = field(default_factory=set)

    def grow(self, index: GraphIndex, start_id: str, cap: int = CLUSTER_MAX_MEMBERS) -> list[str]:
        """BFS from `start_id`, stopping growth at `cap` members.

        Members are marked visited as they are dequeued; neighbors left out by
        the cap stay unvisited and may seed a later cluster.
        """
        members: dict[str, None] = {start_id: None}
        queue = deque([start_id])
        while queue:
            current = queue.popleft()
            self.visited.add(current)
            for neighbor in index.neighbor_ids(current):
                if neighbor in self.visited or neighbor in members:
                    continue
                if len(members) >= cap:
                    break
                members[neighbor] = None
                queue.append(neighbor)
        return list(members)


def _dominant_kind(entities: list[Entity]) -> str:
    counts = Counter(e.kind for e in entities)
    if not counts:
        return "mixed"
    kind, _ = counts.most_common(1)[0]
    return kind


def detect_clusters(index: GraphIndex, traversal: ClusterTraversal | None = None) -> list[Pattern]:
    traversal = traversal or ClusterTraversal()
    patterns: list[Pattern] = []

    for entity in index.entities:
        if entity.id in traversal.visited:
            continue
        member_ids = traversal.grow(index, entity.id)
        size = len(member_ids)
        if size < CLUSTER_MIN_MEMBERS:
            continue

        members = [index.resolve(i) for i in member_ids]
        id_set = set(member_ids)
        rels = index.relationships_within(id_set)
        dominant = _dominant_kind(members)
        patterns.append(Pattern(
            id=f"cluster-{entity.id}",
            kind=PatternKind.CLUSTER,
            name=f"{dominant.replace('_', ' ').title()} Cluster",
            description=f"A group of {size} closely related entities",
            member_entities=members,
            member_relationships=rels,
            strength=len(rels) / (size * (size - 1) / 2),
            insights=[
                f"Contains {size} interconnected entities",
                f"Primarily {dominant} entities",
                "These entities form a cohesive knowledge unit",
            ],
        ))
        if len(patterns) >= CLUSTER_LIMIT:
            break

    return patterns


# ─────────────────────────── Bridges ─────────────────────────────────────────


def detect_bridges(index: GraphIndex) -> list[Pattern]:
    patterns: list[Pattern] = []
    for entity in index.entities:
        rels = index.relationships_of(entity.id)
        if len(rels) < BRIDGE_MIN_RELATIONSHIPS:
            continue

        neighbors = [index.resolve(i) for i in index.neighbor_ids(entity.id)]
        kinds: dict[str, None] = {}
        for neighbor in neighbors:
            kinds.setdefault(neighbor.kind, None)
        if len(kinds) < BRIDGE_MIN_KINDS:
            continue

        patterns.append(Pattern(
            id=f"bridge-{entity.id}",
            kind=PatternKind.BRIDGE,
            name=f"{entity.name} Bridge",
            description=f'"{entity.name}" connects {len(kinds)} different types of entities',
            member_entities=[entity, *neighbors],
            member_relationships=rels,
            strength=len(kinds) / BRIDGE_STRENGTH_DIVISOR,
            insights=[
                f"Bridges {', '.join(kinds)} entities",
                "Critical connection point in knowledge graph",
                "Removing this entity would fragment the graph",
            ],
        ))

    patterns.sort(key=lambda p: p.strength, reverse=True)
    return patterns[:BRIDGE_LIMIT]
