"""GraphIndex — adjacency lookups over one entity/relationship snapshot.

Built once per mining pass in O(E + R). Relationships whose endpoints do not
resolve are kept in `dangling` and left out of every adjacency structure, so
downstream detectors never see them.
"""

from __future__ import annotations

from typing import Iterable, Optional

import structlog

from kgminer.core.types import Entity, Relationship

log = structlog.get_logger()


class GraphIndex:
    """Read-only view of a snapshot: id lookup plus in/out adjacency lists."""

    def __init__(self, entities: Iterable[Entity], relationships: Iterable[Relationship]):
        self._entities: dict[str, Entity] = {}
        for entity in entities:
            if entity.id in self._entities:
                log.debug("graph_index.duplicate_entity", entity_id=entity.id)
            self._entities[entity.id] = entity

        self._outgoing: dict[str, list[Relationship]] = {}
        self._incoming: dict[str, list[Relationship]] = {}
        self._incident: dict[str, list[Relationship]] = {}
        self.valid_relationships: list[Relationship] = []
        self.dangling: list[Relationship] = []

        for rel in relationships:
            if rel.source_id not in self._entities or rel.target_id not in self._entities:
                self.dangling.append(rel)
                continue
            self.valid_relationships.append(rel)
            self._outgoing.setdefault(rel.source_id, []).append(rel)
            self._incoming.setdefault(rel.target_id, []).append(rel)
            self._incident.setdefault(rel.source_id, []).append(rel)
            if rel.target_id != rel.source_id:
                self._incident.setdefault(rel.target_id, []).append(rel)

        if self.dangling:
            log.debug(
                "graph_index.dangling_skipped",
                count=len(self.dangling),
                ids=[r.id for r in self.dangling[:10]],
            )
        log.debug(
            "graph_index.built",
            entities=len(self._entities),
            relationships=len(self.valid_relationships),
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @property
    def entities(self) -> list[Entity]:
        """Entities in input order (last record wins for duplicate ids)."""
        return list(self._entities.values())

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._entities

    def resolve(self, entity_id: str) -> Optional[Entity]:
        return self._entities.get(entity_id)

    def of_kind(self, kind: str) -> list[Entity]:
        return [e for e in self._entities.values() if e.kind == kind]

    def relationships_of(self, entity_id: str) -> list[Relationship]:
        """Incident relationships (in and out), in input order."""
        return list(self._incident.get(entity_id, ()))

    def degree(self, entity_id: str) -> int:
        """In-degree plus out-degree; a self-loop counts twice."""
        return len(self._outgoing.get(entity_id, ())) + len(self._incoming.get(entity_id, ()))

    def neighbor_ids(self, entity_id: str) -> list[str]:
        """Distinct neighbor ids in first-seen order, excluding the entity itself."""
        seen: dict[str, None] = {}
        for rel in self._incident.get(entity_id, ()):
            other = rel.target_id if rel.source_id == entity_id else rel.source_id
            if other != entity_id:
                seen.setdefault(other, None)
        return list(seen)

    def neighbors_of(self, entity_id: str) -> set[str]:
        return set(self.neighbor_ids(entity_id))

    def outgoing(self, entity_id: str, kind: Optional[str] = None) -> list[Relationship]:
        rels = self._outgoing.get(entity_id, ())
        return [r for r in rels if kind is None or r.kind == kind]

    def incoming(self, entity_id: str, kind: Optional[str] = None) -> list[Relationship]:
        rels = self._incoming.get(entity_id, ())
        return [r for r in rels if kind is None or r.kind == kind]

    def targets(
        self, entity_id: str, rel_kind: str, target_kind: Optional[str] = None
    ) -> list[Entity]:
        """Distinct entities reached by outgoing `rel_kind` edges, in edge order."""
        found: dict[str, Entity] = {}
        for rel in self.outgoing(entity_id, rel_kind):
            target = self._entities[rel.target_id]
            if target_kind is None or target.kind == target_kind:
                found.setdefault(target.id, target)
        return list(found.values())

    def sources(
        self, entity_id: str, rel_kind: str, source_kind: Optional[str] = None
    ) -> list[Entity]:
        """Distinct entities with an incoming `rel_kind` edge to `entity_id`."""
        found: dict[str, Entity] = {}
        for rel in self.incoming(entity_id, rel_kind):
            source = self._entities[rel.source_id]
            if source_kind is None or source.kind == source_kind:
                found.setdefault(source.id, source)
        return list(found.values())

    def relationships_within(self, member_ids: set[str]) -> list[Relationship]:
        """Valid relationships with both endpoints inside `member_ids`."""
        return [
            r for r in self.valid_relationships
            if r.source_id in member_ids and r.target_id in member_ids
        ]
