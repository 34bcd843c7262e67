"""Domain records for the knowledge-graph mining engine.

Entities and relationships are the read-only input snapshot supplied by the
host application. Everything else in this module is an output value object,
built fresh on every mining pass and never retained by the engine.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Mapping, Optional

from pydantic import AliasChoices, BaseModel, Field


class MiningInputError(TypeError):
    """Raised at the engine boundary when the input snapshot is malformed."""


class EntityKind(str, Enum):
    CONCEPT = "concept"
    MODEL = "model"
    TRADE = "trade"
    SCHEMA = "schema"
    CODE_MODULE = "code_module"
    DOCUMENT = "document"


class RelationshipKind(str, Enum):
    CONCEPT_USED_IN_MODEL = "CONCEPT_USED_IN_MODEL"
    MODEL_PRODUCES_TRADE = "MODEL_PRODUCES_TRADE"
    TRADE_USES_CONCEPT = "TRADE_USES_CONCEPT"
    CONCEPT_RELATED_TO = "CONCEPT_RELATED_TO"
    DOCUMENT_DEFINES = "DOCUMENT_DEFINES"
    CONCEPT_DETECTED_BY = "CONCEPT_DETECTED_BY"
    SCHEMA_VALIDATES = "SCHEMA_VALIDATES"
    CONCEPT_PREREQUISITE = "CONCEPT_PREREQUISITE"


class PatternKind(str, Enum):
    CHAIN = "chain"
    HUB = "hub"
    CLUSTER = "cluster"
    BRIDGE = "bridge"


class TrainingPatternKind(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


def kind_label(kind: Any) -> str:
    """Plain string for a kind given as an Enum member or a string."""
    return str(kind.value) if isinstance(kind, Enum) else str(kind)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise MiningInputError(f"bad timestamp {value!r}") from exc
    return None


def _first(record: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in record and record[key] is not None:
            return record[key]
    return default


# ─────────────────────────── Input snapshot ──────────────────────────────────


@dataclass(frozen=True)
class Entity:
    """A typed knowledge-graph node.

    `kind` is a plain string so hosts can introduce kinds the engine does not
    know about; compare against `EntityKind` members, which are str-valued.
    """
    id: str
    kind: str
    name: str
    description: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    tags: frozenset[str] = frozenset()
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", kind_label(self.kind))

    def replace(self, **changes: Any) -> "Entity":
        """Return a copy with `changes` applied and `updated_at` bumped."""
        changes.setdefault("updated_at", _utcnow())
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_dict(cls, record: Mapping[str, Any]) -> "Entity":
        kind = _first(record, "kind", "type")
        if kind is None or "id" not in record:
            raise MiningInputError(f"entity record needs 'id' and 'type': {record!r}")
        return cls(
            id=str(record["id"]),
            kind=kind_label(kind),
            name=str(record.get("name") or record["id"]),
            description=record.get("description"),
            metadata=dict(record.get("metadata") or {}),
            tags=frozenset(record.get("tags") or ()),
            created_at=_parse_timestamp(_first(record, "created_at", "createdAt")),
            updated_at=_parse_timestamp(_first(record, "updated_at", "updatedAt")),
        )


@dataclass(frozen=True)
class Relationship:
    """A typed, directed edge between two entity ids."""
    id: str
    kind: str
    source_id: str
    target_id: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", kind_label(self.kind))

    @classmethod
    def from_dict(cls, record: Mapping[str, Any]) -> "Relationship":
        kind = _first(record, "kind", "type")
        source = _first(record, "source_id", "sourceId", "source")
        target = _first(record, "target_id", "targetId", "target")
        if kind is None or source is None or target is None or "id" not in record:
            raise MiningInputError(
                f"relationship record needs 'id', 'type', source and target: {record!r}"
            )
        return cls(
            id=str(record["id"]),
            kind=kind_label(kind),
            source_id=str(source),
            target_id=str(target),
            metadata=dict(record.get("metadata") or {}),
        )


# ─────────────────────────── Mining outputs ──────────────────────────────────


@dataclass
class Pattern:
    """A structural pattern found in the graph (chain, hub, cluster, bridge)."""
    id: str
    kind: PatternKind
    name: str
    description: str
    member_entities: list[Entity]
    member_relationships: list[Relationship]
    strength: float
    insights: list[str] = field(default_factory=list)


@dataclass
class UsageScore:
    subject_name: str
    win_rate: float
    sample_size: int
    avg_quality: Optional[float] = None


@dataclass
class ConceptPairing:
    concept: Entity
    count: int


@dataclass
class ConceptUsage:
    """How one concept is used across models and trades."""
    concept: Entity
    related_models: list[Entity]
    related_trades: list[Entity]
    usage_frequency: int
    success_rate: Optional[float] = None
    common_pairings: list[ConceptPairing] = field(default_factory=list)


@dataclass
class TrainingPattern:
    """A reproducible success or failure condition mined from trade history."""
    id: str
    kind: TrainingPatternKind
    name: str
    description: str
    confidence: float
    supporting_trade_ids: list[str]
    concepts: list[str] = field(default_factory=list)
    conditions: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    models: list[str] = field(default_factory=list)


@dataclass
class QualityFactor:
    factor: str
    impact: float
    description: str


InsightCategory = Literal[
    "concept_effectiveness",
    "model_performance",
    "setup_quality",
    "execution",
    "market_conditions",
]
InsightPriority = Literal["high", "medium", "low"]


class TrainingInsight(BaseModel):
    """Human-readable recommendation derived from mined statistics.

    Validated with pydantic because the primary source is an external text
    generator; `insight` / `actionable` are accepted as input aliases.
    """
    category: InsightCategory
    statement: str = Field(validation_alias=AliasChoices("statement", "insight"))
    evidence: list[str] = Field(default_factory=list)
    action: str = Field(validation_alias=AliasChoices("action", "actionable"))
    priority: InsightPriority = "medium"


@dataclass
class MiningResult:
    """Everything the deterministic part of a pass produces."""
    structural_patterns: list[Pattern]
    concept_scores: dict[str, UsageScore]
    model_scores: dict[str, UsageScore]
    concept_usage: list[ConceptUsage]
    training_patterns: list[TrainingPattern]
    quality_factors: list[QualityFactor]
    trades_analyzed: int = 0
    winning_count: int = 0
    losing_count: int = 0
    dangling_relationship_ids: list[str] = field(default_factory=list)


@dataclass
class TrainingModel:
    """A mining pass plus synthesized insights, stamped with a version."""
    result: MiningResult
    insights: list[TrainingInsight]
    insight_source: str  # "llm" | "fallback"
    version: str
    trained_at: datetime

    @property
    def training_patterns(self) -> list[TrainingPattern]:
        return self.result.training_patterns

    @property
    def concept_scores(self) -> dict[str, UsageScore]:
        return self.result.concept_scores

    @property
    def model_scores(self) -> dict[str, UsageScore]:
        return self.result.model_scores
