"""TypedDict state for the LangGraph training pipeline."""
from typing_extensions import NotRequired, TypedDict

from kgminer.core.graph_index import GraphIndex
from kgminer.core.insights import InsightSynthesis
from kgminer.core.outcomes import OutcomeReport
from kgminer.core.types import Entity, Pattern, Relationship
from kgminer.core.usage import UsageReport


class TrainingState(TypedDict):
    """State threaded through build_index → ... → synthesize_insights."""
    entities: list[Entity]
    relationships: list[Relationship]
    index: NotRequired[GraphIndex]
    structural_patterns: NotRequired[list[Pattern]]
    usage: NotRequired[UsageReport]
    outcomes: NotRequired[OutcomeReport]
    synthesis: NotRequired[InsightSynthesis | None]
    error: NotRequired[str | None]
