"""Stage nodes, one per workflow stage."""

from bookflow.nodes.base import AgentStageNode
from bookflow.nodes.conversation import ConversationNode, RequirementsFallback
from bookflow.nodes.generation import UnitDegradation, UnitGenerationNode, UnitNode
from bookflow.nodes.outline import OutlineNode
from bookflow.nodes.review import (
    ArtifactNode,
    ConsistencyReviewNode,
    FormattingNode,
    QualityReviewNode,
)
from bookflow.nodes.spawning import SimplifiedOutlinePolicy, UnitSpawningNode, simplify_outline

__all__ = [
    "AgentStageNode",
    "ArtifactNode",
    "ConsistencyReviewNode",
    "ConversationNode",
    "FormattingNode",
    "OutlineNode",
    "QualityReviewNode",
    "RequirementsFallback",
    "SimplifiedOutlinePolicy",
    "UnitDegradation",
    "UnitGenerationNode",
    "UnitNode",
    "UnitSpawningNode",
    "simplify_outline",
]
