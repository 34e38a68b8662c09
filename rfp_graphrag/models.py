from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkflowStep(str, Enum):
    DOCUMENT_INGESTION = "document_ingestion"
    REQUIREMENTS_ANALYSIS = "requirements_analysis"
    CLARIFICATION_QUESTIONS = "clarification_questions"
    ANSWER_EXTRACTION = "answer_extraction"
    RESPONSE_COMPILATION = "response_compilation"
    COMPLETED = "completed"
    # Legacy marker written by older failure handling; only ever repaired.
    FAILED = "failed"


# Ordered pipeline; COMPLETED is the terminal checkpoint.
STEP_SEQUENCE: List[WorkflowStep] = [
    WorkflowStep.DOCUMENT_INGESTION,
    WorkflowStep.REQUIREMENTS_ANALYSIS,
    WorkflowStep.CLARIFICATION_QUESTIONS,
    WorkflowStep.ANSWER_EXTRACTION,
    WorkflowStep.RESPONSE_COMPILATION,
]

STEP_PROGRESS: Dict[WorkflowStep, int] = {
    WorkflowStep.DOCUMENT_INGESTION: 10,
    WorkflowStep.REQUIREMENTS_ANALYSIS: 30,
    WorkflowStep.CLARIFICATION_QUESTIONS: 50,
    WorkflowStep.ANSWER_EXTRACTION: 70,
    WorkflowStep.RESPONSE_COMPILATION: 90,
    WorkflowStep.COMPLETED: 100,
}

STEP_CONFIDENCE: Dict[WorkflowStep, float] = {
    WorkflowStep.DOCUMENT_INGESTION: 0.9,
    WorkflowStep.REQUIREMENTS_ANALYSIS: 0.85,
    WorkflowStep.CLARIFICATION_QUESTIONS: 0.88,
    WorkflowStep.ANSWER_EXTRACTION: 0.82,
    WorkflowStep.RESPONSE_COMPILATION: 0.95,
}

PRIORITIES = ("high", "medium", "low")

_WORKFLOW_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def validate_workflow_id(workflow_id: str) -> str:
    """Workflow ids become directory and file names, so keep them path-safe."""
    if not isinstance(workflow_id, str) or not _WORKFLOW_ID_RE.match(workflow_id):
        raise ValueError(f"Invalid workflow id: {workflow_id!r}")
    return workflow_id


def normalize_priority(value: Any) -> str:
    text = str(value or "").strip().lower()
    return text if text in PRIORITIES else "medium"


def clamp_progress(value: Any) -> int:
    try:
        progress = int(round(float(value)))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, progress))


class EntityType(str, Enum):
    PERSON = "person"
    ORGANIZATION = "organization"
    LOCATION = "location"
    TECHNOLOGY = "technology"
    CONCEPT = "concept"

    @classmethod
    def coerce(cls, value: Any) -> "EntityType":
        """Map free-form type labels onto the closed set (unknown -> concept)."""
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value == text:
                return member
        return cls.CONCEPT


@dataclass
class Chunk:
    id: str
    document_id: str
    index: int
    content: str
    embedding: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "index": self.index,
            "content": self.content,
            "embedding": list(self.embedding),
            "metadata": dict(self.metadata),
        }


@dataclass
class SearchResult:
    """One ranked passage returned by the vector store."""

    content: str
    document_id: str
    similarity: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    chunk_id: Optional[str] = None


@dataclass
class Entity:
    name: str
    type: EntityType
    confidence: float = 0.7
    frequency: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.value,
            "confidence": self.confidence,
            "frequency": self.frequency,
        }


@dataclass
class Relationship:
    source: str
    target: str
    type: str = "RELATED_TO"
    confidence: float = 0.8

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "type": self.type,
            "confidence": self.confidence,
        }


@dataclass
class GraphCandidate:
    """A chunk reached by graph traversal from query-matching entities."""

    chunk_id: str
    content: str
    document_id: str
    entities: List[str] = field(default_factory=list)
    related_entities: List[str] = field(default_factory=list)
    relationship_score: int = 0
    graph_score: float = 0.0


@dataclass
class HybridResult:
    """
    Fused retrieval result.

    ``key`` is derived by ``ranking.result_key``; ``source`` is one of
    ``vector``, ``graph`` or ``hybrid``.
    """

    key: str
    content: str
    source: str
    score: float = 0.0
    vector_score: float = 0.0
    graph_score: float = 0.0
    document_id: Optional[str] = None
    chunk_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    entities: List[str] = field(default_factory=list)
    related_entities: List[str] = field(default_factory=list)
    relationships: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "content": self.content,
            "source": self.source,
            "score": self.score,
            "vector_score": self.vector_score,
            "graph_score": self.graph_score,
            "document_id": self.document_id,
            "chunk_id": self.chunk_id,
            "metadata": dict(self.metadata),
            "entities": list(self.entities),
            "related_entities": list(self.related_entities),
            "relationships": list(self.relationships),
        }


__all__ = [
    "WorkflowStatus",
    "WorkflowStep",
    "STEP_SEQUENCE",
    "STEP_PROGRESS",
    "STEP_CONFIDENCE",
    "PRIORITIES",
    "validate_workflow_id",
    "normalize_priority",
    "clamp_progress",
    "EntityType",
    "Chunk",
    "SearchResult",
    "Entity",
    "Relationship",
    "GraphCandidate",
    "HybridResult",
]
