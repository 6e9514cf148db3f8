"""
Memory Models - Typed nodes and edges for the hybrid memory graph

WHAT: Pydantic models for the eight node variants, typed edges and query results
WHERE: hybridmem/runtime/memory/models.py - data layer
WHO: Graph store, working memory, orchestrator creating/validating records
TIME: Model validation <1ms

Every node shares a common header (id, timestamps, access counters,
importance, confidence, optional embedding, metadata) and carries
variant-specific fields selected by ``node_type``. Documents written to the
backing store also carry:
- Unix timestamps next to each ISO timestamp (range filters compare these)
- A lower-cased ``text`` field used by keyword search

Notes:
- importance, confidence and edge weight are clamped to [0, 1] on
  construction and on assignment
- embedding length is not known here; the graph store checks it against
  the configured dimension
"""

from __future__ import annotations

import math
import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from ...errors import ValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_id() -> str:
    return str(uuid.uuid4())


class NodeType(str, Enum):
    CONCEPT = "concept"
    FACT = "fact"
    EVENT = "event"
    ENTITY = "entity"
    DOCUMENT = "document"
    QUESTION = "question"
    INSIGHT = "insight"
    MEMORY = "memory"


class MemoryType(str, Enum):
    SHORT_TERM = "short_term"
    LONG_TERM = "long_term"
    WORKING = "working"
    EPISODIC = "episodic"
    SEMANTIC = "semantic"
    PROCEDURAL = "procedural"


class EdgeType(str, Enum):
    # semantic
    RELATES_TO = "relates_to"
    IS_A = "is_a"
    PART_OF = "part_of"
    INSTANCE_OF = "instance_of"
    HAS_PROPERTY = "has_property"
    SIMILAR_TO = "similar_to"
    OPPOSITE_OF = "opposite_of"
    # causal
    CAUSES = "causes"
    CAUSED_BY = "caused_by"
    LEADS_TO = "leads_to"
    ENABLES = "enables"
    PREVENTS = "prevents"
    # temporal
    BEFORE = "before"
    AFTER = "after"
    DURING = "during"
    TEMPORAL_NEXT = "temporal_next"
    TEMPORAL_PREV = "temporal_prev"
    # epistemic
    SUPPORTS = "supports"
    CONTRADICTS = "contradicts"
    DERIVED_FROM = "derived_from"
    ANSWERS = "answers"
    # structural
    CONTAINS = "contains"
    REFERENCES = "references"
    MENTIONS = "mentions"
    # memory
    REMINDS_OF = "reminds_of"
    TRIGGERED_BY = "triggered_by"
    ASSOCIATED_WITH = "associated_with"


def _clamp_unit(value: Any) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return value
    if math.isnan(value):
        raise ValueError("value must be a number, got NaN")
    return min(1.0, max(0.0, float(value)))


class BaseNode(BaseModel):
    """Header shared by every node variant."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=generate_id, min_length=1)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    accessed_at: datetime = Field(default_factory=utc_now)
    access_count: int = Field(default=0, ge=0)
    importance: float = 0.5
    confidence: float = 1.0
    embedding: Optional[List[float]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("importance", "confidence", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> Any:
        return _clamp_unit(value)

    @field_validator("created_at", "updated_at", "accessed_at", mode="after")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def to_arango_doc(self) -> Dict[str, Any]:
        """Convert to a backing-store document."""
        doc = self.model_dump(mode="json")
        doc["_key"] = self.id
        doc["text"] = node_text(self).lower()  # type: ignore[arg-type]
        for name, value in self:
            if isinstance(value, datetime):
                doc[f"{name}_unix"] = value.timestamp()
        return doc


class ConceptNode(BaseNode):
    node_type: Literal["concept"] = "concept"
    name: str
    description: Optional[str] = None
    synonyms: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class FactNode(BaseNode):
    node_type: Literal["fact"] = "fact"
    statement: str
    source: Optional[str] = None
    evidence: List[str] = Field(default_factory=list)
    verified: bool = False
    validity_start: Optional[datetime] = None
    validity_end: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_validity(self) -> "FactNode":
        if self.validity_start and self.validity_end and self.validity_end < self.validity_start:
            raise ValueError("validity_end must not precede validity_start")
        return self


class EventNode(BaseNode):
    node_type: Literal["event"] = "event"
    name: Optional[str] = None
    description: str
    timestamp: datetime = Field(default_factory=utc_now)
    duration: Optional[float] = None  # seconds
    participants: List[str] = Field(default_factory=list)
    location: Optional[str] = None
    outcome: Optional[str] = None


class EntityNode(BaseNode):
    node_type: Literal["entity"] = "entity"
    name: str
    entity_type: Literal["person", "organization", "system", "place", "object"] = "object"
    attributes: Dict[str, Any] = Field(default_factory=dict)
    aliases: List[str] = Field(default_factory=list)


class DocumentNode(BaseNode):
    node_type: Literal["document"] = "document"
    title: str
    content: str
    path: Optional[str] = None
    author: Optional[str] = None
    summary: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    language: str = "en"


class QuestionNode(BaseNode):
    node_type: Literal["question"] = "question"
    question: str
    context: Optional[str] = None
    answered: bool = False
    answer_nodes: List[str] = Field(default_factory=list)
    asked_by: Optional[str] = None


class InsightNode(BaseNode):
    node_type: Literal["insight"] = "insight"
    insight: str
    reasoning: str = ""
    supporting_nodes: List[str] = Field(default_factory=list)
    impact: Literal["low", "medium", "high"] = "medium"
    actionable: bool = False


class MemoryNode(BaseNode):
    node_type: Literal["memory"] = "memory"
    content: str
    memory_type: MemoryType = MemoryType.SHORT_TERM
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)
    decay_rate: float = 0.1
    reinforcement_count: int = Field(default=0, ge=0)
    # working-memory bookkeeping
    priority: float = 0.5
    focused: bool = False
    promoted_at: Optional[datetime] = None
    decayed_at: Optional[datetime] = None

    @field_validator("decay_rate", "priority", mode="before")
    @classmethod
    def _clamp_memory(cls, value: Any) -> Any:
        return _clamp_unit(value)


Node = Annotated[
    Union[
        ConceptNode,
        FactNode,
        EventNode,
        EntityNode,
        DocumentNode,
        QuestionNode,
        InsightNode,
        MemoryNode,
    ],
    Field(discriminator="node_type"),
]

NODE_ADAPTER: TypeAdapter[Any] = TypeAdapter(Node)

NODE_CLASSES: Dict[NodeType, type] = {
    NodeType.CONCEPT: ConceptNode,
    NodeType.FACT: FactNode,
    NodeType.EVENT: EventNode,
    NodeType.ENTITY: EntityNode,
    NodeType.DOCUMENT: DocumentNode,
    NodeType.QUESTION: QuestionNode,
    NodeType.INSIGHT: InsightNode,
    NodeType.MEMORY: MemoryNode,
}


class Edge(BaseModel):
    """Directed, typed, weighted relationship between two nodes."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=generate_id, min_length=1)
    edge_type: EdgeType
    source: str = Field(min_length=1)
    target: str = Field(min_length=1)
    weight: float = 1.0
    bidirectional: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("weight", mode="before")
    @classmethod
    def _clamp_weight(cls, value: Any) -> Any:
        return _clamp_unit(value)

    def to_arango_doc(self, nodes_collection: str) -> Dict[str, Any]:
        """Convert to an edge document; ``_from``/``_to`` point into the node collection."""
        doc = self.model_dump(mode="json")
        doc["_key"] = self.id
        doc["_from"] = f"{nodes_collection}/{self.source}"
        doc["_to"] = f"{nodes_collection}/{self.target}"
        doc["created_at_unix"] = self.created_at.timestamp()
        return doc

    @classmethod
    def from_arango_doc(cls, doc: Dict[str, Any]) -> Edge:
        data = {k: v for k, v in doc.items() if not k.startswith("_") and not k.endswith("_unix")}
        data.setdefault("id", doc.get("_key"))
        try:
            return cls.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(f"Malformed edge document {doc.get('_key')}", details={"errors": exc.errors()}) from exc


class GraphQueryResult(BaseModel):
    """Nodes and edges returned by a query, plus timing/source stats."""

    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
    stats: Dict[str, Any] = Field(default_factory=dict)


def node_from_arango_doc(doc: Dict[str, Any]) -> Any:
    """Create the matching node variant from a backing-store document."""
    data = {
        k: v
        for k, v in doc.items()
        if not k.startswith("_") and not k.endswith("_unix") and k != "text"
    }
    data.setdefault("id", doc.get("_key"))
    try:
        return NODE_ADAPTER.validate_python(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Malformed node document {doc.get('_key')}", details={"errors": exc.errors()}) from exc


def node_text(node: BaseNode) -> str:
    """Primary textual content of a node, used for embedding and keyword search."""
    if isinstance(node, FactNode):
        return node.statement
    if isinstance(node, EventNode):
        return node.description
    if isinstance(node, (ConceptNode, EntityNode)):
        if isinstance(node, ConceptNode) and node.description:
            return f"{node.name} {node.description}"
        return node.name
    if isinstance(node, DocumentNode):
        return f"{node.title} {node.content}"
    if isinstance(node, QuestionNode):
        return node.question
    if isinstance(node, InsightNode):
        return node.insight
    if isinstance(node, MemoryNode):
        return node.content
    return ""


_ISO_DATE = re.compile(r"\d{4}-\d{2}-\d{2}")
_ENTITY_PATTERN = re.compile(r"^[A-Z][a-z]+ [A-Z][a-z]+$")
DOCUMENT_MIN_CHARS = 200


def infer_node_type(content: str) -> NodeType:
    """Guess a node variant from free text when the caller does not specify one.

    Checked in order: question mark, causal wording, dates or "happened",
    a two-word proper name, long text, " is "/" are ". Anything else is a concept.
    """
    if content.endswith("?"):
        return NodeType.QUESTION
    if "because" in content or "therefore" in content:
        return NodeType.INSIGHT
    if _ISO_DATE.search(content) or "happened" in content or "occurred" in content:
        return NodeType.EVENT
    if _ENTITY_PATTERN.match(content):
        return NodeType.ENTITY
    if len(content) > DOCUMENT_MIN_CHARS:
        return NodeType.DOCUMENT
    if " is " in content or " are " in content:
        return NodeType.FACT
    return NodeType.CONCEPT


def build_node(
    content: str,
    node_type: NodeType,
    *,
    memory_type: MemoryType = MemoryType.SHORT_TERM,
    metadata: Optional[Dict[str, Any]] = None,
    **fields: Any,
) -> Any:
    """Build a node of ``node_type`` with ``content`` placed in its primary text field."""
    node_type = NodeType(node_type)
    payload: Dict[str, Any] = {"node_type": node_type.value, "metadata": dict(metadata or {})}
    if node_type == NodeType.CONCEPT:
        payload["name"] = content
    elif node_type == NodeType.FACT:
        payload["statement"] = content
    elif node_type == NodeType.EVENT:
        payload["description"] = content
        payload["name"] = content[:80]
    elif node_type == NodeType.ENTITY:
        payload["name"] = content
    elif node_type == NodeType.DOCUMENT:
        payload["title"] = content[:80]
        payload["content"] = content
    elif node_type == NodeType.QUESTION:
        payload["question"] = content
    elif node_type == NodeType.INSIGHT:
        payload["insight"] = content
    else:
        payload["content"] = content
        payload["memory_type"] = memory_type
    payload.update({k: v for k, v in fields.items() if v is not None})
    try:
        return NODE_ADAPTER.validate_python(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {node_type.value} node", details={"errors": exc.errors()}) from exc


def supporting_key(node_ids: Iterable[str]) -> str:
    """Order-independent key identifying a set of nodes."""
    return "|".join(sorted(node_ids))


__all__ = [
    "NodeType",
    "MemoryType",
    "EdgeType",
    "BaseNode",
    "ConceptNode",
    "FactNode",
    "EventNode",
    "EntityNode",
    "DocumentNode",
    "QuestionNode",
    "InsightNode",
    "MemoryNode",
    "Node",
    "NODE_ADAPTER",
    "NODE_CLASSES",
    "Edge",
    "GraphQueryResult",
    "node_from_arango_doc",
    "node_text",
    "infer_node_type",
    "build_node",
    "supporting_key",
    "utc_now",
    "generate_id",
]
