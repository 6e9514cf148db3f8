"""
Hybrid Memory Runtime - Graph + vector + working memory

WHAT: Async engine storing typed knowledge nodes and retrieving them hybridly
WHERE: hybridmem/runtime/memory/ - runtime orchestration subsystem
WHO: Applications and agents that need persistent, searchable memory
TIME: store ≈ one write + one embedding; search bounded by its slowest leg

Components:
- GraphStore: typed nodes/edges on ArangoDB (or the in-process client)
- VectorIndex: flat (numpy) or hnsw (hnswlib) nearest-neighbour search
- WorkingMemory: bounded per-session scratchpad with focus and attention
- ConsolidationEngine: promotion, merge, pruning and decay
- ContradictionDetector / InsightGenerator: epistemic maintenance
- MemoryOrchestrator: the public facade returning Result envelopes
"""

from .cancellation import CancellationToken
from .consolidation import ConsolidationConfig, ConsolidationEngine, ConsolidationReport, ConsolidationScheduler
from .contradiction import ContradictionDetector, ContradictionResolution, are_contradictory, resolve_pair
from .graph_store import GraphStore
from .insights import InsightGenerator, synthesize
from .models import (
    BaseNode,
    ConceptNode,
    DocumentNode,
    Edge,
    EdgeType,
    EntityNode,
    EventNode,
    FactNode,
    GraphQueryResult,
    InsightNode,
    MemoryNode,
    MemoryType,
    Node,
    NodeType,
    QuestionNode,
    build_node,
    infer_node_type,
    node_text,
)
from .orchestrator import EVENTS, MemoryOrchestrator, SearchOptions, StoreOptions, rank_score
from .snapshot import export_snapshot, import_snapshot
from .telemetry import (
    LoggingTelemetryClient,
    NoOpTelemetryClient,
    RecordingTelemetryClient,
    TelemetryClient,
    TelemetrySpan,
)
from .vector_index import VectorIndex
from .working_memory import WorkingMemory

__all__ = [
    "CancellationToken",
    "ConsolidationConfig",
    "ConsolidationEngine",
    "ConsolidationReport",
    "ConsolidationScheduler",
    "ContradictionDetector",
    "ContradictionResolution",
    "are_contradictory",
    "resolve_pair",
    "GraphStore",
    "InsightGenerator",
    "synthesize",
    "BaseNode",
    "ConceptNode",
    "DocumentNode",
    "Edge",
    "EdgeType",
    "EntityNode",
    "EventNode",
    "FactNode",
    "GraphQueryResult",
    "InsightNode",
    "MemoryNode",
    "MemoryType",
    "Node",
    "NodeType",
    "QuestionNode",
    "build_node",
    "infer_node_type",
    "node_text",
    "EVENTS",
    "MemoryOrchestrator",
    "SearchOptions",
    "StoreOptions",
    "rank_score",
    "export_snapshot",
    "import_snapshot",
    "LoggingTelemetryClient",
    "NoOpTelemetryClient",
    "RecordingTelemetryClient",
    "TelemetryClient",
    "TelemetrySpan",
    "VectorIndex",
    "WorkingMemory",
]
