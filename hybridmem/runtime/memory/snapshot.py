"""
Snapshots - Export and import the memory graph

WHAT: JSON and GraphML serialisation of nodes and edges
WHERE: hybridmem/runtime/memory/snapshot.py
WHO: Orchestrator export/import_ operations, backup scripts
TIME: O(nodes + edges)

JSON layout: ``{"version": "1.0", "timestamp": ..., "nodes": [...], "edges": [...]}``
with each record in its model JSON form. GraphML keeps node_type/edge_type,
a readable label and the weight as typed attributes and the full record as a
JSON ``payload`` attribute, so imports are lossless.
"""

from __future__ import annotations

import json
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Sequence, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from ...errors import ValidationError
from .models import NODE_ADAPTER, Edge, node_text, utc_now

SNAPSHOT_VERSION = "1.0"
FORMATS = ("json", "graphml")

GRAPHML_NS = "http://graphml.graphdrawing.org/xmlns"
_KEYS = (
    ("node_type", "node", "string"),
    ("label", "node", "string"),
    ("importance", "node", "double"),
    ("payload", "node", "string"),
    ("edge_type", "edge", "string"),
    ("weight", "edge", "double"),
    ("edge_payload", "edge", "string"),
)


def _node_record(node: Any, include_embeddings: bool) -> Dict[str, Any]:
    record = node.model_dump(mode="json")
    if not include_embeddings:
        record["embedding"] = None
    return record


def export_json(nodes: Sequence[Any], edges: Sequence[Edge], *, include_embeddings: bool = True) -> str:
    payload = {
        "version": SNAPSHOT_VERSION,
        "timestamp": utc_now().isoformat(),
        "nodes": [_node_record(n, include_embeddings) for n in nodes],
        "edges": [e.model_dump(mode="json") for e in edges],
    }
    return json.dumps(payload, ensure_ascii=False, indent=2)


def _parse_records(raw_nodes: List[Dict[str, Any]], raw_edges: List[Dict[str, Any]]) -> Tuple[List[Any], List[Edge]]:
    try:
        nodes = [NODE_ADAPTER.validate_python(record) for record in raw_nodes]
        edges = [Edge.model_validate(record) for record in raw_edges]
    except PydanticValidationError as exc:
        raise ValidationError(f"Snapshot contains invalid records: {exc.error_count()} error(s)") from exc
    return nodes, edges


def import_json(data: Union[str, bytes, Dict[str, Any]]) -> Tuple[List[Any], List[Edge]]:
    if isinstance(data, (str, bytes)):
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Snapshot is not valid JSON: {exc}") from exc
    else:
        payload = data
    if not isinstance(payload, dict) or "nodes" not in payload:
        raise ValidationError("Snapshot must be an object with a 'nodes' list")
    version = payload.get("version", SNAPSHOT_VERSION)
    if version != SNAPSHOT_VERSION:
        raise ValidationError(f"Unsupported snapshot version {version!r}")
    return _parse_records(payload.get("nodes") or [], payload.get("edges") or [])


def export_graphml(nodes: Sequence[Any], edges: Sequence[Edge], *, include_embeddings: bool = True) -> str:
    ET.register_namespace("", GRAPHML_NS)
    root = ET.Element(f"{{{GRAPHML_NS}}}graphml")
    for name, domain, kind in _KEYS:
        ET.SubElement(
            root,
            f"{{{GRAPHML_NS}}}key",
            {"id": name, "for": domain, "attr.name": name, "attr.type": kind},
        )
    graph = ET.SubElement(root, f"{{{GRAPHML_NS}}}graph", {"id": "memory", "edgedefault": "directed"})

    def data(parent: ET.Element, key: str, value: Any) -> None:
        el = ET.SubElement(parent, f"{{{GRAPHML_NS}}}data", {"key": key})
        el.text = str(value)

    for node in nodes:
        el = ET.SubElement(graph, f"{{{GRAPHML_NS}}}node", {"id": node.id})
        data(el, "node_type", node.node_type)
        data(el, "label", node_text(node))
        data(el, "importance", node.importance)
        data(el, "payload", json.dumps(_node_record(node, include_embeddings), ensure_ascii=False))
    for edge in edges:
        el = ET.SubElement(
            graph,
            f"{{{GRAPHML_NS}}}edge",
            {"id": edge.id, "source": edge.source, "target": edge.target},
        )
        data(el, "edge_type", edge.edge_type.value)
        data(el, "weight", edge.weight)
        data(el, "edge_payload", json.dumps(edge.model_dump(mode="json"), ensure_ascii=False))
    return ET.tostring(root, encoding="unicode", xml_declaration=True)


def _payload(el: ET.Element, key: str, what: str, ns: Dict[str, str]) -> Dict[str, Any]:
    payload = el.find(f"g:data[@key='{key}']", ns)
    if payload is None or not payload.text:
        raise ValidationError(f"GraphML {what} {el.get('id')} has no payload")
    try:
        return json.loads(payload.text)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"GraphML {what} {el.get('id')} has a malformed payload: {exc}") from exc


def import_graphml(data: Union[str, bytes]) -> Tuple[List[Any], List[Edge]]:
    try:
        root = ET.fromstring(data)
    except ET.ParseError as exc:
        raise ValidationError(f"Snapshot is not valid GraphML: {exc}") from exc
    ns = {"g": GRAPHML_NS}
    raw_nodes = [_payload(el, "payload", "node", ns) for el in root.iterfind(".//g:node", ns)]
    raw_edges = [_payload(el, "edge_payload", "edge", ns) for el in root.iterfind(".//g:edge", ns)]
    return _parse_records(raw_nodes, raw_edges)


def export_snapshot(nodes: Sequence[Any], edges: Sequence[Edge], fmt: str = "json", **kwargs: Any) -> str:
    if fmt == "json":
        return export_json(nodes, edges, **kwargs)
    if fmt == "graphml":
        return export_graphml(nodes, edges, **kwargs)
    raise ValidationError(f"Unsupported export format {fmt!r}; expected one of {FORMATS}")


def import_snapshot(data: Any, fmt: str = "json") -> Tuple[List[Any], List[Edge]]:
    if fmt == "json":
        return import_json(data)
    if fmt == "graphml":
        return import_graphml(data)
    raise ValidationError(f"Unsupported import format {fmt!r}; expected one of {FORMATS}")


__all__ = [
    "SNAPSHOT_VERSION",
    "FORMATS",
    "export_json",
    "import_json",
    "export_graphml",
    "import_graphml",
    "export_snapshot",
    "import_snapshot",
]
