"""n8n workflow graph model.

A WorkflowGraph is the in-memory form of an n8n workflow export:

  {
    "name": "Temperature alerts",
    "nodes": [
      {
        "id": "1",
        "name": "Every hour",
        "type": "n8n-nodes-base.scheduleTrigger",
        "typeVersion": 1,
        "position": [250, 300],
        "parameters": {"rule": {"interval": [{"field": "hours"}]}}
      },
      ...
    ],
    "connections": {
      "Every hour": {"main": [[{"node": "Fetch", "type": "main", "index": 0}]]}
    },
    "settings": {}
  }

Connections are keyed by node *name*, not id, so names must be unique.
Each source maps to a list of output ports; each port is a list of edges.
Unknown top-level keys on nodes and on the workflow are kept in `extra`
and written back unchanged. Non-main connection kinds (the ai_* ports of
LangChain nodes) are kept per source in `other_connections` the same way;
they are not edges for connectivity purposes.
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterator

logger = logging.getLogger("n8n_dev_agent.agent.workflow")

_NODE_KEYS = frozenset({
    "id", "name", "type", "typeVersion", "position", "parameters", "credentials",
})
_GRAPH_KEYS = frozenset({"name", "nodes", "connections", "settings"})


class WorkflowParseError(ValueError):
    """Raised when raw workflow data cannot be turned into a WorkflowGraph."""


class WorkflowSerializationError(ValueError):
    """Raised when a graph cannot be written as JSON (reference cycle, foreign object)."""


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


@dataclass
class Edge:
    """One connection into a target node's input."""

    node: str           # target node name
    type: str = "main"
    index: int = 0      # target input index

    def to_dict(self) -> dict[str, Any]:
        return {"node": self.node, "type": self.type, "index": self.index}


@dataclass
class WorkflowNode:
    id: str
    name: str
    type: str
    type_version: int | float = 1
    position: list[float] = field(default_factory=lambda: [0.0, 0.0])
    parameters: dict[str, Any] = field(default_factory=dict)
    credentials: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def x(self) -> float:
        return self.position[0]

    @property
    def y(self) -> float:
        return self.position[1]

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "typeVersion": self.type_version,
            "position": list(self.position),
            "parameters": self.parameters,
        }
        if self.credentials:
            out["credentials"] = self.credentials
        out.update(self.extra)
        return out


@dataclass
class WorkflowGraph:
    """Nodes plus name-keyed connections. Owned by exactly one request."""

    name: str = ""
    nodes: list[WorkflowNode] = field(default_factory=list)
    connections: dict[str, list[list[Edge]]] = field(default_factory=dict)
    # Non-main connection kinds (ai_languageModel, ai_tool, ...) per source, kept verbatim.
    other_connections: dict[str, dict[str, Any]] = field(default_factory=dict)
    settings: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    # -- queries ------------------------------------------------------------

    def node_names(self) -> list[str]:
        return [n.name for n in self.nodes]

    def get_node(self, name: str) -> WorkflowNode | None:
        return next((n for n in self.nodes if n.name == name), None)

    def iter_edges(self) -> Iterator[tuple[str, int, Edge]]:
        """Yield (source name, output index, edge) for every edge."""
        for source, ports in self.connections.items():
            for output, port in enumerate(ports):
                for edge in port:
                    yield source, output, edge

    def target_names(self) -> set[str]:
        return {edge.node for _src, _out, edge in self.iter_edges()}

    def connection_count(self) -> int:
        return sum(1 for _ in self.iter_edges())

    def has_edge(self, source: str, target: str, output: int = 0, input_index: int = 0) -> bool:
        ports = self.connections.get(source) or []
        if output >= len(ports):
            return False
        return any(
            e.node == target and e.type == "main" and e.index == input_index
            for e in ports[output]
        )

    # -- mutation -----------------------------------------------------------

    def add_edge(self, source: str, target: str, output: int = 0, input_index: int = 0) -> bool:
        """Append source[output] -> target unless that exact edge exists.

        Returns True when an edge was added.
        """
        if self.has_edge(source, target, output, input_index):
            return False
        ports = self.connections.setdefault(source, [])
        while len(ports) <= output:
            ports.append([])
        ports[output].append(Edge(node=target, index=input_index))
        return True

    def copy(self) -> WorkflowGraph:
        return copy.deepcopy(self)

    # -- serialization ------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """n8n export shape. Shares parameter objects with the graph; copy first to mutate."""
        out: dict[str, Any] = {
            "name": self.name,
            "nodes": [n.to_dict() for n in self.nodes],
            "connections": self._connections_dict(),
            "settings": self.settings,
        }
        out.update(self.extra)
        return out

    def _connections_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            source: {
                "main": [[e.to_dict() for e in port] for port in ports],
                **self.other_connections.get(source, {}),
            }
            for source, ports in self.connections.items()
        }
        for source, kinds in self.other_connections.items():
            out.setdefault(source, dict(kinds))
        return out

    def to_json(self, indent: int | None = None) -> str:
        """Serialize to JSON, raising WorkflowSerializationError when that is impossible."""
        for node in self.nodes:
            _check_acyclic(node.parameters, f'parameters of node "{node.name}"', [])
        _check_acyclic(self.settings, "workflow settings", [])
        try:
            return json.dumps(self.to_dict(), indent=indent)
        except (TypeError, ValueError) as e:
            raise WorkflowSerializationError(f"Workflow is not JSON serializable: {e}") from e

    @classmethod
    def from_json(cls, text: str) -> WorkflowGraph:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Workflow JSON parse failed: {e}") from e
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Any) -> WorkflowGraph:
        """Parse an n8n workflow export.

        Raises WorkflowParseError for structural problems that make the graph
        ambiguous (no node list, duplicate names or ids, edges without a
        target). Everything else is left for the validator to report.
        """
        if not isinstance(data, dict):
            raise WorkflowParseError(f"Workflow must be a JSON object, got {type(data).__name__}")
        raw_nodes = data.get("nodes")
        if not isinstance(raw_nodes, list):
            raise WorkflowParseError('Workflow has no "nodes" list')

        nodes = [_parse_node(raw, i) for i, raw in enumerate(raw_nodes)]
        seen_names: set[str] = set()
        seen_ids: set[str] = set()
        for node in nodes:
            if node.name in seen_names:
                raise WorkflowParseError(f'Duplicate node name "{node.name}"')
            if node.id in seen_ids:
                raise WorkflowParseError(f'Duplicate node id "{node.id}"')
            seen_names.add(node.name)
            seen_ids.add(node.id)

        raw_connections = data.get("connections") or {}
        if not isinstance(raw_connections, dict):
            raise WorkflowParseError('"connections" must be an object keyed by node name')
        connections: dict[str, list[list[Edge]]] = {}
        other_connections: dict[str, dict[str, Any]] = {}
        for source, raw in raw_connections.items():
            source = str(source)
            if isinstance(raw, dict):
                kinds = {k: v for k, v in raw.items() if k != "main"}
                if kinds:
                    logger.debug("Keeping non-main connection kinds on %r: %s", source, sorted(kinds))
                    other_connections[source] = kinds
            connections[source] = _parse_ports(source, raw)

        settings = data.get("settings") or {}
        return cls(
            name=str(data.get("name") or ""),
            nodes=nodes,
            connections=connections,
            other_connections=other_connections,
            settings=settings if isinstance(settings, dict) else {},
            extra={k: v for k, v in data.items() if k not in _GRAPH_KEYS},
        )


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def _parse_node(raw: Any, index: int) -> WorkflowNode:
    if not isinstance(raw, dict):
        raise WorkflowParseError(f"Node #{index} is not an object")
    name = raw.get("name")
    if not isinstance(name, str) or not name:
        raise WorkflowParseError(f"Node #{index} has no name")
    params = raw.get("parameters")
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise WorkflowParseError(f'Node "{name}" parameters must be an object')
    credentials = raw.get("credentials")
    return WorkflowNode(
        id=str(raw.get("id") or name),
        name=name,
        type=str(raw.get("type") or ""),
        type_version=raw.get("typeVersion") or 1,
        position=_parse_position(raw.get("position")),
        parameters=params,
        credentials=credentials if isinstance(credentials, dict) else None,
        extra={k: v for k, v in raw.items() if k not in _NODE_KEYS},
    )


def _parse_position(raw: Any) -> list[float]:
    if isinstance(raw, dict):
        raw = [raw.get("x"), raw.get("y")]
    if isinstance(raw, (list, tuple)) and len(raw) >= 2:
        return [_as_float(raw[0]), _as_float(raw[1])]
    return [0.0, 0.0]


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _parse_ports(source: str, raw: Any) -> list[list[Edge]]:
    # n8n form {"main": [[...]]}; bare port lists are accepted too.
    if isinstance(raw, dict):
        raw = raw.get("main") or []
    if not isinstance(raw, list):
        raise WorkflowParseError(f'Connections of "{source}" must be a list of output ports')

    ports: list[list[Edge]] = []
    for port in raw:
        edges: list[Edge] = []
        for raw_edge in port or []:
            if not isinstance(raw_edge, dict) or not raw_edge.get("node"):
                raise WorkflowParseError(f'Connection from "{source}" has no target node')
            edges.append(Edge(
                node=str(raw_edge["node"]),
                type=str(raw_edge.get("type") or "main"),
                index=int(raw_edge.get("index") or 0),
            ))
        ports.append(edges)
    return ports


def _check_acyclic(value: Any, where: str, stack: list[int]) -> None:
    if not isinstance(value, (dict, list)):
        return
    if id(value) in stack:
        raise WorkflowSerializationError(f"Circular reference detected in {where}")
    stack.append(id(value))
    children = value.values() if isinstance(value, dict) else value
    for child in children:
        _check_acyclic(child, where, stack)
    stack.pop()
