"""Deterministic local repair of common workflow defects.

AutoFixer.fix() works on a deep copy and makes a single bounded pass; looping
is the orchestrator's job. Every step only applies a change that cannot
introduce a new kind of validation issue, which keeps the pass monotone
(validate(fix(G)) never reports an issue type absent from validate(G)) and
idempotent (fix(fix(G)) == fix(G)).

Steps, in order:
  1. normalize node types that map onto a registered type
  2. inject registered defaults for missing required parameters
  3. coerce parameter shapes where an obvious conversion exists
  4. prune edges whose target node does not exist
  5. reconnect orphans to the nearest node on their left
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from n8n_dev_agent.agent.workflow import WorkflowGraph, WorkflowNode
from n8n_dev_agent.knowledge.capabilities import (
    CapabilityRegistry,
    ParameterSpec,
    default_registry,
    is_expression,
    is_trigger_type,
    json_type_name,
)

logger = logging.getLogger("n8n_dev_agent.agent.autofix")

DEFAULT_PROXIMITY_THRESHOLD: float = 150.0

_INT_RE = re.compile(r"^-?\d+$")
_FLOAT_RE = re.compile(r"^-?\d*\.\d+$")

_NO_COERCION = object()


@dataclass
class AutoFixResult:
    graph: WorkflowGraph
    fixes_applied: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.fixes_applied)


class AutoFixer:
    """Single-pass, no-network repair of mechanically fixable defects."""

    def __init__(
        self,
        registry: CapabilityRegistry | None = None,
        proximity_threshold: float = DEFAULT_PROXIMITY_THRESHOLD,
    ) -> None:
        self.registry = registry or default_registry()
        self.proximity_threshold = proximity_threshold

    def fix(self, graph: WorkflowGraph) -> AutoFixResult:
        """Return a repaired copy of graph plus a description of every change."""
        fixed = graph.copy()
        fixes: list[str] = []
        for node in fixed.nodes:
            if node.parameters is None:
                node.parameters = {}

        self._normalize_types(fixed, fixes)
        self._inject_defaults(fixed, fixes)
        self._coerce_shapes(fixed, fixes)
        self._prune_dangling(fixed, fixes)
        self._reconnect_orphans(fixed, fixes)

        if fixes:
            logger.info("auto-fix %r: %d change(s)", graph.name, len(fixes))
        return AutoFixResult(graph=fixed, fixes_applied=fixes)

    # -- steps --------------------------------------------------------------

    def _normalize_types(self, graph: WorkflowGraph, fixes: list[str]) -> None:
        for node in graph.nodes:
            if self.registry.is_registered(node.type):
                continue
            target = self.registry.suggest_type(node.type)
            if target is None:
                continue
            if is_trigger_type(target) != is_trigger_type(node.type):
                logger.debug("Not retyping %r: trigger classification differs", node.name)
                continue
            candidate = dict(node.parameters)
            for name, value in self._missing_defaults(target, candidate).items():
                candidate[name] = value
            if self.registry.validate_parameters(target, candidate).problems:
                logger.debug("Not retyping %r to %s: parameters do not fit", node.name, target)
                continue
            fixes.append(f'Changed type of "{node.name}" from "{node.type}" to "{target}"')
            node.type = target

    def _inject_defaults(self, graph: WorkflowGraph, fixes: list[str]) -> None:
        for node in graph.nodes:
            for name, value in self._missing_defaults(node.type, node.parameters).items():
                node.parameters[name] = value
                fixes.append(f'Set missing parameter "{name}" on "{node.name}" to {value!r}')

    def _coerce_shapes(self, graph: WorkflowGraph, fixes: list[str]) -> None:
        for node in graph.nodes:
            spec = self.registry.get(node.type)
            if spec is None:
                continue
            for param in spec.parameters.values():
                value = node.parameters.get(param.name)
                if value is None or param.type is None or is_expression(value):
                    continue
                if json_type_name(value) == param.type:
                    continue
                coerced = _coerce(value, param)
                if coerced is _NO_COERCION:
                    continue
                node.parameters[param.name] = coerced
                fixes.append(
                    f'Converted "{param.name}" on "{node.name}" from '
                    f"{json_type_name(value)} to {param.type}"
                )

    def _prune_dangling(self, graph: WorkflowGraph, fixes: list[str]) -> None:
        names = set(graph.node_names())
        for source, ports in graph.connections.items():
            for port in ports:
                kept = [e for e in port if e.node in names]
                for edge in port:
                    if edge.node not in names:
                        fixes.append(f'Removed connection "{source}" -> missing node "{edge.node}"')
                port[:] = kept

    def _reconnect_orphans(self, graph: WorkflowGraph, fixes: list[str]) -> None:
        targets = graph.target_names()
        for node in graph.nodes:
            if is_trigger_type(node.type) or node.name in targets:
                continue
            source = self._nearest_left_neighbour(graph, node)
            if source is None:
                logger.debug("No reconnection candidate for %r", node.name)
                continue
            if graph.add_edge(source.name, node.name):
                fixes.append(f'Connected "{source.name}" -> "{node.name}"')

    # -- helpers ------------------------------------------------------------

    def _missing_defaults(self, node_type: str, params: dict[str, Any]) -> dict[str, Any]:
        spec = self.registry.get(node_type)
        if spec is None:
            return {}
        return {
            p.name: p.default_value()
            for p in spec.parameters.values()
            if p.required and p.has_default and params.get(p.name) is None
        }

    def _nearest_left_neighbour(self, graph: WorkflowGraph, node: WorkflowNode) -> WorkflowNode | None:
        candidates = [
            other
            for other in graph.nodes
            if other is not node
            and other.x < node.x
            and abs(other.y - node.y) < self.proximity_threshold
        ]
        if not candidates:
            return None
        # min() keeps the first of equally distant candidates, i.e. node order.
        return min(candidates, key=lambda other: node.x - other.x)


def _coerce(value: Any, param: ParameterSpec) -> Any:
    """Convert value to param.type, or return _NO_COERCION.

    A conversion only counts when the result passes every check for the
    parameter, so coercion never trades one issue for another.
    """
    coerced: Any = _NO_COERCION
    match param.type:
        case "array" if isinstance(value, str):
            coerced = [part.strip() for part in value.split(",") if part.strip()]
        case "array" if isinstance(value, dict):
            coerced = [{"name": k, "value": v} for k, v in value.items()]
        case "number" if isinstance(value, str):
            text = value.strip()
            if _INT_RE.match(text):
                coerced = int(text)
            elif _FLOAT_RE.match(text):
                coerced = float(text)
        case "boolean" if isinstance(value, str):
            if value.strip().lower() in ("true", "false"):
                coerced = value.strip().lower() == "true"
        case "string" if isinstance(value, (int, float)) and not isinstance(value, bool):
            coerced = str(value)

    if coerced is _NO_COERCION or param.check(coerced):
        return _NO_COERCION
    return coerced


def auto_fix(graph: WorkflowGraph, registry: CapabilityRegistry | None = None) -> WorkflowGraph:
    """Convenience wrapper returning only the repaired graph."""
    return AutoFixer(registry).fix(graph).graph
