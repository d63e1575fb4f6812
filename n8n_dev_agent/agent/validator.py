"""Structural validation of n8n workflow graphs.

validate() is deterministic and side-effect free: it never mutates the graph,
never touches the network, and never raises. Every defect comes back as a
ValidationIssue inside the ValidationResult.

Checks, in order:
  1. Connectivity: every non-trigger node must be the target of some edge.
  2. Node type: every type must be registered (UnknownType -> error).
  3. Required parameters present (absent or None -> error).
  4. Present parameters: type / pattern -> error, option mismatch -> warning.
  5. Dangling edges (target not in the graph) -> warning.
  6. Workflow shape, all warnings: empty workflow, no trigger node, a
     credential type shared by more than 3 nodes, node names that promise
     email/send behaviour the type does not have, and anti-patterns (more
     than 5 MongoDB nodes, more than 20 nodes without an Error Trigger,
     more than 3 IF/Switch nodes without a Merge).

is_valid is False iff at least one error-severity issue exists.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from n8n_dev_agent.agent.workflow import WorkflowGraph, WorkflowNode
from n8n_dev_agent.knowledge.capabilities import (
    CapabilityRegistry,
    KnownType,
    UnknownType,
    default_registry,
    is_trigger_type,
)
from n8n_dev_agent.knowledge.catalog import BASE

logger = logging.getLogger("n8n_dev_agent.agent.validator")


class IssueType(str, Enum):
    DISCONNECTED_NODE = "disconnected_node"
    UNKNOWN_NODE_TYPE = "unknown_node_type"
    MISSING_REQUIRED_PARAMETER = "missing_required_parameter"
    INVALID_PARAMETER_TYPE = "invalid_parameter_type"
    INVALID_PARAMETER_PATTERN = "invalid_parameter_pattern"
    DANGLING_CONNECTION = "dangling_connection"
    EMPTY_WORKFLOW = "empty_workflow"
    NO_TRIGGER = "no_trigger"
    DUPLICATE_CREDENTIAL = "duplicate_credential"
    NAMING_MISMATCH = "naming_mismatch"
    ANTI_PATTERN = "anti_pattern"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


# Workflow shape thresholds.
MAX_CREDENTIAL_REUSE = 3
MAX_MONGODB_NODES = 5
MAX_NODES_WITHOUT_ERROR_TRIGGER = 20
MAX_BRANCHES_WITHOUT_MERGE = 3

_PROBLEM_KIND_TO_ISSUE = {
    "missing": IssueType.MISSING_REQUIRED_PARAMETER,
    "type": IssueType.INVALID_PARAMETER_TYPE,
    "pattern": IssueType.INVALID_PARAMETER_PATTERN,
    "option": IssueType.INVALID_PARAMETER_PATTERN,
}


@dataclass
class ValidationIssue:
    node_id: str
    node_name: str
    issue_type: IssueType
    severity: Severity
    message: str
    suggestion: str | None = None
    parameter: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_name": self.node_name,
            "issue_type": self.issue_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "suggestion": self.suggestion,
            "parameter": self.parameter,
        }

    def to_fix_request(self) -> dict[str, Any]:
        """Shape sent to the generator when asking it to fix the graph."""
        return {"node": self.node_name, "message": self.message, "suggestion": self.suggestion}


@dataclass
class ValidationResult:
    """Outcome of one validation pass.

    issues:     error-severity issues (block validity).
    warnings:   warning-severity issues (never block).
    node_stats: {"total": int, "by_type": {node_type: count}}.
    """

    issues: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    node_stats: dict[str, Any] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return not self.issues

    @property
    def all_issues(self) -> list[ValidationIssue]:
        return self.issues + self.warnings

    def issue_types(self) -> set[IssueType]:
        return {i.issue_type for i in self.all_issues}

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "issues": [i.to_dict() for i in self.issues],
            "warnings": [i.to_dict() for i in self.warnings],
            "node_stats": self.node_stats,
        }


class StructuralValidator:
    """Check a WorkflowGraph against the capability registry."""

    def __init__(self, registry: CapabilityRegistry | None = None) -> None:
        self.registry = registry or default_registry()

    def validate(self, graph: WorkflowGraph) -> ValidationResult:
        found: list[ValidationIssue] = []
        found.extend(self._check_connectivity(graph))
        for node in graph.nodes:
            found.extend(self._check_node(node))
        found.extend(self._check_dangling(graph))
        found.extend(self._check_shape(graph))

        result = ValidationResult(
            issues=[i for i in found if i.severity is Severity.ERROR],
            warnings=[i for i in found if i.severity is Severity.WARNING],
            node_stats={
                "total": len(graph.nodes),
                "by_type": dict(Counter(n.type for n in graph.nodes)),
            },
        )
        logger.debug(
            "validate %r: %d node(s), %d error(s), %d warning(s)",
            graph.name, len(graph.nodes), len(result.issues), len(result.warnings),
        )
        return result

    # -- checks -------------------------------------------------------------

    def _check_connectivity(self, graph: WorkflowGraph) -> list[ValidationIssue]:
        targets = graph.target_names()
        return [
            ValidationIssue(
                node_id=node.id,
                node_name=node.name,
                issue_type=IssueType.DISCONNECTED_NODE,
                severity=Severity.ERROR,
                message=f'Node "{node.name}" is a disconnected node with no incoming connection',
                suggestion=f'Connect an upstream node to "{node.name}"',
            )
            for node in graph.nodes
            if not is_trigger_type(node.type) and node.name not in targets
        ]

    def _check_node(self, node: WorkflowNode) -> list[ValidationIssue]:
        match self.registry.resolve(node.type):
            case UnknownType(node_type=node_type, suggestion=suggestion):
                return [ValidationIssue(
                    node_id=node.id,
                    node_name=node.name,
                    issue_type=IssueType.UNKNOWN_NODE_TYPE,
                    severity=Severity.ERROR,
                    message=f'Invalid node type "{node_type}" on node "{node.name}"',
                    suggestion=f'Use "{suggestion}" instead' if suggestion else None,
                )]
            case KnownType():
                pass

        checked = self.registry.validate_parameters(node.type, node.parameters or {})
        return [
            ValidationIssue(
                node_id=node.id,
                node_name=node.name,
                issue_type=_PROBLEM_KIND_TO_ISSUE[problem.kind],
                severity=Severity(problem.severity),
                message=f'{problem.message} on node "{node.name}"',
                suggestion=self._parameter_suggestion(node.type, problem.parameter, problem.kind),
                parameter=problem.parameter,
            )
            for problem in checked.problems
        ]

    def _parameter_suggestion(self, node_type: str, parameter: str, kind: str) -> str | None:
        spec = self.registry.get(node_type)
        param = spec.parameters.get(parameter) if spec else None
        if param is None:
            return None
        if kind == "missing" and param.has_default:
            return f'Set "{parameter}" to its default {param.default!r}'
        if kind == "type":
            return f'Provide "{parameter}" as a {param.type}'
        if kind == "pattern" and param.description:
            return param.description
        if kind == "option" and param.options:
            return f"Use one of: {', '.join(str(o) for o in param.options)}"
        return None

    def _check_dangling(self, graph: WorkflowGraph) -> list[ValidationIssue]:
        names = set(graph.node_names())
        out: list[ValidationIssue] = []
        for source, _output, edge in graph.iter_edges():
            if edge.node in names:
                continue
            node = graph.get_node(source)
            out.append(ValidationIssue(
                node_id=node.id if node else "",
                node_name=source,
                issue_type=IssueType.DANGLING_CONNECTION,
                severity=Severity.WARNING,
                message=f'Connection from "{source}" points to missing node "{edge.node}"',
                suggestion=f'Remove the connection or add a node named "{edge.node}"',
            ))
        return out

    # -- workflow shape (warnings only) -------------------------------------

    def _check_shape(self, graph: WorkflowGraph) -> list[ValidationIssue]:
        if not graph.nodes:
            return [_workflow_warning(
                IssueType.EMPTY_WORKFLOW, "Workflow has no nodes", "Add a trigger node and at least one action",
            )]
        out: list[ValidationIssue] = []
        if not any(is_trigger_type(n.type) for n in graph.nodes):
            out.append(_workflow_warning(
                IssueType.NO_TRIGGER, "Workflow has no trigger node",
                "Add a trigger (Manual, Schedule, Webhook, ...) so the workflow can start",
            ))
        out.extend(self._check_credential_reuse(graph))
        out.extend(self._check_naming(graph))
        out.extend(self._check_anti_patterns(graph))
        return out

    def _canonical_type(self, node_type: str) -> str:
        # Types the fixer would retype count as their target already.
        if self.registry.is_registered(node_type):
            return node_type
        return self.registry.suggest_type(node_type) or node_type

    def _check_credential_reuse(self, graph: WorkflowGraph) -> list[ValidationIssue]:
        usage = Counter(cred for n in graph.nodes for cred in (n.credentials or {}))
        return [
            _workflow_warning(
                IssueType.DUPLICATE_CREDENTIAL,
                f'Credential type "{cred}" is used {count} times',
                "Consider using a single credential instance for all nodes of the same type",
            )
            for cred, count in usage.items()
            if count > MAX_CREDENTIAL_REUSE
        ]

    def _check_naming(self, graph: WorkflowGraph) -> list[ValidationIssue]:
        out = []
        for node in graph.nodes:
            name = node.name.lower()
            node_type = self._canonical_type(node.type)
            lowered = node_type.lower()
            if ("email" in name or "send" in name) and "email" not in lowered and "send" not in lowered:
                out.append(ValidationIssue(
                    node_id=node.id,
                    node_name=node.name,
                    issue_type=IssueType.NAMING_MISMATCH,
                    severity=Severity.WARNING,
                    message=f'Node named "{node.name}" but type is "{node_type}"',
                    suggestion="Node name and type should match",
                ))
        return out

    def _check_anti_patterns(self, graph: WorkflowGraph) -> list[ValidationIssue]:
        counts = Counter(self._canonical_type(n.type) for n in graph.nodes)
        out = []
        mongo = counts[BASE + "mongoDb"]
        if mongo > MAX_MONGODB_NODES:
            out.append(_workflow_warning(
                IssueType.ANTI_PATTERN, f"Excessive MongoDB usage ({mongo} nodes)",
                "Consider using HTTP Request for simple logging/recording operations",
            ))
        if len(graph.nodes) > MAX_NODES_WITHOUT_ERROR_TRIGGER and not counts[BASE + "errorTrigger"]:
            out.append(_workflow_warning(
                IssueType.ANTI_PATTERN, "Complex workflow without error handling",
                "Add Error Trigger node for better error management",
            ))
        branches = counts[BASE + "if"] + counts[BASE + "switch"]
        if branches > MAX_BRANCHES_WITHOUT_MERGE and not counts[BASE + "merge"]:
            out.append(_workflow_warning(
                IssueType.ANTI_PATTERN, "Multiple branches without merge nodes",
                "Use Merge nodes to combine results from parallel branches",
            ))
        return out


def _workflow_warning(issue_type: IssueType, message: str, suggestion: str) -> ValidationIssue:
    return ValidationIssue(
        node_id="",
        node_name="",
        issue_type=issue_type,
        severity=Severity.WARNING,
        message=message,
        suggestion=suggestion,
    )


def validate(graph: WorkflowGraph, registry: CapabilityRegistry | None = None) -> ValidationResult:
    """Convenience wrapper around StructuralValidator(registry).validate(graph)."""
    return StructuralValidator(registry).validate(graph)
