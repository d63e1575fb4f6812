"""n8n workflow generation and repair.

Entry points:
    RepairOrchestrator(adapter, ...).repair(graph, prompt, name) -> RepairOutcome
    RepairOrchestrator(adapter, ...).generate_and_repair(prompt, name) -> RepairOutcome
    build_repair_graph(...) -> compiled LangGraph FSM (validate / auto_fix / ai_repair / finalize)

Building blocks:
    WorkflowGraph, WorkflowNode, Edge -- n8n export model and JSON codec
    StructuralValidator, ValidationResult, ValidationIssue -- structural checks
    AutoFixer, AutoFixResult -- deterministic, network-free repairs
    GenerationAdapter, EngineGenerationAdapter -- generator boundary
    MetricsCollector, PhaseMetrics -- per-phase timing
"""

from n8n_dev_agent.agent.autofix import AutoFixer, AutoFixResult, auto_fix
from n8n_dev_agent.agent.generation import (
    EngineGenerationAdapter,
    FixResult,
    GenerationAdapter,
    GenerationError,
    GenerationResult,
    extract_json,
)
from n8n_dev_agent.agent.metrics import MetricsCollector, PhaseMetrics
from n8n_dev_agent.agent.repair import (
    ClassifiedIssue,
    RepairOrchestrator,
    RepairOutcome,
    RepairPhase,
    RepairReport,
    RepairState,
    build_repair_graph,
)
from n8n_dev_agent.agent.validator import (
    IssueType,
    Severity,
    StructuralValidator,
    ValidationIssue,
    ValidationResult,
    validate,
)
from n8n_dev_agent.agent.workflow import (
    Edge,
    WorkflowGraph,
    WorkflowNode,
    WorkflowParseError,
    WorkflowSerializationError,
)

__all__ = [
    # Repair loop
    "RepairOrchestrator",
    "RepairOutcome",
    "RepairReport",
    "RepairPhase",
    "RepairState",
    "ClassifiedIssue",
    "build_repair_graph",
    # Workflow model
    "Edge",
    "WorkflowGraph",
    "WorkflowNode",
    "WorkflowParseError",
    "WorkflowSerializationError",
    # Validation
    "IssueType",
    "Severity",
    "StructuralValidator",
    "ValidationIssue",
    "ValidationResult",
    "validate",
    # Auto-fix
    "AutoFixer",
    "AutoFixResult",
    "auto_fix",
    # Generator boundary
    "GenerationAdapter",
    "EngineGenerationAdapter",
    "GenerationResult",
    "FixResult",
    "GenerationError",
    "extract_json",
    # Metrics
    "MetricsCollector",
    "PhaseMetrics",
]
