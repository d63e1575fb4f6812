"""Bounded validate -> auto-fix -> AI-repair loop, built as a LangGraph FSM.

States and transitions:

    START -> validate
    validate  --valid--------------------------------> finalize (SUCCESS)
    validate  --invalid------------------------------> auto_fix
    auto_fix  --valid--------------------------------> finalize (SUCCESS)
    auto_fix  --cancelled / attempts >= budget-------> finalize (PARTIAL)
    auto_fix  --otherwise----------------------------> ai_repair
    ai_repair ---------------------------------------> validate
    finalize  ---------------------------------------> END

The attempt counter lives in RepairState and only ai_repair increments it,
so validate runs at most budget + 1 times whatever the generator does.

Failure policy: every exception from GenerationAdapter.fix is caught,
tracked as an ai_provider error and counted as a no-improvement attempt.
A PARTIAL outcome is still a normal return carrying the best graph seen and
a report saying which remaining issues need a human. Only generate_and_repair
raises, and only when the initial generate produced nothing usable.
"""

from __future__ import annotations

import asyncio
import logging
import operator
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Callable, TypedDict

from langgraph.graph import END, START, StateGraph

from n8n_dev_agent.agent.autofix import AutoFixer
from n8n_dev_agent.agent.generation import GenerationAdapter, GenerationError
from n8n_dev_agent.agent.metrics import MetricsCollector
from n8n_dev_agent.agent.validator import (
    IssueType,
    StructuralValidator,
    ValidationIssue,
    ValidationResult,
)
from n8n_dev_agent.agent.workflow import WorkflowGraph, WorkflowSerializationError
from n8n_dev_agent.knowledge.patterns import classify_issue_type
from n8n_dev_agent.knowledge.user_values import UserValueFinding, UserValueRegistry
from n8n_dev_agent.monitoring.error_tracker import ErrorTracker
from n8n_dev_agent.monitoring.records import ErrorContext, ErrorSeverity, ErrorType

logger = logging.getLogger("n8n_dev_agent.agent.repair")

DEFAULT_REPAIR_BUDGET = 2

_PARAMETER_ISSUES = frozenset({
    IssueType.MISSING_REQUIRED_PARAMETER,
    IssueType.INVALID_PARAMETER_TYPE,
    IssueType.INVALID_PARAMETER_PATTERN,
})


class RepairPhase(str, Enum):
    VALIDATE = "validate"
    AUTO_FIX = "auto_fix"
    AI_REPAIR = "ai_repair"
    SUCCESS = "success"
    PARTIAL = "partial"


# ---------------------------------------------------------------------------
# Report types
# ---------------------------------------------------------------------------


@dataclass
class ClassifiedIssue:
    issue: ValidationIssue
    auto_fixable: bool
    pattern: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {**self.issue.to_dict(), "auto_fixable": self.auto_fixable, "pattern": self.pattern}


@dataclass
class RepairReport:
    """Diagnostic report returned with every repaired graph.

    is_valid, issues, repair_attempts and requires_manual_fix are the
    contract the request layer relies on; the rest is diagnostics.
    """

    is_valid: bool
    issues: list[ValidationIssue]
    repair_attempts: int
    requires_manual_fix: bool
    final_state: RepairPhase
    classified_issues: list[ClassifiedIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    validation_passes: int = 0
    cancelled: bool = False
    fixes_applied: list[str] = field(default_factory=list)
    attempts: list[dict[str, Any]] = field(default_factory=list)
    phase_metrics: list[dict[str, Any]] = field(default_factory=list)
    user_values: list[UserValueFinding] = field(default_factory=list)
    user_values_report: str = ""
    error_ids: list[str] = field(default_factory=list)
    serialization_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "issues": [c.to_dict() for c in self.classified_issues],
            "warnings": [w.to_dict() for w in self.warnings],
            "repair_attempts": self.repair_attempts,
            "requires_manual_fix": self.requires_manual_fix,
            "final_state": self.final_state.value,
            "validation_passes": self.validation_passes,
            "cancelled": self.cancelled,
            "fixes_applied": self.fixes_applied,
            "attempts": self.attempts,
            "phase_metrics": self.phase_metrics,
            "user_values_report": self.user_values_report,
            "error_ids": self.error_ids,
            "serialization_error": self.serialization_error,
        }


@dataclass
class RepairOutcome:
    graph: WorkflowGraph
    report: RepairReport


# ---------------------------------------------------------------------------
# FSM state
# ---------------------------------------------------------------------------


class RepairState(TypedDict, total=False):
    """Shared state of one repair run.

    List fields annotated with operator.add accumulate across nodes; all
    other fields are last-writer-wins.
    """

    graph: WorkflowGraph
    original_prompt: str
    workflow_name: str
    cancel_event: asyncio.Event | None

    validation: ValidationResult
    attempts: int
    validation_passes: int
    best_graph: WorkflowGraph | None
    best_validation: ValidationResult | None
    initial_error_id: str | None

    fixes_applied: Annotated[list[str], operator.add]
    attempt_history: Annotated[list[dict[str, Any]], operator.add]
    phase_metrics: Annotated[list[dict[str, Any]], operator.add]
    error_ids: Annotated[list[str], operator.add]

    report: RepairReport


def _context(state: RepairState, adapter: GenerationAdapter, phase: str) -> ErrorContext:
    graph = state["graph"]
    return ErrorContext(
        prompt=state.get("original_prompt"),
        workflow_name=state.get("workflow_name"),
        provider=adapter.provider,
        node_count=len(graph.nodes),
        connection_count=graph.connection_count(),
        phase=phase,
    )


def _best_update(state: RepairState, graph: WorkflowGraph, result: ValidationResult) -> dict[str, Any]:
    # Fewest error-severity issues wins; ties go to the latest graph.
    best = state.get("best_validation")
    if best is None or len(result.issues) <= len(best.issues):
        return {"best_graph": graph, "best_validation": result}
    return {}


# ---------------------------------------------------------------------------
# Node factories
# ---------------------------------------------------------------------------


def _make_validate_node(
    validator: StructuralValidator,
    tracker: ErrorTracker,
    adapter: GenerationAdapter,
) -> Callable:
    async def validate(state: RepairState) -> dict[str, Any]:
        graph = state["graph"]
        async with MetricsCollector(RepairPhase.VALIDATE.value, state["attempts"]) as m:
            result = validator.validate(graph)
            m.issues_before = m.issues_after = len(result.issues)

        passes = state["validation_passes"] + 1
        logger.info(
            "[VALIDATE] %r pass %d: %d issue(s)", state.get("workflow_name"), passes, len(result.issues),
        )
        update: dict[str, Any] = {
            "validation": result,
            "validation_passes": passes,
            "phase_metrics": [m.to_dict()],
            **_best_update(state, graph, result),
        }

        if passes == 1 and not result.is_valid:
            error_id = await tracker.track_error(
                ErrorType.VALIDATION,
                f"Generated workflow has {len(result.issues)} structural issue(s): "
                + "; ".join(i.message for i in result.issues[:5]),
                severity=ErrorSeverity.WARNING,
                details={"issues": [i.to_dict() for i in result.issues]},
                context=_context(state, adapter, "validation"),
            )
            update["initial_error_id"] = error_id
            update["error_ids"] = [error_id]
        return update

    return validate


def _make_auto_fix_node(fixer: AutoFixer, validator: StructuralValidator) -> Callable:
    async def auto_fix(state: RepairState) -> dict[str, Any]:
        async with MetricsCollector(RepairPhase.AUTO_FIX.value, state["attempts"]) as m:
            m.issues_before = len(state["validation"].issues)
            fixed = fixer.fix(state["graph"])
            result = validator.validate(fixed.graph)
            m.issues_after = len(result.issues)
            m.fixes_applied = len(fixed.fixes_applied)

        logger.info(
            "[AUTO_FIX] %d change(s), %d -> %d issue(s)",
            len(fixed.fixes_applied), m.issues_before, m.issues_after,
        )
        return {
            "graph": fixed.graph,
            "validation": result,
            "fixes_applied": fixed.fixes_applied,
            "phase_metrics": [m.to_dict()],
            **_best_update(state, fixed.graph, result),
        }

    return auto_fix


def _make_ai_repair_node(adapter: GenerationAdapter, tracker: ErrorTracker) -> Callable:
    async def ai_repair(state: RepairState) -> dict[str, Any]:
        attempt = state["attempts"] + 1
        validation = state["validation"]
        issues = [i.to_fix_request() for i in validation.issues]
        entry: dict[str, Any] = {"attempt": attempt, "success": False, "fixes_applied": [], "error": None}
        update: dict[str, Any] = {"attempts": attempt}

        async with MetricsCollector(RepairPhase.AI_REPAIR.value, attempt) as m:
            m.issues_before = len(validation.issues)
            try:
                result = await adapter.fix(state["graph"], issues, state.get("original_prompt", ""))
            except Exception as exc:
                m.failed = True
                entry["error"] = f"{type(exc).__name__}: {exc}"
                logger.warning("[AI_REPAIR] attempt %d raised %s", attempt, entry["error"])
                error_id = await tracker.track_error(
                    ErrorType.AI_PROVIDER,
                    f"AI repair attempt {attempt} failed: {entry['error']}",
                    severity=ErrorSeverity.ERROR,
                    details={"attempt": attempt, "exception": type(exc).__name__},
                    context=_context(state, adapter, "ai_repair"),
                )
                update["error_ids"] = [error_id]
            else:
                if result.success and result.graph is not None:
                    entry.update(success=True, fixes_applied=list(result.fixes_applied))
                    m.fixes_applied = len(result.fixes_applied)
                    update["graph"] = result.graph
                    update["fixes_applied"] = [f"AI: {f}" for f in result.fixes_applied]
                else:
                    m.failed = True
                    entry["error"] = result.error or "fix returned no workflow"
                    logger.warning("[AI_REPAIR] attempt %d unsuccessful: %s", attempt, entry["error"])
                    error_id = await tracker.track_error(
                        ErrorType.GENERATION,
                        f"AI repair attempt {attempt} returned no usable workflow: {entry['error']}",
                        severity=ErrorSeverity.WARNING,
                        details={"attempt": attempt},
                        context=_context(state, adapter, "ai_repair"),
                    )
                    update["error_ids"] = [error_id]

        update["attempt_history"] = [entry]
        update["phase_metrics"] = [m.to_dict()]
        return update

    return ai_repair


def _make_finalize_node(
    tracker: ErrorTracker,
    adapter: GenerationAdapter,
    user_values: UserValueRegistry,
    budget: int,
) -> Callable:
    async def finalize(state: RepairState) -> dict[str, Any]:
        current = state["validation"]
        success = current.is_valid
        if success:
            graph, validation = state["graph"], current
        else:
            graph = state.get("best_graph") or state["graph"]
            validation = state.get("best_validation") or current
        final_state = RepairPhase.SUCCESS if success else RepairPhase.PARTIAL
        attempts = state["attempts"]
        cancel_event = state.get("cancel_event")
        cancelled = (
            not success
            and attempts < budget
            and cancel_event is not None
            and cancel_event.is_set()
        )
        error_ids: list[str] = []
        fin_state: RepairState = {**state, "graph": graph}

        serialization_error: str | None = None
        try:
            graph.to_json()
        except WorkflowSerializationError as exc:
            serialization_error = str(exc)
            error_ids.append(await tracker.track_error(
                ErrorType.SERIALIZATION,
                serialization_error,
                severity=ErrorSeverity.CRITICAL,
                context=_context(fin_state, adapter, "serialization"),
            ))

        initial_error_id = state.get("initial_error_id")
        if initial_error_id:
            await tracker.record_resolution(
                initial_error_id,
                successful=success,
                method=RepairPhase.AUTO_FIX.value if attempts == 0 else RepairPhase.AI_REPAIR.value,
            )

        classified = []
        for issue in validation.issues:
            fixable, pattern = classify_issue_type(issue.issue_type.value)
            classified.append(ClassifiedIssue(issue, fixable, pattern))

        if not success:
            error_ids.extend(await _track_remaining(tracker, adapter, fin_state, classified, attempts))

        findings = user_values.analyze_workflow(graph.nodes)
        report = RepairReport(
            is_valid=success and serialization_error is None,
            issues=list(validation.issues),
            repair_attempts=attempts,
            requires_manual_fix=(
                serialization_error is not None or any(not c.auto_fixable for c in classified)
            ),
            final_state=final_state,
            classified_issues=classified,
            warnings=list(validation.warnings),
            validation_passes=state["validation_passes"],
            cancelled=cancelled,
            fixes_applied=list(state.get("fixes_applied", [])),
            attempts=list(state.get("attempt_history", [])),
            phase_metrics=list(state.get("phase_metrics", [])),
            user_values=findings,
            user_values_report=user_values.generate_report(findings),
            error_ids=list(state.get("error_ids", [])) + error_ids,
            serialization_error=serialization_error,
        )
        logger.info(
            "[%s] %r after %d attempt(s), %d validation pass(es), %d issue(s) left%s",
            final_state.value.upper(), state.get("workflow_name"), attempts,
            report.validation_passes, len(report.issues), " (cancelled)" if cancelled else "",
        )
        return {"graph": graph, "report": report, "error_ids": error_ids}

    return finalize


async def _track_remaining(
    tracker: ErrorTracker,
    adapter: GenerationAdapter,
    state: RepairState,
    classified: list[ClassifiedIssue],
    attempts: int,
) -> list[str]:
    ids = [await tracker.track_error(
        ErrorType.VALIDATION,
        f"Workflow still has {len(classified)} structural issue(s) after {attempts} "
        f"repair attempt(s): " + "; ".join(c.issue.message for c in classified[:5]),
        severity=ErrorSeverity.ERROR,
        details={"issues": [c.to_dict() for c in classified]},
        context=_context(state, adapter, "repair"),
    )]

    by_node: dict[str, list[ClassifiedIssue]] = {}
    for c in classified:
        if c.issue.issue_type in _PARAMETER_ISSUES and not c.auto_fixable:
            by_node.setdefault(c.issue.node_name, []).append(c)
    for node_name, items in by_node.items():
        ids.append(await tracker.track_error(
            ErrorType.NODE_CONFIGURATION,
            f'Node "{node_name}" needs manual configuration: '
            + "; ".join(c.issue.message for c in items),
            severity=ErrorSeverity.WARNING,
            details={"node": node_name, "parameters": [c.issue.parameter for c in items]},
            context=_context(state, adapter, "repair"),
        ))
    return ids


# ---------------------------------------------------------------------------
# Routing functions (conditional edges)
# ---------------------------------------------------------------------------


def _route_after_validate(state: RepairState) -> str:
    """Valid -> finalize. Otherwise try the local fixer."""
    if state["validation"].is_valid:
        return "finalize"
    return "auto_fix"


def _make_route_after_auto_fix(budget: int) -> Callable[[RepairState], str]:
    def _route_after_auto_fix(state: RepairState) -> str:
        """Valid, cancelled or out of budget -> finalize. Otherwise escalate."""
        if state["validation"].is_valid:
            return "finalize"
        cancel_event = state.get("cancel_event")
        if cancel_event is not None and cancel_event.is_set():
            logger.info("[AUTO_FIX] cancellation requested; skipping AI repair")
            return "finalize"
        if state["attempts"] >= budget:
            return "finalize"
        return "ai_repair"

    return _route_after_auto_fix


# ---------------------------------------------------------------------------
# Graph builder
# ---------------------------------------------------------------------------


def build_repair_graph(
    adapter: GenerationAdapter,
    validator: StructuralValidator,
    fixer: AutoFixer,
    tracker: ErrorTracker,
    user_values: UserValueRegistry,
    budget: int = DEFAULT_REPAIR_BUDGET,
):
    """Construct and compile the repair FSM. Returns a compiled LangGraph graph."""
    builder = StateGraph(RepairState)

    builder.add_node("validate",  _make_validate_node(validator, tracker, adapter))
    builder.add_node("auto_fix",  _make_auto_fix_node(fixer, validator))
    builder.add_node("ai_repair", _make_ai_repair_node(adapter, tracker))
    builder.add_node("finalize",  _make_finalize_node(tracker, adapter, user_values, budget))

    builder.add_edge(START, "validate")
    builder.add_edge("ai_repair", "validate")
    builder.add_edge("finalize", END)

    builder.add_conditional_edges(
        "validate",
        _route_after_validate,
        {"finalize": "finalize", "auto_fix": "auto_fix"},
    )
    builder.add_conditional_edges(
        "auto_fix",
        _make_route_after_auto_fix(budget),
        {"finalize": "finalize", "ai_repair": "ai_repair"},
    )
    return builder.compile()


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class RepairOrchestrator:
    """Public entry point: repair a candidate graph within a fixed attempt budget.

    Args:
        adapter:     Generator boundary used for AI repair (and generate_and_repair).
        validator:   StructuralValidator; defaults to the bundled registry.
        fixer:       AutoFixer; defaults to the bundled registry.
        tracker:     ErrorTracker receiving every failure; a fresh one by default.
        user_values: UserValueRegistry used for the end-user report.
        budget:      Maximum AI repair round-trips (finite, >= 0).
        enhance:     Optional prompt enhancer applied before generate().
    """

    def __init__(
        self,
        adapter: GenerationAdapter,
        *,
        validator: StructuralValidator | None = None,
        fixer: AutoFixer | None = None,
        tracker: ErrorTracker | None = None,
        user_values: UserValueRegistry | None = None,
        budget: int = DEFAULT_REPAIR_BUDGET,
        enhance: Callable[[str], str] | None = None,
    ) -> None:
        if budget < 0:
            raise ValueError("repair budget must be >= 0")
        self.adapter = adapter
        self.validator = validator or StructuralValidator()
        self.fixer = fixer or AutoFixer(self.validator.registry)
        self.tracker = tracker or ErrorTracker()
        self.user_values = user_values or UserValueRegistry()
        self.budget = budget
        self._enhance = enhance
        self._fsm = build_repair_graph(
            adapter, self.validator, self.fixer, self.tracker, self.user_values, budget,
        )

    @classmethod
    def from_settings(
        cls,
        adapter: GenerationAdapter,
        settings: Any,
        tracker: ErrorTracker | None = None,
        enhance: Callable[[str], str] | None = None,
    ) -> RepairOrchestrator:
        """Build from AgentSettings (budget, proximity threshold, error tracking)."""
        validator = StructuralValidator()
        return cls(
            adapter,
            validator=validator,
            fixer=AutoFixer(validator.registry, proximity_threshold=settings.proximity_threshold),
            tracker=tracker or ErrorTracker.from_settings(settings),
            budget=settings.repair_budget,
            enhance=enhance,
        )

    async def repair(
        self,
        graph: WorkflowGraph,
        original_prompt: str,
        workflow_name: str,
        *,
        cancel: asyncio.Event | None = None,
    ) -> RepairOutcome:
        """Validate and repair graph. Never raises for adapter failures.

        The caller's graph is not modified. Setting cancel stops further AI
        repair calls; an in-flight call is left to the adapter's timeout.
        """
        initial: RepairState = {
            "graph": graph.copy(),
            "original_prompt": original_prompt,
            "workflow_name": workflow_name,
            "cancel_event": cancel,
            "attempts": 0,
            "validation_passes": 0,
            "best_graph": None,
            "best_validation": None,
            "initial_error_id": None,
            "fixes_applied": [],
            "attempt_history": [],
            "phase_metrics": [],
            "error_ids": [],
        }
        final = await self._fsm.ainvoke(
            initial, config={"recursion_limit": 3 * self.budget + 10},
        )
        return RepairOutcome(graph=final["graph"], report=final["report"])

    async def generate_and_repair(
        self,
        prompt: str,
        name: str,
        *,
        cancel: asyncio.Event | None = None,
    ) -> RepairOutcome:
        """Generate a workflow for prompt, then repair it.

        Raises GenerationError when generate() raises or returns no graph.
        """
        enhanced = self._enhance(prompt) if self._enhance else prompt
        context = ErrorContext(prompt=prompt, workflow_name=name, provider=self.adapter.provider, phase="generation")
        try:
            result = await self.adapter.generate(enhanced, name)
        except Exception as exc:
            message = f"Workflow generation failed: {type(exc).__name__}: {exc}"
            await self.tracker.track_error(
                ErrorType.AI_PROVIDER, message,
                severity=ErrorSeverity.CRITICAL,
                details={"exception": type(exc).__name__},
                context=context,
            )
            raise GenerationError(message) from exc

        if not result.success or result.graph is None:
            message = f"Workflow generation failed: {result.error or 'generator returned no workflow'}"
            await self.tracker.track_error(
                ErrorType.GENERATION, message,
                severity=ErrorSeverity.CRITICAL,
                details={"usage": result.usage or {}},
                context=context,
            )
            raise GenerationError(message)

        logger.info("Generated %r with %d node(s); starting repair", name, len(result.graph.nodes))
        return await self.repair(result.graph, prompt, name, cancel=cancel)
