"""RepairOrchestrator: the bounded validate -> auto-fix -> AI-repair FSM.

Tests:
  1. Valid input finishes after one validation pass with no generator calls
  2. Auto-fixable input finishes without AI repair
  3. A fix that resolves everything -> repair_attempts == 1, valid
  4. fix() always failing -> at most budget + 1 validation passes, PARTIAL
  5. fix() raising is tracked and counted as an attempt
  6. Best graph (fewest issues) is returned on PARTIAL
  7. Cancellation stops further AI repair
  8. Error tracking: initial record resolution, summary and per-node records
  9. Serialization failure is reported, not raised
 10. generate_and_repair success and failure paths
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from n8n_dev_agent.agent.generation import (
    FixResult,
    GenerationAdapter,
    GenerationError,
    GenerationResult,
)
from n8n_dev_agent.agent.repair import RepairOrchestrator, RepairPhase, build_repair_graph
from n8n_dev_agent.agent.autofix import AutoFixer
from n8n_dev_agent.agent.validator import IssueType, StructuralValidator
from n8n_dev_agent.agent.workflow import WorkflowGraph, WorkflowNode
from n8n_dev_agent.knowledge.user_values import UserValueRegistry
from n8n_dev_agent.monitoring.error_tracker import ErrorTracker
from n8n_dev_agent.monitoring.records import ErrorSeverity, ErrorType


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class ScriptedAdapter(GenerationAdapter):
    """GenerationAdapter replaying a fixed script of fix outcomes.

    Each script entry is a FixResult, an exception to raise, or a callable
    taking the graph and returning a FixResult. An exhausted script returns
    success=False.
    """

    def __init__(self, fixes: list[Any] | None = None, generated: Any = None) -> None:
        self._fixes = list(fixes or [])
        self._generated = generated
        self.fix_calls: list[list[dict[str, Any]]] = []
        self.generate_prompts: list[str] = []

    @property
    def provider(self) -> str:
        return "fake/model"

    async def generate(self, prompt: str, name: str) -> GenerationResult:
        self.generate_prompts.append(prompt)
        if isinstance(self._generated, BaseException):
            raise self._generated
        return self._generated

    async def fix(self, graph: WorkflowGraph, issues: list[dict[str, Any]], original_prompt: str) -> FixResult:
        self.fix_calls.append(issues)
        if not self._fixes:
            return FixResult(success=False, error="nothing to offer")
        outcome = self._fixes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(graph)
        return outcome


def _node(name: str, node_type: str, params: dict | None = None, x: float = 0, y: float = 0) -> WorkflowNode:
    return WorkflowNode(
        id=name,
        name=name,
        type=node_type if "." in node_type else f"n8n-nodes-base.{node_type}",
        position=[x, y],
        parameters=params if params is not None else {},
    )


def _graph(*nodes: WorkflowNode, wire: bool = True) -> WorkflowGraph:
    graph = WorkflowGraph(name="Under test", nodes=list(nodes))
    if wire:
        for src, dst in zip(nodes, nodes[1:]):
            graph.add_edge(src.name, dst.name)
    return graph


def _valid() -> WorkflowGraph:
    return _graph(_node("Start", "manualTrigger"), _node("Noop", "noOp", x=220))


def _unknown() -> WorkflowGraph:
    return _graph(_node("Start", "manualTrigger"), _node("Mystery", "unknown.nodeType", x=220))


def _orchestrator(adapter: GenerationAdapter, budget: int = 2, **kwargs) -> RepairOrchestrator:
    return RepairOrchestrator(adapter, tracker=kwargs.pop("tracker", ErrorTracker()), budget=budget, **kwargs)


# ---------------------------------------------------------------------------
# 1-3. Happy paths
# ---------------------------------------------------------------------------


class TestSuccessPaths:
    @pytest.mark.asyncio
    async def test_valid_graph_needs_no_repair(self):
        adapter = ScriptedAdapter()
        outcome = await _orchestrator(adapter).repair(_valid(), "prompt", "Valid")
        report = outcome.report
        assert report.is_valid
        assert report.final_state is RepairPhase.SUCCESS
        assert report.repair_attempts == 0
        assert report.validation_passes == 1
        assert not report.requires_manual_fix
        assert adapter.fix_calls == []
        assert report.error_ids == []

    @pytest.mark.asyncio
    async def test_auto_fix_resolves_orphan_without_ai(self):
        adapter = ScriptedAdapter()
        tracker = ErrorTracker()
        graph = _graph(_node("Trigger", "manualTrigger"), _node("Orphan", "noOp", x=200), wire=False)
        outcome = await _orchestrator(adapter, tracker=tracker).repair(graph, "prompt", "Orphan")

        assert outcome.report.is_valid
        assert outcome.report.repair_attempts == 0
        assert outcome.graph.has_edge("Trigger", "Orphan")
        assert 'Connected "Trigger" -> "Orphan"' in outcome.report.fixes_applied
        assert adapter.fix_calls == []

        initial = tracker.get_error(outcome.report.error_ids[0])
        assert initial.type is ErrorType.VALIDATION
        assert initial.severity is ErrorSeverity.WARNING
        assert initial.resolution.successful
        assert initial.resolution.method == "auto_fix"

    @pytest.mark.asyncio
    async def test_successful_ai_fix_counts_one_attempt(self):
        adapter = ScriptedAdapter([FixResult(success=True, graph=_valid(), fixes_applied=["Replaced Mystery"])])
        tracker = ErrorTracker()
        outcome = await _orchestrator(adapter, tracker=tracker).repair(_unknown(), "prompt", "Unknown")

        report = outcome.report
        assert report.is_valid
        assert report.repair_attempts == 1
        assert report.validation_passes == 2
        assert "AI: Replaced Mystery" in report.fixes_applied
        assert outcome.graph.node_names() == ["Start", "Noop"]
        assert report.attempts == [{"attempt": 1, "success": True, "fixes_applied": ["Replaced Mystery"], "error": None}]
        assert tracker.get_error(report.error_ids[0]).resolution.method == "ai_repair"

    @pytest.mark.asyncio
    async def test_fix_receives_issue_requests(self):
        adapter = ScriptedAdapter([FixResult(success=True, graph=_valid())])
        await _orchestrator(adapter).repair(_unknown(), "prompt", "Unknown")
        assert adapter.fix_calls[0] == [{
            "node": "Mystery",
            "message": 'Invalid node type "unknown.nodeType" on node "Mystery"',
            "suggestion": None,
        }]

    @pytest.mark.asyncio
    async def test_caller_graph_is_not_mutated(self):
        graph = _graph(_node("Trigger", "manualTrigger"), _node("Orphan", "noOp", x=200), wire=False)
        await _orchestrator(ScriptedAdapter()).repair(graph, "prompt", "Orphan")
        assert graph.connections == {}


# ---------------------------------------------------------------------------
# 4-6. Bounded failure paths
# ---------------------------------------------------------------------------


class TestBoundedRepair:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("budget", [0, 1, 2, 4])
    async def test_always_failing_fix_terminates(self, budget):
        adapter = ScriptedAdapter()
        outcome = await _orchestrator(adapter, budget=budget).repair(_unknown(), "prompt", "Unknown")
        report = outcome.report
        assert report.validation_passes == budget + 1
        assert report.repair_attempts == budget
        assert len(adapter.fix_calls) == budget
        assert report.final_state is RepairPhase.PARTIAL
        assert not report.is_valid
        assert report.requires_manual_fix

    @pytest.mark.asyncio
    async def test_remaining_issues_are_classified(self):
        outcome = await _orchestrator(ScriptedAdapter(), budget=1).repair(_unknown(), "prompt", "Unknown")
        classified = outcome.report.classified_issues
        assert len(classified) == 1
        assert classified[0].issue.issue_type is IssueType.UNKNOWN_NODE_TYPE
        assert classified[0].auto_fixable is False
        assert classified[0].pattern == "invalid_node_type"

    @pytest.mark.asyncio
    async def test_raising_fix_is_tracked_and_loop_continues(self):
        tracker = ErrorTracker()
        adapter = ScriptedAdapter([RuntimeError("boom"), RuntimeError("boom again")])
        outcome = await _orchestrator(adapter, tracker=tracker).repair(_unknown(), "prompt", "Unknown")

        assert outcome.report.repair_attempts == 2
        assert len(adapter.fix_calls) == 2
        provider_errors = tracker.search_errors(type=ErrorType.AI_PROVIDER)
        assert len(provider_errors) == 2
        assert "RuntimeError: boom" in provider_errors[0].message
        assert provider_errors[0].context.provider == "fake/model"
        assert provider_errors[0].context.phase == "ai_repair"
        assert [a["error"] for a in outcome.report.attempts] == ["RuntimeError: boom", "RuntimeError: boom again"]

    @pytest.mark.asyncio
    async def test_timeout_from_fix_is_a_timeout_pattern(self):
        tracker = ErrorTracker()
        adapter = ScriptedAdapter([asyncio.TimeoutError()])
        await _orchestrator(adapter, budget=1, tracker=tracker).repair(_unknown(), "prompt", "Unknown")
        patterns = [p.pattern for p in tracker.get_metrics().common_patterns]
        assert "timeout_errors" in patterns

    @pytest.mark.asyncio
    async def test_unsuccessful_fix_is_tracked_as_generation_warning(self):
        tracker = ErrorTracker()
        await _orchestrator(ScriptedAdapter(), budget=2, tracker=tracker).repair(_unknown(), "prompt", "Unknown")
        generation = tracker.search_errors(type="generation")
        assert len(generation) == 2
        assert all(r.severity is ErrorSeverity.WARNING for r in generation)

    @pytest.mark.asyncio
    async def test_best_graph_is_returned(self):
        worse = _graph(
            _node("Start", "manualTrigger"),
            _node("Mystery", "unknown.nodeType", x=220),
            _node("Stranger", "unknown.otherType", x=440),
        )
        adapter = ScriptedAdapter([FixResult(success=True, graph=worse)])
        outcome = await _orchestrator(adapter, budget=1).repair(_unknown(), "prompt", "Unknown")
        assert outcome.graph.node_names() == ["Start", "Mystery"]
        assert len(outcome.report.issues) == 1

    @pytest.mark.asyncio
    async def test_phase_metrics_follow_the_loop(self):
        outcome = await _orchestrator(ScriptedAdapter(), budget=1).repair(_unknown(), "prompt", "Unknown")
        phases = [m["phase"] for m in outcome.report.phase_metrics]
        assert phases == ["validate", "auto_fix", "ai_repair", "validate", "auto_fix"]
        assert outcome.report.phase_metrics[2]["failed"] is True


# ---------------------------------------------------------------------------
# 7. Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_before_start_skips_ai_repair(self):
        cancel = asyncio.Event()
        cancel.set()
        adapter = ScriptedAdapter()
        outcome = await _orchestrator(adapter).repair(_unknown(), "prompt", "Unknown", cancel=cancel)
        assert adapter.fix_calls == []
        assert outcome.report.cancelled
        assert outcome.report.final_state is RepairPhase.PARTIAL
        assert outcome.report.validation_passes == 1

    @pytest.mark.asyncio
    async def test_cancel_during_fix_stops_after_that_attempt(self):
        cancel = asyncio.Event()

        def cancel_and_fail(_graph: WorkflowGraph) -> FixResult:
            cancel.set()
            return FixResult(success=False, error="cancelled by user")

        adapter = ScriptedAdapter([cancel_and_fail])
        outcome = await _orchestrator(adapter, budget=3).repair(_unknown(), "prompt", "Unknown", cancel=cancel)
        assert len(adapter.fix_calls) == 1
        assert outcome.report.repair_attempts == 1
        assert outcome.report.cancelled

    @pytest.mark.asyncio
    async def test_valid_result_is_not_marked_cancelled(self):
        cancel = asyncio.Event()
        cancel.set()
        outcome = await _orchestrator(ScriptedAdapter()).repair(_valid(), "prompt", "Valid", cancel=cancel)
        assert not outcome.report.cancelled


# ---------------------------------------------------------------------------
# 8-9. Error tracking and serialization
# ---------------------------------------------------------------------------


class TestErrorTracking:
    @pytest.mark.asyncio
    async def test_partial_outcome_records(self):
        tracker = ErrorTracker()
        graph = _graph(_node("Start", "manualTrigger"), _node("Fetch", "httpRequest", {"url": "api.acme.io"}, x=220))
        outcome = await _orchestrator(ScriptedAdapter(), budget=0, tracker=tracker).repair(graph, "prompt", "Fetch")

        initial = tracker.get_error(outcome.report.error_ids[0])
        assert initial.resolution.attempted and not initial.resolution.successful

        summaries = tracker.search_errors(type=ErrorType.VALIDATION, severity=ErrorSeverity.ERROR)
        assert len(summaries) == 1
        assert "after 0 repair attempt(s)" in summaries[0].message
        assert summaries[0].context.workflow_name == "Fetch"

        node_records = tracker.search_errors(type=ErrorType.NODE_CONFIGURATION)
        assert len(node_records) == 1
        assert node_records[0].message.startswith('Node "Fetch" needs manual configuration')
        assert node_records[0].details["parameters"] == ["url"]
        assert set(outcome.report.error_ids) == {r.id for r in tracker.get_recent_errors()}

    @pytest.mark.asyncio
    async def test_serialization_failure_is_reported(self):
        tracker = ErrorTracker()
        params: dict = {}
        params["self"] = params
        graph = _graph(_node("Start", "manualTrigger"), _node("Loop", "noOp", params, x=220))
        outcome = await _orchestrator(ScriptedAdapter(), tracker=tracker).repair(graph, "prompt", "Loop")

        assert not outcome.report.is_valid
        assert outcome.report.requires_manual_fix
        assert "Circular reference" in outcome.report.serialization_error
        record = tracker.search_errors(type=ErrorType.SERIALIZATION)[0]
        assert record.severity is ErrorSeverity.CRITICAL
        assert "circular_reference" in [p.pattern for p in tracker.get_metrics().common_patterns]

    @pytest.mark.asyncio
    async def test_user_value_report_is_attached(self):
        graph = _graph(
            _node("Start", "manualTrigger"),
            _node("Fetch", "httpRequest", {"url": "https://api.example.com/data"}, x=220),
        )
        outcome = await _orchestrator(ScriptedAdapter()).repair(graph, "prompt", "Fetch")
        assert outcome.report.is_valid
        assert outcome.report.user_values[0].node_name == "Fetch"
        assert outcome.report.user_values_report.startswith("# Workflow configuration required")

    @pytest.mark.asyncio
    async def test_report_to_dict(self):
        outcome = await _orchestrator(ScriptedAdapter(), budget=1).repair(_unknown(), "prompt", "Unknown")
        data = outcome.report.to_dict()
        assert data["final_state"] == "partial"
        assert data["issues"][0]["auto_fixable"] is False
        assert data["repair_attempts"] == 1


# ---------------------------------------------------------------------------
# 10. generate_and_repair
# ---------------------------------------------------------------------------


class TestGenerateAndRepair:
    @pytest.mark.asyncio
    async def test_generated_graph_is_repaired(self):
        orphan = _graph(_node("Trigger", "manualTrigger"), _node("Orphan", "noOp", x=200), wire=False)
        adapter = ScriptedAdapter(generated=GenerationResult(success=True, graph=orphan))
        orchestrator = _orchestrator(adapter, enhance=lambda p: p + "\nUse n8n-nodes-base types only.")
        outcome = await orchestrator.generate_and_repair("make a thing", "Thing")
        assert outcome.report.is_valid
        assert adapter.generate_prompts == ["make a thing\nUse n8n-nodes-base types only."]

    @pytest.mark.asyncio
    async def test_generate_raising_becomes_generation_error(self):
        tracker = ErrorTracker()
        adapter = ScriptedAdapter(generated=asyncio.TimeoutError())
        with pytest.raises(GenerationError, match="TimeoutError"):
            await _orchestrator(adapter, tracker=tracker).generate_and_repair("p", "n")
        record = tracker.get_recent_errors()[0]
        assert record.type is ErrorType.AI_PROVIDER
        assert record.severity is ErrorSeverity.CRITICAL
        assert record.context.phase == "generation"

    @pytest.mark.asyncio
    async def test_generate_without_graph_becomes_generation_error(self):
        tracker = ErrorTracker()
        adapter = ScriptedAdapter(generated=GenerationResult(success=False, error="Could not parse JSON: junk"))
        with pytest.raises(GenerationError, match="Could not parse JSON"):
            await _orchestrator(adapter, tracker=tracker).generate_and_repair("p", "n")
        record = tracker.get_recent_errors()[0]
        assert record.type is ErrorType.GENERATION
        assert record.severity is ErrorSeverity.CRITICAL


class TestIssueClassification:
    @pytest.mark.parametrize("name", ["Notify", "Timeout guard", "JSON parser", "Merge results"])
    @pytest.mark.asyncio
    async def test_node_names_do_not_change_classification(self, name):
        tracker = ErrorTracker()
        graph = _graph(_node("Start", "manualTrigger"), _node(name, "noOp", x=200, y=900), wire=False)
        outcome = await _orchestrator(ScriptedAdapter(), budget=0, tracker=tracker).repair(graph, "prompt", "Names")

        report = outcome.report
        assert report.final_state is RepairPhase.PARTIAL
        assert [(c.auto_fixable, c.pattern) for c in report.classified_issues] == [(True, "disconnected_nodes")]
        assert not report.requires_manual_fix
        assert [p.pattern for p in tracker.get_metrics().common_patterns] == ["disconnected_nodes"]


class TestConstruction:
    def test_negative_budget_rejected(self):
        with pytest.raises(ValueError):
            RepairOrchestrator(ScriptedAdapter(), budget=-1)

    def test_graph_has_fsm_nodes(self):
        compiled = build_repair_graph(
            ScriptedAdapter(), StructuralValidator(), AutoFixer(), ErrorTracker(), UserValueRegistry(),
        )
        assert {"validate", "auto_fix", "ai_repair", "finalize"} <= set(compiled.get_graph().nodes)

    def test_from_settings(self):
        from n8n_dev_agent.config import AgentSettings

        settings = AgentSettings(repair_budget=3, proximity_threshold=80.0, persist_errors=False)
        orchestrator = RepairOrchestrator.from_settings(ScriptedAdapter(), settings)
        assert orchestrator.budget == 3
        assert orchestrator.fixer.proximity_threshold == 80.0
        assert orchestrator.tracker.store.capacity == 1000
