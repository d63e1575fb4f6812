"""StructuralValidator: connectivity, node types, parameter contracts."""

from __future__ import annotations

import pytest

from n8n_dev_agent.agent.validator import IssueType, Severity, StructuralValidator, validate
from n8n_dev_agent.agent.workflow import WorkflowGraph, WorkflowNode


def _node(name: str, node_type: str, params: dict | None = None, x: float = 0, y: float = 0) -> WorkflowNode:
    return WorkflowNode(
        id=name,
        name=name,
        type=node_type if "." in node_type else f"n8n-nodes-base.{node_type}",
        position=[x, y],
        parameters=params if params is not None else {},
    )


def _chain(*nodes: WorkflowNode) -> WorkflowGraph:
    graph = WorkflowGraph(name="test", nodes=list(nodes))
    for src, dst in zip(nodes, nodes[1:]):
        graph.add_edge(src.name, dst.name)
    return graph


@pytest.fixture
def validator() -> StructuralValidator:
    return StructuralValidator()


class TestConnectivity:
    def test_valid_chain(self, validator):
        graph = _chain(
            _node("Start", "manualTrigger"),
            _node("Fetch", "httpRequest", {"url": "https://api.acme.io"}),
        )
        result = validator.validate(graph)
        assert result.is_valid
        assert result.issues == [] and result.warnings == []
        assert result.node_stats == {
            "total": 2,
            "by_type": {"n8n-nodes-base.manualTrigger": 1, "n8n-nodes-base.httpRequest": 1},
        }

    def test_orphan_non_trigger_is_disconnected(self, validator):
        graph = _chain(_node("Start", "manualTrigger"))
        graph.nodes.append(_node("Orphan", "noOp"))
        result = validator.validate(graph)
        assert [i.issue_type for i in result.issues] == [IssueType.DISCONNECTED_NODE]
        assert result.issues[0].node_name == "Orphan"
        assert "disconnected node" in result.issues[0].message

    def test_triggers_need_no_incoming_edge(self, validator):
        graph = WorkflowGraph(nodes=[
            _node("Hook", "webhook", {"path": "in"}),
            _node("Cron", "cron"),
        ])
        result = validator.validate(graph)
        assert IssueType.DISCONNECTED_NODE not in result.issue_types()

    def test_respond_to_webhook_is_not_a_trigger(self, validator):
        graph = WorkflowGraph(nodes=[_node("Reply", "respondToWebhook")])
        assert validator.validate(graph).issues[0].issue_type is IssueType.DISCONNECTED_NODE

    def test_dangling_connection_is_a_warning(self, validator):
        graph = _chain(_node("Start", "manualTrigger"), _node("Noop", "noOp"))
        graph.add_edge("Noop", "Ghost")
        result = validator.validate(graph)
        assert result.is_valid
        assert result.warnings[0].issue_type is IssueType.DANGLING_CONNECTION
        assert result.warnings[0].severity is Severity.WARNING


class TestNodeTypes:
    def test_unknown_type_single_issue(self, validator):
        graph = _chain(_node("Start", "manualTrigger"), _node("Mystery", "unknown.nodeType"))
        result = validator.validate(graph)
        assert not result.is_valid
        assert [i.issue_type for i in result.issues] == [IssueType.UNKNOWN_NODE_TYPE]
        assert result.issues[0].suggestion is None

    def test_unknown_type_with_suggestion(self, validator):
        graph = _chain(_node("Start", "manualTrigger"), _node("Mail", "n8n-nodes-base.emailSendSmtp"))
        issue = validator.validate(graph).issues[0]
        assert issue.issue_type is IssueType.UNKNOWN_NODE_TYPE
        assert issue.suggestion == 'Use "n8n-nodes-base.emailSend" instead'


class TestParameters:
    def test_missing_required_parameter(self, validator):
        graph = _chain(_node("Start", "manualTrigger"), _node("Fetch", "httpRequest"))
        issue = validator.validate(graph).issues[0]
        assert issue.issue_type is IssueType.MISSING_REQUIRED_PARAMETER
        assert issue.parameter == "url"
        assert issue.message == 'Missing required parameter "url" on node "Fetch"'

    def test_missing_parameter_with_default_suggests_it(self, validator):
        graph = _chain(_node("Start", "manualTrigger"), _node("Batches", "splitInBatches"))
        issue = validator.validate(graph).issues[0]
        assert issue.suggestion == 'Set "batchSize" to its default 10'

    def test_invalid_type(self, validator):
        graph = _chain(_node("Start", "manualTrigger"), _node("Batches", "splitInBatches", {"batchSize": "ten"}))
        issue = validator.validate(graph).issues[0]
        assert issue.issue_type is IssueType.INVALID_PARAMETER_TYPE
        assert issue.suggestion == 'Provide "batchSize" as a number'

    def test_invalid_pattern(self, validator):
        graph = _chain(
            _node("Start", "manualTrigger"),
            _node("Fetch", "httpRequest", {"url": "api.acme.io/stats"}),
        )
        issue = validator.validate(graph).issues[0]
        assert issue.issue_type is IssueType.INVALID_PARAMETER_PATTERN
        assert issue.suggestion == "Absolute http(s) URL"

    def test_option_mismatch_is_warning(self, validator):
        graph = _chain(
            _node("Start", "manualTrigger"),
            _node("Fetch", "httpRequest", {"url": "https://api.acme.io", "method": "FETCH"}),
        )
        result = validator.validate(graph)
        assert result.is_valid
        assert result.warnings[0].issue_type is IssueType.INVALID_PARAMETER_PATTERN
        assert result.warnings[0].suggestion.startswith("Use one of: GET")

    def test_fix_request_shape(self, validator):
        graph = _chain(_node("Start", "manualTrigger"), _node("Fetch", "httpRequest"))
        assert validator.validate(graph).issues[0].to_fix_request() == {
            "node": "Fetch",
            "message": 'Missing required parameter "url" on node "Fetch"',
            "suggestion": None,
        }


def test_module_level_validate():
    graph = _chain(_node("Start", "manualTrigger"), _node("Noop", "noOp"))
    assert validate(graph).is_valid


def test_result_to_dict():
    graph = _chain(_node("Start", "manualTrigger"), _node("Fetch", "httpRequest"))
    data = validate(graph).to_dict()
    assert data["is_valid"] is False
    assert data["issues"][0]["issue_type"] == "missing_required_parameter"


class TestWorkflowShape:
    def _shape(self, result) -> list[IssueType]:
        return [w.issue_type for w in result.warnings]

    def test_empty_workflow(self, validator):
        result = validator.validate(WorkflowGraph(name="empty"))
        assert result.is_valid
        assert self._shape(result) == [IssueType.EMPTY_WORKFLOW]

    def test_triggerless_cycle_is_reported(self, validator):
        graph = _chain(_node("A", "noOp"), _node("B", "noOp"))
        graph.add_edge("B", "A")
        result = validator.validate(graph)
        assert result.is_valid
        assert self._shape(result) == [IssueType.NO_TRIGGER]
        assert result.warnings[0].severity is Severity.WARNING

    def test_credential_type_reused_more_than_three_times(self, validator):
        nodes = [_node("Start", "manualTrigger")]
        for i in range(4):
            node = _node(f"Step {i}", "noOp", x=220 * (i + 1))
            node.credentials = {"slackApi": {"id": "1", "name": "Slack"}}
            nodes.append(node)
        result = validator.validate(_chain(*nodes))
        assert result.is_valid
        assert self._shape(result) == [IssueType.DUPLICATE_CREDENTIAL]
        assert result.warnings[0].message == 'Credential type "slackApi" is used 4 times'

    def test_three_credential_uses_are_fine(self, validator):
        nodes = [_node("Start", "manualTrigger")]
        for i in range(3):
            node = _node(f"Step {i}", "noOp")
            node.credentials = {"slackApi": {"id": "1"}}
            nodes.append(node)
        assert validator.validate(_chain(*nodes)).warnings == []

    def test_naming_mismatch(self, validator):
        graph = _chain(_node("Start", "manualTrigger"), _node("Send alert", "noOp"))
        warning = validator.validate(graph).warnings[0]
        assert warning.issue_type is IssueType.NAMING_MISMATCH
        assert warning.node_name == "Send alert"

    def test_naming_uses_the_type_the_fixer_would_pick(self, validator):
        graph = _chain(_node("Start", "manualTrigger"), _node("Send mail", "n8n-nodes-base.email"))
        assert IssueType.NAMING_MISMATCH not in validator.validate(graph).issue_types()

    def test_excessive_mongodb(self, validator):
        graph = _chain(_node("Start", "manualTrigger"), *[_node(f"Log {i}", "mongo") for i in range(6)])
        messages = [w.message for w in validator.validate(graph).warnings if w.issue_type is IssueType.ANTI_PATTERN]
        assert messages == ["Excessive MongoDB usage (6 nodes)"]

    def test_large_workflow_without_error_trigger(self, validator):
        nodes = [_node("Start", "manualTrigger"), *[_node(f"Step {i}", "noOp") for i in range(20)]]
        result = validator.validate(_chain(*nodes))
        assert [w.message for w in result.warnings] == ["Complex workflow without error handling"]

        graph = _chain(*nodes)
        graph.nodes.append(_node("On error", "errorTrigger"))
        assert validator.validate(graph).warnings == []

    def test_branches_without_merge(self, validator):
        branches = [_node(f"Check {i}", "if") for i in range(4)]
        graph = _chain(_node("Start", "manualTrigger"), *branches)
        messages = [w.message for w in validator.validate(graph).warnings if w.issue_type is IssueType.ANTI_PATTERN]
        assert messages == ["Multiple branches without merge nodes"]

        graph.nodes.append(_node("Join", "merge"))
        graph.add_edge("Check 3", "Join")
        messages = [w.message for w in validator.validate(graph).warnings if w.issue_type is IssueType.ANTI_PATTERN]
        assert messages == []
