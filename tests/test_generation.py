"""Generator boundary: JSON extraction and the ReasoningEngine-backed adapter."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from n8n_dev_agent.agent.generation import (
    EngineGenerationAdapter,
    extract_json,
    fix_common_json_errors,
)
from n8n_dev_agent.agent.workflow import WorkflowGraph
from n8n_dev_agent.reasoning import EngineResponse

_WORKFLOW = {
    "name": "",
    "nodes": [
        {"id": "1", "name": "Start", "type": "n8n-nodes-base.manualTrigger", "position": [0, 0], "parameters": {}},
        {"id": "2", "name": "Noop", "type": "n8n-nodes-base.noOp", "position": [220, 0], "parameters": {}},
    ],
    "connections": {"Start": {"main": [[{"node": "Noop", "type": "main", "index": 0}]]}},
}


def _engine(*contents: str, stop_reason: str = "end_turn") -> MagicMock:
    engine = MagicMock()
    engine.model_id = "claude-test"
    engine.complete = AsyncMock(side_effect=[
        EngineResponse(content=c, stop_reason=stop_reason, input_tokens=10, output_tokens=20)
        for c in contents
    ])
    return engine


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------


class TestExtractJson:
    def test_raw_json(self):
        assert extract_json('{"a": 1}') == {"a": 1}

    def test_fenced_json(self):
        assert extract_json('Here you go:\n```json\n{"a": 1}\n```\nEnjoy') == {"a": 1}

    def test_outermost_object_in_prose(self):
        assert extract_json('The workflow is {"a": {"b": 2}} as requested.') == {"a": {"b": 2}}

    def test_trailing_commas_and_comments_are_repaired(self):
        text = '```json\n{\n  "a": 1, // first\n  "b": [1, 2,],\n}\n```'
        assert extract_json(text) == {"a": 1, "b": [1, 2]}

    def test_urls_survive_comment_stripping(self):
        assert fix_common_json_errors('{"url": "https://api.acme.io"}') == '{"url": "https://api.acme.io"}'

    def test_unquoted_keys(self):
        assert json.loads(fix_common_json_errors("{a: 1, b: 2}")) == {"a": 1, "b": 2}

    @pytest.mark.parametrize("text", ["", "   ", None])
    def test_empty_response(self, text):
        with pytest.raises(ValueError, match="empty model response"):
            extract_json(text)

    def test_garbage(self):
        with pytest.raises(ValueError, match="Could not parse JSON"):
            extract_json("I cannot build that workflow.")


# ---------------------------------------------------------------------------
# EngineGenerationAdapter
# ---------------------------------------------------------------------------


class TestEngineGenerationAdapter:
    @pytest.mark.asyncio
    async def test_generate_parses_workflow_and_names_it(self):
        engine = _engine(json.dumps(_WORKFLOW))
        adapter = EngineGenerationAdapter(engine)
        result = await adapter.generate("do nothing", "Idle")
        assert result.success
        assert result.graph.name == "Idle"
        assert result.graph.node_names() == ["Start", "Noop"]
        assert result.usage == {"input_tokens": 10, "output_tokens": 20}
        assert adapter.provider == "claude-test"

    @pytest.mark.asyncio
    async def test_generate_prompt_lists_node_types(self):
        engine = _engine(json.dumps(_WORKFLOW))
        await EngineGenerationAdapter(engine).generate("do nothing", "Idle")
        system = engine.complete.call_args.kwargs["system"]
        assert "n8n-nodes-base.httpRequest" in system
        assert '{"name", "nodes", "connections", "settings"}' in system

    @pytest.mark.asyncio
    async def test_generate_unparseable_is_a_failed_result(self):
        adapter = EngineGenerationAdapter(_engine("Sorry, no."))
        result = await adapter.generate("x", "y")
        assert not result.success
        assert result.graph is None
        assert "Could not parse JSON" in result.error

    @pytest.mark.asyncio
    async def test_generate_truncation_is_reported(self):
        adapter = EngineGenerationAdapter(_engine('{"nodes": [', stop_reason="max_tokens"))
        result = await adapter.generate("x", "y")
        assert not result.success
        assert "truncated" in result.error

    @pytest.mark.asyncio
    async def test_generate_duplicate_names_is_a_failed_result(self):
        bad = {"nodes": [
            {"id": "1", "name": "A", "type": "n8n-nodes-base.noOp"},
            {"id": "2", "name": "A", "type": "n8n-nodes-base.noOp"},
        ]}
        result = await EngineGenerationAdapter(_engine(json.dumps(bad))).generate("x", "y")
        assert not result.success
        assert "Duplicate node name" in result.error

    @pytest.mark.asyncio
    async def test_engine_errors_propagate(self):
        engine = MagicMock()
        engine.model_id = "claude-test"
        engine.complete = AsyncMock(side_effect=RuntimeError("provider down"))
        with pytest.raises(RuntimeError, match="provider down"):
            await EngineGenerationAdapter(engine).generate("x", "y")

    @pytest.mark.asyncio
    async def test_timeout_propagates(self):
        async def slow(*_args, **_kwargs):
            await asyncio.sleep(5)

        engine = MagicMock()
        engine.model_id = "claude-test"
        engine.complete = slow
        with pytest.raises(asyncio.TimeoutError):
            await EngineGenerationAdapter(engine, timeout=0.01).generate("x", "y")

    @pytest.mark.asyncio
    async def test_fix_with_envelope(self):
        reply = {"workflow": _WORKFLOW, "fixes_applied": ["Connected Start -> Noop"]}
        adapter = EngineGenerationAdapter(_engine(json.dumps(reply)))
        graph = WorkflowGraph.from_dict({**_WORKFLOW, "name": "Idle", "connections": {}})
        result = await adapter.fix(graph, [{"node": "Noop", "message": "m", "suggestion": None}], "prompt")
        assert result.success
        assert result.fixes_applied == ["Connected Start -> Noop"]
        assert result.graph.name == "Idle"
        assert result.graph.has_edge("Start", "Noop")

    @pytest.mark.asyncio
    async def test_fix_bare_workflow(self):
        adapter = EngineGenerationAdapter(_engine(json.dumps(_WORKFLOW)))
        graph = WorkflowGraph.from_dict(_WORKFLOW)
        result = await adapter.fix(graph, [], "prompt")
        assert result.success and result.fixes_applied == []

    @pytest.mark.asyncio
    async def test_fix_sends_issues_and_workflow(self):
        engine = _engine(json.dumps(_WORKFLOW))
        graph = WorkflowGraph.from_dict(_WORKFLOW)
        issues = [{"node": "Noop", "message": "broken", "suggestion": "mend it"}]
        await EngineGenerationAdapter(engine).fix(graph, issues, "the prompt")
        user = engine.complete.call_args.args[0][0].content
        assert "the prompt" in user
        assert '"mend it"' in user
        assert '"Noop"' in user

    @pytest.mark.asyncio
    async def test_fix_unparseable_is_a_failed_result(self):
        adapter = EngineGenerationAdapter(_engine("no idea"))
        result = await adapter.fix(WorkflowGraph.from_dict(_WORKFLOW), [], "p")
        assert not result.success
        assert result.graph is None
