"""Generator boundary: ask an LLM for a workflow, or to fix one.

GenerationAdapter is the only thing the repair orchestrator knows about the
generator: two async calls returning result objects. Retries, backoff,
timeouts and provider-specific parsing belong to the adapter.

EngineGenerationAdapter is the bundled implementation on top of a
ReasoningEngine. It wraps each engine call in asyncio.wait_for, pulls JSON
out of the reply (raw, fenced, or the outermost {...} span, then a
common-error repair pass) and parses it with WorkflowGraph.from_dict.
Engine exceptions, including timeouts, propagate to the caller; parse
failures come back as success=False results.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from n8n_dev_agent.agent.workflow import WorkflowGraph
from n8n_dev_agent.knowledge.capabilities import CapabilityRegistry, default_registry
from n8n_dev_agent.reasoning import EngineResponse, Message, ReasoningEngine

logger = logging.getLogger("n8n_dev_agent.agent.generation")


class GenerationError(RuntimeError):
    """The initial generate call produced no usable workflow at all."""


@dataclass
class GenerationResult:
    success: bool
    graph: WorkflowGraph | None = None
    error: str | None = None
    usage: dict[str, int] | None = None


@dataclass
class FixResult:
    success: bool
    graph: WorkflowGraph | None = None
    fixes_applied: list[str] = field(default_factory=list)
    error: str | None = None


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------


class GenerationAdapter(ABC):
    """Two opaque async capabilities the orchestrator depends on."""

    @property
    def provider(self) -> str:
        """Provider label recorded in error context."""
        return "unknown"

    @abstractmethod
    async def generate(self, prompt: str, name: str) -> GenerationResult:
        """Produce a candidate workflow for a natural-language request."""
        ...

    @abstractmethod
    async def fix(
        self,
        graph: WorkflowGraph,
        issues: list[dict[str, Any]],
        original_prompt: str,
    ) -> FixResult:
        """Return a corrected workflow for the given issue list.

        issues items have the shape {"node", "message", "suggestion"}.
        """
        ...


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def fix_common_json_errors(text: str) -> str:
    """Repair the JSON mistakes models make most often."""
    text = re.sub(r"/\*.*?\*/", "", text, flags=re.DOTALL)
    # Line comments, but not the "//" inside "https://".
    text = re.sub(r'(?<![:"\\])//[^\n"]*$', "", text, flags=re.MULTILINE)
    text = re.sub(r",\s*([}\]])", r"\1", text)
    text = re.sub(r"}\s*{", "},{", text)
    text = re.sub(r'([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*:)', r'\1"\2"\3', text)
    return text


def extract_json(text: str | None) -> Any:
    """Pull the first JSON value out of a model reply.

    Raises ValueError when nothing parses.
    """
    if not text or not text.strip():
        raise ValueError("Could not parse JSON: empty model response")

    candidates = [text.strip()]
    candidates += [m.group(1).strip() for m in _FENCE_RE.finditer(text)]
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    last_error: Exception | None = None
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError as e:
            last_error = e
    for candidate in candidates[1:] or candidates:
        try:
            return json.loads(fix_common_json_errors(candidate))
        except json.JSONDecodeError as e:
            last_error = e
    raise ValueError(f"Could not parse JSON from model response: {last_error}")


# ---------------------------------------------------------------------------
# ReasoningEngine-backed adapter
# ---------------------------------------------------------------------------

_GENERATE_SYSTEM = """\
You are an n8n workflow engineer. Reply with a single JSON object in n8n export
format: {{"name", "nodes", "connections", "settings"}}.

Rules:
- Every node has a unique "id" and a unique "name"; connections are keyed by name.
- Start from exactly one trigger node; every other node must have an incoming connection.
- Lay nodes out left to right: position [x, y] with x growing by about 220 per step.
- Use only these node types:
{node_types}
- Fill every required parameter. Use obvious placeholders for credentials and
  endpoints the user did not give you.
No prose, no markdown outside the JSON.
"""

_FIX_SYSTEM = """\
You repair n8n workflows. You receive the original request, the current workflow
JSON and a list of validation issues. Reply with a single JSON object:
{"workflow": <the full corrected workflow>, "fixes_applied": ["<one line per change>"]}
Keep node names stable unless an issue requires renaming. No prose outside the JSON.
"""


class EngineGenerationAdapter(GenerationAdapter):
    """GenerationAdapter that prompts a ReasoningEngine.

    Args:
        engine:      Any ReasoningEngine (Claude, OpenAI, test double).
        registry:    Node catalog advertised to the model.
        timeout:     Seconds allowed per engine call; asyncio.TimeoutError propagates.
        temperature: Sampling temperature passed to the engine.
        max_tokens:  Reply length cap passed to the engine.
    """

    def __init__(
        self,
        engine: ReasoningEngine,
        registry: CapabilityRegistry | None = None,
        timeout: float = 120.0,
        temperature: float = 0.2,
        max_tokens: int = 8192,
    ) -> None:
        self._engine = engine
        self._registry = registry or default_registry()
        self._timeout = timeout
        self._temperature = temperature
        self._max_tokens = max_tokens

    @property
    def provider(self) -> str:
        return self._engine.model_id

    async def _complete(self, system: str, user: str) -> EngineResponse:
        return await asyncio.wait_for(
            self._engine.complete(
                [Message(role="user", content=user)],
                system=system,
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            ),
            timeout=self._timeout,
        )

    async def generate(self, prompt: str, name: str) -> GenerationResult:
        system = _GENERATE_SYSTEM.format(
            node_types="\n".join(f"  {t}" for t in self._registry.node_types)
        )
        response = await self._complete(system, f"Workflow name: {name}\n\nRequest:\n{prompt}")
        usage = response.usage()
        try:
            graph = WorkflowGraph.from_dict(extract_json(response.content))
        except ValueError as e:
            hint = " (response truncated at max_tokens)" if response.truncated else ""
            logger.warning("generate: unusable model output%s: %s", hint, e)
            return GenerationResult(success=False, error=f"{e}{hint}", usage=usage)

        if not graph.name:
            graph.name = name
        logger.info("generate: %d node(s) from %s", len(graph.nodes), self.provider)
        return GenerationResult(success=True, graph=graph, usage=usage)

    async def fix(
        self,
        graph: WorkflowGraph,
        issues: list[dict[str, Any]],
        original_prompt: str,
    ) -> FixResult:
        user = (
            f"Original request:\n{original_prompt}\n\n"
            f"Validation issues:\n{json.dumps(issues, indent=2)}\n\n"
            f"Current workflow:\n{graph.to_json(indent=2)}"
        )
        response = await self._complete(_FIX_SYSTEM, user)
        try:
            data = extract_json(response.content)
            if isinstance(data, dict) and isinstance(data.get("workflow"), dict):
                fixes = [str(f) for f in data.get("fixes_applied") or []]
                data = data["workflow"]
            else:
                fixes = []
            fixed = WorkflowGraph.from_dict(data)
        except ValueError as e:
            logger.warning("fix: unusable model output: %s", e)
            return FixResult(success=False, error=str(e))

        if not fixed.name:
            fixed.name = graph.name
        return FixResult(success=True, graph=fixed, fixes_applied=fixes)
