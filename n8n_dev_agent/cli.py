"""Terminal client for the n8n workflow agent.

Usage:
    n8n-agent-cli validate workflow.json
    n8n-agent-cli fix workflow.json -o fixed.json
    n8n-agent-cli generate "Every morning fetch https://api.acme.io/stats and post to Slack"
    n8n-agent-cli errors --day 2026-10-19 --format csv
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from argparse import ArgumentParser, Namespace
from datetime import date, datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

from n8n_dev_agent.agent import (
    AutoFixer,
    EngineGenerationAdapter,
    GenerationError,
    RepairOrchestrator,
    StructuralValidator,
    WorkflowGraph,
)
from n8n_dev_agent.config import AgentSettings
from n8n_dev_agent.monitoring import ErrorTracker
from n8n_dev_agent.persistence import JsonlErrorLog
from n8n_dev_agent.reasoning import ReasoningSettings, create_engine


def _load_graph(path: str) -> WorkflowGraph:
    """Read and parse a workflow file. Exits with status 2 on failure."""
    try:
        return WorkflowGraph.from_json(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        print(f"Cannot read {path}: {e}", file=sys.stderr)
    except ValueError as e:
        print(f"Invalid workflow in {path}: {e}", file=sys.stderr)
    sys.exit(2)


def _write_graph(graph: WorkflowGraph, out: str | None) -> None:
    text = graph.to_json(indent=2)
    if out:
        Path(out).write_text(text + "\n", encoding="utf-8")
        print(f"Wrote {out}", file=sys.stderr)
    else:
        print(text)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_validate(args: Namespace, settings: AgentSettings) -> int:
    result = StructuralValidator().validate(_load_graph(args.file))
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.is_valid else 1


def _cmd_fix(args: Namespace, settings: AgentSettings) -> int:
    graph = _load_graph(args.file)
    fixer = AutoFixer(proximity_threshold=settings.proximity_threshold)
    fixed = fixer.fix(graph)
    for line in fixed.fixes_applied:
        print(f"fixed: {line}", file=sys.stderr)

    result = StructuralValidator(fixer.registry).validate(fixed.graph)
    for issue in result.issues:
        print(f"remaining: {issue.message}", file=sys.stderr)
    _write_graph(fixed.graph, args.output)
    return 0 if result.is_valid else 1


async def _run_generate(args: Namespace, settings: AgentSettings) -> int:
    reasoning = ReasoningSettings()
    adapter = EngineGenerationAdapter(
        create_engine(reasoning),
        timeout=settings.generation_timeout,
        temperature=reasoning.temperature,
        max_tokens=reasoning.max_tokens,
    )
    orchestrator = RepairOrchestrator.from_settings(adapter, settings)

    print(f"\nGenerating: {args.name}")
    print("-" * 60)
    try:
        outcome = await orchestrator.generate_and_repair(args.prompt, args.name)
    except GenerationError as e:
        print(f"\n{e}", file=sys.stderr)
        return 2

    report = outcome.report
    print(f"State          : {report.final_state.value}")
    print(f"Repair attempts: {report.repair_attempts}")
    print(f"Valid          : {report.is_valid}")
    for c in report.classified_issues:
        tag = "auto-fixable" if c.auto_fixable else "manual"
        print(f"  [{tag}] {c.issue.message}")
    print()
    print(report.user_values_report)

    _write_graph(outcome.graph, args.output)
    return 0 if report.is_valid else 1


def _cmd_generate(args: Namespace, settings: AgentSettings) -> int:
    # asyncio.run cancels the running task on Ctrl-C and re-raises here.
    try:
        return asyncio.run(_run_generate(args, settings))
    except KeyboardInterrupt:
        print("\n\nInterrupted.", file=sys.stderr)
        return 130


def _cmd_errors(args: Namespace, settings: AgentSettings) -> int:
    day = date.fromisoformat(args.day) if args.day else datetime.now(timezone.utc).date()
    log = JsonlErrorLog(settings.error_log_dir)
    tracker = asyncio.run(ErrorTracker.from_log(log, day, capacity=settings.error_capacity))
    if not len(tracker.store):
        print(f"No errors recorded for {day.isoformat()}", file=sys.stderr)
    print(tracker.export_errors(args.format), end="" if args.format == "csv" else "\n")
    return 0


_COMMANDS = {
    "validate": _cmd_validate,
    "fix": _cmd_fix,
    "generate": _cmd_generate,
    "errors": _cmd_errors,
}


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="n8n-agent-cli",
        description="n8n workflow agent: validate, repair and generate workflows",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default: N8N_AGENT_LOG_LEVEL)")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    validate_p = sub.add_parser("validate", help="Validate a workflow JSON file")
    validate_p.add_argument("file", help="Path to an n8n workflow export")

    fix_p = sub.add_parser("fix", help="Apply deterministic auto-fixes to a workflow file")
    fix_p.add_argument("file", help="Path to an n8n workflow export")
    fix_p.add_argument("-o", "--output", default=None, metavar="OUT", help="Write the result here (default: stdout)")

    gen_p = sub.add_parser("generate", help="Generate and repair a workflow from a prompt")
    gen_p.add_argument("prompt", help="Natural-language description of the workflow")
    gen_p.add_argument("--name", default="Generated workflow", help="Workflow name")
    gen_p.add_argument("-o", "--output", default=None, metavar="OUT", help="Write the result here (default: stdout)")

    err_p = sub.add_parser("errors", help="Export the persisted error log for one day")
    err_p.add_argument("--day", default=None, metavar="YYYY-MM-DD", help="Day to export (default: today, UTC)")
    err_p.add_argument("--format", choices=("json", "csv"), default="json")

    return parser


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = AgentSettings()
    logging.basicConfig(
        level=(args.log_level or settings.log_level).upper(),
        format="%(levelname)s: %(message)s",
    )

    command = _COMMANDS.get(args.command)
    if command is None:
        parser.print_help()
        sys.exit(1)
    sys.exit(command(args, settings))


if __name__ == "__main__":
    main()
