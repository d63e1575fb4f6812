"""Heuristic message classifier shared by error tracking and repair reporting.

One table, ERROR_PATTERNS, maps regular expressions to named failure
patterns. ErrorTracker uses it to mine recurring failures; the repair report
uses the same table to decide whether a remaining issue looks mechanically
fixable. Keeping both consumers on one table means a pattern name in the
error metrics always means the same thing as in a repair report.

The classification is keyword/regex based, not learned. Tests enumerate the
table directly.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class PatternRule:
    """One named pattern in the classifier table.

    Attributes:
        name:         Stable identifier reported in metrics ("disconnected_nodes").
        regex:        Case-insensitive expression matched with re.search.
        auto_fixable: True when the local fixer (or another mechanical step)
                      can plausibly resolve an issue of this kind without a
                      generator call.
        critical:     Always reported as a critical pattern in insights,
                      regardless of frequency.
        suggestion:   Remediation hint shown in insights.
    """

    name: str
    regex: str
    auto_fixable: bool
    critical: bool
    suggestion: str

    def matches(self, text: str) -> bool:
        return re.search(self.regex, text, re.IGNORECASE) is not None


ERROR_PATTERNS: tuple[PatternRule, ...] = (
    PatternRule(
        "disconnected_nodes", r"disconnected node",
        auto_fixable=True, critical=False,
        suggestion="Improve node connection logic in workflow builders",
    ),
    PatternRule(
        "circular_reference", r"circular reference|reference cycle",
        auto_fixable=False, critical=True,
        suggestion="Enhance circular reference detection before serialization",
    ),
    PatternRule(
        "invalid_node_type", r"invalid node type|unknown node type",
        auto_fixable=False, critical=False,
        suggestion="Update node catalog with latest n8n node types",
    ),
    PatternRule(
        "missing_parameters", r"missing (required )?parameter",
        auto_fixable=True, critical=False,
        suggestion="Add parameter validation before workflow generation",
    ),
    PatternRule(
        "timeout_errors", r"timeout|timed out|abort",
        auto_fixable=False, critical=True,
        suggestion="Increase timeout limits or optimize AI prompts",
    ),
    PatternRule(
        "missing_credentials", r"no api key|missing (api key|credential)",
        auto_fixable=False, critical=True,
        suggestion="Improve credential management for generated workflows",
    ),
    PatternRule(
        "json_parsing", r"json.*pars|pars.*json",
        auto_fixable=False, critical=False,
        suggestion="Add better JSON extraction from AI responses",
    ),
    PatternRule(
        "empty_branches", r"empty branch",
        auto_fixable=True, critical=False,
        suggestion="Enhance branch completion logic in validators",
    ),
    PatternRule(
        "merge_node_issues", r"merge.*node",
        auto_fixable=True, critical=False,
        suggestion="Improve merge node insertion algorithm",
    ),
    PatternRule(
        "parameter_type_mismatch", r"expected type",
        auto_fixable=True, critical=False,
        suggestion="Coerce parameter shapes before workflow generation",
    ),
    PatternRule(
        "parameter_pattern_mismatch", r"does not match pattern",
        auto_fixable=False, critical=False,
        suggestion="Document value formats in the generation prompt",
    ),
)

DEFAULT_SUGGESTION = "Investigate and add specific handling for this pattern"

_RULES_BY_NAME = {rule.name: rule for rule in ERROR_PATTERNS}

# Validator issue types and the rule each one reports under. Repair reports
# classify structural issues by type, never by message text.
ISSUE_TYPE_RULES: dict[str, str] = {
    "disconnected_node": "disconnected_nodes",
    "unknown_node_type": "invalid_node_type",
    "missing_required_parameter": "missing_parameters",
    "invalid_parameter_type": "parameter_type_mismatch",
    "invalid_parameter_pattern": "parameter_pattern_mismatch",
}

# Node names, parameter names and values are always double-quoted in
# messages; they are user text and never select a pattern.
_QUOTED = re.compile(r'"[^"]*"')

# Detail keys whose values are names rather than failure descriptions.
_NAME_KEYS = frozenset({
    "node", "node_id", "node_name", "name", "parameter", "parameters",
    "workflowName", "prompt",
})


def get_rule(name: str) -> PatternRule | None:
    return _RULES_BY_NAME.get(name)


def suggestion_for(name: str) -> str:
    rule = _RULES_BY_NAME.get(name)
    return rule.suggestion if rule else DEFAULT_SUGGESTION


def details_text(details: Any) -> str:
    """JSON text of details for searching; str() when it is not JSON-safe."""
    try:
        return json.dumps(details, default=str)
    except (TypeError, ValueError):
        return str(details)


def _detail_strings(value: Any, seen: set[int]) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, (dict, list, tuple)):
        if id(value) in seen:
            return []
        seen.add(id(value))
        out: list[str] = []
        if isinstance(value, dict):
            for key, item in value.items():
                if key in _NAME_KEYS:
                    continue
                out.append(str(key))
                out.extend(_detail_strings(item, seen))
        else:
            for item in value:
                out.extend(_detail_strings(item, seen))
        return out
    return [] if value is None else [str(value)]


def match_patterns(message: str, details: Any = None) -> list[str]:
    """Return the names of every rule matching message or details.

    Quoted text and name-valued detail keys are ignored. Names come back in
    table order, each at most once.
    """
    texts = [_QUOTED.sub('""', message or "")]
    if details:
        texts.append(_QUOTED.sub('""', " ".join(_detail_strings(details, set()))))
    return [
        rule.name
        for rule in ERROR_PATTERNS
        if any(rule.matches(text) for text in texts)
    ]


def is_auto_fixable(message: str) -> tuple[bool, str | None]:
    """Classify one free-text failure message.

    Returns (auto_fixable, first matching pattern name). A message matching
    no rule is not auto-fixable: unknown failure shapes need a human.
    A message matching any non-fixable rule is not auto-fixable either.
    """
    names = match_patterns(message)
    if not names:
        return False, None
    fixable = all(_RULES_BY_NAME[n].auto_fixable for n in names)
    return fixable, names[0]


def classify_issue_type(issue_type: str) -> tuple[bool, str | None]:
    """(auto_fixable, pattern name) for a validator issue type."""
    name = ISSUE_TYPE_RULES.get(issue_type)
    if name is None:
        return False, None
    return _RULES_BY_NAME[name].auto_fixable, name
