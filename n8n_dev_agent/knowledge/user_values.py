"""Values a generated workflow cannot default: credentials, endpoints, identifiers.

The generator fills these with whatever looks plausible ("your-api-key",
"https://api.example.com", "+1234567890"). Nothing here blocks validity; the
findings feed the end-user report so a person knows what still needs to be
filled in before the workflow is activated.

PlaceholderClassifier keeps its heuristics as named regex tables so tests can
enumerate exactly which rule flags which value.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

from n8n_dev_agent.knowledge.catalog import BASE, USER_VALUE_CATALOG

logger = logging.getLogger(__name__)


class UserValueKind(str, Enum):
    CREDENTIAL = "credential"
    ENDPOINT = "endpoint"
    IDENTIFIER = "identifier"
    CONFIGURATION = "configuration"


@dataclass(frozen=True)
class RequiredUserValue:
    parameter: str
    classification: UserValueKind
    description: str = ""
    is_sensitive: bool = False
    example_value: str | None = None


@dataclass
class MissingValue:
    """One value on one node that still needs a human."""

    parameter: str
    classification: UserValueKind
    description: str
    reason: str                      # "missing" | "placeholder" | "hardcoded_in_code"
    is_sensitive: bool = False
    example_value: str | None = None
    current_value: Any = None
    matched_rules: list[str] = field(default_factory=list)


@dataclass
class UserValueFinding:
    node_id: str
    node_name: str
    node_type: str
    missing_values: list[MissingValue] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Heuristic classifier
# ---------------------------------------------------------------------------

# Applies to every value regardless of classification.
PLACEHOLDER_RULES: tuple[tuple[str, str], ...] = (
    ("template_marker", r"your[-_ ]|yourcompany|yourdomain|yourservice"),
    ("example_domain", r"example\.(com|org|net)"),
    ("loopback", r"localhost|127\.0\.0\.1"),
    ("placeholder_word", r"placeholder|changeme|x{3,}|<[a-z_ ]+>"),
    ("demo_word", r"\b(test|demo|sample|dummy)\b"),
    ("dummy_number", r"123456|abc123|1234-5678"),
    ("generic_mailbox", r"^(noreply|admin|user|info|alerts|notifications|recipient)@"),
    ("canned_secret", r"mqtt_user|mqtt_password|sample_doc_id|your_api_key|bearer \[token\]"),
    ("env_reference", r"\$env\."),
)

# Extra checks for endpoint-classified values.
ENDPOINT_RULES: tuple[tuple[str, str], ...] = (
    ("example_host", r"://(api\.)?example\.|mqtt-broker\.example"),
    ("demo_host", r"://(test|demo|sample)\."),
    ("vanity_host", r"your(company|domain|service|blog)"),
    ("sample_shop", r"ecommerce\.com"),
)

# Extra checks for identifier-classified values.
IDENTIFIER_RULES: tuple[tuple[str, str], ...] = (
    ("sequential_digits", r"^\+?(0+|1234567890|0987654321|123456789)$"),
    ("abc_prefix", r"^abc"),
    ("generic_word", r"test|sample|example|your"),
    ("channel_default", r"^#?general$"),
)

# Code-scanning expressions for literals embedded in script parameters.
CODE_SCAN_RULES: tuple[tuple[str, str], ...] = (
    ("url", r"https?://[^\s'\"`)]+"),
    ("email", r"[\w.+-]+@[\w-]+\.[\w.]+"),
    ("literal", r"['\"`]([^'\"`\n]*(?:your_|example)[^'\"`\n]*)['\"`]"),
)

_CODE_PARAMETERS = ("jsCode", "functionCode", "pythonCode")
_SET_NAME_HINTS = ("parameter", "config", "setting")


class PlaceholderClassifier:
    """Name which heuristic rules flag a value as a leftover placeholder."""

    def __init__(
        self,
        placeholder_rules: Iterable[tuple[str, str]] = PLACEHOLDER_RULES,
        endpoint_rules: Iterable[tuple[str, str]] = ENDPOINT_RULES,
        identifier_rules: Iterable[tuple[str, str]] = IDENTIFIER_RULES,
    ) -> None:
        self._general = [(n, re.compile(p, re.IGNORECASE)) for n, p in placeholder_rules]
        self._by_kind = {
            UserValueKind.ENDPOINT: [(n, re.compile(p, re.IGNORECASE)) for n, p in endpoint_rules],
            UserValueKind.IDENTIFIER: [(n, re.compile(p, re.IGNORECASE)) for n, p in identifier_rules],
        }

    def classify(self, value: Any, kind: UserValueKind | None = None) -> list[str]:
        """Return matching rule names, general rules first. Empty means it looks real."""
        if not isinstance(value, str) or not value.strip():
            return []
        text = value.strip()
        rules = self._general + self._by_kind.get(kind, [])
        return [name for name, rx in rules if rx.search(text)]

    def is_placeholder(self, value: Any) -> bool:
        return bool(self.classify(value))

    def is_example_endpoint(self, value: Any) -> bool:
        return bool(self.classify(value, UserValueKind.ENDPOINT))

    def is_example_identifier(self, value: Any) -> bool:
        return bool(self.classify(value, UserValueKind.IDENTIFIER))

    def scan_code(self, code: str) -> list[str]:
        """Hard-coded literals in a script that look like placeholders."""
        found: list[str] = []
        for _name, pattern in CODE_SCAN_RULES:
            for match in re.finditer(pattern, code):
                literal = match.group(match.lastindex or 0)
                if literal not in found and self.is_placeholder(literal):
                    found.append(literal)
        return found


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class UserValueRegistry:
    """Per node type list of values that must come from the user."""

    def __init__(
        self,
        catalog: Mapping[str, list[Mapping[str, Any]]] | None = None,
        classifier: PlaceholderClassifier | None = None,
    ) -> None:
        catalog = USER_VALUE_CATALOG if catalog is None else catalog
        self._values: dict[str, tuple[RequiredUserValue, ...]] = {
            node_type: tuple(
                RequiredUserValue(
                    parameter=e["parameter"],
                    classification=UserValueKind(e["classification"]),
                    description=e.get("description", ""),
                    is_sensitive=bool(e.get("sensitive", False)),
                    example_value=e.get("example"),
                )
                for e in entries
            )
            for node_type, entries in catalog.items()
        }
        self.classifier = classifier or PlaceholderClassifier()

    def get_required_values(self, node_type: str) -> list[RequiredUserValue]:
        return list(self._values.get(node_type, ()))

    def get_credential_parameters(self, node_type: str) -> list[str]:
        return [
            v.parameter
            for v in self._values.get(node_type, ())
            if v.classification is UserValueKind.CREDENTIAL
        ]

    def analyze_workflow(self, nodes: Iterable[Any]) -> list[UserValueFinding]:
        """Flag missing or placeholder-looking user values on each node.

        Nodes are WorkflowNode objects (anything with id, name, type,
        parameters and credentials attributes). Nodes with nothing to report
        are left out of the result.
        """
        findings: list[UserValueFinding] = []
        for node in nodes:
            missing = self._check_registered_values(node)
            missing.extend(self._scan_set_node(node))
            missing.extend(self._scan_code_node(node))
            if missing:
                findings.append(UserValueFinding(node.id, node.name, node.type, missing))
        logger.debug("analyze_workflow: %d node(s) need user values", len(findings))
        return findings

    def _check_registered_values(self, node: Any) -> list[MissingValue]:
        out: list[MissingValue] = []
        params = node.parameters or {}
        for req in self._values.get(node.type, ()):
            value = params.get(req.parameter)
            if value is None or value == "":
                if req.classification is UserValueKind.CREDENTIAL and node.credentials:
                    continue
                out.append(_missing(req, "missing", None, []))
                continue
            rules = self.classifier.classify(value, req.classification)
            if rules:
                out.append(_missing(req, "placeholder", value, rules))
        return out

    def _scan_set_node(self, node: Any) -> list[MissingValue]:
        if node.type != BASE + "set":
            return []
        if not any(hint in (node.name or "").lower() for hint in _SET_NAME_HINTS):
            return []
        values = (node.parameters or {}).get("values") or {}
        out: list[MissingValue] = []
        for group in ("string", "number"):
            entries = values.get(group) if isinstance(values, dict) else None
            for entry in entries or []:
                if not isinstance(entry, dict):
                    continue
                rules = self.classifier.classify(entry.get("value"))
                if rules:
                    out.append(MissingValue(
                        parameter=f"values.{group}.{entry.get('name', '?')}",
                        classification=UserValueKind.CONFIGURATION,
                        description=f"Configuration value {entry.get('name', '?')!r}",
                        reason="placeholder",
                        current_value=entry.get("value"),
                        matched_rules=rules,
                    ))
        return out

    def _scan_code_node(self, node: Any) -> list[MissingValue]:
        if node.type not in (BASE + "code", BASE + "function"):
            return []
        out: list[MissingValue] = []
        for param in _CODE_PARAMETERS:
            code = (node.parameters or {}).get(param)
            if not isinstance(code, str):
                continue
            for literal in self.classifier.scan_code(code):
                out.append(MissingValue(
                    parameter=param,
                    classification=UserValueKind.CONFIGURATION,
                    description="Hard-coded value in script",
                    reason="hardcoded_in_code",
                    current_value=literal,
                    matched_rules=self.classifier.classify(literal),
                ))
        return out

    # -- reporting ----------------------------------------------------------

    def generate_report(self, findings: list[UserValueFinding]) -> str:
        """Render findings as a markdown checklist for the end user."""
        if not findings:
            return "# Workflow configuration\n\nNo user-specific values are missing.\n"

        total = sum(len(f.missing_values) for f in findings)
        lines = [
            "# Workflow configuration required",
            "",
            f"The generated workflow still needs {total} value(s) from you before it can run.",
            "",
        ]

        credentials: dict[str, list[tuple[UserValueFinding, MissingValue]]] = {}
        other: list[tuple[UserValueFinding, MissingValue]] = []
        for finding in findings:
            for mv in finding.missing_values:
                if mv.classification is UserValueKind.CREDENTIAL:
                    credentials.setdefault(finding.node_type, []).append((finding, mv))
                else:
                    other.append((finding, mv))

        if credentials:
            lines += ["## Credentials", ""]
            for node_type, items in credentials.items():
                lines.append(f"### {node_type}")
                lines.extend(_report_line(f, mv) for f, mv in items)
                lines.append("")

        if other:
            lines += ["## Configuration", ""]
            lines.extend(_report_line(f, mv) for f, mv in other)
            lines.append("")

        lines += [
            "## Next steps",
            "",
            "1. Create the credentials listed above in n8n and select them on each node.",
            "2. Replace placeholder endpoints and identifiers with your real values.",
            "3. Re-run validation before activating the workflow.",
            "",
        ]
        return "\n".join(lines)


def _missing(req: RequiredUserValue, reason: str, value: Any, rules: list[str]) -> MissingValue:
    return MissingValue(
        parameter=req.parameter,
        classification=req.classification,
        description=req.description,
        reason=reason,
        is_sensitive=req.is_sensitive,
        example_value=req.example_value,
        current_value=value,
        matched_rules=rules,
    )


def _report_line(finding: UserValueFinding, mv: MissingValue) -> str:
    line = f"- **{finding.node_name}** `{mv.parameter}`: {mv.description or mv.classification.value}"
    if mv.reason == "missing":
        line += " (not set"
        if mv.example_value:
            line += f", e.g. `{mv.example_value}`"
        return line + ")"
    shown = "***" if mv.is_sensitive else mv.current_value
    return line + f" (current value `{shown}` looks like a placeholder)"
