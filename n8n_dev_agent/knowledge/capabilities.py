"""Closed registry of n8n node capabilities and parameter contracts.

The registry is built once from the plain-data catalog in catalog.py and
validated at load time: every pattern must compile, every default must
satisfy its own constraints, and every referenced alternative / neighbour /
synonym target must itself be registered. After construction nothing in the
registry can change.

Lookups never return a bare None for "is this type known": resolve() returns
either KnownType(spec) or UnknownType(node_type, suggestion), so a caller
that forgets the unknown case fails a match statement instead of silently
skipping checks.

Public surface:
    CapabilityRegistry       -- lookups, parameter validation, suggestions
    CapabilitySpec           -- frozen per-type contract
    ParameterSpec            -- frozen per-parameter contract
    KnownType / UnknownType  -- tagged resolve() outcome
    ParameterValidation      -- result of validate_parameters()
    is_trigger_type()        -- entry-point predicate used by validator and fixer
    is_expression()          -- n8n expression detector
"""

from __future__ import annotations

import copy
import functools
import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, NewType

from n8n_dev_agent.knowledge.catalog import (
    BASE,
    NODE_CATALOG,
    NON_TRIGGER_TYPES,
    TRIGGER_MARKERS,
    TRIGGER_TYPES,
    TYPE_SYNONYMS,
)

logger = logging.getLogger(__name__)

NodeType = NewType("NodeType", str)

PARAMETER_TYPES = ("string", "number", "boolean", "object", "array")


class CapabilityRegistryError(ValueError):
    """Raised when the catalog fails load-time validation."""


class _NoDefault:
    def __repr__(self) -> str:
        return "NO_DEFAULT"


NO_DEFAULT: Any = _NoDefault()


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def is_expression(value: Any) -> bool:
    """True for n8n expressions ("={{ $json.x }}"), which are resolved at run time."""
    return isinstance(value, str) and (value.startswith("=") or "{{" in value)


def json_type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, list):
        return "array"
    return type(value).__name__


def is_trigger_type(node_type: str) -> bool:
    """Classify a node type as a workflow entry point by its name."""
    if node_type in NON_TRIGGER_TYPES:
        return False
    if node_type in TRIGGER_TYPES:
        return True
    lowered = node_type.lower()
    return any(marker in lowered for marker in TRIGGER_MARKERS)


# ---------------------------------------------------------------------------
# Specs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParameterProblem:
    """One constraint violation found while checking a parameter value."""

    parameter: str
    kind: str       # "missing" | "type" | "pattern" | "option"
    severity: str   # "error" | "warning"
    message: str


@dataclass(frozen=True)
class ParameterSpec:
    name: str
    type: str | None = None
    required: bool = False
    default: Any = NO_DEFAULT
    pattern: str | None = None
    options: tuple[Any, ...] | None = None
    description: str = ""

    @property
    def has_default(self) -> bool:
        return self.default is not NO_DEFAULT

    def default_value(self) -> Any:
        """Return a fresh copy of the default so callers can mutate it."""
        return copy.deepcopy(self.default)

    def check(self, value: Any) -> list[ParameterProblem]:
        """Check one present value against type, pattern and options.

        Expressions are resolved by the engine at run time and are not checked.
        Type and pattern violations are errors; an option mismatch is a warning.
        """
        if value is None or is_expression(value):
            return []

        if self.type and json_type_name(value) != self.type:
            return [ParameterProblem(
                self.name, "type", "error",
                f'Parameter "{self.name}" expected type {self.type}, '
                f"got {json_type_name(value)}",
            )]

        problems: list[ParameterProblem] = []
        if self.pattern and isinstance(value, str):
            if re.search(self.pattern, value) is None:
                problems.append(ParameterProblem(
                    self.name, "pattern", "error",
                    f'Parameter "{self.name}" value {value!r} does not match '
                    f"pattern {self.pattern}",
                ))

        if self.options is not None:
            allowed = {str(o) for o in self.options}
            items = value if isinstance(value, list) else [value]
            bad = [v for v in items if not is_expression(v) and str(v) not in allowed]
            if bad:
                problems.append(ParameterProblem(
                    self.name, "option", "warning",
                    f'Parameter "{self.name}" value {bad[0]!r} is not one of the '
                    f"allowed options: {', '.join(str(o) for o in self.options)}",
                ))
        return problems


@dataclass(frozen=True)
class CapabilitySpec:
    """Immutable parameter and neighbourhood contract for one node type."""

    node_type: str
    parameters: Mapping[str, ParameterSpec] = field(default_factory=lambda: MappingProxyType({}))
    can_handle: tuple[str, ...] = ()
    required_for: tuple[str, ...] = ()
    alternative_types: tuple[str, ...] = ()
    recommended_input_types: tuple[str, ...] = ()
    recommended_output_types: tuple[str, ...] = ()

    @property
    def required_parameters(self) -> tuple[str, ...]:
        return tuple(p.name for p in self.parameters.values() if p.required)

    @property
    def optional_parameters_with_defaults(self) -> dict[str, Any]:
        return {
            p.name: p.default_value()
            for p in self.parameters.values()
            if not p.required and p.has_default
        }

    @property
    def pattern_constraints(self) -> dict[str, str]:
        return {p.name: p.pattern for p in self.parameters.values() if p.pattern}

    @property
    def allowed_options(self) -> dict[str, tuple[Any, ...]]:
        return {p.name: p.options for p in self.parameters.values() if p.options is not None}


@dataclass(frozen=True)
class KnownType:
    spec: CapabilitySpec

    @property
    def node_type(self) -> str:
        return self.spec.node_type


@dataclass(frozen=True)
class UnknownType:
    node_type: str
    suggestion: str | None = None


@dataclass
class ParameterValidation:
    """Outcome of CapabilityRegistry.validate_parameters()."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    problems: list[ParameterProblem] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class CapabilityRegistry:
    """Lookup service over the closed node-type catalog."""

    def __init__(
        self,
        catalog: Mapping[str, Mapping[str, Any]] | None = None,
        synonyms: Mapping[str, str] | None = None,
    ) -> None:
        catalog = NODE_CATALOG if catalog is None else catalog
        synonyms = TYPE_SYNONYMS if synonyms is None else synonyms

        specs = {node_type: _build_spec(node_type, entry) for node_type, entry in catalog.items()}
        self._specs: Mapping[NodeType, CapabilitySpec] = MappingProxyType(specs)
        self._by_lower = {t.lower(): t for t in specs}
        self._synonyms = MappingProxyType({k.lower(): v for k, v in synonyms.items()})
        self._check_references()
        logger.debug("CapabilityRegistry loaded: %d node types", len(specs))

    def _check_references(self) -> None:
        for spec in self._specs.values():
            for ref in (
                *spec.alternative_types,
                *spec.recommended_input_types,
                *spec.recommended_output_types,
            ):
                if ref not in self._specs:
                    raise CapabilityRegistryError(
                        f"{spec.node_type} references unregistered type {ref!r}"
                    )
        for alias, target in self._synonyms.items():
            if target not in self._specs:
                raise CapabilityRegistryError(
                    f"synonym {alias!r} points to unregistered type {target!r}"
                )

    # -- lookups ------------------------------------------------------------

    @property
    def node_types(self) -> list[str]:
        return list(self._specs)

    def is_registered(self, node_type: str) -> bool:
        return node_type in self._specs

    def get(self, node_type: str) -> CapabilitySpec | None:
        return self._specs.get(node_type)

    def resolve(self, node_type: str) -> KnownType | UnknownType:
        spec = self._specs.get(node_type)
        if spec is not None:
            return KnownType(spec)
        return UnknownType(node_type, self.suggest_type(node_type))

    def suggest_type(self, node_type: str) -> str | None:
        """Registered type an unknown type most likely meant, or None.

        Checks, in order: case-insensitive match, missing "n8n-nodes-base."
        prefix, then the synonym table keyed by the bare name.
        """
        if not node_type or node_type in self._specs:
            return None
        lowered = node_type.lower()
        if lowered in self._by_lower:
            return self._by_lower[lowered]
        bare = lowered.rsplit(".", 1)[-1]
        prefixed = (BASE + bare).lower()
        if prefixed in self._by_lower:
            return self._by_lower[prefixed]
        return self._synonyms.get(bare)

    # -- parameters ---------------------------------------------------------

    def get_required_parameters(self, node_type: str) -> list[str]:
        spec = self._specs.get(node_type)
        return list(spec.required_parameters) if spec else []

    def get_parameter_defaults(self, node_type: str) -> dict[str, Any]:
        """Defaults for every parameter (required or optional) that has one."""
        spec = self._specs.get(node_type)
        if spec is None:
            return {}
        return {p.name: p.default_value() for p in spec.parameters.values() if p.has_default}

    def validate_parameters(self, node_type: str, params: Mapping[str, Any]) -> ParameterValidation:
        """Check params against the registered contract for node_type."""
        spec = self._specs.get(node_type)
        if spec is None:
            return ParameterValidation(valid=False, errors=[f"Unknown node type: {node_type}"])

        problems: list[ParameterProblem] = []
        for param in spec.parameters.values():
            value = params.get(param.name)
            if value is None:
                if param.required:
                    problems.append(ParameterProblem(
                        param.name, "missing", "error",
                        f'Missing required parameter "{param.name}"',
                    ))
                continue
            problems.extend(param.check(value))

        errors = [p.message for p in problems if p.severity == "error"]
        warnings = [p.message for p in problems if p.severity == "warning"]
        return ParameterValidation(
            valid=not errors, errors=errors, warnings=warnings, problems=problems,
        )

    # -- capabilities -------------------------------------------------------

    def find_nodes_by_capability(self, capability: str) -> list[str]:
        needle = capability.lower()
        return [
            spec.node_type
            for spec in self._specs.values()
            if any(needle in tag.lower() for tag in (*spec.can_handle, *spec.required_for))
        ]

    def can_handle(self, node_type: str, capability: str) -> bool:
        spec = self._specs.get(node_type)
        if spec is None:
            return False
        needle = capability.lower()
        return any(needle in tag.lower() for tag in spec.can_handle)

    def get_alternative_nodes(self, node_type: str) -> list[str]:
        spec = self._specs.get(node_type)
        return list(spec.alternative_types) if spec else []

    def get_recommended_connections(self, node_type: str) -> dict[str, list[str]]:
        spec = self._specs.get(node_type)
        if spec is None:
            return {"inputs": [], "outputs": []}
        return {
            "inputs": list(spec.recommended_input_types),
            "outputs": list(spec.recommended_output_types),
        }


# ---------------------------------------------------------------------------
# Load-time construction
# ---------------------------------------------------------------------------


def _build_param(node_type: str, name: str, entry: Mapping[str, Any]) -> ParameterSpec:
    ptype = entry.get("type")
    if ptype is not None and ptype not in PARAMETER_TYPES:
        raise CapabilityRegistryError(f"{node_type}.{name}: unknown parameter type {ptype!r}")

    pattern = entry.get("pattern")
    if pattern is not None:
        try:
            re.compile(pattern)
        except re.error as e:
            raise CapabilityRegistryError(f"{node_type}.{name}: bad pattern: {e}") from e

    options = entry.get("options")
    param = ParameterSpec(
        name=name,
        type=ptype,
        required=bool(entry.get("required", False)),
        default=copy.deepcopy(entry["default"]) if "default" in entry else NO_DEFAULT,
        pattern=pattern,
        options=tuple(options) if options is not None else None,
        description=entry.get("description", ""),
    )
    if param.has_default:
        problems = param.check(param.default)
        if problems:
            raise CapabilityRegistryError(
                f"{node_type}.{name}: default violates its own contract: {problems[0].message}"
            )
    return param


def _build_spec(node_type: str, entry: Mapping[str, Any]) -> CapabilitySpec:
    if not node_type or "." not in node_type:
        raise CapabilityRegistryError(f"node type {node_type!r} is not a qualified identifier")
    params = {
        name: _build_param(node_type, name, p)
        for name, p in (entry.get("parameters") or {}).items()
    }
    return CapabilitySpec(
        node_type=node_type,
        parameters=MappingProxyType(params),
        can_handle=tuple(entry.get("can_handle", ())),
        required_for=tuple(entry.get("required_for", ())),
        alternative_types=tuple(entry.get("alternatives", ())),
        recommended_input_types=tuple(entry.get("inputs", ())),
        recommended_output_types=tuple(entry.get("outputs", ())),
    )


@functools.lru_cache(maxsize=1)
def default_registry() -> CapabilityRegistry:
    """Registry over the bundled catalog, built once per process."""
    return CapabilityRegistry()
