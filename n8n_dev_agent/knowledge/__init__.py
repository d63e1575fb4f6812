"""Static n8n knowledge: node capabilities, user-supplied values, failure patterns.

Everything in this package is a pure lookup over bundled data. No network
access, no mutable state after construction.

Public surface:
    CapabilityRegistry    -- per node type parameter contracts and neighbours.
    UserValueRegistry     -- values a generator cannot default (credentials, endpoints).
    PlaceholderClassifier -- named regex heuristics for leftover example values.
    ERROR_PATTERNS        -- shared failure-pattern table (metrics + repair report).
"""

from n8n_dev_agent.knowledge.capabilities import (
    CapabilityRegistry,
    CapabilityRegistryError,
    CapabilitySpec,
    KnownType,
    ParameterSpec,
    ParameterValidation,
    UnknownType,
    default_registry,
    is_expression,
    is_trigger_type,
)
from n8n_dev_agent.knowledge.patterns import ERROR_PATTERNS, PatternRule, match_patterns
from n8n_dev_agent.knowledge.user_values import (
    PlaceholderClassifier,
    RequiredUserValue,
    UserValueFinding,
    UserValueKind,
    UserValueRegistry,
)

__all__ = [
    "CapabilityRegistry",
    "CapabilityRegistryError",
    "CapabilitySpec",
    "ERROR_PATTERNS",
    "KnownType",
    "ParameterSpec",
    "ParameterValidation",
    "PatternRule",
    "PlaceholderClassifier",
    "RequiredUserValue",
    "UnknownType",
    "UserValueFinding",
    "UserValueKind",
    "UserValueRegistry",
    "default_registry",
    "is_expression",
    "is_trigger_type",
    "match_patterns",
]
