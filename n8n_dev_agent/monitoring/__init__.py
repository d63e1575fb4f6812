"""Error tracking for the generation and repair pipeline.

Public surface:
    ErrorTracker          -- records failures, mines patterns, reports metrics.
    ErrorStore            -- store interface the tracker depends on.
    RingBufferErrorStore  -- bounded, lock-guarded default store.
    ErrorRecord           -- one failure (+ ErrorContext, ErrorResolution).
    ErrorType / ErrorSeverity -- record taxonomy.
"""

from n8n_dev_agent.monitoring.error_tracker import (
    CSV_HEADERS,
    ErrorInsights,
    ErrorMetrics,
    ErrorTracker,
    PatternCount,
    PatternEvent,
)
from n8n_dev_agent.monitoring.records import (
    ErrorContext,
    ErrorRecord,
    ErrorResolution,
    ErrorSeverity,
    ErrorType,
)
from n8n_dev_agent.monitoring.store import ErrorStore, RingBufferErrorStore

__all__ = [
    "CSV_HEADERS",
    "ErrorContext",
    "ErrorInsights",
    "ErrorMetrics",
    "ErrorRecord",
    "ErrorResolution",
    "ErrorSeverity",
    "ErrorStore",
    "ErrorTracker",
    "ErrorType",
    "PatternCount",
    "PatternEvent",
    "RingBufferErrorStore",
]
