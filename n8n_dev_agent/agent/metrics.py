"""Per-phase timing and counters for one repair run.

PhaseMetrics     -- snapshot of one repair phase's counters + duration.
MetricsCollector -- async context manager; read .result / .to_dict() after exit.

Usage::

    async with MetricsCollector("ai_repair", attempt=1) as m:
        m.issues_before = len(validation.issues)
        result = await adapter.fix(...)
        m.fixes_applied = len(result.fixes_applied)
    report.phase_metrics.append(m.to_dict())
"""

from __future__ import annotations

import dataclasses
import time
from typing import Any


# ---------------------------------------------------------------------------
# PhaseMetrics dataclass
# ---------------------------------------------------------------------------


@dataclasses.dataclass
class PhaseMetrics:
    """Timing and counter snapshot for one repair phase.

    Fields
    ------
    phase:         "validate", "auto_fix" or "ai_repair".
    attempt:       AI repair attempt number the phase belongs to (0 before any).
    start_ts:      Unix timestamp at phase start (time.time()).
    end_ts:        Unix timestamp at phase end.
    duration_ms:   (end_ts - start_ts) * 1000.
    issues_before: Error-severity issues when the phase started.
    issues_after:  Error-severity issues when the phase ended.
    fixes_applied: Changes made by the phase (auto-fix steps or generator fixes).
    failed:        True when the phase's external call raised or reported failure.
    """

    phase: str
    attempt: int
    start_ts: float
    end_ts: float
    duration_ms: float
    issues_before: int = 0
    issues_after: int = 0
    fixes_applied: int = 0
    failed: bool = False


# ---------------------------------------------------------------------------
# MetricsCollector async context manager
# ---------------------------------------------------------------------------


class MetricsCollector:
    """Async context manager that records one phase's timing and counters.

    An exception inside the block still finalizes the metrics (marked
    failed) and then propagates.
    """

    def __init__(self, phase: str, attempt: int = 0) -> None:
        self.phase = phase
        self.attempt = attempt
        self.issues_before: int = 0
        self.issues_after: int = 0
        self.fixes_applied: int = 0
        self.failed: bool = False
        self._start_ts: float = 0.0
        self._result: PhaseMetrics | None = None

    async def __aenter__(self) -> "MetricsCollector":
        self._start_ts = time.time()
        return self

    async def __aexit__(self, exc_type: object, *_args: object) -> None:
        end_ts = time.time()
        self._result = PhaseMetrics(
            phase=self.phase,
            attempt=self.attempt,
            start_ts=self._start_ts,
            end_ts=end_ts,
            duration_ms=(end_ts - self._start_ts) * 1000,
            issues_before=self.issues_before,
            issues_after=self.issues_after,
            fixes_applied=self.fixes_applied,
            failed=self.failed or exc_type is not None,
        )

    @property
    def result(self) -> PhaseMetrics | None:
        """Finalized PhaseMetrics after the context manager exits, else None."""
        return self._result

    def to_dict(self) -> dict[str, Any]:
        """Finalized PhaseMetrics as a JSON-serialisable dict ({} before exit)."""
        return dataclasses.asdict(self._result) if self._result is not None else {}
