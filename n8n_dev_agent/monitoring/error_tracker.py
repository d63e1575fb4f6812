"""Error tracking and failure-pattern mining.

Every failure the repair pipeline meets becomes an ErrorRecord. The tracker:

  - appends it to an injectable ErrorStore (bounded ring buffer by default)
  - mirrors it to the JSONL error log when one is configured
  - emits an "error" event, then one "pattern" event per matched pattern
  - answers metrics / insights / search / export queries over the buffer

Pattern mining uses the shared table in knowledge/patterns.py, so a pattern
name here means the same thing as in a repair report.

Listeners are plain callables registered with on(event, callback). A
listener that raises is logged and skipped; it never breaks tracking.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable

from n8n_dev_agent.knowledge.patterns import details_text, get_rule, match_patterns, suggestion_for
from n8n_dev_agent.monitoring.records import (
    ErrorContext,
    ErrorRecord,
    ErrorResolution,
    ErrorSeverity,
    ErrorType,
    format_timestamp,
    generate_error_id,
)
from n8n_dev_agent.monitoring.store import ErrorStore, RingBufferErrorStore
from n8n_dev_agent.persistence.error_log import JsonlErrorLog

logger = logging.getLogger("n8n_dev_agent.monitoring.error_tracker")

EVENTS = ("error", "pattern", "resolved")

CSV_HEADERS = [
    "ID", "Timestamp", "Type", "Severity", "Message",
    "Provider", "Phase", "Node Count", "Resolution",
]

TimeRange = tuple[datetime, datetime]
Listener = Callable[[Any], None]


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class PatternCount:
    pattern: str
    count: int
    last_seen: datetime

    def to_dict(self) -> dict[str, Any]:
        return {"pattern": self.pattern, "count": self.count, "last_seen": format_timestamp(self.last_seen)}


@dataclass
class PatternEvent:
    """Payload of a "pattern" event."""

    pattern: str
    record: ErrorRecord


@dataclass
class ErrorMetrics:
    total_errors: int = 0
    errors_by_type: dict[str, int] = field(default_factory=dict)
    errors_by_severity: dict[str, int] = field(default_factory=dict)
    errors_by_provider: dict[str, int] = field(default_factory=dict)
    errors_by_phase: dict[str, int] = field(default_factory=dict)
    resolution_rate: float = 0.0
    common_patterns: list[PatternCount] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_errors": self.total_errors,
            "errors_by_type": self.errors_by_type,
            "errors_by_severity": self.errors_by_severity,
            "errors_by_provider": self.errors_by_provider,
            "errors_by_phase": self.errors_by_phase,
            "resolution_rate": self.resolution_rate,
            "common_patterns": [p.to_dict() for p in self.common_patterns],
        }


@dataclass
class TopIssue:
    issue: str
    count: int
    suggestion: str


@dataclass
class ErrorInsights:
    top_issues: list[TopIssue] = field(default_factory=list)
    provider_reliability: dict[str, float] = field(default_factory=dict)
    critical_patterns: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "top_issues": [vars(t) for t in self.top_issues],
            "provider_reliability": self.provider_reliability,
            "critical_patterns": self.critical_patterns,
            "recommendations": self.recommendations,
        }


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------


class ErrorTracker:
    """Records failures and mines them for recurring patterns.

    Args:
        store: Record store; defaults to a fresh RingBufferErrorStore(1000).
        log:   Optional JSONL log every record is mirrored to.
        clock: Returns the current aware UTC datetime (injectable for tests).
    """

    def __init__(
        self,
        store: ErrorStore | None = None,
        log: JsonlErrorLog | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store if store is not None else RingBufferErrorStore()
        self._log = log
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._listeners: dict[str, list[Listener]] = {event: [] for event in EVENTS}

    @classmethod
    def from_settings(cls, settings: Any) -> ErrorTracker:
        """Build a tracker from AgentSettings (capacity, log dir, persistence switch)."""
        log = JsonlErrorLog(settings.error_log_dir) if settings.persist_errors else None
        return cls(store=RingBufferErrorStore(settings.error_capacity), log=log)

    @classmethod
    async def from_log(cls, log: JsonlErrorLog, day: date, capacity: int = 1000) -> ErrorTracker:
        """Rebuild a read-only tracker from one persisted day file."""
        tracker = cls(store=RingBufferErrorStore(capacity))
        for raw in await log.read_day(day):
            try:
                tracker._store.append(ErrorRecord.from_dict(raw))
            except (KeyError, ValueError) as exc:
                logger.warning("Skipping malformed error record %s: %s", raw.get("id"), exc)
        return tracker

    @property
    def store(self) -> ErrorStore:
        return self._store

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: str, callback: Listener) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown event {event!r}; expected one of {EVENTS}")
        self._listeners[event].append(callback)

    def off(self, event: str, callback: Listener) -> None:
        listeners = self._listeners.get(event, [])
        if callback in listeners:
            listeners.remove(callback)

    def _emit(self, event: str, payload: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(payload)
            except Exception as exc:
                logger.warning("ErrorTracker listener for %r failed: %s", event, exc)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def track_error(
        self,
        type: ErrorType | str,
        message: str,
        *,
        severity: ErrorSeverity | str = ErrorSeverity.ERROR,
        details: dict[str, Any] | None = None,
        context: ErrorContext | None = None,
    ) -> str:
        """Record one failure and return its generated id."""
        record = ErrorRecord(
            id=generate_error_id(),
            timestamp=self._clock(),
            type=ErrorType(type),
            severity=ErrorSeverity(severity),
            message=message,
            details=details or {},
            context=context or ErrorContext(),
        )
        evicted = self._store.append(record)
        if evicted is not None:
            logger.debug("Error buffer full; evicted %s", evicted.id)
        await self._persist(record)

        logger.info("Tracked %s/%s error %s: %s", record.type.value, record.severity.value, record.id, message)
        self._emit("error", record)
        for pattern in match_patterns(record.message, record.details):
            self._emit("pattern", PatternEvent(pattern=pattern, record=record))
        return record.id

    async def record_resolution(self, error_id: str, *, successful: bool, method: str) -> bool:
        """Attach a resolution to a stored record. Returns False if the id is unknown."""
        record = self._store.get(error_id)
        if record is None:
            logger.debug("record_resolution: %s not in buffer", error_id)
            return False
        record.resolution = ErrorResolution(attempted=True, successful=successful, method=method)
        await self._persist(record)
        self._emit("resolved", record)
        return True

    async def _persist(self, record: ErrorRecord) -> None:
        if self._log is not None:
            await self._log.append(record.to_dict(), record.timestamp.astimezone(timezone.utc).date())

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_recent_errors(self, limit: int = 50) -> list[ErrorRecord]:
        """Newest records first."""
        if limit <= 0:
            return []
        return list(reversed(self._store.records()[-limit:]))

    def get_error(self, error_id: str) -> ErrorRecord | None:
        return self._store.get(error_id)

    def get_metrics(self, time_range: TimeRange | None = None) -> ErrorMetrics:
        records = _within(self._store.records(), time_range)

        attempted = [r for r in records if r.resolution and r.resolution.attempted]
        resolved = [r for r in attempted if r.resolution.successful]

        return ErrorMetrics(
            total_errors=len(records),
            errors_by_type=dict(Counter(r.type.value for r in records)),
            errors_by_severity=dict(Counter(r.severity.value for r in records)),
            errors_by_provider=dict(Counter(r.context.provider or "unknown" for r in records)),
            errors_by_phase=dict(Counter(r.context.phase or "unknown" for r in records)),
            resolution_rate=len(resolved) / len(attempted) if attempted else 0.0,
            common_patterns=_count_patterns(records)[:10],
        )

    def get_insights(self) -> ErrorInsights:
        records = self._store.records()
        metrics = self.get_metrics()
        total = metrics.total_errors

        top_issues = [
            TopIssue(issue=p.pattern, count=p.count, suggestion=suggestion_for(p.pattern))
            for p in metrics.common_patterns[:5]
        ]

        reliability: dict[str, float] = {}
        for provider in sorted({r.context.provider for r in records if r.context.provider}):
            mentioning = [r for r in records if r.context.provider == provider]
            failures = [r for r in mentioning if r.severity is not ErrorSeverity.WARNING]
            reliability[provider] = 1 - len(failures) / max(len(mentioning), 1)

        critical = [
            p.pattern
            for p in metrics.common_patterns
            if p.count > 5 or ((rule := get_rule(p.pattern)) is not None and rule.critical)
        ]

        recommendations: list[str] = []
        has_attempts = any(r.resolution and r.resolution.attempted for r in records)
        if has_attempts and metrics.resolution_rate < 0.5:
            recommendations.append("Improve automatic error resolution mechanisms")
        if total and metrics.errors_by_type.get(ErrorType.VALIDATION.value, 0) > total * 0.3:
            recommendations.append("Strengthen validation logic before workflow generation")
        if total and metrics.errors_by_type.get(ErrorType.AI_PROVIDER.value, 0) > total * 0.2:
            recommendations.append("Consider implementing fallback AI providers")
        if metrics.errors_by_severity.get(ErrorSeverity.CRITICAL.value, 0) > 0:
            recommendations.append("Address critical errors immediately - they block workflow generation")
        if any(t.issue == "timeout_errors" for t in top_issues):
            recommendations.append("Implement progressive timeout strategy for large workflows")

        return ErrorInsights(
            top_issues=top_issues,
            provider_reliability=reliability,
            critical_patterns=critical,
            recommendations=recommendations,
        )

    def search_errors(
        self,
        *,
        type: ErrorType | str | None = None,
        severity: ErrorSeverity | str | None = None,
        provider: str | None = None,
        phase: str | None = None,
        pattern: str | None = None,
        time_range: TimeRange | None = None,
    ) -> list[ErrorRecord]:
        """Records matching every given criterion, oldest first.

        pattern is a case-insensitive regular expression searched in the
        message and the serialized details.
        """
        wanted_type = ErrorType(type) if type is not None else None
        wanted_severity = ErrorSeverity(severity) if severity is not None else None
        rx = re.compile(pattern, re.IGNORECASE) if pattern else None

        out = []
        for r in _within(self._store.records(), time_range):
            if wanted_type is not None and r.type is not wanted_type:
                continue
            if wanted_severity is not None and r.severity is not wanted_severity:
                continue
            if provider is not None and r.context.provider != provider:
                continue
            if phase is not None and r.context.phase != phase:
                continue
            if rx is not None:
                haystack = r.message + " " + details_text(r.details)
                if not rx.search(haystack):
                    continue
            out.append(r)
        return out

    def export_errors(self, format: str = "json") -> str:
        """Serialize every buffered record as JSON or CSV."""
        records = self._store.records()
        match format:
            case "json":
                return json.dumps([r.to_dict() for r in records], indent=2, default=str)
            case "csv":
                buf = io.StringIO()
                writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
                writer.writerow(CSV_HEADERS)
                for r in records:
                    writer.writerow([
                        r.id,
                        format_timestamp(r.timestamp),
                        r.type.value,
                        r.severity.value,
                        r.message,
                        r.context.provider or "",
                        r.context.phase or "",
                        "" if r.context.node_count is None else r.context.node_count,
                        _resolution_label(r.resolution),
                    ])
                return buf.getvalue()
            case _:
                raise ValueError(f"Unsupported export format {format!r}; use 'json' or 'csv'")

    def clear(self) -> None:
        self._store.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _within(records: list[ErrorRecord], time_range: TimeRange | None) -> list[ErrorRecord]:
    if time_range is None:
        return records
    start, end = time_range
    return [r for r in records if start <= r.timestamp <= end]


def _count_patterns(records: list[ErrorRecord]) -> list[PatternCount]:
    counts: dict[str, PatternCount] = {}
    for r in records:
        for name in match_patterns(r.message, r.details):
            entry = counts.get(name)
            if entry is None:
                counts[name] = PatternCount(pattern=name, count=1, last_seen=r.timestamp)
            else:
                entry.count += 1
                entry.last_seen = max(entry.last_seen, r.timestamp)
    return sorted(counts.values(), key=lambda p: -p.count)


def _resolution_label(resolution: ErrorResolution | None) -> str:
    if resolution is None or not resolution.attempted:
        return "Not attempted"
    return "Resolved" if resolution.successful else "Failed"
