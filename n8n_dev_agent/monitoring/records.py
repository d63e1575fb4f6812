"""Error record types shared by the tracker, the store and the JSONL log."""

from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ErrorType(str, Enum):
    GENERATION = "generation"
    VALIDATION = "validation"
    SERIALIZATION = "serialization"
    AI_PROVIDER = "ai_provider"
    NODE_CONFIGURATION = "node_configuration"


class ErrorSeverity(str, Enum):
    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"


@dataclass
class ErrorContext:
    prompt: str | None = None
    workflow_name: str | None = None
    provider: str | None = None
    node_count: int | None = None
    connection_count: int | None = None
    phase: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "prompt": self.prompt,
            "workflowName": self.workflow_name,
            "provider": self.provider,
            "nodeCount": self.node_count,
            "connectionCount": self.connection_count,
            "phase": self.phase,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ErrorContext:
        data = data or {}
        return cls(
            prompt=data.get("prompt"),
            workflow_name=data.get("workflowName"),
            provider=data.get("provider"),
            node_count=data.get("nodeCount"),
            connection_count=data.get("connectionCount"),
            phase=data.get("phase"),
        )


@dataclass(frozen=True)
class ErrorResolution:
    attempted: bool
    successful: bool
    method: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"attempted": self.attempted, "successful": self.successful, "method": self.method}


@dataclass
class ErrorRecord:
    """One tracked failure.

    Everything except `resolution` is fixed at creation; the tracker attaches
    a resolution when a later repair step settles the failure.
    """

    id: str
    timestamp: datetime
    type: ErrorType
    severity: ErrorSeverity
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    context: ErrorContext = field(default_factory=ErrorContext)
    resolution: ErrorResolution | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": format_timestamp(self.timestamp),
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "details": self.details,
            "context": self.context.to_dict(),
            "resolution": self.resolution.to_dict() if self.resolution else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorRecord:
        resolution = data.get("resolution")
        return cls(
            id=data["id"],
            timestamp=parse_timestamp(data["timestamp"]),
            type=ErrorType(data["type"]),
            severity=ErrorSeverity(data["severity"]),
            message=data.get("message", ""),
            details=data.get("details") or {},
            context=ErrorContext.from_dict(data.get("context")),
            resolution=ErrorResolution(
                attempted=bool(resolution.get("attempted")),
                successful=bool(resolution.get("successful")),
                method=resolution.get("method"),
            ) if resolution else None,
        )


_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_error_id() -> str:
    """err_<epoch ms>_<9 random base36 chars>."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"err_{int(time.time() * 1000)}_{suffix}"


def format_timestamp(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(text: str) -> datetime:
    ts = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts
