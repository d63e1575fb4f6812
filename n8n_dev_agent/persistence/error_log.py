"""Append-only JSONL log of error records, partitioned by UTC day.

Layout:

  <directory>/errors_2026-10-19.jsonl
  <directory>/errors_2026-10-20.jsonl

One JSON object per line, exactly the ErrorRecord.to_dict() shape. A record
that later gains a resolution is appended again with the same id; readers
keep the last line per id.

Writes are fire-and-forget: errors are logged and never raised so a failing
disk never blocks a repair run. Blocking file I/O runs in the default
executor.

Usage:

    log = JsonlErrorLog("./logs/workflow-errors")
    await log.append(record.to_dict(), day=record.timestamp.date())
    records = await log.read_day(date(2026, 10, 19))
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import threading
from datetime import date
from pathlib import Path
from typing import Any

logger = logging.getLogger("n8n_dev_agent.persistence.error_log")

_FILE_RE = re.compile(r"^errors_(\d{4}-\d{2}-\d{2})\.jsonl$")


class JsonlErrorLog:
    """Day-partitioned JSONL writer/reader for error records.

    Args:
        directory: Folder holding the day files. Created on first write.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self._lock = threading.Lock()

    def path_for(self, day: date) -> Path:
        return self.directory / f"errors_{day.isoformat()}.jsonl"

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def append(self, record: dict[str, Any], day: date) -> None:
        """Append one record to the day file. Errors are logged and suppressed."""
        try:
            line = json.dumps(record, default=str, separators=(",", ":"))
        except (TypeError, ValueError) as exc:
            logger.error("ErrorLog: record %s is not serializable: %s", record.get("id"), exc)
            return

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._write_line, self.path_for(day), line)
        except OSError as exc:
            logger.error("ErrorLog: write failed for %s: %s", record.get("id"), exc)

    def _write_line(self, path: Path, line: str) -> None:
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def days(self) -> list[date]:
        """Days that have a log file, oldest first."""
        if not self.directory.is_dir():
            return []
        found = []
        for path in self.directory.iterdir():
            m = _FILE_RE.match(path.name)
            if m:
                found.append(date.fromisoformat(m.group(1)))
        return sorted(found)

    async def read_day(self, day: date) -> list[dict[str, Any]]:
        """Records for one day in first-write order, last line per id winning.

        Malformed lines are skipped with a warning. A missing file is an
        empty list.
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read_file, self.path_for(day))

    def _read_file(self, path: Path) -> list[dict[str, Any]]:
        if not path.is_file():
            return []
        by_id: dict[str, dict[str, Any]] = {}
        with path.open("r", encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError as exc:
                    logger.warning("ErrorLog: %s:%d is not valid JSON (%s)", path.name, lineno, exc)
                    continue
                if not isinstance(record, dict) or "id" not in record:
                    logger.warning("ErrorLog: %s:%d has no record id", path.name, lineno)
                    continue
                # A re-appended id keeps its first position but takes the newer content.
                by_id[record["id"]] = record
        return list(by_id.values())
