"""
Persistence for milestone completion analytics.

Each completion check produces one record. Records are appended to a JSON
list in a per-day file::

    <directory>/milestone-completion-2026-10-18.json

Files are rewritten atomically (write a ``.tmp`` file, then rename) so a crash
never leaves a truncated file behind. A daily file that cannot be parsed is
renamed to ``<name>.corrupt-<timestamp>`` before a new list is started, so its
records stay on disk. Files older than ``retention_days`` are
removed by ``purge_expired``.
"""

import asyncio
import json
import re
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Any

import aiofiles
import structlog

from devflow.models.domain import MilestoneCheckResult, to_jsonable

log = structlog.get_logger(__name__)

FILE_PREFIX = "milestone-completion-"
_FILE_PATTERN = re.compile(r"^milestone-completion-(\d{4}-\d{2}-\d{2})\.json$")


class CompletionRecordStore:
    """Append-only daily JSON files of milestone check records."""

    def __init__(self, directory: str | Path, retention_days: int = 90) -> None:
        self.directory = Path(directory)
        self.retention_days = retention_days
        self._lock = asyncio.Lock()
        self.records_written = 0

    def path_for(self, day: date) -> Path:
        return self.directory / f"{FILE_PREFIX}{day.isoformat()}.json"

    async def append(self, result: MilestoneCheckResult) -> Path:
        """Add ``result`` to the file for the day it was checked."""
        checked_at = result.checked_at or datetime.now(UTC)
        path = self.path_for(checked_at.date())
        record = to_jsonable(result)

        async with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            records = await self._read(path)
            if records is None:
                self._set_aside(path)
                records = []
            records.append(record)
            await self._write(path, records)

        self.records_written += 1
        log.debug("analytics_record_written", path=str(path), repository=result.repository)
        return path

    async def load(self, day: date) -> list[dict[str, Any]]:
        """Records for ``day``; empty when none were written or the file is unreadable."""
        return await self._read(self.path_for(day)) or []

    async def purge_expired(self, today: date | None = None) -> list[Path]:
        """Delete daily files older than the retention window."""
        if not self.directory.is_dir():
            return []
        cutoff = (today or datetime.now(UTC).date()) - timedelta(days=self.retention_days)
        removed = []
        async with self._lock:
            for path in sorted(self.directory.iterdir()):
                match = _FILE_PATTERN.match(path.name)
                if not match:
                    continue
                if date.fromisoformat(match.group(1)) < cutoff:
                    path.unlink(missing_ok=True)
                    removed.append(path)
        if removed:
            log.info("analytics_records_purged", files=len(removed), cutoff=cutoff.isoformat())
        return removed

    async def _read(self, path: Path) -> list[dict[str, Any]] | None:
        """Records in ``path``; None when the file is not a JSON list."""
        if not path.exists():
            return []
        async with aiofiles.open(path, "rb") as f:
            raw = await f.read()
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            log.warning("analytics_file_corrupt", path=str(path), error=str(e))
            return None
        if not isinstance(data, list):
            log.warning("analytics_file_corrupt", path=str(path), error=f"expected a list, got {type(data).__name__}")
            return None
        return data

    def _set_aside(self, path: Path) -> Path:
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%f")
        target = path.with_name(f"{path.name}.corrupt-{stamp}")
        path.replace(target)
        log.warning("analytics_file_set_aside", path=str(path), moved_to=str(target))
        return target

    async def _write(self, path: Path, records: list[dict[str, Any]]) -> None:
        tmp_path = path.with_suffix(".tmp")
        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(records, indent=2))
        tmp_path.replace(path)
