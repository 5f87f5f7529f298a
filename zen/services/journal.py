from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from zen.constants import (
    DEFAULT_ESTIMATE_MS,
    GROUP_TARGET_MS,
    JOURNAL_FILENAME,
    JOURNAL_FLUSH_DELAY_SECONDS,
)
from zen.schemas import TestResult, WorkGroup

LOGGER = logging.getLogger("zen.journal")


@dataclass
class RuntimeRecord:
    last_pass_time_ms: Optional[int] = None
    last_fail_time_ms: Optional[int] = None
    had_error: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuntimeRecord":
        return cls(
            last_pass_time_ms=data.get("last_pass_time_ms"),
            last_fail_time_ms=data.get("last_fail_time_ms"),
            had_error=bool(data.get("had_error", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_pass_time_ms": self.last_pass_time_ms,
            "last_fail_time_ms": self.last_fail_time_ms,
            "had_error": self.had_error,
        }


class RuntimeJournal:
    """Historical test durations, used to pack tests into balanced worker groups.

    State lives in a JSON file loaded once on construction. Writes are coalesced:
    ``record`` only schedules a flush, and a single timer writes the snapshot
    ``flush_delay`` seconds later. Readers in other processes see the last
    complete file; the last writer wins.
    """

    def __init__(
        self,
        path: Path,
        *,
        flush_delay: float = JOURNAL_FLUSH_DELAY_SECONDS,
    ) -> None:
        self._path = path
        self._flush_delay = flush_delay
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._records = self._load()

    @classmethod
    def for_directory(cls, tmp_dir: Path, **kwargs: Any) -> "RuntimeJournal":
        return cls(tmp_dir / JOURNAL_FILENAME, **kwargs)

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Dict[str, RuntimeRecord]:
        if not self._path.exists():
            return {}
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except (OSError, ValueError) as exc:
            LOGGER.warning("Ignoring unreadable journal %s: %s", self._path, exc)
            return {}
        if not isinstance(raw, dict):
            return {}
        return {
            name: RuntimeRecord.from_dict(entry)
            for name, entry in raw.items()
            if isinstance(entry, dict)
        }

    def get(self, full_name: str) -> Optional[RuntimeRecord]:
        return self._records.get(full_name)

    def estimate(self, full_name: str) -> int:
        record = self._records.get(full_name)
        if record is None:
            return DEFAULT_ESTIMATE_MS
        if record.had_error:
            return max(record.last_pass_time_ms or 0, record.last_fail_time_ms or 0)
        if record.last_pass_time_ms is None:
            return DEFAULT_ESTIMATE_MS
        return record.last_pass_time_ms

    def record(self, result: TestResult) -> None:
        with self._lock:
            entry = self._records.setdefault(result.full_name, RuntimeRecord())
            entry.had_error = result.failed
            if result.failed:
                entry.last_fail_time_ms = result.time_ms
            else:
                entry.last_pass_time_ms = result.time_ms
        self._schedule_flush()

    def record_many(self, results: Iterable[TestResult]) -> None:
        for result in results:
            self.record(result)

    def group_tests(self, tests: Iterable[str], concurrency_limit: int) -> List[WorkGroup]:
        """Greedy longest-first partition of ``tests`` into at most ``concurrency_limit`` groups.

        Each test goes to the group with the smallest total. A new group is opened
        instead when that total would pass ``GROUP_TARGET_MS`` and the limit
        allows it. Groups are kept sorted by total; a re-inserted group goes after
        every group with an equal total so ties stay in creation order.
        """
        if concurrency_limit < 1:
            raise ValueError("Concurrency limit must be at least 1.")
        unique = list(dict.fromkeys(tests))
        estimates = {name: self.estimate(name) for name in unique}
        ordered = sorted(unique, key=lambda name: estimates[name], reverse=True)

        groups: List[WorkGroup] = []
        for name in ordered:
            duration = estimates[name]
            smallest = groups[0] if groups else None
            opens_group = smallest is None or smallest.estimated_time_ms + duration > GROUP_TARGET_MS
            if opens_group and len(groups) < concurrency_limit:
                group = WorkGroup()
            else:
                group = groups.pop(0)
            group.tests.append(name)
            group.estimated_time_ms += duration

            position = len(groups)
            for index, candidate in enumerate(groups):
                if candidate.estimated_time_ms > group.estimated_time_ms:
                    position = index
                    break
            groups.insert(position, group)
        return groups

    def _schedule_flush(self) -> None:
        with self._lock:
            if self._timer is not None:
                return
            timer = threading.Timer(self._flush_delay, self._flush_from_timer)
            timer.daemon = True
            self._timer = timer
        timer.start()

    def _flush_from_timer(self) -> None:
        try:
            self.flush()
        except OSError as exc:
            LOGGER.warning("Journal flush to %s failed; retrying later: %s", self._path, exc)
            self._schedule_flush()

    def flush(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            snapshot = {name: record.to_dict() for name, record in self._records.items()}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        staging = self._path.with_suffix(self._path.suffix + ".tmp")
        with staging.open("w", encoding="utf-8") as handle:
            json.dump(snapshot, handle, indent=2, sort_keys=True)
        staging.replace(self._path)
        LOGGER.debug("Flushed %s journal entries to %s", len(snapshot), self._path)

    def close(self) -> None:
        """Flush pending writes on clean shutdown; failures are logged, not raised."""
        try:
            self.flush()
        except OSError as exc:
            LOGGER.warning("Final journal flush to %s failed: %s", self._path, exc)
