"""
History Ledger — bounded per-task run history.

Keeps the most recent ``limit`` TaskResults per task in insertion order
(oldest first). Every appended result is also forwarded to the registered
result sinks, which is where durable storage plugs in. Thread-safe via
threading lock.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections import deque
from pathlib import Path
from typing import Deque, Dict, Iterable, List, Optional, Protocol

from src.core.maintenance.schema import DEFAULT_HISTORY_LIMIT, TaskResult

logger = logging.getLogger(__name__)


class ResultSink(Protocol):
    """Receives every result appended to the ledger."""

    def write(self, result: TaskResult) -> None: ...


class JsonlResultSink:
    """Append-only JSONL journal of task results (one JSON object per line).

    With ``keep_per_task`` set, the journal is compacted to that many results
    per task after every ``COMPACT_EVERY_FACTOR * keep_per_task`` writes, so
    it stays bounded for long-running processes.
    """

    COMPACT_EVERY_FACTOR = 10

    def __init__(self, path: str, keep_per_task: Optional[int] = None):
        self._path = Path(path)
        self._lock = threading.Lock()
        self._keep_per_task = keep_per_task
        self._writes_since_compact = 0

    @property
    def path(self) -> Path:
        return self._path

    def write(self, result: TaskResult) -> None:
        line = result.model_dump_json()
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
            self._writes_since_compact += 1
            due = (
                self._keep_per_task is not None
                and self._writes_since_compact >= self.COMPACT_EVERY_FACTOR * self._keep_per_task
            )
        if due:
            self.compact()

    def load(self) -> List[TaskResult]:
        """Read back every journaled result, skipping unreadable lines."""
        with self._lock:
            return self._read()

    def _read(self) -> List[TaskResult]:
        if not self._path.exists():
            return []
        results: List[TaskResult] = []
        with open(self._path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    results.append(TaskResult(**json.loads(line)))
                except (ValueError, TypeError) as e:
                    logger.warning(
                        "Skipping bad history line %s:%d: %s", self._path, lineno, e,
                    )
        return results

    def compact(self, per_task: Optional[int] = None) -> List[TaskResult]:
        """Rewrite the journal keeping the newest ``per_task`` results per task.

        ``per_task`` defaults to the sink's ``keep_per_task``; with neither
        set, nothing is dropped.

        Returns the kept results in journal order. The rewrite goes through a
        temporary file and ``os.replace`` so a crash never truncates history.
        """
        per_task = per_task or self._keep_per_task
        with self._lock:
            results = self._read()
            self._writes_since_compact = 0
            if per_task is None:
                return results
            kept_ids = set()
            counts: Dict[str, int] = {}
            for idx in range(len(results) - 1, -1, -1):
                task_id = results[idx].task_id
                if counts.get(task_id, 0) < per_task:
                    counts[task_id] = counts.get(task_id, 0) + 1
                    kept_ids.add(idx)
            kept = [r for idx, r in enumerate(results) if idx in kept_ids]
            if len(kept) == len(results):
                return kept

            tmp = self._path.with_name(self._path.name + ".tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                for result in kept:
                    f.write(result.model_dump_json() + "\n")
            os.replace(tmp, self._path)
        logger.info(
            "Compacted %s: kept %d of %d results", self._path, len(kept), len(results),
        )
        return kept


class HistoryLedger:
    """Per-task ring buffer of TaskResults."""

    def __init__(
        self,
        limit: int = DEFAULT_HISTORY_LIMIT,
        sinks: Optional[Iterable[ResultSink]] = None,
    ):
        if limit <= 0:
            raise ValueError("History limit must be positive")
        self._limit = limit
        self._results: Dict[str, Deque[TaskResult]] = {}
        self._sinks: List[ResultSink] = list(sinks or [])
        self._lock = threading.Lock()

    @property
    def limit(self) -> int:
        return self._limit

    def add_sink(self, sink: ResultSink) -> None:
        self._sinks.append(sink)

    def add_result(self, task_id: str, result: TaskResult) -> None:
        """Append a result, evicting the oldest once the task is over limit."""
        with self._lock:
            history = self._results.get(task_id)
            if history is None:
                history = deque(maxlen=self._limit)
                self._results[task_id] = history
            history.append(result)
            sinks = list(self._sinks)

        for sink in sinks:
            try:
                sink.write(result)
            except Exception as e:
                logger.error("Result sink %s failed for %s: %s", type(sink).__name__, task_id, e)

    def restore(self, results: Iterable[TaskResult]) -> int:
        """Warm the ledger from previously persisted results without re-sinking."""
        count = 0
        with self._lock:
            for result in results:
                history = self._results.setdefault(
                    result.task_id, deque(maxlen=self._limit),
                )
                history.append(result)
                count += 1
        return count

    def get_results(self, task_id: str) -> List[TaskResult]:
        """Results for one task, oldest first. Unknown ids give an empty list."""
        with self._lock:
            return list(self._results.get(task_id, ()))

    def get_all_results(self) -> Dict[str, List[TaskResult]]:
        with self._lock:
            return {task_id: list(h) for task_id, h in self._results.items()}

    def latest(self, task_id: str) -> Optional[TaskResult]:
        with self._lock:
            history = self._results.get(task_id)
            return history[-1] if history else None
