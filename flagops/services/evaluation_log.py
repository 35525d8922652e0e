"""
Evaluation log pipeline for flags with log_checks enabled.

The resolution path only ever calls ``submit()``, which never blocks: records
go onto a bounded queue and a background worker drains them to a sink in
batches. When the queue is full the newest record is dropped and counted.
"""

import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, List, Optional

from prometheus_client import Counter

logger = logging.getLogger("flagops.evaluation_log")

EVAL_LOG_DROPPED = Counter(
    "flag_evaluation_log_dropped_total",
    "Evaluation log records dropped because the queue was full",
)
EVAL_LOG_WRITTEN = Counter(
    "flag_evaluation_log_written_total",
    "Evaluation log records written to the sink",
)

_STOP = object()


@dataclass(frozen=True)
class EvaluationRecord:
    tenant_id: str
    flag_key: str
    decision: bool
    source: str
    evaluated_at: datetime


class EvaluationSink(ABC):
    @abstractmethod
    def write(self, records: List[EvaluationRecord]) -> None:
        ...


class LoggingEvaluationSink(EvaluationSink):
    """Writes each record as one INFO line (picked up by the log collector)."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logging.getLogger("flagops.evaluations")

    def write(self, records: List[EvaluationRecord]) -> None:
        for r in records:
            self._log.info(
                "flag=%s tenant=%s decision=%s source=%s at=%s",
                r.flag_key, r.tenant_id, r.decision, r.source, r.evaluated_at.isoformat(),
            )


class InMemoryEvaluationSink(EvaluationSink):
    def __init__(self) -> None:
        self.records: List[EvaluationRecord] = []
        self._lock = threading.Lock()

    def write(self, records: List[EvaluationRecord]) -> None:
        with self._lock:
            self.records.extend(records)


class SqlAlchemyEvaluationSink(EvaluationSink):
    """Persists records into feature_flag_evaluations."""

    def __init__(self, session_factory: Callable):
        self._session_factory = session_factory

    def write(self, records: List[EvaluationRecord]) -> None:
        from flagops.models.feature_flag import FeatureFlagEvaluationLog

        db = self._session_factory()
        try:
            db.add_all([FeatureFlagEvaluationLog(**asdict(r)) for r in records])
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class EvaluationLogQueue:
    def __init__(self, sink: EvaluationSink, max_size: int = 1000, batch_size: int = 100) -> None:
        self.sink = sink
        self.batch_size = batch_size
        self._queue: "queue.Queue" = queue.Queue(maxsize=max_size)
        self._worker: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._drop_lock = threading.Lock()
        self.drop_count = 0

    @property
    def is_running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def submit(self, record: EvaluationRecord) -> bool:
        """Enqueue without blocking. Returns False when the record was dropped."""
        try:
            self._queue.put_nowait(record)
            return True
        except queue.Full:
            # not _lock: stop() holds it while blocked on the queue
            with self._drop_lock:
                self.drop_count += 1
            EVAL_LOG_DROPPED.inc()
            return False

    def start(self) -> None:
        """Start background worker if not already running."""
        with self._lock:
            if self.is_running:
                return
            self._worker = threading.Thread(
                target=self._run, name="flag-eval-log", daemon=True
            )
            self._worker.start()
            logger.info("Evaluation log worker started (sink=%s)", type(self.sink).__name__)

    def stop(self, timeout: float = 5.0) -> None:
        """Drain what is queued, then stop the worker."""
        with self._lock:
            worker = self._worker
            if worker is None:
                return
            # Blocking put: the sentinel must get in even if the queue is full.
            self._queue.put(_STOP)
            worker.join(timeout)
            self._worker = None
        logger.info("Evaluation log worker stopped (dropped=%d)", self.drop_count)

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until every queued record has been handed to the sink."""
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def _run(self) -> None:
        """Worker loop that drains the queue to the sink."""
        while True:
            item = self._queue.get()
            batch: List[EvaluationRecord] = []
            stop = item is _STOP
            if not stop:
                batch.append(item)
            while not stop and len(batch) < self.batch_size:
                try:
                    nxt = self._queue.get_nowait()
                except queue.Empty:
                    break
                if nxt is _STOP:
                    stop = True
                else:
                    batch.append(nxt)

            if batch:
                try:
                    self.sink.write(batch)
                    EVAL_LOG_WRITTEN.inc(len(batch))
                except Exception:
                    logger.exception("Evaluation log sink failed; %d records lost", len(batch))

            # One task_done per item taken, sentinel included.
            for _ in range(len(batch) + (1 if stop else 0)):
                self._queue.task_done()
            if stop:
                return
