"""Evaluation log queue: bounded, non-blocking, batched."""
import threading
import time
from datetime import datetime, timezone

from flagops.services.evaluation_log import (
    EvaluationLogQueue,
    EvaluationRecord,
    EvaluationSink,
    InMemoryEvaluationSink,
    SqlAlchemyEvaluationSink,
)

NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


def _record(i=0) -> EvaluationRecord:
    return EvaluationRecord(
        tenant_id=f"tenant_{i}", flag_key="ai_scheduling_v2", decision=True,
        source="percentage_rollout", evaluated_at=NOW,
    )


class FlakySink(EvaluationSink):
    def __init__(self):
        self.calls = 0
        self.records = []

    def write(self, records):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("sink down")
        self.records.extend(records)


def test_submit_drops_newest_when_full():
    queue = EvaluationLogQueue(InMemoryEvaluationSink(), max_size=3)
    results = [queue.submit(_record(i)) for i in range(5)]
    assert results == [True, True, True, False, False]
    assert queue.drop_count == 2


def test_drop_count_is_exact_under_concurrent_submits():
    queue = EvaluationLogQueue(InMemoryEvaluationSink(), max_size=1)
    queue.submit(_record())

    def flood():
        for i in range(500):
            queue.submit(_record(i))

    threads = [threading.Thread(target=flood) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert queue.drop_count == 4000


def test_submit_does_not_block_when_full():
    queue = EvaluationLogQueue(InMemoryEvaluationSink(), max_size=1)
    queue.submit(_record())
    start = time.perf_counter()
    for i in range(1000):
        queue.submit(_record(i))
    assert time.perf_counter() - start < 1.0


def test_worker_drains_in_batches():
    sink = InMemoryEvaluationSink()
    queue = EvaluationLogQueue(sink, max_size=100, batch_size=10)
    for i in range(25):
        queue.submit(_record(i))

    queue.start()
    assert queue.is_running
    assert queue.flush(timeout=5)
    queue.stop()

    assert not queue.is_running
    assert [r.tenant_id for r in sink.records] == [f"tenant_{i}" for i in range(25)]


def test_stop_drains_pending_records():
    sink = InMemoryEvaluationSink()
    queue = EvaluationLogQueue(sink, max_size=10)
    queue.start()
    for i in range(5):
        queue.submit(_record(i))
    queue.stop(timeout=5)
    assert len(sink.records) == 5


def test_sink_failure_does_not_kill_worker():
    sink = FlakySink()
    queue = EvaluationLogQueue(sink, max_size=10)
    queue.start()
    try:
        queue.submit(_record(1))
        assert queue.flush(timeout=5)
        queue.submit(_record(2))
        assert queue.flush(timeout=5)
        assert queue.is_running
    finally:
        queue.stop()
    assert [r.tenant_id for r in sink.records] == ["tenant_2"]


def test_sqlalchemy_sink_persists_records(session_factory):
    from flagops.models.feature_flag import FeatureFlagEvaluationLog

    SqlAlchemyEvaluationSink(session_factory).write([_record(1), _record(2)])

    db = session_factory()
    try:
        rows = db.query(FeatureFlagEvaluationLog).order_by(FeatureFlagEvaluationLog.id).all()
        assert [(r.tenant_id, r.decision, r.source) for r in rows] == [
            ("tenant_1", True, "percentage_rollout"),
            ("tenant_2", True, "percentage_rollout"),
        ]
    finally:
        db.close()
