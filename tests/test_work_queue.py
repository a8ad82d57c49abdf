import pytest

from doc_translator.work_queue import WorkerPool, WorkQueue, retry_intervals

Q = "test-queue"

CALLS: list[dict] = []


def record(payload: dict) -> None:
    CALLS.append(payload)


def always_fails(payload: dict) -> None:
    CALLS.append(payload)
    raise RuntimeError("down")


@pytest.fixture(autouse=True)
def _reset_calls():
    CALLS.clear()
    yield
    CALLS.clear()


@pytest.fixture
def queue(redis):
    return WorkQueue(redis)


def test_retry_intervals_double() -> None:
    assert retry_intervals(3, 2000) == [2, 4]
    assert retry_intervals(4, 500) == [0, 1, 2]
    assert retry_intervals(1, 2000) == []


def test_success_runs_once(queue) -> None:
    pool = WorkerPool(queue, Q)
    queue.enqueue(Q, "test_work_queue.record", {"n": 1}, job_key="translate:a")

    assert pool.run_until_idle() == 1
    assert CALLS == [{"n": 1}]
    assert queue.status("translate:a") == "finished"
    assert queue.counts(Q)["finished"] == 1


def test_job_key_dedupes_live_jobs(queue) -> None:
    first = queue.enqueue(Q, "test_work_queue.record", {"n": 1}, job_key="translate:abc")
    second = queue.enqueue(Q, "test_work_queue.record", {"n": 2}, job_key="translate:abc")

    assert second.id == first.id == "translate:abc"
    assert queue.counts(Q)["queued"] == 1
    assert WorkerPool(queue, Q).run_until_idle() == 1
    assert CALLS == [{"n": 1}]


def test_finished_job_is_replaced_on_enqueue(queue) -> None:
    pool = WorkerPool(queue, Q)
    queue.enqueue(Q, "test_work_queue.record", {"n": 1}, job_key="translate:abc")
    pool.run_until_idle()

    queue.enqueue(Q, "test_work_queue.record", {"n": 2}, job_key="translate:abc")
    assert queue.status("translate:abc") == "queued"
    assert pool.run_until_idle() == 1
    assert CALLS == [{"n": 1}, {"n": 2}]


def test_failure_is_scheduled_with_backoff(queue) -> None:
    job = queue.enqueue(Q, "test_work_queue.always_fails", {"n": 1}, job_key="translate:b", attempts=3, backoff_ms=2000)
    assert job.retries_left == 2
    assert job.retry_intervals == [2, 4]

    assert WorkerPool(queue, Q).run_until_idle() == 1
    assert queue.status("translate:b") == "scheduled"
    assert queue.counts(Q)["scheduled"] == 1
    assert len(CALLS) == 1


def test_attempts_exhausted_leaves_job_failed(queue) -> None:
    queue.enqueue(Q, "test_work_queue.always_fails", {"n": 1}, job_key="translate:c", attempts=3, backoff_ms=0)

    assert WorkerPool(queue, Q).run_until_idle() == 3
    assert len(CALLS) == 3
    assert queue.status("translate:c") == "failed"
    assert queue.counts(Q) == {"queued": 0, "started": 0, "scheduled": 0, "finished": 0, "failed": 1}


def test_single_attempt_has_no_retry(queue) -> None:
    job = queue.enqueue(Q, "test_work_queue.always_fails", {"n": 1}, job_key="translate:d", attempts=1)
    assert job.retries_left is None

    assert WorkerPool(queue, Q).run_until_idle() == 1
    assert queue.status("translate:d") == "failed"


def test_attempts_must_be_positive(queue) -> None:
    with pytest.raises(ValueError):
        queue.enqueue(Q, "test_work_queue.record", {}, job_key="translate:e", attempts=0)


def test_unknown_key(queue) -> None:
    assert queue.get("translate:missing") is None
    assert queue.status("translate:missing") is None
    assert not queue.is_running("translate:missing")
