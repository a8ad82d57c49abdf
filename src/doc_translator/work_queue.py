"""Durable translation queue helpers (Redis/RQ).

Each translation job maps to one RQ job whose id is derived from the job id,
so a job can only be queued or running once at a time. Failed attempts are
retried by RQ with exponential backoff; a run that exceeds ``job_timeout`` is
killed and counts as a failed attempt.
"""

import logging

from redis import Redis
from rq import Queue, Retry, SimpleWorker
from rq.exceptions import NoSuchJobError
from rq.job import Job, JobStatus
from rq.worker_pool import WorkerPool as RQWorkerPool

logger = logging.getLogger(__name__)

TRANSLATION_QUEUE = "translations"
TRANSLATE_TASK = "doc_translator.tasks.translate_job"

# an RQ job in one of these states will still run; a new enqueue would double it
LIVE_STATUSES = (JobStatus.QUEUED, JobStatus.SCHEDULED, JobStatus.DEFERRED, JobStatus.STARTED)


def retry_intervals(attempts: int, backoff_ms: int) -> list[int]:
    """Delays in seconds before each retry: ``backoff_ms * 2**n``."""
    return [int(backoff_ms * (2**n) / 1000) for n in range(attempts - 1)]


class WorkQueue:
    def __init__(
        self,
        connection: Redis,
        job_timeout: int = 1800,
        result_ttl: int = 86400,
        failure_ttl: int = 86400,
    ) -> None:
        self.connection = connection
        self.job_timeout = job_timeout
        self.result_ttl = result_ttl
        self.failure_ttl = failure_ttl

    def queue(self, name: str) -> Queue:
        return Queue(name=name, connection=self.connection, default_timeout=self.job_timeout)

    def get(self, job_key: str) -> Job | None:
        try:
            return Job.fetch(job_key, connection=self.connection)
        except NoSuchJobError:
            return None

    def status(self, job_key: str) -> str | None:
        job = self.get(job_key)
        if job is None:
            return None
        status = job.get_status()
        return status.value if isinstance(status, JobStatus) else status

    def is_running(self, job_key: str) -> bool:
        return self.status(job_key) == JobStatus.STARTED.value

    def enqueue(
        self,
        queue_name: str,
        func: str,
        payload: dict,
        job_key: str,
        attempts: int = 3,
        backoff_ms: int = 2000,
    ) -> Job:
        """Queue ``func(payload)`` under ``job_key`` unless a live job already holds it."""
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        existing = self.get(job_key)
        if existing is not None:
            if existing.get_status() in LIVE_STATUSES:
                logger.info("Job %s already queued or running, not enqueuing again", job_key)
                return existing
            # finished or failed runs are replaced so the id can be reused
            existing.delete()

        retry = Retry(max=attempts - 1, interval=retry_intervals(attempts, backoff_ms)) if attempts > 1 else None
        return self.queue(queue_name).enqueue(
            func,
            payload,
            job_id=job_key,
            retry=retry,
            job_timeout=self.job_timeout,
            result_ttl=self.result_ttl,
            failure_ttl=self.failure_ttl,
        )

    def counts(self, queue_name: str) -> dict[str, int]:
        q = self.queue(queue_name)
        return {
            "queued": q.count,
            "started": q.started_job_registry.count,
            "scheduled": q.scheduled_job_registry.count,
            "finished": q.finished_job_registry.count,
            "failed": q.failed_job_registry.count,
        }


class WorkerPool:
    """RQ workers draining one queue."""

    def __init__(self, queue: WorkQueue, queue_name: str, concurrency: int = 3) -> None:
        self.queue = queue
        self.queue_name = queue_name
        self.concurrency = concurrency

    def process_one(self) -> bool:
        """Run at most one ready job in this process. Returns False if none was ready."""
        worker = SimpleWorker([self.queue.queue(self.queue_name)], connection=self.queue.connection)
        return worker.work(burst=True, max_jobs=1)

    def run_until_idle(self) -> int:
        handled = 0
        while self.process_one():
            handled += 1
        return handled

    def start(self) -> None:
        """Fork ``concurrency`` workers and block until they are told to stop."""
        logger.info("Starting %s workers on queue %s", self.concurrency, self.queue_name)
        pool = RQWorkerPool([self.queue_name], connection=self.queue.connection, num_workers=self.concurrency)
        pool.start(burst=False)
        logger.info("Workers on queue %s stopped", self.queue_name)
