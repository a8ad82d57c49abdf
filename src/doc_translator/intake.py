import logging
from uuid import uuid4

from doc_translator.db import Database
from doc_translator.errors import (
    InsufficientBalance,
    InvalidTransition,
    NotFoundError,
    PaymentNotFound,
    ValidationError,
)
from doc_translator.files import FileCatalog
from doc_translator.jobs import JobStore
from doc_translator.languages import is_source_language, target_language_name
from doc_translator.ledger import LedgerStore
from doc_translator.schemas import BillingMode, Formality, JobStatus, PaymentStatus, TranslationJob, UsageType
from doc_translator.work_queue import TRANSLATE_TASK, TRANSLATION_QUEUE, WorkQueue

logger = logging.getLogger(__name__)


def job_key(job_id: str) -> str:
    return f"translate:{job_id}"


def work_item(job: TranslationJob) -> dict:
    return {
        "job_id": job.job_id,
        "owner_id": job.owner_id,
        "file_id": job.file_id,
        "file_path": job.file_path,
        "file_name": job.file_name,
        "source_lang": job.source_lang,
        "target_lang": job.target_lang,
        "target_lang_name": job.target_lang_name,
        "formality": job.formality.value if job.formality else None,
        "billing_mode": job.billing_mode.value,
        "payment_id": job.payment_id,
    }


class IntakeService:
    def __init__(
        self,
        db: Database,
        jobs: JobStore,
        ledger: LedgerStore,
        files: FileCatalog,
        queue: WorkQueue,
        attempts: int = 3,
        backoff_ms: int = 2000,
    ) -> None:
        self.db = db
        self.jobs = jobs
        self.ledger = ledger
        self.files = files
        self.queue = queue
        self.attempts = attempts
        self.backoff_ms = backoff_ms

    def _enqueue(self, job: TranslationJob) -> None:
        self.queue.enqueue(
            TRANSLATION_QUEUE,
            TRANSLATE_TASK,
            work_item(job),
            job_key=job_key(job.job_id),
            attempts=self.attempts,
            backoff_ms=self.backoff_ms,
        )

    def create_job(
        self,
        owner_id: str,
        file_id: str,
        target_lang: str | None,
        source_lang: str | None = None,
        formality: str | None = None,
        billing_mode: str | None = "plan",
        billing_reference: str | None = None,
    ) -> TranslationJob:
        if not file_id or not target_lang:
            raise ValidationError("file_id and target_lang are required")
        target = target_lang.strip().lower()
        target_name = target_language_name(target)
        if target_name is None:
            raise ValidationError(f"Unsupported target language: {target_lang}")
        source = (source_lang or "auto").strip().lower()
        if not is_source_language(source):
            raise ValidationError(f"Unsupported source language: {source_lang}")
        try:
            formality_value = Formality(formality) if formality else None
        except ValueError as exc:
            raise ValidationError(f"Invalid formality: {formality}") from exc
        try:
            mode = BillingMode(billing_mode or BillingMode.plan.value)
        except ValueError as exc:
            raise ValidationError(f"Invalid billing mode: {billing_mode}") from exc

        file = self.files.get_owned(file_id, owner_id)
        if file is None:
            raise NotFoundError("File not found")

        record = {
            "job_id": str(uuid4()),
            "owner_id": owner_id,
            "file_id": file.file_id,
            "file_path": file.file_path,
            "file_name": file.filename,
            "source_lang": source,
            "target_lang": target,
            "target_lang_name": target_name,
            "formality": formality_value.value if formality_value else None,
            "billing_mode": mode.value,
        }

        if mode == BillingMode.plan:
            if self.ledger.get_balance(owner_id) < 1:
                raise InsufficientBalance("Insufficient credits")
            job = self.jobs.create(record)
        else:
            if not billing_reference:
                raise ValidationError("billing_reference is required for one-off billing")
            # the job row and the payment link commit together or not at all
            with self.db.transaction() as conn:
                self.jobs.create(record, conn=conn)
                payment = self.ledger.consume_one_off(owner_id, billing_reference, record["job_id"], conn=conn)
                if payment is None:
                    raise PaymentNotFound(self._missing_payment_reason(owner_id, billing_reference))
                conn.execute("UPDATE jobs SET payment_id=? WHERE job_id=?", (payment.session_id, record["job_id"]))
            job = self.jobs.get(record["job_id"])

        self._enqueue(job)
        logger.info("Translation job queued: %s (%s, %s)", job.job_id, mode.value, target)
        return job

    def _missing_payment_reason(self, owner_id: str, billing_reference: str) -> str:
        latest = self.ledger.find_one_off(owner_id, billing_reference)
        if latest is None:
            return "Payment not found for this billing reference"
        if latest.consumed:
            return "Payment already used for another translation"
        return "Payment not completed yet"

    def get_job(self, owner_id: str, job_id: str) -> TranslationJob:
        job = self.jobs.get(job_id)
        if job is None or job.owner_id != owner_id:
            raise NotFoundError("Translation not found")
        return job

    def list_jobs(
        self,
        owner_id: str,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[TranslationJob], int]:
        """One page of the owner's jobs, newest first, and the total matching count."""
        try:
            status_filter = JobStatus(status) if status else None
        except ValueError as exc:
            raise ValidationError(f"Invalid status: {status}") from exc
        jobs = self.jobs.list_for_owner(owner_id, status=status_filter, limit=limit, offset=offset)
        return jobs, self.jobs.count_for_owner(owner_id, status=status_filter)

    def _check_billing(self, job: TranslationJob) -> None:
        if job.billing_mode == BillingMode.plan:
            if self.ledger.get_balance(job.owner_id) < 1:
                raise InsufficientBalance("Insufficient credits")
            return
        payment = self.ledger.get_payment(job.payment_id) if job.payment_id else None
        if (
            payment is None
            or payment.owner_id != job.owner_id
            or payment.usage_type != UsageType.one_off
            or payment.status != PaymentStatus.completed
            or payment.job_id != job.job_id
        ):
            raise PaymentNotFound("Payment linked to this translation is missing")

    def retry_job(self, owner_id: str, job_id: str) -> TranslationJob:
        job = self.get_job(owner_id, job_id)
        if job.status != JobStatus.failed:
            raise InvalidTransition(f"Only failed translations can be retried (status: {job.status.value})")
        if self.queue.is_running(job_key(job_id)):
            raise InvalidTransition("The previous attempt is still running, retry rejected")
        self._check_billing(job)
        if not self.jobs.reset_for_retry(job_id):
            raise InvalidTransition("Translation changed state, retry rejected")
        job = self.jobs.get(job_id)
        self._enqueue(job)
        logger.info("Translation job %s re-queued by user", job_id)
        return job

    def cancel_job(self, owner_id: str, job_id: str) -> TranslationJob:
        job = self.get_job(owner_id, job_id)
        if not self.jobs.mark_cancelled(job_id):
            current = self.jobs.get(job_id)
            raise InvalidTransition(f"Only pending translations can be cancelled (status: {current.status.value})")
        logger.info("Translation job %s cancelled", job_id)
        return self.jobs.get(job.job_id)
