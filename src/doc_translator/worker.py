import logging
import mimetypes
import re
from pathlib import PurePosixPath

from doc_translator.db import Database
from doc_translator.errors import InsufficientBalance
from doc_translator.jobs import JobStore
from doc_translator.languages import DOCUMENT_EXTENSIONS
from doc_translator.ledger import LedgerStore
from doc_translator.notifications import Notifier
from doc_translator.schemas import BillingMode, JobStatus, NotificationKind, TranslationJob
from doc_translator.storage import Storage
from doc_translator.translator import Translator

logger = logging.getLogger(__name__)

_EXT_RE = re.compile(r"(\.[^./]+)$")


def translated_path(file_path: str, target_lang: str) -> str:
    """``user/report.pdf`` + ``de`` -> ``user/report_de.pdf``."""
    if _EXT_RE.search(PurePosixPath(file_path).name):
        return _EXT_RE.sub(rf"_{target_lang}\1", file_path)
    return f"{file_path}_{target_lang}"


def is_document(filename: str) -> bool:
    return PurePosixPath(filename).suffix.lower() in DOCUMENT_EXTENSIONS


class JobProcessor:
    def __init__(
        self,
        db: Database,
        jobs: JobStore,
        ledger: LedgerStore,
        source_storage: Storage,
        output_storage: Storage,
        translator: Translator,
        notifier: Notifier,
        credits_low_threshold: int = 2,
    ) -> None:
        self.db = db
        self.jobs = jobs
        self.ledger = ledger
        self.source_storage = source_storage
        self.output_storage = output_storage
        self.translator = translator
        self.notifier = notifier
        self.credits_low_threshold = credits_low_threshold

    def __call__(self, payload: dict) -> None:
        self.process(payload["job_id"])

    def _translate(self, job: TranslationJob, data: bytes) -> bytes:
        formality = job.formality.value if job.formality else None
        if is_document(job.file_name):
            return self.translator.translate_document(data, job.file_name, job.source_lang, job.target_lang, formality)
        text = data.decode("utf-8", errors="replace")
        return self.translator.translate_text(text, job.source_lang, job.target_lang).encode("utf-8")

    def _notify(self, kind: NotificationKind, owner_id: str, payload: dict) -> None:
        try:
            self.notifier.notify(kind, owner_id, payload)
        except Exception:
            logger.exception("Notification %s for user %s failed", kind.value, owner_id)

    def process(self, job_id: str) -> None:
        job = self.jobs.get(job_id)
        if not job:
            logger.warning("Job %s no longer exists, dropping message", job_id)
            return
        if job.status in (JobStatus.completed, JobStatus.cancelled):
            logger.info("Job %s is %s, skipping", job_id, job.status.value)
            return

        run_token = self.jobs.mark_processing(job_id)
        if run_token is None:
            logger.info("Job %s changed state before processing, skipping", job_id)
            return

        try:
            source = self.source_storage.fetch(job.file_path)
            translated = self._translate(job, source)

            output_path = translated_path(job.file_path, job.target_lang)
            content_type = mimetypes.guess_type(job.file_name)[0] or "text/plain"
            self.output_storage.store(output_path, translated, content_type)

            applied, remaining = self._complete(job, run_token, output_path)
        except Exception as exc:
            logger.error("Translation job %s failed: %s", job_id, exc)
            if not self.jobs.mark_failed(job_id, str(exc), run_token=run_token):
                # another run owns the job now; its outcome stands
                logger.warning("Job %s was taken over by another run, dropping this failure", job_id)
                return
            self._notify(
                NotificationKind.translation_failed,
                job.owner_id,
                {"job_id": job_id, "filename": job.file_name, "error_message": str(exc)},
            )
            raise

        if not applied:
            logger.warning("Job %s left processing before this run finished, not completing it", job_id)
            return

        self._notify(
            NotificationKind.translation_completed,
            job.owner_id,
            {
                "job_id": job_id,
                "filename": job.file_name,
                "target_lang": job.target_lang,
                "output_path": output_path,
            },
        )
        if remaining is not None and remaining <= self.credits_low_threshold:
            self._notify(NotificationKind.credits_low, job.owner_id, {"remaining_credits": remaining})
        logger.info("Translation completed: %s", job_id)

    def _complete(self, job: TranslationJob, run_token: str, output_path: str) -> tuple[bool, int | None]:
        """Mark the job completed and spend one plan credit in the same transaction.

        Returns whether this run completed the job, and the remaining balance
        when a credit was spent.
        """
        with self.db.transaction() as conn:
            if not self.jobs.mark_completed(job.job_id, output_path, run_token=run_token, conn=conn):
                return False, None
            if job.billing_mode != BillingMode.plan:
                return True, None
            try:
                return True, self.ledger.decrease_one_credit(job.owner_id, conn=conn)
            except InsufficientBalance:
                logger.warning("User %s had no credit left when job %s completed", job.owner_id, job.job_id)
                return True, 0
