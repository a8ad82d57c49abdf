from dataclasses import dataclass

from redis import Redis

from doc_translator.config import Settings
from doc_translator.db import Database
from doc_translator.files import FileCatalog
from doc_translator.intake import IntakeService
from doc_translator.jobs import JobStore
from doc_translator.ledger import LedgerStore
from doc_translator.notifications import NotificationService
from doc_translator.payments import CheckoutGateway, PaymentReconciler, StripeCheckoutGateway
from doc_translator.storage import LocalStorage, Storage
from doc_translator.translator import DeepLClient, Translator
from doc_translator.work_queue import TRANSLATION_QUEUE, WorkerPool, WorkQueue
from doc_translator.worker import JobProcessor


@dataclass
class Services:
    settings: Settings
    db: Database
    ledger: LedgerStore
    jobs: JobStore
    files: FileCatalog
    source_storage: Storage
    output_storage: Storage
    queue: WorkQueue
    notifications: NotificationService
    reconciler: PaymentReconciler
    intake: IntakeService
    processor: JobProcessor
    translator: Translator

    def worker_pool(self) -> WorkerPool:
        return WorkerPool(self.queue, TRANSLATION_QUEUE, concurrency=self.settings.worker_concurrency)


def build_services(
    settings: Settings,
    translator: Translator | None = None,
    gateway: CheckoutGateway | None = None,
    source_storage: Storage | None = None,
    output_storage: Storage | None = None,
    queue: WorkQueue | None = None,
    redis: Redis | None = None,
) -> Services:
    """Wire every component from settings. Any collaborator can be swapped in."""
    db = Database(settings.database_path)
    db.init()

    source_storage = source_storage or LocalStorage(settings.upload_dir)
    output_storage = output_storage or LocalStorage(settings.output_dir)
    translator = translator or DeepLClient(
        api_key=settings.deepl_api_key,
        base_url=settings.deepl_base_url,
        timeout_sec=settings.translate_timeout_sec,
        poll_interval_sec=settings.document_poll_interval_sec,
        poll_max_attempts=settings.document_poll_max_attempts,
    )
    gateway = gateway or StripeCheckoutGateway(settings.stripe_secret_key)
    if queue is None:
        queue = WorkQueue(redis or Redis.from_url(settings.redis_url), job_timeout=settings.queue_job_timeout_sec)

    ledger = LedgerStore(db)
    jobs = JobStore(db)
    files = FileCatalog(db, source_storage)
    notifications = NotificationService(db)
    reconciler = PaymentReconciler(ledger, gateway, notifications, frontend_url=settings.frontend_url)
    intake = IntakeService(
        db,
        jobs,
        ledger,
        files,
        queue,
        attempts=settings.queue_attempts,
        backoff_ms=settings.queue_backoff_ms,
    )
    processor = JobProcessor(
        db,
        jobs,
        ledger,
        source_storage,
        output_storage,
        translator,
        notifications,
        credits_low_threshold=settings.credits_low_threshold,
    )
    return Services(
        settings=settings,
        db=db,
        ledger=ledger,
        jobs=jobs,
        files=files,
        source_storage=source_storage,
        output_storage=output_storage,
        queue=queue,
        notifications=notifications,
        reconciler=reconciler,
        intake=intake,
        processor=processor,
        translator=translator,
    )
