import logging
from typing import Annotated

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, Response

from doc_translator.config import configure_logging, settings
from doc_translator.errors import AppError, NotFoundError, ValidationError
from doc_translator.languages import DOCUMENT_EXTENSIONS, SOURCE_LANGUAGES, TARGET_LANGUAGES, TEXT_EXTENSIONS
from doc_translator.payments import PLANS, parse_webhook_event
from doc_translator.pricing import quote_for_file
from doc_translator.schemas import (
    AdminGrantRequest,
    ConfirmPaymentRequest,
    CreateJobRequest,
    CreditBalanceResponse,
    JobStatus,
    OneOffCheckoutRequest,
    PlanCheckoutRequest,
)
from doc_translator.services import Services, build_services
from doc_translator.work_queue import TRANSLATION_QUEUE

logger = logging.getLogger(__name__)


def envelope(data: dict, status: str = "ok", error: dict | None = None) -> dict:
    return {
        "status": status,
        "data": data,
        "meta": {"model_version": settings.app_version, "latency_ms": 0},
        "error": error,
    }


def get_services(request: Request) -> Services:
    if request.app.state.services is None:
        request.app.state.services = build_services(settings)
    return request.app.state.services


def current_user(x_user_id: Annotated[str | None, Header()] = None) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing x-user-id header")
    return x_user_id


def _require_admin(services: Services, x_admin_token: str | None) -> None:
    if not services.settings.admin_api_token:
        raise HTTPException(status_code=500, detail="ADMIN_API_TOKEN is not configured")
    if x_admin_token != services.settings.admin_api_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


ServicesDep = Annotated[Services, Depends(get_services)]
UserDep = Annotated[str, Depends(current_user)]


def create_app(services: Services | None = None) -> FastAPI:
    app = FastAPI(title="Document Translator", version=settings.app_version)
    app.state.services = services

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=envelope({}, status="error", error={"code": exc.code, "message": exc.message}),
        )

    @app.get("/health")
    def health() -> dict:
        return envelope({"service": "doc-translator"})

    @app.get("/version")
    def version() -> dict:
        return envelope({"service": "doc-translator", "version": settings.app_version})

    @app.get("/v1/languages")
    def languages() -> dict:
        return envelope(
            {
                "source": SOURCE_LANGUAGES,
                "target": TARGET_LANGUAGES,
                "document_extensions": sorted(DOCUMENT_EXTENSIONS),
                "text_extensions": sorted(TEXT_EXTENSIONS),
            }
        )

    @app.get("/v1/languages/usage")
    def translation_usage(services: ServicesDep, user_id: UserDep) -> dict:
        return envelope(services.translator.usage())

    # files

    @app.post("/v1/files")
    async def upload_file(services: ServicesDep, user_id: UserDep, file: UploadFile = File(...)) -> dict:
        data = await file.read()
        if not data:
            raise ValidationError("Empty file")
        if len(data) > services.settings.max_file_mb * 1024 * 1024:
            raise HTTPException(status_code=413, detail="File too large")
        record = services.files.add(user_id, file.filename or "upload", data, file.content_type)
        return envelope(record.model_dump())

    @app.get("/v1/files")
    def list_files(services: ServicesDep, user_id: UserDep) -> dict:
        return envelope({"files": [f.model_dump() for f in services.files.list_for_owner(user_id)]})

    @app.get("/v1/files/{file_id}/quote")
    def file_quote(file_id: str, services: ServicesDep, user_id: UserDep, word_count: int | None = None) -> dict:
        file = services.files.get_owned(file_id, user_id)
        if file is None:
            raise NotFoundError("File not found")
        return envelope(quote_for_file(file, word_count=word_count).model_dump())

    # translations

    @app.post("/v1/jobs", status_code=201)
    def create_translation_job(payload: CreateJobRequest, services: ServicesDep, user_id: UserDep) -> dict:
        job = services.intake.create_job(
            owner_id=user_id,
            file_id=payload.file_id,
            target_lang=payload.target_lang,
            source_lang=payload.source_lang,
            formality=payload.formality,
            billing_mode=payload.billing_mode,
            billing_reference=payload.billing_reference,
        )
        return envelope(job.model_dump(mode="json"))

    @app.get("/v1/jobs")
    def list_translation_jobs(
        services: ServicesDep,
        user_id: UserDep,
        status: JobStatus | None = None,
        limit: int = Query(20, ge=1, le=100),
        offset: int = Query(0, ge=0),
    ) -> dict:
        jobs, total = services.intake.list_jobs(
            user_id, status=status.value if status else None, limit=limit, offset=offset
        )
        return envelope({"jobs": [j.model_dump(mode="json") for j in jobs], "total": total})

    @app.get("/v1/jobs/{job_id}")
    def get_translation_job(job_id: str, services: ServicesDep, user_id: UserDep) -> dict:
        return envelope(services.intake.get_job(user_id, job_id).model_dump(mode="json"))

    @app.post("/v1/jobs/{job_id}/retry")
    def retry_translation_job(job_id: str, services: ServicesDep, user_id: UserDep) -> dict:
        return envelope(services.intake.retry_job(user_id, job_id).model_dump(mode="json"))

    @app.post("/v1/jobs/{job_id}/cancel")
    def cancel_translation_job(job_id: str, services: ServicesDep, user_id: UserDep) -> dict:
        return envelope(services.intake.cancel_job(user_id, job_id).model_dump(mode="json"))

    @app.get("/v1/jobs/{job_id}/download")
    def download_translation(job_id: str, services: ServicesDep, user_id: UserDep) -> Response:
        job = services.intake.get_job(user_id, job_id)
        if job.status != JobStatus.completed or not job.output_path:
            raise HTTPException(status_code=409, detail="Job is not completed")
        content = services.output_storage.fetch(job.output_path)
        name = job.output_path.rsplit("/", 1)[-1]
        return Response(
            content=content,
            media_type="application/octet-stream",
            headers={"Content-Disposition": f'attachment; filename="{name}"'},
        )

    # billing

    @app.get("/v1/credits")
    def get_credits(services: ServicesDep, user_id: UserDep) -> dict:
        balance = CreditBalanceResponse(owner_id=user_id, credits=services.ledger.get_balance(user_id))
        return envelope(balance.model_dump())

    @app.get("/v1/payments/plans")
    def list_plans() -> dict:
        return envelope({"plans": PLANS})

    @app.get("/v1/payments/history")
    def payment_history(services: ServicesDep, user_id: UserDep) -> dict:
        payments = services.ledger.list_payments(user_id)
        return envelope({"payments": [p.model_dump(mode="json") for p in payments]})

    @app.post("/v1/payments/checkout")
    def plan_checkout(payload: PlanCheckoutRequest, services: ServicesDep, user_id: UserDep) -> dict:
        return envelope(services.reconciler.create_plan_checkout(user_id, payload.plan))

    @app.post("/v1/payments/one-off-checkout")
    def one_off_checkout(payload: OneOffCheckoutRequest, services: ServicesDep, user_id: UserDep) -> dict:
        file = services.files.get_owned(payload.file_id, user_id)
        if file is None:
            raise NotFoundError("File not found")
        return envelope(services.reconciler.create_one_off_checkout(user_id, file, word_count=payload.word_count))

    @app.post("/v1/payments/confirm")
    def confirm_payment(payload: ConfirmPaymentRequest, services: ServicesDep, user_id: UserDep) -> dict:
        outcome = services.reconciler.confirm(payload.session_id, user_id)
        return envelope({"session_id": payload.session_id, "outcome": outcome.value})

    @app.post("/v1/webhooks/stripe")
    async def stripe_webhook(
        request: Request,
        services: ServicesDep,
        stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
    ) -> dict:
        secret = services.settings.stripe_webhook_secret
        if not secret:
            raise HTTPException(status_code=500, detail="STRIPE_WEBHOOK_SECRET is not configured")

        payload = await request.body()
        try:
            event = parse_webhook_event(payload, stripe_signature, secret)
        except Exception as exc:
            logger.error("Webhook signature verification failed: %s", exc)
            raise HTTPException(status_code=400, detail=f"Webhook Error: {exc}") from exc

        event_type = event.get("type")
        logger.info("Received webhook event: %s", event_type)
        obj = (event.get("data") or {}).get("object") or {}

        if event_type == "checkout.session.completed":
            try:
                outcome = services.reconciler.reconcile(obj)
            except ValidationError as exc:
                # redelivery cannot fix a malformed event
                logger.error("Ignoring checkout session %s: %s", obj.get("id"), exc.message)
                return {"received": True, "outcome": "ignored"}
            except Exception as exc:
                logger.exception("Error processing webhook")
                raise HTTPException(status_code=500, detail="Webhook processing failed") from exc
            return {"received": True, "outcome": outcome.value}
        if event_type == "payment_intent.succeeded":
            logger.info("Payment succeeded: %s", obj.get("id"))
        elif event_type == "payment_intent.payment_failed":
            logger.warning("Payment failed: %s", obj.get("id"))
        else:
            logger.info("Unhandled event type: %s", event_type)
        return {"received": True}

    # notifications

    @app.get("/v1/notifications")
    def list_notifications(services: ServicesDep, user_id: UserDep, unread_only: bool = False) -> dict:
        items = services.notifications.list_for_owner(user_id, unread_only=unread_only)
        return envelope({"notifications": [n.model_dump(mode="json") for n in items]})

    @app.post("/v1/notifications/{notification_id}/read")
    def mark_notification_read(notification_id: int, services: ServicesDep, user_id: UserDep) -> dict:
        if not services.notifications.mark_read(user_id, notification_id):
            raise NotFoundError("Notification not found")
        return envelope({"id": notification_id, "read": True})

    @app.post("/v1/notifications/read-all")
    def mark_all_notifications_read(services: ServicesDep, user_id: UserDep) -> dict:
        return envelope({"updated": services.notifications.mark_all_read(user_id)})

    # admin

    @app.post("/v1/admin/credits/grant")
    def admin_grant_credits(
        payload: AdminGrantRequest,
        services: ServicesDep,
        x_admin_token: Annotated[str | None, Header()] = None,
    ) -> dict:
        _require_admin(services, x_admin_token)
        if payload.credits <= 0:
            raise ValidationError("credits must be > 0")
        balance = services.ledger.increase_credits(payload.owner_id, payload.credits)
        return envelope({"owner_id": payload.owner_id, "credits": balance})

    @app.get("/v1/admin/queue/stats")
    def admin_queue_stats(services: ServicesDep, x_admin_token: Annotated[str | None, Header()] = None) -> dict:
        _require_admin(services, x_admin_token)
        return envelope(services.queue.counts(TRANSLATION_QUEUE))

    return app


configure_logging()
app = create_app()
