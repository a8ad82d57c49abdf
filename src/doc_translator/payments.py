"""Checkout creation and idempotent reconciliation of completed checkouts.

The webhook and the client-side confirm call both end in
``PaymentReconciler.reconcile``. The payment row keyed by the checkout session
id is the one-time gate: a second delivery finds the row and does nothing,
except finishing a credit grant that an earlier delivery recorded but did not
apply.
"""

import json
import logging
from enum import Enum
from typing import Any, Protocol
from uuid import uuid4

import stripe

from doc_translator.errors import (
    DuplicateEvent,
    NotFoundError,
    PermissionDenied,
    TransientExternalFailure,
    ValidationError,
)
from doc_translator.ledger import LedgerStore
from doc_translator.notifications import Notifier
from doc_translator.pricing import quote_for_file
from doc_translator.schemas import FileRecord, NotificationKind, PaymentStatus, UsageType

logger = logging.getLogger(__name__)

PLANS = {
    "starter": {"credits": 10, "amount": 999},
    "pro": {"credits": 50, "amount": 3999},
    "enterprise": {"credits": 200, "amount": 9999},
}

STATUS_MAP = {
    "paid": PaymentStatus.completed,
    "unpaid": PaymentStatus.pending,
    "no_payment_required": PaymentStatus.completed,
}

WEBHOOK_TOLERANCE_SEC = 300


class ReconcileOutcome(str, Enum):
    processed = "processed"
    already_processed = "already_processed"
    ignored = "ignored"


class CheckoutGateway(Protocol):
    def create_session(
        self,
        amount: int,
        currency: str,
        product_name: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        customer_email: str | None = None,
    ) -> dict: ...

    def retrieve_session(self, session_id: str) -> dict: ...


class StripeCheckoutGateway:
    def __init__(self, api_key: str) -> None:
        self.api_key = api_key

    def create_session(
        self,
        amount: int,
        currency: str,
        product_name: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
        customer_email: str | None = None,
    ) -> dict:
        params: dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": currency,
                        "unit_amount": amount,
                        "product_data": {"name": product_name},
                    },
                    "quantity": 1,
                }
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if customer_email:
            params["customer_email"] = customer_email
        try:
            session = stripe.checkout.Session.create(api_key=self.api_key, **params)
        except stripe.StripeError as exc:
            raise TransientExternalFailure(f"Checkout session could not be created: {exc.user_message or exc}") from exc
        return {"id": session.id, "url": session.url}

    def retrieve_session(self, session_id: str) -> dict:
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.api_key)
        except stripe.InvalidRequestError as exc:
            # unknown id, or a session from another account
            raise NotFoundError("No such checkout session") from exc
        except stripe.StripeError as exc:
            raise TransientExternalFailure(f"Checkout session lookup failed: {exc.user_message or exc}") from exc
        return session.to_dict()


def parse_webhook_event(payload: bytes, sig_header: str | None, secret: str) -> dict:
    """Verify a Stripe-Signature header and return the decoded event.

    Raises whatever the Stripe SDK raises for a bad signature.
    """
    text = payload.decode("utf-8")
    stripe.WebhookSignature.verify_header(text, sig_header or "", secret, WEBHOOK_TOLERANCE_SEC)
    return json.loads(text)


def _parse_pricing_basis(value: Any) -> dict | None:
    if not value:
        return None
    if isinstance(value, dict):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        logger.warning("Failed to parse pricingBasis metadata: %r", value)
        return None


def _parse_credits(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"invalid credits metadata: {value!r}") from exc


class PaymentReconciler:
    def __init__(
        self,
        ledger: LedgerStore,
        gateway: CheckoutGateway,
        notifier: Notifier,
        frontend_url: str = "http://localhost:5173",
    ) -> None:
        self.ledger = ledger
        self.gateway = gateway
        self.notifier = notifier
        self.frontend_url = frontend_url.rstrip("/")

    def reconcile(self, session: dict) -> ReconcileOutcome:
        session_id = session.get("id")
        metadata = session.get("metadata") or {}
        owner_id = metadata.get("userId")
        if not session_id:
            raise ValidationError("checkout session has no id")
        if not owner_id:
            logger.warning("Checkout session %s missing userId metadata", session_id)
            return ReconcileOutcome.ignored

        try:
            usage_type = UsageType(metadata.get("usageType") or UsageType.plan.value)
        except ValueError as exc:
            raise ValidationError(f"unknown usageType {metadata.get('usageType')!r}") from exc

        record: dict[str, Any] = {
            "session_id": session_id,
            "owner_id": owner_id,
            "amount": session.get("amount_total") or 0,
            "currency": session.get("currency") or "usd",
            "usage_type": usage_type,
            "status": STATUS_MAP.get(session.get("payment_status"), PaymentStatus.completed),
            "payment_intent": session.get("payment_intent"),
            "metadata": metadata,
        }
        if usage_type == UsageType.one_off:
            billing_reference = metadata.get("billingReference")
            if not billing_reference:
                raise ValidationError("one-off payment missing billingReference")
            record["billing_reference"] = billing_reference
            record["pricing_basis"] = _parse_pricing_basis(metadata.get("pricingBasis"))
        else:
            record["plan"] = metadata.get("plan")
            record["credits_added"] = _parse_credits(metadata.get("credits"))

        try:
            payment = self.ledger.insert_payment(record)
        except DuplicateEvent:
            existing = self.ledger.get_payment(session_id)
            if existing and existing.usage_type == UsageType.plan and existing.credits_added > 0 and not existing.credits_applied:
                logger.warning("Session %s was recorded without its credits, applying them now", session_id)
                self._apply_credits(session_id, existing.owner_id, existing.credits_added)
            else:
                logger.info("Checkout session %s already processed, skipping", session_id)
            return ReconcileOutcome.already_processed

        if usage_type == UsageType.one_off:
            logger.info("Recorded one-off payment %s for user %s (%s)", session_id, owner_id, payment.billing_reference)
        elif payment.credits_added > 0:
            logger.info("Processing plan checkout for user %s, adding %s credits", owner_id, payment.credits_added)
            self._apply_credits(session_id, owner_id, payment.credits_added)
        else:
            logger.warning("Plan checkout %s has no credits to add", session_id)
        return ReconcileOutcome.processed

    def _apply_credits(self, session_id: str, owner_id: str, credits: int) -> None:
        if self.ledger.apply_payment_credits(session_id):
            self.notifier.notify(NotificationKind.credits_added, owner_id, {"credits": credits, "session_id": session_id})

    def confirm(self, session_id: str, caller_id: str) -> ReconcileOutcome:
        session = self.gateway.retrieve_session(session_id)
        metadata = session.get("metadata") or {}
        if metadata.get("userId") != caller_id:
            raise PermissionDenied("checkout session belongs to another user")
        if session.get("payment_status") != "paid":
            raise PermissionDenied("checkout session is not paid")
        return self.reconcile(session)

    def create_plan_checkout(self, owner_id: str, plan: str, customer_email: str | None = None) -> dict:
        selected = PLANS.get(plan)
        if selected is None:
            raise ValidationError("Invalid plan selected")
        session = self.gateway.create_session(
            amount=selected["amount"],
            currency="usd",
            product_name=f"{plan.title()} plan ({selected['credits']} credits)",
            metadata={"userId": owner_id, "usageType": UsageType.plan.value, "plan": plan, "credits": str(selected["credits"])},
            success_url=f"{self.frontend_url}/dashboard?payment=success",
            cancel_url=f"{self.frontend_url}/pricing?payment=cancelled",
            customer_email=customer_email,
        )
        logger.info("Checkout session created for user %s, plan: %s", owner_id, plan)
        return {"session_id": session["id"], "url": session["url"]}

    def create_one_off_checkout(self, owner_id: str, file: FileRecord, word_count: int | None = None) -> dict:
        quote = quote_for_file(file, word_count=word_count)
        billing_reference = f"bill_{uuid4().hex}"
        session = self.gateway.create_session(
            amount=quote.amount,
            currency=quote.currency,
            product_name=f'Translation of "{file.filename}"',
            metadata={
                "userId": owner_id,
                "usageType": UsageType.one_off.value,
                "billingReference": billing_reference,
                "fileId": file.file_id,
                "pricingBasis": json.dumps(quote.breakdown),
            },
            success_url=f"{self.frontend_url}/translations/new?payment=success&ref={billing_reference}",
            cancel_url=f"{self.frontend_url}/translations/new?payment=cancelled",
        )
        logger.info("One-off checkout created for user %s, file %s, amount %s", owner_id, file.file_id, quote.amount)
        return {
            "session_id": session["id"],
            "url": session["url"],
            "billing_reference": billing_reference,
            "quote": quote.model_dump(),
        }
