import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, field_validator


class JobStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class BillingMode(str, Enum):
    plan = "plan"
    one_off = "one_off"


class Formality(str, Enum):
    default = "default"
    more = "more"
    less = "less"
    prefer_more = "prefer_more"
    prefer_less = "prefer_less"


class PaymentStatus(str, Enum):
    pending = "pending"
    completed = "completed"


class UsageType(str, Enum):
    plan = "plan"
    one_off = "one_off"


class NotificationKind(str, Enum):
    translation_completed = "translation_completed"
    translation_failed = "translation_failed"
    credits_low = "credits_low"
    credits_added = "credits_added"


def _loads(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


class TranslationJob(BaseModel):
    job_id: str
    owner_id: str
    file_id: str
    file_path: str
    file_name: str
    source_lang: str = "auto"
    target_lang: str
    target_lang_name: str
    formality: Formality | None = None
    billing_mode: BillingMode
    payment_id: str | None = None
    status: JobStatus
    error_message: str | None = None
    output_path: str | None = None
    created_at: str
    updated_at: str
    completed_at: str | None = None


class PaymentRecord(BaseModel):
    session_id: str
    owner_id: str
    amount: int = 0
    currency: str = "usd"
    usage_type: UsageType
    status: PaymentStatus
    credits_added: int = 0
    credits_applied: bool = False
    plan: str | None = None
    pricing_basis: dict | None = None
    billing_reference: str | None = None
    consumed: bool = False
    job_id: str | None = None
    payment_intent: str | None = None
    metadata: dict = {}
    created_at: str

    @field_validator("pricing_basis", "metadata", mode="before")
    @classmethod
    def parse_json(cls, value: Any) -> Any:
        return _loads(value)


class FileRecord(BaseModel):
    file_id: str
    owner_id: str
    filename: str
    file_path: str
    file_size: int = 0
    mime_type: str | None = None
    page_count: int = 0
    created_at: str


class Notification(BaseModel):
    id: int
    owner_id: str
    kind: NotificationKind
    title: str
    message: str
    metadata: dict = {}
    read: bool = False
    created_at: str

    @field_validator("metadata", mode="before")
    @classmethod
    def parse_json(cls, value: Any) -> Any:
        return _loads(value)


class PriceQuote(BaseModel):
    amount: int
    currency: str
    breakdown: dict[str, int]


class CreateJobRequest(BaseModel):
    file_id: str | None = None
    target_lang: str | None = None
    source_lang: str | None = None
    formality: str | None = None
    billing_mode: str = "plan"
    billing_reference: str | None = None


class PlanCheckoutRequest(BaseModel):
    plan: str


class OneOffCheckoutRequest(BaseModel):
    file_id: str
    word_count: int | None = None


class ConfirmPaymentRequest(BaseModel):
    session_id: str


class CreditBalanceResponse(BaseModel):
    owner_id: str
    credits: int


class AdminGrantRequest(BaseModel):
    owner_id: str
    credits: int
