"""Error taxonomy shared by intake, reconciliation and the worker.

Every error raised to an HTTP caller derives from ``AppError`` and carries the
status code it maps to. ``DuplicateEvent`` never reaches a caller: the payment
reconciler catches it and reports the event as already processed.
"""


class AppError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"


class PermissionDenied(AppError):
    status_code = 403
    code = "PERMISSION_DENIED"


class InvalidTransition(AppError):
    status_code = 409
    code = "INVALID_TRANSITION"


class InsufficientBalance(AppError):
    status_code = 402
    code = "INSUFFICIENT_BALANCE"


class PaymentNotFound(AppError):
    status_code = 402
    code = "PAYMENT_NOT_FOUND"


class DuplicateEvent(AppError):
    status_code = 200
    code = "DUPLICATE_EVENT"


class TransientExternalFailure(AppError):
    status_code = 502
    code = "EXTERNAL_FAILURE"


class StorageError(TransientExternalFailure):
    code = "STORAGE_ERROR"


class TranslationError(TransientExternalFailure):
    code = "TRANSLATION_ERROR"


class TranslateTimeoutError(TranslationError):
    code = "TRANSLATE_TIMEOUT"
