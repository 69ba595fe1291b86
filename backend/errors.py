"""Error taxonomy for the statement import pipeline.

Every error carries a user-facing ``message`` (safe to return to the client)
and the HTTP ``status_code`` the API renders it with.  Internal details belong
in the logs, never in ``message``.
"""
import enum
from typing import Optional


class PipelineError(Exception):
    status_code: int = 500
    default_message: str = "An unexpected error occurred. Please try again."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class AuthenticationError(PipelineError):
    status_code = 401
    default_message = "Invalid authentication"


class ValidationError(PipelineError):
    status_code = 400
    default_message = "Invalid request"


class NotFoundError(PipelineError):
    status_code = 404
    default_message = "Import not found"


class ConflictError(PipelineError):
    status_code = 409
    default_message = "Resource already exists"


class DownloadError(PipelineError):
    status_code = 500
    default_message = "Failed to download file from storage"


# ─── Encryption ───────────────────────────────────────────────────────────────

class EncryptionErrorKind(str, enum.Enum):
    PASSWORD_REQUIRED = "password_required"
    WRONG_PASSWORD = "wrong_password"
    DECRYPT_FAILURE = "decrypt_failure"


ENCRYPTION_MESSAGES = {
    EncryptionErrorKind.PASSWORD_REQUIRED: "This PDF is password protected. Please enter the password.",
    EncryptionErrorKind.WRONG_PASSWORD: "Incorrect password. Please try again.",
    EncryptionErrorKind.DECRYPT_FAILURE: "Failed to decrypt PDF. Please verify the password.",
}


class EncryptionError(PipelineError):
    """Recoverable: the import goes back to ``password_required``."""
    status_code = 200

    def __init__(self, kind: EncryptionErrorKind, message: Optional[str] = None):
        self.kind = kind
        super().__init__(message or ENCRYPTION_MESSAGES[kind])


# ─── Extraction ───────────────────────────────────────────────────────────────

class ExtractionErrorKind(str, enum.Enum):
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    QUOTA_EXHAUSTED = "quota_exhausted"
    EMPTY_RESPONSE = "empty_response"
    UNPARSEABLE_RESPONSE = "unparseable_response"
    NO_TRANSACTIONS_FOUND = "no_transactions_found"
    SERVICE_UNAVAILABLE = "service_unavailable"


EXTRACTION_MESSAGES = {
    ExtractionErrorKind.RATE_LIMITED: "Service is busy. Please try again in a minute.",
    ExtractionErrorKind.TIMEOUT: "Processing timed out. Please try a smaller file.",
    ExtractionErrorKind.QUOTA_EXHAUSTED: "AI service quota exhausted. Please try again later or contact support.",
    ExtractionErrorKind.EMPTY_RESPONSE: "Failed to extract transactions. Please try again.",
    ExtractionErrorKind.UNPARSEABLE_RESPONSE: "Failed to extract transactions. Please try again.",
    ExtractionErrorKind.NO_TRANSACTIONS_FOUND: (
        "No transactions found in this statement. "
        "The PDF may not contain readable transaction data."
    ),
    ExtractionErrorKind.SERVICE_UNAVAILABLE: "AI service is unavailable. Please try again later.",
}

EXTRACTION_STATUS_CODES = {
    ExtractionErrorKind.RATE_LIMITED: 429,
    ExtractionErrorKind.TIMEOUT: 504,
    ExtractionErrorKind.QUOTA_EXHAUSTED: 503,
    ExtractionErrorKind.SERVICE_UNAVAILABLE: 503,
}


class ExtractionError(PipelineError):
    def __init__(self, kind: ExtractionErrorKind, message: Optional[str] = None):
        self.kind = kind
        self.status_code = EXTRACTION_STATUS_CODES.get(kind, 400)
        super().__init__(message or EXTRACTION_MESSAGES[kind])


class DuplicateStatementError(PipelineError):
    status_code = 409

    def __init__(self, completed_on: str):
        self.completed_on = completed_on
        super().__init__(f"This statement was already imported on {completed_on}")


class PersistenceError(PipelineError):
    status_code = 500
    default_message = "Failed to save extracted transactions."


class CategorizationError(PipelineError):
    """Non-fatal: logged per batch, never stops the import reaching ``ready``."""
    status_code = 500
    default_message = "Failed to categorize transactions."


class CommitError(PipelineError):
    status_code = 500
    default_message = "Failed to import expenses"


# ─── Inference service ────────────────────────────────────────────────────────

class ServiceFailure(str, enum.Enum):
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    QUOTA_EXHAUSTED = "quota_exhausted"
    EMPTY_RESPONSE = "empty_response"
    UNAVAILABLE = "unavailable"


class InferenceServiceError(Exception):
    """Raised by the LLM client; each pipeline stage maps it to its own error."""

    def __init__(self, kind: ServiceFailure, detail: str = ""):
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)
