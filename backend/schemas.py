from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional
from datetime import date, datetime
from config import settings


class CamelModel(BaseModel):
    """Serialises as camelCase on the wire, accepts either spelling on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ─── Auth Schemas ─────────────────────────────────────────────────────────────

class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: str = Field(..., min_length=5, max_length=255)
    password: str = Field(..., min_length=6, max_length=128)


class LoginRequest(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str
    created_at: datetime


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse


# ─── Import Schemas ───────────────────────────────────────────────────────────

class ImportResponse(CamelModel):
    id: str
    file_name: str
    file_size: Optional[int] = None
    status: str
    bank_name: Optional[str] = None
    statement_period_start: Optional[date] = None
    statement_period_end: Optional[date] = None
    total_transactions: int = 0
    imported_transactions: int = 0
    month_count: int = 0
    error_message: Optional[str] = None
    progress_message: Optional[str] = None
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UploadResponse(CamelModel):
    success: bool = True
    import_id: str
    status: str
    file_name: str
    file_size: int


# ─── Candidate Transaction Schemas ────────────────────────────────────────────

class CandidateTransactionResponse(CamelModel):
    id: str
    transaction_date: date
    description: str
    amount: float
    transaction_type: str
    balance: Optional[float] = None
    is_duplicate: bool = False
    duplicate_of: Optional[str] = None
    is_selected: bool = True
    suggested_category_id: Optional[str] = None
    ai_confidence: Optional[float] = None


class CandidateTransactionUpdate(CamelModel):
    is_selected: Optional[bool] = None
    suggested_category_id: Optional[str] = None


# ─── Pipeline Requests ────────────────────────────────────────────────────────

class ExtractRequest(CamelModel):
    import_id: str
    password: Optional[str] = Field(None, max_length=100)


class ExtractResponse(CamelModel):
    success: bool
    transaction_count: Optional[int] = None
    duplicate_count: Optional[int] = None
    bank_name: Optional[str] = None
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    password_required: Optional[bool] = None
    message: Optional[str] = None


class CategorizeRequest(CamelModel):
    import_id: str


class SuggestedCategory(CamelModel):
    name: str
    icon: str
    color: str


class CategorizeResponse(CamelModel):
    success: bool
    total_transactions: int
    categorized_count: int
    avg_confidence: int
    suggested_categories: list[SuggestedCategory] = []


class CommitSelection(CamelModel):
    id: str
    category_id: Optional[str] = None


class CommitRequest(CamelModel):
    import_id: str
    transactions: Optional[list[CommitSelection]] = Field(None, max_length=settings.MAX_COMMIT_TRANSACTIONS)


class CommitResponse(CamelModel):
    success: bool
    imported_count: int
    month_count: int
