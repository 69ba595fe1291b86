import uuid
from datetime import datetime, timedelta, timezone
from sqlalchemy import (
    Column, String, Float, Integer, Text, Date, DateTime, ForeignKey,
    Boolean, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from database import Base
from config import settings
import enum


# ─── Enums ────────────────────────────────────────────────────────────────────

class ImportStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PASSWORD_REQUIRED = "password_required"
    EXTRACTED = "extracted"
    CATEGORIZING = "categorizing"
    READY = "ready"
    COMPLETED = "completed"
    FAILED = "failed"


# Allowed server-side status transitions. Self-loops carry progress updates
# (processing) and repeated password prompts (password_required).
STATUS_TRANSITIONS = {
    ImportStatus.PENDING: {
        ImportStatus.PROCESSING, ImportStatus.PASSWORD_REQUIRED, ImportStatus.FAILED,
    },
    ImportStatus.PASSWORD_REQUIRED: {
        ImportStatus.PROCESSING, ImportStatus.PASSWORD_REQUIRED, ImportStatus.FAILED,
    },
    ImportStatus.PROCESSING: {
        ImportStatus.PROCESSING, ImportStatus.PASSWORD_REQUIRED,
        ImportStatus.EXTRACTED, ImportStatus.FAILED,
    },
    ImportStatus.EXTRACTED: {
        ImportStatus.CATEGORIZING, ImportStatus.COMPLETED, ImportStatus.FAILED,
    },
    ImportStatus.CATEGORIZING: {ImportStatus.READY, ImportStatus.FAILED},
    ImportStatus.READY: {
        ImportStatus.CATEGORIZING, ImportStatus.COMPLETED, ImportStatus.FAILED,
    },
    ImportStatus.COMPLETED: set(),
    ImportStatus.FAILED: set(),
}


class TransactionType(str, enum.Enum):
    DEBIT = "debit"
    CREDIT = "credit"


# ─── Helper ───────────────────────────────────────────────────────────────────

def generate_uuid():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


def default_expiry():
    return utcnow() + timedelta(hours=settings.IMPORT_RETENTION_HOURS)


# ─── Models ───────────────────────────────────────────────────────────────────

class User(Base):
    """Application user."""
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=generate_uuid)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, unique=True, index=True)
    password_hash = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    imports = relationship("StatementImport", back_populates="owner", cascade="all, delete-orphan")


class Category(Base):
    """Spending category. Owned by the category screens; read-only here."""
    __tablename__ = "categories"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    icon = Column(String, default="tag")
    color = Column(String, default="#3B82F6")
    created_at = Column(DateTime, default=utcnow)


class Expense(Base):
    """Permanent ledger entry. The import pipeline only ever inserts rows."""
    __tablename__ = "expenses"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    category_id = Column(String, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True)
    amount = Column(Float, nullable=False)  # always positive
    date = Column(Date, nullable=False, index=True)
    payment_method = Column(String, default="cash")
    note = Column(Text)
    is_draft = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)


class StatementImport(Base):
    """One upload attempt and its processing lifecycle."""
    __tablename__ = "statement_imports"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    file_name = Column(String, nullable=False)
    file_path = Column(String, nullable=False)  # storage key
    file_size = Column(Integer)  # bytes
    file_hash = Column(String, index=True)  # SHA-256 of the uploaded bytes
    status = Column(String, default=ImportStatus.PENDING.value, index=True)

    # Statement metadata reported by the extraction service
    bank_name = Column(String)
    statement_period_start = Column(Date)
    statement_period_end = Column(Date)

    total_transactions = Column(Integer, default=0)
    imported_transactions = Column(Integer, default=0)
    month_count = Column(Integer, default=0)

    error_message = Column(Text)
    progress_message = Column(Text)  # e.g. "Processing page 9-16 of 20..."

    expires_at = Column(DateTime, default=default_expiry)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    owner = relationship("User", back_populates="imports")
    transactions = relationship(
        "CandidateTransaction", back_populates="statement_import",
        cascade="all, delete-orphan", passive_deletes=True,
    )


class CandidateTransaction(Base):
    """An extracted transaction awaiting review; removed once the import completes."""
    __tablename__ = "candidate_transactions"

    id = Column(String, primary_key=True, default=generate_uuid)
    import_id = Column(String, ForeignKey("statement_imports.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)

    transaction_date = Column(Date, nullable=False)
    description = Column(Text, nullable=False)
    amount = Column(Float, nullable=False)  # magnitude; direction is in transaction_type
    transaction_type = Column(String, nullable=False, default=TransactionType.DEBIT.value)
    balance = Column(Float)  # running balance, if the statement shows one
    raw_text = Column(Text)  # JSON of the row as the extraction service returned it

    is_duplicate = Column(Boolean, default=False)
    duplicate_of = Column(String, ForeignKey("expenses.id", ondelete="SET NULL"))
    is_selected = Column(Boolean, default=True)

    suggested_category_id = Column(String, ForeignKey("categories.id", ondelete="SET NULL"))
    ai_confidence = Column(Float)

    created_at = Column(DateTime, default=utcnow)

    statement_import = relationship("StatementImport", back_populates="transactions")


class KeywordMapping(Base):
    """Learned description-fragment → category association, per user."""
    __tablename__ = "keyword_mappings"
    __table_args__ = (UniqueConstraint("user_id", "keyword", name="uq_keyword_mapping_user_keyword"),)

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    keyword = Column(String, nullable=False, index=True)  # lowercase
    category_id = Column(String, ForeignKey("categories.id", ondelete="CASCADE"), nullable=False)
    usage_count = Column(Integer, default=1)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
