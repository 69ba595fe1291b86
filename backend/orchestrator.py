"""
Pipeline driver.

Owns every status change of an import: validates it against the transition
graph, stamps ``updated_at`` and commits.  Each stage (extract, categorize,
commit) is run inside ``_pipeline_stage`` so that unrecoverable failures leave
the import ``failed`` with a user-facing message, while password problems send
it back to ``password_required``.
"""
import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import inspect
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import ObjectDeletedError

from agents.categorization import CategorizationAgent
from agents.commit import CommitAgent
from agents.dedupe import DedupeAgent, normalize_transactions, parse_date
from agents.extraction import ExtractionAgent
from errors import (
    DuplicateStatementError, EncryptionError, EncryptionErrorKind, ExtractionError,
    ExtractionErrorKind, NotFoundError, PipelineError, ValidationError,
)
from models import (
    STATUS_TRANSITIONS, CandidateTransaction, ImportStatus, StatementImport, utcnow,
)
from services.pdf_processor import decrypt_pdf, probe_encryption
from services.storage import ObjectStorage, compute_file_hash, get_storage

logger = logging.getLogger("StatementImporter.Orchestrator")

UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred. Please try again."
EXTRACTABLE_STATUSES = {ImportStatus.PENDING.value, ImportStatus.PASSWORD_REQUIRED.value}
REVIEWABLE_STATUSES = {ImportStatus.EXTRACTED.value, ImportStatus.READY.value}


class ImportCancelled(NotFoundError):
    """The import was deleted while a stage was still running."""
    default_message = "Import was cancelled"


# ─── Lookups & status ─────────────────────────────────────────────────────────

def get_owned_import(db: Session, import_id: str, user_id: str) -> StatementImport:
    try:
        uuid.UUID(str(import_id))
    except ValueError:
        raise ValidationError("Invalid import ID format")
    imp = (
        db.query(StatementImport)
        .filter(StatementImport.id == import_id, StatementImport.user_id == user_id)
        .first()
    )
    if not imp:
        raise NotFoundError()
    return imp


def _identity(imp: StatementImport) -> str:
    """Primary key without touching (possibly expired) attributes."""
    return inspect(imp).identity[0]


def _import_exists(db: Session, import_id: str) -> bool:
    return db.query(StatementImport.id).filter(StatementImport.id == import_id).first() is not None


def update_status(
    db: Session,
    imp: StatementImport,
    status: ImportStatus,
    progress_message: Optional[str] = None,
    error_message: Optional[str] = None,
    **fields,
) -> None:
    """Move ``imp`` to ``status`` and commit, refusing transitions off the graph."""
    if not _import_exists(db, _identity(imp)):
        raise ImportCancelled()
    current = ImportStatus(imp.status)
    if status not in STATUS_TRANSITIONS[current]:
        logger.error(f"  🚫 Illegal status change for import {imp.id}: {current.value} → {status.value}")
        raise ValidationError(f"Cannot move import from {current.value} to {status.value}")

    imp.status = status.value
    imp.progress_message = progress_message
    imp.error_message = error_message
    for key, value in fields.items():
        setattr(imp, key, value)
    imp.updated_at = utcnow()
    db.commit()
    if current != status:
        logger.info(f"  📌 Import {imp.id}: {current.value} → {status.value}")


def _mark_failed(db: Session, imp: StatementImport, message: str) -> None:
    try:
        if not _import_exists(db, _identity(imp)):
            raise ImportCancelled()
        if ImportStatus.FAILED in STATUS_TRANSITIONS[ImportStatus(imp.status)]:
            update_status(db, imp, ImportStatus.FAILED, error_message=message)
    except ImportCancelled:
        logger.info(f"  Import {_identity(imp)} is gone, nothing to mark failed")


@contextmanager
def _pipeline_stage(db: Session, imp: StatementImport, stage: str):
    """Translate stage failures into import state.

    Caller mistakes (ValidationError) and cancellations leave the import as
    it is; every other pipeline error marks it failed with its message, and
    anything unexpected marks it failed with a generic one.
    """
    import_id = _identity(imp)
    start = time.time()
    try:
        yield
        logger.info(f"  ✅ {stage} finished for import {import_id} in {time.time() - start:.2f}s")
    except ImportCancelled:
        db.rollback()
        logger.warning(f"  🗑️ Import {import_id} was deleted during {stage.lower()}, discarding results")
        raise
    except ObjectDeletedError as e:
        db.rollback()
        logger.warning(f"  🗑️ Import {import_id} was deleted during {stage.lower()}, discarding results")
        raise ImportCancelled() from e
    except ValidationError:
        db.rollback()
        raise
    except PipelineError as e:
        db.rollback()
        logger.error(f"  ❌ {stage} failed for import {import_id}: {e.message}")
        _mark_failed(db, imp, e.message)
        raise
    except Exception as e:
        logger.exception(f"  ❌ {stage} crashed for import {import_id}: {e}")
        db.rollback()
        _mark_failed(db, imp, UNEXPECTED_ERROR_MESSAGE)
        raise PipelineError(UNEXPECTED_ERROR_MESSAGE) from e


def _format_day(value: Optional[datetime]) -> str:
    return value.strftime("%d %b %Y") if value else "an earlier date"


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


# ─── Extraction ───────────────────────────────────────────────────────────────

def run_extraction(
    db: Session,
    import_id: str,
    user_id: str,
    password: Optional[str] = None,
    storage: ObjectStorage = None,
    agent: ExtractionAgent = None,
) -> dict:
    """Download, unlock, extract and persist the candidates of one import.

    Password problems are answered with ``{success: False, passwordRequired:
    True}`` and leave the import in ``password_required``; everything else
    that goes wrong raises.
    """
    storage = storage or get_storage()
    agent = agent or ExtractionAgent()
    imp = get_owned_import(db, import_id, user_id)
    if imp.status not in EXTRACTABLE_STATUSES:
        raise ValidationError(f"Import is already {imp.status}")

    logger.info(f"🔮 Starting extraction for import {imp.id} ({imp.file_name})")
    with _pipeline_stage(db, imp, "Extraction"):
        try:
            return _extract(db, imp, password, storage, agent)
        except EncryptionError as e:
            db.rollback()
            logger.info(f"  🔐 Import {imp.id} needs a password ({e.kind.value})")
            update_status(db, imp, ImportStatus.PASSWORD_REQUIRED, error_message=e.message)
            return {"success": False, "passwordRequired": True, "message": e.message}


def _extract(db: Session, imp: StatementImport, password, storage, agent) -> dict:
    content = storage.download(imp.file_path)
    file_hash = imp.file_hash or compute_file_hash(content)

    prior = (
        db.query(StatementImport)
        .filter(
            StatementImport.user_id == imp.user_id,
            StatementImport.file_hash == file_hash,
            StatementImport.status == ImportStatus.COMPLETED.value,
            StatementImport.id != imp.id,
        )
        .order_by(StatementImport.completed_at.desc())
        .first()
    )
    if prior:
        raise DuplicateStatementError(_format_day(prior.completed_at or prior.created_at))

    password_attempt = False
    if probe_encryption(content):
        if not password:
            raise EncryptionError(EncryptionErrorKind.PASSWORD_REQUIRED)
        password_attempt = True
        update_status(db, imp, ImportStatus.PROCESSING, progress_message="Decrypting PDF...")
        content = decrypt_pdf(content, password)

    update_status(db, imp, ImportStatus.PROCESSING, progress_message="Extracting transactions...")

    def _progress(message: str):
        update_status(db, imp, ImportStatus.PROCESSING, progress_message=message)

    outcome = agent.run(imp, db, content=content, on_progress=_progress)
    logger.info(f"  📄 {outcome['summary']}")
    results = outcome["results"]

    rows = normalize_transactions(results["transactions"])
    if not rows:
        raise _empty_extraction_error(results, password_attempt)

    update_status(db, imp, ImportStatus.PROCESSING, progress_message=f"Saving {len(rows)} transactions...")
    saved = DedupeAgent().run(imp, db, rows=rows)["results"]

    update_status(
        db, imp, ImportStatus.EXTRACTED,
        file_hash=file_hash,
        bank_name=results["bank_name"],
        statement_period_start=parse_date(results["period_start"]),
        statement_period_end=parse_date(results["period_end"]),
        total_transactions=saved["persisted"],
    )
    return {
        "success": True,
        "transactionCount": saved["persisted"],
        "duplicateCount": saved["duplicates"],
        "bankName": imp.bank_name,
        "periodStart": _iso(imp.statement_period_start),
        "periodEnd": _iso(imp.statement_period_end),
    }


def _empty_extraction_error(results: Dict, password_attempt: bool) -> PipelineError:
    """Pick the error for an extraction that produced nothing usable."""
    failures: List[ExtractionErrorKind] = results["unit_failures"]
    if results["quota_exhausted"]:
        return ExtractionError(ExtractionErrorKind.QUOTA_EXHAUSTED)
    if password_attempt:
        # an empty read of a freshly decrypted file usually means a bad password
        return EncryptionError(EncryptionErrorKind.WRONG_PASSWORD)
    transient = (ExtractionErrorKind.RATE_LIMITED, ExtractionErrorKind.TIMEOUT)
    if failures and all(kind in transient for kind in failures):
        return ExtractionError(failures[-1])
    return ExtractionError(ExtractionErrorKind.NO_TRANSACTIONS_FOUND)


# ─── Categorization ───────────────────────────────────────────────────────────

def run_categorization(
    db: Session, import_id: str, user_id: str, agent: CategorizationAgent = None,
) -> dict:
    agent = agent or CategorizationAgent()
    imp = get_owned_import(db, import_id, user_id)
    if imp.status not in REVIEWABLE_STATUSES:
        raise ValidationError(f"Import cannot be categorized while {imp.status}")
    count = db.query(CandidateTransaction).filter(CandidateTransaction.import_id == imp.id).count()
    if not count:
        raise ValidationError("No transactions to categorize")

    logger.info(f"🔮 Starting categorization for import {imp.id} ({count} transactions)")
    with _pipeline_stage(db, imp, "Categorization"):
        update_status(db, imp, ImportStatus.CATEGORIZING, progress_message="Categorizing transactions...")
        outcome = agent.run(imp, db)
        logger.info(f"  🏷️ {outcome['summary']}")
        update_status(db, imp, ImportStatus.READY)

    results = outcome["results"]
    return {
        "success": True,
        "totalTransactions": results["total_transactions"],
        "categorizedCount": results["categorized_count"],
        "avgConfidence": results["avg_confidence"],
        "suggestedCategories": results["suggested_categories"],
    }


# ─── Commit ───────────────────────────────────────────────────────────────────

def run_commit(
    db: Session,
    import_id: str,
    user_id: str,
    transactions: Optional[List[Dict]] = None,
    storage: ObjectStorage = None,
    agent: CommitAgent = None,
) -> dict:
    storage = storage or get_storage()
    agent = agent or CommitAgent()
    imp = get_owned_import(db, import_id, user_id)
    if imp.status not in REVIEWABLE_STATUSES:
        raise ValidationError(f"Import cannot be committed while {imp.status}")

    logger.info(f"🔮 Committing import {imp.id}")
    with _pipeline_stage(db, imp, "Commit"):
        outcome = agent.run(imp, db, selection=transactions)
        logger.info(f"  💾 {outcome['summary']}")
        results = outcome["results"]
        update_status(
            db, imp, ImportStatus.COMPLETED,
            imported_transactions=results["imported_count"],
            month_count=results["month_count"],
            completed_at=utcnow(),
        )

    _delete_object(storage, imp.file_path)
    return {
        "success": True,
        "importedCount": results["imported_count"],
        "monthCount": results["month_count"],
    }


# ─── Cancellation & retention ─────────────────────────────────────────────────

def _delete_object(storage: ObjectStorage, key: Optional[str]) -> None:
    if not key:
        return
    try:
        storage.delete(key)
    except OSError as e:
        logger.warning(f"  ⚠️ Could not delete stored file {key}: {e}")


def delete_import(db: Session, import_id: str, user_id: str, storage: ObjectStorage = None) -> None:
    """Remove an import, its candidates and its stored file."""
    storage = storage or get_storage()
    imp = get_owned_import(db, import_id, user_id)
    key = imp.file_path
    db.delete(imp)
    db.commit()
    _delete_object(storage, key)
    logger.info(f"🗑️ Deleted import {import_id}")


def cleanup_expired_imports(db: Session, storage: ObjectStorage = None, now: datetime = None) -> int:
    """Purge imports that never completed and are past their retention window."""
    storage = storage or get_storage()
    now = now or utcnow()
    expired = (
        db.query(StatementImport)
        .filter(
            StatementImport.status != ImportStatus.COMPLETED.value,
            StatementImport.expires_at < now,
        )
        .all()
    )
    keys = [imp.file_path for imp in expired]
    for imp in expired:
        db.delete(imp)
    db.commit()
    for key in keys:
        _delete_object(storage, key)
    if expired:
        logger.info(f"🧹 Removed {len(expired)} expired imports")
    return len(expired)
