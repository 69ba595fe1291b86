import logging
from fastapi import APIRouter, UploadFile, File, Depends
from sqlalchemy.orm import Session
from database import get_db
from errors import NotFoundError, ValidationError
from models import CandidateTransaction, Category, ImportStatus, StatementImport, User
from schemas import (
    CandidateTransactionResponse, CandidateTransactionUpdate,
    CategorizeRequest, CategorizeResponse, CommitRequest, CommitResponse,
    ExtractRequest, ExtractResponse, ImportResponse, UploadResponse,
)
from config import settings
from routers.auth import get_current_user_dep
from services.storage import ObjectStorage, build_object_key, compute_file_hash, get_storage
import orchestrator

logger = logging.getLogger("StatementImporter.Imports")

router = APIRouter()

PDF_CONTENT_TYPES = {"application/pdf", "application/x-pdf"}


@router.post("/imports/upload", response_model=UploadResponse, status_code=201)
async def upload_statement(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
    current_user: User = Depends(get_current_user_dep),
):
    """Upload one PDF statement and open an import for it."""
    filename = file.filename or "statement.pdf"
    if file.content_type not in PDF_CONTENT_TYPES and not filename.lower().endswith(".pdf"):
        raise ValidationError(f"Only PDF files are supported. Got: {filename}")

    content = await file.read()
    file_size = len(content)
    if not file_size:
        raise ValidationError("Uploaded file is empty")
    if file_size > settings.MAX_FILE_SIZE_MB * 1024 * 1024:
        raise ValidationError(f"File exceeds {settings.MAX_FILE_SIZE_MB}MB limit")

    key = build_object_key(current_user.id, filename)
    storage.upload(key, content)

    imp = StatementImport(
        user_id=current_user.id,
        file_name=filename,
        file_path=key,
        file_size=file_size,
        file_hash=compute_file_hash(content),
        status=ImportStatus.PENDING.value,
    )
    db.add(imp)
    db.commit()
    db.refresh(imp)

    logger.info(f"Uploaded {filename} ({file_size} bytes) as import {imp.id}")
    return UploadResponse(import_id=imp.id, status=imp.status, file_name=imp.file_name, file_size=file_size)


@router.post("/imports/extract", response_model=ExtractResponse, response_model_exclude_none=True)
def extract_transactions(
    body: ExtractRequest,
    db: Session = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
    current_user: User = Depends(get_current_user_dep),
):
    """Unlock (if needed) and extract candidate transactions from an upload."""
    result = orchestrator.run_extraction(
        db, body.import_id, current_user.id, password=body.password, storage=storage,
    )
    return ExtractResponse(**result)


@router.post("/imports/categorize", response_model=CategorizeResponse)
def categorize_transactions(
    body: CategorizeRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user_dep),
):
    """Suggest categories for every candidate of an import."""
    result = orchestrator.run_categorization(db, body.import_id, current_user.id)
    return CategorizeResponse(**result)


@router.post("/imports/commit", response_model=CommitResponse)
def commit_transactions(
    body: CommitRequest,
    db: Session = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
    current_user: User = Depends(get_current_user_dep),
):
    """Write the reviewed selection into the ledger and close the import."""
    selection = None
    if body.transactions is not None:
        selection = [t.model_dump() for t in body.transactions]
    result = orchestrator.run_commit(
        db, body.import_id, current_user.id, transactions=selection, storage=storage,
    )
    return CommitResponse(**result)


@router.get("/imports", response_model=list[ImportResponse])
def list_imports(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user_dep),
):
    """List all imports for the current user, newest first."""
    imports = (
        db.query(StatementImport)
        .filter(StatementImport.user_id == current_user.id)
        .order_by(StatementImport.created_at.desc())
        .all()
    )
    return [ImportResponse.model_validate(i) for i in imports]


@router.get("/imports/{import_id}", response_model=ImportResponse)
def get_import(
    import_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user_dep),
):
    """Status poll for one import."""
    imp = orchestrator.get_owned_import(db, import_id, current_user.id)
    return ImportResponse.model_validate(imp)


@router.get("/imports/{import_id}/transactions", response_model=list[CandidateTransactionResponse])
def list_candidates(
    import_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user_dep),
):
    """Candidate rows of an import, in statement order, for review."""
    imp = orchestrator.get_owned_import(db, import_id, current_user.id)
    rows = (
        db.query(CandidateTransaction)
        .filter(CandidateTransaction.import_id == imp.id)
        .order_by(CandidateTransaction.transaction_date, CandidateTransaction.created_at)
        .all()
    )
    return [CandidateTransactionResponse.model_validate(r) for r in rows]


@router.patch(
    "/imports/{import_id}/transactions/{transaction_id}",
    response_model=CandidateTransactionResponse,
)
def update_candidate(
    import_id: str,
    transaction_id: str,
    body: CandidateTransactionUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user_dep),
):
    """Toggle selection or change the suggested category while reviewing."""
    imp = orchestrator.get_owned_import(db, import_id, current_user.id)
    if imp.status not in orchestrator.REVIEWABLE_STATUSES:
        raise ValidationError(f"Import cannot be edited while {imp.status}")

    tx = (
        db.query(CandidateTransaction)
        .filter(CandidateTransaction.id == transaction_id, CandidateTransaction.import_id == imp.id)
        .first()
    )
    if not tx:
        raise NotFoundError("Transaction not found")

    if body.is_selected is not None:
        tx.is_selected = body.is_selected
    if "suggested_category_id" in body.model_fields_set:
        category_id = body.suggested_category_id
        if category_id:
            owned = (
                db.query(Category.id)
                .filter(Category.id == category_id, Category.user_id == current_user.id)
                .first()
            )
            if not owned:
                raise ValidationError("Unknown category")
        tx.suggested_category_id = category_id or None
    db.commit()
    db.refresh(tx)
    return CandidateTransactionResponse.model_validate(tx)


@router.delete("/imports/{import_id}")
def delete_import(
    import_id: str,
    db: Session = Depends(get_db),
    storage: ObjectStorage = Depends(get_storage),
    current_user: User = Depends(get_current_user_dep),
):
    """Cancel an import: removes the record, its candidates and the stored file."""
    orchestrator.delete_import(db, import_id, current_user.id, storage=storage)
    return {"success": True, "message": "Import deleted"}
