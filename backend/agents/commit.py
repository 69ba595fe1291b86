"""
Commit Agent — converts the reviewed selection into ledger rows.

The selection is either the explicit list the caller sends (ids plus optional
category overrides) or, when none is sent, every candidate still marked
selected.  Inserts go through the batch writer so the reported count is the
number of rows that really landed.  Confirmed categories are fed back into the
keyword mappings, then the import's candidates are removed.
"""
from __future__ import annotations

import logging
import re
import uuid
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from agents.base import BaseAgent
from agents.categorization import upsert_keyword_mapping
from config import settings
from errors import CommitError, ValidationError
from models import CandidateTransaction, Category, Expense, StatementImport
from services.batch_writer import insert_with_fallback

logger = logging.getLogger("StatementImporter.Agent.Commit")

SKIP_WORDS = {"the", "and", "for", "from", "upi", "neft", "imps", "rtgs", "transfer", "payment", "ref", "txn"}
MAX_LEARNED_TOKENS = 3


def extract_keywords(description: str) -> List[str]:
    """Up to three lowercase tokens (3-20 chars, no stop words) for learning."""
    tokens = re.split(r"[\s/\\\-_.,:;|*#@()\[\]]+", (description or "").lower())
    keywords = []
    for token in tokens:
        if 3 <= len(token) <= 20 and token not in SKIP_WORDS and not token.isdigit():
            if token not in keywords:
                keywords.append(token)
        if len(keywords) == MAX_LEARNED_TOKENS:
            break
    return keywords


def _is_uuid(value) -> bool:
    try:
        uuid.UUID(str(value))
        return True
    except ValueError:
        return False


class CommitAgent(BaseAgent):
    name = "commit"

    def run(
        self,
        statement_import: StatementImport,
        db: Session,
        selection: Optional[List[Dict]] = None,
        **kwargs,
    ) -> dict:
        logger.info(f"Commit agent running for import {statement_import.id}")
        chosen = self._resolve_selection(db, statement_import, selection)

        entries = []
        for tx, category_id in chosen:
            entries.append(Expense(
                user_id=statement_import.user_id,
                category_id=category_id,
                amount=abs(tx.amount),
                date=tx.transaction_date,
                payment_method=settings.IMPORTED_PAYMENT_METHOD,
                note=(tx.description or "")[:settings.NOTE_MAX_LENGTH],
                is_draft=False,
            ))

        persisted, failed = insert_with_fallback(db, entries, label="ledger rows")
        if not persisted:
            raise CommitError()

        learned = 0
        for entry in persisted:
            if not entry.category_id:
                continue
            for keyword in extract_keywords(entry.note):
                if upsert_keyword_mapping(db, statement_import.user_id, keyword, entry.category_id):
                    learned += 1

        removed = (
            db.query(CandidateTransaction)
            .filter(CandidateTransaction.import_id == statement_import.id)
            .delete(synchronize_session=False)
        )
        month_count = len({(e.date.year, e.date.month) for e in persisted})

        return {
            "results": {
                "imported_count": len(persisted),
                "failed_count": len(failed),
                "month_count": month_count,
                "learned_keywords": learned,
                "candidates_removed": removed,
            },
            "summary": (
                f"{len(persisted)}/{len(entries)} rows imported across {month_count} month(s), "
                f"{learned} keyword reinforcements"
            ),
        }

    def _resolve_selection(self, db: Session, statement_import: StatementImport, selection):
        """Return ``[(candidate, final_category_id)]`` in statement order."""
        base = db.query(CandidateTransaction).filter(
            CandidateTransaction.import_id == statement_import.id,
            CandidateTransaction.user_id == statement_import.user_id,
        )

        if selection is None:
            rows = (
                base.filter(CandidateTransaction.is_selected.is_(True))
                .order_by(CandidateTransaction.transaction_date, CandidateTransaction.created_at)
                .all()
            )
            if not rows:
                raise ValidationError("No transactions selected")
            return [(tx, tx.suggested_category_id) for tx in rows]

        if not selection:
            raise ValidationError("No transactions selected")
        if len(selection) > settings.MAX_COMMIT_TRANSACTIONS:
            raise ValidationError(
                f"Too many transactions (max {settings.MAX_COMMIT_TRANSACTIONS})"
            )

        overrides = {}
        for item in selection:
            tx_id = item.get("id")
            if not _is_uuid(tx_id):
                raise ValidationError("Invalid transaction ID format")
            category_id = item.get("category_id")
            if category_id is not None and not _is_uuid(category_id):
                raise ValidationError("Invalid category ID format")
            overrides[str(tx_id)] = category_id

        rows = base.filter(CandidateTransaction.id.in_(list(overrides))).all()
        if len(rows) != len(overrides):
            raise ValidationError("Some transactions do not belong to this import")

        requested_categories = {c for c in overrides.values() if c}
        if requested_categories:
            owned = {
                c.id for c in db.query(Category.id).filter(
                    Category.user_id == statement_import.user_id,
                    Category.id.in_(list(requested_categories)),
                )
            }
            if owned != requested_categories:
                raise ValidationError("Unknown category")

        rows.sort(key=lambda tx: tx.transaction_date)
        return [(tx, overrides[tx.id] or tx.suggested_category_id) for tx in rows]
