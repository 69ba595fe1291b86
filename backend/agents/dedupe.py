"""
Dedupe Agent — validates extracted rows, flags ones already in the ledger and
persists the survivors as candidate transactions.
"""
from __future__ import annotations

import json
import logging
import re
from collections import defaultdict
from datetime import date, datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from agents.base import BaseAgent
from config import settings
from errors import PersistenceError
from models import CandidateTransaction, Expense, StatementImport, TransactionType
from services.batch_writer import insert_with_fallback

logger = logging.getLogger("StatementImporter.Agent.Dedupe")

UNKNOWN_DESCRIPTION = "Unknown transaction"

_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%d %b %Y", "%d-%b-%Y", "%d/%m/%y")


def parse_date(value) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not value or not isinstance(value, str):
        return None
    value = value.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    return None


def parse_amount(value) -> Optional[float]:
    """'₹1,943.69' → 1943.69. Returns None for anything non-numeric."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not value or not isinstance(value, str):
        return None
    cleaned = re.sub(r"[^\d.\-()]", "", value)
    if cleaned.startswith("(") and cleaned.endswith(")"):
        cleaned = "-" + cleaned[1:-1]
    try:
        return float(cleaned)
    except ValueError:
        return None


def normalize_transactions(raw_rows: List[Dict]) -> List[Dict]:
    """Drop rows without a usable date or amount and coerce the rest.

    The amount becomes a positive magnitude; direction lives in
    ``transaction_type``, which is ``credit`` only when the row says so.
    """
    rows = []
    dropped = 0
    for raw in raw_rows:
        txn_date = parse_date(raw.get("date"))
        amount = parse_amount(raw.get("amount"))
        if txn_date is None or amount is None:
            dropped += 1
            continue
        description = str(raw.get("description") or "").strip() or UNKNOWN_DESCRIPTION
        txn_type = str(raw.get("type") or "").lower()
        rows.append({
            "transaction_date": txn_date,
            "description": description[:settings.NOTE_MAX_LENGTH],
            "amount": abs(amount),
            "transaction_type": (
                TransactionType.CREDIT.value if txn_type == TransactionType.CREDIT.value
                else TransactionType.DEBIT.value
            ),
            "balance": parse_amount(raw.get("balance")),
            "raw_text": json.dumps(raw, default=str),
        })
    if dropped:
        logger.warning(f"  ⚠️ Dropped {dropped} rows missing a date or amount")
    return rows


class DedupeAgent(BaseAgent):
    name = "dedupe"

    def run(self, statement_import: StatementImport, db: Session, rows: List[Dict] = None, **kwargs) -> dict:
        rows = rows or []
        logger.info(f"Dedupe agent running for import {statement_import.id} ({len(rows)} rows)")

        ledger = self._ledger_by_date(db, statement_import.user_id, {r["transaction_date"] for r in rows})

        candidates = []
        duplicates = 0
        for row in rows:
            match = self._find_duplicate(ledger.get(row["transaction_date"], []), row["amount"])
            candidates.append(CandidateTransaction(
                import_id=statement_import.id,
                user_id=statement_import.user_id,
                is_duplicate=match is not None,
                duplicate_of=match.id if match else None,
                is_selected=match is None,
                **row,
            ))
            if match:
                duplicates += 1

        persisted, failed = insert_with_fallback(db, candidates, label="candidates")
        if not persisted:
            raise PersistenceError()

        return {
            "results": {
                "persisted": len(persisted),
                "failed": len(failed),
                "duplicates": sum(1 for c in persisted if c.is_duplicate),
            },
            "summary": f"{len(persisted)} candidates saved, {duplicates} already in ledger, {len(failed)} failed",
        }

    @staticmethod
    def _ledger_by_date(db: Session, user_id: str, dates) -> Dict[date, List[Expense]]:
        by_date = defaultdict(list)
        if not dates:
            return by_date
        existing = (
            db.query(Expense)
            .filter(Expense.user_id == user_id, Expense.date.in_(list(dates)))
            .all()
        )
        for e in existing:
            by_date[e.date].append(e)
        return by_date

    @staticmethod
    def _find_duplicate(same_day: List[Expense], amount: float) -> Optional[Expense]:
        for e in same_day:
            if abs(float(e.amount) - abs(amount)) < settings.DUPLICATE_AMOUNT_EPSILON:
                return e
        return None
