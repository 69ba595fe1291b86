"""
Categorization Agent — suggests a spending category for every candidate.

1. Fast path: the owner's learned keyword mappings (most used first); the
   first keyword found in the description wins with a fixed confidence.
2. Slow path: the rest go to the LLM in batches together with the owner's
   category list.  The LLM may also propose new categories; those are only
   surfaced to the caller, never created.
3. Every AI assignment with a usable keyword reinforces the mapping table.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agents.base import BaseAgent
from config import settings
from errors import CategorizationError, InferenceServiceError, ServiceFailure
from models import CandidateTransaction, Category, KeywordMapping, StatementImport
from services.llm_client import chat_completion

logger = logging.getLogger("StatementImporter.Agent.Categorization")

DEFAULT_ICON = "tag"
DEFAULT_COLOR = "#3B82F6"
MIN_KEYWORD_LENGTH = 3
MAX_KEYWORD_LENGTH = 50

_ICON_HINT = (
    "Use common finance icons: utensils, car, shopping-bag, receipt, home, heart-pulse, "
    "graduation-cap, plane, gift, fuel, wifi, phone, briefcase, etc."
)
_COLOR_HINT = "Use vibrant colors like: #F97316, #3B82F6, #EC4899, #8B5CF6, #10B981, #06B6D4, #EF4444, #F59E0B"


# ─── LLM Prompts ──────────────────────────────────────────────────────────────

CATEGORIZE_PROMPT = """You are an expense categorization assistant. Categorize each transaction into ONE of the available categories.

Available categories:
{category_list}

Respond with a JSON object:
{{
  "categorizations": [
    {{
      "transaction_id": "the id",
      "category_id": "id of best matching category, or null if no good match",
      "confidence": 0.1-1.0,
      "keyword": "short keyword from description for learning",
      "needs_new_category": false,
      "suggested_category": null
    }}
  ],
  "new_category_suggestions": [
    {{"name": "Category Name", "icon": "icon-name", "color": "#HEX", "for_transactions": ["tx_id1"]}}
  ]
}}

If a transaction doesn't fit any existing category well, set needs_new_category: true and suggest a new category.
{icon_hint}
{color_hint}
Focus on Indian payment patterns: UPI, NEFT/IMPS, Swiggy, Zomato, Uber, Ola, utility bills, EMI.
Return ONLY valid JSON."""

SUGGEST_PROMPT = """You are an expense categorization assistant. The user has no categories yet, so suggest appropriate categories for their transactions.

Respond with a JSON object:
{{
  "categorizations": [
    {{
      "transaction_id": "the id",
      "category_id": null,
      "confidence": 0,
      "keyword": "short keyword",
      "needs_new_category": true,
      "suggested_category": {{"name": "Category Name", "icon": "icon-name", "color": "#HEX"}}
    }}
  ],
  "new_category_suggestions": [
    {{"name": "Category Name", "icon": "icon-name", "color": "#HEX", "for_transactions": ["tx_id1"]}}
  ]
}}

{icon_hint}
{color_hint}
Return ONLY valid JSON."""


# ─── Keyword mappings ─────────────────────────────────────────────────────────

def normalize_keyword(keyword: Optional[str]) -> Optional[str]:
    keyword = (keyword or "").strip().lower()[:MAX_KEYWORD_LENGTH]
    return keyword if len(keyword) >= MIN_KEYWORD_LENGTH else None


def upsert_keyword_mapping(db: Session, user_id: str, keyword: str, category_id: str) -> bool:
    """Point ``keyword`` at ``category_id`` and bump its usage count.

    Best-effort: runs in its own SAVEPOINT and returns False instead of
    raising, so a learning failure never fails the calling stage.
    """
    keyword = normalize_keyword(keyword)
    if not keyword or not category_id:
        return False
    try:
        with db.begin_nested():
            mapping = (
                db.query(KeywordMapping)
                .filter(KeywordMapping.user_id == user_id, KeywordMapping.keyword == keyword)
                .first()
            )
            if mapping:
                mapping.category_id = category_id
                mapping.usage_count = (mapping.usage_count or 0) + 1
            else:
                db.add(KeywordMapping(
                    user_id=user_id, keyword=keyword, category_id=category_id, usage_count=1,
                ))
        return True
    except SQLAlchemyError as e:
        logger.warning(f"  ⚠️ Could not learn keyword '{keyword}': {e}")
        return False


def match_keyword(description: str, mappings: List[KeywordMapping]) -> Optional[KeywordMapping]:
    """First mapping whose keyword occurs in ``description`` (case-insensitive)."""
    desc_lower = (description or "").lower()
    for mapping in mappings:
        if mapping.keyword and mapping.keyword.lower() in desc_lower:
            return mapping
    return None


def load_mappings(db: Session, user_id: str) -> List[KeywordMapping]:
    return (
        db.query(KeywordMapping)
        .filter(KeywordMapping.user_id == user_id)
        .order_by(KeywordMapping.usage_count.desc(), KeywordMapping.keyword.asc())
        .all()
    )


# ─── Helpers ──────────────────────────────────────────────────────────────────

def _clamp_confidence(value) -> float:
    try:
        conf = float(value) if value else 0.5
    except (TypeError, ValueError):
        conf = 0.5
    return min(max(conf, 0.1), 1.0)


def _parse_categorization_json(response: str) -> dict:
    fence = re.search(r"```(?:json)?\s*([\s\S]*?)```", response)
    text = fence.group(1) if fence else response
    try:
        parsed = json.loads(text.strip())
    except ValueError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise CategorizationError("Unparseable categorization response")
        try:
            parsed = json.loads(text[start:end + 1])
        except ValueError as e:
            raise CategorizationError("Unparseable categorization response") from e
    if not isinstance(parsed, dict):
        raise CategorizationError("Unexpected categorization response shape")
    for key in ("categorizations", "new_category_suggestions"):
        if parsed.get(key) is not None and not isinstance(parsed[key], list):
            raise CategorizationError(f"Unexpected categorization response shape: {key}")
    return parsed


def _str_or_none(value) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _add_suggestion(suggestions: List[Dict], raw) -> None:
    """Collect a new-category suggestion, unique by name (case-insensitive)."""
    if not isinstance(raw, dict):
        return
    name = str(raw.get("name") or "").strip()
    if not name or any(s["name"].lower() == name.lower() for s in suggestions):
        return
    suggestions.append({
        "name": name,
        "icon": _str_or_none(raw.get("icon")) or DEFAULT_ICON,
        "color": _str_or_none(raw.get("color")) or DEFAULT_COLOR,
    })


# ─── Agent ────────────────────────────────────────────────────────────────────

class CategorizationAgent(BaseAgent):
    name = "categorization"

    def __init__(self, batch_size: int = None):
        self.batch_size = batch_size or settings.CATEGORIZE_BATCH_SIZE

    def run(self, statement_import: StatementImport, db: Session, **kwargs) -> dict:
        user_id = statement_import.user_id
        logger.info(f"Categorization agent running for import {statement_import.id}")

        candidates = (
            db.query(CandidateTransaction)
            .filter(
                CandidateTransaction.import_id == statement_import.id,
                CandidateTransaction.user_id == user_id,
            )
            .order_by(CandidateTransaction.transaction_date, CandidateTransaction.created_at)
            .all()
        )
        categories = db.query(Category).filter(Category.user_id == user_id).order_by(Category.name).all()
        mappings = load_mappings(db, user_id)

        # Pass 1: learned mappings
        unmatched = []
        learned_matches = 0
        for tx in candidates:
            mapping = match_keyword(tx.description, mappings)
            if mapping:
                tx.suggested_category_id = mapping.category_id
                tx.ai_confidence = settings.LEARNED_MATCH_CONFIDENCE
                learned_matches += 1
            else:
                unmatched.append(tx)
        logger.info(f"  🧠 {learned_matches} matched via learned keywords, {len(unmatched)} need AI")

        # Pass 2: AI in batches
        suggestions: List[Dict] = []
        category_ids = {c.id for c in categories}
        ai_batches = failed_batches = 0
        for start in range(0, len(unmatched), self.batch_size):
            batch = unmatched[start:start + self.batch_size]
            try:
                result = self._categorize_batch(batch, categories)
            except InferenceServiceError as e:
                failed_batches += 1
                logger.error(f"  ❌ Categorization batch {start // self.batch_size + 1} failed: {e}")
                if e.kind == ServiceFailure.QUOTA_EXHAUSTED:
                    logger.error("  🛑 Quota exhausted, leaving remaining transactions uncategorized")
                    break
                continue
            except CategorizationError as e:
                failed_batches += 1
                logger.error(f"  ❌ Categorization batch {start // self.batch_size + 1} failed: {e.message}")
                continue
            ai_batches += 1
            self._apply_batch(db, batch, result, category_ids, user_id, suggestions)

        db.flush()

        categorized = [tx for tx in candidates if tx.suggested_category_id]
        total_conf = sum(tx.ai_confidence or 0 for tx in categorized)
        avg_confidence = round(total_conf / len(categorized) * 100) if categorized else 0

        return {
            "results": {
                "total_transactions": len(candidates),
                "categorized_count": len(categorized),
                "avg_confidence": avg_confidence,
                "suggested_categories": suggestions,
                "learned_matches": learned_matches,
                "ai_batches": ai_batches,
                "failed_batches": failed_batches,
            },
            "summary": (
                f"{len(categorized)}/{len(candidates)} categorized "
                f"(avg confidence {avg_confidence}%), {len(suggestions)} new category suggestions"
            ),
        }

    def _categorize_batch(self, batch: List[CandidateTransaction], categories: List[Category]) -> dict:
        if categories:
            category_list = "\n".join(f"- {c.name} (id: {c.id})" for c in categories)
            system_prompt = CATEGORIZE_PROMPT.format(
                category_list=category_list, icon_hint=_ICON_HINT, color_hint=_COLOR_HINT,
            )
        else:
            system_prompt = SUGGEST_PROMPT.format(icon_hint=_ICON_HINT, color_hint=_COLOR_HINT)

        transaction_list = "\n".join(
            f'{i + 1}. "{tx.description}" (id: {tx.id})' for i, tx in enumerate(batch)
        )
        response = chat_completion(
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": f"Categorize these transactions:\n{transaction_list}"},
            ],
            temperature=0.2,
            max_tokens=3000,
            timeout=settings.CATEGORIZATION_TIMEOUT_SECONDS,
        )
        return _parse_categorization_json(response)

    def _apply_batch(self, db, batch, result, category_ids, user_id, suggestions) -> None:
        by_id = {tx.id: tx for tx in batch}
        for entry in result.get("categorizations") or []:
            if not isinstance(entry, dict):
                continue
            tx = by_id.get(_str_or_none(entry.get("transaction_id")))
            if tx is None:
                continue
            category_id = _str_or_none(entry.get("category_id"))
            if category_id not in category_ids:
                category_id = None
            tx.suggested_category_id = category_id
            tx.ai_confidence = _clamp_confidence(entry.get("confidence"))
            if category_id:
                upsert_keyword_mapping(db, user_id, _str_or_none(entry.get("keyword")), category_id)
            if entry.get("needs_new_category"):
                _add_suggestion(suggestions, entry.get("suggested_category"))

        for raw in result.get("new_category_suggestions") or []:
            _add_suggestion(suggestions, raw)
