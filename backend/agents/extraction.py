"""
Extraction Agent — turns a (decrypted) statement PDF into raw transaction rows.

Strategy:
1. Split the document into sequential page-range units (PAGES_PER_CHUNK pages each)
2. Extract each unit's text with pdfplumber, OCR through the vision model if empty
3. Detect the bank on the first unit with text and strip its page noise
4. Send each unit to the LLM, one at a time, with a fixed delay between calls
5. Retry rate limits (with backoff) and timeouts; stop everything on quota exhaustion
6. Merge metadata across units and drop rows repeated at chunk boundaries
"""
from __future__ import annotations

import json
import logging
import re
import time
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from agents.base import BaseAgent
from config import settings
from errors import (
    ExtractionError, ExtractionErrorKind, InferenceServiceError, ServiceFailure,
)
from models import StatementImport
from services.bank_profiles import DEFAULT_PROFILE_ID, clean_text, detect_bank, get_profile
from services.llm_client import chat_completion
from services.pdf_processor import extract_full_text, get_page_count, ocr_all_pages, split_into_chunks

logger = logging.getLogger("StatementImporter.Agent.Extraction")


# ─── LLM Prompt ───────────────────────────────────────────────────────────────

EXTRACTION_PROMPT = """You are a bank statement parser. Extract ALL transactions from the provided bank statement text.

For each transaction extract:
- date: Transaction date in YYYY-MM-DD format
- description: The narration/description
- amount: Numeric amount (positive number, no currency symbols)
- type: "debit" for expenses/money out, "credit" for income/money in
- balance: Balance after transaction if shown, otherwise null

Also identify:
- bankName: Bank name (e.g. SBI, HDFC, ICICI, Axis, Indian Bank, etc.)
- periodStart: Statement start date YYYY-MM-DD (or null)
- periodEnd: Statement end date YYYY-MM-DD (or null)

Return ONLY valid JSON, NO markdown fences, NO extra text:
{
  "bankName": "string",
  "periodStart": "YYYY-MM-DD or null",
  "periodEnd": "YYYY-MM-DD or null",
  "transactions": [
    { "date": "YYYY-MM-DD", "description": "string", "amount": 123.45, "type": "debit", "balance": null }
  ]
}

If no transactions found, return: {"error": "no_transactions", "transactions": []}
Include both debit and credit transactions. Extract EVERY transaction — do not skip any."""

FULL_DOCUMENT_INSTRUCTION = "Extract all transactions from this bank statement."
CHUNK_INSTRUCTION = (
    "Extract ALL transactions from this page/section of the bank statement. "
    "Return them as JSON."
)

_SERVICE_TO_EXTRACTION = {
    ServiceFailure.RATE_LIMITED: ExtractionErrorKind.RATE_LIMITED,
    ServiceFailure.TIMEOUT: ExtractionErrorKind.TIMEOUT,
    ServiceFailure.QUOTA_EXHAUSTED: ExtractionErrorKind.QUOTA_EXHAUSTED,
    ServiceFailure.EMPTY_RESPONSE: ExtractionErrorKind.EMPTY_RESPONSE,
    ServiceFailure.UNAVAILABLE: ExtractionErrorKind.SERVICE_UNAVAILABLE,
}


# ─── Helpers ──────────────────────────────────────────────────────────────────

def _parse_llm_json(response: str) -> dict:
    """Robustly parse the LLM reply into ``{..., "transactions": [...]}``.

    Tries, in order: the raw text, the contents of a markdown fence, the
    outermost ``{...}`` and the outermost ``[...]`` (wrapped as transactions).
    """
    candidates = [response.strip()]
    fence = re.search(r"```(?:json)?\s*([\s\S]*?)```", response)
    if fence:
        candidates.append(fence.group(1).strip())
    start, end = response.find("{"), response.rfind("}")
    if start != -1 and end > start:
        candidates.append(response[start:end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, list):
            return {"transactions": parsed}
        if isinstance(parsed, dict):
            if parsed.get("transactions") is None:
                parsed["transactions"] = []
            if not isinstance(parsed["transactions"], list):
                raise ExtractionError(ExtractionErrorKind.UNPARSEABLE_RESPONSE)
            return parsed

    start, end = response.find("["), response.rfind("]")
    if start != -1 and end > start:
        try:
            return {"transactions": json.loads(response[start:end + 1])}
        except ValueError:
            pass
    raise ExtractionError(ExtractionErrorKind.UNPARSEABLE_RESPONSE)


def _dedup_key(txn: Dict) -> str:
    """(date, amount to the cent, first N description chars)."""
    amount = txn.get("amount")
    try:
        amount_key = f"{abs(float(amount)):.2f}"
    except (TypeError, ValueError):
        amount_key = str(amount)
    desc = str(txn.get("description") or "")[:settings.DEDUP_DESCRIPTION_CHARS]
    return f"{txn.get('date')}_{amount_key}_{desc}"


def _deduplicate_transactions(transactions: List[Dict]) -> List[Dict]:
    """Remove rows double-extracted at chunk boundaries, keeping the first."""
    seen = set()
    unique = []
    for t in transactions:
        key = _dedup_key(t)
        if key in seen:
            continue
        seen.add(key)
        unique.append(t)
    removed = len(transactions) - len(unique)
    if removed:
        logger.info(f"  🔄 Deduplication removed {removed} repeated rows")
    return unique


# ─── Agent ────────────────────────────────────────────────────────────────────

class ExtractionAgent(BaseAgent):
    name = "extraction"

    def __init__(self, pages_per_chunk: int = None, sleep: Callable[[float], None] = time.sleep):
        self.pages_per_chunk = pages_per_chunk or settings.PAGES_PER_CHUNK
        self.sleep = sleep

    def run(
        self,
        statement_import: StatementImport,
        db: Session,
        content: bytes = b"",
        on_progress: Optional[Callable[[str], None]] = None,
        **kwargs,
    ) -> dict:
        logger.info(f"Extraction agent running for import {statement_import.id}")

        total_pages = get_page_count(content)
        units = self._build_units(content, total_pages)
        is_chunked = len(units) > 1
        logger.info(f"  📄 {total_pages} pages → {len(units)} extraction unit(s)")

        bank_id = DEFAULT_PROFILE_ID
        bank_name = period_start = period_end = None
        all_transactions: List[Dict] = []
        unit_failures: List[ExtractionErrorKind] = []
        units_called = 0
        quota_exhausted = False

        for idx, unit in enumerate(units):
            if idx > 0 and settings.CHUNK_DELAY_SECONDS:
                self.sleep(settings.CHUNK_DELAY_SECONDS)
            if on_progress:
                on_progress(
                    f"Processing page {unit['start_page']}-{unit['end_page']} of {total_pages}..."
                )

            try:
                text = self._unit_text(unit)
            except ExtractionError as e:
                unit_failures.append(e.kind)
                if e.kind == ExtractionErrorKind.QUOTA_EXHAUSTED:
                    quota_exhausted = True
                    break
                continue
            if not text:
                logger.warning(f"  ⚠️ Pages {unit['start_page']}-{unit['end_page']}: no text, skipping")
                continue

            if bank_id == DEFAULT_PROFILE_ID:
                bank_id = detect_bank(text)
            text = clean_text(text, bank_id)

            units_called += 1
            try:
                parsed = self._extract_unit(text, bank_id, is_chunked)
            except ExtractionError as e:
                logger.warning(
                    f"  ⚠️ Pages {unit['start_page']}-{unit['end_page']} failed: {e.kind.value}"
                )
                unit_failures.append(e.kind)
                if e.kind == ExtractionErrorKind.QUOTA_EXHAUSTED:
                    logger.error("  🛑 Quota exhausted, aborting remaining units")
                    quota_exhausted = True
                    break
                continue

            bank_name = bank_name or parsed.get("bankName")
            period_start = period_start or parsed.get("periodStart")
            if parsed.get("periodEnd"):
                period_end = parsed["periodEnd"]
            rows = [t for t in parsed["transactions"] if isinstance(t, dict)]
            logger.info(f"  ✅ Pages {unit['start_page']}-{unit['end_page']}: {len(rows)} transactions")
            all_transactions.extend(rows)

        transactions = _deduplicate_transactions(all_transactions)
        if not bank_name and bank_id != DEFAULT_PROFILE_ID:
            bank_name = get_profile(bank_id).display_name

        return {
            "results": {
                "bank_name": bank_name,
                "period_start": period_start,
                "period_end": period_end,
                "transactions": transactions,
                "total_pages": total_pages,
                "units": len(units),
                "units_called": units_called,
                "unit_failures": unit_failures,
                "quota_exhausted": quota_exhausted,
            },
            "summary": (
                f"{len(transactions)} transactions from {total_pages} pages "
                f"({len(units)} units, {len(unit_failures)} failed)"
            ),
        }

    # ── Units ──

    def _build_units(self, content: bytes, total_pages: int) -> List[Dict]:
        if total_pages <= self.pages_per_chunk:
            return [{"start_page": 1, "end_page": max(total_pages, 1), "content": content}]
        try:
            return split_into_chunks(content, self.pages_per_chunk)
        except Exception as e:
            logger.warning(f"  ⚠️ Page split failed ({e}), sending whole document as one unit")
            return [{"start_page": 1, "end_page": total_pages, "content": content}]

    def _unit_text(self, unit: Dict) -> str:
        try:
            text = extract_full_text(unit["content"])
        except Exception as e:
            logger.warning(f"  ⚠️ Text extraction failed for pages {unit['start_page']}-{unit['end_page']}: {e}")
            text = ""
        if text or not settings.OCR_FALLBACK_ENABLED:
            return text

        logger.info("  🔍 No text layer, running OCR via vision model...")
        return self._call_with_retries(lambda: ocr_all_pages(unit["content"]))

    def _extract_unit(self, text: str, bank_id: str, is_chunked: bool) -> dict:
        """One LLM call per unit."""
        system_prompt = EXTRACTION_PROMPT
        hint = get_profile(bank_id).prompt_hint
        if hint:
            system_prompt += f"\n\nStatement layout hint: {hint}"
        instruction = CHUNK_INSTRUCTION if is_chunked else FULL_DOCUMENT_INSTRUCTION
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": f"{instruction}\n\n{text}"},
        ]
        response = self._call_with_retries(lambda: chat_completion(
            messages=messages,
            temperature=0.1,
            max_tokens=16000,
            timeout=settings.EXTRACTION_TIMEOUT_SECONDS,
        ))
        return _parse_llm_json(response)

    def _call_with_retries(self, call: Callable[[], str]) -> str:
        """Run one service call under the rate-limit/timeout retry policy."""
        rate_limit_retries = 0
        timeout_retries = 0
        while True:
            try:
                return call()
            except InferenceServiceError as e:
                if e.kind == ServiceFailure.RATE_LIMITED and rate_limit_retries < settings.RATE_LIMIT_RETRIES:
                    rate_limit_retries += 1
                    wait = settings.RATE_LIMIT_BACKOFF_SECONDS * rate_limit_retries
                    logger.warning(f"  ⏳ Rate limited, retry {rate_limit_retries} in {wait}s")
                    self.sleep(wait)
                    continue
                if e.kind == ServiceFailure.TIMEOUT and timeout_retries < settings.TIMEOUT_RETRIES:
                    timeout_retries += 1
                    logger.warning("  ⏳ Timed out, retrying once")
                    continue
                raise ExtractionError(_SERVICE_TO_EXTRACTION[e.kind]) from e
