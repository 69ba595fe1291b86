"""
Bank profile registry.

Maps a detected bank id to the hints the extraction stage needs: how to
recognise the bank from statement text, which repeated header/footer lines to
strip before sending text to the LLM, and an optional prompt hint describing
the bank's column layout.  Unknown banks resolve to the ``_default`` entry.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Tuple

logger = logging.getLogger("StatementImporter.BankProfiles")

DEFAULT_PROFILE_ID = "_default"


@dataclass(frozen=True)
class BankProfile:
    display_name: str
    identifiers: Tuple[str, ...] = ()
    noise_patterns: Tuple[str, ...] = ()
    prompt_hint: str = ""


_COMMON_NOISE = (
    r"Page \d+\s*/\s*\d+",
    r"Page \d+ of \d+",
    r"This is a (?:computer|system) generated statement.*",
)

BANK_PROFILES: Dict[str, BankProfile] = {
    "SBI": BankProfile(
        display_name="State Bank of India",
        identifiers=("State Bank of India", "SBI"),
        noise_patterns=(r"Please do not share your ATM.*", r"Visit www\.onlinesbi\..*"),
        prompt_hint=(
            "SBI columns are Txn Date | Value Date | Description | Ref No./Cheque No. "
            "| Debit | Credit | Balance. Use Txn Date as the transaction date."
        ),
    ),
    "HDFC": BankProfile(
        display_name="HDFC Bank",
        identifiers=("HDFC Bank", "HDFC"),
        noise_patterns=(r"HDFC BANK LIMITED.*", r"\*Closing balance includes funds earmarked.*"),
        prompt_hint=(
            "HDFC columns are Date | Narration | Chq./Ref.No. | Value Dt | Withdrawal Amt. "
            "| Deposit Amt. | Closing Balance. Dates are DD/MM/YY."
        ),
    ),
    "ICICI": BankProfile(
        display_name="ICICI Bank",
        identifiers=("ICICI Bank", "ICICI"),
        noise_patterns=(r"Never share your OTP.*",),
        prompt_hint="ICICI statements list Withdrawals and Deposits in separate columns.",
    ),
    "Axis": BankProfile(
        display_name="Axis Bank",
        identifiers=("Axis Bank",),
        noise_patterns=(r"Registered Office.*Axis Bank.*",),
        prompt_hint="Axis columns are Tran Date | Chq No | Particulars | Debit | Credit | Balance | Init. Br.",
    ),
    "Kotak": BankProfile(
        display_name="Kotak Mahindra Bank",
        identifiers=("Kotak Mahindra", "Kotak"),
        prompt_hint="Kotak marks amounts with (Dr) / (Cr) suffixes instead of separate columns.",
    ),
    "Indian Bank": BankProfile(
        display_name="Indian Bank",
        identifiers=("Indian Bank",),
    ),
    DEFAULT_PROFILE_ID: BankProfile(display_name="Unknown"),
}


def get_profile(bank_id: str) -> BankProfile:
    return BANK_PROFILES.get(bank_id) or BANK_PROFILES[DEFAULT_PROFILE_ID]


def detect_bank(text: str) -> str:
    """Return the bank id whose identifiers appear in ``text``, else ``_default``.

    Short identifiers (4 chars or fewer) must match on word boundaries so that
    e.g. "SBI" does not fire inside an unrelated word.
    """
    if not text:
        return DEFAULT_PROFILE_ID
    text_lower = text.lower()
    for bank_id, profile in BANK_PROFILES.items():
        for ident in profile.identifiers:
            if len(ident) <= 4:
                if re.search(r"\b" + re.escape(ident) + r"\b", text, re.IGNORECASE):
                    logger.info(f"  🏦 Bank detected via identifier '{ident}' → {bank_id}")
                    return bank_id
            elif ident.lower() in text_lower:
                logger.info(f"  🏦 Bank detected via identifier '{ident}' → {bank_id}")
                return bank_id
    return DEFAULT_PROFILE_ID


def clean_text(text: str, bank_id: str = DEFAULT_PROFILE_ID) -> str:
    """Strip the bank's repeated headers/footers plus the generic page markers."""
    patterns: List[str] = list(get_profile(bank_id).noise_patterns) + list(_COMMON_NOISE)
    for pat in patterns:
        text = re.sub(pat, "", text, flags=re.IGNORECASE)
    return text.strip()
