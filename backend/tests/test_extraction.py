import json

import fitz
import pytest

from agents.extraction import (
    ExtractionAgent, _dedup_key, _deduplicate_transactions, _parse_llm_json,
)
from conftest import TWELVE_DEBITS, extraction_reply, make_pdf, statement_pages
from errors import ExtractionError, ExtractionErrorKind, InferenceServiceError, ServiceFailure
from models import StatementImport


@pytest.fixture
def imp(user):
    return StatementImport(id="00000000-0000-0000-0000-000000000001", user_id=user.id,
                           file_name="s.pdf", file_path="k")


# ─── Reply parsing ────────────────────────────────────────────────────────────

def test_parse_plain_json():
    parsed = _parse_llm_json('{"bankName": "SBI", "transactions": [{"date": "2024-03-02"}]}')
    assert parsed["bankName"] == "SBI"
    assert len(parsed["transactions"]) == 1


def test_parse_fenced_json():
    parsed = _parse_llm_json('Here you go:\n```json\n{"transactions": []}\n```\nDone.')
    assert parsed == {"transactions": []}


def test_parse_embedded_object():
    parsed = _parse_llm_json('Sure! {"bankName": "HDFC"} hope that helps')
    assert parsed == {"bankName": "HDFC", "transactions": []}


def test_parse_bare_array():
    parsed = _parse_llm_json('[{"date": "2024-03-02", "amount": 10}]')
    assert parsed["transactions"] == [{"date": "2024-03-02", "amount": 10}]


def test_parse_garbage_raises():
    with pytest.raises(ExtractionError) as exc:
        _parse_llm_json("I could not read this statement.")
    assert exc.value.kind == ExtractionErrorKind.UNPARSEABLE_RESPONSE


# ─── Boundary dedup ───────────────────────────────────────────────────────────

def test_dedup_key_ignores_sign_and_long_description_tail():
    a = {"date": "2024-03-02", "amount": -450, "description": "UPI/SWIGGY/ORDER 8812/REF 0000000001"}
    b = {"date": "2024-03-02", "amount": "450.00", "description": "UPI/SWIGGY/ORDER 8812/REF 0000000002"}
    assert _dedup_key(a) == _dedup_key(b)
    assert _dedup_key({"date": "d", "amount": -450}) == _dedup_key({"date": "d", "amount": 450.0})


def test_deduplicate_keeps_first_occurrence():
    rows = [
        {"date": "2024-03-02", "amount": 450, "description": "SWIGGY", "balance": 1},
        {"date": "2024-03-02", "amount": 450, "description": "SWIGGY", "balance": 2},
        {"date": "2024-03-03", "amount": 450, "description": "SWIGGY"},
    ]
    unique = _deduplicate_transactions(rows)
    assert len(unique) == 2
    assert unique[0]["balance"] == 1


# ─── Agent ────────────────────────────────────────────────────────────────────

def test_single_unit_extraction(db, imp, llm, statement_pdf):
    llm.queue(extraction_reply())
    progress = []

    out = ExtractionAgent().run(imp, db, content=statement_pdf, on_progress=progress.append)
    results = out["results"]

    assert results["units"] == 1
    assert results["total_pages"] == 3
    assert len(results["transactions"]) == 12
    assert results["bank_name"] == "SBI"
    assert results["period_start"] == "2024-03-01"
    assert results["period_end"] == "2024-04-05"
    assert progress == ["Processing page 1-3 of 3..."]

    call = llm.calls[0]
    assert call["temperature"] == 0.1
    user_msg = call["messages"][1]["content"]
    assert user_msg.startswith("Extract all transactions from this bank statement.")
    assert "Page 1 of 3" not in user_msg
    assert "SBI columns are" in call["messages"][0]["content"]


def test_chunked_extraction_merges_metadata_and_drops_boundary_repeats(db, imp, llm):
    pdf = make_pdf(statement_pages(per_page=2))  # 6 pages
    first, second, third = TWELVE_DEBITS[:5], TWELVE_DEBITS[4:9], TWELVE_DEBITS[9:]
    llm.queue(
        extraction_reply(first, period=("2024-03-01", None)),
        extraction_reply(second, bank="Someone Else", period=("2024-03-09", None)),
        extraction_reply(third, bank=None, period=(None, "2024-04-05")),
    )
    sleeps = []

    out = ExtractionAgent(pages_per_chunk=2, sleep=sleeps.append).run(imp, db, content=pdf)
    results = out["results"]

    assert results["units"] == 3
    assert results["units_called"] == 3
    assert len(results["transactions"]) == 12
    assert results["bank_name"] == "SBI"
    assert results["period_start"] == "2024-03-01"
    assert results["period_end"] == "2024-04-05"
    assert all(c["messages"][1]["content"].startswith("Extract ALL transactions from this page") for c in llm.calls)


def test_chunk_delay_between_units(db, imp, llm, monkeypatch):
    from config import settings
    monkeypatch.setattr(settings, "CHUNK_DELAY_SECONDS", 1.5)
    pdf = make_pdf(statement_pages(per_page=2))
    llm.queue(extraction_reply([]), extraction_reply([]), extraction_reply([]))
    sleeps = []

    ExtractionAgent(pages_per_chunk=2, sleep=sleeps.append).run(imp, db, content=pdf)

    assert sleeps == [1.5, 1.5]


def test_rate_limit_is_retried_with_growing_backoff(db, imp, llm, statement_pdf, monkeypatch):
    from config import settings
    monkeypatch.setattr(settings, "RATE_LIMIT_BACKOFF_SECONDS", 5)
    llm.queue(
        InferenceServiceError(ServiceFailure.RATE_LIMITED),
        InferenceServiceError(ServiceFailure.RATE_LIMITED),
        extraction_reply(),
    )
    sleeps = []

    results = ExtractionAgent(sleep=sleeps.append).run(imp, db, content=statement_pdf)["results"]

    assert sleeps == [5, 10]
    assert len(results["transactions"]) == 12
    assert results["unit_failures"] == []


def test_rate_limit_gives_up_after_retries(db, imp, llm, statement_pdf):
    llm.queue(*[InferenceServiceError(ServiceFailure.RATE_LIMITED)] * 3)

    results = ExtractionAgent(sleep=lambda s: None).run(imp, db, content=statement_pdf)["results"]

    assert len(llm.calls) == 3
    assert results["transactions"] == []
    assert results["unit_failures"] == [ExtractionErrorKind.RATE_LIMITED]


def test_timeout_is_retried_once(db, imp, llm, statement_pdf):
    llm.queue(
        InferenceServiceError(ServiceFailure.TIMEOUT),
        InferenceServiceError(ServiceFailure.TIMEOUT),
    )

    results = ExtractionAgent(sleep=lambda s: None).run(imp, db, content=statement_pdf)["results"]

    assert len(llm.calls) == 2
    assert results["unit_failures"] == [ExtractionErrorKind.TIMEOUT]


def test_quota_exhaustion_stops_remaining_units(db, imp, llm):
    pdf = make_pdf(statement_pages(per_page=2))
    llm.queue(extraction_reply(TWELVE_DEBITS[:4]), InferenceServiceError(ServiceFailure.QUOTA_EXHAUSTED))

    results = ExtractionAgent(pages_per_chunk=2, sleep=lambda s: None).run(imp, db, content=pdf)["results"]

    assert len(llm.calls) == 2
    assert results["quota_exhausted"] is True
    assert len(results["transactions"]) == 4


def test_unparseable_unit_is_skipped(db, imp, llm):
    pdf = make_pdf(statement_pages(per_page=2))
    llm.queue("no idea", extraction_reply(TWELVE_DEBITS[4:8]), extraction_reply(TWELVE_DEBITS[8:]))

    results = ExtractionAgent(pages_per_chunk=2, sleep=lambda s: None).run(imp, db, content=pdf)["results"]

    assert results["unit_failures"] == [ExtractionErrorKind.UNPARSEABLE_RESPONSE]
    assert len(results["transactions"]) == 8


def test_detected_bank_used_when_reply_has_none(db, imp, llm):
    pdf = make_pdf(statement_pages(header="HDFC Bank Ltd\nStatement"))
    reply = json.loads(extraction_reply())
    reply.pop("bankName")
    llm.queue(json.dumps(reply))

    results = ExtractionAgent().run(imp, db, content=pdf)["results"]

    assert results["bank_name"] == "HDFC Bank"


def test_page_without_text_is_skipped(db, imp, llm):
    doc = fitz.open()
    doc.new_page()
    pdf = doc.tobytes()
    doc.close()
    results = ExtractionAgent().run(imp, db, content=pdf)["results"]

    assert llm.calls == []
    assert results["units_called"] == 0
    assert results["transactions"] == []


def test_scanned_pages_fall_back_to_vision_ocr(db, imp, llm, monkeypatch):
    from config import settings
    monkeypatch.setattr(settings, "OCR_FALLBACK_ENABLED", True)
    scanned = []
    monkeypatch.setattr(
        "agents.extraction.ocr_all_pages",
        lambda data: scanned.append(data) or "State Bank of India\n02-03-2024 UPI/SWIGGY 450.00",
    )
    doc = fitz.open()
    doc.new_page()
    pdf = doc.tobytes()
    doc.close()
    llm.queue(extraction_reply(TWELVE_DEBITS[:1]))

    results = ExtractionAgent().run(imp, db, content=pdf)["results"]

    assert scanned == [pdf]
    assert "UPI/SWIGGY 450.00" in llm.calls[0]["messages"][1]["content"]
    assert len(results["transactions"]) == 1


def test_ocr_quota_exhaustion_aborts(db, imp, llm, monkeypatch):
    from config import settings
    monkeypatch.setattr(settings, "OCR_FALLBACK_ENABLED", True)

    def _exhausted(data):
        raise InferenceServiceError(ServiceFailure.QUOTA_EXHAUSTED)

    monkeypatch.setattr("agents.extraction.ocr_all_pages", _exhausted)
    doc = fitz.open()
    doc.new_page()
    pdf = doc.tobytes()
    doc.close()

    results = ExtractionAgent().run(imp, db, content=pdf)["results"]

    assert llm.calls == []
    assert results["quota_exhausted"] is True
    assert results["unit_failures"] == [ExtractionErrorKind.QUOTA_EXHAUSTED]


def test_ocr_rate_limit_is_retried(db, imp, llm, monkeypatch):
    from config import settings
    monkeypatch.setattr(settings, "OCR_FALLBACK_ENABLED", True)
    monkeypatch.setattr(settings, "RATE_LIMIT_BACKOFF_SECONDS", 5)
    answers = [InferenceServiceError(ServiceFailure.RATE_LIMITED), "State Bank of India\n02-03-2024 UPI/SWIGGY 450.00"]

    def _ocr(data):
        answer = answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer

    monkeypatch.setattr("agents.extraction.ocr_all_pages", _ocr)
    doc = fitz.open()
    doc.new_page()
    pdf = doc.tobytes()
    doc.close()
    llm.queue(extraction_reply(TWELVE_DEBITS[:1]))
    sleeps = []

    results = ExtractionAgent(sleep=sleeps.append).run(imp, db, content=pdf)["results"]

    assert sleeps == [5]
    assert results["unit_failures"] == []
    assert len(results["transactions"]) == 1


@pytest.mark.parametrize("reply", ['{"transactions": 5}', '{"transactions": "none"}'])
def test_non_list_transactions_is_unparseable(reply):
    with pytest.raises(ExtractionError) as exc:
        _parse_llm_json(reply)
    assert exc.value.kind == ExtractionErrorKind.UNPARSEABLE_RESPONSE


def test_unit_with_non_list_transactions_is_skipped(db, imp, llm):
    pdf = make_pdf(statement_pages(per_page=2))
    llm.queue('{"bankName": "SBI", "transactions": 5}', extraction_reply(TWELVE_DEBITS[4:8]), extraction_reply(TWELVE_DEBITS[8:]))

    results = ExtractionAgent(pages_per_chunk=2, sleep=lambda s: None).run(imp, db, content=pdf)["results"]

    assert results["unit_failures"] == [ExtractionErrorKind.UNPARSEABLE_RESPONSE]
    assert len(results["transactions"]) == 8


def test_null_transactions_is_an_empty_unit():
    assert _parse_llm_json('{"bankName": "SBI", "transactions": null}')["transactions"] == []
