"""Shared fixtures: throwaway SQLite database, local object storage, a fake
LLM and generated statement PDFs."""
import json
import os
import tempfile

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="statement-importer-"))

import fitz  # PyMuPDF
import pytest
from sqlalchemy.orm import sessionmaker

import agents.categorization
import agents.extraction
from config import settings
from database import create_db_engine, init_db
from models import Category, StatementImport, User
from routers.auth import hash_password
from services.storage import ObjectStorage, build_object_key, compute_file_hash

TWELVE_DEBITS = [
    ("2024-03-02", "UPI/SWIGGY/ORDER 8812", 450.00),
    ("2024-03-04", "UPI/ZOMATO/DINNER", 612.50),
    ("2024-03-06", "UBER INDIA TRIP", 289.00),
    ("2024-03-09", "BESCOM ELECTRICITY BILL", 1943.69),
    ("2024-03-11", "AMAZON PAY SHOPPING", 2599.00),
    ("2024-03-14", "OLA CABS RIDE", 178.00),
    ("2024-03-17", "AIRTEL POSTPAID", 799.00),
    ("2024-03-20", "BIGBASKET GROCERIES", 1320.40),
    ("2024-03-23", "HP PETROL PUMP FUEL", 2000.00),
    ("2024-03-26", "NETFLIX SUBSCRIPTION", 649.00),
    ("2024-04-01", "HOUSE RENT APRIL", 18000.00),
    ("2024-04-03", "APOLLO PHARMACY", 356.25),
]


# ─── Database ─────────────────────────────────────────────────────────────────

@pytest.fixture
def engine(tmp_path):
    eng = create_db_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


@pytest.fixture
def user(db):
    u = User(name="Asha Rao", email="asha@example.com", password_hash=hash_password("secret123"))
    db.add(u)
    db.commit()
    return u


@pytest.fixture
def other_user(db):
    u = User(name="Ravi Menon", email="ravi@example.com", password_hash=hash_password("secret456"))
    db.add(u)
    db.commit()
    return u


@pytest.fixture
def categories(db, user):
    rows = {
        name: Category(user_id=user.id, name=name, icon=icon, color=color)
        for name, icon, color in [
            ("Food", "utensils", "#F97316"),
            ("Transport", "car", "#3B82F6"),
            ("Bills", "receipt", "#8B5CF6"),
            ("Shopping", "shopping-bag", "#EC4899"),
        ]
    }
    db.add_all(rows.values())
    db.commit()
    return rows


@pytest.fixture(autouse=True)
def no_delays(monkeypatch):
    monkeypatch.setattr(settings, "CHUNK_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "RATE_LIMIT_BACKOFF_SECONDS", 0)
    monkeypatch.setattr(settings, "OCR_FALLBACK_ENABLED", False)


# ─── Storage ──────────────────────────────────────────────────────────────────

@pytest.fixture
def storage(tmp_path):
    return ObjectStorage(str(tmp_path / "objects"))


@pytest.fixture
def make_import(db, storage):
    """Store ``content`` and open a pending import for it."""
    def _make(owner, content, filename="statement.pdf"):
        key = build_object_key(owner.id, filename)
        storage.upload(key, content)
        imp = StatementImport(
            user_id=owner.id,
            file_name=filename,
            file_path=key,
            file_size=len(content),
            file_hash=compute_file_hash(content),
        )
        db.add(imp)
        db.commit()
        return imp
    return _make


# ─── PDFs ─────────────────────────────────────────────────────────────────────

def make_pdf(pages, user_pw=None):
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        page.insert_text((50, 72), text, fontsize=9)
    if user_pw:
        data = doc.tobytes(
            encryption=fitz.PDF_ENCRYPT_AES_256,
            owner_pw="owner-" + user_pw,
            user_pw=user_pw,
        )
    else:
        data = doc.tobytes()
    doc.close()
    return data


def statement_pages(rows=TWELVE_DEBITS, per_page=4, header="State Bank of India\nAccount Statement"):
    pages = []
    for start in range(0, len(rows), per_page):
        lines = [header] + [f"{d}  {desc}  {amt:.2f} Dr" for d, desc, amt in rows[start:start + per_page]]
        lines.append(f"Page {start // per_page + 1} of {(len(rows) + per_page - 1) // per_page}")
        pages.append("\n".join(lines))
    return pages


@pytest.fixture
def statement_pdf():
    return make_pdf(statement_pages())


@pytest.fixture
def encrypted_pdf():
    return make_pdf(statement_pages(), user_pw="secret")


def extraction_reply(rows=TWELVE_DEBITS, bank="SBI", period=("2024-03-01", "2024-04-05")):
    return json.dumps({
        "bankName": bank,
        "periodStart": period[0],
        "periodEnd": period[1],
        "transactions": [
            {"date": d, "description": desc, "amount": amt, "type": "debit", "balance": None}
            for d, desc, amt in rows
        ],
    })


# ─── LLM ──────────────────────────────────────────────────────────────────────

class FakeLLM:
    """Stands in for ``chat_completion``; replies are consumed in order.

    A reply may be a string, an exception to raise, or a callable receiving
    the messages.
    """

    def __init__(self):
        self.calls = []
        self.replies = []

    def queue(self, *replies):
        self.replies.extend(replies)
        return self

    def __call__(self, messages, **kwargs):
        self.calls.append({"messages": messages, **kwargs})
        if not self.replies:
            raise AssertionError("Unexpected LLM call")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(messages)
        return reply


@pytest.fixture
def llm(monkeypatch):
    fake = FakeLLM()
    monkeypatch.setattr(agents.extraction, "chat_completion", fake)
    monkeypatch.setattr(agents.categorization, "chat_completion", fake)
    return fake
