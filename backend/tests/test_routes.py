import json
import re

import pytest
from fastapi.testclient import TestClient

from conftest import extraction_reply
from database import get_db
from errors import InferenceServiceError, ServiceFailure
from main import app
from routers.auth import get_current_user_dep
from services.storage import get_storage


@pytest.fixture
def anon_client(db, storage):
    def _db():
        yield db

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_storage] = lambda: storage
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def client(anon_client, user):
    app.dependency_overrides[get_current_user_dep] = lambda: user
    return anon_client


def _upload(client, content, filename="statement.pdf", content_type="application/pdf"):
    return client.post("/api/imports/upload", files={"file": (filename, content, content_type)})


def _assign_all(category_id):
    def reply(messages):
        ids = re.findall(r"\(id: ([0-9a-f-]{36})\)", messages[1]["content"])
        return json.dumps({"categorizations": [
            {"transaction_id": i, "category_id": category_id, "confidence": 0.7} for i in ids
        ]})
    return reply


# ─── Upload ───────────────────────────────────────────────────────────────────

def test_upload_opens_pending_import(client, statement_pdf):
    resp = _upload(client, statement_pdf)

    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    assert body["status"] == "pending"
    assert body["fileName"] == "statement.pdf"
    assert body["fileSize"] == len(statement_pdf)
    assert "importId" in body


def test_upload_rejects_non_pdf(client):
    resp = _upload(client, b"hello", filename="notes.txt", content_type="text/plain")
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "Only PDF files are supported. Got: notes.txt"}


def test_upload_rejects_empty_and_oversized(client, monkeypatch):
    from config import settings
    assert _upload(client, b"").json()["error"] == "Uploaded file is empty"

    monkeypatch.setattr(settings, "MAX_FILE_SIZE_MB", 0)
    resp = _upload(client, b"%PDF-1.7 tiny")
    assert resp.status_code == 400
    assert resp.json()["error"] == "File exceeds 0MB limit"


# ─── Pipeline ─────────────────────────────────────────────────────────────────

def test_full_review_flow(client, llm, categories, statement_pdf):
    import_id = _upload(client, statement_pdf).json()["importId"]
    llm.queue(extraction_reply(), _assign_all(categories["Shopping"].id))

    extracted = client.post("/api/imports/extract", json={"importId": import_id})
    assert extracted.status_code == 200
    assert extracted.json() == {
        "success": True, "transactionCount": 12, "duplicateCount": 0,
        "bankName": "SBI", "periodStart": "2024-03-01", "periodEnd": "2024-04-05",
    }

    record = client.get(f"/api/imports/{import_id}").json()
    assert record["status"] == "extracted"
    assert record["bankName"] == "SBI"
    assert record["statementPeriodStart"] == "2024-03-01"
    assert record["totalTransactions"] == 12
    assert record["updatedAt"]

    rows = client.get(f"/api/imports/{import_id}/transactions").json()
    assert len(rows) == 12
    assert rows[0]["transactionDate"] == "2024-03-02"
    assert all(r["isSelected"] for r in rows)

    patched = client.patch(
        f"/api/imports/{import_id}/transactions/{rows[0]['id']}", json={"isSelected": False},
    )
    assert patched.status_code == 200
    assert patched.json()["isSelected"] is False

    categorized = client.post("/api/imports/categorize", json={"importId": import_id}).json()
    assert categorized == {
        "success": True, "totalTransactions": 12, "categorizedCount": 12,
        "avgConfidence": 70, "suggestedCategories": [],
    }
    assert client.get(f"/api/imports/{import_id}").json()["status"] == "ready"

    selection = [{"id": r["id"], "categoryId": categories["Food"].id} for r in rows[1:4]]
    committed = client.post("/api/imports/commit", json={"importId": import_id, "transactions": selection})
    assert committed.status_code == 200
    assert committed.json() == {"success": True, "importedCount": 3, "monthCount": 1}

    record = client.get(f"/api/imports/{import_id}").json()
    assert record["status"] == "completed"
    assert record["importedTransactions"] == 3
    assert client.get(f"/api/imports/{import_id}/transactions").json() == []


def test_encrypted_upload_asks_for_password(client, encrypted_pdf):
    import_id = _upload(client, encrypted_pdf).json()["importId"]

    resp = client.post("/api/imports/extract", json={"importId": import_id})
    assert resp.status_code == 200
    assert resp.json() == {
        "success": False, "passwordRequired": True,
        "message": "This PDF is password protected. Please enter the password.",
    }

    wrong = client.post("/api/imports/extract", json={"importId": import_id, "password": "nope"})
    assert wrong.json()["message"] == "Incorrect password. Please try again."

    record = client.get(f"/api/imports/{import_id}").json()
    assert record["status"] == "password_required"
    assert record["errorMessage"] == "Incorrect password. Please try again."


def test_service_failure_is_rendered_with_its_status(client, llm, statement_pdf):
    import_id = _upload(client, statement_pdf).json()["importId"]
    llm.queue(InferenceServiceError(ServiceFailure.QUOTA_EXHAUSTED))

    resp = client.post("/api/imports/extract", json={"importId": import_id})

    assert resp.status_code == 503
    assert resp.json()["success"] is False
    assert "quota exhausted" in resp.json()["error"]
    assert client.get(f"/api/imports/{import_id}").json()["status"] == "failed"


def test_patch_rejects_foreign_category_and_wrong_stage(client, llm, other_user, db, statement_pdf):
    from models import Category
    import_id = _upload(client, statement_pdf).json()["importId"]

    pending = client.patch(f"/api/imports/{import_id}/transactions/abc", json={"isSelected": False})
    assert pending.status_code == 400

    llm.queue(extraction_reply())
    client.post("/api/imports/extract", json={"importId": import_id})
    tx_id = client.get(f"/api/imports/{import_id}/transactions").json()[0]["id"]
    foreign = Category(user_id=other_user.id, name="Theirs")
    db.add(foreign)
    db.commit()

    resp = client.patch(
        f"/api/imports/{import_id}/transactions/{tx_id}", json={"suggestedCategoryId": foreign.id},
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "Unknown category"

    missing = client.patch(
        f"/api/imports/{import_id}/transactions/11111111-1111-1111-1111-111111111111",
        json={"isSelected": True},
    )
    assert missing.status_code == 404


# ─── Records ──────────────────────────────────────────────────────────────────

def test_list_and_delete(client, statement_pdf):
    first = _upload(client, statement_pdf, filename="a.pdf").json()["importId"]
    second = _upload(client, statement_pdf, filename="b.pdf").json()["importId"]

    listed = client.get("/api/imports").json()
    assert {i["id"] for i in listed} == {first, second}

    resp = client.delete(f"/api/imports/{first}")
    assert resp.json() == {"success": True, "message": "Import deleted"}

    gone = client.get(f"/api/imports/{first}")
    assert gone.status_code == 404
    assert gone.json() == {"success": False, "error": "Import not found"}


def test_malformed_import_id(client):
    resp = client.get("/api/imports/not-a-uuid")
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid import ID format"


def test_invalid_body(client):
    resp = client.post("/api/imports/extract", json={})
    assert resp.status_code == 400
    assert resp.json()["error"].startswith("Invalid request:")


def test_commit_list_over_cap_is_rejected(client):
    from config import settings
    selection = [{"id": "11111111-1111-1111-1111-111111111111"}] * (settings.MAX_COMMIT_TRANSACTIONS + 1)
    resp = client.post(
        "/api/imports/commit",
        json={"importId": "11111111-1111-1111-1111-111111111111", "transactions": selection},
    )
    assert resp.status_code == 400


def test_other_users_import_is_invisible(client, db, other_user, storage):
    from models import StatementImport
    theirs = StatementImport(user_id=other_user.id, file_name="x.pdf", file_path="x")
    db.add(theirs)
    db.commit()

    assert client.get(f"/api/imports/{theirs.id}").status_code == 404
    assert client.delete(f"/api/imports/{theirs.id}").status_code == 404


# ─── Auth ─────────────────────────────────────────────────────────────────────

def test_requests_without_token_are_refused(anon_client):
    resp = anon_client.get("/api/imports")
    assert resp.status_code == 401
    assert resp.json() == {"success": False, "error": "Authorization required"}


def test_register_login_and_me(anon_client):
    reg = anon_client.post(
        "/api/auth/register",
        json={"name": "Meera", "email": "Meera@Example.com", "password": "hunter22"},
    )
    assert reg.status_code == 201

    dup = anon_client.post(
        "/api/auth/register",
        json={"name": "Meera", "email": "meera@example.com", "password": "hunter22"},
    )
    assert dup.status_code == 409
    assert dup.json()["success"] is False

    bad = anon_client.post("/api/auth/login", json={"email": "meera@example.com", "password": "nope"})
    assert bad.status_code == 401
    assert bad.json()["error"] == "Invalid email or password"

    token = anon_client.post(
        "/api/auth/login", json={"email": "meera@example.com", "password": "hunter22"},
    ).json()["access_token"]
    me = anon_client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["email"] == "meera@example.com"

    garbage = anon_client.get("/api/auth/me", headers={"Authorization": "Bearer not.a.jwt"})
    assert garbage.status_code == 401


def test_duplicate_email_and_expired_token(anon_client, user):
    from datetime import datetime, timedelta, timezone

    import jwt

    from config import settings

    dup = anon_client.post(
        "/api/auth/register", json={"name": "Asha", "email": " ASHA@example.com ", "password": "secret123"},
    )
    assert dup.status_code == 409
    assert dup.json() == {"success": False, "error": "An account with this email already exists"}

    stale = jwt.encode(
        {"sub": user.id, "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
        settings.JWT_SECRET, algorithm="HS256",
    )
    resp = anon_client.get("/api/auth/me", headers={"Authorization": f"Bearer {stale}"})
    assert resp.status_code == 401
    assert resp.json()["error"] == "Token has expired"


def test_health(anon_client):
    assert anon_client.get("/health").json()["status"] == "healthy"
