from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from statement_service import config, main, pipeline
from statement_service.ai_client import StatementAIClient
from statement_service.errors import (
    ImageBasedPdfError,
    IncorrectPasswordError,
    PasswordRequiredError,
    TextExtractionError,
)
from statement_service.storage import PasswordProfileStore, TransactionStore
from tests.factories import RecordingSleep, ScriptedTransport

PDF = ("statement.pdf", b"%PDF-1.4 fake statement", "application/pdf")
USER = {"X-User-Id": "user-1"}

AI_REPLY = json.dumps(
    [
        {"date": "2025-10-01", "description": "Roms Pizza", "amount": 456, "type": "debit", "category": "Food & Dining"},
        {"date": "2025-10-07", "description": "TechCorp", "amount": 45000, "type": "credit", "category": "Income"},
    ]
)


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(config, "EXPECTED_BEARER", None)
    monkeypatch.setattr(config, "DEFAULT_PARSER", "ai")
    monkeypatch.setattr(main, "transaction_store", TransactionStore())
    monkeypatch.setattr(main, "profile_store", PasswordProfileStore())
    monkeypatch.setattr(main, "ai_client", StatementAIClient(api_key=""))
    return TestClient(main.app)


@pytest.fixture
def statement_text(monkeypatch, kotak_statement_text):
    async def fake_extract(pdf_bytes, min_length=None):
        return kotak_statement_text

    monkeypatch.setattr(pipeline, "extract_text", fake_extract)
    return kotak_statement_text


def _use_model(monkeypatch, *replies):
    sleep = RecordingSleep()
    transport = ScriptedTransport(*replies)
    monkeypatch.setattr(main, "ai_client", StatementAIClient(transport=transport, sleep=sleep))
    return transport, sleep


def test_upload_without_file(client):
    resp = client.post("/upload", data={"parser": "kotak"})

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "No file provided"
    assert body["success"] is False
    assert body["transactions"] == []


def test_upload_rejects_non_pdf(client):
    resp = client.post("/upload", files={"file": ("notes.txt", b"hello", "text/plain")})

    assert resp.status_code == 400
    assert resp.json()["error"] == "Only PDF files are accepted."


def test_upload_rejects_oversized_file(client, monkeypatch):
    monkeypatch.setattr(config, "MAX_UPLOAD_BYTES", 10)

    resp = client.post("/upload", files={"file": PDF})

    assert resp.status_code == 413


def test_upload_requires_bearer_when_configured(client, monkeypatch, statement_text):
    monkeypatch.setattr(config, "EXPECTED_BEARER", "tok")

    assert client.post("/upload", files={"file": PDF}).status_code == 401
    resp = client.post("/upload", files={"file": PDF}, data={"parser": "kotak"}, headers={"Authorization": "Bearer tok"})
    assert resp.status_code == 200


def test_upload_with_rule_parser(client, statement_text):
    resp = client.post("/upload", files={"file": PDF}, data={"parser": "kotak"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["parser"] == "kotak"
    assert body["transactionCount"] == 4
    assert body["transactions"][0]["id"].startswith("stmt-")
    assert body["accountSummary"]["accountNumber"] == "1234567890"
    assert [s["service"] for s in body["steps"]] == ["auth", "validation", "decrypt", "extract_text", "rule_parse"]


def test_upload_with_model(client, monkeypatch, statement_text):
    transport, _ = _use_model(monkeypatch, AI_REPLY)

    resp = client.post("/upload", files={"file": PDF})

    assert resp.status_code == 200
    body = resp.json()
    assert body["parser"] == "ai"
    assert [t["category"] for t in body["transactions"]] == ["Food & Dining", "Income"]
    assert all(t["bankName"] == "Auto-detected" for t in body["transactions"])
    assert transport.prompts[0].endswith(statement_text)


def test_upload_falls_back_to_rule_parser_without_model(client, statement_text):
    resp = client.post("/upload", files={"file": PDF}, data={"parser": "ai"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["parser"] == "kotak"
    assert any("Kotak parser" in note for note in body["notes"])


def test_upload_unknown_parser(client, statement_text):
    resp = client.post("/upload", files={"file": PDF}, data={"parser": "hdfc"})

    assert resp.status_code == 400
    assert "Unknown parser" in resp.json()["error"]


def test_overloaded_model_returns_503(client, monkeypatch, statement_text):
    _, sleep = _use_model(monkeypatch, RuntimeError("503 Service Unavailable: model overloaded"))

    resp = client.post("/upload", files={"file": PDF})

    assert resp.status_code == 503
    assert sleep.delays == [3, 6, 12, 24]


def test_malformed_model_reply_returns_raw_response(client, monkeypatch, statement_text):
    _use_model(monkeypatch, "I could not find any transactions.")

    resp = client.post("/upload", files={"file": PDF})

    assert resp.status_code == 500
    body = resp.json()
    assert body["error"] == "Failed to parse AI response as JSON"
    assert body["rawResponse"] == "I could not find any transactions."


def test_wrong_password_asks_for_password(client, monkeypatch):
    async def reject(pdf_bytes, password):
        raise IncorrectPasswordError("Failed to decrypt PDF. Please check the password.")

    monkeypatch.setattr(pipeline, "decrypt_pdf", reject)

    resp = client.post("/upload", files={"file": PDF}, data={"password": "nope"})

    assert resp.status_code == 400
    assert resp.json()["needsPassword"] is True


def test_image_based_pdf(client, monkeypatch):
    async def no_text(pdf_bytes, min_length=None):
        raise ImageBasedPdfError("Could not extract text from PDF. The file may be an image-based PDF.")

    monkeypatch.setattr(pipeline, "extract_text", no_text)

    resp = client.post("/upload", files={"file": PDF}, data={"parser": "kotak"})

    assert resp.status_code == 400
    assert "image-based" in resp.json()["error"]


def _fake_statement_text(monkeypatch, outcome):
    async def load(pdf_bytes, password=None):
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(pipeline, "load_statement_text", load)


def test_count_estimates_time(client, monkeypatch):
    _fake_statement_text(monkeypatch, "statement text")
    _use_model(monkeypatch, "14")

    resp = client.post("/count", files={"file": PDF})

    assert resp.status_code == 200
    assert resp.json() == {"success": True, "count": 14, "estimatedSeconds": 30}


def test_count_failure_is_soft(client, monkeypatch):
    _fake_statement_text(monkeypatch, "statement text")

    resp = client.post("/count", files={"file": PDF})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is False
    assert body["count"] == 0
    assert body["estimatedSeconds"] == pipeline.DEFAULT_ESTIMATE_SECONDS


def test_count_locked_pdf_is_401(client, monkeypatch):
    _fake_statement_text(monkeypatch, PasswordRequiredError("PDF may be password protected"))

    resp = client.post("/count", files={"file": PDF})

    assert resp.status_code == 401
    assert resp.json()["error"] == "Incorrect password or password required"


def test_count_unreadable_pdf_is_400(client, monkeypatch):
    _fake_statement_text(monkeypatch, TextExtractionError("Failed to parse PDF: broken"))

    resp = client.post("/count", files={"file": PDF})

    assert resp.status_code == 400
    assert resp.json()["error"] == "Failed to parse PDF"


def test_transactions_require_user(client):
    assert client.get("/transactions").status_code == 401
    assert client.delete("/transactions").status_code == 401


def test_transactions_round_trip(client, sample_transactions):
    payload = {"transactions": [t.model_dump() for t in sample_transactions]}

    saved = client.post("/transactions", json=payload, headers=USER)
    assert saved.status_code == 200
    assert saved.json()["count"] == 6

    listed = client.get("/transactions", headers=USER).json()["transactions"]
    assert len(listed) == 6
    assert {t["id"] for t in listed}.isdisjoint({t.id for t in sample_transactions})
    assert client.get("/transactions", headers={"X-User-Id": "someone-else"}).json()["transactions"] == []

    assert client.delete("/transactions", headers=USER).json()["success"] is True
    assert client.get("/transactions", headers=USER).json()["transactions"] == []


def test_saving_an_empty_batch_is_rejected(client):
    resp = client.post("/transactions", json={"transactions": []}, headers=USER)

    assert resp.status_code == 400
    assert resp.json()["error"] == "No transactions provided"


def test_recategorize_persists_when_asked(client, monkeypatch, sample_transactions):
    client.post("/transactions", json={"transactions": [sample_transactions[1].model_dump()]}, headers=USER)
    stored_id = client.get("/transactions", headers=USER).json()["transactions"][0]["id"]
    _use_model(monkeypatch, json.dumps([{"id": stored_id, "category": "Entertainment"}]))

    resp = client.post("/transactions/recategorize", json={"persist": True}, headers=USER)

    assert resp.status_code == 200
    assert resp.json()["transactions"][0]["category"] == "Entertainment"
    assert client.get("/transactions", headers=USER).json()["transactions"][0]["category"] == "Entertainment"


def test_analytics(client, sample_transactions):
    client.post("/transactions", json={"transactions": [t.model_dump() for t in sample_transactions]}, headers=USER)

    body = client.get("/analytics", headers=USER).json()

    assert body["kpis"]["totalSpending"] == 3000.0
    assert body["kpis"]["topCategory"] == "Shopping"
    assert [m["month"] for m in body["monthly"]] == ["Dec 2024", "Jan 2025", "Sep 2025", "Oct 2025"]
    assert body["categories"][0]["category"] == "Shopping"
    assert body["dateRange"] == "Dec 2024 - Oct 2025"
    assert body["formatted"]["totalIncome"] == "₹48.0K"


def test_password_profiles(client):
    created = client.post("/password-profiles", json={"name": "Kotak", "password": "1234"}, headers=USER)
    assert created.status_code == 200
    profile = created.json()["profile"]
    assert "password" not in profile

    listed = client.get("/password-profiles", headers=USER).json()["profiles"]
    assert [p["name"] for p in listed] == ["Kotak"]
    assert main.profile_store.secret_for("user-1", profile["id"]) == "1234"

    assert client.delete("/password-profiles", headers=USER).status_code == 400
    assert client.delete("/password-profiles", params={"id": "nope"}, headers=USER).status_code == 404
    assert client.delete("/password-profiles", params={"id": profile["id"]}, headers=USER).status_code == 200
    assert client.get("/password-profiles", headers=USER).json()["profiles"] == []


def test_password_profile_needs_name_and_password(client):
    resp = client.post("/password-profiles", json={"name": " ", "password": ""}, headers=USER)

    assert resp.status_code == 400


def test_transactions_with_bad_dates_are_rejected(client):
    row = {"id": "t-1", "date": "31/10/2025", "description": "X", "amount": 1.0, "type": "debit"}

    resp = client.post("/transactions", json={"transactions": [row]}, headers=USER)

    assert resp.status_code == 422
    assert client.get("/transactions", headers=USER).json()["transactions"] == []
