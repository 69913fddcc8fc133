import asyncio
import logging
import os
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote, urlparse

import certifi
import requests
import uvicorn
from fastapi import FastAPI, File, Form, Header, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import config
from .ai_client import StatementAIClient
from .analytics import (
    calculate_category_breakdown,
    calculate_kpi_metrics,
    calculate_monthly_totals,
    format_currency,
    get_date_range,
)
from .errors import (
    AIExtractionError,
    FileTooLargeError,
    NoFileError,
    StatementError,
    TextExtractionError,
    UnauthorizedError,
    UnsupportedFileError,
)
from .models import CountResult, Step, Transaction
from .pipeline import add_step, count_response, estimate_statement, new_statement_id, process_statement
from .storage import PasswordProfileStore, TransactionStore

logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)

app = FastAPI(title="Statement Analytics Service", version="1.0.0")

ai_client = StatementAIClient()
transaction_store = TransactionStore()
profile_store = PasswordProfileStore()


class TransactionBatch(BaseModel):
    transactions: List[Transaction]


class RecategorizeRequest(BaseModel):
    transactions: Optional[List[Transaction]] = None
    persist: bool = False


class ProfileRequest(BaseModel):
    name: str
    password: str


def build_error_response(
    message: str,
    steps: List[Dict[str, str]],
    notes: List[str],
    status_code: int = 400,
    needs_password: bool = False,
    extra: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    content: Dict[str, Any] = {
        "ok": False,
        "success": False,
        "error": message,
        "transactions": [],
        "steps": steps,
        "notes": notes + [message],
    }
    if needs_password:
        content["needsPassword"] = True
    if extra:
        content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


def _error_from_exception(exc: StatementError, steps: List[Dict[str, str]], notes: List[str]) -> JSONResponse:
    extra = None
    if isinstance(exc, AIExtractionError) and exc.raw_response:
        extra = {"rawResponse": exc.raw_response[:2000]}
    return build_error_response(exc.message, steps, notes, exc.status_code, exc.needs_password, extra)


def _check_auth(authorization: Optional[str], steps: List[Dict[str, str]]) -> None:
    if config.EXPECTED_BEARER:
        if not authorization or authorization != f"Bearer {config.EXPECTED_BEARER}":
            add_step(steps, "auth", "failed", "Bearer token missing or invalid.")
            raise UnauthorizedError("Unauthorized")
        add_step(steps, "auth", "success", "Bearer token accepted.")
    else:
        add_step(steps, "auth", "skipped", "No bearer token configured in env.")


def _require_user(x_user_id: Optional[str]) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise UnauthorizedError("Unauthorized")
    return user_id


def _validate_payload(filename: str, mime: str, pdf_bytes: bytes, steps: List[Dict[str, str]]) -> None:
    ext = os.path.splitext(filename)[1].lower()
    if ext not in config.ALLOWED_EXTENSIONS:
        add_step(steps, "validation", "failed", f"Invalid extension: {ext}")
        raise UnsupportedFileError("Only PDF files are accepted.")
    if mime and mime not in config.ALLOWED_MIME_TYPES:
        add_step(steps, "validation", "failed", f"Invalid content type: {mime}")
        raise UnsupportedFileError("Unsupported content type.")
    if not pdf_bytes:
        add_step(steps, "validation", "failed", "Empty upload payload.")
        raise NoFileError("Empty upload.")
    if len(pdf_bytes) > config.MAX_UPLOAD_BYTES:
        add_step(steps, "validation", "failed", f"File exceeds {config.MAX_UPLOAD_MB}MB.")
        raise FileTooLargeError(f"File too large (max {config.MAX_UPLOAD_MB}MB).")
    add_step(steps, "validation", "success", f"Accepted {filename} ({len(pdf_bytes)} bytes).")


async def _read_upload(file: Optional[UploadFile], steps: List[Dict[str, str]]) -> Tuple[str, bytes]:
    if file is None:
        add_step(steps, "validation", "failed", "No file in request.")
        raise NoFileError("No file provided")
    filename = file.filename or "upload.pdf"
    pdf_bytes = await file.read()
    _validate_payload(filename, (file.content_type or "").lower(), pdf_bytes, steps)
    return filename, pdf_bytes


async def _run_upload(
    filename: str,
    pdf_bytes: bytes,
    password: Optional[str],
    parser: Optional[str],
    steps: List[Dict[str, str]],
    notes: List[str],
) -> Dict[str, Any]:
    result = await process_statement(
        pdf_bytes,
        password or None,
        statement_id=new_statement_id(),
        parser=parser,
        ai_client=ai_client,
        steps=steps,
    )
    notes.extend(result.notes)
    return {
        "ok": True,
        "success": True,
        "fileName": filename,
        "parser": result.parser,
        "transactionCount": len(result.transactions),
        "transactions": [t.model_dump() for t in result.transactions],
        "extractedTextLength": result.text_length,
        "accountSummary": result.account_summary.model_dump() if result.account_summary else None,
        "steps": [Step(**s).model_dump() for s in steps],
        "notes": notes,
    }


@app.post("/upload")
async def upload_statement(
    file: Optional[UploadFile] = File(default=None),
    password: Optional[str] = Form(default=None),
    parser: Optional[str] = Form(default=None),
    authorization: Optional[str] = Header(default=None),
):
    steps: List[Dict[str, str]] = []
    notes: List[str] = []
    try:
        _check_auth(authorization, steps)
        filename, pdf_bytes = await _read_upload(file, steps)
        return await _run_upload(filename, pdf_bytes, password, parser, steps, notes)
    except StatementError as exc:
        return _error_from_exception(exc, steps, notes)
    except Exception as exc:
        logger.exception("Upload processing error")
        add_step(steps, "upload", "failed", f"Unhandled error: {exc}")
        return build_error_response(str(exc) or "Processing failed", steps, notes, status_code=500)


@app.post("/upload/from-url")
async def upload_statement_from_url(
    url: str,
    password: Optional[str] = None,
    parser: Optional[str] = None,
    authorization: Optional[str] = Header(default=None),
):
    steps: List[Dict[str, str]] = []
    notes: List[str] = []
    try:
        _check_auth(authorization, steps)
        if not url.lower().startswith(("http://", "https://")):
            add_step(steps, "download", "failed", "URL must start with http:// or https://")
            raise UnsupportedFileError("Invalid URL.")

        resp = await asyncio.to_thread(requests.get, url, timeout=90, verify=certifi.where())
        if resp.status_code >= 400:
            add_step(steps, "download", "failed", f"HTTP {resp.status_code}")
            raise NoFileError(f"Failed to download URL (HTTP {resp.status_code}).")
        content = resp.content or b""
        guessed_name = os.path.basename(unquote(urlparse(url).path)) or "downloaded.pdf"
        guessed_type = (resp.headers.get("content-type") or "").split(";")[0].strip().lower()
        add_step(steps, "download", "success", f"Fetched {guessed_name} ({len(content)} bytes)")

        _validate_payload(guessed_name, guessed_type, content, steps)
        return await _run_upload(guessed_name, content, password, parser, steps, notes)
    except StatementError as exc:
        return _error_from_exception(exc, steps, notes)
    except requests.RequestException as exc:
        add_step(steps, "download", "failed", str(exc))
        return build_error_response("URL download failed.", steps, notes + [str(exc)], 400)
    except Exception as exc:
        logger.exception("URL upload processing error")
        add_step(steps, "upload", "failed", f"Unhandled error: {exc}")
        return build_error_response("URL parse failed.", steps, notes + [str(exc)], 500)


@app.post("/count")
async def count_statement_transactions(
    file: Optional[UploadFile] = File(default=None),
    password: Optional[str] = Form(default=None),
    authorization: Optional[str] = Header(default=None),
):
    steps: List[Dict[str, str]] = []
    try:
        _check_auth(authorization, steps)
        _, pdf_bytes = await _read_upload(file, steps)
        result = await estimate_statement(pdf_bytes, password or None, ai_client)
    except StatementError as exc:
        if exc.needs_password:
            return JSONResponse(status_code=401, content={"error": "Incorrect password or password required"})
        if isinstance(exc, TextExtractionError):
            return JSONResponse(status_code=400, content={"error": "Failed to parse PDF"})
        if exc.status_code < 500:
            return JSONResponse(status_code=exc.status_code, content={"error": exc.message})
        logger.warning("Count failed: %s", exc.message)
        return JSONResponse(status_code=200, content=count_response(CountResult(success=False, error=exc.message)))
    except Exception as exc:
        logger.exception("Count API error")
        return JSONResponse(
            status_code=200, content=count_response(CountResult(success=False, error=str(exc) or "Count failed"))
        )
    return count_response(result)


@app.get("/transactions")
def list_transactions(x_user_id: Optional[str] = Header(default=None)):
    try:
        user_id = _require_user(x_user_id)
    except StatementError as exc:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())
    return {"transactions": [t.model_dump() for t in transaction_store.get(user_id)]}


@app.post("/transactions")
def save_transactions(batch: TransactionBatch, x_user_id: Optional[str] = Header(default=None)):
    try:
        user_id = _require_user(x_user_id)
    except StatementError as exc:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())
    if not batch.transactions:
        return JSONResponse(status_code=400, content={"error": "No transactions provided"})
    count = transaction_store.save(user_id, batch.transactions)
    return {"success": True, "count": count, "message": f"Saved {count} transactions"}


@app.delete("/transactions")
def delete_transactions(x_user_id: Optional[str] = Header(default=None)):
    try:
        user_id = _require_user(x_user_id)
    except StatementError as exc:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())
    transaction_store.delete_all(user_id)
    return {"success": True, "message": "All transactions deleted"}


@app.post("/transactions/recategorize")
async def recategorize_transactions(request: RecategorizeRequest, x_user_id: Optional[str] = Header(default=None)):
    try:
        user_id = _require_user(x_user_id)
    except StatementError as exc:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())
    source = request.transactions if request.transactions is not None else transaction_store.get(user_id)
    updated = await ai_client.recategorize(source)
    if request.persist:
        transaction_store.replace(user_id, updated)
    return {"transactions": [t.model_dump() for t in updated]}


@app.get("/analytics")
def analytics(x_user_id: Optional[str] = Header(default=None)):
    try:
        user_id = _require_user(x_user_id)
    except StatementError as exc:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())
    transactions = transaction_store.get(user_id)
    kpis = calculate_kpi_metrics(transactions)
    return {
        "monthly": [m.model_dump() for m in calculate_monthly_totals(transactions)],
        "categories": [c.model_dump() for c in calculate_category_breakdown(transactions)],
        "kpis": kpis.model_dump(),
        "dateRange": get_date_range(transactions),
        "formatted": {
            "totalSpending": format_currency(kpis.totalSpending, compact=True),
            "totalIncome": format_currency(kpis.totalIncome, compact=True),
            "netCashFlow": format_currency(kpis.netCashFlow, compact=True),
        },
    }


@app.get("/password-profiles")
def list_password_profiles(x_user_id: Optional[str] = Header(default=None)):
    try:
        user_id = _require_user(x_user_id)
    except StatementError as exc:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())
    return {"profiles": [p.model_dump() for p in profile_store.list(user_id)]}


@app.post("/password-profiles")
def create_password_profile(request: ProfileRequest, x_user_id: Optional[str] = Header(default=None)):
    try:
        user_id = _require_user(x_user_id)
    except StatementError as exc:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())
    if not request.name.strip() or not request.password:
        return JSONResponse(status_code=400, content={"error": "Name and password required"})
    profile = profile_store.add(user_id, request.name.strip(), request.password)
    return {"success": True, "profile": profile.model_dump()}


@app.delete("/password-profiles")
def delete_password_profile(id: Optional[str] = None, x_user_id: Optional[str] = Header(default=None)):
    try:
        user_id = _require_user(x_user_id)
    except StatementError as exc:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())
    if not id:
        return JSONResponse(status_code=400, content={"error": "Profile ID required"})
    if not profile_store.delete(user_id, id):
        return JSONResponse(status_code=404, content={"error": "Profile not found"})
    return {"success": True}


if __name__ == "__main__":
    uvicorn.run("statement_service.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
