import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from . import config
from .ai_client import StatementAIClient
from .errors import AIExtractionError, UnsupportedFileError
from .models import AccountSummary, CountResult, Transaction
from .pdf_tools import decrypt_pdf, extract_text, load_statement_text
from .statement_parser import BANK_FORMATS, parse_account_summary, parse_statement

logger = logging.getLogger(__name__)

AI_PARSER = "ai"
PARSERS = (AI_PARSER,) + tuple(BANK_FORMATS)
DEFAULT_ESTIMATE_SECONDS = 60


def add_step(steps: List[Dict[str, str]], service: str, status: str, detail: str) -> None:
    steps.append({"service": service, "status": status, "detail": detail})


@dataclass
class StatementResult:
    transactions: List[Transaction]
    text_length: int
    parser: str
    account_summary: Optional[AccountSummary] = None
    notes: List[str] = field(default_factory=list)


def new_statement_id() -> str:
    return f"stmt-{uuid.uuid4().hex[:12]}"


async def process_statement(
    pdf_bytes: bytes,
    password: Optional[str] = None,
    statement_id: Optional[str] = None,
    parser: Optional[str] = None,
    ai_client: Optional[StatementAIClient] = None,
    steps: Optional[List[Dict[str, str]]] = None,
) -> StatementResult:
    """
    Decrypt, extract text and turn one statement into transactions.

    Raises a ``StatementError`` subclass for every failure so the caller can
    map it onto an HTTP status.
    """
    steps = [] if steps is None else steps
    statement_id = statement_id or new_statement_id()
    parser = (parser or config.DEFAULT_PARSER).strip().lower()
    if parser not in PARSERS:
        raise UnsupportedFileError(f"Unknown parser '{parser}'. Expected one of: {', '.join(PARSERS)}")

    if password:
        pdf_bytes = await decrypt_pdf(pdf_bytes, password)
        add_step(steps, "decrypt", "success", f"Decrypted to {len(pdf_bytes)} bytes.")
    else:
        add_step(steps, "decrypt", "skipped", "No password supplied.")

    text = await extract_text(pdf_bytes)
    add_step(steps, "extract_text", "success", f"Extracted {len(text)} characters.")

    notes: List[str] = []
    client = ai_client or StatementAIClient()
    if parser == AI_PARSER and not client.configured:
        logger.info("AI model not configured, falling back to the kotak parser for %s", statement_id)
        notes.append("AI model not configured; used the rule-based Kotak parser instead.")
        parser = "kotak"

    if parser == AI_PARSER:
        result = await client.extract(text, statement_id)
        if not result.success:
            add_step(steps, "ai_extract", "failed", result.error or "unknown error")
            raise AIExtractionError(
                result.error or "Failed to extract transactions",
                transient=result.transient,
                raw_response=result.rawResponse,
            )
        add_step(steps, "ai_extract", "success", f"transactions={len(result.transactions)}")
        return StatementResult(result.transactions, len(text), AI_PARSER, notes=notes)

    fmt = BANK_FORMATS[parser]
    transactions = parse_statement(text, fmt, statement_id)
    add_step(steps, "rule_parse", "success", f"format={fmt.name} transactions={len(transactions)}")
    if not transactions:
        notes.append("No transactions parsed. Statement layout may not match the selected bank format.")
    return StatementResult(
        transactions,
        len(text),
        parser,
        account_summary=parse_account_summary(text),
        notes=notes,
    )


async def estimate_statement(
    pdf_bytes: bytes,
    password: Optional[str] = None,
    ai_client: Optional[StatementAIClient] = None,
) -> CountResult:
    text = await load_statement_text(pdf_bytes, password)
    return await (ai_client or StatementAIClient()).count(text)


def count_response(result: CountResult) -> Dict[str, object]:
    """Body of the count endpoint; a failed count still lets the caller go ahead."""
    if not result.success:
        return {
            "success": False,
            "error": result.error or "Count failed",
            "count": 0,
            "estimatedSeconds": DEFAULT_ESTIMATE_SECONDS,
        }
    return {"success": True, "count": result.count, "estimatedSeconds": result.estimatedSeconds}
