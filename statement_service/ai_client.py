import asyncio
import json
import logging
import re
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from openai import AsyncOpenAI

from . import config
from .models import CATEGORY_NAMES, Category, CountResult, ExtractionResult, Transaction
from .retry import (
    COUNT_MAX_ATTEMPTS,
    COUNT_TRANSIENT_MARKERS,
    EXTRACTION_MAX_ATTEMPTS,
    EXTRACTION_TRANSIENT_MARKERS,
    count_backoff,
    extraction_backoff,
    is_transient,
)

logger = logging.getLogger(__name__)

ModelTransport = Callable[[str], Awaitable[str]]
Sleep = Callable[[float], Awaitable[Any]]

_CATEGORY_GUIDE = (
    '  - "Food & Dining" (restaurants, cafes, food delivery, sweets, ice cream)\n'
    '  - "Shopping" (retail, provisions, mobile shops, general stores)\n'
    '  - "Health" (hospitals, medical stores, pharmacies)\n'
    '  - "Bills & Utilities" (phone recharge, electricity, internet, water)\n'
    '  - "Travel" (auto, cab, petrol, fuel, metro)\n'
    '  - "Transfer" (money received from family/friends, bank transfers)\n'
    '  - "Entertainment" (movies, games, streaming)\n'
    '  - "Subscriptions" (Netflix, Spotify, Amazon Prime)\n'
    '  - "Income" (salary, interest, refunds from employers or banks)\n'
    '  - "Other" (anything that doesn\'t fit above)\n'
)

EXTRACTION_PROMPT = (
    "You are a financial document parser. Analyze the following bank statement text and extract all transactions.\n\n"
    "For each transaction, extract:\n"
    "- date: The transaction date in YYYY-MM-DD format\n"
    "- description: The merchant/payee name (clean, human-readable)\n"
    "- amount: The transaction amount as a positive number\n"
    '- type: Either "debit" (money spent/sent) or "credit" (money received)\n'
    "- category: One of these categories based on the merchant/description:\n"
    + _CATEGORY_GUIDE
    + "\nReturn ONLY a valid JSON array of transactions. No explanations, no markdown, just the JSON array.\n"
    "Example format:\n"
    "[\n"
    '  {"date": "2025-10-01", "description": "Swiggy Food Order", "amount": 456.00, "type": "debit", '
    '"category": "Food & Dining"},\n'
    '  {"date": "2025-10-02", "description": "Salary from TechCorp", "amount": 50000.00, "type": "credit", '
    '"category": "Income"}\n'
    "]\n\n"
    "IMPORTANT:\n"
    "- Extract ALL transactions from the statement\n"
    '- For UPI transactions, extract the merchant name (e.g., "UPI/ROMS PIZZA/..." -> "Roms Pizza")\n'
    '- For transfers like "RECEIVED FROM ATUL SHARMA", the type is "credit"\n'
    '- Amounts with "-" or in DEBIT column are debits\n'
    '- Amounts with "+" or in CREDIT column are credits\n'
    "- Skip opening/closing balance lines, only extract actual transactions\n\n"
    "Bank Statement Text:\n"
)

COUNT_PROMPT = (
    "You are analyzing a bank statement. Count ONLY the number of actual transactions (debits and credits).\n\n"
    "DO NOT count:\n"
    "- Opening balance\n"
    "- Closing balance\n"
    "- Statement headers\n"
    "- Account summaries\n\n"
    "Return ONLY a single number representing the transaction count. No text, no explanation, just the number.\n\n"
    "Bank Statement Text:\n"
)

RECATEGORIZE_PROMPT = (
    "Given these transactions, suggest better categories for each. "
    "Return a JSON array with just the id and new category.\n\n"
    "Categories to choose from:\n"
    + "".join(f"- {name}\n" for name in CATEGORY_NAMES)
    + "\nTransactions:\n{transactions}\n\n"
    'Return format: [{{"id": "xxx", "category": "Food & Dining"}}, ...]\n'
)

NOT_CONFIGURED = "OPENAI_API_KEY not configured."


class OpenAITransport:
    """Sends one prompt to the chat-completions API and returns the reply text."""

    def __init__(self, api_key: str, model: str) -> None:
        self.model = model
        self._client = AsyncOpenAI(api_key=api_key)

    async def __call__(self, prompt: str) -> str:
        resp = await self._client.chat.completions.create(
            model=self.model,
            temperature=0,
            messages=[
                {"role": "system", "content": "You output valid JSON only."},
                {"role": "user", "content": prompt},
            ],
        )
        return resp.choices[0].message.content or ""


def estimate_seconds(count: int) -> int:
    # ~2 seconds of full extraction per transaction, never under 30s.
    return max(30, round(count * 2))


def strip_code_fence(text: str) -> str:
    cleaned = (text or "").strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    if cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_json_array(raw: str) -> List[Any]:
    parsed = json.loads(strip_code_fence(raw))
    if not isinstance(parsed, list):
        raise ValueError(f"expected a JSON array, got {type(parsed).__name__}")
    return parsed


def _to_amount(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return 0.0
    try:
        number = float(str(value).replace(",", "").strip())
    except ValueError:
        return 0.0
    if number != number or number in (float("inf"), float("-inf")):
        return 0.0
    return abs(round(number, 2))


# Formats the model falls back to when it ignores the YYYY-MM-DD instruction.
MODEL_DATE_FORMATS = ("%Y-%m-%d", "%d %b, %Y", "%d %b %Y", "%d/%m/%Y", "%d-%m-%Y", "%Y/%m/%d", "%d-%b-%Y")


def normalize_date(value: Any) -> Optional[str]:
    text = " ".join(str(value or "").split())
    if not text:
        return None
    for date_format in MODEL_DATE_FORMATS:
        try:
            return datetime.strptime(text, date_format).date().isoformat()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text).date().isoformat()
    except ValueError:
        return None


def coerce_transaction(item: Any, batch_id: str, index: int) -> Optional[Transaction]:
    """Build a Transaction from one model row, or None when the row has no usable date."""
    data = item if isinstance(item, dict) else {}
    when = normalize_date(data.get("date"))
    if when is None:
        return None
    return Transaction(
        id=f"{batch_id}-{index}",
        date=when,
        description=str(data.get("description") or "Unknown"),
        amount=_to_amount(data.get("amount")),
        type="credit" if data.get("type") == "credit" else "debit",
        category=Category.coerce(data.get("category")).value,
        bankName="Auto-detected",
    )


class StatementAIClient:
    def __init__(
        self,
        transport: Optional[ModelTransport] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        api_key = config.OPENAI_API_KEY if api_key is None else api_key
        if transport is None and api_key:
            transport = OpenAITransport(api_key, model or config.GPT_MODEL)
        self._transport = transport
        self._sleep = sleep

    @property
    def configured(self) -> bool:
        return self._transport is not None

    async def extract(self, text: str, batch_id: str) -> ExtractionResult:
        """
        Ask the model for every transaction in ``text``.

        Overload and rate-limit failures are retried with exponential backoff;
        a reply that is not a JSON array is returned as a failure straight
        away with the raw reply attached.
        """
        if self._transport is None:
            return ExtractionResult(success=False, error=NOT_CONFIGURED)

        prompt = EXTRACTION_PROMPT + text
        last_error: Optional[Exception] = None
        for attempt in range(1, EXTRACTION_MAX_ATTEMPTS + 1):
            try:
                raw = await self._transport(prompt)
            except Exception as exc:
                last_error = exc
                transient = is_transient(exc, EXTRACTION_TRANSIENT_MARKERS)
                if transient and attempt < EXTRACTION_MAX_ATTEMPTS:
                    wait = extraction_backoff(attempt)
                    logger.warning(
                        "Model retry %d/%d - waiting %.0fs: %s", attempt, EXTRACTION_MAX_ATTEMPTS, wait, exc
                    )
                    await self._sleep(wait)
                    continue
                logger.error("Model extraction failed on attempt %d: %s", attempt, exc)
                return ExtractionResult(success=False, error=str(exc) or "Unknown error", transient=transient)

            try:
                items = parse_json_array(raw)
            except ValueError as exc:
                logger.error("Model reply is not a JSON array: %s", exc)
                return ExtractionResult(
                    success=False,
                    error="Failed to parse AI response as JSON",
                    rawResponse=raw,
                )
            coerced = [coerce_transaction(item, batch_id, i) for i, item in enumerate(items)]
            transactions = [t for t in coerced if t is not None]
            if len(transactions) < len(coerced):
                logger.warning(
                    "Dropped %d model rows without a usable date for %s", len(coerced) - len(transactions), batch_id
                )
            logger.info("Model extracted %d transactions for %s", len(transactions), batch_id)
            return ExtractionResult(success=True, transactions=transactions)

        return ExtractionResult(
            success=False,
            error=str(last_error) if last_error else "Max retries exceeded",
            transient=True,
        )

    async def count(self, text: str) -> CountResult:
        if self._transport is None:
            return CountResult(success=False, error=NOT_CONFIGURED)

        prompt = COUNT_PROMPT + text
        for attempt in range(1, COUNT_MAX_ATTEMPTS + 1):
            try:
                raw = await self._transport(prompt)
            except Exception as exc:
                if is_transient(exc, COUNT_TRANSIENT_MARKERS) and attempt < COUNT_MAX_ATTEMPTS:
                    wait = count_backoff(attempt)
                    logger.warning("Count retry %d/%d - waiting %.0fs", attempt, COUNT_MAX_ATTEMPTS, wait)
                    await self._sleep(wait)
                    continue
                logger.error("Count failed: %s", exc)
                return CountResult(success=False, error=str(exc) or "Count failed")

            digits = re.sub(r"[^0-9]", "", raw or "")
            if not digits:
                return CountResult(success=False, error="Could not parse transaction count")
            count = int(digits)
            return CountResult(success=True, count=count, estimatedSeconds=estimate_seconds(count))

        return CountResult(success=False, error="Max retries exceeded")

    async def recategorize(self, transactions: Sequence[Transaction]) -> List[Transaction]:
        """Relabel categories in one call; any failure returns the input untouched."""
        original = list(transactions)
        if self._transport is None or not original:
            return original
        listing = json.dumps(
            [{"id": t.id, "description": t.description, "currentCategory": t.category} for t in original],
            indent=2,
        )
        try:
            raw = await self._transport(RECATEGORIZE_PROMPT.format(transactions=listing))
            updates = {
                str(u["id"]): u.get("category")
                for u in parse_json_array(raw)
                if isinstance(u, dict) and "id" in u
            }
        except Exception:
            logger.exception("Recategorization failed; keeping original categories")
            return original

        result: List[Transaction] = []
        for t in original:
            category = updates.get(t.id)
            if category in CATEGORY_NAMES:
                t = t.model_copy(update={"category": category})
            result.append(t)
        return result
