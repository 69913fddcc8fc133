"""
Rule-based statement parser.

A record starts on a line that begins with a date; the physical lines that
follow without a date are wrapped parts of the same record and are joined onto
it. Inside a record the last decimal token is the running balance and earlier
ones are candidate transaction amounts, with an explicit +/- prefix deciding
the direction. Records without a usable amount are headers or summaries and
are dropped.

Known failure modes: a statement that prints a trailing zero balance or two
amount columns on one line can have its amount and balance swapped, and a
description containing a decimal figure becomes an amount candidate.
"""
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, NamedTuple, Optional, Pattern, Tuple

from .models import AccountSummary, Category, Transaction, TransactionType

AMOUNT_REGEX = re.compile(r"[-+]?[\d,]+\.\d{2}")


@dataclass(frozen=True)
class BankFormat:
    name: str
    date_regex: Pattern[str]
    date_formats: Tuple[str, ...]
    reference_regex: Pattern[str]
    skip_markers: Tuple[str, ...]
    credit_markers: Tuple[str, ...]
    label_regex: Pattern[str]
    description_prefixes: Tuple[str, ...]


KOTAK = BankFormat(
    name="Kotak Mahindra Bank",
    date_regex=re.compile(r"^(\d{2}\s+[A-Za-z]{3},\s+\d{4})"),
    date_formats=("%d %b, %Y",),
    reference_regex=re.compile(r"(UPI-\d+|MB-\d+)"),
    skip_markers=("OPENING BALANCE", "CLOSING BALANCE"),
    credit_markers=("RECEIVED",),
    label_regex=re.compile(r"CHEQUE/REFERENCE#|DEBIT|CREDIT|BALANCE"),
    description_prefixes=("UPI/", "MB:"),
)

BANK_FORMATS: Dict[str, BankFormat] = {"kotak": KOTAK}

# First match wins, so more specific rules sit above broader ones.
CATEGORY_RULES: List[Tuple[Category, Pattern[str]]] = [
    (Category.SUBSCRIPTIONS, re.compile(r"netflix|spotify|amazon prime|hotstar|youtube premium", re.I)),
    (
        Category.FOOD,
        re.compile(
            r"pizza|sweets|shake|cafe|ice cream|food|swiggy|zomato|restaurant|taco bell"
            r"|donald|grill|dairy|blinkit|madan sw",
            re.I,
        ),
    ),
    (Category.SHOPPING, re.compile(r"amazon|flipkart|shop|provisi|mobile|hardware", re.I)),
    (Category.HEALTH, re.compile(r"hospital|medical|pharmacy|medicos", re.I)),
    (Category.BILLS, re.compile(r"airtel|\bjio\b|electricity|\bgas\b|water|bill|recharge|broadband", re.I)),
    (Category.TRAVEL, re.compile(r"uber|\bola\b|auto care|petrol|fuel|metro|irctc", re.I)),
    (Category.ENTERTAINMENT, re.compile(r"movie|cinema|pvr|inox|bookmyshow|gaming", re.I)),
    (Category.TRANSFER, re.compile(r"received from|trf to|neft|imps|rtgs", re.I)),
    (Category.INCOME, re.compile(r"salary|credit", re.I)),
]


class ParsedLine(NamedTuple):
    date: str
    merchant: str
    description: str
    amount: float
    type: TransactionType
    category: Category
    reference: str
    channel: Optional[str]
    balance: Optional[float]


def categorize(description: str, rules: List[Tuple[Category, Pattern[str]]] = CATEGORY_RULES) -> Category:
    for category, pattern in rules:
        if pattern.search(description):
            return category
    return Category.OTHER


def parse_amount_token(token: str) -> Optional[float]:
    s = token.replace(",", "").lstrip("+-").strip()
    try:
        return float(s)
    except ValueError:
        return None


def parse_statement_date(value: str, fmt: BankFormat = KOTAK) -> Optional[str]:
    normalized = " ".join(value.split())
    for date_format in fmt.date_formats:
        try:
            return datetime.strptime(normalized, date_format).date().isoformat()
        except ValueError:
            continue
    return None


def join_records(text: str, fmt: BankFormat = KOTAK) -> List[str]:
    """Group physical lines into logical records, one per dated line."""
    records: List[str] = []
    current = ""
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if fmt.date_regex.match(stripped):
            if current:
                records.append(current)
            current = stripped
        elif current:
            current += " " + stripped
    if current:
        records.append(current)
    return records


def _pick_amount(candidates: List[str], record: str, fmt: BankFormat) -> Tuple[float, TransactionType]:
    amount = 0.0
    tx_type = TransactionType.DEBIT
    for token in candidates:
        value = parse_amount_token(token)
        if value is None:
            continue
        if token.startswith("+"):
            amount, tx_type = value, TransactionType.CREDIT
        elif token.startswith("-"):
            amount, tx_type = value, TransactionType.DEBIT
        elif value > 0:
            if "+" in record or any(marker in record for marker in fmt.credit_markers):
                tx_type = TransactionType.CREDIT
            amount = value
    return amount, tx_type


def _clean_description(body: str, reference: str, fmt: BankFormat) -> str:
    desc = body.replace(reference, " ") if reference else body
    desc = AMOUNT_REGEX.sub(" ", desc)
    desc = fmt.label_regex.sub(" ", desc)
    desc = " ".join(desc.split())
    for prefix in fmt.description_prefixes:
        if desc.startswith(prefix):
            desc = desc[len(prefix):].strip()
    return desc


def parse_record(record: str, fmt: BankFormat = KOTAK) -> Optional[ParsedLine]:
    match = fmt.date_regex.match(record)
    if not match:
        return None
    if any(marker in record for marker in fmt.skip_markers):
        return None
    date_value = parse_statement_date(match.group(1), fmt)
    if not date_value:
        return None

    body = record[match.end():]
    ref_match = fmt.reference_regex.search(body)
    reference = ref_match.group(1) if ref_match else ""
    scan = body.replace(reference, " ") if reference else body

    tokens = AMOUNT_REGEX.findall(scan)
    if len(tokens) < 2:
        return None
    amount, tx_type = _pick_amount(tokens[:-1], record, fmt)
    if amount <= 0:
        return None

    description = _clean_description(body, reference, fmt)
    merchant = description.split("/", 1)[0].strip() or "Unknown"

    return ParsedLine(
        date=date_value,
        merchant=merchant,
        description=description,
        amount=round(amount, 2),
        type=tx_type,
        category=categorize(description),
        reference=reference,
        channel=reference.split("-", 1)[0] if reference else None,
        balance=parse_amount_token(tokens[-1]),
    )


def parse_statement(text: str, fmt: BankFormat = KOTAK, statement_id: str = "stmt") -> List[Transaction]:
    transactions: List[Transaction] = []
    for record in join_records(text, fmt):
        parsed = parse_record(record, fmt)
        if parsed is None:
            continue
        transactions.append(
            Transaction(
                id=f"{statement_id}-{len(transactions)}",
                date=parsed.date,
                description=parsed.merchant,
                amount=parsed.amount,
                type=parsed.type,
                category=parsed.category.value,
                bankName=fmt.name,
            )
        )
    return transactions


def _money(value: str) -> float:
    return float(value.replace(",", ""))


def parse_account_summary(text: str) -> AccountSummary:
    summary = AccountSummary()

    m = re.search(r"Account #(\d+)", text)
    if m:
        summary.accountNumber = m.group(1)
    m = re.search(r"Account Holder\s*[:\-]\s*([^\n]+)", text, re.I)
    if m:
        summary.holderName = m.group(1).strip()
    m = re.search(r"Branch\s*[:\-]\s*([^\n]+)", text, re.I)
    if m:
        summary.branch = m.group(1).strip()
    m = re.search(r"(\d{2}\s+\w{3},\s+\d{4})\s*-\s*(\d{2}\s+\w{3},\s+\d{4})", text)
    if m:
        summary.statementPeriod = f"{m.group(1)} - {m.group(2)}"
    m = re.search(r"Opening balance\s*([\d,]+\.\d{2})", text)
    if m:
        summary.openingBalance = _money(m.group(1))
    m = re.search(r"Closing balance\s*([\d,]+\.\d{2})", text)
    if m:
        summary.closingBalance = _money(m.group(1))
    m = re.search(r"Total debited\s*(\d+)\s+Transactions\s*-\s*([\d,]+\.\d{2})", text)
    if m:
        summary.debitCount = int(m.group(1))
        summary.totalDebited = _money(m.group(2))
    m = re.search(r"Total credited\s*(\d+)\s+Transactions\s*\+\s*([\d,]+\.\d{2})", text)
    if m:
        summary.creditCount = int(m.group(1))
        summary.totalCredited = _money(m.group(2))
    return summary
