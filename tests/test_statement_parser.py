from __future__ import annotations

from datetime import date

import pytest

from statement_service.models import Category, TransactionType
from statement_service.statement_parser import (
    KOTAK,
    categorize,
    join_records,
    parse_account_summary,
    parse_amount_token,
    parse_record,
    parse_statement,
    parse_statement_date,
)


def _kotak_line(day: date, merchant: str, ref: str, amount: str, balance: str) -> str:
    return f"{day:%d %b, %Y} UPI/{merchant}/{ref}/UPI UPI-{ref} {amount} {balance}"


def test_parse_statement_reads_every_dated_record(kotak_statement_text):
    transactions = parse_statement(kotak_statement_text, KOTAK, "stmt")

    assert [t.id for t in transactions] == ["stmt-0", "stmt-1", "stmt-2", "stmt-3"]
    assert [t.description for t in transactions] == [
        "ROMS PIZZA",
        "TAYAL MEDICAL STORE",
        "RECEIVED FROM ATUL SHARMA",
        "SALARY TECHCORP",
    ]
    assert [t.type for t in transactions] == ["debit", "debit", "credit", "credit"]
    assert [t.amount for t in transactions] == [456.0, 250.0, 3000.0, 45000.0]
    assert [t.category for t in transactions] == ["Food & Dining", "Health", "Transfer", "Income"]
    assert all(t.bankName == "Kotak Mahindra Bank" for t in transactions)
    assert transactions[0].date == "2025-10-01"


def test_parsed_totals_match_the_statement_summary(kotak_statement_text):
    transactions = parse_statement(kotak_statement_text)
    summary = parse_account_summary(kotak_statement_text)

    debits = [t.amount for t in transactions if t.type == "debit"]
    credits = [t.amount for t in transactions if t.type == "credit"]
    assert sum(debits) == summary.totalDebited
    assert sum(credits) == summary.totalCredited
    assert len(debits) == summary.debitCount
    assert len(credits) == summary.creditCount


@pytest.mark.parametrize(
    "day,merchant,amount,expected_type",
    [
        (date(2025, 10, 1), "ROMS PIZZA", 456.0, TransactionType.DEBIT),
        (date(2025, 10, 14), "AMAZON PAY INDIA", 2999.5, TransactionType.DEBIT),
        (date(2025, 11, 2), "SPLIT REFUND", 1200.0, TransactionType.CREDIT),
    ],
)
def test_generated_line_round_trips(day, merchant, amount, expected_type):
    sign = "+" if expected_type == TransactionType.CREDIT else "-"
    line = _kotak_line(day, merchant, "529300001234", f"{sign}{amount:,.2f}", "50,000.00")

    parsed = parse_record(line)

    assert parsed is not None
    assert parsed.date == day.isoformat()
    assert parsed.merchant == merchant
    assert parsed.amount == amount
    assert parsed.type == expected_type
    assert parsed.reference == "UPI-529300001234"
    assert parsed.channel == "UPI"
    assert parsed.balance == 50000.0


def test_opening_and_closing_balance_rows_are_skipped():
    text = "\n".join(
        [
            "01 Oct, 2025 OPENING BALANCE 0.00 10,456.00",
            "31 Oct, 2025 CLOSING BALANCE 0.00 10,456.00",
        ]
    )
    assert parse_statement(text) == []


def test_wrapped_lines_join_onto_the_dated_record():
    text = "Date Narration Balance\n01 Oct, 2025 UPI/ROMS PIZZA/5293\n12345678/UPI UPI-529312345678 -456.00 10,000.00\n"

    records = join_records(text)

    assert records == ["01 Oct, 2025 UPI/ROMS PIZZA/5293 12345678/UPI UPI-529312345678 -456.00 10,000.00"]


def test_records_without_a_usable_amount_are_dropped():
    assert parse_record("01 Oct, 2025 UPI/ONLY BALANCE UPI-1234 10,000.00") is None
    assert parse_record("01 Oct, 2025 UPI/ZERO/UPI UPI-1234 -0.00 10,000.00") is None
    assert parse_record("not a dated line -10.00 20.00") is None


def test_unsigned_amount_with_credit_marker_is_credit():
    parsed = parse_record("05 Oct, 2025 RECEIVED FROM ATUL SHARMA MB-77881234 3,000.00 12,750.00")

    assert parsed is not None
    assert parsed.type == TransactionType.CREDIT
    assert parsed.amount == 3000.0
    assert parsed.channel == "MB"


@pytest.mark.parametrize(
    "description,expected",
    [
        ("NETFLIX.COM", Category.SUBSCRIPTIONS),
        ("AMAZON PRIME VIDEO", Category.SUBSCRIPTIONS),
        ("AMAZON PAY INDIA", Category.SHOPPING),
        ("SWIGGY INSTAMART", Category.FOOD),
        ("APOLLO PHARMACY", Category.HEALTH),
        ("AIRTEL PREPAID RECHARGE", Category.BILLS),
        ("OLA CABS", Category.TRAVEL),
        ("PVR CINEMAS", Category.ENTERTAINMENT),
        ("NEFT TRF TO SAVINGS", Category.TRANSFER),
        ("SALARY OCT", Category.INCOME),
        ("COCA COLA DISTRIBUTOR", Category.OTHER),
    ],
)
def test_categorize_uses_the_first_matching_rule(description, expected):
    assert categorize(description) == expected


def test_amount_and_date_helpers():
    assert parse_amount_token("+1,23,456.78") == 123456.78
    assert parse_amount_token("-0.50") == 0.5
    assert parse_amount_token("n/a") is None
    assert parse_statement_date("05  Oct,  2025") == "2025-10-05"
    assert parse_statement_date("31 Feb, 2025") is None


def test_account_summary_fields(kotak_statement_text):
    summary = parse_account_summary(kotak_statement_text)

    assert summary.accountNumber == "1234567890"
    assert summary.holderName == "PRIYA VERMA"
    assert summary.branch == "Connaught Place, New Delhi"
    assert summary.statementPeriod == "01 Oct, 2025 - 31 Oct, 2025"
    assert summary.openingBalance == 10456.0
    assert summary.closingBalance == 57750.0


def test_account_summary_is_empty_for_unknown_layout():
    summary = parse_account_summary("nothing useful here")
    assert summary.accountNumber is None
    assert summary.totalDebited is None
