from __future__ import annotations

from typing import List

import pytest

from statement_service.models import Transaction
from tests.factories import RecordingSleep, make_transaction

KOTAK_STATEMENT = """Kotak Mahindra Bank
Account #1234567890
Account Holder: PRIYA VERMA
Branch: Connaught Place, New Delhi
Statement period 01 Oct, 2025 - 31 Oct, 2025
Opening balance10,456.00
Closing balance57,750.00
Total debited2 Transactions-706.00
Total credited2 Transactions+48,000.00
Date Transaction Details Cheque/Reference# Debit Credit Balance
01 Oct, 2025 OPENING BALANCE 10,456.00
01 Oct, 2025 UPI/ROMS PIZZA/529312345678/UPI UPI-529312345678 -456.00 10,000.00
03 Oct, 2025 UPI/TAYAL MEDICAL
STORE/529387654321/UPI UPI-529387654321 -250.00 9,750.00
05 Oct, 2025 RECEIVED FROM ATUL SHARMA MB-77881234 3,000.00 12,750.00
07 Oct, 2025 UPI/SALARY TECHCORP/UPI UPI-529300001111 +45,000.00 57,750.00
31 Oct, 2025 CLOSING BALANCE 57,750.00
"""


@pytest.fixture
def kotak_statement_text() -> str:
    return KOTAK_STATEMENT


@pytest.fixture
def sample_transactions() -> List[Transaction]:
    return [
        make_transaction(0, "2025-09-28", 500.0, "debit", "Food & Dining"),
        make_transaction(1, "2025-10-02", 1500.0, "debit", "Shopping"),
        make_transaction(2, "2025-10-05", 250.0, "debit", "Food & Dining"),
        make_transaction(3, "2025-10-07", 45000.0, "credit", "Income"),
        make_transaction(4, "2024-12-30", 3000.0, "credit", "Transfer"),
        make_transaction(5, "2025-01-15", 750.0, "debit", "Travel"),
    ]


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()
