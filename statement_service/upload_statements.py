import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional

import requests

from .models import Transaction
from .orchestrator import (
    BatchState,
    HttpEndpoints,
    LocalEndpoints,
    PasswordChoice,
    UploadOrchestrator,
    format_time,
)
from .storage import BatchPersister

logger = logging.getLogger(__name__)

COLUMNS = ["date", "type", "amount", "description", "category", "bankName"]
HEADERS = {
    "date": "Date",
    "type": "Type",
    "amount": "Amount",
    "description": "Description",
    "category": "Category",
    "bankName": "Bank",
}


def format_table(rows: List[dict]) -> str:
    data = [[str(r.get(c) if r.get(c) is not None else "") for c in COLUMNS] for r in rows]
    widths = []
    for i, c in enumerate(COLUMNS):
        w = len(HEADERS[c])
        for row in data:
            w = min(60, max(w, len(row[i])))
        widths.append(w)
    sep = "+-" + "-+-".join("-" * w for w in widths) + "-+"
    out = [sep]
    out.append("| " + " | ".join(HEADERS[c].ljust(widths[i]) for i, c in enumerate(COLUMNS)) + " |")
    out.append(sep)
    for row in data:
        clipped = [row[i][: widths[i]] for i in range(len(COLUMNS))]
        out.append("| " + " | ".join(clipped[i].ljust(widths[i]) for i in range(len(COLUMNS))) + " |")
    out.append(sep)
    return "\n".join(out)


class ProgressPrinter:
    """Prints a line whenever a file moves to a new stage."""

    def __init__(self, clock_remaining: Callable[[], int], emit: Callable[[str], None] = print) -> None:
        self._seen: Dict[str, str] = {}
        self._remaining = clock_remaining
        self._emit = emit

    def __call__(self, state: BatchState) -> None:
        total = len(state.files)
        for f in state.files:
            stage = f.stage.value
            if self._seen.get(f.id) == stage:
                continue
            self._seen[f.id] = stage
            line = f"[{state.finished_count}/{total}] {f.fileName}: {stage}"
            if f.estimatedTransactions:
                line += f" (~{f.estimatedTransactions} transactions)"
            if f.error:
                line += f" - {f.error}"
            if state.total_estimated_seconds:
                line += f" | eta {format_time(self._remaining())}"
            self._emit(line)


def post_transactions(base_url: str, user_id: str, token: Optional[str] = None) -> Callable[[List[Transaction]], None]:
    def save(transactions: List[Transaction]) -> None:
        headers = {"X-User-Id": user_id}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        resp = requests.post(
            base_url.rstrip("/") + "/transactions",
            headers=headers,
            json={"transactions": [t.model_dump() for t in transactions]},
            timeout=60,
        )
        resp.raise_for_status()

    return save


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Upload statements one at a time and print parsed transactions.")
    ap.add_argument("files", nargs="+", help="Statement PDF files")
    ap.add_argument("--url", default="http://localhost:8000", help="Statement service base URL")
    ap.add_argument("--local", action="store_true", help="Run the pipeline in-process instead of over HTTP")
    ap.add_argument("--token", default="", help="Bearer token")
    ap.add_argument("--password", default="", help="Password shared by every file")
    ap.add_argument("--parser", default=None, help="Parser to use: ai or kotak")
    ap.add_argument("--user", default="", help="Save the batch for this user id")
    ap.add_argument("--save-json", default="", help="Optional output path for the transactions JSON")
    return ap


async def run(args: argparse.Namespace) -> List[Transaction]:
    if args.local:
        endpoints = LocalEndpoints(parser=args.parser)
    else:
        endpoints = HttpEndpoints(args.url, token=args.token or None, parser=args.parser)

    persister = None
    if args.user and not args.local:
        persister = BatchPersister(post_transactions(args.url, args.user, args.token or None))

    orchestrator = UploadOrchestrator(endpoints, on_complete=persister)
    orchestrator.subscribe(ProgressPrinter(lambda: orchestrator.remaining_seconds))
    orchestrator.add_files([(Path(p).name, Path(p).read_bytes()) for p in args.files])
    transactions = await orchestrator.submit_passwords(PasswordChoice(password=args.password))

    if persister is not None and persister.session_transactions:
        logger.warning(
            "Could not save to the service; %d transactions kept locally.", len(persister.session_transactions)
        )
    return transactions


def main() -> None:
    args = build_parser().parse_args()
    transactions = asyncio.run(run(args))
    rows = [t.model_dump() for t in transactions]
    print(f"transactions={len(rows)}")
    if rows:
        print(format_table(rows))
    else:
        print("No transactions.")
    if args.save_json:
        with open(args.save_json, "w", encoding="utf-8") as f:
            json.dump(rows, f, indent=2)
        print(f"\nSaved JSON: {args.save_json}")


if __name__ == "__main__":
    main()
