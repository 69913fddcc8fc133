from collections import OrderedDict
from datetime import date
from typing import Dict, Iterable, List, Tuple

from .models import CategoryData, KPIMetrics, MonthlyData, Transaction

CATEGORY_COLORS = [
    "#10b981", "#8b5cf6", "#3b82f6", "#f59e0b", "#ef4444",
    "#ec4899", "#06b6d4", "#84cc16", "#f97316", "#64748b",
]
NO_TOP_CATEGORY = "N/A"


def _parse_date(value: str) -> date:
    return date.fromisoformat(value[:10])


def _month_label(d: date) -> str:
    return d.strftime("%b %Y")


def calculate_monthly_totals(transactions: Iterable[Transaction]) -> List[MonthlyData]:
    """Per-month spending and income, oldest month first."""
    months: Dict[Tuple[int, int], MonthlyData] = {}
    for t in transactions:
        d = _parse_date(t.date)
        key = (d.year, d.month)
        data = months.get(key)
        if data is None:
            data = months[key] = MonthlyData(month=_month_label(d))
        data.transactionCount += 1
        if t.type == "debit":
            data.totalSpending += t.amount
        else:
            data.totalIncome += t.amount
        data.netFlow = data.totalIncome - data.totalSpending
    return [months[key] for key in sorted(months)]


def calculate_category_breakdown(transactions: Iterable[Transaction]) -> List[CategoryData]:
    totals: "OrderedDict[str, float]" = OrderedDict()
    total_spending = 0.0
    for t in transactions:
        if t.type != "debit":
            continue
        totals[t.category] = totals.get(t.category, 0.0) + t.amount
        total_spending += t.amount

    breakdown = [
        CategoryData(
            category=category,
            amount=amount,
            percentage=(amount / total_spending) * 100 if total_spending > 0 else 0.0,
            color=CATEGORY_COLORS[index % len(CATEGORY_COLORS)],
        )
        for index, (category, amount) in enumerate(totals.items())
    ]
    breakdown.sort(key=lambda c: c.amount, reverse=True)
    return breakdown


def calculate_kpi_metrics(transactions: Iterable[Transaction]) -> KPIMetrics:
    items = list(transactions)
    total_spending = sum(t.amount for t in items if t.type == "debit")
    total_income = sum(t.amount for t in items if t.type != "debit")
    breakdown = calculate_category_breakdown(items)
    return KPIMetrics(
        totalSpending=total_spending,
        totalIncome=total_income,
        netCashFlow=total_income - total_spending,
        transactionCount=len(items),
        avgTransactionSize=(total_spending + total_income) / len(items) if items else 0.0,
        topCategory=breakdown[0].category if breakdown else NO_TOP_CATEGORY,
    )


def _group_indian(integer_part: str) -> str:
    # 12345678 -> 1,23,45,678
    if len(integer_part) <= 3:
        return integer_part
    head, tail = integer_part[:-3], integer_part[-3:]
    groups = []
    while len(head) > 2:
        groups.insert(0, head[-2:])
        head = head[:-2]
    if head:
        groups.insert(0, head)
    return ",".join(groups + [tail])


def format_currency(amount: float, compact: bool = False) -> str:
    if compact:
        if abs(amount) >= 10_000_000:
            return f"₹{amount / 10_000_000:.2f}Cr"
        if abs(amount) >= 100_000:
            return f"₹{amount / 100_000:.2f}L"
        if abs(amount) >= 1000:
            return f"₹{amount / 1000:.1f}K"
    sign = "-" if amount < 0 else ""
    integer_part, fraction = f"{abs(amount):.2f}".split(".")
    return f"₹{sign}{_group_indian(integer_part)}.{fraction}"


def get_date_range(transactions: Iterable[Transaction]) -> str:
    dates = [_parse_date(t.date) for t in transactions]
    if not dates:
        return "No data"
    first, last = min(dates), max(dates)
    if (first.year, first.month) == (last.year, last.month):
        return _month_label(first)
    return f"{_month_label(first)} - {_month_label(last)}"
