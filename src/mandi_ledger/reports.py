"""Dashboard and report views derived from the ledger.

All figures are computed from the acting party's cached records; nothing here
writes to the workbook. Cancelled sales are excluded from every money total
but still counted in :func:`payment_status_breakdown`.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from . import core_logic, data_manager, log
from .constants import SaleStatus

ZERO = Decimal("0")


@dataclass(frozen=True)
class LowStockEntry:
    name: str
    available_stock: Decimal
    unit: str


@dataclass(frozen=True)
class DashboardSummary:
    """Headline figures for the acting party's business."""

    total_revenue: Decimal
    total_collected: Decimal
    total_pending: Decimal
    status_counts: Dict[str, int]
    customer_count: int
    customers_with_balance: int
    outstanding_balance: Decimal
    recent_sales: List[data_manager.SaleTransactionRow] = field(default_factory=list)
    low_stock: List[LowStockEntry] = field(default_factory=list)


@dataclass(frozen=True)
class DailySales:
    day: date
    revenue: Decimal
    collected: Decimal
    pending: Decimal
    transactions: int


@dataclass(frozen=True)
class ItemSales:
    item_name: str
    quantity: Decimal
    revenue: Decimal


@dataclass(frozen=True)
class CustomerRanking:
    customer_id: str
    customer_name: str
    revenue: Decimal
    outstanding: Decimal


@dataclass(frozen=True)
class CustomerStatement:
    """Everything recorded against one customer, with both balance figures."""

    customer: data_manager.CustomerRow
    sales: List[data_manager.SaleTransactionRow]
    trays: List[data_manager.TrayTransactionRow]
    stored_balance: Decimal
    expected_balance: Decimal

    @property
    def is_consistent(self) -> bool:
        return self.stored_balance == self.expected_balance


def _billable_sales(context: core_logic.RuntimeContext) -> List[data_manager.SaleTransactionRow]:
    return [
        sale
        for sale in core_logic.list_sale_transactions(context)
        if sale.status != SaleStatus.CANCELLED.value
    ]


def _zone(context: core_logic.RuntimeContext) -> ZoneInfo:
    try:
        return ZoneInfo(context.settings.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        log.warning("Unknown time zone '%s'; reporting in UTC", context.settings.timezone)
        return ZoneInfo("UTC")


def _sale_day(sale: data_manager.SaleTransactionRow, zone: ZoneInfo) -> Optional[date]:
    try:
        created = datetime.fromisoformat(sale.created_at)
    except ValueError:
        log.warning("Skipping sale '%s' with unparseable timestamp %r", sale.transaction_id, sale.created_at)
        return None
    if created.tzinfo is None:
        created = created.replace(tzinfo=ZoneInfo("UTC"))
    return created.astimezone(zone).date()


def dashboard_summary(context: core_logic.RuntimeContext, *, recent: int = 5) -> DashboardSummary:
    """Revenue, collections, pending amounts, customer and stock alerts.

    Args:
        context (RuntimeContext): Runtime context scoped to the acting party.
        recent (int): How many of the newest sales to include.

    Returns:
        DashboardSummary: Aggregates over non-cancelled sales plus customer
            balance statistics and items at or below ``LowStockThreshold``.
    """

    sales = _billable_sales(context)
    revenue = sum((sale.total_amount for sale in sales), ZERO)
    collected = sum((sale.paid_amount for sale in sales), ZERO)

    customers = core_logic.list_customers(context, include_hidden=True)
    visible = [customer for customer in customers if customer.visible]
    owing = [customer for customer in customers if customer.balance > ZERO]

    threshold = context.settings.low_stock_threshold
    low_stock = [
        LowStockEntry(item.name, item.available_stock, item.unit)
        for item in core_logic.list_items(context)
        if item.available_stock <= threshold
    ]
    items_by_id = {item.item_id: item for item in core_logic.list_items(context)}
    for category in core_logic.list_categories(context):
        if category.available_stock <= threshold:
            parent = items_by_id.get(category.item_id)
            label = f"{parent.name} / {category.name}" if parent is not None else category.name
            low_stock.append(LowStockEntry(label, category.available_stock, category.unit))

    summary = DashboardSummary(
        total_revenue=revenue,
        total_collected=collected,
        total_pending=revenue - collected,
        status_counts=payment_status_breakdown(context),
        customer_count=len(visible),
        customers_with_balance=len(owing),
        outstanding_balance=sum((customer.balance for customer in owing), ZERO),
        recent_sales=core_logic.list_sale_transactions(context)[:recent],
        low_stock=low_stock,
    )
    log.debug(
        "Dashboard summary: revenue=%s collected=%s pending=%s",
        summary.total_revenue,
        summary.total_collected,
        summary.total_pending,
    )
    return summary


def daily_sales(
    context: core_logic.RuntimeContext,
    *,
    days: int = 7,
    today: Optional[date] = None,
) -> List[DailySales]:
    """Per-day revenue, collections and pending amounts, oldest day first.

    Days are calendar days in the configured time zone; ``today`` defaults to
    the current date there. Days without sales are reported with zeros.
    """

    if days < 1:
        raise ValueError("days must be at least one")
    zone = _zone(context)
    end = today if today is not None else datetime.now(zone).date()
    window = [end - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
    buckets: Dict[date, List[data_manager.SaleTransactionRow]] = {day: [] for day in window}

    for sale in _billable_sales(context):
        day = _sale_day(sale, zone)
        if day in buckets:
            buckets[day].append(sale)

    report = []
    for day in window:
        bucket = buckets[day]
        revenue = sum((sale.total_amount for sale in bucket), ZERO)
        collected = sum((sale.paid_amount for sale in bucket), ZERO)
        report.append(DailySales(day, revenue, collected, revenue - collected, len(bucket)))
    return report


def item_sales(context: core_logic.RuntimeContext) -> List[ItemSales]:
    """Quantity and revenue per item, highest revenue first."""

    names = {item.item_id: item.name for item in core_logic.list_items(context)}
    totals: Dict[str, Tuple[Decimal, Decimal]] = defaultdict(lambda: (ZERO, ZERO))
    for sale in _billable_sales(context):
        name = names.get(sale.item_id, "Unknown")
        quantity, revenue = totals[name]
        totals[name] = (quantity + sale.quantity, revenue + sale.total_amount)

    rows = [ItemSales(name, quantity, revenue) for name, (quantity, revenue) in totals.items()]
    return sorted(rows, key=lambda row: (-row.revenue, row.item_name))


def payment_status_breakdown(context: core_logic.RuntimeContext) -> Dict[str, int]:
    """Number of sales in each status (every status is present, possibly zero)."""

    counts = {status.value: 0 for status in SaleStatus}
    for sale in core_logic.list_sale_transactions(context):
        counts[sale.status] = counts.get(sale.status, 0) + 1
    return counts


def top_customers(context: core_logic.RuntimeContext, *, limit: int = 5) -> List[CustomerRanking]:
    """Customers ranked by revenue over their non-cancelled sales."""

    revenue: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    outstanding: Dict[str, Decimal] = defaultdict(lambda: ZERO)
    for sale in _billable_sales(context):
        revenue[sale.customer_id] += sale.total_amount
        outstanding[sale.customer_id] += sale.outstanding

    customers = {customer.customer_id: customer for customer in core_logic.list_customers(context, include_hidden=True)}
    rankings = [
        CustomerRanking(
            customer_id=customer_id,
            customer_name=customers[customer_id].name if customer_id in customers else "Unknown",
            revenue=amount,
            outstanding=outstanding[customer_id],
        )
        for customer_id, amount in revenue.items()
    ]
    rankings.sort(key=lambda ranking: (-ranking.revenue, ranking.customer_name))
    return rankings[:limit]


def customer_statement(context: core_logic.RuntimeContext, customer_id: str) -> CustomerStatement:
    """Collect a customer's sales and trays with stored and recomputed balances.

    Raises:
        MissingReferenceError: If the customer is unknown to the acting party.
    """

    customer = core_logic.get_customer(context, customer_id)
    return CustomerStatement(
        customer=customer,
        sales=core_logic.list_sale_transactions(context, customer_id=customer_id),
        trays=core_logic.list_tray_transactions(context, customer_id=customer_id),
        stored_balance=customer.balance,
        expected_balance=core_logic.expected_balance(context, customer_id),
    )


__all__ = [
    "CustomerRanking",
    "CustomerStatement",
    "DailySales",
    "DashboardSummary",
    "ItemSales",
    "LowStockEntry",
    "customer_statement",
    "daily_sales",
    "dashboard_summary",
    "item_sales",
    "payment_status_breakdown",
    "top_customers",
]
