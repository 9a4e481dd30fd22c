"""Tests for dashboard and report aggregates."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from mandi_ledger import core_logic, reports


def _sale(context, customer, item, quantity, paid, *, when=None, customer_id=None):
    return core_logic.record_sale(
        context,
        core_logic.SaleCommand(
            customer_id=customer_id if customer is None else customer.customer_id,
            item_id=item.item_id,
            quantity=Decimal(quantity),
            paid_amount=Decimal(paid),
            timestamp=when,
        ),
    )


@pytest.fixture
def ledger(runtime_context, ravi, mango):
    """Two customers, two items and one cancelled sale spread over three days."""

    suresh = core_logic.create_customer(runtime_context, "Suresh")
    apple = core_logic.add_item(runtime_context, "Apple", Decimal("120"), available_stock=Decimal("4"))

    _sale(runtime_context, ravi, mango, "10", "300", when=datetime(2026, 10, 17, 8, tzinfo=UTC))
    _sale(runtime_context, suresh, apple, "2", "240", when=datetime(2026, 10, 18, 8, tzinfo=UTC))
    dropped = _sale(runtime_context, suresh, mango, "4", "0", when=datetime(2026, 10, 18, 9, tzinfo=UTC))
    core_logic.cancel_sale(runtime_context, dropped.transaction_id)
    _sale(runtime_context, ravi, apple, "1", "0", when=datetime(2026, 10, 19, 8, tzinfo=UTC))
    return {"ravi": ravi, "suresh": suresh, "apple": apple, "mango": mango}


def test_dashboard_summary_excludes_cancelled_sales(runtime_context, ledger):
    """Money totals ignore cancelled sales; counts and balances reflect the ledger."""

    summary = reports.dashboard_summary(runtime_context, recent=2)

    assert summary.total_revenue == Decimal("860")
    assert summary.total_collected == Decimal("540")
    assert summary.total_pending == Decimal("320")
    assert summary.status_counts == {"pending": 2, "completed": 1, "cancelled": 1}
    assert summary.customer_count == 2
    assert summary.customers_with_balance == 1
    assert summary.outstanding_balance == Decimal("320")
    assert [sale.created_at[:10] for sale in summary.recent_sales] == ["2026-10-19", "2026-10-18"]
    assert [entry.name for entry in summary.low_stock] == ["Apple"]


def test_dashboard_counts_only_visible_customers(runtime_context, ledger, mango):
    """Hidden cash-sale customers are not counted as customers."""

    _sale(runtime_context, None, mango, "1", "50", customer_id=None)

    assert reports.dashboard_summary(runtime_context).customer_count == 2


def test_daily_sales_window(runtime_context, ledger):
    """Each day of the window is reported oldest first, empty days as zeros."""

    report = reports.daily_sales(runtime_context, days=4, today=date(2026, 10, 19))

    assert [row.day for row in report] == [
        date(2026, 10, 16),
        date(2026, 10, 17),
        date(2026, 10, 18),
        date(2026, 10, 19),
    ]
    assert [row.revenue for row in report] == [Decimal("0"), Decimal("500"), Decimal("240"), Decimal("120")]
    assert [row.pending for row in report] == [Decimal("0"), Decimal("200"), Decimal("0"), Decimal("120")]
    assert [row.transactions for row in report] == [0, 1, 1, 1]


def test_daily_sales_rejects_empty_window(runtime_context):
    """The window must cover at least one day."""

    with pytest.raises(ValueError):
        reports.daily_sales(runtime_context, days=0)


def test_item_sales_ranked_by_revenue(runtime_context, ledger):
    """Items are ranked by revenue with quantities summed."""

    rows = reports.item_sales(runtime_context)

    assert [(row.item_name, row.quantity, row.revenue) for row in rows] == [
        ("Mango", Decimal("10"), Decimal("500")),
        ("Apple", Decimal("3"), Decimal("360")),
    ]


def test_top_customers(runtime_context, ledger):
    """Customers are ranked by revenue and report what they still owe."""

    ranking = reports.top_customers(runtime_context, limit=1)

    assert len(ranking) == 1
    assert ranking[0].customer_name == "Ravi"
    assert ranking[0].revenue == Decimal("620")
    assert ranking[0].outstanding == Decimal("320")


def test_customer_statement_is_consistent(runtime_context, ledger):
    """A statement shows the customer's records and agrees with the stored balance."""

    statement = reports.customer_statement(runtime_context, ledger["suresh"].customer_id)

    assert len(statement.sales) == 2
    assert statement.trays == []
    assert statement.stored_balance == Decimal("0")
    assert statement.is_consistent
