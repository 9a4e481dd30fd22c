"""Receipt Formatter: printable/shareable receipts for a single sale.

Receipts are rendered from a :class:`ReceiptData` snapshot so formatting never
touches the workbook. Dispatch hands the text receipt to an external chat
client through a URI of the form ``<base><digits>?text=<message>``; the
hand-off happens once and nothing is retried.
"""

from __future__ import annotations

import re
import webbrowser
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from importlib import resources
from typing import Callable, List, Optional
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from jinja2 import Template

from . import core_logic, log

RECEIPT_WIDTH = 40
DATE_FORMAT = "%d/%m/%Y %I:%M %p"
CENT = Decimal("0.01")
RECEIPT_TEMPLATE = "receipt.html"


class DispatchPreconditionError(core_logic.BusinessRuleViolation):
    """Raised when a receipt cannot be sent because the customer has no phone number."""


class DispatchError(RuntimeError):
    """Raised when the external opener refuses the dispatch URI."""


@dataclass(frozen=True)
class ReceiptData:
    """Everything a receipt shows, denormalized from the sale and its references."""

    transaction_id: str
    created_at: datetime
    customer_name: str
    customer_phone: Optional[str]
    item_name: str
    category_name: Optional[str]
    quantity: Decimal
    rate: Decimal
    pricing_mode: str
    unit: str
    total_amount: Decimal
    paid_amount: Decimal
    status: str
    notes: Optional[str]

    @property
    def receipt_number(self) -> str:
        return core_logic.receipt_number(self.transaction_id)

    @property
    def balance(self) -> Decimal:
        return self.total_amount - self.paid_amount

    @property
    def quantity_label(self) -> str:
        return core_logic.unit_label(self.pricing_mode, self.unit)

    @property
    def rate_label(self) -> str:
        return core_logic.unit_label(self.pricing_mode, self.unit, plural=False)


def build_receipt_data(context: core_logic.RuntimeContext, transaction_id: str) -> ReceiptData:
    """Collect the sale, its customer, item and category into a :class:`ReceiptData`.

    Raises:
        MissingReferenceError: If the sale or one of its references is unknown.
    """

    sale = core_logic.get_sale_transaction(context, transaction_id)
    customer = core_logic.get_customer(context, sale.customer_id)
    item = core_logic.get_item(context, sale.item_id)
    category = core_logic.get_category(context, sale.category_id) if sale.category_id else None
    unit = category.unit if category is not None else item.unit

    return ReceiptData(
        transaction_id=sale.transaction_id,
        created_at=_parse_timestamp(sale.created_at),
        customer_name=customer.name,
        customer_phone=customer.phone,
        item_name=item.name,
        category_name=category.name if category is not None else None,
        quantity=sale.quantity,
        rate=sale.rate,
        pricing_mode=sale.pricing_mode,
        unit=unit,
        total_amount=sale.total_amount,
        paid_amount=sale.paid_amount,
        status=sale.status,
        notes=sale.notes,
    )


def _parse_timestamp(raw: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        log.warning("Unparseable receipt timestamp %r; using current time", raw)
        return datetime.now(UTC)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def format_money(amount: Decimal, currency: str) -> str:
    """Two-decimal currency figure, e.g. ``₹500.00``."""

    return f"{currency}{amount.quantize(CENT, rounding=ROUND_HALF_UP)}"


def format_timestamp(moment: datetime, tz: str) -> str:
    """Render ``moment`` in the named time zone (unknown zones fall back to UTC)."""

    try:
        zone = ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        log.warning("Unknown time zone '%s'; formatting receipt date in UTC", tz)
        zone = ZoneInfo("UTC")
    return moment.astimezone(zone).strftime(DATE_FORMAT)


def _balance_marker(data: ReceiptData) -> str:
    if data.balance > 0:
        return "BALANCE DUE"
    if data.balance < 0:
        return "CREDIT"
    return "PAID IN FULL"


def format_receipt_text(
    data: ReceiptData,
    *,
    business_name: str,
    currency: str,
    tz: str = "UTC",
) -> str:
    """Render the fixed plain-text receipt layout.

    Currency figures always carry exactly two decimals. A positive balance is
    flagged ``BALANCE DUE``; a settled sale shows ``0.00`` and ``PAID IN FULL``.
    """

    rule = "-" * RECEIPT_WIDTH
    lines: List[str] = [
        business_name.center(RECEIPT_WIDTH).rstrip(),
        f"Receipt #{data.receipt_number}".center(RECEIPT_WIDTH).rstrip(),
        format_timestamp(data.created_at, tz).center(RECEIPT_WIDTH).rstrip(),
        rule,
        f"Customer: {data.customer_name}",
    ]
    if data.customer_phone:
        lines.append(f"Phone: {data.customer_phone}")
    lines.append(rule)
    lines.append(f"Product: {data.item_name}")
    if data.category_name:
        lines.append(f"Category: {data.category_name}")
    lines.append(f"Quantity: {core_logic.format_quantity(data.quantity)} {data.quantity_label}")
    lines.append(f"Rate: {format_money(data.rate, currency)}/{data.rate_label}")
    lines.append(rule)
    lines.append(f"Total Amount: {format_money(data.total_amount, currency)}")
    lines.append(f"Paid Amount: {format_money(data.paid_amount, currency)}")
    lines.append(f"Balance: {format_money(data.balance, currency)}")
    lines.append(_balance_marker(data))
    if data.notes:
        lines.append(rule)
        lines.append(f"Notes: {data.notes}")
    lines.append(rule)
    lines.append("Thank you for your business!".center(RECEIPT_WIDTH).rstrip())
    return "\n".join(lines)


def _load_template(name: str) -> Template:
    source = resources.files(__package__).joinpath("templates").joinpath(name).read_text(encoding="utf-8")
    return Template(source, autoescape=True)


def format_receipt_html(
    data: ReceiptData,
    *,
    business_name: str,
    currency: str,
    tz: str = "UTC",
) -> str:
    """Render the receipt as a standalone HTML document.

    The layout lives in ``templates/receipt.html``; values are autoescaped.
    """

    template = _load_template(RECEIPT_TEMPLATE)
    return template.render(
        business_name=business_name,
        receipt_number=data.receipt_number,
        created_at=format_timestamp(data.created_at, tz),
        customer_name=data.customer_name,
        customer_phone=data.customer_phone,
        item_name=data.item_name,
        category_name=data.category_name,
        quantity=core_logic.format_quantity(data.quantity),
        quantity_label=data.quantity_label,
        rate=format_money(data.rate, currency),
        rate_label=data.rate_label,
        total_amount=format_money(data.total_amount, currency),
        paid_amount=format_money(data.paid_amount, currency),
        balance=format_money(data.balance, currency),
        balance_due=data.balance > 0,
        marker=_balance_marker(data),
        notes=data.notes,
    )


def normalize_phone(phone: Optional[str], *, country_code: str = "") -> str:
    """Strip a phone number to digits, prefixing ``country_code`` to 10-digit numbers.

    Raises:
        DispatchPreconditionError: If no digits remain.
    """

    digits = re.sub(r"\D", "", phone or "")
    if not digits:
        raise DispatchPreconditionError("Customer has no phone number on record")
    code = re.sub(r"\D", "", country_code)
    if code and len(digits) == 10:
        digits = f"{code}{digits}"
    return digits


def build_dispatch_uri(message: str, phone: str, *, base_url: str, country_code: str = "") -> str:
    """Return ``<base_url><digits>?text=<url-encoded message>``."""

    return f"{base_url}{normalize_phone(phone, country_code=country_code)}?text={quote(message, safe='')}"


def dispatch_receipt(
    context: core_logic.RuntimeContext,
    transaction_id: str,
    *,
    phone: Optional[str] = None,
    opener: Callable[[str], bool] = webbrowser.open,
) -> str:
    """Hand the text receipt for a sale to the external chat client.

    Args:
        phone: Alternate destination; the customer's phone on file is used
            when omitted or blank.

    Returns:
        str: The dispatch URI that was opened.

    Raises:
        DispatchPreconditionError: If neither ``phone`` nor the customer's
            phone on file is available.
        DispatchError: If ``opener`` reports that the URI could not be opened.
    """

    data = build_receipt_data(context, transaction_id)
    destination = (phone or "").strip() or data.customer_phone
    if not destination:
        log.warning("Receipt dispatch refused for '%s': customer has no phone", transaction_id)
        raise DispatchPreconditionError("Customer has no phone number on record")

    settings = context.settings
    message = format_receipt_text(
        data,
        business_name=settings.business_name,
        currency=settings.currency_symbol,
        tz=settings.timezone,
    )
    uri = build_dispatch_uri(
        message,
        destination,
        base_url=settings.dispatch_base_url,
        country_code=settings.default_country_code,
    )
    if not opener(uri):
        log.error("Dispatch opener refused the receipt URI for '%s'", transaction_id)
        raise DispatchError(f"Could not open dispatch URI for receipt #{data.receipt_number}")

    log.info("Dispatched receipt #%s to %s", data.receipt_number, destination)
    return uri


__all__ = [
    "DispatchError",
    "DispatchPreconditionError",
    "ReceiptData",
    "build_dispatch_uri",
    "build_receipt_data",
    "dispatch_receipt",
    "format_money",
    "format_receipt_html",
    "format_receipt_text",
    "format_timestamp",
    "normalize_phone",
]
