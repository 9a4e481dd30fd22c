"""Business logic layer for the mandi ledger.

This module owns the balance ledger: every operation that changes what a
customer owes goes through here so the customer's running ``balance`` keeps
matching the sum of ``total_amount - paid_amount`` over that customer's
non-cancelled sales and tray transactions. It consumes the Data Access Layer
(DAL) for all I/O and publishes committed changes on the context's
:class:`~mandi_ledger.events.ChangeFeed`.

Multi-write operations run inside a unit of work: each DAL write registers a
compensating undo, the whole unit holds the context lock, and change events
are only published once the unit commits.
"""

from __future__ import annotations

import functools
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    CASH_SALE,
    EXPECTED_SCHEMA_VERSION,
    REFRESH_CUSTOMERS_SIGNAL,
    ItemUnit,
    OverpaymentPolicy,
    PricingMode,
    SaleStatus,
    TrayStatus,
)
from .events import ChangeEvent, ChangeFeed, ChangeType


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced customer, item, category, or transaction is unknown."""


class MissingActorError(BusinessRuleViolation):
    """Raised when no acting party is identified for a data operation."""


class InvalidStatusTransition(BusinessRuleViolation):
    """Raised when a status change is not allowed from the current status."""


class OverpaymentError(BusinessRuleViolation):
    """Raised when the ``reject`` policy refuses a paid amount above the total."""


class LinkedTrayError(BusinessRuleViolation):
    """Raised when a sale committed but its linked tray transaction could not be recorded."""

    def __init__(self, sale: data_manager.SaleTransactionRow, cause: Exception) -> None:
        super().__init__(
            f"Sale '{sale.transaction_id}' was recorded but its tray transaction failed: {cause}"
        )
        self.sale = sale
        self.cause = cause


class LedgerDiscrepancyError(RuntimeError):
    """Raised when a failed write could not be rolled back, leaving the ledger inconsistent."""


_CACHE_BUCKETS = ("customers", "items", "categories", "sales", "trays")

CUSTOMERS_SHEET = data_manager.CUSTOMERS_SHEET
ITEMS_SHEET = data_manager.ITEMS_SHEET
CATEGORIES_SHEET = data_manager.CATEGORIES_SHEET
SALES_SHEET = data_manager.SALES_SHEET
TRAYS_SHEET = data_manager.TRAYS_SHEET


@dataclass(frozen=True)
class RuntimeContext:
    """Injected store handle: settings, workbook, acting party, change feed and caches.

    ``owner_id`` defaults to the ``ActingParty`` from the configuration. One
    context may be shared between threads; writes serialize on ``lock``.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    owner_id: Optional[str] = None
    feed: ChangeFeed = field(default_factory=ChangeFeed, repr=False, compare=False)
    lock: Any = field(default_factory=threading.RLock, repr=False, compare=False)
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.owner_id is None and self.settings.acting_party:
            object.__setattr__(self, "owner_id", self.settings.acting_party)


@dataclass(frozen=True)
class SaleCommand:
    """User intent for creating a sale transaction.

    ``customer_id`` of ``None`` or :data:`~mandi_ledger.constants.CASH_SALE`
    marks a walk-in sale. ``rate`` of ``None`` takes the price from the
    category (when given) or the item according to ``pricing_mode``.
    """

    customer_id: Optional[str]
    item_id: str
    quantity: Decimal
    rate: Optional[Decimal] = None
    paid_amount: Decimal = Decimal("0")
    pricing_mode: PricingMode = PricingMode.PER_KG
    category_id: Optional[str] = None
    number_of_trays: int = 0
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class TrayCommand:
    """User intent for issuing returnable trays to a customer."""

    customer_id: str
    tray_number: str
    weight: Decimal
    rate: Decimal
    paid_amount: Decimal = Decimal("0")
    number_of_trays: int = 1
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class CascadeResult:
    """What a customer deletion removed."""

    customer_id: str
    sale_transaction_ids: List[str]
    tray_transaction_ids: List[str]


@dataclass(frozen=True)
class BalanceDiscrepancy:
    """A customer whose stored balance disagrees with its transactions."""

    customer_id: str
    customer_name: str
    stored: Decimal
    expected: Decimal

    @property
    def difference(self) -> Decimal:
        return self.expected - self.stored


@dataclass
class _UnitOfWork:
    undo: List[Callable[[], Any]] = field(default_factory=list)
    events: List[ChangeEvent] = field(default_factory=list)
    balance_changed: bool = False


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_record_id() -> str:
    """Return a new opaque record identifier (32 hex characters)."""

    return uuid.uuid4().hex


def receipt_number(record_id: str) -> str:
    """Short human-facing reference: the last eight characters, upper-cased."""

    return record_id[-8:].upper()


def format_quantity(quantity: Decimal) -> str:
    """Render a quantity without trailing zeros (``10``, ``2.5``)."""

    text = format(quantity, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def unit_label(pricing_mode: Union[PricingMode, str], unit: Optional[str], *, plural: bool = True) -> str:
    """Label for a quantity: ``kg`` for weight pricing, else the item's discrete unit."""

    if PricingMode(pricing_mode) is PricingMode.PER_KG:
        return ItemUnit.KG.value
    try:
        item_unit = ItemUnit(unit) if unit else ItemUnit.BOX
    except ValueError:
        return str(unit)
    if item_unit is ItemUnit.KG:
        item_unit = ItemUnit.BOX
    return item_unit.plural if plural else item_unit.value


# ---------------------------------------------------------------------------
# Caches
# ---------------------------------------------------------------------------


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after the workbook changed; unknown names are ignored."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_cache(context: RuntimeContext, name: str, loader: Callable[[Workbook], Any], key: str) -> Dict[str, Any]:
    """Populate a bucket with ``all`` rows and a ``by_id`` index on first use."""

    bucket = _get_cache_bucket(context, name)
    if "all" not in bucket:
        rows = list(loader(context.workbook))
        bucket["all"] = rows
        bucket["by_id"] = {getattr(row, key): row for row in rows}
        log.debug("Populated %s cache with %d entries", name, len(rows))
    return bucket


def _customers(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "customers", data_manager.iter_customers, "customer_id")


def _items(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "items", data_manager.iter_items, "item_id")


def _categories(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "categories", data_manager.iter_categories, "category_id")


def _sales(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "sales", data_manager.iter_sale_transactions, "transaction_id")


def _trays(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_cache(context, "trays", data_manager.iter_tray_transactions, "tray_transaction_id")


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------


@contextmanager
def _unit_of_work(context: RuntimeContext, description: str) -> Iterator[_UnitOfWork]:
    """Run a group of writes atomically with respect to this context.

    Writes made through the ``_append``/``_update``/``_delete``/
    ``_increment_balance`` helpers register an undo. If the body raises, the
    undos run newest first and the original exception propagates. Events
    collected on the unit are published only after a clean exit.

    Raises:
        LedgerDiscrepancyError: If an undo itself fails.
    """

    work = _UnitOfWork()
    with context.lock:
        try:
            yield work
        except Exception as exc:
            _rollback(work, description, exc)
            raise
        finally:
            _invalidate_cache(context, *_CACHE_BUCKETS)

    for event in work.events:
        context.feed.publish(event)
    if work.balance_changed:
        context.feed.signal(REFRESH_CUSTOMERS_SIGNAL)


def _rollback(work: _UnitOfWork, description: str, cause: Exception) -> None:
    log.error(
        "%s failed (%s); rolling back %d write(s)",
        description,
        cause,
        len(work.undo),
    )
    failures: List[Exception] = []
    for undo in reversed(work.undo):
        try:
            undo()
        except Exception as undo_exc:
            log.critical(
                "LEDGER DISCREPANCY: rollback of '%s' failed after %s: %s",
                description,
                cause,
                undo_exc,
            )
            failures.append(undo_exc)
    if failures:
        details = "; ".join(str(failure) for failure in failures)
        raise LedgerDiscrepancyError(
            f"{description} failed and {len(failures)} undo step(s) could not be applied: {details}"
        ) from failures[0]


def _serialized(func: Callable[..., Any]) -> Callable[..., Any]:
    """Hold ``context.lock`` from the first read to the last write of ``func``."""

    @functools.wraps(func)
    def wrapper(context: RuntimeContext, *args: Any, **kwargs: Any) -> Any:
        with context.lock:
            return func(context, *args, **kwargs)

    return wrapper


def _append(
    work: _UnitOfWork,
    context: RuntimeContext,
    sheet_name: str,
    key_column: str,
    key_value: str,
    writer: Callable[[Workbook, Any], None],
    record: Any,
) -> None:
    writer(context.workbook, record)
    work.undo.append(lambda: data_manager.delete_rows(context.workbook, sheet_name, key_column, [key_value]))


def _update(
    work: _UnitOfWork,
    context: RuntimeContext,
    sheet_name: str,
    key_column: str,
    key_value: str,
    field_values: Dict[str, Any],
) -> None:
    previous = data_manager.update_row(
        context.workbook, sheet_name, key_column, key_value, field_values=field_values
    )
    work.undo.append(
        lambda: data_manager.update_row(
            context.workbook, sheet_name, key_column, key_value, field_values=previous
        )
    )


def _delete(
    work: _UnitOfWork,
    context: RuntimeContext,
    sheet_name: str,
    key_column: str,
    key_values: List[str],
) -> data_manager.RemovedRows:
    removed = data_manager.delete_rows(context.workbook, sheet_name, key_column, key_values)
    if removed:
        work.undo.append(lambda: data_manager.restore_rows(context.workbook, sheet_name, removed))
    return removed


def _increment_balance(
    work: _UnitOfWork,
    context: RuntimeContext,
    customer: data_manager.CustomerRow,
    delta: Decimal,
) -> data_manager.CustomerRow:
    _, updated = data_manager.increment_customer_balance(context.workbook, customer.customer_id, delta)
    work.undo.append(
        lambda: data_manager.increment_customer_balance(context.workbook, customer.customer_id, -delta)
    )
    work.balance_changed = True
    refreshed = replace(customer, balance=updated)
    work.events.append(
        ChangeEvent(CUSTOMERS_SHEET, ChangeType.UPDATE, customer.customer_id, customer.owner_id, refreshed)
    )
    return refreshed


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    owner_id: Optional[str] = None,
    feed: Optional[ChangeFeed] = None,
) -> RuntimeContext:
    """Load configuration settings and a live workbook for the business layer.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        owner_id (str | None): Acting party for this session; defaults to the
            configured ``ActingParty``.
        feed (ChangeFeed | None): Feed to publish on, so several contexts can
            notify the same subscribers. A new feed is created when omitted.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(
        settings=settings,
        workbook=workbook,
        owner_id=owner_id,
        feed=feed if feed is not None else ChangeFeed(),
    )


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file."""
    with context.lock:
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    The returned context keeps the settings, acting party and change feed of
    ``context`` so existing subscriptions stay live; caches start empty.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(
        settings=context.settings,
        workbook=workbook,
        owner_id=context.owner_id,
        feed=context.feed,
    )


def require_actor(context: RuntimeContext) -> str:
    """Return the acting party or refuse the operation.

    Raises:
        MissingActorError: If the context carries no acting party.
    """
    if not context.owner_id:
        log.warning("Data operation attempted without an identified acting party")
        raise MissingActorError("No acting party identified; data operations are disabled")
    return context.owner_id


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def require_positive_quantity(quantity: Decimal) -> None:
    """Validate that a quantity (or tray weight) is strictly positive.

    Raises:
        ValueError: If ``quantity`` is zero or negative.
    """
    if quantity <= Decimal("0"):
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_positive_rate(rate: Decimal) -> None:
    """Validate that a rate or price is strictly positive.

    Raises:
        ValueError: If ``rate`` is zero or negative.
    """
    if rate <= Decimal("0"):
        log.error("Rate validation failed: %s", rate)
        raise ValueError("Rate must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def _require_text(value: Optional[str], label: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        log.error("%s validation failed: blank value", label)
        raise ValueError(f"{label} is required")
    return cleaned


def _clean_optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


def apply_overpayment_policy(total: Decimal, paid: Decimal, policy: OverpaymentPolicy) -> Decimal:
    """Return the paid amount to record once ``policy`` has been applied.

    ``allow`` keeps the over-payment (the customer's balance then carries a
    credit), ``clamp`` records exactly the total, ``reject`` refuses.

    Raises:
        OverpaymentError: Under the ``reject`` policy when ``paid > total``.
    """
    if paid <= total:
        return paid
    if policy is OverpaymentPolicy.REJECT:
        log.warning("Rejected over-payment of %s against total %s", paid, total)
        raise OverpaymentError(f"Paid amount {paid} exceeds total {total}")
    if policy is OverpaymentPolicy.CLAMP:
        log.info("Clamped over-payment of %s to total %s", paid, total)
        return total
    return paid


def derive_sale_status(total: Decimal, paid: Decimal) -> SaleStatus:
    """``completed`` once the paid amount covers the total, otherwise ``pending``."""
    return SaleStatus.COMPLETED if paid >= total else SaleStatus.PENDING


def _next_sale_status(sale: data_manager.SaleTransactionRow, new_paid: Decimal, *, reopen: bool) -> SaleStatus:
    if new_paid >= sale.total_amount:
        return SaleStatus.COMPLETED
    if sale.status == SaleStatus.COMPLETED.value and not reopen:
        return SaleStatus.COMPLETED
    return SaleStatus.PENDING


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------


def get_customer(context: RuntimeContext, customer_id: str) -> data_manager.CustomerRow:
    """Resolve a customer owned by the acting party.

    Customers belonging to another acting party are reported as unknown.

    Raises:
        MissingActorError: If no acting party is identified.
        MissingReferenceError: If ``customer_id`` is absent or not owned by
            the acting party.
    """
    owner = require_actor(context)
    customer = _customers(context)["by_id"].get(customer_id)
    if customer is None or customer.owner_id != owner:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise MissingReferenceError(f"Unknown customer id: {customer_id}")
    return customer


def list_customers(context: RuntimeContext, *, include_hidden: bool = False) -> List[data_manager.CustomerRow]:
    """Return the acting party's customers ordered by name.

    Hidden customers (cash-sale placeholders, archived accounts) only appear
    with ``include_hidden=True``.
    """
    owner = require_actor(context)
    rows = [
        customer
        for customer in _customers(context)["all"]
        if customer.owner_id == owner and (include_hidden or customer.visible)
    ]
    return sorted(rows, key=lambda customer: customer.name.lower())


def _new_customer_row(
    owner: str,
    name: str,
    *,
    phone: Optional[str],
    address: Optional[str],
    visible: bool,
    timestamp: datetime,
) -> data_manager.CustomerRow:
    return data_manager.CustomerRow(
        customer_id=generate_record_id(),
        owner_id=owner,
        name=name,
        phone=phone,
        address=address,
        balance=Decimal("0.00"),
        visible=visible,
        created_at=timestamp.isoformat(),
    )


def _insert_customer(work: _UnitOfWork, context: RuntimeContext, customer: data_manager.CustomerRow) -> None:
    _append(work, context, CUSTOMERS_SHEET, "CustomerID", customer.customer_id, data_manager.append_customer, customer)
    work.events.append(
        ChangeEvent(CUSTOMERS_SHEET, ChangeType.INSERT, customer.customer_id, customer.owner_id, customer)
    )


def create_customer(
    context: RuntimeContext,
    name: str,
    *,
    phone: Optional[str] = None,
    address: Optional[str] = None,
    visible: bool = True,
    timestamp: Optional[datetime] = None,
) -> data_manager.CustomerRow:
    """Register a customer for the acting party with a zero balance.

    Raises:
        MissingActorError: If no acting party is identified.
        ValueError: If ``name`` is blank.
    """
    owner = require_actor(context)
    customer = _new_customer_row(
        owner,
        _require_text(name, "Customer name"),
        phone=_clean_optional(phone),
        address=_clean_optional(address),
        visible=visible,
        timestamp=_resolve_timestamp(timestamp),
    )
    with _unit_of_work(context, "create customer") as work:
        _insert_customer(work, context, customer)
    log.info("Created customer '%s' (%s)", customer.customer_id, customer.name)
    return customer


def create_cash_sale_customer(context: RuntimeContext, *, timestamp: Optional[datetime] = None) -> data_manager.CustomerRow:
    """Synthesize the hidden placeholder customer used for a walk-in sale."""
    return create_customer(
        context,
        context.settings.cash_sale_name,
        visible=False,
        timestamp=timestamp,
    )


@_serialized
def update_customer(
    context: RuntimeContext,
    customer_id: str,
    *,
    name: Optional[str] = None,
    phone: Optional[str] = None,
    address: Optional[str] = None,
) -> data_manager.CustomerRow:
    """Edit a customer's contact details.

    ``None`` leaves a field unchanged; an empty string clears ``phone`` or
    ``address``. The balance is not editable here.
    """
    customer = get_customer(context, customer_id)
    changes: Dict[str, Any] = {}
    if name is not None:
        changes["Name"] = _require_text(name, "Customer name")
    if phone is not None:
        changes["Phone"] = _clean_optional(phone)
    if address is not None:
        changes["Address"] = _clean_optional(address)
    if not changes:
        return customer

    updated = replace(
        customer,
        name=changes.get("Name", customer.name),
        phone=changes["Phone"] if "Phone" in changes else customer.phone,
        address=changes["Address"] if "Address" in changes else customer.address,
    )
    with _unit_of_work(context, "update customer") as work:
        _update(work, context, CUSTOMERS_SHEET, "CustomerID", customer_id, changes)
        work.events.append(ChangeEvent(CUSTOMERS_SHEET, ChangeType.UPDATE, customer_id, customer.owner_id, updated))
    log.info("Updated customer '%s' fields: %s", customer_id, ", ".join(changes))
    return updated


@_serialized
def set_customer_visibility(context: RuntimeContext, customer_id: str, visible: bool) -> data_manager.CustomerRow:
    """Show or hide a customer in default listings."""
    customer = get_customer(context, customer_id)
    if customer.visible == visible:
        return customer
    updated = replace(customer, visible=visible)
    with _unit_of_work(context, "set customer visibility") as work:
        _update(work, context, CUSTOMERS_SHEET, "CustomerID", customer_id, {"Visible": visible})
        work.events.append(ChangeEvent(CUSTOMERS_SHEET, ChangeType.UPDATE, customer_id, customer.owner_id, updated))
    log.info("Customer '%s' is now %s", customer_id, "visible" if visible else "hidden")
    return updated


@_serialized
def delete_customer(context: RuntimeContext, customer_id: str) -> CascadeResult:
    """Hard-delete a customer together with all of its sales and tray transactions.

    Dependents are removed first. If any step fails, every removed row is
    restored and the customer survives, so no transaction is orphaned.

    Returns:
        CascadeResult: Identifiers of every removed dependent record.
    """
    customer = get_customer(context, customer_id)
    sale_ids = [row.transaction_id for row in _sales(context)["all"] if row.customer_id == customer_id]
    tray_ids = [row.tray_transaction_id for row in _trays(context)["all"] if row.customer_id == customer_id]

    with _unit_of_work(context, "delete customer") as work:
        _delete(work, context, SALES_SHEET, "TransactionID", sale_ids)
        _delete(work, context, TRAYS_SHEET, "TrayTransactionID", tray_ids)
        removed = _delete(work, context, CUSTOMERS_SHEET, "CustomerID", [customer_id])
        if not removed:
            raise MissingReferenceError(f"Unknown customer id: {customer_id}")
        for sale_id in sale_ids:
            work.events.append(ChangeEvent(SALES_SHEET, ChangeType.DELETE, sale_id, customer.owner_id))
        for tray_id in tray_ids:
            work.events.append(ChangeEvent(TRAYS_SHEET, ChangeType.DELETE, tray_id, customer.owner_id))
        work.events.append(ChangeEvent(CUSTOMERS_SHEET, ChangeType.DELETE, customer_id, customer.owner_id, customer))

    log.info(
        "Deleted customer '%s' with %d sale(s) and %d tray transaction(s)",
        customer_id,
        len(sale_ids),
        len(tray_ids),
    )
    return CascadeResult(customer_id=customer_id, sale_transaction_ids=sale_ids, tray_transaction_ids=tray_ids)


# ---------------------------------------------------------------------------
# Items and categories
# ---------------------------------------------------------------------------


def _validate_pricing(price_per_kg: Decimal, price_per_unit: Optional[Decimal], stock: Decimal, unit: str) -> None:
    require_positive_rate(price_per_kg)
    if price_per_unit is not None:
        require_positive_rate(price_per_unit)
    if stock < Decimal("0"):
        log.error("Stock validation failed: %s", stock)
        raise ValueError("Available stock must be zero or positive")
    try:
        ItemUnit(unit)
    except ValueError as exc:
        raise ValueError(f"Unsupported unit: {unit}") from exc


def get_item(context: RuntimeContext, item_id: str) -> data_manager.ItemRow:
    """Resolve an item by its identifier.

    Raises:
        MissingReferenceError: If ``item_id`` is absent from the workbook.
    """
    require_actor(context)
    try:
        return _items(context)["by_id"][item_id]
    except KeyError as exc:
        log.warning("Item lookup failed for id '%s'", item_id)
        raise MissingReferenceError(f"Unknown item id: {item_id}") from exc


def list_items(context: RuntimeContext) -> List[data_manager.ItemRow]:
    """Return every item ordered by name."""
    require_actor(context)
    return sorted(_items(context)["all"], key=lambda item: item.name.lower())


def add_item(
    context: RuntimeContext,
    name: str,
    price_per_kg: Decimal,
    *,
    price_per_unit: Optional[Decimal] = None,
    unit: Union[ItemUnit, str] = ItemUnit.KG,
    available_stock: Decimal = Decimal("0"),
    timestamp: Optional[datetime] = None,
) -> data_manager.ItemRow:
    """Register a new item ("fruit") with its base pricing and stock.

    Raises:
        ValueError: If the name is blank, a price is not positive, the stock
            is negative, or the unit is unsupported.
    """
    require_actor(context)
    unit_value = ItemUnit(unit).value if isinstance(unit, ItemUnit) else str(unit)
    _validate_pricing(price_per_kg, price_per_unit, available_stock, unit_value)
    item = data_manager.ItemRow(
        item_id=generate_record_id(),
        name=_require_text(name, "Item name"),
        price_per_kg=price_per_kg,
        price_per_unit=price_per_unit,
        unit=unit_value,
        available_stock=available_stock,
        created_at=_resolve_timestamp(timestamp).isoformat(),
    )
    with _unit_of_work(context, "add item") as work:
        _append(work, context, ITEMS_SHEET, "ItemID", item.item_id, data_manager.append_item, item)
        work.events.append(ChangeEvent(ITEMS_SHEET, ChangeType.INSERT, item.item_id, None, item))
    log.info("Added item '%s' (%s) at %s/kg", item.item_id, item.name, item.price_per_kg)
    return item


_ITEM_COLUMNS = {
    "name": "Name",
    "price_per_kg": "PricePerKg",
    "price_per_unit": "PricePerUnit",
    "unit": "Unit",
    "available_stock": "AvailableStock",
}


@_serialized
def update_item(context: RuntimeContext, item_id: str, **changes: Any) -> data_manager.ItemRow:
    """Edit an item's name, prices, unit or stock.

    Keyword arguments use the :class:`~mandi_ledger.data_manager.ItemRow`
    field names; unknown names raise ``KeyError``.
    """
    item = get_item(context, item_id)
    unknown = set(changes) - set(_ITEM_COLUMNS)
    if unknown:
        raise KeyError(f"Unknown item field: {sorted(unknown)[0]}")
    if "unit" in changes and isinstance(changes["unit"], ItemUnit):
        changes["unit"] = changes["unit"].value
    updated = replace(item, **changes)
    if "name" in changes:
        updated = replace(updated, name=_require_text(updated.name, "Item name"))
    _validate_pricing(updated.price_per_kg, updated.price_per_unit, updated.available_stock, updated.unit)

    field_values = {_ITEM_COLUMNS[key]: getattr(updated, key) for key in changes}
    if not field_values:
        return item
    with _unit_of_work(context, "update item") as work:
        _update(work, context, ITEMS_SHEET, "ItemID", item_id, field_values)
        work.events.append(ChangeEvent(ITEMS_SHEET, ChangeType.UPDATE, item_id, None, updated))
    log.info("Updated item '%s' fields: %s", item_id, ", ".join(field_values))
    return updated


@_serialized
def delete_item(context: RuntimeContext, item_id: str) -> None:
    """Delete an item and its categories.

    Raises:
        BusinessRuleViolation: If any sale transaction references the item.
    """
    item = get_item(context, item_id)
    if any(sale.item_id == item_id for sale in _sales(context)["all"]):
        log.warning("Refused to delete item '%s' referenced by sales", item_id)
        raise BusinessRuleViolation(f"Item '{item.name}' is referenced by sale transactions")
    category_ids = [row.category_id for row in _categories(context)["all"] if row.item_id == item_id]
    with _unit_of_work(context, "delete item") as work:
        _delete(work, context, CATEGORIES_SHEET, "CategoryID", category_ids)
        _delete(work, context, ITEMS_SHEET, "ItemID", [item_id])
        for category_id in category_ids:
            work.events.append(ChangeEvent(CATEGORIES_SHEET, ChangeType.DELETE, category_id, None))
        work.events.append(ChangeEvent(ITEMS_SHEET, ChangeType.DELETE, item_id, None, item))
    log.info("Deleted item '%s' and %d categories", item_id, len(category_ids))


def get_category(context: RuntimeContext, category_id: str) -> data_manager.CategoryRow:
    """Resolve an item category by its identifier.

    Raises:
        MissingReferenceError: If ``category_id`` is unknown.
    """
    require_actor(context)
    try:
        return _categories(context)["by_id"][category_id]
    except KeyError as exc:
        log.warning("Category lookup failed for id '%s'", category_id)
        raise MissingReferenceError(f"Unknown category id: {category_id}") from exc


def list_categories(context: RuntimeContext, item_id: Optional[str] = None) -> List[data_manager.CategoryRow]:
    """Return categories, optionally only those of ``item_id``, ordered by name."""
    require_actor(context)
    rows = [row for row in _categories(context)["all"] if item_id is None or row.item_id == item_id]
    return sorted(rows, key=lambda row: row.name.lower())


def add_category(
    context: RuntimeContext,
    item_id: str,
    name: str,
    price_per_kg: Decimal,
    *,
    price_per_unit: Optional[Decimal] = None,
    unit: Union[ItemUnit, str, None] = None,
    available_stock: Decimal = Decimal("0"),
    timestamp: Optional[datetime] = None,
) -> data_manager.CategoryRow:
    """Add a sub-variant of an item that overrides its name, pricing, unit and stock.

    ``unit`` defaults to the parent item's unit.
    """
    item = get_item(context, item_id)
    if unit is None:
        unit_value = item.unit
    else:
        unit_value = unit.value if isinstance(unit, ItemUnit) else str(unit)
    _validate_pricing(price_per_kg, price_per_unit, available_stock, unit_value)
    category = data_manager.CategoryRow(
        category_id=generate_record_id(),
        item_id=item.item_id,
        name=_require_text(name, "Category name"),
        price_per_kg=price_per_kg,
        price_per_unit=price_per_unit,
        unit=unit_value,
        available_stock=available_stock,
        created_at=_resolve_timestamp(timestamp).isoformat(),
    )
    with _unit_of_work(context, "add category") as work:
        _append(
            work, context, CATEGORIES_SHEET, "CategoryID", category.category_id,
            data_manager.append_category, category,
        )
        work.events.append(ChangeEvent(CATEGORIES_SHEET, ChangeType.INSERT, category.category_id, None, category))
    log.info("Added category '%s' (%s) to item '%s'", category.category_id, category.name, item.item_id)
    return category


@_serialized
def update_category(context: RuntimeContext, category_id: str, **changes: Any) -> data_manager.CategoryRow:
    """Edit a category's name, prices, unit or stock (same keywords as :func:`update_item`)."""
    category = get_category(context, category_id)
    unknown = set(changes) - set(_ITEM_COLUMNS)
    if unknown:
        raise KeyError(f"Unknown category field: {sorted(unknown)[0]}")
    if "unit" in changes and isinstance(changes["unit"], ItemUnit):
        changes["unit"] = changes["unit"].value
    updated = replace(category, **changes)
    if "name" in changes:
        updated = replace(updated, name=_require_text(updated.name, "Category name"))
    _validate_pricing(updated.price_per_kg, updated.price_per_unit, updated.available_stock, updated.unit)

    field_values = {_ITEM_COLUMNS[key]: getattr(updated, key) for key in changes}
    if not field_values:
        return category
    with _unit_of_work(context, "update category") as work:
        _update(work, context, CATEGORIES_SHEET, "CategoryID", category_id, field_values)
        work.events.append(ChangeEvent(CATEGORIES_SHEET, ChangeType.UPDATE, category_id, None, updated))
    log.info("Updated category '%s' fields: %s", category_id, ", ".join(field_values))
    return updated


@_serialized
def delete_category(context: RuntimeContext, category_id: str) -> None:
    """Delete a category that no sale references."""
    category = get_category(context, category_id)
    if any(sale.category_id == category_id for sale in _sales(context)["all"]):
        log.warning("Refused to delete category '%s' referenced by sales", category_id)
        raise BusinessRuleViolation(f"Category '{category.name}' is referenced by sale transactions")
    with _unit_of_work(context, "delete category") as work:
        _delete(work, context, CATEGORIES_SHEET, "CategoryID", [category_id])
        work.events.append(ChangeEvent(CATEGORIES_SHEET, ChangeType.DELETE, category_id, None, category))
    log.info("Deleted category '%s'", category_id)


# ---------------------------------------------------------------------------
# Record builder
# ---------------------------------------------------------------------------


def resolve_rate(
    item: data_manager.ItemRow,
    category: Optional[data_manager.CategoryRow],
    pricing_mode: PricingMode,
) -> Decimal:
    """Pick the listed price for a sale: the category's when given, else the item's.

    Raises:
        BusinessRuleViolation: If per-unit pricing is requested but no
            per-unit price is listed.
    """
    source = category if category is not None else item
    if pricing_mode is PricingMode.PER_UNIT:
        if source.price_per_unit is None:
            log.warning("No per-unit price listed for '%s'", source.name)
            raise BusinessRuleViolation(f"'{source.name}' has no per-unit price")
        return source.price_per_unit
    return source.price_per_kg


def _is_cash_sale(customer_id: Optional[str]) -> bool:
    return customer_id is None or customer_id in ("", CASH_SALE)


@_serialized
def record_sale(context: RuntimeContext, command: SaleCommand) -> data_manager.SaleTransactionRow:
    """Validate and persist a sale, folding any unpaid remainder into the customer balance.

    ``total_amount`` is ``quantity * rate`` and the status is ``completed``
    when the (policy-adjusted) paid amount covers it, ``pending`` otherwise.
    The sale insert, the optional cash-sale customer and the balance
    increment form one unit of work. When ``number_of_trays`` is positive on
    a non-cash sale a linked tray transaction is recorded afterwards; that
    second record is not part of the sale's unit of work.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (SaleCommand): Structured intent describing the sale.

    Returns:
        data_manager.SaleTransactionRow: Newly appended sale transaction.

    Raises:
        MissingActorError: If no acting party is identified.
        MissingReferenceError: If the customer, item or category is unknown.
        BusinessRuleViolation: If the category belongs to another item or no
            per-unit price exists for per-unit pricing.
        OverpaymentError: If the ``reject`` policy refuses the paid amount.
        ValueError: When quantity, rate, paid amount or tray count fail
            validation.
        LinkedTrayError: If the sale committed but its tray record failed.
    """
    owner = require_actor(context)
    require_positive_quantity(command.quantity)
    require_nonnegative_money(command.paid_amount)
    if command.number_of_trays < 0:
        raise ValueError("Number of trays must be zero or positive")
    pricing_mode = PricingMode(command.pricing_mode)

    item = get_item(context, command.item_id)
    category = None
    if command.category_id:
        category = get_category(context, command.category_id)
        if category.item_id != item.item_id:
            log.warning("Category '%s' does not belong to item '%s'", category.category_id, item.item_id)
            raise BusinessRuleViolation(f"Category '{category.name}' does not belong to '{item.name}'")
    rate = command.rate if command.rate is not None else resolve_rate(item, category, pricing_mode)
    require_positive_rate(rate)

    cash_sale = _is_cash_sale(command.customer_id)
    customer = None if cash_sale else get_customer(context, str(command.customer_id))

    total = command.quantity * rate
    paid = apply_overpayment_policy(total, command.paid_amount, context.settings.overpayment_policy)
    status = derive_sale_status(total, paid)
    timestamp = _resolve_timestamp(command.timestamp)

    with _unit_of_work(context, "record sale") as work:
        if customer is None:
            customer = _new_customer_row(
                owner,
                context.settings.cash_sale_name,
                phone=None,
                address=None,
                visible=False,
                timestamp=timestamp,
            )
            _insert_customer(work, context, customer)
        sale = data_manager.SaleTransactionRow(
            transaction_id=generate_record_id(),
            owner_id=owner,
            customer_id=customer.customer_id,
            item_id=item.item_id,
            category_id=category.category_id if category is not None else None,
            quantity=command.quantity,
            rate=rate,
            pricing_mode=pricing_mode.value,
            total_amount=total,
            paid_amount=paid,
            status=status.value,
            notes=_clean_optional(command.notes),
            created_at=timestamp.isoformat(),
        )
        _append(
            work, context, SALES_SHEET, "TransactionID", sale.transaction_id,
            data_manager.append_sale_transaction, sale,
        )
        work.events.append(ChangeEvent(SALES_SHEET, ChangeType.INSERT, sale.transaction_id, owner, sale))
        if paid != total:
            _increment_balance(work, context, customer, total - paid)

    log.info(
        "Recorded sale '%s' for customer '%s' (quantity=%s, rate=%s, total=%s, paid=%s, status=%s)",
        sale.transaction_id,
        sale.customer_id,
        sale.quantity,
        sale.rate,
        sale.total_amount,
        sale.paid_amount,
        sale.status,
    )

    if command.number_of_trays > 0 and not cash_sale:
        _record_linked_tray(context, sale, item, command.number_of_trays)
    return sale


def _record_linked_tray(
    context: RuntimeContext,
    sale: data_manager.SaleTransactionRow,
    item: data_manager.ItemRow,
    number_of_trays: int,
) -> data_manager.TrayTransactionRow:
    label = unit_label(sale.pricing_mode, item.unit)
    command = TrayCommand(
        customer_id=sale.customer_id,
        tray_number=f"TXN-{receipt_number(sale.transaction_id)}",
        weight=sale.quantity,
        rate=context.settings.tray_deposit_rate,
        paid_amount=Decimal("0"),
        number_of_trays=number_of_trays,
        notes=f"Transaction ID: {sale.transaction_id} - {item.name} ({format_quantity(sale.quantity)} {label})",
    )
    try:
        require_nonnegative_money(command.rate)
        return _record_tray(context, command)
    except (BusinessRuleViolation, ValueError, KeyError, OSError) as exc:
        log.error("Sale '%s' committed but its linked tray record failed: %s", sale.transaction_id, exc)
        raise LinkedTrayError(sale, exc) from exc


def record_tray_transaction(context: RuntimeContext, command: TrayCommand) -> data_manager.TrayTransactionRow:
    """Validate and persist a tray transaction, folding any unpaid remainder into the balance.

    Trays are issued ``in_use``. ``total_amount`` is ``weight * rate``.

    Raises:
        MissingActorError: If no acting party is identified.
        MissingReferenceError: If the customer is unknown.
        OverpaymentError: If the ``reject`` policy refuses the paid amount.
        ValueError: When tray number, weight, rate, paid amount or tray count
            fail validation.
    """
    require_positive_rate(command.rate)
    return _record_tray(context, command)


@_serialized
def _record_tray(context: RuntimeContext, command: TrayCommand) -> data_manager.TrayTransactionRow:
    owner = require_actor(context)
    tray_number = _require_text(command.tray_number, "Tray number")
    require_positive_quantity(command.weight)
    require_nonnegative_money(command.paid_amount)
    if command.number_of_trays < 1:
        raise ValueError("Number of trays must be at least one")
    customer = get_customer(context, command.customer_id)

    total = command.weight * command.rate
    paid = apply_overpayment_policy(total, command.paid_amount, context.settings.overpayment_policy)
    tray = data_manager.TrayTransactionRow(
        tray_transaction_id=generate_record_id(),
        owner_id=owner,
        customer_id=customer.customer_id,
        tray_number=tray_number,
        weight=command.weight,
        rate=command.rate,
        total_amount=total,
        paid_amount=paid,
        number_of_trays=int(command.number_of_trays),
        status=TrayStatus.IN_USE.value,
        notes=_clean_optional(command.notes),
        created_at=_resolve_timestamp(command.timestamp).isoformat(),
    )
    with _unit_of_work(context, "record tray transaction") as work:
        _append(
            work, context, TRAYS_SHEET, "TrayTransactionID", tray.tray_transaction_id,
            data_manager.append_tray_transaction, tray,
        )
        work.events.append(ChangeEvent(TRAYS_SHEET, ChangeType.INSERT, tray.tray_transaction_id, owner, tray))
        if paid != total:
            _increment_balance(work, context, customer, total - paid)

    log.info(
        "Recorded tray transaction '%s' (%s) for customer '%s' (trays=%d, total=%s, paid=%s)",
        tray.tray_transaction_id,
        tray.tray_number,
        tray.customer_id,
        tray.number_of_trays,
        tray.total_amount,
        tray.paid_amount,
    )
    return tray


# ---------------------------------------------------------------------------
# Ledger adjuster
# ---------------------------------------------------------------------------


def get_sale_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.SaleTransactionRow:
    """Retrieve a sale owned by the acting party.

    Raises:
        MissingReferenceError: If the sale is unknown to the acting party.
    """
    owner = require_actor(context)
    sale = _sales(context)["by_id"].get(transaction_id)
    if sale is None or sale.owner_id != owner:
        log.warning("Sale lookup failed for id '%s'", transaction_id)
        raise MissingReferenceError(f"Unknown transaction id: {transaction_id}")
    return sale


def get_tray_transaction(context: RuntimeContext, tray_transaction_id: str) -> data_manager.TrayTransactionRow:
    """Retrieve a tray transaction owned by the acting party.

    Raises:
        MissingReferenceError: If the tray transaction is unknown to the
            acting party.
    """
    owner = require_actor(context)
    tray = _trays(context)["by_id"].get(tray_transaction_id)
    if tray is None or tray.owner_id != owner:
        log.warning("Tray transaction lookup failed for id '%s'", tray_transaction_id)
        raise MissingReferenceError(f"Unknown tray transaction id: {tray_transaction_id}")
    return tray


@_serialized
def update_sale_payment(
    context: RuntimeContext,
    transaction_id: str,
    new_paid_amount: Decimal,
) -> data_manager.SaleTransactionRow:
    """Replace a sale's paid amount and move the customer balance by the difference.

    The balance moves by ``previous_paid - new_paid``: a larger payment lowers
    what the customer owes, a reduced one raises it. The status is re-derived
    (``completed`` once the total is covered; a completed sale dropping below
    its total returns to ``pending`` unless ``ReopenOnUnderpayment`` is off).
    An unchanged amount performs no write at all.

    Returns:
        data_manager.SaleTransactionRow: The sale as stored after the update.

    Raises:
        InvalidStatusTransition: If the sale is cancelled.
        OverpaymentError: If the ``reject`` policy refuses the amount.
        ValueError: If ``new_paid_amount`` is negative.
    """
    require_nonnegative_money(new_paid_amount)
    sale = get_sale_transaction(context, transaction_id)
    if sale.status == SaleStatus.CANCELLED.value:
        log.warning("Payment edit refused on cancelled sale '%s'", transaction_id)
        raise InvalidStatusTransition(f"Sale '{transaction_id}' is cancelled")

    new_paid = apply_overpayment_policy(sale.total_amount, new_paid_amount, context.settings.overpayment_policy)
    if new_paid == sale.paid_amount:
        log.info("Paid amount of sale '%s' unchanged at %s", transaction_id, new_paid)
        return sale

    customer = get_customer(context, sale.customer_id)
    status = _next_sale_status(sale, new_paid, reopen=context.settings.reopen_on_underpayment)
    delta = sale.paid_amount - new_paid
    updated = replace(sale, paid_amount=new_paid, status=status.value)

    with _unit_of_work(context, "update sale payment") as work:
        _update(
            work, context, SALES_SHEET, "TransactionID", transaction_id,
            {"PaidAmount": new_paid, "Status": status.value},
        )
        work.events.append(ChangeEvent(SALES_SHEET, ChangeType.UPDATE, transaction_id, sale.owner_id, updated))
        refreshed = _increment_balance(work, context, customer, delta)

    log.info(
        "Sale '%s' paid %s -> %s (status %s); customer '%s' balance %s -> %s",
        transaction_id,
        sale.paid_amount,
        new_paid,
        status.value,
        customer.customer_id,
        customer.balance,
        refreshed.balance,
    )
    return updated


@_serialized
def record_sale_payment(context: RuntimeContext, transaction_id: str, amount: Decimal) -> data_manager.SaleTransactionRow:
    """Top up a sale's paid amount by ``amount``.

    Raises:
        ValueError: If ``amount`` is not positive.
    """
    if amount <= Decimal("0"):
        log.error("Payment amount validation failed: %s", amount)
        raise ValueError("Payment amount must be greater than zero")
    sale = get_sale_transaction(context, transaction_id)
    return update_sale_payment(context, transaction_id, sale.paid_amount + amount)


@_serialized
def update_tray_payment(
    context: RuntimeContext,
    tray_transaction_id: str,
    new_paid_amount: Decimal,
) -> data_manager.TrayTransactionRow:
    """Replace a tray transaction's paid amount and move the customer balance by the difference.

    Tray status is physical (issued, returned, in maintenance) and is not
    touched; settlement is exposed as ``TrayTransactionRow.is_settled``.
    """
    require_nonnegative_money(new_paid_amount)
    tray = get_tray_transaction(context, tray_transaction_id)
    new_paid = apply_overpayment_policy(tray.total_amount, new_paid_amount, context.settings.overpayment_policy)
    if new_paid == tray.paid_amount:
        log.info("Paid amount of tray transaction '%s' unchanged at %s", tray_transaction_id, new_paid)
        return tray

    customer = get_customer(context, tray.customer_id)
    delta = tray.paid_amount - new_paid
    updated = replace(tray, paid_amount=new_paid)

    with _unit_of_work(context, "update tray payment") as work:
        _update(work, context, TRAYS_SHEET, "TrayTransactionID", tray_transaction_id, {"PaidAmount": new_paid})
        work.events.append(ChangeEvent(TRAYS_SHEET, ChangeType.UPDATE, tray_transaction_id, tray.owner_id, updated))
        refreshed = _increment_balance(work, context, customer, delta)

    log.info(
        "Tray transaction '%s' paid %s -> %s; customer '%s' balance %s -> %s",
        tray_transaction_id,
        tray.paid_amount,
        new_paid,
        customer.customer_id,
        customer.balance,
        refreshed.balance,
    )
    return updated


@_serialized
def record_tray_payment(
    context: RuntimeContext,
    tray_transaction_id: str,
    amount: Decimal,
) -> data_manager.TrayTransactionRow:
    """Top up a tray transaction's paid amount by ``amount``."""
    if amount <= Decimal("0"):
        log.error("Payment amount validation failed: %s", amount)
        raise ValueError("Payment amount must be greater than zero")
    tray = get_tray_transaction(context, tray_transaction_id)
    return update_tray_payment(context, tray_transaction_id, tray.paid_amount + amount)


@_serialized
def cancel_sale(context: RuntimeContext, transaction_id: str) -> data_manager.SaleTransactionRow:
    """Cancel a pending sale and drop its outstanding amount from the customer balance.

    Raises:
        InvalidStatusTransition: If the sale is not ``pending``.
    """
    sale = get_sale_transaction(context, transaction_id)
    if sale.status != SaleStatus.PENDING.value:
        log.warning("Cannot cancel sale '%s' in status '%s'", transaction_id, sale.status)
        raise InvalidStatusTransition(f"Only pending sales can be cancelled (sale is {sale.status})")

    customer = get_customer(context, sale.customer_id)
    updated = replace(sale, status=SaleStatus.CANCELLED.value)
    with _unit_of_work(context, "cancel sale") as work:
        _update(work, context, SALES_SHEET, "TransactionID", transaction_id, {"Status": SaleStatus.CANCELLED.value})
        work.events.append(ChangeEvent(SALES_SHEET, ChangeType.UPDATE, transaction_id, sale.owner_id, updated))
        if sale.outstanding != Decimal("0"):
            _increment_balance(work, context, customer, -sale.outstanding)

    log.info("Cancelled sale '%s'; released %s from customer '%s'", transaction_id, sale.outstanding, customer.customer_id)
    return updated


@_serialized
def set_tray_status(
    context: RuntimeContext,
    tray_transaction_id: str,
    status: Union[TrayStatus, str],
) -> data_manager.TrayTransactionRow:
    """Mark trays as available (returned), in use, or in maintenance. No balance effect."""
    target = TrayStatus(status)
    tray = get_tray_transaction(context, tray_transaction_id)
    if tray.status == target.value:
        return tray
    updated = replace(tray, status=target.value)
    with _unit_of_work(context, "set tray status") as work:
        _update(work, context, TRAYS_SHEET, "TrayTransactionID", tray_transaction_id, {"Status": target.value})
        work.events.append(ChangeEvent(TRAYS_SHEET, ChangeType.UPDATE, tray_transaction_id, tray.owner_id, updated))
    log.info("Tray transaction '%s' status %s -> %s", tray_transaction_id, tray.status, target.value)
    return updated


@_serialized
def update_tray_details(
    context: RuntimeContext,
    tray_transaction_id: str,
    *,
    tray_number: Optional[str] = None,
    number_of_trays: Optional[int] = None,
    notes: Optional[str] = None,
) -> data_manager.TrayTransactionRow:
    """Edit the descriptive fields of a tray transaction.

    ``None`` leaves a field unchanged; an empty string clears ``notes``.
    Weight, rate and amounts are fixed once recorded, so there is no balance
    effect.
    """
    tray = get_tray_transaction(context, tray_transaction_id)
    changes: Dict[str, Any] = {}
    if tray_number is not None:
        changes["TrayNumber"] = _require_text(tray_number, "Tray number")
    if number_of_trays is not None:
        if number_of_trays < 1:
            raise ValueError("Number of trays must be at least one")
        changes["NumberOfTrays"] = int(number_of_trays)
    if notes is not None:
        changes["Notes"] = _clean_optional(notes)
    if not changes:
        return tray

    updated = replace(
        tray,
        tray_number=changes.get("TrayNumber", tray.tray_number),
        number_of_trays=changes.get("NumberOfTrays", tray.number_of_trays),
        notes=changes["Notes"] if "Notes" in changes else tray.notes,
    )
    with _unit_of_work(context, "update tray details") as work:
        _update(work, context, TRAYS_SHEET, "TrayTransactionID", tray_transaction_id, changes)
        work.events.append(ChangeEvent(TRAYS_SHEET, ChangeType.UPDATE, tray_transaction_id, tray.owner_id, updated))
    log.info("Updated tray transaction '%s' fields: %s", tray_transaction_id, ", ".join(changes))
    return updated


# ---------------------------------------------------------------------------
# Queries and reconciliation
# ---------------------------------------------------------------------------


def list_sale_transactions(
    context: RuntimeContext,
    *,
    customer_id: Optional[str] = None,
    status: Union[SaleStatus, str, None] = None,
) -> List[data_manager.SaleTransactionRow]:
    """Return the acting party's sales, newest first, optionally filtered."""
    owner = require_actor(context)
    wanted_status = SaleStatus(status).value if status is not None else None
    rows = [
        sale
        for sale in _sales(context)["all"]
        if sale.owner_id == owner
        and (customer_id is None or sale.customer_id == customer_id)
        and (wanted_status is None or sale.status == wanted_status)
    ]
    return sorted(rows, key=lambda sale: sale.created_at, reverse=True)


def list_tray_transactions(
    context: RuntimeContext,
    *,
    customer_id: Optional[str] = None,
    status: Union[TrayStatus, str, None] = None,
) -> List[data_manager.TrayTransactionRow]:
    """Return the acting party's tray transactions, newest first, optionally filtered."""
    owner = require_actor(context)
    wanted_status = TrayStatus(status).value if status is not None else None
    rows = [
        tray
        for tray in _trays(context)["all"]
        if tray.owner_id == owner
        and (customer_id is None or tray.customer_id == customer_id)
        and (wanted_status is None or tray.status == wanted_status)
    ]
    return sorted(rows, key=lambda tray: tray.created_at, reverse=True)


def expected_balance(context: RuntimeContext, customer_id: str) -> Decimal:
    """Recompute what a customer owes from its non-cancelled sales and its trays."""
    get_customer(context, customer_id)
    total = Decimal("0")
    for sale in _sales(context)["all"]:
        if sale.customer_id == customer_id and sale.status != SaleStatus.CANCELLED.value:
            total += sale.outstanding
    for tray in _trays(context)["all"]:
        if tray.customer_id == customer_id:
            total += tray.outstanding
    return total


@_serialized
def reconcile_balances(context: RuntimeContext, *, repair: bool = False) -> List[BalanceDiscrepancy]:
    """Compare every stored balance with the balance its transactions imply.

    Each mismatch is logged as a ``LEDGER DISCREPANCY``. With ``repair=True``
    the stored balances are moved to the expected values in one unit of work.

    Returns:
        list[BalanceDiscrepancy]: Mismatches found before any repair.
    """
    discrepancies: List[BalanceDiscrepancy] = []
    customers = list_customers(context, include_hidden=True)
    for customer in customers:
        expected = expected_balance(context, customer.customer_id)
        if expected != customer.balance:
            log.critical(
                "LEDGER DISCREPANCY: customer '%s' (%s) stores %s but transactions imply %s",
                customer.customer_id,
                customer.name,
                customer.balance,
                expected,
            )
            discrepancies.append(
                BalanceDiscrepancy(
                    customer_id=customer.customer_id,
                    customer_name=customer.name,
                    stored=customer.balance,
                    expected=expected,
                )
            )

    if repair and discrepancies:
        by_id = {customer.customer_id: customer for customer in customers}
        with _unit_of_work(context, "repair balances") as work:
            for discrepancy in discrepancies:
                _increment_balance(work, context, by_id[discrepancy.customer_id], discrepancy.difference)
        log.info("Repaired %d customer balance(s)", len(discrepancies))
    else:
        log.info("Reconciled %d customer balance(s); %d discrepancies", len(customers), len(discrepancies))
    return discrepancies
