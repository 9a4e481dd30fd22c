"""Data access layer for the mandi ledger.

This module provides low-level helpers that read from and write to the master
workbook which acts as the persisted store. Business rules belong elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading typed records and appending, updating or
   deleting individual rows. Every mutating helper hands back what it
   replaced so callers can compensate a failed multi-step write.
4. The atomic balance primitive :func:`increment_customer_balance`.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_CASH_SALE_NAME,
    DEFAULT_CURRENCY_SYMBOL,
    DEFAULT_DISPATCH_BASE_URL,
    OverpaymentPolicy,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"
CUSTOMERS_SHEET = SheetName.CUSTOMERS.value
ITEMS_SHEET = SheetName.ITEMS.value
CATEGORIES_SHEET = SheetName.ITEM_CATEGORIES.value
SALES_SHEET = SheetName.SALE_TRANSACTIONS.value
TRAYS_SHEET = SheetName.TRAY_TRANSACTIONS.value

RemovedRows = List[Tuple[int, Tuple[object, ...]]]


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    acting_party: Optional[str] = None
    cash_sale_name: str = DEFAULT_CASH_SALE_NAME
    currency_symbol: str = DEFAULT_CURRENCY_SYMBOL
    timezone: str = "UTC"
    overpayment_policy: OverpaymentPolicy = OverpaymentPolicy.ALLOW
    reopen_on_underpayment: bool = True
    tray_deposit_rate: Decimal = Decimal("0")
    low_stock_threshold: Decimal = Decimal("10")
    dispatch_base_url: str = DEFAULT_DISPATCH_BASE_URL
    default_country_code: str = ""


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``Customers`` sheet."""

    customer_id: str
    owner_id: str
    name: str
    phone: Optional[str]
    address: Optional[str]
    balance: Decimal
    visible: bool
    created_at: str


@dataclass(frozen=True)
class ItemRow:
    """In-memory view of a row from the ``Items`` sheet."""

    item_id: str
    name: str
    price_per_kg: Decimal
    price_per_unit: Optional[Decimal]
    unit: str
    available_stock: Decimal
    created_at: str


@dataclass(frozen=True)
class CategoryRow:
    """In-memory view of a row from the ``ItemCategories`` sheet."""

    category_id: str
    item_id: str
    name: str
    price_per_kg: Decimal
    price_per_unit: Optional[Decimal]
    unit: str
    available_stock: Decimal
    created_at: str


@dataclass(frozen=True)
class SaleTransactionRow:
    """In-memory view of a row from the ``SaleTransactions`` sheet."""

    transaction_id: str
    owner_id: str
    customer_id: str
    item_id: str
    category_id: Optional[str]
    quantity: Decimal
    rate: Decimal
    pricing_mode: str
    total_amount: Decimal
    paid_amount: Decimal
    status: str
    notes: Optional[str]
    created_at: str

    @property
    def outstanding(self) -> Decimal:
        return self.total_amount - self.paid_amount


@dataclass(frozen=True)
class TrayTransactionRow:
    """In-memory view of a row from the ``TrayTransactions`` sheet."""

    tray_transaction_id: str
    owner_id: str
    customer_id: str
    tray_number: str
    weight: Decimal
    rate: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    number_of_trays: int
    status: str
    notes: Optional[str]
    created_at: str

    @property
    def outstanding(self) -> Decimal:
        return self.total_amount - self.paid_amount

    @property
    def is_settled(self) -> bool:
        return self.paid_amount >= self.total_amount


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the
    current working directory toward the filesystem root looking for a file
    named ``CONFIG_FILE_NAME``; the first match wins.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Callers receive the parser even if individual sections are missing;
    validation of required entries happens in :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion
            and resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def _decimal_option(parser: configparser.ConfigParser, section: str, option: str, fallback: str) -> Decimal:
    raw = parser.get(section, option, fallback=fallback)
    try:
        return Decimal(raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid decimal for [{section}] {option}: {raw!r}") from exc


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` must provide ``DataFile``, ``BusinessName`` and
    ``SchemaVersion``. Everything under ``[Defaults]``, ``[Ledger]`` and
    ``[Messaging]`` is optional and falls back to the dataclass defaults. A
    blank ``ActingParty`` is treated as "no identified actor".

    Relative ``DataFile`` paths are expanded against ``base_path`` (or the
    current working directory) and resolved.

    Raises:
        KeyError: If one of the required options is missing.
        ValueError: If an optional value cannot be interpreted.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    acting_party = parser.get("Defaults", "ActingParty", fallback="").strip() or None
    policy_raw = parser.get("Ledger", "OverpaymentPolicy", fallback=OverpaymentPolicy.ALLOW.value)
    try:
        policy = OverpaymentPolicy(policy_raw.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unsupported overpayment policy: {policy_raw}") from exc

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        acting_party=acting_party,
        cash_sale_name=parser.get("Defaults", "CashSaleName", fallback=DEFAULT_CASH_SALE_NAME),
        currency_symbol=parser.get("System", "CurrencySymbol", fallback=DEFAULT_CURRENCY_SYMBOL),
        timezone=parser.get("System", "Timezone", fallback="UTC"),
        overpayment_policy=policy,
        reopen_on_underpayment=parser.getboolean("Ledger", "ReopenOnUnderpayment", fallback=True),
        tray_deposit_rate=_decimal_option(parser, "Ledger", "TrayDepositRate", "0"),
        low_stock_threshold=_decimal_option(parser, "Ledger", "LowStockThreshold", "10"),
        dispatch_base_url=parser.get("Messaging", "DispatchBaseUrl", fallback=DEFAULT_DISPATCH_BASE_URL),
        default_country_code=parser.get("Messaging", "DefaultCountryCode", fallback="").strip(),
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[Sequence[object]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_customers(workbook: Workbook) -> Iterable[CustomerRow]:
    """Iterate over customer records stored on the ``Customers`` worksheet."""

    for raw in _iter_sheet(workbook, CUSTOMERS_SHEET):
        yield deserialize_customer(raw)


def iter_items(workbook: Workbook) -> Iterable[ItemRow]:
    """Iterate over the ``Items`` worksheet and yield typed records."""

    for raw in _iter_sheet(workbook, ITEMS_SHEET):
        yield deserialize_item(raw)


def iter_categories(workbook: Workbook) -> Iterable[CategoryRow]:
    """Iterate over the ``ItemCategories`` worksheet and yield typed records."""

    for raw in _iter_sheet(workbook, CATEGORIES_SHEET):
        yield deserialize_category(raw)


def iter_sale_transactions(workbook: Workbook) -> Iterable[SaleTransactionRow]:
    """Stream sale records from the ``SaleTransactions`` worksheet.

    Numeric columns come back as :class:`~decimal.Decimal` regardless of
    whether the cell held a ``Decimal`` (same session) or a ``float``
    (reloaded from disk).
    """

    for raw in _iter_sheet(workbook, SALES_SHEET):
        yield deserialize_sale_transaction(raw)


def iter_tray_transactions(workbook: Workbook) -> Iterable[TrayTransactionRow]:
    """Stream tray records from the ``TrayTransactions`` worksheet."""

    for raw in _iter_sheet(workbook, TRAYS_SHEET):
        yield deserialize_tray_transaction(raw)


def append_customer(workbook: Workbook, record: CustomerRow) -> None:
    """Append a customer record to the ``Customers`` worksheet."""

    workbook[CUSTOMERS_SHEET].append(serialize_customer(record))


def append_item(workbook: Workbook, record: ItemRow) -> None:
    """Append an item record to the ``Items`` worksheet."""

    workbook[ITEMS_SHEET].append(serialize_item(record))


def append_category(workbook: Workbook, record: CategoryRow) -> None:
    """Append a category record to the ``ItemCategories`` worksheet."""

    workbook[CATEGORIES_SHEET].append(serialize_category(record))


def append_sale_transaction(workbook: Workbook, record: SaleTransactionRow) -> None:
    """Append a sale record to the ``SaleTransactions`` worksheet.

    Numerical fields remain :class:`~decimal.Decimal` instances after
    serialization so no precision is lost before the workbook is saved.
    """

    workbook[SALES_SHEET].append(serialize_sale_transaction(record))


def append_tray_transaction(workbook: Workbook, record: TrayTransactionRow) -> None:
    """Append a tray record to the ``TrayTransactions`` worksheet."""

    workbook[TRAYS_SHEET].append(serialize_tray_transaction(record))


def _header_map(workbook: Workbook, sheet_name: str) -> dict[Any, int]:
    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def update_row(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: str,
    *,
    field_values: dict[str, Any],
) -> dict[str, Any]:
    """Overwrite selected columns of the row whose key matches ``key_value``.

    Only the named fields are touched. The previous cell values are returned
    keyed by column name, which is exactly the ``field_values`` needed to undo
    the update.

    Raises:
        KeyError: If the row or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} row not found: {key_value}")

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)
    unknown = [field for field in field_values if field not in header_map]
    if unknown:
        raise KeyError(f"Unknown {sheet_name} field: {unknown[0]}")

    previous: dict[str, Any] = {}
    for field, value in field_values.items():
        cell = sheet.cell(row=row_index, column=header_map[field])
        previous[field] = cell.value
        cell.value = value
    return previous


def delete_rows(workbook: Workbook, sheet_name: str, key_column: str, key_values: Iterable[str]) -> RemovedRows:
    """Remove every row whose key column holds one of ``key_values``.

    Returns:
        list[tuple[int, tuple]]: ``(row_index, values)`` for each removed row
            in ascending row order, suitable for :func:`restore_rows`.
    """

    wanted = set(key_values)
    if not wanted:
        return []

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")
    key_col_index = header_map[key_column]

    removed: RemovedRows = []
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] in wanted:
            removed.append((row_idx, tuple(row)))

    # Bottom-up so earlier indices stay valid.
    for row_idx, _ in reversed(removed):
        sheet.delete_rows(row_idx)
    return removed


def restore_rows(workbook: Workbook, sheet_name: str, removed: RemovedRows) -> None:
    """Re-insert rows previously returned by :func:`delete_rows` at their old positions."""

    sheet = workbook[sheet_name]
    for row_idx, values in sorted(removed, key=lambda entry: entry[0]):
        sheet.insert_rows(row_idx)
        for col_idx, value in enumerate(values, start=1):
            sheet.cell(row=row_idx, column=col_idx, value=value)


def increment_customer_balance(workbook: Workbook, customer_id: str, delta: Decimal) -> Tuple[Decimal, Decimal]:
    """Add ``delta`` to a customer's stored balance in a single cell update.

    This is the only primitive the business layer uses to move a balance: it
    never writes a balance it computed from an earlier read. Callers that
    share a workbook serialize through ``RuntimeContext.lock``.

    Returns:
        tuple[Decimal, Decimal]: The balance before and after the increment.

    Raises:
        KeyError: If the customer row cannot be found.
    """

    row_index = locate_row(workbook, CUSTOMERS_SHEET, "CustomerID", customer_id)
    if row_index is None:
        raise KeyError(f"Customer not found: {customer_id}")

    column = _header_map(workbook, CUSTOMERS_SHEET)["Balance"]
    cell = workbook[CUSTOMERS_SHEET].cell(row=row_index, column=column)
    previous = _to_decimal(cell.value, Decimal("0.00"))
    updated = previous + delta
    cell.value = updated
    log.debug("Balance of customer '%s' moved %s -> %s", customer_id, previous, updated)
    return previous, updated


def serialize_customer(record: CustomerRow) -> list[object]:
    """Convert a customer dataclass into the worksheet column ordering."""

    return [
        record.customer_id,
        record.owner_id,
        record.name,
        record.phone,
        record.address,
        record.balance,
        record.visible,
        record.created_at,
    ]


def serialize_item(record: ItemRow) -> list[object]:
    """Convert an item dataclass into the worksheet column ordering."""

    return [
        record.item_id,
        record.name,
        record.price_per_kg,
        record.price_per_unit,
        record.unit,
        record.available_stock,
        record.created_at,
    ]


def serialize_category(record: CategoryRow) -> list[object]:
    """Convert a category dataclass into the worksheet column ordering."""

    return [
        record.category_id,
        record.item_id,
        record.name,
        record.price_per_kg,
        record.price_per_unit,
        record.unit,
        record.available_stock,
        record.created_at,
    ]


def serialize_sale_transaction(record: SaleTransactionRow) -> list[object]:
    """Convert a sale dataclass into the ``SaleTransactions`` column order."""

    return [
        record.transaction_id,
        record.owner_id,
        record.customer_id,
        record.item_id,
        record.category_id,
        record.quantity,
        record.rate,
        record.pricing_mode,
        record.total_amount,
        record.paid_amount,
        record.status,
        record.notes,
        record.created_at,
    ]


def serialize_tray_transaction(record: TrayTransactionRow) -> list[object]:
    """Convert a tray dataclass into the ``TrayTransactions`` column order."""

    return [
        record.tray_transaction_id,
        record.owner_id,
        record.customer_id,
        record.tray_number,
        record.weight,
        record.rate,
        record.total_amount,
        record.paid_amount,
        record.number_of_trays,
        record.status,
        record.notes,
        record.created_at,
    ]


def _to_decimal(raw: object, default: Decimal) -> Decimal:
    return Decimal(str(raw)) if raw is not None else default


def _to_optional_decimal(raw: object) -> Optional[Decimal]:
    return Decimal(str(raw)) if raw not in (None, "") else None


def _to_optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw not in (None, "") else None


def deserialize_customer(raw_row: Sequence[object]) -> CustomerRow:
    """Convert a raw worksheet row into a strongly typed customer record.

    Identifiers are coerced to ``str`` so phone numbers or ids that Excel
    reinterpreted as numbers still compare correctly.
    """

    (
        customer_id,
        owner_id,
        name,
        phone,
        address,
        balance_raw,
        visible,
        created_at,
    ) = raw_row[:8]

    return CustomerRow(
        customer_id=str(customer_id),
        owner_id=str(owner_id) if owner_id is not None else "",
        name=str(name) if name is not None else "",
        phone=_to_optional_str(phone),
        address=_to_optional_str(address),
        balance=_to_decimal(balance_raw, Decimal("0.00")),
        visible=bool(visible),
        created_at=str(created_at) if created_at is not None else "",
    )


def deserialize_item(raw_row: Sequence[object]) -> ItemRow:
    """Convert a raw worksheet row into a strongly typed item record."""

    item_id, name, per_kg, per_unit, unit, stock, created_at = raw_row[:7]
    return ItemRow(
        item_id=str(item_id),
        name=str(name) if name is not None else "",
        price_per_kg=_to_decimal(per_kg, Decimal("0.00")),
        price_per_unit=_to_optional_decimal(per_unit),
        unit=str(unit) if unit is not None else "kg",
        available_stock=_to_decimal(stock, Decimal("0")),
        created_at=str(created_at) if created_at is not None else "",
    )


def deserialize_category(raw_row: Sequence[object]) -> CategoryRow:
    """Convert a raw worksheet row into a strongly typed category record."""

    category_id, item_id, name, per_kg, per_unit, unit, stock, created_at = raw_row[:8]
    return CategoryRow(
        category_id=str(category_id),
        item_id=str(item_id),
        name=str(name) if name is not None else "",
        price_per_kg=_to_decimal(per_kg, Decimal("0.00")),
        price_per_unit=_to_optional_decimal(per_unit),
        unit=str(unit) if unit is not None else "kg",
        available_stock=_to_decimal(stock, Decimal("0")),
        created_at=str(created_at) if created_at is not None else "",
    )


def deserialize_sale_transaction(raw_row: Sequence[object]) -> SaleTransactionRow:
    """Convert a raw worksheet row into a strongly typed sale record.

    Decimal-compatible columns are normalized into :class:`~decimal.Decimal`
    instances and optional columns remain ``None`` when the sheet leaves them
    blank.
    """

    (
        transaction_id,
        owner_id,
        customer_id,
        item_id,
        category_id,
        quantity_raw,
        rate_raw,
        pricing_mode,
        total_raw,
        paid_raw,
        status,
        notes,
        created_at,
    ) = raw_row[:13]

    return SaleTransactionRow(
        transaction_id=str(transaction_id),
        owner_id=str(owner_id) if owner_id is not None else "",
        customer_id=str(customer_id),
        item_id=str(item_id),
        category_id=_to_optional_str(category_id),
        quantity=_to_decimal(quantity_raw, Decimal("0")),
        rate=_to_decimal(rate_raw, Decimal("0.00")),
        pricing_mode=str(pricing_mode) if pricing_mode is not None else "per_kg",
        total_amount=_to_decimal(total_raw, Decimal("0.00")),
        paid_amount=_to_decimal(paid_raw, Decimal("0.00")),
        status=str(status) if status is not None else "",
        notes=_to_optional_str(notes),
        created_at=str(created_at) if created_at is not None else "",
    )


def deserialize_tray_transaction(raw_row: Sequence[object]) -> TrayTransactionRow:
    """Convert a raw worksheet row into a strongly typed tray record."""

    (
        tray_transaction_id,
        owner_id,
        customer_id,
        tray_number,
        weight_raw,
        rate_raw,
        total_raw,
        paid_raw,
        trays_raw,
        status,
        notes,
        created_at,
    ) = raw_row[:12]

    return TrayTransactionRow(
        tray_transaction_id=str(tray_transaction_id),
        owner_id=str(owner_id) if owner_id is not None else "",
        customer_id=str(customer_id),
        tray_number=str(tray_number) if tray_number is not None else "",
        weight=_to_decimal(weight_raw, Decimal("0")),
        rate=_to_decimal(rate_raw, Decimal("0.00")),
        total_amount=_to_decimal(total_raw, Decimal("0.00")),
        paid_amount=_to_decimal(paid_raw, Decimal("0.00")),
        number_of_trays=int(trays_raw) if trays_raw is not None else 0,
        status=str(status) if status is not None else "",
        notes=_to_optional_str(notes),
        created_at=str(created_at) if created_at is not None else "",
    )
