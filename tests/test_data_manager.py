"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from mandi_ledger import constants, data_manager


def _customer(customer_id: str = "C1", *, balance: str = "0.00", phone: str | None = "9876543210") -> data_manager.CustomerRow:
    return data_manager.CustomerRow(
        customer_id=customer_id,
        owner_id="U-OWNER",
        name=f"Customer {customer_id}",
        phone=phone,
        address=None,
        balance=Decimal(balance),
        visible=True,
        created_at="2026-10-01T09:00:00+00:00",
    )


def _sale(transaction_id: str, customer_id: str = "C1") -> data_manager.SaleTransactionRow:
    return data_manager.SaleTransactionRow(
        transaction_id=transaction_id,
        owner_id="U-OWNER",
        customer_id=customer_id,
        item_id="I1",
        category_id=None,
        quantity=Decimal("10"),
        rate=Decimal("50"),
        pricing_mode="per_kg",
        total_amount=Decimal("500"),
        paid_amount=Decimal("300"),
        status="pending",
        notes=None,
        created_at="2026-10-01T09:00:00+00:00",
    )


# ----- Configuration -----


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    (tmp_path / "config.ini").write_text("[System]\nDataFile=master.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == tmp_path / "config.ini"


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "BusinessName") == "Test Mandi"
    assert parser.get("Defaults", "ActingParty") == "U-OWNER"


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = data_manager.read_config(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.acting_party == "U-OWNER"
    assert settings.currency_symbol == "Rs."
    assert settings.default_country_code == "91"


def test_parse_settings_applies_defaults_for_optional_sections(tmp_path):
    """Only [System] is mandatory; the ledger options fall back to defaults."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = data.xlsx\nBusinessName = Shop\nSchemaVersion = 1.0.0\n")
    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.acting_party is None
    assert settings.overpayment_policy is constants.OverpaymentPolicy.ALLOW
    assert settings.reopen_on_underpayment is True
    assert settings.tray_deposit_rate == Decimal("0")
    assert settings.cash_sale_name == constants.DEFAULT_CASH_SALE_NAME
    assert settings.dispatch_base_url == constants.DEFAULT_DISPATCH_BASE_URL


def test_parse_settings_reads_ledger_options(tmp_path):
    """Ledger policy options should be typed on the way in."""

    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = data.xlsx\nBusinessName = Shop\nSchemaVersion = 1.0.0\n"
        "[Ledger]\nOverpaymentPolicy = Clamp\nReopenOnUnderpayment = no\nTrayDepositRate = 2.5\n"
    )
    settings = data_manager.parse_settings(parser, base_path=tmp_path)

    assert settings.overpayment_policy is constants.OverpaymentPolicy.CLAMP
    assert settings.reopen_on_underpayment is False
    assert settings.tray_deposit_rate == Decimal("2.5")


def test_parse_settings_rejects_unknown_policy(tmp_path):
    """An unsupported over-payment policy is a configuration error."""

    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = data.xlsx\nBusinessName = Shop\nSchemaVersion = 1.0.0\n"
        "[Ledger]\nOverpaymentPolicy = refund\n"
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_rejects_bad_decimal(tmp_path):
    """Numeric ledger options must parse as decimals."""

    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = data.xlsx\nBusinessName = Shop\nSchemaVersion = 1.0.0\n"
        "[Ledger]\nTrayDepositRate = cheap\n"
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ----- Workbook lifecycle -----


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    """open_workbook should hand back a loaded Workbook object."""

    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert set(workbook.sheetnames) == set(constants.SHEET_COLUMNS)


def test_open_workbook_missing_file_raises(tmp_path):
    """Missing workbook files should yield FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_with_destination_creates_copy(master_workbook_path, tmp_path):
    """Saving to a new destination creates parent folders and an independent copy."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_customer(workbook, _customer("C9"))
    copy_path = tmp_path / "nested" / "copy.xlsx"
    data_manager.save_workbook(workbook, destination=copy_path)

    copy = openpyxl.load_workbook(copy_path)
    rows = list(copy[data_manager.CUSTOMERS_SHEET].iter_rows(min_row=2, values_only=True))
    assert rows[0][0] == "C9"
    original = data_manager.open_workbook(master_workbook_path)
    assert list(data_manager.iter_customers(original)) == []


def test_refresh_workbook_discards_unsaved_changes(master_workbook_path):
    """refresh_workbook should return a fresh instance loaded from disk."""

    original = data_manager.open_workbook(master_workbook_path)
    data_manager.append_customer(original, _customer("C1"))

    refreshed = data_manager.refresh_workbook(master_workbook_path)
    assert refreshed is not original
    assert list(data_manager.iter_customers(refreshed)) == []


# ----- Sheet operations -----


def test_customer_round_trip_survives_save(master_workbook_path):
    """Customers written and reloaded from disk keep Decimal balances and flags."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_customer(workbook, _customer("C1", balance="200.50"))
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = data_manager.open_workbook(master_workbook_path)
    (customer,) = list(data_manager.iter_customers(reloaded))
    assert customer.customer_id == "C1"
    assert customer.balance == Decimal("200.50")
    assert isinstance(customer.balance, Decimal)
    assert customer.visible is True
    assert customer.address is None


def test_deserialize_customer_coerces_numeric_phone():
    """Phones that Excel turned into numbers come back as strings."""

    row = ("C1", "U-OWNER", "Ravi", 9876543210, None, 12.5, False, "2026-10-01")
    customer = data_manager.deserialize_customer(row)
    assert customer.phone == "9876543210"
    assert customer.balance == Decimal("12.5")
    assert customer.visible is False


def test_iter_sale_transactions_skips_blank_rows(master_workbook_path):
    """Fully empty rows between records are ignored."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_sale_transaction(workbook, _sale("T1"))
    workbook[data_manager.SALES_SHEET].append([None] * 13)
    data_manager.append_sale_transaction(workbook, _sale("T2"))

    sales = list(data_manager.iter_sale_transactions(workbook))
    assert [sale.transaction_id for sale in sales] == ["T1", "T2"]
    assert sales[0].outstanding == Decimal("200")


def test_tray_row_reports_settlement():
    """Tray rows expose their outstanding amount and settlement flag."""

    tray = data_manager.deserialize_tray_transaction(
        ("TR1", "U-OWNER", "C1", "T-7", 10, 5, 50, 50, 2, "in_use", None, "2026-10-01")
    )
    assert tray.number_of_trays == 2
    assert tray.outstanding == Decimal("0")
    assert tray.is_settled is True


def test_locate_row_returns_excel_index(master_workbook_path):
    """locate_row should return the 1-based row index of the match."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_customer(workbook, _customer("C1"))
    data_manager.append_customer(workbook, _customer("C2"))

    assert data_manager.locate_row(workbook, data_manager.CUSTOMERS_SHEET, "CustomerID", "C2") == 3
    assert data_manager.locate_row(workbook, data_manager.CUSTOMERS_SHEET, "CustomerID", "C3") is None


def test_locate_row_unknown_column_raises(master_workbook_path):
    """Unknown key columns are a programming error."""

    workbook = data_manager.open_workbook(master_workbook_path)
    with pytest.raises(KeyError):
        data_manager.locate_row(workbook, data_manager.CUSTOMERS_SHEET, "Nope", "C1")


def test_update_row_returns_previous_values(master_workbook_path):
    """update_row should touch only the named fields and hand back the old values."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_sale_transaction(workbook, _sale("T1"))

    previous = data_manager.update_row(
        workbook,
        data_manager.SALES_SHEET,
        "TransactionID",
        "T1",
        field_values={"PaidAmount": Decimal("500"), "Status": "completed"},
    )

    assert previous == {"PaidAmount": Decimal("300"), "Status": "pending"}
    (sale,) = list(data_manager.iter_sale_transactions(workbook))
    assert sale.paid_amount == Decimal("500")
    assert sale.status == "completed"
    assert sale.total_amount == Decimal("500")


def test_update_row_missing_row_or_field_raises(master_workbook_path):
    """Updating a missing row or an unknown column raises KeyError."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_sale_transaction(workbook, _sale("T1"))

    with pytest.raises(KeyError):
        data_manager.update_row(workbook, data_manager.SALES_SHEET, "TransactionID", "T9", field_values={"Status": "x"})
    with pytest.raises(KeyError):
        data_manager.update_row(workbook, data_manager.SALES_SHEET, "TransactionID", "T1", field_values={"Bogus": 1})


def test_delete_rows_and_restore_rows_round_trip(master_workbook_path):
    """Removed rows can be put back at their original positions."""

    workbook = data_manager.open_workbook(master_workbook_path)
    for transaction_id, customer_id in (("T1", "C1"), ("T2", "C2"), ("T3", "C1"), ("T4", "C2")):
        data_manager.append_sale_transaction(workbook, _sale(transaction_id, customer_id))

    removed = data_manager.delete_rows(workbook, data_manager.SALES_SHEET, "TransactionID", ["T1", "T3"])

    assert [index for index, _ in removed] == [2, 4]
    assert [sale.transaction_id for sale in data_manager.iter_sale_transactions(workbook)] == ["T2", "T4"]

    data_manager.restore_rows(workbook, data_manager.SALES_SHEET, removed)
    assert [sale.transaction_id for sale in data_manager.iter_sale_transactions(workbook)] == ["T1", "T2", "T3", "T4"]


def test_delete_rows_with_no_keys_is_a_no_op(master_workbook_path):
    """An empty key list removes nothing."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_sale_transaction(workbook, _sale("T1"))
    assert data_manager.delete_rows(workbook, data_manager.SALES_SHEET, "TransactionID", []) == []
    assert len(list(data_manager.iter_sale_transactions(workbook))) == 1


# ----- Balance primitive -----


def test_increment_customer_balance_moves_by_delta(master_workbook_path):
    """The balance primitive adds the delta to whatever is stored."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_customer(workbook, _customer("C1", balance="100.00"))

    assert data_manager.increment_customer_balance(workbook, "C1", Decimal("200")) == (Decimal("100.00"), Decimal("300.00"))
    assert data_manager.increment_customer_balance(workbook, "C1", Decimal("-50.25")) == (Decimal("300.00"), Decimal("249.75"))
    (customer,) = list(data_manager.iter_customers(workbook))
    assert customer.balance == Decimal("249.75")


def test_increment_customer_balance_missing_customer_raises(master_workbook_path):
    """Incrementing an unknown customer is refused."""

    workbook = data_manager.open_workbook(master_workbook_path)
    with pytest.raises(KeyError):
        data_manager.increment_customer_balance(workbook, "missing", Decimal("1"))
