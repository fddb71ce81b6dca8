"""Tests for table descriptors and the error taxonomy."""

from __future__ import annotations

import pytest

from stockbook import constants
from stockbook.errors import LockTimeout, RecordNotFound, StoreError, ValidationError, error_payload
from stockbook.schema import DASHBOARD_CACHE, ITEMS, SALES, TableSchema, get_schema


def test_id_column_is_first_column():
    """The first declared column identifies records."""

    assert ITEMS.id_column == "Item_ID"
    assert DASHBOARD_CACHE.id_column == "Key"


def test_column_index_is_one_based():
    """Column positions match worksheet columns."""

    assert ITEMS.column_index("Item_ID") == 1
    assert ITEMS.column_index("Last_Updated") == len(ITEMS.columns)
    with pytest.raises(ValidationError):
        ITEMS.column_index("Colour")


def test_timestamp_columns_include_the_modified_column():
    """Creation and modification stamps are both read back as datetimes."""

    assert ITEMS.timestamp_columns == ("Created_Date", "Last_Updated")
    assert SALES.timestamp_columns == ("Sale_Date",)
    assert SALES.json_columns == ("Notes",)
    assert DASHBOARD_CACHE.timestamp_columns == ()


def test_constants_export_only_defined_names():
    """Every exported constant name resolves on the module."""

    assert all(hasattr(constants, name) for name in constants.__all__)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"columns": ()},
        {"columns": ("A", "A")},
        {"columns": ("A", "B"), "status_column": "C"},
        {"columns": ("A", "B"), "date_columns": ("Z",)},
        {"columns": ("A", "B"), "json_columns": ("Z",)},
    ],
)
def test_invalid_schemas_are_rejected(kwargs):
    """Empty, duplicated or dangling column declarations fail fast."""

    with pytest.raises(ValidationError):
        TableSchema(name="Broken", **kwargs)


def test_get_schema_is_case_insensitive():
    """Registered tables resolve regardless of case."""

    assert get_schema("items") is ITEMS
    assert get_schema("DASHBOARD_CACHE") is DASHBOARD_CACHE
    with pytest.raises(ValidationError):
        get_schema("Nope")


def test_errors_carry_codes_and_payloads():
    """Every store error exposes a stable code and a dict payload."""

    error = RecordNotFound("gone", details={"id": "X"})

    assert isinstance(error, StoreError)
    assert str(error) == "gone"
    assert error.to_dict() == {"code": "NOT_FOUND", "message": "gone", "details": {"id": "X"}}
    assert error.retryable is False
    assert LockTimeout("busy").retryable is True
    assert LockTimeout("busy").partial is None
    assert error_payload("VALIDATION_ERROR", "bad") == {"code": "VALIDATION_ERROR", "message": "bad"}
