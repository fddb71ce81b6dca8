"""Static table descriptors for every worksheet the store manages.

A :class:`TableSchema` is pure data: the worksheet name, its ordered column
list and a few optional column roles. The first column is always the
identifier column. Timestamp columns are read back as ``datetime`` values and
JSON columns as the structures that were written. Column order is part of the
persisted format, so changing it invalidates every row already written to the
sheet.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .constants import ARCHIVED_STATUS, SheetName
from .errors import ValidationError


@dataclass(frozen=True)
class TableSchema:
    """Descriptor of a worksheet-backed table."""

    name: str
    columns: Tuple[str, ...]
    id_prefix: Optional[str] = None
    date_columns: Tuple[str, ...] = ()
    json_columns: Tuple[str, ...] = ()
    modified_column: Optional[str] = None
    status_column: Optional[str] = None
    archived_value: str = ARCHIVED_STATUS

    def __post_init__(self) -> None:
        if not self.columns:
            raise ValidationError(f"Table '{self.name}' must declare at least one column")
        if len(set(self.columns)) != len(self.columns):
            raise ValidationError(f"Table '{self.name}' declares duplicate columns")
        for role in (self.modified_column, self.status_column, *self.date_columns, *self.json_columns):
            if role is not None and role not in self.columns:
                raise ValidationError(f"Column '{role}' is not part of table '{self.name}'")

    @property
    def id_column(self) -> str:
        return self.columns[0]

    @property
    def timestamp_columns(self) -> Tuple[str, ...]:
        """Columns read back as ``datetime`` values."""

        if self.modified_column is None or self.modified_column in self.date_columns:
            return self.date_columns
        return (*self.date_columns, self.modified_column)

    def column_index(self, column: str) -> int:
        """Return the 1-based worksheet column for ``column``."""

        try:
            return self.columns.index(column) + 1
        except ValueError as exc:
            raise ValidationError(f"Unknown column '{column}' for table '{self.name}'") from exc


ITEMS = TableSchema(
    name=SheetName.ITEMS.value,
    columns=(
        "Item_ID",
        "Name",
        "Category",
        "Quantity",
        "Unit_Price",
        "Reorder_Level",
        "Status",
        "Created_Date",
        "Last_Updated",
    ),
    id_prefix="ITM",
    date_columns=("Created_Date",),
    modified_column="Last_Updated",
    status_column="Status",
)

SALES = TableSchema(
    name=SheetName.SALES.value,
    columns=(
        "Sale_ID",
        "Item_ID",
        "Customer_ID",
        "Quantity",
        "Total",
        "Payment_Type",
        "Sale_Date",
        "Notes",
    ),
    id_prefix="SAL",
    date_columns=("Sale_Date",),
    json_columns=("Notes",),
)

CUSTOMERS = TableSchema(
    name=SheetName.CUSTOMERS.value,
    columns=(
        "Customer_ID",
        "Name",
        "Email",
        "Phone",
        "Status",
        "Created_Date",
        "Last_Updated",
    ),
    id_prefix="CUS",
    date_columns=("Created_Date",),
    modified_column="Last_Updated",
    status_column="Status",
)

DASHBOARD_CACHE = TableSchema(
    name=SheetName.DASHBOARD_CACHE.value,
    columns=(
        "Key",
        "Value",
        "Value_Type",
        "Last_Updated",
        "TTL_Seconds",
        "Category",
    ),
)

ACTIVITY_LOG = TableSchema(
    name=SheetName.ACTIVITY_LOG.value,
    columns=(
        "Log_ID",
        "Timestamp",
        "Action",
        "Table",
        "Record_ID",
        "Details",
    ),
    id_prefix="LOG",
    date_columns=("Timestamp",),
    json_columns=("Details",),
)

SCHEMAS: Dict[str, TableSchema] = {
    schema.name: schema
    for schema in (ITEMS, SALES, CUSTOMERS, DASHBOARD_CACHE, ACTIVITY_LOG)
}


def get_schema(name: str) -> TableSchema:
    """Resolve a registered schema by sheet name (case-insensitive)."""

    for schema_name, schema in SCHEMAS.items():
        if schema_name.lower() == name.lower():
            return schema
    raise ValidationError(f"Unknown table: {name}")


__all__ = [
    "TableSchema",
    "ITEMS",
    "SALES",
    "CUSTOMERS",
    "DASHBOARD_CACHE",
    "ACTIVITY_LOG",
    "SCHEMAS",
    "get_schema",
]
