"""
Consolidated type handling for statement arguments and result columns.

This module provides:
- TypeConverter: Convert NumPy, pandas and PyArrow values to driver-native values
- Column: Result column names from cursor descriptions
- RowAdapter: Uniform access to tuple, mapping and sqlite3.Row rows
"""
import logging
import math
from typing import Any, Self

import numpy as np
import pandas as pd
import pyarrow as pa

logger = logging.getLogger(__name__)

NUMPY_FLOAT_TYPES = (np.floating,)
NUMPY_INT_TYPES = (np.integer, np.unsignedinteger)


def _convert_pyarrow_value(value: Any) -> Any:
    """Convert PyArrow scalar or array to Python type."""
    if isinstance(value, pa.Scalar):
        return value.as_py()
    if isinstance(value, pa.Array | pa.ChunkedArray):
        return value.to_pylist()
    return value


def _convert_numpy_value(val: Any) -> Any:
    """Convert NumPy value to Python type."""
    if isinstance(val, np.floating) and np.isnan(val):
        return None

    if isinstance(val, np.datetime64):
        if np.isnat(val):
            return None
        return pd.Timestamp(val).to_pydatetime()

    if isinstance(val, (np.bool_, np.floating, np.integer, np.unsignedinteger)):
        return val.item()

    return val


class TypeConverter:
    """Universal type conversion for statement arguments.

    Handles NumPy, pandas and PyArrow values; anything else passes through.
    """

    @staticmethod
    def convert_value(value: Any) -> Any:
        """Convert a single value to a driver-compatible format."""
        if value is None:
            return None

        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            return None

        if value is pd.NaT or value is pd.NA:
            return None

        if isinstance(value, (*NUMPY_FLOAT_TYPES, *NUMPY_INT_TYPES, np.bool_, np.datetime64)):
            return _convert_numpy_value(value)

        if isinstance(value, pd.Timestamp):
            return value.to_pydatetime()

        if isinstance(value, pa.Scalar | pa.Array | pa.ChunkedArray):
            return _convert_pyarrow_value(value)

        return value


class Column:
    """Result column, named as the driver reports it."""

    def __init__(self, name: str):
        self.name = name

    @classmethod
    def from_cursor_description(cls, description_item: Any) -> Self:
        """Create a Column from one DB-API cursor description item.

        Description items are 7-sequences; psycopg also exposes them as
        objects with named attributes.
        """
        return cls(getattr(description_item, 'name', None) or description_item[0])

    def __repr__(self) -> str:
        return f'Column(name={self.name!r})'

    @staticmethod
    def get_names(columns: list[Self]) -> list[str]:
        return [col.name for col in columns]


def columns_from_cursor_description(cursor: Any) -> list[Column]:
    """Create Column objects from cursor description."""
    if cursor.description is None:
        return []
    return [Column.from_cursor_description(desc) for desc in cursor.description]


class RowAdapter:
    """Simple row adapter for converting database rows to dictionaries."""

    def __init__(self, row: Any, columns: list[Column] | None = None):
        self.row = row
        self.columns = columns or []

    def to_dict(self) -> dict[str, Any]:
        """Convert row to dictionary."""
        if isinstance(self.row, dict):
            return dict(self.row)
        # sqlite3.Row
        if hasattr(self.row, 'keys') and callable(self.row.keys):
            return {key: self.row[key] for key in self.row.keys()}  # noqa: SIM118
        # Namedtuple
        if hasattr(self.row, '_asdict'):
            return self.row._asdict()
        return dict(zip(Column.get_names(self.columns), self.row))

    def get_value(self, key: str | int | None = None) -> Any:
        """Get a value from the row by column name or position (default: first)."""
        if key is None:
            key = 0
        if isinstance(key, int):
            if isinstance(self.row, dict):
                return list(self.row.values())[key]
            return self.row[key]
        if isinstance(self.row, dict) or hasattr(self.row, 'keys'):
            return self.row[key]
        names = Column.get_names(self.columns)
        lowered = [n.lower() for n in names]
        if key in names:
            return self.row[names.index(key)]
        if key.lower() in lowered:
            return self.row[lowered.index(key.lower())]
        raise KeyError(key)

    def __len__(self) -> int:
        return len(self.row)
