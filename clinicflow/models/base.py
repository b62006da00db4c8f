"""Typed table definitions and the row <-> record mapping used at the store boundary."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Type, TypeVar

from clinicflow.exceptions import FatalError

TEXT = "text"
BOOL = "bool"
DATETIME = "datetime"
LIST = "list"
NUMBER = "number"
ENUM = "enum"

LIST_SEPARATOR = ", "


@dataclass(frozen=True)
class Column:
    header: str
    attr: str
    kind: str = TEXT
    enum: Optional[Type[Enum]] = None
    required: bool = False


@dataclass(frozen=True)
class TableDef:
    name: str
    columns: Tuple[Column, ...]
    key: str

    @property
    def headers(self) -> List[str]:
        return [c.header for c in self.columns]

    def column_for(self, attr: str) -> Column:
        for column in self.columns:
            if column.attr == attr:
                return column
        raise KeyError(f"{self.name} has no column for field '{attr}'")


def encode_cell(column: Column, value: Any) -> Any:
    if value is None:
        return ""
    if column.kind == BOOL:
        return "Yes" if value else "No"
    if column.kind == DATETIME:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if column.kind == LIST:
        return LIST_SEPARATOR.join(str(v) for v in value)
    if column.kind == ENUM:
        return value.value if isinstance(value, Enum) else str(value)
    if column.kind == NUMBER:
        return value
    return str(value)


def decode_cell(column: Column, raw: Any) -> Any:
    """Decode one cell; raises ValueError when the cell does not fit its column."""
    empty = raw is None or (isinstance(raw, str) and not raw.strip())

    if empty:
        if column.required:
            raise ValueError(f"'{column.header}' is empty")
        if column.kind == BOOL:
            return False
        if column.kind == LIST:
            return []
        if column.kind == TEXT:
            return ""
        return None

    if column.kind == BOOL:
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in ("yes", "true", "1"):
            return True
        if text in ("no", "false", "0"):
            return False
        raise ValueError(f"'{column.header}' is not a yes/no value: {raw!r}")

    if column.kind == DATETIME:
        value = raw if isinstance(raw, datetime) else datetime.fromisoformat(str(raw).strip())
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    if column.kind == LIST:
        return [part.strip() for part in str(raw).split(",") if part.strip()]

    if column.kind == ENUM:
        return column.enum(str(raw).strip())

    if column.kind == NUMBER:
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            return raw
        number = float(str(raw).strip())
        return int(number) if number.is_integer() else number

    return str(raw)


R = TypeVar("R", bound="TableRecord")


class TableRecord:
    """Mixin for dataclass records persisted as one row of TABLE."""

    TABLE: ClassVar[TableDef]

    def to_row(self) -> Dict[str, Any]:
        return {c.header: encode_cell(c, getattr(self, c.attr)) for c in self.TABLE.columns}

    @classmethod
    def from_row(cls: Type[R], row: Mapping[str, Any]) -> R:
        values = {}
        for column in cls.TABLE.columns:
            try:
                values[column.attr] = decode_cell(column, row.get(column.header))
            except (ValueError, TypeError) as e:
                raise FatalError(
                    f"Malformed {cls.TABLE.name} row",
                    details={"column": column.header, "error": str(e)},
                )
        return cls(**values)

    @classmethod
    def encode_patch(cls, patch: Mapping[str, Any]) -> Dict[str, Any]:
        """Translate a field-level patch into column headers and cell values."""
        encoded = {}
        for attr, value in patch.items():
            column = cls.TABLE.column_for(attr)
            encoded[column.header] = encode_cell(column, value)
        return encoded
