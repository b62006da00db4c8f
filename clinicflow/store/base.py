from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from clinicflow.models import TableDef

Row = Dict[str, Any]
Predicate = Callable[[Row], bool]


class TabularStore(ABC):
    """
    Durable tabular state: named tables with a fixed column order.

    Rows are plain dicts keyed by column header. Within one process, appends
    keep insertion order and update_where is atomic per row. Transport or
    I/O failures surface as StoreUnavailable; writes are never dropped silently.
    """

    backend_name = "abstract"

    @abstractmethod
    async def ensure_schema(self, tables: Iterable[TableDef]) -> None:
        """Create missing tables and header rows. Safe to call repeatedly."""

    @abstractmethod
    async def append(self, table: str, row: Mapping[str, Any]) -> int:
        """Append one row and return its 1-based row id."""

    @abstractmethod
    async def scan(self, table: str, predicate: Optional[Predicate] = None) -> List[Row]:
        """Rows matching predicate, in insertion order."""

    @abstractmethod
    async def update_where(self, table: str, key_field: str, key_value: Any, patch: Mapping[str, Any]) -> int:
        """Patch the first row whose key_field equals key_value; NotFoundError if none."""

    async def close(self) -> None:
        pass


def project_row(headers: List[str], row: Mapping[str, Any]) -> List[Any]:
    """Order a row's cells by header; columns the table does not define are dropped."""
    return [row.get(h, "") for h in headers]


def cells_match(cell: Any, key_value: Any) -> bool:
    return cell is not None and str(cell) == str(key_value)
