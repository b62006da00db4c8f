import asyncio
import copy
from typing import Any, Dict, Iterable, List, Mapping, Optional

from loguru import logger

from clinicflow.exceptions import NotFoundError, StoreUnavailable
from clinicflow.models import TableDef
from clinicflow.store.base import Predicate, Row, TabularStore, cells_match, project_row


class InMemoryStore(TabularStore):
    """Process-local store. Used for tests and STORE_BACKEND=memory."""

    backend_name = "memory"

    def __init__(self):
        self._headers: Dict[str, List[str]] = {}
        self._rows: Dict[str, List[List[Any]]] = {}
        self._lock = asyncio.Lock()

    async def ensure_schema(self, tables: Iterable[TableDef]) -> None:
        async with self._lock:
            for table in tables:
                if table.name not in self._headers:
                    self._headers[table.name] = table.headers
                    self._rows[table.name] = []
                    logger.debug(f"Created in-memory table {table.name}")

    def _require(self, table: str) -> List[str]:
        headers = self._headers.get(table)
        if headers is None:
            raise StoreUnavailable(f"Table '{table}' does not exist", details={"table": table})
        return headers

    async def append(self, table: str, row: Mapping[str, Any]) -> int:
        async with self._lock:
            headers = self._require(table)
            self._rows[table].append(project_row(headers, row))
            return len(self._rows[table])

    async def scan(self, table: str, predicate: Optional[Predicate] = None) -> List[Row]:
        async with self._lock:
            headers = self._require(table)
            rows = [dict(zip(headers, copy.deepcopy(cells))) for cells in self._rows[table]]
        if predicate is None:
            return rows
        return [row for row in rows if predicate(row)]

    async def update_where(self, table: str, key_field: str, key_value: Any, patch: Mapping[str, Any]) -> int:
        async with self._lock:
            headers = self._require(table)
            if key_field not in headers:
                raise StoreUnavailable(f"Table '{table}' has no column '{key_field}'")
            key_index = headers.index(key_field)
            for row_id, cells in enumerate(self._rows[table], start=1):
                if cells_match(cells[key_index], key_value):
                    for column, value in patch.items():
                        if column in headers:
                            cells[headers.index(column)] = value
                    return row_id
        raise NotFoundError(
            f"No {table} row with {key_field}={key_value}",
            details={"table": table, "key": key_field, "value": str(key_value)},
        )
