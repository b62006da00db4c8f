"""
Spreadsheet-backed store: one worksheet per table in an .xlsx workbook.

The workbook on disk is the source of truth. Every operation reloads it, so
edits made by clinic staff in a spreadsheet app are picked up, and every
mutation is written back before the call returns. Blocking openpyxl I/O runs
in the default executor under an asyncio.Lock.
"""

import asyncio
import os
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, TypeVar
from zipfile import BadZipFile

from loguru import logger
from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.worksheet.worksheet import Worksheet

from clinicflow.exceptions import NotFoundError, StoreUnavailable
from clinicflow.models import TableDef
from clinicflow.store.base import Predicate, Row, TabularStore, cells_match, project_row

T = TypeVar("T")

HEADER_FONT = Font(bold=True)
IO_ERRORS = (OSError, BadZipFile, InvalidFileException)


class WorkbookStore(TabularStore):
    backend_name = "workbook"

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def _run(self, func: Callable[..., T], *args) -> T:
        async with self._lock:
            loop = asyncio.get_running_loop()
            try:
                return await loop.run_in_executor(None, partial(func, *args))
            except IO_ERRORS as e:
                logger.error(f"Workbook store I/O failed ({self.path}): {e}")
                raise StoreUnavailable(f"Workbook store unavailable: {e}") from e

    # Sync helpers (executor thread)

    def _load(self) -> Workbook:
        if not self.path.exists():
            raise StoreUnavailable(f"Workbook {self.path} has not been initialised")
        try:
            return load_workbook(self.path)
        except KeyError as e:
            # zip archive missing the workbook parts
            raise InvalidFileException(f"{self.path} is not a complete workbook: {e}") from e

    def _save(self, wb: Workbook) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        wb.save(tmp_path)
        os.replace(tmp_path, self.path)

    @staticmethod
    def _sheet(wb: Workbook, table: str) -> Worksheet:
        if table not in wb.sheetnames:
            raise StoreUnavailable(f"Table '{table}' does not exist", details={"table": table})
        return wb[table]

    @staticmethod
    def _headers(ws: Worksheet) -> List[str]:
        first = next(ws.iter_rows(min_row=1, max_row=1, values_only=True), ())
        return [str(h).strip() if h is not None else "" for h in first]

    def _ensure_schema_sync(self, tables: List[TableDef]) -> None:
        if self.path.exists():
            wb = load_workbook(self.path)
        else:
            wb = Workbook()
            wb.remove(wb.active)
            logger.info(f"Creating workbook store at {self.path}")

        changed = not self.path.exists()
        for table in tables:
            if table.name not in wb.sheetnames:
                ws = wb.create_sheet(table.name)
                ws.append(table.headers)
                for cell in ws[1]:
                    cell.font = HEADER_FONT
                changed = True
                logger.info(f"Created worksheet {table.name}")
                continue

            ws = wb[table.name]
            existing = self._headers(ws)
            missing = [h for h in table.headers if h not in existing]
            for offset, header in enumerate(missing, start=len(existing) + 1):
                cell = ws.cell(row=1, column=offset, value=header)
                cell.font = HEADER_FONT
                changed = True
            if missing:
                logger.info(f"Added columns {missing} to worksheet {table.name}")

        if changed:
            self._save(wb)

    def _append_sync(self, table: str, row: Mapping[str, Any]) -> int:
        wb = self._load()
        ws = self._sheet(wb, table)
        ws.append(project_row(self._headers(ws), row))
        row_id = ws.max_row - 1
        self._save(wb)
        return row_id

    def _scan_sync(self, table: str) -> List[Row]:
        wb = self._load()
        ws = self._sheet(wb, table)
        headers = self._headers(ws)
        rows = []
        for values in ws.iter_rows(min_row=2, values_only=True):
            if all(v is None or v == "" for v in values):
                continue
            rows.append({h: v for h, v in zip(headers, values) if h})
        return rows

    def _update_sync(self, table: str, key_field: str, key_value: Any, patch: Mapping[str, Any]) -> Optional[int]:
        wb = self._load()
        ws = self._sheet(wb, table)
        headers = self._headers(ws)
        if key_field not in headers:
            raise StoreUnavailable(f"Table '{table}' has no column '{key_field}'")
        key_col = headers.index(key_field) + 1

        positions: Dict[str, int] = {h: i + 1 for i, h in enumerate(headers) if h}
        for row_idx in range(2, ws.max_row + 1):
            if cells_match(ws.cell(row=row_idx, column=key_col).value, key_value):
                for column, value in patch.items():
                    if column in positions:
                        ws.cell(row=row_idx, column=positions[column], value=value)
                self._save(wb)
                return row_idx - 1
        return None

    # TabularStore

    async def ensure_schema(self, tables: Iterable[TableDef]) -> None:
        await self._run(self._ensure_schema_sync, list(tables))

    async def append(self, table: str, row: Mapping[str, Any]) -> int:
        return await self._run(self._append_sync, table, dict(row))

    async def scan(self, table: str, predicate: Optional[Predicate] = None) -> List[Row]:
        rows = await self._run(self._scan_sync, table)
        if predicate is None:
            return rows
        return [row for row in rows if predicate(row)]

    async def update_where(self, table: str, key_field: str, key_value: Any, patch: Mapping[str, Any]) -> int:
        row_id = await self._run(self._update_sync, table, key_field, key_value, dict(patch))
        if row_id is None:
            raise NotFoundError(
                f"No {table} row with {key_field}={key_value}",
                details={"table": table, "key": key_field, "value": str(key_value)},
            )
        return row_id
