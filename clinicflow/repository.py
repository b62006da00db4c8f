"""Typed access to the clinic tables. The only place records are converted to and from rows."""

from typing import Any, Callable, List, Optional, Type, TypeVar

from clinicflow.constants import IntakeStatus
from clinicflow.models import (
    ALL_TABLES,
    AnalyticsEvent,
    AppointmentRecord,
    IntakeRecord,
    TableRecord,
    TriageRecord,
)
from clinicflow.store import TabularStore
from clinicflow.store.base import cells_match

R = TypeVar("R", bound=TableRecord)


class ClinicRepository:
    def __init__(self, store: TabularStore):
        self.store = store

    async def initialize(self) -> None:
        await self.store.ensure_schema(ALL_TABLES)

    async def _find(self, record_cls: Type[R], key_value: Any) -> Optional[R]:
        key = record_cls.TABLE.key
        rows = await self.store.scan(record_cls.TABLE.name, lambda row: cells_match(row.get(key), key_value))
        return record_cls.from_row(rows[0]) if rows else None

    async def _list(self, record_cls: Type[R], predicate: Optional[Callable[[R], bool]] = None) -> List[R]:
        records = [record_cls.from_row(row) for row in await self.store.scan(record_cls.TABLE.name)]
        if predicate is None:
            return records
        return [r for r in records if predicate(r)]

    async def _append(self, record: TableRecord) -> int:
        return await self.store.append(record.TABLE.name, record.to_row())

    async def _update(self, record_cls: Type[R], key_value: Any, **fields) -> int:
        table = record_cls.TABLE
        return await self.store.update_where(table.name, table.key, key_value, record_cls.encode_patch(fields))

    # Intake

    async def find_intake(self, form_id: str) -> Optional[IntakeRecord]:
        return await self._find(IntakeRecord, form_id)

    async def add_intake(self, intake: IntakeRecord) -> int:
        return await self._append(intake)

    async def set_intake_status(self, form_id: str, status: IntakeStatus) -> int:
        return await self._update(IntakeRecord, form_id, status=status)

    async def list_intakes(self, predicate: Optional[Callable[[IntakeRecord], bool]] = None) -> List[IntakeRecord]:
        return await self._list(IntakeRecord, predicate)

    # Triage

    async def find_triage(self, form_id: str) -> Optional[TriageRecord]:
        return await self._find(TriageRecord, form_id)

    async def add_triage(self, triage: TriageRecord) -> int:
        return await self._append(triage)

    async def list_triage(self, predicate: Optional[Callable[[TriageRecord], bool]] = None) -> List[TriageRecord]:
        return await self._list(TriageRecord, predicate)

    # Appointments

    async def find_appointment(self, external_event_id: str) -> Optional[AppointmentRecord]:
        return await self._find(AppointmentRecord, external_event_id)

    async def add_appointment(self, appointment: AppointmentRecord) -> int:
        return await self._append(appointment)

    async def update_appointment(self, external_event_id: str, **fields) -> int:
        """Patch one appointment row; NotFoundError if the id is unknown."""
        return await self._update(AppointmentRecord, external_event_id, **fields)

    async def list_appointments(
        self, predicate: Optional[Callable[[AppointmentRecord], bool]] = None
    ) -> List[AppointmentRecord]:
        return await self._list(AppointmentRecord, predicate)

    # Analytics

    async def record_event(self, event: AnalyticsEvent) -> int:
        return await self._append(event)

    async def list_events(self, predicate: Optional[Callable[[AnalyticsEvent], bool]] = None) -> List[AnalyticsEvent]:
        return await self._list(AnalyticsEvent, predicate)
