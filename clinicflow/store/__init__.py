from clinicflow.config import Settings
from clinicflow.store.base import Predicate, Row, TabularStore
from clinicflow.store.memory import InMemoryStore
from clinicflow.store.workbook import WorkbookStore


def create_store(settings: Settings) -> TabularStore:
    if settings.store_backend == "memory":
        return InMemoryStore()
    return WorkbookStore(settings.store_path)


__all__ = ["TabularStore", "InMemoryStore", "WorkbookStore", "Row", "Predicate", "create_store"]
