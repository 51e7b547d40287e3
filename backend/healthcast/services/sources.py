# healthcast/services/sources.py
"""
Read-only record sources feeding the aggregator.

Sources return every record for an entity; location filtering belongs to the
aggregator so both sources are restricted the same way.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from healthcast.errors import SourceUnavailable
from healthcast.models.completion_event import CompletionEvent
from healthcast.models.imported_aggregate import ImportedAggregate
from healthcast.services.aggregation import EventRecord, ImportedAggregateRecord

logger = structlog.get_logger(__name__)


class EventSource(ABC):
    name = "events"

    @abstractmethod
    def fetch(self, entity_key: str) -> List[EventRecord]:
        ...


class ImportSource(ABC):
    name = "imports"

    @abstractmethod
    def fetch(self, entity_key: str) -> List[ImportedAggregateRecord]:
        ...


class SqlEventSource(EventSource):
    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def fetch(self, entity_key: str) -> List[EventRecord]:
        stmt = (
            select(CompletionEvent.id, CompletionEvent.completed_at, CompletionEvent.location_id)
            .where(CompletionEvent.entity_key == entity_key)
            .order_by(CompletionEvent.completed_at.asc())
        )
        try:
            with self.session_factory() as db:
                rows = db.execute(stmt).all()
        except SQLAlchemyError as exc:
            logger.error("source.read_failed", source=self.name, entity_key=entity_key, error=str(exc))
            raise SourceUnavailable(self.name, str(exc)) from exc
        return [EventRecord(completed_at=r.completed_at, location_id=r.location_id, id=r.id) for r in rows]


class SqlImportSource(ImportSource):
    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory = session_factory

    def fetch(self, entity_key: str) -> List[ImportedAggregateRecord]:
        stmt = (
            select(ImportedAggregate.period, ImportedAggregate.count, ImportedAggregate.location_id)
            .where(ImportedAggregate.entity_key == entity_key)
            .order_by(ImportedAggregate.period.asc())
        )
        try:
            with self.session_factory() as db:
                rows = db.execute(stmt).all()
        except SQLAlchemyError as exc:
            logger.error("source.read_failed", source=self.name, entity_key=entity_key, error=str(exc))
            raise SourceUnavailable(self.name, str(exc)) from exc
        return [ImportedAggregateRecord(period=r.period, count=r.count, location_id=r.location_id) for r in rows]


class InMemoryEventSource(EventSource):
    def __init__(self, records: Dict[str, Iterable[EventRecord]] | None = None):
        self.records: Dict[str, List[EventRecord]] = {k: list(v) for k, v in (records or {}).items()}

    def fetch(self, entity_key: str) -> List[EventRecord]:
        return list(self.records.get(entity_key, []))


class InMemoryImportSource(ImportSource):
    def __init__(self, records: Dict[str, Iterable[ImportedAggregateRecord]] | None = None):
        self.records: Dict[str, List[ImportedAggregateRecord]] = {k: list(v) for k, v in (records or {}).items()}

    def fetch(self, entity_key: str) -> List[ImportedAggregateRecord]:
        return list(self.records.get(entity_key, []))
