# pylint: disable=attribute-defined-outside-init
from __future__ import annotations
import abc
import threading
from typing import Dict

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.session import Session

import config
from notification.adapters import repository
from notification.domain.model import ProcessingRecord


class AbstractUnitOfWork(abc.ABC):
    records: repository.AbstractProcessingStore
    events: list

    def __enter__(self) -> AbstractUnitOfWork:
        return self

    def __exit__(self, *args):
        self.rollback()

    def commit(self):
        self._commit()

    def add_event(self, event):
        """Queue an event that is not raised by a processing record."""
        self.events.append(event)

    def collect_new_events(self):
        records = getattr(self, "records", None)
        if records is not None:
            for record in records.seen:
                while record.events:
                    yield record.events.pop(0)
        while self.events:
            yield self.events.pop(0)

    @abc.abstractmethod
    def _commit(self):
        raise NotImplementedError

    @abc.abstractmethod
    def rollback(self):
        raise NotImplementedError


def create_session_factory(uri: str = None):
    uri = uri or config.get_postgres_uri()
    if make_url(uri).get_backend_name() == "postgresql":
        # conditional UPDATE predicates are re-evaluated against the latest committed row
        engine = create_engine(uri, isolation_level="READ COMMITTED")
    else:
        engine = create_engine(uri)
    return sessionmaker(bind=engine)


class SqlAlchemyUnitOfWork(AbstractUnitOfWork):
    def __init__(self, session_factory):
        self.session_factory = session_factory
        self.events = []

    def __enter__(self):
        self.session = self.session_factory()  # type: Session
        self.records = repository.SqlAlchemyProcessingStore(self.session)
        return super().__enter__()

    def __exit__(self, *args):
        super().__exit__(*args)
        self.session.close()

    def _commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()


class InMemoryUnitOfWork(AbstractUnitOfWork):
    """Unit of work over an InMemoryProcessingStore - changes apply immediately."""

    def __init__(self, records: Dict[str, ProcessingRecord] = None, lock: threading.Lock = None):
        self._records = records if records is not None else {}
        self._lock = lock or threading.Lock()
        self.events = []
        self.committed = False

    def __enter__(self):
        self.records = repository.InMemoryProcessingStore(self._records, self._lock)
        return super().__enter__()

    def _commit(self):
        self.committed = True

    def rollback(self):
        pass
