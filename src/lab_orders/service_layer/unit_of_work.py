# pylint: disable=attribute-defined-outside-init
from __future__ import annotations
import abc
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.session import Session


import config
from shared.domain.clock import Clock, utc_now
from lab_orders.adapters import notifications, repository


class AbstractUnitOfWork(abc.ABC):
    orders: repository.AbstractRepository
    slots: repository.AbstractRepository
    phlebotomists: repository.AbstractRepository
    labs: repository.AbstractRepository
    notifications: notifications.AbstractNotifications
    clock: Clock

    def __enter__(self) -> AbstractUnitOfWork:
        return self

    def __exit__(self, *args):
        self.rollback()

    def commit(self):
        self._commit()
        self._harvest_events()

    def _harvest_events(self):
        # Only committed work produces events; a handler may open several
        # transactions, so events are parked here until the bus collects them.
        pending = self.__dict__.setdefault("_pending_events", [])
        for repo in (self.orders, self.slots, self.phlebotomists, self.labs):
            for entity in repo.seen:
                entity_events = getattr(entity, "events", None)
                while entity_events:
                    pending.append(entity_events.pop(0))

    def collect_new_events(self):
        pending = self.__dict__.setdefault("_pending_events", [])
        while pending:
            yield pending.pop(0)

    @abc.abstractmethod
    def _commit(self):
        raise NotImplementedError

    @abc.abstractmethod
    def rollback(self):
        raise NotImplementedError


# Row locks (SELECT ... FOR UPDATE) serialize writers; READ COMMITTED lets the
# loser re-read the winner's committed status instead of failing on snapshot.
DEFAULT_SESSION_FACTORY = sessionmaker(
    bind=create_engine(
        config.get_postgres_uri(),
        isolation_level="READ COMMITTED",
    )
)


class SqlAlchemyUnitOfWork(AbstractUnitOfWork):
    def __init__(self, session_factory=DEFAULT_SESSION_FACTORY, notifications_impl=None, clock=None):
        self.session_factory = session_factory
        self.notifications = notifications_impl or notifications.RedisNotifications()
        self.clock = clock or utc_now

    def __enter__(self):
        self.session = self.session_factory()  # type: Session
        self.orders = repository.lab_order_repository(self.session)
        self.slots = repository.slot_repository(self.session)
        self.phlebotomists = repository.phlebotomist_repository(self.session)
        self.labs = repository.diagnostic_centre_repository(self.session)
        return super().__enter__()

    def __exit__(self, *args):
        super().__exit__(*args)
        self.session.close()

    def _commit(self):
        self.session.commit()

    def rollback(self):
        self.session.rollback()
