import abc
from typing import Iterable, List, Set

from lab_orders.domain import actors, model, slots

import logging

logger = logging.getLogger(__name__)

_COLLECTIONS = (list, tuple, set, frozenset)


class AbstractRepository(abc.ABC):
    """
    Repository over one aggregate type.

    ``list`` accepts attribute criteria; a collection value means "any of".
    Every aggregate handed out is tracked in ``seen`` so the unit of work can
    harvest its events.
    """

    def __init__(self):
        self.seen = set()  # type: Set

    def add(self, entity) -> str:
        self._add(entity)
        self.seen.add(entity)
        return entity.id

    def get(self, entity_id, for_update: bool = False):
        entity = self._get(entity_id, for_update)
        if entity:
            self.seen.add(entity)
        return entity

    def get_many_for_update(self, entity_ids: Iterable[str]) -> List:
        """Lock rows in ascending id order so concurrent writers never deadlock."""
        entities = []
        for entity_id in sorted(set(i for i in entity_ids if i)):
            entity = self.get(entity_id, for_update=True)
            if entity:
                entities.append(entity)
        return entities

    def list(self, **criteria) -> List:
        entities = self._list(criteria)
        for entity in entities:
            self.seen.add(entity)
        return entities

    @abc.abstractmethod
    def _add(self, entity):
        raise NotImplementedError

    @abc.abstractmethod
    def _get(self, entity_id, for_update: bool):
        raise NotImplementedError

    @abc.abstractmethod
    def _list(self, criteria: dict) -> List:
        raise NotImplementedError


class SqlAlchemyRepository(AbstractRepository):
    def __init__(self, session, entity_class):
        super().__init__()
        self.session = session
        self.entity_class = entity_class

    def _add(self, entity):
        self.session.add(entity)

    def _get(self, entity_id, for_update):
        query = self.session.query(self.entity_class).filter_by(id=entity_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def _list(self, criteria):
        query = self.session.query(self.entity_class)
        for name, value in criteria.items():
            column = getattr(self.entity_class, name)
            if isinstance(value, _COLLECTIONS):
                query = query.filter(column.in_(list(value)))
            else:
                query = query.filter(column == value)
        return query.order_by(self.entity_class.id).all()


def lab_order_repository(session) -> SqlAlchemyRepository:
    return SqlAlchemyRepository(session, model.LabOrder)


def slot_repository(session) -> SqlAlchemyRepository:
    return SqlAlchemyRepository(session, slots.Slot)


def phlebotomist_repository(session) -> SqlAlchemyRepository:
    return SqlAlchemyRepository(session, actors.Phlebotomist)


def diagnostic_centre_repository(session) -> SqlAlchemyRepository:
    return SqlAlchemyRepository(session, actors.DiagnosticCentre)


def matches(entity, criteria: dict) -> bool:
    """In-memory twin of the SQL criteria filter, used by fakes."""
    for name, value in criteria.items():
        actual = getattr(entity, name)
        if isinstance(value, _COLLECTIONS):
            if actual not in value:
                return False
        elif actual != value:
            return False
    return True
