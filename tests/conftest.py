# pylint: disable=redefined-outer-name
import copy
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import clear_mappers, sessionmaker
from sqlalchemy.pool import StaticPool

from lab_orders.adapters import orm
from lab_orders.adapters.notifications import AbstractNotifications
from lab_orders.adapters.repository import AbstractRepository, matches
from lab_orders.domain import commands
from lab_orders.domain.model import LabOrderStatus
from lab_orders.service_layer import messagebus
from lab_orders.service_layer.unit_of_work import AbstractUnitOfWork, SqlAlchemyUnitOfWork

NOW = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **delta):
        self.now = self.now + timedelta(**delta)


class FakeRepository(AbstractRepository):
    def __init__(self, store):
        super().__init__()
        self.store = store

    def _add(self, entity):
        self.store[entity.id] = entity

    def _get(self, entity_id, for_update):
        return self.store.get(entity_id)

    def _list(self, criteria):
        return sorted(
            (entity for entity in self.store.values() if matches(entity, criteria)),
            key=lambda entity: entity.id,
        )


class FakeNotifications(AbstractNotifications):
    def __init__(self):
        self.published = []
        self.fail = False

    def publish(self, topic, event):
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.published.append((topic, event))

    def topics(self):
        return [topic for topic, _ in self.published]


class FakeUnitOfWork(AbstractUnitOfWork):
    """In-memory unit of work; anything not committed is thrown away on exit."""

    def __init__(self, clock=None, notifications_impl=None):
        self.clock = clock or FakeClock()
        self.notifications = notifications_impl or FakeNotifications()
        self.stores = {"orders": {}, "slots": {}, "phlebotomists": {}, "labs": {}}
        self.committed = 0
        self._snapshot = copy.deepcopy(self.stores)
        self._bind()

    def _bind(self):
        self.orders = FakeRepository(self.stores["orders"])
        self.slots = FakeRepository(self.stores["slots"])
        self.phlebotomists = FakeRepository(self.stores["phlebotomists"])
        self.labs = FakeRepository(self.stores["labs"])

    def __enter__(self):
        self._snapshot = copy.deepcopy(self.stores)
        self._bind()
        return super().__enter__()

    def commit(self):
        super().commit()
        self._snapshot = copy.deepcopy(self.stores)

    def _commit(self):
        self.committed += 1

    def rollback(self):
        for name, store in self.stores.items():
            store.clear()
            store.update(copy.deepcopy(self._snapshot[name]))


class LabOrderDriver:
    """Walks orders through the lifecycle with real commands on the message bus."""

    PATIENT = "patient-1"
    DOCTOR = "doctor-1"
    CITY = "Bengaluru"
    POSTAL_CODE = "560001"

    def __init__(self, uow):
        self.uow = uow
        self.phlebotomist_id = None
        self.lab_id = None

    def handle(self, command):
        [result] = messagebus.handle(command, self.uow)
        return result

    def get(self, order_id):
        """Committed state of an order (fake unit of work only)."""
        return self.uow.stores["orders"][order_id]

    def get_slot(self, slot_id):
        return self.uow.stores["slots"][slot_id]

    def get_phlebotomist(self, phlebotomist_id):
        return self.uow.stores["phlebotomists"][phlebotomist_id]

    def order(self, **overrides):
        fields = dict(
            patient_id=self.PATIENT,
            doctor_id=self.DOCTOR,
            test_panel=["CBC", "LIPID"],
            panel_name="Basic Health",
            consultation_id="consult-1",
            doctor_notes="fasting sample",
            collection_address="12 MG Road",
            collection_city=self.CITY,
            collection_postal_code=self.POSTAL_CODE,
        )
        fields.update(overrides)
        return self.handle(commands.CreateLabOrder(**fields))

    def slot(self, hours_ahead=24, max_bookings=5, serviceable_areas=None, city=None):
        starts_at = self.uow.clock() + timedelta(hours=hours_ahead)
        ends_at = starts_at + timedelta(hours=1)
        return self.handle(
            commands.CreateSlot(
                slot_date=starts_at.date(),
                start_time=starts_at.strftime("%H:%M"),
                end_time=ends_at.strftime("%H:%M"),
                city=city or self.CITY,
                serviceable_areas=serviceable_areas if serviceable_areas is not None else [self.POSTAL_CODE],
                max_bookings=max_bookings,
            )
        )

    def phlebotomist(self, **overrides):
        fields = dict(name="Asha", phone="+91-9000000000", serviceable_areas=[self.POSTAL_CODE])
        fields.update(overrides)
        return self.handle(commands.RegisterPhlebotomist(**fields))

    def lab(self, **overrides):
        fields = dict(name="City Diagnostics", city=self.CITY)
        fields.update(overrides)
        return self.handle(commands.RegisterDiagnosticCentre(**fields))

    # Steps along the main flow

    def book(self, order_id, hours_ahead=24):
        slot_id = self.slot(hours_ahead=hours_ahead)
        self.handle(commands.BookSlot(order_id=order_id, slot_id=slot_id, patient_id=self.PATIENT))
        return slot_id

    def assign(self, order_id):
        if self.phlebotomist_id is None:
            self.phlebotomist_id = self.phlebotomist()
        self.handle(commands.AssignPhlebotomist(order_id=order_id, phlebotomist_id=self.phlebotomist_id))

    def collect(self, order_id, tube_count=3):
        self.handle(commands.MarkSampleCollected(order_id, self.phlebotomist_id, tube_count))

    def deliver(self, order_id):
        if self.lab_id is None:
            self.lab_id = self.lab()
        self.handle(commands.DeliverToLab(order_id, self.phlebotomist_id, self.lab_id))

    def receive(self, order_id, received_tube_count=3):
        self.handle(commands.MarkSampleReceived(order_id, self.lab_id, received_tube_count))

    def process(self, order_id):
        self.handle(commands.StartProcessing(order_id, self.lab_id))

    def results(self, order_id, abnormal_flags=None):
        self.handle(
            commands.UploadResults(
                order_id,
                self.lab_id,
                "https://files.example/results.pdf",
                abnormal_flags or {"HB": "NORMAL"},
            )
        )

    def review(self, order_id):
        self.handle(commands.ReviewResults(order_id, self.DOCTOR, "looks fine"))

    def close(self, order_id):
        self.handle(commands.CloseLabOrder(order_id, self.DOCTOR))

    MAIN_FLOW = [
        (LabOrderStatus.SLOT_BOOKED, "book"),
        (LabOrderStatus.PHLEBOTOMIST_ASSIGNED, "assign"),
        (LabOrderStatus.SAMPLE_COLLECTED, "collect"),
        (LabOrderStatus.DELIVERED_TO_LAB, "deliver"),
        (LabOrderStatus.SAMPLE_RECEIVED, "receive"),
        (LabOrderStatus.PROCESSING, "process"),
        (LabOrderStatus.RESULTS_READY, "results"),
        (LabOrderStatus.DOCTOR_REVIEWED, "review"),
        (LabOrderStatus.CLOSED, "close"),
    ]

    def advance(self, order_id, target):
        """Drive an ORDERED order along the main flow until it reaches ``target``."""
        for status, step in self.MAIN_FLOW:
            getattr(self, step)(order_id)
            if status == target:
                return order_id
        raise ValueError(f"{target} is not on the main flow")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifications():
    return FakeNotifications()


@pytest.fixture
def uow(clock, notifications):
    return FakeUnitOfWork(clock, notifications)


@pytest.fixture
def driver(uow):
    return LabOrderDriver(uow)


@pytest.fixture
def sqlite_session_factory():
    """Create SQLite in-memory database for fast testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    orm.metadata.create_all(engine)
    orm.start_mappers()

    yield sessionmaker(bind=engine)

    clear_mappers()
    engine.dispose()


@pytest.fixture
def sqlite_uow(sqlite_session_factory, clock, notifications):
    return SqlAlchemyUnitOfWork(sqlite_session_factory, notifications, clock)


@pytest.fixture
def sqlite_driver(sqlite_uow):
    return LabOrderDriver(sqlite_uow)

