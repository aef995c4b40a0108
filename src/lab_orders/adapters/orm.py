import logging
from datetime import timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    event,
)
from sqlalchemy.orm import registry, relationship
from sqlalchemy.types import TypeDecorator

from lab_orders.domain import actors, model, slots

logger = logging.getLogger(__name__)

# SQLAlchemy 2.0 pattern: use registry
mapper_registry = registry()
metadata = mapper_registry.metadata


class UtcDateTime(TypeDecorator):
    """Stores UTC, always hands back aware datetimes (SQLite drops tzinfo)."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def _status_type():
    return Enum(model.LabOrderStatus, native_enum=False, length=32)


lab_orders = Table(
    "lab_orders",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("patient_id", String(255), nullable=False, index=True),
    Column("doctor_id", String(255), nullable=False, index=True),
    Column("consultation_id", String(255)),
    Column("test_panel", JSON, nullable=False),
    Column("panel_name", String(255)),
    Column("doctor_notes", Text),
    Column("collection_address", Text, nullable=False, server_default=""),
    Column("collection_city", String(255), nullable=False, server_default=""),
    Column("collection_postal_code", String(32), nullable=False, server_default=""),
    Column("status", _status_type(), nullable=False, index=True),
    Column("parent_lab_order_id", String(64), ForeignKey("lab_orders.id"), index=True),
    Column("phlebotomist_id", String(64), index=True),
    Column("diagnostic_centre_id", String(64), index=True),
    Column("slot_id", String(64)),
    Column("booked_date", UtcDateTime),
    Column("booked_time_slot", String(32)),
    Column("tube_count", Integer),
    Column("received_tube_count", Integer),
    Column("tube_count_mismatch", Boolean, nullable=False, default=False),
    Column("sample_issue_reason", Text),
    Column("collection_failed_reason", Text),
    Column("cancellation_reason", Text),
    Column("result_file_url", Text),
    Column("abnormal_flags", JSON),
    Column("critical_values", Boolean, nullable=False, default=False),
    Column("patient_uploaded_results", Boolean, nullable=False, default=False),
    Column("patient_uploaded_file_url", Text),
    Column("doctor_review_notes", Text),
    Column("estimated_arrival_time", String(32)),
    Column("running_late_at", UtcDateTime),
    Column("lab_cost", Integer, nullable=False),
    Column("patient_charge", Integer, nullable=False, default=0),
    Column("covered_by_subscription", Boolean, nullable=False, default=True),
    Column("is_free_recollection", Boolean, nullable=False, default=False),
    Column("sla_escalated_at", UtcDateTime),
    Column("sla_escalation_reason", String(255)),
    Column("sla_escalated_by", String(255)),
    Column("last_reminder_sent_at", UtcDateTime),
    Column("last_reminder_type", String(64)),
    Column("version_number", Integer, nullable=False, server_default="0"),
)

# Append-only status log; flat timestamps are derived from it
lab_order_status_changes = Table(
    "lab_order_status_changes",
    metadata,
    Column("order_id", String(64), ForeignKey("lab_orders.id"), primary_key=True),
    Column("seq", Integer, primary_key=True, autoincrement=False),
    Column("from_status", _status_type()),
    Column("status", _status_type(), nullable=False),
    Column("at", UtcDateTime, nullable=False),
    Column("details", JSON),
)

slots_table = Table(
    "slots",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("slot_date", Date, nullable=False, index=True),
    Column("start_time", String(5), nullable=False),
    Column("end_time", String(5), nullable=False),
    Column("city", String(255), nullable=False),
    Column("serviceable_areas", JSON, nullable=False),
    Column("max_bookings", Integer, nullable=False),
    Column("current_bookings", Integer, nullable=False, server_default="0"),
    Column("phlebotomist_id", String(64)),
    Column("version_number", Integer, nullable=False, server_default="0"),
)

phlebotomists = Table(
    "phlebotomists",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("phone", String(32), nullable=False),
    Column("serviceable_areas", JSON, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("completed_collections", Integer, nullable=False, server_default="0"),
    Column("failed_collections", Integer, nullable=False, server_default="0"),
    Column("rating", Float),
)

diagnostic_centres = Table(
    "diagnostic_centres",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("city", String(255), nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
)


def start_mappers():
    logger.info("Starting mappers")
    status_changes_mapper = mapper_registry.map_imperatively(model.StatusChange, lab_order_status_changes)
    mapper_registry.map_imperatively(
        model.LabOrder,
        lab_orders,
        properties={
            "history": relationship(
                status_changes_mapper,
                order_by=lab_order_status_changes.c.seq,
                cascade="all, delete-orphan",
                lazy="selectin",
            ),
        },
    )
    mapper_registry.map_imperatively(slots.Slot, slots_table)
    mapper_registry.map_imperatively(actors.Phlebotomist, phlebotomists)
    mapper_registry.map_imperatively(actors.DiagnosticCentre, diagnostic_centres)


@event.listens_for(model.LabOrder, "load")
def receive_load(order, _):
    order.events = []
