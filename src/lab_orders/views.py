"""
Views for read operations - separate from command/write path.

Everything is serialized inside the unit of work so no detached ORM instance
leaves the session.
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional

from lab_orders.domain.exceptions import NotFound
from lab_orders.domain.model import LabOrder, LabOrderStatus, allowed_next_statuses
from lab_orders.domain.slots import Slot
from lab_orders.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)

ACTIVE_FIELD_STATUSES = frozenset({
    LabOrderStatus.PHLEBOTOMIST_ASSIGNED,
    LabOrderStatus.SAMPLE_COLLECTED,
})
PENDING_LAB_STATUSES = frozenset({
    LabOrderStatus.DELIVERED_TO_LAB,
    LabOrderStatus.SAMPLE_RECEIVED,
    LabOrderStatus.PROCESSING,
})
PENDING_REVIEW_STATUSES = frozenset({
    LabOrderStatus.RESULTS_READY,
    LabOrderStatus.RESULTS_UPLOADED,
})


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_order(order: LabOrder) -> Dict[str, Any]:
    data = {
        "id": order.id,
        "status": order.status.value,
        "allowed_next_statuses": allowed_next_statuses(order.status),
        "patient_id": order.patient_id,
        "doctor_id": order.doctor_id,
        "consultation_id": order.consultation_id,
        "test_panel": list(order.test_panel or []),
        "panel_name": order.panel_name,
        "doctor_notes": order.doctor_notes,
        "collection_address": order.collection_address,
        "collection_city": order.collection_city,
        "collection_postal_code": order.collection_postal_code,
        "parent_lab_order_id": order.parent_lab_order_id,
        "phlebotomist_id": order.phlebotomist_id,
        "diagnostic_centre_id": order.diagnostic_centre_id,
        "slot_id": order.slot_id,
        "booked_date": _iso(order.booked_date),
        "booked_time_slot": order.booked_time_slot,
        "tube_count": order.tube_count,
        "received_tube_count": order.received_tube_count,
        "tube_count_mismatch": order.tube_count_mismatch,
        "sample_issue_reason": order.sample_issue_reason,
        "collection_failed_reason": order.collection_failed_reason,
        "cancellation_reason": order.cancellation_reason,
        "result_file_url": order.result_file_url,
        "abnormal_flags": dict(order.abnormal_flags or {}),
        "critical_values": order.critical_values,
        "patient_uploaded_results": order.patient_uploaded_results,
        "patient_uploaded_file_url": order.patient_uploaded_file_url,
        "doctor_review_notes": order.doctor_review_notes,
        "estimated_arrival_time": order.estimated_arrival_time,
        "running_late_at": _iso(order.running_late_at),
        "lab_cost": order.lab_cost,
        "patient_charge": order.patient_charge,
        "covered_by_subscription": order.covered_by_subscription,
        "is_free_recollection": order.is_free_recollection,
        "sla_escalated_at": _iso(order.sla_escalated_at),
        "sla_escalation_reason": order.sla_escalation_reason,
        "last_reminder_sent_at": _iso(order.last_reminder_sent_at),
        "version_number": order.version_number,
    }
    for name, value in order.timestamps().items():
        data[name] = _iso(value)
    return data


def serialize_slot(slot: Slot) -> Dict[str, Any]:
    return {
        "id": slot.id,
        "slot_date": slot.slot_date.isoformat(),
        "start_time": slot.start_time,
        "end_time": slot.end_time,
        "city": slot.city,
        "serviceable_areas": list(slot.serviceable_areas or []),
        "max_bookings": slot.max_bookings,
        "current_bookings": slot.current_bookings,
        "remaining": slot.remaining,
        "phlebotomist_id": slot.phlebotomist_id,
    }


def get_lab_order(order_id: str, uow: AbstractUnitOfWork) -> Dict[str, Any]:
    with uow:
        order = uow.orders.get(order_id)
        if order is None:
            raise NotFound(f"Lab order {order_id} not found")
        return serialize_order(order)


def get_status_history(order_id: str, uow: AbstractUnitOfWork) -> List[Dict[str, Any]]:
    with uow:
        order = uow.orders.get(order_id)
        if order is None:
            raise NotFound(f"Lab order {order_id} not found")
        return [
            {
                "seq": change.seq,
                "from_status": change.from_status.value if change.from_status else None,
                "status": change.status.value,
                "at": _iso(change.at),
                "details": dict(change.details or {}),
            }
            for change in order.history
        ]


def _list_orders(uow: AbstractUnitOfWork, status: Optional[str] = None, **criteria) -> List[Dict[str, Any]]:
    if status:
        criteria["status"] = LabOrderStatus(status)
    with uow:
        orders = uow.orders.list(**criteria)
        orders.sort(key=lambda o: o.ordered_at or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return [serialize_order(order) for order in orders]


def list_patient_orders(patient_id: str, uow: AbstractUnitOfWork, status: Optional[str] = None):
    return _list_orders(uow, status, patient_id=patient_id)


def list_doctor_orders(doctor_id: str, uow: AbstractUnitOfWork, status: Optional[str] = None):
    return _list_orders(uow, status, doctor_id=doctor_id)


def recollections_of(order_id: str, uow: AbstractUnitOfWork) -> List[Dict[str, Any]]:
    """Free recollection orders spawned from ``order_id``."""
    return _list_orders(uow, None, parent_lab_order_id=order_id)


def get_pending_reviews(doctor_id: str, uow: AbstractUnitOfWork) -> List[Dict[str, Any]]:
    """Results waiting for the doctor, critical first, then oldest first."""
    with uow:
        orders = uow.orders.list(doctor_id=doctor_id, status=PENDING_REVIEW_STATUSES)
        orders.sort(key=lambda o: (not o.critical_values, o.results_uploaded_at))
        return [serialize_order(order) for order in orders]


def get_lab_pending_orders(lab_id: str, uow: AbstractUnitOfWork) -> List[Dict[str, Any]]:
    """Samples delivered to a diagnostic centre and not yet resulted, oldest delivery first."""
    with uow:
        orders = uow.orders.list(diagnostic_centre_id=lab_id, status=PENDING_LAB_STATUSES)
        orders.sort(key=lambda o: o.delivered_to_lab_at)
        return [serialize_order(order) for order in orders]


def get_todays_assignments(phlebotomist_id: str, uow: AbstractUnitOfWork) -> List[Dict[str, Any]]:
    """Collections booked for today (UTC), in booked time order."""
    now = uow.clock()
    start = datetime.combine(now.date(), time.min, tzinfo=timezone.utc)
    end = start + timedelta(days=1)
    with uow:
        orders = [
            order
            for order in uow.orders.list(phlebotomist_id=phlebotomist_id, status=ACTIVE_FIELD_STATUSES)
            if order.booked_date is not None and start <= order.booked_date < end
        ]
        orders.sort(key=lambda o: o.booked_date)
        return [serialize_order(order) for order in orders]


def find_available_slots(
    city: str,
    postal_code: str,
    start_date: date,
    end_date: date,
    uow: AbstractUnitOfWork,
) -> List[Dict[str, Any]]:
    """Open slots in the city and date range that serve the postal code."""
    with uow:
        slots = [
            slot
            for slot in uow.slots.list(city=city)
            if start_date <= slot.slot_date <= end_date
            and slot.serves(postal_code)
            and not slot.is_full
        ]
        slots.sort(key=lambda s: (s.slot_date, s.start_time))
        return [serialize_slot(slot) for slot in slots]


def get_available_phlebotomists(postal_code: str, uow: AbstractUnitOfWork) -> List[Dict[str, Any]]:
    """Active phlebotomists serving the area, best rated and most experienced first."""
    with uow:
        phlebotomists = [p for p in uow.phlebotomists.list(is_active=True) if p.serves(postal_code)]
        phlebotomists.sort(key=lambda p: (p.rating or 0, p.completed_collections or 0), reverse=True)
        return [
            {
                "id": p.id,
                "name": p.name,
                "phone": p.phone,
                "serviceable_areas": list(p.serviceable_areas or []),
                "completed_collections": p.completed_collections,
                "failed_collections": p.failed_collections,
                "rating": p.rating,
            }
            for p in phlebotomists
        ]
