"""
Core command handlers: order creation, the generic transition, slots, expiry.

Every handler runs in a single unit of work. The order row is locked first,
then any slot rows in ascending id order.
"""

import logging
import uuid
from dataclasses import replace
from datetime import timedelta
from typing import List, Optional

from lab_orders.domain import commands, events
from lab_orders.domain.actors import DiagnosticCentre, Phlebotomist
from lab_orders.domain.exceptions import LabOrderError, NotFound
from lab_orders.domain.model import (
    DEFAULT_LAB_COST,
    LabOrder,
    LabOrderStatus,
    TransitionOptions,
)
from lab_orders.domain.slots import Slot
from lab_orders.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


def new_id() -> str:
    return str(uuid.uuid4())


def get_order(uow: AbstractUnitOfWork, order_id: str, for_update: bool = True) -> LabOrder:
    order = uow.orders.get(order_id, for_update=for_update)
    if order is None:
        raise NotFound(f"Lab order {order_id} not found")
    return order


def get_slot(uow: AbstractUnitOfWork, slot_id: str) -> Slot:
    slot = uow.slots.get(slot_id, for_update=True)
    if slot is None:
        raise NotFound(f"Slot {slot_id} not found")
    return slot


def apply_transition(
    uow: AbstractUnitOfWork,
    order: LabOrder,
    target,
    options: Optional[TransitionOptions] = None,
) -> Optional[str]:
    """
    Move a locked order to ``target`` together with its paired side effects.

    - SLOT_BOOKED with a slot id books that slot.
    - CANCELLED releases the slot the order holds.
    - SAMPLE_ISSUE spawns the free recollection; its id is returned.

    Nothing is written until the transition has been validated.
    """
    options = options or TransitionOptions()
    now = uow.clock()

    # DELIVERED_TO_LAB -> SAMPLE_ISSUE is not in the table; the branch gates itself
    if target == LabOrderStatus.SAMPLE_ISSUE:
        recollection = order.report_sample_issue(options.reason, new_id(), now)
        uow.orders.add(recollection)
        logger.info(f"Lab order {order.id} has a sample issue, recollection {recollection.id} created")
        return recollection.id

    target = order.check_transition(target)

    if target == LabOrderStatus.SLOT_BOOKED and options.slot_id:
        slot = get_slot(uow, options.slot_id)
        slot.book(order.collection_postal_code)
        options = replace(options, booked_date=slot.starts_at, booked_time_slot=slot.time_window)
        order.transition_to(target, now, options)
        return None

    if target == LabOrderStatus.CANCELLED:
        held_slot_id = order.slot_id
        order.transition_to(target, now, options)
        if held_slot_id:
            slot = uow.slots.get(held_slot_id, for_update=True)
            if slot is not None:
                slot.release()
            else:
                logger.warning(f"Lab order {order.id} held unknown slot {held_slot_id}")
        return None

    order.transition_to(target, now, options)
    return None


def create_lab_order(command: commands.CreateLabOrder, uow: AbstractUnitOfWork) -> str:
    """Doctor places a new order; it starts ORDERED with ordered_at stamped."""
    logger.info(f"Processing CreateLabOrder for patient {command.patient_id}")

    test_panel = [code for code in (command.test_panel or []) if code and code.strip()]
    if not test_panel:
        raise LabOrderError("Test panel cannot be empty")

    with uow:
        order = LabOrder.place(
            order_id=command.order_id or new_id(),
            patient_id=command.patient_id,
            doctor_id=command.doctor_id,
            test_panel=test_panel,
            at=uow.clock(),
            consultation_id=command.consultation_id,
            panel_name=command.panel_name,
            doctor_notes=command.doctor_notes,
            collection_address=command.collection_address,
            collection_city=command.collection_city,
            collection_postal_code=command.collection_postal_code,
            lab_cost=command.lab_cost if command.lab_cost is not None else DEFAULT_LAB_COST,
            patient_charge=0,
            covered_by_subscription=True,
        )
        order_id = uow.orders.add(order)
        uow.commit()

    logger.info(f"Created lab order {order_id}")
    return order_id


def transition_lab_order(command: commands.TransitionLabOrder, uow: AbstractUnitOfWork) -> str:
    """
    Generic state machine move.

    Returns the order id, or the recollection id when the move was to
    SAMPLE_ISSUE.
    """
    logger.info(f"Transitioning lab order {command.order_id} to {command.target_status}")
    with uow:
        order = get_order(uow, command.order_id)
        order_id = order.id
        recollection_id = apply_transition(uow, order, command.target_status, command.options)
        uow.commit()
    return recollection_id or order_id


def expire_stale_orders(command: commands.ExpireStaleOrders, uow: AbstractUnitOfWork) -> List[str]:
    """
    Move every order still ORDERED past the age limit to EXPIRED.

    One transaction per order. An order another writer moved on in the
    meantime is skipped, as is any order that fails.
    """
    max_age = timedelta(hours=command.max_age_hours)
    now = uow.clock()

    with uow:
        candidates = [
            order.id
            for order in uow.orders.list(status=LabOrderStatus.ORDERED)
            if order.is_stale(now, max_age)
        ]

    expired = []
    for order_id in candidates:
        try:
            with uow:
                order = get_order(uow, order_id)
                # Re-check under lock
                if not order.is_stale(now, max_age):
                    continue
                order.transition_to(LabOrderStatus.EXPIRED, now)
                uow.commit()
            expired.append(order_id)
        except Exception:
            logger.exception(f"Failed to expire lab order {order_id}")

    if expired:
        logger.info(f"Expired {len(expired)} stale lab orders")
    return expired


def create_slot(command: commands.CreateSlot, uow: AbstractUnitOfWork) -> str:
    try:
        slot = Slot(
            id=command.slot_id or new_id(),
            slot_date=command.slot_date,
            start_time=command.start_time,
            end_time=command.end_time,
            city=command.city,
            serviceable_areas=list(command.serviceable_areas or []),
            max_bookings=command.max_bookings,
            phlebotomist_id=command.phlebotomist_id,
        )
    except ValueError as e:
        raise LabOrderError(str(e)) from e

    with uow:
        slot_id = uow.slots.add(slot)
        uow.commit()

    logger.info(f"Created slot {slot_id} on {command.slot_date} {command.start_time}-{command.end_time}")
    return slot_id


def register_phlebotomist(command: commands.RegisterPhlebotomist, uow: AbstractUnitOfWork) -> str:
    with uow:
        phlebotomist_id = uow.phlebotomists.add(
            Phlebotomist(
                id=command.phlebotomist_id or new_id(),
                name=command.name,
                phone=command.phone,
                serviceable_areas=list(command.serviceable_areas or []),
                is_active=command.is_active,
            )
        )
        uow.commit()
    logger.info(f"Registered phlebotomist {phlebotomist_id}")
    return phlebotomist_id


def register_diagnostic_centre(command: commands.RegisterDiagnosticCentre, uow: AbstractUnitOfWork) -> str:
    with uow:
        lab_id = uow.labs.add(
            DiagnosticCentre(
                id=command.lab_id or new_id(),
                name=command.name,
                city=command.city,
                is_active=command.is_active,
            )
        )
        uow.commit()
    logger.info(f"Registered diagnostic centre {lab_id}")
    return lab_id


# ----------------------------------------------------------------------
# Event handlers: publish after commit. Failures are logged by the bus and
# never undo the committed transition.
# ----------------------------------------------------------------------

def publish_status_changed(event: events.LabOrderStatusChanged, uow: AbstractUnitOfWork):
    uow.notifications.publish("status-changed", event)


def notify_critical_values(event: events.CriticalValuesDetected, uow: AbstractUnitOfWork):
    logger.warning(f"Critical values on lab order {event.order_id}, notifying doctor {event.doctor_id}")
    uow.notifications.publish("critical-values", event)


def publish_recollection_ordered(event: events.RecollectionOrdered, uow: AbstractUnitOfWork):
    uow.notifications.publish("recollections", event)


def publish_collection_failed(event: events.CollectionFailed, uow: AbstractUnitOfWork):
    uow.notifications.publish("collection-failed", event)


def publish_running_late(event: events.PhlebotomistRunningLate, uow: AbstractUnitOfWork):
    uow.notifications.publish("running-late", event)


def publish_reminder(event: events.ReminderSent, uow: AbstractUnitOfWork):
    uow.notifications.publish("reminders", event)


def publish_escalation(event: events.SlaEscalated, uow: AbstractUnitOfWork):
    uow.notifications.publish("escalations", event)
