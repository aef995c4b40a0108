"""Patient actions on their own lab orders."""

import logging

from lab_orders.domain import commands
from lab_orders.domain.exceptions import Forbidden, InvalidTransition, NotFound
from lab_orders.domain.model import (
    BOOKABLE_STATUSES,
    CANCELLABLE_STATUSES,
    LabOrder,
    LabOrderStatus,
    TransitionOptions,
)
from lab_orders.service_layer.handlers import apply_transition, get_order
from lab_orders.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


def _check_patient(order: LabOrder, patient_id: str) -> None:
    if order.patient_id != patient_id:
        raise Forbidden(f"Lab order {order.id} does not belong to patient {patient_id}")


def book_slot(command: commands.BookSlot, uow: AbstractUnitOfWork) -> str:
    """Book a collection slot, first time or after a failed collection."""
    logger.info(f"Patient {command.patient_id} booking slot {command.slot_id} for lab order {command.order_id}")

    with uow:
        order = get_order(uow, command.order_id)
        _check_patient(order, command.patient_id)
        if order.status not in BOOKABLE_STATUSES:
            raise InvalidTransition(f"Cannot book slot for order in {order.status.value} status")

        if command.collection_address and command.collection_address.strip():
            order.collection_address = command.collection_address.strip()

        order_id = order.id
        apply_transition(uow, order, LabOrderStatus.SLOT_BOOKED, TransitionOptions(slot_id=command.slot_id))
        uow.commit()

    logger.info(f"Lab order {order_id} booked into slot {command.slot_id}")
    return order_id


def cancel_lab_order(command: commands.CancelLabOrder, uow: AbstractUnitOfWork) -> str:
    logger.info(f"Patient {command.patient_id} cancelling lab order {command.order_id}")

    with uow:
        order = get_order(uow, command.order_id)
        _check_patient(order, command.patient_id)
        if order.status not in CANCELLABLE_STATUSES:
            raise InvalidTransition(f"Cannot cancel lab order in {order.status.value} status")

        order_id = order.id
        apply_transition(uow, order, LabOrderStatus.CANCELLED, TransitionOptions(reason=command.reason))
        uow.commit()

    logger.info(f"Cancelled lab order {order_id}")
    return order_id


def reschedule_slot(command: commands.RescheduleSlot, uow: AbstractUnitOfWork) -> str:
    """
    Move a booked order to another slot.

    The old slot is released and the new one booked in the same transaction;
    the phlebotomist assignment is cleared.
    """
    logger.info(f"Patient {command.patient_id} rescheduling lab order {command.order_id} to slot {command.new_slot_id}")

    with uow:
        order = get_order(uow, command.order_id)
        _check_patient(order, command.patient_id)

        slot_ids = [command.new_slot_id]
        if order.slot_id and order.slot_id != command.new_slot_id:
            slot_ids.append(order.slot_id)
        locked = {slot.id: slot for slot in uow.slots.get_many_for_update(slot_ids)}

        new_slot = locked.get(command.new_slot_id)
        if new_slot is None:
            raise NotFound(f"Slot {command.new_slot_id} not found")

        previous_slot_id = order.slot_id
        if previous_slot_id == command.new_slot_id:
            raise InvalidTransition(f"Lab order {order.id} is already booked into slot {command.new_slot_id}")

        order_id = order.id
        # Gate and state checks run inside reschedule() before anything is written
        order.reschedule(new_slot.id, new_slot.starts_at, new_slot.time_window, uow.clock())
        new_slot.book(order.collection_postal_code)
        if previous_slot_id and previous_slot_id in locked:
            locked[previous_slot_id].release()
        uow.commit()

    logger.info(f"Rescheduled lab order {order_id} from slot {previous_slot_id} to {command.new_slot_id}")
    return order_id


def upload_patient_results(command: commands.UploadPatientResults, uow: AbstractUnitOfWork) -> str:
    if not command.file_url or not command.file_url.strip():
        raise InvalidTransition("Result file URL is required")

    with uow:
        order = get_order(uow, command.order_id)
        _check_patient(order, command.patient_id)
        order_id = order.id
        apply_transition(
            uow,
            order,
            LabOrderStatus.RESULTS_UPLOADED,
            TransitionOptions(result_file_url=command.file_url.strip()),
        )
        uow.commit()

    logger.info(f"Patient uploaded results for lab order {order_id}")
    return order_id
