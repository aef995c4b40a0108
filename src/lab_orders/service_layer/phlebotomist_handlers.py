"""Coordinator and phlebotomist actions on the collection leg of an order."""

import logging

from lab_orders.domain import commands
from lab_orders.domain.exceptions import AreaNotServiceable, Forbidden, InvalidTransition, NotFound
from lab_orders.domain.model import LabOrder, LabOrderStatus, TransitionOptions
from lab_orders.service_layer.handlers import apply_transition, get_order
from lab_orders.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


def _check_phlebotomist(order: LabOrder, phlebotomist_id: str) -> None:
    if order.phlebotomist_id != phlebotomist_id:
        raise Forbidden(f"Lab order {order.id} is not assigned to phlebotomist {phlebotomist_id}")


def _get_phlebotomist(uow: AbstractUnitOfWork, phlebotomist_id: str):
    phlebotomist = uow.phlebotomists.get(phlebotomist_id, for_update=True)
    if phlebotomist is None:
        raise NotFound(f"Phlebotomist {phlebotomist_id} not found")
    return phlebotomist


def assign_phlebotomist(command: commands.AssignPhlebotomist, uow: AbstractUnitOfWork) -> str:
    """Coordinator assigns an active phlebotomist serving the collection area."""
    logger.info(f"Assigning phlebotomist {command.phlebotomist_id} to lab order {command.order_id}")

    with uow:
        order = get_order(uow, command.order_id)
        order.check_transition(LabOrderStatus.PHLEBOTOMIST_ASSIGNED)

        phlebotomist = _get_phlebotomist(uow, command.phlebotomist_id)
        if not phlebotomist.is_active:
            raise InvalidTransition(f"Phlebotomist {phlebotomist.id} is not active")
        if not phlebotomist.serves(order.collection_postal_code):
            raise AreaNotServiceable(
                f"Phlebotomist {phlebotomist.id} does not serve postal code {order.collection_postal_code}"
            )

        order_id = order.id
        apply_transition(
            uow,
            order,
            LabOrderStatus.PHLEBOTOMIST_ASSIGNED,
            TransitionOptions(phlebotomist_id=phlebotomist.id),
        )
        uow.commit()

    logger.info(f"Phlebotomist {command.phlebotomist_id} assigned to lab order {order_id}")
    return order_id


def mark_sample_collected(command: commands.MarkSampleCollected, uow: AbstractUnitOfWork) -> str:
    if command.tube_count is None or command.tube_count <= 0:
        raise InvalidTransition("Tube count must be positive")

    with uow:
        order = get_order(uow, command.order_id)
        _check_phlebotomist(order, command.phlebotomist_id)
        order_id = order.id
        apply_transition(
            uow,
            order,
            LabOrderStatus.SAMPLE_COLLECTED,
            TransitionOptions(tube_count=command.tube_count),
        )
        phlebotomist = uow.phlebotomists.get(command.phlebotomist_id, for_update=True)
        if phlebotomist is not None:
            phlebotomist.record_collection()
        uow.commit()

    logger.info(f"Sample collected for lab order {order_id}, {command.tube_count} tubes")
    return order_id


def mark_patient_unavailable(command: commands.MarkPatientUnavailable, uow: AbstractUnitOfWork) -> str:
    if not command.reason or not command.reason.strip():
        raise InvalidTransition("Reason is required")

    with uow:
        order = get_order(uow, command.order_id)
        _check_phlebotomist(order, command.phlebotomist_id)
        order_id = order.id
        apply_transition(
            uow,
            order,
            LabOrderStatus.COLLECTION_FAILED,
            TransitionOptions(reason=command.reason.strip()),
        )
        phlebotomist = uow.phlebotomists.get(command.phlebotomist_id, for_update=True)
        if phlebotomist is not None:
            phlebotomist.record_failed_collection()
        uow.commit()

    logger.info(f"Collection failed for lab order {order_id}: {command.reason}")
    return order_id


def mark_running_late(command: commands.MarkRunningLate, uow: AbstractUnitOfWork) -> str:
    """Record a new ETA. Status is unchanged."""
    if not command.estimated_arrival_time or not command.estimated_arrival_time.strip():
        raise InvalidTransition("Estimated arrival time is required")

    with uow:
        order = get_order(uow, command.order_id)
        _check_phlebotomist(order, command.phlebotomist_id)
        order_id = order.id
        order.mark_running_late(command.estimated_arrival_time.strip(), uow.clock())
        uow.commit()

    logger.info(f"Phlebotomist running late for lab order {order_id}, ETA {command.estimated_arrival_time}")
    return order_id


def deliver_to_lab(command: commands.DeliverToLab, uow: AbstractUnitOfWork) -> str:
    with uow:
        order = get_order(uow, command.order_id)
        _check_phlebotomist(order, command.phlebotomist_id)

        lab = uow.labs.get(command.lab_id)
        if lab is None:
            raise NotFound(f"Diagnostic centre {command.lab_id} not found")
        if not lab.is_active:
            raise InvalidTransition(f"Diagnostic centre {lab.id} is not active")

        order_id = order.id
        apply_transition(
            uow,
            order,
            LabOrderStatus.DELIVERED_TO_LAB,
            TransitionOptions(diagnostic_centre_id=lab.id),
        )
        uow.commit()

    logger.info(f"Lab order {order_id} delivered to diagnostic centre {command.lab_id}")
    return order_id
