"""Diagnostic centre and doctor actions: from sample receipt to close-out."""

import logging

from lab_orders.domain import commands
from lab_orders.domain.exceptions import Forbidden, InvalidTransition
from lab_orders.domain.model import LabOrder, LabOrderStatus, TransitionOptions
from lab_orders.service_layer.handlers import apply_transition, get_order
from lab_orders.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


def _check_lab(order: LabOrder, lab_id: str) -> None:
    if order.diagnostic_centre_id != lab_id:
        raise Forbidden(f"Lab order {order.id} was not delivered to diagnostic centre {lab_id}")


def _check_doctor(order: LabOrder, doctor_id: str) -> None:
    if order.doctor_id != doctor_id:
        raise Forbidden(f"Lab order {order.id} was not ordered by doctor {doctor_id}")


def mark_sample_received(command: commands.MarkSampleReceived, uow: AbstractUnitOfWork) -> str:
    with uow:
        order = get_order(uow, command.order_id)
        _check_lab(order, command.lab_id)
        order_id = order.id
        apply_transition(
            uow,
            order,
            LabOrderStatus.SAMPLE_RECEIVED,
            TransitionOptions(received_tube_count=command.received_tube_count),
        )
        mismatch = order.tube_count_mismatch
        uow.commit()

    if mismatch:
        logger.warning(f"Tube count mismatch on lab order {order_id}")
    logger.info(f"Sample received for lab order {order_id}")
    return order_id


def report_sample_issue(command: commands.ReportSampleIssue, uow: AbstractUnitOfWork) -> str:
    """Reject the sample and spawn a free recollection. Returns the new order id."""
    if not command.reason or not command.reason.strip():
        raise InvalidTransition("Reason is required")

    with uow:
        order = get_order(uow, command.order_id)
        _check_lab(order, command.lab_id)
        recollection_id = apply_transition(
            uow,
            order,
            LabOrderStatus.SAMPLE_ISSUE,
            TransitionOptions(reason=command.reason.strip()),
        )
        uow.commit()

    logger.info(f"Sample issue on lab order {command.order_id}, recollection {recollection_id}")
    return recollection_id


def start_processing(command: commands.StartProcessing, uow: AbstractUnitOfWork) -> str:
    with uow:
        order = get_order(uow, command.order_id)
        _check_lab(order, command.lab_id)
        order_id = order.id
        apply_transition(uow, order, LabOrderStatus.PROCESSING)
        uow.commit()

    logger.info(f"Processing started for lab order {order_id}")
    return order_id


def upload_results(command: commands.UploadResults, uow: AbstractUnitOfWork) -> str:
    if not command.result_file_url or not command.result_file_url.strip():
        raise InvalidTransition("Result file URL is required")
    if not command.abnormal_flags:
        raise InvalidTransition("Abnormal flags are required")

    with uow:
        order = get_order(uow, command.order_id)
        _check_lab(order, command.lab_id)
        order_id = order.id
        apply_transition(
            uow,
            order,
            LabOrderStatus.RESULTS_READY,
            TransitionOptions(
                result_file_url=command.result_file_url.strip(),
                abnormal_flags=dict(command.abnormal_flags),
            ),
        )
        critical = order.critical_values
        uow.commit()

    logger.info(f"Results uploaded for lab order {order_id}, critical values: {critical}")
    return order_id


def review_results(command: commands.ReviewResults, uow: AbstractUnitOfWork) -> str:
    with uow:
        order = get_order(uow, command.order_id)
        _check_doctor(order, command.doctor_id)
        order_id = order.id
        apply_transition(
            uow,
            order,
            LabOrderStatus.DOCTOR_REVIEWED,
            TransitionOptions(notes=command.review_notes),
        )
        uow.commit()

    logger.info(f"Doctor {command.doctor_id} reviewed lab order {order_id}")
    return order_id


def close_lab_order(command: commands.CloseLabOrder, uow: AbstractUnitOfWork) -> str:
    with uow:
        order = get_order(uow, command.order_id)
        _check_doctor(order, command.doctor_id)
        order_id = order.id
        apply_transition(uow, order, LabOrderStatus.CLOSED)
        uow.commit()

    logger.info(f"Closed lab order {order_id}")
    return order_id
