# pylint: disable=broad-except
"""Message bus for the lab order service following Cosmic Python pattern."""

from __future__ import annotations
import logging
from typing import List, Dict, Callable, Type, Union, TYPE_CHECKING

from shared.domain.commands import Command, Event
from lab_orders.domain import commands, events
from lab_orders.service_layer import handlers, lab_handlers, patient_handlers, phlebotomist_handlers
from sla_escalation.service_layer import handlers as sla_handlers

if TYPE_CHECKING:
    from lab_orders.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)

Message = Union[Command, Event]


def handle(
    message: Message,
    uow: AbstractUnitOfWork,
):
    """Handle message (command or event) with the appropriate handler."""
    results = []
    queue = [message]

    while queue:
        message = queue.pop(0)

        if isinstance(message, Event):
            handle_event(message, queue, uow)
        elif isinstance(message, Command):
            cmd_result = handle_command(message, queue, uow)
            results.append(cmd_result)
        else:
            raise Exception(f"{message} was not an Event or Command")

    return results


def handle_event(
    event: Event,
    queue: List[Message],
    uow: AbstractUnitOfWork,
):
    """Handle event by calling all registered event handlers."""
    for handler in EVENT_HANDLERS.get(type(event), []):
        try:
            logger.debug(f"handling event {event} with handler {handler}")
            handler(event, uow=uow)
            queue.extend(uow.collect_new_events())
        except Exception:
            logger.exception("Exception handling event %s", event)
            continue


def handle_command(
    command: Command,
    queue: List[Message],
    uow: AbstractUnitOfWork,
):
    """Handle command by calling the registered command handler."""
    logger.debug(f"handling command {command}")
    try:
        handler = COMMAND_HANDLERS[type(command)]
        result = handler(command, uow=uow)
        queue.extend(uow.collect_new_events())
        return result
    except Exception:
        logger.exception("Exception handling command %s", command)
        raise


# Event handlers - multiple handlers can respond to same event
EVENT_HANDLERS = {
    events.LabOrderStatusChanged: [handlers.publish_status_changed],
    events.CriticalValuesDetected: [handlers.notify_critical_values],
    events.RecollectionOrdered: [handlers.publish_recollection_ordered],
    events.CollectionFailed: [handlers.publish_collection_failed],
    events.PhlebotomistRunningLate: [handlers.publish_running_late],
    events.ReminderSent: [handlers.publish_reminder],
    events.SlaEscalated: [handlers.publish_escalation],
}  # type: Dict[Type[Event], List[Callable]]

# Command handlers - single handler per command type
COMMAND_HANDLERS = {
    commands.CreateLabOrder: handlers.create_lab_order,
    commands.TransitionLabOrder: handlers.transition_lab_order,
    commands.ExpireStaleOrders: handlers.expire_stale_orders,
    commands.CreateSlot: handlers.create_slot,
    commands.RegisterPhlebotomist: handlers.register_phlebotomist,
    commands.RegisterDiagnosticCentre: handlers.register_diagnostic_centre,
    commands.BookSlot: patient_handlers.book_slot,
    commands.CancelLabOrder: patient_handlers.cancel_lab_order,
    commands.RescheduleSlot: patient_handlers.reschedule_slot,
    commands.UploadPatientResults: patient_handlers.upload_patient_results,
    commands.AssignPhlebotomist: phlebotomist_handlers.assign_phlebotomist,
    commands.MarkSampleCollected: phlebotomist_handlers.mark_sample_collected,
    commands.MarkPatientUnavailable: phlebotomist_handlers.mark_patient_unavailable,
    commands.MarkRunningLate: phlebotomist_handlers.mark_running_late,
    commands.DeliverToLab: phlebotomist_handlers.deliver_to_lab,
    commands.MarkSampleReceived: lab_handlers.mark_sample_received,
    commands.ReportSampleIssue: lab_handlers.report_sample_issue,
    commands.StartProcessing: lab_handlers.start_processing,
    commands.UploadResults: lab_handlers.upload_results,
    commands.ReviewResults: lab_handlers.review_results,
    commands.CloseLabOrder: lab_handlers.close_lab_order,
    commands.MarkEscalated: sla_handlers.mark_escalated,
    commands.MarkReminderSent: sla_handlers.mark_reminder_sent,
}  # type: Dict[Type[Command], Callable]
