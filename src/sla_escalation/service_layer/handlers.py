"""SLA metadata writes. Neither handler ever changes an order's status."""

import logging

from lab_orders.domain import commands
from lab_orders.service_layer.handlers import get_order
from lab_orders.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


def mark_escalated(command: commands.MarkEscalated, uow: AbstractUnitOfWork) -> bool:
    """Record an escalation. Returns False when the same reason is already on file."""
    with uow:
        order = get_order(uow, command.order_id)
        if order.sla_escalated_at is not None and order.sla_escalation_reason == command.reason:
            logger.debug(f"Lab order {command.order_id} already escalated for {command.reason}")
            return False
        order.mark_escalated(command.reason, uow.clock(), command.escalated_by)
        uow.commit()

    logger.info(f"Escalated lab order {command.order_id}: {command.reason}")
    return True


def mark_reminder_sent(command: commands.MarkReminderSent, uow: AbstractUnitOfWork) -> str:
    with uow:
        order = get_order(uow, command.order_id)
        order_id = order.id
        order.mark_reminder_sent(command.reminder_type, uow.clock())
        uow.commit()

    logger.info(f"Recorded {command.reminder_type} reminder for lab order {order_id}")
    return order_id
