"""
Periodic SLA sweep.

Order of work:
1. expire stale ORDERED orders
2. record booking reminders still owed today
3. escalate breaches that need a human

Each record is written in its own transaction through the message bus, so
notifications go out after commit and one bad record never stops the sweep.
"""
import logging
from typing import Dict, Optional

from lab_orders.domain import commands
from lab_orders.service_layer import messagebus
from lab_orders.service_layer.unit_of_work import AbstractUnitOfWork
from sla_escalation.domain.rules import BreachType, SlaLevel, SlaRule
from sla_escalation.service_layer import escalation

logger = logging.getLogger(__name__)

SWEEPER = "sla-sweeper"

# Breaches escalated at any level
ALWAYS_ESCALATED = frozenset({BreachType.PHLEBOTOMIST_ASSIGNMENT, BreachType.LAB_RECEIPT})
ESCALATED_LEVELS = frozenset({SlaLevel.CRITICAL, SlaLevel.REASSIGN})


def needs_escalation(breach) -> bool:
    return breach.breach_type in ALWAYS_ESCALATED or breach.level in ESCALATED_LEVELS


def run_sla_sweep(uow: AbstractUnitOfWork, rules: Optional[Dict[BreachType, SlaRule]] = None) -> Dict[str, int]:
    """Run one pass. Re-running it right away writes nothing new."""
    rules = rules or escalation.default_rules()
    summary = {"expired": 0, "reminders": 0, "escalations": 0, "failures": 0}

    expiry_hours = rules[BreachType.PATIENT_BOOKING].levels[-1][0]
    try:
        [expired] = messagebus.handle(commands.ExpireStaleOrders(max_age_hours=expiry_hours), uow)
        summary["expired"] = len(expired)
    except Exception:
        logger.exception("Expiry sweep failed")
        summary["failures"] += 1

    try:
        due = escalation.get_orders_requiring_notification(escalation.PATIENT_BOOKING_REMINDER, uow, rules)
    except Exception:
        logger.exception("Reminder lookup failed")
        summary["failures"] += 1
        due = []

    for breach in due:
        try:
            messagebus.handle(
                commands.MarkReminderSent(order_id=breach.order_id, reminder_type=breach.level.value),
                uow,
            )
            summary["reminders"] += 1
        except Exception:
            logger.exception(f"Skipping reminder for lab order {breach.order_id}")
            summary["failures"] += 1

    for breaches in escalation.get_all_breaches(uow, rules).values():
        for breach in breaches:
            if not needs_escalation(breach):
                continue
            try:
                [written] = messagebus.handle(
                    commands.MarkEscalated(
                        order_id=breach.order_id,
                        reason=breach.escalation_reason,
                        escalated_by=SWEEPER,
                    ),
                    uow,
                )
                if written:
                    summary["escalations"] += 1
            except Exception:
                logger.exception(f"Skipping escalation for lab order {breach.order_id}")
                summary["failures"] += 1

    logger.info(
        f"SLA sweep done: {summary['expired']} expired, {summary['reminders']} reminders, "
        f"{summary['escalations']} escalations, {summary['failures']} failures"
    )
    return summary
