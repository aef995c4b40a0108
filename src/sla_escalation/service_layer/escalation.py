"""
SLA queries over lab orders.

Following the read-side pattern: every call recomputes breach state from the
status log at ``uow.clock()``; no breach flag is ever stored.
"""
import logging
from typing import Any, Dict, List, Optional

import config
from lab_orders.domain.exceptions import LabOrderError, NotFound
from lab_orders.service_layer.unit_of_work import AbstractUnitOfWork
from sla_escalation.domain.rules import (
    BreachType,
    SlaBreach,
    SlaLevel,
    SlaRule,
    build_rules,
    evaluate,
)

logger = logging.getLogger(__name__)

PATIENT_BOOKING_REMINDER = "PATIENT_BOOKING_REMINDER"
REMINDER_LEVELS = frozenset({SlaLevel.FIRST_REMINDER, SlaLevel.SECOND_REMINDER})


def default_rules() -> Dict[BreachType, SlaRule]:
    return build_rules(config.get_sla_thresholds())


def _overdue(
    uow: AbstractUnitOfWork,
    breach_type: BreachType,
    rules: Optional[Dict[BreachType, SlaRule]] = None,
) -> List[SlaBreach]:
    rule = (rules or default_rules())[breach_type]
    now = uow.clock()
    breaches = []
    with uow:
        for order in uow.orders.list(status=rule.watched):
            breach = rule.evaluate(order, now)
            if breach is not None:
                breaches.append(breach)
    return sorted(breaches, key=lambda b: b.hours_overdue, reverse=True)


def get_overdue_patient_bookings(uow: AbstractUnitOfWork, rules=None) -> List[SlaBreach]:
    return _overdue(uow, BreachType.PATIENT_BOOKING, rules)


def get_overdue_phlebotomist_assignments(uow: AbstractUnitOfWork, rules=None) -> List[SlaBreach]:
    return _overdue(uow, BreachType.PHLEBOTOMIST_ASSIGNMENT, rules)


def get_overdue_lab_receipts(uow: AbstractUnitOfWork, rules=None) -> List[SlaBreach]:
    return _overdue(uow, BreachType.LAB_RECEIPT, rules)


def get_overdue_lab_results(uow: AbstractUnitOfWork, rules=None) -> List[SlaBreach]:
    return _overdue(uow, BreachType.LAB_RESULTS, rules)


def get_overdue_doctor_reviews(uow: AbstractUnitOfWork, rules=None) -> List[SlaBreach]:
    return _overdue(uow, BreachType.DOCTOR_REVIEW, rules)


def get_all_breaches(uow: AbstractUnitOfWork, rules=None) -> Dict[BreachType, List[SlaBreach]]:
    rules = rules or default_rules()
    return {breach_type: _overdue(uow, breach_type, rules) for breach_type in BreachType}


def get_breach_summary(uow: AbstractUnitOfWork, rules=None) -> Dict[str, Any]:
    """
    Counts per category plus the critical count.

    Critical means EXPIRED bookings, CRITICAL lab results and REASSIGN reviews.
    """
    all_breaches = get_all_breaches(uow, rules)
    summary = {
        breach_type.value.lower(): len(breaches)
        for breach_type, breaches in all_breaches.items()
    }
    flat = [breach for breaches in all_breaches.values() for breach in breaches]
    summary["total"] = len(flat)
    summary["critical"] = sum(1 for breach in flat if breach.is_critical)
    summary["checked_at"] = uow.clock().isoformat()
    return summary


def check_order_sla_status(order_id: str, uow: AbstractUnitOfWork, rules=None) -> Dict[str, Any]:
    rules = rules or default_rules()
    now = uow.clock()
    with uow:
        order = uow.orders.get(order_id)
        if order is None:
            raise NotFound(f"Lab order {order_id} not found")
        breaches = evaluate(order, now, rules)
        return {
            "order_id": order.id,
            "status": order.status.value,
            "is_breached": bool(breaches),
            "breaches": [breach.to_dict() for breach in breaches],
            "sla_escalated_at": order.sla_escalated_at.isoformat() if order.sla_escalated_at else None,
            "sla_escalation_reason": order.sla_escalation_reason,
            "last_reminder_sent_at": (
                order.last_reminder_sent_at.isoformat() if order.last_reminder_sent_at else None
            ),
            "checked_at": now.isoformat(),
        }


def get_orders_requiring_notification(
    notification_type: str,
    uow: AbstractUnitOfWork,
    rules=None,
) -> List[SlaBreach]:
    """
    Booking reminders still owed today.

    An order qualifies at a reminder level when no reminder was sent yet, or
    the last one went out on an earlier UTC day.
    """
    if notification_type != PATIENT_BOOKING_REMINDER:
        raise LabOrderError(f"Unsupported notification type: {notification_type}")

    rule = (rules or default_rules())[BreachType.PATIENT_BOOKING]
    now = uow.clock()
    today = now.date()
    due = []
    with uow:
        for order in uow.orders.list(status=rule.watched):
            breach = rule.evaluate(order, now)
            if breach is None or breach.level not in REMINDER_LEVELS:
                continue
            last_sent = order.last_reminder_sent_at
            if last_sent is None or last_sent.date() < today:
                due.append(breach)
    return due
