"""
SLA rules for lab orders.

Pure logic and data: breach state is always recomputed from an order's status
log and the current time. Nothing here reads the database or the clock.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from shared.domain.clock import ensure_utc
from lab_orders.domain.model import LabOrder, LabOrderStatus


class BreachType(str, Enum):
    PATIENT_BOOKING = "PATIENT_BOOKING"
    PHLEBOTOMIST_ASSIGNMENT = "PHLEBOTOMIST_ASSIGNMENT"
    LAB_RECEIPT = "LAB_RECEIPT"
    LAB_RESULTS = "LAB_RESULTS"
    DOCTOR_REVIEW = "DOCTOR_REVIEW"


class SlaLevel(str, Enum):
    FIRST_REMINDER = "FIRST_REMINDER"
    SECOND_REMINDER = "SECOND_REMINDER"
    EXPIRED = "EXPIRED"
    BREACHED = "BREACHED"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    REMINDER = "REMINDER"
    REASSIGN = "REASSIGN"


# Levels counted as critical in the summary
CRITICAL_LEVELS = frozenset({SlaLevel.EXPIRED, SlaLevel.CRITICAL, SlaLevel.REASSIGN})

DEFAULT_THRESHOLDS: Dict[str, float] = {
    "booking_first_reminder_hours": 72,
    "booking_second_reminder_hours": 168,
    "booking_expired_hours": 336,
    "phlebotomist_assignment_hours": 2,
    "lab_receipt_hours": 4,
    "lab_results_warning_hours": 48,
    "lab_results_critical_hours": 72,
    "doctor_review_reminder_hours": 24,
    "doctor_review_reassign_hours": 48,
}


@dataclass(frozen=True)
class SlaBreach:
    order_id: str
    breach_type: BreachType
    level: SlaLevel
    status: LabOrderStatus
    anchored_at: datetime
    hours_elapsed: float
    hours_overdue: float

    @property
    def escalation_reason(self) -> str:
        return f"{self.breach_type.value}:{self.level.value}"

    @property
    def is_critical(self) -> bool:
        return self.level in CRITICAL_LEVELS

    def to_dict(self) -> Dict:
        return {
            "order_id": self.order_id,
            "breach_type": self.breach_type.value,
            "level": self.level.value,
            "status": self.status.value,
            "anchored_at": self.anchored_at.isoformat(),
            "hours_elapsed": round(self.hours_elapsed, 2),
            "hours_overdue": round(self.hours_overdue, 2),
        }


@dataclass(frozen=True)
class SlaRule:
    """
    One monitored category.

    ``levels`` are (threshold_hours, level) pairs in ascending order; a level
    applies from its threshold inclusive. The anchor is the most recent entry
    into any of ``anchor_statuses``, so a re-entered state restarts its clock.
    """
    breach_type: BreachType
    watched: FrozenSet[LabOrderStatus]
    anchor_statuses: Tuple[LabOrderStatus, ...]
    levels: Tuple[Tuple[float, SlaLevel], ...]
    unassigned_only: bool = False

    @property
    def first_threshold(self) -> float:
        return self.levels[0][0]

    def applies_to(self, order: LabOrder) -> bool:
        if order.status not in self.watched:
            return False
        if self.unassigned_only and order.phlebotomist_id:
            return False
        return True

    def level_for(self, hours_elapsed: float) -> Optional[SlaLevel]:
        current = None
        for threshold, level in self.levels:
            if hours_elapsed >= threshold:
                current = level
        return current

    def evaluate(self, order: LabOrder, now: datetime) -> Optional[SlaBreach]:
        if not self.applies_to(order):
            return None
        anchored_at = order.entered_at(*self.anchor_statuses)
        if anchored_at is None:
            return None

        hours_elapsed = (ensure_utc(now) - anchored_at).total_seconds() / 3600
        level = self.level_for(hours_elapsed)
        if level is None:
            return None

        return SlaBreach(
            order_id=order.id,
            breach_type=self.breach_type,
            level=level,
            status=order.status,
            anchored_at=anchored_at,
            hours_elapsed=hours_elapsed,
            hours_overdue=max(0.0, hours_elapsed - self.first_threshold),
        )


def build_rules(overrides: Optional[Dict[str, float]] = None) -> Dict[BreachType, SlaRule]:
    """Rule table keyed by breach type, with any threshold overrides applied."""
    unknown = set(overrides or {}) - set(DEFAULT_THRESHOLDS)
    if unknown:
        raise ValueError(f"Unknown SLA thresholds: {', '.join(sorted(unknown))}")
    t = {**DEFAULT_THRESHOLDS, **(overrides or {})}

    rules = [
        SlaRule(
            breach_type=BreachType.PATIENT_BOOKING,
            watched=frozenset({LabOrderStatus.ORDERED}),
            anchor_statuses=(LabOrderStatus.ORDERED,),
            levels=(
                (t["booking_first_reminder_hours"], SlaLevel.FIRST_REMINDER),
                (t["booking_second_reminder_hours"], SlaLevel.SECOND_REMINDER),
                (t["booking_expired_hours"], SlaLevel.EXPIRED),
            ),
        ),
        SlaRule(
            breach_type=BreachType.PHLEBOTOMIST_ASSIGNMENT,
            watched=frozenset({LabOrderStatus.SLOT_BOOKED}),
            anchor_statuses=(LabOrderStatus.SLOT_BOOKED,),
            levels=((t["phlebotomist_assignment_hours"], SlaLevel.BREACHED),),
            unassigned_only=True,
        ),
        SlaRule(
            breach_type=BreachType.LAB_RECEIPT,
            watched=frozenset({LabOrderStatus.DELIVERED_TO_LAB}),
            anchor_statuses=(LabOrderStatus.DELIVERED_TO_LAB,),
            levels=((t["lab_receipt_hours"], SlaLevel.BREACHED),),
        ),
        SlaRule(
            breach_type=BreachType.LAB_RESULTS,
            watched=frozenset({LabOrderStatus.SAMPLE_RECEIVED, LabOrderStatus.PROCESSING}),
            anchor_statuses=(LabOrderStatus.SAMPLE_RECEIVED,),
            levels=(
                (t["lab_results_warning_hours"], SlaLevel.WARNING),
                (t["lab_results_critical_hours"], SlaLevel.CRITICAL),
            ),
        ),
        SlaRule(
            breach_type=BreachType.DOCTOR_REVIEW,
            watched=frozenset({LabOrderStatus.RESULTS_READY, LabOrderStatus.RESULTS_UPLOADED}),
            anchor_statuses=(LabOrderStatus.RESULTS_READY, LabOrderStatus.RESULTS_UPLOADED),
            levels=(
                (t["doctor_review_reminder_hours"], SlaLevel.REMINDER),
                (t["doctor_review_reassign_hours"], SlaLevel.REASSIGN),
            ),
        ),
    ]
    for rule in rules:
        thresholds = [threshold for threshold, _ in rule.levels]
        if thresholds != sorted(thresholds):
            raise ValueError(f"SLA thresholds for {rule.breach_type.value} must be ascending")
    return {rule.breach_type: rule for rule in rules}


def evaluate(order: LabOrder, now: datetime, rules: Dict[BreachType, SlaRule]) -> List[SlaBreach]:
    """All breaches for one order (at most one, since watched states are disjoint)."""
    breaches = []
    for rule in rules.values():
        breach = rule.evaluate(order, now)
        if breach is not None:
            breaches.append(breach)
    return breaches
