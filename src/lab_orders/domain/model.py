"""Lab order aggregate and its status state machine.

Main flow:
    ORDERED → SLOT_BOOKED → PHLEBOTOMIST_ASSIGNED → SAMPLE_COLLECTED →
    DELIVERED_TO_LAB → SAMPLE_RECEIVED → PROCESSING → RESULTS_READY →
    DOCTOR_REVIEWED → CLOSED

Branches:
    COLLECTION_FAILED → patient rebooks → SLOT_BOOKED
    SAMPLE_ISSUE → free recollection order created as ORDERED
    ORDERED → RESULTS_UPLOADED (patient self-upload) → DOCTOR_REVIEWED
    CANCELLED, EXPIRED
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from shared.domain.clock import ensure_utc
from lab_orders.domain import events
from lab_orders.domain.exceptions import CutoffExceeded, InvalidTransition


class LabOrderStatus(str, Enum):
    ORDERED = "ORDERED"
    SLOT_BOOKED = "SLOT_BOOKED"
    PHLEBOTOMIST_ASSIGNED = "PHLEBOTOMIST_ASSIGNED"
    SAMPLE_COLLECTED = "SAMPLE_COLLECTED"
    COLLECTION_FAILED = "COLLECTION_FAILED"
    DELIVERED_TO_LAB = "DELIVERED_TO_LAB"
    SAMPLE_RECEIVED = "SAMPLE_RECEIVED"
    SAMPLE_ISSUE = "SAMPLE_ISSUE"
    PROCESSING = "PROCESSING"
    RESULTS_READY = "RESULTS_READY"
    RESULTS_UPLOADED = "RESULTS_UPLOADED"
    DOCTOR_REVIEWED = "DOCTOR_REVIEWED"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class AbnormalFlag(str, Enum):
    NORMAL = "NORMAL"
    ABNORMAL = "ABNORMAL"
    CRITICAL = "CRITICAL"


VALID_TRANSITIONS: Dict[LabOrderStatus, FrozenSet[LabOrderStatus]] = {
    LabOrderStatus.ORDERED: frozenset({
        LabOrderStatus.SLOT_BOOKED,
        LabOrderStatus.RESULTS_UPLOADED,
        LabOrderStatus.CANCELLED,
        LabOrderStatus.EXPIRED,
    }),
    LabOrderStatus.SLOT_BOOKED: frozenset({
        LabOrderStatus.PHLEBOTOMIST_ASSIGNED,
        LabOrderStatus.CANCELLED,
    }),
    LabOrderStatus.PHLEBOTOMIST_ASSIGNED: frozenset({
        LabOrderStatus.SAMPLE_COLLECTED,
        LabOrderStatus.COLLECTION_FAILED,
        LabOrderStatus.CANCELLED,
    }),
    LabOrderStatus.SAMPLE_COLLECTED: frozenset({LabOrderStatus.DELIVERED_TO_LAB}),
    LabOrderStatus.COLLECTION_FAILED: frozenset({LabOrderStatus.SLOT_BOOKED}),
    LabOrderStatus.DELIVERED_TO_LAB: frozenset({LabOrderStatus.SAMPLE_RECEIVED}),
    LabOrderStatus.SAMPLE_RECEIVED: frozenset({
        LabOrderStatus.PROCESSING,
        LabOrderStatus.SAMPLE_ISSUE,
    }),
    LabOrderStatus.SAMPLE_ISSUE: frozenset(),
    LabOrderStatus.PROCESSING: frozenset({LabOrderStatus.RESULTS_READY}),
    LabOrderStatus.RESULTS_READY: frozenset({LabOrderStatus.DOCTOR_REVIEWED}),
    LabOrderStatus.RESULTS_UPLOADED: frozenset({LabOrderStatus.DOCTOR_REVIEWED}),
    LabOrderStatus.DOCTOR_REVIEWED: frozenset({LabOrderStatus.CLOSED}),
    LabOrderStatus.CLOSED: frozenset(),
    LabOrderStatus.CANCELLED: frozenset(),
    LabOrderStatus.EXPIRED: frozenset(),
}

# RESULTS_READY and RESULTS_UPLOADED both mean "results became available".
STATUS_TIMESTAMP_FIELDS: Dict[LabOrderStatus, str] = {
    LabOrderStatus.ORDERED: "ordered_at",
    LabOrderStatus.SLOT_BOOKED: "slot_booked_at",
    LabOrderStatus.PHLEBOTOMIST_ASSIGNED: "phlebotomist_assigned_at",
    LabOrderStatus.SAMPLE_COLLECTED: "sample_collected_at",
    LabOrderStatus.COLLECTION_FAILED: "collection_failed_at",
    LabOrderStatus.DELIVERED_TO_LAB: "delivered_to_lab_at",
    LabOrderStatus.SAMPLE_RECEIVED: "sample_received_at",
    LabOrderStatus.SAMPLE_ISSUE: "sample_issue_at",
    LabOrderStatus.PROCESSING: "processing_started_at",
    LabOrderStatus.RESULTS_READY: "results_uploaded_at",
    LabOrderStatus.RESULTS_UPLOADED: "results_uploaded_at",
    LabOrderStatus.DOCTOR_REVIEWED: "doctor_reviewed_at",
    LabOrderStatus.CLOSED: "closed_at",
    LabOrderStatus.CANCELLED: "cancelled_at",
    LabOrderStatus.EXPIRED: "expired_at",
}

BOOKABLE_STATUSES = frozenset({LabOrderStatus.ORDERED, LabOrderStatus.COLLECTION_FAILED})
CANCELLABLE_STATUSES = frozenset({
    LabOrderStatus.ORDERED,
    LabOrderStatus.SLOT_BOOKED,
    LabOrderStatus.PHLEBOTOMIST_ASSIGNED,
})
RESCHEDULABLE_STATUSES = frozenset({
    LabOrderStatus.SLOT_BOOKED,
    LabOrderStatus.PHLEBOTOMIST_ASSIGNED,
})
SAMPLE_ISSUE_STATUSES = frozenset({
    LabOrderStatus.DELIVERED_TO_LAB,
    LabOrderStatus.SAMPLE_RECEIVED,
})

CANCELLATION_CUTOFF = timedelta(hours=4)
ORDER_EXPIRY_AGE = timedelta(days=14)
DEFAULT_LAB_COST = 99900  # paise


def is_valid_transition(current, target) -> bool:
    """Pure check against the transition table."""
    return LabOrderStatus(target) in VALID_TRANSITIONS[LabOrderStatus(current)]


def allowed_next_statuses(current) -> List[str]:
    return sorted(s.value for s in VALID_TRANSITIONS[LabOrderStatus(current)])


def has_critical_values(abnormal_flags: Optional[Dict[str, str]]) -> bool:
    if not abnormal_flags:
        return False
    return any(flag == AbnormalFlag.CRITICAL.value for flag in abnormal_flags.values())


@dataclass(eq=False)
class StatusChange:
    """One entry of an order's append-only status log."""
    seq: int
    status: LabOrderStatus
    at: datetime
    from_status: Optional[LabOrderStatus] = None
    details: Dict = field(default_factory=dict)


@dataclass
class TransitionOptions:
    """Status-specific side data accepted by a transition."""
    booked_date: Optional[datetime] = None
    booked_time_slot: Optional[str] = None
    slot_id: Optional[str] = None
    phlebotomist_id: Optional[str] = None
    tube_count: Optional[int] = None
    received_tube_count: Optional[int] = None
    diagnostic_centre_id: Optional[str] = None
    reason: Optional[str] = None
    result_file_url: Optional[str] = None
    abnormal_flags: Optional[Dict[str, str]] = None
    notes: Optional[str] = None

    def as_details(self) -> Dict:
        details = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            if isinstance(value, datetime):
                value = value.isoformat()
            details[key] = value
        return details


@dataclass(eq=False)
class LabOrder:
    id: str
    patient_id: str
    doctor_id: str
    test_panel: List[str] = field(default_factory=list)
    consultation_id: Optional[str] = None
    panel_name: Optional[str] = None
    doctor_notes: Optional[str] = None
    collection_address: str = ""
    collection_city: str = ""
    collection_postal_code: str = ""
    status: LabOrderStatus = LabOrderStatus.ORDERED
    parent_lab_order_id: Optional[str] = None

    phlebotomist_id: Optional[str] = None
    diagnostic_centre_id: Optional[str] = None
    slot_id: Optional[str] = None
    booked_date: Optional[datetime] = None
    booked_time_slot: Optional[str] = None

    tube_count: Optional[int] = None
    received_tube_count: Optional[int] = None
    tube_count_mismatch: bool = False
    sample_issue_reason: Optional[str] = None
    collection_failed_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    result_file_url: Optional[str] = None
    abnormal_flags: Optional[Dict[str, str]] = None
    critical_values: bool = False
    patient_uploaded_results: bool = False
    patient_uploaded_file_url: Optional[str] = None
    doctor_review_notes: Optional[str] = None
    estimated_arrival_time: Optional[str] = None
    running_late_at: Optional[datetime] = None

    lab_cost: int = DEFAULT_LAB_COST
    patient_charge: int = 0
    covered_by_subscription: bool = True
    is_free_recollection: bool = False

    sla_escalated_at: Optional[datetime] = None
    sla_escalation_reason: Optional[str] = None
    sla_escalated_by: Optional[str] = None
    last_reminder_sent_at: Optional[datetime] = None
    last_reminder_type: Optional[str] = None

    version_number: int = 0
    history: List[StatusChange] = field(default_factory=list)
    events: List = field(default_factory=list)

    def __post_init__(self):
        self.status = LabOrderStatus(self.status)

    @classmethod
    def place(cls, order_id: str, patient_id: str, doctor_id: str, test_panel: List[str],
              at: datetime, **details) -> "LabOrder":
        """Create a new ORDERED lab order and stamp ordered_at."""
        order = cls(
            id=order_id,
            patient_id=patient_id,
            doctor_id=doctor_id,
            test_panel=list(test_panel),
            status=LabOrderStatus.ORDERED,
            **details,
        )
        order._record(None, LabOrderStatus.ORDERED, at)
        return order

    # ------------------------------------------------------------------
    # Timestamp read-view, derived from the status log
    # ------------------------------------------------------------------

    def _first_entered(self, *statuses: LabOrderStatus) -> Optional[datetime]:
        for change in self.history:
            if change.status in statuses:
                return ensure_utc(change.at)
        return None

    def entered_at(self, *statuses: LabOrderStatus) -> Optional[datetime]:
        """Most recent time the order entered any of the given statuses."""
        for change in reversed(self.history):
            if change.status in statuses:
                return ensure_utc(change.at)
        return None

    @property
    def ordered_at(self) -> Optional[datetime]:
        return self._first_entered(LabOrderStatus.ORDERED)

    @property
    def slot_booked_at(self) -> Optional[datetime]:
        return self._first_entered(LabOrderStatus.SLOT_BOOKED)

    @property
    def phlebotomist_assigned_at(self) -> Optional[datetime]:
        # A later SLOT_BOOKED entry (rebook or reschedule) clears the assignment.
        for change in reversed(self.history):
            if change.status == LabOrderStatus.SLOT_BOOKED:
                return None
            if change.status == LabOrderStatus.PHLEBOTOMIST_ASSIGNED:
                return ensure_utc(change.at)
        return None

    @property
    def sample_collected_at(self) -> Optional[datetime]:
        return self._first_entered(LabOrderStatus.SAMPLE_COLLECTED)

    @property
    def collection_failed_at(self) -> Optional[datetime]:
        return self._first_entered(LabOrderStatus.COLLECTION_FAILED)

    @property
    def delivered_to_lab_at(self) -> Optional[datetime]:
        return self._first_entered(LabOrderStatus.DELIVERED_TO_LAB)

    @property
    def sample_received_at(self) -> Optional[datetime]:
        return self._first_entered(LabOrderStatus.SAMPLE_RECEIVED)

    @property
    def sample_issue_at(self) -> Optional[datetime]:
        return self._first_entered(LabOrderStatus.SAMPLE_ISSUE)

    @property
    def processing_started_at(self) -> Optional[datetime]:
        return self._first_entered(LabOrderStatus.PROCESSING)

    @property
    def results_uploaded_at(self) -> Optional[datetime]:
        return self._first_entered(LabOrderStatus.RESULTS_READY, LabOrderStatus.RESULTS_UPLOADED)

    @property
    def doctor_reviewed_at(self) -> Optional[datetime]:
        return self._first_entered(LabOrderStatus.DOCTOR_REVIEWED)

    @property
    def closed_at(self) -> Optional[datetime]:
        return self._first_entered(LabOrderStatus.CLOSED)

    @property
    def cancelled_at(self) -> Optional[datetime]:
        return self._first_entered(LabOrderStatus.CANCELLED)

    @property
    def expired_at(self) -> Optional[datetime]:
        return self._first_entered(LabOrderStatus.EXPIRED)

    def timestamps(self) -> Dict[str, Optional[datetime]]:
        return {name: getattr(self, name) for name in dict.fromkeys(STATUS_TIMESTAMP_FIELDS.values())}

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def check_transition(self, target) -> LabOrderStatus:
        """Return the target as a status, or raise InvalidTransition. Never mutates."""
        try:
            target = LabOrderStatus(target)
        except ValueError:
            raise InvalidTransition(f"Unknown lab order status: {target}") from None

        if not is_valid_transition(self.status, target):
            raise InvalidTransition(
                f"Invalid transition from {self.status.value} to {target.value} "
                f"for lab order {self.id}"
            )
        return target

    def transition_to(self, target, at: datetime, options: Optional[TransitionOptions] = None) -> None:
        """
        Move the order to ``target`` following the transition table.

        Options are validated before anything is written, so a failing call
        leaves the order untouched.
        """
        target = self.check_transition(target)
        options = options or TransitionOptions()
        self._validate_options(target, options)

        if target == LabOrderStatus.CANCELLED and self.status == LabOrderStatus.PHLEBOTOMIST_ASSIGNED:
            self._check_cutoff(at, "cancel")

        previous = self.status
        self._apply_side_data(previous, target, options)
        self._record(previous, target, at, options.as_details())

        if target == LabOrderStatus.RESULTS_READY and self.critical_values:
            self.events.append(
                events.CriticalValuesDetected(
                    order_id=self.id,
                    patient_id=self.patient_id,
                    doctor_id=self.doctor_id,
                    abnormal_flags=dict(self.abnormal_flags or {}),
                    detected_at=ensure_utc(at),
                )
            )
        elif target == LabOrderStatus.COLLECTION_FAILED:
            self.events.append(
                events.CollectionFailed(
                    order_id=self.id,
                    patient_id=self.patient_id,
                    phlebotomist_id=self.phlebotomist_id,
                    reason=self.collection_failed_reason,
                    failed_at=ensure_utc(at),
                )
            )

    def _validate_options(self, target: LabOrderStatus, options: TransitionOptions) -> None:
        if target == LabOrderStatus.SAMPLE_COLLECTED and options.tube_count is not None:
            if options.tube_count <= 0:
                raise InvalidTransition("Tube count must be positive")

        if target == LabOrderStatus.SAMPLE_RECEIVED and options.received_tube_count is not None:
            if options.received_tube_count < 0:
                raise InvalidTransition("Received tube count cannot be negative")

        if target == LabOrderStatus.RESULTS_READY and options.abnormal_flags:
            valid = {flag.value for flag in AbnormalFlag}
            unknown = sorted(v for v in options.abnormal_flags.values() if v not in valid)
            if unknown:
                raise InvalidTransition(f"Unknown abnormal flag values: {', '.join(unknown)}")

    def _apply_side_data(self, previous: LabOrderStatus, target: LabOrderStatus,
                         options: TransitionOptions) -> None:
        if target == LabOrderStatus.SLOT_BOOKED:
            if options.booked_date is not None:
                self.booked_date = ensure_utc(options.booked_date)
            if options.booked_time_slot:
                self.booked_time_slot = options.booked_time_slot
            if options.slot_id:
                self.slot_id = options.slot_id
            if previous == LabOrderStatus.COLLECTION_FAILED:
                self.phlebotomist_id = None

        elif target == LabOrderStatus.PHLEBOTOMIST_ASSIGNED:
            if options.phlebotomist_id:
                self.phlebotomist_id = options.phlebotomist_id

        elif target == LabOrderStatus.SAMPLE_COLLECTED:
            if options.tube_count is not None:
                self.tube_count = options.tube_count

        elif target == LabOrderStatus.COLLECTION_FAILED:
            if options.reason:
                self.collection_failed_reason = options.reason

        elif target == LabOrderStatus.DELIVERED_TO_LAB:
            if options.diagnostic_centre_id:
                self.diagnostic_centre_id = options.diagnostic_centre_id

        elif target == LabOrderStatus.SAMPLE_RECEIVED:
            self.received_tube_count = options.received_tube_count
            # Only compare when the collected count is known.
            self.tube_count_mismatch = (
                self.tube_count is not None
                and options.received_tube_count is not None
                and self.tube_count != options.received_tube_count
            )

        elif target == LabOrderStatus.SAMPLE_ISSUE:
            if options.reason:
                self.sample_issue_reason = options.reason

        elif target == LabOrderStatus.RESULTS_READY:
            if options.result_file_url:
                self.result_file_url = options.result_file_url
            if options.abnormal_flags is not None:
                self.abnormal_flags = dict(options.abnormal_flags)
            self.critical_values = has_critical_values(self.abnormal_flags)

        elif target == LabOrderStatus.RESULTS_UPLOADED:
            if options.result_file_url:
                self.patient_uploaded_file_url = options.result_file_url
                self.patient_uploaded_results = True

        elif target == LabOrderStatus.DOCTOR_REVIEWED:
            if options.notes:
                self.doctor_review_notes = options.notes

        elif target == LabOrderStatus.CANCELLED:
            if options.reason:
                self.cancellation_reason = options.reason
            self.slot_id = None

    def _check_cutoff(self, at: datetime, action: str) -> None:
        if self.booked_date is None:
            return
        if ensure_utc(self.booked_date) - ensure_utc(at) < CANCELLATION_CUTOFF:
            raise CutoffExceeded(
                f"Cannot {action} lab order {self.id} within 4 hours of scheduled collection. "
                "Contact support."
            )

    def _record(self, previous: Optional[LabOrderStatus], status: LabOrderStatus,
                at: datetime, details: Optional[Dict] = None) -> None:
        at = ensure_utc(at)
        self.history.append(
            StatusChange(
                seq=len(self.history) + 1,
                status=status,
                at=at,
                from_status=previous,
                details=details or {},
            )
        )
        self.status = status
        self.version_number += 1
        self.events.append(
            events.LabOrderStatusChanged(
                order_id=self.id,
                from_status=previous.value if previous else None,
                to_status=status.value,
                changed_at=at,
            )
        )

    # ------------------------------------------------------------------
    # Compensating and branching paths
    # ------------------------------------------------------------------

    def reschedule(self, slot_id: str, booked_date: datetime, booked_time_slot: str, at: datetime) -> Optional[str]:
        """
        Forced re-entry to SLOT_BOOKED on a new slot.

        Clears the phlebotomist assignment. Returns the id of the slot the
        order held before, which the caller must release.
        """
        if self.status not in RESCHEDULABLE_STATUSES:
            raise InvalidTransition(f"Cannot reschedule lab order in {self.status.value} status")
        self._check_cutoff(at, "reschedule")

        previous_slot_id = self.slot_id
        previous = self.status
        self.slot_id = slot_id
        self.booked_date = ensure_utc(booked_date)
        self.booked_time_slot = booked_time_slot
        self.phlebotomist_id = None
        self._record(
            previous,
            LabOrderStatus.SLOT_BOOKED,
            at,
            {
                "rescheduled": True,
                "slot_id": slot_id,
                "previous_slot_id": previous_slot_id,
                "booked_time_slot": booked_time_slot,
            },
        )
        return previous_slot_id

    def report_sample_issue(self, reason: Optional[str], recollection_id: str, at: datetime) -> "LabOrder":
        """
        Move to SAMPLE_ISSUE and return the free recollection order.

        Allowed from DELIVERED_TO_LAB as well as SAMPLE_RECEIVED. SAMPLE_ISSUE
        has no outgoing transitions, so a retried report cannot spawn twice.
        """
        if self.status not in SAMPLE_ISSUE_STATUSES:
            raise InvalidTransition(f"Cannot report sample issue for order in {self.status.value} status")

        previous = self.status
        if reason:
            self.sample_issue_reason = reason
        self._record(previous, LabOrderStatus.SAMPLE_ISSUE, at, {"reason": reason} if reason else {})

        recollection = self.spawn_recollection(recollection_id, at)
        self.events.append(
            events.RecollectionOrdered(
                original_order_id=self.id,
                recollection_order_id=recollection.id,
                patient_id=self.patient_id,
                reason=reason,
                ordered_at=ensure_utc(at),
            )
        )
        return recollection

    def spawn_recollection(self, recollection_id: str, at: datetime) -> "LabOrder":
        return LabOrder.place(
            order_id=recollection_id,
            patient_id=self.patient_id,
            doctor_id=self.doctor_id,
            test_panel=list(self.test_panel or []),
            at=at,
            consultation_id=self.consultation_id,
            panel_name=self.panel_name,
            doctor_notes=self.doctor_notes,
            collection_address=self.collection_address,
            collection_city=self.collection_city,
            collection_postal_code=self.collection_postal_code,
            parent_lab_order_id=self.id,
            is_free_recollection=True,
            lab_cost=self.lab_cost,
            patient_charge=0,
            covered_by_subscription=self.covered_by_subscription,
        )

    def is_stale(self, now: datetime, max_age: timedelta = ORDER_EXPIRY_AGE) -> bool:
        """Still ORDERED at least ``max_age`` after ordered_at."""
        if self.status != LabOrderStatus.ORDERED or self.ordered_at is None:
            return False
        return ensure_utc(now) - self.ordered_at >= max_age

    # ------------------------------------------------------------------
    # Non-status writes
    # ------------------------------------------------------------------

    def mark_running_late(self, estimated_arrival_time: str, at: datetime) -> None:
        if self.status != LabOrderStatus.PHLEBOTOMIST_ASSIGNED:
            raise InvalidTransition(f"Cannot mark as running late for order in {self.status.value} status")
        self.estimated_arrival_time = estimated_arrival_time
        self.running_late_at = ensure_utc(at)
        self.version_number += 1
        self.events.append(
            events.PhlebotomistRunningLate(
                order_id=self.id,
                patient_id=self.patient_id,
                phlebotomist_id=self.phlebotomist_id,
                estimated_arrival_time=estimated_arrival_time,
                reported_at=self.running_late_at,
            )
        )

    def mark_escalated(self, reason: str, at: datetime, escalated_by: Optional[str] = None) -> None:
        """SLA metadata only; status is never touched."""
        self.sla_escalated_at = ensure_utc(at)
        self.sla_escalation_reason = reason
        self.sla_escalated_by = escalated_by
        self.version_number += 1
        self.events.append(
            events.SlaEscalated(
                order_id=self.id,
                status=self.status.value,
                reason=reason,
                escalated_by=escalated_by,
                escalated_at=self.sla_escalated_at,
            )
        )

    def mark_reminder_sent(self, reminder_type: str, at: datetime) -> None:
        """SLA metadata only; status is never touched."""
        self.last_reminder_sent_at = ensure_utc(at)
        self.last_reminder_type = reminder_type
        self.version_number += 1
        self.events.append(
            events.ReminderSent(
                order_id=self.id,
                patient_id=self.patient_id,
                reminder_type=reminder_type,
                sent_at=self.last_reminder_sent_at,
            )
        )
