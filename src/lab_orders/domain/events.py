"""Domain events for the lab order service."""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from shared.domain.commands import Event


@dataclass
class LabOrderStatusChanged(Event):
    """Raised for every entry in an order's status log, including creation."""
    order_id: str
    from_status: Optional[str]
    to_status: str
    changed_at: datetime


@dataclass
class CriticalValuesDetected(Event):
    """Results uploaded with at least one CRITICAL flag; the doctor must be told."""
    order_id: str
    patient_id: str
    doctor_id: str
    abnormal_flags: Dict[str, str]
    detected_at: datetime


@dataclass
class RecollectionOrdered(Event):
    """A lab rejected the sample and a free recollection order was spawned."""
    original_order_id: str
    recollection_order_id: str
    patient_id: str
    reason: Optional[str]
    ordered_at: datetime


@dataclass
class CollectionFailed(Event):
    order_id: str
    patient_id: str
    phlebotomist_id: Optional[str]
    reason: Optional[str]
    failed_at: datetime


@dataclass
class PhlebotomistRunningLate(Event):
    order_id: str
    patient_id: str
    phlebotomist_id: Optional[str]
    estimated_arrival_time: str
    reported_at: datetime


@dataclass
class ReminderSent(Event):
    """A booking reminder was recorded against the order."""
    order_id: str
    patient_id: str
    reminder_type: str
    sent_at: datetime


@dataclass
class SlaEscalated(Event):
    order_id: str
    status: str
    reason: str
    escalated_by: Optional[str]
    escalated_at: datetime
