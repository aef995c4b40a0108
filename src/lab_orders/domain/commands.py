"""Commands for the lab order service."""

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional

from shared.domain.commands import Command
from lab_orders.domain.model import TransitionOptions


@dataclass
class CreateLabOrder(Command):
    """Doctor orders a test panel for a patient."""
    patient_id: str
    doctor_id: str
    test_panel: List[str]
    consultation_id: Optional[str] = None
    panel_name: Optional[str] = None
    doctor_notes: Optional[str] = None
    collection_address: str = ""
    collection_city: str = ""
    collection_postal_code: str = ""
    lab_cost: Optional[int] = None  # paise
    order_id: Optional[str] = None


@dataclass
class TransitionLabOrder(Command):
    """Generic state machine move, used by coordinators and admin tooling."""
    order_id: str
    target_status: str
    options: Optional[TransitionOptions] = None


@dataclass
class ExpireStaleOrders(Command):
    max_age_hours: float = 336


@dataclass
class CreateSlot(Command):
    slot_date: date
    start_time: str  # 'HH:MM'
    end_time: str
    city: str
    serviceable_areas: List[str] = field(default_factory=list)
    max_bookings: int = 5
    phlebotomist_id: Optional[str] = None
    slot_id: Optional[str] = None


@dataclass
class RegisterPhlebotomist(Command):
    name: str
    phone: str
    serviceable_areas: List[str] = field(default_factory=list)
    is_active: bool = True
    phlebotomist_id: Optional[str] = None


@dataclass
class RegisterDiagnosticCentre(Command):
    name: str
    city: str
    is_active: bool = True
    lab_id: Optional[str] = None


# Patient actions

@dataclass
class BookSlot(Command):
    order_id: str
    slot_id: str
    patient_id: str
    collection_address: Optional[str] = None


@dataclass
class CancelLabOrder(Command):
    order_id: str
    patient_id: str
    reason: Optional[str] = None


@dataclass
class RescheduleSlot(Command):
    order_id: str
    new_slot_id: str
    patient_id: str


@dataclass
class UploadPatientResults(Command):
    """Patient already has results from an outside lab."""
    order_id: str
    patient_id: str
    file_url: str


# Coordinator and phlebotomist actions

@dataclass
class AssignPhlebotomist(Command):
    order_id: str
    phlebotomist_id: str
    coordinator_id: Optional[str] = None


@dataclass
class MarkSampleCollected(Command):
    order_id: str
    phlebotomist_id: str
    tube_count: int


@dataclass
class MarkPatientUnavailable(Command):
    order_id: str
    phlebotomist_id: str
    reason: str


@dataclass
class MarkRunningLate(Command):
    order_id: str
    phlebotomist_id: str
    estimated_arrival_time: str


@dataclass
class DeliverToLab(Command):
    order_id: str
    phlebotomist_id: str
    lab_id: str


# Lab actions

@dataclass
class MarkSampleReceived(Command):
    order_id: str
    lab_id: str
    received_tube_count: int


@dataclass
class ReportSampleIssue(Command):
    order_id: str
    lab_id: str
    reason: str


@dataclass
class StartProcessing(Command):
    order_id: str
    lab_id: str


@dataclass
class UploadResults(Command):
    order_id: str
    lab_id: str
    result_file_url: str
    abnormal_flags: Dict[str, str]


# Doctor actions

@dataclass
class ReviewResults(Command):
    order_id: str
    doctor_id: str
    review_notes: Optional[str] = None


@dataclass
class CloseLabOrder(Command):
    order_id: str
    doctor_id: str


# SLA metadata

@dataclass
class MarkEscalated(Command):
    order_id: str
    reason: str
    escalated_by: Optional[str] = None


@dataclass
class MarkReminderSent(Command):
    order_id: str
    reminder_type: str
