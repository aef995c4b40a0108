"""Collection slots: a bounded booking counter per time window."""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import List, Optional

from lab_orders.domain.exceptions import AreaNotServiceable, SlotFull

DEFAULT_MAX_BOOKINGS = 5


@dataclass(eq=False)
class Slot:
    id: str
    slot_date: date
    start_time: str  # 'HH:MM'
    end_time: str
    city: str
    serviceable_areas: List[str] = field(default_factory=list)
    max_bookings: int = DEFAULT_MAX_BOOKINGS
    current_bookings: int = 0
    phlebotomist_id: Optional[str] = None
    version_number: int = 0

    def __post_init__(self):
        if time.fromisoformat(self.end_time) <= time.fromisoformat(self.start_time):
            raise ValueError(f"Slot end time {self.end_time} must be after start time {self.start_time}")
        if self.max_bookings < 1:
            raise ValueError("Slot must allow at least one booking")

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.slot_date, time.fromisoformat(self.start_time), tzinfo=timezone.utc)

    @property
    def time_window(self) -> str:
        return f"{self.start_time}-{self.end_time}"

    @property
    def is_full(self) -> bool:
        return self.current_bookings >= self.max_bookings

    @property
    def remaining(self) -> int:
        return max(0, self.max_bookings - self.current_bookings)

    def serves(self, postal_code: str) -> bool:
        return postal_code in (self.serviceable_areas or [])

    def book(self, postal_code: str) -> None:
        """Take one unit of capacity. Area is checked before capacity."""
        if not self.serves(postal_code):
            raise AreaNotServiceable(f"Slot {self.id} does not serve postal code {postal_code}")
        if self.is_full:
            raise SlotFull(f"Slot {self.id} is fully booked")
        self.current_bookings += 1
        self.version_number += 1

    def release(self) -> None:
        # Never goes below zero, even on a double release.
        self.current_bookings = max(0, self.current_bookings - 1)
        self.version_number += 1
