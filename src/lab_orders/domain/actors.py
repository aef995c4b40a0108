"""Phlebotomists and diagnostic centres, the parties acting on an order."""

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass(eq=False)
class Phlebotomist:
    id: str
    name: str
    phone: str
    serviceable_areas: List[str] = field(default_factory=list)
    is_active: bool = True
    completed_collections: int = 0
    failed_collections: int = 0
    rating: Optional[float] = None

    def serves(self, postal_code: str) -> bool:
        return postal_code in (self.serviceable_areas or [])

    def record_collection(self) -> None:
        self.completed_collections = (self.completed_collections or 0) + 1

    def record_failed_collection(self) -> None:
        self.failed_collections = (self.failed_collections or 0) + 1


@dataclass(eq=False)
class DiagnosticCentre:
    id: str
    name: str
    city: str
    is_active: bool = True
