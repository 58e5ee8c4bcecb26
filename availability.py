"""
Slot availability

A slot is a (dateDebut, heurePreferee) pair. Both values are compared as
opaque strings: "9:00" and "09:00" are different slots.

Availability is a plain read. create_registration_if_available reads then
inserts with nothing in between, so two callers racing on the same free slot
can both get in. There is no unique index on the slot either.
"""

import logging
import uuid
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel

from database import now_utc

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("pending", "confirmed")

DEFAULT_STANDARD_SLOTS = ["09:00", "10:00", "11:00", "14:00", "15:00", "16:00", "17:00"]


class AvailabilityResult(BaseModel):
    available: bool
    conflictCount: int
    date: str
    time: str


class SlotStatus(BaseModel):
    time: str
    available: bool
    conflictCount: int


class MissingSlotField(ValueError):
    """A required slot field was absent or empty."""

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"Field '{field}' is required")


class SlotConflict(Exception):
    """The requested slot already holds pending or confirmed registrations."""

    def __init__(self, date: str, time: str, conflict_count: int, suggestion: str):
        self.date = date
        self.time = time
        self.conflict_count = conflict_count
        self.suggestion = suggestion
        super().__init__(f"Slot {date} {time} already has {conflict_count} booking(s)")


def _require(**fields: Optional[str]) -> None:
    for name, value in fields.items():
        if not value:
            raise MissingSlotField(name)


def new_registration_id() -> str:
    return f"reg_{uuid.uuid4().hex[:12]}"


def check_availability(registrations, date: str, time: str) -> AvailabilityResult:
    _require(date=date, time=time)
    count = registrations.count_documents({
        "dateDebut": date,
        "heurePreferee": time,
        "status": {"$in": list(ACTIVE_STATUSES)},
    })
    return AvailabilityResult(available=count == 0, conflictCount=count, date=date, time=time)


def list_available_slots(registrations, date: str, standard_slots: Sequence[str]) -> List[SlotStatus]:
    _require(date=date)
    booked = Counter(
        doc.get("heurePreferee")
        for doc in registrations.find(
            {"dateDebut": date, "status": {"$in": list(ACTIVE_STATUSES)}},
            {"heurePreferee": 1},
        )
    )
    return [
        SlotStatus(time=label, available=booked[label] == 0, conflictCount=booked[label])
        for label in standard_slots
    ]


def suggest_alternatives(registrations, date: str, time: str, standard_slots: Sequence[str]) -> str:
    free = [s.time for s in list_available_slots(registrations, date, standard_slots) if s.available and s.time != time]
    if free:
        return f"Slot {time} on {date} is taken. Free slots that day: {', '.join(free)}"
    return f"Slot {time} on {date} is taken and no other slot is free that day. Please pick another date."


def create_registration_if_available(
    registrations,
    registration: Dict[str, Any],
    standard_slots: Optional[Sequence[str]] = None,
) -> str:
    """Insert a pending registration unless its slot is already occupied.

    Raises MissingSlotField when dateDebut or heurePreferee is empty and
    SlotConflict when the pre-check finds active bookings. Store errors are
    left to propagate.
    """
    date = registration.get("dateDebut")
    time = registration.get("heurePreferee")
    result = check_availability(registrations, date, time)

    if not result.available:
        suggestion = suggest_alternatives(
            registrations, date, time,
            standard_slots if standard_slots is not None else DEFAULT_STANDARD_SLOTS,
        )
        logger.info(f"Slot conflict for {date} {time} ({result.conflictCount} existing)")
        raise SlotConflict(date, time, result.conflictCount, suggestion)

    registration_id = new_registration_id()
    doc = {
        **registration,
        "_id": registration_id,
        "status": "pending",
        "createdAt": now_utc(),
    }
    registrations.insert_one(doc)
    logger.info(f"New registration {registration_id} for {date} {time}")
    return registration_id
