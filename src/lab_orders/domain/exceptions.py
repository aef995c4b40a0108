"""Errors raised by the lab order core.

All of them are surfaced synchronously to the caller. The HTTP entrypoint maps
them onto status codes via ``http_status``.
"""


class LabOrderError(Exception):
    """Base class for lab order errors."""
    http_status = 400


class NotFound(LabOrderError):
    """Unknown order, slot, phlebotomist or lab id."""
    http_status = 404


class Forbidden(LabOrderError):
    """Calling actor is not the actor assigned to the order."""
    http_status = 403


class InvalidTransition(LabOrderError):
    """Target status not legal from the current one, or a precondition failed."""
    http_status = 409


# Façade callers talk about "invalid state"; it is the same failure.
InvalidState = InvalidTransition


class SlotFull(LabOrderError):
    """Slot already holds max_bookings orders."""
    http_status = 409


class AreaNotServiceable(LabOrderError):
    """Collection postal code is outside the slot's (or phlebotomist's) area."""
    http_status = 422


class CutoffExceeded(LabOrderError):
    """Cancel or reschedule requested inside the cutoff window."""
    http_status = 409
