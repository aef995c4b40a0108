"""Unit tests for patient actions: booking, cancelling, rescheduling, self-upload"""
import pytest

from lab_orders.domain import commands
from lab_orders.domain.exceptions import (
    AreaNotServiceable,
    CutoffExceeded,
    Forbidden,
    InvalidTransition,
    NotFound,
    SlotFull,
)
from lab_orders.domain.model import LabOrderStatus


class TestBookSlot:
    def test_booking_stamps_slot_time(self, driver):
        order_id = driver.order()
        slot_id = driver.slot(hours_ahead=24)

        driver.handle(commands.BookSlot(order_id, slot_id, driver.PATIENT))

        order = driver.get(order_id)
        slot = driver.get_slot(slot_id)
        assert order.status == LabOrderStatus.SLOT_BOOKED
        assert order.booked_date == slot.starts_at
        assert order.slot_booked_at == driver.uow.clock()
        assert slot.current_bookings == 1

    def test_address_override(self, driver):
        order_id = driver.order()
        slot_id = driver.slot()

        driver.handle(commands.BookSlot(order_id, slot_id, driver.PATIENT, collection_address=" 7 Brigade Road "))

        assert driver.get(order_id).collection_address == "7 Brigade Road"

    def test_other_patient_is_forbidden(self, driver):
        order_id = driver.order()
        slot_id = driver.slot()

        with pytest.raises(Forbidden):
            driver.handle(commands.BookSlot(order_id, slot_id, "patient-2"))
        assert driver.get_slot(slot_id).current_bookings == 0

    def test_full_slot(self, driver):
        slot_id = driver.slot(max_bookings=1)
        driver.handle(commands.BookSlot(driver.order(), slot_id, driver.PATIENT))
        late = driver.order()

        with pytest.raises(SlotFull):
            driver.handle(commands.BookSlot(late, slot_id, driver.PATIENT))

        assert driver.get(late).status == LabOrderStatus.ORDERED
        assert driver.get_slot(slot_id).current_bookings == 1

    def test_slot_must_serve_postal_code(self, driver):
        order_id = driver.order()
        slot_id = driver.slot(serviceable_areas=["110001"])

        with pytest.raises(AreaNotServiceable):
            driver.handle(commands.BookSlot(order_id, slot_id, driver.PATIENT))
        assert driver.get(order_id).status == LabOrderStatus.ORDERED

    def test_unknown_slot(self, driver):
        order_id = driver.order()
        with pytest.raises(NotFound):
            driver.handle(commands.BookSlot(order_id, "missing", driver.PATIENT))

    def test_already_booked_order_cannot_book_again(self, driver):
        order_id = driver.order()
        driver.book(order_id)
        other_slot = driver.slot(hours_ahead=48)

        with pytest.raises(InvalidTransition):
            driver.handle(commands.BookSlot(order_id, other_slot, driver.PATIENT))
        assert driver.get_slot(other_slot).current_bookings == 0

    def test_rebook_after_failed_collection(self, driver, clock):
        """The failed slot stays taken; the new one is booked and the phlebotomist cleared."""
        order_id = driver.order()
        first_slot = driver.book(order_id)
        driver.assign(order_id)
        driver.handle(commands.MarkPatientUnavailable(order_id, driver.phlebotomist_id, "door locked"))

        clock.advance(hours=2)
        second_slot = driver.slot(hours_ahead=48)
        driver.handle(commands.BookSlot(order_id, second_slot, driver.PATIENT))

        order = driver.get(order_id)
        assert order.status == LabOrderStatus.SLOT_BOOKED
        assert order.slot_id == second_slot
        assert order.phlebotomist_id is None
        assert order.phlebotomist_assigned_at is None
        assert order.entered_at(LabOrderStatus.SLOT_BOOKED) == clock()
        assert driver.get_slot(first_slot).current_bookings == 1
        assert driver.get_slot(second_slot).current_bookings == 1


class TestCancelLabOrder:
    def test_cancel_ordered(self, driver):
        order_id = driver.order()
        driver.handle(commands.CancelLabOrder(order_id, driver.PATIENT, "not needed"))
        assert driver.get(order_id).status == LabOrderStatus.CANCELLED

    def test_cancel_slot_booked_releases_slot(self, driver):
        order_id = driver.order()
        slot_id = driver.book(order_id, hours_ahead=1)

        driver.handle(commands.CancelLabOrder(order_id, driver.PATIENT))

        assert driver.get(order_id).slot_id is None
        assert driver.get_slot(slot_id).current_bookings == 0

    def test_cannot_cancel_after_collection(self, driver):
        order_id = driver.advance(driver.order(), LabOrderStatus.SAMPLE_COLLECTED)
        with pytest.raises(InvalidTransition):
            driver.handle(commands.CancelLabOrder(order_id, driver.PATIENT))

    def test_other_patient_is_forbidden(self, driver):
        order_id = driver.order()
        with pytest.raises(Forbidden):
            driver.handle(commands.CancelLabOrder(order_id, "patient-2"))
        assert driver.get(order_id).status == LabOrderStatus.ORDERED


class TestRescheduleSlot:
    def test_moves_booking_between_slots(self, driver):
        order_id = driver.order()
        old_slot = driver.book(order_id, hours_ahead=24)
        driver.assign(order_id)
        new_slot = driver.slot(hours_ahead=48)

        driver.handle(commands.RescheduleSlot(order_id, new_slot, driver.PATIENT))

        order = driver.get(order_id)
        assert order.status == LabOrderStatus.SLOT_BOOKED
        assert order.slot_id == new_slot
        assert order.booked_date == driver.get_slot(new_slot).starts_at
        assert order.phlebotomist_id is None
        assert driver.get_slot(old_slot).current_bookings == 0
        assert driver.get_slot(new_slot).current_bookings == 1

    def test_inside_cutoff_is_refused(self, driver):
        order_id = driver.order()
        old_slot = driver.book(order_id, hours_ahead=3)
        new_slot = driver.slot(hours_ahead=48)

        with pytest.raises(CutoffExceeded):
            driver.handle(commands.RescheduleSlot(order_id, new_slot, driver.PATIENT))

        assert driver.get(order_id).slot_id == old_slot
        assert driver.get_slot(old_slot).current_bookings == 1
        assert driver.get_slot(new_slot).current_bookings == 0

    def test_full_target_slot_changes_nothing(self, driver):
        order_id = driver.order()
        old_slot = driver.book(order_id, hours_ahead=24)
        new_slot = driver.slot(hours_ahead=48, max_bookings=1)
        driver.handle(commands.BookSlot(driver.order(), new_slot, driver.PATIENT))

        with pytest.raises(SlotFull):
            driver.handle(commands.RescheduleSlot(order_id, new_slot, driver.PATIENT))

        assert driver.get(order_id).slot_id == old_slot
        assert driver.get_slot(old_slot).current_bookings == 1

    def test_same_slot_is_rejected(self, driver):
        order_id = driver.order()
        slot_id = driver.book(order_id)
        with pytest.raises(InvalidTransition):
            driver.handle(commands.RescheduleSlot(order_id, slot_id, driver.PATIENT))

    def test_unknown_slot(self, driver):
        order_id = driver.order()
        driver.book(order_id)
        with pytest.raises(NotFound):
            driver.handle(commands.RescheduleSlot(order_id, "missing", driver.PATIENT))

    def test_unbooked_order_cannot_reschedule(self, driver):
        order_id = driver.order()
        new_slot = driver.slot()
        with pytest.raises(InvalidTransition):
            driver.handle(commands.RescheduleSlot(order_id, new_slot, driver.PATIENT))


class TestUploadPatientResults:
    def test_patient_upload_skips_collection(self, driver):
        order_id = driver.order()

        driver.handle(commands.UploadPatientResults(order_id, driver.PATIENT, "https://files.example/mine.pdf"))

        order = driver.get(order_id)
        assert order.status == LabOrderStatus.RESULTS_UPLOADED
        assert order.patient_uploaded_results is True
        assert order.results_uploaded_at == driver.uow.clock()

    def test_blank_url_is_rejected(self, driver):
        order_id = driver.order()
        with pytest.raises(InvalidTransition):
            driver.handle(commands.UploadPatientResults(order_id, driver.PATIENT, "  "))

    def test_only_from_ordered(self, driver):
        order_id = driver.order()
        driver.book(order_id)
        with pytest.raises(InvalidTransition):
            driver.handle(commands.UploadPatientResults(order_id, driver.PATIENT, "https://files.example/mine.pdf"))
