"""Unit tests for diagnostic centre and doctor actions"""
import pytest

from lab_orders.domain import commands, events
from lab_orders.domain.exceptions import Forbidden, InvalidTransition
from lab_orders.domain.model import LabOrderStatus


class TestSampleReceipt:
    @pytest.mark.parametrize("received,mismatch", [(2, True), (3, False)])
    def test_received_tube_count(self, driver, received, mismatch):
        order_id = driver.advance(driver.order(), LabOrderStatus.DELIVERED_TO_LAB)

        driver.receive(order_id, received_tube_count=received)

        order = driver.get(order_id)
        assert order.status == LabOrderStatus.SAMPLE_RECEIVED
        assert order.received_tube_count == received
        assert order.tube_count_mismatch is mismatch

    def test_only_the_receiving_lab(self, driver):
        order_id = driver.advance(driver.order(), LabOrderStatus.DELIVERED_TO_LAB)
        with pytest.raises(Forbidden):
            driver.handle(commands.MarkSampleReceived(order_id, "lab-2", 3))


class TestSampleIssue:
    @pytest.mark.parametrize("status", [LabOrderStatus.DELIVERED_TO_LAB, LabOrderStatus.SAMPLE_RECEIVED])
    def test_spawns_exactly_one_recollection(self, driver, notifications, status):
        order_id = driver.advance(driver.order(), status)

        recollection_id = driver.handle(commands.ReportSampleIssue(order_id, driver.lab_id, "haemolysed"))

        original = driver.get(order_id)
        recollection = driver.get(recollection_id)
        assert original.status == LabOrderStatus.SAMPLE_ISSUE
        assert original.sample_issue_reason == "haemolysed"
        assert recollection.status == LabOrderStatus.ORDERED
        assert recollection.test_panel == original.test_panel
        assert recollection.parent_lab_order_id == order_id
        assert recollection.is_free_recollection is True
        assert recollection.patient_charge == 0

        spawned = [o for o in driver.uow.stores["orders"].values() if o.parent_lab_order_id == order_id]
        assert len(spawned) == 1

        published = [event for topic, event in notifications.published if topic == "recollections"]
        assert len(published) == 1
        assert isinstance(published[0], events.RecollectionOrdered)

    def test_retry_fails_without_second_recollection(self, driver):
        order_id = driver.advance(driver.order(), LabOrderStatus.SAMPLE_RECEIVED)
        driver.handle(commands.ReportSampleIssue(order_id, driver.lab_id, "clotted"))

        with pytest.raises(InvalidTransition):
            driver.handle(commands.ReportSampleIssue(order_id, driver.lab_id, "clotted"))

        spawned = [o for o in driver.uow.stores["orders"].values() if o.parent_lab_order_id == order_id]
        assert len(spawned) == 1

    def test_reason_is_required(self, driver):
        order_id = driver.advance(driver.order(), LabOrderStatus.SAMPLE_RECEIVED)
        with pytest.raises(InvalidTransition):
            driver.handle(commands.ReportSampleIssue(order_id, driver.lab_id, " "))

    def test_not_once_processing(self, driver):
        order_id = driver.advance(driver.order(), LabOrderStatus.PROCESSING)
        with pytest.raises(InvalidTransition):
            driver.handle(commands.ReportSampleIssue(order_id, driver.lab_id, "clotted"))


class TestResults:
    def test_upload_results(self, driver):
        order_id = driver.advance(driver.order(), LabOrderStatus.PROCESSING)

        driver.results(order_id, {"HB": "NORMAL", "WBC": "ABNORMAL"})

        order = driver.get(order_id)
        assert order.status == LabOrderStatus.RESULTS_READY
        assert order.result_file_url == "https://files.example/results.pdf"
        assert order.abnormal_flags == {"HB": "NORMAL", "WBC": "ABNORMAL"}
        assert order.critical_values is False

    def test_critical_results_notify(self, driver, notifications):
        order_id = driver.advance(driver.order(), LabOrderStatus.PROCESSING)

        driver.results(order_id, {"K": "CRITICAL"})

        assert driver.get(order_id).critical_values is True
        assert "critical-values" in notifications.topics()

    def test_flags_are_required(self, driver):
        order_id = driver.advance(driver.order(), LabOrderStatus.PROCESSING)
        with pytest.raises(InvalidTransition):
            driver.handle(commands.UploadResults(order_id, driver.lab_id, "https://files.example/r.pdf", {}))

    def test_unknown_flag_value(self, driver):
        order_id = driver.advance(driver.order(), LabOrderStatus.PROCESSING)
        with pytest.raises(InvalidTransition):
            driver.handle(commands.UploadResults(order_id, driver.lab_id, "https://files.example/r.pdf", {"HB": "LOW"}))
        assert driver.get(order_id).status == LabOrderStatus.PROCESSING

    def test_processing_needs_received_sample(self, driver):
        order_id = driver.advance(driver.order(), LabOrderStatus.DELIVERED_TO_LAB)
        with pytest.raises(InvalidTransition):
            driver.process(order_id)


class TestDoctorReview:
    def test_full_flow_to_closed(self, driver):
        order_id = driver.advance(driver.order(), LabOrderStatus.CLOSED)

        order = driver.get(order_id)
        assert order.status == LabOrderStatus.CLOSED
        assert order.doctor_review_notes == "looks fine"
        assert all(value is not None for name, value in order.timestamps().items()
                   if name in ("ordered_at", "slot_booked_at", "sample_collected_at",
                               "delivered_to_lab_at", "sample_received_at", "processing_started_at",
                               "results_uploaded_at", "doctor_reviewed_at", "closed_at"))

    def test_review_patient_upload(self, driver):
        order_id = driver.order()
        driver.handle(commands.UploadPatientResults(order_id, driver.PATIENT, "https://files.example/mine.pdf"))

        driver.review(order_id)

        assert driver.get(order_id).status == LabOrderStatus.DOCTOR_REVIEWED

    def test_other_doctor_cannot_review(self, driver):
        order_id = driver.advance(driver.order(), LabOrderStatus.RESULTS_READY)
        with pytest.raises(Forbidden):
            driver.handle(commands.ReviewResults(order_id, "doctor-2"))
        assert driver.get(order_id).status == LabOrderStatus.RESULTS_READY

    def test_other_doctor_cannot_close(self, driver):
        order_id = driver.advance(driver.order(), LabOrderStatus.DOCTOR_REVIEWED)
        with pytest.raises(Forbidden):
            driver.handle(commands.CloseLabOrder(order_id, "doctor-2"))

    def test_close_needs_review(self, driver):
        order_id = driver.advance(driver.order(), LabOrderStatus.RESULTS_READY)
        with pytest.raises(InvalidTransition):
            driver.close(order_id)
