"""
Lab Order API Entrypoint - Thin API with Command Dispatch.

Every POST maps 1:1 onto a command; every GET delegates to a view.
"""
import config
from datetime import date, datetime, timezone
from typing import Dict, List, Optional
from sqlalchemy import create_engine
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import logging
import uvicorn

from lab_orders import views
from lab_orders.adapters import orm
from lab_orders.domain import commands
from lab_orders.domain.exceptions import LabOrderError
from lab_orders.domain.model import TransitionOptions
from lab_orders.service_layer import messagebus
from lab_orders.service_layer.unit_of_work import AbstractUnitOfWork, SqlAlchemyUnitOfWork
from sla_escalation.service_layer import escalation, sweep

logging.basicConfig(
    level=getattr(logging, config.get_log_level()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Lab Order API",
    description="Lab order lifecycle: booking, collection, processing, review and SLA escalation",
    version="1.0.0"
)


# Initialize database and ORM mappers (Cosmic Python pattern)
@app.on_event("startup")
async def startup_event():
    engine = create_engine(config.get_postgres_uri())
    orm.metadata.create_all(engine)
    orm.start_mappers()
    logger.info("✓ Lab order database initialized")


def get_uow() -> AbstractUnitOfWork:
    return SqlAlchemyUnitOfWork()


@app.exception_handler(LabOrderError)
async def lab_order_error_handler(request: Request, exc: LabOrderError):
    logger.info(f"{request.method} {request.url.path} rejected: {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=exc.http_status,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def dispatch(command: commands.Command, uow: AbstractUnitOfWork):
    [result] = messagebus.handle(command, uow)
    return result


# ---------- Request/Response models ----------

class CreateLabOrderRequest(BaseModel):
    patient_id: str
    doctor_id: str
    test_panel: List[str]
    consultation_id: Optional[str] = None
    panel_name: Optional[str] = None
    doctor_notes: Optional[str] = None
    collection_address: str = ""
    collection_city: str = ""
    collection_postal_code: str = ""
    lab_cost: Optional[int] = None


class OrderIdResponse(BaseModel):
    order_id: str


class TransitionRequest(BaseModel):
    target_status: str
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


class BookSlotRequest(BaseModel):
    patient_id: str
    slot_id: str
    collection_address: Optional[str] = None


class CancelRequest(BaseModel):
    patient_id: str
    reason: Optional[str] = None


class RescheduleRequest(BaseModel):
    patient_id: str
    new_slot_id: str


class PatientResultsRequest(BaseModel):
    patient_id: str
    file_url: str


class AssignPhlebotomistRequest(BaseModel):
    phlebotomist_id: str
    coordinator_id: Optional[str] = None


class CollectRequest(BaseModel):
    phlebotomist_id: str
    tube_count: int


class PatientUnavailableRequest(BaseModel):
    phlebotomist_id: str
    reason: str


class RunningLateRequest(BaseModel):
    phlebotomist_id: str
    estimated_arrival_time: str


class DeliverRequest(BaseModel):
    phlebotomist_id: str
    lab_id: str


class ReceiveRequest(BaseModel):
    lab_id: str
    received_tube_count: int


class SampleIssueRequest(BaseModel):
    lab_id: str
    reason: str


class LabActionRequest(BaseModel):
    lab_id: str


class ResultsRequest(BaseModel):
    lab_id: str
    result_file_url: str
    abnormal_flags: Dict[str, str]


class ReviewRequest(BaseModel):
    doctor_id: str
    review_notes: Optional[str] = None


class CloseRequest(BaseModel):
    doctor_id: str


class CreateSlotRequest(BaseModel):
    slot_date: date
    start_time: str
    end_time: str
    city: str
    serviceable_areas: List[str] = Field(default_factory=list)
    max_bookings: int = 5
    phlebotomist_id: Optional[str] = None


class RegisterPhlebotomistRequest(BaseModel):
    name: str
    phone: str
    serviceable_areas: List[str] = Field(default_factory=list)
    is_active: bool = True


class RegisterLabRequest(BaseModel):
    name: str
    city: str
    is_active: bool = True


# ---------- Endpoints ----------

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "lab-order-api",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.post("/api/v1/lab-orders", response_model=OrderIdResponse, status_code=201)
def create_lab_order(body: CreateLabOrderRequest, uow: AbstractUnitOfWork = Depends(get_uow)):
    order_id = dispatch(commands.CreateLabOrder(**body.model_dump()), uow)
    return {"order_id": order_id}


@app.post("/api/v1/lab-orders/expire")
def expire_stale_orders(uow: AbstractUnitOfWork = Depends(get_uow)):
    expired = dispatch(commands.ExpireStaleOrders(), uow)
    return {"expired": expired, "count": len(expired)}


@app.get("/api/v1/lab-orders/{order_id}")
def get_lab_order(order_id: str, uow: AbstractUnitOfWork = Depends(get_uow)):
    return views.get_lab_order(order_id, uow)


@app.get("/api/v1/lab-orders/{order_id}/history")
def get_status_history(order_id: str, uow: AbstractUnitOfWork = Depends(get_uow)):
    return views.get_status_history(order_id, uow)


@app.get("/api/v1/lab-orders/{order_id}/recollections")
def get_recollections(order_id: str, uow: AbstractUnitOfWork = Depends(get_uow)):
    return views.recollections_of(order_id, uow)


@app.post("/api/v1/lab-orders/{order_id}/transition", response_model=OrderIdResponse)
def transition_lab_order(order_id: str, body: TransitionRequest, uow: AbstractUnitOfWork = Depends(get_uow)):
    options = TransitionOptions(**body.model_dump(exclude={"target_status"}))
    result_id = dispatch(commands.TransitionLabOrder(order_id, body.target_status, options), uow)
    return {"order_id": result_id}


# Patient actions

@app.post("/api/v1/lab-orders/{order_id}/book-slot", response_model=OrderIdResponse)
def book_slot(order_id: str, body: BookSlotRequest, uow: AbstractUnitOfWork = Depends(get_uow)):
    return {"order_id": dispatch(commands.BookSlot(order_id=order_id, **body.model_dump()), uow)}


@app.post("/api/v1/lab-orders/{order_id}/cancel", response_model=OrderIdResponse)
def cancel_lab_order(order_id: str, body: CancelRequest, uow: AbstractUnitOfWork = Depends(get_uow)):
    return {"order_id": dispatch(commands.CancelLabOrder(order_id=order_id, **body.model_dump()), uow)}


@app.post("/api/v1/lab-orders/{order_id}/reschedule", response_model=OrderIdResponse)
def reschedule_slot(order_id: str, body: RescheduleRequest, uow: AbstractUnitOfWork = Depends(get_uow)):
    return {"order_id": dispatch(commands.RescheduleSlot(order_id=order_id, **body.model_dump()), uow)}


@app.post("/api/v1/lab-orders/{order_id}/patient-results", response_model=OrderIdResponse)
def upload_patient_results(order_id: str, body: PatientResultsRequest, uow: AbstractUnitOfWork = Depends(get_uow)):
    return {"order_id": dispatch(commands.UploadPatientResults(order_id=order_id, **body.model_dump()), uow)}


# Coordinator and phlebotomist actions

@app.post("/api/v1/lab-orders/{order_id}/assign-phlebotomist", response_model=OrderIdResponse)
def assign_phlebotomist(order_id: str, body: AssignPhlebotomistRequest, uow: AbstractUnitOfWork = Depends(get_uow)):
    return {"order_id": dispatch(commands.AssignPhlebotomist(order_id=order_id, **body.model_dump()), uow)}


@app.post("/api/v1/lab-orders/{order_id}/collect", response_model=OrderIdResponse)
def mark_sample_collected(order_id: str, body: CollectRequest, uow: AbstractUnitOfWork = Depends(get_uow)):
    return {"order_id": dispatch(commands.MarkSampleCollected(order_id=order_id, **body.model_dump()), uow)}


@app.post("/api/v1/lab-orders/{order_id}/patient-unavailable", response_model=OrderIdResponse)
def mark_patient_unavailable(order_id: str, body: PatientUnavailableRequest, uow: AbstractUnitOfWork = Depends(get_uow)):
    return {"order_id": dispatch(commands.MarkPatientUnavailable(order_id=order_id, **body.model_dump()), uow)}


@app.post("/api/v1/lab-orders/{order_id}/running-late", response_model=OrderIdResponse)
def mark_running_late(order_id: str, body: RunningLateRequest, uow: AbstractUnitOfWork = Depends(get_uow)):
    return {"order_id": dispatch(commands.MarkRunningLate(order_id=order_id, **body.model_dump()), uow)}


@app.post("/api/v1/lab-orders/{order_id}/deliver", response_model=OrderIdResponse)
def deliver_to_lab(order_id: str, body: DeliverRequest, uow: AbstractUnitOfWork = Depends(get_uow)):
    return {"order_id": dispatch(commands.DeliverToLab(order_id=order_id, **body.model_dump()), uow)}


# Lab actions

@app.post("/api/v1/lab-orders/{order_id}/receive", response_model=OrderIdResponse)
def mark_sample_received(order_id: str, body: ReceiveRequest, uow: AbstractUnitOfWork = Depends(get_uow)):
    return {"order_id": dispatch(commands.MarkSampleReceived(order_id=order_id, **body.model_dump()), uow)}


@app.post("/api/v1/lab-orders/{order_id}/sample-issue")
def report_sample_issue(order_id: str, body: SampleIssueRequest, uow: AbstractUnitOfWork = Depends(get_uow)):
    recollection_id = dispatch(commands.ReportSampleIssue(order_id=order_id, **body.model_dump()), uow)
    return {"order_id": order_id, "recollection_order_id": recollection_id}


@app.post("/api/v1/lab-orders/{order_id}/start-processing", response_model=OrderIdResponse)
def start_processing(order_id: str, body: LabActionRequest, uow: AbstractUnitOfWork = Depends(get_uow)):
    return {"order_id": dispatch(commands.StartProcessing(order_id=order_id, **body.model_dump()), uow)}


@app.post("/api/v1/lab-orders/{order_id}/results", response_model=OrderIdResponse)
def upload_results(order_id: str, body: ResultsRequest, uow: AbstractUnitOfWork = Depends(get_uow)):
    return {"order_id": dispatch(commands.UploadResults(order_id=order_id, **body.model_dump()), uow)}


# Doctor actions

@app.post("/api/v1/lab-orders/{order_id}/review", response_model=OrderIdResponse)
def review_results(order_id: str, body: ReviewRequest, uow: AbstractUnitOfWork = Depends(get_uow)):
    return {"order_id": dispatch(commands.ReviewResults(order_id=order_id, **body.model_dump()), uow)}


@app.post("/api/v1/lab-orders/{order_id}/close", response_model=OrderIdResponse)
def close_lab_order(order_id: str, body: CloseRequest, uow: AbstractUnitOfWork = Depends(get_uow)):
    return {"order_id": dispatch(commands.CloseLabOrder(order_id=order_id, **body.model_dump()), uow)}


# Actor-scoped lists

@app.get("/api/v1/patients/{patient_id}/lab-orders")
def list_patient_orders(patient_id: str, status: Optional[str] = None, uow: AbstractUnitOfWork = Depends(get_uow)):
    return views.list_patient_orders(patient_id, uow, status)


@app.get("/api/v1/doctors/{doctor_id}/lab-orders")
def list_doctor_orders(doctor_id: str, status: Optional[str] = None, uow: AbstractUnitOfWork = Depends(get_uow)):
    return views.list_doctor_orders(doctor_id, uow, status)


@app.get("/api/v1/doctors/{doctor_id}/pending-reviews")
def get_pending_reviews(doctor_id: str, uow: AbstractUnitOfWork = Depends(get_uow)):
    return views.get_pending_reviews(doctor_id, uow)


@app.get("/api/v1/labs/{lab_id}/pending")
def get_lab_pending_orders(lab_id: str, uow: AbstractUnitOfWork = Depends(get_uow)):
    return views.get_lab_pending_orders(lab_id, uow)


@app.get("/api/v1/phlebotomists/{phlebotomist_id}/today")
def get_todays_assignments(phlebotomist_id: str, uow: AbstractUnitOfWork = Depends(get_uow)):
    return views.get_todays_assignments(phlebotomist_id, uow)


# Slots, phlebotomists, labs

@app.post("/api/v1/slots", status_code=201)
def create_slot(body: CreateSlotRequest, uow: AbstractUnitOfWork = Depends(get_uow)):
    return {"slot_id": dispatch(commands.CreateSlot(**body.model_dump()), uow)}


@app.get("/api/v1/slots/available")
def find_available_slots(
    city: str,
    postal_code: str,
    start_date: date,
    end_date: date,
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return views.find_available_slots(city, postal_code, start_date, end_date, uow)


@app.post("/api/v1/phlebotomists", status_code=201)
def register_phlebotomist(body: RegisterPhlebotomistRequest, uow: AbstractUnitOfWork = Depends(get_uow)):
    return {"phlebotomist_id": dispatch(commands.RegisterPhlebotomist(**body.model_dump()), uow)}


@app.get("/api/v1/phlebotomists/available")
def get_available_phlebotomists(postal_code: str, uow: AbstractUnitOfWork = Depends(get_uow)):
    return views.get_available_phlebotomists(postal_code, uow)


@app.post("/api/v1/labs", status_code=201)
def register_lab(body: RegisterLabRequest, uow: AbstractUnitOfWork = Depends(get_uow)):
    return {"lab_id": dispatch(commands.RegisterDiagnosticCentre(**body.model_dump()), uow)}


# SLA reports

@app.get("/api/v1/sla/breaches")
def get_all_breaches(uow: AbstractUnitOfWork = Depends(get_uow)):
    return {
        breach_type.value: [breach.to_dict() for breach in breaches]
        for breach_type, breaches in escalation.get_all_breaches(uow).items()
    }


@app.get("/api/v1/sla/summary")
def get_breach_summary(uow: AbstractUnitOfWork = Depends(get_uow)):
    return escalation.get_breach_summary(uow)


@app.get("/api/v1/sla/lab-orders/{order_id}")
def check_order_sla_status(order_id: str, uow: AbstractUnitOfWork = Depends(get_uow)):
    return escalation.check_order_sla_status(order_id, uow)


@app.post("/api/v1/sla/sweep")
def run_sla_sweep(uow: AbstractUnitOfWork = Depends(get_uow)):
    return sweep.run_sla_sweep(uow)


def main():
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
