import logging

from fastapi import APIRouter, Depends, Path

from ..exceptions import NotFoundError
from ..models import RescheduleResult, TechnicianPrediction
from ..scheduler import SchedulingEngine
from .deps import get_api_key, get_engine
from .models import (
    ConflictCheckRequest, ConflictCheckResponse, ConflictSummary, OptimizeRequest, OptimizeResponse,
    RescheduleRequest, SuggestionsMetadata, SuggestionsRequest, SuggestionsResponse,
    TechnicianPredictionRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scheduling", dependencies=[Depends(get_api_key)])


@router.post("/suggestions", response_model=SuggestionsResponse)
async def create_suggestions(
    request: SuggestionsRequest,
    engine: SchedulingEngine = Depends(get_engine),
):
    """
    Suggest appointment slots and technicians for a customer.

    Returns up to ten suggestions ordered by confidence.
    """
    customer = await engine.store.get_customer(engine.organization_id, request.customer_id)
    if customer is None:
        raise NotFoundError("customer", request.customer_id)

    suggestions = await engine.find_optimal_slots(
        request.customer_id,
        request.duration,
        request.service_type,
        request.preferred_dates,
        urgency=request.urgency,
        location=request.location,
    )
    return SuggestionsResponse(
        suggestions=suggestions,
        metadata=SuggestionsMetadata(
            customer_id=customer.id,
            customer_name=customer.name,
            duration=request.duration,
            service_type=request.service_type,
            urgency=request.urgency,
            requested_dates=len(request.preferred_dates),
        ),
    )


@router.post("/optimize", response_model=OptimizeResponse)
async def optimize_schedule(
    request: OptimizeRequest,
    engine: SchedulingEngine = Depends(get_engine),
):
    """
    Propose a lower-travel arrangement of a day's appointments.

    With auto_apply, the proposed start times are written back.
    """
    result = await engine.optimize_schedule(request.date, auto_apply=request.auto_apply)
    return OptimizeResponse(optimization=result, applied=result.applied)


@router.post("/conflicts", response_model=ConflictCheckResponse)
async def check_conflicts(
    request: ConflictCheckRequest,
    engine: SchedulingEngine = Depends(get_engine),
):
    """Check a technician's calendar for conflicts with a proposed window."""
    report = await engine.check_conflicts(
        request.technician_id,
        request.start_time,
        request.end_time,
        exclude_appointment_id=request.exclude_appointment_id,
        location=request.location,
    )
    return ConflictCheckResponse(
        has_conflicts=report.has_conflicts,
        can_schedule=report.can_schedule,
        needs_attention=report.needs_attention,
        conflicts=report.conflicts,
        summary=ConflictSummary(total=report.total, high=report.high, medium=report.medium, low=report.low),
        recommendation=report.recommendation,
    )


@router.post("/technicians/predict", response_model=TechnicianPrediction)
async def predict_technician(
    request: TechnicianPredictionRequest,
    engine: SchedulingEngine = Depends(get_engine),
):
    """Pick the best technician for a fixed appointment time."""
    return await engine.predict_optimal_technician(
        request.customer_id,
        request.service_type,
        request.appointment_time,
        location=request.location,
        duration=request.duration,
    )


@router.post("/appointments/{appointment_id}/reschedule", response_model=RescheduleResult)
async def reschedule_appointment(
    request: RescheduleRequest,
    appointment_id: str = Path(..., description="The ID of the appointment to move"),
    engine: SchedulingEngine = Depends(get_engine),
):
    """
    Move an appointment to the best alternative slot.

    Logical failures come back as success=false with a message.
    """
    result = await engine.auto_reschedule(appointment_id, request.reason)
    if not result.success:
        logger.info("Reschedule of appointment %s declined: %s", appointment_id, result.message)
    return result
