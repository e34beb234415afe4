from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..models import (
    AppointmentSuggestion, Conflict, Location, OptimizationResult, Urgency,
)


class _RequestModel(BaseModel):
    """Accepts both snake_case and the CRM's camelCase field names."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- API Request Models ---

class SuggestionsRequest(_RequestModel):
    """Request body for slot suggestions."""
    customer_id: str = Field(min_length=1)
    duration: int = Field(ge=15, le=480, description="Minutes, between 15 minutes and 8 hours")
    service_type: str = Field(min_length=1)
    preferred_dates: List[datetime] = Field(min_length=1, max_length=7)
    urgency: Urgency = Urgency.NORMAL
    location: Optional[Location] = None

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "customer_id": "cust-1",
                "duration": 90,
                "service_type": "hvac_repair",
                "preferred_dates": ["2024-03-04T00:00:00Z", "2024-03-05T00:00:00Z"],
                "urgency": "normal",
            }
        },
    )


class OptimizeRequest(_RequestModel):
    """Request body for daily schedule optimization."""
    date: datetime
    auto_apply: bool = False


class ConflictCheckRequest(_RequestModel):
    """Request body for a technician conflict check."""
    technician_id: str = Field(min_length=1)
    start_time: datetime
    end_time: datetime
    exclude_appointment_id: Optional[str] = None
    location: Optional[Location] = None


class TechnicianPredictionRequest(_RequestModel):
    customer_id: str = Field(min_length=1)
    service_type: str = Field(min_length=1)
    appointment_time: datetime
    location: Optional[Location] = None
    duration: int = Field(default=60, ge=15, le=480)


class RescheduleRequest(_RequestModel):
    reason: str = Field(min_length=1)


# --- API Response Models ---

class SuggestionsMetadata(BaseModel):
    customer_id: str
    customer_name: str
    duration: int
    service_type: str
    urgency: Urgency
    requested_dates: int


class SuggestionsResponse(BaseModel):
    success: bool = True
    suggestions: List[AppointmentSuggestion]
    metadata: SuggestionsMetadata


class ConflictSummary(BaseModel):
    total: int
    high: int
    medium: int
    low: int


class ConflictCheckResponse(BaseModel):
    success: bool = True
    has_conflicts: bool
    can_schedule: bool
    needs_attention: bool
    conflicts: List[Conflict]
    summary: ConflictSummary
    recommendation: str


class OptimizeResponse(BaseModel):
    success: bool = True
    optimization: OptimizationResult
    applied: bool
