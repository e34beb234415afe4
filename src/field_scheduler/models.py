from datetime import datetime, date
from enum import Enum
from typing import List, Optional, Dict

from pydantic import BaseModel, Field, field_validator, model_validator


# --- Enums ---

class AppointmentStatus(str, Enum):
    SCHEDULED = 'scheduled'
    CONFIRMED = 'confirmed'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'

# Statuses that occupy a technician's calendar
ACTIVE_STATUSES = frozenset({
    AppointmentStatus.SCHEDULED,
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.IN_PROGRESS,
})

# Statuses the optimizer is allowed to move
MOVABLE_STATUSES = frozenset({
    AppointmentStatus.SCHEDULED,
    AppointmentStatus.CONFIRMED,
})

class Urgency(str, Enum):
    LOW = 'low'
    NORMAL = 'normal'
    HIGH = 'high'
    EMERGENCY = 'emergency'

class ConflictSeverity(str, Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'

class ChangeImpact(str, Enum):
    MINIMAL = 'minimal'
    MODERATE = 'moderate'
    SIGNIFICANT = 'significant'

# --- Core Models ---

class Location(BaseModel):
    """A free-text address, optionally geocoded."""
    address: str
    lat: Optional[float] = None
    lng: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None

class Technician(BaseModel):
    """A technician as seen by the scheduler (read-only)."""
    id: str
    name: str
    skills: List[str] = Field(default_factory=list) # Ordered skill tags
    active: bool = True
    current_location: Optional[Location] = None

    def has_skill(self, service_type: str) -> bool:
        return service_type in self.skills

    def is_qualified_for(self, service_type: str) -> bool:
        """
        Active technicians qualify when they list the service type, or when they
        list no skills at all (generalists).
        """
        if not self.active:
            return False
        return not self.skills or self.has_skill(service_type)

class Appointment(BaseModel):
    """A booked visit occupying a technician's calendar."""
    id: str
    customer_id: str
    technician_id: Optional[str] = None # Null until scheduled
    service_type: str
    start_time: datetime
    end_time: datetime
    estimated_duration: Optional[int] = Field(default=None, ge=0) # Minutes, advisory
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    location: Optional[Location] = None
    notes: Optional[str] = None
    version: int = Field(default=0, ge=0) # Bumped on every write

    @model_validator(mode='after')
    def check_interval(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    @property
    def duration_minutes(self) -> int:
        """Advisory duration, falling back to the stored interval."""
        if self.estimated_duration:
            return self.estimated_duration
        return int((self.end_time - self.start_time).total_seconds() // 60)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Half-open interval intersection with [start, end)."""
        return self.start_time < end and start < self.end_time

class CustomerPreferences(BaseModel):
    """Documented schema for the customer's preference bag."""
    preferred_times: List[str] = Field(default_factory=list) # "HH:MM" strings, in order of preference
    preferred_technicians: List[str] = Field(default_factory=list)

    @field_validator('preferred_times', mode='before')
    @classmethod
    def coerce_times(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v

    def preferred_hours(self) -> List[int]:
        hours = []
        for entry in self.preferred_times:
            try:
                hours.append(int(str(entry).strip().split(':')[0]))
            except ValueError:
                continue # Ignore unparseable entries
        return hours

    def prefers_hour(self, hour: int) -> bool:
        return hour in self.preferred_hours()

class Customer(BaseModel):
    """Customer record (read-only except for preference lookups)."""
    id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Location] = None # Default visit location
    preferences: CustomerPreferences = Field(default_factory=CustomerPreferences)

    @field_validator('preferences', mode='before')
    @classmethod
    def coerce_preferences(cls, v):
        if v is None:
            return CustomerPreferences()
        if isinstance(v, dict):
            # Accept the loosely-typed camelCase keys stored by the CRM
            return {
                'preferred_times': v.get('preferred_times', v.get('preferredTimes')),
                'preferred_technicians': v.get('preferred_technicians', v.get('preferredTechnicians')) or [],
            }
        return v

# --- Organization Configuration ---

class WorkingHours(BaseModel):
    """Opening window for one weekday."""
    start: str = '09:00'
    end: str = '17:00'
    closed: bool = False

    @field_validator('start', 'end')
    @classmethod
    def check_clock(cls, v):
        hour, _, minute = v.partition(':')
        if not (hour.isdigit() and (minute or '0').isdigit()):
            raise ValueError(f"Invalid clock time: {v!r}")
        if not (0 <= int(hour) <= 24 and 0 <= int(minute or 0) < 60):
            raise ValueError(f"Invalid clock time: {v!r}")
        return v

class SchedulingPreferences(BaseModel):
    """Per-organization scheduling configuration, immutable for one operation."""
    working_hours: Dict[str, WorkingHours] # Lowercase weekday name -> window
    buffer_time: int = Field(default=15, ge=0) # Minutes between appointments
    max_daily_appointments: int = Field(default=8, ge=1) # Per technician
    preferred_technicians: List[str] = Field(default_factory=list)
    blackout_dates: List[date] = Field(default_factory=list)
    travel_time: int = Field(default=30, ge=0) # Flat inter-appointment minutes
    timezone: str = 'UTC'
    slot_interval: int = Field(default=30, gt=0) # Slot granularity in minutes

    model_config = {'frozen': True}

# --- Derived Results ---

class Conflict(BaseModel):
    """An incompatibility between a candidate window and an existing appointment."""
    appointment_id: str
    description: str
    severity: ConflictSeverity
    travel_minutes: Optional[int] = None # Required travel, for travel-time conflicts

class ConflictReport(BaseModel):
    """Summary of a conflict check for callers deciding whether to book."""
    conflicts: List[Conflict]
    has_conflicts: bool
    can_schedule: bool
    needs_attention: bool
    total: int
    high: int
    medium: int
    low: int
    recommendation: str

class SuggestionAlternative(BaseModel):
    start_time: datetime
    end_time: datetime
    confidence: float
    reason: str

class AppointmentSuggestion(BaseModel):
    """A proposed slot and technician pairing (not persisted)."""
    start_time: datetime
    end_time: datetime
    confidence: float = Field(ge=0.0, le=1.0)
    technician: Technician
    reasoning: str
    alternatives: List[SuggestionAlternative] = Field(default_factory=list)

class ScheduleChange(BaseModel):
    appointment_id: str
    technician_id: Optional[str] = None
    old_start_time: datetime
    new_start_time: datetime
    new_end_time: datetime
    reason: str
    impact: ChangeImpact

class EfficiencySummary(BaseModel):
    travel_time_reduced: float = 0.0 # Minutes
    utilization_improved: float = 0.0 # Percentage points
    customer_satisfaction_impact: float = 0.0 # Signed scalar

class OptimizationResult(BaseModel):
    optimized: bool
    changes: List[ScheduleChange] = Field(default_factory=list)
    efficiency: EfficiencySummary = Field(default_factory=EfficiencySummary)
    applied: bool = False

class TechnicianPrediction(BaseModel):
    technician_id: str
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str

class RescheduleResult(BaseModel):
    success: bool
    new_start_time: Optional[datetime] = None
    new_end_time: Optional[datetime] = None
    alternative_technician: Optional[str] = None # Only set when the technician changed
    message: str
