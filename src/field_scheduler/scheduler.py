import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Union

from .availability import (
    day_bounds, generate_slots, localize, resolve_preferences, to_local_date, working_window,
)
from .conflicts import ConflictDetector, summarize_conflicts
from .data_interface import EventSink, LoggingEventSink, RecordStore
from .exceptions import (
    EventDeliveryError, InvalidTimeRangeError, NoQualifiedResourceError, NotFoundError,
)
from .models import (
    ACTIVE_STATUSES, MOVABLE_STATUSES, Appointment, AppointmentStatus, AppointmentSuggestion,
    Conflict, ConflictReport, ConflictSeverity, Customer, Location, OptimizationResult,
    RescheduleResult, SchedulingPreferences, SuggestionAlternative, Technician,
    TechnicianPrediction, Urgency,
)
from .optimizer import ScheduleOptimizer
from .routing import TravelTimeEstimator
from .scoring import (
    MAX_SUGGESTIONS, MAX_SUGGESTIONS_PER_DAY, SUGGESTION_THRESHOLD, generate_reasoning,
    score_slot, score_technician,
)

logger = logging.getLogger(__name__)

RESCHEDULE_WINDOW_DAYS = 3
MAX_ALTERNATIVES = 3
DEFAULT_PREDICTION_DURATION = 60 # Minutes


@dataclass
class _Candidate:
    """A scored (technician, slot) pair before it becomes a suggestion."""
    confidence: float
    start_time: datetime
    end_time: datetime
    technician: Technician
    conflicts: List[Conflict]
    preference_rank: int
    load: int
    position: int # Technician enumeration order

    def sort_key(self):
        # Ties: earliest slot, preferred technician, least-loaded, enumeration order
        return (-self.confidence, self.start_time, self.preference_rank, self.load, self.position)


def _as_location(location: Union[Location, str, None]) -> Optional[Location]:
    if location is None or isinstance(location, Location):
        return location
    return Location(address=location)


def _append_note(notes: Optional[str], label: str, reason: str) -> str:
    return f"{notes or ''}\n\n{label}: {reason}".strip()


class SchedulingEngine:
    """
    Appointment scheduling and optimization for one organization.

    Every operation is request-scoped: it loads a fresh preferences and
    technician snapshot from the store, computes in memory and (for
    rescheduling and applied optimizations) writes back with a version check.
    Concurrent reschedules against the same technician are not serialized
    here; callers that need strict ordering wrap calls in their own
    per-technician lock.
    """

    def __init__(
        self,
        organization_id: str,
        store: RecordStore,
        estimator: Optional[TravelTimeEstimator] = None,
        events: Optional[EventSink] = None,
    ):
        self.organization_id = organization_id
        self.store = store
        self.estimator = estimator
        self.events = events or LoggingEventSink()

    # --- Helpers ---

    async def _load_preferences(self) -> SchedulingPreferences:
        raw = await self.store.get_scheduling_preferences(self.organization_id)
        return resolve_preferences(raw)

    def _detector(self, prefs: SchedulingPreferences) -> ConflictDetector:
        return ConflictDetector(self.organization_id, self.store, prefs, self.estimator)

    async def _get_customer(self, customer_id: str) -> Customer:
        customer = await self.store.get_customer(self.organization_id, customer_id)
        if customer is None:
            raise NotFoundError("customer", customer_id)
        return customer

    async def _qualified_technicians(self, service_type: str) -> List[Technician]:
        technicians = [
            t for t in await self.store.list_technicians(self.organization_id, active_only=True)
            if t.is_qualified_for(service_type)
        ]
        if not technicians:
            raise NoQualifiedResourceError(f"No qualified technicians available for {service_type!r}")
        return technicians

    async def _technician_calendar(self, technician_id: str, day: date, prefs: SchedulingPreferences) -> List[Appointment]:
        day_start, day_end = day_bounds(day, prefs)
        return await self.store.list_appointments(
            self.organization_id,
            technician_id=technician_id,
            start=day_start - timedelta(days=1),
            end=day_end + timedelta(days=1),
            statuses=ACTIVE_STATUSES,
        )

    @staticmethod
    def _daily_load(calendar: List[Appointment], day: date, prefs: SchedulingPreferences,
                    exclude_appointment_id: Optional[str] = None) -> int:
        day_start, day_end = day_bounds(day, prefs)
        return sum(
            1 for a in calendar
            if a.id != exclude_appointment_id and day_start <= a.start_time < day_end
        )

    async def _emit_update(self, appointment: Appointment):
        try:
            await self.events.appointment_updated(
                self.organization_id, appointment.id, appointment.model_dump(mode='json')
            )
        except EventDeliveryError:
            # The write is already committed; delivery is best-effort
            logger.exception("Failed to publish update for appointment %s", appointment.id)

    # --- Suggestions ---

    async def _daily_candidates(
        self,
        customer: Customer,
        day: date,
        duration: int,
        technicians: List[Technician],
        prefs: SchedulingPreferences,
        urgency: Urgency,
        exclude_appointment_id: Optional[str],
        location: Optional[Location],
    ) -> List[_Candidate]:
        if working_window(day, prefs) is None:
            logger.debug("Skipping %s: closed or blackout date", day)
            return []

        detector = self._detector(prefs)
        candidates: List[_Candidate] = []

        for position, technician in enumerate(technicians):
            calendar = await self._technician_calendar(technician.id, day, prefs)
            load = self._daily_load(calendar, day, prefs, exclude_appointment_id)
            if load >= prefs.max_daily_appointments:
                logger.info("Technician %s is at the daily cap (%d) on %s", technician.id, load, day)
                continue

            if technician.id in customer.preferences.preferred_technicians:
                preference_rank = 0
            elif technician.id in prefs.preferred_technicians:
                preference_rank = 1
            else:
                preference_rank = 2

            for start, end in generate_slots(day, duration, prefs):
                conflicts = await detector.detect(
                    technician.id, start, end,
                    exclude_appointment_id=exclude_appointment_id,
                    location=location,
                    calendar=calendar,
                )
                if any(c.severity == ConflictSeverity.HIGH for c in conflicts):
                    continue

                confidence = score_slot(customer, technician, start, conflicts, urgency)
                if confidence <= SUGGESTION_THRESHOLD:
                    continue

                candidates.append(_Candidate(
                    confidence=confidence,
                    start_time=start,
                    end_time=end,
                    technician=technician,
                    conflicts=conflicts,
                    preference_rank=preference_rank,
                    load=load,
                    position=position,
                ))

        candidates.sort(key=_Candidate.sort_key)
        return candidates

    @staticmethod
    def _to_suggestion(candidate: _Candidate, ranked: List[_Candidate], urgency: Urgency) -> AppointmentSuggestion:
        alternatives = [
            SuggestionAlternative(
                start_time=other.start_time,
                end_time=other.end_time,
                confidence=other.confidence,
                reason=generate_reasoning(other.confidence, other.conflicts, urgency),
            )
            for other in ranked
            if other.technician.id == candidate.technician.id and other.sort_key() > candidate.sort_key()
        ][:MAX_ALTERNATIVES]
        return AppointmentSuggestion(
            start_time=candidate.start_time,
            end_time=candidate.end_time,
            confidence=candidate.confidence,
            technician=candidate.technician,
            reasoning=generate_reasoning(candidate.confidence, candidate.conflicts, urgency),
            alternatives=alternatives,
        )

    async def _suggest(
        self,
        customer: Customer,
        duration: int,
        service_type: str,
        preferred_dates: Iterable[Union[date, datetime]],
        urgency: Urgency,
        prefs: SchedulingPreferences,
        exclude_appointment_id: Optional[str] = None,
        location: Optional[Location] = None,
    ) -> List[AppointmentSuggestion]:
        if duration <= 0:
            raise InvalidTimeRangeError(f"Duration must be positive, got {duration}")

        technicians = await self._qualified_technicians(service_type)
        location = location or customer.address

        days: List[date] = []
        for value in preferred_dates:
            day = to_local_date(value, prefs)
            if day not in days:
                days.append(day)

        ranked: List[_Candidate] = []
        suggestions: List[AppointmentSuggestion] = []
        for day in days:
            daily = await self._daily_candidates(
                customer, day, duration, technicians, prefs, urgency, exclude_appointment_id, location
            )
            for candidate in daily[:MAX_SUGGESTIONS_PER_DAY]:
                ranked.append(candidate)
                suggestions.append(self._to_suggestion(candidate, daily, urgency))

        order = sorted(range(len(ranked)), key=lambda i: ranked[i].sort_key())
        return [suggestions[i] for i in order][:MAX_SUGGESTIONS]

    async def find_optimal_slots(
        self,
        customer_id: str,
        duration: int,
        service_type: str,
        preferred_dates: Sequence[Union[date, datetime]],
        urgency: Union[Urgency, str] = Urgency.NORMAL,
        location: Union[Location, str, None] = None,
    ) -> List[AppointmentSuggestion]:
        """
        Ranks candidate slots and technicians across the preferred dates.

        For each date, every qualified technician's slots are checked for
        conflicts; slots with a direct overlap are dropped, the rest are
        scored and the best five per date are kept. The combined list is
        sorted by confidence (descending) and capped at ten.

        Args:
            customer_id: The customer being booked.
            duration: Appointment length in minutes.
            service_type: Service type tag used for technician qualification.
            preferred_dates: Dates to search, in the caller's order.
            urgency: low, normal, high or emergency.
            location: Visit location; defaults to the customer's address.

        Returns:
            List[AppointmentSuggestion]: Possibly empty when no slot survives.

        Raises:
            NotFoundError: If the customer does not exist.
            NoQualifiedResourceError: If no technician can perform service_type.
        """
        customer = await self._get_customer(customer_id)
        prefs = await self._load_preferences()
        return await self._suggest(
            customer, duration, service_type, preferred_dates, Urgency(urgency), prefs,
            location=_as_location(location),
        )

    # --- Conflicts ---

    async def detect_conflicts(
        self,
        technician_id: str,
        start_time: datetime,
        end_time: datetime,
        exclude_appointment_id: Optional[str] = None,
        location: Union[Location, str, None] = None,
    ) -> List[Conflict]:
        """
        Detects overlaps and travel-time shortfalls for a technician window.

        Naive times are taken as organization-local.

        Raises:
            NotFoundError: If the technician does not exist.
            InvalidTimeRangeError: If start_time is not before end_time.
        """
        prefs = await self._load_preferences()
        start_time = localize(start_time, prefs)
        end_time = localize(end_time, prefs)
        if start_time >= end_time:
            raise InvalidTimeRangeError("Start time must be before end time")
        technician = await self.store.get_technician(self.organization_id, technician_id)
        if technician is None:
            raise NotFoundError("technician", technician_id)

        return await self._detector(prefs).detect(
            technician_id, start_time, end_time,
            exclude_appointment_id=exclude_appointment_id,
            location=_as_location(location),
        )

    async def check_conflicts(
        self,
        technician_id: str,
        start_time: datetime,
        end_time: datetime,
        exclude_appointment_id: Optional[str] = None,
        location: Union[Location, str, None] = None,
    ) -> ConflictReport:
        conflicts = await self.detect_conflicts(
            technician_id, start_time, end_time, exclude_appointment_id, location
        )
        return summarize_conflicts(conflicts)

    # --- Technician prediction ---

    async def predict_optimal_technician(
        self,
        customer_id: str,
        service_type: str,
        appointment_time: datetime,
        location: Union[Location, str, None] = None,
        duration: int = DEFAULT_PREDICTION_DURATION,
    ) -> TechnicianPrediction:
        """
        Picks the best technician for a fixed appointment time.

        Ties on score go to the technician with fewer appointments that day,
        then to the first one enumerated.

        Raises:
            NotFoundError: If the customer does not exist.
            NoQualifiedResourceError: If no technician can perform service_type.
        """
        await self._get_customer(customer_id)
        technicians = await self._qualified_technicians(service_type)
        prefs = await self._load_preferences()
        detector = self._detector(prefs)
        location = _as_location(location)

        appointment_time = localize(appointment_time, prefs)
        end_time = appointment_time + timedelta(minutes=duration)
        day = to_local_date(appointment_time, prefs)

        best = None
        for position, technician in enumerate(technicians):
            calendar = await self._technician_calendar(technician.id, day, prefs)
            conflicts = await detector.detect(
                technician.id, appointment_time, end_time, location=location, calendar=calendar
            )
            completed = await self.store.count_completed_appointments(
                self.organization_id, customer_id, technician.id
            )
            score, reasoning = score_technician(technician, service_type, conflicts, completed)
            key = (-score, self._daily_load(calendar, day, prefs), position)
            if best is None or key < best[0]:
                best = (key, technician, score, reasoning)

        _, technician, score, reasoning = best
        return TechnicianPrediction(technician_id=technician.id, confidence=score, reasoning=reasoning)

    # --- Optimization ---

    async def optimize_schedule(self, target_date: Union[date, datetime], auto_apply: bool = False) -> OptimizationResult:
        """
        Proposes (and optionally applies) a lower-travel arrangement of a day.

        Args:
            target_date: The day to optimize (organization-local).
            auto_apply: Write the proposed start times back to the store.

        Returns:
            OptimizationResult: optimized=False with zero deltas when the day
                has no scheduled or confirmed appointments.
        """
        prefs = await self._load_preferences()
        day = to_local_date(target_date, prefs)
        day_start, day_end = day_bounds(day, prefs)

        appointments = await self.store.list_appointments(
            self.organization_id, start=day_start, end=day_end, statuses=MOVABLE_STATUSES
        )
        if not appointments:
            return OptimizationResult(optimized=False)

        technicians = {
            t.id: t for t in await self.store.list_technicians(self.organization_id, active_only=False)
        }
        pinned: Dict[str, List[Appointment]] = {}
        for appointment in await self.store.list_appointments(
            self.organization_id, start=day_start, end=day_end, statuses=[AppointmentStatus.IN_PROGRESS]
        ):
            if appointment.technician_id is not None:
                pinned.setdefault(appointment.technician_id, []).append(appointment)

        optimizer = ScheduleOptimizer(prefs, self.estimator)
        result = await optimizer.optimize(appointments, technicians, day, pinned)
        logger.info(
            "Optimization for org %s on %s: %d change(s), %.1f travel minutes saved",
            self.organization_id, day, len(result.changes), result.efficiency.travel_time_reduced,
        )

        if auto_apply and result.optimized:
            await self._apply_changes(result, {a.id: a for a in appointments})
            result.applied = True
        return result

    async def _apply_changes(self, result: OptimizationResult, appointments: Dict[str, Appointment]):
        """Writes optimization changes; a version mismatch stops at the failing appointment."""
        for change in result.changes:
            original = appointments[change.appointment_id]
            updated = await self.store.update_appointment(
                self.organization_id,
                change.appointment_id,
                {
                    'start_time': change.new_start_time,
                    'end_time': change.new_end_time,
                    'notes': _append_note(original.notes, 'Optimized', change.reason),
                },
                expected_version=original.version,
            )
            await self._emit_update(updated)

        try:
            await self.events.broadcast(self.organization_id, "schedule.optimized", result.model_dump(mode='json'))
        except EventDeliveryError:
            logger.exception("Failed to broadcast schedule optimization for org %s", self.organization_id)

    # --- Rescheduling ---

    async def auto_reschedule(self, appointment_id: str, reason: str) -> RescheduleResult:
        """
        Moves an appointment to the best slot over its day and the next two.

        Logical failures (missing appointment, no alternative slot) come back
        as success=False results without writing anything. Store failures and
        version conflicts propagate.
        """
        appointment = await self.store.get_appointment(self.organization_id, appointment_id)
        if appointment is None:
            return RescheduleResult(success=False, message="Appointment not found")

        prefs = await self._load_preferences()
        customer = await self.store.get_customer(self.organization_id, appointment.customer_id)
        if customer is None:
            return RescheduleResult(success=False, message="Customer not found")

        first_day = to_local_date(appointment.start_time, prefs)
        dates = [first_day + timedelta(days=offset) for offset in range(RESCHEDULE_WINDOW_DAYS)]

        try:
            suggestions = await self._suggest(
                customer,
                appointment.duration_minutes,
                appointment.service_type,
                dates,
                Urgency.NORMAL,
                prefs,
                exclude_appointment_id=appointment.id,
                location=appointment.location,
            )
        except NoQualifiedResourceError as exc:
            return RescheduleResult(success=False, message=str(exc))

        # The current slot is not an alternative
        suggestions = [
            s for s in suggestions
            if not (s.start_time == appointment.start_time and s.technician.id == appointment.technician_id)
        ]
        if not suggestions:
            return RescheduleResult(success=False, message="No alternative slots available")

        best = suggestions[0]

        # Re-check right before writing to narrow the race with other bookings
        conflicts = await self._detector(prefs).detect(
            best.technician.id, best.start_time, best.end_time,
            exclude_appointment_id=appointment.id,
            location=appointment.location,
        )
        if any(c.severity == ConflictSeverity.HIGH for c in conflicts):
            return RescheduleResult(success=False, message="Selected slot was taken; please retry")

        updated = await self.store.update_appointment(
            self.organization_id,
            appointment.id,
            {
                'start_time': best.start_time,
                'end_time': best.end_time,
                'technician_id': best.technician.id,
                'notes': _append_note(appointment.notes, 'Rescheduled', reason),
            },
            expected_version=appointment.version,
        )
        await self._emit_update(updated)

        alternative = best.technician.id if best.technician.id != appointment.technician_id else None
        logger.info(
            "Rescheduled appointment %s to %s (technician %s)",
            appointment.id, best.start_time.isoformat(), best.technician.id,
        )
        return RescheduleResult(
            success=True,
            new_start_time=best.start_time,
            new_end_time=best.end_time,
            alternative_technician=alternative,
            message=f"Appointment rescheduled to {best.start_time:%Y-%m-%d %H:%M}",
        )


def get_scheduling_engine(
    organization_id: str,
    store: RecordStore,
    estimator: Optional[TravelTimeEstimator] = None,
    events: Optional[EventSink] = None,
) -> SchedulingEngine:
    """Builds an engine for one organization; no instance is cached."""
    return SchedulingEngine(organization_id, store, estimator=estimator, events=events)
