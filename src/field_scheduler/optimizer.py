"""
Daily schedule optimization.

For each technician with movable appointments on the day, the visiting
order is re-solved with OR-Tools to minimize travel time. The reordered
route then reuses the day's original start times in sequence: the k-th
stop starts at the k-th original start time, pushed later only when travel
from the previous stop (plus buffer time) requires it or an in-progress
appointment is in the way. A new arrangement is kept only when it
strictly reduces travel and still finishes within working hours.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from .availability import working_window
from .models import (
    Appointment, ChangeImpact, EfficiencySummary, OptimizationResult, ScheduleChange,
    SchedulingPreferences, Technician,
)
from .routing import (
    TravelTimeEstimator, build_travel_matrix, estimate_travel_minutes, optimize_route_order,
    route_travel_minutes,
)

logger = logging.getLogger(__name__)

TIME_ROUNDING_MINUTES = 5
MINIMUM_TRAVEL_SAVING = 0.5 # Minutes; smaller savings are solver noise

# Impact thresholds
MINIMAL_SHIFT_MINUTES = 30
SIGNIFICANT_SHIFT_MINUTES = 120
MINIMAL_DOWNSTREAM = 1
SIGNIFICANT_DOWNSTREAM = 3

SATISFACTION_PENALTIES = {
    ChangeImpact.MINIMAL: -0.05,
    ChangeImpact.MODERATE: -0.1,
    ChangeImpact.SIGNIFICANT: -0.2,
}


@dataclass
class RoutePlan:
    """One technician's day: appointments in visiting order with their times."""
    technician_id: str
    appointments: List[Appointment]
    starts: List[datetime]
    ends: List[datetime]
    travel_minutes: float

    @property
    def booked_minutes(self) -> float:
        return sum((end - start).total_seconds() / 60 for start, end in zip(self.starts, self.ends))

    @property
    def span_minutes(self) -> float:
        if not self.starts:
            return 0.0
        return (max(self.ends) - min(self.starts)).total_seconds() / 60


@dataclass
class EfficiencySnapshot:
    total_travel_time: float = 0.0
    booked_minutes: float = 0.0
    span_minutes: float = 0.0
    plans: List[RoutePlan] = field(default_factory=list)

    @property
    def utilization(self) -> float:
        """Booked time as a fraction of the technicians' on-the-clock span."""
        if self.span_minutes <= 0:
            return 0.0
        return self.booked_minutes / self.span_minutes


def round_up(moment: datetime, minutes: int = TIME_ROUNDING_MINUTES) -> datetime:
    """Rounds a datetime up to the next multiple of `minutes` past the hour."""
    floored = moment.replace(second=0, microsecond=0)
    if floored < moment:
        floored += timedelta(minutes=1)
    remainder = floored.minute % minutes
    if remainder:
        floored += timedelta(minutes=minutes - remainder)
    return floored


def classify_impact(shift_minutes: float, downstream_changes: int) -> ChangeImpact:
    """Classifies a change by how far it moves and how many later stops move too."""
    shift_minutes = abs(shift_minutes)
    if shift_minutes > SIGNIFICANT_SHIFT_MINUTES or downstream_changes >= SIGNIFICANT_DOWNSTREAM:
        return ChangeImpact.SIGNIFICANT
    if shift_minutes <= MINIMAL_SHIFT_MINUTES and downstream_changes <= MINIMAL_DOWNSTREAM:
        return ChangeImpact.MINIMAL
    return ChangeImpact.MODERATE


def satisfaction_impact(changes: Sequence[ScheduleChange]) -> float:
    return round(sum(SATISFACTION_PENALTIES[c.impact] for c in changes), 2)


class ScheduleOptimizer:
    """Reorders each technician's day to cut travel time."""

    def __init__(self, preferences: SchedulingPreferences, estimator: Optional[TravelTimeEstimator] = None):
        self.preferences = preferences
        self.estimator = estimator

    async def _retime(
        self,
        ordered: List[Appointment],
        slot_starts: List[datetime],
        travel_matrix: List[List[float]],
        matrix_index: Dict[str, int],
        pinned: List[Appointment],
        closes: Optional[datetime],
    ) -> Optional[Tuple[List[datetime], List[datetime]]]:
        """
        Assigns start times to appointments in visiting order.

        In-progress work keeps the travel and buffer time around it clear:
        a stop that would collide is pushed to the pinned end plus travel
        from the pinned location plus buffer.

        Returns:
            Optional[Tuple[List[datetime], List[datetime]]]: (starts, ends), or
                None if the route runs past closing time.
        """
        buffer = timedelta(minutes=self.preferences.buffer_time)
        starts: List[datetime] = []
        ends: List[datetime] = []
        previous: Optional[Appointment] = None

        for position, appointment in enumerate(ordered):
            duration = appointment.end_time - appointment.start_time
            start = slot_starts[position]
            if previous is not None:
                travel = travel_matrix[matrix_index[previous.id]][matrix_index[appointment.id]]
                earliest = round_up(ends[-1] + timedelta(minutes=travel) + buffer)
                start = max(start, earliest)

            # Step past in-progress work that cannot move
            moved = True
            while moved:
                moved = False
                for fixed in pinned:
                    travel_in = await self._travel(appointment.location, fixed.location)
                    travel_out = await self._travel(fixed.location, appointment.location)
                    reaches = start + duration + timedelta(minutes=travel_in) + buffer
                    clear_from = fixed.end_time + timedelta(minutes=travel_out) + buffer
                    if start < clear_from and reaches > fixed.start_time:
                        start = round_up(clear_from)
                        moved = True

            end = start + duration
            if closes is not None and end > closes:
                return None
            starts.append(start)
            ends.append(end)
            previous = appointment

        return starts, ends

    async def _travel(self, origin, destination) -> float:
        return await estimate_travel_minutes(
            self.estimator, origin, destination, self.preferences.travel_time
        )

    async def _plan_technician(
        self,
        technician_id: str,
        appointments: List[Appointment],
        technician: Optional[Technician],
        pinned: List[Appointment],
        target_date: date,
    ) -> Tuple[RoutePlan, RoutePlan]:
        """Builds the (current, proposed) plans for one technician."""
        start_location = technician.current_location if technician else None
        locations = [a.location for a in appointments]
        start_index = None
        if start_location is not None:
            locations = [start_location] + locations
            start_index = 0
        offset = 0 if start_index is None else 1
        matrix_index = {a.id: i + offset for i, a in enumerate(appointments)}

        travel_matrix = await build_travel_matrix(self.estimator, locations, self.preferences.travel_time)

        current_order = [matrix_index[a.id] for a in appointments]
        current = RoutePlan(
            technician_id=technician_id,
            appointments=list(appointments),
            starts=[a.start_time for a in appointments],
            ends=[a.end_time for a in appointments],
            travel_minutes=route_travel_minutes(current_order, travel_matrix, start_index),
        )

        window = working_window(target_date, self.preferences)
        if len(appointments) < 2 or window is None:
            return current, current

        order = await asyncio.to_thread(optimize_route_order, travel_matrix, start_index)
        if not order or order == current_order:
            return current, current

        proposed_travel = route_travel_minutes(order, travel_matrix, start_index)
        if proposed_travel > current.travel_minutes - MINIMUM_TRAVEL_SAVING:
            return current, current

        by_index = {matrix_index[a.id]: a for a in appointments}
        ordered = [by_index[i] for i in order]
        slot_starts = sorted(a.start_time for a in appointments)
        timed = await self._retime(ordered, slot_starts, travel_matrix, matrix_index, pinned, window[1])
        if timed is None:
            logger.info(
                "Reordered route for technician %s does not fit working hours; keeping current order",
                technician_id,
            )
            return current, current

        starts, ends = timed
        proposed = RoutePlan(
            technician_id=technician_id,
            appointments=ordered,
            starts=starts,
            ends=ends,
            travel_minutes=proposed_travel,
        )
        return current, proposed

    @staticmethod
    def _snapshot(plans: List[RoutePlan]) -> EfficiencySnapshot:
        snapshot = EfficiencySnapshot(plans=plans)
        for plan in plans:
            snapshot.total_travel_time += plan.travel_minutes
            snapshot.booked_minutes += plan.booked_minutes
            snapshot.span_minutes += plan.span_minutes
        return snapshot

    @staticmethod
    def _changes(plan: RoutePlan, travel_saved: float) -> List[ScheduleChange]:
        moved = [
            (appointment, start, end)
            for appointment, start, end in zip(plan.appointments, plan.starts, plan.ends)
            if start != appointment.start_time
        ]
        changes = []
        for position, (appointment, start, end) in enumerate(moved):
            shift = (start - appointment.start_time).total_seconds() / 60
            downstream = len(moved) - position - 1
            changes.append(ScheduleChange(
                appointment_id=appointment.id,
                technician_id=plan.technician_id,
                old_start_time=appointment.start_time,
                new_start_time=start,
                new_end_time=end,
                reason=(f"Route reordered for technician {plan.technician_id} "
                        f"to save {math.floor(travel_saved)} minutes of travel"),
                impact=classify_impact(shift, downstream),
            ))
        return changes

    async def optimize(
        self,
        appointments: List[Appointment],
        technicians: Dict[str, Technician],
        target_date: date,
        pinned: Optional[Dict[str, List[Appointment]]] = None,
    ) -> OptimizationResult:
        """
        Proposes a lower-travel arrangement of a day's appointments.

        Args:
            appointments: Movable appointments for the day (scheduled or
                confirmed), ordered by start time.
            technicians: Technicians by id, for starting locations.
            target_date: The organization-local date being optimized.
            pinned: In-progress appointments by technician id; never moved and
                never overlapped.

        Returns:
            OptimizationResult: Changes only for appointments whose start time
                moves, with before/after efficiency deltas.
        """
        if not appointments:
            return OptimizationResult(optimized=False)

        pinned = pinned or {}
        by_technician: Dict[str, List[Appointment]] = {}
        for appointment in appointments:
            if appointment.technician_id is None:
                continue # Unassigned appointments have no route
            by_technician.setdefault(appointment.technician_id, []).append(appointment)

        current_plans: List[RoutePlan] = []
        proposed_plans: List[RoutePlan] = []
        changes: List[ScheduleChange] = []

        for technician_id in sorted(by_technician):
            day = sorted(by_technician[technician_id], key=lambda a: (a.start_time, a.id))
            current, proposed = await self._plan_technician(
                technician_id, day, technicians.get(technician_id), pinned.get(technician_id, []), target_date
            )
            if proposed is not current:
                plan_changes = self._changes(proposed, current.travel_minutes - proposed.travel_minutes)
                if plan_changes:
                    changes.extend(plan_changes)
                else:
                    proposed = current
            current_plans.append(current)
            proposed_plans.append(proposed)

        before = self._snapshot(current_plans)
        after = self._snapshot(proposed_plans)

        return OptimizationResult(
            optimized=bool(changes),
            changes=changes,
            efficiency=EfficiencySummary(
                travel_time_reduced=round(max(0.0, before.total_travel_time - after.total_travel_time), 1),
                utilization_improved=round((after.utilization - before.utilization) * 100, 2),
                customer_satisfaction_impact=satisfaction_impact(changes),
            ),
        )
