"""
Conflict detection for a candidate technician time window.

Two rules are checked against the technician's active appointments
(scheduled, confirmed, in progress):

1. Direct overlap: every appointment intersecting [start, end) is a
   high-severity conflict.
2. Travel time: the nearest appointment before and the nearest one after
   the window (among those not overlapping it) must leave enough room to
   drive between locations. A shortfall is a medium-severity conflict.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from .data_interface import RecordStore
from .exceptions import InvalidTimeRangeError
from .models import (
    ACTIVE_STATUSES, Appointment, Conflict, ConflictReport, ConflictSeverity, Location,
    SchedulingPreferences,
)
from .routing import TravelTimeEstimator, estimate_travel_minutes

logger = logging.getLogger(__name__)


def find_adjacent_appointments(
    appointments: List[Appointment],
    start: datetime,
    end: datetime,
) -> Tuple[Optional[Appointment], Optional[Appointment]]:
    """
    Finds the appointments immediately before and after a window.

    Args:
        appointments: The technician's active appointments.
        start: Window start.
        end: Window end.

    Returns:
        Tuple[Optional[Appointment], Optional[Appointment]]: (preceding,
            following). The preceding one is the latest-starting appointment
            that ends at or before start; the following one is the
            earliest-starting appointment that starts at or after end.
    """
    preceding = None
    following = None
    for appointment in appointments:
        if appointment.overlaps(start, end):
            continue
        if appointment.end_time <= start:
            if preceding is None or appointment.start_time > preceding.start_time:
                preceding = appointment
        elif appointment.start_time >= end:
            if following is None or appointment.start_time < following.start_time:
                following = appointment
    return preceding, following


class ConflictDetector:
    """Pure read-and-compute conflict checks for one organization."""

    def __init__(
        self,
        organization_id: str,
        store: RecordStore,
        preferences: SchedulingPreferences,
        estimator: Optional[TravelTimeEstimator] = None,
    ):
        self.organization_id = organization_id
        self.store = store
        self.preferences = preferences
        self.estimator = estimator

    async def load_calendar(self, technician_id: str, start: datetime, end: datetime) -> List[Appointment]:
        """Active appointments for the technician around the window (one day either side)."""
        return await self.store.list_appointments(
            self.organization_id,
            technician_id=technician_id,
            start=start - timedelta(days=1),
            end=end + timedelta(days=1),
            statuses=ACTIVE_STATUSES,
        )

    async def detect(
        self,
        technician_id: str,
        start: datetime,
        end: datetime,
        exclude_appointment_id: Optional[str] = None,
        location: Optional[Location] = None,
        calendar: Optional[List[Appointment]] = None,
    ) -> List[Conflict]:
        """
        Detects conflicts for placing a technician in [start, end).

        Args:
            technician_id: The technician being checked.
            start: Candidate start time.
            end: Candidate end time.
            exclude_appointment_id: Appointment left out of the comparison
                (the one being moved).
            location: Where the candidate appointment takes place, if known.
            calendar: Preloaded active appointments for the technician; read
                from the store when omitted.

        Returns:
            List[Conflict]: Empty when the window is free.

        Raises:
            InvalidTimeRangeError: If start is not before end.
        """
        if start >= end:
            raise InvalidTimeRangeError(f"Start time {start} must be before end time {end}")

        if calendar is None:
            calendar = await self.load_calendar(technician_id, start, end)
        appointments = [
            a for a in calendar
            if a.id != exclude_appointment_id and a.is_active
        ]

        conflicts: List[Conflict] = []

        # Direct time overlaps
        for appointment in appointments:
            if appointment.overlaps(start, end):
                conflicts.append(Conflict(
                    appointment_id=appointment.id,
                    description=f"Direct time overlap with appointment {appointment.id} "
                                f"({appointment.start_time:%H:%M}-{appointment.end_time:%H:%M})",
                    severity=ConflictSeverity.HIGH,
                ))

        # Travel time to and from the neighbours
        preceding, following = find_adjacent_appointments(appointments, start, end)
        fallback = self.preferences.travel_time

        if preceding is not None:
            travel = await estimate_travel_minutes(self.estimator, preceding.location, location, fallback)
            if preceding.end_time + timedelta(minutes=travel) > start:
                needed = math.ceil(travel)
                conflicts.append(Conflict(
                    appointment_id=preceding.id,
                    description=f"Insufficient travel time from previous appointment (need {needed} minutes)",
                    severity=ConflictSeverity.MEDIUM,
                    travel_minutes=needed,
                ))

        if following is not None:
            travel = await estimate_travel_minutes(self.estimator, location, following.location, fallback)
            if end + timedelta(minutes=travel) > following.start_time:
                needed = math.ceil(travel)
                conflicts.append(Conflict(
                    appointment_id=following.id,
                    description=f"Insufficient travel time to next appointment (need {needed} minutes)",
                    severity=ConflictSeverity.MEDIUM,
                    travel_minutes=needed,
                ))

        if conflicts:
            logger.debug(
                "Technician %s has %d conflict(s) for %s-%s", technician_id, len(conflicts), start, end
            )
        return conflicts


def summarize_conflicts(conflicts: List[Conflict]) -> ConflictReport:
    """Counts conflicts by severity and recommends whether to book."""
    high = sum(1 for c in conflicts if c.severity == ConflictSeverity.HIGH)
    medium = sum(1 for c in conflicts if c.severity == ConflictSeverity.MEDIUM)
    low = sum(1 for c in conflicts if c.severity == ConflictSeverity.LOW)

    if high:
        recommendation = ('Cannot schedule - direct time conflicts detected. '
                          'Please choose a different time slot.')
    elif medium:
        recommendation = ('Can schedule with caution - travel time may be tight. '
                          'Consider adjusting appointment times.')
    elif conflicts:
        recommendation = 'Can schedule - minor considerations noted but no significant conflicts.'
    else:
        recommendation = 'Perfect time slot - no conflicts detected.'

    return ConflictReport(
        conflicts=conflicts,
        has_conflicts=bool(conflicts),
        can_schedule=high == 0,
        needs_attention=medium > 0,
        total=len(conflicts),
        high=high,
        medium=medium,
        low=low,
        recommendation=recommendation,
    )
