"""
Confidence scoring for candidate slots and technicians.

Raw scores are additive (baseline, penalties, bonuses) and may leave [0, 1].
They are bounded with saturate(): values up to SATURATION_KNEE pass through
unchanged, negatives become 0, and values above the knee approach 1.0
asymptotically. A bonus therefore still ranks a slot higher when the raw
score is already past 1.0. This differs from a plain clamp to [0, 1] only
for raw scores above the knee: a raw 0.9 comes out near 0.88, not 0.9.
"""

import math
from datetime import datetime
from typing import List, Tuple

from .models import Conflict, ConflictSeverity, Customer, Technician, Urgency


BASELINE_CONFIDENCE = 1.0
CONFLICT_PENALTIES = {
    ConflictSeverity.HIGH: 0.5,
    ConflictSeverity.MEDIUM: 0.2,
    ConflictSeverity.LOW: 0.1,
}
PREFERRED_TIME_BONUS = 0.2
# Flat until per-technician service history is weighted in
EXPERIENCE_BONUS = 0.1
URGENCY_ADJUSTMENTS = {
    Urgency.EMERGENCY: 0.3,
    Urgency.HIGH: 0.2,
    Urgency.NORMAL: 0.0,
    Urgency.LOW: -0.1,
}

# Suggestions at or below this confidence are not offered
SUGGESTION_THRESHOLD = 0.3
MAX_SUGGESTIONS = 10
MAX_SUGGESTIONS_PER_DAY = 5

TECHNICIAN_BASELINE = 0.5
TECHNICIAN_AVAILABLE_BONUS = 0.3
TECHNICIAN_CONFLICT_PENALTY = 0.1
TECHNICIAN_SKILL_BONUS = 0.2
TECHNICIAN_HISTORY_BONUS = 0.1

SATURATION_KNEE = 0.8


def saturate(value: float) -> float:
    """Bounds a raw score to [0, 1], strictly increasing above zero."""
    if value <= SATURATION_KNEE:
        return max(0.0, value)
    headroom = 1.0 - SATURATION_KNEE
    return SATURATION_KNEE + headroom * (1.0 - math.exp(-(value - SATURATION_KNEE) / headroom))


def score_slot(
    customer: Customer,
    technician: Technician,
    start_time: datetime,
    conflicts: List[Conflict],
    urgency: Urgency = Urgency.NORMAL,
) -> float:
    """
    Scores a (customer, technician, slot) triple.

    Starts from 1.0, subtracts per-conflict penalties by severity, adds the
    customer preferred-time bonus when the slot's start hour is listed, a
    flat experience bonus and the urgency adjustment. Intermediate values may
    leave [0, 1]; the result is bounded with saturate().

    Args:
        customer: The customer being booked.
        technician: The candidate technician.
        start_time: Slot start (organization-local).
        conflicts: Conflicts reported for this technician and slot.
        urgency: Caller-supplied priority.

    Returns:
        float: Confidence in [0, 1].
    """
    confidence = BASELINE_CONFIDENCE

    for conflict in conflicts:
        confidence -= CONFLICT_PENALTIES.get(conflict.severity, 0.0)

    if customer.preferences.prefers_hour(start_time.hour):
        confidence += PREFERRED_TIME_BONUS

    confidence += EXPERIENCE_BONUS
    confidence += URGENCY_ADJUSTMENTS.get(Urgency(urgency), 0.0)

    return saturate(confidence)


def generate_reasoning(confidence: float, conflicts: List[Conflict], urgency: Urgency = Urgency.NORMAL) -> str:
    """Deterministic human-readable explanation of a slot score."""
    reasons = []

    if confidence > 0.8:
        reasons.append('Optimal time slot')
    elif confidence > 0.6:
        reasons.append('Good availability')
    else:
        reasons.append('Available slot')

    if conflicts:
        plural = 's' if len(conflicts) > 1 else ''
        reasons.append(f'{len(conflicts)} minor scheduling consideration{plural}')
    else:
        reasons.append('No scheduling conflicts')

    urgency = Urgency(urgency)
    if urgency == Urgency.EMERGENCY:
        reasons.append('Emergency priority')
    elif urgency == Urgency.HIGH:
        reasons.append('High priority')

    return ', '.join(reasons)


def score_technician(
    technician: Technician,
    service_type: str,
    conflicts: List[Conflict],
    completed_with_customer: int,
) -> Tuple[float, str]:
    """
    Scores a technician for a fixed slot.

    Args:
        technician: The candidate technician.
        service_type: Requested service type tag.
        conflicts: Conflicts for the technician at the requested time.
        completed_with_customer: Completed appointments this technician has
            done for the customer.

    Returns:
        Tuple[float, str]: (score in [0, 1], reasoning).
    """
    score = TECHNICIAN_BASELINE
    reasons = []

    if not conflicts:
        score += TECHNICIAN_AVAILABLE_BONUS
        reasons.append('Available')
    else:
        score -= len(conflicts) * TECHNICIAN_CONFLICT_PENALTY
        reasons.append(f'{len(conflicts)} conflicts')

    if technician.has_skill(service_type):
        score += TECHNICIAN_SKILL_BONUS
        reasons.append('Skilled in service type')

    if completed_with_customer > 0:
        score += TECHNICIAN_HISTORY_BONUS
        reasons.append('Previous customer experience')

    return saturate(score), ', '.join(reasons)
