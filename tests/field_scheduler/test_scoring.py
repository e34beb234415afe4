"""Tests for slot and technician scoring."""

import pytest

from field_scheduler.models import Conflict, ConflictSeverity, Customer, Technician, Urgency
from field_scheduler.scoring import (
    SATURATION_KNEE, generate_reasoning, saturate, score_slot, score_technician,
)


def conflict(severity: ConflictSeverity, appointment_id: str = "appt-x") -> Conflict:
    return Conflict(appointment_id=appointment_id, description="test", severity=severity)


@pytest.fixture
def plain_customer():
    return Customer(id="cust-2", name="No Preferences")


def test_saturate_bounds_and_monotonicity():
    assert saturate(-0.4) == 0.0
    assert saturate(0.0) == 0.0
    assert saturate(0.55) == 0.55
    assert saturate(SATURATION_KNEE) == SATURATION_KNEE

    values = [0.81, 1.0, 1.1, 1.3, 1.6, 3.0]
    saturated = [saturate(v) for v in values]
    assert saturated == sorted(saturated)
    assert len(set(saturated)) == len(saturated)
    assert all(SATURATION_KNEE < s <= 1.0 for s in saturated)


def test_saturate_compresses_only_above_the_knee():
    assert saturate(0.79) == 0.79
    assert saturate(0.9) == pytest.approx(0.8787, abs=1e-4)
    assert saturate(0.9) < 0.9


def test_preferred_time_scores_strictly_higher(customer, technician, at):
    preferred = score_slot(customer, technician, at(10), [])
    other = score_slot(customer, technician, at(14), [])

    assert preferred > other
    assert other >= 0.8


def test_conflicts_and_urgency_adjust_score(plain_customer, technician, at):
    clean = score_slot(plain_customer, technician, at(9), [])
    medium = score_slot(plain_customer, technician, at(9), [conflict(ConflictSeverity.MEDIUM)])
    high_low_urgency = score_slot(
        plain_customer, technician, at(9), [conflict(ConflictSeverity.HIGH)], Urgency.LOW
    )
    emergency = score_slot(plain_customer, technician, at(9), [], Urgency.EMERGENCY)

    assert medium < clean < emergency
    # 1.0 - 0.5 + 0.1 - 0.1
    assert high_low_urgency == pytest.approx(0.5)


@pytest.mark.parametrize("urgency", list(Urgency))
@pytest.mark.parametrize("severities", [
    [],
    [ConflictSeverity.LOW],
    [ConflictSeverity.HIGH, ConflictSeverity.HIGH, ConflictSeverity.HIGH],
    [ConflictSeverity.MEDIUM] * 8,
])
def test_score_slot_stays_within_bounds(customer, technician, at, urgency, severities):
    score = score_slot(customer, technician, at(10), [conflict(s) for s in severities], urgency)

    assert 0.0 <= score <= 1.0


def test_urgency_accepts_plain_strings(plain_customer, technician, at):
    assert score_slot(plain_customer, technician, at(9), [], "high") == \
        score_slot(plain_customer, technician, at(9), [], Urgency.HIGH)


def test_generate_reasoning():
    assert generate_reasoning(0.95, []) == "Optimal time slot, No scheduling conflicts"
    assert generate_reasoning(0.7, [conflict(ConflictSeverity.MEDIUM)], Urgency.HIGH) == \
        "Good availability, 1 minor scheduling consideration, High priority"
    assert generate_reasoning(
        0.5, [conflict(ConflictSeverity.MEDIUM), conflict(ConflictSeverity.LOW)], Urgency.EMERGENCY
    ) == "Available slot, 2 minor scheduling considerations, Emergency priority"


def test_score_technician_rewards_skill_and_history(technician):
    generalist = Technician(id="tech-2", name="Sam Generalist")

    skilled, skilled_reason = score_technician(technician, "hvac_repair", [], completed_with_customer=0)
    returning, returning_reason = score_technician(technician, "hvac_repair", [], completed_with_customer=3)
    general, general_reason = score_technician(generalist, "hvac_repair", [], completed_with_customer=0)

    assert returning > skilled > general
    assert skilled_reason == "Available, Skilled in service type"
    assert returning_reason == "Available, Skilled in service type, Previous customer experience"
    assert general_reason == "Available"
    # 0.5 + 0.3
    assert general == pytest.approx(0.8)


def test_score_technician_penalizes_conflicts(technician):
    score, reasoning = score_technician(
        technician, "plumbing", [conflict(ConflictSeverity.HIGH), conflict(ConflictSeverity.MEDIUM)], 0
    )

    # 0.5 - 2 * 0.1
    assert score == pytest.approx(0.3)
    assert reasoning == "2 conflicts"
