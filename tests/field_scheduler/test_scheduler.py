"""Tests for the scheduling engine operations."""

import pytest
from datetime import date, datetime, timedelta
from unittest.mock import AsyncMock

from field_scheduler.data_interface import EventSink
from field_scheduler.exceptions import (
    ConcurrentModificationError, EventDeliveryError, InvalidTimeRangeError,
    NoQualifiedResourceError, NotFoundError,
)
from field_scheduler.models import (
    AppointmentStatus, ConflictSeverity, Customer, Location, Technician, Urgency,
)
from field_scheduler.routing import TravelTimeEstimator
from field_scheduler.scheduler import SchedulingEngine, get_scheduling_engine

TUESDAY = date(2024, 3, 5)
WEDNESDAY = date(2024, 3, 6)
SUNDAY = date(2024, 3, 10)

POSITIONS = {"Depot": 0, "Ten": 10, "Twenty": 20, "Thirty": 30}


class LineEstimator(TravelTimeEstimator):
    """Addresses on a straight road, in minutes from the depot; unknown addresses sit at the depot."""

    async def estimate(self, origin, destination):
        first = POSITIONS.get(origin.address, 0) if origin else 0
        second = POSITIONS.get(destination.address, 0) if destination else 0
        return float(abs(first - second))


class FailingEventSink(EventSink):
    async def appointment_updated(self, organization_id, appointment_id, payload):
        raise EventDeliveryError("webhook down")

    async def broadcast(self, organization_id, event, payload):
        raise EventDeliveryError("webhook down")


@pytest.fixture
def engine(org_id, store, events):
    return SchedulingEngine(org_id, store, events=events)


@pytest.fixture
def second_technician(org_id, store):
    return store.add_technician(org_id, Technician(id="tech-2", name="Sam Generalist"))


# --- find_optimal_slots ---

@pytest.mark.asyncio
async def test_open_day_yields_high_confidence_suggestions(engine, monday, at):
    suggestions = await engine.find_optimal_slots("cust-1", 60, "hvac_repair", [monday])

    assert suggestions
    assert all(s.confidence >= 0.8 for s in suggestions)
    assert len(suggestions) == 5

    best = suggestions[0]
    # The customer prefers 10:00
    assert best.start_time == at(10)
    assert best.end_time == at(11)
    assert best.technician.id == "tech-1"
    assert best.reasoning == "Optimal time slot, No scheduling conflicts"
    # 10:30 also starts in the preferred hour
    assert [a.start_time for a in best.alternatives] == [at(10, 30), at(9), at(9, 30)]


@pytest.mark.asyncio
async def test_suggestions_are_sorted_and_capped(engine, second_technician, monday):
    suggestions = await engine.find_optimal_slots(
        "cust-1", 60, "hvac_repair", [monday, TUESDAY, WEDNESDAY], urgency="high"
    )

    assert len(suggestions) == 10
    confidences = [s.confidence for s in suggestions]
    assert confidences == sorted(confidences, reverse=True)
    assert all(0.0 <= c <= 1.0 for c in confidences)


@pytest.mark.asyncio
async def test_overlapping_slots_are_never_suggested(engine, store, org_id, monday, at, make_appointment):
    store.add_appointment(org_id, make_appointment("morning", at(9), minutes=180))

    suggestions = await engine.find_optimal_slots("cust-1", 60, "hvac_repair", [monday])

    assert suggestions
    for suggestion in suggestions:
        assert suggestion.start_time >= at(12)


@pytest.mark.asyncio
async def test_travel_conflicts_lower_confidence(engine, store, org_id, monday, at, make_appointment):
    store.add_appointment(org_id, make_appointment("morning", at(9), minutes=180))

    suggestions = await engine.find_optimal_slots("cust-1", 60, "hvac_repair", [monday])
    by_start = {s.start_time: s for s in suggestions}

    # 12:00 is inside the 30 minute travel window after the morning visit
    assert at(12) not in by_start or by_start[at(12)].confidence < by_start[suggestions[0].start_time].confidence
    assert suggestions[0].start_time >= at(12, 30)


@pytest.mark.asyncio
async def test_daily_cap_skips_technician(engine, store, org_id, monday, at, make_appointment):
    store.set_scheduling_preferences(org_id, {"maxDailyAppointments": 1})
    store.add_appointment(org_id, make_appointment("only", at(16)))

    assert await engine.find_optimal_slots("cust-1", 60, "hvac_repair", [monday]) == []
    assert await engine.find_optimal_slots("cust-1", 60, "hvac_repair", [TUESDAY]) != []


@pytest.mark.asyncio
async def test_closed_and_duplicate_dates(engine, monday):
    assert await engine.find_optimal_slots("cust-1", 60, "hvac_repair", [SUNDAY]) == []

    once = await engine.find_optimal_slots("cust-1", 60, "hvac_repair", [monday])
    twice = await engine.find_optimal_slots("cust-1", 60, "hvac_repair", [monday, monday])
    assert [s.start_time for s in once] == [s.start_time for s in twice]


@pytest.mark.asyncio
async def test_preferred_technician_wins_ties(org_id, store, second_technician, monday):
    store.add_customer(org_id, Customer(
        id="cust-2", name="Taylor", preferences={"preferredTechnicians": ["tech-2"]}
    ))
    engine = SchedulingEngine(org_id, store)

    suggestions = await engine.find_optimal_slots("cust-2", 60, "hvac_repair", [monday])

    assert suggestions[0].technician.id == "tech-2"


@pytest.mark.asyncio
async def test_least_loaded_technician_wins_ties(org_id, store, second_technician, monday, at, make_appointment):
    store.add_customer(org_id, Customer(id="cust-2", name="Taylor"))
    store.add_appointment(org_id, make_appointment("late", at(16, 30), minutes=30))
    engine = SchedulingEngine(org_id, store)

    suggestions = await engine.find_optimal_slots("cust-2", 60, "hvac_repair", [monday])

    assert suggestions[0].start_time == at(9)
    assert suggestions[0].technician.id == "tech-2"


@pytest.mark.asyncio
async def test_find_optimal_slots_errors(engine, org_id, store, monday):
    with pytest.raises(NotFoundError):
        await engine.find_optimal_slots("missing", 60, "hvac_repair", [monday])
    with pytest.raises(NoQualifiedResourceError):
        await engine.find_optimal_slots("cust-1", 60, "roofing", [monday])
    with pytest.raises(InvalidTimeRangeError):
        await engine.find_optimal_slots("cust-1", 0, "hvac_repair", [monday])


@pytest.mark.asyncio
async def test_generalists_qualify_for_any_service(engine, second_technician, monday):
    suggestions = await engine.find_optimal_slots("cust-1", 60, "roofing", [monday])

    assert {s.technician.id for s in suggestions} == {"tech-2"}


# --- detect_conflicts / check_conflicts ---

@pytest.mark.asyncio
async def test_detect_conflicts_reports_overlap(engine, store, org_id, at, make_appointment):
    store.add_appointment(org_id, make_appointment("appt-1", at(9), location=Location(address="123 Main St")))

    conflicts = await engine.detect_conflicts("tech-1", at(9, 30), at(10, 30))

    assert len(conflicts) == 1
    assert conflicts[0].severity == ConflictSeverity.HIGH
    assert conflicts[0].appointment_id == "appt-1"


@pytest.mark.asyncio
async def test_check_conflicts_summarizes(engine, store, org_id, at, make_appointment):
    store.add_appointment(org_id, make_appointment("appt-1", at(9)))

    report = await engine.check_conflicts("tech-1", at(10, 10), at(11), location="9 Elm St")

    assert report.can_schedule is True
    assert report.needs_attention is True
    assert report.medium == 1


@pytest.mark.asyncio
async def test_detect_conflicts_errors(engine, at):
    with pytest.raises(NotFoundError):
        await engine.detect_conflicts("nobody", at(9), at(10))
    with pytest.raises(InvalidTimeRangeError):
        await engine.detect_conflicts("tech-1", at(10), at(9))


@pytest.mark.asyncio
async def test_detect_conflicts_accepts_naive_times(engine, store, org_id, at, make_appointment):
    store.add_appointment(org_id, make_appointment("appt-1", at(9)))

    conflicts = await engine.detect_conflicts("tech-1", datetime(2024, 3, 4, 9, 30), datetime(2024, 3, 4, 10, 30))

    assert [c.appointment_id for c in conflicts] == ["appt-1"]
    assert conflicts[0].severity == ConflictSeverity.HIGH


@pytest.mark.asyncio
async def test_naive_times_are_read_in_organization_timezone(engine, store, org_id, at, make_appointment):
    store.set_scheduling_preferences(org_id, {"timezone": "America/New_York"})
    store.add_appointment(org_id, make_appointment("appt-1", at(9)))

    # 04:30 EST is 09:30 UTC
    overlapping = await engine.detect_conflicts("tech-1", datetime(2024, 3, 4, 4, 30), datetime(2024, 3, 4, 5, 30))
    # 09:30 EST is 14:30 UTC, long after the visit
    clear = await engine.detect_conflicts("tech-1", datetime(2024, 3, 4, 9, 30), datetime(2024, 3, 4, 10, 30))

    assert [c.appointment_id for c in overlapping] == ["appt-1"]
    assert clear == []


# --- predict_optimal_technician ---

@pytest.mark.asyncio
async def test_predict_prefers_skilled_technician(engine, second_technician, at):
    prediction = await engine.predict_optimal_technician("cust-1", "hvac_repair", at(10))

    assert prediction.technician_id == "tech-1"
    assert prediction.reasoning == "Available, Skilled in service type"
    assert 0.0 <= prediction.confidence <= 1.0


@pytest.mark.asyncio
async def test_predict_avoids_busy_technician(engine, store, org_id, second_technician, at, make_appointment):
    store.add_appointment(org_id, make_appointment("busy", at(10)))

    prediction = await engine.predict_optimal_technician("cust-1", "hvac_repair", at(10), location="1 Elm St")

    assert prediction.technician_id == "tech-2"
    assert prediction.reasoning == "Available"


@pytest.mark.asyncio
async def test_predict_rewards_history(engine, store, org_id, at, make_appointment):
    store.add_technician(org_id, Technician(id="tech-3", name="Robin", skills=["hvac_repair"]))
    store.add_appointment(org_id, make_appointment(
        "past", at(9, day=date(2024, 2, 1)), technician_id="tech-3", status=AppointmentStatus.COMPLETED
    ))

    prediction = await engine.predict_optimal_technician("cust-1", "hvac_repair", at(10))

    assert prediction.technician_id == "tech-3"
    assert "Previous customer experience" in prediction.reasoning


@pytest.mark.asyncio
async def test_predict_accepts_naive_time(engine, store, org_id, second_technician, at, make_appointment):
    store.add_appointment(org_id, make_appointment("busy", at(10)))

    prediction = await engine.predict_optimal_technician(
        "cust-1", "hvac_repair", datetime(2024, 3, 4, 10), location="1 Elm St"
    )

    assert prediction.technician_id == "tech-2"


@pytest.mark.asyncio
async def test_predict_errors(engine, at):
    with pytest.raises(NotFoundError):
        await engine.predict_optimal_technician("missing", "hvac_repair", at(10))
    with pytest.raises(NoQualifiedResourceError):
        await engine.predict_optimal_technician("cust-1", "roofing", at(10))


# --- optimize_schedule ---

@pytest.mark.asyncio
async def test_optimize_empty_day(engine, monday):
    result = await engine.optimize_schedule(monday)

    assert result.optimized is False
    assert result.changes == []
    assert result.efficiency.travel_time_reduced == 0
    assert result.efficiency.utilization_improved == 0
    assert result.efficiency.customer_satisfaction_impact == 0


@pytest.fixture
def zigzag_day(org_id, store, at, make_appointment):
    store.add_technician(org_id, Technician(
        id="tech-1", name="Alex Rivera", skills=["hvac_repair"], current_location=Location(address="Depot")
    ))
    for appointment_id, hour, address in [("far", 9, "Thirty"), ("near", 11, "Ten"), ("middle", 13, "Twenty")]:
        store.add_appointment(org_id, make_appointment(
            appointment_id, at(hour), location=Location(address=address), notes="Gate code 1234"
        ))


@pytest.mark.asyncio
async def test_optimize_proposes_without_writing(org_id, store, events, zigzag_day, monday):
    engine = SchedulingEngine(org_id, store, estimator=LineEstimator(), events=events)

    result = await engine.optimize_schedule(monday)

    assert result.optimized is True
    assert result.applied is False
    assert result.efficiency.travel_time_reduced == 30.0
    assert store.writes == 0
    assert events.events == []


@pytest.mark.asyncio
async def test_optimize_auto_apply_writes_changes(org_id, store, events, zigzag_day, monday, at):
    engine = SchedulingEngine(org_id, store, estimator=LineEstimator(), events=events)

    result = await engine.optimize_schedule(monday, auto_apply=True)

    assert result.applied is True
    assert store.writes == len(result.changes) == 3
    near = await store.get_appointment(org_id, "near")
    assert near.start_time == at(9)
    assert near.version == 1
    assert near.notes.startswith("Gate code 1234\n\nOptimized: Route reordered")
    assert [e["event"] for e in events.events] == ["appointment.updated"] * 3 + ["schedule.optimized"]


@pytest.mark.asyncio
async def test_optimize_leaves_in_progress_and_completed_alone(org_id, store, events, zigzag_day, monday, at, make_appointment):
    store.add_appointment(org_id, make_appointment("done", at(8), minutes=30, status=AppointmentStatus.COMPLETED))
    engine = SchedulingEngine(org_id, store, estimator=LineEstimator(), events=events)

    result = await engine.optimize_schedule(monday, auto_apply=True)

    assert "done" not in {c.appointment_id for c in result.changes}
    assert (await store.get_appointment(org_id, "done")).version == 0


# --- auto_reschedule ---

@pytest.mark.asyncio
async def test_reschedule_missing_appointment(engine, store):
    result = await engine.auto_reschedule("nope", "Customer request")

    assert result.success is False
    assert result.message == "Appointment not found"
    assert store.writes == 0


@pytest.mark.asyncio
async def test_reschedule_moves_to_best_slot(engine, store, events, org_id, at, make_appointment):
    store.add_appointment(org_id, make_appointment("appt-1", at(9), notes="Bring ladder"))

    result = await engine.auto_reschedule("appt-1", "Customer request")

    assert result.success is True
    assert result.new_start_time == at(10)
    assert result.new_end_time == at(11)
    assert result.alternative_technician is None
    assert result.message == "Appointment rescheduled to 2024-03-04 10:00"

    stored = await store.get_appointment(org_id, "appt-1")
    assert stored.start_time == at(10)
    assert stored.version == 1
    assert stored.notes == "Bring ladder\n\nRescheduled: Customer request"
    assert events.events[0]["event"] == "appointment.updated"
    assert events.events[0]["appointment_id"] == "appt-1"


@pytest.mark.asyncio
async def test_reschedule_reports_alternative_technician(engine, store, org_id, second_technician, at, make_appointment):
    store.add_technician(org_id, Technician(id="tech-1", name="Alex Rivera", skills=["hvac_repair"], active=False))
    store.add_appointment(org_id, make_appointment("appt-1", at(9)))

    result = await engine.auto_reschedule("appt-1", "Technician out sick")

    assert result.success is True
    assert result.alternative_technician == "tech-2"
    assert (await store.get_appointment(org_id, "appt-1")).technician_id == "tech-2"


@pytest.mark.asyncio
async def test_reschedule_without_alternatives(engine, store, org_id, monday, at, make_appointment):
    store.set_scheduling_preferences(org_id, {"blackoutDates": [monday, TUESDAY, WEDNESDAY]})
    store.add_appointment(org_id, make_appointment("appt-1", at(9)))

    result = await engine.auto_reschedule("appt-1", "Weather")

    assert result.success is False
    assert result.message == "No alternative slots available"
    assert store.writes == 0


@pytest.mark.asyncio
async def test_reschedule_version_conflict_propagates(engine, store, org_id, at, make_appointment):
    stored = store.add_appointment(org_id, make_appointment("appt-1", at(9), version=2))
    stale = stored.model_copy(update={"version": 1})
    store.get_appointment = AsyncMock(return_value=stale)

    with pytest.raises(ConcurrentModificationError):
        await engine.auto_reschedule("appt-1", "Customer request")
    assert store.writes == 0


@pytest.mark.asyncio
async def test_reschedule_survives_event_delivery_failure(org_id, store, at, make_appointment):
    store.add_appointment(org_id, make_appointment("appt-1", at(9)))
    engine = get_scheduling_engine(org_id, store, events=FailingEventSink())

    result = await engine.auto_reschedule("appt-1", "Customer request")

    assert result.success is True
    assert store.writes == 1


@pytest.mark.asyncio
async def test_reschedule_candidates_span_three_days(engine, store, org_id, monday, at, make_appointment):
    store.set_scheduling_preferences(org_id, {"blackoutDates": [monday, TUESDAY]})
    store.add_appointment(org_id, make_appointment("appt-1", at(9)))

    result = await engine.auto_reschedule("appt-1", "Weather")

    assert result.success is True
    assert result.new_start_time.date() == WEDNESDAY
    assert result.new_start_time - at(10, day=WEDNESDAY) == timedelta(0)


@pytest.mark.asyncio
async def test_urgency_enum_and_string_are_equivalent(engine, monday):
    as_enum = await engine.find_optimal_slots("cust-1", 60, "hvac_repair", [monday], urgency=Urgency.LOW)
    as_text = await engine.find_optimal_slots("cust-1", 60, "hvac_repair", [monday], urgency="low")

    assert [s.confidence for s in as_enum] == [s.confidence for s in as_text]
