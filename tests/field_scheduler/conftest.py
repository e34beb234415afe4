"""Shared fixtures for scheduling tests."""

import pytest
from datetime import date, datetime, timedelta, timezone

from field_scheduler.data_interface import InMemoryRecordStore, RecordingEventSink
from field_scheduler.models import (
    Appointment, AppointmentStatus, Customer, Location, Technician,
)
from field_scheduler.routing import FlatTravelTimeEstimator

ORG_ID = "org-1"
MONDAY = date(2024, 3, 4)


def at(hour: int, minute: int = 0, day: date = MONDAY) -> datetime:
    """UTC datetime on the given day (the default organization timezone)."""
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


def make_appointment(appointment_id: str, start: datetime, minutes: int = 60, **kwargs) -> Appointment:
    data = {
        "customer_id": "cust-1",
        "technician_id": "tech-1",
        "service_type": "hvac_repair",
        "status": AppointmentStatus.CONFIRMED,
        "location": Location(address="123 Main St"),
    }
    data.update(kwargs)
    return Appointment(id=appointment_id, start_time=start, end_time=start + timedelta(minutes=minutes), **data)


@pytest.fixture(name="at")
def at_fixture():
    return at


@pytest.fixture(name="make_appointment")
def make_appointment_fixture():
    return make_appointment


@pytest.fixture
def monday():
    return MONDAY


@pytest.fixture
def org_id():
    return ORG_ID


@pytest.fixture
def main_street():
    return Location(address="123 Main St", lat=40.7128, lng=-74.0060)


@pytest.fixture
def technician(main_street):
    return Technician(id="tech-1", name="Alex Rivera", skills=["hvac_repair"], current_location=main_street)


@pytest.fixture
def customer():
    return Customer(
        id="cust-1",
        name="Jordan Lee",
        email="jordan@example.com",
        address=Location(address="456 Oak Ave", lat=40.7306, lng=-73.9866),
        preferences={"preferredTimes": ["10:00"]},
    )


@pytest.fixture
def store(org_id, technician, customer):
    """In-memory store with one qualified technician and one customer."""
    store = InMemoryRecordStore()
    store.add_technician(org_id, technician)
    store.add_customer(org_id, customer)
    return store


@pytest.fixture
def events():
    return RecordingEventSink()


@pytest.fixture
def flat_estimator():
    return FlatTravelTimeEstimator(30)
