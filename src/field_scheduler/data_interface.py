"""
Collaborator contracts consumed by the scheduling core.

- RecordStore: organization-scoped reads of technicians, customers,
  appointments and scheduling settings, plus versioned appointment writes.
- EventSink: fire-and-forget notifications (appointment updates and
  organization-wide broadcasts).

InMemoryRecordStore backs tests and local runs; the SQLAlchemy store lives
in field_scheduler.db.store.
"""

import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import httpx

from .exceptions import ConcurrentModificationError, EventDeliveryError, NotFoundError
from .models import Appointment, AppointmentStatus, Customer, Technician

logger = logging.getLogger(__name__)


# --- Record Store ---

class RecordStore(ABC):
    """Organization-scoped persistence used by the scheduling core."""

    @abstractmethod
    async def get_customer(self, organization_id: str, customer_id: str) -> Optional[Customer]:
        ...

    @abstractmethod
    async def get_appointment(self, organization_id: str, appointment_id: str) -> Optional[Appointment]:
        ...

    @abstractmethod
    async def get_technician(self, organization_id: str, technician_id: str) -> Optional[Technician]:
        ...

    @abstractmethod
    async def list_technicians(self, organization_id: str, active_only: bool = True) -> List[Technician]:
        ...

    @abstractmethod
    async def list_appointments(
        self,
        organization_id: str,
        technician_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        statuses: Optional[Iterable[AppointmentStatus]] = None,
    ) -> List[Appointment]:
        """
        Lists appointments ordered by start time.

        When start/end are given, only appointments whose start time falls in
        [start, end) are returned.
        """

    @abstractmethod
    async def count_completed_appointments(self, organization_id: str, customer_id: str, technician_id: str) -> int:
        ...

    @abstractmethod
    async def get_scheduling_preferences(self, organization_id: str) -> Optional[Dict[str, Any]]:
        """Raw scheduling settings, or None when the organization has none."""

    @abstractmethod
    async def update_appointment(
        self,
        organization_id: str,
        appointment_id: str,
        changes: Dict[str, Any],
        expected_version: int,
    ) -> Appointment:
        """
        Applies field changes if the stored version equals expected_version.

        Raises:
            NotFoundError: If the appointment does not exist.
            ConcurrentModificationError: If the version does not match.
        """


class InMemoryRecordStore(RecordStore):
    """Dictionary-backed store keyed by organization id."""

    def __init__(self):
        self.technicians: Dict[str, Dict[str, Technician]] = {}
        self.customers: Dict[str, Dict[str, Customer]] = {}
        self.appointments: Dict[str, Dict[str, Appointment]] = {}
        self.preferences: Dict[str, Dict[str, Any]] = {}
        self.writes = 0

    # Seeding helpers

    def add_technician(self, organization_id: str, technician: Technician) -> Technician:
        self.technicians.setdefault(organization_id, {})[technician.id] = technician
        return technician

    def add_customer(self, organization_id: str, customer: Customer) -> Customer:
        self.customers.setdefault(organization_id, {})[customer.id] = customer
        return customer

    def add_appointment(self, organization_id: str, appointment: Appointment) -> Appointment:
        self.appointments.setdefault(organization_id, {})[appointment.id] = appointment
        return appointment

    def set_scheduling_preferences(self, organization_id: str, raw: Dict[str, Any]):
        self.preferences[organization_id] = raw

    # RecordStore

    async def get_customer(self, organization_id: str, customer_id: str) -> Optional[Customer]:
        return self.customers.get(organization_id, {}).get(customer_id)

    async def get_appointment(self, organization_id: str, appointment_id: str) -> Optional[Appointment]:
        appointment = self.appointments.get(organization_id, {}).get(appointment_id)
        return appointment.model_copy(deep=True) if appointment else None

    async def get_technician(self, organization_id: str, technician_id: str) -> Optional[Technician]:
        return self.technicians.get(organization_id, {}).get(technician_id)

    async def list_technicians(self, organization_id: str, active_only: bool = True) -> List[Technician]:
        technicians = list(self.technicians.get(organization_id, {}).values())
        if active_only:
            technicians = [t for t in technicians if t.active]
        return technicians

    async def list_appointments(
        self,
        organization_id: str,
        technician_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        statuses: Optional[Iterable[AppointmentStatus]] = None,
    ) -> List[Appointment]:
        status_filter = set(statuses) if statuses is not None else None
        results = []
        for appointment in self.appointments.get(organization_id, {}).values():
            if technician_id is not None and appointment.technician_id != technician_id:
                continue
            if customer_id is not None and appointment.customer_id != customer_id:
                continue
            if start is not None and appointment.start_time < start:
                continue
            if end is not None and appointment.start_time >= end:
                continue
            if status_filter is not None and appointment.status not in status_filter:
                continue
            results.append(appointment.model_copy(deep=True))
        results.sort(key=lambda a: (a.start_time, a.id))
        return results

    async def count_completed_appointments(self, organization_id: str, customer_id: str, technician_id: str) -> int:
        return sum(
            1 for a in self.appointments.get(organization_id, {}).values()
            if a.customer_id == customer_id
            and a.technician_id == technician_id
            and a.status == AppointmentStatus.COMPLETED
        )

    async def get_scheduling_preferences(self, organization_id: str) -> Optional[Dict[str, Any]]:
        raw = self.preferences.get(organization_id)
        return copy.deepcopy(raw) if raw is not None else None

    async def update_appointment(
        self,
        organization_id: str,
        appointment_id: str,
        changes: Dict[str, Any],
        expected_version: int,
    ) -> Appointment:
        stored = self.appointments.get(organization_id, {}).get(appointment_id)
        if stored is None:
            raise NotFoundError("appointment", appointment_id)
        if stored.version != expected_version:
            raise ConcurrentModificationError(appointment_id, expected_version, stored.version)

        data = stored.model_dump()
        data.update(changes)
        data['version'] = stored.version + 1
        updated = Appointment(**data)
        self.appointments[organization_id][appointment_id] = updated
        self.writes += 1
        return updated.model_copy(deep=True)


# --- Event Sink ---

class EventSink(ABC):
    """Fire-and-forget notification channel (real-time broadcast)."""

    @abstractmethod
    async def appointment_updated(self, organization_id: str, appointment_id: str, payload: Dict[str, Any]):
        ...

    @abstractmethod
    async def broadcast(self, organization_id: str, event: str, payload: Dict[str, Any]):
        ...


class LoggingEventSink(EventSink):
    """Writes events to the log; used when no broadcast channel is configured."""

    async def appointment_updated(self, organization_id: str, appointment_id: str, payload: Dict[str, Any]):
        logger.info("appointment.updated org=%s appointment=%s", organization_id, appointment_id)

    async def broadcast(self, organization_id: str, event: str, payload: Dict[str, Any]):
        logger.info("%s org=%s", event, organization_id)


class RecordingEventSink(EventSink):
    """Keeps every event in memory, in emission order."""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    async def appointment_updated(self, organization_id: str, appointment_id: str, payload: Dict[str, Any]):
        self.events.append({
            "event": "appointment.updated",
            "organization_id": organization_id,
            "appointment_id": appointment_id,
            "payload": payload,
        })

    async def broadcast(self, organization_id: str, event: str, payload: Dict[str, Any]):
        self.events.append({"event": event, "organization_id": organization_id, "payload": payload})


class WebhookEventSink(EventSink):
    """Posts events as JSON to a webhook URL."""

    def __init__(self, url: str, api_key: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(10.0, connect=5.0))

    def _get_headers(self) -> Dict[str, str]:
        if not self.api_key:
            return {}
        return {"api-key": self.api_key}

    async def _post(self, body: Dict[str, Any]):
        try:
            response = await self._client.post(self.url, json=body, headers=self._get_headers())
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise EventDeliveryError(f"Event delivery to {self.url} failed: {exc}") from exc

    async def appointment_updated(self, organization_id: str, appointment_id: str, payload: Dict[str, Any]):
        await self._post({
            "event": "appointment.updated",
            "organization_id": organization_id,
            "appointment_id": appointment_id,
            "data": payload,
        })

    async def broadcast(self, organization_id: str, event: str, payload: Dict[str, Any]):
        await self._post({"event": event, "organization_id": organization_id, "data": payload})

    async def aclose(self):
        await self._client.aclose()
