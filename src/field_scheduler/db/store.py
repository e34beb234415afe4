"""
RecordStore backed by the SQLAlchemy tables in field_scheduler.db.models.

Sessions are synchronous; each call runs in a worker thread with its own
session so the event loop is never blocked. Datetimes are stored as naive
UTC and come back timezone-aware.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..data_interface import RecordStore
from ..exceptions import ConcurrentModificationError, NotFoundError, StoreError
from ..models import Appointment, AppointmentStatus, Customer, Location, Technician
from . import models as db

logger = logging.getLogger(__name__)


def _to_db_time(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db_time(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _location(address: Optional[str], lat: Optional[float], lng: Optional[float]) -> Optional[Location]:
    if address is None:
        return None
    return Location(address=address, lat=lat, lng=lng)


# --- Conversion Functions (Row -> Internal Model) ---

def _row_to_technician(row: db.Technician) -> Technician:
    return Technician(
        id=row.id,
        name=row.name,
        skills=list(row.skills or []),
        active=row.active,
        current_location=_location(row.current_address, row.current_lat, row.current_lng),
    )


def _row_to_customer(row: db.Customer) -> Customer:
    return Customer(
        id=row.id,
        name=row.name,
        email=row.email,
        phone=row.phone,
        address=_location(row.address, row.lat, row.lng),
        preferences=row.preferences,
    )


def _row_to_appointment(row: db.Appointment) -> Appointment:
    return Appointment(
        id=row.id,
        customer_id=row.customer_id,
        technician_id=row.technician_id,
        service_type=row.service_type,
        start_time=_from_db_time(row.start_time),
        end_time=_from_db_time(row.end_time),
        estimated_duration=row.estimated_duration,
        status=row.status,
        location=_location(row.address, row.lat, row.lng),
        notes=row.notes,
        version=row.version,
    )


def _appointment_columns(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Maps Appointment field changes onto table columns."""
    values = {}
    for key, value in changes.items():
        if key in ('start_time', 'end_time'):
            values[key] = _to_db_time(value)
        elif key == 'location':
            values['address'] = value.address if value else None
            values['lat'] = value.lat if value else None
            values['lng'] = value.lng if value else None
        elif key == 'status':
            values[key] = AppointmentStatus(value)
        elif key in ('id', 'version'):
            continue
        else:
            values[key] = value
    return values


class SqlAlchemyRecordStore(RecordStore):
    """Organization-scoped RecordStore over a SQLAlchemy session factory."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def _run(self, operation: Callable[[Session], Any]) -> Any:
        def call():
            with self.session_factory() as session:
                return operation(session)

        try:
            return await asyncio.to_thread(call)
        except SQLAlchemyError as exc:
            logger.exception("Record store operation failed")
            raise StoreError(f"Database error: {exc}") from exc

    # Seeding helpers (synchronous; used by fixtures and data loaders)

    def add_technician(self, organization_id: str, technician: Technician) -> Technician:
        location = technician.current_location
        self._add(db.Technician(
            id=technician.id,
            organization_id=organization_id,
            name=technician.name,
            skills=list(technician.skills),
            active=technician.active,
            current_address=location.address if location else None,
            current_lat=location.lat if location else None,
            current_lng=location.lng if location else None,
        ))
        return technician

    def add_customer(self, organization_id: str, customer: Customer) -> Customer:
        self._add(db.Customer(
            id=customer.id,
            organization_id=organization_id,
            name=customer.name,
            email=customer.email,
            phone=customer.phone,
            address=customer.address.address if customer.address else None,
            lat=customer.address.lat if customer.address else None,
            lng=customer.address.lng if customer.address else None,
            preferences=customer.preferences.model_dump(),
        ))
        return customer

    def add_appointment(self, organization_id: str, appointment: Appointment) -> Appointment:
        row = db.Appointment(
            id=appointment.id,
            organization_id=organization_id,
            customer_id=appointment.customer_id,
            technician_id=appointment.technician_id,
            service_type=appointment.service_type,
            estimated_duration=appointment.estimated_duration,
            notes=appointment.notes,
            version=appointment.version,
            **_appointment_columns({
                'start_time': appointment.start_time,
                'end_time': appointment.end_time,
                'status': appointment.status,
                'location': appointment.location,
            }),
        )
        self._add(row)
        return appointment

    def set_scheduling_preferences(self, organization_id: str, raw: Dict[str, Any]):
        with self.session_factory() as session:
            session.merge(db.OrganizationSettings(organization_id=organization_id, scheduling=raw))
            session.commit()

    def _add(self, row):
        with self.session_factory() as session:
            session.add(row)
            session.commit()

    # RecordStore

    async def get_customer(self, organization_id: str, customer_id: str) -> Optional[Customer]:
        def operation(session: Session):
            row = session.scalar(select(db.Customer).where(
                db.Customer.organization_id == organization_id, db.Customer.id == customer_id
            ))
            return _row_to_customer(row) if row else None
        return await self._run(operation)

    async def get_appointment(self, organization_id: str, appointment_id: str) -> Optional[Appointment]:
        def operation(session: Session):
            row = session.scalar(select(db.Appointment).where(
                db.Appointment.organization_id == organization_id, db.Appointment.id == appointment_id
            ))
            return _row_to_appointment(row) if row else None
        return await self._run(operation)

    async def get_technician(self, organization_id: str, technician_id: str) -> Optional[Technician]:
        def operation(session: Session):
            row = session.scalar(select(db.Technician).where(
                db.Technician.organization_id == organization_id, db.Technician.id == technician_id
            ))
            return _row_to_technician(row) if row else None
        return await self._run(operation)

    async def list_technicians(self, organization_id: str, active_only: bool = True) -> List[Technician]:
        def operation(session: Session):
            stmt = select(db.Technician).where(db.Technician.organization_id == organization_id)
            if active_only:
                stmt = stmt.where(db.Technician.active.is_(True))
            stmt = stmt.order_by(db.Technician.id)
            return [_row_to_technician(row) for row in session.scalars(stmt)]
        return await self._run(operation)

    async def list_appointments(
        self,
        organization_id: str,
        technician_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        statuses: Optional[Iterable[AppointmentStatus]] = None,
    ) -> List[Appointment]:
        status_filter = [AppointmentStatus(s) for s in statuses] if statuses is not None else None

        def operation(session: Session):
            stmt = select(db.Appointment).where(db.Appointment.organization_id == organization_id)
            if technician_id is not None:
                stmt = stmt.where(db.Appointment.technician_id == technician_id)
            if customer_id is not None:
                stmt = stmt.where(db.Appointment.customer_id == customer_id)
            if start is not None:
                stmt = stmt.where(db.Appointment.start_time >= _to_db_time(start))
            if end is not None:
                stmt = stmt.where(db.Appointment.start_time < _to_db_time(end))
            if status_filter is not None:
                stmt = stmt.where(db.Appointment.status.in_(status_filter))
            stmt = stmt.order_by(db.Appointment.start_time, db.Appointment.id)
            return [_row_to_appointment(row) for row in session.scalars(stmt)]
        return await self._run(operation)

    async def count_completed_appointments(self, organization_id: str, customer_id: str, technician_id: str) -> int:
        def operation(session: Session):
            return session.scalar(
                select(func.count()).select_from(db.Appointment).where(
                    db.Appointment.organization_id == organization_id,
                    db.Appointment.customer_id == customer_id,
                    db.Appointment.technician_id == technician_id,
                    db.Appointment.status == AppointmentStatus.COMPLETED,
                )
            ) or 0
        return await self._run(operation)

    async def get_scheduling_preferences(self, organization_id: str) -> Optional[Dict[str, Any]]:
        def operation(session: Session):
            row = session.get(db.OrganizationSettings, organization_id)
            return row.scheduling if row else None
        return await self._run(operation)

    async def update_appointment(
        self,
        organization_id: str,
        appointment_id: str,
        changes: Dict[str, Any],
        expected_version: int,
    ) -> Appointment:
        values = _appointment_columns(changes)
        values['version'] = expected_version + 1

        def operation(session: Session):
            result = session.execute(
                update(db.Appointment)
                .where(
                    db.Appointment.organization_id == organization_id,
                    db.Appointment.id == appointment_id,
                    db.Appointment.version == expected_version,
                )
                .values(**values)
            )
            if result.rowcount == 0:
                session.rollback()
                current = session.scalar(select(db.Appointment.version).where(
                    db.Appointment.organization_id == organization_id, db.Appointment.id == appointment_id
                ))
                if current is None:
                    raise NotFoundError("appointment", appointment_id)
                raise ConcurrentModificationError(appointment_id, expected_version, current)
            session.commit()
            row = session.get(db.Appointment, appointment_id)
            return _row_to_appointment(row)
        return await self._run(operation)
