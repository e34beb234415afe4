from field_scheduler.db.models import Base, Technician, Customer, Appointment, OrganizationSettings
from field_scheduler.db.database import engine, get_db, SessionLocal

__all__ = [
    'Base',
    'Technician',
    'Customer',
    'Appointment',
    'OrganizationSettings',
    'engine',
    'get_db',
    'SessionLocal'
]
