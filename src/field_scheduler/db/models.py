from sqlalchemy import Column, Integer, String, Float, ForeignKey, Boolean, DateTime, Enum, JSON
from sqlalchemy.orm import declarative_base, relationship

from field_scheduler.models import AppointmentStatus

# Define the base class for all models
Base = declarative_base()


class OrganizationSettings(Base):
    """SQLAlchemy model for an organization's raw scheduling settings."""
    __tablename__ = "organization_settings"

    organization_id = Column(String, primary_key=True)
    scheduling = Column(JSON, nullable=True) # Loosely-typed, resolved per operation


class Technician(Base):
    """SQLAlchemy model for a technician."""
    __tablename__ = "technicians"

    id = Column(String, primary_key=True)
    organization_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    skills = Column(JSON, nullable=False, default=list)
    active = Column(Boolean, default=True, nullable=False)
    current_address = Column(String, nullable=True)
    current_lat = Column(Float, nullable=True)
    current_lng = Column(Float, nullable=True)

    # Relationships
    appointments = relationship("Appointment", back_populates="technician")


class Customer(Base):
    """SQLAlchemy model for a customer."""
    __tablename__ = "customers"

    id = Column(String, primary_key=True)
    organization_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    address = Column(String, nullable=True)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    preferences = Column(JSON, nullable=True)

    # Relationships
    appointments = relationship("Appointment", back_populates="customer")


class Appointment(Base):
    """SQLAlchemy model for a booked visit. Times are stored as naive UTC."""
    __tablename__ = "appointments"

    id = Column(String, primary_key=True)
    organization_id = Column(String, nullable=False, index=True)
    customer_id = Column(String, ForeignKey("customers.id"), nullable=False)
    technician_id = Column(String, ForeignKey("technicians.id"), nullable=True, index=True)
    service_type = Column(String, nullable=False)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=False)
    estimated_duration = Column(Integer, nullable=True)
    status = Column(Enum(AppointmentStatus), nullable=False, default=AppointmentStatus.SCHEDULED)
    address = Column(String, nullable=True)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    notes = Column(String, nullable=True)
    version = Column(Integer, nullable=False, default=0)

    # Relationships
    customer = relationship("Customer", back_populates="appointments")
    technician = relationship("Technician", back_populates="appointments")
