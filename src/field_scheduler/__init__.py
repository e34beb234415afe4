"""Appointment scheduling, conflict detection and route optimization for field-service teams."""

from .scheduler import SchedulingEngine, get_scheduling_engine

__all__ = ['SchedulingEngine', 'get_scheduling_engine']
