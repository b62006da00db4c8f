"""Clinic automation backend: intake triage, bookings, reminders and reports."""

__version__ = "1.0.0"
