"""Appointment-gated realtime messaging core for doctor/patient consultations."""

__version__ = "0.1.0"
