"""
FSM module for the appointment lifecycle.

Public exports:
    - AppointmentFSM: Transition table and validation for appointment status
"""

from booking.fsm.appointment_fsm import AppointmentFSM

__all__ = ["AppointmentFSM"]
