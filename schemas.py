"""Pydantic schemas for requests.

Only request bodies are defined here.  Responses are returned as plain
dicts from the endpoints.
"""
from typing import Optional

from pydantic import BaseModel


class BookingRequest(BaseModel):
    patient_full_name: Optional[str] = None
    patient_first_name: Optional[str] = None
    patient_middle_name: Optional[str] = None
    patient_last_name: Optional[str] = None
    patient_birthdate: Optional[str] = None
    patient_sex: Optional[str] = None
    contact_number: Optional[str] = None
    email_address: Optional[str] = None
    booked_by_name: Optional[str] = None
    relationship_to_patient: Optional[str] = None
    service_ref: Optional[str] = None
    preferred_date: Optional[str] = None
    reason_for_visit: Optional[str] = None
    medical_notes: Optional[str] = None


class CheckInRequest(BaseModel):
    patient_full_name: str
    email_address: str
    appointment_id: Optional[str] = None


class WalkinRequest(BaseModel):
    full_name: str
    email: Optional[str] = None
    phone_number: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    address: Optional[str] = None
    service_ref: Optional[str] = None
    priority_flag: str = "normal"
    patient_id: Optional[str] = None


class ActionRequest(BaseModel):
    passcode: str
    action: str
    entry_id: Optional[str] = None
    date: Optional[str] = None


class RescheduleRequest(BaseModel):
    passcode: str
    preferred_date: str


class CancelRequest(BaseModel):
    passcode: str
    reason: Optional[str] = None


class PasscodeRequest(BaseModel):
    passcode: str


class ReconcileDateRequest(BaseModel):
    passcode: str
    date: str
