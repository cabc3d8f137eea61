from datetime import datetime, timezone
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, Dict, Any

from consult_chat.constants import AppointmentStatus, FileKind, LOCAL_ID_PREFIX

# -------------------- Conversation --------------------


class ConversationKey(BaseModel):
    """The (doctor, patient) pair scoping a chat channel."""

    doctor_id: str
    patient_id: str

    class Config:
        frozen = True

    @property
    def storage_key(self) -> str:
        return f"chat_{self.patient_id}_{self.doctor_id}"

    def join_payload(self) -> Dict[str, str]:
        """Body of the join/leave socket events."""
        return {"patientId": self.patient_id, "doctorId": self.doctor_id}

    def involves(self, sender: str, receiver: str) -> bool:
        """True when the pair (sender, receiver) is this conversation in either direction."""
        return (sender == self.doctor_id and receiver == self.patient_id) or (
            sender == self.patient_id and receiver == self.doctor_id
        )


# -------------------- Messages --------------------


class Message(BaseModel):
    """Canonical chat message. Immutable once built."""

    id: str
    sender: str
    receiver: str
    text: str = ""
    timestamp: datetime
    file_url: Optional[str] = None
    file_type: Optional[FileKind] = None
    file_name: Optional[str] = None

    class Config:
        frozen = True

    @property
    def is_local(self) -> bool:
        """Optimistic entry that has not been confirmed by the transport."""
        return self.id.startswith(LOCAL_ID_PREFIX)

    @property
    def has_file(self) -> bool:
        return bool(self.file_url)


# -------------------- Appointments --------------------


class Ticket(BaseModel):
    id: str
    notes: Optional[str] = None
    status: Optional[str] = None


class Appointment(BaseModel):
    """Appointment between a doctor and a patient; the unit of chat authorization."""

    id: str
    patient_id: str
    doctor_id: Optional[str] = None
    date: datetime
    status: str = AppointmentStatus.PENDING.value
    ticket: Optional[Ticket] = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_relations(cls, data: Any) -> Any:
        # The doctor listing embeds patient/doctor objects instead of plain ids
        if isinstance(data, dict):
            data = dict(data)
            patient = data.get("patient")
            if not data.get("patient_id") and isinstance(patient, dict):
                data["patient_id"] = patient.get("id")
            doctor = data.get("doctor")
            if not data.get("doctor_id") and isinstance(doctor, dict):
                data["doctor_id"] = doctor.get("id")
        return data

    @field_validator("id", "patient_id", "doctor_id", mode="before")
    @classmethod
    def _ids_as_str(cls, value: Any) -> Any:
        if value is None:
            return value
        return str(value)

    @field_validator("date")
    @classmethod
    def _date_as_utc(cls, value: datetime) -> datetime:
        # Date-only records come back naive; compare everything in UTC
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> str:
        if value is None:
            return AppointmentStatus.PENDING.value
        return str(value).strip().lower()

    @property
    def known_status(self) -> Optional[AppointmentStatus]:
        """Status as enum, or None for values outside the lifecycle."""
        try:
            return AppointmentStatus(self.status)
        except ValueError:
            return None


class GateDecision(BaseModel):
    """Write permission of a conversation derived from its current appointment."""

    appointment: Optional[Appointment] = None
    status: Optional[str] = None
    can_write: bool
    lock_reason: str = ""

    @property
    def locked(self) -> bool:
        return not self.can_write


# -------------------- Uploads / Alerts --------------------


class UploadSlot(BaseModel):
    """Destination returned by the signed-upload collaborator."""

    url: str
    key: str


class Alert(BaseModel):
    """Local alert payload; peer_id lets a tap open that conversation."""

    title: str
    body: str
    peer_id: str
    message_id: Optional[str] = None
    data: Dict[str, str] = Field(default_factory=dict)
