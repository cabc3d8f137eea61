"""
Test configuration and fixtures.

Provides:
- FakeTransport: in-process realtime transport that records emits
- Conversation key / gate / cache / processed-id fixtures
- Appointment factory
"""
import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Any, List, Tuple

# Keep test logs out of the working tree
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="consult_chat_logs_"))

import pytest

from consult_chat.exceptions import ChatConnectionError
from consult_chat.schemas import Appointment, ConversationKey
from consult_chat.services.appointment_gate import AppointmentGate
from consult_chat.services.chat_session import ChatSession
from consult_chat.services.message_cache import InMemoryCacheStore, MessageCache
from consult_chat.services.socket_transport import EventDispatcher
from consult_chat.utils.id_set import BoundedIdSet

DOCTOR_ID = "doc-1"
PATIENT_ID = "pat-1"
OTHER_PATIENT_ID = "pat-2"

BASE_DATE = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


class FakeTransport(EventDispatcher):
    def __init__(self, connected: bool = True) -> None:
        super().__init__()
        self.connected = connected
        self.emitted: List[Tuple[str, Any]] = []

    async def connect(self, url: str, auth: dict | None = None) -> None:
        self.connected = True
        self.connect_args = (url, auth)
        await self.dispatch("connect")

    async def disconnect(self) -> None:
        self.connected = False
        await self.dispatch("disconnect")

    async def emit(self, event: str, data: Any) -> None:
        if not self.connected:
            raise ChatConnectionError(f"Cannot emit '{event}': not connected")
        self.emitted.append((event, data))

    def emitted_events(self, event: str) -> List[Any]:
        return [data for name, data in self.emitted if name == event]


def make_appointment(appt_id: str, status: str, days: int = 0, patient_id: str = PATIENT_ID) -> Appointment:
    return Appointment(
        id=appt_id,
        patient_id=patient_id,
        doctor_id=DOCTOR_ID,
        date=BASE_DATE + timedelta(days=days),
        status=status,
    )


def wire_message(msg_id: str, sender: str = PATIENT_ID, receiver: str = DOCTOR_ID, text: str = "hello", **extra) -> dict:
    payload = {
        "id": msg_id,
        "sender": sender,
        "receiver": receiver,
        "message": text,
        "timestamp": "2024-05-01T09:30:00Z",
    }
    payload.update(extra)
    return payload


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def key() -> ConversationKey:
    return ConversationKey(doctor_id=DOCTOR_ID, patient_id=PATIENT_ID)


@pytest.fixture
def open_gate(key) -> AppointmentGate:
    gate = AppointmentGate(key)
    gate.apply([make_appointment("a-1", "scheduled")])
    return gate


@pytest.fixture
def cache() -> MessageCache:
    return MessageCache(InMemoryCacheStore())


@pytest.fixture
def processed_ids() -> BoundedIdSet:
    return BoundedIdSet(100)


@pytest.fixture
def session(transport, key, open_gate, cache, processed_ids) -> ChatSession:
    return ChatSession(transport, key, open_gate, cache, processed_ids, history_timeout=0.05)
