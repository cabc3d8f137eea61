"""
Process-wide wiring of the chat core for the signed-in doctor.

Owns what outlives a single conversation (presence, processed message ids,
notification suppressor) and at most one open ChatSession.
"""
import asyncio
from typing import Any, Optional

from consult_chat.config import Settings, get_settings
from consult_chat.constants import ChatEvent
from consult_chat.schemas import ConversationKey
from consult_chat.services.alert_service import AlertSink, RecordingAlertSink
from consult_chat.services.appointment_gate import AppointmentGate, AppointmentSource
from consult_chat.services.attachment_pipeline import AttachmentPipeline
from consult_chat.services.chat_session import ChatSession
from consult_chat.services.message_cache import FileCacheStore, MessageCache
from consult_chat.services.notification_suppressor import NotificationSuppressor
from consult_chat.services.presence import PresenceRegistry
from consult_chat.services.storage_client import UploadSlotProvider
from consult_chat.utils.id_set import BoundedIdSet
from consult_chat.utils.logger import get_logger

logger = get_logger("chat_client")


def _user_id(payload: Any) -> Optional[str]:
    """Presence events carry either a bare id or an object with one."""
    if isinstance(payload, dict):
        value = payload.get("userId") or payload.get("user_id") or payload.get("id")
        return str(value) if value else None
    if payload:
        return str(payload)
    return None


class ChatClient:
    def __init__(
        self,
        doctor_id: str,
        transport,
        appointments: Optional[AppointmentSource] = None,
        slots: Optional[UploadSlotProvider] = None,
        alert_sink: Optional[AlertSink] = None,
        cache: Optional[MessageCache] = None,
        settings: Optional[Settings] = None,
        upload_transport=None,
    ) -> None:
        self.settings = settings or get_settings()
        self.doctor_id = doctor_id
        self.transport = transport
        self.appointments = appointments
        self.slots = slots
        self.cache = cache or MessageCache(FileCacheStore(self.settings.CACHE_DIR))
        self.upload_transport = upload_transport

        self.presence = PresenceRegistry()
        self.processed_ids = BoundedIdSet(self.settings.PROCESSED_IDS_CAPACITY)
        self.suppressor = NotificationSuppressor(
            doctor_id,
            alert_sink or RecordingAlertSink(),
            throttle_seconds=self.settings.NOTIFY_THROTTLE_SECONDS,
            processed_ids=self.processed_ids,
        )

        self.session: Optional[ChatSession] = None
        self._refresh_task: Optional[asyncio.Task] = None

        transport.add_listener(ChatEvent.USER_CONNECTED, self._on_user_connected)
        transport.add_listener(ChatEvent.USER_DISCONNECTED, self._on_user_disconnected)
        transport.add_listener(ChatEvent.ONLINE_USERS, self._on_online_users)
        transport.add_listener(ChatEvent.DISCONNECT, self._on_transport_disconnect)
        transport.add_listener(ChatEvent.RECEIVE_MESSAGE, self.suppressor.handle_incoming)

    async def connect(self) -> None:
        await self.transport.connect(self.settings.SOCKET_URL, auth={"userId": self.doctor_id})

    # -------------------- presence --------------------

    def _on_user_connected(self, payload: Any) -> None:
        user_id = _user_id(payload)
        if user_id:
            self.presence.mark_online(user_id)

    def _on_user_disconnected(self, payload: Any) -> None:
        user_id = _user_id(payload)
        if user_id:
            self.presence.mark_offline(user_id)

    def _on_online_users(self, payload: Any) -> None:
        if not isinstance(payload, list):
            logger.warning("Ignoring online-users payload of type %s", type(payload).__name__)
            return
        self.presence.replace_all(uid for uid in (_user_id(p) for p in payload) if uid)

    def _on_transport_disconnect(self, *_: Any) -> None:
        # Presence is only meaningful for the live connection
        self.presence.clear()

    # -------------------- conversations --------------------

    async def open_conversation(self, patient_id: str) -> ChatSession:
        """Close the current conversation (if any) and open the one with `patient_id`."""
        await self.close_conversation()

        key = ConversationKey(doctor_id=self.doctor_id, patient_id=patient_id)
        gate = AppointmentGate(key, self.appointments)
        session = ChatSession(
            self.transport,
            key,
            gate,
            self.cache,
            self.processed_ids,
            history_timeout=self.settings.HISTORY_TIMEOUT_SECONDS,
            public_base=self.settings.S3_PUBLIC_BASE,
        )
        self.session = session
        self.suppressor.focus(patient_id)

        if self.appointments is not None:
            await gate.refresh()
            self._refresh_task = asyncio.create_task(
                gate.run_periodic_refresh(self.settings.APPOINTMENT_REFRESH_SECONDS)
            )
        else:
            gate.apply(())

        await session.open()
        return session

    async def close_conversation(self) -> None:
        session = self.session
        if session is None:
            return
        self.session = None
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None
        self.suppressor.blur(session.peer_id)
        await session.close()

    def attachments(self) -> AttachmentPipeline:
        """Pipeline bound to the currently open conversation."""
        if self.session is None:
            raise RuntimeError("No conversation is open")
        if self.slots is None:
            raise RuntimeError("No upload slot provider configured")
        return AttachmentPipeline(
            self.slots,
            self.session,
            self.settings.S3_PUBLIC_BASE,
            http_transport=self.upload_transport,
        )

    async def shutdown(self) -> None:
        await self.close_conversation()
        await self.cache.flush()
        self.cache.close()
        disconnect = getattr(self.transport, "disconnect", None)
        if disconnect is not None:
            await disconnect()
