"""
Decides, per incoming message, whether to raise a local alert.

Focus is an explicit event from the conversation screen rather than a
global pointer: `focus(peer)` when a conversation is shown, `blur()` when it
is left.
"""
import time
from typing import Any, Callable, Dict, Optional

from consult_chat.exceptions import MalformedMessage
from consult_chat.schemas import Alert, Message
from consult_chat.services.alert_service import AlertSink
from consult_chat.utils.id_set import BoundedIdSet
from consult_chat.utils.logger import get_logger
from consult_chat.utils.message_adapter import normalize_message

logger = get_logger("notifications")


def default_title(peer_id: str) -> str:
    return "New message"


class NotificationSuppressor:
    def __init__(
        self,
        self_id: str,
        sink: AlertSink,
        throttle_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        permission_granted: bool = True,
        title_for: Callable[[str], str] = default_title,
        processed_ids: Optional[BoundedIdSet] = None,
    ) -> None:
        self.self_id = self_id
        self.sink = sink
        self.throttle_seconds = throttle_seconds
        self.clock = clock
        self.permission_granted = permission_granted
        self.title_for = title_for
        # Shared with the chat sessions; ids already shown never alert
        self.processed_ids = processed_ids
        self._alerted = BoundedIdSet(processed_ids.capacity if processed_ids is not None else 5000)
        self._active_peer: Optional[str] = None
        self._last_alert_at: Dict[str, float] = {}

    @property
    def active_peer(self) -> Optional[str]:
        return self._active_peer

    def focus(self, peer_id: str) -> None:
        self._active_peer = peer_id

    def blur(self, peer_id: Optional[str] = None) -> None:
        """Clear focus; with `peer_id`, only if that peer is still the focused one."""
        if peer_id is None or peer_id == self._active_peer:
            self._active_peer = None

    def set_permission(self, granted: bool) -> None:
        self.permission_granted = granted

    def evaluate(self, message: Message) -> Optional[Alert]:
        """Alert for `message`, or None when suppressed. Records the throttle window."""
        if message.receiver != self.self_id:
            return None
        if message.sender == self._active_peer:
            return None
        if not self.permission_granted:
            return None
        if message.id in self._alerted or (self.processed_ids is not None and message.id in self.processed_ids):
            logger.debug("Already alerted or shown message %s", message.id)
            return None

        now = self.clock()
        last = self._last_alert_at.get(message.sender)
        if last is not None and now - last < self.throttle_seconds:
            logger.debug("Throttled alert from %s", message.sender)
            return None
        self._last_alert_at[message.sender] = now
        self._alerted.add(message.id)

        body = message.text or (f"Sent a file: {message.file_name}" if message.file_name else "New message")
        return Alert(
            title=self.title_for(message.sender),
            body=body,
            peer_id=message.sender,
            message_id=message.id,
            data={"type": "chat", "peerId": message.sender, "messageId": message.id},
        )

    async def handle_incoming(self, payload: Any) -> Optional[Alert]:
        """Transport listener for every incoming private message."""
        try:
            message = normalize_message(payload)
        except MalformedMessage as e:
            logger.warning(f"Ignoring malformed message for notifications: {e}")
            return None

        alert = self.evaluate(message)
        if alert is None:
            return None
        try:
            await self.sink.schedule(alert)
        except Exception as e:
            logger.error(f"Failed to schedule alert for {alert.peer_id}: {e}", exc_info=True)
        return alert
