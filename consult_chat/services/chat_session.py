"""
Realtime chat session for one (doctor, patient) conversation.

Lifecycle: IDLE -> JOINING -> SYNCING_HISTORY -> LIVE -> CLOSED.
The doctor is "self"; the patient is the peer.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Protocol

from consult_chat.constants import ChatEvent, FileKind, SessionState
from consult_chat.exceptions import ChatConnectionError, HistoryTimeout, MalformedMessage
from consult_chat.schemas import ConversationKey, Message
from consult_chat.services.appointment_gate import AppointmentGate
from consult_chat.services.message_cache import MessageCache
from consult_chat.utils.id_set import BoundedIdSet
from consult_chat.utils.logger import get_logger
from consult_chat.utils.message_adapter import new_local_id, normalize_message, to_envelope

logger = get_logger("chat_session")

MessagesListener = Callable[[List[Message]], None]


class Transport(Protocol):
    connected: bool

    async def emit(self, event: str, data: Any) -> None:
        ...

    def add_listener(self, event: str, handler: Callable[..., Any]) -> None:
        ...

    def remove_listener(self, event: str, handler: Callable[..., Any]) -> None:
        ...


class ChatSession:
    """Channel binding for one conversation: join/leave, history, dedup, send."""

    def __init__(
        self,
        transport: Transport,
        key: ConversationKey,
        gate: AppointmentGate,
        cache: MessageCache,
        processed_ids: BoundedIdSet,
        history_timeout: float = 3.0,
        public_base: Optional[str] = None,
    ) -> None:
        self.transport = transport
        self.key = key
        self.gate = gate
        self.cache = cache
        self.processed_ids = processed_ids
        self.history_timeout = history_timeout
        self.public_base = public_base

        self.state = SessionState.IDLE
        self.messages: List[Message] = []
        self._listeners: List[MessagesListener] = []
        self._history_timer: Optional[asyncio.TimerHandle] = None

    @property
    def self_id(self) -> str:
        return self.key.doctor_id

    @property
    def peer_id(self) -> str:
        return self.key.patient_id

    @property
    def is_loading(self) -> bool:
        """Waiting for history with nothing cached to show."""
        return self.state in (SessionState.JOINING, SessionState.SYNCING_HISTORY) and not self.messages

    @property
    def closed(self) -> bool:
        return self.state == SessionState.CLOSED

    def accepts(self, key: ConversationKey) -> bool:
        """Whether a late result computed for `key` may still be applied here."""
        return not self.closed and key == self.key

    def on_messages_changed(self, listener: MessagesListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # -------------------- lifecycle --------------------

    async def open(self) -> None:
        if self.state != SessionState.IDLE:
            return

        cached = self.cache.load(self.key)
        if cached:
            self.messages = cached
            logger.debug("Painted %d cached messages for %s", len(cached), self.key.storage_key)
            self._notify()

        self.transport.add_listener(ChatEvent.PREVIOUS_MESSAGES, self._on_previous_messages)
        self.transport.add_listener(ChatEvent.RECEIVE_MESSAGE, self._on_receive_message)
        self.transport.add_listener(ChatEvent.CONNECT, self._on_reconnect)

        self.state = SessionState.JOINING
        await self._join()

        if self.state == SessionState.JOINING:
            self.state = SessionState.SYNCING_HISTORY
        if self.state == SessionState.SYNCING_HISTORY:
            self._arm_history_timer()

    async def close(self) -> None:
        if self.state == SessionState.CLOSED:
            return
        self._cancel_history_timer()
        self.transport.remove_listener(ChatEvent.PREVIOUS_MESSAGES, self._on_previous_messages)
        self.transport.remove_listener(ChatEvent.RECEIVE_MESSAGE, self._on_receive_message)
        self.transport.remove_listener(ChatEvent.CONNECT, self._on_reconnect)
        self.state = SessionState.CLOSED
        self._listeners.clear()
        try:
            await self.transport.emit(ChatEvent.LEAVE, self.key.join_payload())
        except ChatConnectionError as e:
            logger.info(f"Leave for {self.key.storage_key} not sent: {e}")
        logger.info("Closed conversation %s", self.key.storage_key)

    async def _join(self) -> None:
        # The server answers a join with the conversation's previous messages
        try:
            await self.transport.emit(ChatEvent.JOIN, self.key.join_payload())
            logger.info("Joined conversation %s", self.key.storage_key)
        except ChatConnectionError as e:
            logger.warning(f"Join for {self.key.storage_key} deferred until reconnect: {e}")

    async def _on_reconnect(self, *_: Any) -> None:
        if self.closed:
            return
        await self._join()

    def _arm_history_timer(self) -> None:
        self._cancel_history_timer()
        loop = asyncio.get_running_loop()
        self._history_timer = loop.call_later(self.history_timeout, self._on_history_timeout)

    def _cancel_history_timer(self) -> None:
        if self._history_timer is not None:
            self._history_timer.cancel()
            self._history_timer = None

    def _on_history_timeout(self) -> None:
        self._history_timer = None
        if self.state not in (SessionState.JOINING, SessionState.SYNCING_HISTORY):
            return
        timeout = HistoryTimeout(f"No history for {self.key.storage_key} after {self.history_timeout}s")
        logger.info(str(timeout))
        self.state = SessionState.LIVE
        self._notify()

    # -------------------- incoming --------------------

    def _on_previous_messages(self, payload: Any) -> None:
        if self.state not in (SessionState.JOINING, SessionState.SYNCING_HISTORY, SessionState.LIVE):
            return
        self._cancel_history_timer()

        if not isinstance(payload, list):
            logger.warning("Ignoring previous-messages payload of type %s", type(payload).__name__)
            self.state = SessionState.LIVE
            self._notify()
            return
        if not payload:
            logger.info("No previous messages for %s", self.key.storage_key)

        history: List[Message] = []
        for record in payload:
            try:
                message = normalize_message(record, self.public_base)
            except MalformedMessage as e:
                logger.warning(f"Dropping malformed history record: {e}")
                continue
            if not self.key.involves(message.sender, message.receiver):
                continue
            history.append(message)

        self.processed_ids.update(m.id for m in history)
        # Sends made while history was in flight stay visible after it
        pending_local = [m for m in self.messages if m.is_local]
        self.messages = history + pending_local
        self.cache.save_later(self.key, history)
        self.state = SessionState.LIVE
        logger.info("Loaded %d previous messages for %s", len(history), self.key.storage_key)
        self._notify()

    def _on_receive_message(self, payload: Any) -> None:
        if self.state not in (SessionState.SYNCING_HISTORY, SessionState.LIVE):
            return

        try:
            message = normalize_message(payload, self.public_base)
        except MalformedMessage as e:
            logger.warning(f"Dropping malformed message: {e}")
            return

        # Checked after normalization so every id alias is covered
        if message.id in self.processed_ids:
            logger.debug("Skipping already processed message %s", message.id)
            return

        if not self.key.involves(message.sender, message.receiver):
            return

        if message.sender == self.self_id:
            self._drop_optimistic_echo(message)

        self.messages.append(message)
        self.processed_ids.add(message.id)
        self.cache.append_later(self.key, message)
        self._notify()

    def _drop_optimistic_echo(self, echo: Message) -> None:
        """Replace the oldest optimistic entry matching a canonical echo of our own send."""
        for index, existing in enumerate(self.messages):
            if existing.is_local and existing.text == echo.text and existing.file_url == echo.file_url:
                del self.messages[index]
                return

    # -------------------- outgoing --------------------

    async def send_text(
        self,
        text: str,
        file_url: Optional[str] = None,
        file_type: Optional[FileKind] = None,
        file_name: Optional[str] = None,
    ) -> Message:
        """Show the message optimistically and emit it to the peer.

        Raises GateViolation when locked, ValueError for blank text and
        ChatConnectionError when the session or transport is unavailable.
        """
        if self.closed:
            raise ChatConnectionError("Conversation is closed")
        self.gate.ensure_writable()
        if not text or not text.strip():
            raise ValueError("Message text is empty")
        if not self.transport.connected:
            raise ChatConnectionError("Realtime connection is not available")

        message = Message(
            id=new_local_id(),
            sender=self.self_id,
            receiver=self.peer_id,
            text=text,
            timestamp=datetime.now(timezone.utc),
            file_url=file_url,
            file_type=file_type,
            file_name=file_name,
        )
        self.messages.append(message)
        self._notify()

        try:
            await self.transport.emit(ChatEvent.PRIVATE_MESSAGE, to_envelope(message))
        except ChatConnectionError:
            self.messages = [m for m in self.messages if m.id != message.id]
            self._notify()
            raise
        logger.debug("Sent message %s to %s", message.id, self.peer_id)
        return message

    def _notify(self) -> None:
        snapshot = list(self.messages)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Messages listener failed: {e}", exc_info=True)
