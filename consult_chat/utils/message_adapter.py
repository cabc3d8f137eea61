"""
Normalization between wire envelopes and the canonical Message model.

The server mixes naming conventions (`sender_id` vs `sender`, `content` vs
`message`, `file_url` vs `fileUrl`, `sentAt` vs `timestamp`). Everything that
crosses the transport boundary goes through this module so the rest of the
package only ever sees `Message`.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import ValidationError

from consult_chat.constants import FileKind, LOCAL_ID_PREFIX
from consult_chat.exceptions import MalformedMessage
from consult_chat.schemas import Message
from consult_chat.utils.files import classify_file_type, extract_file_name, resolve_file_url


def _first(payload: Dict[str, Any], *names: str) -> Any:
    for name in names:
        value = payload.get(name)
        if value not in (None, ""):
            return value
    return None


def _parse_timestamp(value: Any) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        # JS clients send epoch milliseconds
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise MalformedMessage(f"Unparseable timestamp: {value!r}") from exc


def new_local_id() -> str:
    return f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}"


def normalize_message(payload: Any, public_base: Optional[str] = None) -> Message:
    """Build a canonical Message from a server or cached record.

    Raises MalformedMessage when sender or receiver is missing.
    """
    if isinstance(payload, Message):
        return payload
    if not isinstance(payload, dict):
        raise MalformedMessage(f"Expected an object, got {type(payload).__name__}")

    sender = _first(payload, "sender", "sender_id")
    receiver = _first(payload, "receiver", "receiver_id")
    if not sender or not receiver:
        raise MalformedMessage("Message envelope is missing sender or receiver")

    file_url = resolve_file_url(_first(payload, "file_url", "fileUrl"), public_base)
    raw_type = _first(payload, "file_type", "fileType")
    if isinstance(raw_type, FileKind):
        file_type = raw_type
    else:
        file_type = classify_file_type(str(raw_type)) if raw_type else None
    file_name = _first(payload, "file_name", "fileName")
    if file_url and not file_name:
        file_name = extract_file_name(file_url)

    msg_id = _first(payload, "id", "_id")
    text = _first(payload, "text", "message", "content")

    try:
        return Message(
            id=str(msg_id) if msg_id is not None else f"msg-{uuid.uuid4().hex}",
            sender=str(sender),
            receiver=str(receiver),
            text=str(text) if text is not None else "",
            timestamp=_parse_timestamp(_first(payload, "timestamp", "sentAt", "created_at")),
            file_url=file_url,
            file_type=file_type,
            file_name=file_name,
        )
    except ValidationError as exc:
        raise MalformedMessage(str(exc)) from exc


def to_envelope(message: Message) -> Dict[str, Any]:
    """Outgoing `private-message` body in the server's naming."""
    envelope: Dict[str, Any] = {
        "sender": message.sender,
        "receiver": message.receiver,
        "message": message.text,
        "timestamp": message.timestamp.isoformat(),
    }
    if message.file_url:
        envelope["file_url"] = message.file_url
    if message.file_type:
        envelope["file_type"] = message.file_type.value
    return envelope
