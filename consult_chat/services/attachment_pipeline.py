"""
Two-phase attachment send: upload the bytes first, then emit a chat message
that references the stored object. Nothing is emitted unless the transfer
succeeded.
"""
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Union

import httpx

from consult_chat.constants import FileKind
from consult_chat.exceptions import ChatConnectionError, UploadFailure
from consult_chat.schemas import Message, UploadSlot
from consult_chat.services.chat_session import ChatSession
from consult_chat.services.storage_client import UploadSlotProvider
from consult_chat.utils.files import (
    classify_file_type,
    ext_from_content_type,
    extract_file_name,
    mime_from_name,
    normalize_mime,
    placeholder_text,
)
from consult_chat.utils.logger import get_logger

logger = get_logger("attachments")

USER_FAILURE_MESSAGE = "Failed to upload file. Please try again later."

FileSource = Union[bytes, str, Path]


def _sanitize_name_hint(name_hint: Optional[str]) -> str:
    if not name_hint:
        return ""
    stem = Path(name_hint).stem
    cleaned = "".join(ch if ch.isalnum() else "_" for ch in stem.strip().replace(" ", "_"))
    return cleaned.strip("_")[:40]


def build_upload_name(mime_type: str, name_hint: Optional[str] = None, kind: Optional[FileKind] = None) -> str:
    """Unique object name: <hint or kind>_<utc timestamp>_<random><ext>."""
    ts = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
    prefix = _sanitize_name_hint(name_hint) or (kind.value if kind else "file")
    return f"{prefix}_{ts}_{uuid.uuid4().hex[:6]}{ext_from_content_type(mime_type)}"


class AttachmentPipeline:
    def __init__(
        self,
        slots: UploadSlotProvider,
        session: ChatSession,
        public_base: Optional[str],
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.slots = slots
        self.session = session
        self.public_base = public_base
        self._http_transport = http_transport
        self.timeout = timeout
        self.clock = clock

    async def send_file(
        self,
        source: FileSource,
        file_name: Optional[str] = None,
        mime_type: Optional[str] = None,
        media_kind: Optional[FileKind] = None,
    ) -> Optional[Message]:
        """Upload `source` and send a message referencing it.

        Returns the sent message, or None when the conversation changed while
        the upload was in flight. Raises GateViolation when the chat is locked,
        ChatConnectionError when nothing could be sent afterwards, and
        UploadFailure when any upload step fails.
        """
        key = self.session.key
        # Locked or unreachable chats never reach the network
        self.session.gate.ensure_writable()
        if self.session.closed:
            raise ChatConnectionError("Conversation is closed")
        if not self.session.transport.connected:
            raise ChatConnectionError("Realtime connection is not available")

        data, name_hint = self._read(source, file_name)
        # MIME is fixed here and reused verbatim for the Content-Type header
        mime = normalize_mime(mime_type or mime_from_name(name_hint))
        upload_name = build_upload_name(mime, name_hint, media_kind)
        logger.info("Uploading %s (%s, %d bytes)", upload_name, mime, len(data))

        try:
            slot = await self.slots.request_upload_slot(upload_name, mime)
            self._check_slot(slot)
            await self._transfer(slot, data, mime)
            file_url = self._compose_url(slot.key)
        except UploadFailure as e:
            logger.error(f"Upload of {upload_name} failed: {e}")
            raise UploadFailure(USER_FAILURE_MESSAGE) from e

        if not self.session.accepts(key):
            logger.warning("Conversation %s closed during upload; not sending %s", key.storage_key, upload_name)
            return None

        stored_name = extract_file_name(file_url)
        return await self.session.send_text(
            placeholder_text(mime, stored_name),
            file_url=file_url,
            file_type=classify_file_type(mime),
            file_name=stored_name,
        )

    def _read(self, source: FileSource, file_name: Optional[str]):
        if isinstance(source, bytes):
            data = source
            name_hint = file_name
        else:
            path = Path(source)
            try:
                data = path.read_bytes()
            except OSError as exc:
                logger.error(f"Cannot read attachment {path}: {exc}")
                raise UploadFailure(USER_FAILURE_MESSAGE) from exc
            name_hint = file_name or path.name
        if not data:
            raise UploadFailure(USER_FAILURE_MESSAGE)
        return data, name_hint

    @staticmethod
    def _check_slot(slot: Optional[UploadSlot]) -> None:
        if slot is None or not slot.url or not slot.key:
            raise UploadFailure("Failed to get valid signed URL")

    async def _transfer(self, slot: UploadSlot, data: bytes, mime: str) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._http_transport) as client:
                resp = await client.put(slot.url, content=data, headers={"Content-Type": mime})
        except httpx.HTTPError as exc:
            raise UploadFailure(f"Transfer failed: {exc}") from exc
        if not 200 <= resp.status_code < 300:
            raise UploadFailure(f"Upload failed with status: {resp.status_code}")
        logger.info("Upload successful with status %s", resp.status_code)

    def _compose_url(self, key: str) -> str:
        if not self.public_base:
            raise UploadFailure("Storage public base URL is not configured")
        # Freshness token so receivers never show a stale cached object
        ts = int(self.clock() * 1000)
        return f"{self.public_base.rstrip('/')}/{key.lstrip('/')}?t={ts}"
