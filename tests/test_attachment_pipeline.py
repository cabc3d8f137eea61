import httpx
import pytest

from consult_chat.constants import ChatEvent, FileKind
from consult_chat.exceptions import ChatConnectionError, GateViolation, UploadFailure
from consult_chat.schemas import UploadSlot
from consult_chat.services.appointment_gate import AppointmentGate
from consult_chat.services.attachment_pipeline import USER_FAILURE_MESSAGE, AttachmentPipeline, build_upload_name
from consult_chat.services.chat_session import ChatSession
from tests.conftest import make_appointment

PUBLIC_BASE = "https://cdn.example.com"


class _Slots:
    def __init__(self, slot=None, error=None):
        self.slot = slot
        self.error = error
        self.requests = []

    async def request_upload_slot(self, filename, filetype):
        self.requests.append((filename, filetype))
        if self.error:
            raise self.error
        return self.slot or UploadSlot(url=f"https://upload.example.com/{filename}?sig=1", key=f"chat/{filename}")


def _storage(status=200):
    uploads = []

    def handler(request: httpx.Request) -> httpx.Response:
        uploads.append(request)
        return httpx.Response(status)

    return httpx.MockTransport(handler), uploads


def _pipeline(session, slots, transport):
    return AttachmentPipeline(slots, session, PUBLIC_BASE, http_transport=transport, clock=lambda: 1700000000.5)


@pytest.mark.asyncio
async def test_image_upload_then_send(session, transport):
    await session.open()
    storage, uploads = _storage()
    slots = _Slots()

    message = await _pipeline(session, slots, storage).send_file(b"\x89PNG...", file_name="x ray.png", mime_type="image/png")

    filename, filetype = slots.requests[0]
    assert filetype == "image/png"
    assert filename.startswith("x_ray_") and filename.endswith(".png")
    assert uploads[0].method == "PUT"
    assert uploads[0].headers["Content-Type"] == "image/png"
    assert uploads[0].content == b"\x89PNG..."

    assert message.file_url == f"{PUBLIC_BASE}/chat/{filename}?t=1700000000500"
    assert message.file_type == FileKind.IMAGE
    assert message.file_name == filename
    assert message.text == f"📷 Image: {filename}"
    envelope = transport.emitted_events(ChatEvent.PRIVATE_MESSAGE)[0]
    assert envelope["file_url"] == message.file_url
    assert envelope["file_type"] == "image"


@pytest.mark.asyncio
async def test_pdf_from_path(session, tmp_path):
    await session.open()
    report = tmp_path / "blood-work.pdf"
    report.write_bytes(b"%PDF-1.7")
    storage, uploads = _storage()
    slots = _Slots()

    message = await _pipeline(session, slots, storage).send_file(report)

    assert slots.requests[0][1] == "application/pdf"
    assert uploads[0].headers["Content-Type"] == "application/pdf"
    assert message.file_type == FileKind.PDF
    assert message.text.startswith("📄 Document: ")


@pytest.mark.asyncio
async def test_unknown_mime_falls_back_to_octet_stream(session):
    await session.open()
    storage, uploads = _storage()
    slots = _Slots()

    message = await _pipeline(session, slots, storage).send_file(b"data", file_name="notes.docx", mime_type="application/msword")

    assert slots.requests[0][1] == "application/octet-stream"
    assert uploads[0].headers["Content-Type"] == "application/octet-stream"
    assert slots.requests[0][0].endswith(".bin")
    assert message.file_type is None
    assert message.text.startswith("📎 File: ")


@pytest.mark.asyncio
async def test_transfer_failure_sends_nothing(session, transport):
    await session.open()
    storage, _ = _storage(status=403)

    with pytest.raises(UploadFailure) as info:
        await _pipeline(session, _Slots(), storage).send_file(b"img", file_name="a.jpg")

    assert str(info.value) == USER_FAILURE_MESSAGE
    assert transport.emitted_events(ChatEvent.PRIVATE_MESSAGE) == []
    assert session.messages == []


@pytest.mark.asyncio
async def test_network_error_during_transfer(session, transport):
    await session.open()

    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    with pytest.raises(UploadFailure):
        await _pipeline(session, _Slots(), httpx.MockTransport(handler)).send_file(b"img", file_name="a.jpg")
    assert transport.emitted_events(ChatEvent.PRIVATE_MESSAGE) == []


@pytest.mark.asyncio
async def test_slot_failure_skips_transfer(session, transport):
    await session.open()
    storage, uploads = _storage()

    with pytest.raises(UploadFailure):
        await _pipeline(session, _Slots(error=UploadFailure("no slot")), storage).send_file(b"img", file_name="a.gif")
    assert uploads == []
    assert transport.emitted_events(ChatEvent.PRIVATE_MESSAGE) == []


@pytest.mark.asyncio
async def test_missing_public_base_is_a_failure(session, transport):
    await session.open()
    storage, _ = _storage()
    pipeline = AttachmentPipeline(_Slots(), session, None, http_transport=storage)
    with pytest.raises(UploadFailure):
        await pipeline.send_file(b"img", file_name="a.png")
    assert transport.emitted_events(ChatEvent.PRIVATE_MESSAGE) == []


@pytest.mark.asyncio
async def test_locked_chat_never_requests_slot(transport, key, cache, processed_ids):
    gate = AppointmentGate(key)
    gate.apply([make_appointment("A", "completed")])
    session = ChatSession(transport, key, gate, cache, processed_ids, history_timeout=0.05)
    await session.open()
    storage, uploads = _storage()
    slots = _Slots()

    with pytest.raises(GateViolation):
        await _pipeline(session, slots, storage).send_file(b"img", file_name="a.png")
    assert slots.requests == []
    assert uploads == []


@pytest.mark.asyncio
async def test_closed_conversation_abandons_result(session, transport):
    await session.open()
    storage, uploads = _storage()

    class _ClosingSlots(_Slots):
        async def request_upload_slot(self, filename, filetype):
            await session.close()
            return await super().request_upload_slot(filename, filetype)

    result = await _pipeline(session, _ClosingSlots(), storage).send_file(b"img", file_name="a.png")
    assert result is None
    assert len(uploads) == 1
    assert transport.emitted_events(ChatEvent.PRIVATE_MESSAGE) == []


def test_upload_names_are_unique():
    names = {build_upload_name("image/jpeg", None, FileKind.IMAGE) for _ in range(20)}
    assert len(names) == 20
    assert all(name.startswith("image_") and name.endswith(".jpg") for name in names)


@pytest.mark.asyncio
async def test_disconnected_transport_never_requests_slot(session, transport):
    await session.open()
    transport.connected = False
    storage, uploads = _storage()
    slots = _Slots()

    with pytest.raises(ChatConnectionError):
        await _pipeline(session, slots, storage).send_file(b"img", file_name="a.png")
    assert slots.requests == []
    assert uploads == []


@pytest.mark.asyncio
async def test_closed_session_never_requests_slot(session, transport):
    await session.open()
    await session.close()
    storage, uploads = _storage()
    slots = _Slots()

    with pytest.raises(ChatConnectionError):
        await _pipeline(session, slots, storage).send_file(b"img", file_name="a.png")
    assert slots.requests == []
    assert uploads == []
