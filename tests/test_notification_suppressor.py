import pytest

from consult_chat.services.alert_service import RecordingAlertSink
from consult_chat.services.notification_suppressor import NotificationSuppressor
from consult_chat.utils.id_set import BoundedIdSet
from tests.conftest import DOCTOR_ID, OTHER_PATIENT_ID, PATIENT_ID, wire_message


class _Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return _Clock()


@pytest.fixture
def sink():
    return RecordingAlertSink()


@pytest.fixture
def suppressor(sink, clock):
    return NotificationSuppressor(DOCTOR_ID, sink, throttle_seconds=1.0, clock=clock)


@pytest.mark.asyncio
async def test_focused_peer_is_silent(suppressor, sink):
    suppressor.focus(PATIENT_ID)
    assert await suppressor.handle_incoming(wire_message("m1", sender=PATIENT_ID)) is None
    assert sink.alerts == []


@pytest.mark.asyncio
async def test_other_peer_raises_alert(suppressor, sink):
    suppressor.focus(OTHER_PATIENT_ID)
    alert = await suppressor.handle_incoming(wire_message("m1", sender=PATIENT_ID, text="pain is worse"))
    assert alert is not None
    assert alert.peer_id == PATIENT_ID
    assert alert.body == "pain is worse"
    assert alert.data["peerId"] == PATIENT_ID
    assert sink.alerts == [alert]


@pytest.mark.asyncio
async def test_burst_from_one_sender_is_throttled(suppressor, sink, clock):
    await suppressor.handle_incoming(wire_message("m1"))
    clock.now += 0.4
    await suppressor.handle_incoming(wire_message("m2"))
    assert len(sink.alerts) == 1
    clock.now += 0.7
    await suppressor.handle_incoming(wire_message("m3"))
    assert len(sink.alerts) == 2


@pytest.mark.asyncio
async def test_throttle_is_per_sender(suppressor, sink):
    await suppressor.handle_incoming(wire_message("m1", sender=PATIENT_ID))
    await suppressor.handle_incoming(wire_message("m2", sender=OTHER_PATIENT_ID))
    assert [a.peer_id for a in sink.alerts] == [PATIENT_ID, OTHER_PATIENT_ID]


@pytest.mark.asyncio
async def test_messages_not_for_self_are_ignored(suppressor, sink):
    await suppressor.handle_incoming(wire_message("m1", sender=DOCTOR_ID, receiver=PATIENT_ID))
    await suppressor.handle_incoming(wire_message("m2", sender=PATIENT_ID, receiver=OTHER_PATIENT_ID))
    assert sink.alerts == []


@pytest.mark.asyncio
async def test_permission_required(suppressor, sink):
    suppressor.set_permission(False)
    await suppressor.handle_incoming(wire_message("m1"))
    assert sink.alerts == []


@pytest.mark.asyncio
async def test_blur_restores_alerts(suppressor, sink):
    suppressor.focus(PATIENT_ID)
    suppressor.blur(OTHER_PATIENT_ID)
    assert suppressor.active_peer == PATIENT_ID
    suppressor.blur(PATIENT_ID)
    assert suppressor.active_peer is None
    await suppressor.handle_incoming(wire_message("m1"))
    assert len(sink.alerts) == 1


@pytest.mark.asyncio
async def test_sink_failure_is_contained(clock):
    class _BrokenSink:
        async def schedule(self, alert):
            raise RuntimeError("device unavailable")

    suppressor = NotificationSuppressor(DOCTOR_ID, _BrokenSink(), clock=clock)
    alert = await suppressor.handle_incoming(wire_message("m1"))
    assert alert is not None


@pytest.mark.asyncio
async def test_malformed_payload_is_ignored(suppressor, sink):
    assert await suppressor.handle_incoming({"message": "no sender"}) is None
    assert sink.alerts == []


@pytest.mark.asyncio
async def test_file_only_message_body(suppressor, sink):
    payload = wire_message("m1", text="", file_url="https://cdn.example.com/chat/scan.png")
    alert = await suppressor.handle_incoming(payload)
    assert alert.body == "Sent a file: scan.png"


@pytest.mark.asyncio
async def test_redelivery_after_throttle_window_is_silent(suppressor, sink, clock):
    await suppressor.handle_incoming(wire_message("m1"))
    clock.now += 5.0
    await suppressor.handle_incoming(wire_message("m1"))
    assert [a.message_id for a in sink.alerts] == ["m1"]


@pytest.mark.asyncio
async def test_already_processed_message_is_silent(sink, clock):
    processed = BoundedIdSet(10)
    processed.add("m1")
    suppressor = NotificationSuppressor(DOCTOR_ID, sink, clock=clock, processed_ids=processed)
    assert await suppressor.handle_incoming(wire_message("m1")) is None
    assert await suppressor.handle_incoming(wire_message("m2")) is not None
    assert [a.message_id for a in sink.alerts] == ["m2"]
