"""
Appointment gate: derives the current appointment of a (doctor, patient) pair
and the read/write permission of their conversation.
"""
import asyncio
from typing import Callable, Iterable, List, Optional, Protocol

from consult_chat.constants import AppointmentStatus
from consult_chat.exceptions import AppointmentLoadError, GateViolation
from consult_chat.schemas import Appointment, ConversationKey, GateDecision
from consult_chat.utils.logger import get_logger

logger = get_logger("appointment_gate")

LOCK_REASONS = {
    AppointmentStatus.PENDING: "This appointment is pending approval. Chat will be available once approved.",
    AppointmentStatus.COMPLETED: "This appointment has been completed. The chat is now in read-only mode.",
    AppointmentStatus.CANCELLED: "This appointment was cancelled. The chat is now in read-only mode.",
    AppointmentStatus.SCHEDULED: "",
}
LOAD_FAILED_REASON = "Appointment details could not be loaded."
LOADING_REASON = "Appointment details are loading."


class AppointmentSource(Protocol):
    async def list_doctor_appointments(self) -> List[Appointment]:
        ...


def lock_reason(status: Optional[str]) -> str:
    """Banner text for a status; empty when the chat is writable."""
    if not status:
        return ""
    normalized = str(status).strip().lower()
    try:
        return LOCK_REASONS[AppointmentStatus(normalized)]
    except ValueError:
        return f"This chat is currently locked ({status})."


def select_current_appointment(
    appointments: Iterable[Appointment], patient_id: str
) -> Optional[Appointment]:
    """Pick the appointment that governs the chat with `patient_id`.

    Priority: scheduled (latest), then pending (earliest), then the most
    recent of the remaining history.
    """
    candidates = [a for a in appointments if a.patient_id == patient_id]
    if not candidates:
        return None

    scheduled = [a for a in candidates if a.status == AppointmentStatus.SCHEDULED.value]
    if scheduled:
        return max(scheduled, key=lambda a: a.date)

    pending = [a for a in candidates if a.status == AppointmentStatus.PENDING.value]
    if pending:
        return min(pending, key=lambda a: a.date)

    return max(candidates, key=lambda a: a.date)


def evaluate(appointments: Iterable[Appointment], patient_id: str) -> GateDecision:
    current = select_current_appointment(appointments, patient_id)
    if current is None:
        # Ungated legacy conversation
        return GateDecision(appointment=None, status=None, can_write=True, lock_reason="")

    can_write = current.known_status is AppointmentStatus.SCHEDULED
    return GateDecision(
        appointment=current,
        status=current.status,
        can_write=can_write,
        lock_reason="" if can_write else lock_reason(current.status),
    )


def input_placeholder(decision: GateDecision) -> str:
    """Composer placeholder text for the current permission."""
    if decision.can_write:
        return "Type your message..."
    if decision.status:
        return f"Appointment {decision.status} - Chat locked"
    return "Chat locked"


class AppointmentGate:
    """Holds the latest permission for one conversation and refreshes it from REST."""

    def __init__(self, key: ConversationKey, source: Optional[AppointmentSource] = None) -> None:
        self.key = key
        self.source = source
        self._decision = GateDecision(can_write=False, lock_reason=LOADING_REASON)
        self._listeners: List[Callable[[GateDecision], None]] = []

    @property
    def decision(self) -> GateDecision:
        return self._decision

    @property
    def locked(self) -> bool:
        return self._decision.locked

    @property
    def current_appointment(self) -> Optional[Appointment]:
        return self._decision.appointment

    def on_change(self, listener: Callable[[GateDecision], None]) -> None:
        self._listeners.append(listener)

    def apply(self, appointments: Iterable[Appointment]) -> GateDecision:
        """Recompute the decision from an already-fetched appointment list."""
        decision = evaluate(appointments, self.key.patient_id)
        if decision.appointment is None:
            logger.warning(
                "No appointment between doctor %s and patient %s; chat left writable",
                self.key.doctor_id, self.key.patient_id,
            )
        self._set(decision)
        return decision

    def fail_safe(self, reason: str = LOAD_FAILED_REASON) -> GateDecision:
        decision = GateDecision(
            appointment=self._decision.appointment,
            status=self._decision.status,
            can_write=False,
            lock_reason=reason,
        )
        self._set(decision)
        return decision

    async def refresh(self) -> GateDecision:
        """Fetch the doctor's appointments; lock on any load failure."""
        if self.source is None:
            return self._decision
        try:
            appointments = await self.source.list_doctor_appointments()
        except AppointmentLoadError as e:
            logger.error(f"Failed to load appointments for {self.key.storage_key}: {e}")
            return self.fail_safe()
        except Exception as e:
            logger.error(f"Unexpected error loading appointments for {self.key.storage_key}: {e}", exc_info=True)
            return self.fail_safe()
        try:
            return self.apply(appointments)
        except Exception as e:
            logger.error(f"Could not evaluate appointments for {self.key.storage_key}: {e}", exc_info=True)
            return self.fail_safe()

    async def run_periodic_refresh(self, interval: float) -> None:
        """Refresh forever; cancel the task to stop."""
        while True:
            await asyncio.sleep(interval)
            await self.refresh()

    def ensure_writable(self) -> None:
        if self._decision.locked:
            raise GateViolation(self._decision.lock_reason or "This chat is currently locked.")

    def _set(self, decision: GateDecision) -> None:
        changed = (decision.can_write, decision.status, decision.lock_reason) != (
            self._decision.can_write, self._decision.status, self._decision.lock_reason,
        )
        self._decision = decision
        if not changed:
            return
        logger.info(
            "Gate for %s: %s (%s)",
            self.key.storage_key, "open" if decision.can_write else "locked", decision.status,
        )
        for listener in list(self._listeners):
            try:
                listener(decision)
            except Exception as e:
                logger.error(f"Gate listener failed: {e}", exc_info=True)
