class ChatError(RuntimeError):
    """Base class for recoverable chat core failures."""


class ChatConnectionError(ChatError):
    """Realtime transport is not connected."""


class GateViolation(ChatError):
    """Send or attachment attempted while the conversation is locked."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class UploadFailure(ChatError):
    """Upload slot acquisition, byte transfer or compose step failed."""


class HistoryTimeout(ChatError):
    """No canonical history arrived before the fallback timer fired."""


class MalformedMessage(ChatError):
    """Received envelope is missing required fields."""


class AppointmentLoadError(ChatError):
    """Appointment list could not be fetched or parsed."""
