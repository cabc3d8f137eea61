from enum import Enum


class AppointmentStatus(str, Enum):
    """Appointment lifecycle states."""
    PENDING = "pending"         # requested, waiting for doctor approval
    SCHEDULED = "scheduled"     # approved, consultation active
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class FileKind(str, Enum):
    """Attachment categories a message can render."""
    IMAGE = "image"
    PDF = "pdf"


class SessionState(str, Enum):
    """Lifecycle of one open conversation."""
    IDLE = "idle"
    JOINING = "joining"
    SYNCING_HISTORY = "syncing_history"
    LIVE = "live"
    CLOSED = "closed"


class ChatEvent:
    """Socket event names shared with the realtime server."""
    JOIN = "join"
    LEAVE = "leave"
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    PREVIOUS_MESSAGES = "previous-messages"
    RECEIVE_MESSAGE = "receive-message"
    PRIVATE_MESSAGE = "private-message"
    USER_CONNECTED = "user-connected"
    USER_DISCONNECTED = "user-disconnected"
    ONLINE_USERS = "online-users"


OCTET_STREAM = "application/octet-stream"

ALLOWED_MIME_TYPES = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "application/pdf",
)

LOCAL_ID_PREFIX = "local-"
