import asyncio
from typing import Iterable, List, Optional, Protocol

import firebase_admin
from firebase_admin import credentials, messaging

from consult_chat.config import Settings, get_settings
from consult_chat.schemas import Alert
from consult_chat.utils.logger import get_logger

logger = get_logger("alerts")


class AlertSink(Protocol):
    async def schedule(self, alert: Alert) -> None:
        ...


class RecordingAlertSink:
    """Keeps alerts in memory; used by tests and headless runs."""

    def __init__(self) -> None:
        self.alerts: List[Alert] = []

    async def schedule(self, alert: Alert) -> None:
        self.alerts.append(alert)


def init_firebase(settings: Settings) -> bool:
    """Initialize the default Firebase app once; False when no credentials are configured."""
    if not settings.FIREBASE_CREDENTIALS_FILE:
        return False
    try:
        firebase_admin.get_app()
        return True
    except ValueError:
        pass
    cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS_FILE)
    firebase_admin.initialize_app(cred)
    return True


class FirebaseAlertSink:
    """Delivers alerts as FCM notifications to the doctor's registered devices."""

    def __init__(self, tokens: Iterable[str] = (), settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.tokens: List[str] = [t for t in tokens if t]
        self._ready = init_firebase(self.settings)

    def register_token(self, token: str) -> None:
        if token and token not in self.tokens:
            self.tokens.append(token)

    async def schedule(self, alert: Alert) -> None:
        if not self._ready or not self.tokens:
            logger.info("[FCM:SKIP] title=%s body=%s tokens=%d", alert.title, alert.body, len(self.tokens))
            return
        message = messaging.MulticastMessage(
            notification=messaging.Notification(title=alert.title, body=alert.body),
            data=alert.data,
            tokens=list(self.tokens),
        )
        response = await asyncio.to_thread(messaging.send_each_for_multicast, message)
        logger.info("[FCM] Sent: success=%d failure=%d", response.success_count, response.failure_count)
