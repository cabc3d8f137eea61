from typing import Any, List, Optional

import httpx
from pydantic import ValidationError

from consult_chat.config import Settings, get_settings
from consult_chat.exceptions import AppointmentLoadError
from consult_chat.schemas import Appointment
from consult_chat.utils.logger import get_logger

logger = get_logger("appointment_client")


class AppointmentClient:
    """Read side of the appointment REST API, authenticated by the doctor's wallet address."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        wallet_address: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.wallet_address = wallet_address or self.settings.WALLET_ADDRESS
        self._transport = transport

    def _headers(self) -> dict:
        if not self.wallet_address:
            raise AppointmentLoadError("Wallet address is not configured")
        return {
            "Authorization": f"Bearer {self.wallet_address}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def list_doctor_appointments(self) -> List[Appointment]:
        """GET /v1/appointments/doctor; accepts `{"data": [...]}` or a bare list."""
        base_url = self.settings.API_BASE_URL.rstrip("/")
        url = f"{base_url}/v1/appointments/doctor"
        headers = self._headers()

        try:
            async with httpx.AsyncClient(
                timeout=self.settings.HTTP_TIMEOUT_SECONDS, transport=self._transport
            ) as client:
                resp = await client.get(url, headers=headers)
        except httpx.TimeoutException as exc:
            raise AppointmentLoadError("Request timed out. Please check your internet connection.") from exc
        except httpx.HTTPError as exc:
            raise AppointmentLoadError(f"No response from server: {exc}") from exc

        if resp.status_code >= 400:
            logger.error("Server responded with: %s %s", resp.status_code, resp.text)
            raise AppointmentLoadError(f"Server error: {resp.status_code}")

        try:
            body: Any = resp.json()
        except ValueError as exc:
            raise AppointmentLoadError("Appointment response is not JSON") from exc

        records = body.get("data") if isinstance(body, dict) else body
        if not isinstance(records, list):
            raise AppointmentLoadError("Appointment response has no list of appointments")

        appointments: List[Appointment] = []
        for record in records:
            try:
                appointments.append(Appointment.model_validate(record))
            except ValidationError as e:
                logger.warning(f"Skipping malformed appointment record: {e}")
        return appointments
