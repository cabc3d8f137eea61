"""
Upload slot providers: hand out a destination URL + storage key for one attachment.
"""
from typing import Optional, Protocol

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from consult_chat.config import Settings, get_settings
from consult_chat.exceptions import UploadFailure
from consult_chat.schemas import UploadSlot
from consult_chat.utils.logger import get_logger

logger = get_logger("storage")


class UploadSlotProvider(Protocol):
    async def request_upload_slot(self, filename: str, filetype: str) -> UploadSlot:
        ...


class SignedUrlClient:
    """POST /aws/signedurl on the backend, which presigns an S3 PUT for us."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        wallet_address: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.wallet_address = wallet_address or self.settings.WALLET_ADDRESS
        self._transport = transport

    async def request_upload_slot(self, filename: str, filetype: str) -> UploadSlot:
        if not self.wallet_address:
            raise UploadFailure("Wallet address is not configured")

        base_url = self.settings.API_BASE_URL.rstrip("/")
        url = f"{base_url}/aws/signedurl"
        headers = {
            "Authorization": f"Bearer {self.wallet_address}",
            "Content-Type": "application/json",
        }
        payload = {"filename": filename, "filetype": filetype}

        try:
            async with httpx.AsyncClient(
                timeout=self.settings.HTTP_TIMEOUT_SECONDS, transport=self._transport
            ) as client:
                resp = await client.post(url, headers=headers, json=payload)
        except httpx.HTTPError as exc:
            raise UploadFailure(f"Signed URL request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise UploadFailure(f"Signed URL error {resp.status_code}: {resp.text}")

        try:
            body = resp.json()
        except ValueError as exc:
            raise UploadFailure("Signed URL response is not JSON") from exc
        if not isinstance(body, dict) or not body.get("url") or not body.get("key"):
            raise UploadFailure("Failed to get valid signed URL")
        return UploadSlot(url=body["url"], key=body["key"])


def _get_r2_client(settings: Settings):
    if not settings.r2_configured:
        return None

    session = boto3.session.Session()
    return session.client(
        "s3",
        endpoint_url=f"https://{settings.R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
        aws_access_key_id=settings.R2_ACCESS_KEY_ID,
        aws_secret_access_key=settings.R2_SECRET_ACCESS_KEY,
        region_name="auto",
    )


class R2SignedSlots:
    """Presigns PUT URLs directly against Cloudflare R2 (S3 API)."""

    def __init__(self, settings: Optional[Settings] = None, client=None, prefix: str = "chat") -> None:
        self.settings = settings or get_settings()
        self._client = client if client is not None else _get_r2_client(self.settings)
        self.prefix = prefix.strip("/")

    async def request_upload_slot(self, filename: str, filetype: str) -> UploadSlot:
        if self._client is None:
            raise UploadFailure("R2 storage is not configured")

        key = f"{self.prefix}/{filename}" if self.prefix else filename
        try:
            # Signing is local; no network round trip
            url = self._client.generate_presigned_url(
                "put_object",
                Params={
                    "Bucket": self.settings.R2_BUCKET_NAME,
                    "Key": key,
                    "ContentType": filetype,
                },
                ExpiresIn=self.settings.UPLOAD_URL_EXPIRES_SECONDS,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error(f"Failed to presign R2 upload ({key}): {exc}", exc_info=True)
            raise UploadFailure("Failed to presign upload") from exc

        safe_key = key.encode("ascii", "ignore").decode("ascii")
        logger.info("Issued R2 upload slot: %s", safe_key or key)
        return UploadSlot(url=url, key=key)
