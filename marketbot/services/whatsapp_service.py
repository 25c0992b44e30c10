from typing import Optional

import httpx

from marketbot.config import settings
from marketbot.logging_config import get_logger

logger = get_logger("whatsapp_service")


class WhatsAppService:
    """WhatsApp Cloud API client: outbound text and inbound media lookup."""

    BASE_URL = "https://graph.facebook.com/{version}"

    def __init__(
        self,
        access_token: Optional[str],
        phone_number_id: Optional[str],
        api_version: str = "v18.0",
        timeout_seconds: float = 10.0,
    ):
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.base_url = self.BASE_URL.format(version=api_version)
        self.timeout_seconds = timeout_seconds

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}"}

    def send_text(self, to: str, text: str) -> bool:
        """Send a text message. Failures are logged, never raised."""
        if not self.access_token or not self.phone_number_id:
            logger.error("WhatsApp credentials missing, message not sent", extra={"context": {"to": to}})
            return False
        if not to or not text:
            logger.warning(f"send_text: missing recipient or text, to={to}")
            return False

        url = f"{self.base_url}/{self.phone_number_id}/messages"
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": text},
        }
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(url, headers=self._headers(), json=payload)
            if response.status_code != 200:
                logger.error(
                    f"WhatsApp send failed: status={response.status_code}, body={response.text[:200]}",
                    extra={"context": {"to": to}},
                )
                return False
            logger.info("WhatsApp message sent", extra={"context": {"to": to}})
            return True
        except Exception as e:
            logger.error(f"Error sending WhatsApp message: {e}", extra={"context": {"to": to}})
            return False

    def get_media_url(self, media_id: str) -> Optional[str]:
        """Resolve a media id to its short-lived download URL."""
        if not self.access_token or not media_id:
            return None
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.get(f"{self.base_url}/{media_id}", headers=self._headers())
            if response.status_code != 200:
                logger.warning(f"Media lookup failed: media_id={media_id}, status={response.status_code}")
                return None
            return response.json().get("url")
        except Exception as e:
            logger.error(f"Error resolving WhatsApp media {media_id}: {e}")
            return None

    def download_media(self, media_id: str, max_bytes: Optional[int] = None) -> Optional[tuple[bytes, str]]:
        """Fetch media bytes and content type. None on any failure or oversize file."""
        url = self.get_media_url(media_id)
        if not url:
            return None
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.get(url, headers=self._headers())
            if response.status_code != 200:
                logger.warning(f"Media download failed: media_id={media_id}, status={response.status_code}")
                return None
            content = response.content
            if max_bytes is not None and len(content) > max_bytes:
                logger.warning(f"Media too large: media_id={media_id}, size={len(content)}")
                return None
            return content, response.headers.get("content-type", "application/octet-stream")
        except Exception as e:
            logger.error(f"Error downloading WhatsApp media {media_id}: {e}")
            return None


def get_whatsapp_service() -> WhatsAppService:
    return WhatsAppService(
        access_token=settings.whatsapp_access_token,
        phone_number_id=settings.whatsapp_phone_number_id,
        api_version=settings.whatsapp_api_version,
        timeout_seconds=settings.whatsapp_timeout_seconds,
    )
