import hashlib
import hmac
import mimetypes
import time
import uuid
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import parse_qs, quote, unquote, urlsplit

import httpx

from marketbot.config import settings
from marketbot.logging_config import get_logger
from marketbot.services.whatsapp_service import WhatsAppService, get_whatsapp_service

logger = get_logger("media_service")

CLOUDINARY_UPLOAD_URL = "https://api.cloudinary.com/v1_1/{cloud}/image/upload"
MIN_URL_TTL_SECONDS = 60


def _normalize_media_path(path: str) -> str:
    normalized = (path or "").strip().lstrip("/")
    return normalized.replace("\\", "/")


def _sign_media_path(path: str, expires: int, secret: str) -> str:
    payload = f"{path}:{expires}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def build_signed_media_url(relative_path: str, *, ttl_seconds: Optional[int] = None) -> Optional[str]:
    """Public URL for a file under the media dir, valid until the embedded expiry."""
    secret = settings.media_signing_secret
    if not secret:
        logger.error("media_signing_secret not configured")
        return None
    ttl = ttl_seconds if ttl_seconds is not None else settings.media_url_ttl_seconds
    expires = int(time.time()) + max(int(ttl), MIN_URL_TTL_SECONDS)
    normalized_path = _normalize_media_path(relative_path)
    signature = _sign_media_path(normalized_path, expires, secret)
    quoted_path = quote(normalized_path, safe="/")
    return f"{settings.public_base_url.rstrip('/')}/media/{quoted_path}?expires={expires}&sig={signature}"


def verify_signed_media_path(relative_path: str, expires: int, signature: str) -> bool:
    secret = settings.media_signing_secret
    if not secret or not signature:
        return False
    if expires < int(time.time()):
        return False
    expected = _sign_media_path(_normalize_media_path(relative_path), expires, secret)
    return hmac.compare_digest(expected, signature)


def is_hosted_media_url(url: Optional[str]) -> bool:
    """True for URLs we issued: a valid signed /media/ link or our Cloudinary cloud."""
    if not url:
        return False
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        return False

    cloud = settings.cloudinary_cloud_name
    if cloud and parts.netloc == "res.cloudinary.com" and parts.path.startswith(f"/{cloud}/"):
        return True

    base = urlsplit(settings.public_base_url)
    if parts.netloc != base.netloc:
        return False
    prefix = f"{base.path.rstrip('/')}/media/"
    if not parts.path.startswith(prefix):
        return False
    query = parse_qs(parts.query)
    try:
        expires = int(query.get("expires", [""])[0])
    except ValueError:
        return False
    signature = query.get("sig", [""])[0]
    return verify_signed_media_path(unquote(parts.path[len(prefix):]), expires, signature)


def resolve_media_file(relative_path: str) -> Optional[Path]:
    """Map a URL path onto a file inside the media dir; None for traversal or missing files."""
    root = Path(settings.media_storage_dir).resolve()
    candidate = (root / _normalize_media_path(relative_path)).resolve()
    if root not in candidate.parents or not candidate.is_file():
        return None
    return candidate


class MediaStorage(Protocol):
    def store(self, content: bytes, content_type: str) -> Optional[str]:
        ...


class LocalMediaStorage:
    """Writes files under the media dir and hands out signed URLs for them."""

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir or settings.media_storage_dir)

    def store(self, content: bytes, content_type: str) -> Optional[str]:
        extension = mimetypes.guess_extension((content_type or "").split(";")[0].strip()) or ".bin"
        relative_path = f"listings/{uuid.uuid4().hex}{extension}"
        target = self.base_dir / relative_path
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        except OSError as e:
            logger.error(f"Failed to store media locally: {e}")
            return None
        return build_signed_media_url(relative_path)


class CloudinaryMediaStorage:
    """Unsigned upload through a Cloudinary upload preset."""

    def __init__(self, cloud_name: str, upload_preset: str, timeout_seconds: float = 20.0):
        self.upload_url = CLOUDINARY_UPLOAD_URL.format(cloud=cloud_name)
        self.upload_preset = upload_preset
        self.timeout_seconds = timeout_seconds

    def store(self, content: bytes, content_type: str) -> Optional[str]:
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(
                    self.upload_url,
                    data={"upload_preset": self.upload_preset, "folder": "listings"},
                    files={"file": ("upload", content, content_type)},
                )
            if response.status_code != 200:
                logger.warning(f"Cloudinary upload failed: status={response.status_code}, body={response.text[:200]}")
                return None
            return response.json().get("secure_url")
        except Exception as e:
            logger.error(f"Cloudinary upload error: {e}")
            return None


class MediaIntake:
    """Turns an inbound channel media id into a URL we host."""

    def __init__(
        self,
        whatsapp: WhatsAppService,
        storage: MediaStorage,
        fallback: Optional[MediaStorage] = None,
        max_bytes: Optional[int] = None,
    ):
        self.whatsapp = whatsapp
        self.storage = storage
        self.fallback = fallback
        self.max_bytes = max_bytes

    def resolve(self, media_id: Optional[str]) -> Optional[str]:
        if not media_id:
            return None

        downloaded = self.whatsapp.download_media(media_id, max_bytes=self.max_bytes)
        if downloaded is None:
            return None
        content, content_type = downloaded

        url = self.storage.store(content, content_type)
        if url is None and self.fallback is not None:
            logger.warning(f"Primary media storage failed, falling back: media_id={media_id}")
            url = self.fallback.store(content, content_type)

        if url is None:
            logger.error(f"Media intake failed: media_id={media_id}")
        return url


def get_media_intake() -> MediaIntake:
    local = LocalMediaStorage()
    storage: MediaStorage = local
    fallback = None
    if settings.media_provider == "cloudinary" and settings.cloudinary_cloud_name and settings.cloudinary_upload_preset:
        storage = CloudinaryMediaStorage(settings.cloudinary_cloud_name, settings.cloudinary_upload_preset)
        fallback = local
    return MediaIntake(get_whatsapp_service(), storage, fallback=fallback, max_bytes=settings.media_max_bytes)
