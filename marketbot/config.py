from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./marketbot.db"
    debug: bool = False
    log_level: str = "INFO"

    marketplace_name: str = "GatorEx"
    marketplace_timezone: str = "UTC"
    public_base_url: str = "http://localhost:8000"
    cors_allow_origins: str = "*"

    whatsapp_verify_token: Optional[str] = None
    whatsapp_access_token: Optional[str] = None
    whatsapp_phone_number_id: Optional[str] = None
    whatsapp_api_version: str = "v18.0"
    whatsapp_timeout_seconds: float = 10.0

    openai_api_key: Optional[str] = None
    classifier_model: str = "gpt-4o-mini"
    classifier_timeout_seconds: float = 8.0

    media_provider: str = "local"  # local, cloudinary
    media_storage_dir: str = "./media"
    media_signing_secret: Optional[str] = None
    media_url_ttl_seconds: int = 30 * 24 * 3600
    media_max_bytes: int = 8 * 1024 * 1024
    cloudinary_cloud_name: Optional[str] = None
    cloudinary_upload_preset: Optional[str] = None

    admin_token: Optional[str] = None

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
