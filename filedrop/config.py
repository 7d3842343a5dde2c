from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "filedrop"
    app_env: str = "dev"
    log_level: str = "INFO"

    auth_secret: str = "change-me-in-production"
    auth_hkey: str = "auth:users"
    bootstrap_admin_password: str | None = None
    bcrypt_rounds: int = 12
    session_cookie_name: str = "r1-session"
    session_ttl_seconds: int = 86400

    # memory | sqlite | http
    kv_backend: str = "sqlite"
    database_path: str = "uploads/metadata.db"
    kv_store_url: str = "http://localhost:31234"
    # memory | local | http
    blob_backend: str = "local"
    storage_dir: str = "uploads/blobs"
    blob_store_url: str = "http://localhost:31235"
    http_timeout_seconds: float = 30.0

    node_id: str = "unknown-node"
    default_max_images: int = 10
    max_upload_size_bytes: int = 10 * 1024 * 1024
    allowed_mime_types: list[str] = ["image/png", "image/jpeg", "image/tiff"]
    upload_queue_size: int = 8
    events_limit: int = 50

    model_config = SettingsConfigDict(env_file=".env", env_prefix="FILEDROP_")

    @property
    def secure_cookies(self) -> bool:
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    return Settings()
