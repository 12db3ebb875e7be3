import os
from dataclasses import dataclass

@dataclass(frozen=True)
class Settings:
    store_backend: str = os.getenv("STORE_BACKEND", "redis")
    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    database_url: str = os.getenv("DATABASE_URL", "")
    # "user": one index list per userId, "global": a single list for every mapping
    index_scope: str = os.getenv("INDEX_SCOPE", "user")
    base_url: str = os.getenv("BASE_URL", "")
    default_user_id: str = os.getenv("DEFAULT_USER_ID", "public")
    upstream_timeout_seconds: float = float(os.getenv("UPSTREAM_TIMEOUT_SECONDS", "20"))
    qr_service_url: str = os.getenv("QR_SERVICE_URL", "https://api.qrserver.com/v1/create-qr-code/")
    gist_raw_base_url: str = os.getenv("GIST_RAW_BASE_URL", "https://gist.githubusercontent.com")
    admin_username: str = os.getenv("ADMIN_USERNAME", "")
    admin_password: str = os.getenv("ADMIN_PASSWORD", "")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

settings = Settings()
