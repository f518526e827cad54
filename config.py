import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    database_url: Optional[str] = None
    database_name: str = "busTracker"
    storage_backend: str = "memory"
    session_secret: str = "dev-session-secret-change-me"
    session_max_age: int = 60 * 60 * 24  # 24 hours
    session_max_entries: int = 10000
    session_cookie_secure: bool = False
    google_maps_api_key: Optional[str] = None
    admin_password: str = "admin123"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = os.getenv("DATABASE_URL")
        backend = os.getenv("STORAGE_BACKEND") or ("mongo" if database_url else "memory")
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            database_url=database_url,
            database_name=os.getenv("DATABASE_NAME", "busTracker"),
            storage_backend=backend.lower(),
            session_secret=os.getenv("SESSION_SECRET", "dev-session-secret-change-me"),
            session_max_age=int(os.getenv("SESSION_MAX_AGE", 60 * 60 * 24)),
            session_max_entries=int(os.getenv("SESSION_MAX_ENTRIES", 10000)),
            session_cookie_secure=_env_bool("SESSION_COOKIE_SECURE"),
            google_maps_api_key=os.getenv("GOOGLE_MAPS_API_KEY") or None,
            admin_password=os.getenv("ADMIN_PASSWORD", "admin123"),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            port=int(os.getenv("PORT", 8000)),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
