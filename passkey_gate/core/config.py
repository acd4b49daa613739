import os
from functools import cached_property
from typing import Dict, List, Optional, Set
from urllib.parse import urlsplit

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Explicitly load the .env file from the project root so that uvicorn workers
# and one-off scripts see the same environment.
dotenv_path = os.path.join(os.path.dirname(__file__), "..", "..", ".env")
if os.path.exists(dotenv_path):
    load_dotenv(dotenv_path=dotenv_path)


def normalize_origin(value: Optional[str]) -> Optional[str]:
    """Reduce a URL to its ``scheme://host[:port]`` origin, or None if it is not one."""
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parts = urlsplit(value.strip())
        port = parts.port
    except ValueError:
        return None
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return None
    origin = f"{parts.scheme}://{parts.hostname}"
    if port is not None:
        origin = f"{origin}:{port}"
    return origin


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env",
        extra="ignore",
    )

    # API Configuration
    PROJECT_NAME: str = "Payments Maps Passkey Gateway"
    VERSION: str = "1.0.0"
    API_PREFIX: str = "/api"
    ENVIRONMENT: str = "development"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: Optional[bool] = None

    # Metrics
    METRICS_ENABLED: bool = True

    # Origin allow-list
    APP_ORIGIN: Optional[str] = None
    # Comma-separated list of extra origins
    ALLOWED_ORIGINS: str = ""
    DEPLOYMENT_HOST: Optional[str] = None

    @field_validator("ENVIRONMENT", mode="before")
    def normalize_environment(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    # CSRF double-submit
    CSRF_COOKIE_NAME: str = "payments_maps_csrf"
    CSRF_HEADER_NAME: str = "x-csrf-token"

    # Passkey / WebAuthn relying party
    PASSKEY_RP_ID: Optional[str] = None
    PASSKEY_RP_NAME: str = "Payments Maps"
    PASSKEY_ORIGIN: Optional[str] = None
    CHALLENGE_TTL_SECONDS: int = 300

    # Rate limiting
    RATE_LIMIT_BACKEND: str = "memory"  # "memory" or "redis"
    RATE_LIMIT_DEFAULT: int = 30
    RATE_LIMIT_WINDOW_SECONDS: float = 60.0
    RATE_LIMIT_SWEEP_THRESHOLD: int = 2000
    RATE_LIMITS: Dict[str, int] = {
        "passkey-register": 20,
        "passkey-auth": 10,
        "passkey-manage": 60,
    }
    REDIS_URL: Optional[str] = None

    # Row store
    DATABASE_URL: str = "sqlite+aiosqlite:///./passkey_gate.db"
    DATABASE_AUTO_CREATE: bool = True

    # Identity / session backend (GoTrue compatible)
    IDENTITY_URL: Optional[str] = None
    IDENTITY_SERVICE_KEY: Optional[str] = None
    IDENTITY_JWT_SECRET: Optional[str] = None
    IDENTITY_JWT_AUDIENCE: str = "authenticated"
    IDENTITY_TIMEOUT_SECONDS: float = 10.0

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def extra_allowed_origins(self) -> List[str]:
        return [i.strip() for i in self.ALLOWED_ORIGINS.split(",") if i.strip()]

    @property
    def log_json(self) -> bool:
        if self.LOG_JSON is None:
            return self.is_production
        return self.LOG_JSON

    @cached_property
    def allowed_origins(self) -> Set[str]:
        """Operator-configured origins; computed once per settings instance."""
        origins = set()
        for value in (self.APP_ORIGIN, self.PASSKEY_ORIGIN, *self.extra_allowed_origins):
            origin = normalize_origin(value)
            if origin:
                origins.add(origin)

        if self.DEPLOYMENT_HOST:
            host = self.DEPLOYMENT_HOST.strip()
            for scheme in ("https://", "http://"):
                if host.lower().startswith(scheme):
                    host = host[len(scheme):]
            if host:
                origins.add(f"https://{host}")

        return origins

    @cached_property
    def rp_id(self) -> str:
        if self.PASSKEY_RP_ID:
            return self.PASSKEY_RP_ID
        candidates = (
            self.PASSKEY_ORIGIN,
            f"https://{self.DEPLOYMENT_HOST.split('://')[-1]}" if self.DEPLOYMENT_HOST else None,
            self.IDENTITY_URL,
        )
        for candidate in candidates:
            if candidate:
                hostname = urlsplit(candidate).hostname
                if hostname:
                    return hostname
        return "localhost"

    @cached_property
    def expected_origin(self) -> str:
        if self.PASSKEY_ORIGIN:
            return normalize_origin(self.PASSKEY_ORIGIN) or self.PASSKEY_ORIGIN
        return f"https://{self.rp_id}"

    def rate_limit_for(self, prefix: str) -> int:
        return self.RATE_LIMITS.get(prefix, self.RATE_LIMIT_DEFAULT)


settings = Settings()
