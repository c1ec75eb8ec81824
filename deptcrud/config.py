from __future__ import annotations

import os
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

load_dotenv()


class Settings(BaseModel):
    DB_PATH: str = Field(default="deptcrud.db")
    LOG_LEVEL: str = Field(default="INFO")
    CORS_ALLOW_ORIGINS: str = Field(default="*")

    JWT_SECRET: str = Field(default="dev_secret_change_me_0123456789abcdef")
    JWT_ALGORITHM: str = Field(default="HS256")
    JWT_ISSUER: str = Field(default="deptcrud")
    JWT_AUDIENCE: str = Field(default="deptcrud-clients")
    JWT_EXPIRATION_HOUR: int = Field(default=1)
    JWT_REFRESH_TOKEN_EXPIRATION_HOUR: int = Field(default=24)
    TOKEN_TYPE: str = Field(default="Bearer")

    RATE_LIMIT_ENABLED: bool = Field(default=True)
    RATE_LIMIT_SWEEP_SECONDS: float = Field(default=60.0)
    RATE_LIMIT_SHARDS: int = Field(default=16)
    TRUST_FORWARDED_FOR: bool = Field(default=False)

    # one token every N seconds, burst, idle ttl
    AUTH_RATE_LIMIT_INTERVAL_SECONDS: float = Field(default=30.0)
    AUTH_RATE_LIMIT_BURST: int = Field(default=1)
    AUTH_RATE_LIMIT_TTL_SECONDS: float = Field(default=300.0)
    DEPARTMENT_RATE_LIMIT_INTERVAL_SECONDS: float = Field(default=5.0)
    DEPARTMENT_RATE_LIMIT_BURST: int = Field(default=2)
    DEPARTMENT_RATE_LIMIT_TTL_SECONDS: float = Field(default=600.0)
    USER_RATE_LIMIT_INTERVAL_SECONDS: float = Field(default=1.0)
    USER_RATE_LIMIT_BURST: int = Field(default=10)
    USER_RATE_LIMIT_TTL_SECONDS: float = Field(default=900.0)

    ADMIN_USERNAME: Optional[str] = Field(default=None)
    ADMIN_PASSWORD: Optional[str] = Field(default=None)
    ADMIN_EMAIL: Optional[str] = Field(default=None)


def _load_settings(existing: Settings | None = None) -> Settings:
    values: dict[str, Any] = {}
    for name, field in Settings.model_fields.items():
        env_value = os.getenv(name)
        if env_value is None:
            if existing is not None and hasattr(existing, name):
                values[name] = getattr(existing, name)
                continue
            if field.is_required():
                continue
            values[name] = field.get_default(call_default_factory=True)
        else:
            values[name] = env_value

    try:
        return Settings(**values)
    except ValidationError as exc:
        invalid = sorted(
            {str(error["loc"][0]) for error in exc.errors() if error.get("loc")}
        )
        if invalid:
            raise RuntimeError(
                f"Invalid environment variables: {', '.join(invalid)}"
            ) from exc
        raise


settings = _load_settings()


def reload_settings() -> Settings:
    global settings
    fresh = _load_settings(settings)
    settings.__dict__.update(fresh.__dict__)
    return settings
