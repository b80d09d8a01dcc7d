"""
Runtime configuration

Every value comes from the environment. Nothing else in the service reads
os.environ directly; the Settings object is built once and passed along.
"""
import os
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field


def _env_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseModel):
    database_url: Optional[str] = Field(None, description="MongoDB connection string")
    database_name: Optional[str] = Field(None, description="MongoDB database name")

    jwt_secret: str = Field("dev-secret-change-me", description="Secret used to sign admin tokens")
    jwt_alg: str = "HS256"
    jwt_expires_minutes: int = 60 * 24

    admin_email: Optional[str] = Field(None, description="Photographer login e-mail")
    admin_password_hash: Optional[str] = Field(None, description="bcrypt hash of the photographer password")

    stripe_secret_key: Optional[str] = None
    stripe_publishable_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_statement_descriptor: str = "Album Order"

    asset_base_url: str = Field("", description="Prefix used to turn asset refs into URLs")
    ledger_lock_seconds: float = Field(5.0, gt=0, description="How long add/update waits for a credit lease")

    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME"),
            jwt_secret=os.getenv("JWT_SECRET", "dev-secret-change-me"),
            jwt_expires_minutes=int(os.getenv("JWT_EXPIRES_MINUTES", 60 * 24)),
            admin_email=os.getenv("ADMIN_EMAIL"),
            admin_password_hash=os.getenv("ADMIN_PASSWORD_HASH"),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_publishable_key=os.getenv("STRIPE_PUBLISHABLE_KEY"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            stripe_statement_descriptor=os.getenv("STRIPE_STATEMENT_DESCRIPTOR", "Album Order"),
            asset_base_url=os.getenv("ASSET_BASE_URL", ""),
            ledger_lock_seconds=float(os.getenv("LEDGER_LOCK_SECONDS", 5.0)),
            cors_origins=_env_list("CORS_ORIGINS", "*"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
