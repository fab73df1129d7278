# settings.py
from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    ENV: Literal["dev", "staging", "prod"] = "dev"

    # -----------------------
    # Storage
    # -----------------------
    DATABASE_URL: str = ""
    GRANT_STORE_BACKEND: Literal["postgres", "memory"] = "postgres"
    DB_POOL_MAX: int = Field(default=10, ge=1)
    DB_STATEMENT_TIMEOUT_MS: int = Field(default=5000, ge=100)
    DB_LOCK_TIMEOUT_MS: int = Field(default=5000, ge=100)

    # -----------------------
    # Open Payments client identity
    # -----------------------
    OP_CLIENT_MODE: Literal["open_payments", "mock"] = "open_payments"
    OP_CLIENT_WALLET_ADDRESS_URL: str = ""
    OP_KEY_ID: str = ""
    OP_PRIVATE_KEY_PATH: str = ""
    # "package.module:factory" building the HTTP message signer for our key
    OP_REQUEST_SIGNER: str = ""

    # HTTP
    OP_HTTP_TIMEOUT_S: float = Field(default=20.0, gt=0)
    OP_DEBUG_HTTP: bool = False

    # -----------------------
    # Redirects / callbacks
    # -----------------------
    # Public base URL of this service; used to build the default finish callback.
    SERVICE_URL: str = "http://localhost:3000"
    # Trusted operator page the funder lands on after authorizing a pool.
    OPERATOR_REDIRECT_URL: str = ""
    CALLBACK_REQUIRE_HASH: bool = True

    # -----------------------
    # Disbursement policy
    # -----------------------
    AUTO_FINALIZE_ON_DISBURSE: bool = True
    # A non-terminal disbursement checkpoint younger than this is treated as in flight.
    DISBURSEMENT_LEASE_SECONDS: int = Field(default=120, ge=0)
    # A pool left REQUESTED longer than this (crash mid-request) may be granted again.
    GRANT_REQUEST_LEASE_SECONDS: int = Field(default=300, ge=0)
    INCOMING_PAYMENT_DESCRIPTION: str = "Learning reward"
    OUTGOING_PAYMENT_DESCRIPTION: str = "Pool disbursement"

    # -----------------------
    # Service-to-service auth
    # -----------------------
    SERVICE_API_KEY: str = ""


settings = Settings()


def validate_env_settings() -> None:
    """
    Fail fast outside dev when the service would run half-configured.
    """
    env = (settings.ENV or "dev").strip().lower()
    if env == "dev":
        return

    missing: list[str] = []
    if settings.GRANT_STORE_BACKEND == "postgres" and not (settings.DATABASE_URL or "").strip():
        missing.append("DATABASE_URL")
    if settings.GRANT_STORE_BACKEND == "memory":
        missing.append("GRANT_STORE_BACKEND(postgres required)")
    if not (settings.SERVICE_API_KEY or "").strip():
        missing.append("SERVICE_API_KEY")
    if not (settings.OPERATOR_REDIRECT_URL or "").strip():
        missing.append("OPERATOR_REDIRECT_URL")
    if settings.OP_CLIENT_MODE == "open_payments" and not (settings.OP_CLIENT_WALLET_ADDRESS_URL or "").strip():
        missing.append("OP_CLIENT_WALLET_ADDRESS_URL")
    if settings.OP_CLIENT_MODE == "open_payments" and not (settings.OP_REQUEST_SIGNER or "").strip():
        missing.append("OP_REQUEST_SIGNER")
    if settings.OP_CLIENT_MODE == "mock":
        missing.append("OP_CLIENT_MODE(open_payments required)")

    if missing:
        raise RuntimeError(f"Missing/invalid settings for ENV={env}: " + ", ".join(missing))
