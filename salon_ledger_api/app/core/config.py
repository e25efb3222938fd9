"""
Simple configuration management.

The ``Settings`` dataclass reads configuration directly from
environment variables.  Defaults are provided for all fields so the
application starts in a local development setup; in production the
Google client ID, the database location and the allowed origins must be
overridden via environment variables.
"""

import os
from dataclasses import dataclass


@dataclass
class Settings:
    """Application settings loaded from environment variables."""

    project_name: str = os.getenv("PROJECT_NAME", "Salon Ledger API")
    api_version: str = os.getenv("API_VERSION", "1.0.0")
    debug: bool = os.getenv("DEBUG", "false").lower() in {"1", "true", "yes"}
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_file: str = os.getenv("LOG_FILE", "")

    # OAuth client ID registered for this deployment.  ID tokens whose
    # ``aud`` claim differs from this value are rejected.
    google_client_id: str = os.getenv("GOOGLE_CLIENT_ID", "")

    # Introspection endpoint used to verify ID tokens.  The token is
    # passed as the ``id_token`` query parameter.
    token_info_url: str = os.getenv("TOKEN_INFO_URL", "https://oauth2.googleapis.com/tokeninfo")
    token_info_timeout: float = float(os.getenv("TOKEN_INFO_TIMEOUT", "10"))

    # Upper bound for the number of orders returned by one ``orders``
    # call, whatever limit the caller asks for.
    orders_max_limit: int = int(os.getenv("ORDERS_MAX_LIMIT", "100"))

    # Comma‑separated list of origins allowed to read responses
    # cross‑origin.  ``*`` allows any origin.
    allowed_origins: str = os.getenv("ALLOWED_ORIGINS", "*")

    # Path or connection string for the SQLite database.  If a relative
    # path is provided, it will be resolved relative to the project root
    # by the ``db`` module.
    database_url: str = os.getenv("DATABASE_URL", "salon_ledger.db")

    def origins(self) -> list[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


# Instantiate settings once so other modules can import it without
# repeatedly reading environment variables.  Environment variables
# should be set before importing this module.
settings = Settings()
