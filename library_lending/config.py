"""Configuration module for the library lending service.

All configuration values are read from environment variables (optionally
loaded from a ``.env`` file) when the module is imported.
"""

import os
from datetime import timedelta
from typing import List, Optional

from dotenv import load_dotenv

from library_lending.exceptions import ConfigurationError

load_dotenv()

# --- Storage ---

DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./library.db")

# --- API Server ---

API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
API_PORT: int = int(os.getenv("API_PORT", "8000"))

_CORS_ALLOWED_ORIGINS_STR: str = os.getenv(
    "CORS_ALLOWED_ORIGINS",
    "http://localhost:5173,http://127.0.0.1:5173,http://localhost:3000",
)
CORS_ALLOWED_ORIGINS: List[str] = [
    origin.strip()
    for origin in _CORS_ALLOWED_ORIGINS_STR.split(",")
    if origin.strip()
]

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

# --- Sessions ---

APP_ENV: str = os.getenv("APP_ENV", "development")
SESSION_SECRET: str = os.getenv("SESSION_SECRET", "fallback-secret-for-development")
SESSION_COOKIE_NAME: str = os.getenv("SESSION_COOKIE_NAME", "session")
SESSION_TTL_DAYS: int = int(os.getenv("SESSION_TTL_DAYS", "7"))
SESSION_TTL = timedelta(days=SESSION_TTL_DAYS)
SESSION_SIGNING_ALGORITHM = "HS256"

# Secure cookies only over HTTPS deployments
COOKIE_SECURE: bool = APP_ENV == "production"

# --- Passwords ---

BCRYPT_ROUNDS: int = int(os.getenv("BCRYPT_ROUNDS", "12"))
MIN_PASSWORD_LENGTH = 3

# --- Administrator (out-of-band credentials) ---

ADMIN_USER_ID = "local_admin"
ADMIN_USERNAME: Optional[str] = os.getenv("ADMIN_USERNAME")
ADMIN_PASSWORD: Optional[str] = os.getenv("ADMIN_PASSWORD")
ADMIN_EMAIL: str = os.getenv("ADMIN_EMAIL", "admin@library.local")
ADMIN_FIRST_NAME = "System"
ADMIN_LAST_NAME = "Administrator"

# --- Federated identity (optional) ---

OIDC_ISSUER_URL: Optional[str] = os.getenv("OIDC_ISSUER_URL")
OIDC_CLIENT_ID: Optional[str] = os.getenv("OIDC_CLIENT_ID")
OIDC_CLIENT_SECRET: Optional[str] = os.getenv("OIDC_CLIENT_SECRET")
OIDC_REDIRECT_URI: Optional[str] = os.getenv("OIDC_REDIRECT_URI")
OIDC_SCOPE = "openid email profile offline_access"
OIDC_DISCOVERY_TTL_SECONDS = 3600
OIDC_HTTP_TIMEOUT_SECONDS = 10

# --- Listing defaults ---

DEFAULT_PAGE_SIZE = 10
DEFAULT_ACTIVITY_PAGE_SIZE = 20
POPULAR_BOOKS_LIMIT = 5


def validate_admin_settings() -> None:
    """Fail fast when the administrator credentials are not configured.

    Raises:
        ConfigurationError: If ADMIN_USERNAME or ADMIN_PASSWORD is unset.
    """
    if not ADMIN_USERNAME or not ADMIN_PASSWORD:
        raise ConfigurationError(
            "Admin credentials not configured. Please set ADMIN_USERNAME and "
            "ADMIN_PASSWORD environment variables."
        )


def oidc_enabled() -> bool:
    """Return True when federated login is fully configured."""
    return bool(OIDC_ISSUER_URL and OIDC_CLIENT_ID and OIDC_REDIRECT_URI)
