"""VDID configuration constants.

Environment-based configuration, grouped by concern:
- PERSISTENCE: data directory and database URL
- SECURITY: token signing and lifetimes
- WALLET / WEBAUTHN: sign-in ceremony parameters
- OPERATIONAL: environment, logging, audit
"""
import os
from pathlib import Path


# =============================================================================
# PERSISTENCE CONFIGURATION
# =============================================================================

def _get_data_dir() -> Path:
    """Determine data directory based on environment.

    Priority:
    1. VDID_DATA_DIR env var (explicit override)
    2. /data/vdid if it exists (Docker volume mount)
    3. ~/.vdid (local development)
    4. /tmp/vdid (container fallback when home unavailable)
    """
    env_path = os.getenv("VDID_DATA_DIR")
    if env_path:
        return Path(env_path)

    docker_path = Path("/data/vdid")
    if docker_path.exists():
        return docker_path

    try:
        home_path = Path.home() / ".vdid"
        home_path.mkdir(parents=True, exist_ok=True)
        return home_path
    except (OSError, PermissionError):
        return Path("/tmp/vdid")


DATA_DIR: Path = _get_data_dir()


def _get_database_url() -> str:
    """Get database URL from environment.

    Priority:
    1. VDID_DATABASE_URL - explicit full connection string
    2. VDID_POSTGRES_* - construct PostgreSQL URL from components
    3. SQLite fallback for local development
    """
    if url := os.getenv("VDID_DATABASE_URL"):
        return url

    host = os.getenv("VDID_POSTGRES_HOST")
    if host:
        user = os.getenv("VDID_POSTGRES_USER", "vdid")
        password = os.getenv("VDID_POSTGRES_PASSWORD", "")
        db = os.getenv("VDID_POSTGRES_DB", "vdid")
        return f"postgresql+psycopg://{user}:{password}@{host}/{db}?sslmode=require"

    return f"sqlite:///{DATA_DIR}/vdid.db"


DATABASE_URL: str = _get_database_url()


# =============================================================================
# SECURITY CONFIGURATION
# =============================================================================

ENVIRONMENT: str = os.getenv("VDID_ENV", "development").lower()

JWT_SECRET: str = os.getenv("VDID_JWT_SECRET", "vdid-default-secret-change-in-production")
JWT_ISSUER: str = os.getenv("VDID_JWT_ISSUER", "vdid.io")
JWT_ALGORITHM: str = "HS256"

ACCESS_TOKEN_TTL_SECONDS: int = int(os.getenv("VDID_ACCESS_TOKEN_TTL", "900"))  # 15 min
REFRESH_TOKEN_TTL_SECONDS: int = int(os.getenv("VDID_REFRESH_TOKEN_TTL", "604800"))  # 7 days

# Refresh token cookie
REFRESH_COOKIE_NAME = "refreshToken"
COOKIE_SECURE: bool = os.getenv(
    "VDID_COOKIE_SECURE", "true" if ENVIRONMENT == "production" else "false"
).lower() == "true"


# =============================================================================
# WALLET (SIWE) CONFIGURATION
# =============================================================================

NONCE_TTL_SECONDS: int = int(os.getenv("VDID_NONCE_TTL", "600"))  # 10 min
SIWE_DOMAIN: str = os.getenv("VDID_SIWE_DOMAIN", "localhost:5000")
SIWE_URI: str = os.getenv("VDID_SIWE_URI", "http://localhost:5000")
DEFAULT_CHAIN_ID: int = int(os.getenv("VDID_DEFAULT_CHAIN_ID", "1"))


# =============================================================================
# WEBAUTHN CONFIGURATION
# =============================================================================

WEBAUTHN_RP_ID: str = os.getenv("VDID_WEBAUTHN_RP_ID", "localhost")
WEBAUTHN_RP_NAME: str = os.getenv("VDID_WEBAUTHN_RP_NAME", "VDID - Velon Decentralized Identity")
WEBAUTHN_ORIGIN: str = os.getenv("VDID_WEBAUTHN_ORIGIN", "http://localhost:5000")
WEBAUTHN_TIMEOUT_MS: int = 60000
CHALLENGE_TTL_SECONDS: int = int(os.getenv("VDID_CHALLENGE_TTL", "300"))  # 5 min


# =============================================================================
# ACCOUNT EMAIL FLOWS
# =============================================================================

EMAIL_VERIFY_TTL_SECONDS: int = int(os.getenv("VDID_EMAIL_VERIFY_TTL", "86400"))  # 24 h
PASSWORD_RESET_TTL_SECONDS: int = int(os.getenv("VDID_PASSWORD_RESET_TTL", "3600"))  # 1 h
EMAIL_FROM: str = os.getenv("VDID_EMAIL_FROM", "no-reply@vdid.io")


# =============================================================================
# OPERATIONAL
# =============================================================================

AUDIT_ENABLED: bool = os.getenv("VDID_AUDIT_ENABLED", "true").lower() == "true"
SERVICE_PORT: int = int(os.getenv("VDID_PORT", "5000"))


def is_production() -> bool:
    """True when running with VDID_ENV=production."""
    return ENVIRONMENT == "production"
