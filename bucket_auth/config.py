import os
from dataclasses import dataclass
from typing import Optional

from bucket_auth import __version__

# Optional: load a local .env file if present.
try:
    from dotenv import load_dotenv

    load_dotenv()
except Exception:
    # If python-dotenv isn't installed or .env isn't present, that's fine.
    pass


def _env_bool(name: str, default: Optional[bool] = None) -> Optional[bool]:
    """Parse a boolean environment variable.

    Returns:
      - True/False if the env var is set to a recognizable value
      - default if unset or unrecognized

    Accepted truthy: 1, true, yes, y, on
    Accepted falsy:  0, false, no, n, off
    """

    raw = os.environ.get(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in ("1", "true", "yes", "y", "on"):
        return True
    if v in ("0", "false", "no", "n", "off"):
        return False
    return default


def _env_str(name: str) -> str | None:
    return (os.environ.get(name) or "").strip() or None


@dataclass(frozen=True)
class Config:
    """Runtime configuration.

    IMPORTANT: Provide credentials via environment variables or a .env file.
    Do not hardcode secrets in source code.
    """

    # -----------------
    # Object storage (IBM COS / any S3-compatible endpoint)
    # -----------------
    COS_ENDPOINT: str | None = _env_str("COS_ENDPOINT")
    COS_ACCESS_KEY_ID: str | None = _env_str("COS_ACCESS_KEY_ID")
    COS_SECRET_ACCESS_KEY: str | None = _env_str("COS_SECRET_ACCESS_KEY")
    COS_REGION: str | None = _env_str("COS_REGION")
    COS_BUCKET_NAME: str = os.environ.get("COS_BUCKET_NAME", "api-users")
    # Only used when the bucket has to be created.
    COS_LOCATION: str = os.environ.get("COS_LOCATION", "us-south-standard")

    # Preferred: set STORE_DSN explicitly (s3://bucket, cos://bucket or a directory path).
    # Fallback: the COS bucket when an endpoint is configured, else a local directory.
    STORE_DSN: str = (
        os.environ.get("STORE_DSN")
        or (f"s3://{COS_BUCKET_NAME}" if COS_ENDPOINT else None)
        or "./data/store"
    )

    # -----------------
    # Directory (users + username/email index)
    # -----------------
    # Conditional (ETag) writes on the index blob. Needs backend support for
    # If-Match / If-None-Match on PUT; off by default for older COS deployments.
    DIRECTORY_CONDITIONAL_WRITES: bool = _env_bool("DIRECTORY_CONDITIONAL_WRITES", False) is True
    DIRECTORY_INDEX_MAX_RETRIES: int = int(os.environ.get("DIRECTORY_INDEX_MAX_RETRIES", "5"))

    # -----------------
    # Passwords
    # -----------------
    PASSWORD_HASH_ROUNDS: int = int(os.environ.get("PASSWORD_HASH_ROUNDS", "29000"))
    PASSWORD_MIN_LENGTH: int = int(os.environ.get("PASSWORD_MIN_LENGTH", "8"))

    # -----------------
    # Auth (JWT)
    # -----------------
    # NOTE: In dev, this defaults to a fixed string so you can get started.
    # In production, you MUST set AUTH_JWT_SECRET to a strong random value.
    AUTH_JWT_SECRET: str = os.environ.get("AUTH_JWT_SECRET", "dev_change_me")
    AUTH_TOKEN_EXPIRE_MINUTES: int = int(os.environ.get("AUTH_TOKEN_EXPIRE_MINUTES", "60"))
    AUTH_TOKEN_CACHE_MAX_ENTRIES: int = int(os.environ.get("AUTH_TOKEN_CACHE_MAX_ENTRIES", "10000"))

    # Login answers "Account is disabled" for inactive accounts. Set to 0 to
    # answer "Invalid credentials" instead (no account-existence signal).
    AUTH_REVEAL_INACTIVE: bool = _env_bool("AUTH_REVEAL_INACTIVE", True) is True

    # Bootstrap first admin user if the directory is empty.
    # Nothing is created unless a password is configured.
    AUTH_BOOTSTRAP_ADMIN_USERNAME: str = os.environ.get("AUTH_BOOTSTRAP_ADMIN_USERNAME", "admin")
    AUTH_BOOTSTRAP_ADMIN_EMAIL: str = os.environ.get("AUTH_BOOTSTRAP_ADMIN_EMAIL", "admin@example.com")
    AUTH_BOOTSTRAP_ADMIN_PASSWORD: str | None = _env_str("AUTH_BOOTSTRAP_ADMIN_PASSWORD")

    # -----------------
    # API
    # -----------------
    API_HOST: str = os.environ.get("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.environ.get("API_PORT", "8080"))
    APP_VERSION: str = os.environ.get("APP_VERSION", __version__)

    @property
    def token_expires_in_seconds(self) -> int:
        return max(1, int(self.AUTH_TOKEN_EXPIRE_MINUTES)) * 60


def load_config() -> Config:
    return Config()
