import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError

# Set up logging
logger = logging.getLogger(__name__)

DEFAULT_DB_PORT = 5432
DEFAULT_REDIS_URL = "redis://localhost:6379/0"
DEFAULT_TOKEN_REQUEST_TIMEOUT = 30


class ConfigError(ValueError):
    """Raised when required configuration is missing or malformed."""


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, built once at startup and passed around."""
    database_url: str
    client_id: str
    client_secret: str
    redis_url: str = DEFAULT_REDIS_URL
    token_request_timeout: int = DEFAULT_TOKEN_REQUEST_TIMEOUT
    pass_time_limit: Optional[int] = None
    schedule_hour: int = 4
    schedule_minute: int = 0

    def __repr__(self) -> str:
        # Keep the client secret and DB password out of logs
        return (
            f"Settings(database_url={make_url_safe(self.database_url)!r}, "
            f"client_id={self.client_id!r}, redis_url={self.redis_url!r})"
        )


def make_url_safe(database_url: str) -> str:
    """Render a database URL with the password masked."""
    try:
        return make_url(database_url).render_as_string(hide_password=True)
    except ArgumentError:
        return "<unparseable database url>"


def load_env_file() -> None:
    """Load a .env file next to the backend sources, or from default locations."""
    env_path = Path(__file__).parent / ".env"
    if env_path.exists():
        load_dotenv(env_path)
    else:
        load_dotenv()  # Try to load from default locations


def _int_setting(env: Mapping[str, str], name: str, default: Optional[int], errors: list) -> Optional[int]:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        errors.append(f"{name} must be an integer, got {raw!r}")
        return default


def _database_url(env: Mapping[str, str], errors: list) -> str:
    url = env.get("DATABASE_URL")
    if url:
        return url

    missing = [name for name in ("DB_USER", "DB_PASSWORD", "DB_NAME", "DB_HOST") if not env.get(name)]
    if missing:
        errors.append(f"Missing database settings: {', '.join(missing)} (or set DATABASE_URL)")
        return ""

    port = _int_setting(env, "DB_PORT", DEFAULT_DB_PORT, errors)
    return URL.create(
        "postgresql+psycopg2",
        username=env["DB_USER"],
        password=env["DB_PASSWORD"],
        host=env["DB_HOST"],
        port=port,
        database=env["DB_NAME"],
    ).render_as_string(hide_password=False)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the environment.

    Every problem found is reported at once in a single ConfigError so a
    misconfigured deployment fails on startup instead of during a pass.
    """
    env = os.environ if environ is None else environ
    errors = []

    database_url = _database_url(env, errors)

    client_id = env.get("SHAREPOINT_CLIENT_ID", "")
    client_secret = env.get("SHAREPOINT_CLIENT_SECRET", "")
    if not client_id:
        errors.append("Missing SHAREPOINT_CLIENT_ID")
    if not client_secret:
        errors.append("Missing SHAREPOINT_CLIENT_SECRET")

    timeout = _int_setting(env, "TOKEN_REQUEST_TIMEOUT", DEFAULT_TOKEN_REQUEST_TIMEOUT, errors)
    time_limit = _int_setting(env, "RENEWAL_PASS_TIME_LIMIT", None, errors)
    hour = _int_setting(env, "RENEWAL_SCHEDULE_HOUR", 4, errors)
    minute = _int_setting(env, "RENEWAL_SCHEDULE_MINUTE", 0, errors)

    if timeout is not None and timeout <= 0:
        errors.append("TOKEN_REQUEST_TIMEOUT must be positive")
    if time_limit is not None and time_limit <= 0:
        errors.append("RENEWAL_PASS_TIME_LIMIT must be positive")
    if hour is not None and not 0 <= hour <= 23:
        errors.append("RENEWAL_SCHEDULE_HOUR must be between 0 and 23")
    if minute is not None and not 0 <= minute <= 59:
        errors.append("RENEWAL_SCHEDULE_MINUTE must be between 0 and 59")

    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        raise ConfigError("; ".join(errors))

    return Settings(
        database_url=database_url,
        client_id=client_id,
        client_secret=client_secret,
        redis_url=env.get("REDIS_URL") or DEFAULT_REDIS_URL,
        token_request_timeout=timeout,
        pass_time_limit=time_limit,
        schedule_hour=hour,
        schedule_minute=minute,
    )
