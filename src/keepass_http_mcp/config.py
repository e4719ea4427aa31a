import os
import logging
from typing import Annotated, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_DEBOUNCE_MS = 250
KEY_BACKENDS = ("secretservice", "memory")


class Preferences(BaseModel):
    """Settings for one client instance. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    base_url: Annotated[str, Field(..., description="Network location of the KeePass HTTP server")]
    timeout: Annotated[float, Field(DEFAULT_TIMEOUT_SECONDS, gt=0, description="HTTP timeout in seconds")]
    debounce_ms: Annotated[int, Field(DEFAULT_DEBOUNCE_MS, ge=0, description="Search quiet period")]
    key_backend: Annotated[str, Field("secretservice", description="Where the shared key is persisted")]

    @field_validator("base_url", mode="before")
    @classmethod
    def _strip_base_url(cls, value):
        if isinstance(value, str):
            return value.strip()
        return value

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000.0


def require_base_url(base_url: Optional[str]) -> str:
    """Return the trimmed base URL or raise ConfigError when it is blank."""
    value = (base_url or "").strip()
    if not value:
        raise ConfigError("Missing KeePass HTTP server URL.")
    return value


def _parse_number(env: Mapping[str, str], name: str, default, cast):
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


def load_preferences(env: Optional[Mapping[str, str]] = None) -> Preferences:
    """Build Preferences from environment variables."""
    env = os.environ if env is None else env
    base_url = require_base_url(env.get("KEEPASS_HTTP_URL"))

    timeout = _parse_number(env, "KEEPASS_HTTP_TIMEOUT", DEFAULT_TIMEOUT_SECONDS, float)
    if timeout <= 0:
        raise ConfigError("KEEPASS_HTTP_TIMEOUT must be positive")
    debounce_ms = _parse_number(env, "KEEPASS_HTTP_DEBOUNCE_MS", DEFAULT_DEBOUNCE_MS, int)
    if debounce_ms < 0:
        raise ConfigError("KEEPASS_HTTP_DEBOUNCE_MS must not be negative")

    key_backend = (env.get("KEEPASS_HTTP_KEY_BACKEND") or "secretservice").strip().lower()
    if key_backend not in KEY_BACKENDS:
        raise ConfigError(f"Unknown KEEPASS_HTTP_KEY_BACKEND {key_backend!r}; expected one of {', '.join(KEY_BACKENDS)}")

    logger.debug("Loaded preferences for %s (backend=%s)", base_url, key_backend)
    return Preferences(base_url=base_url, timeout=timeout, debounce_ms=debounce_ms, key_backend=key_backend)
