"""Runtime configuration for the signaling service.

Values are read from environment variables once at startup and validated with
pydantic. Invalid configuration stops the server before it accepts traffic;
an absent TURN secret only disables relay credentials.
"""

from __future__ import annotations

import logging
import os
import re
from typing import List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError

DEFAULT_STUN_SERVERS = "stun:stun.l.google.com:19302"
DEFAULT_CREDENTIAL_TTL = 4 * 60 * 60
DEFAULT_REDIS_URL = "redis://127.0.0.1:6379/0"
MIN_TURN_SECRET_LENGTH = 32
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")

_DOMAIN_RE = re.compile(r"^([a-z0-9]+(-[a-z0-9]+)*\.)+[a-z]{2,}$", re.IGNORECASE)
_TRUTHY = {"1", "true", "yes", "on"}


class Settings(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(default=3000, ge=1000, le=65535)
    stun_servers: List[str] = Field(default_factory=lambda: [DEFAULT_STUN_SERVERS])
    turn_secret: Optional[str] = Field(default=None, min_length=MIN_TURN_SECRET_LENGTH)
    domain: Optional[str] = None
    force_relay: bool = False
    credential_ttl: int = Field(default=DEFAULT_CREDENTIAL_TTL, gt=0)
    redis_url: str = DEFAULT_REDIS_URL
    revocation_timeout: float = Field(default=2.0, gt=0)
    log_level: str = "INFO"

    @field_validator("stun_servers", mode="before")
    @classmethod
    def _split_stun(cls, value):
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",")]
        if any(not url for url in value):
            raise ValueError("STUN server URL cannot be empty")
        return value

    @field_validator("domain")
    @classmethod
    def _check_domain(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _DOMAIN_RE.match(value):
            raise ValueError("Domain must be a valid domain name (e.g., example.com)")
        return value

    @field_validator("force_relay", mode="before")
    @classmethod
    def _parse_bool(cls, value):
        if isinstance(value, str):
            return value.strip().lower() in _TRUTHY
        return value

    @field_validator("log_level")
    @classmethod
    def _check_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Log level must be one of: {', '.join(LOG_LEVELS)}")
        return level

    @model_validator(mode="after")
    def _turn_fields_together(self) -> "Settings":
        # Relay URLs are built from the domain, so a secret alone is useless.
        missing = []
        if self.turn_secret and not self.domain:
            missing.append("DOMAIN")
        if self.domain and not self.turn_secret:
            missing.append("TURN_SECRET")
        if missing:
            raise ValueError(
                "TURN server configuration incomplete. Missing: "
                f"{', '.join(missing)}. Both TURN_SECRET and DOMAIN must be "
                "provided together or both omitted."
            )
        return self

    @property
    def turn_configured(self) -> bool:
        return bool(self.turn_secret and self.domain)

    @property
    def relay_policy(self) -> str:
        return "relay" if self.force_relay else "all"


# Environment variable -> Settings field
_ENV_FIELDS = {
    "HOST": "host",
    "PORT": "port",
    "STUN_SERVERS": "stun_servers",
    "TURN_SECRET": "turn_secret",
    "DOMAIN": "domain",
    "FORCE_RELAY": "force_relay",
    "TURN_CREDENTIAL_TTL": "credential_ttl",
    "REDIS_URL": "redis_url",
    "REVOCATION_TIMEOUT": "revocation_timeout",
    "LOG_LEVEL": "log_level",
}


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` from *environ* (defaults to ``os.environ``).

    Empty variables count as unset. Raises :class:`ConfigurationError` with
    one line per invalid field.
    """

    env = os.environ if environ is None else environ
    values = {}
    for var, field in _ENV_FIELDS.items():
        raw = env.get(var)
        if raw is not None and raw.strip() != "":
            values[field] = raw.strip()
    try:
        return Settings(**values)
    except ValidationError as exc:
        problems = []
        for issue in exc.errors():
            where = ".".join(str(part) for part in issue["loc"]) or "settings"
            problems.append(f"  - {where}: {issue['msg']}")
        raise ConfigurationError(
            "Invalid configuration:\n" + "\n".join(problems)
        ) from exc


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


__all__ = ["Settings", "load_settings", "setup_logging"]
