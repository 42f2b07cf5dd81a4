"""
Runtime configuration.

Settings are read from the environment. JWT secrets may be given directly or
through a file (`ACCESS_TOKEN_SECRET_FILE`, `REFRESH_TOKEN_SECRET_FILE`).
Missing secrets fall back to fixed, publicly known strings; check_deployment()
refuses those in production.
"""

import os
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .auth.errors import ConfigurationError


DEFAULT_ACCESS_TOKEN_SECRET = "ACCESS_TOKEN_DEFAULT"
DEFAULT_REFRESH_TOKEN_SECRET = "REFRESH_TOKEN_DEFAULT"

_TRUE_VALUES = {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Application settings."""

    model_config = ConfigDict(frozen=True)

    environment: str = "development"
    db_path: Path = Path("data/orgadmin.db")
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"

    access_token_secret: str = DEFAULT_ACCESS_TOKEN_SECRET
    refresh_token_secret: str = DEFAULT_REFRESH_TOKEN_SECRET
    jwt_algorithm: str = "HS256"
    access_token_expiry_minutes: int = Field(default=15, gt=0)
    refresh_token_expiry_days: int = Field(default=7, gt=0)

    reset_token_ttl_minutes: int = Field(default=60, gt=0)
    max_allowed_devices: int = Field(default=2, ge=1)
    bcrypt_rounds: int = Field(default=10, ge=4, le=31)
    cookie_secure: bool = True
    cors_origins: Tuple[str, ...] = ()
    trusted_proxies: Tuple[str, ...] = ()

    @field_validator("environment")
    @classmethod
    def _check_environment(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("development", "production"):
            raise ValueError(f"environment must be 'development' or 'production', got {value!r}")
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        return value.strip().upper()

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def allows_origin(self, origin: Optional[str]) -> bool:
        return bool(origin) and origin in self.cors_origins

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read instead of os.environ (for tests)
            **overrides: Explicit field values that win over the environment

        Returns:
            Settings instance
        """
        env = os.environ if environ is None else environ
        values: Dict[str, object] = {}

        mapping = {
            "ORGADMIN_ENV": "environment",
            "ORGADMIN_DB_PATH": "db_path",
            "ORGADMIN_HOST": "host",
            "ORGADMIN_PORT": "port",
            "ORGADMIN_LOG_LEVEL": "log_level",
            "JWT_ALGORITHM": "jwt_algorithm",
            "ACCESS_TOKEN_EXPIRY_MINUTES": "access_token_expiry_minutes",
            "REFRESH_TOKEN_EXPIRY_DAYS": "refresh_token_expiry_days",
            "RESET_TOKEN_TTL_MINUTES": "reset_token_ttl_minutes",
            "MAX_ALLOWED_DEVICES": "max_allowed_devices",
            "BCRYPT_ROUNDS": "bcrypt_rounds",
        }
        for var, name in mapping.items():
            if env.get(var):
                values[name] = env[var]

        if env.get("COOKIE_SECURE"):
            values["cookie_secure"] = env["COOKIE_SECURE"].strip().lower() in _TRUE_VALUES
        if env.get("CORS_ORIGINS"):
            values["cors_origins"] = _split_list(env["CORS_ORIGINS"])
        if env.get("TRUSTED_PROXIES"):
            values["trusted_proxies"] = _split_list(env["TRUSTED_PROXIES"])

        access = _read_secret(env, "ACCESS_TOKEN_SECRET")
        if access:
            values["access_token_secret"] = access
        refresh = _read_secret(env, "REFRESH_TOKEN_SECRET")
        if refresh:
            values["refresh_token_secret"] = refresh

        values.update(overrides)
        return cls(**values)

    def insecure_defaults(self) -> List[str]:
        """Names of secrets still set to their built-in defaults."""
        defaulted = []
        if self.access_token_secret == DEFAULT_ACCESS_TOKEN_SECRET:
            defaulted.append("ACCESS_TOKEN_SECRET")
        if self.refresh_token_secret == DEFAULT_REFRESH_TOKEN_SECRET:
            defaulted.append("REFRESH_TOKEN_SECRET")
        return defaulted

    def check_deployment(self) -> None:
        """
        Flag unsafe token secrets.

        Raises:
            ConfigurationError: In production, when a secret is defaulted or
                both tokens share one secret
        """
        problems = [f"{name} is not set (using insecure default)" for name in self.insecure_defaults()]
        if self.access_token_secret == self.refresh_token_secret:
            problems.append("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ")

        if not problems:
            return

        if self.is_production:
            raise ConfigurationError("; ".join(problems))

        for problem in problems:
            logger.warning(f"Insecure configuration: {problem}")


def _read_secret(env: Mapping[str, str], name: str) -> Optional[str]:
    """Read a secret from `name`, or from the file named by `name`_FILE."""
    value = env.get(name)
    if value:
        return value.strip()

    path = env.get(f"{name}_FILE")
    if not path:
        return None

    secret_file = Path(path)
    if not secret_file.exists():
        raise ConfigurationError(f"{name}_FILE points to a missing file: {secret_file}")
    secret = secret_file.read_text().strip()
    if not secret:
        raise ConfigurationError(f"{name}_FILE is empty: {secret_file}")
    return secret


def _split_list(value: str) -> Tuple[str, ...]:
    """Comma-separated list, blanks dropped."""
    return tuple(item.strip() for item in value.split(",") if item.strip())
