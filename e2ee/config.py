"""
Runtime settings.

Defaults are module constants; every value can be overridden from the
environment with the E2EE_ prefix.
"""

import os
from typing import Mapping, Optional

from pydantic import BaseModel

from .retry import RetryPolicy

DEFAULT_SERVER_URL = "http://localhost:8000"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./chat.db"
# Secret key for JWT - in production, set E2EE_SECRET_KEY
DEFAULT_SECRET_KEY = "your-secret-key-change-this-in-production"
# Messages shorter than this go out unencrypted
DEFAULT_MIN_ENCRYPT_LENGTH = 8

ENV_PREFIX = "E2EE_"


class Settings(BaseModel):
    """Settings for the client crypto session and the directory server"""
    server_url: str = DEFAULT_SERVER_URL
    fetch_timeout: float = 5.0
    retry_attempts: int = 3
    retry_backoff: float = 0.5
    min_encrypt_length: int = DEFAULT_MIN_ENCRYPT_LENGTH
    storage_dir: str = "client_data"
    secret_key: str = DEFAULT_SECRET_KEY
    database_url: str = DEFAULT_DATABASE_URL
    token_expire_minutes: int = 60 * 24

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read instead of os.environ

        Returns:
            Settings with overrides applied; pydantic coerces the types
        """
        environ = os.environ if environ is None else environ
        overrides = {}
        for name in cls.model_fields:
            value = environ.get(ENV_PREFIX + name.upper())
            if value is not None:
                overrides[name] = value
        return cls(**overrides)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            timeout=self.fetch_timeout,
        )
