"""Datastore credential lookup with a process-wide, single-flight cache.

Warm invocations reuse the password fetched by the first one. The first fetch
is guarded by an asyncio lock so concurrent first use in one process results in
exactly one call to the underlying source.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Optional
from urllib.parse import quote

import boto3
from botocore.exceptions import ClientError
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .config import Config
from .errors import CredentialError
from .logging_utils import log_db, log_warning

_THROTTLING_CODES = {"ThrottlingException", "TooManyUpdates", "RequestLimitExceeded"}


class CredentialProvider(ABC):
    """Source of the datastore password."""

    @abstractmethod
    async def fetch(self) -> Optional[str]:
        """Return the secret, or None if the source has nothing configured."""
        pass


class EnvCredentialProvider(CredentialProvider):
    """Password from the environment (DB_PASSWORD) or an explicit value."""

    def __init__(self, value: Optional[str] = None):
        self.value = value

    async def fetch(self) -> Optional[str]:
        return self.value if self.value is not None else Config.DB_PASSWORD


def _is_throttled(exc: BaseException) -> bool:
    if not isinstance(exc, ClientError):
        return False
    code = exc.response.get("Error", {}).get("Code")
    return code in _THROTTLING_CODES


class ParameterStoreCredentialProvider(CredentialProvider):
    """Password stored as an encrypted SSM parameter (e.g. /oriole/db/password).

    Throttling responses are retried with exponential backoff; any other
    ClientError (missing parameter, access denied) propagates immediately.
    Pass ``decrypt=False`` for plain String parameters.
    """

    def __init__(
        self,
        parameter_name: str,
        *,
        client: Any = None,
        region_name: Optional[str] = None,
        max_attempts: int = 3,
        decrypt: bool = True,
    ):
        self.parameter_name = parameter_name
        self.decrypt = decrypt
        self.max_attempts = max_attempts
        self._client = client
        self._region_name = region_name or Config.AWS_REGION

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("ssm", region_name=self._region_name)
        return self._client

    def _get_parameter(self) -> str:
        response = self._get_client().get_parameter(
            Name=self.parameter_name, WithDecryption=self.decrypt
        )
        return response["Parameter"]["Value"]

    async def fetch(self) -> Optional[str]:
        attempt_number = 0
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_throttled),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.2, max=2),
            reraise=True,
        ):
            with attempt:
                attempt_number += 1
                if attempt_number > 1:
                    log_warning(
                        f"Parameter Store throttled; retry {attempt_number}/{self.max_attempts} "
                        f"for {self.parameter_name}"
                    )
                # boto3 is synchronous; keep the event loop free while it waits
                return await asyncio.to_thread(self._get_parameter)
        return None  # pragma: no cover - AsyncRetrying always returns or raises


class CredentialCache:
    """Memoizes one credential for the lifetime of the process."""

    def __init__(self, provider: CredentialProvider):
        self.provider = provider
        self.fetch_count = 0
        self._value: Optional[str] = None
        self._lock = asyncio.Lock()

    async def get(self) -> str:
        if self._value is not None:
            return self._value

        async with self._lock:
            # Another task may have completed the fetch while we waited
            if self._value is None:
                value = await self.provider.fetch()
                self.fetch_count += 1
                if not value:
                    raise CredentialError(
                        f"{type(self.provider).__name__} returned no datastore password"
                    )
                self._value = value
                log_db("Datastore credential fetched and cached")
        return self._value

    def clear(self) -> None:
        """Forget the cached value (e.g. after a password rotation)."""
        self._value = None


def default_credential_cache() -> CredentialCache:
    """Parameter Store when DB_PASSWORD_PARAMETER is set, else DB_PASSWORD."""
    if Config.DB_PASSWORD_PARAMETER:
        return CredentialCache(ParameterStoreCredentialProvider(Config.DB_PASSWORD_PARAMETER))
    return CredentialCache(EnvCredentialProvider())


def build_dsn(
    password: str,
    *,
    host: Optional[str] = None,
    port: Optional[int] = None,
    database: Optional[str] = None,
    user: Optional[str] = None,
    ssl: Optional[bool] = None,
) -> str:
    """Assemble a postgresql:// DSN from Config defaults and the resolved password."""
    host = host or Config.DB_HOST
    port = port or Config.DB_PORT
    database = database or Config.DB_NAME
    user = user or Config.DB_USER
    ssl = Config.DB_SSL if ssl is None else ssl

    dsn = f"postgresql://{quote(user, safe='')}:{quote(password, safe='')}@{host}:{port}/{database}"
    if ssl:
        dsn += "?sslmode=require"
    return dsn


async def resolve_dsn(cache: Optional[CredentialCache] = None) -> str:
    """DATABASE_URL if configured, otherwise a DSN built with the cached password."""
    if Config.DATABASE_URL:
        return Config.DATABASE_URL
    cache = cache or default_credential_cache()
    return build_dsn(await cache.get())
