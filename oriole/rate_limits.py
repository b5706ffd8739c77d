"""Per-model request pacing for the turn loop.

The workflow engine waits between agent turns so each model stays under its
provider's requests-per-minute budget. Budgets default to
Config.DEFAULT_RATE_LIMIT_RPM and can be overridden per model with a plain
Parameter Store value:

    /oriole/models/claude-3-5-haiku/rate-limit-rpm = 50

Lookups are cached for the life of the process, like the datastore password.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import ClientError

from .config import Config
from .credentials import ParameterStoreCredentialProvider
from .logging_utils import log_info, log_warning


def model_key(model_name: str) -> str:
    """Parameter path segment for a model: lowercase, dots become dashes."""
    return model_name.strip().lower().replace(".", "-")


def wait_seconds(rpm: int) -> int:
    """Whole seconds between requests, rounded up so the budget is never exceeded."""
    if rpm < 1:
        raise ValueError(f"rate limit must be >= 1 req/min, got {rpm}")
    return math.ceil(60 / rpm)


class RateLimitLookup:
    """Requests-per-minute budget per model name.

    Without a parameter prefix every model gets ``default_rpm`` and no AWS call
    is made. A missing or unusable override falls back to the default; the
    fallback is not cached, so an override added later is picked up.
    """

    def __init__(
        self,
        *,
        parameter_prefix: Optional[str] = None,
        default_rpm: Optional[int] = None,
        client: Any = None,
        region_name: Optional[str] = None,
    ):
        self.parameter_prefix = parameter_prefix.rstrip("/") if parameter_prefix else None
        self.default_rpm = Config.DEFAULT_RATE_LIMIT_RPM if default_rpm is None else default_rpm
        self._client = client
        self._region_name = region_name or Config.AWS_REGION
        self._cache: Dict[str, int] = {}

    def parameter_name(self, model_name: str) -> str:
        return f"{self.parameter_prefix}/{model_key(model_name)}/rate-limit-rpm"

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("ssm", region_name=self._region_name)
        return self._client

    async def rpm(self, model_name: str) -> int:
        if not self.parameter_prefix:
            return self.default_rpm
        if model_name in self._cache:
            return self._cache[model_name]

        name = self.parameter_name(model_name)
        provider = ParameterStoreCredentialProvider(name, client=self._get_client(), decrypt=False)
        try:
            raw = await provider.fetch()
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") != "ParameterNotFound":
                raise
            log_warning(
                f"No rate limit found for model {model_name}, defaulting to {self.default_rpm} rpm"
            )
            return self.default_rpm

        try:
            value = int(raw)
        except (TypeError, ValueError):
            value = 0
        if value < 1:
            log_warning(
                f"Ignoring rate limit {raw!r} in {name}, defaulting to {self.default_rpm} rpm"
            )
            return self.default_rpm

        self._cache[model_name] = value
        log_info(f"Rate limit for {model_name}: {value} req/min (from {name})")
        return value


_default_lookup: Optional[RateLimitLookup] = None


def default_rate_limit_lookup() -> RateLimitLookup:
    """Process-wide lookup using RATE_LIMIT_PARAMETER_PREFIX, if set."""
    global _default_lookup
    if _default_lookup is None:
        _default_lookup = RateLimitLookup(parameter_prefix=Config.RATE_LIMIT_PARAMETER_PREFIX)
    return _default_lookup
