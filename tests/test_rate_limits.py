"""Tests for per-model request pacing."""

import pytest
from botocore.exceptions import ClientError

from oriole.config import Config
from oriole.rate_limits import RateLimitLookup, model_key, wait_seconds


class FakeSSM:
    def __init__(self, values=None, throttles=0):
        self.values = values or {}
        self.throttles = throttles
        self.calls = []

    def get_parameter(self, Name, WithDecryption):
        self.calls.append((Name, WithDecryption))
        if len(self.calls) <= self.throttles:
            raise ClientError(
                {"Error": {"Code": "ThrottlingException", "Message": "slow down"}}, "GetParameter"
            )
        if Name not in self.values:
            raise ClientError(
                {"Error": {"Code": "ParameterNotFound", "Message": Name}}, "GetParameter"
            )
        return {"Parameter": {"Name": Name, "Value": self.values[Name]}}


def test_model_key_and_wait():
    assert model_key("Claude-3.5-Haiku") == "claude-3-5-haiku"
    assert model_key("gpt-4o") == "gpt-4o"
    assert wait_seconds(10) == 6
    assert wait_seconds(7) == 9
    assert wait_seconds(120) == 1
    with pytest.raises(ValueError):
        wait_seconds(0)


@pytest.mark.asyncio
async def test_without_prefix_every_model_gets_the_configured_default(monkeypatch):
    monkeypatch.setattr(Config, "DEFAULT_RATE_LIMIT_RPM", 12)
    ssm = FakeSSM()
    lookup = RateLimitLookup(client=ssm)

    assert await lookup.rpm("any-model") == 12
    assert ssm.calls == []


@pytest.mark.asyncio
async def test_override_is_read_once_per_model():
    ssm = FakeSSM({"/oriole/models/claude-3-5-haiku/rate-limit-rpm": "50"}, throttles=1)
    lookup = RateLimitLookup(parameter_prefix="/oriole/models/", default_rpm=10, client=ssm)

    assert await lookup.rpm("Claude-3.5-Haiku") == 50
    assert await lookup.rpm("Claude-3.5-Haiku") == 50
    # One throttled call, one success, then served from the cache
    assert ssm.calls == [("/oriole/models/claude-3-5-haiku/rate-limit-rpm", False)] * 2


@pytest.mark.asyncio
async def test_missing_or_invalid_override_falls_back_to_default():
    ssm = FakeSSM({"/oriole/models/broken/rate-limit-rpm": "fast"})
    lookup = RateLimitLookup(parameter_prefix="/oriole/models", default_rpm=10, client=ssm)

    assert await lookup.rpm("unlisted-model") == 10
    assert await lookup.rpm("broken") == 10
    # Fallbacks are not cached
    await lookup.rpm("unlisted-model")
    assert len(ssm.calls) == 3


@pytest.mark.asyncio
async def test_other_client_errors_propagate():
    class DeniedSSM:
        def get_parameter(self, Name, WithDecryption):
            raise ClientError({"Error": {"Code": "AccessDeniedException", "Message": "no"}}, "GetParameter")

    lookup = RateLimitLookup(parameter_prefix="/oriole/models", client=DeniedSSM())
    with pytest.raises(ClientError):
        await lookup.rpm("m")
