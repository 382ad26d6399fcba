from datetime import timedelta

import pytest

from uniportal.service.errors import RateLimitedError
from uniportal.service.runtime import check_rate_limit, enforce_rate_limit
from uniportal.storage.redis_cache import RedisCache


@pytest.mark.asyncio
async def test_local_bucket_allows_up_to_limit(runtime):
    assert runtime.cache is None
    results = [await check_rate_limit(runtime, "login:lin.zhou", 3, 60) for _ in range(4)]
    assert results == [True, True, True, False]


@pytest.mark.asyncio
async def test_buckets_are_per_key(runtime):
    for _ in range(2):
        await check_rate_limit(runtime, "mfa:4", 2, 60)
    assert await check_rate_limit(runtime, "mfa:4", 2, 60) is False
    assert await check_rate_limit(runtime, "mfa:5", 2, 60) is True


@pytest.mark.asyncio
async def test_remaining_and_reset(runtime):
    allowed, remaining, reset = await check_rate_limit(
        runtime, "login:ada", 2, 60, return_remaining=True
    )
    assert (allowed, remaining, reset) == (True, 1, 0)
    await check_rate_limit(runtime, "login:ada", 2, 60)
    allowed, remaining, reset = await check_rate_limit(
        runtime, "login:ada", 2, 60, return_remaining=True
    )
    assert allowed is False
    assert remaining == 0
    assert 0 < reset <= 30


@pytest.mark.asyncio
async def test_zero_limit_disables_throttling(runtime):
    for _ in range(20):
        assert await check_rate_limit(runtime, "login:x", 0, 60) is True


@pytest.mark.asyncio
async def test_enforce_raises_with_retry_after(runtime):
    await enforce_rate_limit(runtime, "login:kwame", 1)
    with pytest.raises(RateLimitedError) as excinfo:
        await enforce_rate_limit(runtime, "login:kwame", 1)
    assert excinfo.value.status_code == 429
    assert excinfo.value.detail["retry_after"] >= 1


def test_redis_keys_are_hashed():
    key = RedisCache._normalize_rate_key("login:a:b@uni.example")
    assert key.startswith("rate:")
    assert "uni.example" not in key
    assert key != RedisCache._normalize_rate_key("login:a")


@pytest.mark.asyncio
async def test_refilled_local_buckets_are_dropped(runtime):
    await check_rate_limit(runtime, "login:lin.zhou", 3, 60)
    assert "login:lin.zhou" in runtime._local_rate_limits

    tokens, last_ts, full_at = runtime._local_rate_limits["login:lin.zhou"]
    runtime._local_rate_limits["login:lin.zhou"] = (
        tokens,
        last_ts - timedelta(seconds=120),
        full_at - timedelta(seconds=120),
    )
    await check_rate_limit(runtime, "login:ada.okafor", 3, 60)
    assert set(runtime._local_rate_limits) == {"login:ada.okafor"}
