import pytest

from liquidity_guard.retry import with_retry


@pytest.mark.asyncio
async def test_succeeds_after_transient_failures():
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("blip")
        return "ok"

    assert await with_retry(flaky, max_retries=3, initial_delay=0) == "ok"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_reraises_last_error():
    attempts = []

    async def down():
        attempts.append(1)
        raise ConnectionError(f"attempt {len(attempts)}")

    with pytest.raises(ConnectionError, match="attempt 2"):
        await with_retry(down, max_retries=2, initial_delay=0)


@pytest.mark.asyncio
async def test_requires_at_least_one_attempt():
    async def noop():
        return None

    with pytest.raises(ValueError):
        await with_retry(noop, max_retries=0)
