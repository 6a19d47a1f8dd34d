import pytest

from chat_core.errors import RateLimited
from chat_core.services.rate_limiter import SenderRateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestSenderRateLimiter:
    @pytest.mark.asyncio
    async def test_allows_up_to_the_limit(self) -> None:
        clock = FakeClock()
        limiter = SenderRateLimiter(3, time_window=60.0, clock=clock)

        for _ in range(3):
            await limiter.acquire("cust-1")

        with pytest.raises(RateLimited) as exc_info:
            await limiter.acquire("cust-1")
        assert exc_info.value.retry_after == pytest.approx(60.0)
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_window_slides(self) -> None:
        clock = FakeClock()
        limiter = SenderRateLimiter(2, time_window=60.0, clock=clock)
        await limiter.acquire("cust-1")
        clock.now += 30
        await limiter.acquire("cust-1")

        clock.now += 31
        await limiter.acquire("cust-1")
        assert await limiter.remaining("cust-1") == 0

        with pytest.raises(RateLimited) as exc_info:
            await limiter.acquire("cust-1")
        assert exc_info.value.retry_after == pytest.approx(29.0)

    @pytest.mark.asyncio
    async def test_senders_are_independent(self) -> None:
        limiter = SenderRateLimiter(1, clock=FakeClock())
        await limiter.acquire("cust-1")
        await limiter.acquire("drv-1")
        assert await limiter.remaining("cust-1") == 0
        assert await limiter.remaining("merchant-1") == 1

    @pytest.mark.asyncio
    async def test_idle_senders_are_forgotten(self) -> None:
        clock = FakeClock()
        limiter = SenderRateLimiter(2, time_window=60.0, clock=clock)
        await limiter.acquire("cust-1")
        await limiter.acquire("drv-1")

        clock.now += 61
        await limiter.acquire("shop-1")

        assert set(limiter._sent) == {"shop-1"}
        assert await limiter.remaining("cust-1") == 2
