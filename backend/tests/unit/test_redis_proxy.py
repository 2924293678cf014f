import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from spark.infra.redis import RedisProxy


class _Unreachable:
    def __init__(self):
        self.pings = 0

    async def ping(self):
        self.pings += 1
        raise RedisConnectionError("connection refused")


@pytest.mark.asyncio
async def test_wait_until_ready_raises_the_last_ping_error():
    client = _Unreachable()
    proxy = RedisProxy(client)
    with pytest.raises(RedisConnectionError, match="connection refused"):
        await proxy.wait_until_ready(attempts=3, delay=0)
    assert client.pings == 3


@pytest.mark.asyncio
async def test_wait_until_ready_without_attempts_still_raises():
    client = _Unreachable()
    with pytest.raises(RedisConnectionError):
        await RedisProxy(client).wait_until_ready(attempts=0, delay=0)
    assert client.pings == 0


@pytest.mark.asyncio
async def test_wait_until_ready_returns_once_the_server_answers(fake_redis):
    await RedisProxy(fake_redis).wait_until_ready(attempts=1, delay=0)
