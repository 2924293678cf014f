import asyncio

import pytest

from spark.domain.chat.events import ChatError, ErrorCode
from spark.domain.chat.repo import MessageNotFoundError, MessageOwnershipError
from spark.domain.chat.resilience import best_effort, call_with_retry


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [MessageOwnershipError("not yours"), MessageNotFoundError("m1"), PermissionError("denied")])
async def test_domain_failures_are_not_retried(error):
    calls = []

    async def _fails():
        calls.append(1)
        raise error

    with pytest.raises(type(error)):
        await call_with_retry("repository.soft_delete_message", _fails, timeout=1.0)
    assert calls == [1]


@pytest.mark.asyncio
async def test_connection_failures_are_retried_then_time_out():
    calls = []

    async def _refused():
        calls.append(1)
        raise ConnectionRefusedError("db down")

    with pytest.raises(ChatError) as exc:
        await call_with_retry("repository.insert_message", _refused, timeout=1.0)
    assert exc.value.code is ErrorCode.TIMEOUT
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_second_attempt_result_is_returned():
    calls = []

    async def _flaky():
        calls.append(1)
        if len(calls) == 1:
            await asyncio.sleep(1)
        return "ok"

    assert await call_with_retry("presence.get_status", _flaky, timeout=0.05) == "ok"


@pytest.mark.asyncio
async def test_best_effort_returns_default_on_transient_failure():
    async def _reset():
        raise ConnectionResetError()

    assert await best_effort("presence.clear_typing", _reset, timeout=1.0, default=False) is False
