"""
Retrying transport: which failures are retried, how many calls are made,
and the backoff schedule between them.
"""
import httpx
import pytest

from orderflow.clients.transport import RetryingTransport
from orderflow.core.retry import backoff_delay


class Recorder:
    def __init__(self, statuses: list[int] | None = None, errors: int = 0):
        self.statuses = list(statuses or [])
        self.errors = errors
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.errors:
            self.errors -= 1
            raise httpx.ConnectError("connection refused", request=request)
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status, json={"status": status})


def make_client(recorder: Recorder, delays: list[float]) -> httpx.AsyncClient:
    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    transport = RetryingTransport(httpx.MockTransport(recorder), context="test", sleep=fake_sleep)
    return httpx.AsyncClient(transport=transport, base_url="https://upstream.test")


def test_backoff_schedule_is_exponential_and_capped():
    assert [backoff_delay(n, 1.0, 2.0, 10.0) for n in range(5)] == [1.0, 2.0, 4.0, 8.0, 10.0]


@pytest.mark.asyncio
async def test_three_503s_then_200_returns_the_200_after_four_calls():
    recorder, delays = Recorder([503, 503, 503, 200]), []
    async with make_client(recorder, delays) as client:
        response = await client.post("/v1/payments", json={})
    assert response.status_code == 200
    assert recorder.calls == 4
    assert delays == [1.0, 2.0, 4.0]


@pytest.mark.asyncio
async def test_client_error_is_returned_without_retry():
    recorder, delays = Recorder([400]), []
    async with make_client(recorder, delays) as client:
        response = await client.get("/v1/payments/1")
    assert response.status_code == 400
    assert recorder.calls == 1
    assert delays == []


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [408, 429, 500, 502, 504])
async def test_every_retryable_status_is_retried(status):
    recorder, delays = Recorder([status, 200]), []
    async with make_client(recorder, delays) as client:
        response = await client.get("/v1/payments/1")
    assert response.status_code == 200
    assert recorder.calls == 2


@pytest.mark.asyncio
async def test_exhausted_attempts_return_the_last_retryable_response():
    recorder, delays = Recorder([503, 503, 503, 503, 200]), []
    async with make_client(recorder, delays) as client:
        response = await client.get("/v1/payments/1")
    assert response.status_code == 503
    assert recorder.calls == 4


@pytest.mark.asyncio
async def test_network_errors_are_retried_then_reraised():
    recorder, delays = Recorder(errors=10), []
    async with make_client(recorder, delays) as client:
        with pytest.raises(httpx.ConnectError):
            await client.get("/v1/payments/1")
    assert recorder.calls == 4
    assert delays == [1.0, 2.0, 4.0]


@pytest.mark.asyncio
async def test_network_error_followed_by_success():
    recorder, delays = Recorder(errors=1), []
    async with make_client(recorder, delays) as client:
        response = await client.get("/v1/payments/1")
    assert response.status_code == 200
    assert recorder.calls == 2


def test_rejects_zero_attempts():
    with pytest.raises(ValueError):
        RetryingTransport(httpx.MockTransport(Recorder()), max_attempts=0)
