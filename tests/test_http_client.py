import httpx
import pytest

from carrier_gateway.core.exceptions import (
    AuthenticationError,
    ParseFailure,
    RateUnavailableError,
    TransportFailure,
)
from carrier_gateway.core.http_client import CarrierHTTPClient, RetryPolicy, retry_call

NO_DELAY = RetryPolicy(max_retries=2, base_delay=0, max_delay=0, jitter_factor=0)


def client_for(handler) -> CarrierHTTPClient:
    return CarrierHTTPClient("acme", "https://carrier.test/", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_request_json_returns_decoded_body():
    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == "https://carrier.test/rates"
        return httpx.Response(200, json={"ok": True})

    client = client_for(handler)
    assert await client.request_json("GET", "/rates") == {"ok": True}
    await client.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403])
async def test_auth_statuses_map_to_authentication_error(status):
    client = client_for(lambda request: httpx.Response(status, json={}))
    with pytest.raises(AuthenticationError) as exc_info:
        await client.request_json("GET", "/rates")
    await client.close()
    assert exc_info.value.carrier_code == "acme"


@pytest.mark.asyncio
async def test_error_status_maps_to_transport_failure_with_carrier_message():
    client = client_for(lambda request: httpx.Response(503, json={"message": "maintenance"}))
    with pytest.raises(TransportFailure) as exc_info:
        await client.request_json("GET", "/rates", error_extractor=lambda data: data["message"])
    await client.close()

    error = exc_info.value
    assert error.status_code == 503
    assert "maintenance" in error.message
    assert error.failure_class == "transport"


@pytest.mark.asyncio
async def test_timeout_maps_to_transport_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    client = client_for(handler)
    with pytest.raises(TransportFailure) as exc_info:
        await client.request_json("GET", "/rates")
    await client.close()
    assert exc_info.value.code == "CARRIER_TIMEOUT"


@pytest.mark.asyncio
async def test_connection_error_maps_to_transport_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = client_for(handler)
    with pytest.raises(TransportFailure) as exc_info:
        await client.request_json("GET", "/rates")
    await client.close()
    assert exc_info.value.code == "CARRIER_NETWORK_ERROR"


@pytest.mark.asyncio
async def test_non_json_body_maps_to_parse_failure():
    client = client_for(lambda request: httpx.Response(200, text="<html>oops</html>"))
    with pytest.raises(ParseFailure):
        await client.request_json("GET", "/rates")
    await client.close()


@pytest.mark.asyncio
async def test_retry_call_without_policy_runs_once():
    calls = 0

    async def operation():
        nonlocal calls
        calls += 1
        raise TransportFailure("down")

    with pytest.raises(TransportFailure):
        await retry_call(operation, None)
    assert calls == 1


@pytest.mark.asyncio
async def test_retry_call_retries_transport_failures():
    calls = 0

    async def operation():
        nonlocal calls
        calls += 1
        if calls < 3:
            raise TransportFailure("flaky")
        return "ok"

    assert await retry_call(operation, NO_DELAY) == "ok"
    assert calls == 3


@pytest.mark.asyncio
async def test_retry_call_gives_up_after_max_retries():
    calls = 0

    async def operation():
        nonlocal calls
        calls += 1
        raise TransportFailure("down")

    with pytest.raises(TransportFailure):
        await retry_call(operation, NO_DELAY)
    assert calls == 3


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    AuthenticationError("rejected"),
    ParseFailure("garbage"),
    RateUnavailableError("no service"),
])
async def test_retry_call_never_retries_other_failures(error):
    calls = 0

    async def operation():
        nonlocal calls
        calls += 1
        raise error

    with pytest.raises(type(error)):
        await retry_call(operation, NO_DELAY)
    assert calls == 1


def test_backoff_is_capped():
    policy = RetryPolicy(base_delay=1.0, max_delay=3.0, jitter_factor=0)
    assert policy.backoff(0) == 1.0
    assert policy.backoff(1) == 2.0
    assert policy.backoff(5) == 3.0
