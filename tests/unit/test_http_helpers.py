import json

import httpx
import pytest

from waypoint.errors import FatalError, RetryableError
from waypoint.workflows import http


def _response(status, headers=None):
    request = httpx.Request("POST", "http://services.test/quote")
    return httpx.Response(status, headers=headers, request=request, json={})


def test_rate_limit_is_retryable_with_hint():
    with pytest.raises(RetryableError) as excinfo:
        http.check_response(_response(429, {"Retry-After": "12"}), "quote")
    assert excinfo.value.retry_after == 12

    with pytest.raises(RetryableError) as excinfo:
        http.check_response(_response(429), "quote", retry_after="45s")
    assert excinfo.value.retry_after == 45


def test_server_errors_are_transient_and_not_found_is_fatal():
    with pytest.raises(RetryableError):
        http.check_response(_response(503), "quote")
    with pytest.raises(FatalError):
        http.check_response(_response(404), "quote")
    with pytest.raises(FatalError):
        http.check_response(_response(409), "po", fatal_statuses=(409,))


def test_other_client_errors_raise_http_status_error():
    with pytest.raises(httpx.HTTPStatusError):
        http.check_response(_response(400), "quote")
    with pytest.raises(httpx.HTTPStatusError):
        http.check_response(_response(404), "search", fatal_statuses=())
    http.check_response(_response(200), "quote")


@pytest.mark.asyncio
async def test_post_json_uses_configured_transport():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, str(request.url), json.loads(request.content)))
        return httpx.Response(200, json={"ok": True})

    http.configure("http://services.test", httpx.MockTransport(handler))
    assert await http.post_json("/policies/check", {"n": 1}, "check") == {"ok": True}
    assert seen == [("POST", "http://services.test/policies/check", {"n": 1})]
