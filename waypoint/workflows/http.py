"""HTTP helpers for workflow steps that call external services."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable, Optional

import httpx
from pydantic_core import to_jsonable_python

from ..errors import FatalError, RetryableError
from ..utils.durations import parse_duration

logger = logging.getLogger(__name__)

DEFAULT_SERVICES_URL = "http://localhost:3000/api/mocks"
DEFAULT_TIMEOUT = 30.0

_base_url: Optional[str] = None
_transport: Optional[httpx.AsyncBaseTransport] = None


def configure(
    base_url: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    """Point workflow steps at ``base_url``, optionally through ``transport``.

    Tests pass an ``httpx.MockTransport`` here.
    """
    global _base_url, _transport
    _base_url = base_url
    _transport = transport


def services_url() -> str:
    return _base_url or os.getenv("WAYPOINT_SERVICES_URL", DEFAULT_SERVICES_URL)


@asynccontextmanager
async def service_client() -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        base_url=services_url(), transport=_transport, timeout=DEFAULT_TIMEOUT
    ) as client:
        yield client


def _retry_after(response: httpx.Response, default: str) -> float:
    header = response.headers.get("retry-after")
    if header:
        try:
            return parse_duration(header)
        except ValueError:
            logger.debug(f"Ignoring non-numeric Retry-After header: {header!r}")
    return parse_duration(default)


def check_response(
    response: httpx.Response,
    operation: str,
    fatal_statuses: Iterable[int] = (404,),
    retry_after: str = "30s",
) -> None:
    """Classify a failed response for the step executor.

    Raises:
        RetryableError: 429 (honouring ``Retry-After``) or any 5xx.
        FatalError: Status in ``fatal_statuses``.
        httpx.HTTPStatusError: Any other non-2xx, retried with backoff.
    """
    status = response.status_code
    if status == 429:
        raise RetryableError(
            f"{operation} rate limited", retry_after=_retry_after(response, retry_after)
        )
    if status >= 500:
        raise RetryableError(f"{operation} transient error: {status}")
    if status in fatal_statuses:
        raise FatalError(f"{operation} failed: {status}")
    response.raise_for_status()


async def get_json(path: str, operation: str, **kwargs: Any) -> Any:
    async with service_client() as client:
        response = await client.get(path)
    check_response(response, operation, **kwargs)
    return response.json()


async def post_json(path: str, payload: Any, operation: str, **kwargs: Any) -> Any:
    async with service_client() as client:
        response = await client.post(path, json=to_jsonable_python(payload))
    check_response(response, operation, **kwargs)
    return response.json()
