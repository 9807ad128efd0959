"""
Network capability used by the connectivity tests.

``HttpTransport`` is the single call the tester needs; ``AiohttpTransport``
implements it on top of an ``aiohttp.ClientSession`` with a per-request
timeout and retries on connection errors.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import orjson
from aiohttp import ClientError, ClientSession, ClientTimeout

from ..conf import HTTP_RETRIES, HTTP_RETRY_DELAY
from ..exceptions import NetworkFailure

logger = logging.getLogger("navigator.keyvault")


@dataclass
class HttpRequest:
    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    timeout: float = 30.0


@dataclass
class HttpResponse:
    status: int
    status_text: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""

    @property
    def status_line(self) -> str:
        return f"HTTP {self.status}: {self.status_text}"

    def json(self) -> Any:
        return orjson.loads(self.body)


class HttpTransport(Protocol):
    async def request(self, request: HttpRequest) -> HttpResponse:
        ...


class AiohttpTransport:
    """HttpTransport backed by aiohttp.

    Connection errors and timeouts are retried ``retries`` times with a short
    pause; once exhausted a ``NetworkFailure`` is raised.  HTTP error statuses
    are returned, not raised.
    """

    def __init__(
        self,
        session: Optional[ClientSession] = None,
        retries: int = HTTP_RETRIES,
        retry_delay: float = HTTP_RETRY_DELAY,
    ):
        self._session = session
        self._owns_session = session is None
        self._retries = max(1, retries)
        self._retry_delay = retry_delay

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "AiohttpTransport":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def request(self, request: HttpRequest) -> HttpResponse:
        session = await self._get_session()
        timeout = ClientTimeout(total=request.timeout)
        last_error: Optional[BaseException] = None
        for attempt in range(1, self._retries + 1):
            try:
                async with session.request(
                    request.method,
                    request.url,
                    headers=request.headers,
                    data=request.body.encode("utf-8") if request.body is not None else None,
                    timeout=timeout,
                ) as response:
                    body = await response.text(errors="replace")
                    return HttpResponse(
                        status=response.status,
                        status_text=response.reason or "",
                        headers={k: v for k, v in response.headers.items()},
                        body=body,
                    )
            except (ClientError, asyncio.TimeoutError) as err:
                last_error = err
                logger.warning(
                    "Request %s %s failed (attempt %d/%d): %s",
                    request.method, request.url, attempt, self._retries,
                    str(err) or type(err).__name__,
                )
                if attempt < self._retries:
                    await asyncio.sleep(self._retry_delay)
        raise NetworkFailure(
            f"Request failed after {self._retries} attempt(s): "
            f"{str(last_error) or type(last_error).__name__}"
        ) from last_error
