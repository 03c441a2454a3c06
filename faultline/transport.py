"""Transport capability: the shape the core consumes, plus an httpx implementation."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import httpx
from frozendict import frozendict

from faultline.config import RuntimeConfig
from faultline.errors import Fault, TransportFault

logger = logging.getLogger(__name__)

TRANSPORT = "transport"


@dataclass(frozen=True)
class Request:
    """Target of one exchange."""

    url: str
    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=frozendict)
    body: bytes | None = None
    timeout: float | None = None

    @classmethod
    def coerce(cls, target: Request | str) -> Request:
        if isinstance(target, Request):
            return target
        if isinstance(target, str):
            return cls(url=target)
        raise TypeError(f"expected a Request or URL string, got {type(target).__name__}")


@dataclass(frozen=True)
class RawResponse:
    """Status code and undecoded body of a completed exchange."""

    status: int
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=frozendict)

    @property
    def is_success(self) -> bool:
        return 200 <= self.status < 300


@runtime_checkable
class Transport(Protocol):
    """Perform a request, suspending until a response or a failure arrives."""

    async def request(self, target: Request) -> RawResponse: ...


def map_transport_error(exc: BaseException) -> Fault:
    """Error mapper for transport calls.

    Connection and timeout problems become :class:`TransportFault`. Anything else
    means the transport broke its contract and is re-raised, which the runtime
    reports as a panic.
    """

    if isinstance(exc, (httpx.TransportError, OSError, TimeoutError)):
        return TransportFault(exc)
    if isinstance(exc, httpx.HTTPError):
        return TransportFault(exc)
    raise exc


@dataclass
class HttpxTransport:
    """Thin wrapper around :class:`httpx.AsyncClient`.

    Pass ``client`` to reuse a long-lived client. The caller then owns closing
    it, and the client owns its base URL and transport, so ``client`` cannot be
    combined with ``base_url`` or ``transport``. Otherwise each request opens
    and closes its own client, optionally on a custom ``transport`` such as
    :class:`httpx.MockTransport`.
    """

    base_url: str = ""
    timeout: float | None = None
    default_headers: dict[str, str] | None = None
    client: httpx.AsyncClient | None = None
    transport: httpx.AsyncBaseTransport | None = None

    def __post_init__(self) -> None:
        if self.client is not None and (self.base_url or self.transport is not None):
            raise ValueError(
                "configure base_url and transport on the shared client, not on HttpxTransport"
            )
        if self.timeout is None:
            self.timeout = RuntimeConfig.from_env().request_timeout

    def build_headers(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        headers: dict[str, str] = {"Accept": "application/json"}
        if self.default_headers:
            headers.update(self.default_headers)
        if extra:
            headers.update(dict(extra))
        return headers

    async def request(self, target: Request) -> RawResponse:
        timeout = target.timeout if target.timeout is not None else self.timeout
        if self.client is not None:
            response = await self._send(self.client, target, timeout)
        else:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=timeout,
                transport=self.transport,
            ) as client:
                response = await self._send(client, target, timeout)
        logger.debug("%s %s -> %d", target.method, target.url, response.status_code)
        return RawResponse(
            status=response.status_code,
            body=response.content,
            headers=frozendict(response.headers.items()),
        )

    async def _send(
        self, client: httpx.AsyncClient, target: Request, timeout: float | None
    ) -> httpx.Response:
        return await client.request(
            target.method,
            target.url,
            content=target.body,
            headers=self.build_headers(target.headers),
            timeout=timeout,
        )


__all__ = [
    "HttpxTransport",
    "RawResponse",
    "Request",
    "TRANSPORT",
    "Transport",
    "map_transport_error",
]
