"""HTTP helpers composing transport, status check, parsing and validation.

Every failure mode of fetching remote JSON shows up in the error channel:

* the exchange itself fails -> ``TransportFault``
* the status is not 2xx -> ``StatusFault``
* the body is not JSON -> ``SyntaxFault``
* the JSON has the wrong shape -> ``ValidationFailure``
"""

from __future__ import annotations

import logging
from typing import Any, TypeVar

from faultline.effect import Effect, fail, from_fallible_call, pure
from faultline.errors import Fault, StatusFault
from faultline.rawdata import RawTree, parse
from faultline.schema import ValidationSchema
from faultline.transport import TRANSPORT, RawResponse, Request, map_transport_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


def request(target: Request | str) -> Effect[RawResponse, Fault]:
    """Perform one exchange on the ``transport`` capability."""

    req = Request.coerce(target)
    return from_fallible_call(
        TRANSPORT,
        lambda transport: transport.request(req),
        map_transport_error,
        label=f"{req.method} {req.url}",
    )


def expect_success(response: RawResponse) -> Effect[RawResponse, StatusFault]:
    """Fail with ``StatusFault`` unless the status is 2xx."""

    if response.is_success:
        return pure(response)
    logger.debug("non-success status %d", response.status)
    return fail(StatusFault(response.status, response.body))


def parse_body(response: RawResponse) -> Effect[RawTree, Fault]:
    return parse(response.body)


def fetch_raw(target: Request | str) -> Effect[RawTree, Fault]:
    """Request ``target``, check the status and parse the body."""

    return request(target).flat_map(expect_success).flat_map(parse_body)


def fetch_json(target: Request | str, schema: ValidationSchema[T]) -> Effect[T, Fault]:
    """Request ``target`` and validate its JSON body against ``schema``."""

    return fetch_raw(target).validate_with(schema)


def get(url: str, schema: ValidationSchema[T] | None = None, **options: Any) -> Effect[Any, Fault]:
    target = Request(url=url, method="GET", **options)
    if schema is None:
        return fetch_raw(target)
    return fetch_json(target, schema)


__all__ = [
    "expect_success",
    "fetch_json",
    "fetch_raw",
    "get",
    "parse_body",
    "request",
]
