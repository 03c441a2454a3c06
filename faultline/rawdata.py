"""Raw-data parser: bytes in, a loosely-typed tree out.

The tree is deliberately untyped. The only way to get a typed value from it is
:mod:`faultline.schema`.
"""

from __future__ import annotations

import json
from typing import Any, Union

from faultline.effect import Effect, from_outcome, suspend
from faultline.errors import SyntaxFault
from faultline.outcome import Failure, Outcome, Success

RawTree = Union[None, bool, int, float, str, list["RawTree"], dict[str, "RawTree"]]


def parse_bytes(body: bytes | str) -> Outcome[RawTree, SyntaxFault]:
    """Decode a JSON document into a raw tree."""

    if isinstance(body, (bytes, bytearray)):
        try:
            text = bytes(body).decode("utf-8")
        except UnicodeDecodeError as exc:
            return Failure(SyntaxFault(f"body is not UTF-8: {exc.reason}", exc.start))
    else:
        text = body
    if not text.strip():
        return Failure(SyntaxFault("body is empty"))
    try:
        tree: Any = json.loads(text)
    except json.JSONDecodeError as exc:
        return Failure(SyntaxFault(exc.msg, exc.pos))
    return Success(tree)


def parse(body: bytes | str) -> Effect[RawTree, SyntaxFault]:
    """Effect form of :func:`parse_bytes`; parsing happens when the effect runs."""

    return suspend(lambda: from_outcome(parse_bytes(body)))


__all__ = ["RawTree", "parse", "parse_bytes"]
