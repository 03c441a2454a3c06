"""Runtime configuration, read from ``FAULTLINE_*`` environment variables."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

_TRUTHY = ("1", "true", "yes")


def _flag(environ: Mapping[str, str], name: str) -> bool:
    return environ.get(name, "").lower() in _TRUTHY


def _seconds(environ: Mapping[str, str], name: str, default: float | None) -> float | None:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    if raw.lower() in ("none", "off"):
        return None
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}") from exc
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {raw!r}")
    return value


@dataclass(frozen=True)
class RuntimeConfig:
    """Knobs for :class:`faultline.runtime.Runtime` and the bundled transport.

    Attributes:
        debug: Log every interpreter step at DEBUG level.
        cleanup_timeout: Upper bound in seconds for one cleanup handler;
            ``None`` waits indefinitely. An overrun is reported as a panic.
        request_timeout: Default per-request timeout for ``HttpxTransport``.
    """

    debug: bool = False
    cleanup_timeout: float | None = None
    request_timeout: float | None = 30.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RuntimeConfig:
        source = os.environ if environ is None else environ
        return cls(
            debug=_flag(source, "FAULTLINE_DEBUG"),
            cleanup_timeout=_seconds(source, "FAULTLINE_CLEANUP_TIMEOUT", None),
            request_timeout=_seconds(source, "FAULTLINE_REQUEST_TIMEOUT", 30.0),
        )


__all__ = ["RuntimeConfig"]
