"""Environment: the immutable capability-name -> implementation mapping a run binds.

An environment is a :class:`frozendict`, so once ``run`` receives it nothing can
change it for the lifetime of that run. ``provide_environment`` layers a partial
environment over the outer one for a nested description only.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from frozendict import frozendict

Environment = frozendict

EMPTY: Environment = frozendict()


def make_environment(
    capabilities: Mapping[str, Any] | None = None, **named: Any
) -> Environment:
    """Build an environment from a mapping and/or keyword arguments."""

    if not capabilities and not named:
        return EMPTY
    merged = {**(capabilities or {}), **named}
    for key in merged:
        if not isinstance(key, str):
            raise TypeError(f"capability names must be strings, got {key!r}")
    return frozendict(merged)


def overlay(base: Environment, update: Mapping[str, Any]) -> Environment:
    """Return ``base`` with ``update`` layered on top; ``update`` wins on conflicts."""

    if not update:
        return base
    return frozendict({**base, **update})


def missing(requires: Iterable[str], env: Mapping[str, Any]) -> frozenset[str]:
    """Names in ``requires`` that ``env`` does not satisfy."""

    return frozenset(name for name in requires if name not in env)


__all__ = ["EMPTY", "Environment", "make_environment", "missing", "overlay"]
