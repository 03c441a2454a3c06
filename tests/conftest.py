"""
Shared fixtures: scripted capabilities and the item schema used across tests.
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from faultline import Shape, ValidationSchema
from faultline.transport import RawResponse, Request


class ItemDetail(Shape):
    data_field: str
    correct_field_name: str


class FakeTransport:
    """Transport that answers from a script instead of the network.

    ``hang=True`` makes every request wait until ``release()`` is called.
    """

    def __init__(
        self,
        response: RawResponse | None = None,
        error: BaseException | None = None,
        hang: bool = False,
    ) -> None:
        self.response = response or RawResponse(200, b"{}")
        self.error = error
        self.hang = hang
        self.calls: list[Request] = []
        self.aborted = 0
        self.started = asyncio.Event()
        self._gate = asyncio.Event()

    async def request(self, target: Request) -> RawResponse:
        self.calls.append(target)
        self.started.set()
        if self.hang:
            await self._gate.wait()
        if self.error is not None:
            raise self.error
        return self.response

    def release(self) -> None:
        self._gate.set()

    def abort(self) -> None:
        self.aborted += 1


class Recorder:
    """Capability that records named events in call order."""

    def __init__(self) -> None:
        self.events: list[Any] = []

    def note(self, event: Any) -> None:
        self.events.append(event)

    async def note_later(self, event: Any, delay: float = 0.01) -> None:
        await asyncio.sleep(delay)
        self.events.append(event)


@pytest.fixture
def item_schema() -> ValidationSchema[ItemDetail]:
    return ValidationSchema(ItemDetail)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def make_transport():
    def factory(**kwargs: Any) -> FakeTransport:
        return FakeTransport(**kwargs)

    return factory
