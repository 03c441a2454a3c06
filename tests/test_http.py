"""Fetch-and-validate flows, end to end through the runtime."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

import httpx
import pytest

from faultline import (
    FieldViolation,
    Issue,
    Panic,
    PanicKind,
    Shape,
    StatusFault,
    SyntaxFault,
    TransportFault,
    ValidationFailure,
    ValidationSchema,
    do,
    http,
    run,
)
from faultline.transport import TRANSPORT, HttpxTransport, RawResponse, Request

ITEM_URL = "http://localhost:3000/items/1"


class Color(Enum):
    RED = "red"


class Reading(Shape):
    color: Color
    at: datetime
    pair: tuple[int, int]


class TestFetchJson:
    @pytest.mark.asyncio
    async def test_conforming_body(self, make_transport, item_schema):
        transport = make_transport(
            response=RawResponse(200, b'{"data_field": "x", "correct_field_name": "y"}')
        )
        outcome = await run(http.fetch_json(ITEM_URL, item_schema), {TRANSPORT: transport})
        assert outcome.is_success()
        assert outcome.value == item_schema.target(data_field="x", correct_field_name="y")
        assert transport.calls == [Request(ITEM_URL)]

    @pytest.mark.asyncio
    async def test_body_with_enum_datetime_and_tuple(self, make_transport):
        transport = make_transport(
            response=RawResponse(200, b'{"color":"red","at":"2024-01-01T00:00:00","pair":[1,2]}')
        )
        outcome = await run(
            http.fetch_json(ITEM_URL, ValidationSchema(Reading)), {TRANSPORT: transport}
        )
        assert outcome.value == Reading(color=Color.RED, at=datetime(2024, 1, 1), pair=(1, 2))

    @pytest.mark.asyncio
    async def test_body_missing_a_field(self, make_transport, item_schema):
        transport = make_transport(response=RawResponse(200, b'{"data_field": "x"}'))
        outcome = await run(http.fetch_json(ITEM_URL, item_schema), {TRANSPORT: transport})
        assert isinstance(outcome.error, ValidationFailure)
        assert outcome.error.violations == (
            FieldViolation(("correct_field_name",), Issue.MISSING),
        )

    @pytest.mark.asyncio
    async def test_connection_refused(self, make_transport, item_schema):
        refused = ConnectionRefusedError("connection refused")
        transport = make_transport(error=refused)
        outcome = await run(http.fetch_json(ITEM_URL, item_schema), {TRANSPORT: transport})
        assert isinstance(outcome.error, TransportFault)
        assert outcome.error.cause is refused

    @pytest.mark.asyncio
    async def test_not_found(self, make_transport, item_schema):
        transport = make_transport(response=RawResponse(404, b"not here"))
        outcome = await run(http.fetch_json(ITEM_URL, item_schema), {TRANSPORT: transport})
        assert outcome.error == StatusFault(404)
        assert outcome.error.body == b"not here"

    @pytest.mark.asyncio
    async def test_unparseable_body(self, make_transport, item_schema):
        transport = make_transport(response=RawResponse(200, b"<html>"))
        outcome = await run(http.fetch_json(ITEM_URL, item_schema), {TRANSPORT: transport})
        assert isinstance(outcome.error, SyntaxFault)
        assert outcome.error.position == 0

    @pytest.mark.asyncio
    async def test_transport_contract_violation_is_a_panic(self, make_transport, item_schema):
        transport = make_transport(error=ValueError("transport bug"))
        outcome = await run(http.fetch_json(ITEM_URL, item_schema), {TRANSPORT: transport})
        assert isinstance(outcome.error, Panic)
        assert outcome.error.kind is PanicKind.CONTRACT

    @pytest.mark.asyncio
    async def test_get_without_schema_returns_raw_tree(self, make_transport):
        transport = make_transport(response=RawResponse(200, b'{"anything": [1, 2]}'))
        outcome = await run(http.get(ITEM_URL), {TRANSPORT: transport})
        assert outcome.value == {"anything": [1, 2]}

    @pytest.mark.asyncio
    async def test_do_notation_flow(self, make_transport, item_schema):
        transport = make_transport(
            response=RawResponse(200, b'{"data_field": "a", "correct_field_name": "b"}')
        )

        @do(requires={TRANSPORT})
        def load(item_id: int):
            response = yield http.request(f"http://localhost:3000/items/{item_id}")
            yield http.expect_success(response)
            raw = yield http.parse_body(response)
            return raw["data_field"]

        assert (await run(load(1), {TRANSPORT: transport})).value == "a"
        assert transport.calls[0].url == ITEM_URL

    def test_request_requires_transport(self, item_schema):
        assert http.fetch_json(ITEM_URL, item_schema).requires == {TRANSPORT}


class TestHttpxTransport:
    @pytest.mark.asyncio
    async def test_round_trip_through_mock_transport(self, item_schema):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"data_field": "x", "correct_field_name": "y"})

        transport = HttpxTransport(
            base_url="http://localhost:3000",
            default_headers={"X-Client": "tests"},
            transport=httpx.MockTransport(handler),
        )
        outcome = await run(http.fetch_json("/items/1", item_schema), {TRANSPORT: transport})
        assert outcome.value.correct_field_name == "y"
        assert seen[0].url.path == "/items/1"
        assert seen[0].headers["X-Client"] == "tests"
        assert seen[0].headers["Accept"] == "application/json"

    @pytest.mark.asyncio
    async def test_status_is_reported(self, item_schema):
        transport = HttpxTransport(
            transport=httpx.MockTransport(lambda request: httpx.Response(503, text="busy"))
        )
        outcome = await run(http.fetch_json(ITEM_URL, item_schema), {TRANSPORT: transport})
        assert outcome.error == StatusFault(503)

    @pytest.mark.asyncio
    async def test_connect_error_becomes_transport_fault(self, item_schema):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        transport = HttpxTransport(transport=httpx.MockTransport(handler))
        outcome = await run(http.fetch_json(ITEM_URL, item_schema), {TRANSPORT: transport})
        assert isinstance(outcome.error, TransportFault)
        assert isinstance(outcome.error.cause, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_shared_client(self):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"[]"))
        )
        try:
            transport = HttpxTransport(client=client)
            outcome = await run(http.get(ITEM_URL), {TRANSPORT: transport})
        finally:
            await client.aclose()
        assert outcome.value == []

    @pytest.mark.asyncio
    async def test_shared_client_owns_base_url(self):
        client = httpx.AsyncClient()
        try:
            with pytest.raises(ValueError, match="base_url"):
                HttpxTransport(base_url="http://localhost:3000", client=client)
            with pytest.raises(ValueError):
                HttpxTransport(client=client, transport=httpx.MockTransport(lambda r: None))
        finally:
            await client.aclose()

    def test_timeout_defaults_from_config(self, monkeypatch):
        monkeypatch.setenv("FAULTLINE_REQUEST_TIMEOUT", "2.5")
        assert HttpxTransport().timeout == 2.5
        assert HttpxTransport(timeout=1.0).timeout == 1.0
