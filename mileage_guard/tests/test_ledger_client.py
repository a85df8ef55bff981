"""Tests for mileage_guard.ledger_client."""

from __future__ import annotations

import json

import httpx
import pytest
import respx

from mileage_guard.errors import SubmissionRejectedError, SubmissionTransportError
from mileage_guard.ledger_client import (
    DryRunLedgerClient,
    HttpLedgerClient,
    create_ledger_client,
)
from mileage_guard.schemas import SubmissionPayload
from mileage_guard.tests.factories import closed_batch, make_settings, ref

_URL = "http://test-ledger:8899/v1/anchors"


def _make_payload() -> SubmissionPayload:
    return SubmissionPayload.from_batch(closed_batch([ref(45000, 0), ref(45060, 3600)]))


@pytest.mark.asyncio
@respx.mock
async def test_anchor_success() -> None:
    route = respx.post(_URL).mock(
        return_value=httpx.Response(201, json={"transactionHash": "0xabc123"})
    )
    client = HttpLedgerClient(make_settings(ledger_api_key="secret"))
    await client.start()
    payload = _make_payload()
    try:
        assert await client.anchor(payload) == "0xabc123"
    finally:
        await client.close()

    request = route.calls.last.request
    assert request.headers["Idempotency-Key"] == payload.digest()
    assert request.headers["Authorization"] == "Bearer secret"
    assert request.headers["Content-Type"] == "application/json"
    assert json.loads(request.content) == json.loads(payload.canonical_json())


@pytest.mark.asyncio
@respx.mock
async def test_no_auth_header_without_key() -> None:
    route = respx.post(_URL).mock(return_value=httpx.Response(200, json={"tx_hash": "0x1"}))
    client = HttpLedgerClient(make_settings())
    await client.start()
    try:
        assert await client.anchor(_make_payload()) == "0x1"
    finally:
        await client.close()
    assert "Authorization" not in route.calls.last.request.headers


@pytest.mark.asyncio
@respx.mock
async def test_5xx_is_transport_error() -> None:
    respx.post(_URL).mock(return_value=httpx.Response(503))
    client = HttpLedgerClient(make_settings())
    await client.start()
    try:
        with pytest.raises(SubmissionTransportError) as exc_info:
            await client.anchor(_make_payload())
        assert exc_info.value.status_code == 503
    finally:
        await client.close()


@pytest.mark.asyncio
@respx.mock
async def test_4xx_is_rejection() -> None:
    respx.post(_URL).mock(return_value=httpx.Response(400, text="bad mileage_delta"))
    client = HttpLedgerClient(make_settings())
    await client.start()
    try:
        with pytest.raises(SubmissionRejectedError) as exc_info:
            await client.anchor(_make_payload())
        assert exc_info.value.status_code == 400
        assert "bad mileage_delta" in exc_info.value.message
    finally:
        await client.close()


@pytest.mark.asyncio
@respx.mock
async def test_409_with_hash_means_already_anchored() -> None:
    respx.post(_URL).mock(
        return_value=httpx.Response(409, json={"transaction_hash": "0xexisting"})
    )
    client = HttpLedgerClient(make_settings())
    await client.start()
    try:
        assert await client.anchor(_make_payload()) == "0xexisting"
    finally:
        await client.close()


@pytest.mark.asyncio
@respx.mock
async def test_409_without_hash_is_rejection() -> None:
    respx.post(_URL).mock(return_value=httpx.Response(409, json={"error": "conflict"}))
    client = HttpLedgerClient(make_settings())
    await client.start()
    try:
        with pytest.raises(SubmissionRejectedError):
            await client.anchor(_make_payload())
    finally:
        await client.close()


@pytest.mark.asyncio
@respx.mock
async def test_success_without_hash_is_transport_error() -> None:
    respx.post(_URL).mock(return_value=httpx.Response(200, text="ok"))
    client = HttpLedgerClient(make_settings())
    await client.start()
    try:
        with pytest.raises(SubmissionTransportError, match="no transaction hash"):
            await client.anchor(_make_payload())
    finally:
        await client.close()


@pytest.mark.asyncio
@respx.mock
async def test_connection_error_is_transport_error() -> None:
    respx.post(_URL).mock(side_effect=httpx.ConnectError("Connection refused"))
    client = HttpLedgerClient(make_settings())
    await client.start()
    try:
        with pytest.raises(SubmissionTransportError, match="unreachable"):
            await client.anchor(_make_payload())
    finally:
        await client.close()


@pytest.mark.asyncio
@respx.mock
async def test_timeout_is_transport_error() -> None:
    respx.post(_URL).mock(side_effect=httpx.ReadTimeout("slow ledger"))
    client = HttpLedgerClient(make_settings())
    await client.start()
    try:
        with pytest.raises(SubmissionTransportError, match="timed out"):
            await client.anchor(_make_payload())
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_anchor_before_start_raises() -> None:
    client = HttpLedgerClient(make_settings())
    with pytest.raises(RuntimeError):
        await client.anchor(_make_payload())


@pytest.mark.asyncio
@respx.mock
async def test_injected_client_is_not_closed() -> None:
    respx.post(_URL).mock(return_value=httpx.Response(200, json={"txHash": "0x2"}))
    async with httpx.AsyncClient() as http:
        client = HttpLedgerClient(make_settings(), client=http)
        await client.start()
        assert await client.anchor(_make_payload()) == "0x2"
        await client.close()
        assert not http.is_closed


@pytest.mark.asyncio
async def test_dry_run_returns_digest_hash() -> None:
    payload = _make_payload()
    client = DryRunLedgerClient()
    await client.start()
    assert await client.anchor(payload) == f"0x{payload.digest()}"
    await client.close()


def test_factory() -> None:
    assert isinstance(create_ledger_client(make_settings(ledger_dry_run=True)), DryRunLedgerClient)
    assert isinstance(create_ledger_client(make_settings(ledger_dry_run=False)), HttpLedgerClient)
