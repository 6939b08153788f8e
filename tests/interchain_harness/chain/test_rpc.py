"""Tests for the JSON-RPC and REST clients."""

from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest

from interchain_harness.chain.rpc import JsonRpcClient, RestClient, RpcError
from interchain_harness.errors import HarnessError, RuntimeUnavailableError


class TestJsonRpcClient:
    """Tests for JSON-RPC calls."""

    async def test_call_returns_result(self) -> None:
        """Requests carry method, params and an increasing id."""
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "0x10"})

        client = JsonRpcClient("http://node:8545", transport=httpx.MockTransport(handler))
        try:
            assert await client.call("eth_blockNumber") == "0x10"
            await client.call("eth_getBalance", "0xabc", "latest")
        finally:
            await client.aclose()

        assert seen[0]["method"] == "eth_blockNumber"
        assert seen[1]["params"] == ["0xabc", "latest"]
        assert seen[1]["id"] == seen[0]["id"] + 1

    async def test_decimal_floats_and_params(self) -> None:
        """Bitcoin amounts survive exactly in both directions."""
        bodies: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(request.content.decode())
            return httpx.Response(200, text='{"result": 0.1, "error": null, "id": 1}')

        client = JsonRpcClient(
            "http://node:18443",
            decimal_floats=True,
            transport=httpx.MockTransport(handler),
        )
        try:
            result = await client.call("sendtoaddress", "bcrt1q...", Decimal("0.00000001"))
        finally:
            await client.aclose()

        assert result == Decimal("0.1")
        assert '"0.00000001"' in bodies[0]

    async def test_error_object(self) -> None:
        """Bitcoind reports RPC errors with HTTP 500 and a JSON body."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                500, json={"result": None, "error": {"code": -32601, "message": "Method not found"}}
            )

        client = JsonRpcClient("http://node:18443", transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(RpcError, match="Method not found") as exc_info:
                await client.call("nosuch")
        finally:
            await client.aclose()

        assert exc_info.value.code == -32601

    async def test_non_json_body(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="bad gateway")

        client = JsonRpcClient("http://node:8545", transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(HarnessError, match="HTTP 502"):
                await client.call("eth_chainId")
        finally:
            await client.aclose()

    async def test_unreachable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = JsonRpcClient("http://node:8545", transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(RuntimeUnavailableError):
                await client.call("eth_chainId")
        finally:
            await client.aclose()


class TestRestClient:
    """Tests for REST GETs."""

    async def test_get_json(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/thorchain/pools"
            return httpx.Response(200, json=[{"asset": "BTC.BTC"}])

        client = RestClient("http://thornode:1317/", transport=httpx.MockTransport(handler))
        try:
            assert await client.get("/thorchain/pools") == [{"asset": "BTC.BTC"}]
        finally:
            await client.aclose()

    async def test_http_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, text="not found")

        client = RestClient("http://thornode:1317", transport=httpx.MockTransport(handler))
        try:
            with pytest.raises(HarnessError):
                await client.get("/thorchain/pool/XYZ")
        finally:
            await client.aclose()
