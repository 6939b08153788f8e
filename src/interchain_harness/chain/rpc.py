"""
HTTP clients for node RPC endpoints.

Two shapes cover every family: JSON-RPC 2.0 (Ethereum, bitcoind, Tendermint)
and plain REST GETs (Cosmos LCD, THORNode API). Transport failures are
translated to harness errors here so drivers never see httpx exceptions.
"""

from __future__ import annotations

import itertools
import json
import logging
from decimal import Decimal
from typing import Any

import httpx

from interchain_harness.errors import HarnessError, HarnessTimeoutError, RuntimeUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
"""Per-request timeout in seconds."""


class RpcError(HarnessError):
    """
    The node answered with a JSON-RPC error object.

    Attributes:
        code: JSON-RPC error code.
    """

    def __init__(self, code: int, message: str, *, subject: str | None = None) -> None:
        self.code = code
        super().__init__(f"RPC error {code}: {message}", component="chain", subject=subject)


class JsonRpcClient:
    """
    Minimal JSON-RPC 2.0 client.

    Numbers are parsed as Decimal when `decimal_floats` is set, which bitcoind
    needs: its amounts are floats in BTC and must survive exact conversion to
    satoshis.
    """

    def __init__(
        self,
        url: str,
        *,
        auth: tuple[str, str] | None = None,
        subject: str | None = None,
        decimal_floats: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.subject = subject
        self._decimal_floats = decimal_floats
        self._ids = itertools.count(1)
        self._http = httpx.AsyncClient(auth=auth, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def call(self, method: str, *params: Any, path: str = "") -> Any:
        """
        Invoke a method and return its result.

        Args:
            method: RPC method name.
            params: Positional parameters.
            path: Path appended to the base URL (bitcoind wallet endpoints).

        Raises:
            RpcError: If the node returned an error object.
            HarnessTimeoutError: If the request timed out.
            RuntimeUnavailableError: If the node could not be reached.
        """
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": list(params),
        }
        body = json.dumps(payload, default=_encode_decimal)
        try:
            response = await self._http.post(
                f"{self.url}{path}",
                content=body,
                headers={"Content-Type": "application/json"},
            )
        except httpx.TimeoutException as exc:
            raise HarnessTimeoutError(
                f"{method} timed out", component="chain", subject=self.subject
            ) from exc
        except httpx.RequestError as exc:
            raise RuntimeUnavailableError(
                f"Cannot reach {exc.request.url}: {exc}", component="chain", subject=self.subject
            ) from exc

        # bitcoind reports RPC errors with HTTP 500 and a JSON body.
        try:
            document = json.loads(
                response.text, parse_float=Decimal if self._decimal_floats else float
            )
        except json.JSONDecodeError as exc:
            raise HarnessError(
                f"{method}: HTTP {response.status_code}: {response.text[:200]}",
                component="chain",
                subject=self.subject,
            ) from exc

        error = document.get("error")
        if error:
            code = int(error.get("code", -1))
            raise RpcError(code, str(error.get("message")), subject=self.subject)
        return document.get("result")


def _encode_decimal(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


class RestClient:
    """JSON-over-HTTP GET client for REST APIs."""

    def __init__(
        self,
        base_url: str,
        *,
        subject: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.subject = subject
        self._http = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """
        GET a JSON document.

        Raises:
            HarnessError: On non-2xx responses.
            HarnessTimeoutError: If the request timed out.
            RuntimeUnavailableError: If the server could not be reached.
        """
        url = f"{self.base_url}{path}"
        try:
            response = await self._http.get(url, params=params)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise HarnessTimeoutError(
                f"GET {path} timed out", component="chain", subject=self.subject
            ) from exc
        except httpx.RequestError as exc:
            raise RuntimeUnavailableError(
                f"Cannot reach {url}: {exc}", component="chain", subject=self.subject
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise HarnessError(
                f"GET {path} -> HTTP {exc.response.status_code}: {exc.response.text[:200]}",
                component="chain",
                subject=self.subject,
            ) from exc
        return response.json()
