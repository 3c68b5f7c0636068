"""JSON-RPC transport shared by the chain adapters."""
from __future__ import annotations

import itertools
from typing import Any, List, Optional, Protocol

import httpx


class ChainRPCError(Exception):
    """Transport or node error while querying a network."""

    def __init__(self, message: str, *, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class RPCClient(Protocol):
    def call(self, method: str, params: List[Any]) -> Any:
        """Invoke a JSON-RPC method and return its `result`."""
        ...


class JsonRpcClient:
    """Minimal synchronous JSON-RPC 2.0 client over httpx."""

    def __init__(self, url: str, *, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.timeout = timeout
        self._client = client
        self._ids = itertools.count(1)

    def call(self, method: str, params: List[Any]) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            if self._client is not None:
                response = self._client.post(self.url, json=body, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.url, json=body)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise ChainRPCError(f"{method} failed: {exc}") from exc
        except ValueError as exc:
            raise ChainRPCError(f"{method} returned invalid JSON") from exc

        if not isinstance(data, dict):
            raise ChainRPCError(f"{method} returned an unexpected payload")
        if data.get("error"):
            err = data["error"]
            raise ChainRPCError(f"{method} error: {err.get('message', err)}", code=err.get("code"))
        return data.get("result")
