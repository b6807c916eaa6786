"""Async client for the agent's NDJSON RPC protocol."""

from __future__ import annotations

import asyncio
import json
from itertools import count
from typing import Any, Dict, Optional

from loguru import logger

from ..errors import (
    ClientConnectionError,
    ClientNodeIdMismatchError,
    RemoteError,
    decode_error,
)

PROTOCOL_VERSION = "1.0.0"
CLIENT_NAME = "keyhold-cli"


class AgentClient:
    """Minimal asyncio client for one agent client service.

    Failed calls raise :class:`RemoteError` wrapping the decoded agent error,
    so callers can tell where the failure happened and why.
    """

    def __init__(self, node_id: str, host: str, port: int, *, timeout: float = 15.0) -> None:
        self.node_id = node_id
        self.host = host
        self.port = port
        self.timeout = timeout
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._counter = count(1)

    async def connect(self) -> None:
        if self._reader is not None:
            return

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), self.timeout
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise ClientConnectionError(
                f"cannot reach {self.host}:{self.port}",
                data={"host": self.host, "port": self.port},
            ) from exc
        self._reader = reader
        self._writer = writer
        logger.debug("Connected to {}:{}", self.host, self.port)

        try:
            await self._handshake()
        except BaseException:
            await self.close()
            raise

    async def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (OSError, ConnectionError):
                pass
        self._reader = None
        self._writer = None

    async def __aenter__(self) -> "AgentClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def call(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Any:
        return await self._send(method, params or {}, metadata)

    async def _handshake(self) -> None:
        result = await self._send(
            "handshake",
            {
                "client": CLIENT_NAME,
                "protocol_version": PROTOCOL_VERSION,
                "node_id": self.node_id,
            },
        )
        node_id = result.get("node_id") if isinstance(result, dict) else None
        if node_id != self.node_id:
            raise ClientNodeIdMismatchError(
                f"expected {self.node_id}",
                data={"expected": self.node_id, "received": node_id},
            )

    async def _send(
        self,
        method: str,
        params: Dict[str, Any],
        metadata: Optional[Dict[str, str]] = None,
    ) -> Any:
        if self._writer is None or self._reader is None:
            raise RuntimeError("AgentClient is not connected")

        request_id = next(self._counter)
        envelope: Dict[str, Any] = {
            "id": request_id,
            "method": method,
            "params": params,
        }
        if metadata:
            envelope["metadata"] = metadata

        data = (json.dumps(envelope) + "\n").encode("utf-8")
        try:
            self._writer.write(data)
            await self._writer.drain()
            line = await asyncio.wait_for(self._reader.readline(), self.timeout)
        except (OSError, asyncio.TimeoutError) as exc:
            raise ClientConnectionError(
                f"call {method} to {self.host}:{self.port} failed",
                data={"host": self.host, "port": self.port},
            ) from exc
        if not line:
            raise ClientConnectionError("agent closed the connection")

        try:
            response = json.loads(line.decode("utf-8"))
        except ValueError as exc:
            raise ClientConnectionError(f"malformed response to {method}") from exc
        if not isinstance(response, dict):
            raise ClientConnectionError(f"malformed response to {method}")
        if "error" in response:
            raise RemoteError(
                {
                    "node_id": self.node_id,
                    "host": self.host,
                    "port": self.port,
                    "command": method,
                },
                cause=decode_error(response["error"]),
            )

        return response.get("result")
