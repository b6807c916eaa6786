from __future__ import annotations

import asyncio
import json
import unittest
from typing import Any, Dict, List

from keyhold.errors import (
    ClientAuthDeniedError,
    ClientConnectionError,
    ClientNodeIdMismatchError,
    RemoteError,
    UnknownRemoteError,
)
from keyhold.protocol import PROTOCOL_VERSION, AgentClient

NODE_ID = "vtestnode"

DENIED = {
    "type": "ClientAuthDeniedError",
    "data": {
        "message": "bad password",
        "description": "Authorization metadata is invalid or has been denied",
        "exit_code": 77,
        "timestamp": "2024-05-01T12:00:00+00:00",
        "data": {},
    },
}


class FakeAgent:
    """In-process agent answering NDJSON requests from a method table."""

    def __init__(self, node_id: str = NODE_ID) -> None:
        self.node_id = node_id
        self.requests: List[Dict[str, Any]] = []
        self.server: asyncio.AbstractServer | None = None

    async def start(self) -> int:
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        return self.server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                request = json.loads(line)
                self.requests.append(request)
                response = {"id": request["id"], **self._dispatch(request)}
                writer.write((json.dumps(response) + "\n").encode("utf-8"))
                await writer.drain()
        finally:
            writer.close()

    def _dispatch(self, request: Dict[str, Any]) -> Dict[str, Any]:
        method = request["method"]
        if method == "handshake":
            return {"result": {"node_id": self.node_id, "protocol_version": PROTOCOL_VERSION}}
        if method == "agent_status":
            if request.get("metadata", {}).get("authorization") != "Bearer good":
                return {"error": DENIED}
            return {"result": {"pid": 99, "nodeId": self.node_id}}
        if method == "explode":
            return {"error": {"type": "KeyLoadError", "data": {"message": "corrupt"}}}
        return {"result": request["params"]}


class AgentClientTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.agent = FakeAgent()
        self.port = await self.agent.start()

    async def asyncTearDown(self) -> None:
        await self.agent.stop()

    async def test_handshake_and_call(self) -> None:
        async with AgentClient(NODE_ID, "127.0.0.1", self.port) as client:
            result = await client.call("agent_status", metadata={"authorization": "Bearer good"})
            echoed = await client.call("echo", {"x": [1, 2]})
        self.assertEqual(result, {"pid": 99, "nodeId": NODE_ID})
        self.assertEqual(echoed, {"x": [1, 2]})
        handshake = self.agent.requests[0]
        self.assertEqual(handshake["method"], "handshake")
        self.assertEqual(handshake["params"]["node_id"], NODE_ID)
        self.assertNotIn("metadata", self.agent.requests[2])

    async def test_error_is_wrapped_in_remote_error(self) -> None:
        async with AgentClient(NODE_ID, "127.0.0.1", self.port) as client:
            with self.assertRaises(RemoteError) as ctx:
                await client.call("agent_status")
        error = ctx.exception
        self.assertEqual(
            error.metadata,
            {"node_id": NODE_ID, "host": "127.0.0.1", "port": self.port, "command": "agent_status"},
        )
        self.assertIsInstance(error.cause, ClientAuthDeniedError)
        self.assertEqual(error.cause.message, "bad password")
        self.assertEqual(error.exit_code, 77)

    async def test_unknown_remote_error_keeps_its_name(self) -> None:
        async with AgentClient(NODE_ID, "127.0.0.1", self.port) as client:
            with self.assertRaises(RemoteError) as ctx:
                await client.call("explode")
        cause = ctx.exception.cause
        self.assertIsInstance(cause, UnknownRemoteError)
        self.assertEqual(cause.name, "KeyLoadError")
        self.assertEqual(cause.message, "corrupt")

    async def test_node_id_mismatch(self) -> None:
        client = AgentClient("vsomeoneelse", "127.0.0.1", self.port)
        with self.assertRaises(ClientNodeIdMismatchError) as ctx:
            await client.connect()
        self.assertEqual(ctx.exception.data["received"], NODE_ID)
        self.assertEqual(ctx.exception.exit_code, 69)

    async def test_unreachable_agent(self) -> None:
        await self.agent.stop()
        client = AgentClient(NODE_ID, "127.0.0.1", self.port, timeout=2.0)
        with self.assertRaises(ClientConnectionError):
            await client.connect()


if __name__ == "__main__":
    unittest.main()
