"""Optional context enrichment from external capability providers.

The answer engine asks a provider for extra context after retrieval. The
default provider does nothing; ``MCPEnrichmentProvider`` calls a tool on a
Model Context Protocol server over stdio (JSON-RPC 2.0, one message per line).
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "docsage", "version": "1.0.0"}
# Tool results arrive as a single line; large documents exceed asyncio's 64 KiB default.
STREAM_LIMIT = 16 * 1024 * 1024


class EnrichmentProvider(ABC):
    """Source of supplementary context for a query."""

    async def open(self) -> None:
        """Connect to the provider."""

    async def close(self) -> None:
        """Disconnect from the provider."""

    @abstractmethod
    async def list_capabilities(self) -> List[str]:
        """Names of the capabilities the provider offers."""

    @abstractmethod
    async def invoke(self, name: str, arguments: Dict[str, Any]) -> Optional[str]:
        """Run a capability; returns its text output, if any."""

    async def enrich(self, query: str, hits: Sequence[Any] = ()) -> Optional[str]:
        """Supplementary context for ``query``, or None."""
        return None


class NullEnrichmentProvider(EnrichmentProvider):
    """Provider with no capabilities."""

    async def list_capabilities(self) -> List[str]:
        return []

    async def invoke(self, name: str, arguments: Dict[str, Any]) -> Optional[str]:
        return None


class JSONRPCError(Exception):
    """Error object returned by the server."""

    def __init__(self, code: int, message: str):
        super().__init__(f"JSON-RPC error {code}: {message}")
        self.code = code


class StdioJSONRPCClient:
    """JSON-RPC 2.0 over a subprocess's stdin/stdout."""

    def __init__(self, command: str, args: Optional[List[str]] = None,
                 env: Optional[Dict[str, str]] = None, timeout: float = 10.0,
                 limit: int = STREAM_LIMIT):
        self.command = command
        self.args = args or []
        self.env = env
        self.timeout = timeout
        self.limit = limit
        self._reader_closed = False
        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._request_id = 0
        self._pending: Dict[int, asyncio.Future] = {}

    @property
    def connected(self) -> bool:
        return (self._process is not None and self._process.returncode is None
                and not self._reader_closed)

    async def connect(self) -> None:
        logger.info(f"Starting MCP server: {self.command} {' '.join(self.args)}")
        self._process = await asyncio.create_subprocess_exec(
            self.command,
            *self.args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            env=self.env,
            limit=self.limit
        )
        self._reader_closed = False
        self._reader_task = asyncio.create_task(self._read_loop())

    async def close(self) -> None:
        if self._reader_task:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None

        if self._process and self._process.returncode is None:
            self._process.terminate()
            try:
                await asyncio.wait_for(self._process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                self._process.kill()
                await self._process.wait()
        self._process = None
        self._fail_pending(ConnectionError("MCP connection closed"))

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _send(self, message: Dict[str, Any]) -> None:
        if not self.connected or self._process.stdin is None:
            raise ConnectionError("MCP server not connected")
        self._process.stdin.write((json.dumps(message) + "\n").encode())
        await self._process.stdin.drain()

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._send(message)

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self._request_id += 1
        request_id = self._request_id
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            await self._send({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}})
            return await asyncio.wait_for(future, timeout=self.timeout)
        finally:
            self._pending.pop(request_id, None)

    async def _read_loop(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        try:
            while True:
                line = await self._process.stdout.readline()
                if not line:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.debug(f"Ignoring non-JSON line from MCP server: {e}")
                    continue
                self._dispatch(message)
        except ValueError as e:
            logger.warning(f"MCP server sent a message over {self.limit} bytes: {e}")
        finally:
            self._reader_closed = True
            self._fail_pending(ConnectionError("MCP server stream closed"))

    def _dispatch(self, message: Dict[str, Any]) -> None:
        future = self._pending.get(message.get("id"))
        if future is None or future.done():
            return
        if "error" in message:
            error = message["error"] or {}
            future.set_exception(JSONRPCError(error.get("code", -32000), error.get("message", "Unknown error")))
        else:
            future.set_result(message.get("result") or {})


class MCPEnrichmentProvider(EnrichmentProvider):
    """Enrichment through a tool exposed by an MCP server."""

    def __init__(self, command: str, args: Optional[List[str]] = None,
                 tool: str = "search_docs", timeout: float = 10.0,
                 client: Optional[StdioJSONRPCClient] = None):
        self.tool = tool
        self.client = client or StdioJSONRPCClient(command, args, timeout=timeout)
        self._tools: List[str] = []
        self._available = False

    @property
    def available(self) -> bool:
        return self._available and self.client.connected

    async def open(self) -> None:
        """Start the server and perform the MCP handshake.

        A server that cannot be started leaves the provider unavailable.
        """
        try:
            await self.client.connect()
            await self.client.request("initialize", {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": CLIENT_INFO
            })
            await self.client.notify("notifications/initialized")
            result = await self.client.request("tools/list")
            self._tools = [tool.get("name") for tool in result.get("tools", []) if tool.get("name")]
            self._available = True
            logger.info(f"MCP enrichment connected, tools: {self._tools}")
        except Exception as e:
            logger.warning(f"MCP enrichment unavailable: {e}")
            self._available = False
            await self.client.close()

    async def close(self) -> None:
        self._available = False
        await self.client.close()

    async def list_capabilities(self) -> List[str]:
        return list(self._tools) if self.available else []

    async def invoke(self, name: str, arguments: Dict[str, Any]) -> Optional[str]:
        if not self.available:
            return None
        result = await self.client.request("tools/call", {"name": name, "arguments": arguments})
        if result.get("isError"):
            logger.debug(f"MCP tool {name} reported an error")
            return None
        texts = [item.get("text", "") for item in result.get("content", []) if item.get("type") == "text"]
        return texts[0] if texts and texts[0].strip() else None

    async def enrich(self, query: str, hits: Sequence[Any] = ()) -> Optional[str]:
        if self.tool not in await self.list_capabilities():
            return None
        return await self.invoke(self.tool, {"query": query})
