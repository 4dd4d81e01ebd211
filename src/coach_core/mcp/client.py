"""MCP Client 模組。

每個 MCPClient 管理一個 MCP Server 連線，狀態轉換：

    DISCONNECTED → CONNECTING → CONNECTED(tools)
                              ↘ FAILED(last_error)

傳輸方式：
- stdio：啟動子程序，以換行分隔的 JSON-RPC 2.0 溝通。
  一個常駐的讀取 task 逐行解析 stdout，依 request id 將回應分派給等待中的 Future，
  因此可處理被切斷的訊息、同一次讀取中的多則訊息、JSON-RPC batch 陣列與非 JSON 雜訊。
- http / sse：以 httpx 呼叫 `GET {url}/tools` 與 `POST {url}/tools/call`。
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import os
from enum import Enum
from typing import Any, Protocol, cast

import httpx

from coach_core.config import MCPTimeouts
from coach_core.mcp.exceptions import MCPError, MCPTimeoutError, MCPTransportError
from coach_core.mcp.models import MCPServerConfig, MCPTool, MCPToolCall, MCPToolResult, parse_tools

logger = logging.getLogger(__name__)

JSONRPC_VERSION = '2.0'
PROTOCOL_VERSION = '2024-11-05'
CLIENT_INFO = {'name': 'coach-core', 'version': '0.1.0'}

# 單行 JSON-RPC 訊息的長度上限（asyncio StreamReader 預設只有 64 KiB）
STDIO_LINE_LIMIT = 16 * 1024 * 1024
# 結束子程序時等待 terminate 生效的秒數
TERMINATE_GRACE_SECONDS = 2.0

NOT_CONNECTED_ERROR = 'MCP server not connected'


class ConnectionState(Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'
    FAILED = 'failed'


class _Transport(Protocol):
    async def start(self) -> list[MCPTool]:
        """建立連線並回傳工具列表。"""
        ...

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        """呼叫工具，失敗時拋出 MCPError。"""
        ...

    async def close(self) -> None: ...


class StdioTransport:
    """以子程序 stdin/stdout 傳輸 JSON-RPC 2.0。"""

    def __init__(self, server: MCPServerConfig, timeouts: MCPTimeouts) -> None:
        self._server = server
        self._timeouts = timeouts
        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._ids = itertools.count(1)
        self._first_output = asyncio.Event()
        self._stdout_closed = False
        self._exit_reason = 'MCP server exited'

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    async def start(self) -> list[MCPTool]:
        if not self._server.command:
            raise MCPTransportError('stdio server has no command configured')

        try:
            self._process = await asyncio.create_subprocess_exec(
                self._server.command,
                *self._server.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=os.environ | self._server.env,
                limit=STDIO_LINE_LIMIT,
            )
        except (OSError, ValueError) as e:
            # ValueError：指令或參數含有 null byte 等無法傳給 exec 的字元
            raise MCPTransportError(f'Failed to start MCP server: {e}') from e

        self._reader_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._drain_stderr())

        init_id, init_future = self._register()
        try:
            await self._send(
                {
                    'jsonrpc': JSONRPC_VERSION,
                    'id': init_id,
                    'method': 'initialize',
                    'params': {
                        'protocolVersion': PROTOCOL_VERSION,
                        'capabilities': {},
                        'clientInfo': CLIENT_INFO,
                    },
                }
            )
            await self._wait_ready()
        finally:
            # 不等待 initialize 回應；第一則輸出即視為就緒
            self._pending.pop(init_id, None)
            init_future.cancel()

        await self._send({'jsonrpc': JSONRPC_VERSION, 'method': 'notifications/initialized'})
        result = await self.request('tools/list', {}, self._timeouts.list_tools)
        raw_tools = cast(dict[str, Any], result).get('tools') if isinstance(result, dict) else None
        return parse_tools(raw_tools, self._server.id)

    async def _wait_ready(self) -> None:
        assert self._process is not None
        ready = asyncio.ensure_future(self._first_output.wait())
        exited = asyncio.ensure_future(self._process.wait())
        try:
            done, _ = await asyncio.wait(
                {ready, exited},
                timeout=self._timeouts.connect,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            ready.cancel()
            exited.cancel()
            await asyncio.gather(ready, exited, return_exceptions=True)

        if ready in done:
            return
        if exited in done:
            raise MCPTransportError(f'MCP server exited with code {self._process.returncode}')
        raise MCPTimeoutError('MCP server connection timeout')

    def _register(self) -> tuple[int, asyncio.Future[dict[str, Any]]]:
        request_id = next(self._ids)
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        return request_id, future

    async def _send(self, message: dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None or process.returncode is not None or self._stdout_closed:
            raise MCPTransportError(self._exit_reason)
        try:
            process.stdin.write(json.dumps(message).encode('utf-8') + b'\n')
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise MCPTransportError(f'MCP server stdin closed: {e}') from e

    async def request(self, method: str, params: dict[str, Any], timeout: float) -> Any:
        """送出 JSON-RPC request 並等待對應 id 的回應。

        Args:
            method: JSON-RPC 方法
            params: 參數
            timeout: 等待秒數

        Returns:
            回應的 result 欄位

        Raises:
            MCPTimeoutError: 超過等待時間
            MCPTransportError: 子程序已結束或無法寫入
            MCPError: server 回傳 JSON-RPC error
        """
        request_id, future = self._register()
        try:
            await self._send({'jsonrpc': JSONRPC_VERSION, 'id': request_id, 'method': method, 'params': params})
            message = await asyncio.wait_for(future, timeout)
        except TimeoutError:
            raise MCPTimeoutError(f'{method} timed out after {timeout:g}s') from None
        finally:
            self._pending.pop(request_id, None)

        error = message.get('error')
        if error is not None:
            if isinstance(error, dict):
                raise MCPError(str(cast(dict[str, Any], error).get('message') or 'Unknown error'))
            raise MCPError(str(error))
        return message.get('result')

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        return await self.request('tools/call', {'name': name, 'arguments': arguments}, self._timeouts.execute)

    def _dispatch(self, message: Any) -> None:
        if isinstance(message, list):
            for item in cast(list[Any], message):
                self._dispatch(item)
            return
        if not isinstance(message, dict):
            return

        data = cast(dict[str, Any], message)
        request_id = data.get('id')
        if not isinstance(request_id, int) or ('result' not in data and 'error' not in data):
            # server 端的通知或 request，不需要回應
            logger.debug('忽略 MCP 通知', extra={'server': self._server.id, 'method': data.get('method')})
            return

        future = self._pending.get(request_id)
        if future is not None and not future.done():
            future.set_result(data)

    async def _read_stdout(self) -> None:
        process = self._process
        assert process is not None and process.stdout is not None
        stdout = process.stdout
        try:
            while True:
                try:
                    line = await stdout.readline()
                except ValueError:
                    logger.warning('MCP 訊息超過長度上限，已捨棄', extra={'server': self._server.id})
                    continue
                if not line:
                    break
                self._first_output.set()

                text = line.decode('utf-8', errors='replace').strip()
                if not text:
                    continue
                try:
                    message = json.loads(text)
                except json.JSONDecodeError:
                    logger.debug('略過非 JSON 輸出', extra={'server': self._server.id, 'line': text[:200]})
                    continue
                self._dispatch(message)
        finally:
            self._stdout_closed = True
            returncode = process.returncode
            self._exit_reason = (
                f'MCP server exited with code {returncode}' if returncode is not None else 'MCP server closed stdout'
            )
            self._fail_pending(MCPTransportError(self._exit_reason))

    async def _drain_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        stderr = self._process.stderr
        while True:
            try:
                line = await stderr.readline()
            except ValueError:
                continue
            if not line:
                return
            logger.debug(
                'MCP server stderr',
                extra={'server': self._server.id, 'line': line.decode('utf-8', errors='replace').rstrip()},
            )

    def _fail_pending(self, error: Exception) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)

    async def close(self) -> None:
        process = self._process
        if process is not None and process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), TERMINATE_GRACE_SECONDS)
            except TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
            if task is not None:
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        self._fail_pending(MCPTransportError('MCP server disconnected'))
        self._process = None


class HttpTransport:
    """以 REST 呼叫 http / sse 類型的 MCP Server。"""

    def __init__(
        self,
        server: MCPServerConfig,
        timeouts: MCPTimeouts,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not server.url:
            raise MCPTransportError('http server has no url configured')
        self._server = server
        self._timeouts = timeouts
        try:
            self._client = httpx.AsyncClient(
                base_url=server.url.rstrip('/'),
                headers=server.headers,
                timeout=httpx.Timeout(timeouts.execute, connect=timeouts.connect),
                transport=transport,
            )
        except (httpx.InvalidURL, ValueError, TypeError) as e:
            raise MCPTransportError(f'Invalid MCP server url: {e}') from e

    async def start(self) -> list[MCPTool]:
        try:
            response = await self._client.get('/tools', timeout=self._timeouts.connect)
        except httpx.TimeoutException as e:
            raise MCPTimeoutError('MCP server connection timeout') from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise MCPTransportError(f'MCP server unreachable: {e}') from e

        if not response.is_success:
            raise MCPTransportError(f'MCP server returned HTTP {response.status_code}')
        try:
            data: Any = response.json()
        except ValueError as e:
            raise MCPTransportError('MCP server returned invalid JSON') from e

        raw_tools = cast(dict[str, Any], data).get('tools') if isinstance(data, dict) else None
        return parse_tools(raw_tools, self._server.id)

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        try:
            response = await self._client.post('/tools/call', json={'name': name, 'arguments': arguments})
        except httpx.TimeoutException as e:
            raise MCPTimeoutError('Tool execution timeout') from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise MCPTransportError(str(e)) from e

        try:
            payload: Any = response.json()
        except ValueError:
            payload = {}
        data = cast(dict[str, Any], payload) if isinstance(payload, dict) else {}

        if not response.is_success or data.get('error'):
            raise MCPError(str(data.get('error') or f'HTTP {response.status_code}'))
        return data.get('result')

    async def close(self) -> None:
        await self._client.aclose()


class MCPClient:
    """單一 MCP Server 的連線。

    execute_tool() 永遠回傳 MCPToolResult，不會拋出例外。
    """

    def __init__(
        self,
        server: MCPServerConfig,
        timeouts: MCPTimeouts | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """初始化 Client。

        Args:
            server: Server 設定
            timeouts: 逾時設定
            http_transport: 自訂 httpx transport（測試用）
        """
        self.server = server
        self._timeouts = timeouts or MCPTimeouts()
        self._http_transport = http_transport
        self._transport: _Transport | None = None
        self._state = ConnectionState.DISCONNECTED
        self._tools: list[MCPTool] = []
        self._last_error: str | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def tools(self) -> list[MCPTool]:
        return list(self._tools) if self.connected else []

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def _make_transport(self) -> _Transport:
        if self.server.type == 'stdio':
            return StdioTransport(self.server, self._timeouts)
        return HttpTransport(self.server, self._timeouts, self._http_transport)

    async def connect(self) -> None:
        """連線並取得工具列表。已連線時不做任何事。

        Raises:
            MCPError: 連線失敗（狀態轉為 FAILED）
        """
        async with self._lock:
            if self._state is ConnectionState.CONNECTED:
                return

            self._state = ConnectionState.CONNECTING
            transport: _Transport | None = None
            try:
                transport = self._make_transport()
                tools = await transport.start()
            except MCPError as e:
                await self._fail_connect(transport, e)
                raise
            except Exception as e:
                # 設定錯誤等非預期例外同樣視為連線失敗，統一轉為 MCPTransportError
                error = MCPTransportError(f'MCP server connection failed: {e}')
                await self._fail_connect(transport, error)
                raise error from e

            self._transport = transport
            self._tools = tools
            self._last_error = None
            self._state = ConnectionState.CONNECTED
            logger.info(
                'MCP server 已連線',
                extra={'server': self.server.id, 'transport': self.server.type, 'tools': len(tools)},
            )

    async def _fail_connect(self, transport: _Transport | None, error: MCPError) -> None:
        self._state = ConnectionState.FAILED
        self._last_error = str(error)
        self._tools = []
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.debug(
                    '關閉失敗的 MCP transport 時發生錯誤', extra={'server': self.server.id, 'error': str(e)}
                )
        logger.warning('MCP server 連線失敗', extra={'server': self.server.id, 'error': self._last_error})

    async def execute_tool(self, call: MCPToolCall) -> MCPToolResult:
        """執行工具。

        Args:
            call: 工具呼叫

        Returns:
            MCPToolResult；未連線時立即回傳失敗結果
        """
        transport = self._transport
        if self._state is not ConnectionState.CONNECTED or transport is None:
            return MCPToolResult.fail(call.id, NOT_CONNECTED_ERROR)

        try:
            result = await transport.call_tool(call.name, call.arguments)
        except MCPTransportError as e:
            self._state = ConnectionState.FAILED
            self._last_error = str(e)
            logger.warning('MCP 傳輸中斷', extra={'server': self.server.id, 'error': str(e)})
            return MCPToolResult.fail(call.id, str(e))
        except MCPError as e:
            logger.debug('MCP 工具執行失敗', extra={'server': self.server.id, 'tool': call.name, 'error': str(e)})
            return MCPToolResult.fail(call.id, str(e))
        except Exception as e:
            logger.warning(
                'MCP 工具執行發生非預期錯誤',
                extra={'server': self.server.id, 'tool': call.name, 'error': str(e)},
            )
            return MCPToolResult.fail(call.id, str(e))

        return MCPToolResult.ok(call.id, result)

    async def disconnect(self) -> None:
        """中斷連線並釋放資源（結束子程序、取消讀取 task、讓等待中的請求失敗）。"""
        async with self._lock:
            transport = self._transport
            self._transport = None
            self._tools = []
            self._state = ConnectionState.DISCONNECTED
            if transport is not None:
                await transport.close()
                logger.info('MCP server 已中斷', extra={'server': self.server.id})
