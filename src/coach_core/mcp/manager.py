"""MCP Manager 模組。

管理 mcp-config.json、所有 server 連線，以及與 LLM 之間的工具調用迴圈。
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, cast

import httpx
from pydantic import ValidationError

from coach_core.config import DEFAULT_MAX_TOOL_ITERATIONS, MCPTimeouts
from coach_core.mcp.client import NOT_CONNECTED_ERROR, MCPClient
from coach_core.mcp.exceptions import MCPError
from coach_core.mcp.models import MCPConfig, MCPStatus, MCPTool, MCPToolCall, MCPToolResult
from coach_core.storage import Storage, read_text_or_none
from coach_core.types import AgentEvent, ChatMessage, ToolCall, ToolDefinition

logger = logging.getLogger(__name__)


class ChatReply(Protocol):
    """chat 函式的回應：文字內容與 OpenAI 格式的工具呼叫。"""

    @property
    def content(self) -> str | None: ...

    @property
    def tool_calls(self) -> list[ToolCall]: ...


ChatFunction = Callable[[list[ChatMessage], str, list[ToolDefinition] | None], Awaitable[ChatReply]]


@dataclass
class ServerInfo:
    """get_connected_servers() 的項目。"""

    server_id: str
    name: str
    state: str
    tools: list[MCPTool] = field(default_factory=lambda: [])
    last_error: str | None = None

    @property
    def connected(self) -> bool:
        return self.state == 'connected'

    def to_dict(self) -> dict[str, Any]:
        return {
            'id': self.server_id,
            'name': self.name,
            'state': self.state,
            'connected': self.connected,
            'tools': [t.to_dict() for t in self.tools],
            'lastError': self.last_error,
        }


def format_tools_for_llm(tools: Sequence[MCPTool]) -> list[ToolDefinition]:
    """轉換為 OpenAI function calling 格式。"""
    return [
        {
            'type': 'function',
            'function': {
                'name': tool.name,
                'description': tool.description,
                'parameters': tool.input_schema or {'type': 'object', 'properties': {}},
            },
        }
        for tool in tools
    ]


def format_tool_results_for_llm(results: Sequence[MCPToolResult]) -> list[ChatMessage]:
    """將工具結果轉為 role=tool 的訊息。"""
    messages: list[ChatMessage] = []
    for result in results:
        content = json.dumps(result.result, ensure_ascii=False) if result.success else f'Error: {result.error}'
        messages.append({'role': 'tool', 'tool_call_id': result.tool_call_id, 'content': content})
    return messages


def _parse_arguments(raw: str | None) -> dict[str, Any]:
    """解析工具參數 JSON。

    Raises:
        ValueError: 不是合法 JSON 或不是物件
    """
    if not raw:
        return {}
    parsed: Any = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError('tool arguments must be a JSON object')
    return cast(dict[str, Any], parsed)


class MCPManager:
    """MCP Server 管理器。

    連線表與設定都屬於這個實例，不使用模組層級狀態。
    """

    def __init__(
        self,
        storage: Storage,
        config_path: Path,
        timeouts: MCPTimeouts | None = None,
        max_tool_iterations: int = DEFAULT_MAX_TOOL_ITERATIONS,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """初始化 Manager。

        Args:
            storage: 讀取設定用的儲存後端
            config_path: mcp-config.json 路徑
            timeouts: MCP 逾時設定
            max_tool_iterations: 工具調用迴圈最大迭代次數
            http_transport: 自訂 httpx transport（測試用）
        """
        self._storage = storage
        self._config_path = config_path
        self._timeouts = timeouts or MCPTimeouts()
        self._max_tool_iterations = max_tool_iterations
        self._http_transport = http_transport
        self._clients: dict[str, MCPClient] = {}
        self._config: MCPConfig | None = None
        self._initialized = False
        self._init_lock = asyncio.Lock()

    async def load_config(self) -> MCPConfig:
        """讀取 mcp-config.json。

        檔案不存在或格式錯誤時回傳預設設定（啟用、沒有 server）。
        """
        content = await read_text_or_none(self._storage, self._config_path)
        config = MCPConfig()
        if content is not None:
            try:
                config = MCPConfig.model_validate_json(content)
            except ValidationError as e:
                logger.warning('mcp-config.json 格式錯誤，使用預設值', extra={'error': str(e)})
        self._config = config
        return config

    async def save_config(self, config: MCPConfig) -> MCPConfig:
        """寫入 mcp-config.json（會更新 lastUpdated）。"""
        updated = config.model_copy(update={'last_updated': datetime.now(UTC).isoformat()})
        payload = updated.model_dump_json(by_alias=True, indent=2)

        def _write() -> None:
            self._config_path.parent.mkdir(parents=True, exist_ok=True)
            self._config_path.write_text(payload, encoding='utf-8')

        await asyncio.to_thread(_write)
        self._config = updated
        return updated

    async def _get_config(self) -> MCPConfig:
        if self._config is None:
            return await self.load_config()
        return self._config

    async def initialize_servers(self) -> None:
        """連線所有已啟用的 server（只執行一次）。個別 server 失敗不影響其他 server。"""
        async with self._init_lock:
            if self._initialized:
                return
            config = await self.load_config()
            if not config.enabled:
                logger.info('MCP 已停用')
                self._initialized = True
                return

            servers = [s for s in config.servers if s.enabled]
            results = await asyncio.gather(
                *(self.connect_server(s.id) for s in servers), return_exceptions=True
            )
            for server, result in zip(servers, results, strict=True):
                if isinstance(result, BaseException):
                    logger.warning(
                        'MCP server 初始化失敗',
                        extra={'server': server.id, 'error': str(result), 'error_type': type(result).__name__},
                    )
            self._initialized = True

    async def connect_server(self, server_id: str) -> bool:
        """連線指定的 server。

        Args:
            server_id: Server 識別碼

        Returns:
            是否連線成功
        """
        config = await self._get_config()
        server = next((s for s in config.servers if s.id == server_id), None)
        if server is None:
            logger.warning('找不到 MCP server 設定', extra={'server': server_id})
            return False

        client = self._clients.get(server_id)
        if client is None or client.server != server:
            if client is not None:
                await client.disconnect()
            client = MCPClient(server, self._timeouts, self._http_transport)
            self._clients[server_id] = client

        try:
            await client.connect()
        except MCPError:
            return False
        return True

    async def disconnect_server(self, server_id: str) -> bool:
        client = self._clients.pop(server_id, None)
        if client is None:
            return False
        await client.disconnect()
        return True

    def get_connected_servers(self) -> list[ServerInfo]:
        return [
            ServerInfo(
                server_id=server_id,
                name=client.server.display_name,
                state=client.state.value,
                tools=client.tools,
                last_error=client.last_error,
            )
            for server_id, client in self._clients.items()
        ]

    def get_all_available_tools(self) -> list[MCPTool]:
        """列出所有已連線 server 的工具。"""
        tools: list[MCPTool] = []
        for client in self._clients.values():
            if client.connected:
                tools.extend(client.tools)
        return tools

    async def get_tools_for_llm(self) -> list[ToolDefinition]:
        """取得給 LLM 的工具定義（必要時先初始化 server）。"""
        await self.initialize_servers()
        config = await self._get_config()
        if not config.enabled:
            return []
        return format_tools_for_llm(self.get_all_available_tools())

    async def check_status(self) -> MCPStatus:
        """依設定檔回報 MCP 狀態。

        MCP 啟用且至少有一個啟用的 server 時為 connected。
        """
        config = await self.load_config()
        enabled = tuple(s.display_name for s in config.servers if s.enabled)
        if not config.enabled or not enabled:
            return MCPStatus(status='disconnected')
        return MCPStatus(status='connected', servers=enabled)

    async def execute_mcp_tool(self, server_id: str, call: MCPToolCall) -> MCPToolResult:
        """在指定的 server 上執行工具。

        Args:
            server_id: Server 識別碼
            call: 工具呼叫

        Returns:
            MCPToolResult；server 未註冊或未連線時立即回傳 'MCP server not connected'
        """
        client = self._clients.get(server_id)
        if client is None:
            return MCPToolResult.fail(call.id, NOT_CONNECTED_ERROR)
        return await client.execute_tool(call)

    async def execute_tool_call(self, call: MCPToolCall) -> MCPToolResult:
        """將工具呼叫轉給提供該工具的 server。"""
        tool = next((t for t in self.get_all_available_tools() if t.name == call.name), None)
        if tool is None or tool.server_id is None:
            return MCPToolResult.fail(call.id, f'Tool not found: {call.name}')
        return await self.execute_mcp_tool(tool.server_id, call)

    async def execute_tool_calls(self, calls: Sequence[MCPToolCall]) -> list[MCPToolResult]:
        """並行執行多個工具呼叫，結果順序與輸入相同。"""
        return list(await asyncio.gather(*(self.execute_tool_call(c) for c in calls)))

    async def process_with_tools(
        self,
        messages: list[ChatMessage],
        system_prompt: str,
        chat_fn: ChatFunction,
    ) -> AsyncIterator[str | AgentEvent]:
        """執行工具調用迴圈。

        每一輪呼叫 LLM；回應含工具呼叫時產出 tool_calls 與 tool_results 事件並繼續，
        否則產出最終文字並結束。達到迭代上限時產出 iteration_limit 事件。

        Args:
            messages: 對話訊息（不會被修改）
            system_prompt: system prompt
            chat_fn: LLM chat 函式

        Yields:
            最終文字（str）或事件（AgentEvent）
        """
        tools = await self.get_tools_for_llm()
        current: list[ChatMessage] = list(messages)

        for iteration in range(1, self._max_tool_iterations + 1):
            response = await chat_fn(current, system_prompt, tools or None)

            if not response.tool_calls:
                if response.content:
                    yield response.content
                return

            yield {
                'type': 'tool_calls',
                'data': [
                    {'id': tc['id'], 'name': tc['function']['name'], 'arguments': tc['function']['arguments']}
                    for tc in response.tool_calls
                ],
            }

            results = await self._execute_llm_tool_calls(response.tool_calls)
            yield {'type': 'tool_results', 'data': [r.to_dict() for r in results]}

            current.append({'role': 'assistant', 'content': response.content, 'tool_calls': response.tool_calls})
            current.extend(format_tool_results_for_llm(results))
            logger.debug('工具調用迴圈', extra={'iteration': iteration, 'tool_calls': len(results)})

        logger.warning('工具調用達到迭代上限', extra={'max_iterations': self._max_tool_iterations})
        yield {'type': 'iteration_limit', 'data': {'max_iterations': self._max_tool_iterations}}

    async def _execute_llm_tool_calls(self, tool_calls: list[ToolCall]) -> list[MCPToolResult]:
        # 參數無法解析的呼叫直接產生失敗結果，其餘照常執行
        results: dict[int, MCPToolResult] = {}
        runnable: list[tuple[int, MCPToolCall]] = []
        for index, tc in enumerate(tool_calls):
            try:
                arguments = _parse_arguments(tc['function'].get('arguments'))
            except ValueError as e:
                results[index] = MCPToolResult.fail(tc['id'], f'Invalid tool arguments: {e}')
                continue
            runnable.append((index, MCPToolCall(id=tc['id'], name=tc['function']['name'], arguments=arguments)))

        executed = await self.execute_tool_calls([call for _, call in runnable])
        for (index, _), result in zip(runnable, executed, strict=True):
            results[index] = result
        return [results[i] for i in range(len(tool_calls))]

    async def shutdown(self) -> None:
        """中斷所有連線，之後可再次 initialize_servers()。"""
        clients = list(self._clients.values())
        self._clients.clear()
        await asyncio.gather(*(client.disconnect() for client in clients))
        self._initialized = False
        logger.info('MCP 已關閉', extra={'servers': len(clients)})
