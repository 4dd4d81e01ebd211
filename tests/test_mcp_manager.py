"""MCP Manager 測試模組。

涵蓋：
- Rule: 設定檔讀寫與預設值
- Rule: 只連線啟用的 server，個別失敗不影響其他 server
- Rule: 工具呼叫轉給提供該工具的 server
- Rule: 工具調用迴圈直到沒有工具呼叫或達到上限
"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import allure
import httpx
import pytest

from coach_core.mcp import MCPManager, format_tool_results_for_llm
from coach_core.mcp.client import NOT_CONNECTED_ERROR
from coach_core.mcp.models import MCPConfig, MCPServerConfig, MCPStatus, MCPToolCall, MCPToolResult
from coach_core.paths import DataPaths
from coach_core.providers import ChatResponse
from coach_core.storage import LocalStorage
from coach_core.types import AgentEvent, ChatMessage, ToolCall, ToolDefinition

WriteFile = Callable[[str, str], Path]

MCP_CONFIG = {
    'enabled': True,
    'servers': [
        {'id': 'search', 'name': 'Search', 'type': 'http', 'url': 'http://search.test'},
        {'id': 'down', 'type': 'http', 'url': 'http://down.test'},
        {'id': 'off', 'name': 'Off', 'type': 'http', 'url': 'http://off.test', 'enabled': False},
    ],
}


class RestServers:
    """以 httpx.MockTransport 模擬多個 REST MCP server。"""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host != 'search.test':
            return httpx.Response(503)
        if request.method == 'GET':
            return httpx.Response(200, json={'tools': [{'name': 'search', 'description': 'Search notes'}]})
        body: dict[str, Any] = json.loads(request.content)
        return httpx.Response(200, json={'result': {'query': body['arguments'].get('q')}})

    def hosts(self) -> list[str]:
        return [r.url.host for r in self.requests]


class ScriptedChat:
    """依序回傳預先準備的回應，並記錄每次呼叫時的訊息快照。"""

    def __init__(self, *replies: ChatResponse) -> None:
        self._replies = list(replies)
        self.calls: list[tuple[list[ChatMessage], str, list[ToolDefinition] | None]] = []

    async def __call__(
        self, messages: list[ChatMessage], system: str, tools: list[ToolDefinition] | None
    ) -> ChatResponse:
        self.calls.append((list(messages), system, tools))
        if len(self._replies) > 1:
            return self._replies.pop(0)
        return self._replies[0]


def _tool_call(call_id: str, arguments: str, name: str = 'search') -> ToolCall:
    return {'id': call_id, 'type': 'function', 'function': {'name': name, 'arguments': arguments}}


async def _collect(manager: MCPManager, chat: ScriptedChat) -> list[str | AgentEvent]:
    messages: list[ChatMessage] = [{'role': 'user', 'content': 'find sleep notes'}]
    return [item async for item in manager.process_with_tools(messages, 'system', chat)]


@pytest.fixture
def servers() -> RestServers:
    return RestServers()


@pytest.fixture
def make_manager(
    storage: LocalStorage, paths: DataPaths, servers: RestServers
) -> Callable[..., MCPManager]:
    def _make(max_tool_iterations: int = 10) -> MCPManager:
        return MCPManager(
            storage,
            paths.mcp_config_file,
            max_tool_iterations=max_tool_iterations,
            http_transport=httpx.MockTransport(servers),
        )

    return _make


@pytest.fixture
def manager(make_manager: Callable[..., MCPManager], write_file: WriteFile) -> MCPManager:
    write_file('data/mcp-config.json', json.dumps(MCP_CONFIG))
    return make_manager()


# =============================================================================
# Rule: 設定檔讀寫與預設值
# =============================================================================


@allure.feature('MCP Manager')
@allure.story('設定檔讀寫與預設值')
class TestConfig:
    """設定檔測試。"""

    @allure.title('設定檔不存在或格式錯誤時使用預設值')
    @pytest.mark.parametrize('content', [None, '{"servers": "nope"}', 'not json'])
    async def test_defaults(
        self, make_manager: Callable[..., MCPManager], write_file: WriteFile, content: str | None
    ) -> None:
        """Scenario: 設定檔不存在或格式錯誤時使用預設值。"""
        if content is not None:
            write_file('data/mcp-config.json', content)

        config = await make_manager().load_config()

        assert config == MCPConfig()
        assert config.enabled is True

    @allure.title('寫入 camelCase JSON 並更新 lastUpdated')
    async def test_save_config(self, make_manager: Callable[..., MCPManager], paths: DataPaths) -> None:
        """Scenario: 寫入 camelCase JSON 並更新 lastUpdated。"""
        manager = make_manager()
        config = MCPConfig(servers=[MCPServerConfig(id='fs', command='mcp-fs', created_at='2025-01-01')])

        saved = await manager.save_config(config)

        data = json.loads(paths.mcp_config_file.read_text(encoding='utf-8'))
        assert data['lastUpdated'] == saved.last_updated
        assert data['servers'][0]['createdAt'] == '2025-01-01'
        assert (await make_manager().load_config()).servers[0].command == 'mcp-fs'

    @allure.title('啟用且有啟用的 server 時狀態為 connected')
    async def test_check_status(self, manager: MCPManager) -> None:
        """Scenario: 啟用且有啟用的 server 時狀態為 connected。"""
        assert await manager.check_status() == MCPStatus('connected', servers=('Search', 'down'))

    @allure.title('MCP 停用時狀態為 disconnected 且沒有工具')
    async def test_disabled(self, make_manager: Callable[..., MCPManager], write_file: WriteFile) -> None:
        """Scenario: MCP 停用時狀態為 disconnected 且沒有工具。"""
        write_file('data/mcp-config.json', json.dumps({**MCP_CONFIG, 'enabled': False}))
        manager = make_manager()

        assert await manager.check_status() == MCPStatus('disconnected')
        assert await manager.get_tools_for_llm() == []
        assert manager.get_connected_servers() == []


# =============================================================================
# Rule: 只連線啟用的 server，個別失敗不影響其他 server
# =============================================================================


@allure.feature('MCP Manager')
@allure.story('只連線啟用的 server，個別失敗不影響其他 server')
class TestServers:
    """Server 連線測試。"""

    @allure.title('初始化只連線啟用的 server')
    async def test_initialize(self, manager: MCPManager, servers: RestServers) -> None:
        """Scenario: 初始化只連線啟用的 server。"""
        await manager.initialize_servers()

        states = {s.server_id: (s.state, s.connected) for s in manager.get_connected_servers()}
        assert states == {'search': ('connected', True), 'down': ('failed', False)}
        assert 'off.test' not in servers.hosts()

    @allure.title('初始化只執行一次')
    async def test_initialize_once(self, manager: MCPManager, servers: RestServers) -> None:
        """Scenario: 初始化只執行一次。"""
        await manager.initialize_servers()
        count = len(servers.requests)

        await manager.initialize_servers()

        assert len(servers.requests) == count

    @allure.title('URL 格式錯誤的 server 不影響其他 server')
    async def test_malformed_server(
        self, make_manager: Callable[..., MCPManager], write_file: WriteFile
    ) -> None:
        """Scenario: URL 格式錯誤的 server 不影響其他 server。"""
        config = {
            'servers': [
                {'id': 'search', 'type': 'http', 'url': 'http://search.test'},
                {'id': 'broken', 'type': 'http', 'url': 'http://bad.test:notaport'},
            ]
        }
        write_file('data/mcp-config.json', json.dumps(config))
        manager = make_manager()

        tools = await manager.get_tools_for_llm()

        assert [t['function']['name'] for t in tools] == ['search']
        infos = {s.server_id: s for s in manager.get_connected_servers()}
        assert infos['search'].state == 'connected'
        assert infos['broken'].state == 'failed'
        assert infos['broken'].last_error
        assert [t['function']['name'] for t in await manager.get_tools_for_llm()] == ['search']

    @allure.title('工具轉為 function calling 格式')
    async def test_tools_for_llm(self, manager: MCPManager) -> None:
        """Scenario: 工具轉為 function calling 格式。"""
        tools = await manager.get_tools_for_llm()

        assert tools == [
            {
                'type': 'function',
                'function': {
                    'name': 'search',
                    'description': 'Search notes',
                    'parameters': {'type': 'object', 'properties': {}},
                },
            }
        ]

    @allure.title('連線與中斷不存在的 server 回傳 False')
    async def test_unknown_server(self, manager: MCPManager) -> None:
        """Scenario: 連線與中斷不存在的 server 回傳 False。"""
        assert await manager.connect_server('ghost') is False
        assert await manager.disconnect_server('ghost') is False

    @allure.title('中斷後工具不再提供')
    async def test_disconnect_server(self, manager: MCPManager) -> None:
        """Scenario: 中斷後工具不再提供。"""
        assert await manager.connect_server('search') is True

        assert await manager.disconnect_server('search') is True

        assert manager.get_all_available_tools() == []

    @allure.title('設定變更後重新建立連線')
    async def test_reconnect_after_config_change(self, manager: MCPManager) -> None:
        """Scenario: 設定變更後重新建立連線。"""
        await manager.connect_server('search')
        config = await manager.load_config()
        changed = config.model_copy(
            update={'servers': [s.model_copy(update={'name': 'Renamed'}) for s in config.servers]}
        )
        await manager.save_config(changed)

        assert await manager.connect_server('search') is True

        [info] = [s for s in manager.get_connected_servers() if s.server_id == 'search']
        assert info.name == 'Renamed'

    @allure.title('關閉後可以重新初始化')
    async def test_shutdown(self, manager: MCPManager, servers: RestServers) -> None:
        """Scenario: 關閉後可以重新初始化。"""
        await manager.initialize_servers()
        await manager.shutdown()
        assert manager.get_connected_servers() == []

        await manager.initialize_servers()

        assert [t.name for t in manager.get_all_available_tools()] == ['search']


# =============================================================================
# Rule: 工具呼叫轉給提供該工具的 server
# =============================================================================


@allure.feature('MCP Manager')
@allure.story('工具呼叫轉給提供該工具的 server')
class TestToolExecution:
    """工具執行測試。"""

    @allure.title('依工具名稱找到 server 並執行')
    async def test_execute(self, manager: MCPManager) -> None:
        """Scenario: 依工具名稱找到 server 並執行。"""
        await manager.initialize_servers()

        results = await manager.execute_tool_calls(
            [
                MCPToolCall(id='c1', name='search', arguments={'q': 'sleep'}),
                MCPToolCall(id='c2', name='nope'),
            ]
        )

        assert results == [
            MCPToolResult.ok('c1', {'query': 'sleep'}),
            MCPToolResult.fail('c2', 'Tool not found: nope'),
        ]

    @allure.title('指定 server 執行工具，未註冊或未連線的 server 立即失敗')
    async def test_execute_on_server(self, manager: MCPManager) -> None:
        """Scenario: 指定 server 執行工具，未註冊或未連線的 server 立即失敗。"""
        call = MCPToolCall(id='c1', name='search', arguments={'q': 'sleep'})

        assert await manager.execute_mcp_tool('ghost', call) == MCPToolResult.fail('c1', NOT_CONNECTED_ERROR)

        await manager.initialize_servers()

        assert await manager.execute_mcp_tool('search', call) == MCPToolResult.ok('c1', {'query': 'sleep'})
        assert await manager.execute_mcp_tool('down', call) == MCPToolResult.fail('c1', NOT_CONNECTED_ERROR)

    @allure.title('工具結果轉為 tool 訊息')
    def test_format_tool_results(self) -> None:
        """Scenario: 工具結果轉為 tool 訊息。"""
        messages = format_tool_results_for_llm(
            [MCPToolResult.ok('c1', {'text': '早安'}), MCPToolResult.fail('c2', 'boom')]
        )

        assert messages == [
            {'role': 'tool', 'tool_call_id': 'c1', 'content': '{"text": "早安"}'},
            {'role': 'tool', 'tool_call_id': 'c2', 'content': 'Error: boom'},
        ]


# =============================================================================
# Rule: 工具調用迴圈直到沒有工具呼叫或達到上限
# =============================================================================


@allure.feature('MCP Manager')
@allure.story('工具調用迴圈直到沒有工具呼叫或達到上限')
class TestProcessWithTools:
    """工具調用迴圈測試。"""

    @allure.title('執行工具後把結果交回 LLM，取得最終回答')
    async def test_tool_round_trip(self, manager: MCPManager) -> None:
        """Scenario: 執行工具後把結果交回 LLM，取得最終回答。"""
        calls = [_tool_call('call_1', '{"q": "sleep"}'), _tool_call('call_2', 'not json')]
        chat = ScriptedChat(ChatResponse(None, tool_calls=calls), ChatResponse('Here you go'))

        events = await _collect(manager, chat)

        assert events[0] == {
            'type': 'tool_calls',
            'data': [
                {'id': 'call_1', 'name': 'search', 'arguments': '{"q": "sleep"}'},
                {'id': 'call_2', 'name': 'search', 'arguments': 'not json'},
            ],
        }
        results = events[1]
        assert isinstance(results, dict) and results['type'] == 'tool_results'
        assert results['data'][0] == {'toolCallId': 'call_1', 'success': True, 'result': {'query': 'sleep'}}
        assert results['data'][1]['success'] is False
        assert results['data'][1]['error'].startswith('Invalid tool arguments:')
        assert events[2:] == ['Here you go']

        second_messages = chat.calls[1][0]
        assert [m['role'] for m in second_messages] == ['user', 'assistant', 'tool', 'tool']
        assert second_messages[1]['tool_calls'] == calls
        assert second_messages[2]['content'] == '{"query": "sleep"}'

    @allure.title('有工具時傳給 LLM')
    async def test_tools_passed(self, manager: MCPManager) -> None:
        """Scenario: 有工具時傳給 LLM。"""
        chat = ScriptedChat(ChatResponse('ok'))

        assert await _collect(manager, chat) == ['ok']

        tools = chat.calls[0][2]
        assert tools is not None
        assert [t['function']['name'] for t in tools] == ['search']
        assert chat.calls[0][1] == 'system'

    @allure.title('沒有工具時傳 None')
    async def test_no_tools(self, make_manager: Callable[..., MCPManager]) -> None:
        """Scenario: 沒有工具時傳 None。"""
        chat = ScriptedChat(ChatResponse('ok'))

        await _collect(make_manager(), chat)

        assert chat.calls[0][2] is None

    @allure.title('達到迭代上限時產出 iteration_limit 事件')
    async def test_iteration_limit(self, make_manager: Callable[..., MCPManager]) -> None:
        """Scenario: 達到迭代上限時產出 iteration_limit 事件。"""
        chat = ScriptedChat(ChatResponse(None, tool_calls=[_tool_call('c', '{}')]))

        events = await _collect(make_manager(max_tool_iterations=2), chat)

        assert [e['type'] for e in events if isinstance(e, dict)] == [
            'tool_calls',
            'tool_results',
            'tool_calls',
            'tool_results',
            'iteration_limit',
        ]
        assert events[-1] == {'type': 'iteration_limit', 'data': {'max_iterations': 2}}
        assert len(chat.calls) == 2

    @allure.title('沒有文字也沒有工具呼叫時不產出任何內容')
    async def test_empty_reply(self, make_manager: Callable[..., MCPManager]) -> None:
        """Scenario: 沒有文字也沒有工具呼叫時不產出任何內容。"""
        assert await _collect(make_manager(), ScriptedChat(ChatResponse(None))) == []

    @allure.title('傳入的訊息列表不會被修改')
    async def test_messages_not_mutated(self, manager: MCPManager) -> None:
        """Scenario: 傳入的訊息列表不會被修改。"""
        chat = ScriptedChat(ChatResponse(None, tool_calls=[_tool_call('c', '{}')]), ChatResponse('done'))
        messages: list[ChatMessage] = [{'role': 'user', 'content': 'hi'}]

        async for _ in manager.process_with_tools(messages, 'system', chat):
            pass

        assert messages == [{'role': 'user', 'content': 'hi'}]
