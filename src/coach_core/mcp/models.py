"""MCP 設定與資料結構。

mcp-config.json 以 pydantic 驗證（camelCase 欄位）；執行期資料結構使用 dataclass。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, cast

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

TransportType = Literal['stdio', 'http', 'sse']


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='ignore')


class MCPServerConfig(_CamelModel):
    """單一 MCP Server 設定。

    Attributes:
        id: Server 識別碼
        name: 顯示名稱
        type: 傳輸類型（stdio 啟動子程序；http/sse 使用 REST）
        command: stdio 啟動指令
        args: stdio 指令參數
        url: http/sse 的 base URL
        headers: http 自訂標頭
        env: 傳給子程序的額外環境變數
        enabled: 是否在初始化時自動連線
    """

    id: str
    name: str = ''
    description: str = ''
    type: TransportType = 'stdio'
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


class MCPConfig(_CamelModel):
    """mcp-config.json 的驗證模型。"""

    enabled: bool = True
    servers: list[MCPServerConfig] = Field(default_factory=list)
    last_updated: str | None = None


@dataclass(frozen=True)
class MCPTool:
    """MCP Server 提供的工具。

    Attributes:
        name: 工具名稱
        description: 工具描述
        input_schema: JSON Schema 格式的參數定義
        server_id: 提供此工具的 server
    """

    name: str
    description: str = ''
    input_schema: dict[str, Any] = field(default_factory=lambda: {'type': 'object', 'properties': {}})
    server_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'name': self.name,
            'description': self.description,
            'inputSchema': self.input_schema,
            'serverId': self.server_id,
        }


def parse_tools(raw: Any, server_id: str | None = None) -> list[MCPTool]:
    """將 tools/list 回應中的工具列表轉換為 MCPTool，略過格式不符的項目。"""
    if not isinstance(raw, list):
        return []

    tools: list[MCPTool] = []
    for item in cast(list[Any], raw):
        if not isinstance(item, dict):
            continue
        data = cast(dict[str, Any], item)
        name = data.get('name')
        if not isinstance(name, str) or not name:
            continue
        schema = data.get('inputSchema')
        tools.append(
            MCPTool(
                name=name,
                description=str(data.get('description') or ''),
                input_schema=cast(dict[str, Any], schema)
                if isinstance(schema, dict)
                else {'type': 'object', 'properties': {}},
                server_id=server_id,
            )
        )
    return tools


@dataclass(frozen=True)
class MCPToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=lambda: {})

    def to_dict(self) -> dict[str, Any]:
        return {'id': self.id, 'name': self.name, 'arguments': self.arguments}


@dataclass(frozen=True)
class MCPToolResult:
    """工具執行結果。

    success 為 True 時只有 result 有意義，為 False 時只有 error 有意義。
    """

    tool_call_id: str
    success: bool
    result: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, tool_call_id: str, result: Any) -> MCPToolResult:
        return cls(tool_call_id=tool_call_id, success=True, result=result)

    @classmethod
    def fail(cls, tool_call_id: str, error: str) -> MCPToolResult:
        return cls(tool_call_id=tool_call_id, success=False, error=error or 'Unknown error')

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {'toolCallId': self.tool_call_id, 'success': True, 'result': self.result}
        return {'toolCallId': self.tool_call_id, 'success': False, 'error': self.error}


@dataclass(frozen=True)
class MCPStatus:
    """MCP 整體狀態（串流事件 mcp_status）。"""

    status: Literal['connected', 'disconnected']
    servers: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {'type': 'mcp_status', 'status': self.status}
        if self.servers:
            data['servers'] = list(self.servers)
        return data
