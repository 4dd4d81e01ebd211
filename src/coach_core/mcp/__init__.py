"""MCP Server 整合模組。

提供 MCP Client（stdio / http）與 Manager，將外部工具開放給 LLM 使用。
"""

from coach_core.mcp.client import ConnectionState, MCPClient
from coach_core.mcp.exceptions import MCPError, MCPTimeoutError, MCPTransportError
from coach_core.mcp.manager import MCPManager, format_tool_results_for_llm, format_tools_for_llm
from coach_core.mcp.models import MCPConfig, MCPServerConfig, MCPStatus, MCPTool, MCPToolCall, MCPToolResult

__all__ = [
    'ConnectionState',
    'MCPClient',
    'MCPConfig',
    'MCPError',
    'MCPManager',
    'MCPServerConfig',
    'MCPStatus',
    'MCPTimeoutError',
    'MCPTool',
    'MCPToolCall',
    'MCPToolResult',
    'MCPTransportError',
    'format_tool_results_for_llm',
    'format_tools_for_llm',
]
