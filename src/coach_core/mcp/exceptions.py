"""MCP 例外模組。

這些例外只在 MCP Client 內部拋出，對外一律轉換為 MCPToolResult 或 FAILED 狀態。
"""

from __future__ import annotations


class MCPError(Exception):
    """MCP 基礎例外（也用於 server 回傳的 JSON-RPC error）。"""


class MCPTimeoutError(MCPError):
    """連線或請求超時。"""


class MCPTransportError(MCPError):
    """傳輸失敗（子程序無法啟動或已結束、HTTP 連線失敗）。"""
