"""型別定義模組。

定義管線與 LLM 聊天端點之間交換的訊息格式（OpenAI function-calling 風格）。
透過 Literal discriminated union 讓 Pyright 自動窄化型別，減少 cast 需求。
"""

from __future__ import annotations

from typing import Any, Literal, Required, TypedDict

# --- Tool Definition ---


class FunctionSpec(TypedDict):
    """Function-calling 工具的函數描述。"""

    name: str
    description: str
    parameters: dict[str, Any]


class ToolDefinition(TypedDict):
    """提供給 LLM 的工具定義。"""

    type: Literal['function']
    function: FunctionSpec


# --- Tool Call ---


class FunctionCall(TypedDict):
    """LLM 要求呼叫的函數與參數（arguments 為 JSON 字串）。"""

    name: str
    arguments: str


class ToolCall(TypedDict):
    """LLM 回傳的工具調用。"""

    id: str
    type: Literal['function']
    function: FunctionCall


# --- Message ---


class ChatMessage(TypedDict, total=False):
    """對話訊息型別。

    tool_calls 僅出現在 assistant 訊息；tool_call_id 僅出現在 tool 訊息。
    """

    role: Required[Literal['system', 'user', 'assistant', 'tool']]
    content: Required[str | None]
    tool_calls: list[ToolCall]
    tool_call_id: str


# --- Agent Event ---


class AgentEvent(TypedDict):
    """工具調用迴圈的事件通知型別。

    Attributes:
        type: 事件類型（tool_calls、tool_results、iteration_limit）
        data: 事件附帶資料
    """

    type: str
    data: Any
