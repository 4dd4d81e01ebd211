"""Anthropic chat 實作。

工具調用迴圈使用 OpenAI function-calling 格式的訊息與工具定義，
這裡負責與 Anthropic Messages API 格式互相轉換。
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import anthropic
from anthropic import APIConnectionError, APIStatusError, AuthenticationError

from coach_core.config import ProviderConfig
from coach_core.providers.exceptions import (
    ProviderAuthError,
    ProviderConnectionError,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
)
from coach_core.types import ChatMessage, ToolCall, ToolDefinition

logger = logging.getLogger(__name__)

T = TypeVar('T')

# 可重試的 HTTP 狀態碼：429 (Rate Limit)、5xx (伺服器錯誤)
_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504, 529}


@dataclass
class ChatResponse:
    """LLM 回應（OpenAI 格式）。

    Attributes:
        content: 文字內容（沒有文字時為 None）
        tool_calls: 工具調用
        stop_reason: 停止原因
    """

    content: str | None
    tool_calls: list[ToolCall] = field(default_factory=lambda: [])
    stop_reason: str = 'end_turn'


def _parse_arguments(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def convert_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
    """OpenAI function 定義轉為 Anthropic tool 定義。"""
    return [
        {
            'name': tool['function']['name'],
            'description': tool['function']['description'],
            'input_schema': tool['function']['parameters'],
        }
        for tool in tools
    ]


def convert_messages(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """OpenAI 格式訊息轉為 Anthropic 格式。

    system 訊息略過（改由 system 參數傳入）；連續的 tool 訊息合併為一則含
    tool_result 區塊的 user 訊息。

    Args:
        messages: OpenAI 格式訊息

    Returns:
        Anthropic messages 參數
    """
    converted: list[dict[str, Any]] = []
    pending_results: list[dict[str, Any]] = []

    def flush_results() -> None:
        if pending_results:
            converted.append({'role': 'user', 'content': list(pending_results)})
            pending_results.clear()

    for message in messages:
        role = message['role']
        if role == 'system':
            continue
        if role == 'tool':
            pending_results.append(
                {
                    'type': 'tool_result',
                    'tool_use_id': message.get('tool_call_id', ''),
                    'content': message.get('content') or '',
                }
            )
            continue

        flush_results()
        tool_calls = message.get('tool_calls') or []
        if role == 'assistant' and tool_calls:
            blocks: list[dict[str, Any]] = []
            if message.get('content'):
                blocks.append({'type': 'text', 'text': message['content']})
            for tc in tool_calls:
                blocks.append(
                    {
                        'type': 'tool_use',
                        'id': tc['id'],
                        'name': tc['function']['name'],
                        'input': _parse_arguments(tc['function']['arguments']),
                    }
                )
            converted.append({'role': 'assistant', 'content': blocks})
        else:
            converted.append({'role': role, 'content': message.get('content') or ''})

    flush_results()
    return converted


def parse_response(raw_msg: Any) -> ChatResponse:
    """將 SDK 原始回應轉換為 ChatResponse。"""
    texts: list[str] = []
    tool_calls: list[ToolCall] = []
    for block in raw_msg.content:
        if block.type == 'text':
            texts.append(block.text)
        elif block.type == 'tool_use':
            tool_calls.append(
                {
                    'id': block.id,
                    'type': 'function',
                    'function': {'name': block.name, 'arguments': json.dumps(block.input, ensure_ascii=False)},
                }
            )
    text = ''.join(texts)
    return ChatResponse(
        content=text or None,
        tool_calls=tool_calls,
        stop_reason=raw_msg.stop_reason or 'end_turn',
    )


class AnthropicChat:
    """Anthropic chat 函式，可直接作為工具調用迴圈的 chat_fn。"""

    def __init__(self, config: ProviderConfig, client: Any = None) -> None:
        """初始化。

        Args:
            config: Provider 配置
            client: 自訂 Anthropic client（主要用於測試注入 mock）
        """
        self._config = config
        self._client = client or anthropic.AsyncAnthropic(
            api_key=config.get_api_key(),
            timeout=config.timeout,
        )

    def _convert_error(self, error: anthropic.APIError) -> ProviderError:
        """將 Anthropic SDK 例外轉換為通用 Provider 例外。"""
        if isinstance(error, AuthenticationError):
            return ProviderAuthError('API 金鑰無效或已過期。請檢查 ANTHROPIC_API_KEY 環境變數是否正確設定。')
        if isinstance(error, anthropic.APITimeoutError):
            return ProviderTimeoutError('API 請求超時。')
        if isinstance(error, APIConnectionError):
            return ProviderConnectionError('API 連線失敗，請檢查網路連線並稍後重試。')
        if isinstance(error, APIStatusError):
            if error.status_code == 429:
                return ProviderRateLimitError(f'API 速率限制 ({error.status_code}): {error.message}')
            return ProviderError(f'API 錯誤 ({error.status_code}): {error.message}')
        return ProviderError(str(error))

    def _is_retryable(self, error: Exception) -> bool:
        if isinstance(error, (anthropic.APITimeoutError, APIConnectionError)):
            return True
        if isinstance(error, APIStatusError):
            return error.status_code in _RETRYABLE_STATUS_CODES
        return False

    async def _retry(self, fn: Callable[[], Awaitable[T]]) -> T:
        """以指數退避重試執行 async 函數。

        Raises:
            ProviderError: 不可重試錯誤或重試耗盡
        """
        attempt = 0
        while True:
            try:
                return await fn()
            except anthropic.APIError as e:
                if not self._is_retryable(e) or attempt >= self._config.max_retries:
                    raise self._convert_error(e) from e
                delay = self._config.retry_initial_delay * (2**attempt)
                logger.warning(
                    '可重試錯誤，準備重試',
                    extra={
                        'attempt': attempt + 1,
                        'max_retries': self._config.max_retries,
                        'delay': delay,
                        'error': str(e),
                    },
                )
                await asyncio.sleep(delay)
                attempt += 1

    def build_kwargs(
        self,
        messages: list[ChatMessage],
        system: str,
        tools: list[ToolDefinition] | None = None,
    ) -> dict[str, Any]:
        """建立 messages.create() 的參數。"""
        kwargs: dict[str, Any] = {
            'model': self._config.model,
            'max_tokens': self._config.max_tokens,
            'messages': convert_messages(messages),
            'system': system,
            'timeout': self._config.timeout,
        }
        if tools:
            kwargs['tools'] = convert_tools(tools)
        return kwargs

    async def chat(
        self,
        messages: list[ChatMessage],
        system: str,
        tools: list[ToolDefinition] | None = None,
    ) -> ChatResponse:
        """非串流呼叫，支援自動重試。

        Args:
            messages: OpenAI 格式訊息
            system: 系統提示詞
            tools: OpenAI 格式工具定義

        Returns:
            ChatResponse

        Raises:
            ProviderAuthError: API 認證失敗
            ProviderConnectionError: API 連線失敗
            ProviderTimeoutError: API 請求超時
            ProviderRateLimitError: 速率限制，重試耗盡
            ProviderError: 其他 API 錯誤
        """
        kwargs = self.build_kwargs(messages, system, tools)

        async def _call() -> ChatResponse:
            raw_msg = await self._client.messages.create(**kwargs)
            return parse_response(raw_msg)

        response = await self._retry(_call)
        logger.debug(
            'LLM 回應',
            extra={'tool_calls': len(response.tool_calls), 'stop_reason': response.stop_reason},
        )
        return response

    async def __call__(
        self,
        messages: list[ChatMessage],
        system: str,
        tools: list[ToolDefinition] | None = None,
    ) -> ChatResponse:
        return await self.chat(messages, system, tools)
