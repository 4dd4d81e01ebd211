"""LLM chat adapter 的例外模組。

AnthropicChat 把 SDK 例外轉為這些類別，SSE 端點以類別名稱回報 error 事件。
"""

from __future__ import annotations


class ProviderError(Exception):
    """chat 呼叫失敗的共同基底（不可重試的狀態碼也直接使用這個類別）。"""


class ProviderAuthError(ProviderError):
    """API Key 無效或過期，不重試。"""


class ProviderConnectionError(ProviderError):
    """無法連到 API，重試耗盡後拋出。"""


class ProviderTimeoutError(ProviderError):
    """API 回應逾時，重試耗盡後拋出。"""


class ProviderRateLimitError(ProviderError):
    """HTTP 429，重試耗盡後拋出。"""
