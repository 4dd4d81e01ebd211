"""LLM Provider 模組。"""

from coach_core.providers.anthropic_chat import AnthropicChat, ChatResponse
from coach_core.providers.exceptions import (
    ProviderAuthError,
    ProviderConnectionError,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
)

__all__ = [
    'AnthropicChat',
    'ChatResponse',
    'ProviderAuthError',
    'ProviderConnectionError',
    'ProviderError',
    'ProviderRateLimitError',
    'ProviderTimeoutError',
]
