"""Coach Core 統一配置模組。

提供上下文組裝管線的配置資料結構，包含資料目錄、快取 TTL、MCP 逾時與 Provider 設定。
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

# 預設值
DEFAULT_MODEL = 'claude-sonnet-4-20250514'
DEFAULT_MAX_TOKENS = 4096
DEFAULT_TIMEOUT = 60.0
DEFAULT_AGENT_ID = 'unified'
DEFAULT_MAX_TOOL_ITERATIONS = 10


@dataclass
class ProviderConfig:
    """LLM Provider 配置。

    Attributes:
        provider_type: Provider 類型識別（例如 "anthropic"）
        model: 模型名稱（未指定時讀取 COACH_MODEL 環境變數）
        api_key: API 金鑰（可選，未指定時從環境變數讀取）
        max_tokens: 最大回應 token 數
        timeout: API 請求超時秒數
        max_retries: 可重試錯誤的最大重試次數
        retry_initial_delay: 第一次重試前的等待秒數（之後指數成長）
    """

    provider_type: str = 'anthropic'
    model: str = field(default_factory=lambda: os.environ.get('COACH_MODEL', DEFAULT_MODEL))
    api_key: str | None = None
    max_tokens: int = DEFAULT_MAX_TOKENS
    timeout: float = DEFAULT_TIMEOUT
    max_retries: int = 2
    retry_initial_delay: float = 1.0

    def get_api_key(self) -> str | None:
        """取得 API Key，優先使用明確指定的值，否則從環境變數讀取。

        Returns:
            API Key 字串，若無可用 Key 則回傳 None
        """
        if self.api_key is not None:
            return self.api_key
        return os.environ.get('ANTHROPIC_API_KEY')


@dataclass
class CacheConfig:
    """各快取的存活時間（秒）。"""

    skills_ttl: float = 60.0
    prompts_ttl: float = 120.0
    capabilities_ttl: float = 60.0


@dataclass
class MCPTimeouts:
    """MCP 連線逾時設定（秒）。

    Attributes:
        connect: 子程序啟動到第一則輸出的等待上限
        list_tools: tools/list 請求等待上限
        execute: tools/call 請求等待上限
    """

    connect: float = 10.0
    list_tools: float = 5.0
    execute: float = 30.0


@dataclass
class CoachCoreConfig:
    """Coach 管線核心配置。

    Attributes:
        project_root: 專案根目錄（底下有 data/、skills/、commands/）
        provider: LLM Provider 配置
        cache: 快取 TTL 配置
        mcp_timeouts: MCP 逾時配置
        max_tool_iterations: 工具調用迴圈最大迭代次數（防止失控）
        default_agent_id: 未指定 agent 時使用的識別碼
    """

    project_root: Path = field(default_factory=lambda: resolve_project_root())
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    mcp_timeouts: MCPTimeouts = field(default_factory=MCPTimeouts)
    max_tool_iterations: int = DEFAULT_MAX_TOOL_ITERATIONS
    default_agent_id: str = DEFAULT_AGENT_ID


def resolve_project_root() -> Path:
    """決定專案根目錄。

    優先讀取 COACH_PROJECT_ROOT 環境變數；若目前工作目錄是 ui/ 子目錄則往上一層。

    Returns:
        專案根目錄的絕對路徑
    """
    env_root = os.environ.get('COACH_PROJECT_ROOT')
    if env_root:
        return Path(env_root).resolve()

    cwd = Path.cwd()
    if cwd.name == 'ui':
        return cwd.parent
    return cwd
