"""Coach Core - 教練對話的上下文組裝與工具調用管線。"""

__version__ = '0.1.0'

from coach_core.capabilities import CapabilitiesStore
from coach_core.config import CoachCoreConfig, ProviderConfig
from coach_core.context import ContextBuilder, ProfileLoader, UserContext
from coach_core.mcp import MCPManager
from coach_core.parallel import LoadOptions, ParallelLoader, ParallelLoadResult
from coach_core.paths import DataPaths
from coach_core.prompts import PromptIndexer
from coach_core.providers import AnthropicChat
from coach_core.skills import SkillMatcher
from coach_core.storage import LocalStorage, Storage

__all__ = [
    'AnthropicChat',
    'CapabilitiesStore',
    'CoachCoreConfig',
    'ContextBuilder',
    'DataPaths',
    'LoadOptions',
    'LocalStorage',
    'MCPManager',
    'ParallelLoadResult',
    'ParallelLoader',
    'ProfileLoader',
    'PromptIndexer',
    'ProviderConfig',
    'SkillMatcher',
    'Storage',
    'UserContext',
]
