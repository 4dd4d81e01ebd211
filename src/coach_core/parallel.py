"""並行載入模組。

將彼此獨立的資料讀取（上下文、使用者設定、技能比對、MCP 工具等）同時發出，
任何一個分支失敗都以該分支的預設值取代，整體結果一定會完成。
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from coach_core.capabilities import AgentCapabilities, CapabilitiesStore
from coach_core.config import DEFAULT_AGENT_ID
from coach_core.context.builder import ContextBuilder, resolve_today
from coach_core.context.models import UserContext
from coach_core.context.profile import ProfileLoader, UserProfile, build_user_context
from coach_core.files import MAX_CONTEXT_CHUNKS, ProcessedFile, format_file_context, get_relevant_chunks, process_file
from coach_core.mcp.manager import MCPManager
from coach_core.mcp.models import MCPStatus
from coach_core.prompts.base import PromptMatchResult
from coach_core.prompts.indexer import PromptIndexer
from coach_core.skills.base import Skill
from coach_core.skills.matcher import SkillMatcher
from coach_core.types import ToolDefinition

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_MAX_CONCURRENT = 10
DEFAULT_DEBOUNCE_MS = 300


@dataclass(frozen=True)
class FileAttachment:
    """聊天附件。"""

    name: str
    content: str | bytes


@dataclass
class LoadOptions:
    """load_context_parallel() 的參數。

    Attributes:
        profile_id: Profile 識別碼
        agent_id: 目前對話的 agent
        selected_agent_ids: 統一對話中選取的多個 agent（非空時合併能力）
        user_message: 使用者訊息（空字串時不做技能與 prompt 比對）
        files: 附件
        timezone: IANA 時區
        include_prompts: 是否比對 prompt
    """

    profile_id: str | None = None
    agent_id: str = DEFAULT_AGENT_ID
    selected_agent_ids: list[str] = field(default_factory=lambda: [])
    user_message: str = ''
    files: list[FileAttachment] = field(default_factory=lambda: [])
    timezone: str | None = None
    include_prompts: bool = False


@dataclass
class ParallelLoadResult:
    """並行載入的彙總結果。load_time 單位為毫秒。"""

    context: UserContext
    agent_capabilities: AgentCapabilities
    user_profile: UserProfile | None = None
    user_profile_context: str = ''
    matched_skill: Skill | None = None
    prompt_match: PromptMatchResult | None = None
    mcp_tools: list[ToolDefinition] = field(default_factory=lambda: [])
    mcp_status: MCPStatus | None = None
    processed_files: list[ProcessedFile] = field(default_factory=lambda: [])
    file_contexts: list[str] = field(default_factory=lambda: [])
    load_time: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            'context': self.context.to_dict(),
            'userProfileContext': self.user_profile_context,
            'matchedSkill': {'name': self.matched_skill.name, 'body': self.matched_skill.body}
            if self.matched_skill
            else None,
            'promptMatch': self.prompt_match.to_dict() if self.prompt_match else None,
            'mcpTools': self.mcp_tools,
            'mcpStatus': self.mcp_status.to_dict() if self.mcp_status else None,
            'agentCapabilities': self.agent_capabilities.model_dump(by_alias=True),
            'processedFiles': [f.to_dict() for f in self.processed_files],
            'fileContexts': self.file_contexts,
            'loadTime': self.load_time,
        }


@dataclass
class PreloadedData:
    """preload_common_data() 的結果，失敗的欄位保持 None。"""

    context: UserContext | None = None
    user_profile: UserProfile | None = None
    user_profile_context: str | None = None
    mcp_tools: list[ToolDefinition] | None = None
    mcp_status: MCPStatus | None = None


@dataclass(frozen=True)
class BatchResult(Generic[T]):
    """批次呼叫的單筆結果，success 為 False 時只有 error 有意義。"""

    success: bool
    result: T | None = None
    error: str | None = None


async def _settled(coro: Awaitable[T], fallback: T, label: str) -> T:
    """等待分支完成，失敗時記錄並回傳預設值。"""
    try:
        return await coro
    except Exception as e:
        logger.warning('並行載入分支失敗，使用預設值', extra={'branch': label, 'error': str(e)})
        return fallback


async def _none() -> None:
    return None


def _error_message(error: BaseException) -> str:
    return str(error) or 'Unknown error'


async def batch_api_calls_parallel(
    calls: Sequence[Callable[[], Awaitable[T]]],
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
    on_progress: Callable[[int, int], None] | None = None,
) -> list[BatchResult[T]]:
    """分批並行執行呼叫。

    每批最多 max_concurrent 個，整批結束後才開始下一批；結果順序與輸入相同。

    Args:
        calls: 無參數的 async 呼叫
        max_concurrent: 每批數量
        on_progress: 每完成一個呼叫就以 (completed, total) 通知

    Returns:
        每個呼叫的 BatchResult
    """
    if max_concurrent < 1:
        raise ValueError('max_concurrent must be at least 1')

    total = len(calls)
    results: list[BatchResult[T]] = []
    completed = 0

    for start in range(0, total, max_concurrent):
        window = calls[start : start + max_concurrent]
        outcomes = await asyncio.gather(*(call() for call in window), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, Exception):
                results.append(BatchResult(success=False, error=_error_message(outcome)))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(BatchResult(success=True, result=outcome))
            completed += 1
            if on_progress is not None:
                on_progress(completed, total)

    return results


@dataclass
class _DebounceEntry:
    task: asyncio.Task[Any]
    timestamp: float


class Debouncer:
    """同一個 key 在時間窗內重複呼叫時共用同一個進行中的工作。"""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, _DebounceEntry] = {}

    async def call(self, key: str, fn: Callable[[], Awaitable[T]], window_ms: float = DEFAULT_DEBOUNCE_MS) -> T:
        """執行或共用呼叫。

        Args:
            key: 去重用的 key
            fn: 實際呼叫
            window_ms: 時間窗（毫秒），項目會在 2 倍時間窗後清除

        Returns:
            呼叫結果（時間窗內的呼叫取得同一份結果或同一個例外）
        """
        now = self._clock()
        existing = self._entries.get(key)
        if existing is not None and (now - existing.timestamp) * 1000 < window_ms:
            return await asyncio.shield(existing.task)

        async def _run() -> T:
            return await fn()

        task: asyncio.Task[T] = asyncio.create_task(_run())
        entry = _DebounceEntry(task=task, timestamp=now)
        self._entries[key] = entry
        asyncio.get_running_loop().call_later(window_ms * 2 / 1000, self._evict, key, entry)
        return await asyncio.shield(task)

    def _evict(self, key: str, entry: _DebounceEntry) -> None:
        # 只清除自己的項目，key 可能已被較新的呼叫取代
        if self._entries.get(key) is entry:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


class ParallelLoader:
    """並行載入器。

    預先載入的資料與去重表都屬於這個實例。
    """

    def __init__(
        self,
        context_builder: ContextBuilder,
        profile_loader: ProfileLoader,
        skill_matcher: SkillMatcher,
        prompt_indexer: PromptIndexer,
        mcp_manager: MCPManager,
        capabilities: CapabilitiesStore,
    ) -> None:
        self._context_builder = context_builder
        self._profile_loader = profile_loader
        self._skill_matcher = skill_matcher
        self._prompt_indexer = prompt_indexer
        self._mcp_manager = mcp_manager
        self._capabilities = capabilities
        self._debouncer = Debouncer()
        self._preloaded: PreloadedData | None = None
        self._preload_tasks: dict[str | None, asyncio.Task[PreloadedData]] = {}

    def _empty_context(self, timezone: str | None = None) -> UserContext:
        return UserContext(current_date=resolve_today(datetime.now(UTC), timezone).isoformat())

    async def _load_profile(self, profile_id: str | None) -> UserProfile | None:
        if not profile_id:
            return None
        return await self._profile_loader.load_user_profile(profile_id)

    async def _load_capabilities(self, options: LoadOptions) -> AgentCapabilities:
        if options.selected_agent_ids:
            return await self._capabilities.get_combined_agent_capabilities(options.selected_agent_ids)
        return await self._capabilities.get_agent_capabilities(options.agent_id)

    async def _load_file(self, file: FileAttachment, user_message: str) -> tuple[ProcessedFile | None, str]:
        try:
            processed = await asyncio.to_thread(process_file, file.name, file.content)
            chunks = get_relevant_chunks(processed, user_message, MAX_CONTEXT_CHUNKS)
            return processed, format_file_context(processed, chunks)
        except Exception as e:
            logger.warning('附件處理失敗', extra={'file_name': file.name, 'error': str(e)})
            return None, f'## File: {file.name}\n*Could not process file*\n'

    async def load_context_parallel(self, options: LoadOptions | None = None) -> ParallelLoadResult:
        """並行載入對話所需的所有資料。

        Args:
            options: 載入參數

        Returns:
            ParallelLoadResult（任何分支失敗都以預設值取代）
        """
        opts = options or LoadOptions()
        start = time.perf_counter()
        message = opts.user_message

        skill_coro: Awaitable[Skill | None] = (
            self._skill_matcher.match_skill(message, opts.agent_id) if message else _none()
        )
        prompt_coro: Awaitable[PromptMatchResult | None] = (
            self._prompt_indexer.match_prompts(message) if message and opts.include_prompts else _none()
        )
        fallback_capabilities = AgentCapabilities(agent_id=opts.agent_id)

        branches = asyncio.gather(
            _settled(
                self._context_builder.build_context(opts.profile_id, opts.timezone),
                self._empty_context(opts.timezone),
                'context',
            ),
            _settled(self._load_profile(opts.profile_id), None, 'user_profile'),
            _settled(skill_coro, None, 'skill'),
            _settled(prompt_coro, None, 'prompts'),
            _settled(self._mcp_manager.get_tools_for_llm(), [], 'mcp_tools'),
            _settled(self._mcp_manager.check_status(), None, 'mcp_status'),
            _settled(self._load_capabilities(opts), fallback_capabilities, 'capabilities'),
        )
        files = asyncio.gather(*(self._load_file(f, message) for f in opts.files))
        (
            (context, user_profile, matched_skill, prompt_match, mcp_tools, mcp_status, agent_capabilities),
            file_results,
        ) = await asyncio.gather(branches, files)

        processed_files = [processed for processed, _ in file_results if processed is not None]
        file_contexts = [ctx for _, ctx in file_results if ctx]

        load_time = (time.perf_counter() - start) * 1000
        logger.debug(
            '並行載入完成',
            extra={
                'profile_id': opts.profile_id,
                'agent_id': opts.agent_id,
                'files': len(opts.files),
                'load_time_ms': round(load_time, 2),
            },
        )

        return ParallelLoadResult(
            context=context,
            agent_capabilities=agent_capabilities,
            user_profile=user_profile,
            user_profile_context=build_user_context(user_profile) if user_profile else '',
            matched_skill=matched_skill,
            prompt_match=prompt_match,
            mcp_tools=mcp_tools,
            mcp_status=mcp_status,
            processed_files=processed_files,
            file_contexts=file_contexts,
            load_time=load_time,
        )

    async def _preload(self, profile_id: str | None) -> PreloadedData:
        context, user_profile, mcp_tools, mcp_status = await asyncio.gather(
            _settled(self._context_builder.build_context(profile_id), None, 'context'),
            _settled(self._load_profile(profile_id), None, 'user_profile'),
            _settled(self._mcp_manager.get_tools_for_llm(), None, 'mcp_tools'),
            _settled(self._mcp_manager.check_status(), None, 'mcp_status'),
        )

        return PreloadedData(
            context=context,
            user_profile=user_profile,
            user_profile_context=build_user_context(user_profile) if user_profile else None,
            mcp_tools=mcp_tools,
            mcp_status=mcp_status,
        )

    async def preload_common_data(self, profile_id: str | None = None) -> PreloadedData:
        """預先載入常用資料。

        同一個 profile 同時間的多個呼叫共用進行中的預載，不同 profile 各自載入；
        完成後釋放這個參考，下次呼叫會重新載入。

        Args:
            profile_id: 使用者 profile 識別碼

        Returns:
            該 profile 的 PreloadedData（同時成為 get_preloaded_data() 的值）
        """
        task = self._preload_tasks.get(profile_id)
        if task is None:
            task = asyncio.create_task(self._preload(profile_id))
            self._preload_tasks[profile_id] = task
        try:
            data = await asyncio.shield(task)
        finally:
            if self._preload_tasks.get(profile_id) is task and task.done():
                del self._preload_tasks[profile_id]
        self._preloaded = data
        return data

    def get_preloaded_data(self) -> PreloadedData | None:
        return self._preloaded

    def clear_preloaded_data(self) -> None:
        """清除預載資料（切換 profile 時使用）。"""
        self._preloaded = None
        self._preload_tasks.clear()

    async def debounced_api_call(
        self, key: str, fn: Callable[[], Awaitable[T]], window_ms: float = DEFAULT_DEBOUNCE_MS
    ) -> T:
        return await self._debouncer.call(key, fn, window_ms)
