"""FastAPI 應用程序入口。

提供上下文組裝、技能與 prompt 比對、MCP 管理，以及 SSE 串流聊天端點。
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from dotenv import load_dotenv
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from coach_core.cache import TTLCache
from coach_core.capabilities import CapabilitiesStore
from coach_core.config import DEFAULT_AGENT_ID, CoachCoreConfig
from coach_core.context.builder import ContextBuilder, build_system_prompt
from coach_core.context.profile import ProfileLoader
from coach_core.mcp.manager import ChatFunction, MCPManager
from coach_core.parallel import FileAttachment, LoadOptions, ParallelLoader, ParallelLoadResult
from coach_core.paths import DataPaths
from coach_core.prompts.indexer import PromptIndexer
from coach_core.providers.anthropic_chat import AnthropicChat
from coach_core.skills.base import Skill
from coach_core.skills.matcher import SkillMatcher
from coach_core.storage import LocalStorage, Storage
from coach_core.types import ChatMessage

# 在匯入 Anthropic client 之前加載 .env
load_dotenv()

logger = logging.getLogger(__name__)


# --- 服務容器 ---
@dataclass
class CoachServices:
    """應用程序使用的所有服務（每個應用程序一份，快取不共用）。"""

    config: CoachCoreConfig
    storage: Storage
    paths: DataPaths
    skills: SkillMatcher
    prompts: PromptIndexer
    context_builder: ContextBuilder
    profile_loader: ProfileLoader
    capabilities: CapabilitiesStore
    mcp: MCPManager
    loader: ParallelLoader
    chat_fn: ChatFunction | None = field(default=None)

    @classmethod
    def from_config(cls, config: CoachCoreConfig, storage: Storage | None = None) -> CoachServices:
        """依配置建立所有服務。"""
        store = storage or LocalStorage()
        paths = DataPaths(config.project_root)
        skills = SkillMatcher(store, paths, TTLCache(ttl=config.cache.skills_ttl))
        prompts = PromptIndexer(store, paths, TTLCache(ttl=config.cache.prompts_ttl))
        context_builder = ContextBuilder(store, paths)
        profile_loader = ProfileLoader(store, paths)
        capabilities = CapabilitiesStore(store, paths, TTLCache(ttl=config.cache.capabilities_ttl))
        mcp = MCPManager(
            store,
            paths.mcp_config_file,
            timeouts=config.mcp_timeouts,
            max_tool_iterations=config.max_tool_iterations,
        )
        loader = ParallelLoader(context_builder, profile_loader, skills, prompts, mcp, capabilities)
        return cls(
            config=config,
            storage=store,
            paths=paths,
            skills=skills,
            prompts=prompts,
            context_builder=context_builder,
            profile_loader=profile_loader,
            capabilities=capabilities,
            mcp=mcp,
            loader=loader,
        )

    def get_chat_fn(self) -> ChatFunction:
        """取得 LLM chat 函式（第一次使用時才建立 Anthropic client）。"""
        if self.chat_fn is None:
            self.chat_fn = AnthropicChat(self.config.provider)
        return self.chat_fn


def create_app(services: CoachServices | None = None) -> FastAPI:
    """建立 FastAPI 應用程序。

    Args:
        services: 預先建立的服務（測試注入用）；未指定時依環境變數建立

    Returns:
        FastAPI 應用程序
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """應用程序生命週期管理。"""
        app.state.services = services or CoachServices.from_config(CoachCoreConfig())
        logger.info('應用程序啟動', extra={'project_root': str(app.state.services.config.project_root)})

        yield

        await app.state.services.mcp.shutdown()
        logger.info('應用程序關閉')

    application = FastAPI(title='Coach API', lifespan=lifespan)
    if services is not None:
        # 不經過 lifespan 的測試 client 也能取得服務
        application.state.services = services
    application.include_router(_router)
    return application


# --- 請求模型 ---
class _CamelRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FileRequest(_CamelRequest):
    name: str
    content: str


class LoadContextRequest(_CamelRequest):
    """並行載入請求本體。"""

    profile_id: str | None = None
    agent_id: str = DEFAULT_AGENT_ID
    selected_agent_ids: list[str] = Field(default_factory=list)
    message: str = ''
    timezone: str | None = None
    include_prompts: bool = False
    files: list[FileRequest] = Field(default_factory=list)

    def to_options(self) -> LoadOptions:
        return LoadOptions(
            profile_id=self.profile_id,
            agent_id=self.agent_id,
            selected_agent_ids=list(self.selected_agent_ids),
            user_message=self.message,
            files=[FileAttachment(name=f.name, content=f.content) for f in self.files],
            timezone=self.timezone,
            include_prompts=self.include_prompts,
        )


class SkillMatchRequest(_CamelRequest):
    message: str
    agent_id: str = DEFAULT_AGENT_ID


class PromptMatchRequest(_CamelRequest):
    query: str
    max_results: int = Field(default=3, ge=1, le=20)


class HistoryMessage(BaseModel):
    role: str
    content: str


class ChatRequest(LoadContextRequest):
    """聊天請求本體。"""

    message: str
    history: list[HistoryMessage] = Field(default_factory=list)


# --- 輔助函數 ---
def _services(request: Request) -> CoachServices:
    return request.app.state.services


def _skill_to_dict(skill: Skill, include_body: bool = False) -> dict[str, Any]:
    data: dict[str, Any] = {
        'id': skill.id,
        'name': skill.name,
        'description': skill.description,
        'triggers': list(skill.triggers),
        'type': skill.type,
    }
    if include_body:
        data['body'] = skill.body
    return data


def _sse_event(event: str, data: Any) -> str:
    """格式化 SSE 事件。

    Args:
        event: 事件類型
        data: 事件數據（會自動 JSON 序列化）

    Returns:
        SSE 格式的字串
    """
    # 用 JSON 編碼確保換行符等特殊字元被正確傳輸
    encoded_data = json.dumps(data, ensure_ascii=False)
    return f'event: {event}\ndata: {encoded_data}\n\n'


def compose_system_prompt(loaded: ParallelLoadResult, agent_id: str) -> str:
    """由並行載入結果組出完整的 system prompt。

    依序為：上下文 prompt、使用者設定區塊、agent 額外指示、附件內容。
    """
    parts = [build_system_prompt(loaded.context, agent_id, loaded.matched_skill)]
    if loaded.user_profile_context:
        parts.append(loaded.user_profile_context)
    if loaded.agent_capabilities.system_prompt:
        parts.append(f'## Agent Instructions\n{loaded.agent_capabilities.system_prompt}')
    if loaded.file_contexts:
        parts.append('# Attached Files\n\n' + '\n\n'.join(loaded.file_contexts))
    return '\n\n'.join(parts)


_router = APIRouter()


# --- 串流生成器 ---
async def _stream_chat(services: CoachServices, chat_req: ChatRequest) -> AsyncIterator[str]:
    """執行工具調用迴圈並格式化為 SSE 事件。

    Args:
        services: 服務容器
        chat_req: 聊天請求

    Yields:
        格式化的 SSE 事件字串
    """
    try:
        loaded = await services.loader.load_context_parallel(chat_req.to_options())
        if loaded.mcp_status is not None:
            yield _sse_event('mcp_status', loaded.mcp_status.to_dict())

        system_prompt = compose_system_prompt(loaded, chat_req.agent_id)
        messages: list[ChatMessage] = [
            {'role': 'assistant' if m.role == 'assistant' else 'user', 'content': m.content}
            for m in chat_req.history
        ]
        messages.append({'role': 'user', 'content': chat_req.message})

        async for item in services.mcp.process_with_tools(messages, system_prompt, services.get_chat_fn()):
            if isinstance(item, str):
                yield _sse_event('token', item)
            else:
                # 事件通知（tool_calls、tool_results、iteration_limit）
                yield _sse_event(item['type'], item.get('data', {}))

        yield _sse_event('done', '')

    except Exception as e:
        # 錯誤時傳出 SSE error 事件
        logger.warning('聊天串流失敗', extra={'error': str(e), 'error_type': type(e).__name__})
        error_data = {'type': type(e).__name__, 'message': str(e)}
        yield _sse_event('error', error_data)


# --- API 路由 ---
@_router.get('/health')
async def health() -> JSONResponse:
    return JSONResponse({'status': 'ok'})


@_router.get('/api/context')
async def get_context(request: Request, profile_id: str | None = None, timezone: str | None = None) -> JSONResponse:
    """取得使用者上下文端點。

    Args:
        request: HTTP 請求
        profile_id: Profile 識別碼（query: profile_id）
        timezone: IANA 時區

    Returns:
        UserContext（camelCase）
    """
    context = await _services(request).context_builder.build_context(profile_id, timezone)
    return JSONResponse(context.to_dict())


@_router.post('/api/context/load')
async def load_context(request: Request, body: LoadContextRequest) -> JSONResponse:
    """並行載入端點。"""
    result = await _services(request).loader.load_context_parallel(body.to_options())
    return JSONResponse(result.to_dict())


@_router.get('/api/skills')
async def list_skills(request: Request, agent_id: str | None = None) -> JSONResponse:
    """列出技能與 slash command。指定 agent_id 時只列出該 agent 可用的技能。"""
    matcher = _services(request).skills
    skills = await matcher.get_agent_skills(agent_id) if agent_id else await matcher.get_all_skills()
    commands = await matcher.get_all_commands()
    return JSONResponse(
        {
            'skills': [_skill_to_dict(s) for s in skills],
            'commands': [_skill_to_dict(c) for c in commands],
        }
    )


@_router.post('/api/skills/match')
async def match_skill(request: Request, body: SkillMatchRequest) -> JSONResponse:
    skill = await _services(request).skills.match_skill(body.message, body.agent_id)
    return JSONResponse({'skill': _skill_to_dict(skill, include_body=True) if skill else None})


@_router.get('/api/prompts')
async def list_prompts(request: Request, category: str | None = None) -> JSONResponse:
    indexer = _services(request).prompts
    prompts = await indexer.get_prompts_by_category(category) if category else await indexer.get_all_prompts()
    return JSONResponse(
        {
            'prompts': [p.to_dict() for p in prompts],
            'categories': await indexer.get_all_categories(),
        }
    )


@_router.post('/api/prompts/match')
async def match_prompts(request: Request, body: PromptMatchRequest) -> JSONResponse:
    result = await _services(request).prompts.match_prompts(body.query, body.max_results)
    return JSONResponse(result.to_dict())


@_router.get('/api/mcp/status')
async def mcp_status(request: Request) -> JSONResponse:
    """MCP 狀態端點：設定檔層級的狀態加上目前的連線。"""
    manager = _services(request).mcp
    status = await manager.check_status()
    data = status.to_dict()
    data['connections'] = [s.to_dict() for s in manager.get_connected_servers()]
    return JSONResponse(data)


@_router.get('/api/mcp/tools')
async def mcp_tools(request: Request) -> JSONResponse:
    tools = await _services(request).mcp.get_tools_for_llm()
    return JSONResponse({'tools': tools})


@_router.post('/api/mcp/servers/{server_id}/connect')
async def mcp_connect(request: Request, server_id: str) -> JSONResponse:
    """連線指定的 MCP server。

    Args:
        request: HTTP 請求
        server_id: Server 識別碼

    Returns:
        連線結果；設定中沒有這個 server 時回傳 404
    """
    manager = _services(request).mcp
    config = await manager.load_config()
    if not any(s.id == server_id for s in config.servers):
        return JSONResponse({'error': f"MCP server '{server_id}' 不存在"}, status_code=404)

    connected = await manager.connect_server(server_id)
    info = next((s for s in manager.get_connected_servers() if s.server_id == server_id), None)
    logger.info('MCP server 連線要求', extra={'server': server_id, 'connected': connected})
    return JSONResponse(
        {'connected': connected, 'server': info.to_dict() if info else None},
        status_code=200 if connected else 502,
    )


@_router.delete('/api/mcp/servers/{server_id}')
async def mcp_disconnect(request: Request, server_id: str) -> JSONResponse:
    disconnected = await _services(request).mcp.disconnect_server(server_id)
    if not disconnected:
        return JSONResponse({'error': f"MCP server '{server_id}' 未連線"}, status_code=404)
    return JSONResponse({'status': 'ok', 'server': server_id})


@_router.post('/api/chat/stream')
async def chat_stream(request: Request, body: ChatRequest) -> StreamingResponse:
    """SSE 串流聊天端點。

    事件依序為 mcp_status、token / tool_calls / tool_results / iteration_limit，
    最後是 done；失敗時為 error。
    """
    return StreamingResponse(
        _stream_chat(_services(request), body),
        media_type='text/event-stream',
    )


app = create_app()
