"""Agent Capabilities 模組。

管理每個 agent 被指派的技能與 prompt。設定檔 data/agent-capabilities.json：

    {
      "agents": {
        "fitness-coach": {
          "agentId": "fitness-coach",
          "assignedSkills": ["streak"],
          "assignedPrompts": ["motivation"],
          "personality": {"tone": "strict", "style": "short"},
          "restrictions": {"allowOnlyAssigned": true, "blockedTopics": ["politics"]}
        }
      },
      "globalDefaults": {"defaultSkills": [...], "defaultPrompts": [...]}
    }
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Literal, Protocol, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from coach_core.cache import TTLCache
from coach_core.config import DEFAULT_AGENT_ID
from coach_core.context.profile import UserProfile
from coach_core.paths import DataPaths
from coach_core.storage import Storage, read_text_or_none

logger = logging.getLogger(__name__)

DEFAULT_SKILLS = ['streak', 'daily-checkin']
DEFAULT_PROMPTS = ['motivation', 'accountability']

Tone = Literal['strict', 'balanced', 'friendly']

TONE_DESCRIPTIONS: dict[str, str] = {
    'strict': 'You are direct, demanding, and hold high standards. No excuses accepted.',
    'balanced': 'You are supportive but honest. You celebrate wins while pushing for growth.',
    'friendly': 'You are warm, encouraging, and focus on positive reinforcement.',
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Personality(_CamelModel):
    tone: Tone = 'balanced'
    style: str = ''


class Restrictions(_CamelModel):
    allow_only_assigned: bool = False
    blocked_topics: list[str] = Field(default_factory=list)


class AgentCapabilities(_CamelModel):
    """單一 agent 的能力設定。

    Attributes:
        agent_id: Agent 識別碼
        assigned_skills: 指派的技能 ID
        assigned_prompts: 指派的 prompt ID
        system_prompt: 額外的系統指示
        personality: 語氣與風格
        restrictions: 使用限制
        updated_at: 最後更新時間（ISO 8601）
    """

    agent_id: str
    assigned_skills: list[str] = Field(default_factory=list)
    assigned_prompts: list[str] = Field(default_factory=list)
    system_prompt: str | None = None
    personality: Personality | None = None
    restrictions: Restrictions = Field(default_factory=Restrictions)
    updated_at: str | None = None


class GlobalDefaults(_CamelModel):
    default_skills: list[str] = Field(default_factory=lambda: list(DEFAULT_SKILLS))
    default_prompts: list[str] = Field(default_factory=lambda: list(DEFAULT_PROMPTS))


class CapabilitiesConfig(_CamelModel):
    """agent-capabilities.json 的驗證模型。"""

    agents: dict[str, AgentCapabilities] = Field(default_factory=dict)
    global_defaults: GlobalDefaults = Field(default_factory=GlobalDefaults)


class _Named(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def name(self) -> str: ...


NamedT = TypeVar('NamedT', bound=_Named)


def _slug(name: str) -> str:
    return re.sub(r'\s+', '-', name.lower())


def _filter_assigned(items: Sequence[NamedT], assigned: list[str], restricted: bool) -> list[NamedT]:
    if not restricted:
        return list(items)
    allowed = set(assigned)
    return [item for item in items if item.id in allowed or _slug(item.name) in allowed]


@dataclass
class CapabilitiesStore:
    """Agent 能力設定的讀取服務。

    設定檔缺失或格式錯誤時使用預設值。
    """

    storage: Storage
    paths: DataPaths
    cache: TTLCache[CapabilitiesConfig] = field(default_factory=lambda: TTLCache[CapabilitiesConfig](ttl=60.0))

    async def load_config(self) -> CapabilitiesConfig:
        """載入並驗證 agent-capabilities.json（經過快取）。"""
        config = self.cache.get()
        if config is not None:
            return config

        content = await read_text_or_none(self.storage, self.paths.capabilities_file)
        config = CapabilitiesConfig()
        if content is not None:
            try:
                config = CapabilitiesConfig.model_validate_json(content)
            except ValidationError as e:
                logger.warning('agent-capabilities.json 格式錯誤，使用預設值', extra={'error': str(e)})

        self.cache.set(config)
        return config

    def invalidate(self) -> None:
        self.cache.invalidate()

    async def get_agent_capabilities(self, agent_id: str) -> AgentCapabilities:
        """取得 agent 的能力設定。

        未設定的 agent 使用全域預設技能與 prompt，並限制只能使用指派項目。

        Args:
            agent_id: Agent 識別碼

        Returns:
            AgentCapabilities
        """
        config = await self.load_config()
        if agent_id in config.agents:
            return config.agents[agent_id]

        return AgentCapabilities(
            agent_id=agent_id,
            assigned_skills=list(config.global_defaults.default_skills),
            assigned_prompts=list(config.global_defaults.default_prompts),
            restrictions=Restrictions(allow_only_assigned=True),
        )

    async def get_combined_agent_capabilities(self, agent_ids: Sequence[str]) -> AgentCapabilities:
        """合併多個 agent 的能力（統一對話使用）。

        技能、prompt 與禁止話題取聯集（保留首次出現順序），合併結果不做限制。

        Args:
            agent_ids: 選取的 agent ID；空列表時回傳全域預設

        Returns:
            agent_id 為 'unified' 的 AgentCapabilities
        """
        config = await self.load_config()
        if not agent_ids:
            return AgentCapabilities(
                agent_id=DEFAULT_AGENT_ID,
                assigned_skills=list(config.global_defaults.default_skills),
                assigned_prompts=list(config.global_defaults.default_prompts),
                restrictions=Restrictions(allow_only_assigned=False),
            )

        all_capabilities = [await self.get_agent_capabilities(agent_id) for agent_id in agent_ids]
        skills = list(dict.fromkeys(s for c in all_capabilities for s in c.assigned_skills))
        prompts = list(dict.fromkeys(p for c in all_capabilities for p in c.assigned_prompts))
        blocked = list(dict.fromkeys(t for c in all_capabilities for t in c.restrictions.blocked_topics))

        return AgentCapabilities(
            agent_id=DEFAULT_AGENT_ID,
            assigned_skills=skills,
            assigned_prompts=prompts,
            restrictions=Restrictions(allow_only_assigned=False, blocked_topics=blocked),
        )

    async def can_agent_use_skill(self, agent_id: str, skill_id: str) -> bool:
        capabilities = await self.get_agent_capabilities(agent_id)
        if not capabilities.restrictions.allow_only_assigned:
            return True
        return skill_id in capabilities.assigned_skills

    async def can_agent_use_prompt(self, agent_id: str, prompt_id: str) -> bool:
        capabilities = await self.get_agent_capabilities(agent_id)
        if not capabilities.restrictions.allow_only_assigned:
            return True
        return prompt_id in capabilities.assigned_prompts

    async def filter_skills(self, agent_id: str, skills: Sequence[NamedT]) -> list[NamedT]:
        """只保留 agent 被指派的技能（依 ID 或名稱 slug 比對）。"""
        capabilities = await self.get_agent_capabilities(agent_id)
        return _filter_assigned(
            skills, capabilities.assigned_skills, capabilities.restrictions.allow_only_assigned
        )

    async def filter_prompts(self, agent_id: str, prompts: Sequence[NamedT]) -> list[NamedT]:
        """只保留 agent 被指派的 prompt（依 ID 或名稱 slug 比對）。"""
        capabilities = await self.get_agent_capabilities(agent_id)
        return _filter_assigned(
            prompts, capabilities.assigned_prompts, capabilities.restrictions.allow_only_assigned
        )


def build_agent_system_prompt(
    agent_name: str,
    capabilities: AgentCapabilities,
    user_profile: UserProfile | None = None,
    goal: str | None = None,
) -> str:
    """產生包含 agent 能力說明的 system prompt。

    Args:
        agent_name: Agent 顯示名稱
        capabilities: Agent 能力設定
        user_profile: 使用者設定（可選）
        goal: 使用者的主要目標（可選）

    Returns:
        system prompt 文字
    """
    parts = [f'You are {agent_name}, a specialized AI accountability coach.']

    if capabilities.personality is not None:
        parts.append(TONE_DESCRIPTIONS.get(capabilities.personality.tone, ''))
        if capabilities.personality.style:
            parts.append(f'Your communication style: {capabilities.personality.style}')

    if user_profile is not None:
        parts.append('\n## User Context')
        if user_profile.name:
            parts.append(f"- User's name: {user_profile.name}")
        if goal:
            parts.append(f'- Main goal: {goal}')
        if user_profile.timezone:
            parts.append(f'- Timezone: {user_profile.timezone}')

    if capabilities.restrictions.blocked_topics:
        parts.append(f'\n## Topics to avoid: {", ".join(capabilities.restrictions.blocked_topics)}')

    if capabilities.assigned_skills:
        parts.append('\n## Your Available Skills')
        parts.append(f'You can help with: {", ".join(capabilities.assigned_skills)}')
        if capabilities.restrictions.allow_only_assigned:
            parts.append(
                'Note: Only use your assigned skills. For other requests, guide the user to appropriate resources.'
            )

    if capabilities.system_prompt:
        parts.append('\n## Additional Instructions')
        parts.append(capabilities.system_prompt)

    return '\n'.join(p for p in parts if p)
