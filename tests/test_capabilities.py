"""Agent Capabilities 測試模組。"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from coach_core.capabilities import (
    DEFAULT_PROMPTS,
    DEFAULT_SKILLS,
    AgentCapabilities,
    CapabilitiesStore,
    Personality,
    Restrictions,
    build_agent_system_prompt,
)
from coach_core.context import UserProfile
from coach_core.paths import DataPaths
from coach_core.skills import Skill
from coach_core.storage import LocalStorage

WriteFile = Callable[[str, str], Path]

CAPABILITIES = {
    'agents': {
        'fitness': {
            'agentId': 'fitness',
            'assignedSkills': ['streak', 'workout'],
            'assignedPrompts': ['motivation'],
            'personality': {'tone': 'strict', 'style': 'short'},
            'restrictions': {'allowOnlyAssigned': True, 'blockedTopics': ['politics']},
        },
        'mindset': {
            'agentId': 'mindset',
            'assignedSkills': ['streak', 'journal'],
            'assignedPrompts': ['reflection'],
            'restrictions': {'allowOnlyAssigned': False, 'blockedTopics': ['politics', 'diet']},
        },
    },
    'globalDefaults': {'defaultSkills': ['streak'], 'defaultPrompts': ['motivation']},
}


@pytest.fixture
def store(storage: LocalStorage, paths: DataPaths, write_file: WriteFile) -> CapabilitiesStore:
    write_file('data/agent-capabilities.json', json.dumps(CAPABILITIES))
    return CapabilitiesStore(storage, paths)


@allure.feature('Agent Capabilities')
@allure.story('讀取 agent 的能力設定')
class TestAgentCapabilities:
    """能力設定讀取測試。"""

    @allure.title('已設定的 agent 回傳設定檔內容')
    async def test_configured_agent(self, store: CapabilitiesStore) -> None:
        """Scenario: 已設定的 agent 回傳設定檔內容。"""
        capabilities = await store.get_agent_capabilities('fitness')

        assert capabilities.assigned_skills == ['streak', 'workout']
        assert capabilities.personality == Personality(tone='strict', style='short')
        assert capabilities.restrictions.allow_only_assigned is True

    @allure.title('未設定的 agent 使用全域預設並限制指派項目')
    async def test_unknown_agent(self, store: CapabilitiesStore) -> None:
        """Scenario: 未設定的 agent 使用全域預設並限制指派項目。"""
        capabilities = await store.get_agent_capabilities('ghost')

        assert capabilities.assigned_skills == ['streak']
        assert capabilities.assigned_prompts == ['motivation']
        assert capabilities.restrictions.allow_only_assigned is True

    @allure.title('設定檔缺失或格式錯誤時使用內建預設')
    @pytest.mark.parametrize('content', [None, '{"agents": []}'])
    async def test_missing_or_invalid_file(
        self, storage: LocalStorage, paths: DataPaths, write_file: WriteFile, content: str | None
    ) -> None:
        """Scenario: 設定檔缺失或格式錯誤時使用內建預設。"""
        if content is not None:
            write_file('data/agent-capabilities.json', content)

        capabilities = await CapabilitiesStore(storage, paths).get_agent_capabilities('any')

        assert capabilities.assigned_skills == DEFAULT_SKILLS
        assert capabilities.assigned_prompts == DEFAULT_PROMPTS

    @allure.title('序列化使用 camelCase 欄位')
    async def test_camel_case_dump(self, store: CapabilitiesStore) -> None:
        """Scenario: 序列化使用 camelCase 欄位。"""
        data = (await store.get_agent_capabilities('fitness')).model_dump(by_alias=True)

        assert data['agentId'] == 'fitness'
        assert data['restrictions']['blockedTopics'] == ['politics']


@allure.feature('Agent Capabilities')
@allure.story('多個 agent 的能力取聯集')
class TestCombinedCapabilities:
    """合併能力測試。"""

    @allure.title('技能、prompt 與禁止話題取聯集並保留順序')
    async def test_union(self, store: CapabilitiesStore) -> None:
        """Scenario: 技能、prompt 與禁止話題取聯集並保留順序。"""
        combined = await store.get_combined_agent_capabilities(['fitness', 'mindset'])

        assert combined.agent_id == 'unified'
        assert combined.assigned_skills == ['streak', 'workout', 'journal']
        assert combined.assigned_prompts == ['motivation', 'reflection']
        assert combined.restrictions.blocked_topics == ['politics', 'diet']
        assert combined.restrictions.allow_only_assigned is False

    @allure.title('沒有選取 agent 時回傳全域預設')
    async def test_empty_selection(self, store: CapabilitiesStore) -> None:
        """Scenario: 沒有選取 agent 時回傳全域預設。"""
        combined = await store.get_combined_agent_capabilities([])

        assert combined.assigned_skills == ['streak']
        assert combined.restrictions.allow_only_assigned is False


@allure.feature('Agent Capabilities')
@allure.story('受限的 agent 只能使用指派項目')
class TestRestrictions:
    """使用限制測試。"""

    @allure.title('受限 agent 只能使用指派的技能與 prompt')
    async def test_can_use(self, store: CapabilitiesStore) -> None:
        """Scenario: 受限 agent 只能使用指派的技能與 prompt。"""
        assert await store.can_agent_use_skill('fitness', 'streak')
        assert not await store.can_agent_use_skill('fitness', 'journal')
        assert await store.can_agent_use_skill('mindset', 'anything')
        assert not await store.can_agent_use_prompt('fitness', 'reflection')

    @allure.title('依 ID 或名稱 slug 篩選技能')
    async def test_filter_skills(self, store: CapabilitiesStore) -> None:
        """Scenario: 依 ID 或名稱 slug 篩選技能。"""
        skills = [
            Skill(id='streak', name='Streak', description=''),
            Skill(id='w-1', name='Workout', description=''),
            Skill(id='journal', name='Journal', description=''),
        ]

        filtered = await store.filter_skills('fitness', skills)

        assert [s.id for s in filtered] == ['streak', 'w-1']

    @allure.title('只限指派的 agent 篩選 prompt，不受限的 agent 保留全部')
    async def test_filter_prompts(self, store: CapabilitiesStore) -> None:
        """Scenario: 只限指派的 agent 篩選 prompt，不受限的 agent 保留全部。"""
        prompts = [
            Skill(id='motivation', name='Motivation', description=''),
            Skill(id='weekly-review', name='Weekly Review', description=''),
        ]

        assert [p.id for p in await store.filter_prompts('fitness', prompts)] == ['motivation']
        assert [p.id for p in await store.filter_prompts('mindset', prompts)] == ['motivation', 'weekly-review']


@allure.feature('Agent Capabilities')
@allure.story('agent system prompt 包含能力說明')
class TestAgentSystemPrompt:
    """Agent system prompt 測試。"""

    @allure.title('包含語氣、使用者資料、禁止話題與技能')
    def test_full_prompt(self) -> None:
        """Scenario: 包含語氣、使用者資料、禁止話題與技能。"""
        capabilities = AgentCapabilities(
            agent_id='fitness',
            assigned_skills=['streak'],
            personality=Personality(tone='friendly', style='playful'),
            restrictions=Restrictions(allow_only_assigned=True, blocked_topics=['politics']),
            system_prompt='Always ask about sleep.',
        )

        prompt = build_agent_system_prompt(
            'Fitness Coach', capabilities, UserProfile(id='bob', name='Bob', timezone='UTC'), goal='Get fit'
        )

        assert prompt.startswith('You are Fitness Coach, a specialized AI accountability coach.')
        assert 'You are warm, encouraging' in prompt
        assert "- User's name: Bob" in prompt
        assert '- Main goal: Get fit' in prompt
        assert '## Topics to avoid: politics' in prompt
        assert 'You can help with: streak' in prompt
        assert 'Only use your assigned skills' in prompt
        assert prompt.endswith('Always ask about sleep.')
