"""Skill Matcher 模組。

將使用者訊息比對到技能或 slash command：
- `/command` 開頭的訊息直接查 command 表，不進行評分
- 其餘訊息對 agent 可用的技能評分，取最高分且 ≥ 2 的技能
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from coach_core.cache import TTLCache
from coach_core.config import DEFAULT_AGENT_ID
from coach_core.paths import DataPaths
from coach_core.skills.base import AgentSkills, Skill
from coach_core.skills.loader import load_agents, load_commands, load_skills
from coach_core.storage import Storage

logger = logging.getLogger(__name__)

# 技能被接受的最低分數
MIN_MATCH_SCORE = 2

# 評分權重
NAME_MATCH_SCORE = 5
PHRASE_TRIGGER_SCORE = 4
WORD_TRIGGER_SCORE = 3


@dataclass(frozen=True)
class SkillCatalog:
    """一次載入的技能、指令與 agent 指派快照。"""

    skills: dict[str, Skill]
    commands: dict[str, Skill]
    agents: list[AgentSkills]


def score_skill(skill: Skill, message: str) -> int:
    """計算技能與訊息的匹配分數。

    - skill 的 id 或 name 為訊息中的完整詞：各 +5
    - 多字觸發詞出現在訊息中：+4
    - 單字觸發詞為訊息中的完整詞：+3

    Args:
        skill: 要評分的技能
        message: 已轉小寫並去除首尾空白的訊息

    Returns:
        非負整數分數
    """
    score = 0
    words = message.split()

    for skill_word in (skill.id.lower(), skill.name.lower()):
        if skill_word in words:
            score += NAME_MATCH_SCORE

    for trigger in skill.triggers:
        trigger_lower = trigger.lower()
        if ' ' in trigger_lower:
            if trigger_lower in message:
                score += PHRASE_TRIGGER_SCORE
        elif trigger_lower in words:
            score += WORD_TRIGGER_SCORE

    return score


@dataclass
class SkillMatcher:
    """技能匹配服務。

    技能、指令與 agent 指派一起快取，TTL 到期或呼叫 invalidate() 後整批重新載入。

    Attributes:
        storage: 唯讀儲存後端
        paths: 專案資料路徑
        cache: 目錄快照的 TTL 快取
    """

    storage: Storage
    paths: DataPaths
    cache: TTLCache[SkillCatalog] = field(default_factory=lambda: TTLCache[SkillCatalog](ttl=60.0))

    async def _ensure_catalog(self) -> SkillCatalog:
        catalog = self.cache.get()
        if catalog is not None:
            return catalog

        catalog = SkillCatalog(
            skills=await load_skills(self.storage, self.paths.skills_dir),
            commands=await load_commands(self.storage, self.paths.commands_dir),
            agents=await load_agents(self.storage, self.paths.agents_file),
        )
        self.cache.set(catalog)
        logger.info(
            '技能目錄已重新載入',
            extra={'skills': len(catalog.skills), 'commands': len(catalog.commands)},
        )
        return catalog

    def invalidate(self) -> None:
        """清除快取（技能檔案更新後呼叫）。"""
        self.cache.invalidate()

    async def get_agent_skills(self, agent_id: str) -> list[Skill]:
        """取得 agent 可用的技能。

        'unified' 可使用全部技能；其他 agent 只能使用 agents.json 中指派的技能。

        Args:
            agent_id: Agent 識別碼

        Returns:
            技能列表
        """
        catalog = await self._ensure_catalog()
        if agent_id == DEFAULT_AGENT_ID:
            return list(catalog.skills.values())

        agent = next((a for a in catalog.agents if a.id == agent_id), None)
        if agent is None or not agent.skills:
            return []
        return [catalog.skills[sid] for sid in agent.skills if sid in catalog.skills]

    async def match_skill(self, message: str, agent_id: str = DEFAULT_AGENT_ID) -> Skill | None:
        """將使用者訊息比對到技能或指令。

        同分時取 ID 字典序最小者，確保結果與載入順序無關。

        Args:
            message: 使用者訊息
            agent_id: Agent 識別碼（用於篩選可用技能）

        Returns:
            匹配到的 Skill，沒有達到門檻時回傳 None
        """
        catalog = await self._ensure_catalog()
        lower_message = message.lower().strip()

        if lower_message.startswith('/'):
            command_name = lower_message.split()[0][1:]
            command = catalog.commands.get(command_name)
            if command is not None:
                logger.debug('匹配到 slash command', extra={'command': command.id})
                return command

        best_match: Skill | None = None
        best_score = 0
        for skill in await self.get_agent_skills(agent_id):
            score = score_skill(skill, lower_message)
            if score < MIN_MATCH_SCORE:
                continue
            if score > best_score or (
                score == best_score and best_match is not None and skill.id < best_match.id
            ):
                best_score = score
                best_match = skill

        if best_match is not None:
            logger.debug(
                '匹配到技能',
                extra={'skill_id': best_match.id, 'score': best_score, 'agent_id': agent_id},
            )
        return best_match

    async def get_skill_content(self, skill_id: str) -> str | None:
        """取得技能或指令的完整本文。

        Args:
            skill_id: 技能或指令 ID

        Returns:
            本文，不存在時回傳 None
        """
        catalog = await self._ensure_catalog()
        skill = catalog.skills.get(skill_id) or catalog.commands.get(skill_id)
        return skill.body if skill else None

    async def get_all_skills(self) -> list[Skill]:
        """列出所有技能。"""
        catalog = await self._ensure_catalog()
        return list(catalog.skills.values())

    async def get_all_commands(self) -> list[Skill]:
        """列出所有 slash command。"""
        catalog = await self._ensure_catalog()
        return list(catalog.commands.values())
