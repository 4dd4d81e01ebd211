"""Skill 檔案載入模組。

從 skills/ 與 commands/ 目錄讀取定義，並從 data/agents.json 讀取 agent 的技能指派。
所有讀取失敗都轉換為空結果，不會拋出例外。
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import replace
from pathlib import Path
from typing import Any, cast

from coach_core.frontmatter import ParsedDocument, parse_frontmatter
from coach_core.skills.base import AgentSkills, Skill
from coach_core.storage import Storage, list_dir_or_empty, read_text_or_none

logger = logging.getLogger(__name__)

SKILL_FILENAME = 'SKILL.md'

_DESCRIPTION_TRIGGERS_RE = re.compile(r'triggers?\s*(?:on)?:?\s*([^.]+)', re.IGNORECASE)
_TABLE_TRIGGER_RE = re.compile(r'\|\s*"([^"]+)"\s*\|')


def extract_triggers(doc: ParsedDocument) -> tuple[str, ...]:
    """從 frontmatter 與本文萃取觸發詞。

    來源依序為：
    1. frontmatter 的 triggers 列表
    2. description 中 "Triggers on: a, b." 片段
    3. 本文表格列 `| "phrase" |`（長度 3–39）

    Args:
        doc: 已解析的文件

    Returns:
        去重後的小寫觸發詞（長度需大於 2）
    """
    triggers: list[str] = [t.lower().strip() for t in doc.get_list('triggers')]

    description = doc.get_str('description')
    if description:
        match = _DESCRIPTION_TRIGGERS_RE.search(description)
        if match:
            triggers.extend(t.strip().lower() for t in match.group(1).split(','))

    for match in _TABLE_TRIGGER_RE.finditer(doc.body):
        phrase = match.group(1).strip().lower()
        if 2 < len(phrase) < 40:
            triggers.append(phrase)

    # dict.fromkeys 保留插入順序去重
    return tuple(t for t in dict.fromkeys(triggers) if len(t) > 2)


def parse_skill(content: str, path: Path, fallback_id: str) -> Skill:
    """解析 skill markdown 內容。

    Args:
        content: 檔案內容
        path: 檔案路徑
        fallback_id: frontmatter 沒有 name 時使用的 ID

    Returns:
        Skill
    """
    doc = parse_frontmatter(content)
    name = doc.get_str('name') or fallback_id
    return Skill(
        id=name,
        name=name,
        description=doc.get_str('description'),
        triggers=extract_triggers(doc),
        body=doc.body,
        path=str(path),
        type='skill',
    )


def parse_command(content: str, path: Path) -> Skill:
    """解析 command markdown 內容，ID 取自檔名。"""
    doc = parse_frontmatter(content)
    command_id = path.stem
    return Skill(
        id=command_id,
        name=command_id,
        description=doc.get_str('description'),
        triggers=(f'/{command_id}',),
        body=doc.body,
        path=str(path),
        type='command',
    )


async def load_skills(storage: Storage, skills_dir: Path) -> dict[str, Skill]:
    """載入 skills/ 目錄下所有技能。

    資料夾形式（<dir>/SKILL.md）優先於單檔形式（<name>.md），同 ID 不覆蓋。

    Args:
        storage: 儲存後端
        skills_dir: skills 目錄

    Returns:
        以 skill ID 為 key 的對應表
    """
    skills: dict[str, Skill] = {}
    entries = await list_dir_or_empty(storage, skills_dir)

    for entry in entries:
        if not entry.is_dir:
            continue
        skill_path = skills_dir / entry.name / SKILL_FILENAME
        content = await read_text_or_none(storage, skill_path)
        if content is None:
            continue
        skill = parse_skill(content, skill_path, entry.name)
        skills[skill.id] = skill

    for entry in entries:
        if entry.is_dir or not entry.name.endswith('.md'):
            continue
        skill_path = skills_dir / entry.name
        skill_id = entry.name.removesuffix('.md')
        if skill_id in skills:
            continue
        content = await read_text_or_none(storage, skill_path)
        if content is None:
            continue
        skill = parse_skill(content, skill_path, skill_id)
        if skill.id in skills:
            continue
        skills[skill.id] = replace(skill, format='claude-official')

    logger.debug('技能已載入', extra={'count': len(skills), 'dir': str(skills_dir)})
    return skills


async def load_commands(storage: Storage, commands_dir: Path) -> dict[str, Skill]:
    """載入 commands/ 目錄下所有 slash command。"""
    commands: dict[str, Skill] = {}
    for entry in await list_dir_or_empty(storage, commands_dir):
        if entry.is_dir or not entry.name.endswith('.md'):
            continue
        command_path = commands_dir / entry.name
        content = await read_text_or_none(storage, command_path)
        if content is None:
            continue
        command = parse_command(content, command_path)
        commands[command.id] = command

    logger.debug('指令已載入', extra={'count': len(commands), 'dir': str(commands_dir)})
    return commands


def _parse_agent(raw: Any) -> AgentSkills | None:
    if not isinstance(raw, dict):
        return None
    data = cast(dict[str, Any], raw)
    agent_id = data.get('id')
    if not isinstance(agent_id, str):
        return None
    skills_raw = data.get('skills')
    skills: tuple[str, ...] = ()
    if isinstance(skills_raw, list):
        skills = tuple(s for s in cast(list[Any], skills_raw) if isinstance(s, str))
    return AgentSkills(id=agent_id, name=str(data.get('name', '')), skills=skills)


async def load_agents(storage: Storage, agents_file: Path) -> list[AgentSkills]:
    """載入 agents.json（支援 {"agents": [...]} 或直接為列表）。"""
    content = await read_text_or_none(storage, agents_file)
    if content is None:
        return []

    try:
        data: Any = json.loads(content)
    except json.JSONDecodeError as e:
        logger.warning('agents.json 格式錯誤，略過', extra={'error': str(e)})
        return []

    raw_agents: Any = data.get('agents', []) if isinstance(data, dict) else data
    if not isinstance(raw_agents, list):
        return []

    agents: list[AgentSkills] = []
    for raw in cast(list[Any], raw_agents):
        agent = _parse_agent(raw)
        if agent is not None:
            agents.append(agent)
    return agents
