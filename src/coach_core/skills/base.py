"""Skill 基礎定義。

定義 Skill 資料結構：一個 Skill（或 slash command）是一段由觸發詞啟用的指令文字。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

SkillType = Literal['skill', 'command']


@dataclass(frozen=True)
class Skill:
    """技能或指令定義。

    載入進快取後不可變。

    Attributes:
        id: 唯一識別（skill 為 frontmatter name 或資料夾名稱，command 為檔名）
        name: 顯示名稱
        description: 技能描述
        triggers: 觸發詞（有序、已去重、小寫）
        body: 注入 system prompt 的指令本文
        path: 來源檔案路徑
        type: 'skill' 或 'command'
        format: 檔案格式標記（單檔 skill 為 'claude-official'）
    """

    id: str
    name: str
    description: str
    triggers: tuple[str, ...] = field(default_factory=tuple)
    body: str = ''
    path: str = ''
    type: SkillType = 'skill'
    format: str | None = None


@dataclass(frozen=True)
class AgentSkills:
    """agents.json 中單一 agent 的技能指派。"""

    id: str
    name: str = ''
    skills: tuple[str, ...] = field(default_factory=tuple)
