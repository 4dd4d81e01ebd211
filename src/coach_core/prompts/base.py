"""Prompt 資料結構定義。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

ContextType = Literal['profile', 'tasks', 'challenges', 'checkins', 'schedule', 'history']

DEFAULT_PRIORITY = 5
DEFAULT_CATEGORY = 'general'


@dataclass(frozen=True)
class Prompt:
    """從 data/prompts/*.md 載入的 prompt 範本。

    Attributes:
        id: 檔名（不含 .md）
        name: 第一個 `# ` 標題，沒有時使用 id
        description: 描述
        keywords: 小寫關鍵字
        intent: 小寫意圖片語
        category: 小寫分類
        priority: 優先度（0–10）
        reasoning: 推理提示（可選）
        type: 類型標記（例如 'agentic-system'）
        file_path: 來源檔案路徑
        template: `## Template` 區段內容
        full_content: 原始檔案內容
    """

    id: str
    name: str
    description: str = ''
    keywords: tuple[str, ...] = field(default_factory=tuple)
    intent: tuple[str, ...] = field(default_factory=tuple)
    category: str = DEFAULT_CATEGORY
    priority: int = DEFAULT_PRIORITY
    reasoning: str | None = None
    type: str | None = None
    file_path: str = ''
    template: str = ''
    full_content: str = ''

    def to_dict(self, include_content: bool = False) -> dict[str, Any]:
        """轉換為 HTTP 回應用的字典。"""
        data: dict[str, Any] = {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'keywords': list(self.keywords),
            'intent': list(self.intent),
            'category': self.category,
            'priority': self.priority,
            'reasoning': self.reasoning,
            'type': self.type,
            'filePath': self.file_path,
        }
        if include_content:
            data['template'] = self.template
            data['fullContent'] = self.full_content
        return data


@dataclass(frozen=True)
class MatchedPrompt:
    """評分後的 prompt。"""

    prompt: Prompt
    score: float
    match_reasons: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            'prompt': self.prompt.to_dict(include_content=True),
            'score': self.score,
            'matchReasons': list(self.match_reasons),
        }


@dataclass(frozen=True)
class ContextRequirement:
    """查詢需要的上下文類型。"""

    type: ContextType
    required: bool

    def to_dict(self) -> dict[str, Any]:
        return {'type': self.type, 'required': self.required}


@dataclass(frozen=True)
class PromptMatchResult:
    """Prompt 匹配結果。

    Attributes:
        primary: 最高分的 prompt
        secondary: 其後的 prompt（最多 max_results - 1 個）
        system_prompt: 依查詢複雜度選出的系統 prompt
        context_requirements: 查詢需要的上下文
    """

    primary: MatchedPrompt | None = None
    secondary: tuple[MatchedPrompt, ...] = field(default_factory=tuple)
    system_prompt: Prompt | None = None
    context_requirements: tuple[ContextRequirement, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            'primary': self.primary.to_dict() if self.primary else None,
            'secondary': [m.to_dict() for m in self.secondary],
            'systemPrompt': self.system_prompt.to_dict(include_content=True) if self.system_prompt else None,
            'contextRequirements': [r.to_dict() for r in self.context_requirements],
        }
