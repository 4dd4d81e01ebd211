"""Prompt 索引與匹配模組。

從 data/prompts/ 載入 prompt 範本，依查詢內容評分排序，
並依查詢複雜度從 data/prompts/system/ 選出系統 prompt。

Prompt 檔案格式：

    # Weekly Planning
    - description: Plan the week ahead
    - keywords: plan, week, goals
    - intent: plan my week
    - category: planning
    - priority: 7

    ## Template
    Help {{name}} plan ...
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from coach_core.cache import TTLCache
from coach_core.paths import DataPaths
from coach_core.prompts.base import (
    DEFAULT_PRIORITY,
    ContextRequirement,
    ContextType,
    MatchedPrompt,
    Prompt,
    PromptMatchResult,
)
from coach_core.storage import Storage, list_dir_or_empty, read_text_or_none

logger = logging.getLogger(__name__)

# 不參與排序的系統 prompt 標記
SYSTEM_CATEGORY = 'system'
SYSTEM_TYPE = 'agentic-system'

_TITLE_RE = re.compile(r'^#\s+(.+)$', re.MULTILINE)
_METADATA_RE = re.compile(r'^-\s*(\w+):\s*(.+)$')
_TEMPLATE_RE = re.compile(r'##\s*(?:Template|System Prompt)\s*\n([\s\S]*?)(?=\n##|\Z)', re.IGNORECASE)
_LEADING_INT_RE = re.compile(r'^\s*([+-]?\d+)')
_NON_WORD_RE = re.compile(r'[^\w\s]')

CATEGORY_PATTERNS: dict[str, tuple[str, ...]] = {
    'planning': (r'plan', r'schedule', r'organize', r'prioritize', r'next\s+steps'),
    'productivity': (r'focus', r'productive', r'time\s+management', r'get\s+things\s+done'),
    'reflection': (r'review', r'reflect', r'progress', r'how\s+did', r'looking\s+back'),
    'problem-solving': (r'problem', r'stuck', r'obstacle', r'blocker', r"can't", r'help\s+me'),
    'motivation': (r'motivat', r'inspir', r'encourage', r'push\s+me'),
    'wellness': (r'stress', r'overwhelm', r'energy', r'tired', r'burnout'),
    'mindset': (r'fear', r'afraid', r'anxious', r'confidence', r'belief'),
    'learning': (r'learn', r'skill', r'course', r'study', r'education'),
    'career': (r'career', r'job', r'work', r'professional', r'interview'),
    'tech-skills': (r'ai\s+agent', r'rag', r'vector', r'coding', r'develop', r'programming'),
    'business': (r'startup', r'business', r'entrepreneur', r'founder'),
    'marketing': (r'marketing', r'influencer', r'content', r'social\s+media'),
    'operations': (r'operations', r'manufacturing', r'process', r'efficiency'),
    'leadership': (r'leader', r'executive', r'ceo', r'manage', r'strategy'),
    'analysis': (r'research', r'analyze', r'investigate', r'understand'),
    'soft-skills': (r'communicat', r'talk', r'speak', r'conversation'),
    'celebration': (r'achiev', r'accomplish', r'complet', r'success', r'win'),
    'habits': (r'habit', r'routine', r'daily', r'streak'),
}

_COMPILED_CATEGORIES: dict[str, re.Pattern[str]] = {
    name: re.compile('|'.join(patterns), re.IGNORECASE) for name, patterns in CATEGORY_PATTERNS.items()
}

_TASKS_RE = re.compile(r'task|todo|pending|complete|finish', re.IGNORECASE)
_CHALLENGES_RE = re.compile(r'challenge|streak|day\s+\d|check\s*in', re.IGNORECASE)
_HISTORY_RE = re.compile(r'history|progress|review|how\s+did|last\s+week|yesterday', re.IGNORECASE)
_SCHEDULE_RE = re.compile(r'schedule|today|tomorrow|calendar|meeting', re.IGNORECASE)

_DECOMPOSE_RE = re.compile(r'break\s+down|decompose|steps|how\s+to', re.IGNORECASE)
_SOLVE_RE = re.compile(r'solve|problem|stuck|obstacle|blocker', re.IGNORECASE)

# 超過此長度的查詢視為複雜查詢
COMPLEX_QUERY_LENGTH = 100


def tokenize(text: str) -> list[str]:
    """小寫、標點轉空白、切詞，只保留長度大於 2 的詞。"""
    return [w for w in _NON_WORD_RE.sub(' ', text.lower()).split() if len(w) > 2]


def _split_list(value: str) -> tuple[str, ...]:
    return tuple(item for item in (part.strip().lower() for part in value.split(',')) if item)


def _parse_priority(value: str) -> int:
    match = _LEADING_INT_RE.match(value)
    if not match:
        return DEFAULT_PRIORITY
    return int(match.group(1)) or DEFAULT_PRIORITY


def extract_template(content: str) -> str:
    """取出 `## Template` 或 `## System Prompt` 區段。

    沒有此區段時，從第一個 `##` 標題（或第 6 行之後的第一個空行）開始取到結尾。
    """
    match = _TEMPLATE_RE.search(content)
    if match:
        return match.group(1).strip()

    lines = content.split('\n')
    start = 0
    for i, line in enumerate(lines):
        if line.startswith('##') or (i > 5 and line.strip() == ''):
            start = i
            break
    return '\n'.join(lines[start:]).strip()


def parse_prompt(content: str, path: Path) -> Prompt:
    """解析 prompt markdown 檔案。

    Args:
        content: 檔案內容
        path: 檔案路徑（檔名即 prompt ID）

    Returns:
        Prompt
    """
    prompt_id = path.stem
    title_match = _TITLE_RE.search(content)
    name = title_match.group(1).strip() if title_match else prompt_id

    fields: dict[str, str] = {}
    for raw_line in content.split('\n'):
        match = _METADATA_RE.match(raw_line.rstrip('\r'))
        if match:
            fields[match.group(1).lower()] = match.group(2).strip()

    return Prompt(
        id=prompt_id,
        name=name,
        description=fields.get('description', ''),
        keywords=_split_list(fields.get('keywords', '')),
        intent=_split_list(fields.get('intent', '')),
        category=fields.get('category', 'general').lower(),
        priority=_parse_priority(fields['priority']) if 'priority' in fields else DEFAULT_PRIORITY,
        reasoning=fields.get('reasoning'),
        type=fields.get('type'),
        file_path=str(path),
        template=extract_template(content),
        full_content=content,
    )


def detect_category(query: str) -> list[str]:
    """偵測查詢所屬分類。

    Args:
        query: 使用者查詢

    Returns:
        命中的分類（依定義順序）；都沒有命中時回傳 ['general']
    """
    categories = [name for name, pattern in _COMPILED_CATEGORIES.items() if pattern.search(query)]
    return categories or ['general']


def _keyword_score(query_tokens: list[str], keywords: tuple[str, ...]) -> float:
    score = 0.0
    for keyword in keywords:
        for k_token in tokenize(keyword):
            for q_token in query_tokens:
                if q_token == k_token:
                    score += 3
                elif q_token.startswith(k_token) or k_token.startswith(q_token):
                    score += 1.5
                elif k_token in q_token or q_token in k_token:
                    score += 0.5
    return score


def _intent_score(query: str, intents: tuple[str, ...]) -> float:
    score = 0.0
    query_lower = query.lower()
    query_words = tokenize(query)
    for intent in intents:
        if intent in query_lower:
            score += 5
        else:
            overlap = sum(1 for w in tokenize(intent) if w in query_words)
            score += overlap * 2
    return score


def score_prompt(prompt: Prompt, query: str, detected_categories: list[str]) -> MatchedPrompt:
    """計算 prompt 與查詢的匹配分數。

    權重：關鍵字 ×3、意圖 ×4、分類 +5、優先度 0–2、名稱重疊 ×4、描述重疊 ×2。

    Args:
        prompt: 要評分的 prompt
        query: 使用者查詢
        detected_categories: detect_category() 的結果

    Returns:
        MatchedPrompt（分數不為負）
    """
    query_tokens = tokenize(query)
    reasons: list[str] = []
    total = 0.0

    keyword_score = _keyword_score(query_tokens, prompt.keywords)
    if keyword_score > 0:
        reasons.append(f'Keywords: +{keyword_score:.1f}')
        total += keyword_score * 3

    intent_score = _intent_score(query, prompt.intent)
    if intent_score > 0:
        reasons.append(f'Intent: +{intent_score:.1f}')
        total += intent_score * 4

    if prompt.category in detected_categories:
        reasons.append(f'Category: {prompt.category}')
        total += 5

    total += max(prompt.priority, 0) / 10 * 2

    name_overlap = sum(1 for t in tokenize(prompt.name) if t in query_tokens)
    if name_overlap > 0:
        reasons.append(f'Name match: {name_overlap} words')
        total += name_overlap * 4

    desc_overlap = sum(1 for t in tokenize(prompt.description) if t in query_tokens)
    if desc_overlap > 0:
        reasons.append(f'Desc match: {desc_overlap} words')
        total += desc_overlap * 2

    return MatchedPrompt(prompt=prompt, score=total, match_reasons=tuple(reasons))


def determine_context_requirements(query: str) -> list[ContextRequirement]:
    """判斷查詢需要哪些上下文。profile 永遠是必要的。"""

    def flag(kind: ContextType, required: bool) -> ContextRequirement:
        return ContextRequirement(type=kind, required=required)

    needs_history = bool(_HISTORY_RE.search(query))
    return [
        flag('profile', True),
        flag('tasks', bool(_TASKS_RE.search(query))),
        flag('challenges', bool(_CHALLENGES_RE.search(query))),
        flag('checkins', needs_history),
        flag('history', needs_history),
        flag('schedule', bool(_SCHEDULE_RE.search(query))),
    ]


def select_system_prompt_id(query: str) -> str | None:
    """依查詢複雜度決定要使用的系統 prompt ID。"""
    if _DECOMPOSE_RE.search(query):
        return 'task-decomposition-agent'
    if _SOLVE_RE.search(query):
        return 'reasoning-chain'
    if len(query) > COMPLEX_QUERY_LENGTH or '?' in query:
        return 'query-analysis'
    return None


def render_prompt_template(template: str, context: dict[str, str | int | float | None]) -> str:
    """替換範本中的 `{{key}}` 佔位符（不分大小寫）。

    Args:
        template: prompt 範本
        context: 佔位符對應值，None 會替換為空字串

    Returns:
        渲染後的文字；沒有對應值的佔位符保留原樣
    """
    rendered = template
    for key, value in context.items():
        placeholder = re.compile(r'\{\{' + re.escape(key) + r'\}\}', re.IGNORECASE)
        replacement = '' if value is None else str(value)
        rendered = placeholder.sub(lambda _m, r=replacement: r, rendered)
    return rendered


@dataclass(frozen=True)
class PromptCatalog:
    """一次載入的 prompt 與系統 prompt 快照。"""

    prompts: dict[str, Prompt]
    system_prompts: dict[str, Prompt]


async def load_prompts_from_dir(storage: Storage, directory: Path) -> dict[str, Prompt]:
    """載入目錄下所有 .md prompt 檔案（不遞迴）。"""
    prompts: dict[str, Prompt] = {}
    for entry in await list_dir_or_empty(storage, directory):
        if entry.is_dir or not entry.name.endswith('.md'):
            continue
        path = directory / entry.name
        content = await read_text_or_none(storage, path)
        if content is None:
            continue
        prompt = parse_prompt(content, path)
        prompts[prompt.id] = prompt
    return prompts


@dataclass
class PromptIndexer:
    """Prompt 索引服務。

    Attributes:
        storage: 唯讀儲存後端
        paths: 專案資料路徑
        cache: prompt 快照的 TTL 快取
    """

    storage: Storage
    paths: DataPaths
    cache: TTLCache[PromptCatalog] = field(default_factory=lambda: TTLCache[PromptCatalog](ttl=120.0))

    async def _ensure_catalog(self) -> PromptCatalog:
        catalog = self.cache.get()
        if catalog is not None:
            return catalog

        catalog = PromptCatalog(
            prompts=await load_prompts_from_dir(self.storage, self.paths.prompts_dir),
            system_prompts=await load_prompts_from_dir(self.storage, self.paths.system_prompts_dir),
        )
        self.cache.set(catalog)
        logger.info(
            'Prompt 索引已重新載入',
            extra={'prompts': len(catalog.prompts), 'system_prompts': len(catalog.system_prompts)},
        )
        return catalog

    def invalidate(self) -> None:
        """清除快取（prompt 檔案更新後呼叫）。"""
        self.cache.invalidate()

    async def match_prompts(self, query: str, max_results: int = 3) -> PromptMatchResult:
        """將查詢比對到相關 prompt。

        系統 prompt（category 為 system 或 type 為 agentic-system）不參與排序。
        同分時依 ID 字典序排列。

        Args:
            query: 使用者查詢
            max_results: primary 加 secondary 的最大數量

        Returns:
            PromptMatchResult
        """
        catalog = await self._ensure_catalog()
        detected = detect_category(query)

        scored: list[MatchedPrompt] = []
        for prompt in catalog.prompts.values():
            if prompt.category == SYSTEM_CATEGORY or prompt.type == SYSTEM_TYPE:
                continue
            matched = score_prompt(prompt, query, detected)
            if matched.score > 0:
                scored.append(matched)

        scored.sort(key=lambda m: (-m.score, m.prompt.id))

        system_prompt_id = select_system_prompt_id(query)
        system_prompt = catalog.system_prompts.get(system_prompt_id) if system_prompt_id else None

        logger.debug(
            'Prompt 匹配完成',
            extra={
                'categories': detected,
                'candidates': len(scored),
                'primary': scored[0].prompt.id if scored else None,
            },
        )

        return PromptMatchResult(
            primary=scored[0] if scored else None,
            secondary=tuple(scored[1:max_results]),
            system_prompt=system_prompt,
            context_requirements=tuple(determine_context_requirements(query)),
        )

    async def get_prompts_by_category(self, category: str) -> list[Prompt]:
        catalog = await self._ensure_catalog()
        return [p for p in catalog.prompts.values() if p.category == category]

    async def get_prompt_by_id(self, prompt_id: str) -> Prompt | None:
        """依 ID 查詢 prompt，一般 prompt 優先於系統 prompt。"""
        catalog = await self._ensure_catalog()
        return catalog.prompts.get(prompt_id) or catalog.system_prompts.get(prompt_id)

    async def get_all_categories(self) -> list[str]:
        catalog = await self._ensure_catalog()
        return sorted({p.category for p in catalog.prompts.values()})

    async def get_all_prompts(self) -> list[Prompt]:
        catalog = await self._ensure_catalog()
        return list(catalog.prompts.values())

    async def get_system_prompts(self) -> list[Prompt]:
        catalog = await self._ensure_catalog()
        return list(catalog.system_prompts.values())
