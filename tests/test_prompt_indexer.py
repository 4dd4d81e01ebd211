"""Prompt Indexer 測試模組。

涵蓋：
- Rule: prompt 檔案解析
- Rule: 查詢分類與上下文需求
- Rule: 評分與排序
- Rule: 範本渲染
- Rule: prompt 索引有 TTL 快取
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from coach_core.cache import TTLCache
from coach_core.paths import DataPaths
from coach_core.prompts import (
    Prompt,
    PromptIndexer,
    detect_category,
    determine_context_requirements,
    render_prompt_template,
    score_prompt,
)
from coach_core.prompts.indexer import extract_template, parse_prompt, select_system_prompt_id
from coach_core.storage import LocalStorage

WriteFile = Callable[[str, str], Path]

MOTIVATION_PROMPT = """# Motivation Boost

- description: Get motivated fast
- keywords: motivation, energy
- intent: need motivation
- category: Motivation
- priority: 8

## Template
Hello {{name}}, let's go.

## Notes
extra
"""


def _prompt_file(title: str, keywords: str, category: str, priority: int = 5) -> str:
    return (
        f'# {title}\n\n- keywords: {keywords}\n- category: {category}\n- priority: {priority}\n\n'
        '## Template\nDo the thing.\n'
    )


@pytest.fixture
def indexer(storage: LocalStorage, paths: DataPaths, write_file: WriteFile) -> PromptIndexer:
    write_file('data/prompts/motivation-boost.md', MOTIVATION_PROMPT)
    write_file('data/prompts/weekly-review.md', _prompt_file('Weekly Review', 'review, progress', 'reflection'))
    write_file('data/prompts/deep-focus.md', _prompt_file('Deep Focus', 'focus, distraction', 'productivity', 3))
    write_file('data/prompts/agent-core.md', _prompt_file('Agent Core', 'motivation', 'system', 10))
    write_file(
        'data/prompts/system/task-decomposition-agent.md',
        '# Task Decomposition\n\n- type: agentic-system\n\n## System Prompt\nBreak it down.\n',
    )
    return PromptIndexer(storage, paths)


# =============================================================================
# Rule: prompt 檔案解析
# =============================================================================


@allure.feature('Prompt Indexer')
@allure.story('prompt 檔案解析')
class TestPromptParsing:
    """Prompt 解析測試。"""

    @allure.title('解析標題、metadata 與範本')
    def test_parse_prompt(self) -> None:
        """Scenario: 解析標題、metadata 與範本。"""
        prompt = parse_prompt(MOTIVATION_PROMPT, Path('/p/motivation-boost.md'))

        assert prompt.id == 'motivation-boost'
        assert prompt.name == 'Motivation Boost'
        assert prompt.description == 'Get motivated fast'
        assert prompt.keywords == ('motivation', 'energy')
        assert prompt.intent == ('need motivation',)
        assert prompt.category == 'motivation'
        assert prompt.priority == 8
        assert prompt.template == "Hello {{name}}, let's go."
        assert prompt.full_content == MOTIVATION_PROMPT

    @allure.title('缺少欄位時使用預設值')
    def test_defaults(self) -> None:
        """Scenario: 缺少欄位時使用預設值。"""
        prompt = parse_prompt('no title here\n- priority: abc', Path('plain.md'))

        assert prompt.name == 'plain'
        assert prompt.category == 'general'
        assert prompt.priority == 5
        assert prompt.keywords == ()

    @allure.title('沒有 Template 區段時從第一個 ## 標題開始')
    def test_template_fallback(self) -> None:
        """Scenario: 沒有 Template 區段時從第一個 ## 標題開始。"""
        content = '# Title\n- category: x\n## Steps\n1. first\n2. second'

        assert extract_template(content) == '## Steps\n1. first\n2. second'

    @allure.title('系統 prompt 不參與排序，但可依 ID 查詢')
    async def test_system_prompts_excluded(self, indexer: PromptIndexer) -> None:
        """Scenario: 系統 prompt 不參與排序，但可依 ID 查詢。"""
        result = await indexer.match_prompts('motivation motivation', max_results=10)

        ids = [m.prompt.id for m in ([result.primary] if result.primary else []) + list(result.secondary)]
        assert 'agent-core' not in ids
        system = await indexer.get_prompt_by_id('task-decomposition-agent')
        assert system is not None
        assert system.template == 'Break it down.'

    @allure.title('列出所有分類（排序）與指定分類的 prompt')
    async def test_categories(self, indexer: PromptIndexer) -> None:
        """Scenario: 列出所有分類（排序）與指定分類的 prompt。"""
        assert await indexer.get_all_categories() == ['motivation', 'productivity', 'reflection', 'system']
        assert [p.id for p in await indexer.get_prompts_by_category('reflection')] == ['weekly-review']
        assert [p.id for p in await indexer.get_system_prompts()] == ['task-decomposition-agent']


# =============================================================================
# Rule: 查詢分類與上下文需求
# =============================================================================


@allure.feature('Prompt Indexer')
@allure.story('查詢分類與上下文需求')
class TestQueryAnalysis:
    """查詢分析測試。"""

    @allure.title('依定義順序回傳命中的分類')
    def test_detect_category(self) -> None:
        """Scenario: 依定義順序回傳命中的分類。"""
        assert detect_category('I feel stuck and need motivation') == ['problem-solving', 'motivation']

    @allure.title('沒有命中任何分類時為 general')
    def test_detect_general(self) -> None:
        """Scenario: 沒有命中任何分類時為 general。"""
        assert detect_category('hello there') == ['general']

    @allure.title('上下文需求的順序固定且 profile 永遠必要')
    def test_context_requirements(self) -> None:
        """Scenario: 上下文需求的順序固定且 profile 永遠必要。"""
        requirements = determine_context_requirements('what tasks are pending for today')

        assert [(r.type, r.required) for r in requirements] == [
            ('profile', True),
            ('tasks', True),
            ('challenges', False),
            ('checkins', False),
            ('history', False),
            ('schedule', True),
        ]

    @pytest.mark.parametrize(
        ('query', 'expected'),
        [
            ('how to break down my project', 'task-decomposition-agent'),
            ('I am stuck on this', 'reasoning-chain'),
            ('what now?', 'query-analysis'),
            ('hello', None),
        ],
    )
    @allure.title('依查詢複雜度選擇系統 prompt')
    def test_select_system_prompt(self, query: str, expected: str | None) -> None:
        """Scenario: 依查詢複雜度選擇系統 prompt。"""
        assert select_system_prompt_id(query) == expected


# =============================================================================
# Rule: 評分與排序
# =============================================================================


@allure.feature('Prompt Indexer')
@allure.story('評分與排序')
class TestScoring:
    """評分與排序測試。"""

    @allure.title('各項分數加總並記錄原因')
    def test_score_components(self) -> None:
        """Scenario: 各項分數加總並記錄原因。"""
        prompt = Prompt(
            id='motivation-boost',
            name='Motivation Boost',
            description='Get motivated fast',
            keywords=('motivation',),
            intent=('need motivation',),
            category='motivation',
            priority=5,
        )
        query = 'I need motivation today'

        matched = score_prompt(prompt, query, detect_category(query))

        # 關鍵字 3×3 + 意圖 5×4 + 分類 5 + 優先度 1 + 名稱 1×4
        assert matched.score == pytest.approx(39.0)
        assert matched.match_reasons == (
            'Keywords: +3.0',
            'Intent: +5.0',
            'Category: motivation',
            'Name match: 1 words',
        )

    @allure.title('關鍵字前綴與子字串給較低分數')
    def test_partial_keyword_matches(self) -> None:
        """Scenario: 關鍵字前綴與子字串給較低分數。"""
        prefix = Prompt(id='a', name='x', keywords=('motivat',), priority=0)
        assert score_prompt(prefix, 'motivation', []).score == pytest.approx(1.5 * 3)

    @allure.title('最高分為 primary，其餘依分數排列且受 max_results 限制')
    async def test_ranking(self, indexer: PromptIndexer) -> None:
        """Scenario: 最高分為 primary，其餘依分數排列且受 max_results 限制。"""
        result = await indexer.match_prompts('I need motivation and energy', max_results=2)

        assert result.primary is not None
        assert result.primary.prompt.id == 'motivation-boost'
        assert len(result.secondary) == 1
        assert result.secondary[0].score <= result.primary.score

    @allure.title('同分時依 ID 排序')
    async def test_tie_break_by_id(self, storage: LocalStorage, paths: DataPaths, write_file: WriteFile) -> None:
        """Scenario: 同分時依 ID 排序。"""
        write_file('data/prompts/zeta.md', _prompt_file('Same', 'habit', 'habits'))
        write_file('data/prompts/alpha.md', _prompt_file('Same', 'habit', 'habits'))

        result = await PromptIndexer(storage, paths).match_prompts('build a habit')

        assert result.primary is not None
        assert result.primary.prompt.id == 'alpha'
        assert [m.prompt.id for m in result.secondary] == ['zeta']

    @allure.title('選出的系統 prompt 與上下文需求一起回傳')
    async def test_system_prompt_in_result(self, indexer: PromptIndexer) -> None:
        """Scenario: 選出的系統 prompt 與上下文需求一起回傳。"""
        result = await indexer.match_prompts('how to break down my week')

        assert result.system_prompt is not None
        assert result.system_prompt.id == 'task-decomposition-agent'
        assert result.context_requirements[0].type == 'profile'
        data = result.to_dict()
        assert data['systemPrompt']['id'] == 'task-decomposition-agent'

    @allure.title('沒有 prompt 目錄時沒有匹配結果')
    async def test_empty_index(self, storage: LocalStorage, paths: DataPaths) -> None:
        """Scenario: 沒有 prompt 目錄時沒有匹配結果。"""
        result = await PromptIndexer(storage, paths).match_prompts('anything')

        assert result.primary is None
        assert result.secondary == ()


# =============================================================================
# Rule: 範本渲染
# =============================================================================


@allure.feature('Prompt Indexer')
@allure.story('範本渲染')
class TestTemplateRendering:
    """範本渲染測試。"""

    @allure.title('佔位符不分大小寫，缺少的保留原樣')
    def test_render(self) -> None:
        """Scenario: 佔位符不分大小寫，缺少的保留原樣。"""
        rendered = render_prompt_template('Hi {{Name}}, day {{DAY}} {{missing}}', {'name': 'Ana', 'day': 3})

        assert rendered == 'Hi Ana, day 3 {{missing}}'

    @allure.title('None 替換為空字串，替換值中的反斜線保留')
    def test_render_none_and_backslash(self) -> None:
        """Scenario: None 替換為空字串，替換值中的反斜線保留。"""
        rendered = render_prompt_template('[{{a}}][{{b}}]', {'a': None, 'b': r'C:\new'})

        assert rendered == r'[][C:\new]'


# =============================================================================
# Rule: prompt 索引有 TTL 快取
# =============================================================================


@allure.feature('Prompt Indexer')
@allure.story('prompt 索引有 TTL 快取')
class TestPromptCache:
    """快取測試。"""

    @allure.title('TTL 內重複比對不再讀取檔案，invalidate 或過期後重新讀取')
    async def test_match_reads_once_per_ttl(
        self,
        counting_storage: LocalStorage,
        storage_calls: Counter[str],
        paths: DataPaths,
        write_file: WriteFile,
    ) -> None:
        """Scenario: TTL 內重複比對不再讀取檔案，invalidate 或過期後重新讀取。"""
        write_file('data/prompts/motivation-boost.md', MOTIVATION_PROMPT)
        write_file('data/prompts/deep-focus.md', _prompt_file('Deep Focus', 'focus, distraction', 'productivity'))
        now = [0.0]
        indexer = PromptIndexer(counting_storage, paths, TTLCache(ttl=120.0, clock=lambda: now[0]))

        await indexer.match_prompts('I need motivation')
        loaded = storage_calls['read_text']
        total = sum(storage_calls.values())
        assert loaded == 2

        now[0] = 119.0
        for query in ('I need motivation', 'help me focus', 'energy'):
            await indexer.match_prompts(query)
        assert sum(storage_calls.values()) == total

        write_file('data/prompts/weekly-review.md', _prompt_file('Weekly Review', 'review', 'reflection'))
        assert await indexer.get_prompt_by_id('weekly-review') is None

        indexer.invalidate()
        result = await indexer.match_prompts('weekly review')
        assert result.primary is not None
        assert result.primary.prompt.id == 'weekly-review'
        assert storage_calls['read_text'] == loaded + 3

        now[0] = 239.0
        await indexer.match_prompts('weekly review')
        assert storage_calls['read_text'] == loaded + 6
