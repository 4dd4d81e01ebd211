"""Frontmatter 解析測試。

涵蓋：
- Rule: 只解析扁平 key/value 與行內列表
- Rule: 沒有 frontmatter 時保留原始內容
"""

from __future__ import annotations

import allure

from coach_core.frontmatter import parse_frontmatter

# =============================================================================
# Rule: 只解析扁平 key/value 與行內列表
# =============================================================================


@allure.feature('Frontmatter 解析')
@allure.story('只解析扁平 key/value 與行內列表')
class TestFlatFrontmatter:
    """扁平 frontmatter 測試。"""

    @allure.title('解析字串、行內列表與本文')
    def test_parse_values_and_body(self) -> None:
        """Scenario: 解析字串、行內列表與本文。"""
        content = (
            '---\n'
            'name: streak\n'
            'description: "Track streaks: daily"\n'
            'triggers: [streak, "daily check", \'habit\']\n'
            '---\n'
            '# Streak\n'
            'Body text\n'
        )

        doc = parse_frontmatter(content)

        assert doc.get_str('name') == 'streak'
        assert doc.get_str('description') == 'Track streaks: daily'
        assert doc.get_list('triggers') == ['streak', 'daily check', 'habit']
        assert doc.body == '# Streak\nBody text\n'

    @allure.title('縮排行與沒有冒號的行會被略過')
    def test_nested_and_invalid_lines_ignored(self) -> None:
        """Scenario: 縮排行與沒有冒號的行會被略過。"""
        content = '---\nname: x\nmeta:\n  nested: value\njust text\n: empty key\n---\nbody'

        doc = parse_frontmatter(content)

        assert doc.data == {'name': 'x', 'meta': ''}
        assert doc.body == 'body'

    @allure.title('字串值可以當作單一項目的列表讀取')
    def test_get_list_from_string(self) -> None:
        """Scenario: 字串值可以當作單一項目的列表讀取。"""
        doc = parse_frontmatter('---\ntriggers: streak\nempty: []\n---\n')

        assert doc.get_list('triggers') == ['streak']
        assert doc.get_list('empty') == []
        assert doc.get_list('missing') == []
        assert doc.get_str('missing', 'fallback') == 'fallback'


# =============================================================================
# Rule: 沒有 frontmatter 時保留原始內容
# =============================================================================


@allure.feature('Frontmatter 解析')
@allure.story('沒有 frontmatter 時保留原始內容')
class TestNoFrontmatter:
    """沒有 frontmatter 的文件測試。"""

    @allure.title('一般 markdown 原樣回傳')
    def test_plain_markdown(self) -> None:
        """Scenario: 一般 markdown 原樣回傳。"""
        doc = parse_frontmatter('# Title\n\ntext')

        assert doc.data == {}
        assert doc.body == '# Title\n\ntext'

    @allure.title('未閉合的 frontmatter 視為本文')
    def test_unclosed_frontmatter(self) -> None:
        """Scenario: 未閉合的 frontmatter 視為本文。"""
        content = '---\nname: x\nno closing'

        doc = parse_frontmatter(content)

        assert doc.data == {}
        assert doc.body == content
