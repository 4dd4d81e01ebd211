"""極簡 frontmatter 解析模組。

只支援 `---` 包夾的扁平 `key: value` 格式：

    ---
    name: streak
    description: Track daily streaks. Triggers on: check in, streak.
    triggers: [streak, "daily check"]
    ---

規則：
- 每行以第一個冒號切分 key 與 value，key 不可為空
- 以 `[` 開頭、`]` 結尾的 value 視為逗號分隔的行內列表，項目去除引號
- 單層引號包夾的字串 value 會去除引號
- 不支援巢狀結構、多行字串、區塊列表；無法辨識的行直接略過

這不是 YAML 解析器，也不保證與 YAML 相容。
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

FrontmatterValue = str | list[str]

_FRONTMATTER_RE = re.compile(r'^---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n(.*))?$', re.DOTALL)


@dataclass(frozen=True)
class ParsedDocument:
    """frontmatter 解析結果。

    Attributes:
        data: 扁平 key/value 對應
        body: frontmatter 之後的本文（無 frontmatter 時為原始內容）
    """

    data: dict[str, FrontmatterValue] = field(default_factory=lambda: {})
    body: str = ''

    def get_str(self, key: str, default: str = '') -> str:
        """取得字串值；列表值以逗號連接。"""
        value = self.data.get(key)
        if value is None:
            return default
        if isinstance(value, list):
            return ', '.join(value)
        return value

    def get_list(self, key: str) -> list[str]:
        """取得列表值；字串值視為單一項目。"""
        value = self.data.get(key)
        if value is None:
            return []
        if isinstance(value, list):
            return list(value)
        return [value] if value else []


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
        return value[1:-1]
    return value


def _parse_value(raw: str) -> FrontmatterValue:
    value = raw.strip()
    if value.startswith('[') and value.endswith(']'):
        items = [item.strip().replace('"', '').replace("'", '') for item in value[1:-1].split(',')]
        return [item for item in items if item]
    return _strip_quotes(value)


def parse_frontmatter(content: str) -> ParsedDocument:
    """解析文件開頭的 frontmatter。

    Args:
        content: 完整 markdown 內容

    Returns:
        ParsedDocument；沒有 frontmatter 時 data 為空、body 為原始內容
    """
    match = _FRONTMATTER_RE.match(content)
    if not match:
        return ParsedDocument(data={}, body=content)

    data: dict[str, FrontmatterValue] = {}
    for line in match.group(1).splitlines():
        # 縮排行屬於巢狀結構，不支援
        if line[:1] in (' ', '\t'):
            continue
        colon = line.find(':')
        if colon <= 0:
            continue
        key = line[:colon].strip()
        if not key or key.startswith('#'):
            continue
        data[key] = _parse_value(line[colon + 1 :])

    return ParsedDocument(data=data, body=match.group(2) or '')
