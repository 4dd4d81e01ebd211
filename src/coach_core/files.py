"""附件處理模組。

將使用者上傳的檔案切成行對齊的片段、擷取結構與摘要，
並依查詢挑選相關片段放進對話上下文。
"""

from __future__ import annotations

import csv
import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import PurePath
from typing import Any, Literal, cast

from bs4 import BeautifulSoup

from coach_core.prompts.indexer import tokenize

logger = logging.getLogger(__name__)

MAX_CHUNK_SIZE = 4000
MAX_CONTEXT_CHUNKS = 3
MAX_TOTAL_CONTEXT = 10000

FileCategory = Literal['code', 'data', 'document', 'binary']


@dataclass(frozen=True)
class FileTypeConfig:
    category: FileCategory
    chunkable: bool
    extract_structure: bool


_CODE = FileTypeConfig('code', True, True)
_DATA = FileTypeConfig('data', True, True)
_BINARY = FileTypeConfig('binary', False, False)
_DEFAULT_CONFIG = FileTypeConfig('document', True, False)

FILE_TYPE_CONFIG: dict[str, FileTypeConfig] = {
    '.js': _CODE,
    '.ts': _CODE,
    '.jsx': _CODE,
    '.tsx': _CODE,
    '.py': _CODE,
    '.java': _CODE,
    '.css': FileTypeConfig('code', True, False),
    '.html': _CODE,
    '.sql': _CODE,
    '.json': _DATA,
    '.csv': _DATA,
    '.yaml': _DATA,
    '.yml': _DATA,
    '.xml': _DATA,
    '.md': FileTypeConfig('document', True, True),
    '.txt': _DEFAULT_CONFIG,
    '.png': _BINARY,
    '.jpg': _BINARY,
    '.jpeg': _BINARY,
    '.gif': _BINARY,
    '.pdf': _BINARY,
    '.mp4': _BINARY,
    '.mp3': _BINARY,
}

MIME_TYPES: dict[str, str] = {
    '.js': 'application/javascript',
    '.ts': 'application/typescript',
    '.py': 'text/x-python',
    '.json': 'application/json',
    '.csv': 'text/csv',
    '.md': 'text/markdown',
    '.txt': 'text/plain',
    '.html': 'text/html',
    '.css': 'text/css',
}

LANGUAGES: dict[str, str] = {
    '.js': 'JavaScript',
    '.jsx': 'JavaScript (React)',
    '.ts': 'TypeScript',
    '.tsx': 'TypeScript (React)',
    '.py': 'Python',
    '.java': 'Java',
    '.css': 'CSS',
    '.html': 'HTML',
    '.sql': 'SQL',
    '.json': 'JSON',
    '.yaml': 'YAML',
    '.yml': 'YAML',
    '.md': 'Markdown',
}

_PY_FUNC_RE = re.compile(r'^(?:async\s+)?def\s+(\w+)\s*\(')
_PY_CLASS_RE = re.compile(r'^class\s+(\w+)')
_JS_FUNC_RE = re.compile(
    r'(?:function\s+(\w+)|(?:const|let|var)\s+(\w+)\s*=\s*(?:async\s*)?\(|(\w+)\s*:\s*(?:async\s*)?\()'
)
_JS_CLASS_RE = re.compile(r'class\s+(\w+)')
_MD_HEADER_RE = re.compile(r'^(#{1,3})\s+(.+)')

# JS 結構只列出前幾個函式
MAX_JS_FUNCTIONS = 20


@dataclass(frozen=True)
class FileChunk:
    """行對齊的檔案片段（行號從 0 開始）。"""

    index: int
    content: str
    start_line: int
    end_line: int

    @property
    def size(self) -> int:
        return len(self.content)

    def to_dict(self) -> dict[str, Any]:
        return {
            'index': self.index,
            'content': self.content,
            'startLine': self.start_line,
            'endLine': self.end_line,
            'size': self.size,
        }


@dataclass
class FileStructure:
    type: str
    title: str | None = None
    headers: list[str] | None = None
    columns: int | None = None
    rows: int | None = None
    keys: list[str] | None = None
    functions: list[str] | None = None
    classes: list[str] | None = None
    sections: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class FileMetadata:
    mime_type: str
    line_count: int
    word_count: int
    encoding: str = 'utf-8'
    language: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'mimeType': self.mime_type,
            'encoding': self.encoding,
            'lineCount': self.line_count,
            'wordCount': self.word_count,
            'language': self.language,
        }


@dataclass
class ProcessedFile:
    """處理完成的附件。"""

    id: str
    name: str
    extension: str
    category: FileCategory
    size: int
    metadata: FileMetadata
    chunks: list[FileChunk] = field(default_factory=lambda: [])
    structure: FileStructure | None = None
    summary: str | None = None
    processed_at: str = ''

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)

    def to_dict(self, include_content: bool = False) -> dict[str, Any]:
        chunks = [c.to_dict() for c in self.chunks]
        if not include_content:
            for chunk in chunks:
                chunk.pop('content')
        return {
            'id': self.id,
            'name': self.name,
            'extension': self.extension,
            'category': self.category,
            'size': self.size,
            'totalChunks': self.total_chunks,
            'structure': self.structure.to_dict() if self.structure else None,
            'summary': self.summary,
            'chunks': chunks,
            'metadata': self.metadata.to_dict(),
            'processedAt': self.processed_at,
        }


def extract_metadata(content: str, ext: str) -> FileMetadata:
    return FileMetadata(
        mime_type=MIME_TYPES.get(ext, 'text/plain'),
        line_count=len(content.split('\n')),
        word_count=len(content.split()),
        language=LANGUAGES.get(ext),
    )


def _csv_structure(content: str) -> FileStructure:
    lines = [line for line in content.split('\n') if line.strip()]
    if not lines:
        return FileStructure(type='csv', rows=0, columns=0)
    headers = [h.strip() for h in next(csv.reader([lines[0]]))]
    return FileStructure(type='csv', headers=headers, columns=len(headers), rows=len(lines) - 1)


def _json_structure(content: str) -> FileStructure:
    try:
        parsed: Any = json.loads(content)
    except json.JSONDecodeError:
        return FileStructure(type='json')

    if isinstance(parsed, list):
        items = cast(list[Any], parsed)
        first = items[0] if items else None
        keys = list(cast(dict[str, Any], first)) if isinstance(first, dict) else None
        return FileStructure(type='json-array', rows=len(items), keys=keys)
    if isinstance(parsed, dict):
        return FileStructure(type='json-object', keys=list(cast(dict[str, Any], parsed)))
    return FileStructure(type='json')


def _python_structure(content: str) -> FileStructure:
    functions: list[str] = []
    classes: list[str] = []
    for line in content.split('\n'):
        if match := _PY_FUNC_RE.match(line):
            functions.append(match.group(1))
        if match := _PY_CLASS_RE.match(line):
            classes.append(match.group(1))
    return FileStructure(type='python', functions=functions, classes=classes)


def _js_structure(content: str) -> FileStructure:
    functions: list[str] = []
    for match in _JS_FUNC_RE.finditer(content):
        name = match.group(1) or match.group(2) or match.group(3)
        if name and name not in functions:
            functions.append(name)
    classes = list(dict.fromkeys(m.group(1) for m in _JS_CLASS_RE.finditer(content)))
    return FileStructure(type='javascript', functions=functions[:MAX_JS_FUNCTIONS], classes=classes)


def _markdown_structure(content: str) -> FileStructure:
    sections: list[str] = []
    for line in content.split('\n'):
        if match := _MD_HEADER_RE.match(line):
            level = len(match.group(1))
            sections.append('  ' * (level - 1) + match.group(2).strip())
    return FileStructure(type='markdown', sections=sections)


def _html_structure(content: str) -> FileStructure:
    soup = BeautifulSoup(content, 'html.parser')
    title = soup.title.get_text(strip=True) if soup.title else None
    sections: list[str] = []
    for heading in soup.find_all(['h1', 'h2', 'h3']):
        text = heading.get_text(strip=True)
        if text:
            level = int(heading.name[1])
            sections.append('  ' * (level - 1) + text)
    return FileStructure(type='html', title=title or None, sections=sections)


def extract_structure(content: str, ext: str) -> FileStructure:
    """依副檔名擷取檔案結構。"""
    if ext == '.csv':
        return _csv_structure(content)
    if ext == '.json':
        return _json_structure(content)
    if ext == '.py':
        return _python_structure(content)
    if ext in ('.js', '.jsx', '.ts', '.tsx'):
        return _js_structure(content)
    if ext == '.md':
        return _markdown_structure(content)
    if ext == '.html':
        return _html_structure(content)
    return FileStructure(type='unknown')


def create_chunks(content: str, max_chunk_size: int = MAX_CHUNK_SIZE) -> list[FileChunk]:
    """依行切片，每片不超過 max_chunk_size 字元。

    單行超過上限時自成一片，不會從行中間切開。
    """
    lines = content.split('\n')
    chunks: list[FileChunk] = []
    current: list[str] = []
    current_size = 0
    start_line = 0

    for i, line in enumerate(lines):
        added = len(line) + (1 if current else 0)
        if current and current_size + added > max_chunk_size:
            chunks.append(FileChunk(len(chunks), '\n'.join(current), start_line, i - 1))
            current = [line]
            current_size = len(line)
            start_line = i
        else:
            current.append(line)
            current_size += added

    text = '\n'.join(current)
    if text:
        chunks.append(FileChunk(len(chunks), text, start_line, len(lines) - 1))
    return chunks


def _preview(items: list[str], limit: int = 5) -> str:
    return ', '.join(items[:limit]) + ('...' if len(items) > limit else '')


def _definitions(structure: FileStructure) -> str:
    parts: list[str] = []
    if structure.classes:
        parts.append(f'{len(structure.classes)} classes')
    if structure.functions:
        parts.append(f'{len(structure.functions)} functions')
    return ', '.join(parts) or 'no major definitions'


def generate_file_summary(content: str, structure: FileStructure | None) -> str:
    """產生一行檔案摘要。"""
    line_count = len(content.split('\n'))
    summary = f'File: {line_count} lines, {len(content)} characters'
    if structure is None:
        return summary

    if structure.type == 'csv':
        summary = f'CSV file with {structure.columns} columns and {structure.rows} rows'
        if structure.headers:
            summary += f'. Columns: {_preview(structure.headers)}'
    elif structure.type == 'json-array':
        summary = f'JSON array with {structure.rows} items'
        if structure.keys:
            summary += f'. Keys: {_preview(structure.keys)}'
    elif structure.type == 'json-object':
        summary = 'JSON object'
        if structure.keys:
            summary += f' with keys: {_preview(structure.keys)}'
    elif structure.type == 'python':
        summary = f'Python file with {_definitions(structure)}'
    elif structure.type == 'javascript':
        summary = f'JavaScript/TypeScript file with {_definitions(structure)}'
    elif structure.type == 'markdown':
        summary = 'Markdown document'
        if structure.sections:
            summary += f' with {len(structure.sections)} sections'
    elif structure.type == 'html':
        summary = f'HTML document "{structure.title}"' if structure.title else 'HTML document'
        if structure.sections:
            summary += f' with {len(structure.sections)} headings'
    return summary


def process_file(name: str, content: str | bytes) -> ProcessedFile:
    """處理附件。

    Args:
        name: 檔名（用於判斷副檔名）
        content: 檔案內容；bytes 以 UTF-8 解碼，無法解碼的位元組會被替換

    Returns:
        ProcessedFile
    """
    ext = PurePath(name).suffix.lower()
    config = FILE_TYPE_CONFIG.get(ext, _DEFAULT_CONFIG)
    text = content.decode('utf-8', errors='replace') if isinstance(content, bytes) else content

    structure = extract_structure(text, ext) if config.extract_structure else None
    chunks = create_chunks(text) if config.chunkable else []
    summary = generate_file_summary(text, structure) if chunks else None

    processed = ProcessedFile(
        id=f'file-{uuid.uuid4().hex[:12]}',
        name=PurePath(name).name,
        extension=ext,
        category=config.category,
        size=len(text),
        metadata=extract_metadata(text, ext),
        chunks=chunks,
        structure=structure,
        summary=summary,
        processed_at=datetime.now(UTC).isoformat(),
    )
    logger.debug(
        '附件已處理',
        extra={'file_name': processed.name, 'category': processed.category, 'chunks': len(chunks)},
    )
    return processed


def _relevance(chunk: FileChunk, query_tokens: set[str]) -> int:
    if not query_tokens:
        return 0
    chunk_tokens = set(tokenize(chunk.content))
    return len(query_tokens & chunk_tokens)


def get_relevant_chunks(
    file: ProcessedFile,
    query: str | None = None,
    max_chunks: int = MAX_CONTEXT_CHUNKS,
    max_total: int = MAX_TOTAL_CONTEXT,
) -> list[FileChunk]:
    """挑選與查詢相關的片段。

    依查詢詞重疊數排序（同分保持原順序），在總字元預算內挑選，
    回傳時恢復文件順序。沒有查詢時等同取前幾個片段。

    Args:
        file: 處理完成的附件
        query: 使用者查詢
        max_chunks: 最多片段數
        max_total: 總字元預算

    Returns:
        依文件順序排列的片段
    """
    query_tokens = set(tokenize(query)) if query else set()
    ranked = sorted(file.chunks, key=lambda c: (-_relevance(c, query_tokens), c.index))

    selected: list[FileChunk] = []
    remaining = max_total
    for chunk in ranked:
        if len(selected) >= max_chunks:
            break
        if chunk.size > remaining:
            continue
        selected.append(chunk)
        remaining -= chunk.size

    return sorted(selected, key=lambda c: c.index)


def format_file_context(file: ProcessedFile, chunks: list[FileChunk] | None = None) -> str:
    """將附件格式化為 prompt 區塊。"""
    selected = chunks if chunks is not None else get_relevant_chunks(file)
    language = file.metadata.language

    parts = [
        f'## Attached File: {file.name}',
        f'**Type:** {language or file.extension}',
        f'**Summary:** {file.summary or "No summary available"}',
    ]
    structure = file.structure
    if structure is not None:
        if structure.headers:
            parts.append(f'**Columns:** {", ".join(structure.headers)}')
        if structure.keys:
            parts.append(f'**Keys:** {", ".join(structure.keys)}')
        if structure.functions:
            parts.append(f'**Functions:** {", ".join(structure.functions)}')
        if structure.classes:
            parts.append(f'**Classes:** {", ".join(structure.classes)}')

    parts.append('')
    parts.append(f'### Content ({len(selected)} of {file.total_chunks} chunks):')

    fence_lang = language.lower() if language else ''
    for chunk in selected:
        parts.append('')
        parts.append(f'```{fence_lang}')
        parts.append(f'// Lines {chunk.start_line + 1}-{chunk.end_line + 1}')
        parts.append(chunk.content)
        parts.append('```')

    if len(selected) < file.total_chunks:
        parts.append('')
        parts.append(f'*Note: Showing {len(selected)} of {file.total_chunks} chunks. Ask for more if needed.*')

    return '\n'.join(parts) + '\n'
