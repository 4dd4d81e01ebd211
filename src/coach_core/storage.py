"""唯讀儲存層介面。

管線只透過 Storage 讀取使用者檔案，實際後端（本機檔案或雲端 bucket）由呼叫端注入。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DirEntry:
    """目錄項目。"""

    name: str
    is_dir: bool


@runtime_checkable
class Storage(Protocol):
    """唯讀儲存 Protocol。

    路徑不存在或無法讀取時一律拋出 OSError，由呼叫端轉換為預設值。
    """

    async def read_text(self, path: Path) -> str:
        """讀取 UTF-8 文字檔。

        Args:
            path: 檔案路徑

        Returns:
            檔案內容
        """
        ...

    async def list_dir(self, path: Path) -> list[DirEntry]:
        """列出目錄內容（依名稱排序）。

        Args:
            path: 目錄路徑

        Returns:
            目錄項目列表
        """
        ...

    async def is_file(self, path: Path) -> bool:
        """檢查路徑是否為既存檔案。"""
        ...


class LocalStorage:
    """本機檔案系統儲存。

    阻塞式 I/O 透過 asyncio.to_thread 移出事件迴圈。
    """

    async def read_text(self, path: Path) -> str:
        return await asyncio.to_thread(path.read_text, encoding='utf-8')

    async def list_dir(self, path: Path) -> list[DirEntry]:
        def _scan() -> list[DirEntry]:
            return sorted(
                (DirEntry(name=p.name, is_dir=p.is_dir()) for p in path.iterdir()),
                key=lambda e: e.name,
            )

        return await asyncio.to_thread(_scan)

    async def is_file(self, path: Path) -> bool:
        return await asyncio.to_thread(path.is_file)


async def read_text_or_none(storage: Storage, path: Path) -> str | None:
    """讀取檔案，不存在或無法讀取時回傳 None。

    Args:
        storage: 儲存後端
        path: 檔案路徑

    Returns:
        檔案內容或 None
    """
    try:
        return await storage.read_text(path)
    except (OSError, UnicodeDecodeError) as e:
        logger.debug('檔案無法讀取，使用預設值', extra={'path': str(path), 'error': str(e)})
        return None


async def list_dir_or_empty(storage: Storage, path: Path) -> list[DirEntry]:
    """列出目錄，不存在時回傳空列表。"""
    try:
        return await storage.list_dir(path)
    except OSError as e:
        logger.debug('目錄無法讀取，視為空目錄', extra={'path': str(path), 'error': str(e)})
        return []
