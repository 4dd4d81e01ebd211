"""全域測試設定。"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable
from pathlib import Path

import pytest
from dotenv import load_dotenv

from coach_core.paths import DataPaths
from coach_core.storage import DirEntry, LocalStorage

# 載入 .env，確保 smoke test 能讀取 API 金鑰等環境變數
load_dotenv()


def pytest_addoption(parser: pytest.Parser) -> None:
    """新增自訂命令列參數。"""
    parser.addoption(
        '--run-smoke',
        action='store_true',
        default=False,
        help='執行 smoke test（會呼叫真實 API）',
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """根據命令列參數決定是否跳過 smoke test。"""
    if config.getoption('--run-smoke'):
        return

    skip_smoke = pytest.mark.skip(reason='需要加 --run-smoke 才會執行')
    for item in items:
        if 'smoke' in item.keywords:
            item.add_marker(skip_smoke)


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    """空的專案根目錄。"""
    return tmp_path


@pytest.fixture
def write_file(project_root: Path) -> Callable[[str, str], Path]:
    """在專案根目錄下寫入檔案（自動建立上層目錄）。"""

    def _write(relative: str, content: str) -> Path:
        path = project_root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding='utf-8')
        return path

    return _write


@pytest.fixture
def storage() -> LocalStorage:
    return LocalStorage()


@pytest.fixture
def paths(project_root: Path) -> DataPaths:
    return DataPaths(project_root)


class CountingStorage(LocalStorage):
    """記錄每種讀取操作次數的 LocalStorage。"""

    def __init__(self, calls: Counter[str]) -> None:
        self.calls = calls

    async def read_text(self, path: Path) -> str:
        self.calls['read_text'] += 1
        return await super().read_text(path)

    async def list_dir(self, path: Path) -> list[DirEntry]:
        self.calls['list_dir'] += 1
        return await super().list_dir(path)

    async def is_file(self, path: Path) -> bool:
        self.calls['is_file'] += 1
        return await super().is_file(path)


@pytest.fixture
def storage_calls() -> Counter[str]:
    """counting_storage 的讀取次數（依操作名稱）。"""
    return Counter()


@pytest.fixture
def counting_storage(storage_calls: Counter[str]) -> LocalStorage:
    return CountingStorage(storage_calls)
