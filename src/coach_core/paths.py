"""資料路徑模組。

集中定義專案資料目錄結構，以及 profile 專屬路徑與安全檢查。
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_PROFILE_ID_PATTERN = re.compile(r'^[A-Za-z0-9_.-]+$')


def is_valid_profile_id(profile_id: str) -> bool:
    """檢查 profile ID 是否可以安全地組成路徑。

    只允許英數字、底線、點與連字號，且不可為 "." 或 ".."。

    Args:
        profile_id: Profile 識別碼

    Returns:
        是否為合法的 profile ID
    """
    if profile_id in ('.', '..'):
        return False
    return bool(_PROFILE_ID_PATTERN.match(profile_id))


@dataclass(frozen=True)
class ProfilePaths:
    """單一 profile 的隔離路徑。"""

    root: Path

    @property
    def challenges(self) -> Path:
        return self.root / 'challenges'

    @property
    def todos(self) -> Path:
        return self.root / 'todos'

    @property
    def checkins(self) -> Path:
        return self.root / 'checkins'

    @property
    def schedule(self) -> Path:
        return self.root / 'schedule'

    @property
    def profile_md(self) -> Path:
        return self.root / 'profile.md'

    @property
    def preferences_md(self) -> Path:
        return self.root / 'preferences.md'

    @property
    def availability_md(self) -> Path:
        return self.root / 'availability.md'


@dataclass(frozen=True)
class DataPaths:
    """專案資料路徑。

    skills/ 與 commands/ 位於專案根目錄，其餘資料位於 data/ 底下。
    舊版結構（data/challenges 等）作為 profile 專屬檔案的後備來源。

    Attributes:
        project_root: 專案根目錄
    """

    project_root: Path

    @property
    def data_dir(self) -> Path:
        return self.project_root / 'data'

    @property
    def skills_dir(self) -> Path:
        return self.project_root / 'skills'

    @property
    def commands_dir(self) -> Path:
        return self.project_root / 'commands'

    @property
    def prompts_dir(self) -> Path:
        return self.data_dir / 'prompts'

    @property
    def system_prompts_dir(self) -> Path:
        return self.prompts_dir / 'system'

    @property
    def agents_file(self) -> Path:
        return self.data_dir / 'agents.json'

    @property
    def capabilities_file(self) -> Path:
        return self.data_dir / 'agent-capabilities.json'

    @property
    def mcp_config_file(self) -> Path:
        return self.data_dir / 'mcp-config.json'

    @property
    def shared_schedule_md(self) -> Path:
        return self.data_dir / 'schedule' / 'events.md'

    @property
    def legacy_challenges(self) -> Path:
        return self.data_dir / 'challenges'

    @property
    def legacy_todos(self) -> Path:
        return self.data_dir / 'todos'

    @property
    def legacy_checkins(self) -> Path:
        return self.data_dir / 'checkins'

    def profile(self, profile_id: str) -> ProfilePaths:
        """取得 profile 專屬路徑。

        Args:
            profile_id: Profile 識別碼

        Returns:
            ProfilePaths

        Raises:
            ValueError: profile ID 含有不允許的字元
        """
        if not is_valid_profile_id(profile_id):
            logger.warning('拒絕不合法的 profile ID', extra={'profile_id': profile_id})
            raise ValueError(f'不合法的 profile ID: {profile_id!r}')
        return ProfilePaths(root=self.data_dir / 'profiles' / profile_id)
