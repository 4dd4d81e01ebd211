"""使用者 Profile 設定模組。

讀取 profile 的偏好設定，產生優先於預設教練行為的 prompt 區塊。

preferences.md 使用扁平 frontmatter：

    ---
    coaching_style: tough-love
    message_length: short
    use_emoji: false
    avoid_topics: [politics, diet]
    ---
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from coach_core.frontmatter import parse_frontmatter
from coach_core.paths import DataPaths, ProfilePaths
from coach_core.storage import Storage, list_dir_or_empty, read_text_or_none

logger = logging.getLogger(__name__)

CHALLENGE_CONFIG_FILENAME = 'challenge-config.json'

_NAME_RE = re.compile(r'\*\*Name:\*\*\s*(.+)', re.IGNORECASE)
_EMAIL_RE = re.compile(r'\*\*Email:\*\*\s*(.+)', re.IGNORECASE)
_TIMEZONE_RE = re.compile(r'\*\*Timezone:\*\*\s*(.+)', re.IGNORECASE)
_AVAILABILITY_TZ_RE = re.compile(r'Timezone[:\s]+([^\n]+)', re.IGNORECASE)
_CHECKIN_TIME_RE = re.compile(r'Check.?in\s*Time[:\s]+([^\n]+)', re.IGNORECASE)

_TRUE_VALUES = ('true', 'yes', 'on', '1')
_FALSE_VALUES = ('false', 'no', 'off', '0')


@dataclass
class UserPreferences:
    """教練風格偏好（未設定的欄位使用預設值）。"""

    coaching_style: str = 'balanced'
    motivation_level: str = 'medium'
    detail_level: str = 'detailed'
    preferred_tone: str = 'supportive'
    avoid_topics: list[str] = field(default_factory=lambda: [])
    focus_areas: list[str] = field(default_factory=lambda: [])
    reminder_frequency: str = 'moderate'
    celebrate_wins: bool = True
    push_on_missed_days: bool = True
    strict_mode: bool = False
    allow_excuses: bool = True
    daily_checkin_required: bool = False
    streak_importance: str = 'medium'
    failure_handling: str = 'honest'
    message_length: str = 'medium'
    use_emoji: bool = False
    formality_level: str = 'balanced'
    encouragement_style: str = 'moderate'


@dataclass
class ScheduleSettings:
    timezone: str = 'UTC'
    preferred_checkin_time: str | None = None
    work_days: list[str] = field(default_factory=lambda: ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday'])


@dataclass
class ChallengeSnapshot:
    """進行中挑戰的摘要。"""

    id: str
    name: str
    current_day: int = 1
    total_days: int = 30
    streak: int = 0
    progress: int = 0
    status: str = 'active'


@dataclass
class UserStats:
    total_checkins: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    completed_challenges: int = 0


@dataclass
class UserProfile:
    """完整的使用者設定。"""

    id: str
    name: str = 'User'
    email: str | None = None
    timezone: str | None = None
    preferences: UserPreferences = field(default_factory=UserPreferences)
    schedule: ScheduleSettings = field(default_factory=ScheduleSettings)
    challenges: list[ChallengeSnapshot] = field(default_factory=lambda: [])
    stats: UserStats = field(default_factory=UserStats)


class StreakConfig(BaseModel):
    current: int = 0
    best: int = 0


class ChallengeConfig(BaseModel):
    """challenge-config.json 的驗證模型（camelCase 欄位）。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='ignore')

    id: str | None = None
    name: str | None = None
    status: str | None = None
    current_day: int = Field(default=1, ge=0)
    total_days: int = Field(default=30, ge=0)
    progress: int = 0
    streak: StreakConfig = Field(default_factory=StreakConfig)


def _coerce(value: str | list[str], default: Any) -> Any:
    """依預設值的型別轉換 frontmatter 值；無法轉換時回傳預設值。"""
    if isinstance(default, bool):
        text = value if isinstance(value, str) else ''
        lowered = text.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        return default
    if isinstance(default, list):
        if isinstance(value, list):
            return value
        return [item.strip() for item in value.split(',') if item.strip()]
    if isinstance(value, list):
        return ', '.join(value)
    return value or default


def parse_preferences(content: str) -> UserPreferences:
    """解析 preferences.md 的 frontmatter 並合併預設值。

    欄位名稱接受 snake_case 或 camelCase。

    Args:
        content: 檔案內容

    Returns:
        UserPreferences
    """
    doc = parse_frontmatter(content)
    preferences = UserPreferences()
    for f in fields(preferences):
        raw = doc.data.get(f.name)
        if raw is None:
            raw = doc.data.get(to_camel(f.name))
        if raw is None:
            continue
        setattr(preferences, f.name, _coerce(raw, getattr(preferences, f.name)))
    return preferences


def parse_availability(content: str) -> ScheduleSettings:
    schedule = ScheduleSettings()
    if match := _AVAILABILITY_TZ_RE.search(content):
        schedule.timezone = match.group(1).strip()
    if match := _CHECKIN_TIME_RE.search(content):
        schedule.preferred_checkin_time = match.group(1).strip()
    return schedule


@dataclass
class ProfileLoader:
    """讀取 profile 設定的服務。"""

    storage: Storage
    paths: DataPaths

    async def load_user_profile(self, profile_id: str) -> UserProfile | None:
        """載入完整的使用者設定。

        Args:
            profile_id: Profile 識別碼

        Returns:
            UserProfile；profile ID 不合法時回傳 None
        """
        try:
            profile_paths = self.paths.profile(profile_id)
        except ValueError:
            return None

        profile = UserProfile(id=profile_id)

        content = await read_text_or_none(self.storage, profile_paths.profile_md)
        if content is not None:
            if match := _NAME_RE.search(content):
                profile.name = match.group(1).strip() or 'User'
            if match := _EMAIL_RE.search(content):
                profile.email = match.group(1).strip()
            if match := _TIMEZONE_RE.search(content):
                profile.timezone = match.group(1).strip()

        content = await read_text_or_none(self.storage, profile_paths.preferences_md)
        if content is not None:
            profile.preferences = parse_preferences(content)

        content = await read_text_or_none(self.storage, profile_paths.availability_md)
        if content is not None:
            profile.schedule = parse_availability(content)
        if profile.timezone is None:
            profile.timezone = profile.schedule.timezone

        configs = await self._load_challenge_configs(profile_paths)
        profile.challenges = [
            ChallengeSnapshot(
                id=config.id or folder,
                name=config.name or folder,
                current_day=config.current_day or 1,
                total_days=config.total_days or 30,
                streak=config.streak.current,
                progress=config.progress,
                status='active',
            )
            for folder, config in configs
            if config.status == 'active'
        ]
        profile.stats = await self._calculate_stats(profile_paths, configs)

        logger.debug(
            '使用者設定已載入',
            extra={'profile_id': profile_id, 'challenges': len(profile.challenges)},
        )
        return profile

    async def _load_configs_from(self, challenges_dir: Path) -> list[tuple[str, ChallengeConfig]]:
        configs: list[tuple[str, ChallengeConfig]] = []
        for entry in await list_dir_or_empty(self.storage, challenges_dir):
            if not entry.is_dir:
                continue
            content = await read_text_or_none(self.storage, challenges_dir / entry.name / CHALLENGE_CONFIG_FILENAME)
            if content is None:
                continue
            try:
                configs.append((entry.name, ChallengeConfig.model_validate_json(content)))
            except ValidationError as e:
                logger.debug(
                    'challenge-config.json 格式錯誤，略過',
                    extra={'challenge': entry.name, 'error': str(e)},
                )
        return configs

    async def _load_challenge_configs(self, profile_paths: ProfilePaths) -> list[tuple[str, ChallengeConfig]]:
        configs = await self._load_configs_from(profile_paths.challenges)
        if configs:
            return configs
        return await self._load_configs_from(self.paths.legacy_challenges)

    async def _calculate_stats(
        self, profile_paths: ProfilePaths, configs: list[tuple[str, ChallengeConfig]]
    ) -> UserStats:
        entries = await list_dir_or_empty(self.storage, profile_paths.checkins)
        stats = UserStats(total_checkins=sum(1 for e in entries if not e.is_dir and e.name.endswith('.md')))
        for _, config in configs:
            if config.status == 'completed':
                stats.completed_challenges += 1
            stats.current_streak = max(stats.current_streak, config.streak.current)
            stats.longest_streak = max(stats.longest_streak, config.streak.best)
        return stats


_COACHING_STYLE_LINES: dict[str, str] = {
    'gentle': 'Be very gentle and supportive. Avoid pressure.',
    'tough-love': 'Be direct and firm. Push for accountability.',
}
_MESSAGE_LENGTH_LINES: dict[str, str] = {
    'short': 'Keep responses brief and to the point.',
    'long': 'Provide detailed, comprehensive responses.',
}
_FORMALITY_LINES: dict[str, str] = {
    'casual': 'Use casual, friendly language.',
    'formal': 'Maintain professional, formal tone.',
}
_FAILURE_LINES: dict[str, str] = {
    'gentle': 'When user fails, be understanding and supportive.',
    'firm': 'When user fails, address it directly but constructively.',
}

def build_user_context(profile: UserProfile) -> str:
    """產生「User Profile Context」prompt 區塊。

    這個區塊的設定優先於預設的教練行為。
    """
    prefs = profile.preferences
    lines = ['## User Profile Context (HIGH PRIORITY - Override defaults with these)', '']
    lines.append(f'**User:** {profile.name}')
    if profile.timezone:
        lines.append(f'**Timezone:** {profile.timezone}')
    lines.append('')

    lines.append('### Communication Style (USE THESE SETTINGS)')
    lines.append('- ' + _COACHING_STYLE_LINES.get(prefs.coaching_style, 'Balance support with honest feedback.'))
    lines.append('- ' + _MESSAGE_LENGTH_LINES.get(prefs.message_length, 'Use moderate-length responses.'))
    lines.append('- ' + _FORMALITY_LINES.get(prefs.formality_level, 'Use a balanced, conversational tone.'))
    if not prefs.use_emoji:
        lines.append('- DO NOT use emojis in responses.')
    lines.append('')

    lines.append('### Accountability Approach')
    if prefs.strict_mode:
        lines.append('- Strict mode enabled. Hold user firmly accountable.')
    if not prefs.allow_excuses:
        lines.append("- Don't accept excuses. Focus on solutions.")
    lines.append('- ' + _FAILURE_LINES.get(prefs.failure_handling, 'When user fails, be honest but not harsh.'))
    if prefs.celebrate_wins:
        lines.append('- Celebrate achievements, no matter how small.')
    lines.append('')

    if prefs.avoid_topics:
        lines.append('### Topics to Avoid')
        lines.extend(f'- {topic}' for topic in prefs.avoid_topics)
        lines.append('')

    if prefs.focus_areas:
        lines.append('### Focus Areas (prioritize these)')
        lines.extend(f'- {area}' for area in prefs.focus_areas)
        lines.append('')

    if profile.challenges:
        lines.append('### Active Challenges')
        lines.extend(
            f'- **{c.name}**: Day {c.current_day}/{c.total_days} ({c.streak}-day streak, {c.progress}% complete)'
            for c in profile.challenges
        )
        lines.append('')

    stats = profile.stats
    lines.extend(
        [
            '### User Stats',
            f'- Total check-ins: {stats.total_checkins}',
            f'- Current streak: {stats.current_streak} days',
            f'- Longest streak: {stats.longest_streak} days',
            f'- Completed challenges: {stats.completed_challenges}',
            '',
        ]
    )

    if profile.schedule.preferred_checkin_time:
        lines.extend(['### Schedule', f'- Preferred check-in time: {profile.schedule.preferred_checkin_time}', ''])

    return '\n'.join(lines) + '\n'


def get_profile_overrides(profile: UserProfile) -> dict[str, Any]:
    """取出會覆寫預設 prompt 設定的偏好值。"""
    prefs = profile.preferences
    return {
        'tone': prefs.formality_level,
        'messageLength': prefs.message_length,
        'useEmoji': prefs.use_emoji,
        'coachingStyle': prefs.coaching_style,
        'strictMode': prefs.strict_mode,
        'celebrateWins': prefs.celebrate_wins,
        'avoidTopics': list(prefs.avoid_topics),
        'focusAreas': list(prefs.focus_areas),
    }
