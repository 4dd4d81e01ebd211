"""Context Builder 模組。

從使用者的檔案資料組裝 UserContext，並產生給 LLM 的 system prompt。

資料來源（相對於 data/profiles/<id>/）：
- profile.md：基本資料
- todos/active.md：待辦（沒有內容時改讀舊版 data/todos/active.md）
- challenges/<id>/challenge.md 與 days/day-NN.md：挑戰（沒有挑戰時改讀舊版 data/challenges/）
- schedule/events.json 與共用 data/schedule/events.md：今日行程
- checkins/*.md：最近打卡
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from coach_core.config import DEFAULT_AGENT_ID
from coach_core.context.models import (
    Challenge,
    ChallengeDayTasks,
    ChallengesContext,
    CheckinRecord,
    ProfileInfo,
    ScheduleEvent,
    StreakEntry,
    TasksContext,
    TaskSummary,
    Todo,
    UserContext,
)
from coach_core.context.parsers import (
    FILENAME_DATE_RE,
    parse_challenge_md,
    parse_checkin,
    parse_day_file,
    parse_events_json,
    parse_profile_md,
    parse_schedule_md,
    parse_todos_md,
)
from coach_core.paths import DataPaths, ProfilePaths
from coach_core.skills.base import Skill
from coach_core.storage import Storage, list_dir_or_empty, read_text_or_none

logger = logging.getLogger(__name__)

# 上下文中保留的待辦數量上限
MAX_CONTEXT_TODOS = 10
# system prompt 中列出的待辦數量上限
MAX_PROMPT_TODOS = 5
# 最多掃描的打卡檔案數
MAX_CHECKIN_FILES = 14
# 打卡回溯天數
CHECKIN_WINDOW_DAYS = 7

CHALLENGE_FILENAME = 'challenge.md'


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _parse_start(start_date: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(start_date.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def calculate_challenge_day(start_date: str | None, total_days: int, now: datetime | None = None) -> int:
    """計算今天是挑戰的第幾天。

    以 UTC 計算 ceil((now - start) / 1 天)，並限制在 [1, total_days]。

    Args:
        start_date: 開始日期（YYYY-MM-DD 或 ISO 8601 時間）
        total_days: 挑戰總天數
        now: 目前時間（預設為現在的 UTC 時間）

    Returns:
        第幾天；沒有或無法解析開始日期時回傳 1
    """
    if not start_date:
        return 1
    start = _parse_start(start_date)
    if start is None:
        logger.debug('無法解析挑戰開始日期', extra={'start_date': start_date})
        return 1

    current = now or _utc_now()
    if current.tzinfo is None:
        current = current.replace(tzinfo=UTC)

    elapsed_days = math.ceil((current - start).total_seconds() / 86400)
    return min(max(1, elapsed_days), max(total_days, 1))


def resolve_today(now: datetime, timezone: str | None = None) -> date:
    """取得指定時區的今天日期；未指定或無效時區使用 UTC。"""
    if timezone:
        try:
            return now.astimezone(ZoneInfo(timezone)).date()
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning('未知的時區，改用 UTC', extra={'timezone': timezone})
    return now.astimezone(UTC).date()


@dataclass
class ContextBuilder:
    """使用者上下文組裝服務。

    Attributes:
        storage: 唯讀儲存後端
        paths: 專案資料路徑
        clock: 目前時間來源（測試時可注入固定時間）
    """

    storage: Storage
    paths: DataPaths
    clock: Callable[[], datetime] = field(default=_utc_now)

    async def build_context(self, profile_id: str | None, timezone: str | None = None) -> UserContext:
        """組裝使用者上下文。

        沒有 profile 或 profile ID 不合法時回傳空的上下文；任何檔案缺失都不會拋出例外。

        Args:
            profile_id: Profile 識別碼
            timezone: IANA 時區名稱（決定「今天」的日期）

        Returns:
            UserContext
        """
        now = self.clock()
        today = resolve_today(now, timezone)
        today_str = today.isoformat()

        if not profile_id:
            return UserContext(current_date=today_str)
        try:
            profile_paths = self.paths.profile(profile_id)
        except ValueError:
            return UserContext(current_date=today_str)

        profile = await self._load_profile(profile_paths, profile_id)

        todos = await self._load_todos(profile_paths, today_str)
        todays_todos = [t for t in todos if t.due_date == today_str or not t.due_date]
        completed_today = sum(1 for t in todays_todos if t.completed)

        challenges, challenges_dir = await self._load_challenges(profile_paths)
        todays_tasks = await self._load_todays_challenge_tasks(challenges, challenges_dir, now)

        streaks = sorted(
            (
                StreakEntry(challenge_id=c.id, challenge_name=c.name, streak=c.streak.current)
                for c in challenges
                if c.streak.current > 0
            ),
            key=lambda s: s.streak,
            reverse=True,
        )

        schedule = await self._load_schedule(profile_paths, today_str)
        checkins = await self._load_recent_checkins(profile_paths, today)

        logger.debug(
            '使用者上下文已組裝',
            extra={
                'profile_id': profile_id,
                'todos': len(todays_todos),
                'challenges': len(challenges),
                'checkins': len(checkins),
            },
        )

        return UserContext(
            current_date=today_str,
            profile=profile,
            tasks=TasksContext(
                summary=TaskSummary(
                    total_todos=len(todays_todos),
                    completed_today=completed_today,
                    pending=len(todays_todos) - completed_today,
                ),
                todos=todays_todos[:MAX_CONTEXT_TODOS],
            ),
            challenges=ChallengesContext(data=challenges, todays_tasks=todays_tasks),
            streaks=streaks,
            schedule_today=schedule,
            recent_checkins=checkins,
        )

    async def _load_profile(self, profile_paths: ProfilePaths, profile_id: str) -> ProfileInfo:
        content = await read_text_or_none(self.storage, profile_paths.profile_md)
        if content is None:
            return ProfileInfo(id=profile_id)
        profile = parse_profile_md(content, profile_id)
        if not profile.id:
            profile.id = profile_id
        return profile

    async def _load_todos(self, profile_paths: ProfilePaths, today: str) -> list[Todo]:
        for todos_dir in (profile_paths.todos, self.paths.legacy_todos):
            content = await read_text_or_none(self.storage, todos_dir / 'active.md')
            if content is None:
                continue
            todos = parse_todos_md(content, today)
            if todos:
                return todos
        return []

    async def _load_challenges_from(self, challenges_dir: Path) -> list[Challenge]:
        challenges: list[Challenge] = []
        for entry in await list_dir_or_empty(self.storage, challenges_dir):
            if not entry.is_dir:
                continue
            content = await read_text_or_none(self.storage, challenges_dir / entry.name / CHALLENGE_FILENAME)
            if content is None:
                continue
            challenges.append(parse_challenge_md(content, entry.name))
        return challenges

    async def _load_challenges(self, profile_paths: ProfilePaths) -> tuple[list[Challenge], Path]:
        challenges = await self._load_challenges_from(profile_paths.challenges)
        if challenges:
            return challenges, profile_paths.challenges
        return await self._load_challenges_from(self.paths.legacy_challenges), self.paths.legacy_challenges

    async def _load_todays_challenge_tasks(
        self, challenges: list[Challenge], challenges_dir: Path, now: datetime
    ) -> list[ChallengeDayTasks]:
        result: list[ChallengeDayTasks] = []
        for challenge in challenges:
            if not challenge.is_active:
                continue
            day_number = calculate_challenge_day(challenge.start_date, challenge.total_days, now)
            day_file = challenges_dir / challenge.id / 'days' / f'day-{day_number:02d}.md'
            content = await read_text_or_none(self.storage, day_file)
            if content is None:
                continue
            tasks, focus = parse_day_file(content)
            if not tasks:
                continue
            result.append(
                ChallengeDayTasks(
                    challenge_id=challenge.id,
                    challenge_name=challenge.name,
                    day_number=day_number,
                    tasks=tasks,
                    focus=focus,
                )
            )
        return result

    async def _load_schedule(self, profile_paths: ProfilePaths, today: str) -> list[ScheduleEvent]:
        events: list[ScheduleEvent] = []
        content = await read_text_or_none(self.storage, profile_paths.schedule / 'events.json')
        if content is not None:
            events.extend(parse_events_json(content, today))

        content = await read_text_or_none(self.storage, self.paths.shared_schedule_md)
        if content is not None:
            events.extend(parse_schedule_md(content, today))
        return events

    async def _load_recent_checkins(self, profile_paths: ProfilePaths, today: date) -> list[CheckinRecord]:
        entries = await list_dir_or_empty(self.storage, profile_paths.checkins)
        names = sorted(e.name for e in entries if not e.is_dir and e.name.endswith('.md'))
        earliest = today - timedelta(days=CHECKIN_WINDOW_DAYS)

        checkins: list[CheckinRecord] = []
        for name in names[-MAX_CHECKIN_FILES:]:
            match = FILENAME_DATE_RE.search(name)
            if not match:
                continue
            try:
                file_date = date.fromisoformat(match.group(1))
            except ValueError:
                continue
            if file_date <= earliest:
                continue
            content = await read_text_or_none(self.storage, profile_paths.checkins / name)
            if content is None:
                continue
            checkins.append(parse_checkin(content, match.group(1)))

        checkins.sort(key=lambda c: c.date, reverse=True)
        return checkins


def _todo_lines(context: UserContext) -> list[str]:
    return [
        f'  {i}. [{"x" if t.completed else " "}] {t.title}'
        for i, t in enumerate(context.tasks.todos[:MAX_PROMPT_TODOS], start=1)
    ]


def _challenge_task_blocks(context: UserContext) -> list[str]:
    blocks: list[str] = []
    for day in context.challenges.todays_tasks:
        header = f'  **{day.challenge_name} - Day {day.day_number}**'
        if day.focus:
            header += f'\n  Focus: {day.focus}'
        task_lines = [
            f'    - [{"x" if t.completed else " "}] {t.task}' + (f' ({t.duration})' if t.duration else '')
            for t in day.tasks
        ]
        blocks.append('\n'.join([header, *task_lines]))
    return blocks


def _challenge_lines(context: UserContext) -> list[str]:
    lines: list[str] = []
    for c in context.challenges.data:
        streak = f' | {c.streak.current} day streak' if c.streak.current > 0 else ''
        goal = f' - Goal: {c.goal}' if c.goal else ''
        lines.append(f'  - **{c.name}** ({c.status or "active"}){streak}{goal}')
    return lines


def _checkin_summary(context: UserContext) -> str:
    if not context.recent_checkins:
        return ''
    last = context.recent_checkins[0]
    mood = f' (Mood: {last.mood})' if last.mood else ''
    return f'Last check-in: {last.date}{mood} | {len(context.recent_checkins)} check-ins in the last 7 days'


_COACHING_GUIDELINES = """## Your Role
1. Be encouraging but honest - reference their ACTUAL progress data shown above
2. Help them overcome blockers and stay accountable
3. Celebrate their wins, even small ones
4. Keep responses concise and actionable
5. When discussing tasks or challenges, reference the specific items from the context above

## Important Guidelines
- Always use the user's actual data to personalize responses
- If they mention a challenge or task, verify it exists in their context
- Suggest specific next actions based on their current progress
- Be aware of their current day in each challenge"""

_SLASH_COMMANDS = """## Available Slash Commands
- /streak - Check in to their challenge
- /streak-new - Create a new challenge
- /streak-list - Show all challenges
- /streak-stats - Show statistics
- /schedule - View and manage schedule
- /motivation - Get motivational content"""

_INTRO = (
    'You are the 10X Coach, a personal accountability coach by Team 10X. '
    'You help users stay on track with their goals, challenges, and daily tasks.'
)

_CLOSING = 'Respond naturally and helpfully. Use the context above to personalize your responses.'


def build_system_prompt(
    context: UserContext,
    agent_id: str = DEFAULT_AGENT_ID,
    matched_skill: Skill | None = None,
) -> str:
    """由上下文產生 system prompt。

    區段順序固定：開場、日期、使用者摘要、今日待辦、今日挑戰任務、
    進行中的挑戰、今日行程、匹配技能、教練準則、slash command 說明。
    沒有資料的區段整段省略。相同輸入永遠產生相同輸出。

    Args:
        context: build_context() 的結果
        agent_id: Agent 識別碼（目前只用於記錄）
        matched_skill: 匹配到的技能（可選）

    Returns:
        system prompt 文字
    """
    user_name = context.profile.name if context.profile and context.profile.name else 'User'

    summary_lines = [
        '## User Context',
        f'- **Name:** {user_name}',
        f'- **Active Challenges:** {context.challenges.count}',
        f'- **Pending Tasks Today:** {context.tasks.summary.pending}',
        f'- **Completed Today:** {context.tasks.summary.completed_today}',
        f'- **Current Streak:** {context.top_streak} days',
    ]
    checkin_summary = _checkin_summary(context)
    if checkin_summary:
        summary_lines.append(f'- **Check-in History:** {checkin_summary}')

    sections = [_INTRO, f'## Current Date\n{context.current_date}', '\n'.join(summary_lines)]

    if todo_lines := _todo_lines(context):
        sections.append("## Today's Todo Tasks\n" + '\n'.join(todo_lines))
    if task_blocks := _challenge_task_blocks(context):
        sections.append("## Today's Challenge Tasks\n" + '\n\n'.join(task_blocks))
    if challenge_lines := _challenge_lines(context):
        sections.append('## Active Challenges\n' + '\n'.join(challenge_lines))
    if context.schedule_today:
        schedule_lines = [f'  - {f"{e.time}: " if e.time else ""}{e.title}' for e in context.schedule_today]
        sections.append("## Today's Schedule\n" + '\n'.join(schedule_lines))
    if matched_skill is not None:
        sections.append(
            f'## Active Skill: {matched_skill.name}\n'
            "The user's message matched this skill. Follow these instructions:\n\n"
            f'{matched_skill.body}'
        )

    sections.extend([_COACHING_GUIDELINES, _SLASH_COMMANDS, _CLOSING])

    logger.debug(
        'System prompt 已產生',
        extra={'agent_id': agent_id, 'skill': matched_skill.id if matched_skill else None},
    )
    return '\n\n'.join(sections)


def format_context_summary(context: UserContext) -> str:
    """產生一行人類可讀的上下文摘要。"""
    user_name = context.profile.name if context.profile and context.profile.name else 'User'
    return (
        f'{user_name}: {context.challenges.count} challenges, '
        f'{context.tasks.summary.pending} pending tasks, {context.top_streak} day streak'
    )
