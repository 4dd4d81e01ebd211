"""使用者資料檔案解析器。

每個解析器都是純函式：輸入檔案文字，輸出資料結構，不做 I/O。
無法辨識的行直接略過，不會拋出例外。
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, cast

from coach_core.context.models import (
    Challenge,
    ChallengeStreak,
    CheckinRecord,
    DayTask,
    ProfileInfo,
    ScheduleEvent,
    Todo,
)

logger = logging.getLogger(__name__)

_PROFILE_ID_RE = re.compile(r'\*\*ID:\*\*\s*(.+)', re.IGNORECASE)
_PROFILE_NAME_RE = re.compile(r'\*\*Name:\*\*\s*(.+)', re.IGNORECASE)
_PROFILE_EMAIL_RE = re.compile(r'\*\*Email:\*\*\s*(.+)', re.IGNORECASE)

_TODO_DATE_SECTION_RE = re.compile(r'^##\s+Today\s*\((\d{4}-\d{2}-\d{2})\)', re.IGNORECASE)
_TODO_GROUP_RE = re.compile(r'^###\s+(.+)')
_TODO_ITEM_RE = re.compile(r'^-\s*\[([ xX])\]\s*(?:\*\*)?(.+?)(?:\*\*)?$')

_TITLE_RE = re.compile(r'^#\s+(.+)$', re.MULTILINE)
_KEY_VALUE_RE = re.compile(r'^-\s*\*\*(.+?):\*\*\s*(.+)$')
_GOAL_RE = re.compile(r'##\s*Goal\n+([^\n#]+)', re.IGNORECASE)
_LEADING_INT_RE = re.compile(r'^\s*([+-]?\d+)')

_FOCUS_RE = re.compile(r"##\s*Today'?s?\s*Focus\n+([^\n#]+)", re.IGNORECASE)
_DAY_TASK_RE = re.compile(r'^-\s*\[([ xX])\]\s*(.+?)(?:\s*\((\d+)\s*min\))?$')

_SCHEDULE_DATE_RE = re.compile(r'^##\s*(\d{4}-\d{2}-\d{2})')
_SCHEDULE_EVENT_RE = re.compile(r'^-\s*(?:(\d{1,2}:\d{2}(?:\s*[AP]M)?)\s*[-–]\s*)?(.+)', re.IGNORECASE)

_MOOD_RE = re.compile(r'\*\*Mood:\*\*\s*(.+)', re.IGNORECASE)
_CHECKIN_CHALLENGE_RE = re.compile(r'\*\*Challenge:\*\*\s*(.+)', re.IGNORECASE)
FILENAME_DATE_RE = re.compile(r'(\d{4}-\d{2}-\d{2})')


def _lines(content: str) -> list[str]:
    return content.replace('\r\n', '\n').split('\n')


def _leading_int(value: str) -> int:
    match = _LEADING_INT_RE.match(value)
    return int(match.group(1)) if match else 0


def parse_profile_md(content: str, profile_id: str) -> ProfileInfo:
    """解析 profile.md 中的 `**ID:**`、`**Name:**`、`**Email:**` 欄位。"""
    profile = ProfileInfo(id=profile_id)
    if match := _PROFILE_ID_RE.search(content):
        profile.id = match.group(1).strip()
    if match := _PROFILE_NAME_RE.search(content):
        profile.name = match.group(1).strip()
    if match := _PROFILE_EMAIL_RE.search(content):
        profile.email = match.group(1).strip()
    return profile


def parse_todos_md(content: str, today: str) -> list[Todo]:
    """解析 todos/active.md。

    `## Today (YYYY-MM-DD)` 切換目前日期，`### 名稱` 切換分組，
    `- [ ] 標題` / `- [x] **標題**` 為待辦項目。第一個日期區段之前的項目屬於今天。

    Args:
        content: 檔案內容
        today: 今天日期（YYYY-MM-DD）

    Returns:
        依出現順序排列的待辦事項
    """
    todos: list[Todo] = []
    current_date = today
    current_group = ''

    for line in _lines(content):
        if match := _TODO_DATE_SECTION_RE.match(line):
            current_date = match.group(1)
            continue
        if match := _TODO_GROUP_RE.match(line):
            current_group = match.group(1).strip()
            continue
        if match := _TODO_ITEM_RE.match(line):
            todos.append(
                Todo(
                    id=f'todo-{len(todos) + 1}',
                    title=match.group(2).strip(),
                    completed=match.group(1).lower() == 'x',
                    due_date=current_date,
                    challenge_name=current_group or None,
                )
            )

    return todos


def parse_challenge_md(content: str, challenge_id: str) -> Challenge:
    """解析 challenge.md。

    標題為名稱；`- **Key:** value` 行提供 type、status、start date、
    current/best 連續天數與最後打卡日；`## Goal` 下一行為目標。

    Args:
        content: 檔案內容
        challenge_id: 挑戰資料夾名稱

    Returns:
        Challenge
    """
    text = content.replace('\r\n', '\n')
    challenge = Challenge(id=challenge_id, name=challenge_id, streak=ChallengeStreak())

    if match := _TITLE_RE.search(text):
        challenge.name = match.group(1).strip()

    for line in _lines(text):
        match = _KEY_VALUE_RE.match(line)
        if not match:
            continue
        key = re.sub(r'\s+', '_', match.group(1).lower())
        value = match.group(2).strip()

        if key == 'type':
            challenge.type = value
        elif key == 'status':
            challenge.status = value
        elif key in ('start_date', 'startdate'):
            challenge.start_date = value
        elif key == 'current':
            challenge.streak.current = _leading_int(value)
        elif key == 'best':
            challenge.streak.best = _leading_int(value)
        elif key in ('last_check-in', 'last_checkin'):
            challenge.streak.last_checkin = None if value == 'None' else value

    if match := _GOAL_RE.search(text):
        challenge.goal = match.group(1).strip()

    return challenge


def parse_day_file(content: str) -> tuple[list[DayTask], str | None]:
    """解析 days/day-NN.md，回傳 (任務列表, 今日重點)。"""
    text = content.replace('\r\n', '\n')
    focus_match = _FOCUS_RE.search(text)
    focus = focus_match.group(1).strip() if focus_match else None

    tasks: list[DayTask] = []
    for line in _lines(text):
        if match := _DAY_TASK_RE.match(line):
            minutes = match.group(3)
            tasks.append(
                DayTask(
                    task=match.group(2).strip(),
                    completed=match.group(1).lower() == 'x',
                    duration=f'{minutes} min' if minutes else None,
                )
            )
    return tasks, focus


def parse_schedule_md(content: str, today: str) -> list[ScheduleEvent]:
    """解析共用行程檔 events.md，只回傳今天的事件。

    格式為 `## YYYY-MM-DD` 日期區段，底下 `- [HH:MM[ AM|PM] - ]標題`。
    """
    events: list[ScheduleEvent] = []
    current_date = ''

    for line in _lines(content):
        if match := _SCHEDULE_DATE_RE.match(line):
            current_date = match.group(1)
            continue
        if current_date != today:
            continue
        if match := _SCHEDULE_EVENT_RE.match(line):
            events.append(ScheduleEvent(title=match.group(2).strip(), date=today, time=match.group(1) or None))

    return events


def parse_events_json(content: str, today: str) -> list[ScheduleEvent]:
    """解析 profile 專屬的 events.json，只回傳今天的事件。

    JSON 格式錯誤或不是列表時回傳空列表。
    """
    try:
        data: Any = json.loads(content)
    except json.JSONDecodeError as e:
        logger.debug('events.json 格式錯誤，略過', extra={'error': str(e)})
        return []

    if not isinstance(data, list):
        return []

    events: list[ScheduleEvent] = []
    for raw in cast(list[Any], data):
        if not isinstance(raw, dict):
            continue
        item = cast(dict[str, Any], raw)
        if item.get('date') != today or not isinstance(item.get('title'), str):
            continue
        time_value = item.get('time')
        type_value = item.get('type')
        events.append(
            ScheduleEvent(
                title=item['title'],
                date=today,
                time=time_value if isinstance(time_value, str) else None,
                type=type_value if isinstance(type_value, str) else None,
            )
        )
    return events


def parse_checkin(content: str, date: str) -> CheckinRecord:
    """解析單一打卡檔案（日期取自檔名）。"""
    mood_match = _MOOD_RE.search(content)
    challenge_match = _CHECKIN_CHALLENGE_RE.search(content)
    challenge_id = challenge_match.group(1).strip() if challenge_match else ''
    return CheckinRecord(
        date=date,
        challenge_id=challenge_id or 'unknown',
        mood=mood_match.group(1).strip() if mood_match else None,
    )
