"""使用者上下文資料結構。

所有結構都可透過 to_dict() 轉為 camelCase 字典，供 HTTP 回應使用。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

TodoStatus = Literal['pending', 'completed']

# 未指定時的挑戰天數
DEFAULT_TOTAL_DAYS = 30


@dataclass
class ProfileInfo:
    """profile.md 中的基本資料。"""

    id: str
    name: str = 'User'
    email: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {'id': self.id, 'name': self.name, 'email': self.email}


@dataclass
class Todo:
    """待辦事項。

    Attributes:
        id: 依出現順序編號（todo-1, todo-2 ...）
        title: 標題（已去除粗體標記）
        completed: 是否完成
        priority: 優先度（檔案格式未提供，固定為 medium）
        due_date: 所屬 `## Today (YYYY-MM-DD)` 區段的日期
        challenge_name: 所屬 `### ` 區段名稱
    """

    id: str
    title: str
    completed: bool = False
    priority: str = 'medium'
    due_date: str | None = None
    challenge_name: str | None = None

    @property
    def status(self) -> TodoStatus:
        return 'completed' if self.completed else 'pending'

    def to_dict(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'text': self.title,
            'status': self.status,
            'completed': self.completed,
            'priority': self.priority,
            'dueDate': self.due_date,
            'challengeName': self.challenge_name,
        }


@dataclass
class ChallengeStreak:
    current: int = 0
    best: int = 0
    last_checkin: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {'current': self.current, 'best': self.best, 'lastCheckin': self.last_checkin}


@dataclass
class Challenge:
    """challenge.md 解析結果。"""

    id: str
    name: str
    type: str | None = None
    goal: str | None = None
    status: str | None = None
    start_date: str | None = None
    streak: ChallengeStreak = field(default_factory=ChallengeStreak)
    progress: int = 0
    completed_days: int = 0
    total_days: int = DEFAULT_TOTAL_DAYS

    @property
    def is_active(self) -> bool:
        return self.status is None or self.status == 'active'

    def to_dict(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'type': self.type,
            'goal': self.goal,
            'status': self.status,
            'startDate': self.start_date,
            'streak': self.streak.to_dict(),
            'progress': self.progress,
            'completedDays': self.completed_days,
            'totalDays': self.total_days,
        }


@dataclass
class DayTask:
    task: str
    completed: bool = False
    duration: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {'task': self.task, 'completed': self.completed, 'duration': self.duration}


@dataclass
class ChallengeDayTasks:
    """某個挑戰當天的任務。"""

    challenge_id: str
    challenge_name: str
    day_number: int
    tasks: list[DayTask] = field(default_factory=lambda: [])
    focus: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'challengeId': self.challenge_id,
            'challengeName': self.challenge_name,
            'dayNumber': self.day_number,
            'tasks': [t.to_dict() for t in self.tasks],
            'focus': self.focus,
        }


@dataclass
class TaskSummary:
    total_todos: int = 0
    completed_today: int = 0
    pending: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {'totalTodos': self.total_todos, 'completedToday': self.completed_today, 'pending': self.pending}


@dataclass
class StreakEntry:
    challenge_id: str
    challenge_name: str
    streak: int

    def to_dict(self) -> dict[str, Any]:
        return {'challengeId': self.challenge_id, 'challengeName': self.challenge_name, 'streak': self.streak}


@dataclass
class ScheduleEvent:
    title: str
    date: str
    time: str | None = None
    type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {'title': self.title, 'date': self.date, 'time': self.time, 'type': self.type}


@dataclass
class CheckinRecord:
    date: str
    challenge_id: str = 'unknown'
    mood: str | None = None
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {'date': self.date, 'challengeId': self.challenge_id, 'mood': self.mood, 'notes': self.notes}


@dataclass
class TasksContext:
    summary: TaskSummary = field(default_factory=TaskSummary)
    todos: list[Todo] = field(default_factory=lambda: [])


@dataclass
class ChallengesContext:
    data: list[Challenge] = field(default_factory=lambda: [])
    todays_tasks: list[ChallengeDayTasks] = field(default_factory=lambda: [])

    @property
    def count(self) -> int:
        return len(self.data)


@dataclass
class UserContext:
    """組裝完成的使用者上下文。

    Attributes:
        profile: 基本資料（沒有 profile 時為 None）
        tasks: 今日待辦摘要與清單（最多 10 筆）
        challenges: 所有挑戰與今日挑戰任務
        streaks: current > 0 的連續天數，由大到小
        schedule_today: 今日行程
        recent_checkins: 最近 7 天的打卡，日期由新到舊
        current_date: 建立上下文時的日期（YYYY-MM-DD）
    """

    current_date: str
    profile: ProfileInfo | None = None
    tasks: TasksContext = field(default_factory=TasksContext)
    challenges: ChallengesContext = field(default_factory=ChallengesContext)
    streaks: list[StreakEntry] = field(default_factory=lambda: [])
    schedule_today: list[ScheduleEvent] = field(default_factory=lambda: [])
    recent_checkins: list[CheckinRecord] = field(default_factory=lambda: [])

    @property
    def top_streak(self) -> int:
        return self.streaks[0].streak if self.streaks else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            'profile': self.profile.to_dict() if self.profile else None,
            'tasks': {
                'summary': self.tasks.summary.to_dict(),
                'todos': [t.to_dict() for t in self.tasks.todos],
            },
            'challenges': {
                'data': [c.to_dict() for c in self.challenges.data],
                'count': self.challenges.count,
                'todaysTasks': [t.to_dict() for t in self.challenges.todays_tasks],
            },
            'progress': {'streaks': [s.to_dict() for s in self.streaks]},
            'schedule': {'today': [e.to_dict() for e in self.schedule_today]},
            'recentCheckins': [c.to_dict() for c in self.recent_checkins],
            'currentDate': self.current_date,
        }
