"""使用者上下文組裝。"""

from coach_core.context.builder import (
    ContextBuilder,
    build_system_prompt,
    calculate_challenge_day,
    format_context_summary,
)
from coach_core.context.models import UserContext
from coach_core.context.profile import ProfileLoader, UserProfile, build_user_context

__all__ = [
    'ContextBuilder',
    'ProfileLoader',
    'UserContext',
    'UserProfile',
    'build_system_prompt',
    'build_user_context',
    'calculate_challenge_day',
    'format_context_summary',
]
