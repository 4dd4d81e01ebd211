"""Skill 技能系統。

從檔案載入由觸發詞啟用的指令區塊，並將使用者訊息比對到最適合的技能或 slash command。
"""

from coach_core.skills.base import AgentSkills, Skill
from coach_core.skills.matcher import SkillMatcher, score_skill

__all__ = ['AgentSkills', 'Skill', 'SkillMatcher', 'score_skill']
