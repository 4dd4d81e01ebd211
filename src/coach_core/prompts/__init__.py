"""Prompt 索引系統。"""

from coach_core.prompts.base import ContextRequirement, MatchedPrompt, Prompt, PromptMatchResult
from coach_core.prompts.indexer import (
    PromptIndexer,
    detect_category,
    determine_context_requirements,
    render_prompt_template,
    score_prompt,
)

__all__ = [
    'ContextRequirement',
    'MatchedPrompt',
    'Prompt',
    'PromptIndexer',
    'PromptMatchResult',
    'detect_category',
    'determine_context_requirements',
    'render_prompt_template',
    'score_prompt',
]
