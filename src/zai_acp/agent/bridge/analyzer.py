"""Prompt complexity scoring used to pick an engine profile for a turn.

The analysis is advisory: it is computed from the prompt text alone, is
deterministic for a given input, and never changes session state.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

Complexity = Literal["simple", "medium", "complex"]
TaskType = Literal[
    "question",
    "explanation",
    "code_generation",
    "refactoring",
    "debugging",
    "architecture",
    "review",
]
Effort = Literal["low", "medium", "high"]

COMPLEX_KEYWORDS: tuple[str, ...] = (
    "refactor",
    "architecture",
    "design",
    "implement",
    "build",
    "create system",
    "optimize",
    "performance",
    "security",
    "algorithm",
    "複雑",
    "アーキテクチャ",
    "리팩토링",
    "아키텍처",
    "설계",
    "구현",
)

SIMPLE_KEYWORDS: tuple[str, ...] = (
    "what is",
    "how to",
    "explain",
    "show me",
    "list",
    "find",
    "search",
    "read",
    "view",
    "display",
    "무엇",
    "어떻게",
    "설명",
    "보여",
)

# Order matters: earlier categories win ties.
TASK_TYPE_KEYWORDS: dict[TaskType, tuple[str, ...]] = {
    "question": ("what", "why", "how", "when", "where", "무엇", "왜", "어떻게"),
    "explanation": ("explain", "describe", "tell me about", "설명", "알려"),
    "code_generation": ("create", "generate", "write", "implement", "add", "생성", "작성", "추가"),
    "refactoring": ("refactor", "improve", "optimize", "clean up", "리팩토링", "개선", "최적화"),
    "debugging": ("fix", "bug", "error", "debug", "issue", "problem", "수정", "버그", "에러"),
    "architecture": ("architecture", "design", "structure", "pattern", "아키텍처", "설계", "구조"),
    "review": ("review", "check", "analyze", "audit", "검토", "분석", "확인"),
}

HEAVY_TASKS: frozenset[str] = frozenset({"architecture", "refactoring", "code_generation"})
MODERATE_TASKS: frozenset[str] = frozenset({"debugging", "review"})
LIGHT_TASKS: frozenset[str] = frozenset({"question", "explanation"})

COMPLEX_THRESHOLD = 8
MEDIUM_THRESHOLD = 3

CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```")
FILE_PATH_RE = re.compile(r"(?:/[\w-]+)+\.\w+")

THINKING_MULTIPLIERS: dict[Effort, float] = {"low": 0.5, "medium": 1.0, "high": 1.5}

GLM_MODEL_MAPPING: dict[str, str] = {
    "claude-4.5-sonnet-20250114": "glm-4.7",
    "claude-4-haiku-20250114": "glm-4.5-air",
    "claude-4-opus-20250114": "glm-4.7",
    "claude-3-5-sonnet-20241022": "glm-4.7",
    "claude-3-5-haiku-20241022": "glm-4.5-air",
    "claude-3-opus-20240229": "glm-4.7",
}


@dataclass(frozen=True)
class EngineProfile:
    model: str
    effort: Effort
    max_thinking_tokens: int


@dataclass(frozen=True)
class PromptAnalysis:
    complexity: Complexity
    task_type: TaskType
    profile: EngineProfile
    score: int
    reasoning: str


PROFILE_COMPLEX = EngineProfile(model="glm-4.7", effort="high", max_thinking_tokens=20000)
PROFILE_MEDIUM = EngineProfile(model="glm-4.7", effort="medium", max_thinking_tokens=15000)
PROFILE_SIMPLE_LIGHT = EngineProfile(model="glm-4.5-air", effort="low", max_thinking_tokens=10000)
PROFILE_SIMPLE_CODE = EngineProfile(model="glm-4.7", effort="low", max_thinking_tokens=10000)


def _hits(text: str, keywords: tuple[str, ...]) -> int:
    return sum(1 for keyword in keywords if keyword in text)


def detect_task_type(lower_text: str) -> TaskType:
    task_type: TaskType = "question"
    best = 0
    for candidate, keywords in TASK_TYPE_KEYWORDS.items():
        score = _hits(lower_text, keywords)
        if score > best:
            best = score
            task_type = candidate
    return task_type


def _length_points(word_count: int, line_count: int) -> int:
    points = 0
    if word_count >= 200:
        points += 3
    elif word_count >= 100:
        points += 2
    elif word_count >= 50:
        points += 1
    if line_count > 50:
        points += 2
    elif line_count > 20:
        points += 1
    return points


def tier_for_score(score: int) -> Complexity:
    if score >= COMPLEX_THRESHOLD:
        return "complex"
    if score >= MEDIUM_THRESHOLD:
        return "medium"
    return "simple"


def select_profile(complexity: Complexity, task_type: TaskType) -> EngineProfile:
    if complexity == "complex":
        return PROFILE_COMPLEX
    if complexity == "medium":
        return PROFILE_MEDIUM
    if task_type in LIGHT_TASKS:
        return PROFILE_SIMPLE_LIGHT
    return PROFILE_SIMPLE_CODE


def analyze_prompt(text: str) -> PromptAnalysis:
    """Score a prompt and pick the engine profile for it."""
    lower_text = text.lower()
    word_count = len(text.split())
    line_count = len(text.split("\n"))
    code_blocks = len(CODE_BLOCK_RE.findall(text))
    file_paths = len(FILE_PATH_RE.findall(text))

    task_type = detect_task_type(lower_text)

    score = _length_points(word_count, line_count)
    score += min(code_blocks * 2, 6)
    score += min(file_paths, 3)
    score += _hits(lower_text, COMPLEX_KEYWORDS) * 2
    score -= _hits(lower_text, SIMPLE_KEYWORDS)
    if task_type in HEAVY_TASKS:
        score += 3
    elif task_type in MODERATE_TASKS:
        score += 2

    complexity = tier_for_score(score)
    reasoning = (
        f"Complexity: {complexity} (score: {score}), Task: {task_type}, "
        f"Words: {word_count}, Lines: {line_count}, Code blocks: {code_blocks}"
    )
    return PromptAnalysis(
        complexity=complexity,
        task_type=task_type,
        profile=select_profile(complexity, task_type),
        score=score,
        reasoning=reasoning,
    )


def calculate_thinking_tokens(effort: Effort, max_tokens: int) -> int:
    return int(max_tokens * THINKING_MULTIPLIERS[effort])


def map_model_to_glm(model: str) -> str:
    return GLM_MODEL_MAPPING.get(model, model)


def claude_model_from_glm(glm_model: str) -> str:
    if glm_model == "glm-4.5-air":
        return "claude-4-haiku-20250114"
    return "claude-4-opus-20250114"
