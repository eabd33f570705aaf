"""Readiness analysis for clarifying questions.

Determines whether every numbered question in an issue's Clarifying
Questions section has an answer among the issue's comments.
"""

from src.conductor.readiness.analyzer import (
    MalformedQuestionFormat,
    analyze,
    extract_questions,
    find_answers,
    find_question_section,
    summarize,
)
from src.conductor.readiness.models import (
    AnswerForm,
    AnswerMatch,
    ClarifyingQuestion,
    ReadinessReport,
)

__all__ = [
    "AnswerForm",
    "AnswerMatch",
    "ClarifyingQuestion",
    "MalformedQuestionFormat",
    "ReadinessReport",
    "analyze",
    "extract_questions",
    "find_answers",
    "find_question_section",
    "summarize",
]
