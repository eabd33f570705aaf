"""Readiness analysis models.

This module defines the derived (never persisted) data produced when an
issue's clarifying questions are checked against its comment history:
- ClarifyingQuestion: a numbered question from the issue body
- AnswerForm: which answer marker matched
- AnswerMatch: a comment line that answers a question
- ReadinessReport: the analyzer's verdict
"""

from enum import Enum
from typing import List

from pydantic import BaseModel, Field


class ClarifyingQuestion(BaseModel):
    """A numbered question from the issue's Clarifying Questions section.

    Attributes:
        index: 1-based number exactly as written by the author.
        text: Question text with list/bold markup stripped.
    """

    index: int = Field(..., ge=1, description="Question number as written")

    text: str = Field(default="", description="Question text")


class AnswerForm(str, Enum):
    """Answer marker forms recognised in comments.

    Attributes:
        SHORT: "A<N>: ..."
        LONG: "Answer <N>: ..."
        QUESTION_ECHO: "Q<N>: ... A: ..." (answers the Q number preceding A:)
        NUMBERED: a bare "<N>. ..." line
    """

    SHORT = "short"
    LONG = "long"
    QUESTION_ECHO = "question_echo"
    NUMBERED = "numbered"


class AnswerMatch(BaseModel):
    """A comment line answering one clarifying question.

    Attributes:
        index: The question index it answers.
        comment_position: Position of the comment in chronological order
            (0-based, counting only comments that were analyzed).
        form: The marker form that matched.
    """

    index: int = Field(..., ge=1)

    comment_position: int = Field(..., ge=0)

    form: AnswerForm


class ReadinessReport(BaseModel):
    """Result of analyzing an issue body against its comments.

    Attributes:
        has_section: Whether a Clarifying Questions section was found.
        questions: Questions in document order.
        answers: Every answer match found, in comment order.
        unanswered_indices: Unanswered question indices, ascending.
        contiguous: Whether numbering is exactly 1..N.
        malformed: The section exists but could not be parsed; such issues
            are never reported ready.
        ready: True iff no question is unanswered and the section parsed.
    """

    has_section: bool = False

    questions: List[ClarifyingQuestion] = Field(default_factory=list)

    answers: List[AnswerMatch] = Field(default_factory=list)

    unanswered_indices: List[int] = Field(default_factory=list)

    contiguous: bool = True

    malformed: bool = False

    ready: bool = True

    @property
    def total_questions(self) -> int:
        return len(self.questions)
