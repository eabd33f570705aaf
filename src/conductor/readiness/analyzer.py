"""Readiness analysis of clarifying questions against comment answers.

An issue is ready for an agent when every numbered question in its
"Clarifying Questions" section has an answer in the comments. Everything in
this module is a pure function of (issue body, comments): no I/O, no logging,
deterministic output. Re-running it on an edited issue always yields the
same verdict for the same text.

Recognised answer markers (keyword matching is case-insensitive):
- A<N>: text
- Answer <N>: text
- Q<N>: ... A: text   (the A: answers the Q number before it; the A: may
                       also start the following line of the same comment)
- <N>. text           (bare numbered line)

The bare numbered form also matches ordinary numbered-list replies that were
not meant as answers. That behaviour is kept deliberately; see DESIGN.md.
"""

import re
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from src.conductor.formatting import is_orchestrator_comment
from src.conductor.github.models import IssueComment
from src.conductor.readiness.models import (
    AnswerForm,
    AnswerMatch,
    ClarifyingQuestion,
    ReadinessReport,
)


class MalformedQuestionFormat(ValueError):
    """Raised when a Clarifying Questions section has content but no
    parseable numbered questions.

    analyze() never lets this escape; it turns it into a not-ready report.
    """


_BOLD = r"(?:\*\*|__)"

SECTION_RE = re.compile(
    r"^\s*(?:#{1,6}\s*)?" + _BOLD + r"?\s*clarifying\s+questions\s*"
    r"(?:\([^)]*\))?\s*" + _BOLD + r"?\s*"
    r"(?::\s*" + _BOLD + r"?\s*(?P<rest>.*?))?\s*$",
    re.IGNORECASE,
)

HEADING_RE = re.compile(r"^\s*#{1,6}\s+\S")

QUESTION_LINE_RE = re.compile(
    r"^\s*(?:[-*+]\s+)?" + _BOLD + r"?(?P<index>\d+)\." + _BOLD + r"?"
    r"(?:\s+(?P<text>.*?))?\s*$"
)

NO_QUESTIONS_RE = re.compile(
    r"^\s*(?:[-*+]\s+)?(?:none|n/?a|nothing|-+)\.?\s*$",
    re.IGNORECASE,
)

_ANSWER_PREFIX = r"^\s*(?:>\s*)*(?:[-*+]\s+)?" + _BOLD + r"?\s*"

SHORT_ANSWER_RE = re.compile(
    _ANSWER_PREFIX + r"A(?P<index>\d+)" + _BOLD + r"?\s*:",
    re.IGNORECASE,
)

LONG_ANSWER_RE = re.compile(
    _ANSWER_PREFIX + r"Answer\s*(?P<index>\d+)" + _BOLD + r"?\s*:",
    re.IGNORECASE,
)

QUESTION_ECHO_RE = re.compile(
    _ANSWER_PREFIX + r"Q(?P<index>\d+)" + _BOLD + r"?\s*:(?P<tail>.*)$",
    re.IGNORECASE,
)

INLINE_ECHO_ANSWER_RE = re.compile(r"(?:^|\s|" + _BOLD + r")A" + _BOLD + r"?\s*:", re.IGNORECASE)

LONE_ECHO_ANSWER_RE = re.compile(_ANSWER_PREFIX + r"A" + _BOLD + r"?\s*:", re.IGNORECASE)

# Bare numbers only count at the very start of a line; quoted or bulleted
# "N." lines are usually the questions echoed back
NUMBERED_ANSWER_RE = re.compile(
    r"^" + _BOLD + r"?(?P<index>\d+)\." + _BOLD + r"?\s+\S"
)


CommentLike = Union[str, IssueComment]


def find_question_section(body: str) -> Optional[List[str]]:
    """Locate the Clarifying Questions section.

    The section starts at a line naming "Clarifying Questions" (markdown
    heading, bold line, or "Clarifying Questions:" label) and runs until the
    next markdown heading. Text after a colon on the starting line is part
    of the section, so "Clarifying Questions: 1. Which DB? 2. Which region?"
    works on a single line.

    Returns:
        The section's content lines, or None if there is no section.
    """
    lines = body.splitlines()
    for position, line in enumerate(lines):
        match = SECTION_RE.match(line)
        if match is None:
            continue
        section: List[str] = []
        rest = match.group("rest")
        if rest:
            section.append(rest)
        for following in lines[position + 1:]:
            if HEADING_RE.match(following):
                break
            section.append(following)
        return section
    return None


def _split_inline(index: int, text: str) -> List[Tuple[int, str]]:
    """Split "1. Which DB? 2. Which region?" into separate questions.

    Only the next consecutive number starts a new question, so numbers
    inside question text ("use 3. or 4. replicas?") are left alone unless
    they happen to continue the sequence.
    """
    parts: List[Tuple[int, str]] = []
    current_index = index
    remaining = text
    while True:
        next_index = current_index + 1
        boundary = re.search(
            r"(?:^|\s)" + _BOLD + r"?" + str(next_index) + r"\." + _BOLD + r"?\s+",
            remaining,
        )
        if boundary is None:
            parts.append((current_index, remaining.strip()))
            return parts
        parts.append((current_index, remaining[: boundary.start()].strip()))
        remaining = remaining[boundary.end():]
        current_index = next_index


def extract_questions(section_lines: List[str]) -> List[ClarifyingQuestion]:
    """Extract numbered questions from section lines in document order.

    Indices are taken literally as written, so gaps left by a removed
    question do not shift the remaining numbers. Repeated indices keep the
    first occurrence.

    Raises:
        MalformedQuestionFormat: If the section has content but no question.
    """
    questions: List[ClarifyingQuestion] = []
    seen: Set[int] = set()
    has_content = False

    for line in section_lines:
        if not line.strip():
            continue
        match = QUESTION_LINE_RE.match(line)
        if match is None:
            if not NO_QUESTIONS_RE.match(line):
                has_content = True
            continue
        has_content = True
        index = int(match.group("index"))
        if index < 1:
            continue
        for part_index, part_text in _split_inline(index, match.group("text") or ""):
            if part_index in seen:
                continue
            seen.add(part_index)
            questions.append(
                ClarifyingQuestion(index=part_index, text=part_text.strip("* _"))
            )

    if has_content and not questions:
        raise MalformedQuestionFormat(
            "Clarifying Questions section has no numbered questions"
        )
    return questions


def _comment_body(comment: CommentLike) -> str:
    if isinstance(comment, str):
        return comment
    return comment.body


def find_answers(
    comments: Iterable[CommentLike],
    question_indices: Set[int],
) -> List[AnswerMatch]:
    """Scan comments in order for answer markers.

    Orchestrator-authored comments are skipped. A marker only counts when
    its number is one of question_indices.

    Returns:
        Every answer match, in comment order.
    """
    matches: List[AnswerMatch] = []
    position = 0
    for comment in comments:
        body = _comment_body(comment)
        if is_orchestrator_comment(body):
            continue
        pending_echo: Optional[int] = None
        for line in body.splitlines():
            found = _match_answer_line(line, pending_echo)
            pending_echo = found[2]
            if found[0] is not None and found[0] in question_indices:
                matches.append(
                    AnswerMatch(
                        index=found[0],
                        comment_position=position,
                        form=found[1],
                    )
                )
        position += 1
    return matches


def _match_answer_line(
    line: str,
    pending_echo: Optional[int],
) -> Tuple[Optional[int], Optional[AnswerForm], Optional[int]]:
    """Match one comment line.

    Returns:
        (answered index or None, form or None, pending Q<N> for the next line)
    """
    match = SHORT_ANSWER_RE.match(line)
    if match:
        return int(match.group("index")), AnswerForm.SHORT, None

    match = LONG_ANSWER_RE.match(line)
    if match:
        return int(match.group("index")), AnswerForm.LONG, None

    match = QUESTION_ECHO_RE.match(line)
    if match:
        index = int(match.group("index"))
        if INLINE_ECHO_ANSWER_RE.search(match.group("tail")):
            return index, AnswerForm.QUESTION_ECHO, None
        return None, None, index

    if pending_echo is not None and LONE_ECHO_ANSWER_RE.match(line):
        return pending_echo, AnswerForm.QUESTION_ECHO, None

    match = NUMBERED_ANSWER_RE.match(line)
    if match:
        return int(match.group("index")), AnswerForm.NUMBERED, None

    # Blank lines between "Q<N>:" and "A:" keep the question pending
    if not line.strip():
        return None, None, pending_echo
    return None, None, None


def analyze(issue_body: str, comments: Iterable[CommentLike]) -> ReadinessReport:
    """Determine whether an issue's clarifying questions are all answered.

    Args:
        issue_body: The issue body markdown.
        comments: Comments in chronological order (bodies or IssueComment).

    Returns:
        ReadinessReport. No section means ready with zero questions; a
        section that cannot be parsed means not ready (malformed).
    """
    section = find_question_section(issue_body or "")
    if section is None:
        return ReadinessReport(has_section=False, ready=True)

    try:
        questions = extract_questions(section)
    except MalformedQuestionFormat:
        return ReadinessReport(has_section=True, malformed=True, ready=False)

    indices = [q.index for q in questions]
    answers = find_answers(comments, set(indices))
    answered = {a.index for a in answers}
    unanswered = sorted(set(indices) - answered)

    return ReadinessReport(
        has_section=True,
        questions=questions,
        answers=answers,
        unanswered_indices=unanswered,
        contiguous=sorted(indices) == list(range(1, len(indices) + 1)),
        malformed=False,
        ready=not unanswered,
    )


def summarize(report: ReadinessReport) -> Dict[str, object]:
    """Flatten a report into log/CLI friendly fields."""
    return {
        "has_section": report.has_section,
        "total_questions": report.total_questions,
        "unanswered": list(report.unanswered_indices),
        "malformed": report.malformed,
        "ready": report.ready,
    }
