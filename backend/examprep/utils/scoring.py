"""Answer checking, score computation and motivational feedback bands."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

GRADABLE_TYPES = frozenset({"multiple_choice", "true_false", "short_answer"})

# Checked high to low; the first band whose floor is reached wins.
FEEDBACK_BANDS = (
    {
        "min_score": 90,
        "title": "Excellent",
        "subtitle": "Outstanding work!",
        "message": "You've mastered this material. Try a harder quiz next.",
        "color": "#10B981",
        "emoji": "🏆",
    },
    {
        "min_score": 70,
        "title": "Good",
        "subtitle": "Well done!",
        "message": "You're on the right track. Review the questions you missed.",
        "color": "#0EA5E9",
        "emoji": "👏",
    },
    {
        "min_score": 50,
        "title": "Keep practicing",
        "subtitle": "You can improve!",
        "message": "A bit more practice on the weak spots will help.",
        "color": "#F59E0B",
        "emoji": "📚",
    },
    {
        "min_score": 0,
        "title": "Needs review",
        "subtitle": "Don't give up!",
        "message": "Go back over the lessons for this topic and try again.",
        "color": "#EF4444",
        "emoji": "💪",
    },
)


def normalize_answer(value: Any) -> Optional[str]:
    """Convert a submitted JSON scalar to the stored text form."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def is_gradable(question_type: Optional[str]) -> bool:
    return (question_type or "multiple_choice") in GRADABLE_TYPES


def check_answer(question_type: Optional[str], correct_answer: Optional[str], given: Optional[str]) -> Optional[bool]:
    """Return whether `given` matches the stored answer.

    Essay questions return `None` (not auto-scored). Gradable types use
    exact equality once surrounding whitespace is trimmed; true/false
    answers also ignore case.
    """
    if not is_gradable(question_type):
        return None
    if given is None or correct_answer is None:
        return False
    if question_type == "true_false":
        return given.strip().casefold() == correct_answer.strip().casefold()
    return given.strip() == correct_answer.strip()


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def percentage(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    return round_half_up(100 * part / whole)


def select_feedback(score: int) -> Dict[str, Any]:
    for band in FEEDBACK_BANDS:
        if score >= band["min_score"]:
            return {k: v for k, v in band.items() if k != "min_score"}
    # scores are never negative; keep the lowest band as a floor anyway
    last = FEEDBACK_BANDS[-1]
    return {k: v for k, v in last.items() if k != "min_score"}


@dataclass
class GradedItem:
    question_id: int
    given_answer: Optional[str]
    correct: Optional[bool]
    time_spent_seconds: int = 0
    points: int = 0


@dataclass
class ScoreCard:
    items: List[GradedItem] = field(default_factory=list)
    correct_count: int = 0
    gradable_count: int = 0
    answered_count: int = 0
    total_questions: int = 0
    score: int = 0
    points_earned: int = 0
    time_taken_seconds: int = 0
    feedback: Dict[str, Any] = field(default_factory=dict)

    @property
    def accuracy(self) -> int:
        """Share of answered gradable questions that were correct."""
        answered_gradable = sum(1 for it in self.items if it.correct is not None and it.given_answer is not None)
        return percentage(self.correct_count, answered_gradable)

    @property
    def completion_rate(self) -> int:
        return percentage(self.answered_count, self.total_questions)


def score_attempt(questions: Sequence[Any], answers: Iterable[Any]) -> ScoreCard:
    """Grade recorded answers against the quiz questions.

    `questions` are the quiz's questions in quiz order (objects exposing
    `id`, `question_type`, `correct_answer` and `points`); `answers` expose
    `question_id`, `selected_answer` and `time_spent_seconds`. Unanswered
    gradable questions count against the score.
    """
    by_question = {a.question_id: a for a in answers}
    card = ScoreCard(total_questions=len(questions))
    for q in questions:
        answer = by_question.get(q.id)
        given = answer.selected_answer if answer is not None else None
        spent = int(answer.time_spent_seconds or 0) if answer is not None else 0
        correct = check_answer(q.question_type, q.correct_answer, given)
        if correct is not None:
            card.gradable_count += 1
            if correct:
                card.correct_count += 1
                card.points_earned += int(q.points or 0)
        if answer is not None:
            card.answered_count += 1
        card.time_taken_seconds += spent
        card.items.append(GradedItem(q.id, given, correct, spent, int(q.points or 0)))
    card.score = percentage(card.correct_count, card.gradable_count)
    card.feedback = select_feedback(card.score)
    return card
