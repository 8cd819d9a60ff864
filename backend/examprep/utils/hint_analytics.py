"""Read-only aggregation over hint ledger entries and quiz results.

Every function here folds already-loaded records into plain dictionaries;
nothing is written back. Entries are any objects exposing the `HintUsage`
attributes (`user_id`, `question_id`, `steps_viewed`, `time_spent_on_hint`,
`points_deducted`, `hint_type`, `used_at`).
"""

from __future__ import annotations

from collections import Counter, defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

# A question is flagged only when all three floors are met.
BETTER_HINTS_MIN_USAGE = 10
BETTER_HINTS_MIN_AVG_STEPS = 3
BETTER_HINTS_MIN_AVG_TIME = 120

SUMMARY_FORMATS = {
    "day": "%Y-%m-%d",
    "week": "%Y-W%U",
    "month": "%Y-%m",
}


def _avg(total: float, count: int) -> float:
    return round(total / count, 2) if count else 0.0


def needs_better_hints(usage_count: int, average_steps_viewed: float, average_time_spent: float) -> bool:
    return (
        usage_count >= BETTER_HINTS_MIN_USAGE
        and average_steps_viewed >= BETTER_HINTS_MIN_AVG_STEPS
        and average_time_spent >= BETTER_HINTS_MIN_AVG_TIME
    )


def empty_question_stats() -> Dict[str, Any]:
    return {
        "total_usages": 0,
        "unique_users": 0,
        "average_steps_viewed": 0.0,
        "average_time_spent": 0.0,
        "total_points_deducted": 0.0,
        "hint_type_distribution": {},
        "step_usage_distribution": {},
        "needs_better_hints": False,
    }


def question_hint_stats(entries: Sequence[Any]) -> Dict[str, Any]:
    """Usage statistics for the ledger entries of a single question."""
    if not entries:
        return empty_question_stats()
    count = len(entries)
    avg_steps = _avg(sum(len(e.steps_viewed) for e in entries), count)
    avg_time = _avg(sum(e.time_spent_on_hint for e in entries), count)
    step_counter: Counter = Counter()
    for e in entries:
        step_counter.update(e.steps_viewed)
    return {
        "total_usages": count,
        "unique_users": len({e.user_id for e in entries}),
        "average_steps_viewed": avg_steps,
        "average_time_spent": avg_time,
        "total_points_deducted": sum(e.points_deducted for e in entries),
        "hint_type_distribution": dict(Counter(e.hint_type for e in entries)),
        "step_usage_distribution": {str(step): n for step, n in sorted(step_counter.items())},
        "needs_better_hints": needs_better_hints(count, avg_steps, avg_time),
    }


def questions_needing_better_hints(entries: Iterable[Any]) -> List[Dict[str, Any]]:
    """Flagged questions across the whole ledger, most used first."""
    grouped: Dict[int, List[Any]] = defaultdict(list)
    for e in entries:
        grouped[e.question_id].append(e)
    flagged = []
    for question_id, rows in grouped.items():
        count = len(rows)
        avg_steps = _avg(sum(len(r.steps_viewed) for r in rows), count)
        avg_time = _avg(sum(r.time_spent_on_hint for r in rows), count)
        if needs_better_hints(count, avg_steps, avg_time):
            flagged.append({
                "question_id": question_id,
                "total_usages": count,
                "average_steps_viewed": avg_steps,
                "average_time_spent": avg_time,
            })
    flagged.sort(key=lambda row: row["total_usages"], reverse=True)
    return flagged


def _shift_month(year: int, month: int, delta: int) -> tuple:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def month_trends(entries: Sequence[Any], months: int, now: datetime) -> List[Dict[str, Any]]:
    """Per calendar month buckets for the trailing `months`, oldest first."""
    trends = []
    for offset in range(months - 1, -1, -1):
        y, m = _shift_month(now.year, now.month, -offset)
        ny, nm = _shift_month(y, m, 1)
        start, end = datetime(y, m, 1), datetime(ny, nm, 1)
        bucket = [e for e in entries if start <= e.used_at < end]
        trends.append({
            "month": f"{y:04d}-{m:02d}",
            "count": len(bucket),
            "total_time_spent": sum(e.time_spent_on_hint for e in bucket),
            "average_steps_viewed": _avg(sum(len(e.steps_viewed) for e in bucket), len(bucket)),
        })
    return trends


def user_hint_analytics(
    entries: Sequence[Any],
    difficulty_by_question: Mapping[int, Optional[str]],
    months: int,
    now: datetime,
) -> Dict[str, Any]:
    """Per-user totals, breakdowns and a trailing monthly trend."""
    count = len(entries)
    by_difficulty: Counter = Counter()
    for e in entries:
        by_difficulty[difficulty_by_question.get(e.question_id) or "unknown"] += 1
    return {
        "total_hints_used": count,
        "average_steps_per_hint": _avg(sum(len(e.steps_viewed) for e in entries), count),
        "total_time_spent": sum(e.time_spent_on_hint for e in entries),
        "total_points_deducted": sum(e.points_deducted for e in entries),
        "hints_by_difficulty": dict(by_difficulty),
        "hints_by_type": dict(Counter(e.hint_type for e in entries)),
        "hint_trends": month_trends(entries, months, now),
    }


def usage_summary(entries: Iterable[Any], group_by: str = "day") -> List[Dict[str, Any]]:
    """Ledger totals grouped by day, week or month period labels."""
    if group_by not in SUMMARY_FORMATS:
        raise ValueError(f"group_by must be one of {sorted(SUMMARY_FORMATS)}")
    fmt = SUMMARY_FORMATS[group_by]
    grouped: Dict[str, List[Any]] = defaultdict(list)
    for e in entries:
        grouped[e.used_at.strftime(fmt)].append(e)
    out = []
    for period in sorted(grouped):
        rows = grouped[period]
        out.append({
            "period": period,
            "total_hints": len(rows),
            "unique_users": len({r.user_id for r in rows}),
            "unique_questions": len({r.question_id for r in rows}),
            "total_time_spent": sum(r.time_spent_on_hint for r in rows),
            "total_points_deducted": sum(r.points_deducted for r in rows),
            "average_steps_viewed": _avg(sum(len(r.steps_viewed) for r in rows), len(rows)),
        })
    return out


def performance_window(results: Sequence[Any]) -> Dict[str, List[float]]:
    """Metric histories from quiz results, oldest first.

    `results` expose `score`, `correct_count`, `answered_count`,
    `total_questions`, `time_taken_seconds` and the per-item outcomes; the
    caller bounds how many are passed in.
    """
    ordered = sorted(results, key=lambda r: r.completed_at)
    window = {"score": [], "timeSpent": [], "accuracy": [], "completionRate": []}
    for r in ordered:
        answered_gradable = sum(1 for it in r.items if it.correct is not None and it.given_answer is not None)
        window["score"].append(float(r.score))
        window["timeSpent"].append(float(r.time_taken_seconds))
        window["accuracy"].append(round(100 * r.correct_count / answered_gradable, 2) if answered_gradable else 0.0)
        window["completionRate"].append(
            round(100 * r.answered_count / r.total_questions, 2) if r.total_questions else 0.0
        )
    return window
