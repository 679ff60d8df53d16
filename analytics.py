"""
Productivity statistics derived from a user's subjects and tasks.

Nothing here is stored; the snapshot is rebuilt on every request.
"""

from datetime import date, timedelta, timezone
from typing import Sequence

from schemas import AnalyticsSnapshot, DayCount, OverallStats, Subject, SubjectStat, Task

WEEK_DAYS = 7


def _utc_day(task: Task) -> date:
    return task.created_at.astimezone(timezone.utc).date()


def completion_rate(completed: int, total: int) -> float:
    if total == 0:
        return 0.0
    return completed / total * 100


def subject_stats(subjects: Sequence[Subject], tasks: Sequence[Task]) -> list:
    stats = []
    for subject in subjects:
        own = [t for t in tasks if t.subject_id == subject.id]
        done = sum(1 for t in own if t.status == "done")
        stats.append(
            SubjectStat(
                subject_id=subject.id,
                subject_name=subject.name,
                color_tag=subject.color_tag,
                total_tasks=len(own),
                completed_tasks=done,
                completion_rate=completion_rate(done, len(own)),
            )
        )
    return stats


def week_series(tasks: Sequence[Task], today: date) -> list:
    """
    Done tasks per day for the last seven days, oldest first, ending today.

    A task is counted on the day it was created, not the day it was finished;
    there is no completion timestamp to go by.
    """
    days = []
    for offset in range(WEEK_DAYS - 1, -1, -1):
        day = today - timedelta(days=offset)
        count = sum(1 for t in tasks if t.status == "done" and _utc_day(t) == day)
        days.append(DayCount(date=day, completed=count))
    return days


def overall_stats(tasks: Sequence[Task]) -> OverallStats:
    return OverallStats(
        total=len(tasks),
        completed=sum(1 for t in tasks if t.status == "done"),
        in_progress=sum(1 for t in tasks if t.status == "in-progress"),
        todo=sum(1 for t in tasks if t.status == "to-do"),
    )


def aggregate(subjects: Sequence[Subject], tasks: Sequence[Task], today: date) -> AnalyticsSnapshot:
    return AnalyticsSnapshot(
        subject_stats=subject_stats(subjects, tasks),
        week_data=week_series(tasks, today),
        overall=overall_stats(tasks),
    )
