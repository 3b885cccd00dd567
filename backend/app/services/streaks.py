from typing import Any

from .dates import date_to_day_index, day_index_to_date


def empty_streak_stats() -> dict[str, Any]:
    return {
        "total_posts": 0,
        "current_streak": 0,
        "longest_streak": 0,
        "last_posted_date": None,
    }


def compute_streak_stats(days: dict[str, int], end_date: str) -> dict[str, Any]:
    """
    Streaks over a sparse date -> upload count map.

    The current streak ends on end_date, or on the day before when end_date
    itself has no upload yet (today's upload may still be coming).
    """
    entries = [(day, count) for day, count in days.items() if count > 0]
    if not entries:
        return empty_streak_stats()

    total_posts = sum(count for _, count in entries)
    day_indices = sorted({date_to_day_index(day) for day, _ in entries})

    longest_streak = 1
    current_run = 1
    for prev, cur in zip(day_indices, day_indices[1:]):
        current_run = current_run + 1 if cur == prev + 1 else 1
        longest_streak = max(longest_streak, current_run)

    posted = set(day_indices)
    end_day_index = date_to_day_index(end_date)
    if end_day_index in posted:
        cursor = end_day_index
    elif end_day_index - 1 in posted:
        cursor = end_day_index - 1
    else:
        cursor = None

    current_streak = 0
    while cursor is not None and cursor in posted:
        current_streak += 1
        cursor -= 1

    return {
        "total_posts": total_posts,
        "current_streak": current_streak,
        "longest_streak": longest_streak,
        "last_posted_date": day_index_to_date(day_indices[-1]),
    }
