import math
from typing import Any, Iterable, Mapping, Protocol

from .dates import date_to_day_index

RANK_WINDOW_MIN_DAYS = 30
RANK_WINDOW_MAX_DAYS = 90

# (posts per week, score) breakpoints, linearly interpolated.
CADENCE_THRESHOLDS = [
    (0.0, 0.0),
    (0.5, 10.0),
    (1.0, 18.0),
    (2.0, 28.0),
    (4.0, 36.0),
    (7.0, 40.0),
]

GRADES = [
    (97, "A+"),
    (93, "A"),
    (90, "A-"),
    (87, "B+"),
    (83, "B"),
    (80, "B-"),
    (77, "C+"),
    (73, "C"),
    (70, "C-"),
    (60, "D"),
]

TIERS = [
    ("Vacuum", 0),
    ("Mist", 20),
    ("Solid", 35),
    ("Alloy", 50),
    ("Diamond", 65),
    ("Neutron Star", 80),
    ("Black Hole", 90),
]

DISCLAIMER = "Not affiliated with YouTube; based on public data."


class RankStats(Protocol):
    views: int
    likes: int
    comments: int


def clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def median(values: Iterable[float]) -> float:
    """Median with the two middle values averaged on even-length input."""
    ordered = sorted(values)
    if not ordered:
        return 0
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2
    return ordered[mid]


def rank_window_for(lookback_days: int) -> int:
    return max(RANK_WINDOW_MIN_DAYS, min(RANK_WINDOW_MAX_DAYS, int(lookback_days)))


def score_cadence(posts_per_week: float) -> float:
    if posts_per_week <= CADENCE_THRESHOLDS[0][0]:
        return 0.0
    for (prev_ppw, prev_score), (next_ppw, next_score) in zip(CADENCE_THRESHOLDS, CADENCE_THRESHOLDS[1:]):
        if posts_per_week <= next_ppw:
            span = next_ppw - prev_ppw
            ratio = 1.0 if span == 0 else (posts_per_week - prev_ppw) / span
            return prev_score + ratio * (next_score - prev_score)
    return CADENCE_THRESHOLDS[-1][1]


def gap_penalty(max_gap_days: int) -> float:
    if max_gap_days > 30:
        return 18.0
    if max_gap_days > 14:
        return 12.0
    if max_gap_days > 7:
        return 6.0
    return 0.0


def score_consistency(active_weeks_pct: float, days_posted_pct: float, max_gap_days: int) -> float:
    base = 35 * (0.6 * active_weeks_pct + 0.4 * days_posted_pct)
    return clamp(base - gap_penalty(max_gap_days), 0, 35)


def score_impact(median_views: float) -> float:
    if not math.isfinite(median_views) or median_views <= 0:
        return 0.0
    return clamp(math.log10(median_views + 1) / 6 * 15, 0, 15)


def score_engagement(median_likes_per_1k: float, median_comments_per_1k: float) -> float:
    likes_score = median_likes_per_1k / 15 * 8
    comments_score = median_comments_per_1k / 2 * 2
    return clamp(likes_score + comments_score, 0, 10)


def map_grade(score: int) -> str:
    for min_score, grade in GRADES:
        if score >= min_score:
            return grade
    return "F"


def map_tier(score: int) -> tuple[str, dict[str, Any]]:
    index = 0
    for i, (_, min_score) in enumerate(TIERS):
        if score >= min_score:
            index = i
        else:
            break
    tier_name = TIERS[index][0]
    if index + 1 >= len(TIERS):
        return tier_name, {"name": None, "points_to_next": 0}
    next_name, next_min = TIERS[index + 1]
    return tier_name, {"name": next_name, "points_to_next": int(clamp(next_min - score, 0, 100))}


def _highlights_and_quests(
    posts_per_week: float,
    active_weeks_pct: float,
    max_gap_days: int,
    status: str,
    median_views: float,
    impact_score: float,
) -> tuple[list[str], list[str]]:
    highlights: list[str] = []
    quests: list[str] = []

    if posts_per_week >= 1:
        highlights.append(f"{posts_per_week:.1f} uploads/week")
    if active_weeks_pct >= 0.85:
        highlights.append(f"Active {round_half_up(active_weeks_pct * 100)}% of weeks")
    if max_gap_days <= 7:
        highlights.append("No gaps longer than a week")
    elif max_gap_days <= 14:
        highlights.append(f"Longest gap {max_gap_days} days")
    if status == "ok" and median_views > 0:
        highlights.append(f"Median {round_half_up(median_views):,} views/video")

    if posts_per_week < 2:
        quests.append("Add 1 more upload day each week")
    if max_gap_days > 7:
        quests.append("Avoid gaps > 7 days for a big boost")
    if active_weeks_pct < 0.9:
        quests.append("Post at least once every week")
    if status == "ok" and impact_score < 6:
        quests.append("Experiment with titles/thumbnails (median views is low)")

    return (
        highlights[:4] or ["Building momentum"],
        quests[:3] or ["Stay consistent for the next boost"],
    )


def compute_density_rank(
    rank_window_days: int,
    end_date: str,
    day_counts: Mapping[str, int],
    ranked_uploads: Iterable[Any],
    stats_by_id: Mapping[str, RankStats] | None = None,
) -> dict[str, Any]:
    """
    Composite 0-100 posting density score over the trailing ranking window.

    Cadence (40) and consistency (35) come from day counts alone. Impact (15)
    and engagement (10) need per-video stats; without them the result is
    flagged "posting_only" and both are zero.
    """
    window_days = rank_window_for(math.floor(rank_window_days))
    end_day_index = date_to_day_index(end_date)
    start_day_index = end_day_index - window_days + 1

    total_uploads = 0
    posted_days: set[int] = set()
    for day, count in day_counts.items():
        day_index = date_to_day_index(day)
        if day_index < start_day_index or day_index > end_day_index or count <= 0:
            continue
        posted_days.add(day_index)
        total_uploads += count

    posts_per_week = total_uploads / (window_days / 7)
    days_posted_pct = len(posted_days) / window_days
    total_weeks = max(1, math.ceil(window_days / 7))
    active_weeks = {(day_index - start_day_index) // 7 for day_index in posted_days}
    active_weeks_pct = len(active_weeks) / total_weeks

    max_gap_days = 0
    current_gap = 0
    for day_index in range(start_day_index, end_day_index + 1):
        if day_index in posted_days:
            max_gap_days = max(max_gap_days, current_gap)
            current_gap = 0
        else:
            current_gap += 1
    max_gap_days = max(max_gap_days, current_gap)

    cadence_score = score_cadence(posts_per_week)
    consistency_score = score_consistency(active_weeks_pct, days_posted_pct, max_gap_days)

    median_views = 0.0
    median_likes_per_1k = 0.0
    median_comments_per_1k = 0.0
    impact_score = 0.0
    engagement_score = 0.0
    status = "posting_only"

    if stats_by_id:
        views: list[int] = []
        likes_per_1k: list[float] = []
        comments_per_1k: list[float] = []
        for upload in ranked_uploads:
            stats = stats_by_id.get(upload.video_id)
            if stats is None:
                continue
            views.append(stats.views)
            if stats.views > 0:
                likes_per_1k.append(stats.likes / stats.views * 1000)
                comments_per_1k.append(stats.comments / stats.views * 1000)
        median_views = median(views)
        median_likes_per_1k = median(likes_per_1k)
        median_comments_per_1k = median(comments_per_1k)
        impact_score = score_impact(median_views)
        engagement_score = score_engagement(median_likes_per_1k, median_comments_per_1k)
        status = "ok"

    score = int(clamp(round_half_up(cadence_score + consistency_score + impact_score + engagement_score), 0, 100))
    tier, next_tier = map_tier(score)
    highlights, quests = _highlights_and_quests(
        posts_per_week, active_weeks_pct, max_gap_days, status, median_views, impact_score
    )

    metrics: dict[str, Any] = {
        "posts_per_week": round(posts_per_week, 1),
        "days_posted_pct": round(days_posted_pct, 3),
        "active_weeks_pct": round(active_weeks_pct, 3),
        "max_gap_days": max_gap_days,
    }
    if status == "ok":
        metrics["median_views"] = round_half_up(median_views)
        metrics["median_likes_per_1k"] = round(median_likes_per_1k, 2)
        metrics["median_comments_per_1k"] = round(median_comments_per_1k, 2)

    return {
        "status": status,
        "window_days": window_days,
        "score": score,
        "grade": map_grade(score),
        "tier": tier,
        "next_tier": next_tier,
        "breakdown": {
            "cadence": round_half_up(cadence_score),
            "consistency": round_half_up(consistency_score),
            "impact": round_half_up(impact_score),
            "engagement": round_half_up(engagement_score),
        },
        "metrics": metrics,
        "highlights": highlights,
        "quests": quests,
        "disclaimer": DISCLAIMER,
    }
