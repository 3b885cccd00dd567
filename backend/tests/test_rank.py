from dataclasses import dataclass

from backend.app.services.dates import list_dates_in_range
from backend.app.services.rank import (
    CADENCE_THRESHOLDS,
    compute_density_rank,
    gap_penalty,
    map_grade,
    map_tier,
    median,
    round_half_up,
    score_cadence,
    score_engagement,
    score_impact,
)


@dataclass
class FakeUpload:
    video_id: str


@dataclass
class FakeStats:
    views: int
    likes: int
    comments: int


def test_cadence_hits_breakpoints_and_is_monotonic():
    for posts_per_week, score in CADENCE_THRESHOLDS:
        assert score_cadence(posts_per_week) == score
    assert score_cadence(-1) == 0
    assert score_cadence(3.0) == 32.0
    assert score_cadence(25) == 40

    previous = -1.0
    for step in range(0, 201):
        value = score_cadence(step / 20)
        assert value >= previous
        previous = value


def test_gap_penalty_bands():
    assert gap_penalty(0) == 0
    assert gap_penalty(7) == 0
    assert gap_penalty(8) == 6
    assert gap_penalty(14) == 6
    assert gap_penalty(15) == 12
    assert gap_penalty(30) == 12
    assert gap_penalty(31) == 18


def test_impact_and_engagement_are_bounded():
    assert score_impact(0) == 0
    assert score_impact(float("nan")) == 0
    assert score_impact(999_999) == 15
    assert score_impact(10**12) == 15
    assert score_engagement(0, 0) == 0
    assert score_engagement(15, 0) == 8
    assert score_engagement(30, 5) == 10


def test_median_and_rounding():
    assert median([]) == 0
    assert median([5, 1, 3]) == 3
    assert median([1, 2, 3, 4]) == 2.5
    assert round_half_up(2.5) == 3
    assert round_half_up(2.4999) == 2
    assert round_half_up(74.5) == 75


def test_grade_mapping():
    assert map_grade(100) == "A+"
    assert map_grade(97) == "A+"
    assert map_grade(96) == "A"
    assert map_grade(90) == "A-"
    assert map_grade(85) == "B"
    assert map_grade(70) == "C-"
    assert map_grade(60) == "D"
    assert map_grade(59) == "F"
    assert map_grade(0) == "F"


def test_tier_mapping():
    assert map_tier(0) == ("Vacuum", {"name": "Mist", "points_to_next": 20})
    assert map_tier(34) == ("Mist", {"name": "Solid", "points_to_next": 1})
    assert map_tier(65) == ("Diamond", {"name": "Neutron Star", "points_to_next": 15})
    assert map_tier(89) == ("Neutron Star", {"name": "Black Hole", "points_to_next": 1})
    assert map_tier(90) == ("Black Hole", {"name": None, "points_to_next": 0})
    assert map_tier(100) == ("Black Hole", {"name": None, "points_to_next": 0})


def test_daily_posting_without_stats_is_posting_only():
    days = {day: 1 for day in list_dates_in_range("2024-06-01", "2024-06-30")}
    rank = compute_density_rank(30, "2024-06-30", days, [])

    assert rank["status"] == "posting_only"
    assert rank["window_days"] == 30
    assert rank["breakdown"] == {"cadence": 40, "consistency": 35, "impact": 0, "engagement": 0}
    assert rank["score"] == 75
    assert rank["grade"] == "C"
    assert rank["tier"] == "Diamond"
    assert rank["next_tier"] == {"name": "Neutron Star", "points_to_next": 5}
    assert rank["metrics"]["max_gap_days"] == 0
    assert rank["metrics"]["active_weeks_pct"] == 1.0
    assert "median_views" not in rank["metrics"]
    assert rank["disclaimer"]


def test_daily_posting_with_strong_stats_is_perfect():
    days = {day: 1 for day in list_dates_in_range("2024-06-01", "2024-06-30")}
    uploads = [FakeUpload(f"v{i}") for i in range(30)]
    stats = {u.video_id: FakeStats(views=999_999, likes=100_000, comments=10_000) for u in uploads}

    rank = compute_density_rank(30, "2024-06-30", days, uploads, stats)

    assert rank["status"] == "ok"
    assert rank["score"] == 100
    assert rank["grade"] == "A+"
    assert rank["tier"] == "Black Hole"
    assert rank["next_tier"] == {"name": None, "points_to_next": 0}
    assert rank["metrics"]["median_views"] == 999_999


def test_empty_stats_map_falls_back_to_posting_only():
    days = {"2024-06-30": 1}
    rank = compute_density_rank(30, "2024-06-30", days, [FakeUpload("a")], {})
    assert rank["status"] == "posting_only"
    assert rank["breakdown"]["impact"] == 0
    assert rank["breakdown"]["engagement"] == 0


def test_engagement_ignores_zero_view_videos():
    uploads = [FakeUpload("a"), FakeUpload("b")]
    stats = {
        "a": FakeStats(views=0, likes=5, comments=1),
        "b": FakeStats(views=1000, likes=15, comments=2),
    }
    rank = compute_density_rank(30, "2024-06-30", {"2024-06-29": 1, "2024-06-30": 1}, uploads, stats)

    assert rank["status"] == "ok"
    assert rank["metrics"]["median_views"] == 500
    assert rank["metrics"]["median_likes_per_1k"] == 15.0
    assert rank["metrics"]["median_comments_per_1k"] == 2.0
    assert rank["breakdown"]["engagement"] == 10


def test_long_gap_zeroes_consistency():
    days = {"2024-06-01": 1, "2024-06-30": 1}
    rank = compute_density_rank(30, "2024-06-30", days, [])
    assert rank["metrics"]["max_gap_days"] == 28
    assert rank["breakdown"]["consistency"] == 0
    assert "Avoid gaps > 7 days for a big boost" in rank["quests"]


def test_no_uploads_scores_zero():
    rank = compute_density_rank(30, "2024-06-30", {}, [])
    assert rank["score"] == 0
    assert rank["grade"] == "F"
    assert rank["tier"] == "Vacuum"
    assert rank["metrics"]["max_gap_days"] == 30
    assert rank["highlights"] == ["Building momentum"]
    assert len(rank["quests"]) <= 3


def test_counts_outside_window_are_ignored():
    days = {"2024-04-01": 50, "2024-06-30": 1}
    rank = compute_density_rank(30, "2024-06-30", days, [])
    assert rank["metrics"]["posts_per_week"] == 0.2


def test_window_is_clamped():
    assert compute_density_rank(10, "2024-06-30", {}, [])["window_days"] == 30
    assert compute_density_rank(365, "2024-06-30", {}, [])["window_days"] == 90
    assert compute_density_rank(45.7, "2024-06-30", {}, [])["window_days"] == 45


def test_score_stays_in_range():
    for count in (0, 1, 3, 10, 100):
        days = {day: count for day in list_dates_in_range("2024-04-01", "2024-06-30")}
        rank = compute_density_rank(90, "2024-06-30", days, [])
        assert 0 <= rank["score"] <= 100
        for value in rank["breakdown"].values():
            assert value >= 0
