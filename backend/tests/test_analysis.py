from datetime import datetime, timezone

import pytest

import backend.app.services.analysis as analysis_module
from backend.app.services.analysis import (
    build_performance,
    is_degraded,
    pick_best_weekday,
    run_analysis,
    weekday_index,
)
from backend.app.services.dates import date_to_day_index
from backend.app.services.errors import (
    ChannelCreationDateError,
    RequestCancelledError,
    YouTubeApiError,
    YouTubeTimeoutError,
)
from backend.app.services.youtube import ResolvedChannel, Upload, UploadScan, VideoPerformance, VideoStats

NOW = datetime(2024, 6, 30, 12, 0, tzinfo=timezone.utc)

RESOLVED = ResolvedChannel(
    id="UC_TEST",
    title="Test Channel",
    thumbnail_url="https://img/test.jpg",
    uploads_playlist_id="UU_TEST",
    handle="@test",
    created_at=datetime(2024, 6, 11, 8, 0, tzinfo=timezone.utc),
)


def make_upload(video_id, local_date):
    return Upload(
        video_id=video_id,
        published_at=f"{local_date}T12:00:00Z",
        local_date=local_date,
        day_index=date_to_day_index(local_date),
    )


def make_scan(dates):
    scan = UploadScan(pages_fetched=1)
    for i, local_date in enumerate(dates):
        upload = make_upload(f"v{i}", local_date)
        scan.counts[local_date] = scan.counts.get(local_date, 0) + 1
        scan.uploads.append(upload)
        scan.ranked_uploads.append(upload)
    return scan


def perf(views, likes=10, comments=1, title="Video"):
    return VideoPerformance(title=title, views=views, likes=likes, comments=comments, duration_seconds=300)


def fail_with(exc):
    def fake(*args, **kwargs):
        raise exc

    return fake


def test_weekday_index_starts_on_sunday():
    assert weekday_index("2024-06-30") == 0
    assert weekday_index("2024-07-01") == 1
    assert weekday_index("2024-06-29") == 6


def test_build_performance_aggregates_days_and_weekdays():
    # 2024-06-02 and 2024-06-09 are Sundays, 2024-06-03 is a Monday.
    uploads = [
        make_upload("a", "2024-06-02"),
        make_upload("b", "2024-06-02"),
        make_upload("c", "2024-06-03"),
        make_upload("d", "2024-06-09"),
        make_upload("gone", "2024-06-10"),
    ]
    performance = build_performance(
        uploads,
        {"a": perf(101, likes=5), "b": perf(200, likes=7), "c": perf(50), "d": perf(999)},
    )

    assert performance["status"] == "ok"
    assert performance["days"]["2024-06-02"] == {"views": 301, "likes": 12, "comments": 2}
    assert "2024-06-10" not in performance["days"]
    assert [video["id"] for video in performance["videos"]] == ["a", "b", "c", "d"]
    assert performance["totals"] == {"views": 1350, "likes": 32, "comments": 4}

    sunday = performance["weekdays"][0]
    assert sunday == {"weekday": 0, "label": "Sun", "video_count": 3, "median_views": 200}
    monday = performance["weekdays"][1]
    assert monday["video_count"] == 1
    assert monday["median_views"] == 50
    assert performance["weekdays"][2]["video_count"] == 0
    assert performance["best_weekday"]["label"] == "Sun"


def test_weekday_median_rounds_half_up():
    uploads = [make_upload("a", "2024-06-02"), make_upload("b", "2024-06-09")]
    performance = build_performance(uploads, {"a": perf(101), "b": perf(200)})
    assert performance["weekdays"][0]["median_views"] == 151


def test_pick_best_weekday_breaks_ties_on_video_count():
    weekdays = [
        {"weekday": 0, "label": "Sun", "video_count": 1, "median_views": 500},
        {"weekday": 1, "label": "Mon", "video_count": 4, "median_views": 500},
        {"weekday": 2, "label": "Tue", "video_count": 0, "median_views": 0},
    ]
    assert pick_best_weekday(weekdays)["label"] == "Mon"
    assert pick_best_weekday([{"weekday": 0, "label": "Sun", "video_count": 0, "median_views": 0}]) is None


def test_run_analysis_full_result(monkeypatch):
    dates = [f"2024-06-{day:02d}" for day in range(1, 31)]
    scan = make_scan(dates)
    seen = {}

    def fake_scan(playlist_id, time_zone, start_day_index, end_day_index, api_key, **kwargs):
        seen.update({"playlist_id": playlist_id, "start": start_day_index, "end": end_day_index, **kwargs})
        return scan

    def fake_performance(video_ids, _api_key, _token=None):
        return {video_id: perf(999_999, likes=100_000, comments=10_000) for video_id in video_ids}

    monkeypatch.setattr(analysis_module, "fetch_upload_counts", fake_scan)
    monkeypatch.setattr(analysis_module, "fetch_video_performance", fake_performance)
    monkeypatch.setattr(analysis_module, "fetch_video_stats", fail_with(AssertionError("not needed")))

    result = run_analysis(RESOLVED, "UTC", 30, "key", now=NOW)

    assert seen["playlist_id"] == "UU_TEST"
    assert seen["start"] == date_to_day_index("2024-06-01")
    assert seen["end"] == date_to_day_index("2024-06-30")
    assert seen["rank_start_day_index"] == date_to_day_index("2024-06-01")
    assert seen["rank_cap"] == 500
    assert result["channel"]["id"] == "UC_TEST"
    assert result["start_date"] == "2024-06-01"
    assert result["end_date"] == "2024-06-30"
    assert result["lookback_days"] == 30
    assert result["stats"]["current_streak"] == 30
    assert result["stats"]["total_posts"] == 30
    assert result["performance"]["status"] == "ok"
    assert len(result["performance"]["videos"]) == 30
    assert result["rank"]["status"] == "ok"
    assert result["rank"]["score"] == 100
    assert not is_degraded(result)


def test_run_analysis_rank_window_tracks_short_lookback(monkeypatch):
    seen = {}

    def fake_scan(*args, **kwargs):
        seen.update(kwargs)
        return make_scan([])

    monkeypatch.setattr(analysis_module, "fetch_upload_counts", fake_scan)
    monkeypatch.setattr(analysis_module, "fetch_video_performance", lambda *args, **kwargs: {})

    result = run_analysis(RESOLVED, "UTC", 365, "key", now=NOW)
    assert result["rank"]["window_days"] == 90
    assert seen["rank_start_day_index"] == date_to_day_index("2024-06-30") - 89
    assert result["stats"]["total_posts"] == 0
    assert result["rank"]["status"] == "posting_only"


def test_run_analysis_falls_back_to_stats_when_performance_fails(monkeypatch):
    scan = make_scan(["2024-06-20", "2024-06-25", "2024-06-30"])
    stats_calls = {"ids": None}

    def fake_stats(video_ids, _api_key, _token=None):
        stats_calls["ids"] = list(video_ids)
        return {video_id: VideoStats(views=1000, likes=20, comments=2) for video_id in video_ids}

    monkeypatch.setattr(analysis_module, "fetch_upload_counts", lambda *args, **kwargs: scan)
    monkeypatch.setattr(analysis_module, "fetch_video_performance", fail_with(YouTubeApiError(500, "backendError")))
    monkeypatch.setattr(analysis_module, "fetch_video_stats", fake_stats)

    result = run_analysis(RESOLVED, "UTC", 30, "key", now=NOW)

    assert stats_calls["ids"] == ["v0", "v1", "v2"]
    assert result["performance"] == {
        "status": "unavailable",
        "message": "Performance data could not be loaded right now.",
    }
    assert result["rank"]["status"] == "ok"
    assert result["stats"]["total_posts"] == 3
    assert is_degraded(result)


def test_run_analysis_degrades_when_all_metrics_fail(monkeypatch):
    scan = make_scan(["2024-06-28", "2024-06-29", "2024-06-30"])
    monkeypatch.setattr(analysis_module, "fetch_upload_counts", lambda *args, **kwargs: scan)
    monkeypatch.setattr(analysis_module, "fetch_video_performance", fail_with(YouTubeApiError(403, "quotaExceeded")))
    monkeypatch.setattr(analysis_module, "fetch_video_stats", fail_with(YouTubeTimeoutError("slow")))

    result = run_analysis(RESOLVED, "UTC", 30, "key", now=NOW)

    assert result["performance"]["status"] == "unavailable"
    assert "limits" in result["performance"]["message"]
    assert result["rank"]["status"] == "posting_only"
    assert result["rank"]["breakdown"]["impact"] == 0
    assert result["rank"]["breakdown"]["engagement"] == 0
    assert result["stats"]["current_streak"] == 3
    assert result["days"] == {"2024-06-28": 1, "2024-06-29": 1, "2024-06-30": 1}


def test_run_analysis_reports_performance_timeout(monkeypatch):
    monkeypatch.setattr(analysis_module, "fetch_upload_counts", lambda *args, **kwargs: make_scan(["2024-06-30"]))
    monkeypatch.setattr(analysis_module, "fetch_video_performance", fail_with(YouTubeTimeoutError("slow")))
    monkeypatch.setattr(analysis_module, "fetch_video_stats", fail_with(YouTubeTimeoutError("slow")))

    result = run_analysis(RESOLVED, "UTC", 30, "key", now=NOW)
    assert result["performance"]["message"] == "Performance data request timed out. Please try again."


def test_run_analysis_propagates_cancellation(monkeypatch):
    monkeypatch.setattr(analysis_module, "fetch_upload_counts", lambda *args, **kwargs: make_scan(["2024-06-30"]))
    monkeypatch.setattr(analysis_module, "fetch_video_performance", fail_with(RequestCancelledError("gone")))

    with pytest.raises(RequestCancelledError):
        run_analysis(RESOLVED, "UTC", 30, "key", now=NOW)


def test_run_analysis_propagates_scan_failure(monkeypatch):
    monkeypatch.setattr(analysis_module, "fetch_upload_counts", fail_with(YouTubeApiError(404, "playlistNotFound")))

    with pytest.raises(YouTubeApiError):
        run_analysis(RESOLVED, "UTC", 30, "key", now=NOW)


def test_run_analysis_lifetime_starts_at_creation(monkeypatch):
    seen = {}

    def fake_scan(playlist_id, time_zone, start_day_index, end_day_index, api_key, **kwargs):
        seen["start"] = start_day_index
        return make_scan(["2024-06-15"])

    monkeypatch.setattr(analysis_module, "fetch_upload_counts", fake_scan)
    monkeypatch.setattr(analysis_module, "fetch_video_performance", lambda ids, *_args: {i: perf(100) for i in ids})

    result = run_analysis(RESOLVED, "UTC", None, "key", now=NOW)
    assert result["start_date"] == "2024-06-11"
    assert result["lookback_days"] == 20
    assert seen["start"] == date_to_day_index("2024-06-11")
    assert result["rank"]["window_days"] == 30


def test_run_analysis_lifetime_requires_creation_date(monkeypatch):
    monkeypatch.setattr(analysis_module, "fetch_upload_counts", fail_with(AssertionError("should not scan")))
    anonymous = ResolvedChannel(
        id="UC_NODATE",
        title="No Date",
        thumbnail_url="",
        uploads_playlist_id="UU_NODATE",
    )
    with pytest.raises(ChannelCreationDateError):
        run_analysis(anonymous, "UTC", None, "key", now=NOW)
