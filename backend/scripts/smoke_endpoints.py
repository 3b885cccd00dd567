from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

from starlette.requests import Request

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import backend.main as main_module
import backend.app.services.analysis as analysis_module
from backend.app.services.dates import date_to_day_index, format_date_in_timezone
from backend.app.services.errors import YouTubeApiError
from backend.app.services.youtube import ResolvedChannel, Upload, UploadScan, VideoPerformance


def make_request(ip: str = "127.0.0.1") -> Request:
    return Request(
        {
            "type": "http",
            "method": "POST",
            "path": "/analyze",
            "headers": [],
            "client": (ip, 8000),
            "query_string": b"",
            "server": ("test", 80),
            "scheme": "http",
            "http_version": "1.1",
        }
    )


def make_scan(days_ago: list[int]) -> UploadScan:
    scan = UploadScan(pages_fetched=1)
    now = datetime.now(timezone.utc)
    for i, offset in enumerate(sorted(days_ago, reverse=True)):
        published = now - timedelta(days=offset)
        local_date = format_date_in_timezone(published, "UTC")
        upload = Upload(
            video_id=f"vid{i}",
            published_at=published.isoformat().replace("+00:00", "Z"),
            local_date=local_date,
            day_index=date_to_day_index(local_date),
        )
        scan.counts[local_date] = scan.counts.get(local_date, 0) + 1
        scan.uploads.append(upload)
        scan.ranked_uploads.append(upload)
    return scan


def fake_performance(video_ids: list[str], _api_key: str, _token=None) -> dict[str, VideoPerformance]:
    return {
        video_id: VideoPerformance(title=f"Video {video_id}", views=5000, likes=150, comments=12, duration_seconds=420)
        for video_id in video_ids
    }


RESOLVED = ResolvedChannel(
    id="UC_SMOKE",
    title="Smoke Channel",
    thumbnail_url="https://img/smoke.jpg",
    uploads_playlist_id="UU_SMOKE",
    handle="@smoke",
)


def assert_true(condition: bool, message: str) -> None:
    if not condition:
        raise AssertionError(message)


def reset_state() -> None:
    main_module.ANALYSIS_CACHE.clear()
    main_module.CHANNEL_RESOLVE_CACHE.clear()
    main_module.API_RATE_LIMITER.clear()


def test_health() -> None:
    payload = main_module.health()
    assert_true(payload.get("ok") is True, "/health should return ok=true")


def test_analyze_cache() -> None:
    reset_state()
    request = make_request()
    call_count = {"scan": 0}

    def fake_scan(*args, **kwargs):
        _ = (args, kwargs)
        call_count["scan"] += 1
        return make_scan([0, 1, 2, 5, 9])

    body = main_module.AnalyzeRequest(channel="@smoke", timezone="UTC", lookbackDays=90)
    with (
        patch.object(main_module, "YOUTUBE_API_KEY", "smoke-key"),
        patch.object(main_module, "resolve_channel", return_value=RESOLVED),
        patch.object(analysis_module, "fetch_upload_counts", side_effect=fake_scan),
        patch.object(analysis_module, "fetch_video_performance", side_effect=fake_performance),
    ):
        payload_1 = main_module.analyze(body, request)
        payload_2 = main_module.analyze(body, request)

    assert_true(call_count["scan"] == 1, "/analyze should scan uploads once then cache")
    assert_true(payload_1 == payload_2, "/analyze cached response should be identical")
    assert_true(payload_1["performance"]["status"] == "ok", "/analyze performance should be ok")
    assert_true(payload_1["rank"]["status"] == "ok", "/analyze rank should be ok with stats")


def test_analyze_degraded() -> None:
    reset_state()
    request = make_request()

    def failing_performance(*args, **kwargs):
        _ = (args, kwargs)
        raise YouTubeApiError(403, "quotaExceeded")

    body = main_module.AnalyzeRequest(channel="@smoke", timezone="UTC", lookbackDays=30)
    with (
        patch.object(main_module, "YOUTUBE_API_KEY", "smoke-key"),
        patch.object(main_module, "resolve_channel", return_value=RESOLVED),
        patch.object(analysis_module, "fetch_upload_counts", return_value=make_scan([0, 1])),
        patch.object(analysis_module, "fetch_video_performance", side_effect=failing_performance),
        patch.object(analysis_module, "fetch_video_stats", side_effect=failing_performance),
    ):
        payload = main_module.analyze(body, request)

    assert_true(payload["performance"]["status"] == "unavailable", "performance should degrade to unavailable")
    assert_true(payload["rank"]["status"] == "posting_only", "rank should degrade to posting_only")
    assert_true(payload["stats"]["total_posts"] == 2, "streak stats should survive a metrics failure")


def test_rate_limit() -> None:
    reset_state()
    request = make_request("10.0.0.9")
    body = main_module.AnalyzeRequest(channel="", timezone="UTC")
    rejected = None
    for _ in range(main_module.RATE_LIMIT_MAX_REQUESTS + 1):
        try:
            main_module.analyze(body, request)
        except main_module.AnalyzeError as exc:
            if exc.error_code == "rate_limited":
                rejected = exc
    assert_true(rejected is not None, "/analyze should rate limit after the window budget")
    assert_true(int(rejected.headers["Retry-After"]) > 0, "rate limit should carry Retry-After")


def run() -> int:
    checks = [
        ("health", test_health),
        ("analyze cache", test_analyze_cache),
        ("analyze degraded metrics", test_analyze_degraded),
        ("analyze rate limit", test_rate_limit),
    ]
    failures = []

    for check_name, check_fn in checks:
        try:
            check_fn()
            print(f"[PASS] {check_name}")
        except Exception as exc:  # pragma: no cover - smoke script output path
            failures.append((check_name, str(exc)))
            print(f"[FAIL] {check_name}: {exc}")

    if failures:
        print(f"\nSmoke checks failed: {len(failures)}")
        for check_name, message in failures:
            print(f"- {check_name}: {message}")
        return 1

    print("\nAll smoke checks passed.")
    return 0


if __name__ == "__main__":
    sys.exit(run())
