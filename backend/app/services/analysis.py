import logging
from datetime import date, datetime
from typing import Any

from .dates import (
    DateWindow,
    date_range_from_start_date,
    date_range_in_timezone,
    format_date_in_timezone,
)
from .deadline import CancelToken
from .errors import ChannelCreationDateError, YouTubeApiError, YouTubeTimeoutError
from .rank import compute_density_rank, median, rank_window_for, round_half_up
from .streaks import compute_streak_stats
from .youtube import (
    RANK_UPLOAD_CAP,
    ResolvedChannel,
    Upload,
    VideoPerformance,
    VideoStats,
    fetch_upload_counts,
    fetch_video_performance,
    fetch_video_stats,
)

logger = logging.getLogger(__name__)

WEEKDAY_LABELS = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]


def weekday_index(local_date: str) -> int:
    # 0 = Sunday
    return date.fromisoformat(local_date).isoweekday() % 7


def weekday_median_views(views: list[int]) -> int:
    return round_half_up(median(views))


def pick_best_weekday(weekdays: list[dict[str, Any]]) -> dict[str, Any] | None:
    best = None
    for day in weekdays:
        if day["video_count"] == 0:
            continue
        if (
            best is None
            or day["median_views"] > best["median_views"]
            or (day["median_views"] == best["median_views"] and day["video_count"] > best["video_count"])
        ):
            best = day
    return best


def build_performance(uploads: list[Upload], performance_map: dict[str, VideoPerformance]) -> dict[str, Any]:
    videos = []
    days: dict[str, dict[str, int]] = {}
    totals = {"views": 0, "likes": 0, "comments": 0}
    weekday_buckets: list[list[int]] = [[] for _ in WEEKDAY_LABELS]

    for upload in uploads:
        perf = performance_map.get(upload.video_id)
        if perf is None:
            continue
        videos.append(
            {
                "id": upload.video_id,
                "title": perf.title,
                "published_at": upload.published_at,
                "local_date": upload.local_date,
                "views": perf.views,
                "likes": perf.likes,
                "comments": perf.comments,
                "duration_seconds": perf.duration_seconds,
            }
        )
        day_totals = days.setdefault(upload.local_date, {"views": 0, "likes": 0, "comments": 0})
        for key, value in (("views", perf.views), ("likes", perf.likes), ("comments", perf.comments)):
            day_totals[key] += value
            totals[key] += value
        weekday_buckets[weekday_index(upload.local_date)].append(perf.views)

    weekdays = [
        {
            "weekday": weekday,
            "label": label,
            "video_count": len(weekday_buckets[weekday]),
            "median_views": weekday_median_views(weekday_buckets[weekday]),
        }
        for weekday, label in enumerate(WEEKDAY_LABELS)
    ]
    return {
        "status": "ok",
        "days": days,
        "videos": videos,
        "weekdays": weekdays,
        "best_weekday": pick_best_weekday(weekdays),
        "totals": totals,
    }


def performance_unavailable_message(exc: Exception) -> str:
    if isinstance(exc, YouTubeTimeoutError):
        return "Performance data request timed out. Please try again."
    if isinstance(exc, YouTubeApiError):
        if exc.is_quota:
            return "Performance data unavailable due to YouTube API limits."
        return "Performance data could not be loaded right now."
    return "Performance data is temporarily unavailable."


def resolve_window(
    resolved: ResolvedChannel,
    time_zone: str,
    lookback_days: int | None,
    now: datetime | None = None,
) -> DateWindow:
    """Fixed lookback window, or the channel's lifetime when lookback_days is None."""
    if lookback_days is not None:
        return date_range_in_timezone(time_zone, lookback_days, now=now)
    if resolved.created_at is None:
        raise ChannelCreationDateError("Channel creation date not available.")
    created_date = format_date_in_timezone(resolved.created_at, time_zone)
    return date_range_from_start_date(time_zone, created_date, now=now)


def is_degraded(result: dict[str, Any]) -> bool:
    return result["performance"]["status"] != "ok" or result["rank"]["status"] != "ok"


def run_analysis(
    resolved: ResolvedChannel,
    time_zone: str,
    lookback_days: int | None,
    api_key: str,
    token: CancelToken | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    window = resolve_window(resolved, time_zone, lookback_days, now=now)
    rank_window_days = rank_window_for(window.lookback_days)
    rank_start_day_index = window.end_day_index - rank_window_days + 1

    scan = fetch_upload_counts(
        resolved.uploads_playlist_id,
        time_zone,
        window.start_day_index,
        window.end_day_index,
        api_key,
        rank_start_day_index=rank_start_day_index,
        rank_end_day_index=window.end_day_index,
        rank_cap=RANK_UPLOAD_CAP,
        token=token,
    )
    stats = compute_streak_stats(scan.counts, window.end_date)

    performance_map: dict[str, VideoPerformance] | None = None
    try:
        video_ids = list(dict.fromkeys(upload.video_id for upload in scan.uploads))
        performance_map = fetch_video_performance(video_ids, api_key, token)
        performance = build_performance(scan.uploads, performance_map)
    except (YouTubeApiError, YouTubeTimeoutError) as exc:
        logger.warning("Performance data unavailable for %s: %s", resolved.id, exc)
        performance_map = None
        performance = {"status": "unavailable", "message": performance_unavailable_message(exc)}

    stats_by_id: dict[str, VideoStats] | None = None
    if performance_map:
        ranked_stats: dict[str, VideoStats] = {}
        for upload in scan.ranked_uploads:
            perf = performance_map.get(upload.video_id)
            if perf is not None:
                ranked_stats[upload.video_id] = VideoStats(views=perf.views, likes=perf.likes, comments=perf.comments)
        stats_by_id = ranked_stats or None

    if stats_by_id is None and scan.ranked_uploads:
        try:
            rank_ids = list(dict.fromkeys(upload.video_id for upload in scan.ranked_uploads))
            stats_by_id = fetch_video_stats(rank_ids, api_key, token) or None
        except (YouTubeApiError, YouTubeTimeoutError) as exc:
            logger.warning("Ranking stats unavailable for %s: %s", resolved.id, exc)
            stats_by_id = None

    rank = compute_density_rank(
        rank_window_days,
        window.end_date,
        scan.counts,
        scan.ranked_uploads,
        stats_by_id,
    )

    return {
        "channel": resolved.channel_info(),
        "timezone": time_zone,
        "lookback_days": window.lookback_days,
        "start_date": window.start_date,
        "end_date": window.end_date,
        "days": scan.counts,
        "stats": stats,
        "performance": performance,
        "rank": rank,
    }
