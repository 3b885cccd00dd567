import logging
import queue
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar
from urllib.parse import urlsplit

import requests
from pydantic import BaseModel, Field, ValidationError

from .dates import date_to_day_index, format_date_in_timezone
from .deadline import CancelToken
from .errors import (
    ChannelNotFoundError,
    InvalidChannelReferenceError,
    YouTubeApiError,
    YouTubeTimeoutError,
)

logger = logging.getLogger(__name__)

YOUTUBE_API_BASE = "https://www.googleapis.com/youtube/v3"
YOUTUBE_REQUEST_TIMEOUT_SECONDS = 6
PLAYLIST_PAGE_SIZE = 50
VIDEO_BATCH_SIZE = 50
VIDEO_BATCH_CONCURRENCY = 4
RANK_UPLOAD_CAP = 500

YOUTUBE_HOSTS = {"youtube.com", "www.youtube.com", "m.youtube.com"}
HANDLE_INPUT_RE = re.compile(r"^@([A-Za-z0-9._-]+)(?:[/?#].*)?$")
HANDLE_PATH_RE = re.compile(r"^/@([A-Za-z0-9._-]+)(?:/|$)")
CHANNEL_ID_PATH_RE = re.compile(r"^/channel/(UC[a-zA-Z0-9_-]{22})(?:/|$)")
ISO_DURATION_RE = re.compile(r"^P(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?)?$")

EMPTY_CHANNEL_MESSAGE = "Paste a channel link or handle in one of the supported formats."
SUPPORTED_FORMATS_MESSAGE = (
    "Only these formats are supported: https://www.youtube.com/@handle, @handle, "
    "or https://www.youtube.com/channel/UCxxxxxxxxxxxxxxxxxxxxxx"
)

T = TypeVar("T")
ModelT = TypeVar("ModelT", bound=BaseModel)


# ---------------------------
# Upstream response schemas
# ---------------------------

class _Thumbnail(BaseModel):
    url: str | None = None


class _ChannelSnippet(BaseModel):
    title: str | None = None
    custom_url: str | None = Field(default=None, alias="customUrl")
    published_at: str | None = Field(default=None, alias="publishedAt")
    thumbnails: dict[str, _Thumbnail] = Field(default_factory=dict)


class _ChannelContentDetails(BaseModel):
    related_playlists: dict[str, str | None] = Field(default_factory=dict, alias="relatedPlaylists")


class _ChannelItem(BaseModel):
    id: str | None = None
    snippet: _ChannelSnippet | None = None
    content_details: _ChannelContentDetails | None = Field(default=None, alias="contentDetails")


class ChannelListResponse(BaseModel):
    items: list[_ChannelItem] = Field(default_factory=list)


class _PlaylistItemDetails(BaseModel):
    video_id: str | None = Field(default=None, alias="videoId")
    video_published_at: str | None = Field(default=None, alias="videoPublishedAt")


class _PlaylistItem(BaseModel):
    content_details: _PlaylistItemDetails | None = Field(default=None, alias="contentDetails")


class PlaylistItemsResponse(BaseModel):
    items: list[_PlaylistItem] = Field(default_factory=list)
    next_page_token: str | None = Field(default=None, alias="nextPageToken")


class _VideoSnippet(BaseModel):
    title: str | None = None


class _VideoStatistics(BaseModel):
    view_count: int = Field(default=0, alias="viewCount")
    like_count: int = Field(default=0, alias="likeCount")
    comment_count: int = Field(default=0, alias="commentCount")


class _VideoContentDetails(BaseModel):
    duration: str = ""


class _VideoItem(BaseModel):
    id: str | None = None
    snippet: _VideoSnippet | None = None
    statistics: _VideoStatistics = Field(default_factory=_VideoStatistics)
    content_details: _VideoContentDetails = Field(default_factory=_VideoContentDetails, alias="contentDetails")


class VideosListResponse(BaseModel):
    items: list[_VideoItem] = Field(default_factory=list)


# ---------------------------
# Domain records
# ---------------------------

@dataclass(frozen=True)
class ResolvedChannel:
    id: str
    title: str
    thumbnail_url: str
    uploads_playlist_id: str
    handle: str | None = None
    created_at: datetime | None = None

    def channel_info(self) -> dict[str, Any]:
        info: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "thumbnail_url": self.thumbnail_url,
        }
        if self.handle:
            info["handle"] = self.handle
        return info


@dataclass(frozen=True)
class Upload:
    video_id: str
    published_at: str
    local_date: str
    day_index: int


@dataclass
class UploadScan:
    counts: dict[str, int] = field(default_factory=dict)
    uploads: list[Upload] = field(default_factory=list)
    ranked_uploads: list[Upload] = field(default_factory=list)
    pages_fetched: int = 0


@dataclass(frozen=True)
class VideoStats:
    views: int
    likes: int
    comments: int


@dataclass(frozen=True)
class VideoPerformance:
    title: str
    views: int
    likes: int
    comments: int
    duration_seconds: int


# ---------------------------
# Helpers
# ---------------------------

def iso8601_duration_to_seconds(duration: str) -> int:
    match = ISO_DURATION_RE.match((duration or "").strip())
    if not match:
        return 0
    days = int(match.group(1) or 0)
    hours = int(match.group(2) or 0)
    minutes = int(match.group(3) or 0)
    seconds = int(match.group(4) or 0)
    return days * 86400 + hours * 3600 + minutes * 60 + seconds


def chunked(lst, n):
    for i in range(0, len(lst), n):
        yield lst[i:i + n]


def parse_iso8601_datetime(value: str | None):
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_model(model: type[ModelT], payload: dict[str, Any]) -> ModelT:
    try:
        return model.model_validate(payload)
    except ValidationError:
        raise YouTubeApiError(502, f"Unexpected YouTube response shape ({model.__name__}).")


def parse_channel_input(raw: str) -> tuple[str, str]:
    """
    Parse a user supplied channel reference.
    Returns: (kind, value) where kind is "handle" or "id".
    """
    trimmed = (raw or "").strip()
    if not trimmed:
        raise InvalidChannelReferenceError(EMPTY_CHANNEL_MESSAGE)

    m = HANDLE_INPUT_RE.match(trimmed)
    if m:
        return "handle", m.group(1)

    lowered = trimmed.lower()
    if lowered.startswith(("http://", "https://")):
        with_scheme = trimmed
    elif lowered.startswith(tuple(f"{host}/" for host in YOUTUBE_HOSTS)):
        with_scheme = f"https://{trimmed}"
    else:
        raise InvalidChannelReferenceError(SUPPORTED_FORMATS_MESSAGE)

    try:
        parts = urlsplit(with_scheme)
        host = (parts.hostname or "").lower()
    except ValueError:
        raise InvalidChannelReferenceError(SUPPORTED_FORMATS_MESSAGE)

    if host in YOUTUBE_HOSTS:
        m = HANDLE_PATH_RE.match(parts.path)
        if m:
            return "handle", m.group(1)
        m = CHANNEL_ID_PATH_RE.match(parts.path)
        if m:
            return "id", m.group(1)

    raise InvalidChannelReferenceError(SUPPORTED_FORMATS_MESSAGE)


def youtube_api_get(
    endpoint: str,
    params: dict[str, Any],
    api_key: str,
    token: CancelToken | None = None,
    timeout: float = YOUTUBE_REQUEST_TIMEOUT_SECONDS,
) -> dict[str, Any]:
    if token is not None:
        token.raise_if_cancelled()
        timeout = token.clamp_timeout(timeout)

    try:
        response = requests.get(
            f"{YOUTUBE_API_BASE}/{endpoint}",
            params={**params, "key": api_key},
            timeout=timeout,
        )
    except requests.Timeout:
        raise YouTubeTimeoutError("YouTube API request timed out.")
    except requests.RequestException:
        raise YouTubeApiError(None, "YouTube is temporarily unavailable.")

    # A result that arrives after cancellation is discarded.
    if token is not None:
        token.raise_if_cancelled()

    if response.status_code == 200:
        try:
            return response.json()
        except ValueError:
            raise YouTubeApiError(502, "YouTube returned an unreadable response.")

    message = "YouTube API request failed."
    try:
        error = (response.json() or {}).get("error") or {}
        if isinstance(error, dict) and error.get("message"):
            message = str(error["message"])
    except ValueError:
        pass
    logger.warning("YouTube %s returned %s: %s", endpoint, response.status_code, message)
    raise YouTubeApiError(response.status_code, message)


# ---------------------------
# Channel resolver
# ---------------------------

def resolve_channel(lookup: tuple[str, str], api_key: str, token: CancelToken | None = None) -> ResolvedChannel:
    kind, value = lookup
    params: dict[str, Any] = {
        "part": "snippet,contentDetails",
        "fields": (
            "items(id,snippet(title,customUrl,publishedAt,thumbnails(high(url),medium(url),default(url))),"
            "contentDetails(relatedPlaylists(uploads)))"
        ),
    }
    if kind == "id":
        params["id"] = value
    else:
        params["forHandle"] = value

    payload = _parse_model(ChannelListResponse, youtube_api_get("channels", params, api_key, token))
    item = payload.items[0] if payload.items else None
    if item is None or not item.id:
        raise ChannelNotFoundError("Channel not found.")

    uploads = ((item.content_details.related_playlists if item.content_details else {}) or {}).get("uploads")
    if not uploads:
        raise ChannelNotFoundError("Uploads playlist not available.")

    snippet = item.snippet or _ChannelSnippet()
    thumbnail_url = ""
    for key in ("high", "medium", "default"):
        thumb = snippet.thumbnails.get(key)
        if thumb and thumb.url:
            thumbnail_url = thumb.url
            break

    handle = snippet.custom_url if (snippet.custom_url or "").startswith("@") else None
    return ResolvedChannel(
        id=item.id,
        title=snippet.title or "Untitled Channel",
        thumbnail_url=thumbnail_url,
        uploads_playlist_id=uploads,
        handle=handle,
        created_at=parse_iso8601_datetime(snippet.published_at),
    )


# ---------------------------
# Upload ingestion
# ---------------------------

def list_upload_page(
    playlist_id: str,
    page_token: str | None,
    api_key: str,
    token: CancelToken | None = None,
) -> PlaylistItemsResponse:
    params: dict[str, Any] = {
        "part": "contentDetails",
        "playlistId": playlist_id,
        "maxResults": PLAYLIST_PAGE_SIZE,
        "fields": "items(contentDetails(videoId,videoPublishedAt)),nextPageToken",
    }
    if page_token:
        params["pageToken"] = page_token
    return _parse_model(PlaylistItemsResponse, youtube_api_get("playlistItems", params, api_key, token))


def fetch_upload_counts(
    playlist_id: str,
    time_zone: str,
    start_day_index: int,
    end_day_index: int,
    api_key: str,
    rank_start_day_index: int | None = None,
    rank_end_day_index: int | None = None,
    rank_cap: int = RANK_UPLOAD_CAP,
    token: CancelToken | None = None,
) -> UploadScan:
    """
    Walk the newest-first uploads playlist until every day of interest is covered.

    Once a page's oldest item predates both window starts, later pages can only
    be older still, so paging stops there. Uploads and ranked uploads come back
    oldest-first; the ranked subset is filled in feed order up to rank_cap.
    """
    scan = UploadScan()
    scan_until_day_index = start_day_index
    if rank_start_day_index is not None:
        scan_until_day_index = min(start_day_index, rank_start_day_index)
    rank_end = rank_end_day_index if rank_end_day_index is not None else end_day_index

    page_token = None
    while True:
        if token is not None and token.expired():
            raise YouTubeTimeoutError("Total processing time exceeded.")

        page = list_upload_page(playlist_id, page_token, api_key, token)
        scan.pages_fetched += 1
        oldest_day_index = None

        for item in page.items:
            details = item.content_details
            if details is None or not details.video_id:
                continue
            published = parse_iso8601_datetime(details.video_published_at)
            if published is None:
                continue

            local_date = format_date_in_timezone(published, time_zone)
            day_index = date_to_day_index(local_date)
            if oldest_day_index is None or day_index < oldest_day_index:
                oldest_day_index = day_index
            if day_index < start_day_index or day_index > end_day_index:
                continue

            upload = Upload(
                video_id=details.video_id,
                published_at=details.video_published_at,
                local_date=local_date,
                day_index=day_index,
            )
            scan.counts[local_date] = scan.counts.get(local_date, 0) + 1
            scan.uploads.append(upload)
            if (
                rank_start_day_index is not None
                and rank_start_day_index <= day_index <= rank_end
                and len(scan.ranked_uploads) < rank_cap
            ):
                scan.ranked_uploads.append(upload)

        page_token = page.next_page_token
        if not page_token:
            break
        if oldest_day_index is not None and oldest_day_index < scan_until_day_index:
            break

    scan.uploads.reverse()
    scan.ranked_uploads.reverse()
    logger.info(
        "Scanned %s page(s) of %s: %s uploads in window, %s ranked",
        scan.pages_fetched,
        playlist_id,
        len(scan.uploads),
        len(scan.ranked_uploads),
    )
    return scan


# ---------------------------
# Batch metrics
# ---------------------------

def _run_batches(
    video_ids: list[str],
    fetch_batch: Callable[[list[str], CancelToken], dict[str, T]],
    token: CancelToken | None,
) -> dict[str, T]:
    """
    Fetch ids in batches on a small worker pool sharing one work queue.

    Each worker keeps its own result map; batches never share ids so the
    maps are merged without locking. The first failure cancels the batch
    scope so sibling workers stop before their next call.
    """
    result: dict[str, T] = {}
    batches = list(chunked(video_ids, VIDEO_BATCH_SIZE))
    if not batches:
        return result

    work: queue.SimpleQueue[list[str]] = queue.SimpleQueue()
    for batch in batches:
        work.put(batch)
    scope = token.child() if token is not None else CancelToken()

    def worker() -> dict[str, T]:
        owned: dict[str, T] = {}
        while True:
            try:
                batch = work.get_nowait()
            except queue.Empty:
                return owned
            if scope.expired():
                raise YouTubeTimeoutError("Total processing time exceeded.")
            scope.raise_if_cancelled()
            owned.update(fetch_batch(batch, scope))

    with ThreadPoolExecutor(max_workers=min(VIDEO_BATCH_CONCURRENCY, len(batches))) as pool:
        futures = [pool.submit(worker) for _ in range(min(VIDEO_BATCH_CONCURRENCY, len(batches)))]
        try:
            for future in as_completed(futures):
                result.update(future.result())
        except BaseException:
            scope.cancel()
            raise
    return result


def _fetch_videos_batch(batch: list[str], part: str, fields: str, api_key: str, token: CancelToken) -> VideosListResponse:
    payload = youtube_api_get(
        "videos",
        {
            "part": part,
            "id": ",".join(batch),
            "maxResults": VIDEO_BATCH_SIZE,
            "fields": fields,
        },
        api_key,
        token,
    )
    return _parse_model(VideosListResponse, payload)


def fetch_video_stats(
    video_ids: list[str],
    api_key: str,
    token: CancelToken | None = None,
) -> dict[str, VideoStats]:
    def fetch_batch(batch: list[str], scope: CancelToken) -> dict[str, VideoStats]:
        response = _fetch_videos_batch(
            batch,
            "statistics",
            "items(id,statistics(viewCount,likeCount,commentCount))",
            api_key,
            scope,
        )
        return {
            item.id: VideoStats(
                views=item.statistics.view_count,
                likes=item.statistics.like_count,
                comments=item.statistics.comment_count,
            )
            for item in response.items
            if item.id
        }

    return _run_batches(video_ids, fetch_batch, token)


def fetch_video_performance(
    video_ids: list[str],
    api_key: str,
    token: CancelToken | None = None,
) -> dict[str, VideoPerformance]:
    def fetch_batch(batch: list[str], scope: CancelToken) -> dict[str, VideoPerformance]:
        response = _fetch_videos_batch(
            batch,
            "statistics,contentDetails,snippet",
            "items(id,snippet(title),statistics(viewCount,likeCount,commentCount),contentDetails(duration))",
            api_key,
            scope,
        )
        return {
            item.id: VideoPerformance(
                title=(item.snippet.title if item.snippet else None) or "Untitled video",
                views=item.statistics.view_count,
                likes=item.statistics.like_count,
                comments=item.statistics.comment_count,
                duration_seconds=iso8601_duration_to_seconds(item.content_details.duration),
            )
            for item in response.items
            if item.id
        }

    return _run_batches(video_ids, fetch_batch, token)
