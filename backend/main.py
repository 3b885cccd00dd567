import logging
import math
import os
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field
try:
    from backend.app.services.analysis import is_degraded, run_analysis
    from backend.app.services.coordination import AnalysisCoordinator, FixedWindowRateLimiter, SingleFlight, TTLCache
    from backend.app.services.dates import clamp_lookback_days, is_valid_timezone
    from backend.app.services.deadline import CancelToken
    from backend.app.services.errors import (
        ChannelCreationDateError,
        ChannelNotFoundError,
        InvalidChannelReferenceError,
        RequestCancelledError,
        YouTubeApiError,
        YouTubeTimeoutError,
    )
    from backend.app.services.youtube import ResolvedChannel, parse_channel_input, resolve_channel
except ModuleNotFoundError:
    from app.services.analysis import is_degraded, run_analysis
    from app.services.coordination import AnalysisCoordinator, FixedWindowRateLimiter, SingleFlight, TTLCache
    from app.services.dates import clamp_lookback_days, is_valid_timezone
    from app.services.deadline import CancelToken
    from app.services.errors import (
        ChannelCreationDateError,
        ChannelNotFoundError,
        InvalidChannelReferenceError,
        RequestCancelledError,
        YouTubeApiError,
        YouTubeTimeoutError,
    )
    from app.services.youtube import ResolvedChannel, parse_channel_input, resolve_channel


# ---------------------------
# Config
# ---------------------------

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


YOUTUBE_API_KEY = os.getenv("YOUTUBE_API_KEY", "")
ANALYSIS_CACHE_TTL_SECONDS = _env_int("ANALYSIS_CACHE_TTL_SECONDS", 10 * 60)
DEGRADED_CACHE_TTL_SECONDS = _env_int("DEGRADED_CACHE_TTL_SECONDS", 60)
CHANNEL_RESOLVE_TTL_SECONDS = _env_int("CHANNEL_RESOLVE_TTL_SECONDS", 30 * 60)
TOTAL_TIMEOUT_SECONDS = _env_int("TOTAL_TIMEOUT_SECONDS", 20)
RATE_LIMIT_MAX_REQUESTS = _env_int("RATE_LIMIT_MAX_REQUESTS", 30)
RATE_LIMIT_WINDOW_SECONDS = _env_int("RATE_LIMIT_WINDOW_SECONDS", 60)

logging.basicConfig(
    level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------
# Shared stores
# ---------------------------

ANALYSIS_CACHE = TTLCache(ANALYSIS_CACHE_TTL_SECONDS)
CHANNEL_RESOLVE_CACHE = TTLCache(CHANNEL_RESOLVE_TTL_SECONDS)
ANALYSIS_COORDINATOR = AnalysisCoordinator(
    ANALYSIS_CACHE,
    SingleFlight(),
    ttl_seconds=ANALYSIS_CACHE_TTL_SECONDS,
    degraded_ttl_seconds=DEGRADED_CACHE_TTL_SECONDS,
)
API_RATE_LIMITER = FixedWindowRateLimiter(RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW_SECONDS)


class AnalyzeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    channel: Any = ""
    timezone: Any = ""
    lookback_days: Any = Field(default=None, alias="lookbackDays")
    range: Any = "days"


class ResolveRequest(BaseModel):
    query: str


class AnalyzeError(Exception):
    def __init__(self, status_code: int, error_code: str, detail: str, headers: dict[str, str] | None = None):
        super().__init__(detail)
        self.status_code = status_code
        self.error_code = error_code
        self.detail = detail
        self.headers = headers


def get_client_ip(request: Request) -> str:
    forwarded = (request.headers.get("x-forwarded-for") or "").strip()
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = (request.headers.get(header) or "").strip()
        if value:
            return value
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def enforce_api_rate_limit(request: Request, scope: str = "analyze") -> None:
    decision = API_RATE_LIMITER.check(f"{scope}:{get_client_ip(request)}")
    if decision.allowed:
        return
    retry_after = max(1, math.ceil(decision.retry_after_seconds))
    raise AnalyzeError(
        429,
        "rate_limited",
        "Too many requests. Please wait a minute and try again.",
        headers={"Retry-After": str(retry_after)},
    )


def resolve_channel_cached(lookup: tuple[str, str], api_key: str, token: CancelToken | None = None) -> ResolvedChannel:
    kind, value = lookup
    value = value.strip()
    # Handles are case-insensitive, channel ids are not.
    if kind == "handle":
        value = value.lower()
    key = f"{kind}:{value}"
    hit = CHANNEL_RESOLVE_CACHE.get(key)
    if hit is not None:
        return hit

    resolved = resolve_channel(lookup, api_key, token)
    CHANNEL_RESOLVE_CACHE.set(key, resolved)
    return resolved


def translate_upstream_error(exc: Exception) -> AnalyzeError:
    if isinstance(exc, ChannelNotFoundError):
        return AnalyzeError(404, "channel_not_found", str(exc))
    if isinstance(exc, ChannelCreationDateError):
        return AnalyzeError(502, "lifetime_unavailable", "Unable to determine the channel creation date.")
    if isinstance(exc, (YouTubeTimeoutError, RequestCancelledError)):
        return AnalyzeError(504, "temporary_failure", "Temporary failure. Please try again.")
    if isinstance(exc, YouTubeApiError) and exc.is_quota:
        return AnalyzeError(503, "quota_exceeded", "Quota exceeded. Please try again later.")
    return AnalyzeError(503, "try_again", "Try again. YouTube API request failed.")


def require_api_key() -> str:
    if not YOUTUBE_API_KEY:
        raise AnalyzeError(500, "missing_api_key", "Server misconfigured: missing YOUTUBE_API_KEY.")
    return YOUTUBE_API_KEY


def parse_cors_origins() -> tuple[list[str], bool]:
    raw = (os.getenv("CORS_ALLOWED_ORIGINS") or "").strip()
    if not raw:
        return ["http://localhost:5173"], True
    if raw == "*":
        return ["*"], False
    origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    if not origins:
        return ["http://localhost:5173"], True
    return origins, True


# ---------------------------
# App setup
# ---------------------------

app = FastAPI()

cors_origins, cors_credentials = parse_cors_origins()

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AnalyzeError)
async def analyze_error_handler(_request: Request, exc: AnalyzeError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error_code": exc.error_code},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(_request: Request, exc: Exception):
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Temporary failure. Please try again.", "error_code": "temporary_failure"},
    )


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/resolve")
def resolve(payload: ResolveRequest, request: Request):
    enforce_api_rate_limit(request, scope="resolve")
    query = (payload.query or "").strip()
    if not query:
        raise AnalyzeError(400, "invalid_channel", "query is required")
    api_key = require_api_key()
    try:
        lookup = parse_channel_input(query)
    except InvalidChannelReferenceError as exc:
        raise AnalyzeError(400, "invalid_channel", str(exc))

    try:
        resolved = resolve_channel_cached(lookup, api_key, CancelToken(timeout_seconds=TOTAL_TIMEOUT_SECONDS))
    except (ChannelNotFoundError, YouTubeApiError, YouTubeTimeoutError, RequestCancelledError) as exc:
        raise translate_upstream_error(exc)
    return {"query": query, "channel": resolved.channel_info()}


@app.post("/analyze")
def analyze(payload: AnalyzeRequest, request: Request) -> dict[str, Any]:
    enforce_api_rate_limit(request, scope="analyze")

    channel_input = payload.channel if isinstance(payload.channel, str) else ""
    time_zone = payload.timezone.strip() if isinstance(payload.timezone, str) else ""
    lifetime = payload.range == "lifetime"
    requested_days = payload.lookback_days
    if isinstance(requested_days, bool) or not isinstance(requested_days, (int, float)):
        requested_days = None
    lookback_days = None if lifetime else clamp_lookback_days(requested_days)

    if not channel_input.strip():
        raise AnalyzeError(400, "invalid_channel", "Channel input is required.")
    if not time_zone or not is_valid_timezone(time_zone):
        raise AnalyzeError(400, "invalid_timezone", "Provide a valid IANA timezone, like America/New_York.")
    api_key = require_api_key()
    try:
        lookup = parse_channel_input(channel_input)
    except InvalidChannelReferenceError as exc:
        raise AnalyzeError(400, "invalid_channel", str(exc))

    token = CancelToken(timeout_seconds=TOTAL_TIMEOUT_SECONDS)
    try:
        resolved = resolve_channel_cached(lookup, api_key, token)
        cache_key = (resolved.id, time_zone, "lifetime" if lifetime else lookback_days)
        return ANALYSIS_COORDINATOR.run(
            cache_key,
            lambda: run_analysis(resolved, time_zone, lookback_days, api_key, token),
            is_degraded,
            wait_timeout=TOTAL_TIMEOUT_SECONDS,
        )
    except (
        ChannelNotFoundError,
        ChannelCreationDateError,
        YouTubeApiError,
        YouTubeTimeoutError,
        RequestCancelledError,
    ) as exc:
        logger.info("Analysis failed for %r: %s", channel_input, exc)
        raise translate_upstream_error(exc)
    finally:
        token.cancel()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("backend.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
