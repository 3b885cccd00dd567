from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from backend.app.services.analysis import run_analysis
from backend.app.services.dates import clamp_lookback_days, is_valid_timezone
from backend.app.services.deadline import CancelToken
from backend.app.services.youtube import parse_channel_input, resolve_channel


def main() -> int:
    parser = argparse.ArgumentParser(description="Analyze a channel's upload streaks and density rank.")
    parser.add_argument("channel", help="@handle, https://www.youtube.com/@handle or /channel/UC... URL")
    parser.add_argument("--timezone", default="UTC")
    parser.add_argument("--lookback-days", type=int, default=None)
    parser.add_argument("--lifetime", action="store_true", help="Analyze since the channel was created")
    parser.add_argument("--timeout", type=float, default=60.0, help="Total time budget in seconds")
    parser.add_argument("--output", type=Path, default=None)
    args = parser.parse_args()

    load_dotenv()
    api_key = os.getenv("YOUTUBE_API_KEY", "").strip()
    if not api_key:
        raise RuntimeError("YOUTUBE_API_KEY is required")
    if not is_valid_timezone(args.timezone):
        raise RuntimeError(f"Unknown timezone: {args.timezone}")

    lookback_days = None if args.lifetime else clamp_lookback_days(args.lookback_days)
    token = CancelToken(timeout_seconds=args.timeout)
    resolved = resolve_channel(parse_channel_input(args.channel), api_key, token)
    result = run_analysis(resolved, args.timezone, lookback_days, api_key, token)

    rendered = json.dumps(result, indent=2)
    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(rendered, encoding="utf-8")
        print(f"Wrote analysis: {args.output}")
    else:
        print(rendered)

    stats = result["stats"]
    rank = result["rank"]
    print(
        f"{resolved.title}: {stats['total_posts']} uploads, "
        f"current streak {stats['current_streak']}, longest {stats['longest_streak']}, "
        f"rank {rank['score']} ({rank['grade']}, {rank['tier']})",
        file=sys.stderr,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
