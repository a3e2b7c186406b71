"""
Command-line interface.

    chromasync analyze song.mp3 -o song_timeline.json
    chromasync query song_timeline.json --at 42.5
    chromasync acquire "Daft Punk" "Around the World"
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from chromasync.acquisition.keys import TrackKey
from chromasync.acquisition.orchestrator import Phase, build_orchestrator
from chromasync.config import EngineConfig
from chromasync.core.query import FrameQuery
from chromasync.errors import DecodeFailure
from chromasync.io.exporter import TimelineExporter
from chromasync.pipeline import AnalysisPipeline


def _print_summary(timeline):
    counts = timeline.feature_counts()
    print(f"Duration:      {timeline.duration:.2f}s")
    print(f"BPM:           {timeline.bpm:.1f} (confidence {timeline.rhythm.confidence:.2f})")
    print(f"Mel frames:    {counts['mel']}")
    print(f"Chroma frames: {counts['chroma']}")
    print(f"Pitch frames:  {counts['pitch']}")
    print(f"Beats:         {counts['beats']}")
    print(f"Analysis time: {timeline.analysis_time:.2f}s")


def cmd_analyze(args, config: EngineConfig) -> int:
    if not args.audio.exists():
        print(f"Error: Audio file not found: {args.audio}", file=sys.stderr)
        return 1

    output = args.output
    if output is None:
        output = args.audio.with_name(f"{args.audio.stem}_timeline.json")

    with AnalysisPipeline(config.extraction) as pipeline:
        try:
            timeline = pipeline.process(args.audio)
        except DecodeFailure as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1

    exporter = TimelineExporter(precision=args.precision)
    exporter.export_json(timeline, output)
    if args.npz is not None:
        exporter.export_numpy(timeline, args.npz)

    _print_summary(timeline)
    print(f"Timeline written to {output}")
    return 0


def cmd_query(args, config: EngineConfig) -> int:
    try:
        timeline = TimelineExporter().load_json(args.timeline)
    except (OSError, ValueError) as exc:
        print(f"Error: Could not read timeline {args.timeline}: {exc}", file=sys.stderr)
        return 1

    snapshot = FrameQuery(timeline, beat_tolerance=args.tolerance).at(args.at)
    print(json.dumps(snapshot.to_dict(), indent=2))
    return 0


async def _acquire(track: TrackKey, config: EngineConfig):
    with AnalysisPipeline(config.extraction) as pipeline:
        orchestrator = build_orchestrator(config, pipeline, debounce=0.0)
        orchestrator.on_track_change(track)
        await orchestrator.join()
        return orchestrator.published


def cmd_acquire(args, config: EngineConfig) -> int:
    if args.cache_dir is not None:
        config.acquisition.cache_dir = args.cache_dir
    try:
        track = TrackKey(artist=args.artist, title=args.title)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    published = asyncio.run(_acquire(track, config))
    if published.phase == Phase.FAILED or published.timeline is None:
        print(f"Error: {published.error or 'acquisition did not complete'}", file=sys.stderr)
        return 1

    print(f"Track:         {track}")
    _print_summary(published.timeline)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chromasync",
        description="Extract and query playback-synced audio features",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    analyze = sub.add_parser("analyze", help="Analyze an audio file")
    analyze.add_argument(
        "audio",
        type=Path,
        help="Input audio file (wav, mp3, flac)",
    )
    analyze.add_argument(
        "-o", "--output",
        type=Path,
        default=None,
        help="Output JSON file (default: <audio>_timeline.json)",
    )
    analyze.add_argument(
        "--npz",
        type=Path,
        default=None,
        help="Also write a NumPy .npz archive",
    )
    analyze.add_argument(
        "-p", "--precision",
        type=int,
        default=4,
        help="Decimal places in JSON output (default: 4)",
    )
    analyze.set_defaults(func=cmd_analyze)

    query = sub.add_parser("query", help="Look up features at a point in time")
    query.add_argument(
        "timeline",
        type=Path,
        help="Timeline JSON written by 'analyze'",
    )
    query.add_argument(
        "--at",
        type=float,
        required=True,
        help="Playback position in seconds",
    )
    query.add_argument(
        "--tolerance",
        type=float,
        default=0.05,
        help="Beat window in seconds (default: 0.05)",
    )
    query.set_defaults(func=cmd_query)

    acquire = sub.add_parser("acquire", help="Fetch, analyze and cache a track")
    acquire.add_argument("artist", help="Artist name")
    acquire.add_argument("title", help="Track title")
    acquire.add_argument(
        "--cache-dir",
        type=Path,
        default=None,
        help="Cache directory (default: $CHROMASYNC_CACHE_DIR or ~/.cache/chromasync)",
    )
    acquire.set_defaults(func=cmd_acquire)

    return parser


def main(argv: Optional[list] = None):
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = EngineConfig.from_env()
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    code = args.func(args, config)
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
