#!/usr/bin/env python3
"""
clipstitch-compile - upload sources, compile a timeline, download the result.

Usage Examples:
    # Two clips from one file
    clipstitch-compile interview.mp4 --clip 0:12.5:4 --clip 0:40:6

    # Clips from two files, clip list from JSON
    clipstitch-compile a.mp4 b.mp4 --clips timeline.json --output renders/

    # Remote server with an API key
    clipstitch-compile a.mp4 --clip 0:0:10 --url https://clips.example.com --api-key KEY

The JSON clip list is an array of {"sourceIndex", "startTime", "duration",
"position"} objects; sourceIndex refers to the files in command-line order.
"""

import argparse
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import requests
from dotenv import load_dotenv

from clipstitch.client.api_client import CompilationClient
from clipstitch.client.chunked_uploader import (
    ChunkedUploader,
    UploadFailedError,
    UploadTooLargeError,
)
from clipstitch.client.progress_poller import PollOutcome, PollUpdate, ProgressPoller


def print_status(message: str, status: str = "INFO"):
    """Print status message with timestamp."""
    icons = {
        "INFO": "ℹ️ ",
        "SUCCESS": "✅",
        "ERROR": "❌",
        "WARNING": "⚠️ ",
        "PROGRESS": "⏳",
        "DOWNLOAD": "📥",
    }
    icon = icons.get(status, "  ")
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] {icon} {message}")


def parse_clip_triple(value: str, position: int) -> dict:
    """Parse ``source:start:duration`` into a clip dict."""
    parts = value.split(":")
    if len(parts) != 3:
        raise argparse.ArgumentTypeError(f"Expected source:start:duration, got {value!r}")
    try:
        return {
            "sourceIndex": int(parts[0]),
            "startTime": float(parts[1]),
            "duration": float(parts[2]),
            "position": position,
        }
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid clip {value!r}")


def load_clips(args: argparse.Namespace) -> list[dict]:
    clips: list[dict] = []
    if args.clips:
        with open(args.clips, encoding="utf-8") as f:
            clips.extend(json.load(f))
    for triple in args.clip or []:
        clips.append(parse_clip_triple(triple, position=len(clips)))
    return clips


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clipstitch-compile",
        description="Compile clips from source videos into one MP4",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("files", nargs="+", help="Source video files, in sourceIndex order")
    parser.add_argument("--clips", help="JSON file with the clip list")
    parser.add_argument(
        "--clip",
        action="append",
        metavar="SOURCE:START:DURATION",
        help="Add a clip (repeatable, timeline order)",
    )
    parser.add_argument("--output", "-o", default=".", help="Output file or directory")
    parser.add_argument("--url", help="API base URL (default: $CLIPSTITCH_API_URL)")
    parser.add_argument("--api-key", help="API key (default: $CLIPSTITCH_API_KEY)")
    parser.add_argument("--timeout", type=float, default=600, help="Give up tracking after N seconds")
    return parser


def run(args: argparse.Namespace) -> int:
    clips = load_clips(args)
    if not clips:
        print_status("No clips given (use --clip or --clips)", "ERROR")
        return 2

    client = CompilationClient(base_url=args.url, api_key=args.api_key)

    try:
        health = client.health_check()
        print_status(f"Server {client.base_url}: {health.get('status')} (v{health.get('version')})")
    except requests.RequestException as e:
        print_status(f"Health check failed: {e}", "WARNING")

    # Upload sources
    file_ids: list[str] = []
    for path in args.files:
        uploader = ChunkedUploader(
            client,
            on_progress=lambda p, name=Path(path).name: print(f"\r   {name}: {p:5.1f}%", end="", flush=True),
        )
        try:
            outcome = uploader.upload(path)
        except (UploadTooLargeError, UploadFailedError) as e:
            print()
            print_status(str(e), "ERROR")
            return 1
        print()
        print_status(f"Uploaded {outcome.file_name} ({outcome.method.value})", "SUCCESS")
        file_ids.append(outcome.file_id)

    # Submit
    try:
        job_id = client.submit_job(clips, file_ids=file_ids)
    except requests.HTTPError as e:
        detail = e.response.text if e.response is not None else "N/A"
        print_status(f"Failed to submit job: {e} ({detail})", "ERROR")
        return 1
    print_status(f"Job submitted: {job_id}", "SUCCESS")

    # Track
    last_stage: Optional[str] = None

    def on_update(update: PollUpdate):
        nonlocal last_stage
        if update.stage != last_stage:
            print_status(f"[{update.percent:5.1f}%] {update.stage}", "PROGRESS")
            last_stage = update.stage

    poller = ProgressPoller(client.get_progress, timeout=args.timeout)
    try:
        result = poller.track(job_id, on_update)
    except KeyboardInterrupt:
        print_status("Cancelling job...", "WARNING")
        client.cancel_job(job_id)
        return 130

    if result.outcome != PollOutcome.COMPLETE:
        print_status(f"Job ended: {result.outcome.value} ({result.stage})", "ERROR")
        return 1

    # Download
    print_status(f"Downloading {result.output_file}...", "DOWNLOAD")
    target = client.download(result.download_url, args.output)
    print_status(f"Saved {target}", "SUCCESS")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
