#!/usr/bin/env python3
"""
clipstitch - end-to-end scenarios against a running server.

Each scenario drives the public API the way the browser editor does and
reports whether the server behaved as expected.

Usage Examples:
    # Compile two clips sent with the job request
    python examples/scenarios.py compile sample.mp4

    # Upload in chunks first, then reference the upload by id
    python examples/scenarios.py chunked sample.mp4

    # Cancel a job right after submitting it
    python examples/scenarios.py cancel sample.mp4

    # Everything, against a remote server
    python examples/scenarios.py all sample.mp4 --url https://clips.example.com
"""

import argparse
import sys
import time
from typing import Callable

import requests
from dotenv import load_dotenv

from clipstitch.client import (
    ChunkedUploader,
    CompilationClient,
    PollOutcome,
    ProgressPoller,
)
from clipstitch.client.cli import print_status


def two_clips() -> list[dict]:
    return [
        {"sourceIndex": 0, "startTime": 1.0, "duration": 2.0, "position": 1},
        {"sourceIndex": 0, "startTime": 0.0, "duration": 1.5, "position": 0},
    ]


def track(client: CompilationClient, job_id: str) -> PollOutcome:
    poller = ProgressPoller(client.get_progress, timeout=300)
    result = poller.track(
        job_id,
        lambda u: print(f"\r   [{u.percent:5.1f}%] {u.stage:<40}", end="", flush=True),
    )
    print()
    print_status(f"{job_id}: {result.outcome.value} ({result.stage})")
    return result.outcome


def scenario_compile(client: CompilationClient, video: str) -> bool:
    """Sources sent inline with the job."""
    job_id = client.submit_job(two_clips(), videos=[video])
    return track(client, job_id) == PollOutcome.COMPLETE


def scenario_chunked(client: CompilationClient, video: str) -> bool:
    """Chunked upload (small chunks to force several), then fileIds."""
    outcome = ChunkedUploader(client, chunk_size=256 * 1024).upload(video)
    print_status(f"Uploaded via {outcome.method.value}: {[s.value for s in outcome.transitions]}")
    job_id = client.submit_job(two_clips(), file_ids=[outcome.file_id])
    return track(client, job_id) == PollOutcome.COMPLETE


def scenario_cancel(client: CompilationClient, video: str) -> bool:
    """Cancel immediately; cancel again to check idempotency."""
    clips = [
        {"sourceIndex": 0, "startTime": 0.0, "duration": 1.0, "position": i}
        for i in range(10)
    ]
    job_id = client.submit_job(clips, videos=[video])
    time.sleep(0.5)
    first = client.cancel_job(job_id)
    second = client.cancel_job(job_id)
    if not (first.get("success") and second.get("success")):
        print_status("Cancel was not acknowledged", "ERROR")
        return False
    # A job that finished before the cancel landed is also acceptable
    return track(client, job_id) in (PollOutcome.CANCELLED, PollOutcome.COMPLETE)


SCENARIOS: dict[str, Callable[[CompilationClient, str], bool]] = {
    "compile": scenario_compile,
    "chunked": scenario_chunked,
    "cancel": scenario_cancel,
}


def main() -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(
        description="Run clipstitch API scenarios",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("scenario", choices=[*SCENARIOS, "all"])
    parser.add_argument("video", help="Source video (a few seconds long is enough)")
    parser.add_argument("--url", help="API base URL (default: $CLIPSTITCH_API_URL)")
    parser.add_argument("--api-key", help="API key (default: $CLIPSTITCH_API_KEY)")
    args = parser.parse_args()

    client = CompilationClient(base_url=args.url, api_key=args.api_key)
    try:
        client.health_check()
    except requests.RequestException as e:
        print_status(f"Server not reachable at {client.base_url}: {e}", "ERROR")
        return 1

    names = list(SCENARIOS) if args.scenario == "all" else [args.scenario]
    failed = []
    for name in names:
        print_status(f"Scenario: {name}", "PROGRESS")
        try:
            passed = SCENARIOS[name](client, args.video)
        except requests.HTTPError as e:
            print_status(f"{name}: HTTP error {e}", "ERROR")
            passed = False
        print_status(f"{name}: {'PASS' if passed else 'FAIL'}", "SUCCESS" if passed else "ERROR")
        if not passed:
            failed.append(name)

    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
