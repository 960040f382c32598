"""
Tests for the clipstitch-compile command line client.
"""

import argparse
import json

import pytest

from clipstitch.client import cli
from clipstitch.client.chunked_uploader import UploadFailedError, UploadOutcome, UploadState
from clipstitch.client.progress_poller import PollOutcome, PollResult


def test_parse_clip_triple():
    assert cli.parse_clip_triple("1:12.5:4", position=3) == {
        "sourceIndex": 1,
        "startTime": 12.5,
        "duration": 4.0,
        "position": 3,
    }


@pytest.mark.parametrize("value", ["1:2", "a:1:2", "0:1:x"])
def test_parse_clip_triple_rejects(value):
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_clip_triple(value, position=0)


def test_load_clips_appends_triples_after_json(tmp_path):
    timeline = tmp_path / "timeline.json"
    timeline.write_text(json.dumps([{"sourceIndex": 0, "startTime": 0, "duration": 2, "position": 0}]))
    args = cli.build_parser().parse_args(["a.mp4", "--clips", str(timeline), "--clip", "0:5:1"])

    clips = cli.load_clips(args)

    assert len(clips) == 2
    assert clips[1]["position"] == 1


@pytest.fixture
def api(mocker):
    """Patch the client, uploader and poller used by run()."""
    client = mocker.MagicMock()
    client.base_url = "http://localhost:8000"
    client.health_check.return_value = {"status": "healthy", "version": "1.0.0"}
    client.submit_job.return_value = "job-1"
    mocker.patch.object(cli, "CompilationClient", return_value=client)

    uploader = mocker.MagicMock()
    uploader.upload.side_effect = lambda path: UploadOutcome(
        file_id=f"id-{path}",
        file_name=path,
        size=1,
        method=UploadState.CHUNKED,
        transitions=[UploadState.CHUNKED, UploadState.DONE],
    )
    mocker.patch.object(cli, "ChunkedUploader", return_value=uploader)

    poller = mocker.MagicMock()
    poller.track.return_value = PollResult(
        outcome=PollOutcome.COMPLETE,
        percent=100,
        stage="Complete!",
        download_url="/download/compiled-job-1.mp4",
        output_file="compiled-job-1.mp4",
    )
    mocker.patch.object(cli, "ProgressPoller", return_value=poller)
    return client, uploader, poller


def run(*argv) -> int:
    return cli.run(cli.build_parser().parse_args(list(argv)))


def test_run_uploads_submits_and_downloads(api, tmp_path):
    client, _, _ = api

    assert run("a.mp4", "b.mp4", "--clip", "1:0:2", "--output", str(tmp_path)) == 0

    clips, = client.submit_job.call_args.args
    assert clips[0]["sourceIndex"] == 1
    assert client.submit_job.call_args.kwargs["file_ids"] == ["id-a.mp4", "id-b.mp4"]
    client.download.assert_called_once_with("/download/compiled-job-1.mp4", str(tmp_path))


def test_run_without_clips(api):
    client, _, _ = api
    assert run("a.mp4") == 2
    client.submit_job.assert_not_called()


def test_run_upload_failure(api):
    client, uploader, _ = api
    uploader.upload.side_effect = UploadFailedError("gone")

    assert run("a.mp4", "--clip", "0:0:1") == 1
    client.submit_job.assert_not_called()


def test_run_job_error(api):
    client, _, poller = api
    poller.track.return_value = PollResult(
        outcome=PollOutcome.ERROR, percent=30, stage="Error: Clip 1 of 1 failed: timeout"
    )

    assert run("a.mp4", "--clip", "0:0:1") == 1
    client.download.assert_not_called()


def test_interrupt_cancels_job(api):
    client, _, poller = api
    poller.track.side_effect = KeyboardInterrupt

    assert run("a.mp4", "--clip", "0:0:1") == 130
    client.cancel_job.assert_called_once_with("job-1")
