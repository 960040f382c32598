"""
Tests for the client chunked uploader.
"""

import pytest
import requests

from clipstitch.client.chunked_uploader import (
    ChunkedUploader,
    UploadFailedError,
    UploadState,
    UploadTooLargeError,
)


def http_error(code: int) -> requests.HTTPError:
    response = requests.Response()
    response.status_code = code
    return requests.HTTPError(f"HTTP {code}", response=response)


@pytest.fixture
def client(mocker):
    """Mock CompilationClient."""
    mock = mocker.MagicMock()
    mock.finalize_upload.side_effect = lambda file_id: {"fileId": file_id, "fileName": "a.mp4", "size": 25}
    mock.upload_whole.return_value = {"fileId": "whole-1", "fileName": "a.mp4", "size": 25}
    return mock


@pytest.fixture
def video(tmp_path):
    path = tmp_path / "a.mp4"
    path.write_bytes(b"x" * 25)
    return str(path)


def make_uploader(client, sleeps=None, **kwargs):
    sleeps = sleeps if sleeps is not None else []
    return ChunkedUploader(client, chunk_size=10, sleep=sleeps.append, **kwargs)


class TestChunkedPath:
    """Tests for the happy chunked path."""

    def test_uploads_all_chunks_then_finalizes(self, client, video):
        progress = []
        uploader = make_uploader(client, on_progress=progress.append)

        outcome = uploader.upload(video)

        assert client.upload_chunk.call_count == 3
        indices = [c.args[1] for c in client.upload_chunk.call_args_list]
        assert indices == [0, 1, 2]
        sizes = [len(c.args[4]) for c in client.upload_chunk.call_args_list]
        assert sizes == [10, 10, 5]
        client.finalize_upload.assert_called_once_with(outcome.file_id)
        client.upload_whole.assert_not_called()

        assert outcome.method == UploadState.CHUNKED
        assert outcome.transitions == [UploadState.CHUNKED, UploadState.DONE]
        assert progress[-1] == 100

    def test_retry_recovers(self, client, video):
        client.upload_chunk.side_effect = [None, requests.ConnectionError("reset"), None, None]
        sleeps = []
        uploader = make_uploader(client, sleeps=sleeps)

        outcome = uploader.upload(video)

        assert outcome.method == UploadState.CHUNKED
        assert sleeps == [1.0]
        assert outcome.transitions == [
            UploadState.CHUNKED,
            UploadState.RETRYING,
            UploadState.CHUNKED,
            UploadState.DONE,
        ]


class TestFallback:
    """Tests for the whole-file fallback."""

    def test_exhausted_retries_fall_back(self, client, video):
        client.upload_chunk.side_effect = requests.ConnectionError("down")
        sleeps = []
        uploader = make_uploader(client, sleeps=sleeps)

        outcome = uploader.upload(video)

        assert client.upload_chunk.call_count == 3
        assert sleeps == [1.0, 1.0]
        client.upload_whole.assert_called_once_with(video)
        assert outcome.file_id == "whole-1"
        assert outcome.method == UploadState.WHOLE_FILE
        assert outcome.transitions == [
            UploadState.CHUNKED,
            UploadState.RETRYING,
            UploadState.WHOLE_FILE,
            UploadState.DONE,
        ]

    @pytest.mark.parametrize("code", [404, 405, 501])
    def test_chunking_unsupported_falls_back_immediately(self, client, video, code):
        client.upload_chunk.side_effect = http_error(code)
        sleeps = []
        uploader = make_uploader(client, sleeps=sleeps)

        outcome = uploader.upload(video)

        assert client.upload_chunk.call_count == 1
        assert sleeps == []
        assert outcome.method == UploadState.WHOLE_FILE

    def test_server_error_is_retried(self, client, video):
        client.upload_chunk.side_effect = [http_error(500), None, None, None]
        outcome = make_uploader(client).upload(video)
        assert outcome.method == UploadState.CHUNKED

    def test_finalize_failure_falls_back(self, client, video):
        client.finalize_upload.side_effect = http_error(409)
        outcome = make_uploader(client).upload(video)
        assert outcome.method == UploadState.WHOLE_FILE

    def test_whole_file_failure_raises(self, client, video):
        client.upload_chunk.side_effect = requests.ConnectionError("down")
        client.upload_whole.side_effect = requests.ConnectionError("still down")
        uploader = make_uploader(client)

        with pytest.raises(UploadFailedError):
            uploader.upload(video)
        assert uploader.state == UploadState.FAILED
        assert uploader.transitions[-2:] == [UploadState.WHOLE_FILE, UploadState.FAILED]


class TestSizeLimits:
    """Tests for the size ceilings."""

    def test_above_whole_file_ceiling_rejected_before_any_request(self, client, video):
        uploader = make_uploader(client, max_chunked_bytes=10, max_whole_bytes=20)

        with pytest.raises(UploadTooLargeError):
            uploader.upload(video)
        client.upload_chunk.assert_not_called()
        client.upload_whole.assert_not_called()

    def test_above_chunked_ceiling_goes_straight_to_whole_file(self, client, video):
        uploader = make_uploader(client, max_chunked_bytes=20, max_whole_bytes=100)

        outcome = uploader.upload(video)

        client.upload_chunk.assert_not_called()
        assert outcome.method == UploadState.WHOLE_FILE
        assert outcome.transitions == [UploadState.WHOLE_FILE, UploadState.DONE]
