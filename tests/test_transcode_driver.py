"""
Tests for the transcode driver.

The Python interpreter stands in for the transcoder and prints the
``-progress pipe:1`` line format.
"""

import asyncio
import sys
import textwrap
import time

import pytest

from clipstitch.services.transcode_driver import (
    TranscodeDriver,
    TranscodeError,
    TranscodeEventKind,
    parse_progress_line,
)


def script(body: str) -> list[str]:
    return ["-c", textwrap.dedent(body)]


PROGRESS_SCRIPT = """
import time
for us in (500000, 1000000, 1000000, 1500000, 2000000):
    print(f"out_time_ms={us}", flush=True)
    print("progress=continue", flush=True)
    time.sleep(0.01)
print("progress=end", flush=True)
"""


class TestParseProgressLine:
    """Tests for -progress line parsing."""

    def test_out_time_ms_is_microseconds(self):
        assert parse_progress_line("out_time_ms=1500000") == 1.5

    def test_out_time_us(self):
        assert parse_progress_line("out_time_us=250000\n") == 0.25

    def test_out_time_clock(self):
        assert parse_progress_line("out_time=00:01:02.500000") == pytest.approx(62.5)

    def test_unavailable_and_unrelated_lines(self):
        assert parse_progress_line("out_time_ms=N/A") is None
        assert parse_progress_line("frame=42") is None
        assert parse_progress_line("progress=continue") is None
        assert parse_progress_line("garbage") is None


class TestTranscodeHandle:
    """Tests running real subprocesses through the driver."""

    @pytest.mark.asyncio
    async def test_progress_then_success(self, driver):
        """Progress is strictly increasing and ends with exactly one terminal event."""
        handle = await driver.start(
            sys.executable, script(PROGRESS_SCRIPT), expected_duration=2.0, timeout=10
        )
        events = [event async for event in handle.events()]

        progress = [e.percent for e in events if e.kind == TranscodeEventKind.PROGRESS]
        assert progress == sorted(set(progress))
        assert progress[0] == pytest.approx(25.0)
        assert progress[-1] == pytest.approx(100.0)

        terminals = [e for e in events if e.terminal]
        assert len(terminals) == 1
        assert events[-1].kind == TranscodeEventKind.SUCCEEDED
        assert (await handle.wait()).kind == TranscodeEventKind.SUCCEEDED

    @pytest.mark.asyncio
    async def test_nonzero_exit_fails_with_stderr(self, driver):
        """A failing process reports its exit code and stderr tail."""
        handle = await driver.start(
            sys.executable,
            script("""
                import sys
                sys.stderr.write("moov atom not found\\n")
                sys.exit(3)
            """),
            expected_duration=1.0,
            timeout=10,
        )
        event = await handle.wait()

        assert event.kind == TranscodeEventKind.FAILED
        assert "code 3" in event.reason
        assert "moov atom not found" in event.reason

    @pytest.mark.asyncio
    async def test_stderr_tail_is_bounded(self, driver):
        handle = await driver.start(
            sys.executable,
            script("""
                import sys
                sys.stderr.write("x" * 5000 + "END")
            """),
            expected_duration=1.0,
            timeout=10,
        )
        await handle.wait()

        assert len(handle.stderr_tail) == 1000
        assert handle.stderr_tail.endswith("END")

    @pytest.mark.asyncio
    async def test_watchdog_timeout(self, driver):
        """A hanging process is killed and fails with a timed-out reason."""
        started = time.monotonic()
        handle = await driver.start(
            sys.executable,
            script("import time; time.sleep(60)"),
            expected_duration=1.0,
            timeout=0.5,
        )
        event = await handle.wait()

        assert event.kind == TranscodeEventKind.FAILED
        assert event.reason == "timed out after 0.5s"
        assert time.monotonic() - started < 10

    @pytest.mark.asyncio
    async def test_kill_produces_cancelled_failure(self, driver):
        handle = await driver.start(
            sys.executable,
            script("import time; time.sleep(60)"),
            expected_duration=1.0,
            timeout=60,
        )
        await asyncio.sleep(0.2)
        event = await handle.kill()

        assert event.kind == TranscodeEventKind.FAILED
        assert event.reason == "cancelled"

        events = [e async for e in handle.events()]
        assert [e.kind for e in events if e.terminal] == [TranscodeEventKind.FAILED]

    @pytest.mark.asyncio
    async def test_kill_after_exit_returns_existing_terminal(self, driver):
        handle = await driver.start(sys.executable, script("pass"), expected_duration=1.0, timeout=10)
        first = await handle.wait()
        assert await handle.kill() is first

    @pytest.mark.asyncio
    async def test_missing_executable(self, driver):
        with pytest.raises(TranscodeError):
            await driver.start("/nonexistent/ffmpeg", [], expected_duration=1.0, timeout=1)


class TestArgumentBuilders:
    """Tests for the ffmpeg argument lists."""

    def test_clip_args_normalize_output(self, driver):
        args = driver.build_clip_args("/in/a.mp4", 1.5, 3.0, "/out/clip_00.mp4")

        assert args[-1] == "/out/clip_00.mp4"
        assert args[args.index("-ss") + 1] == "1.500000"
        assert args[args.index("-t") + 1] == "3.000000"
        assert args.index("-ss") < args.index("-i")

        vf = args[args.index("-vf") + 1]
        assert "scale=1920:1080:force_original_aspect_ratio=decrease" in vf
        assert "pad=1920:1080" in vf
        assert "setsar=1" in vf
        assert "fps=30" in vf

        assert args[args.index("-pix_fmt") + 1] == "yuv420p"
        assert args[args.index("-c:v") + 1] == "libx264"
        assert args[args.index("-crf") + 1] == "23"
        assert args[args.index("-c:a") + 1] == "aac"
        assert args[args.index("-b:a") + 1] == "128k"
        assert args[args.index("-ar") + 1] == "48000"
        assert args[args.index("-ac") + 1] == "2"
        assert "+faststart" in args
        assert args[args.index("-progress") + 1] == "pipe:1"

    def test_nvenc_uses_cq(self, settings):
        nvenc = TranscodeDriver(settings.model_copy(update={"video_codec": "h264_nvenc"}))
        args = nvenc.build_clip_args("/in/a.mp4", 0, 1, "/out/a.mp4")
        assert "-cq" in args
        assert "-crf" not in args

    def test_concat_args_stream_copy(self, driver):
        args = driver.build_concat_args("/w/concat_list.txt", "/out/final.mp4")

        assert args[args.index("-f") + 1] == "concat"
        assert args[args.index("-safe") + 1] == "0"
        assert args[args.index("-c") + 1] == "copy"
        assert args[-1] == "/out/final.mp4"

    def test_write_manifest(self, tmp_path):
        clips = [tmp_path / "clip_00.mp4", tmp_path / "it's.mp4"]
        manifest = tmp_path / "concat_list.txt"

        TranscodeDriver.write_manifest([str(c) for c in clips], str(manifest))

        lines = manifest.read_text().splitlines()
        assert lines[0] == f"file '{clips[0]}'"
        assert lines[1] == f"file '{tmp_path}/it'\\''s.mp4'"
