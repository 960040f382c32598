"""
Pytest configuration and fixtures.

The transcoder and prober are replaced by small Python scripts so that the
real subprocess plumbing is exercised without ffmpeg installed:

- fake ffprobe reads ``duration=<seconds>`` from the source file
- fake ffmpeg writes ``-progress`` lines and an output whose content is the
  encoded duration (one line per clip; concat joins the lines)

Source file content markers change fake ffmpeg's behaviour:
``FAIL`` exits with an error, ``HANG`` sleeps far past any test timeout.
"""

import os
import stat
import sys
import textwrap

import pytest

from clipstitch.config import Settings
from clipstitch.services.compilation_pipeline import CompilationPipeline, JobRunner
from clipstitch.services.job_registry import JobRegistry
from clipstitch.services.media_probe import MediaProbe
from clipstitch.services.output_storage import OutputStorage
from clipstitch.services.transcode_driver import TranscodeDriver
from clipstitch.services.upload_assembler import UploadAssembler, UploadedFile

FAKE_FFMPEG = """
import os
import sys
import time

args = sys.argv[1:]
output = args[-1]
delay = float(os.environ.get("FAKE_TRANSCODE_DELAY", "0.01"))


def value(flag):
    return args[args.index(flag) + 1] if flag in args else None


with open(value("-i")) as f:
    text = f.read()

if value("-f") == "concat":
    paths = [line.strip()[6:-1] for line in text.splitlines() if line.startswith("file ")]
    body = ""
    for path in paths:
        with open(path) as clip:
            body += clip.read()
    duration = sum(float(line) for line in body.split())
else:
    if "FAIL" in text:
        sys.stderr.write("Invalid data found when processing input\\n")
        sys.exit(1)
    if "HANG" in text:
        time.sleep(60)
    duration = float(value("-t"))
    body = "%.3f\\n" % duration

steps = 4
for i in range(1, steps + 1):
    print("out_time_ms=%d" % int(duration * i / steps * 1000000), flush=True)
    print("progress=continue", flush=True)
    time.sleep(delay)
print("progress=end", flush=True)

with open(output, "w") as f:
    f.write(body)
"""

FAKE_FFPROBE = """
import json
import re
import sys

with open(sys.argv[-1]) as f:
    match = re.search(r"duration=([0-9.]+)", f.read())
if not match:
    sys.exit(1)
print(json.dumps({"format": {"duration": match.group(1)}, "streams": []}))
"""


def _write_script(path, body: str) -> str:
    path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def fake_tools(tmp_path):
    """Paths of the fake ffmpeg / ffprobe executables."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    return {
        "ffmpeg": _write_script(bin_dir / "ffmpeg", FAKE_FFMPEG),
        "ffprobe": _write_script(bin_dir / "ffprobe", FAKE_FFPROBE),
    }


@pytest.fixture
def settings(tmp_path, fake_tools):
    """Settings isolated to a temporary data directory."""
    return Settings(
        _env_file=None,
        data_directory=str(tmp_path / "data"),
        ffmpeg_path=fake_tools["ffmpeg"],
        ffprobe_path=fake_tools["ffprobe"],
        max_workers=2,
        api_key=None,
    )


@pytest.fixture
def registry():
    return JobRegistry()


@pytest.fixture
def assembler(settings):
    return UploadAssembler(settings)


@pytest.fixture
def storage(settings):
    return OutputStorage(settings)


@pytest.fixture
def driver(settings):
    return TranscodeDriver(settings)


@pytest.fixture
def pipeline(settings, registry, driver, storage):
    return CompilationPipeline(
        registry=registry,
        driver=driver,
        probe=MediaProbe(settings),
        storage=storage,
        settings=settings,
    )


@pytest.fixture
def runner(settings, registry, pipeline):
    return JobRunner(pipeline, registry, settings)


@pytest.fixture
def make_source(settings):
    """Create an uploaded source file whose content drives the fakes."""
    os.makedirs(settings.upload_directory, exist_ok=True)
    counter = {"n": 0}

    def _make(duration: float = 10.0, marker: str = "") -> UploadedFile:
        counter["n"] += 1
        path = os.path.join(settings.upload_directory, f"source-{counter['n']}.mp4")
        with open(path, "w") as f:
            f.write(f"duration={duration}\n{marker}\n")
        return UploadedFile(
            file_id=f"source-{counter['n']}",
            path=path,
            original_name=f"source-{counter['n']}.mp4",
            size=os.path.getsize(path),
        )

    return _make
