"""
Pytest fixtures for timeline renderer tests.

Unit tests never start FFmpeg: the engine and the probe are replaced by
fakes and HTTP downloads go through httpx.MockTransport.

Tests that run the real engine are marked @pytest.mark.requires_ffmpeg and
are skipped when ffmpeg/ffprobe are not on PATH.
"""

import os
import shutil
import tempfile
from pathlib import Path

import httpx
import pytest

# Keep module-level settings (api routers, main) away from the real /tmp paths
_SESSION_ROOT = Path(tempfile.mkdtemp(prefix="timeline-renderer-tests-"))
os.environ.setdefault("WORK_ROOT", str(_SESSION_ROOT / "jobs"))
os.environ.setdefault("UPLOAD_DIR", str(_SESSION_ROOT / "uploads"))

from timeline_renderer.config import Settings  # noqa: E402
from timeline_renderer.render.compiler import ResolvedAsset  # noqa: E402
from timeline_renderer.utils.media_info import MediaInfo  # noqa: E402

ffmpeg_available = shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None

requires_ffmpeg = pytest.mark.skipif(
    not ffmpeg_available,
    reason="ffmpeg/ffprobe not available",
)


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings rooted in a per-test temp dir."""
    return Settings(
        work_root=str(tmp_path / "jobs"),
        upload_dir=str(tmp_path / "uploads"),
        max_concurrent_jobs=2,
        render_min_output_bytes=1000,
        job_ttl_seconds=3600,
    )


@pytest.fixture
def video_asset() -> ResolvedAsset:
    return ResolvedAsset(path="assets/0.mp4", has_video=True, has_audio=True, duration_s=8.0)


class FakeEngine:
    """Stands in for EngineInvoker: writes an output file of a chosen size."""

    def __init__(self, output_size: int = 200_000, error: Exception | None = None, delay: float = 0.0):
        self.output_size = output_size
        self.error = error
        self.delay = delay
        self.plans = []

    async def run_plan(self, plan, cwd, on_progress=None):
        import asyncio

        self.plans.append(plan)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if on_progress:
            on_progress(0.5)
        (Path(cwd) / plan.output_name).write_bytes(b"\0" * self.output_size)


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


def fake_prober(path: str) -> MediaInfo:
    """Probe stub: audio files have no video, everything else has both."""
    if path.endswith((".mp3", ".wav", ".aac")):
        return MediaInfo(duration_s=30.0, has_video=False, has_audio=True)
    if path.endswith(".png"):
        return MediaInfo(has_video=True, has_audio=False)
    return MediaInfo(duration_s=5.0, has_video=True, has_audio=True)


def media_transport(routes: dict[str, bytes | int]) -> httpx.MockTransport:
    """MockTransport serving body bytes per URL, or a bare status code."""

    def handler(request: httpx.Request) -> httpx.Response:
        value = routes.get(str(request.url))
        if value is None:
            return httpx.Response(404)
        if isinstance(value, int):
            return httpx.Response(value)
        return httpx.Response(200, content=value)

    return httpx.MockTransport(handler)
