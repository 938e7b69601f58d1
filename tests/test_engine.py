"""
Tests for the engine invoker.

Unit tests drive `sh` instead of FFmpeg. The end-to-end test renders
generated media with the real engine and is skipped without ffmpeg.
"""

import subprocess
from pathlib import Path

import pytest

from conftest import requires_ffmpeg
from timeline_renderer.config import RenderDefaults
from timeline_renderer.exceptions import EngineError
from timeline_renderer.render.compiler import ResolvedAsset, TimelineCompiler
from timeline_renderer.render.engine import EXIT_NOT_FOUND, EngineInvoker
from timeline_renderer.schemas.timeline import Timeline


def sh(script: str) -> list[str]:
    return ["sh", "-c", script]


@pytest.fixture
def invoker() -> EngineInvoker:
    return EngineInvoker(ffmpeg_path="ffmpeg", diagnostic_lines=3, extra_output_options=())


class TestInvoke:
    @pytest.mark.asyncio
    async def test_success_reports_progress(self, invoker: EngineInvoker, tmp_path: Path):
        times: list[float] = []

        result = await invoker.invoke(
            sh("echo out_time_us=N/A; echo out_time_us=1500000; echo progress=end"),
            str(tmp_path),
            times.append,
        )

        assert result.ok
        assert times == [1.5]

    @pytest.mark.asyncio
    async def test_failure_keeps_bounded_tail(self, invoker: EngineInvoker, tmp_path: Path):
        result = await invoker.invoke(
            sh("for i in 1 2 3 4 5; do echo line$i >&2; done; exit 3"),
            str(tmp_path),
        )

        assert result.returncode == 3
        assert result.diagnostics == "line3\nline4\nline5"

    @pytest.mark.asyncio
    async def test_runs_in_cwd(self, invoker: EngineInvoker, tmp_path: Path):
        await invoker.invoke(sh("echo done > marker.txt"), str(tmp_path))

        assert (tmp_path / "marker.txt").read_text().strip() == "done"

    @pytest.mark.asyncio
    async def test_missing_binary(self, invoker: EngineInvoker, tmp_path: Path):
        result = await invoker.invoke(["/nonexistent/ffmpeg", "-version"], str(tmp_path))

        assert result.returncode == EXIT_NOT_FOUND
        assert not result.ok


class TestRunPlan:
    def _plan(self):
        tl = Timeline.model_validate({"clips": [{"source": "https://cdn.example.com/a.mp4"}]})
        assets = {"url:https://cdn.example.com/a.mp4": ResolvedAsset("assets/0.mp4", duration_s=2.0)}
        return TimelineCompiler(RenderDefaults()).compile(tl, assets)

    def test_build_args_adds_progress(self, invoker: EngineInvoker):
        args = invoker.build_args(self._plan())

        assert args[-3:] == ["-progress", "pipe:1", "output.mp4"]

    def test_extra_output_options_from_settings(self):
        args = EngineInvoker(ffmpeg_path="ffmpeg").build_args(self._plan())

        assert "-threads" in args
        assert "-max_muxing_queue_size" in args

    @pytest.mark.asyncio
    async def test_failure_raises_engine_error(self, tmp_path: Path):
        invoker = EngineInvoker(ffmpeg_path="/nonexistent/ffmpeg", extra_output_options=())

        with pytest.raises(EngineError) as exc_info:
            await invoker.run_plan(self._plan(), str(tmp_path))
        assert exc_info.value.exit_code == EXIT_NOT_FOUND
        assert "exit code 127" in exc_info.value.message


@requires_ffmpeg
class TestEndToEnd:
    """Render generated clips with the real engine."""

    @staticmethod
    def _make_clip(path: Path, audio: bool, size: str = "320x240") -> None:
        cmd = ["ffmpeg", "-y", "-f", "lavfi", "-i", f"testsrc=size={size}:rate=25:duration=2"]
        if audio:
            cmd += ["-f", "lavfi", "-i", "sine=frequency=440:duration=2", "-c:a", "aac"]
        cmd += ["-c:v", "libx264", "-pix_fmt", "yuv420p", "-shortest", str(path)]
        subprocess.run(cmd, capture_output=True, check=True)

    @pytest.mark.asyncio
    async def test_render_two_clips_with_soundtrack(self, tmp_path: Path):
        from timeline_renderer.utils.media_info import probe_media

        assets_dir = tmp_path / "assets"
        assets_dir.mkdir()
        self._make_clip(assets_dir / "0.mp4", audio=True)
        self._make_clip(assets_dir / "1.mp4", audio=False, size="240x320")
        subprocess.run(
            ["ffmpeg", "-y", "-f", "lavfi", "-i", "sine=frequency=220:duration=10", str(assets_dir / "2.m4a")],
            capture_output=True,
            check=True,
        )

        tl = Timeline.model_validate({
            "clips": [
                {"source": "https://cdn.example.com/a.mp4", "visualFilters": [{"type": "grayscale"}]},
                {"source": "https://cdn.example.com/b.mp4", "speed": 2, "trim": {"start": 0, "end": 2}},
            ],
            "settings": {"width": 640, "height": 360},
            "soundtrack": [{"source": "https://cdn.example.com/m.m4a", "mediaType": "audio", "audioVolume": 0.2}],
        })
        assets = {}
        for key, name in (("a.mp4", "0.mp4"), ("b.mp4", "1.mp4"), ("m.m4a", "2.m4a")):
            info = probe_media(str(assets_dir / name))
            assets[f"url:https://cdn.example.com/{key}"] = ResolvedAsset(
                f"assets/{name}", info.has_video, info.has_audio, info.duration_s
            )

        plan = TimelineCompiler(RenderDefaults()).compile(tl, assets)
        progress: list[float] = []
        await EngineInvoker(ffmpeg_path="ffmpeg").run_plan(plan, str(tmp_path), progress.append)

        output = probe_media(str(tmp_path / "output.mp4"))
        assert output.has_video and output.has_audio
        assert (output.width, output.height) == (640, 360)
        assert output.duration_s == pytest.approx(3.0, abs=0.3)
